"""
Harbormaster - Multi-container project orchestration over a Docker engine.

This package provides:
- Declarative project descriptors (services, replicas, networks, volumes)
- Idempotent Up / Down / Scale with per-sub-operation results
- Label-based state discovery with no local database of record
- Multiplexed log streaming and resource change notifications
- RESTful API with optional PostgreSQL event audit trail
"""

from __future__ import annotations

__version__ = "1.0.0"

# Core exports
from harbormaster.core.models import ProjectDescriptor, ServiceSpec
from harbormaster.core.orchestrator import ProjectOrchestrator
from harbormaster.storage.event_store import EventStore
from harbormaster.utils.logger import get_logger

__all__ = [
    "EventStore",
    "ProjectDescriptor",
    "ProjectOrchestrator",
    "ServiceSpec",
    "get_logger",
    "__version__",
]
