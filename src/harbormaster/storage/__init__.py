"""
Storage module for Harbormaster.

Optional PostgreSQL audit trail of resource change events. The orchestrator
itself never reads from it: project state always comes from the engine.
"""

from __future__ import annotations

from harbormaster.storage.event_store import EventStore

__all__ = ["EventStore"]
