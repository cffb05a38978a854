"""
Core business logic for Harbormaster.

This module contains the project lifecycle orchestrator and the pieces it is
built from: the engine gateway, the naming scheme, the state reader, the
per-project serializer, the change notifier and the log multiplexer.
"""

from __future__ import annotations

from harbormaster.core.context import OperationContext
from harbormaster.core.errors import (
    DeadlineExceededError,
    EngineError,
    EngineUnavailableError,
    InvalidSpecError,
    NotFoundError,
    OperationCancelledError,
    OrchestratorError,
    PartialFailureError,
    ProjectBusyError,
    SpecUnavailableError,
)
from harbormaster.core.gateway import EngineGateway
from harbormaster.core.logs import LogStream
from harbormaster.core.models import (
    ChangeEvent,
    LogLine,
    OperationResult,
    ProjectDescriptor,
    ProjectView,
    ResultStatus,
    ServiceSpec,
    VolumeMount,
)
from harbormaster.core.notifier import ChangeNotifier
from harbormaster.core.orchestrator import ProjectOrchestrator

__all__ = [
    "ChangeEvent",
    "ChangeNotifier",
    "DeadlineExceededError",
    "EngineError",
    "EngineGateway",
    "EngineUnavailableError",
    "InvalidSpecError",
    "LogLine",
    "LogStream",
    "NotFoundError",
    "OperationCancelledError",
    "OperationContext",
    "OperationResult",
    "OrchestratorError",
    "PartialFailureError",
    "ProjectBusyError",
    "ProjectDescriptor",
    "ProjectOrchestrator",
    "ProjectView",
    "ResultStatus",
    "ServiceSpec",
    "SpecUnavailableError",
    "VolumeMount",
]
