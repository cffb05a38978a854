"""
Error taxonomy for the project lifecycle orchestrator.

Pre-condition errors (``InvalidSpecError``, ``ProjectBusyError``,
``SpecUnavailableError``, ``NotFoundError``) are raised before any engine call
is made. Sub-operation failures during Up/Down/Scale are never raised directly:
they are collected into an ``OperationResult`` and surface as
``PartialFailureError`` only when the caller asks for it.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from harbormaster.core.models import OperationResult


class OrchestratorError(Exception):
    """Base class for every error raised by the orchestrator core."""


class InvalidSpecError(OrchestratorError, ValueError):
    """Bad project/service name or malformed desired-state payload."""


class NotFoundError(OrchestratorError):
    def __init__(self, project: str, service: Optional[str] = None) -> None:
        self.project = project
        self.service = service
        if service:
            msg = f"service '{service}' of project '{project}' not found"
        else:
            msg = f"project '{project}' not found"
        super().__init__(msg)


class ProjectBusyError(OrchestratorError):
    def __init__(self, project: str, operation: Optional[str] = None) -> None:
        self.project = project
        self.operation = operation
        running = f" ({operation} in progress)" if operation else ""
        super().__init__(f"project '{project}' is busy{running}")


class SpecUnavailableError(OrchestratorError):
    def __init__(self, project: str, service: str) -> None:
        self.project = project
        self.service = service
        super().__init__(
            f"no recorded spec for service '{service}' of project '{project}'; "
            "bring the project up first"
        )


class PartialFailureError(OrchestratorError):
    """Raised by ``OperationResult.raise_for_status`` for non-applied results."""

    def __init__(self, result: "OperationResult") -> None:
        self.result = result
        failed = result.failed
        super().__init__(
            f"{result.operation} on project '{result.project}' {result.status.value}: "
            f"{len(result.succeeded)} succeeded, {len(failed)} failed"
        )

    @property
    def succeeded(self):
        return self.result.succeeded

    @property
    def failed(self):
        return self.result.failed


class OperationCancelledError(OrchestratorError):
    """The caller's context was cancelled before the engine call was issued."""


class DeadlineExceededError(OperationCancelledError):
    """The caller's deadline passed before the engine call was issued."""


# -------- engine-level errors --------

class EngineUnavailableError(OrchestratorError):
    """The container engine cannot be reached."""


class EngineError(OrchestratorError):
    code = "engine-error"

    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        self.status_code = status_code
        super().__init__(message)


class EngineNotFoundError(EngineError):
    code = "not-found"


class EngineConflictError(EngineError):
    code = "conflict"


class EngineAlreadyExistsError(EngineConflictError):
    code = "already-exists"
