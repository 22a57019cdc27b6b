from __future__ import annotations

from typing import Any


class PipelineError(Exception):
    """Base class for sequence pipeline errors."""


class AdmissionError(PipelineError):
    """A generation request was rejected before any job was created."""

    def __init__(self, message: str, details: dict[str, Any] | None = None, status_code: int = 503):
        super().__init__(message)
        self.message = message
        self.details = dict(details or {})
        self.status_code = status_code

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"error": self.message}
        if self.details:
            payload["details"] = self.details
        return payload


class TransientWorkUnitError(PipelineError):
    """Raised by a render or encode primitive when the call may be retried."""


class FatalJobError(PipelineError):
    """A work unit failed for good; the job moves to the error state."""


class CircuitOpenError(FatalJobError):
    """Work was refused because recent units kept failing."""


class JobNotFoundError(PipelineError, LookupError):
    def __init__(self, job_id: str):
        super().__init__(f"Job not found: {job_id}")
        self.job_id = job_id


class ModelNotFoundError(PipelineError, LookupError):
    def __init__(self, model_id: str):
        super().__init__(f"Model not found: {model_id}")
        self.model_id = model_id
