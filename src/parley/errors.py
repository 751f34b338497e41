"""Failure taxonomy for message ingestion.

Components raise these; the pipeline engine turns them into a typed
``Failure`` on the result instead of letting them escape ``Pipeline.run``.
"""

from __future__ import annotations

from typing import Any


class PipelineError(Exception):
    """Base class for failures a pipeline stage can report."""

    kind = "error"

    def __init__(self, message: str, **detail: Any) -> None:
        super().__init__(message)
        self.message = message
        self.detail = detail


class ValidationError(PipelineError):
    """Malformed or missing input fields."""

    kind = "validation"

    def __init__(self, message: str, errors: list[dict[str, Any]] | None = None) -> None:
        super().__init__(message, errors=errors or [])
        self.errors = errors or []

    @property
    def fields(self) -> list[str]:
        """Names of the offending fields."""
        return [".".join(str(p) for p in e.get("loc", ())) for e in self.errors]


class PolicyRejection(PipelineError):
    """A named policy gate returned false."""

    kind = "policy"

    def __init__(self, policy: str) -> None:
        super().__init__(f"Policy failed: {policy}", policy=policy)
        self.policy = policy


class NotFoundError(PipelineError):
    """A referenced model does not exist or is inaccessible."""

    kind = "not_found"

    def __init__(self, model: str, **detail: Any) -> None:
        super().__init__(f"Model not found: {model}", model=model, **detail)
        self.model = model


class ConflictError(PipelineError):
    """Concurrent change or stale reference detected; safe to retry."""

    kind = "conflict"


class TransientInfrastructureError(PipelineError):
    """Storage or dispatch failure."""

    kind = "transient"
