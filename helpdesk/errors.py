from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional

UNAUTHORIZED_MESSAGE = "Unauthorized"


class HelpdeskError(Exception):
    """Base class for errors reported to callers as an operation's ``error``."""

    kind = "error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(HelpdeskError):
    """Raised when input is missing or malformed, before any policy check."""

    kind = "validation"

    def __init__(self, field_name: str, message: str | None = None):
        super().__init__(message or f"{field_name} is required")
        self.field = field_name


class Unauthorized(HelpdeskError):
    kind = "unauthorized"

    def __init__(self):
        super().__init__(UNAUTHORIZED_MESSAGE)


class NotFound(HelpdeskError):
    kind = "not_found"


class ConflictError(HelpdeskError):
    kind = "conflict"


class DependencyError(HelpdeskError):
    """Raised by notifier and audit internals. Logged where it happens, never returned."""

    kind = "dependency"


@dataclass
class OperationResult:
    """Outcome of a guarded operation: either ``data`` or ``error``, never both."""

    success: bool
    data: dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    kind: Optional[str] = None

    @classmethod
    def ok(cls, **data: Any) -> "OperationResult":
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, exc: HelpdeskError) -> "OperationResult":
        return cls(success=False, error=exc.message, kind=exc.kind)

    @classmethod
    def failure(cls, message: str) -> "OperationResult":
        return cls(success=False, error=message, kind="internal")

    def to_dict(self) -> dict[str, Any]:
        if self.success:
            return {"success": True, "data": self.data}
        return {"error": self.error, "kind": self.kind}
