"""Domain error base shared by every module.

Each domain error carries a *kind* (the category callers branch on), a
user-safe ``message`` and a JSON-safe ``details`` mapping.  Internal
details (tracebacks, SQL) never end up in either.
"""

from __future__ import annotations

from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional
from uuid import UUID


class ErrorKind(str, Enum):
    VALIDATION = "VALIDATION"
    NOT_FOUND = "NOT_FOUND"
    CONFLICT = "CONFLICT"
    PRECONDITION = "PRECONDITION"
    INSUFFICIENT_INVENTORY = "INSUFFICIENT_INVENTORY"
    CREDIT_LIMIT_EXCEEDED = "CREDIT_LIMIT_EXCEEDED"
    COLLABORATOR_FAILURE = "COLLABORATOR_FAILURE"
    TIMEOUT = "TIMEOUT"
    INTERNAL = "INTERNAL"


class DomainError(Exception):
    """Base class for errors raised by the service layer.

    Subclasses set ``kind`` and usually ``default_message``.  ``retryable``
    tells callers that the same request may succeed if sent again.
    """

    kind: ErrorKind = ErrorKind.INTERNAL
    default_message = "The operation could not be completed."
    retryable = False

    def __init__(self, message: Optional[str] = None, **details: Any) -> None:
        self.message = message or self.default_message
        self.details = details
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "message": self.message,
            "details": _json_safe(self.details),
        }


def _json_safe(value: Any) -> Any:
    if isinstance(value, (UUID, Decimal)):
        return str(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {key: _json_safe(val) for key, val in value.items()}
    if isinstance(value, (list, tuple)):
        return [_json_safe(item) for item in value]
    if hasattr(value, "to_dict"):
        return _json_safe(value.to_dict())
    return value
