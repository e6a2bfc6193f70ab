"""
Domain error taxonomy.

Every error carries a stable machine-readable ``kind`` next to the
human-readable message so callers (webhook handler, future API layer)
can map them without string matching.
"""
from typing import Dict, Optional

from pydantic import ValidationError


class DomainError(ValueError):
    kind = "domain"

    def __init__(self, message: str, fields: Optional[Dict[str, str]] = None):
        super().__init__(message)
        self.message = message
        self.fields = fields or {}

    def to_dict(self) -> dict:
        payload = {"kind": self.kind, "message": self.message}
        if self.fields:
            payload["fields"] = self.fields
        return payload


class ValidationFailed(DomainError):
    """Malformed or inconsistent input. Never retried automatically."""
    kind = "validation"

    @classmethod
    def from_pydantic(cls, exc: ValidationError) -> "ValidationFailed":
        fields = {}
        for err in exc.errors():
            name = ".".join(str(part) for part in err["loc"]) or "__root__"
            fields.setdefault(name, err["msg"])
        return cls("Invalid input", fields)


class NotFound(DomainError):
    """Missing record, or a record the caller is not allowed to see."""
    kind = "not_found"


class ConflictError(DomainError):
    """Consistency guard tripped (e.g. second service invoice for a period)."""
    kind = "conflict"


class AccessDenied(PermissionError):
    kind = "authorization"

    def __init__(self, message: str = "Access denied"):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"kind": self.kind, "message": self.message}
