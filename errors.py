"""
Domain errors raised by the catalog, ratings, storage and identity layers.

Each error knows the HTTP status it maps to; main.py renders all of them as
{"detail": message, "errors": {field: message}}.
"""
from typing import Dict, Optional

from pydantic import ValidationError as PydanticValidationError


class MarketError(Exception):
    status_code = 500

    def __init__(self, message: str, errors: Optional[Dict[str, str]] = None):
        super().__init__(message)
        self.message = message
        self.errors = errors or {}

    def to_dict(self) -> dict:
        body = {"detail": self.message}
        if self.errors:
            body["errors"] = self.errors
        return body


class ValidationError(MarketError):
    status_code = 422

    def __init__(self, errors: Dict[str, str], message: str = "Validation failed"):
        super().__init__(message, errors)


class NotFoundError(MarketError):
    status_code = 404


class ForbiddenError(MarketError):
    status_code = 403


class ConflictError(MarketError):
    status_code = 409


class StorageError(MarketError):
    status_code = 502


class AuthenticationError(MarketError):
    status_code = 401


def field_errors(exc: PydanticValidationError, label: str = "") -> Dict[str, str]:
    """Flatten pydantic errors into a field -> message mapping (first message wins)."""
    out: Dict[str, str] = {}
    for err in exc.errors():
        loc = [str(p) for p in err.get("loc", ()) if p not in ("body", "query", "path", "form")]
        field = ".".join(loc) or "__root__"
        if field in out:
            continue
        if err.get("type") == "missing":
            out[field] = f"{label}{field.replace('_', ' ')} is required".strip().capitalize()
        else:
            msg = err.get("msg", "Invalid value")
            # pydantic prefixes custom validator messages with "Value error, "
            out[field] = msg[len("Value error, "):] if msg.startswith("Value error, ") else msg
    return out


def from_pydantic(exc: PydanticValidationError, label: str = "") -> ValidationError:
    return ValidationError(field_errors(exc, label))
