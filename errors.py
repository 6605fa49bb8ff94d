from __future__ import annotations
from typing import Any, Optional


class StoreError(Exception):
    """Base class for every failure the API reports to a client."""

    status_code = 500

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.field = field

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"message": self.message}
        if self.field:
            body["field"] = self.field
        return body


class ValidationError(StoreError):
    status_code = 400


class InsufficientStockError(ValidationError):
    pass


class AuthError(StoreError):
    status_code = 401


class NotFoundError(StoreError):
    status_code = 404


class ConflictError(StoreError):
    status_code = 409


class VersionConflictError(ConflictError):
    def __init__(self, message: str, current_version: int):
        super().__init__(message, field="expectedVersion")
        self.current_version = current_version

    def to_dict(self) -> dict[str, Any]:
        return {**super().to_dict(), "currentVersion": self.current_version}


class IdentityExhaustedError(StoreError):
    status_code = 500


class ContentionError(StoreError):
    status_code = 503


class CorruptionError(StoreError):
    status_code = 500
