"""Typed failures raised by the CMS core.

The boundary layer maps them to HTTP responses; the core itself never
logs or swallows them outside of bulk operations.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Dict, Mapping, Optional

if TYPE_CHECKING:
    from spacecms.db.models import LockInfo


class CMSError(Exception):
    status_code = 500
    default_code = "CMS_ERROR"

    def __init__(self, msg: str, code: Optional[str] = None):
        super().__init__(msg)
        self.message = msg
        self.code = code or self.default_code

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.code, "message": self.message}


class ValidationFailed(CMSError):
    """One or more fields failed schema validation."""

    status_code = 422
    default_code = "VALIDATION_FAILED"

    def __init__(self, errors: Mapping[str, str], msg: str = "Content validation failed"):
        super().__init__(msg)
        self.errors = dict(errors)

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["errors"] = self.errors
        return data


class LockConflict(CMSError):
    """Mutation blocked by another editor's active lock."""

    status_code = 409
    default_code = "LOCK_CONFLICT"

    def __init__(self, lock_info: Optional["LockInfo"], msg: str = "Story is locked by another user"):
        super().__init__(msg)
        self.lock_info = lock_info

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["lock_info"] = self.lock_info.to_dict() if self.lock_info else None
        return data


class NotFound(CMSError):
    status_code = 404
    default_code = "NOT_FOUND"


class InvalidArgument(CMSError):
    status_code = 400
    default_code = "INVALID_ARGUMENT"
