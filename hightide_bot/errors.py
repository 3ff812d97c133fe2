from __future__ import annotations

from enum import Enum
from typing import Optional


class CodeRejection(str, Enum):
    INVALID_CODE = "invalid_code"
    ALREADY_USED = "already_used"
    EXPIRED = "expired"


REJECTION_MESSAGES = {
    CodeRejection.INVALID_CODE: "Invalid authorization code.",
    CodeRejection.ALREADY_USED: "Authorization code has already been used.",
    CodeRejection.EXPIRED: "Authorization code has expired.",
}


class PermissionBotError(Exception):
    """Base class for errors surfaced to command callers."""


class CodeRejected(PermissionBotError):
    def __init__(self, reason: CodeRejection) -> None:
        super().__init__(REJECTION_MESSAGES[reason])
        self.reason = reason


class ValidationError(PermissionBotError):
    pass


class InvalidTargetId(ValidationError):
    def __init__(self, value: str) -> None:
        super().__init__(f"Invalid user ID: {value!r}. Expected a numeric Discord ID.")
        self.value = value


class InvalidDuration(ValidationError):
    def __init__(self, value: str, *, limit: Optional[str] = None) -> None:
        if limit is None:
            message = f"Invalid duration: {value!r}. Use values like 10s, 10m, 2h, 4d."
        else:
            message = f"Invalid duration: {value!r}. The longest allowed grant is {limit}."
        super().__init__(message)
        self.value = value
        self.limit = limit


class MissingArgument(ValidationError):
    def __init__(self, name: str) -> None:
        super().__init__(f"Missing required argument: {name}.")
        self.name = name


class NotAuthorized(PermissionBotError):
    pass


class ExternalActionFailed(PermissionBotError):
    pass


__all__ = [
    "CodeRejected",
    "CodeRejection",
    "ExternalActionFailed",
    "InvalidDuration",
    "InvalidTargetId",
    "MissingArgument",
    "NotAuthorized",
    "PermissionBotError",
    "ValidationError",
]
