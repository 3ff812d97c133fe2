from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional


class ChannelKey(str, Enum):
    AUTH_LOG = "auth_log"
    PERM_LOG = "perm_log"
    SPECIAL_ACTIVITY_LOG = "special_activity_log"


class NotificationKind(str, Enum):
    CODE_ISSUED = "code_issued"
    CODE_USED = "code_used"
    GRANT_CREATED = "grant_created"
    GRANT_REVOKED = "grant_revoked"
    GRANT_EXPIRED = "grant_expired"
    AUDIT_ENTRY = "audit_entry"
    ACTIVITY = "activity"


@dataclass(slots=True)
class AuthCode:
    code: str
    created_by: str
    reason: str
    created_at: int
    expires_at: int
    used: bool = False
    used_at: Optional[int] = None
    used_for_user_id: Optional[str] = None

    def is_expired(self, now: int) -> bool:
        return self.expires_at <= now

    def to_record(self) -> dict[str, Any]:
        return {
            "createdBy": self.created_by,
            "createdAt": self.created_at,
            "expiresAt": self.expires_at,
            "used": self.used,
            "usedAt": self.used_at,
            "usedForUserId": self.used_for_user_id,
            "reason": self.reason,
        }

    @classmethod
    def from_record(cls, code: str, record: dict[str, Any]) -> "AuthCode":
        return cls(
            code=code,
            created_by=str(record["createdBy"]),
            reason=record.get("reason", ""),
            created_at=int(record["createdAt"]),
            expires_at=int(record["expiresAt"]),
            used=bool(record.get("used", False)),
            used_at=record.get("usedAt"),
            # older files stored the target under "usedFor"
            used_for_user_id=record.get("usedForUserId", record.get("usedFor")),
        )


@dataclass(slots=True)
class Grant:
    user_id: str
    granted_by: str
    reason: str
    granted_at: int
    expires_at: int
    authcode: str

    def is_live(self, now: int) -> bool:
        return self.expires_at > now

    def to_record(self) -> dict[str, Any]:
        return {
            "grantedBy": self.granted_by,
            "grantedAt": self.granted_at,
            "expiresAt": self.expires_at,
            "reason": self.reason,
            "authcode": self.authcode,
        }

    @classmethod
    def from_record(cls, user_id: str, record: dict[str, Any]) -> "Grant":
        return cls(
            user_id=user_id,
            granted_by=str(record["grantedBy"]),
            reason=record.get("reason", ""),
            granted_at=int(record["grantedAt"]),
            expires_at=int(record["expiresAt"]),
            authcode=record.get("authcode", ""),
        )


@dataclass(slots=True)
class BotState:
    last_audit_id: Optional[str] = None

    def to_record(self) -> dict[str, Any]:
        return {"lastAuditId": self.last_audit_id}

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> "BotState":
        last = record.get("lastAuditId")
        return cls(last_audit_id=str(last) if last is not None else None)


@dataclass(slots=True)
class AuditEntry:
    id: str
    executor_id: Optional[str]
    action: str
    target_id: Optional[str]
    timestamp: int
    changes: list[dict] = field(default_factory=list)
    reason: Optional[str] = None


@dataclass(slots=True)
class Actor:
    """The user invoking a command, with the role ids they currently hold."""

    user_id: str
    role_ids: frozenset[str] = frozenset()


@dataclass(slots=True)
class Notification:
    kind: NotificationKind
    title: str
    timestamp: int
    fields: dict[str, str] = field(default_factory=dict)


__all__ = [
    "Actor",
    "AuditEntry",
    "AuthCode",
    "BotState",
    "ChannelKey",
    "Grant",
    "Notification",
    "NotificationKind",
]
