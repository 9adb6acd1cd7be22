from __future__ import annotations

import json
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_dt(value: Any) -> datetime:
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(str(value))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def format_dt(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


class Role(str, Enum):
    """Closed set of identity variants; each maps to its own identity table."""

    SUPER_ADMIN = "super_admin"
    ADMIN = "admin"
    STAFF = "staff"
    USER = "user"


class TokenClass(str, Enum):
    ACCESS = "access"
    REFRESH = "refresh"


@dataclass(frozen=True)
class Identity:
    id: str
    role: Role
    name: str = ""
    username: str = ""
    email: str = ""
    permissions: FrozenSet[str] = frozenset()
    is_active: bool = True


@dataclass(frozen=True)
class DeviceInfo:
    user_agent: str = ""
    ip_address: str = ""


@dataclass
class Session:
    """One authenticated device/browser instance.

    Token fields hold sha256 digests, never the raw tokens.
    """

    id: str
    user_id: str
    role: Role
    access_token_hash: str
    refresh_token_hash: str
    created_at: datetime
    last_used_at: datetime
    expires_at: datetime
    user_agent: str = ""
    ip_address: str = ""
    is_active: bool = True

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["role"] = self.role.value
        data["created_at"] = format_dt(self.created_at)
        data["last_used_at"] = format_dt(self.last_used_at)
        data["expires_at"] = format_dt(self.expires_at)
        return data

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), separators=(",", ":"))

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Session":
        return cls(
            id=str(data["id"]),
            user_id=str(data["user_id"]),
            role=Role(data.get("role", Role.USER.value)),
            access_token_hash=data.get("access_token_hash") or "",
            refresh_token_hash=data.get("refresh_token_hash") or "",
            created_at=_parse_dt(data["created_at"]),
            last_used_at=_parse_dt(data.get("last_used_at") or data["created_at"]),
            expires_at=_parse_dt(data["expires_at"]),
            user_agent=data.get("user_agent") or "",
            ip_address=data.get("ip_address") or "",
            is_active=bool(data.get("is_active", True)),
        )

    @classmethod
    def from_json(cls, raw: str) -> "Session":
        return cls.from_dict(json.loads(raw))


@dataclass
class SecurityEvent:
    kind: str
    actor_id: str
    actor_role: Optional[str] = None
    session_id: Optional[str] = None
    ip_address: str = ""
    user_agent: str = ""
    timestamp: datetime = field(default_factory=utcnow)
    metadata: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def to_json(self) -> str:
        data = asdict(self)
        data["timestamp"] = format_dt(self.timestamp)
        return json.dumps(data, separators=(",", ":"), default=str)

    @classmethod
    def from_json(cls, raw: str) -> "SecurityEvent":
        data = json.loads(raw)
        return cls(
            id=data["id"],
            kind=data["kind"],
            actor_id=str(data["actor_id"]),
            actor_role=data.get("actor_role"),
            session_id=data.get("session_id"),
            ip_address=data.get("ip_address") or "",
            user_agent=data.get("user_agent") or "",
            timestamp=_parse_dt(data["timestamp"]),
            metadata=data.get("metadata") or {},
        )
