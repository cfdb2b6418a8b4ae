from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ChannelType(str, Enum):
    EMAIL = "email"
    PHONE = "phone"


class CodePurpose(str, Enum):
    VERIFY = "verify"
    RESET = "reset"


class AdminScale(str, Enum):
    MINOR = "minor"
    MAJOR = "major"


class AuthProvider(str, Enum):
    TELEGRAM = "tg"


class _Unset:
    """Marker for fields a partial update leaves untouched."""

    _instance: Optional["_Unset"] = None

    def __new__(cls) -> "_Unset":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "UNSET"

    def __bool__(self) -> bool:
        return False


UNSET: Any = _Unset()


@dataclass
class User:
    id: str
    username: str
    password_hash: str
    email: Optional[str] = None
    phone: Optional[str] = None
    email_verified: bool = False
    phone_verified: bool = False
    is_deleted: bool = False
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def contact(self, channel: ChannelType) -> Optional[str]:
        return self.email if channel == ChannelType.EMAIL else self.phone

    def is_verified(self, channel: ChannelType) -> bool:
        return self.email_verified if channel == ChannelType.EMAIL else self.phone_verified

    @property
    def has_verified_channel(self) -> bool:
        return self.email_verified or self.phone_verified


@dataclass
class NewUser:
    username: str
    password: str
    email: Optional[str] = None
    phone: Optional[str] = None


@dataclass
class UserUpdate:
    """Partial update; ``UNSET`` fields are skipped and ``None`` clears a column."""

    username: Any = UNSET
    email: Any = UNSET
    phone: Any = UNSET
    password_hash: Any = UNSET
    email_verified: Any = UNSET
    phone_verified: Any = UNSET
    is_deleted: Any = UNSET

    FIELDS = (
        "username",
        "email",
        "phone",
        "password_hash",
        "email_verified",
        "phone_verified",
        "is_deleted",
    )

    def changes(self) -> Dict[str, Any]:
        return {
            name: getattr(self, name)
            for name in self.FIELDS
            if getattr(self, name) is not UNSET
        }

    @classmethod
    def verified(cls, channel: ChannelType) -> "UserUpdate":
        if channel == ChannelType.EMAIL:
            return cls(email_verified=True)
        return cls(phone_verified=True)


@dataclass
class VerificationCode:
    code: str
    channel: ChannelType
    value: str
    ip_addr: Optional[str] = None
    user_id: Optional[str] = None
    purpose: CodePurpose = CodePurpose.VERIFY
    created_at: datetime = field(default_factory=utcnow)

    def to_json(self) -> str:
        return json.dumps(
            {
                "code": self.code,
                "channel": self.channel.value,
                "value": self.value,
                "ip_addr": self.ip_addr,
                "user_id": self.user_id,
                "purpose": self.purpose.value,
                "created_at": self.created_at.isoformat(),
            }
        )

    @classmethod
    def from_json(cls, raw: str) -> "VerificationCode":
        data = json.loads(raw)
        created_raw = data.get("created_at")
        created_at = utcnow()
        if isinstance(created_raw, str):
            try:
                created_at = datetime.fromisoformat(created_raw)
            except ValueError:
                pass
        return cls(
            code=data["code"],
            channel=ChannelType(data["channel"]),
            value=data["value"],
            ip_addr=data.get("ip_addr"),
            user_id=data.get("user_id"),
            purpose=CodePurpose(data.get("purpose", CodePurpose.VERIFY.value)),
            created_at=created_at,
        )


@dataclass
class ExternalProfile:
    """Identity asserted by a login provider.

    The transport has already checked the provider's signature over the
    payload; ``username`` is only a hint for a first-time account.
    """

    provider: AuthProvider
    external_id: str
    username: str


@dataclass
class ExternalIdentity:
    provider: AuthProvider
    external_id: str
    user_id: str
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class AdminGrant:
    user_id: str
    username: str
    scale: AdminScale
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    expires_at: datetime
    token_type: str = "bearer"


@dataclass
class TokenClaims:
    subject: str
    token_id: str
    issued_at: datetime
    expires_at: datetime
    admin_scale: Optional[AdminScale] = None


@dataclass
class AuthContext:
    user_id: str
    admin_scale: Optional[AdminScale] = None

    @property
    def is_admin(self) -> bool:
        return self.admin_scale is not None


def new_user_id() -> str:
    return str(uuid.uuid4())
