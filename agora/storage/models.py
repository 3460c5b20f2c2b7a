from __future__ import annotations

import hmac
import uuid
from dataclasses import dataclass, field, replace
from datetime import date, datetime, timedelta, timezone
from enum import Enum
from typing import List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UserStatus(str, Enum):
    ACTIVE = "ACTIVE"
    DISABLED = "DISABLED"
    RESTRICTED = "RESTRICTED"
    CHECKPOINT = "CHECKPOINT"
    BANNED = "BANNED"


class Gender(str, Enum):
    MALE = "MALE"
    FEMALE = "FEMALE"
    OTHER = "OTHER"


class CodeType(str, Enum):
    """Purpose of a one-time code; at most one live code per user and purpose."""

    VERIFICATION = "VERIFICATION"
    RESETPASSWORD = "RESETPASSWORD"
    REACTIVE = "REACTIVE"
    RECOVERY = "RECOVERY"


@dataclass
class User:
    id: str
    profile_id: str
    primary_email: str
    display_name: str
    hashed_password: Optional[str] = None
    secondary_emails: List[str] = field(default_factory=list)
    birthday: Optional[date] = None
    gender: Optional[Gender] = None
    status: UserStatus = UserStatus.ACTIVE
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def public(self) -> "User":
        """Copy of the record with the password hash stripped."""
        return replace(self, hashed_password=None, secondary_emails=list(self.secondary_emails))


@dataclass
class Session:
    id: str
    user_id: str
    created_at: datetime
    last_login_at: datetime
    expires_at: datetime
    revoked: bool = False
    refresh_token_hashed: Optional[str] = None
    device_name: Optional[str] = None
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None

    @classmethod
    def new(
        cls,
        user_id: str,
        *,
        ttl_minutes: int,
        refresh_token_hashed: Optional[str] = None,
        device_name: Optional[str] = None,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> "Session":
        now = now or utcnow()
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            created_at=now,
            last_login_at=now,
            expires_at=now + timedelta(minutes=ttl_minutes),
            refresh_token_hashed=refresh_token_hashed,
            device_name=device_name,
            user_agent=user_agent,
            ip_address=ip_address,
        )


@dataclass
class Code:
    user_id: str
    type: CodeType
    tokens: List[str]
    created_at: datetime
    expires_at: datetime
    last_attempt_at: Optional[datetime] = None

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    def matches(self, token: str) -> bool:
        given = token.encode()
        return any(hmac.compare_digest(candidate.encode(), given) for candidate in self.tokens)
