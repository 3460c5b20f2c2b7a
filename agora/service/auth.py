from __future__ import annotations

import asyncio
import contextlib
import math
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Callable, List, Optional, Protocol

from agora.config import Settings
from agora.logging import get_logger, redact_email
from agora.service.devices import DeviceMetadata, describe_device
from agora.service.email import EmailService
from agora.service.errors import (
    AuthenticationError,
    CodeCooldownError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
)
from agora.service.hashing import PasswordHashing
from agora.service.snowflake import Snowflake
from agora.service.tokens import TokenPair, TokenService
from agora.storage.errors import ConstraintViolation
from agora.storage.models import Code, CodeType, Gender, Session, User

logger = get_logger(__name__)


class AuthStore(Protocol):
    def create_user(
        self,
        primary_email: str,
        hashed_password: str,
        display_name: str,
        *,
        profile_id: str,
        birthday: Optional[date] = None,
        gender: Optional[Gender] = None,
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_primary_email(self, email: str) -> Optional[User]: ...

    def add_secondary_email(self, user_id: str, email: str) -> Optional[User]: ...

    def update_user_password(self, user_id: str, hashed_password: str) -> Optional[User]: ...

    def delete_user(self, user_id: str) -> bool: ...

    def create_session(
        self,
        user_id: str,
        *,
        ttl_minutes: int,
        refresh_token_hashed: Optional[str] = None,
        device_name: Optional[str] = None,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Session: ...

    def get_session(self, session_id: str) -> Optional[Session]: ...

    def update_session(self, session_id: str, **fields) -> Optional[Session]: ...

    def find_session_by_device(
        self, user_id: str, device_name: str, ip_address: str
    ) -> Optional[Session]: ...

    def find_active_session(self, user_id: str) -> Optional[Session]: ...

    def revoke_session(self, session_id: str) -> Optional[Session]: ...

    def upsert_code(
        self,
        user_id: str,
        code_type: CodeType,
        tokens: List[str],
        *,
        expires_at: datetime,
        now: Optional[datetime] = None,
    ) -> Code: ...

    def get_code(self, user_id: str, code_type: CodeType) -> Optional[Code]: ...

    def find_code_by_token(self, token: str, code_type: CodeType) -> List[Code]: ...

    def touch_code_attempt(
        self, user_id: str, code_type: CodeType, now: datetime
    ) -> Optional[Code]: ...

    def delete_code(self, user_id: str, code_type: CodeType) -> bool: ...

    def transaction(self) -> contextlib.AbstractContextManager: ...


@dataclass
class LoginResult:
    user: User
    tokens: TokenPair
    session: Session


def normalize_email(email: str) -> str:
    return email.strip().lower()


class AuthService:
    """Account workflows: registration, sign-in, sign-out and password recovery."""

    def __init__(
        self,
        store: AuthStore,
        settings: Settings,
        *,
        email: Optional[EmailService] = None,
        tokens: Optional[TokenService] = None,
        hashing: Optional[PasswordHashing] = None,
        snowflake: Optional[Snowflake] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.hashing = hashing or PasswordHashing()
        self.tokens = tokens or TokenService(store, settings, self.hashing)
        self.email = email or EmailService.from_settings(settings)
        self.snowflake = snowflake or Snowflake()
        self.logger = logger

    def _now(self) -> datetime:
        """Timezone-aware UTC helper to avoid naive datetime usage."""

        return datetime.now(timezone.utc)

    async def _notify(self, send: Callable[..., bool], *args) -> bool:
        """Run a blocking email send off the event loop; failures only log."""
        try:
            sent = await asyncio.to_thread(send, *args)
        except Exception as exc:
            self.logger.error("notification_failed", kind=send.__name__, error=str(exc))
            return False
        if not sent:
            self.logger.warning("notification_not_sent", kind=send.__name__)
        return bool(sent)

    async def register(
        self,
        email: str,
        password: str,
        display_name: str,
        birthday: Optional[date] = None,
        gender: Optional[Gender] = None,
    ) -> User:
        email = normalize_email(email)
        if self.store.get_user_by_primary_email(email):
            raise ConflictError("This email has been registered", detail={"field": "email"})
        hashed = self.hashing.hash(password)
        try:
            user = self.store.create_user(
                email,
                hashed,
                display_name,
                profile_id=self.snowflake.generate(),
                birthday=birthday,
                gender=gender,
            )
        except ConstraintViolation as exc:
            raise ConflictError("This email has been registered", detail=exc.detail)
        self.logger.info("user_registered", user_id=user.id, profile_id=user.profile_id)
        return user

    async def login(
        self,
        email: str,
        password: str,
        ip: Optional[str],
        user_agent: Optional[str],
        session_id: Optional[str] = None,
    ) -> LoginResult:
        email = normalize_email(email)
        user = self.store.get_user_by_primary_email(email)
        if not user:
            raise NotFoundError("User is not found")
        if not self.hashing.verify(user.hashed_password, password):
            self.logger.warning("login_failed", user_id=user.id, reason="password_mismatch")
            raise AuthenticationError("Password is not matched")

        metadata = describe_device(user_agent, ip or "")
        known = self.store.find_session_by_device(
            user.id, metadata.device_name, metadata.ip_address
        )
        if known is None:
            self.logger.info(
                "new_device_detected", user_id=user.id, device=metadata.device_name, ip=ip
            )
            await self._notify(
                self.email.send_detect_other_device,
                user.primary_email,
                ip,
                user_agent,
                metadata.device_name,
            )

        pair = self.tokens.generate_tokens(user.id, user.primary_email)
        session = self.tokens.store_refresh_token(
            user.id, pair.refresh_token, session_id, metadata
        )
        self.logger.info("login_succeeded", user_id=user.id, session_id=session.id)
        return LoginResult(user=user.public(), tokens=pair, session=session)

    async def logout(
        self, session_id: Optional[str] = None, cookie_session_id: Optional[str] = None
    ) -> Session:
        sid = session_id or cookie_session_id
        if not sid:
            raise NotFoundError("Session ID is required for logout")
        session = self.store.revoke_session(sid)
        if not session:
            raise NotFoundError("Session is not found")
        self.logger.info("logout_succeeded", user_id=session.user_id, session_id=sid)
        return session

    async def refresh(
        self, refresh_token: str, session_id: Optional[str] = None
    ) -> LoginResult:
        payload = self.tokens.decode_refresh(refresh_token)
        sid = payload.get("sid") or session_id
        session = self.store.get_session(sid) if sid else None
        if (
            not session
            or session.revoked
            or session.user_id != payload.get("sub")
            or session.expires_at <= self._now()
            or not self.hashing.verify(session.refresh_token_hashed, refresh_token)
        ):
            raise AuthenticationError("Refresh token is not valid for this session")
        user = self.store.get_user(session.user_id)
        if not user:
            raise AuthenticationError("User not found")
        pair = self.tokens.generate_tokens(
            user.id, user.primary_email, session_id=session.id
        )
        metadata = DeviceMetadata(
            device_name=session.device_name or describe_device(session.user_agent, None).device_name,
            user_agent=session.user_agent,
            ip_address=session.ip_address,
        )
        session = self.tokens.store_refresh_token(
            user.id, pair.refresh_token, session.id, metadata
        )
        self.logger.info("tokens_rotated", user_id=user.id, session_id=session.id)
        return LoginResult(user=user.public(), tokens=pair, session=session)

    async def me(self, access_token: str) -> User:
        return self.tokens.validate(access_token).public()

    async def change_password(
        self, user_id: str, old_password: str, new_password: str
    ) -> User:
        user = self.store.get_user(user_id)
        if not user:
            raise NotFoundError("User not found")
        if not self.hashing.verify(user.hashed_password, old_password):
            raise AuthenticationError("Password is not matched")
        updated = self.store.update_user_password(user_id, self.hashing.hash(new_password))
        if not updated:
            raise NotFoundError("User not found")
        self.logger.info("password_changed", user_id=user_id)
        await self._notify(self.email.send_notification_reset_password, updated.primary_email)
        return updated.public()

    async def _issue_code(self, email: str, code_type: CodeType) -> Code:
        email = normalize_email(email)
        user = self.store.get_user_by_primary_email(email)
        if not user:
            raise NotFoundError("User is not found")
        now = self._now()
        code = self.store.upsert_code(
            user.id,
            code_type,
            [self.tokens.generate_code()],
            expires_at=now + timedelta(seconds=self.settings.code_ttl_seconds),
            now=now,
        )
        self.logger.info(
            "one_time_code_issued",
            user_id=user.id,
            purpose=code_type.value,
            to=redact_email(email),
        )
        await self._notify(self.email.send_reset_password_account, email, code.tokens[0])
        return code

    async def recovery_account(self, email: str) -> Code:
        return await self._issue_code(email, CodeType.RECOVERY)

    async def forgot_password(self, email: str) -> Code:
        return await self._issue_code(email, CodeType.VERIFICATION)

    async def confirm_recovery_account(
        self, email: str, code: str, new_password: str
    ) -> User:
        email = normalize_email(email)
        now = self._now()
        user = self.store.get_user_by_primary_email(email)
        row: Optional[Code] = None
        if user:
            row = next(
                (
                    c
                    for c in self.store.find_code_by_token(code, CodeType.RECOVERY)
                    if c.user_id == user.id
                ),
                None,
            )
        if row is not None:
            retry = timedelta(seconds=self.settings.code_retry_seconds)
            if row.last_attempt_at and now - row.last_attempt_at < retry:
                self.logger.warning("recovery_confirm_throttled", user_id=row.user_id)
                remaining = retry - (now - row.last_attempt_at)
                raise CodeCooldownError(math.ceil(remaining.total_seconds()))
            self.store.touch_code_attempt(row.user_id, CodeType.RECOVERY, now)
        if row is None or row.is_expired(now):
            raise AuthenticationError("Code is not matched or expired")

        hashed = self.hashing.hash(new_password)
        with self.store.transaction():
            updated = self.store.update_user_password(row.user_id, hashed)
            if not updated:
                raise NotFoundError("User not found")
            # the RECOVERY row is left in place and expires on its own
            self.store.delete_code(row.user_id, CodeType.VERIFICATION)
        self.logger.info("account_recovered", user_id=row.user_id)
        await self._notify(self.email.send_notification_reset_password, email)
        return updated.public()

    async def verify_token_forgot_password(
        self, user_id: str, token: str, new_password: str, email: str
    ) -> User:
        now = self._now()
        row = self.store.get_code(user_id, CodeType.VERIFICATION)
        if not row or row.is_expired(now):
            raise NotFoundError("Code is not available or expired")
        if not row.matches(token):
            raise ForbiddenError("Code does not match")
        hashed = self.hashing.hash(new_password)
        with self.store.transaction():
            updated = self.store.update_user_password(user_id, hashed)
            if not updated:
                raise NotFoundError("User not found")
            self.store.delete_code(user_id, CodeType.VERIFICATION)
        self.logger.info("password_reset", user_id=user_id)
        await self._notify(self.email.send_notification_reset_password, email)
        return updated.public()
