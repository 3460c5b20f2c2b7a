from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from agora.config import Settings
from agora.logging import get_logger
from agora.service.devices import DeviceMetadata
from agora.service.errors import AuthenticationError, ConfigurationError
from agora.service.hashing import PasswordHashing
from agora.storage.models import Session, User

logger = get_logger(__name__)


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    access_expires_at: datetime
    refresh_expires_at: datetime


class TokenService:
    """Issues and checks HS256 access/refresh tokens and owns session rows."""

    def __init__(self, store, settings: Settings, hashing: Optional[PasswordHashing] = None) -> None:
        self.store = store
        self.settings = settings
        self.hashing = hashing or PasswordHashing()
        # Allowance for small clock skew across nodes
        self._clock_skew_leeway = timedelta(seconds=30)

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def _secret(self) -> bytes:
        if not self.settings.jwt_secret:
            raise ConfigurationError(
                "JWT_SECRET is not configured", detail={"setting": "JWT_SECRET"}
            )
        return self.settings.jwt_secret.encode()

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(self._secret(), signing_input.encode(), hashlib.sha256).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(self, token: str) -> Optional[dict[str, Any]]:
        """Return the payload of a well-signed, unexpired token, else ``None``."""
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        # a token must not pick its own algorithm
        try:
            header = json.loads(self._decode_segment(header_b64))
            if header.get("alg") != "HS256":
                logger.warning("jwt_invalid_algorithm", alg=header.get("alg"))
                return None
        except Exception:
            logger.warning("jwt_header_decode_failed")
            return None

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig, sig_b64):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except Exception as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if payload.get("iss") != self.settings.jwt_issuer:
            return None
        if payload.get("aud") != self.settings.jwt_audience:
            return None
        try:
            exp_ts = float(payload.get("exp"))
        except (TypeError, ValueError):
            return None
        if exp_ts <= time.time() - self._clock_skew_leeway.total_seconds():
            return None
        return payload

    def generate_tokens(
        self, user_id: str, email: str, *, session_id: Optional[str] = None
    ) -> TokenPair:
        now = self._now()
        access_exp = now + timedelta(minutes=self.settings.access_token_ttl_minutes)
        refresh_exp = now + timedelta(minutes=self.settings.refresh_token_ttl_minutes)
        base = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": user_id,
            "email": email,
            "iat": int(now.timestamp()),
        }
        if session_id:
            base["sid"] = session_id
        access_token = self._encode_jwt(
            {
                **base,
                "token_type": "access",
                "jti": str(uuid.uuid4()),
                "exp": int(access_exp.timestamp()),
            }
        )
        refresh_token = self._encode_jwt(
            {
                **base,
                "token_type": "refresh",
                "jti": str(uuid.uuid4()),
                "exp": int(refresh_exp.timestamp()),
            }
        )
        return TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            access_expires_at=access_exp,
            refresh_expires_at=refresh_exp,
        )

    def store_refresh_token(
        self,
        user_id: str,
        raw_refresh_token: str,
        existing_session_id: Optional[str],
        metadata: DeviceMetadata,
    ) -> Session:
        """Persist the hash of ``raw_refresh_token`` on the user's session row.

        Reuses the cookie session when it is live and owned by the user.
        Otherwise the user's current live session is revoked and a new row is
        created, so earlier devices stay on record for new-device detection.
        Revoked rows are never brought back.
        """
        now = self._now()
        hashed = self.hashing.hash(raw_refresh_token)
        target: Optional[Session] = None
        if existing_session_id:
            candidate = self.store.get_session(existing_session_id)
            if candidate and candidate.user_id == user_id and not candidate.revoked:
                target = candidate
        if target is None:
            with self.store.transaction():
                previous = self.store.find_active_session(user_id)
                if previous is not None:
                    self.store.revoke_session(previous.id)
                session = self.store.create_session(
                    user_id,
                    ttl_minutes=self.settings.refresh_token_ttl_minutes,
                    refresh_token_hashed=hashed,
                    device_name=metadata.device_name,
                    user_agent=metadata.user_agent,
                    ip_address=metadata.ip_address,
                    now=now,
                )
            logger.info(
                "session_created",
                user_id=user_id,
                session_id=session.id,
                replaced_session_id=previous.id if previous else None,
            )
            return session
        session = self.store.update_session(
            target.id,
            refresh_token_hashed=hashed,
            device_name=metadata.device_name,
            user_agent=metadata.user_agent,
            ip_address=metadata.ip_address,
            last_login_at=now,
            expires_at=now + timedelta(minutes=self.settings.refresh_token_ttl_minutes),
        )
        logger.info("session_refreshed", user_id=user_id, session_id=target.id)
        return session

    def generate_code(self) -> str:
        length = self.settings.code_length
        return str(secrets.randbelow(10**length)).zfill(length)

    def decode_refresh(self, refresh_token: str) -> dict[str, Any]:
        payload = self._decode_jwt(refresh_token)
        if not payload or payload.get("token_type") != "refresh" or not payload.get("sub"):
            raise AuthenticationError("invalid refresh token")
        return payload

    def validate(self, access_token: str) -> User:
        """Resolve an access token to its user.

        Any failure, including store errors, surfaces as ``AuthenticationError``
        so callers never learn why a credential was rejected.
        """
        try:
            payload = self._decode_jwt(access_token or "")
            if not payload or payload.get("token_type") != "access":
                raise AuthenticationError("invalid access token")
            user = self.store.get_user(str(payload.get("sub")))
            if not user:
                raise AuthenticationError("user no longer exists")
            if not self.store.find_active_session(user.id):
                raise AuthenticationError("no active session")
            return user
        except (AuthenticationError, ConfigurationError):
            raise
        except Exception as exc:
            logger.error("token_validation_failed", error=str(exc))
            raise AuthenticationError("invalid access token")
