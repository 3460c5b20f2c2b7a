from __future__ import annotations

import contextlib
import copy
import json
import threading
import uuid
from datetime import date, datetime
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Tuple

from agora.logging import get_logger
from agora.storage.errors import ConstraintViolation
from agora.storage.models import (
    Code,
    CodeType,
    Gender,
    Session,
    User,
    UserStatus,
    utcnow,
)

_SESSION_FIELDS = {
    "revoked",
    "refresh_token_hashed",
    "device_name",
    "user_agent",
    "ip_address",
    "last_login_at",
    "expires_at",
}


class MemoryStore:
    """In-process store persisted to a JSON file under ``fs_root``.

    Used by the test suite and for local development without Postgres.
    """

    def __init__(self, fs_root: str = "/tmp/agora") -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.sessions: Dict[str, Session] = {}
        self.codes: Dict[Tuple[str, CodeType], Code] = {}
        # RLock so store methods can be called inside transaction()
        self._data_lock = threading.RLock()
        self._tx_depth = 0
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    @contextlib.contextmanager
    def transaction(self) -> Iterator["MemoryStore"]:
        """Run several writes atomically; all of them are undone on error."""
        with self._data_lock:
            snapshot = (
                copy.deepcopy(self.users),
                copy.deepcopy(self.sessions),
                copy.deepcopy(self.codes),
            )
            self._tx_depth += 1
            try:
                yield self
            except BaseException:
                self.users, self.sessions, self.codes = snapshot
                self.logger.warning("memory_transaction_rolled_back")
                raise
            finally:
                self._tx_depth -= 1
            self._persist_state()

    # users
    def create_user(
        self,
        primary_email: str,
        hashed_password: str,
        display_name: str,
        *,
        profile_id: str,
        birthday: Optional[date] = None,
        gender: Optional[Gender] = None,
        status: UserStatus = UserStatus.ACTIVE,
    ) -> User:
        with self._data_lock:
            if self._email_in_use(primary_email):
                raise ConstraintViolation(
                    "email already exists", {"field": "primary_email"}
                )
            user = User(
                id=str(uuid.uuid4()),
                profile_id=profile_id,
                primary_email=primary_email,
                display_name=display_name,
                hashed_password=hashed_password,
                birthday=birthday,
                gender=gender,
                status=status,
            )
            self.users[user.id] = user
            self._persist_state()
            return user

    def _email_in_use(self, email: str) -> bool:
        return any(
            u.primary_email == email or email in u.secondary_emails
            for u in self.users.values()
        )

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def get_user_by_primary_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            return next(
                (u for u in self.users.values() if u.primary_email == email), None
            )

    def add_secondary_email(self, user_id: str, email: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            if self._email_in_use(email):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user.secondary_emails.append(email)
            user.updated_at = utcnow()
            self._persist_state()
            return user

    def update_user_password(
        self, user_id: str, hashed_password: str
    ) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.hashed_password = hashed_password
            user.updated_at = utcnow()
            self._persist_state()
            return user

    def delete_user(self, user_id: str) -> bool:
        with self._data_lock:
            if self.users.pop(user_id, None) is None:
                return False
            for sess_id, sess in list(self.sessions.items()):
                if sess.user_id == user_id:
                    self.sessions.pop(sess_id, None)
            for key in [k for k in self.codes if k[0] == user_id]:
                self.codes.pop(key, None)
            self._persist_state()
            return True

    # sessions
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
    ) -> Session:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            sess = Session.new(
                user_id,
                ttl_minutes=ttl_minutes,
                refresh_token_hashed=refresh_token_hashed,
                device_name=device_name,
                user_agent=user_agent,
                ip_address=ip_address,
                now=now,
            )
            self.sessions[sess.id] = sess
            self._persist_state()
            return sess

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            return self.sessions.get(session_id)

    def update_session(self, session_id: str, **fields) -> Optional[Session]:
        unknown = set(fields) - _SESSION_FIELDS
        if unknown:
            raise ValueError(f"unknown session fields: {sorted(unknown)}")
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess:
                return None
            for name, value in fields.items():
                setattr(sess, name, value)
            self._persist_state()
            return sess

    def find_session_by_device(
        self, user_id: str, device_name: str, ip_address: str
    ) -> Optional[Session]:
        """Most recently created session of the user from this device and IP."""
        with self._data_lock:
            matches = [
                s
                for s in self.sessions.values()
                if s.user_id == user_id
                and s.device_name == device_name
                and s.ip_address == ip_address
            ]
            return max(matches, key=lambda s: s.created_at, default=None)

    def find_active_session(self, user_id: str) -> Optional[Session]:
        with self._data_lock:
            active = [
                s for s in self.sessions.values() if s.user_id == user_id and not s.revoked
            ]
            return max(active, key=lambda s: s.last_login_at, default=None)

    def revoke_session(self, session_id: str) -> Optional[Session]:
        return self.update_session(
            session_id, revoked=True, refresh_token_hashed=None
        )

    # one-time codes
    def upsert_code(
        self,
        user_id: str,
        code_type: CodeType,
        tokens: List[str],
        *,
        expires_at: datetime,
        now: Optional[datetime] = None,
    ) -> Code:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            code = Code(
                user_id=user_id,
                type=CodeType(code_type),
                tokens=list(tokens),
                created_at=now or utcnow(),
                expires_at=expires_at,
            )
            self.codes[(user_id, code.type)] = code
            self._persist_state()
            return code

    def get_code(self, user_id: str, code_type: CodeType) -> Optional[Code]:
        with self._data_lock:
            return self.codes.get((user_id, CodeType(code_type)))

    def find_code_by_token(self, token: str, code_type: CodeType) -> List[Code]:
        """All live-or-expired codes of ``code_type`` that hold ``token``."""
        with self._data_lock:
            return [
                c
                for c in self.codes.values()
                if c.type == CodeType(code_type) and c.matches(token)
            ]

    def touch_code_attempt(
        self, user_id: str, code_type: CodeType, now: datetime
    ) -> Optional[Code]:
        with self._data_lock:
            code = self.codes.get((user_id, CodeType(code_type)))
            if not code:
                return None
            code.last_attempt_at = now
            self._persist_state()
            return code

    def delete_code(self, user_id: str, code_type: CodeType) -> bool:
        with self._data_lock:
            removed = self.codes.pop((user_id, CodeType(code_type)), None)
            if removed is not None:
                self._persist_state()
            return removed is not None

    # persistence
    def _persist_state(self) -> None:
        if self._tx_depth:
            return
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "sessions": [self._serialize_session(s) for s in self.sessions.values()],
            "codes": [self._serialize_code(c) for c in self.codes.values()],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except Exception as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}")

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.sessions = {
            s["id"]: self._deserialize_session(s) for s in data.get("sessions", [])
        }
        self.codes = {}
        for raw in data.get("codes", []):
            code = self._deserialize_code(raw)
            self.codes[(code.user_id, code.type)] = code
        return True

    @staticmethod
    def _dt(value: Optional[datetime]) -> Optional[str]:
        return value.isoformat() if value else None

    @staticmethod
    def _parse_dt(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "profile_id": user.profile_id,
            "primary_email": user.primary_email,
            "secondary_emails": list(user.secondary_emails),
            "display_name": user.display_name,
            "hashed_password": user.hashed_password,
            "birthday": user.birthday.isoformat() if user.birthday else None,
            "gender": user.gender.value if user.gender else None,
            "status": user.status.value,
            "created_at": self._dt(user.created_at),
            "updated_at": self._dt(user.updated_at),
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=str(data["id"]),
            profile_id=str(data["profile_id"]),
            primary_email=data["primary_email"],
            secondary_emails=list(data.get("secondary_emails") or []),
            display_name=data.get("display_name", ""),
            hashed_password=data.get("hashed_password"),
            birthday=date.fromisoformat(data["birthday"]) if data.get("birthday") else None,
            gender=Gender(data["gender"]) if data.get("gender") else None,
            status=UserStatus(data.get("status", UserStatus.ACTIVE.value)),
            created_at=self._parse_dt(data["created_at"]),
            updated_at=self._parse_dt(data.get("updated_at") or data["created_at"]),
        )

    def _serialize_session(self, session: Session) -> dict:
        return {
            "id": session.id,
            "user_id": session.user_id,
            "revoked": session.revoked,
            "refresh_token_hashed": session.refresh_token_hashed,
            "device_name": session.device_name,
            "user_agent": session.user_agent,
            "ip_address": session.ip_address,
            "created_at": self._dt(session.created_at),
            "last_login_at": self._dt(session.last_login_at),
            "expires_at": self._dt(session.expires_at),
        }

    def _deserialize_session(self, data: dict) -> Session:
        return Session(
            id=data["id"],
            user_id=data["user_id"],
            revoked=bool(data.get("revoked", False)),
            refresh_token_hashed=data.get("refresh_token_hashed"),
            device_name=data.get("device_name"),
            user_agent=data.get("user_agent"),
            ip_address=data.get("ip_address"),
            created_at=self._parse_dt(data["created_at"]),
            last_login_at=self._parse_dt(data.get("last_login_at") or data["created_at"]),
            expires_at=self._parse_dt(data["expires_at"]),
        )

    def _serialize_code(self, code: Code) -> dict:
        return {
            "user_id": code.user_id,
            "type": code.type.value,
            "tokens": list(code.tokens),
            "created_at": self._dt(code.created_at),
            "expires_at": self._dt(code.expires_at),
            "last_attempt_at": self._dt(code.last_attempt_at),
        }

    def _deserialize_code(self, data: dict) -> Code:
        return Code(
            user_id=data["user_id"],
            type=CodeType(data["type"]),
            tokens=list(data.get("tokens") or []),
            created_at=self._parse_dt(data["created_at"]),
            expires_at=self._parse_dt(data["expires_at"]),
            last_attempt_at=self._parse_dt(data.get("last_attempt_at")),
        )
