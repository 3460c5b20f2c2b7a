from __future__ import annotations

import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from agora.config import get_settings, reset_settings_cache
from agora.logging import get_logger
from agora.service.auth import AuthService
from agora.service.email import EmailService
from agora.service.hashing import PasswordHashing
from agora.service.tokens import TokenService
from agora.storage.memory import MemoryStore
from agora.storage.objects import ObjectStorage
from agora.storage.postgres import PostgresStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password of a DSN with ``***`` for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(parsed._replace(netloc=netloc))


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store = (
                MemoryStore(fs_root=self.settings.shared_fs_root)
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                database_url=_mask_url_password(self.settings.database_url),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        logger.info("runtime_store_initialized", store_type=store_type)

        self.hashing = PasswordHashing()
        self.email = EmailService.from_settings(self.settings)
        if not self.email.is_configured:
            logger.warning("email_not_configured", mode="log_only")
        self.tokens = TokenService(self.store, self.settings, self.hashing)
        self.auth = AuthService(
            self.store,
            self.settings,
            email=self.email,
            tokens=self.tokens,
            hashing=self.hashing,
        )
        self.objects = ObjectStorage(self.settings)
        if not self.settings.jwt_secret:
            logger.warning("jwt_secret_missing", setting="JWT_SECRET")

    def close(self) -> None:
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton.

    Double-checked locking: the unlocked read is the fast path once the
    runtime exists.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None:
            runtime.close()
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
