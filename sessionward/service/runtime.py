from __future__ import annotations

import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from sessionward.config import Settings, get_settings, reset_settings_cache
from sessionward.logging import get_logger
from sessionward.service.notifier import EmailNotifier
from sessionward.service.roles import RoleAdminService
from sessionward.service.session import SessionService
from sessionward.storage.factory import create_store
from sessionward.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for safe logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
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
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds the singleton store and services for one process."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        backend = self.settings.storage_backend.value
        logger.info("runtime_init_started", storage_backend=backend)

        try:
            self.store = create_store(self.settings)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                storage_backend=backend,
                database_url=_mask_url_password(self.settings.database_url),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache: Optional[RedisCache] = None
        if self.settings.redis_url:
            cache = RedisCache(
                self.settings.redis_url, socket_timeout=self.settings.storage_timeout_seconds
            )
            try:
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                logger.warning(
                    "redis_disabled_fallback",
                    redis_url=_mask_url_password(self.settings.redis_url),
                    error=str(exc),
                    message="Blacklist entries will be kept in the primary store",
                )

        self.notifier = EmailNotifier.from_settings(self.settings)
        self.sessions = SessionService(
            self.store, self.settings, notifier=self.notifier, cache=self.cache
        )
        self.roles = RoleAdminService(self.store, self.settings)

        logger.info(
            "runtime_initialized",
            storage_backend=backend,
            redis_enabled=self.cache is not None,
            email_configured=self.notifier.is_configured,
            require_email_verification=self.settings.require_email_verification,
        )

    def close(self) -> None:
        close = getattr(self.store, "close", None)
        if close is not None:
            close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Uses double-checked locking:
    - First check without lock (fast path for existing runtime)
    - Second check with lock to prevent a race during creation
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
        runtime = Runtime(settings)
        return runtime
