from __future__ import annotations

import threading
from typing import Optional

from tokenward.config import get_settings, reset_settings_cache
from tokenward.logging import get_logger
from tokenward.service.auth import AuthService
from tokenward.service.email import EmailService
from tokenward.service.one_time_tokens import OneTimeTokenManager
from tokenward.service.passwords import Argon2PasswordHasher
from tokenward.service.rate_limit import TokenBucketRateLimiter
from tokenward.service.refresh_tokens import RefreshTokenRegistry
from tokenward.service.tokens import TokenCodec
from tokenward.storage.memory import MemoryStore

logger = get_logger(__name__)


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info("runtime_init_started", persist_state=self.settings.persist_state)

        self.store = MemoryStore(
            fs_root=self.settings.shared_fs_root, persist=self.settings.persist_state
        )
        self.hasher = Argon2PasswordHasher()
        self.codec = TokenCodec(self.settings.jwt_secret)
        self.one_time_tokens = OneTimeTokenManager(self.store)
        self.refresh_tokens = RefreshTokenRegistry(
            self.store, self.codec, self.settings.refresh_token_ttl_seconds
        )
        self.email = EmailService.from_settings(self.settings)
        self.auth = AuthService(
            self.store,
            self.hasher,
            self.codec,
            self.one_time_tokens,
            self.refresh_tokens,
            self.settings,
            mailer=self.email,
        )
        self.rate_limiter = TokenBucketRateLimiter(
            self.settings.rate_limit_burst_capacity,
            self.settings.rate_limit_replenish_per_minute,
        )
        if not self.email.is_configured:
            logger.warning(
                "email_not_configured",
                message="SMTP_HOST/EMAIL_FROM_ADDRESS unset; emails will be logged, not sent",
            )
        logger.info(
            "runtime_init_complete",
            rate_limit_capacity=self.settings.rate_limit_burst_capacity,
            rate_limit_replenish_per_minute=self.settings.rate_limit_replenish_per_minute,
        )


runtime: Optional[Runtime] = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton, double-checked under a lock."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Rebuild the runtime singleton from a freshly read environment."""
    global runtime

    with _runtime_lock:
        reset_settings_cache()
        runtime = Runtime()
        return runtime
