from __future__ import annotations

import secrets
import uuid
from datetime import datetime, timedelta
from typing import Callable, Optional, Protocol

from tokenward.logging import get_logger
from tokenward.service.errors import TokenInvalidError
from tokenward.storage.models import OneTimeTokenRecord, TokenPurpose, utcnow

logger = get_logger(__name__)


class OneTimeTokenStore(Protocol):
    def create_one_time_token(self, record: OneTimeTokenRecord) -> OneTimeTokenRecord: ...

    def get_one_time_token(self, token: str) -> Optional[OneTimeTokenRecord]: ...

    def delete_one_time_token(self, token: str) -> bool: ...

    def purge_expired_one_time_tokens(self, now: datetime) -> int: ...


class OneTimeTokenManager:
    """Single-use tokens backing email verification and password reset.

    A token is spent by deleting its record. The store's delete reports
    whether this caller removed it, so of two concurrent consumers exactly
    one sees True and the other gets ``TokenInvalidError``.
    """

    def __init__(
        self,
        store: OneTimeTokenStore,
        *,
        clock: Callable[[], datetime] = utcnow,
        token_bytes: int = 32,
    ) -> None:
        self.store = store
        self._clock = clock
        self._token_bytes = token_bytes

    def issue(self, account_id: str, purpose: TokenPurpose, ttl_seconds: int) -> str:
        record = OneTimeTokenRecord(
            id=str(uuid.uuid4()),
            token=secrets.token_urlsafe(self._token_bytes),
            account_id=account_id,
            expires_at=self._clock() + timedelta(seconds=ttl_seconds),
            purpose=TokenPurpose(purpose),
        )
        self.store.create_one_time_token(record)
        logger.info(
            "one_time_token_issued",
            account_id=account_id,
            purpose=record.purpose.value,
            ttl_seconds=ttl_seconds,
        )
        return record.token

    def consume(self, token: str, expected_purpose: TokenPurpose) -> str:
        """Spend ``token`` and return the owning account id.

        Raises:
            TokenInvalidError: unknown, already spent, wrong purpose, or expired
        """
        record = self.store.get_one_time_token(token) if token else None
        if record is None:
            logger.warning("one_time_token_unknown", purpose=TokenPurpose(expected_purpose).value)
            raise TokenInvalidError()
        if record.purpose != TokenPurpose(expected_purpose):
            # Left in place: the holder may still spend it on the right flow
            logger.warning(
                "one_time_token_purpose_mismatch",
                account_id=record.account_id,
                purpose=record.purpose.value,
            )
            raise TokenInvalidError()
        if record.is_expired(self._clock()):
            self.store.delete_one_time_token(token)
            logger.warning("one_time_token_expired", account_id=record.account_id)
            raise TokenInvalidError()
        if not self.store.delete_one_time_token(token):
            logger.warning("one_time_token_already_consumed", account_id=record.account_id)
            raise TokenInvalidError()
        logger.info(
            "one_time_token_consumed",
            account_id=record.account_id,
            purpose=record.purpose.value,
        )
        return record.account_id

    def cleanup_expired(self) -> int:
        return self.store.purge_expired_one_time_tokens(self._clock())
