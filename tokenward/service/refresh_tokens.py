from __future__ import annotations

from datetime import datetime
from typing import Callable, Optional, Protocol

from tokenward.logging import get_logger
from tokenward.service.errors import TokenInvalidError
from tokenward.service.tokens import REFRESH, TokenClaims, TokenCodec, TokenCodecError
from tokenward.storage.models import Account, RefreshTokenRecord, utcnow

logger = get_logger(__name__)


class RefreshTokenStore(Protocol):
    def create_refresh_token(self, record: RefreshTokenRecord) -> RefreshTokenRecord: ...

    def get_refresh_token(self, token_id: str) -> Optional[RefreshTokenRecord]: ...

    def revoke_refresh_token(self, token_id: str) -> bool: ...

    def revoke_account_refresh_tokens(self, account_id: str) -> int: ...

    def purge_expired_refresh_tokens(self, now: datetime) -> int: ...


class RefreshTokenRegistry:
    """Refresh tokens: a signed JWT plus a revocable server-side record.

    The JWT's ``jti`` claim names the record. A token is usable only while its
    signature verifies, it has not expired, and its record exists unrevoked.
    Tokens are not rotated on use; the same refresh token keeps working until
    it expires or is revoked at signout.
    """

    def __init__(
        self,
        store: RefreshTokenStore,
        codec: TokenCodec,
        ttl_seconds: int,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.codec = codec
        self.ttl_seconds = ttl_seconds
        self._clock = clock

    def issue(self, account: Account) -> str:
        record = self.store.create_refresh_token(
            RefreshTokenRecord.new(account.id, self.ttl_seconds, now=self._clock())
        )
        token = self.codec.issue(
            account.id,
            REFRESH,
            record.expires_at,
            {"email": account.email, "roles": sorted(account.roles), "jti": record.token_id},
        )
        logger.info("refresh_token_issued", account_id=account.id, token_id=record.token_id)
        return token

    def _parse(self, token: str) -> TokenClaims:
        try:
            claims = self.codec.parse(token)
        except TokenCodecError as exc:
            logger.info("refresh_token_rejected", reason=type(exc).__name__)
            raise TokenInvalidError() from exc
        if claims.token_type != REFRESH or not claims.token_id:
            logger.info("refresh_token_rejected", reason="wrong_type")
            raise TokenInvalidError()
        return claims

    def validate(self, token: str) -> RefreshTokenRecord:
        """Return the live record behind ``token`` or raise ``TokenInvalidError``."""
        claims = self._parse(token)
        record = self.store.get_refresh_token(claims.token_id)
        if record is None or record.account_id != claims.subject:
            logger.info("refresh_token_rejected", reason="unknown")
            raise TokenInvalidError()
        if record.revoked:
            logger.info("refresh_token_rejected", reason="revoked", token_id=record.token_id)
            raise TokenInvalidError()
        if record.is_expired(self._clock()):
            logger.info("refresh_token_rejected", reason="expired", token_id=record.token_id)
            raise TokenInvalidError()
        return record

    def revoke(self, token: str) -> bool:
        """Revoke the record behind ``token``.

        Returns True if this call revoked it and False if it was already
        revoked. Raises ``TokenInvalidError`` only when the token cannot be
        parsed or its record cannot be found.
        """
        claims = self._parse(token)
        record = self.store.get_refresh_token(claims.token_id)
        if record is None or record.account_id != claims.subject:
            raise TokenInvalidError()
        revoked = self.store.revoke_refresh_token(record.token_id)
        logger.info(
            "refresh_token_revoked",
            account_id=record.account_id,
            token_id=record.token_id,
            already_revoked=not revoked,
        )
        return revoked

    def revoke_all(self, account_id: str) -> int:
        count = self.store.revoke_account_refresh_tokens(account_id)
        if count:
            logger.info("refresh_tokens_revoked_for_account", account_id=account_id, count=count)
        return count

    def is_active(self, token_id: str) -> bool:
        record = self.store.get_refresh_token(token_id)
        return bool(record and not record.revoked and not record.is_expired(self._clock()))

    def cleanup_expired(self) -> int:
        return self.store.purge_expired_refresh_tokens(self._clock())
