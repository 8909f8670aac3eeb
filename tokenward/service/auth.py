from __future__ import annotations

import math
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, List, Optional, Protocol, Tuple

from tokenward.config import Settings
from tokenward.logging import get_logger
from tokenward.service.email import Mailer
from tokenward.service.errors import (
    AccountDisabledError,
    AccountLockedError,
    AccountNotVerifiedError,
    AuthenticationError,
    EmailAlreadyUsedError,
    ForbiddenError,
    InvalidCredentialsError,
    ServerError,
    TokenInvalidError,
)
from tokenward.service.one_time_tokens import OneTimeTokenManager
from tokenward.service.passwords import PasswordHasher
from tokenward.service.refresh_tokens import RefreshTokenRegistry
from tokenward.service.tokens import ACCESS, REFRESH, TokenCodec, TokenCodecError
from tokenward.storage.errors import ConstraintViolation, StaleWriteError
from tokenward.storage.memory import normalize_email
from tokenward.storage.models import Account, ExternalIdentity, TokenPurpose, utcnow

logger = get_logger(__name__)

# Compare-and-swap attempts before a contended account write gives up
MAX_WRITE_ATTEMPTS = 16


class AccountStore(Protocol):
    def create_account(
        self,
        email: str,
        password_hash: str,
        *,
        full_name: Optional[str] = None,
        roles: Optional[set[str]] = None,
        enabled: bool = False,
    ) -> Account: ...

    def get_account(self, account_id: str) -> Optional[Account]: ...

    def get_account_by_email(self, email: str) -> Optional[Account]: ...

    def get_account_by_identity(self, provider: str, provider_id: str) -> Optional[Account]: ...

    def update_account(self, account: Account, expected_version: int) -> Account: ...

    def list_accounts(self, offset: int = 0, limit: int = 100) -> List[Account]: ...

    def count_accounts(self) -> int: ...


@dataclass(frozen=True)
class AccountSummary:
    id: str
    email: str
    full_name: Optional[str]
    roles: List[str]
    enabled: bool
    created_at: datetime

    @classmethod
    def of(cls, account: Account) -> "AccountSummary":
        return cls(
            id=account.id,
            email=account.email,
            full_name=account.full_name,
            roles=sorted(account.roles),
            enabled=account.enabled,
            created_at=account.created_at,
        )


@dataclass(frozen=True)
class TokenBundle:
    access_token: str
    refresh_token: str
    expires_in: int
    user: AccountSummary
    token_type: str = "Bearer"


@dataclass(frozen=True)
class IntrospectionResult:
    active: bool
    subject: Optional[str] = None
    email: Optional[str] = None
    roles: Optional[List[str]] = None
    claims: dict[str, Any] = field(default_factory=dict)


INACTIVE = IntrospectionResult(active=False)


class AuthService:
    """Signup, signin, token refresh and the failed-login lockout state machine.

    Per account the lockout machine has two states, Active and Locked(until).
    A wrong password while Active increments ``failed_login_attempts`` and
    locks the account once the count reaches ``login_attempts_max``. While
    Locked, credential checks fail with ``AccountLockedError`` before the
    password hash is touched. An expired lock is cleared lazily by the next
    check. Every counter change is a compare-and-swap against the account's
    ``version`` so concurrent failures cannot undercount.
    """

    def __init__(
        self,
        store: AccountStore,
        hasher: PasswordHasher,
        codec: TokenCodec,
        one_time_tokens: OneTimeTokenManager,
        refresh_tokens: RefreshTokenRegistry,
        settings: Settings,
        *,
        mailer: Optional[Mailer] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.hasher = hasher
        self.codec = codec
        self.one_time_tokens = one_time_tokens
        self.refresh_tokens = refresh_tokens
        self.settings = settings
        self.mailer = mailer
        self._clock = clock
        self.logger = logger
        # Verified against for unknown emails so both failure paths cost one hash check
        self._dummy_hash = hasher.hash(secrets.token_urlsafe(32))

    def _now(self) -> datetime:
        return self._clock()

    # account writes
    def _update_account(
        self, account_id: str, mutate: Callable[[Account], bool]
    ) -> Optional[Account]:
        """Apply ``mutate`` to a fresh copy and store it with a version check.

        ``mutate`` returns False to skip the write. Returns the stored account,
        or None if the account does not exist.
        """
        for _ in range(MAX_WRITE_ATTEMPTS):
            account = self.store.get_account(account_id)
            if account is None:
                return None
            if not mutate(account):
                return account
            try:
                return self.store.update_account(account, account.version)
            except StaleWriteError:
                self.logger.debug("account_write_retry", account_id=account_id)
        self.logger.error("account_write_contended", account_id=account_id)
        raise ServerError("account update could not be applied")

    def _minutes_remaining(self, account: Account, now: datetime) -> int:
        seconds = (account.locked_until - now).total_seconds()
        return max(1, math.ceil(seconds / 60))

    # tokens
    def _issue_tokens(self, account: Account) -> TokenBundle:
        ttl = self.settings.access_token_ttl_seconds
        access_token = self.codec.issue(
            account.id,
            ACCESS,
            self._now() + timedelta(seconds=ttl),
            {"email": account.email, "roles": sorted(account.roles)},
        )
        refresh_token = self.refresh_tokens.issue(account)
        return TokenBundle(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_in=ttl,
            user=AccountSummary.of(account),
        )

    # operations
    def signup(
        self, email: str, password: str, full_name: Optional[str] = None
    ) -> AccountSummary:
        """Create a disabled account and send its verification token.

        Raises:
            EmailAlreadyUsedError: an account already uses this email (any case)
        """
        normalized = normalize_email(email)
        if self.store.get_account_by_email(normalized) is not None:
            self.logger.info("signup_email_taken")
            raise EmailAlreadyUsedError()
        try:
            account = self.store.create_account(
                normalized,
                self.hasher.hash(password),
                full_name=full_name,
                roles={self.settings.default_role},
                enabled=False,
            )
        except ConstraintViolation as exc:
            # Lost a race with a concurrent signup for the same email
            raise EmailAlreadyUsedError() from exc
        token = self.one_time_tokens.issue(
            account.id, TokenPurpose.VERIFY, self.settings.verification_token_ttl_seconds
        )
        if self.mailer is not None:
            self.mailer.send_verification_email(account.email, token)
        self.logger.info("signup_completed", account_id=account.id)
        return AccountSummary.of(account)

    def verify_email(self, token: str) -> None:
        account_id = self.one_time_tokens.consume(token, TokenPurpose.VERIFY)

        def _enable(account: Account) -> bool:
            if account.enabled:
                return False
            account.enabled = True
            return True

        if self._update_account(account_id, _enable) is None:
            self.logger.warning("email_verification_missing_account", account_id=account_id)
            raise TokenInvalidError()
        self.logger.info("email_verified", account_id=account_id)

    def signin(self, email: str, password: str) -> TokenBundle:
        """Check credentials and issue an access/refresh token pair.

        Raises:
            InvalidCredentialsError: unknown email or wrong password
            AccountLockedError: the account is inside a lockout window
            AccountNotVerifiedError: credentials are right but email is unverified
        """
        account = self.store.get_account_by_email(email)
        if account is None:
            self.hasher.verify(password, self._dummy_hash)
            self.logger.info("signin_failed", reason="unknown_account")
            raise InvalidCredentialsError()

        now = self._now()
        if account.is_locked(now):
            self.logger.info("signin_rejected_locked", account_id=account.id)
            raise AccountLockedError(self._minutes_remaining(account, now))

        checked_hash = account.password_hash
        password_ok = self.hasher.verify(password, checked_hash)
        for _ in range(MAX_WRITE_ATTEMPTS):
            if account.password_hash != checked_hash:
                # Password was reset between our read and our write
                checked_hash = account.password_hash
                password_ok = self.hasher.verify(password, checked_hash)
            if account.is_locked(now):
                # Another request locked the account after our first read
                raise AccountLockedError(self._minutes_remaining(account, now))
            if account.locked_until is not None:
                # Lock window has passed; start counting afresh
                account.locked_until = None
                account.failed_login_attempts = 0
                changed = True
            else:
                changed = False

            if password_ok:
                if account.failed_login_attempts:
                    account.failed_login_attempts = 0
                    changed = True
            else:
                account.failed_login_attempts += 1
                if account.failed_login_attempts >= self.settings.login_attempts_max:
                    account.locked_until = now + timedelta(
                        minutes=self.settings.login_lockout_minutes
                    )
                changed = True

            try:
                if changed:
                    account = self.store.update_account(account, account.version)
                break
            except StaleWriteError:
                account = self.store.get_account(account.id)
                if account is None:
                    raise InvalidCredentialsError()
        else:
            self.logger.error("account_write_contended", account_id=account.id)
            raise ServerError("account update could not be applied")

        if not password_ok:
            if account.locked_until is not None:
                self.logger.warning(
                    "account_locked",
                    account_id=account.id,
                    attempts=account.failed_login_attempts,
                    locked_until=account.locked_until.isoformat(),
                )
            else:
                self.logger.info(
                    "signin_failed",
                    reason="bad_password",
                    account_id=account.id,
                    attempts=account.failed_login_attempts,
                )
            raise InvalidCredentialsError()

        if not account.enabled:
            self.logger.info("signin_rejected_unverified", account_id=account.id)
            raise AccountNotVerifiedError()
        bundle = self._issue_tokens(account)
        self.logger.info("signin_succeeded", account_id=account.id)
        return bundle

    def refresh(self, refresh_token: str) -> TokenBundle:
        """Issue a new access token; the refresh token is echoed back unchanged."""
        record = self.refresh_tokens.validate(refresh_token)
        account = self.store.get_account(record.account_id)
        if account is None:
            raise TokenInvalidError()
        if not account.enabled:
            self.logger.info("refresh_rejected_disabled", account_id=account.id)
            raise AccountDisabledError()
        ttl = self.settings.access_token_ttl_seconds
        access_token = self.codec.issue(
            account.id,
            ACCESS,
            self._now() + timedelta(seconds=ttl),
            {"email": account.email, "roles": sorted(account.roles)},
        )
        return TokenBundle(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_in=ttl,
            user=AccountSummary.of(account),
        )

    def signout(self, refresh_token: str) -> None:
        self.refresh_tokens.revoke(refresh_token)

    def forgot_password(self, email: str) -> None:
        """Send a reset token if the account exists; silent either way."""
        account = self.store.get_account_by_email(email)
        if account is None:
            self.logger.info("password_reset_unknown_account")
            return
        token = self.one_time_tokens.issue(
            account.id, TokenPurpose.RESET, self.settings.reset_token_ttl_seconds
        )
        if self.mailer is not None:
            self.mailer.send_password_reset_email(account.email, token)
        self.logger.info("password_reset_requested", account_id=account.id)

    def reset_password(self, token: str, new_password: str) -> None:
        """Spend a reset token, replace the digest, clear lockout, end sessions."""
        account_id = self.one_time_tokens.consume(token, TokenPurpose.RESET)
        new_hash = self.hasher.hash(new_password)

        def _apply(account: Account) -> bool:
            account.password_hash = new_hash
            account.failed_login_attempts = 0
            account.locked_until = None
            return True

        if self._update_account(account_id, _apply) is None:
            self.logger.warning("password_reset_missing_account", account_id=account_id)
            raise TokenInvalidError()
        self.refresh_tokens.revoke_all(account_id)
        self.logger.info("password_reset_completed", account_id=account_id)

    def introspect(self, token: str) -> IntrospectionResult:
        """Report whether ``token`` is currently usable. Never raises."""
        try:
            claims = self.codec.parse(token)
            if claims.token_type == REFRESH:
                if not claims.token_id or not self.refresh_tokens.is_active(claims.token_id):
                    return INACTIVE
            elif claims.token_type != ACCESS:
                return INACTIVE
        except TokenCodecError:
            return INACTIVE
        except Exception:
            self.logger.exception("introspection_failed")
            return INACTIVE
        return IntrospectionResult(
            active=True,
            subject=claims.subject,
            email=claims.email,
            roles=list(claims.roles),
            claims=dict(claims.raw),
        )

    # supplemental operations
    def authenticate(self, access_token: Optional[str]) -> Account:
        """Resolve a bearer access token to its enabled account."""
        if not access_token:
            raise AuthenticationError("missing bearer token")
        try:
            claims = self.codec.parse(access_token)
        except TokenCodecError as exc:
            raise AuthenticationError("invalid access token") from exc
        if claims.token_type != ACCESS:
            raise AuthenticationError("invalid access token")
        account = self.store.get_account(claims.subject)
        if account is None or not account.enabled:
            raise AuthenticationError("invalid access token")
        return account

    def get_profile(self, account_id: str) -> AccountSummary:
        account = self.store.get_account(account_id)
        if account is None:
            raise AuthenticationError("account not found")
        return AccountSummary.of(account)

    def list_accounts(
        self, principal: Account, *, page: int = 0, size: int = 20
    ) -> Tuple[List[AccountSummary], int]:
        if not principal.has_role(self.settings.admin_role):
            self.logger.warning("admin_access_denied", account_id=principal.id)
            raise ForbiddenError("admin access required")
        accounts = self.store.list_accounts(offset=page * size, limit=size)
        return [AccountSummary.of(a) for a in accounts], self.store.count_accounts()

    def grant_role(self, account_id: str, role: str) -> AccountSummary:
        """Add ``role`` to an account and mark it enabled (operator bootstrap)."""

        def _grant(account: Account) -> bool:
            if role in account.roles and account.enabled:
                return False
            account.roles.add(role)
            account.enabled = True
            return True

        account = self._update_account(account_id, _grant)
        if account is None:
            raise AuthenticationError("account not found")
        self.logger.info("role_granted", account_id=account_id, role=role)
        return AccountSummary.of(account)

    def complete_external_login(
        self,
        provider: str,
        provider_id: str,
        email: str,
        full_name: Optional[str] = None,
    ) -> TokenBundle:
        """Sign in with an identity already vouched for by an external provider.

        Finds the account by linked identity, then by email, and creates an
        enabled one with an unusable random password if neither exists. The
        identity is linked once. A locked account stays locked.
        """
        account = self.store.get_account_by_identity(provider, provider_id)
        if account is None:
            account = self.store.get_account_by_email(email)
        if account is None:
            try:
                account = self.store.create_account(
                    email,
                    self.hasher.hash(secrets.token_urlsafe(32)),
                    full_name=full_name,
                    roles={self.settings.default_role},
                    enabled=True,
                )
                self.logger.info(
                    "external_account_created", account_id=account.id, provider=provider
                )
            except ConstraintViolation:
                account = self.store.get_account_by_email(email)
                if account is None:
                    raise

        now = self._now()
        if account.is_locked(now):
            raise AccountLockedError(self._minutes_remaining(account, now))

        def _link(target: Account) -> bool:
            changed = False
            if not any(
                i.provider == provider and i.provider_id == provider_id
                for i in target.external_identities
            ):
                target.external_identities.append(
                    ExternalIdentity(provider=provider, provider_id=provider_id, linked_at=now)
                )
                changed = True
            if not target.enabled:
                target.enabled = True
                changed = True
            if full_name and not target.full_name:
                target.full_name = full_name
                changed = True
            return changed

        account = self._update_account(account.id, _link)
        if account is None:
            raise AuthenticationError("account not found")
        self.logger.info("external_login_succeeded", account_id=account.id, provider=provider)
        return self._issue_tokens(account)

    def cleanup_expired(self) -> int:
        """Drop expired refresh and one-time token records."""
        cleaned = self.refresh_tokens.cleanup_expired() + self.one_time_tokens.cleanup_expired()
        if cleaned:
            self.logger.debug("auth_state_cleanup", cleaned=cleaned)
        return cleaned
