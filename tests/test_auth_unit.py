"""Unit tests for the auth service.

Tests for:
- Signup and email verification
- Signin and the failed-login lockout
- Refresh, signout and introspection
- Password reset
- Admin listing, role grants and external login
"""

import threading
from datetime import timedelta

import pytest

from tokenward.config import Settings
from tokenward.service.auth import AuthService
from tokenward.service.errors import (
    AccountDisabledError,
    AccountLockedError,
    AccountNotVerifiedError,
    AuthenticationError,
    EmailAlreadyUsedError,
    ForbiddenError,
    InvalidCredentialsError,
    TokenInvalidError,
)
from tokenward.service.one_time_tokens import OneTimeTokenManager
from tokenward.service.refresh_tokens import RefreshTokenRegistry
from tokenward.service.tokens import ACCESS, TokenCodec
from tokenward.storage.memory import MemoryStore

from conftest import TEST_SECRET

PASSWORD = "Correct-Horse-9"
WRONG_PASSWORD = "Wrong-Horse-9"


@pytest.fixture
def settings():
    """Create test settings."""
    return Settings(
        jwt_secret=TEST_SECRET,
        login_attempts_max=5,
        login_lockout_minutes=15,
        access_token_ttl_seconds=900,
        refresh_token_ttl_seconds=3600,
    )


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def auth_service(store, hasher, settings, mailer, clock):
    """Create an auth service wired to in-memory collaborators and a fake clock."""
    codec = TokenCodec(settings.jwt_secret, clock=clock)
    return AuthService(
        store,
        hasher,
        codec,
        OneTimeTokenManager(store, clock=clock),
        RefreshTokenRegistry(store, codec, settings.refresh_token_ttl_seconds, clock=clock),
        settings,
        mailer=mailer,
        clock=clock,
    )


@pytest.fixture
def verified_account(auth_service, mailer):
    """Sign up and verify an account with PASSWORD."""
    summary = auth_service.signup("user@example.com", PASSWORD, "Test User")
    auth_service.verify_email(mailer.verifications[-1][1])
    return summary


class TestSignup:
    """Tests for account creation and email verification."""

    def test_signup_creates_disabled_account(self, auth_service, store, mailer):
        """Test that signup stores a disabled account and mails a token."""
        summary = auth_service.signup("New@Example.com", PASSWORD, "New User")

        assert summary.email == "new@example.com"
        assert summary.enabled is False
        assert summary.roles == ["user"]
        assert store.get_account(summary.id).password_hash != PASSWORD
        assert mailer.verifications[0][0] == "new@example.com"

    def test_signup_rejects_duplicate_email_any_case(self, auth_service):
        """Test that emails are unique regardless of case."""
        auth_service.signup("dup@example.com", PASSWORD)

        with pytest.raises(EmailAlreadyUsedError):
            auth_service.signup("DUP@example.com", PASSWORD)

    def test_signin_before_verification_rejected(self, auth_service):
        """Test that a correct password on an unverified account is refused."""
        auth_service.signup("late@example.com", PASSWORD)

        with pytest.raises(AccountNotVerifiedError):
            auth_service.signin("late@example.com", PASSWORD)

    def test_verify_enables_account(self, auth_service, store, mailer):
        summary = auth_service.signup("v@example.com", PASSWORD)

        auth_service.verify_email(mailer.verifications[0][1])

        assert store.get_account(summary.id).enabled is True

    def test_verification_token_single_use(self, auth_service, mailer):
        auth_service.signup("v@example.com", PASSWORD)
        token = mailer.verifications[0][1]
        auth_service.verify_email(token)

        with pytest.raises(TokenInvalidError):
            auth_service.verify_email(token)

    def test_verification_token_expires(self, auth_service, mailer, clock, settings):
        auth_service.signup("v@example.com", PASSWORD)
        clock.advance(seconds=settings.verification_token_ttl_seconds)

        with pytest.raises(TokenInvalidError):
            auth_service.verify_email(mailer.verifications[0][1])


class TestSignin:
    """Tests for credential checks."""

    def test_signin_issues_tokens(self, auth_service, verified_account):
        """Test that a verified account gets an access and refresh token."""
        bundle = auth_service.signin("USER@example.com", PASSWORD)

        claims = auth_service.codec.parse(bundle.access_token)
        assert claims.subject == verified_account.id
        assert claims.token_type == ACCESS
        assert claims.email == "user@example.com"
        assert bundle.expires_in == 900
        assert bundle.token_type == "Bearer"
        assert bundle.user.id == verified_account.id

    def test_unknown_email_still_checks_a_hash(self, auth_service, hasher):
        """Test that unknown emails fail the same way and cost one hash check."""
        before = hasher.verify_calls

        with pytest.raises(InvalidCredentialsError):
            auth_service.signin("nobody@example.com", PASSWORD)
        assert hasher.verify_calls == before + 1

    def test_wrong_password_counts_failure(self, auth_service, store, verified_account):
        with pytest.raises(InvalidCredentialsError):
            auth_service.signin("user@example.com", WRONG_PASSWORD)

        assert store.get_account(verified_account.id).failed_login_attempts == 1

    def test_success_resets_counter(self, auth_service, store, verified_account):
        for _ in range(3):
            with pytest.raises(InvalidCredentialsError):
                auth_service.signin("user@example.com", WRONG_PASSWORD)

        auth_service.signin("user@example.com", PASSWORD)

        assert store.get_account(verified_account.id).failed_login_attempts == 0


class TestLockout:
    """Tests for the failed-login lockout."""

    def test_fifth_failure_locks_account(self, auth_service, store, verified_account, clock):
        """Test that the fifth failure locks for the configured window."""
        for _ in range(5):
            with pytest.raises(InvalidCredentialsError):
                auth_service.signin("user@example.com", WRONG_PASSWORD)

        account = store.get_account(verified_account.id)
        assert account.failed_login_attempts == 5
        assert account.locked_until == clock() + timedelta(minutes=15)

    def test_locked_account_rejected_without_hash_check(
        self, auth_service, hasher, verified_account
    ):
        """Test that a locked account is refused before the hash is verified."""
        for _ in range(5):
            with pytest.raises(InvalidCredentialsError):
                auth_service.signin("user@example.com", WRONG_PASSWORD)
        calls = hasher.verify_calls

        with pytest.raises(AccountLockedError) as excinfo:
            auth_service.signin("user@example.com", PASSWORD)

        assert hasher.verify_calls == calls
        assert excinfo.value.minutes_remaining == 15
        assert excinfo.value.status_code == 423
        assert excinfo.value.detail == {"minutes_remaining": 15}

    def test_minutes_remaining_rounds_up(self, auth_service, verified_account, clock):
        for _ in range(5):
            with pytest.raises(InvalidCredentialsError):
                auth_service.signin("user@example.com", WRONG_PASSWORD)
        clock.advance(minutes=14, seconds=50)

        with pytest.raises(AccountLockedError) as excinfo:
            auth_service.signin("user@example.com", PASSWORD)
        assert excinfo.value.minutes_remaining == 1

    def test_lock_expires(self, auth_service, store, verified_account, clock):
        """Test that the account unlocks once the window passes."""
        for _ in range(5):
            with pytest.raises(InvalidCredentialsError):
                auth_service.signin("user@example.com", WRONG_PASSWORD)
        clock.advance(minutes=15)

        auth_service.signin("user@example.com", PASSWORD)

        account = store.get_account(verified_account.id)
        assert account.failed_login_attempts == 0
        assert account.locked_until is None

    def test_failure_after_expiry_starts_fresh_count(
        self, auth_service, store, verified_account, clock
    ):
        for _ in range(5):
            with pytest.raises(InvalidCredentialsError):
                auth_service.signin("user@example.com", WRONG_PASSWORD)
        clock.advance(minutes=16)

        with pytest.raises(InvalidCredentialsError):
            auth_service.signin("user@example.com", WRONG_PASSWORD)

        account = store.get_account(verified_account.id)
        assert account.failed_login_attempts == 1
        assert account.locked_until is None

    def test_concurrent_failures_are_all_counted(
        self, auth_service, store, verified_account, settings
    ):
        """Test that racing failed signins never lose an increment."""
        settings.login_attempts_max = 1000
        threads_count = 12
        barrier = threading.Barrier(threads_count)

        def worker():
            barrier.wait()
            with pytest.raises(InvalidCredentialsError):
                auth_service.signin("user@example.com", WRONG_PASSWORD)

        threads = [threading.Thread(target=worker) for _ in range(threads_count)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert store.get_account(verified_account.id).failed_login_attempts == threads_count


class TestRefreshAndSignout:
    def test_refresh_keeps_refresh_token(self, auth_service, verified_account, clock):
        """Test that refresh issues a new access token and echoes the refresh token."""
        bundle = auth_service.signin("user@example.com", PASSWORD)
        clock.advance(seconds=5)

        refreshed = auth_service.refresh(bundle.refresh_token)

        assert refreshed.refresh_token == bundle.refresh_token
        assert refreshed.access_token != bundle.access_token
        assert auth_service.codec.parse(refreshed.access_token).subject == verified_account.id
        auth_service.refresh(bundle.refresh_token)

    def test_access_token_cannot_refresh(self, auth_service, verified_account):
        bundle = auth_service.signin("user@example.com", PASSWORD)

        with pytest.raises(TokenInvalidError):
            auth_service.refresh(bundle.access_token)

    def test_signout_revokes_refresh(self, auth_service, verified_account):
        bundle = auth_service.signin("user@example.com", PASSWORD)

        auth_service.signout(bundle.refresh_token)

        with pytest.raises(TokenInvalidError):
            auth_service.refresh(bundle.refresh_token)

    def test_signout_twice_is_harmless(self, auth_service, verified_account):
        bundle = auth_service.signin("user@example.com", PASSWORD)

        auth_service.signout(bundle.refresh_token)
        auth_service.signout(bundle.refresh_token)

    def test_signout_with_garbage_rejected(self, auth_service):
        with pytest.raises(TokenInvalidError):
            auth_service.signout("not-a-token")

    def test_refresh_rejected_for_disabled_account(self, auth_service, store, verified_account):
        bundle = auth_service.signin("user@example.com", PASSWORD)
        account = store.get_account(verified_account.id)
        account.enabled = False
        store.update_account(account, account.version)

        with pytest.raises(AccountDisabledError):
            auth_service.refresh(bundle.refresh_token)


class TestPasswordReset:
    """Tests for the forgot/reset flow."""

    def test_forgot_unknown_email_is_silent(self, auth_service, mailer):
        """Test that an unknown email neither fails nor sends mail."""
        auth_service.forgot_password("ghost@example.com")

        assert mailer.resets == []

    def test_reset_replaces_password(self, auth_service, mailer, verified_account):
        auth_service.forgot_password("user@example.com")
        token = mailer.resets[-1][1]

        auth_service.reset_password(token, "Brand-New-Pass1")

        with pytest.raises(InvalidCredentialsError):
            auth_service.signin("user@example.com", PASSWORD)
        auth_service.signin("user@example.com", "Brand-New-Pass1")

    def test_reset_clears_lockout(self, auth_service, store, mailer, verified_account):
        for _ in range(5):
            with pytest.raises(InvalidCredentialsError):
                auth_service.signin("user@example.com", WRONG_PASSWORD)
        auth_service.forgot_password("user@example.com")

        auth_service.reset_password(mailer.resets[-1][1], "Brand-New-Pass1")

        account = store.get_account(verified_account.id)
        assert account.locked_until is None
        assert account.failed_login_attempts == 0
        auth_service.signin("user@example.com", "Brand-New-Pass1")

    def test_reset_revokes_refresh_tokens(self, auth_service, mailer, verified_account):
        bundle = auth_service.signin("user@example.com", PASSWORD)
        auth_service.forgot_password("user@example.com")

        auth_service.reset_password(mailer.resets[-1][1], "Brand-New-Pass1")

        with pytest.raises(TokenInvalidError):
            auth_service.refresh(bundle.refresh_token)

    def test_reset_token_single_use(self, auth_service, mailer, verified_account):
        auth_service.forgot_password("user@example.com")
        token = mailer.resets[-1][1]
        auth_service.reset_password(token, "Brand-New-Pass1")

        with pytest.raises(TokenInvalidError):
            auth_service.reset_password(token, "Other-New-Pass2")

    def test_verification_token_cannot_reset(self, auth_service, mailer):
        auth_service.signup("x@example.com", PASSWORD)

        with pytest.raises(TokenInvalidError):
            auth_service.reset_password(mailer.verifications[0][1], "Brand-New-Pass1")


class TestIntrospect:
    def test_active_access_token(self, auth_service, verified_account):
        bundle = auth_service.signin("user@example.com", PASSWORD)

        result = auth_service.introspect(bundle.access_token)

        assert result.active is True
        assert result.subject == verified_account.id
        assert result.email == "user@example.com"
        assert result.roles == ["user"]
        assert result.claims["type"] == "access"

    def test_expired_token_inactive(self, auth_service, verified_account, clock):
        bundle = auth_service.signin("user@example.com", PASSWORD)
        clock.advance(seconds=900)

        assert auth_service.introspect(bundle.access_token).active is False

    def test_revoked_refresh_inactive(self, auth_service, verified_account):
        bundle = auth_service.signin("user@example.com", PASSWORD)
        assert auth_service.introspect(bundle.refresh_token).active is True

        auth_service.signout(bundle.refresh_token)

        assert auth_service.introspect(bundle.refresh_token).active is False

    @pytest.mark.parametrize("token", ["", "garbage", "a.b.c"])
    def test_garbage_inactive(self, auth_service, token):
        result = auth_service.introspect(token)

        assert result.active is False
        assert result.subject is None


class TestAccountsAndRoles:
    def test_authenticate_resolves_account(self, auth_service, verified_account):
        bundle = auth_service.signin("user@example.com", PASSWORD)

        account = auth_service.authenticate(bundle.access_token)

        assert account.id == verified_account.id
        assert auth_service.get_profile(account.id).full_name == "Test User"

    def test_authenticate_rejects_refresh_token(self, auth_service, verified_account):
        bundle = auth_service.signin("user@example.com", PASSWORD)

        with pytest.raises(AuthenticationError):
            auth_service.authenticate(bundle.refresh_token)

    def test_list_accounts_requires_admin(self, auth_service, store, verified_account):
        principal = store.get_account(verified_account.id)

        with pytest.raises(ForbiddenError):
            auth_service.list_accounts(principal)

    def test_admin_can_list_accounts(self, auth_service, store, verified_account):
        auth_service.signup("second@example.com", PASSWORD)
        auth_service.grant_role(verified_account.id, "admin")
        admin = store.get_account(verified_account.id)

        items, total = auth_service.list_accounts(admin, page=0, size=1)

        assert total == 2
        assert len(items) == 1

    def test_grant_role_enables_account(self, auth_service, store):
        summary = auth_service.signup("ops@example.com", PASSWORD)

        granted = auth_service.grant_role(summary.id, "admin")

        assert granted.enabled is True
        assert granted.roles == ["admin", "user"]


class TestExternalLogin:
    def test_creates_enabled_account(self, auth_service, store):
        bundle = auth_service.complete_external_login("github", "42", "ext@example.com", "Ext")

        account = store.get_account(bundle.user.id)
        assert account.enabled is True
        assert [(i.provider, i.provider_id) for i in account.external_identities] == [
            ("github", "42")
        ]

    def test_links_existing_account_once(self, auth_service, store, verified_account):
        auth_service.complete_external_login("github", "42", "user@example.com")
        auth_service.complete_external_login("github", "42", "changed@example.com")

        account = store.get_account(verified_account.id)
        assert len(account.external_identities) == 1

    def test_locked_account_refused(self, auth_service, verified_account):
        for _ in range(5):
            with pytest.raises(InvalidCredentialsError):
                auth_service.signin("user@example.com", WRONG_PASSWORD)

        with pytest.raises(AccountLockedError):
            auth_service.complete_external_login("github", "42", "user@example.com")


class TestCleanup:
    def test_cleanup_counts_expired_records(self, auth_service, mailer, verified_account, clock):
        auth_service.signin("user@example.com", PASSWORD)
        auth_service.forgot_password("user@example.com")
        clock.advance(days=2)

        assert auth_service.cleanup_expired() == 2
