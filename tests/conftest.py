import os
import sys
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Environment must be in place before tokenward reads settings at import
_test_tmp_dir = tempfile.mkdtemp(prefix="tokenward_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("PERSIST_STATE", "false")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("RATE_LIMIT_BURST_CAPACITY", "1000")
os.environ.setdefault("RATE_LIMIT_REPLENISH_PER_MINUTE", "1000")
os.environ.setdefault("LOG_JSON", "false")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from tokenward.service.runtime import reset_runtime_for_tests  # noqa: E402

TEST_SECRET = "unit-test-signing-key-0123456789-abcdef"


class FakeClock:
    """Settable UTC clock for time-dependent tests."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class RecordingMailer:
    """Mailer double that keeps every message instead of sending it."""

    def __init__(self):
        self.verifications: list[tuple[str, str]] = []
        self.resets: list[tuple[str, str]] = []

    def send_verification_email(self, to_email: str, token: str) -> bool:
        self.verifications.append((to_email, token))
        return True

    def send_password_reset_email(self, to_email: str, token: str) -> bool:
        self.resets.append((to_email, token))
        return True


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def mailer():
    return RecordingMailer()


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


class CountingHasher:
    """Cheap reversible hasher that counts verify calls."""

    def __init__(self):
        self.verify_calls = 0

    def hash(self, plain: str) -> str:
        return "plain$" + plain

    def verify(self, plain: str, digest: str) -> bool:
        self.verify_calls += 1
        return digest == "plain$" + plain


@pytest.fixture
def hasher():
    return CountingHasher()
