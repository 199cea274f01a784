"""
tests/test_core.py -- Unit tests for core/ (config, deadline, retry).

Covers:
  - Settings: SECRET_KEY policy in debug and production mode, bound checks
  - Deadline: expiry on an injected clock, never()
  - RetryPolicy: transient storage errors retried, exhaustion -> InternalFailure,
    non-transient errors propagate untouched
"""

import pytest
from pydantic import ValidationError
from sqlalchemy.exc import OperationalError

from core.config import Settings
from core.deadline import Deadline
from core.errors import DeadlineExceeded, InternalFailure
from core.retry import RetryPolicy

# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


class TestSettings:
    def test_debug_generates_secret_key(self):
        settings = Settings(debug=True, secret_key="")
        assert len(settings.secret_key) >= 32

    def test_production_requires_secret_key(self):
        with pytest.raises(ValidationError):
            Settings(debug=False, secret_key="")

    def test_short_secret_key_rejected(self):
        with pytest.raises(ValidationError):
            Settings(debug=True, secret_key="too-short")

    def test_non_positive_ttl_rejected(self):
        with pytest.raises(ValidationError):
            Settings(debug=True, session_ttl_seconds=0)

    def test_zero_lockout_threshold_rejected(self):
        with pytest.raises(ValidationError):
            Settings(debug=True, lockout_threshold=0)

    def test_self_demotion_off_by_default(self):
        assert Settings(debug=True).allow_admin_self_demotion is False


# ---------------------------------------------------------------------------
# Deadline
# ---------------------------------------------------------------------------


class _Tick:
    def __init__(self) -> None:
        self.t = 100.0

    def __call__(self) -> float:
        return self.t


class TestDeadline:
    def test_expires_at_boundary(self):
        clock = _Tick()
        deadline = Deadline(5, clock=clock)
        clock.t = 104.9
        assert not deadline.expired()
        assert deadline.remaining() == pytest.approx(0.1)
        clock.t = 105.0
        assert deadline.expired()
        with pytest.raises(DeadlineExceeded):
            deadline.check()

    def test_never_does_not_expire(self):
        deadline = Deadline.never()
        assert not deadline.expired()
        deadline.check()


# ---------------------------------------------------------------------------
# Retry
# ---------------------------------------------------------------------------


def _transient() -> OperationalError:
    return OperationalError("UPDATE principals", {}, Exception("database is locked"))


class TestRetryPolicy:
    policy = RetryPolicy(attempts=3, base_delay=0, max_delay=0)

    def test_transient_error_is_retried(self):
        calls = []

        def flaky():
            calls.append(1)
            if len(calls) < 3:
                raise _transient()
            return "ok"

        assert self.policy.call(flaky) == "ok"
        assert len(calls) == 3

    def test_exhaustion_becomes_internal_failure(self):
        calls = []

        def always_locked():
            calls.append(1)
            raise _transient()

        with pytest.raises(InternalFailure) as exc:
            self.policy.call(always_locked)
        assert len(calls) == 3
        assert isinstance(exc.value.__cause__, OperationalError)

    def test_non_transient_error_is_not_retried(self):
        calls = []

        def broken():
            calls.append(1)
            raise ValueError("bad input")

        with pytest.raises(ValueError):
            self.policy.call(broken)
        assert len(calls) == 1
