import threading

import pytest

from verifyflow.core import trial_limiter
from verifyflow.core.errors import AttemptExhaustedError


def test_reserve_until_exhausted():
    reservations = [trial_limiter.check_and_reserve("s1", "document", 3) for _ in range(3)]
    assert [r.attempts_used for r in reservations] == [1, 2, 3]
    assert reservations[-1].attempts_remaining == 0

    with pytest.raises(AttemptExhaustedError) as exc:
        trial_limiter.check_and_reserve("s1", "document", 3)
    assert exc.value.details["attempts_used"] == 3
    assert trial_limiter.attempts_used("s1", "document") == 3


def test_rollback_returns_attempt_once():
    res = trial_limiter.check_and_reserve("s1", "phone_otp", 5)
    assert trial_limiter.rollback(res) is True
    assert trial_limiter.rollback(res) is False
    assert trial_limiter.attempts_used("s1", "phone_otp") == 0


def test_commit_then_rollback_keeps_attempt():
    res = trial_limiter.check_and_reserve("s1", "phone_otp", 5)
    assert trial_limiter.commit(res) is True
    assert trial_limiter.rollback(res) is False
    assert trial_limiter.attempts_used("s1", "phone_otp") == 1


def test_rollback_of_unknown_token_is_noop():
    trial_limiter.check_and_reserve("s1", "document", 3)
    assert trial_limiter.rollback_token("s1", "never-reserved") is False
    assert trial_limiter.attempts_used("s1", "document") == 1


def test_caller_supplied_token():
    res = trial_limiter.check_and_reserve("s1", "document", 3, token="tok-1")
    assert res.token == "tok-1"
    assert trial_limiter.rollback_token("s1", "tok-1") is True


def test_counters_are_per_session_and_step():
    trial_limiter.check_and_reserve("s1", "document", 3)
    trial_limiter.check_and_reserve("s2", "document", 3)
    trial_limiter.check_and_reserve("s1", "selfie_liveness", 3)
    assert trial_limiter.attempts_used("s1", "document") == 1
    assert trial_limiter.attempts_used("s2", "document") == 1
    assert trial_limiter.attempts_used("s1", "phone_otp") == 0


def test_concurrent_reservations_never_exceed_quota():
    granted, refused = [], []
    lock = threading.Lock()

    def worker():
        try:
            r = trial_limiter.check_and_reserve("s1", "document", 3)
            with lock:
                granted.append(r)
        except AttemptExhaustedError:
            with lock:
                refused.append(1)

    threads = [threading.Thread(target=worker) for _ in range(10)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(10)

    assert len(granted) == 3
    assert len(refused) == 7
    assert trial_limiter.attempts_used("s1", "document") == 3
