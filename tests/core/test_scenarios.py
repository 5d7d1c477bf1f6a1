import threading
from unittest.mock import patch

import pytest

from fakes import otp_result, registry_result
from verifyflow.core import state_machine as sm
from verifyflow.core import trial_limiter
from verifyflow.core.errors import (
    AlreadyVerifiedError,
    AttemptExhaustedError,
    StaleSessionVersionError,
)
from verifyflow.store import models as m
from verifyflow.store.session_repo import load_session

PHONE = "+201001234567"


def _complete_all(manager, session_id):
    manager.submit_step(session_id, m.PHONE_OTP, {"destination": PHONE})
    manager.submit_step(session_id, m.PHONE_OTP, {"code": "123456"})
    manager.submit_step(session_id, m.EMAIL_OTP, {"destination": "mona@example.test"})
    manager.submit_step(session_id, m.EMAIL_OTP, {"code": "654321"})
    manager.submit_step(session_id, m.DOCUMENT, {"front_image": "front-b64", "back_image": "back-b64"})
    manager.submit_step(session_id, m.SELFIE_LIVENESS, {"selfie_image": "selfie-b64"})
    manager.submit_step(session_id, m.FACE_MATCH, {"selfie_image": "selfie-b64", "reference_image": "ref-b64"})
    manager.submit_step(session_id, m.REGISTRY_CSO, {})
    manager.submit_step(session_id, m.REGISTRY_NTRA, {})
    return manager.submit_step(session_id, m.HEADSHOT, {"source_image": "selfie-b64"})


def test_wrong_otp_code_locks_step_after_quota(manager, gateway):
    session = manager.initiate("subject-a")
    sent = manager.submit_step(session.session_id, m.PHONE_OTP, {"destination": PHONE})
    assert sent.attempts_remaining == 5
    assert sent.status == m.AWAITING_INPUT

    gateway.script("verify_otp", *[otp_result(False) for _ in range(5)])
    outcomes = [manager.submit_step(session.session_id, m.PHONE_OTP, {"code": "000000"}) for _ in range(5)]

    assert [o.attempts_used for o in outcomes] == [1, 2, 3, 4, 5]
    assert all(o.error.code == "domain_rejection" for o in outcomes)
    last = outcomes[-1]
    assert last.status == m.LOCKED
    assert last.attempts_remaining == 0
    assert last.overall_status == m.SESSION_FAILED

    with pytest.raises(AttemptExhaustedError):
        manager.submit_step(session.session_id, m.PHONE_OTP, {"code": "123456"})
    assert len([c for c in gateway.calls if c[0] == "verify_otp"]) == 5


def test_registry_unable_to_confirm_goes_to_manual_review(manager, gateway):
    session = manager.initiate("subject-b")
    manager.submit_step(session.session_id, m.DOCUMENT, {"front_image": "front-b64"})
    gateway.script("validate_registry", registry_result(False, "unable_to_confirm"))

    outcome = manager.submit_step(session.session_id, m.REGISTRY_CSO, {})

    assert outcome.status == m.MANUAL_REVIEW
    assert outcome.overall_status == m.SESSION_MANUAL_REVIEW
    assert outcome.error.code == "ambiguous_result"
    stored = load_session(session.session_id)
    assert stored.overall_status == m.SESSION_MANUAL_REVIEW
    assert not any(r.status in (m.FAILED, m.LOCKED) for r in stored.steps.values())


def test_all_steps_succeed_verifies_subject(manager):
    session = manager.initiate("subject-c")
    last = _complete_all(manager, session.session_id)

    assert last.overall_status == m.SESSION_VERIFIED
    assert last.current_step is None
    stored = load_session(session.session_id)
    assert all(r.status == m.SUCCESS for r in stored.steps.values())

    with pytest.raises(AlreadyVerifiedError):
        manager.initiate("subject-c")


def test_concurrent_submissions_on_same_version_one_wins(manager, fake_redis):
    session = manager.initiate("subject-d")
    barrier = threading.Barrier(2, timeout=5)
    real_mark = sm.mark_submitted

    def mark_after_both_loaded(*args, **kwargs):
        barrier.wait()
        return real_mark(*args, **kwargs)

    results, errors = [], []

    def submit():
        try:
            results.append(manager.submit_step(session.session_id, m.DOCUMENT, {"front_image": "front-b64"}))
        except StaleSessionVersionError as e:
            errors.append(e)

    with patch("verifyflow.core.state_machine.mark_submitted", side_effect=mark_after_both_loaded):
        threads = [threading.Thread(target=submit) for _ in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(10)

    assert len(results) == 1
    assert len(errors) == 1
    assert results[0].status == m.SUCCESS
    # Only the winner ever reserved an attempt.
    assert trial_limiter.attempts_used(session.session_id, m.DOCUMENT) == 1
    assert load_session(session.session_id).steps[m.DOCUMENT].attempts_used == 1
