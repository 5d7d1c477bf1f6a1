import json

import pytest

from verifyflow.core import state_machine as sm
from verifyflow.core.errors import SessionNotFoundError, StaleSessionVersionError
from verifyflow.core.step_graph import get_graph
from verifyflow.store import models as m
from verifyflow.store import session_repo


def _new(session_id="sess-1", subject_id="subject-1"):
    return sm.new_session(session_id, subject_id, get_graph())


def test_create_and_load_round_trip():
    session = _new()
    assert session_repo.create_session(session) is None

    loaded = session_repo.load_session("sess-1")
    assert loaded.subject_id == "subject-1"
    assert isinstance(loaded.steps[m.DOCUMENT], m.StepRecord)
    assert loaded.steps[m.DOCUMENT].status == m.AWAITING_INPUT
    assert loaded.created_at > 0
    assert session_repo.find_subject_session_id("subject-1") == "sess-1"


def test_second_create_for_subject_returns_winner():
    session_repo.create_session(_new("sess-1"))
    assert session_repo.create_session(_new("sess-2")) == "sess-1"
    with pytest.raises(SessionNotFoundError):
        session_repo.load_session("sess-2")


def test_compare_and_swap_bumps_version():
    session = _new()
    session_repo.create_session(session)
    session.steps[m.DOCUMENT].attempts_used = 1

    session_repo.compare_and_swap(session, 0)

    assert session.version == 1
    assert session_repo.load_session("sess-1").version == 1


def test_compare_and_swap_rejects_stale_writer():
    session_repo.create_session(_new())
    a = session_repo.load_session("sess-1")
    b = session_repo.load_session("sess-1")
    session_repo.compare_and_swap(a, a.version)

    b.overall_status = m.SESSION_FAILED
    with pytest.raises(StaleSessionVersionError) as exc:
        session_repo.compare_and_swap(b, 0)
    assert exc.value.details["stored_version"] == 1
    assert session_repo.load_session("sess-1").overall_status == m.SESSION_PENDING


def test_compare_and_swap_missing_session():
    with pytest.raises(SessionNotFoundError):
        session_repo.compare_and_swap(_new("ghost"), 0)


def test_unknown_fields_are_ignored_on_load(fake_redis):
    session = _new()
    session_repo.create_session(session)
    data = json.loads(fake_redis.get("verify:session:sess-1"))
    data["legacy_flag"] = True
    data["steps"][m.DOCUMENT]["legacy_score"] = 3
    fake_redis.set("verify:session:sess-1", json.dumps(data))

    loaded = session_repo.load_session("sess-1")
    assert not hasattr(loaded, "legacy_flag")
    assert loaded.steps[m.DOCUMENT].step_id == m.DOCUMENT


def test_supersede_moves_subject_pointer_and_keeps_old_record():
    old = _new("sess-1")
    session_repo.create_session(old)
    fresh = _new("sess-2")

    session_repo.supersede_session(old, fresh)

    assert session_repo.find_subject_session_id("subject-1") == "sess-2"
    assert session_repo.load_session("sess-1").superseded_by == "sess-2"
    assert session_repo.load_session("sess-2").version == 0
    assert session_repo.subject_history("subject-1") == ["sess-1"]


def test_supersede_refuses_outdated_copy():
    session_repo.create_session(_new("sess-1"))
    outdated = session_repo.load_session("sess-1")
    current = session_repo.load_session("sess-1")
    session_repo.compare_and_swap(current, current.version)

    with pytest.raises(StaleSessionVersionError):
        session_repo.supersede_session(outdated, _new("sess-2"))
    assert session_repo.find_subject_session_id("subject-1") == "sess-1"
