import json
import inspect
from dataclasses import asdict
from typing import Optional

from redis.exceptions import WatchError

from verifyflow.core.errors import SessionNotFoundError, StaleSessionVersionError
from verifyflow.observability.logging import log
from verifyflow.store.models import StepRecord, VerificationSession
from verifyflow.store.redis_conn import get_redis
from verifyflow.utils.time import now_ms

PREFIX = "verify:session:"
SUBJECT_PREFIX = "verify:subject:"


def _key(session_id: str) -> str:
    return f"{PREFIX}{session_id}"


def _subject_key(subject_id: str) -> str:
    return f"{SUBJECT_PREFIX}{subject_id}"


def _history_key(subject_id: str) -> str:
    return f"{SUBJECT_PREFIX}{subject_id}:history"


def _filter_kwargs(cls, data: dict) -> dict:
    """
    Drop unknown fields so cls(**kwargs) never explodes on records written by
    older or newer releases.
    """
    allowed = set(inspect.signature(cls).parameters.keys())
    return {k: v for k, v in data.items() if k in allowed}


def _dump(session: VerificationSession) -> str:
    return json.dumps(asdict(session))


def _parse(raw: str) -> VerificationSession:
    data = json.loads(raw)
    steps = {}
    for step_id, rec in (data.get("steps") or {}).items():
        rec = dict(rec or {})
        rec.setdefault("step_id", step_id)
        steps[step_id] = StepRecord(**_filter_kwargs(StepRecord, rec))
    data["steps"] = steps
    return VerificationSession(**_filter_kwargs(VerificationSession, data))


def _stored_version(raw: Optional[str]) -> Optional[int]:
    if not raw:
        return None
    return int(json.loads(raw).get("version") or 0)


def load_session(session_id: str) -> VerificationSession:
    r = get_redis()
    raw = r.get(_key(session_id))
    if not raw:
        raise SessionNotFoundError(f"session {session_id} not found", session_id=session_id)
    return _parse(raw)


def find_subject_session_id(subject_id: str) -> Optional[str]:
    r = get_redis()
    return r.get(_subject_key(subject_id)) or None


def subject_history(subject_id: str) -> list:
    r = get_redis()
    return list(r.lrange(_history_key(subject_id), 0, -1) or [])


def create_session(session: VerificationSession) -> Optional[str]:
    """
    Persist a brand-new session and point the subject index at it, atomically.

    Returns None on success, or the id of the session another writer registered
    for the same subject first (the caller should resume that one instead).
    """
    r = get_redis()
    skey = _subject_key(session.subject_id)
    with r.pipeline() as pipe:
        try:
            pipe.watch(skey)
            existing = pipe.get(skey)
            if existing:
                pipe.unwatch()
                return existing
            session.created_at = session.created_at or now_ms()
            session.updated_at = now_ms()
            pipe.multi()
            pipe.set(_key(session.session_id), _dump(session), nx=True)
            pipe.set(skey, session.session_id)
            pipe.execute()
        except WatchError:
            winner = r.get(skey)
            log(event="session_create_race", subjectId=session.subject_id, winner=winner)
            return winner or None
    return None


def compare_and_swap(session: VerificationSession, expected_version: int) -> VerificationSession:
    """
    Write ``session`` only if the stored record is still at ``expected_version``.

    On success the stored (and in-memory) version becomes expected_version + 1.
    Raises StaleSessionVersionError when another writer got there first.
    """
    r = get_redis()
    key = _key(session.session_id)
    with r.pipeline() as pipe:
        try:
            pipe.watch(key)
            current = _stored_version(pipe.get(key))
            if current is None:
                pipe.unwatch()
                raise SessionNotFoundError(
                    f"session {session.session_id} not found", session_id=session.session_id
                )
            if current != int(expected_version):
                pipe.unwatch()
                raise StaleSessionVersionError(
                    "session was modified concurrently; reload and retry",
                    session_id=session.session_id,
                    expected_version=int(expected_version),
                    stored_version=current,
                )
            session.version = int(expected_version) + 1
            session.updated_at = now_ms()
            pipe.multi()
            pipe.set(key, _dump(session))
            pipe.execute()
        except WatchError:
            session.version = int(expected_version)
            raise StaleSessionVersionError(
                "session was modified concurrently; reload and retry",
                session_id=session.session_id,
                expected_version=int(expected_version),
            )
    return session


def supersede_session(old: VerificationSession, new: VerificationSession) -> VerificationSession:
    """
    Administrative restart: register ``new`` as the subject's session and mark
    ``old`` as superseded by it. ``old`` is kept for audit, never deleted.
    """
    r = get_redis()
    skey = _subject_key(old.subject_id)
    okey = _key(old.session_id)
    with r.pipeline() as pipe:
        try:
            pipe.watch(skey, okey)
            pointer = pipe.get(skey)
            stored = _stored_version(pipe.get(okey))
            if pointer != old.session_id or stored != old.version:
                pipe.unwatch()
                raise StaleSessionVersionError(
                    "subject session changed during reset; reload and retry",
                    subject_id=old.subject_id,
                )
            old.superseded_by = new.session_id
            old.version = old.version + 1
            old.updated_at = now_ms()
            new.created_at = new.created_at or now_ms()
            new.updated_at = now_ms()
            pipe.multi()
            pipe.set(okey, _dump(old))
            pipe.set(_key(new.session_id), _dump(new))
            pipe.set(skey, new.session_id)
            pipe.lpush(_history_key(old.subject_id), old.session_id)
            pipe.execute()
        except WatchError:
            raise StaleSessionVersionError(
                "subject session changed during reset; reload and retry",
                subject_id=old.subject_id,
            )
    log(
        event="session_superseded",
        subjectId=old.subject_id,
        oldSessionId=old.session_id,
        newSessionId=new.session_id,
    )
    return new
