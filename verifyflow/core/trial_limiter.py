"""
Per-step attempt quotas backed by Redis.

Counters live in ``verify:attempts:{session_id}`` (hash step -> attempts) and
are only ever changed inside WATCH/MULTI transactions, so concurrent callers
can never push a counter past its quota. Every reservation is tracked in
``verify:reservations:{session_id}`` (hash token -> step) until it is committed
or rolled back; both operations are idempotent.
"""
from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Optional

from redis.exceptions import WatchError

from verifyflow.core.errors import AttemptExhaustedError
from verifyflow.observability.logging import log
from verifyflow.store.redis_conn import get_redis

_MAX_TXN_RETRIES = 20


def _attempts_key(session_id: str) -> str:
    return f"verify:attempts:{session_id}"


def _reservations_key(session_id: str) -> str:
    return f"verify:reservations:{session_id}"


@dataclass(frozen=True)
class Reservation:
    token: str
    session_id: str
    step_id: str
    attempts_used: int
    max_attempts: int

    @property
    def attempts_remaining(self) -> int:
        return max(0, self.max_attempts - self.attempts_used)


def new_token() -> str:
    return uuid.uuid4().hex


def attempts_used(session_id: str, step_id: str) -> int:
    r = get_redis()
    return int(r.hget(_attempts_key(session_id), step_id) or 0)


def check_and_reserve(session_id: str, step_id: str, max_attempts: int, token: Optional[str] = None) -> Reservation:
    """
    Atomically take one attempt from the step's budget. ``token`` lets the
    caller persist the reservation id before the reservation exists.

    Raises AttemptExhaustedError, without touching any state, once the budget
    is spent.
    """
    r = get_redis()
    akey = _attempts_key(session_id)
    rkey = _reservations_key(session_id)
    token = token or new_token()

    for _ in range(_MAX_TXN_RETRIES):
        with r.pipeline() as pipe:
            try:
                pipe.watch(akey)
                used = int(pipe.hget(akey, step_id) or 0)
                if used >= int(max_attempts):
                    pipe.unwatch()
                    log(
                        event="trial_exhausted",
                        sessionId=session_id,
                        stepId=step_id,
                        attemptsUsed=used,
                        maxAttempts=int(max_attempts),
                    )
                    raise AttemptExhaustedError(
                        f"no attempts left for {step_id}",
                        step_id=step_id,
                        attempts_used=used,
                        max_attempts=int(max_attempts),
                    )
                pipe.multi()
                pipe.hincrby(akey, step_id, 1)
                pipe.hset(rkey, token, step_id)
                pipe.execute()
            except WatchError:
                continue
        log(
            event="trial_reserved",
            sessionId=session_id,
            stepId=step_id,
            attemptsUsed=used + 1,
            maxAttempts=int(max_attempts),
        )
        return Reservation(
            token=token,
            session_id=session_id,
            step_id=step_id,
            attempts_used=used + 1,
            max_attempts=int(max_attempts),
        )

    raise RuntimeError(f"could not reserve attempt for {session_id}/{step_id}: contention")


def commit(reservation: Reservation) -> bool:
    """Keep the attempt. Returns False if the reservation was already settled."""
    r = get_redis()
    removed = int(r.hdel(_reservations_key(reservation.session_id), reservation.token) or 0)
    if removed:
        log(
            event="trial_committed",
            sessionId=reservation.session_id,
            stepId=reservation.step_id,
            attemptsUsed=reservation.attempts_used,
        )
    return bool(removed)


def rollback(reservation: Reservation) -> bool:
    return rollback_token(reservation.session_id, reservation.token, reason="rollback")


def rollback_token(session_id: str, token: str, reason: str = "rollback") -> bool:
    """
    Return a reserved attempt to the budget. Safe to call repeatedly: only the
    first call for a still-open token changes the counter.
    """
    r = get_redis()
    akey = _attempts_key(session_id)
    rkey = _reservations_key(session_id)

    for _ in range(_MAX_TXN_RETRIES):
        with r.pipeline() as pipe:
            try:
                pipe.watch(akey, rkey)
                step_id = pipe.hget(rkey, token)
                if not step_id:
                    pipe.unwatch()
                    return False
                used = int(pipe.hget(akey, step_id) or 0)
                pipe.multi()
                pipe.hdel(rkey, token)
                if used > 0:
                    pipe.hincrby(akey, step_id, -1)
                pipe.execute()
            except WatchError:
                continue
        log(
            event="trial_rolled_back",
            sessionId=session_id,
            stepId=step_id,
            attemptsUsed=max(0, used - 1),
            reason=reason,
        )
        return True

    raise RuntimeError(f"could not roll back reservation for {session_id}: contention")
