"""
StepStateMachine
----------------
Per-step lifecycle:

    pending -> awaiting_input -> submitted -> success | failed | manual_review

    failed        -> awaiting_input (attempts left) | locked (budget spent)
    manual_review -> success | failed   (human reviewer decision)
    submitted     -> awaiting_input     (no classifiable provider result)

INVARIANT: a step only reaches awaiting_input once every dependency is success.
INVARIANT: transitions not listed in ALLOWED_TRANSITIONS raise; nothing else
mutates a StepRecord's status.
"""
from __future__ import annotations

from typing import List, Optional

from verifyflow.core import policy
from verifyflow.core.errors import AttemptExhaustedError, StepNotEligibleError
from verifyflow.core.step_graph import StepDependencyGraph
from verifyflow.observability.logging import log
from verifyflow.providers.base import ProviderResult
from verifyflow.settings import settings
from verifyflow.store import models as m
from verifyflow.utils.time import now_ms

ALLOWED_TRANSITIONS = {
    m.PENDING: {m.AWAITING_INPUT},
    m.AWAITING_INPUT: {m.SUBMITTED},
    m.SUBMITTED: {m.SUCCESS, m.FAILED, m.MANUAL_REVIEW, m.AWAITING_INPUT},
    m.FAILED: {m.AWAITING_INPUT, m.LOCKED},
    m.MANUAL_REVIEW: {m.SUCCESS, m.FAILED},
    m.SUCCESS: set(),
    m.LOCKED: set(),
}

# Statuses where the step needs no (or can accept no) further input from the subject
BLOCKED_STATUSES = (m.SUCCESS, m.MANUAL_REVIEW, m.LOCKED)


class InvalidTransition(RuntimeError):
    pass


def _transition(session_id: str, record: m.StepRecord, new_status: str, reason: str = "") -> None:
    old = record.status
    if new_status not in ALLOWED_TRANSITIONS.get(old, set()):
        raise InvalidTransition(f"{record.step_id}: {old} -> {new_status} is not allowed")
    record.status = new_status
    log(
        event="step_transition",
        sessionId=session_id,
        stepId=record.step_id,
        fromStatus=old,
        toStatus=new_status,
        reason=reason,
        attemptsUsed=record.attempts_used,
    )


def new_session(session_id: str, subject_id: str, graph: StepDependencyGraph) -> m.VerificationSession:
    """Fresh session: every step pending except dependency-free ones."""
    session = m.VerificationSession(
        session_id=session_id,
        subject_id=subject_id,
        overall_status=m.SESSION_PENDING,
        created_at=now_ms(),
    )
    for step_id in graph.order:
        spec = graph.spec(step_id)
        session.steps[step_id] = m.StepRecord(
            step_id=step_id,
            status=m.AWAITING_INPUT if not spec.depends_on else m.PENDING,
            max_attempts=spec.max_attempts,
        )
    session.current_step = next_step(session, graph)
    return session


def deps_satisfied(session: m.VerificationSession, step_id: str, graph: StepDependencyGraph) -> bool:
    return all(session.steps[d].status == m.SUCCESS for d in graph.dependencies(step_id))


def is_blocked(record: m.StepRecord) -> bool:
    return record.status in BLOCKED_STATUSES or record.hard_failed


def is_stale_submission(record: m.StepRecord, at_ms: Optional[int] = None) -> bool:
    if record.status != m.SUBMITTED:
        return False
    age_ms = (at_ms or now_ms()) - int(record.submitted_at or 0)
    return age_ms > int(settings.STALE_SUBMISSION_SEC) * 1000


def next_step(session: m.VerificationSession, graph: StepDependencyGraph) -> Optional[str]:
    """First step, in canonical order, that is unblocked, not done and has its dependencies met."""
    for step_id in graph.order:
        record = session.steps[step_id]
        if is_blocked(record):
            continue
        if deps_satisfied(session, step_id, graph):
            return step_id
    return None


def promote_ready(session: m.VerificationSession, graph: StepDependencyGraph) -> List[str]:
    promoted = []
    for step_id in graph.order:
        record = session.steps[step_id]
        if record.status == m.PENDING and deps_satisfied(session, step_id, graph):
            _transition(session.session_id, record, m.AWAITING_INPUT, reason="dependencies_met")
            promoted.append(step_id)
    return promoted


def check_eligible(session: m.VerificationSession, step_id: str, graph: StepDependencyGraph) -> m.StepRecord:
    """
    Raise unless the subject may submit input for ``step_id`` right now.
    Locked steps raise AttemptExhaustedError; everything else StepNotEligibleError.
    """
    if step_id not in graph:
        raise StepNotEligibleError(f"unknown step {step_id}", step_id=step_id, reason="unknown_step")
    record = session.steps[step_id]

    if record.status == m.LOCKED:
        raise AttemptExhaustedError(
            f"{step_id} is locked",
            step_id=step_id,
            attempts_used=record.attempts_used,
            max_attempts=record.max_attempts,
        )
    if not deps_satisfied(session, step_id, graph):
        missing = sorted(d for d in graph.dependencies(step_id) if session.steps[d].status != m.SUCCESS)
        raise StepNotEligibleError(
            f"{step_id} requires {', '.join(missing)} first",
            step_id=step_id,
            reason="dependencies_unmet",
            missing=missing,
        )
    if record.status == m.SUCCESS:
        raise StepNotEligibleError(f"{step_id} already completed", step_id=step_id, reason="already_completed")
    if record.status == m.MANUAL_REVIEW:
        raise StepNotEligibleError(f"{step_id} is under manual review", step_id=step_id, reason="under_review")
    if record.hard_failed:
        raise StepNotEligibleError(f"{step_id} failed permanently", step_id=step_id, reason="hard_failed")
    if record.status == m.SUBMITTED and not is_stale_submission(record):
        raise StepNotEligibleError(f"{step_id} has a submission in flight", step_id=step_id, reason="in_flight")
    return record


def recover_stale_submission(session: m.VerificationSession, record: m.StepRecord) -> Optional[str]:
    """
    Put a step abandoned mid-call (crashed request) back to awaiting_input.
    Returns the orphaned reservation token, which the caller must roll back.
    """
    token = record.pending_reservation
    record.pending_reservation = None
    record.submitted_at = None
    _transition(session.session_id, record, m.AWAITING_INPUT, reason="stale_submission_recovered")
    return token


def mark_submitted(session: m.VerificationSession, record: m.StepRecord, reservation_token: str) -> None:
    record.pending_reservation = reservation_token
    record.submitted_at = now_ms()
    _transition(session.session_id, record, m.SUBMITTED, reason="provider_call")


def revert_submission(session: m.VerificationSession, record: m.StepRecord, reason: str) -> None:
    """No classifiable result came back: the step is open again, nothing consumed."""
    record.pending_reservation = None
    record.submitted_at = None
    _transition(session.session_id, record, m.AWAITING_INPUT, reason=reason)


def lock_exhausted(session: m.VerificationSession, record: m.StepRecord, attempts_used: int) -> None:
    """The quota was spent outside this record's view (e.g. an orphaned reservation)."""
    record.attempts_used = int(attempts_used)
    record.pending_reservation = None
    record.submitted_at = None
    _transition(session.session_id, record, m.FAILED, reason="attempts_exhausted")
    _transition(session.session_id, record, m.LOCKED, reason="attempts_exhausted")


def _settle_failure(session: m.VerificationSession, record: m.StepRecord, hard_fail: bool, reason: str) -> None:
    _transition(session.session_id, record, m.FAILED, reason=reason)
    if hard_fail:
        return
    if record.attempts_used < record.max_attempts:
        _transition(session.session_id, record, m.AWAITING_INPUT, reason="retry_allowed")
    else:
        _transition(session.session_id, record, m.LOCKED, reason="attempts_exhausted")


def apply_result(
    session: m.VerificationSession,
    record: m.StepRecord,
    result: ProviderResult,
    classification: policy.Classification,
    attempts_used: int,
) -> str:
    """
    Apply a classified provider result to a submitted step. ``attempts_used``
    is the limiter's count after the reservation was committed or rolled back.
    Returns the resulting step status.
    """
    record.attempts_used = int(attempts_used)
    record.pending_reservation = None
    record.submitted_at = None
    record.last_transaction_id = result.transaction_id or record.last_transaction_id
    summary = dict(record.result_summary)
    summary.update(classification.summary)
    summary["classification"] = classification.bucket
    summary["reason"] = classification.reason
    summary["hard_fail"] = bool(classification.hard_fail)
    record.result_summary = summary

    if classification.bucket == policy.SUCCESS:
        _transition(session.session_id, record, m.SUCCESS, reason=classification.reason)
        record.completed_at = now_ms()
    elif classification.bucket == policy.AMBIGUOUS:
        _transition(session.session_id, record, m.MANUAL_REVIEW, reason=classification.reason)
    else:
        _settle_failure(session, record, classification.hard_fail, classification.reason)
    return record.status


def resolve_review(
    session: m.VerificationSession,
    record: m.StepRecord,
    approved: bool,
    hard_fail: bool = False,
    reviewer: str = "",
) -> str:
    if record.status != m.MANUAL_REVIEW:
        raise StepNotEligibleError(
            f"{record.step_id} is not awaiting review", step_id=record.step_id, reason="not_under_review"
        )
    summary = dict(record.result_summary)
    summary["review"] = {"approved": bool(approved), "reviewer": reviewer, "decided_at": now_ms()}
    summary["hard_fail"] = bool(hard_fail and not approved)
    record.result_summary = summary

    if approved:
        _transition(session.session_id, record, m.SUCCESS, reason="review_approved")
        record.completed_at = now_ms()
    else:
        _settle_failure(session, record, bool(hard_fail), "review_rejected")
    return record.status
