"""
VerificationSessionManager
--------------------------
Top-level facade of the verification workflow. Creates and resumes sessions,
routes step submissions through quota -> provider -> state machine, and
persists every transition (version-guarded) before reporting it.

Submission protocol for one step:
  1) load session, check the step is actionable
  2) persist the step as "submitted" (CAS on version)   <- concurrent writers lose here
  3) reserve an attempt (TrialLimiter)
  4) call the provider through the gateway
  5) classify and transition; persist (CAS), re-applying the outcome to a
     fresh copy if another step of the session was written meanwhile
  6) commit/rollback the reservation once the transition is stored
"""
from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, List, Optional

from rq import Retry

from verifyflow.core import aggregator, policy
from verifyflow.core import state_machine as sm
from verifyflow.core import trial_limiter
from verifyflow.core.errors import (
    AlreadyVerifiedError,
    AmbiguousResultError,
    AttemptExhaustedError,
    DomainRejectionError,
    ProviderRequestError,
    SessionTerminalError,
    StaleSessionVersionError,
    StepInputError,
    StepNotEligibleError,
    VerificationError,
    error_payload,
)
from verifyflow.core.step_graph import StepDependencyGraph, get_graph
from verifyflow.observability.logging import log
import verifyflow.observability.metrics as metrics
from verifyflow.providers.base import RESULT_SENT, ProviderResult
from verifyflow.providers.gateway import ExternalVerificationGateway, get_gateway
from verifyflow.queue.jobs import notify_review_job
from verifyflow.queue.rq_conn import get_queue
from verifyflow.settings import settings
from verifyflow.store import models as m
from verifyflow.store import session_repo as repo
from verifyflow.utils.time import now_ms

OTP_CHANNELS = {m.PHONE_OTP: "phone", m.EMAIL_OTP: "email"}

# Version conflicts tolerated while writing a claimed step's outcome
_SETTLE_RETRIES = 5

# Document OCR field -> CSO request field
_CSO_FIELD_MAP = {
    "national_id": "nid",
    "full_name": "full_name",
    "first_name": "first_name",
    "serial_number": "serial_number",
    "expiry_date": "expiration",
}


@dataclass
class StepOutcome:
    step_id: str
    status: str
    attempts_used: int
    attempts_remaining: int
    overall_status: str
    current_step: Optional[str]
    session_version: int
    transaction_id: Optional[str] = None
    error: Optional[VerificationError] = None

    def to_dict(self) -> Dict[str, Any]:
        out = {
            "step_id": self.step_id,
            "status": self.status,
            "attempts_used": self.attempts_used,
            "attempts_remaining": self.attempts_remaining,
            "overall_status": self.overall_status,
            "current_step": self.current_step,
            "session_version": self.session_version,
        }
        if self.transaction_id:
            out["transaction_id"] = self.transaction_id
        if self.error is not None:
            out["error"] = error_payload(self.error)
        return out


@dataclass
class SessionSnapshot:
    session_id: str
    subject_id: str
    overall_status: str
    current_step: Optional[str]
    version: int
    created_at: int
    steps: List[m.StepRecord] = field(default_factory=list)
    result: Optional[aggregator.FinalVerificationResult] = None
    superseded_by: Optional[str] = None

    def to_dict(self, include_details: bool = False) -> Dict[str, Any]:
        steps = []
        for rec in self.steps:
            row = {
                "step_id": rec.step_id,
                "status": rec.status,
                "attempts_used": rec.attempts_used,
                "attempts_remaining": rec.attempts_remaining,
            }
            if include_details:
                row.update(
                    max_attempts=rec.max_attempts,
                    last_transaction_id=rec.last_transaction_id,
                    result_summary=rec.result_summary,
                    completed_at=rec.completed_at,
                )
            steps.append(row)
        out = {
            "session_id": self.session_id,
            "overall_status": self.overall_status,
            "current_step": self.current_step,
            "steps": steps,
        }
        if include_details:
            out.update(
                subject_id=self.subject_id,
                version=self.version,
                created_at=self.created_at,
                superseded_by=self.superseded_by,
                result=asdict(self.result) if self.result else None,
            )
        return out


def _require(provider_input: Dict[str, Any], *keys: str) -> None:
    missing = [k for k in keys if not provider_input.get(k)]
    if missing:
        raise StepInputError(f"missing input: {', '.join(missing)}", missing=missing)


class VerificationSessionManager:
    def __init__(
        self,
        gateway: Optional[ExternalVerificationGateway] = None,
        graph: Optional[StepDependencyGraph] = None,
    ):
        self._gateway = gateway
        self.graph = graph or get_graph()

    @property
    def gateway(self) -> ExternalVerificationGateway:
        if self._gateway is None:
            self._gateway = get_gateway()
        return self._gateway

    # ------------------------------------------------------------------ sessions

    def initiate(self, subject_id: str) -> m.VerificationSession:
        if not subject_id:
            raise StepInputError("subject_id is required")

        existing_id = repo.find_subject_session_id(subject_id)
        if existing_id:
            return self._resume(repo.load_session(existing_id))

        session = sm.new_session(uuid.uuid4().hex, subject_id, self.graph)
        winner = repo.create_session(session)
        if winner:
            # Another request registered a session for this subject first.
            return self._resume(repo.load_session(winner))

        metrics.increment_session_created()
        log(
            event="session_created",
            sessionId=session.session_id,
            subjectId=subject_id,
            currentStep=session.current_step,
        )
        return session

    def _resume(self, session: m.VerificationSession) -> m.VerificationSession:
        if session.overall_status == m.SESSION_VERIFIED:
            raise AlreadyVerifiedError(
                "subject is already verified", subject_id=session.subject_id, session_id=session.session_id
            )
        if session.is_terminal:
            raise SessionTerminalError(
                "verification failed; an administrative reset is required",
                subject_id=session.subject_id,
                session_id=session.session_id,
                overall_status=session.overall_status,
            )
        session.current_step = sm.next_step(session, self.graph)
        log(
            event="session_resumed",
            sessionId=session.session_id,
            subjectId=session.subject_id,
            currentStep=session.current_step,
            version=session.version,
        )
        return session

    def get_status(self, session_id: str) -> SessionSnapshot:
        session = repo.load_session(session_id)
        return SessionSnapshot(
            session_id=session.session_id,
            subject_id=session.subject_id,
            overall_status=session.overall_status,
            current_step=session.current_step,
            version=session.version,
            created_at=session.created_at,
            steps=[session.steps[sid] for sid in self.graph.order],
            result=aggregator.summarize(session, self.graph),
            superseded_by=session.superseded_by,
        )

    # ------------------------------------------------------------------ submission

    def submit_step(self, session_id: str, step_id: str, provider_input: Optional[Dict[str, Any]] = None) -> StepOutcome:
        provider_input = dict(provider_input or {})
        session = repo.load_session(session_id)
        if step_id not in session.steps:
            raise StepNotEligibleError(f"unknown step {step_id}", step_id=step_id, reason="unknown_step")

        record = session.steps[step_id]
        if record.status != m.LOCKED and (session.is_terminal or session.superseded_by):
            raise SessionTerminalError(
                "session no longer accepts submissions",
                session_id=session_id,
                overall_status=session.overall_status,
                superseded_by=session.superseded_by,
            )
        sm.check_eligible(session, step_id, self.graph)

        if sm.is_stale_submission(record):
            token = sm.recover_stale_submission(session, record)
            if token:
                trial_limiter.rollback_token(session_id, token, reason="stale_submission")
            record.attempts_used = trial_limiter.attempts_used(session_id, step_id)

        if step_id in OTP_CHANNELS and not provider_input.get("code"):
            return self._send_otp(session, record, provider_input)

        call = self._provider_call(session, record, provider_input)
        expected = session.version

        # Claim the step first; the token is persisted before it is reserved
        # so a crashed request's attempt can always be found and returned.
        token = trial_limiter.new_token()
        sm.mark_submitted(session, record, token)
        repo.compare_and_swap(session, expected)

        try:
            reservation = trial_limiter.check_and_reserve(session_id, step_id, record.max_attempts, token=token)
        except AttemptExhaustedError:
            used = trial_limiter.attempts_used(session_id, step_id)
            self._settle(session, step_id, token, lambda s, r: sm.lock_exhausted(s, r, used))
            raise

        try:
            result = call()
        except Exception as e:
            # No classifiable result: the attempt is returned to the budget.
            trial_limiter.rollback(reservation)
            reason = e.code if isinstance(e, VerificationError) else "provider_error"
            used = trial_limiter.attempts_used(session_id, step_id)

            def revert(s, r):
                sm.revert_submission(s, r, reason=reason)
                r.attempts_used = used

            self._settle(session, step_id, token, revert)
            metrics.increment_submission(step_id, reason)
            log(event="step_submission_aborted", sessionId=session_id, stepId=step_id, reason=reason)
            raise

        classification = policy.classify(step_id, result)
        ambiguous = classification.bucket == policy.AMBIGUOUS
        # Count as it will stand once the reservation is settled below.
        used = trial_limiter.attempts_used(session_id, step_id) - (1 if ambiguous else 0)
        session, record, status = self._settle(
            session,
            step_id,
            token,
            lambda s, r: sm.apply_result(s, r, result, classification, used),
        )
        if ambiguous:
            trial_limiter.rollback(reservation)
        else:
            trial_limiter.commit(reservation)
        metrics.increment_submission(step_id, classification.bucket)

        if status == m.MANUAL_REVIEW:
            self._handoff_review(session, step_id)

        error: Optional[VerificationError] = None
        if classification.bucket == policy.REJECTED:
            error = DomainRejectionError(
                classification.reason,
                step_id=step_id,
                hard_fail=classification.hard_fail,
                locked=status == m.LOCKED,
            )
        elif classification.bucket == policy.AMBIGUOUS:
            error = AmbiguousResultError(classification.reason, step_id=step_id)
        return self._outcome(session, record, transaction_id=result.transaction_id, error=error)

    def _send_otp(self, session: m.VerificationSession, record: m.StepRecord, provider_input: Dict[str, Any]) -> StepOutcome:
        """
        First OTP phase: deliver a code. Consumes no verification attempt and
        changes no status, but draws on the step's separate send budget.
        """
        _require(provider_input, "destination")
        expected = session.version
        channel = OTP_CHANNELS[record.step_id]
        destination = str(provider_input["destination"]).strip()

        try:
            send = trial_limiter.check_and_reserve(
                session.session_id, f"{record.step_id}:sends", settings.OTP_MAX_SENDS
            )
        except AttemptExhaustedError:
            raise StepNotEligibleError(
                "verification code send limit reached",
                step_id=record.step_id,
                reason="otp_send_limit",
                max_sends=settings.OTP_MAX_SENDS,
            )

        try:
            result = self.gateway.send_otp(channel, destination, session.subject_id)
        except Exception:
            trial_limiter.rollback(send)
            raise
        if result.status != RESULT_SENT:
            trial_limiter.rollback(send)
            raise ProviderRequestError("verification code could not be sent", step_id=record.step_id)
        trial_limiter.commit(send)

        record.last_transaction_id = result.transaction_id
        summary = dict(record.result_summary)
        summary.update(destination=destination, channel=channel, otp_sent_at=now_ms())
        summary["otp_sends"] = int(summary.get("otp_sends", 0)) + 1
        record.result_summary = summary
        self._persist(session, expected)
        log(
            event="otp_sent",
            sessionId=session.session_id,
            stepId=record.step_id,
            destination=destination,
            transactionId=result.transaction_id,
        )
        return self._outcome(session, record, transaction_id=result.transaction_id)

    def _provider_call(
        self, session: m.VerificationSession, record: m.StepRecord, provider_input: Dict[str, Any]
    ) -> Callable[[], ProviderResult]:
        """Validate the step input and bind the gateway call for it."""
        gw = self.gateway
        subject = session.subject_id
        step_id = record.step_id

        if step_id in OTP_CHANNELS:
            txn = provider_input.get("transaction_id") or record.last_transaction_id
            if not txn:
                raise StepInputError("request a verification code first", step_id=step_id)
            code = str(provider_input["code"]).strip()
            return lambda: gw.verify_otp(OTP_CHANNELS[step_id], txn, code, subject)

        if step_id == m.DOCUMENT:
            _require(provider_input, "front_image")
            return lambda: gw.submit_document(
                provider_input["front_image"], provider_input.get("back_image"), subject
            )

        if step_id == m.SELFIE_LIVENESS:
            _require(provider_input, "selfie_image")
            return lambda: gw.submit_selfie(
                provider_input["selfie_image"], provider_input.get("reference_image"), subject
            )

        if step_id == m.FACE_MATCH:
            _require(provider_input, "selfie_image", "reference_image")
            return lambda: gw.submit_selfie(
                provider_input["selfie_image"], provider_input["reference_image"], subject
            )

        if step_id in m.REGISTRY_STEPS:
            registry = "cso" if step_id == m.REGISTRY_CSO else "ntra"
            fields = self._registry_fields(session, registry, provider_input)
            return lambda: gw.validate_registry(registry, fields, subject)

        if step_id == m.HEADSHOT:
            _require(provider_input, "source_image")
            style = provider_input.get("style_params") or {}
            if not isinstance(style, dict):
                raise StepInputError("style_params must be an object", step_id=step_id)
            return lambda: gw.generate_headshot(provider_input["source_image"], style)

        raise StepNotEligibleError(f"no provider for {step_id}", step_id=step_id, reason="unknown_step")

    def _registry_fields(self, session: m.VerificationSession, registry: str, provider_input: Dict[str, Any]) -> Dict[str, Any]:
        """
        Identity fields for a registry check: what the document step extracted,
        overridden by anything the caller supplied explicitly.
        """
        extracted = session.steps[m.DOCUMENT].result_summary.get("extracted_fields") or {}
        fields: Dict[str, Any] = {}
        for src, dst in _CSO_FIELD_MAP.items():
            if extracted.get(src):
                fields[dst] = extracted[src]
        if registry == "ntra":
            phone = session.steps[m.PHONE_OTP].result_summary.get("destination")
            if phone:
                fields["phone_number"] = phone

        supplied = provider_input.get("extracted_identity_fields") or {}
        if not isinstance(supplied, dict):
            raise StepInputError("extracted_identity_fields must be an object")
        fields.update({k: v for k, v in supplied.items() if v not in (None, "")})

        needed = ("nid", "phone_number") if registry == "ntra" else ("nid",)
        _require(fields, *needed)
        return fields

    # ------------------------------------------------------------------ review & admin

    def resolve_review(
        self,
        session_id: str,
        step_id: str,
        approved: bool,
        hard_fail: bool = False,
        reviewer: str = "",
    ) -> StepOutcome:
        session = repo.load_session(session_id)
        if session.is_terminal or session.superseded_by:
            raise SessionTerminalError("session no longer accepts decisions", session_id=session_id)
        if step_id not in session.steps:
            raise StepNotEligibleError(f"unknown step {step_id}", step_id=step_id, reason="unknown_step")
        record = session.steps[step_id]
        expected = session.version
        sm.resolve_review(session, record, approved, hard_fail=hard_fail, reviewer=reviewer)
        self._persist(session, expected)
        metrics.increment_submission(step_id, "review_approved" if approved else "review_rejected")
        log(
            event="review_resolved",
            sessionId=session_id,
            stepId=step_id,
            approved=bool(approved),
            hardFail=bool(hard_fail),
            reviewer=reviewer,
        )
        return self._outcome(session, record)

    def reset_subject(self, subject_id: str, reason: str = "") -> m.VerificationSession:
        """Administrative restart: a fresh session (and fresh attempt budgets) for the subject."""
        fresh = sm.new_session(uuid.uuid4().hex, subject_id, self.graph)
        existing_id = repo.find_subject_session_id(subject_id)
        if existing_id:
            repo.supersede_session(repo.load_session(existing_id), fresh)
        elif repo.create_session(fresh):
            raise StaleSessionVersionError("subject session changed during reset; retry", subject_id=subject_id)
        log(
            event="admin_subject_reset",
            subjectId=subject_id,
            previousSessionId=existing_id,
            sessionId=fresh.session_id,
            reason=reason,
        )
        return fresh

    # ------------------------------------------------------------------ internals

    def _persist(self, session: m.VerificationSession, expected_version: int) -> None:
        previous = session.overall_status
        sm.promote_ready(session, self.graph)
        session.overall_status = aggregator.compute(session, self.graph)
        session.current_step = sm.next_step(session, self.graph)
        repo.compare_and_swap(session, expected_version)
        if session.overall_status != previous:
            metrics.increment_session_status(session.overall_status)
            log(
                event="session_status_changed",
                sessionId=session.session_id,
                subjectId=session.subject_id,
                fromStatus=previous,
                toStatus=session.overall_status,
                version=session.version,
            )

    def _settle(
        self,
        session: m.VerificationSession,
        step_id: str,
        token: str,
        apply: Callable[[m.VerificationSession, m.StepRecord], Any],
    ):
        """
        Write the outcome of this request's claimed submission.

        Other steps of the session may be written while the provider call is in
        flight. On a version conflict the outcome is re-applied to a fresh copy,
        as long as that copy still carries this request's claim token.
        Returns (session, record, apply's return value) as written.
        """
        for _ in range(_SETTLE_RETRIES):
            record = session.steps[step_id]
            expected = session.version
            out = apply(session, record)
            try:
                self._persist(session, expected)
                return session, record, out
            except StaleSessionVersionError:
                session = repo.load_session(session.session_id)
                fresh = session.steps[step_id]
                if fresh.status != m.SUBMITTED or fresh.pending_reservation != token:
                    log(
                        event="step_claim_lost",
                        sessionId=session.session_id,
                        stepId=step_id,
                        status=fresh.status,
                    )
                    raise
                log(event="step_settle_retry", sessionId=session.session_id, stepId=step_id, version=session.version)
        raise StaleSessionVersionError(
            "session is under heavy concurrent modification; retry",
            session_id=session.session_id,
            step_id=step_id,
        )

    def _handoff_review(self, session: m.VerificationSession, step_id: str) -> None:
        if not settings.ENABLE_REVIEW_HANDOFF:
            return
        try:
            q = get_queue()
            q.enqueue(
                notify_review_job,
                session.session_id,
                step_id,
                retry=Retry(max=settings.REVIEW_JOB_MAX_RETRIES, interval=[10, 30, 60, 300]),
            )
            log(event="review_enqueued", sessionId=session.session_id, stepId=step_id)
        except Exception as e:
            # The step is already persisted in manual_review; admins can still list it.
            log(event="review_enqueue_failed", sessionId=session.session_id, stepId=step_id, error=str(e)[:300])

    def _outcome(
        self,
        session: m.VerificationSession,
        record: m.StepRecord,
        transaction_id: Optional[str] = None,
        error: Optional[VerificationError] = None,
    ) -> StepOutcome:
        return StepOutcome(
            step_id=record.step_id,
            status=record.status,
            attempts_used=record.attempts_used,
            attempts_remaining=record.attempts_remaining,
            overall_status=session.overall_status,
            current_step=session.current_step,
            session_version=session.version,
            transaction_id=transaction_id or record.last_transaction_id,
            error=error,
        )


_MANAGER: Optional[VerificationSessionManager] = None


def get_manager() -> VerificationSessionManager:
    global _MANAGER
    if _MANAGER is None:
        _MANAGER = VerificationSessionManager()
    return _MANAGER
