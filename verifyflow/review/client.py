"""
Review desk handoff
-------------------
Posts a manual_review case to the external review desk and verifies the
signature on decisions the desk posts back. Both directions are signed with
HMAC-SHA256 over the raw JSON body using REVIEW_WEBHOOK_SECRET.
"""
from __future__ import annotations

import hashlib
import hmac
import json
import time

import httpx

from verifyflow.observability.logging import log
from verifyflow.settings import settings
from verifyflow.store import models as m
from verifyflow.store.session_repo import load_session

SIGNATURE_HEADER = "x-review-signature"

# Summary keys that never leave the service
_WITHHELD = {"destination", "extracted_fields"}


def sign(body: bytes) -> str:
    secret = (settings.REVIEW_WEBHOOK_SECRET or "").encode("utf-8")
    return hmac.new(secret, body, hashlib.sha256).hexdigest()


def verify_signature(body: bytes, signature: str) -> bool:
    if not settings.REVIEW_WEBHOOK_SECRET:
        return False
    return hmac.compare_digest(sign(body), (signature or "").strip())


def build_review_case(session: m.VerificationSession, step_id: str) -> dict:
    record = session.steps[step_id]
    summary = {k: v for k, v in (record.result_summary or {}).items() if k not in _WITHHELD}
    return {
        "session_id": session.session_id,
        "subject_id": session.subject_id,
        "step_id": step_id,
        "status": record.status,
        "transaction_id": record.last_transaction_id,
        "attempts_used": record.attempts_used,
        "reason": summary.get("reason"),
        "summary": summary,
        "session_version": session.version,
    }


def notify_review_desk(session_id: str, step_id: str) -> bool:
    """
    Returns False when the step is no longer under review (nothing to send).
    Raises on delivery failure.
    """
    if not settings.REVIEW_DESK_URL:
        raise RuntimeError("REVIEW_DESK_URL is not set")

    session = load_session(session_id)
    record = session.steps.get(step_id)
    if record is None or record.status != m.MANUAL_REVIEW:
        log(event="review_notify_skipped", sessionId=session_id, stepId=step_id,
            status=getattr(record, "status", None))
        return False

    body = json.dumps(build_review_case(session, step_id), separators=(",", ":")).encode("utf-8")
    start = time.time()
    with httpx.Client(timeout=float(settings.REVIEW_TIMEOUT_SEC)) as client:
        resp = client.post(
            settings.REVIEW_DESK_URL,
            content=body,
            headers={"Content-Type": "application/json", SIGNATURE_HEADER: sign(body)},
        )
    latency_ms = int((time.time() - start) * 1000)
    log(event="review_notify_response", sessionId=session_id, stepId=step_id,
        statusCode=resp.status_code, latencyMs=latency_ms)
    resp.raise_for_status()
    return True
