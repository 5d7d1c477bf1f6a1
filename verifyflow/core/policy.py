"""
Step-specific classification of provider results.

Each step has its own table: score bands for OCR and biometrics, error-code
tables for the registries. Every result lands in exactly one bucket:

    SUCCESS   -> step succeeds
    REJECTED  -> step fails (retryable while attempts remain; never if hard_fail)
    AMBIGUOUS -> step goes to manual review
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

from verifyflow.providers.base import RESULT_FAILED, RESULT_MANUAL_REVIEW, RESULT_SUCCESS, ProviderResult
from verifyflow.settings import settings
from verifyflow.store import models as m

SUCCESS = "success"
REJECTED = "rejected"
AMBIGUOUS = "ambiguous"


@dataclass
class Classification:
    bucket: str
    reason: str
    hard_fail: bool = False
    summary: Dict[str, Any] = field(default_factory=dict)


def _band(score: Optional[float], pass_at: float, review_at: float) -> str:
    if score is None:
        return AMBIGUOUS
    if score >= pass_at:
        return SUCCESS
    if score >= review_at:
        return AMBIGUOUS
    return REJECTED


def _provider_verdict(result: ProviderResult, summary: Dict[str, Any]) -> Optional[Classification]:
    """An explicit review flag or coded rejection from the provider outranks its scores."""
    if result.status == RESULT_MANUAL_REVIEW:
        return Classification(AMBIGUOUS, "provider_manual_review", summary=summary)
    if result.status == RESULT_FAILED and result.error_code:
        return Classification(REJECTED, str(result.error_code), summary=summary)
    return None


def classify_otp(result: ProviderResult) -> Classification:
    if result.fields.get("matched"):
        return Classification(SUCCESS, "otp_matched", summary={"matched": True})
    return Classification(REJECTED, result.error_code or "otp_mismatch", summary={"matched": False})


def classify_document(result: ProviderResult) -> Classification:
    summary = {
        "confidence": result.confidence,
        "provider_status": result.status,
        "extracted_fields": result.fields.get("extracted_fields") or {},
        "error_code": result.error_code,
    }
    if result.status == RESULT_MANUAL_REVIEW:
        return Classification(AMBIGUOUS, "provider_manual_review", summary=summary)
    if result.status != RESULT_SUCCESS:
        return Classification(REJECTED, result.error_code or "document_rejected", summary=summary)
    bucket = _band(result.confidence, settings.DOCUMENT_PASS_CONFIDENCE, settings.DOCUMENT_REVIEW_CONFIDENCE)
    reason = {SUCCESS: "document_accepted", AMBIGUOUS: "low_confidence", REJECTED: "confidence_below_floor"}[bucket]
    return Classification(bucket, reason, summary=summary)


def classify_liveness(result: ProviderResult) -> Classification:
    score = result.fields.get("liveness_score")
    summary = {"liveness_score": score, "is_live": result.fields.get("is_live"), "error_code": result.error_code}
    verdict = _provider_verdict(result, summary)
    if verdict:
        return verdict
    bucket = _band(score, settings.LIVENESS_PASS_SCORE, settings.LIVENESS_REVIEW_SCORE)
    if bucket == SUCCESS and result.fields.get("is_live") is False:
        bucket = AMBIGUOUS
    reason = {SUCCESS: "live", AMBIGUOUS: "liveness_indeterminate", REJECTED: "not_live"}[bucket]
    return Classification(bucket, reason, summary=summary)


def classify_face_match(result: ProviderResult) -> Classification:
    score = result.fields.get("match_score")
    summary = {"match_score": score, "is_match": result.fields.get("is_match"), "error_code": result.error_code}
    verdict = _provider_verdict(result, summary)
    if verdict:
        return verdict
    bucket = _band(score, settings.FACE_MATCH_PASS_SCORE, settings.FACE_MATCH_REVIEW_SCORE)
    reason = {SUCCESS: "face_matched", AMBIGUOUS: "match_indeterminate", REJECTED: "face_mismatch"}[bucket]
    return Classification(bucket, reason, summary=summary)


def _classify_registry(result: ProviderResult, hard: frozenset, fatal: frozenset, review: frozenset) -> Classification:
    code = str(result.error_code) if result.error_code is not None else None
    summary = {"matched": bool(result.fields.get("matched")), "error_code": code}
    if result.fields.get("matched"):
        return Classification(SUCCESS, "registry_matched", summary=summary)
    if code in fatal:
        return Classification(REJECTED, code, hard_fail=True, summary=summary)
    if code in hard:
        return Classification(REJECTED, code, summary=summary)
    if code in review:
        return Classification(AMBIGUOUS, code, summary=summary)
    # Codes outside the provider contract tables are never auto-failed.
    return Classification(AMBIGUOUS, f"unmapped:{code}", summary=summary)


def classify_cso(result: ProviderResult) -> Classification:
    return _classify_registry(
        result, settings.CSO_HARD_FAIL_CODES, settings.CSO_FATAL_CODES, settings.CSO_REVIEW_CODES
    )


def classify_ntra(result: ProviderResult) -> Classification:
    return _classify_registry(
        result, settings.NTRA_HARD_FAIL_CODES, settings.NTRA_FATAL_CODES, settings.NTRA_REVIEW_CODES
    )


def classify_headshot(result: ProviderResult) -> Classification:
    summary = {
        "image_url": result.fields.get("image_url"),
        "cost": result.fields.get("cost"),
        "generation_time": result.fields.get("generation_time"),
        "error_code": result.error_code,
    }
    if result.status == RESULT_SUCCESS and result.fields.get("image_url"):
        return Classification(SUCCESS, "headshot_generated", summary=summary)
    return Classification(REJECTED, result.error_code or "generation_failed", summary=summary)


POLICY_TABLE: Dict[str, Callable[[ProviderResult], Classification]] = {
    m.PHONE_OTP: classify_otp,
    m.EMAIL_OTP: classify_otp,
    m.DOCUMENT: classify_document,
    m.SELFIE_LIVENESS: classify_liveness,
    m.FACE_MATCH: classify_face_match,
    m.REGISTRY_CSO: classify_cso,
    m.REGISTRY_NTRA: classify_ntra,
    m.HEADSHOT: classify_headshot,
}


def classify(step_id: str, result: ProviderResult) -> Classification:
    return POLICY_TABLE[step_id](result)
