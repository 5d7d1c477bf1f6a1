"""
Concrete provider clients, one per provider category.

Each client translates its provider's wire format into a ProviderResult and
nothing more: classification and retries live elsewhere.
"""
from __future__ import annotations

import threading
import time
from typing import Any, Dict, Optional

import httpx

from verifyflow.core.errors import ProviderRequestError, ProviderUnavailableError, TransientProviderError
from verifyflow.observability.logging import log
from verifyflow.providers.base import (
    RESULT_FAILED,
    RESULT_MANUAL_REVIEW,
    RESULT_SENT,
    RESULT_SUCCESS,
    ProviderClient,
    ProviderResult,
)
from verifyflow.settings import settings

_KNOWN_STATUSES = (RESULT_SUCCESS, RESULT_FAILED, RESULT_MANUAL_REVIEW)


def _norm_status(value: Any) -> str:
    s = str(value or "").strip().lower()
    return s if s in _KNOWN_STATUSES else RESULT_FAILED


def _score(value: Any) -> Optional[float]:
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


class OAuthTokenSource:
    """
    OAuth2 password-grant token shared by every identity-provider client.
    Cached until 60s before expiry; refresh is serialized by a lock.
    """

    def __init__(self, base_url: str, timeout: float = 10.0, transport: Optional[httpx.BaseTransport] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport
        self._lock = threading.Lock()
        self._token: Optional[str] = None
        self._expires_at = 0.0

    def token(self) -> str:
        with self._lock:
            if self._token and time.time() < self._expires_at:
                return self._token
            try:
                with httpx.Client(base_url=self.base_url, timeout=self.timeout, transport=self._transport) as client:
                    resp = client.post(
                        "/api/o/token/",
                        data={
                            "username": settings.IDV_USERNAME,
                            "password": settings.IDV_PASSWORD,
                            "client_id": settings.IDV_CLIENT_ID,
                            "client_secret": settings.IDV_CLIENT_SECRET,
                            "grant_type": "password",
                        },
                    )
            except httpx.TransportError as e:
                raise TransientProviderError(f"token endpoint unreachable: {e}")
            if resp.status_code >= 500:
                raise TransientProviderError(f"token endpoint returned {resp.status_code}")
            if resp.status_code != 200:
                raise ProviderRequestError("token request refused", status_code=resp.status_code)
            data = resp.json()
            self._token = data["access_token"]
            self._expires_at = time.time() + max(0, int(data.get("expires_in", 3600)) - 60)
            log(event="provider_token_refreshed", expiresIn=int(data.get("expires_in", 3600)))
            return self._token


class IdentityProviderClient(ProviderClient):
    """Common auth/headers for the identity provider's product endpoints."""

    name = "identity"

    def __init__(self, tokens: OAuthTokenSource, timeout: float, transport: Optional[httpx.BaseTransport] = None):
        super().__init__(tokens.base_url, timeout, transport=transport)
        self.tokens = tokens

    def _headers(self) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.tokens.token()}",
        }

    def _with_bundle(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        out = {"bundle_key": settings.IDV_BUNDLE_KEY, "lang": "ar"}
        out.update(payload)
        return out


class OtpClient(IdentityProviderClient):
    name = "otp"

    _SEND = {"phone": "/api/v1/otp/send/", "email": "/api/v1/otp/email/send/"}
    _VERIFY = {"phone": "/api/v1/otp/verify/", "email": "/api/v1/otp/email/verify/"}

    def send_otp(self, channel: str, destination: str, subject_ref: str) -> ProviderResult:
        key = "phone_number" if channel == "phone" else "email"
        data = self._post(
            self._SEND[channel],
            self._with_bundle({key: destination}),
            headers={"X-Reference-UserId": subject_ref},
        )
        sent = bool((data.get("result") or {}).get("success", True))
        return ProviderResult(
            status=RESULT_SENT if sent else RESULT_FAILED,
            transaction_id=data.get("transaction_id"),
            error_code=None if sent else "otp_send_failed",
            fields={"attempts_remaining": data.get("trials_remaining")},
            raw=data,
        )

    def verify_otp(self, channel: str, transaction_id: str, code: str, subject_ref: str) -> ProviderResult:
        data = self._post(
            self._VERIFY[channel],
            self._with_bundle({"otp": code, "transaction_id": transaction_id}),
            headers={"X-Reference-UserId": subject_ref},
        )
        matched = bool(data.get("verified"))
        return ProviderResult(
            status=RESULT_SUCCESS if matched else RESULT_FAILED,
            transaction_id=transaction_id,
            confidence=100.0 if matched else 0.0,
            error_code=None if matched else "otp_mismatch",
            fields={"matched": matched},
            raw=data,
        )


class DocumentOcrClient(IdentityProviderClient):
    name = "document_ocr"

    def submit_document(self, front_image: str, back_image: Optional[str], subject_ref: str) -> ProviderResult:
        body: Dict[str, Any] = {"front_img": front_image}
        if back_image:
            body["back_img"] = back_image
        body["extras"] = ["advanced_confidence", "document_verification_plus"]
        data = self._post(
            "/api/v1.5/ocr/",
            {"document_type": "egy_nid", "data": self._with_bundle(body)},
            headers={"X-Reference-UserId": subject_ref},
        )
        return ProviderResult(
            status=_norm_status(data.get("status")),
            transaction_id=data.get("transaction_id"),
            confidence=_score(data.get("confidence_score")),
            error_code=data.get("error_code") or (data.get("error_message") and "ocr_rejected") or None,
            fields={"extracted_fields": dict(data.get("extracted_data") or {})},
            raw={k: v for k, v in data.items() if k != "extracted_data"},
        )


class BiometricClient(IdentityProviderClient):
    name = "biometrics"

    def submit_selfie(self, selfie_image: str, reference_image: Optional[str], subject_ref: str) -> ProviderResult:
        headers = {"X-Reference-UserId": subject_ref}
        live = self._post(
            "/api/v1/biometrics/liveness/",
            self._with_bundle({"img": selfie_image}),
            headers=headers,
        )
        fields: Dict[str, Any] = {
            "liveness_score": _score(live.get("liveness_score")),
            "is_live": bool(live.get("is_live")),
            "match_score": None,
        }
        raw: Dict[str, Any] = {"liveness": live}
        status = _norm_status(live.get("status"))
        txn = live.get("transaction_id")
        error_code = live.get("error_code")

        if reference_image:
            match = self._post(
                "/api/v1/face/match/",
                self._with_bundle({"first_img": selfie_image, "second_img": reference_image}),
                headers=headers,
            )
            fields["match_score"] = _score(match.get("match_score"))
            fields["is_match"] = bool(match.get("is_match"))
            raw["face_match"] = match
            txn = match.get("transaction_id") or txn
            error_code = error_code or match.get("error_code")
            if status == RESULT_SUCCESS:
                status = _norm_status(match.get("status"))

        return ProviderResult(
            status=status,
            transaction_id=txn,
            confidence=fields["match_score"] if fields["match_score"] is not None else fields["liveness_score"],
            error_code=error_code,
            fields=fields,
            raw=raw,
        )


class RegistryClient(IdentityProviderClient):
    name = "registry"

    def validate_registry(self, registry: str, identity_fields: Dict[str, Any], subject_ref: str) -> ProviderResult:
        headers = {"X-Reference-UserId": subject_ref}
        if registry == "cso":
            data = self._post("/api/v1/fra/cso/", self._with_bundle(dict(identity_fields)), headers=headers)
            result = data.get("result") or {}
            matched = bool(result.get("isValid"))
            code = None
            if not matched:
                code = result.get("errorKey") or (
                    str(result.get("errorCode")) if result.get("errorCode") is not None else "unknown"
                )
        elif registry == "ntra":
            payload = {
                "nid": identity_fields.get("nid"),
                "phone_number": identity_fields.get("phone_number"),
            }
            data = self._post("/api/v1/fra/ntra/", self._with_bundle(payload), headers=headers)
            result = data.get("result") or {}
            matched = bool(result.get("isMatched"))
            code = None if matched else (result.get("errorKey") or "phone_nid_mismatch")
        else:
            raise ValueError(f"unknown registry: {registry}")

        return ProviderResult(
            status=RESULT_SUCCESS if matched else RESULT_FAILED,
            transaction_id=data.get("transaction_id"),
            confidence=100.0 if matched else 0.0,
            error_code=code,
            fields={"matched": matched, "registry": registry},
            raw=data,
        )


class HeadshotClient(ProviderClient):
    name = "headshot"

    MODEL_PATH = "/v1/models/black-forest-labs/flux-kontext-pro/predictions"
    COST_PER_IMAGE = 0.04
    PENDING_STATES = ("starting", "processing")

    DEFAULT_STYLE = {
        "background": "corporate_blue",
        "attire": "business_suit",
        "lighting": "soft_professional",
    }

    def _headers(self) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {settings.HEADSHOT_API_TOKEN}",
            "Prefer": f"wait={int(self.timeout)}",
        }

    def _prompt(self, style: Dict[str, Any]) -> str:
        attire = "a well-fitted dark business suit" if style.get("attire") == "business_suit" else "professional business attire"
        background = (
            "a clean corporate blue gradient background"
            if style.get("background") == "corporate_blue"
            else "a professional neutral backdrop"
        )
        return (
            "Professional corporate headshot. Preserve all original facial features exactly; "
            f"only add {attire}, replace the background with {background}, "
            "and enhance with soft studio lighting."
        )

    def _await_prediction(self, prediction: Dict[str, Any]) -> Dict[str, Any]:
        """
        Poll a prediction that outlived the synchronous wait window until it
        settles. Poll failures keep polling; only the deadline gives up.
        """
        pred_id = prediction.get("id")
        if not pred_id:
            raise ProviderRequestError("headshot prediction has no id", provider=self.name)
        deadline = time.monotonic() + float(settings.HEADSHOT_POLL_TIMEOUT_SEC)
        data = prediction
        polls = 0
        while str(data.get("status") or "").lower() in self.PENDING_STATES:
            if time.monotonic() >= deadline:
                log(event="headshot_poll_timeout", predictionId=pred_id, polls=polls)
                raise ProviderUnavailableError(
                    "headshot generation did not finish in time",
                    provider=self.name,
                    prediction_id=pred_id,
                )
            time.sleep(float(settings.HEADSHOT_POLL_INTERVAL_SEC))
            polls += 1
            try:
                data = self._get(f"/v1/predictions/{pred_id}")
            except TransientProviderError as e:
                log(event="headshot_poll_failed", predictionId=pred_id, polls=polls, error=e.message[:300])
        return data

    def generate_headshot(self, source_image: str, style_params: Optional[Dict[str, Any]] = None) -> ProviderResult:
        style = dict(self.DEFAULT_STYLE)
        style.update(style_params or {})
        started = time.monotonic()
        data = self._post(
            self.MODEL_PATH,
            {"input": {"prompt": self._prompt(style), "input_image": source_image, "output_format": "jpg"}},
        )
        state = str(data.get("status") or "").lower()
        if state in self.PENDING_STATES:
            data = self._await_prediction(data)
            state = str(data.get("status") or "").lower()

        output = data.get("output")
        image_url = output[0] if isinstance(output, list) and output else output
        ok = state == "succeeded" and bool(image_url)
        return ProviderResult(
            status=RESULT_SUCCESS if ok else RESULT_FAILED,
            transaction_id=data.get("id"),
            error_code=None if ok else (data.get("error") and "generation_rejected") or "generation_failed",
            fields={
                "image_url": image_url if ok else None,
                "cost": self.COST_PER_IMAGE,
                "generation_time": round(time.monotonic() - started, 3),
                "style": style,
            },
            raw={k: v for k, v in data.items() if k not in ("input", "output")},
        )
