"""
ExternalVerificationGateway: one capability-set facade over the provider
clients. Every capability goes through the same timeout/retry handling, so the
workflow engine only ever sees a ProviderResult, a ProviderUnavailableError or
a ProviderRequestError.
"""
from __future__ import annotations

from typing import Any, Dict, Optional

from verifyflow.providers.base import ProviderResult, call_with_retries
from verifyflow.providers.clients import (
    BiometricClient,
    DocumentOcrClient,
    HeadshotClient,
    OAuthTokenSource,
    OtpClient,
    RegistryClient,
)
from verifyflow.settings import settings


class ExternalVerificationGateway:
    def __init__(
        self,
        otp: OtpClient,
        documents: DocumentOcrClient,
        biometrics: BiometricClient,
        registry: RegistryClient,
        headshots: HeadshotClient,
    ):
        self.otp = otp
        self.documents = documents
        self.biometrics = biometrics
        self.registry = registry
        self.headshots = headshots

    @classmethod
    def from_settings(cls, transport=None) -> "ExternalVerificationGateway":
        tokens = OAuthTokenSource(settings.IDV_BASE_URL, timeout=settings.OTP_TIMEOUT_SEC, transport=transport)
        return cls(
            otp=OtpClient(tokens, settings.OTP_TIMEOUT_SEC, transport=transport),
            documents=DocumentOcrClient(tokens, settings.DOCUMENT_TIMEOUT_SEC, transport=transport),
            biometrics=BiometricClient(tokens, settings.BIOMETRIC_TIMEOUT_SEC, transport=transport),
            registry=RegistryClient(tokens, settings.REGISTRY_TIMEOUT_SEC, transport=transport),
            headshots=HeadshotClient(settings.HEADSHOT_BASE_URL, settings.HEADSHOT_TIMEOUT_SEC, transport=transport),
        )

    def send_otp(self, channel: str, destination: str, subject_ref: str) -> ProviderResult:
        return call_with_retries(
            self.otp.name, "send_otp", lambda: self.otp.send_otp(channel, destination, subject_ref)
        )

    def verify_otp(self, channel: str, transaction_id: str, code: str, subject_ref: str) -> ProviderResult:
        return call_with_retries(
            self.otp.name, "verify_otp", lambda: self.otp.verify_otp(channel, transaction_id, code, subject_ref)
        )

    def submit_document(self, front_image: str, back_image: Optional[str], subject_ref: str) -> ProviderResult:
        return call_with_retries(
            self.documents.name,
            "submit_document",
            lambda: self.documents.submit_document(front_image, back_image, subject_ref),
        )

    def submit_selfie(self, selfie_image: str, reference_image: Optional[str], subject_ref: str) -> ProviderResult:
        return call_with_retries(
            self.biometrics.name,
            "submit_selfie",
            lambda: self.biometrics.submit_selfie(selfie_image, reference_image, subject_ref),
        )

    def validate_registry(self, registry: str, identity_fields: Dict[str, Any], subject_ref: str) -> ProviderResult:
        return call_with_retries(
            f"{self.registry.name}_{registry}",
            "validate_registry",
            lambda: self.registry.validate_registry(registry, identity_fields, subject_ref),
        )

    def generate_headshot(self, source_image: str, style_params: Optional[Dict[str, Any]] = None) -> ProviderResult:
        return call_with_retries(
            self.headshots.name,
            "generate_headshot",
            lambda: self.headshots.generate_headshot(source_image, style_params),
        )


_GATEWAY: Optional[ExternalVerificationGateway] = None


def get_gateway() -> ExternalVerificationGateway:
    global _GATEWAY
    if _GATEWAY is None:
        _GATEWAY = ExternalVerificationGateway.from_settings()
    return _GATEWAY
