"""
Error taxonomy for the verification workflow.

Every error carries a stable ``code`` that the surrounding application keys its
affordances on ("retry" vs "contact support"), plus the HTTP status the API
layer maps it to.
"""
from __future__ import annotations

from typing import Any, Dict, Optional


class VerificationError(Exception):
    code: str = "verification_error"
    http_status: int = 400
    retryable: bool = False

    def __init__(self, message: str = "", **details: Any):
        super().__init__(message or self.code)
        self.message = message or self.code
        self.details: Dict[str, Any] = details

    def to_dict(self) -> Dict[str, Any]:
        out = {"code": self.code, "message": self.message, "retryable": self.retryable}
        if self.details:
            out["details"] = self.details
        return out


# --- provider-facing -------------------------------------------------------

class TransientProviderError(VerificationError):
    """Timeout, connection failure, 5xx or throttling. Recovered inside the gateway."""
    code = "provider_transient"
    http_status = 503
    retryable = True


class ProviderUnavailableError(VerificationError):
    """Transient failures outlasted the gateway retry budget."""
    code = "provider_unavailable"
    http_status = 503
    retryable = True


class ProviderRequestError(VerificationError):
    """Provider refused the request itself (4xx); no classifiable result."""
    code = "provider_request_invalid"
    http_status = 502


class DomainRejectionError(VerificationError):
    """Provider explicitly rejected the submission (wrong code, registry mismatch)."""
    code = "domain_rejection"
    http_status = 200
    retryable = True


class AmbiguousResultError(VerificationError):
    """Low-confidence / indeterminate result; routed to manual review."""
    code = "ambiguous_result"
    http_status = 200


# --- workflow --------------------------------------------------------------

class AttemptExhaustedError(VerificationError):
    code = "attempt_exhausted"
    http_status = 429


class StepNotEligibleError(VerificationError):
    code = "step_not_eligible"
    http_status = 409


class StepInputError(VerificationError):
    code = "invalid_step_input"
    http_status = 422
    retryable = True


class StaleSessionVersionError(VerificationError):
    code = "stale_session_version"
    http_status = 409
    retryable = True


class AlreadyVerifiedError(VerificationError):
    code = "already_verified"
    http_status = 409


class SessionTerminalError(VerificationError):
    code = "session_terminal"
    http_status = 409


class SessionNotFoundError(VerificationError):
    code = "session_not_found"
    http_status = 404


def error_payload(err: Optional[VerificationError]) -> Optional[Dict[str, Any]]:
    return err.to_dict() if err is not None else None
