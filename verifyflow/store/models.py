from dataclasses import dataclass, field
from typing import Any, Dict, Optional

# Step identifiers (canonical presentation order)
PHONE_OTP = "phone_otp"
EMAIL_OTP = "email_otp"
DOCUMENT = "document"
SELFIE_LIVENESS = "selfie_liveness"
FACE_MATCH = "face_match"
REGISTRY_CSO = "registry_cso"
REGISTRY_NTRA = "registry_ntra"
HEADSHOT = "headshot"

STEP_ORDER = (
    PHONE_OTP,
    EMAIL_OTP,
    DOCUMENT,
    SELFIE_LIVENESS,
    FACE_MATCH,
    REGISTRY_CSO,
    REGISTRY_NTRA,
    HEADSHOT,
)

OTP_STEPS = (PHONE_OTP, EMAIL_OTP)
REGISTRY_STEPS = (REGISTRY_CSO, REGISTRY_NTRA)

# Step statuses
PENDING = "pending"
AWAITING_INPUT = "awaiting_input"
SUBMITTED = "submitted"
SUCCESS = "success"
FAILED = "failed"
MANUAL_REVIEW = "manual_review"
LOCKED = "locked"

# Session (overall) statuses
SESSION_PENDING = "pending"
SESSION_IN_PROGRESS = "in_progress"
SESSION_VERIFIED = "verified"
SESSION_FAILED = "failed"
SESSION_MANUAL_REVIEW = "manual_review"

TERMINAL_SESSION_STATUSES = (SESSION_VERIFIED, SESSION_FAILED)


@dataclass
class StepRecord:
    step_id: str
    status: str = PENDING
    attempts_used: int = 0
    max_attempts: int = 0
    last_transaction_id: Optional[str] = None
    # Normalized provider payload: scores, error codes, extracted fields, hard_fail flag
    result_summary: Dict[str, Any] = field(default_factory=dict)
    completed_at: Optional[int] = None

    # In-flight bookkeeping (crash recovery of a "submitted" step)
    submitted_at: Optional[int] = None
    pending_reservation: Optional[str] = None

    @property
    def attempts_remaining(self) -> int:
        return max(0, int(self.max_attempts) - int(self.attempts_used))

    @property
    def hard_failed(self) -> bool:
        return self.status == FAILED and bool(self.result_summary.get("hard_fail"))


@dataclass
class VerificationSession:
    session_id: str
    subject_id: str
    overall_status: str = SESSION_PENDING
    created_at: int = 0
    updated_at: int = 0
    current_step: Optional[str] = None
    version: int = 0
    steps: Dict[str, StepRecord] = field(default_factory=dict)
    superseded_by: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.overall_status in TERMINAL_SESSION_STATUSES

    def step(self, step_id: str) -> StepRecord:
        return self.steps[step_id]
