import os
from dotenv import load_dotenv

load_dotenv()


def _csv(name: str, default: str = "") -> frozenset:
    raw = os.getenv(name, default) or ""
    return frozenset(x.strip() for x in raw.split(",") if x.strip())


class Settings:
    API_KEY: str = os.getenv("API_KEY", "")
    CORS_ORIGINS: str = os.getenv("CORS_ORIGINS", "*")

    REDIS_URL: str = os.getenv("REDIS_URL", "redis://localhost:6379/0")
    RQ_QUEUE_NAME: str = os.getenv("RQ_QUEUE_NAME", "verification")

    # Per-step attempt quotas
    OTP_MAX_ATTEMPTS: int = int(os.getenv("OTP_MAX_ATTEMPTS", "5"))
    OTP_MAX_SENDS: int = int(os.getenv("OTP_MAX_SENDS", "5"))
    REGISTRY_MAX_ATTEMPTS: int = int(os.getenv("REGISTRY_MAX_ATTEMPTS", "10"))
    DOCUMENT_MAX_ATTEMPTS: int = int(os.getenv("DOCUMENT_MAX_ATTEMPTS", "3"))
    SELFIE_MAX_ATTEMPTS: int = int(os.getenv("SELFIE_MAX_ATTEMPTS", "3"))
    FACE_MATCH_MAX_ATTEMPTS: int = int(os.getenv("FACE_MATCH_MAX_ATTEMPTS", "3"))
    HEADSHOT_MAX_ATTEMPTS: int = int(os.getenv("HEADSHOT_MAX_ATTEMPTS", "3"))

    # Steps that do not count towards the overall verdict
    OPTIONAL_STEPS: frozenset = _csv("OPTIONAL_STEPS")

    # Score bands (0-100 scale, as returned by the biometrics/OCR provider)
    DOCUMENT_PASS_CONFIDENCE: float = float(os.getenv("DOCUMENT_PASS_CONFIDENCE", "80"))
    DOCUMENT_REVIEW_CONFIDENCE: float = float(os.getenv("DOCUMENT_REVIEW_CONFIDENCE", "60"))
    LIVENESS_PASS_SCORE: float = float(os.getenv("LIVENESS_PASS_SCORE", "80"))
    LIVENESS_REVIEW_SCORE: float = float(os.getenv("LIVENESS_REVIEW_SCORE", "60"))
    FACE_MATCH_PASS_SCORE: float = float(os.getenv("FACE_MATCH_PASS_SCORE", "85"))
    FACE_MATCH_REVIEW_SCORE: float = float(os.getenv("FACE_MATCH_REVIEW_SCORE", "70"))

    # Registry error-code tables. Codes not listed in any table go to manual review.
    CSO_HARD_FAIL_CODES: frozenset = _csv(
        "CSO_HARD_FAIL_CODES", "invalid_national_id,name_mismatch,serial_mismatch,id_expired"
    )
    CSO_FATAL_CODES: frozenset = _csv("CSO_FATAL_CODES", "id_reported_stolen,deceased")
    CSO_REVIEW_CODES: frozenset = _csv("CSO_REVIEW_CODES", "unable_to_confirm,record_under_update")
    NTRA_HARD_FAIL_CODES: frozenset = _csv("NTRA_HARD_FAIL_CODES", "phone_nid_mismatch,line_not_registered")
    NTRA_FATAL_CODES: frozenset = _csv("NTRA_FATAL_CODES", "")
    NTRA_REVIEW_CODES: frozenset = _csv("NTRA_REVIEW_CODES", "unable_to_confirm")

    # Provider endpoints
    IDV_BASE_URL: str = os.getenv("IDV_BASE_URL", "https://valifystage.com")
    IDV_USERNAME: str = os.getenv("IDV_USERNAME", "")
    IDV_PASSWORD: str = os.getenv("IDV_PASSWORD", "")
    IDV_CLIENT_ID: str = os.getenv("IDV_CLIENT_ID", "")
    IDV_CLIENT_SECRET: str = os.getenv("IDV_CLIENT_SECRET", "")
    IDV_BUNDLE_KEY: str = os.getenv("IDV_BUNDLE_KEY", "")
    HEADSHOT_BASE_URL: str = os.getenv("HEADSHOT_BASE_URL", "https://api.replicate.com")
    HEADSHOT_API_TOKEN: str = os.getenv("HEADSHOT_API_TOKEN", "")

    # Provider timeouts (seconds) and transient retry budget
    OTP_TIMEOUT_SEC: float = float(os.getenv("OTP_TIMEOUT_SEC", "10"))
    REGISTRY_TIMEOUT_SEC: float = float(os.getenv("REGISTRY_TIMEOUT_SEC", "15"))
    BIOMETRIC_TIMEOUT_SEC: float = float(os.getenv("BIOMETRIC_TIMEOUT_SEC", "20"))
    DOCUMENT_TIMEOUT_SEC: float = float(os.getenv("DOCUMENT_TIMEOUT_SEC", "30"))
    HEADSHOT_TIMEOUT_SEC: float = float(os.getenv("HEADSHOT_TIMEOUT_SEC", "30"))
    # Predictions that outlive the synchronous wait are polled, never re-created
    HEADSHOT_POLL_INTERVAL_SEC: float = float(os.getenv("HEADSHOT_POLL_INTERVAL_SEC", "2"))
    HEADSHOT_POLL_TIMEOUT_SEC: float = float(os.getenv("HEADSHOT_POLL_TIMEOUT_SEC", "120"))
    PROVIDER_MAX_RETRIES: int = int(os.getenv("PROVIDER_MAX_RETRIES", "2"))
    PROVIDER_BACKOFF_BASE_MS: int = int(os.getenv("PROVIDER_BACKOFF_BASE_MS", "500"))
    PROVIDER_BACKOFF_MAX_MS: int = int(os.getenv("PROVIDER_BACKOFF_MAX_MS", "4000"))

    # A step stuck in "submitted" longer than this is treated as an interrupted request
    STALE_SUBMISSION_SEC: int = int(os.getenv("STALE_SUBMISSION_SEC", "300"))

    # Human-review handoff
    ENABLE_REVIEW_HANDOFF: bool = os.getenv("ENABLE_REVIEW_HANDOFF", "true").lower() == "true"
    REVIEW_DESK_URL: str = os.getenv("REVIEW_DESK_URL", "")
    REVIEW_TIMEOUT_SEC: float = float(os.getenv("REVIEW_TIMEOUT_SEC", "5"))
    REVIEW_WEBHOOK_SECRET: str = os.getenv("REVIEW_WEBHOOK_SECRET", "")
    REVIEW_JOB_MAX_RETRIES: int = int(os.getenv("REVIEW_JOB_MAX_RETRIES", "5"))

    # Security & privacy
    ENABLE_PII_REDACTION: bool = os.getenv("ENABLE_PII_REDACTION", "true").lower() == "true"
    ADMIN_RBAC_ENABLED: bool = os.getenv("ADMIN_RBAC_ENABLED", "true").lower() == "true"
    ADMIN_API_KEY: str = os.getenv("ADMIN_API_KEY", "")


settings = Settings()
