import json
import time
from verifyflow.settings import settings

# Fields that may carry PII or secrets (OTP codes, images, identity data)
SENSITIVE_KEYS = {
    "code",
    "destination",
    "front_image",
    "back_image",
    "selfie_image",
    "reference_image",
    "source_image",
    "national_id",
    "nid",
    "phone_number",
    "email",
    "full_name",
    "extracted_fields",
    "extracted_identity_fields",
}


def _redact_value(v):
    if isinstance(v, str) and len(v) > 0:
        return f"[REDACTED:{len(v)}chars]"
    if isinstance(v, dict):
        return {k: _redact_value(val) for k, val in v.items()}
    if isinstance(v, list):
        return [_redact_value(x) for x in v]
    return v


def _scrub(fields: dict) -> dict:
    clean = {}
    for k, v in fields.items():
        if k in SENSITIVE_KEYS:
            clean[k] = _redact_value(v)
        elif isinstance(v, dict):
            clean[k] = _scrub(v)
        else:
            clean[k] = v
    return clean


def log(event: str, **fields):
    payload = {"ts": int(time.time()), "event": event}

    if settings.ENABLE_PII_REDACTION:
        payload.update(_scrub(fields))
    else:
        payload.update(fields)

    print(json.dumps(payload, ensure_ascii=False, default=str))
