import json
from unittest.mock import patch

from verifyflow.observability.logging import log
from verifyflow.settings import settings


def _emit(capsys, **fields):
    log(event="probe", **fields)
    return json.loads(capsys.readouterr().out.strip().splitlines()[-1])


def test_sensitive_fields_are_redacted(capsys):
    out = _emit(
        capsys,
        destination="+201001234567",
        code="123456",
        provider_input={"front_image": "AAAA", "step": "document"},
        sessionId="sess-1",
    )
    assert out["event"] == "probe"
    assert out["destination"] == "[REDACTED:13chars]"
    assert out["code"] == "[REDACTED:6chars]"
    assert out["provider_input"] == {"front_image": "[REDACTED:4chars]", "step": "document"}
    assert out["sessionId"] == "sess-1"


def test_redaction_can_be_disabled(capsys):
    with patch.object(settings, "ENABLE_PII_REDACTION", False):
        out = _emit(capsys, destination="+201001234567")
    assert out["destination"] == "+201001234567"


def test_otp_send_never_logs_destination(capsys, manager):
    session = manager.initiate("subject-1")
    capsys.readouterr()
    manager.submit_step(session.session_id, "phone_otp", {"destination": "+201001234567"})
    assert "+201001234567" not in capsys.readouterr().out
