import json
from unittest.mock import patch

import httpx
import pytest

from fakes import document_result
from verifyflow.queue.jobs import notify_review_job
from verifyflow.review import client as review_client
from verifyflow.settings import settings
from verifyflow.store import models as m


@pytest.fixture
def review_case(manager, gateway):
    session = manager.initiate("subject-1")
    manager.submit_step(session.session_id, m.PHONE_OTP, {"destination": "+201001234567"})
    gateway.script("submit_document", document_result(70.0))
    manager.submit_step(session.session_id, m.DOCUMENT, {"front_image": "x"})
    return session.session_id


def _mock_desk(status=200):
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(status, json={"ok": status < 300})

    real_client = httpx.Client

    def factory(*args, **kwargs):
        kwargs["transport"] = httpx.MockTransport(handler)
        return real_client(*args, **kwargs)

    return seen, factory


def test_review_case_is_posted_with_signature(review_case):
    seen, factory = _mock_desk()
    with patch.object(settings, "REVIEW_DESK_URL", "https://desk.example.test/cases"), \
         patch.object(settings, "REVIEW_WEBHOOK_SECRET", "whsec"), \
         patch("verifyflow.review.client.httpx.Client", side_effect=factory):
        assert review_client.notify_review_desk(review_case, m.DOCUMENT) is True

    request = seen[0]
    body = json.loads(request.content)
    assert body["step_id"] == m.DOCUMENT
    assert body["reason"] == "low_confidence"
    assert "extracted_fields" not in body["summary"]
    with patch.object(settings, "REVIEW_WEBHOOK_SECRET", "whsec"):
        assert review_client.verify_signature(request.content, request.headers["x-review-signature"])


def test_desk_failure_raises_for_rq_retry(review_case):
    seen, factory = _mock_desk(status=502)
    with patch.object(settings, "REVIEW_DESK_URL", "https://desk.example.test/cases"), \
         patch("verifyflow.review.client.httpx.Client", side_effect=factory):
        with pytest.raises(httpx.HTTPStatusError):
            review_client.notify_review_desk(review_case, m.DOCUMENT)


def test_step_no_longer_under_review_is_skipped(review_case, manager):
    manager.resolve_review(review_case, m.DOCUMENT, approved=True)
    with patch.object(settings, "REVIEW_DESK_URL", "https://desk.example.test/cases"), \
         patch("verifyflow.review.client.httpx.Client") as mock_client:
        assert review_client.notify_review_desk(review_case, m.DOCUMENT) is False
    assert not mock_client.called


def test_signature_check_fails_closed_without_secret():
    with patch.object(settings, "REVIEW_WEBHOOK_SECRET", ""):
        assert review_client.verify_signature(b"{}", review_client.sign(b"{}")) is False


@patch("verifyflow.queue.jobs.log")
@patch("verifyflow.queue.jobs.notify_review_desk")
def test_notify_review_job(mock_notify, mock_log):
    with patch.object(settings, "ENABLE_REVIEW_HANDOFF", True):
        notify_review_job("sess-1", m.DOCUMENT)
    mock_notify.assert_called_with("sess-1", m.DOCUMENT)
    mock_log.assert_called_once()
    assert mock_log.call_args.kwargs["event"] == "review_job_start"


@patch("verifyflow.queue.jobs.log")
@patch("verifyflow.queue.jobs.notify_review_desk", side_effect=RuntimeError("desk down"))
def test_notify_review_job_reraises(mock_notify, mock_log):
    with patch.object(settings, "ENABLE_REVIEW_HANDOFF", True):
        with pytest.raises(RuntimeError):
            notify_review_job("sess-1", m.DOCUMENT)
    assert mock_log.call_args.kwargs["event"] == "review_job_exception"


@patch("verifyflow.queue.jobs.notify_review_desk")
def test_notify_review_job_disabled(mock_notify):
    notify_review_job("sess-1", m.DOCUMENT)
    assert not mock_notify.called
