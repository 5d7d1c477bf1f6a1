from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

from fakes import document_result, registry_result
from verifyflow.main import app
from verifyflow.settings import settings
from verifyflow.store import models as m

client = TestClient(app)
ADMIN = {"x-admin-key": "admin-key"}


@pytest.fixture(autouse=True)
def wired(manager):
    with patch("verifyflow.api.admin_routes.get_manager", return_value=manager), \
         patch.object(settings, "ADMIN_API_KEY", "admin-key"), \
         patch.object(settings, "ADMIN_RBAC_ENABLED", True):
        yield


def test_admin_requires_key():
    assert client.get("/admin/metrics").status_code == 403
    assert client.get("/admin/metrics", headers={"x-admin-key": "wrong"}).status_code == 403
    assert client.get("/admin/metrics", headers=ADMIN).status_code == 200


def test_admin_disabled_without_configured_key():
    with patch.object(settings, "ADMIN_API_KEY", ""):
        assert client.get("/admin/metrics", headers=ADMIN).status_code == 403


def test_session_detail_includes_summaries(manager):
    session = manager.initiate("subject-1")
    manager.submit_step(session.session_id, m.DOCUMENT, {"front_image": "x"})

    body = client.get(f"/admin/session/{session.session_id}", headers=ADMIN).json()

    doc = next(s for s in body["steps"] if s["step_id"] == m.DOCUMENT)
    assert doc["result_summary"]["classification"] == "success"
    assert body["subject_id"] == "subject-1"
    assert body["result"]["completed_steps"] == [m.DOCUMENT]


def test_reset_subject_after_failure(manager, gateway):
    session = manager.initiate("subject-1")
    manager.submit_step(session.session_id, m.DOCUMENT, {"front_image": "x"})
    gateway.script("validate_registry", registry_result(False, "deceased"))
    manager.submit_step(session.session_id, m.REGISTRY_CSO, {})

    resp = client.post("/admin/subject/subject-1/reset", json={"reason": "registry corrected"}, headers=ADMIN)

    assert resp.status_code == 200
    assert resp.json()["session_id"] != session.session_id
    history = client.get("/admin/subject/subject-1/history", headers=ADMIN).json()
    assert history["current_session_id"] == resp.json()["session_id"]
    assert history["superseded_session_ids"] == [session.session_id]


def test_reset_without_body(manager):
    manager.initiate("subject-1")
    assert client.post("/admin/subject/subject-1/reset", headers=ADMIN).status_code == 200


def test_admin_review_decision(manager, gateway):
    session = manager.initiate("subject-1")
    gateway.script("submit_document", document_result(65.0))
    manager.submit_step(session.session_id, m.DOCUMENT, {"front_image": "x"})

    resp = client.post(
        f"/admin/session/{session.session_id}/steps/{m.DOCUMENT}/review",
        json={"approved": False},
        headers=ADMIN,
    )
    assert resp.status_code == 200
    assert resp.json()["status"] == m.AWAITING_INPUT

    again = client.post(
        f"/admin/session/{session.session_id}/steps/{m.DOCUMENT}/review",
        json={"approved": True},
        headers=ADMIN,
    )
    assert again.status_code == 409


def test_metrics_snapshot_counts_submissions(manager):
    session = manager.initiate("subject-1")
    manager.submit_step(session.session_id, m.DOCUMENT, {"front_image": "x"})
    snap = client.get("/admin/metrics", headers=ADMIN).json()
    assert snap["submissions"]["document:success"] == 1
    assert snap["sessions_created"] == 1
