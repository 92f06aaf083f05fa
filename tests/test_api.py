"""Tests for the HTTP API, with the checker and collaborators mocked."""

from types import SimpleNamespace
from unittest.mock import Mock

import pytest
from fastapi.testclient import TestClient

from lmscenter.api.server import create_app
from lmscenter.clients.base import Assignment, Course, SubmissionResult, SubmissionStage
from lmscenter.core.config import LMSConfig
from lmscenter.services import assignments as store
from lmscenter.services.auth import AuthResult
from lmscenter.services.checker import CheckerState, CheckerStatus
from lmscenter.services.downloader import FileDownloader
from lmscenter.services.notifications import Notification, RecentNotificationSink

pytestmark = pytest.mark.usefixtures("db")


def _assignment(id_):
    return Assignment(id=id_, name=f"HW {id_}", due_date="2030-01-01T00:00:00Z", course_id="1", course_name="Math")


@pytest.fixture
def lms_app(tmp_path, session):
    checker = Mock()
    checker.status.return_value = CheckerStatus(state=CheckerState.POLLING, lms_type="moodle", snapshot_size=2)
    config = Mock()
    config.get_settings.return_value = LMSConfig(
        lms_type="moodle", lms_url="https://m.example.edu", username="stored-user", password="stored-pass",
        use_credential_login=True,
    )
    return SimpleNamespace(
        checker=checker,
        config=config,
        auth_service=Mock(),
        notifications=RecentNotificationSink(),
        create_downloader=lambda: FileDownloader(str(tmp_path), "moodle", token="tok", session=session),
    )


@pytest.fixture
def client(lms_app):
    return TestClient(create_app(lms_app))


def test_status(client):
    response = client.get("/api/status")

    assert response.status_code == 200
    body = response.json()
    assert body["state"] == "polling"
    assert body["snapshot_size"] == 2


def test_live_lists(client, lms_app):
    lms_app.checker.get_assignments.return_value = [_assignment("1")]
    lms_app.checker.get_courses.return_value = [Course(id="1", name="Math")]
    lms_app.checker.get_lectures.return_value = []

    assert [a["id"] for a in client.get("/api/assignments").json()] == ["1"]
    assert client.get("/api/courses").json() == [{"id": "1", "name": "Math"}]
    assert client.get("/api/lectures").json() == []


def test_latest_from_store(client):
    assert client.get("/api/assignments/latest").json()["assignments"] == []

    store.save_assignments("moodle", [_assignment("1"), _assignment("2")])
    body = client.get("/api/assignments/latest").json()

    assert body["lms_type"] == "moodle"
    assert [a["id"] for a in body["assignments"]] == ["1", "2"]


def test_check_now_and_restart(client, lms_app):
    lms_app.checker.check_now.return_value = False

    assert client.post("/api/check-now").json()["ran"] is False
    assert client.post("/api/restart").status_code == 200
    lms_app.checker.restart.assert_called_once_with()


def test_submit_success_marks_store_copy(client, lms_app, tmp_path):
    store.save_assignments("moodle", [_assignment("1"), _assignment("2")])
    lms_app.checker.submit_assignment.return_value = SubmissionResult(success=True)
    path = tmp_path / "answer.pdf"
    path.write_bytes(b"pdf")

    response = client.post("/api/assignments/2/submit",
                           json={"course_id": "1", "comment": "done", "file_paths": [str(path)]})

    assert response.json() == {"success": True, "error": None, "stage": None, "partial": False}
    data = lms_app.checker.submit_assignment.call_args.args[0]
    assert data.assignment_id == "2"
    assert data.attachments[0].file_name == "answer.pdf"
    latest = {a.id: a for a in store.get_latest_assignments()}
    assert latest["2"].submitted is True
    assert latest["1"].submitted is False


def test_partial_submission_is_reported_and_logged(client, lms_app):
    lms_app.checker.submit_assignment.return_value = SubmissionResult(
        success=False, error="Files uploaded but could not submit for grading: x", stage=SubmissionStage.FINALIZE,
    )

    body = client.post("/api/assignments/9/submit", json={"course_id": "1", "comment": "c"}).json()

    assert body["partial"] is True
    assert body["stage"] == "finalize"
    last = client.get("/api/assignments/9/submissions/last").json()
    assert last["stage"] == "finalize"
    assert last["success"] is False
    assert last["lms_type"] == "moodle"


def test_last_submission_missing(client):
    assert client.get("/api/assignments/unknown/submissions/last").status_code == 404


def test_login_persists_token(client, lms_app):
    lms_app.auth_service.login.return_value = AuthResult(success=True, token="fresh")

    body = client.post("/api/login", json={"password": "typed-pass"}).json()

    assert body == {"success": True, "error": None}
    credentials = lms_app.auth_service.login.call_args.args[0]
    assert credentials.username == "stored-user"
    assert credentials.password == "typed-pass"
    assert credentials.lms_type == "moodle"
    lms_app.config.save_settings.assert_called_once_with(api_token="fresh")


def test_login_failure_does_not_save(client, lms_app):
    lms_app.auth_service.login.return_value = AuthResult(success=False, error="Invalid login")

    body = client.post("/api/login", json={}).json()

    assert body == {"success": False, "error": "Invalid login"}
    lms_app.config.save_settings.assert_not_called()


def test_login_keeps_issued_refresh_token(client, lms_app):
    lms_app.auth_service.login.return_value = AuthResult(success=True, token="fresh", refresh_token="r1")

    client.post("/api/login", json={})

    lms_app.config.save_settings.assert_called_once_with(api_token="fresh", refresh_token="r1")


def test_refresh_exchanges_stored_token(client, lms_app):
    lms_app.config.get_settings.return_value = LMSConfig(
        lms_type="canvas", lms_url="https://c.example.edu", api_token="stale", refresh_token="r1",
    )
    lms_app.auth_service.refresh_token.return_value = AuthResult(success=True, token="new", refresh_token="r1")

    body = client.post("/api/token/refresh").json()

    assert body == {"success": True, "error": None}
    lms_app.auth_service.refresh_token.assert_called_once_with("https://c.example.edu", "canvas", "r1")
    lms_app.config.save_settings.assert_called_once_with(api_token="new", refresh_token="r1")


def test_refresh_without_stored_token(client, lms_app):
    assert client.post("/api/token/refresh").status_code == 400
    lms_app.auth_service.refresh_token.assert_not_called()


def test_download_into_lecture_folder(client, session, make_response, tmp_path):
    session.get.return_value = make_response(content=b"slides")

    response = client.post("/api/attachments/download", json={
        "kind": "lecture",
        "course_name": "Math",
        "item_name": "Week 1",
        "attachments": [{"id": "1", "file_name": "s.pdf", "url": "https://m.example.edu/pluginfile.php/1/s.pdf"}],
    })

    assert response.json() == {"s.pdf": str(tmp_path / "Math" / "Lectures" / "Week 1" / "s.pdf")}


def test_recent_notifications(client, lms_app):
    lms_app.notifications.show(Notification(title="New Assignment", body="HW\nDue: in 1 day\nCourse: Math",
                                            urgency="critical"))

    body = client.get("/api/notifications").json()

    assert [n["title"] for n in body] == ["New Assignment"]
