"""
FastAPI server for the LMS Center API. Run with run_api_server(app) in a background thread.
Everything the desktop UI needs goes through here: engine status and control, live
and stored assignment lists, login, submission and attachment downloads.
Docs when enabled: http://<host>:<port>/docs
"""
import logging
import os
import threading
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, ConfigDict

from lmscenter.clients.base import (
    Assignment,
    Course,
    FileAttachment,
    Lecture,
    SubmissionData,
    SubmissionFile,
)
from lmscenter.services.auth import LoginCredentials, token_updates
from lmscenter.services.checker import CheckerStatus

logger = logging.getLogger(__name__)


class SubmitRequest(BaseModel):
    course_id: str
    comment: Optional[str] = None
    file_paths: List[str] = []


class SubmitResponse(BaseModel):
    success: bool
    error: Optional[str] = None
    stage: Optional[str] = None
    partial: bool = False


class SubmissionAttemptResponse(BaseModel):
    """Pydantic view of SubmissionAttempt; serializes from ORM."""

    model_config = ConfigDict(from_attributes=True)

    assignment_id: str
    course_id: str
    lms_type: str
    file_names: List[str] = []
    has_comment: bool = False
    success: bool
    stage: Optional[str] = None
    error: Optional[str] = None
    attempted_at: datetime


class LoginRequest(BaseModel):
    """Missing fields are taken from the stored settings."""

    username: Optional[str] = None
    password: Optional[str] = None
    client_id: Optional[str] = None
    client_secret: Optional[str] = None


class LoginResponse(BaseModel):
    success: bool
    error: Optional[str] = None


class DownloadRequest(BaseModel):
    kind: Literal["assignment", "lecture"] = "assignment"
    course_name: str
    item_name: str
    attachments: List[FileAttachment]


class NotificationResponse(BaseModel):
    title: str
    body: str
    urgency: str
    created_at: datetime


def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
    """Serialize datetime to ISO string (UTC)."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.isoformat()


def create_app(lms_app: Any) -> FastAPI:
    """Create FastAPI app with routes that use the given LMSCenterApp instance."""
    from lmscenter.services import assignments as store

    app = FastAPI(title="LMS Center API", description="Assignment polling, submission and downloads")
    checker = lms_app.checker

    @app.get("/api/status", response_model=CheckerStatus)
    def get_status() -> CheckerStatus:
        return checker.status()

    @app.get("/api/assignments", response_model=List[Assignment])
    def list_assignments() -> List[Assignment]:
        """Live fetch from the LMS."""
        return checker.get_assignments()

    @app.get("/api/assignments/latest")
    def latest_assignments() -> Dict[str, Any]:
        """Stored copy from the last check, including optimistic submitted flags."""
        record = store.get_latest_assignment_record()
        if record is None:
            return {"fetched_at": None, "lms_type": None, "assignments": []}
        return {
            "fetched_at": _serialize_datetime(record.fetched_at),
            "lms_type": record.lms_type,
            "assignments": record.data or [],
        }

    @app.get("/api/courses", response_model=List[Course])
    def list_courses() -> List[Course]:
        return checker.get_courses()

    @app.get("/api/lectures", response_model=List[Lecture])
    def list_lectures() -> List[Lecture]:
        return checker.get_lectures()

    @app.post("/api/check-now")
    def check_now() -> Dict[str, Any]:
        ran = checker.check_now()
        return {"ran": ran, "status": checker.status().model_dump(mode="json")}

    @app.post("/api/restart", response_model=CheckerStatus)
    def restart() -> CheckerStatus:
        checker.restart()
        return checker.status()

    @app.post("/api/login", response_model=LoginResponse)
    def login(request: LoginRequest) -> LoginResponse:
        settings = lms_app.config.get_settings()
        credentials = LoginCredentials(
            username=request.username or settings.username,
            password=request.password or settings.password,
            lms_url=settings.lms_url,
            lms_type=settings.lms_type,
            client_id=request.client_id,
            client_secret=request.client_secret,
        )
        if not (credentials.username and credentials.password and credentials.lms_url):
            raise HTTPException(status_code=400, detail="LMS URL, username and password are required")
        result = lms_app.auth_service.login(credentials)
        if result.success:
            # the settings change callback restarts the checker
            lms_app.config.save_settings(**token_updates(result))
        return LoginResponse(success=result.success, error=result.error)

    @app.post("/api/token/refresh", response_model=LoginResponse)
    def refresh_token() -> LoginResponse:
        settings = lms_app.config.get_settings()
        if not settings.refresh_token:
            raise HTTPException(status_code=400, detail="No refresh token stored")
        result = lms_app.auth_service.refresh_token(settings.lms_url, settings.lms_type, settings.refresh_token)
        if result.success:
            lms_app.config.save_settings(**token_updates(result))
        return LoginResponse(success=result.success, error=result.error)

    @app.post("/api/assignments/{assignment_id}/submit", response_model=SubmitResponse)
    def submit(assignment_id: str, request: SubmitRequest) -> SubmitResponse:
        data = SubmissionData(
            assignment_id=assignment_id,
            course_id=request.course_id,
            comment=request.comment,
            attachments=[
                SubmissionFile(file_name=os.path.basename(path), file_path=path)
                for path in request.file_paths
            ],
        )
        result = checker.submit_assignment(data)
        lms_type = checker.status().lms_type or lms_app.config.get_settings().lms_type
        try:
            store.record_submission_attempt(lms_type, data, result)
            if result.success:
                store.mark_submitted(assignment_id)
        except Exception as e:
            logger.error(f"Failed to record submission attempt for {assignment_id}: {e}")
        return SubmitResponse(
            success=result.success,
            error=result.error,
            stage=result.stage.value if result.stage else None,
            partial=result.partial,
        )

    @app.get(
        "/api/assignments/{assignment_id}/submissions/last",
        response_model=SubmissionAttemptResponse,
    )
    def last_submission(assignment_id: str) -> SubmissionAttemptResponse:
        attempt = store.get_last_submission_attempt(assignment_id)
        if attempt is None:
            raise HTTPException(status_code=404, detail="No submission attempts for this assignment")
        return SubmissionAttemptResponse.model_validate(attempt)

    @app.post("/api/attachments/download")
    def download(request: DownloadRequest) -> Dict[str, Optional[str]]:
        """file name -> local path (null where the download failed)."""
        downloader = lms_app.create_downloader()
        if request.kind == "lecture":
            folder = downloader.lecture_path(request.course_name, request.item_name)
        else:
            folder = downloader.assignment_path(request.course_name, request.item_name)
        return downloader.download_files(request.attachments, folder)

    @app.get("/api/notifications", response_model=List[NotificationResponse])
    def notifications(limit: int = 20) -> List[NotificationResponse]:
        return [
            NotificationResponse(title=n.title, body=n.body, urgency=n.urgency, created_at=n.created_at)
            for n in lms_app.notifications.recent(limit)
        ]

    return app


def run_api_server(lms_app: Any) -> None:
    """
    Start the API server in a daemon thread if api.enabled is true.
    Reads api.host (default 127.0.0.1) and api.port (default 8765) from config.
    """
    api_config = lms_app.config.data.get("api") or {}
    enabled = api_config.get("enabled", False)
    logger.info(f"API config: enabled={enabled}, config_file={lms_app.config.config_file}")
    if not enabled:
        logger.info("API server not started: set api.enabled to true in your config file to enable.")
        return
    host = api_config.get("host", "127.0.0.1")
    port = int(api_config.get("port", 8765))
    fastapi_app = create_app(lms_app)

    def run_uvicorn():
        try:
            import uvicorn
            logger.info(f"API server listening at http://{host}:{port} (docs at /docs)")
            uvicorn.run(fastapi_app, host=host, port=port)
        except Exception as e:
            logger.exception(f"API server thread failed: {e}")

    thread = threading.Thread(target=run_uvicorn, daemon=True)
    thread.start()
    logger.info("API server thread started.")
