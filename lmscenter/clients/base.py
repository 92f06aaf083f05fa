"""
Domain types and interface for LMS protocol clients.
All clients return these models; no raw backend dicts leave a client.
"""
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from enum import Enum
from typing import Any, List, Optional

import requests
from dateutil import parser as dateutil_parser
from pydantic import BaseModel, ConfigDict

DEFAULT_TIMEOUT = 30
DEFAULT_UPLOAD_TIMEOUT = 120


class LMSError(Exception):
    """Base error for LMS client failures."""


class UnsupportedLMSError(LMSError):
    """Backend type is unknown or not implemented yet."""


class UploadError(LMSError):
    """One attachment could not be staged on the backend."""

    def __init__(self, file_name: str, message: str):
        super().__init__(f"Failed to upload {file_name}: {message}")
        self.file_name = file_name


class FileAttachment(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    file_name: str
    url: str
    size: Optional[int] = None
    content_type: Optional[str] = None


class Course(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str


class Assignment(BaseModel):
    """One assignment with a due date. due_date is an ISO-8601 string."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    description: str = ""
    due_date: str
    course_id: str
    course_name: str
    url: str = ""
    submitted: bool = False
    submitted_date: Optional[str] = None
    attachments: List[FileAttachment] = []

    @property
    def due_datetime(self) -> datetime:
        return parse_datetime(self.due_date)


class Lecture(BaseModel):
    """Non-assignment course content (files, pages, links, folders)."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    description: str = ""
    course_id: str
    course_name: str
    url: str = ""
    attachments: List[FileAttachment] = []
    created_date: Optional[str] = None


class SubmissionFile(BaseModel):
    file_name: str
    file_path: str


class SubmissionData(BaseModel):
    assignment_id: str
    course_id: str
    comment: Optional[str] = None
    attachments: List[SubmissionFile] = []


class SubmissionStage(str, Enum):
    """Phase a submission failed in."""
    UPLOAD = "upload"
    SUBMIT = "submit"
    FINALIZE = "finalize"


class SubmissionResult(BaseModel):
    success: bool
    error: Optional[str] = None
    stage: Optional[SubmissionStage] = None

    @property
    def partial(self) -> bool:
        """Draft saved on the backend but not finalized for grading."""
        return not self.success and self.stage == SubmissionStage.FINALIZE


def parse_datetime(value: str) -> datetime:
    """Parse an ISO-8601 string into an aware datetime (naive values are taken as UTC)."""
    dt = dateutil_parser.isoparse(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def iso_from_timestamp(timestamp: int) -> str:
    """Unix seconds -> '2024-05-01T12:00:00Z'."""
    dt = datetime.fromtimestamp(int(timestamp), tz=timezone.utc)
    return dt.strftime("%Y-%m-%dT%H:%M:%SZ")


def sort_by_due_date(assignments: List[Assignment]) -> List[Assignment]:
    return sorted(assignments, key=lambda a: a.due_datetime)


class LMSClient(ABC):
    """
    Abstract protocol client for one LMS backend.

    Fetch methods never raise: network and parsing errors are logged and
    turned into empty results (or False for test_connection). Only
    submit_assignment is not idempotent; callers must not retry it blindly.
    """

    lms_type: str = ""

    def __init__(
        self,
        base_url: str,
        api_token: str,
        timeout: float = DEFAULT_TIMEOUT,
        upload_timeout: float = DEFAULT_UPLOAD_TIMEOUT,
        session: Optional[requests.Session] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.base_url = (base_url or "").rstrip("/")
        self.api_token = api_token or ""
        self.timeout = timeout
        self.upload_timeout = upload_timeout
        self.session = session or requests.Session()
        self.logger = logger or logging.getLogger(self.__class__.__name__)

    @abstractmethod
    def test_connection(self) -> bool:
        """Cheapest authenticated call. True if the backend accepted the token."""
        pass

    @abstractmethod
    def get_courses(self) -> List[Course]:
        """Courses the user is actively enrolled in."""
        pass

    @abstractmethod
    def get_assignments(self) -> List[Assignment]:
        """Assignments with a due date across all courses, sorted by due date."""
        pass

    @abstractmethod
    def get_lectures(self) -> List[Lecture]:
        """Course content items (files, pages, links) across all courses."""
        pass

    @abstractmethod
    def submit_assignment(self, data: SubmissionData) -> SubmissionResult:
        """Stage every attachment, then submit. Upload failures abort before submitting."""
        pass


def message_from_body(body: Any) -> Optional[str]:
    """Pull the server-side message out of a Canvas/Moodle/OAuth error body."""
    if not isinstance(body, dict):
        return None
    errors = body.get("errors")
    if isinstance(errors, list) and errors and isinstance(errors[0], dict) and errors[0].get("message"):
        return str(errors[0]["message"])
    for key in ("message", "error_description", "error"):
        if isinstance(body.get(key), str) and body[key]:
            return body[key]
    return None


def describe_request_error(error: Exception) -> str:
    """Short text for a requests exception, including the server message if any."""
    response = getattr(error, "response", None)
    if response is not None:
        try:
            message = message_from_body(response.json())
        except ValueError:
            message = None
        return message or f"HTTP {response.status_code}"
    return str(error) or error.__class__.__name__
