from .base import (
    Assignment,
    Course,
    FileAttachment,
    Lecture,
    LMSClient,
    LMSError,
    SubmissionData,
    SubmissionFile,
    SubmissionResult,
    SubmissionStage,
    UnsupportedLMSError,
    UploadError,
)
from .canvas import CanvasClient
from .moodle import MoodleAPIError, MoodleClient

__all__ = [
    "Assignment", "Course", "FileAttachment", "Lecture", "LMSClient", "LMSError",
    "SubmissionData", "SubmissionFile", "SubmissionResult", "SubmissionStage",
    "UnsupportedLMSError", "UploadError", "CanvasClient", "MoodleAPIError", "MoodleClient",
    "create_client",
]

_CLIENTS = {
    "canvas": CanvasClient,
    "moodle": MoodleClient,
}

# recognised in settings but with no client yet
_PLANNED = {"blackboard"}


def create_client(settings, session=None, logger=None) -> LMSClient:
    """Factory: return the client for settings.lms_type. Raises UnsupportedLMSError."""
    lms_type = (settings.lms_type or "").lower()
    cls = _CLIENTS.get(lms_type)
    if cls is None:
        if lms_type in _PLANNED:
            raise UnsupportedLMSError(f"{lms_type.capitalize()} support is not implemented yet")
        raise UnsupportedLMSError(f"Unsupported LMS type: {settings.lms_type!r}")
    return cls(
        settings.lms_url,
        settings.api_token,
        timeout=settings.request_timeout,
        upload_timeout=settings.upload_timeout,
        session=session,
        logger=logger,
    )
