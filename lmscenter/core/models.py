"""
DB models: the UI's copy of the latest assignment list and the submission attempt log.
"""
from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, DateTime, Integer, JSON, String, Text

from lmscenter.core.db import Base


def _utc_now() -> datetime:
    """UTC now as naive datetime for DateTime(timezone=False) columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class AssignmentListRecord(Base):
    """One fetched assignment list per backend. data is a JSON array of assignment dicts."""
    __tablename__ = "assignment_list_records"

    id = Column(Integer, primary_key=True, autoincrement=True)
    lms_type = Column(String(32), nullable=False, index=True)
    fetched_at = Column(DateTime(timezone=False), nullable=False, index=True)
    data = Column(JSON, nullable=False)


class SubmissionAttempt(Base):
    """Each submit call and how it ended, so a partial submission can be inspected before retrying."""
    __tablename__ = "submission_attempts"

    id = Column(Integer, primary_key=True, autoincrement=True)
    lms_type = Column(String(32), nullable=False)
    assignment_id = Column(String(255), nullable=False, index=True)
    course_id = Column(String(255), nullable=False)
    file_names = Column(JSON, nullable=False, default=list)
    has_comment = Column(Boolean, default=False, nullable=False)
    success = Column(Boolean, nullable=False)
    stage = Column(String(16), nullable=True)  # upload, submit, finalize
    error = Column(Text, nullable=True)
    attempted_at = Column(DateTime(timezone=False), default=_utc_now, nullable=False, index=True)
