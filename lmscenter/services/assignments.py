"""
Service layer: the UI's copy of the latest assignment list and the submission attempt log.
The checker's snapshot is never modified from here.
"""
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import select, delete

from lmscenter.clients.base import Assignment, SubmissionData, SubmissionResult
from lmscenter.core.db import session_scope
from lmscenter.core.models import AssignmentListRecord, SubmissionAttempt


def _utc_now() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def save_assignments(lms_type: str, assignments: List[Assignment]) -> None:
    """Replace this backend's stored list with a new fetch (delete previous, insert one row)."""
    data = [a.model_dump(mode="json") for a in assignments]
    with session_scope() as session:
        session.execute(delete(AssignmentListRecord).where(AssignmentListRecord.lms_type == lms_type))
        session.add(AssignmentListRecord(lms_type=lms_type, fetched_at=_utc_now(), data=data))


def get_latest_assignment_record(lms_type: Optional[str] = None) -> Optional[AssignmentListRecord]:
    """Latest stored list for lms_type, or for any backend when None."""
    query = select(AssignmentListRecord)
    if lms_type:
        query = query.where(AssignmentListRecord.lms_type == lms_type)
    with session_scope() as session:
        return (
            session.execute(query.order_by(AssignmentListRecord.fetched_at.desc()).limit(1))
            .scalars().first()
        )


def get_latest_assignments(lms_type: Optional[str] = None) -> List[Assignment]:
    row = get_latest_assignment_record(lms_type)
    if row and row.data:
        return [Assignment.model_validate(item) for item in row.data]
    return []


def mark_submitted(assignment_id: str, submitted_date: Optional[str] = None) -> bool:
    """
    Optimistically flag one stored assignment as submitted until the next fetch
    replaces the list. Returns False if it is not in the stored list.
    """
    submitted_date = submitted_date or datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
    with session_scope() as session:
        row = (
            session.execute(
                select(AssignmentListRecord).order_by(AssignmentListRecord.fetched_at.desc()).limit(1)
            )
            .scalars().first()
        )
        if row is None or not row.data:
            return False
        updated: List[Dict[str, Any]] = []
        found = False
        for item in row.data:
            item = dict(item)
            if item.get("id") == assignment_id:
                item["submitted"] = True
                item["submitted_date"] = submitted_date
                found = True
            updated.append(item)
        if found:
            # reassign so the JSON column is flagged dirty
            row.data = updated
        return found


def record_submission_attempt(lms_type: str, data: SubmissionData, result: SubmissionResult) -> None:
    with session_scope() as session:
        session.add(
            SubmissionAttempt(
                lms_type=lms_type,
                assignment_id=data.assignment_id,
                course_id=data.course_id,
                file_names=[f.file_name for f in data.attachments],
                has_comment=bool(data.comment),
                success=result.success,
                stage=result.stage.value if result.stage else None,
                error=result.error,
                attempted_at=_utc_now(),
            )
        )


def get_last_submission_attempt(assignment_id: str) -> Optional[SubmissionAttempt]:
    with session_scope() as session:
        return (
            session.execute(
                select(SubmissionAttempt)
                .where(SubmissionAttempt.assignment_id == assignment_id)
                .order_by(SubmissionAttempt.attempted_at.desc(), SubmissionAttempt.id.desc())
                .limit(1)
            )
            .scalars().first()
        )
