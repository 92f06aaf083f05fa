"""
Canvas LMS client (REST API v1, bearer token).
Courses are limited to active enrollments. List endpoints are requested 100 items
per page and the Link header is followed so results are never silently truncated.
"""
import mimetypes
import os
from typing import Any, Dict, List, Optional

import requests

from .base import (
    Assignment,
    Course,
    FileAttachment,
    Lecture,
    LMSClient,
    SubmissionData,
    SubmissionFile,
    SubmissionResult,
    SubmissionStage,
    UploadError,
    describe_request_error,
    parse_datetime,
    sort_by_due_date,
)

PAGE_SIZE = 100
LECTURE_ITEM_TYPES = ("File", "Page", "ExternalUrl")
# workflow_state values that mean the current user has turned something in
SUBMITTED_STATES = ("submitted", "pending_review", "graded")


class CanvasClient(LMSClient):
    """Canvas REST client for the token's own user."""

    lms_type = "canvas"

    def __init__(self, base_url: str, api_token: str, **kwargs: Any):
        super().__init__(base_url, api_token, **kwargs)
        self.api_url = f"{self.base_url}/api/v1"
        self.session.headers.update({"Authorization": f"Bearer {self.api_token}"})

    def _get_paginated(self, path: str, params: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        """GET a list endpoint and follow rel="next" links until exhausted."""
        items: List[Dict[str, Any]] = []
        url: Optional[str] = f"{self.api_url}{path}"
        while url:
            response = self.session.get(url, params=params, timeout=self.timeout)
            response.raise_for_status()
            page = response.json()
            if not isinstance(page, list):
                raise ValueError(f"Expected a list from {path}, got {type(page).__name__}")
            items.extend(page)
            url = response.links.get("next", {}).get("url")
            # next link already carries the query string
            params = None
        return items

    def test_connection(self) -> bool:
        try:
            response = self.session.get(f"{self.api_url}/users/self", timeout=self.timeout)
            response.raise_for_status()
            return True
        except Exception as e:
            self.logger.warning(f"Canvas connection test failed: {e}")
            return False

    def get_courses(self) -> List[Course]:
        try:
            raw = self._get_paginated(
                "/courses",
                {"enrollment_state": "active", "per_page": PAGE_SIZE},
            )
        except Exception as e:
            self.logger.error(f"Error fetching courses: {e}")
            return []

        courses = []
        for course in raw:
            if course.get("id") is None:
                continue
            # access-restricted courses come back with no name
            name = course.get("name") or course.get("course_code") or str(course["id"])
            courses.append(Course(id=str(course["id"]), name=name))
        self.logger.info(f"Found {len(courses)} courses")
        return courses

    def _to_assignment(self, item: Dict[str, Any], course: Course) -> Optional[Assignment]:
        """Map one Canvas assignment; None when it has no usable due date."""
        due_at = item.get("due_at")
        if not due_at:
            return None
        try:
            parse_datetime(due_at)
        except (TypeError, ValueError):
            self.logger.warning(f"Unparseable due_at {due_at!r} on assignment {item.get('id')}")
            return None

        submission = item.get("submission")
        if isinstance(submission, dict):
            submitted = submission.get("workflow_state") in SUBMITTED_STATES and bool(
                submission.get("submitted_at")
            )
            submitted_date = submission.get("submitted_at") if submitted else None
        else:
            submitted = bool(item.get("has_submitted_submissions"))
            submitted_date = None

        return Assignment(
            id=str(item["id"]),
            name=item.get("name") or "Assignment",
            description=item.get("description") or "",
            due_date=due_at,
            course_id=course.id,
            course_name=course.name,
            url=item.get("html_url") or "",
            submitted=submitted,
            submitted_date=submitted_date,
        )

    def get_assignments(self) -> List[Assignment]:
        assignments: List[Assignment] = []
        for course in self.get_courses():
            try:
                raw = self._get_paginated(
                    f"/courses/{course.id}/assignments",
                    {"per_page": PAGE_SIZE, "order_by": "due_at", "include[]": "submission"},
                )
            except Exception as e:
                self.logger.error(f"Error fetching assignments for course {course.id}: {e}")
                continue

            added = 0
            for item in raw:
                if item.get("id") is None:
                    continue
                assignment = self._to_assignment(item, course)
                if assignment is None:
                    self.logger.debug(f"  Skipping \"{item.get('name')}\" - no due date")
                    continue
                assignments.append(assignment)
                added += 1
            self.logger.info(f"Course \"{course.name}\": {added} of {len(raw)} assignments have due dates")

        return sort_by_due_date(assignments)

    def _module_items(self, module: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Items are inlined for small modules; large ones only carry items_url."""
        if module.get("items") is not None:
            return module["items"]
        items_url = module.get("items_url")
        if not items_url:
            return []
        path = items_url.split("/api/v1", 1)[-1]
        return self._get_paginated(path, {"per_page": PAGE_SIZE})

    def get_lectures(self) -> List[Lecture]:
        lectures: List[Lecture] = []
        for course in self.get_courses():
            try:
                modules = self._get_paginated(
                    f"/courses/{course.id}/modules",
                    {"include[]": "items", "per_page": PAGE_SIZE},
                )
                for module in modules:
                    for item in self._module_items(module):
                        if item.get("type") not in LECTURE_ITEM_TYPES:
                            continue
                        attachments = []
                        if item["type"] == "File":
                            attachments.append(FileAttachment(
                                id=str(item.get("content_id") or item["id"]),
                                file_name=item.get("title") or "download",
                                url=item.get("url") or item.get("html_url") or "",
                                content_type=item.get("content_type"),
                            ))
                        lectures.append(Lecture(
                            id=str(item["id"]),
                            name=item.get("title") or "",
                            course_id=course.id,
                            course_name=course.name,
                            url=item.get("html_url") or item.get("external_url") or item.get("url") or "",
                            attachments=attachments,
                        ))
            except Exception as e:
                self.logger.error(f"Error fetching lectures for course {course.id}: {e}")

        self.logger.info(f"Found {len(lectures)} lectures")
        return lectures

    def _upload_file(self, data: SubmissionData, attachment: SubmissionFile) -> str:
        """Upload intent -> binary transfer -> confirmation. Returns the Canvas file id."""
        name = attachment.file_name
        try:
            size = os.path.getsize(attachment.file_path)
        except OSError as e:
            raise UploadError(name, f"cannot read {attachment.file_path}: {e}") from e
        content_type = mimetypes.guess_type(name)[0] or "application/octet-stream"

        try:
            intent = self.session.post(
                f"{self.api_url}/courses/{data.course_id}/assignments/{data.assignment_id}/submissions/self/files",
                data={"name": name, "size": size, "content_type": content_type},
                timeout=self.timeout,
            )
            intent.raise_for_status()
            ticket = intent.json()
            upload_url = ticket.get("upload_url")
            if not upload_url:
                raise UploadError(name, "Canvas did not return an upload URL")

            with open(attachment.file_path, "rb") as fh:
                # upload_url is pre-signed; the bearer header must not go with it
                uploaded = self.session.post(
                    upload_url,
                    data=ticket.get("upload_params") or {},
                    files={"file": (name, fh, content_type)},
                    headers={"Authorization": None},
                    allow_redirects=False,
                    timeout=self.upload_timeout,
                )
            if uploaded.is_redirect:
                confirm = self.session.get(uploaded.headers["Location"], timeout=self.timeout)
                confirm.raise_for_status()
                body = confirm.json()
            else:
                uploaded.raise_for_status()
                body = uploaded.json()
        except requests.exceptions.RequestException as e:
            raise UploadError(name, describe_request_error(e)) from e
        except (OSError, ValueError) as e:
            raise UploadError(name, str(e)) from e

        file_id = body.get("id") if isinstance(body, dict) else None
        if file_id is None:
            raise UploadError(name, "upload was not confirmed by Canvas")
        self.logger.info(f"File uploaded: {name} (id {file_id})")
        return str(file_id)

    def submit_assignment(self, data: SubmissionData) -> SubmissionResult:
        if not data.attachments and not data.comment:
            return SubmissionResult(
                success=False,
                error="Nothing to submit: no files and no comment",
                stage=SubmissionStage.SUBMIT,
            )
        self.logger.info(f"Canvas submission: course_id={data.course_id}, assignment_id={data.assignment_id}")

        file_ids: List[str] = []
        for attachment in data.attachments:
            try:
                file_ids.append(self._upload_file(data, attachment))
            except UploadError as e:
                self.logger.error(str(e))
                return SubmissionResult(success=False, error=str(e), stage=SubmissionStage.UPLOAD)

        if file_ids:
            payload: Dict[str, Any] = {
                "submission": {"submission_type": "online_upload", "file_ids": file_ids},
            }
            if data.comment:
                payload["comment"] = {"text_comment": data.comment}
        else:
            payload = {"submission": {"submission_type": "online_text_entry", "body": data.comment}}

        try:
            response = self.session.post(
                f"{self.api_url}/courses/{data.course_id}/assignments/{data.assignment_id}/submissions",
                json=payload,
                timeout=self.timeout,
            )
            response.raise_for_status()
        except requests.exceptions.RequestException as e:
            message = describe_request_error(e)
            self.logger.error(f"Error submitting assignment {data.assignment_id}: {message}")
            return SubmissionResult(
                success=False,
                error=f"Failed to submit assignment: {message}",
                stage=SubmissionStage.SUBMIT,
            )

        self.logger.info(f"Assignment {data.assignment_id} submitted with {len(file_ids)} file(s)")
        return SubmissionResult(success=True)
