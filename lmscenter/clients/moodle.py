"""
Moodle client over the web-service REST endpoint (token auth, JSON format).

Every call is a form POST to /webservice/rest/server.php. List parameters must be
sent as indexed bracket keys (courseids[0]=10&courseids[1]=12) and nested ones as
key[sub]; Moodle reports errors as JSON envelopes with HTTP 200.
"""
import os
from typing import Any, Dict, List, Optional

import requests

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
    UploadError,
    describe_request_error,
    iso_from_timestamp,
    sort_by_due_date,
)

LECTURE_MODULE_TYPES = ("resource", "url", "page", "folder")
MOBILE_SERVICE = "moodle_mobile_app"
USER_AGENT = "LMS-Center/1.0"


class MoodleAPIError(LMSError):
    """JSON error envelope returned by a web-service call or the upload endpoint."""

    def __init__(self, message: str, errorcode: Optional[str] = None):
        super().__init__(message)
        self.errorcode = errorcode


def encode_params(params: Dict[str, Any], prefix: str = "") -> Dict[str, Any]:
    """
    Flatten lists and mappings into Moodle's bracket notation.

    {"courseids": [10, 12]} -> {"courseids[0]": 10, "courseids[1]": 12}
    {"plugindata": {"files_filemanager": 5}} -> {"plugindata[files_filemanager]": 5}
    """
    flat: Dict[str, Any] = {}
    for key, value in params.items():
        name = f"{prefix}[{key}]" if prefix else str(key)
        if isinstance(value, dict):
            flat.update(encode_params(value, name))
        elif isinstance(value, (list, tuple)):
            flat.update(encode_params({i: v for i, v in enumerate(value)}, name))
        elif isinstance(value, bool):
            flat[name] = int(value)
        elif value is not None:
            flat[name] = value
    return flat


def _raise_for_envelope(data: Any) -> None:
    if isinstance(data, dict) and ("exception" in data or "errorcode" in data or "error" in data):
        message = data.get("message") or data.get("error") or data.get("exception") or "Moodle error"
        raise MoodleAPIError(str(message), data.get("errorcode"))


def _warnings_message(result: Any) -> Optional[str]:
    """save_submission/submit_for_grading return a list of warnings; empty means success."""
    warnings = result.get("warnings") if isinstance(result, dict) else result
    if isinstance(warnings, list) and warnings:
        first = warnings[0]
        if isinstance(first, dict):
            return first.get("message") or first.get("warningcode") or "Moodle returned a warning"
        return str(first)
    return None


class MoodleClient(LMSClient):
    """Moodle web-service client for the token's own user."""

    lms_type = "moodle"

    def __init__(self, base_url: str, api_token: str, **kwargs: Any):
        super().__init__(base_url, api_token, **kwargs)
        self.endpoint = f"{self.base_url}/webservice/rest/server.php"
        self.upload_endpoint = f"{self.base_url}/webservice/upload.php"
        self.session.headers.update({"User-Agent": USER_AGENT})

    def call(self, wsfunction: str, params: Optional[Dict[str, Any]] = None) -> Any:
        """Invoke one web-service function. Raises MoodleAPIError on error envelopes."""
        payload = {
            "wstoken": self.api_token,
            "wsfunction": wsfunction,
            "moodlewsrestformat": "json",
        }
        payload.update(encode_params(params or {}))
        response = self.session.post(self.endpoint, data=payload, timeout=self.timeout)
        response.raise_for_status()
        data = response.json()
        _raise_for_envelope(data)
        return data

    def _user_id(self) -> int:
        return self.call("core_webservice_get_site_info")["userid"]

    def test_connection(self) -> bool:
        try:
            self.call("core_webservice_get_site_info")
            return True
        except Exception as e:
            self.logger.warning(f"Moodle connection test failed: {e}")
            return False

    def get_courses(self) -> List[Course]:
        try:
            user_id = self._user_id()
            raw = self.call("core_enrol_get_users_courses", {"userid": user_id})
        except Exception as e:
            self.logger.error(f"Error fetching courses: {e}")
            return []
        if not isinstance(raw, list):
            self.logger.error(f"Moodle courses is not a list: {type(raw).__name__}")
            return []

        courses = [
            Course(id=str(c["id"]), name=c.get("fullname") or c.get("shortname") or str(c["id"]))
            for c in raw
            if c.get("id") is not None
        ]
        self.logger.info(f"Found {len(courses)} Moodle courses")
        return courses

    def _submission_state(self, assignment_id: Any, user_id: int) -> tuple:
        """(submitted, submitted_date) for one assignment; (False, None) when unknown."""
        try:
            status = self.call(
                "mod_assign_get_submission_status",
                {"assignid": assignment_id, "userid": user_id},
            )
        except Exception as e:
            self.logger.warning(f"Error checking submission status for assignment {assignment_id}: {e}")
            return False, None
        submission = ((status or {}).get("lastattempt") or {}).get("submission") or {}
        if submission.get("status") != "submitted":
            return False, None
        modified = submission.get("timemodified")
        return True, iso_from_timestamp(modified) if modified else None

    def _to_assignment(self, item: Dict[str, Any], course: Course, user_id: int) -> Optional[Assignment]:
        due = item.get("duedate")
        if not due:
            return None
        attachments = [
            FileAttachment(
                id=f.get("fileurl") or "",
                file_name=f.get("filename") or "",
                url=f.get("fileurl") or "",
                size=f.get("filesize"),
                content_type=f.get("mimetype"),
            )
            for f in item.get("introattachments") or []
        ]
        submitted, submitted_date = self._submission_state(item["id"], user_id)
        cmid = item.get("cmid")
        return Assignment(
            id=str(item["id"]),
            name=item.get("name") or "Assignment",
            description=item.get("intro") or "",
            due_date=iso_from_timestamp(due),
            course_id=course.id,
            course_name=course.name,
            url=f"{self.base_url}/mod/assign/view.php?id={cmid}" if cmid else "",
            submitted=submitted,
            submitted_date=submitted_date,
            attachments=attachments,
        )

    def get_assignments(self) -> List[Assignment]:
        try:
            user_id = self._user_id()
        except Exception as e:
            self.logger.error(f"Error fetching site info: {e}")
            return []
        courses = self.get_courses()
        if not courses:
            self.logger.info("No courses found, returning empty assignments")
            return []
        by_id = {c.id: c for c in courses}

        try:
            response = self.call(
                "mod_assign_get_assignments",
                {"courseids": [int(c.id) for c in courses]},
            )
        except Exception as e:
            self.logger.error(f"Error fetching assignments: {e}")
            return []
        if not isinstance(response, dict):
            self.logger.error(f"Unexpected mod_assign_get_assignments response: {type(response).__name__}")
            return []
        for warning in response.get("warnings") or []:
            self.logger.warning(f"mod_assign_get_assignments warning: {warning.get('message')}")

        assignments: List[Assignment] = []
        for course_data in response.get("courses") or []:
            course = by_id.get(str(course_data.get("id")))
            if course is None:
                self.logger.debug(f"Course {course_data.get('id')} not in enrolled courses")
                continue
            try:
                added = 0
                for item in course_data.get("assignments") or []:
                    assignment = self._to_assignment(item, course, user_id)
                    if assignment is None:
                        self.logger.debug(f"  Skipping \"{item.get('name')}\" - no due date")
                        continue
                    assignments.append(assignment)
                    added += 1
                self.logger.info(f"Course \"{course.name}\": {added} assignments with due dates")
            except Exception as e:
                self.logger.error(f"Error reading assignments for course {course.id}: {e}")

        self.logger.info(f"Total assignments: {len(assignments)}")
        return sort_by_due_date(assignments)

    def get_lectures(self) -> List[Lecture]:
        lectures: List[Lecture] = []
        for course in self.get_courses():
            try:
                sections = self.call("core_course_get_contents", {"courseid": int(course.id)})
                for section in sections:
                    for module in section.get("modules") or []:
                        if module.get("modname") not in LECTURE_MODULE_TYPES:
                            continue
                        attachments = [
                            FileAttachment(
                                id=content.get("fileurl") or "",
                                file_name=content.get("filename") or module.get("name") or "",
                                url=content.get("fileurl") or module.get("url") or "",
                                size=content.get("filesize"),
                                content_type=content.get("mimetype"),
                            )
                            for content in module.get("contents") or []
                        ]
                        added = module.get("added")
                        lectures.append(Lecture(
                            id=str(module["id"]),
                            name=module.get("name") or "",
                            description=module.get("description") or "",
                            course_id=course.id,
                            course_name=course.name,
                            url=module.get("url") or "",
                            attachments=attachments,
                            created_date=iso_from_timestamp(added) if added else None,
                        ))
            except Exception as e:
                self.logger.error(f"Error fetching lectures for course {course.id}: {e}")

        self.logger.info(f"Total lectures: {len(lectures)}")
        return lectures

    def _upload_to_draft_area(self, attachment: SubmissionFile, item_id: int = 0) -> int:
        """
        Multipart POST to upload.php with the token as a form field.
        item_id 0 opens a new draft area; pass the returned id to add more files to it.
        """
        name = attachment.file_name
        path = attachment.file_path
        if not os.path.isfile(path):
            raise UploadError(name, f"file does not exist: {path}")
        size = os.path.getsize(path)
        if size == 0:
            raise UploadError(name, f"file is empty: {path}")

        try:
            with open(path, "rb") as fh:
                response = self.session.post(
                    self.upload_endpoint,
                    data={
                        "token": self.api_token,
                        "filearea": "draft",
                        "itemid": item_id,
                        "filepath": "/",
                        "filename": name,
                    },
                    files={"file": (name, fh, "application/octet-stream")},
                    timeout=self.upload_timeout,
                )
            response.raise_for_status()
            body = response.json()
            _raise_for_envelope(body)
        except requests.exceptions.RequestException as e:
            raise UploadError(name, describe_request_error(e)) from e
        except (MoodleAPIError, OSError, ValueError) as e:
            raise UploadError(name, str(e)) from e

        if not isinstance(body, list) or not body or "itemid" not in body[0]:
            raise UploadError(name, "no file data returned from upload")
        uploaded = body[0]
        if uploaded.get("filesize") and uploaded["filesize"] != size:
            self.logger.warning(f"Uploaded size {uploaded['filesize']} differs from local size {size} for {name}")
        self.logger.info(f"File uploaded: {name} (itemid {uploaded['itemid']})")
        return int(uploaded["itemid"])

    def submit_assignment(self, data: SubmissionData) -> SubmissionResult:
        if not data.attachments and not data.comment:
            return SubmissionResult(
                success=False,
                error="Nothing to submit: no files and no comment",
                stage=SubmissionStage.SUBMIT,
            )
        self.logger.info(f"Moodle submission: assignment_id={data.assignment_id}")

        draft_item_id = 0
        for attachment in data.attachments:
            try:
                draft_item_id = self._upload_to_draft_area(attachment, draft_item_id)
            except UploadError as e:
                self.logger.error(str(e))
                return SubmissionResult(success=False, error=str(e), stage=SubmissionStage.UPLOAD)

        plugindata: Dict[str, Any] = {}
        if draft_item_id:
            plugindata["files_filemanager"] = draft_item_id
        if data.comment:
            plugindata["onlinetext_editor"] = {"text": data.comment, "format": 1, "itemid": 0}

        try:
            result = self.call(
                "mod_assign_save_submission",
                {"assignmentid": int(data.assignment_id), "plugindata": plugindata},
            )
            warning = _warnings_message(result)
            if warning:
                raise MoodleAPIError(warning)
        except Exception as e:
            message = describe_request_error(e) if isinstance(e, requests.exceptions.RequestException) else str(e)
            self.logger.error(f"Error saving submission for assignment {data.assignment_id}: {message}")
            return SubmissionResult(
                success=False,
                error=f"Failed to save submission: {message}",
                stage=SubmissionStage.SUBMIT,
            )
        self.logger.info("Submission saved as draft")

        try:
            result = self.call(
                "mod_assign_submit_for_grading",
                {"assignmentid": int(data.assignment_id), "acceptsubmissionstatement": 1},
            )
            warning = _warnings_message(result)
            if warning:
                raise MoodleAPIError(warning)
        except Exception as e:
            message = describe_request_error(e) if isinstance(e, requests.exceptions.RequestException) else str(e)
            self.logger.error(f"Failed to submit for grading: {message}")
            return SubmissionResult(
                success=False,
                error=f"Files uploaded but could not submit for grading: {message}",
                stage=SubmissionStage.FINALIZE,
            )

        self.logger.info(f"Assignment {data.assignment_id} submitted for grading")
        return SubmissionResult(success=True)
