"""
Attachment downloads into <base>/<Course>/<Assignment> and <base>/<Course>/Lectures/<Lecture>.
"""
import json
import logging
import os
import re
from pathlib import Path
from typing import Dict, List, Optional
from urllib.parse import urlencode

import requests

from lmscenter.clients.base import Assignment, FileAttachment, Lecture, LMSError

DOWNLOAD_TIMEOUT = 60
_INVALID_CHARS = re.compile(r'[/\\?%*:|"<>]')


class DownloadError(LMSError):
    """Download failed or the server sent an error body instead of the file."""


def sanitize_name(name: str) -> str:
    cleaned = _INVALID_CHARS.sub("-", name or "").strip()
    # a bare dot component would resolve outside the target folder
    if cleaned in (".", ".."):
        return "-"
    return cleaned


def format_file_size(size: Optional[int]) -> str:
    """1536 -> '1.5 KB'. None/0 -> 'Unknown size'."""
    if not size:
        return "Unknown size"
    units = ["Bytes", "KB", "MB", "GB"]
    value = float(size)
    i = 0
    while value >= 1024 and i < len(units) - 1:
        value /= 1024
        i += 1
    value = round(value, 2)
    if value == int(value):
        value = int(value)
    return f"{value} {units[i]}"


class FileDownloader:
    """
    Moodle file URLs (pluginfile.php, /webservice/) need the token as a query
    parameter; Canvas URLs take the bearer header.
    """

    def __init__(
        self,
        base_path: str,
        lms_type: str,
        token: str = "",
        session: Optional[requests.Session] = None,
        timeout: float = DOWNLOAD_TIMEOUT,
    ):
        self.base_path = Path(base_path or Path.home() / "Downloads").expanduser()
        self.lms_type = (lms_type or "").lower()
        self.token = token
        self.session = session or requests.Session()
        self.timeout = timeout
        self.logger = logging.getLogger(self.__class__.__name__)

    def course_path(self, course_name: str) -> Path:
        return self.base_path / sanitize_name(course_name)

    def assignment_path(self, course_name: str, assignment_name: str) -> Path:
        return self.course_path(course_name) / sanitize_name(assignment_name)

    def lectures_path(self, course_name: str) -> Path:
        return self.course_path(course_name) / "Lectures"

    def lecture_path(self, course_name: str, lecture_name: str) -> Path:
        return self.lectures_path(course_name) / sanitize_name(lecture_name)

    def file_path(self, attachment: FileAttachment, folder: Path) -> Path:
        return Path(folder) / (sanitize_name(attachment.file_name) or "download")

    def _download_url(self, url: str) -> str:
        if self.token and self.lms_type == "moodle" and ("pluginfile.php" in url or "/webservice/" in url):
            separator = "&" if "?" in url else "?"
            return f"{url}{separator}{urlencode({'token': self.token})}"
        return url

    def _headers(self) -> Dict[str, str]:
        if self.token and self.lms_type == "canvas":
            return {"Authorization": f"Bearer {self.token}"}
        return {}

    def download_file(self, attachment: FileAttachment, folder: Path) -> str:
        """Download one attachment into folder; an existing file is kept. Returns the local path."""
        folder = Path(folder)
        folder.mkdir(parents=True, exist_ok=True)
        target = self.file_path(attachment, folder)
        if target.exists():
            self.logger.info(f"File already exists: {target}")
            return str(target)
        if not attachment.url:
            raise DownloadError(f"No download URL for {attachment.file_name}")

        self.logger.info(f"Downloading: {attachment.file_name}")
        try:
            response = self.session.get(
                self._download_url(attachment.url),
                headers=self._headers(),
                timeout=self.timeout,
            )
            response.raise_for_status()
        except requests.exceptions.RequestException as e:
            raise DownloadError(f"Failed to download {attachment.file_name}: {e}") from e

        content = response.content
        self._check_error_body(content, attachment.file_name)

        tmp = target.with_name(target.name + ".part")
        tmp.write_bytes(content)
        os.replace(tmp, target)
        self.logger.info(f"Downloaded to: {target} ({format_file_size(len(content))})")
        return str(target)

    def _check_error_body(self, content: bytes, file_name: str) -> None:
        """Moodle answers bad tokens with a 200 JSON body instead of the file."""
        if not content.lstrip().startswith(b"{"):
            return
        try:
            body = json.loads(content.decode("utf-8"))
        except (UnicodeDecodeError, ValueError):
            return
        if isinstance(body, dict) and (body.get("error") or body.get("errorcode")):
            message = body.get("error") or "Download failed"
            code = body.get("errorcode") or "unknown"
            self.logger.error(f"Error response for {file_name}: {message} ({code})")
            raise DownloadError(f"Server error: {message} ({code})")

    def download_files(self, attachments: List[FileAttachment], folder: Path) -> Dict[str, Optional[str]]:
        """file name -> local path, or None for files that failed."""
        results: Dict[str, Optional[str]] = {}
        for attachment in attachments:
            try:
                results[attachment.file_name] = self.download_file(attachment, folder)
            except Exception as e:
                self.logger.error(f"Failed to download {attachment.file_name}: {e}")
                results[attachment.file_name] = None
        return results

    def download_assignment_attachments(self, assignment: Assignment) -> Dict[str, Optional[str]]:
        folder = self.assignment_path(assignment.course_name, assignment.name)
        return self.download_files(assignment.attachments, folder)

    def download_lecture_attachments(self, lecture: Lecture) -> Dict[str, Optional[str]]:
        folder = self.lecture_path(lecture.course_name, lecture.name)
        return self.download_files(lecture.attachments, folder)
