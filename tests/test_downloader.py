"""Tests for attachment downloads."""

import pytest
import requests

from lmscenter.clients.base import Assignment, FileAttachment, Lecture
from lmscenter.services.downloader import DownloadError, FileDownloader, format_file_size, sanitize_name


def _attachment(name="notes.pdf", url="https://moodle.example.edu/webservice/pluginfile.php/3/notes.pdf"):
    return FileAttachment(id="1", file_name=name, url=url)


class TestPaths:

    def test_sanitize_name(self):
        assert sanitize_name('Unit 1: Intro/Basics? "v2" <draft>|*%') == "Unit 1- Intro-Basics- -v2- -draft----"

    @pytest.mark.parametrize("name", [".", "..", " .. "])
    def test_dot_names_stay_inside_base(self, name, tmp_path):
        downloader = FileDownloader(str(tmp_path), "canvas")

        assert sanitize_name(name) == "-"
        assert downloader.lecture_path(name, name).parent.parent == tmp_path / "-"

    def test_folder_layout(self, tmp_path):
        downloader = FileDownloader(str(tmp_path), "canvas")

        assert downloader.assignment_path("CS 101: Intro", "HW 1/2") == tmp_path / "CS 101- Intro" / "HW 1-2"
        assert downloader.lecture_path("CS 101", "Week 1") == tmp_path / "CS 101" / "Lectures" / "Week 1"


class TestDownloadFile:

    def test_moodle_urls_get_token_parameter(self, tmp_path, session, make_response):
        session.get.return_value = make_response(content=b"%PDF-1.4 data")
        downloader = FileDownloader(str(tmp_path), "moodle", token="tok", session=session)

        path = downloader.download_file(_attachment(), tmp_path / "out")

        assert open(path, "rb").read() == b"%PDF-1.4 data"
        url = session.get.call_args.args[0]
        assert url == "https://moodle.example.edu/webservice/pluginfile.php/3/notes.pdf?token=tok"
        assert session.get.call_args.kwargs["headers"] == {}

    def test_token_appended_to_existing_query(self, tmp_path, session, make_response):
        session.get.return_value = make_response(content=b"data")
        downloader = FileDownloader(str(tmp_path), "moodle", token="tok", session=session)

        downloader.download_file(
            _attachment(url="https://moodle.example.edu/pluginfile.php/3/notes.pdf?forcedownload=1"), tmp_path
        )

        assert session.get.call_args.args[0].endswith("?forcedownload=1&token=tok")

    def test_canvas_uses_bearer_header(self, tmp_path, session, make_response):
        session.get.return_value = make_response(content=b"data")
        downloader = FileDownloader(str(tmp_path), "canvas", token="ctok", session=session)

        downloader.download_file(_attachment(url="https://canvas.example.edu/files/1/download"), tmp_path)

        assert session.get.call_args.args[0] == "https://canvas.example.edu/files/1/download"
        assert session.get.call_args.kwargs["headers"] == {"Authorization": "Bearer ctok"}

    def test_json_error_body_raises(self, tmp_path, session, make_response):
        session.get.return_value = make_response(
            json_data={"error": "Invalid token - token not found", "errorcode": "invalidtoken"}
        )
        downloader = FileDownloader(str(tmp_path), "moodle", token="bad", session=session)

        with pytest.raises(DownloadError, match="invalidtoken"):
            downloader.download_file(_attachment(), tmp_path)
        assert not (tmp_path / "notes.pdf").exists()

    def test_json_file_is_kept(self, tmp_path, session, make_response):
        session.get.return_value = make_response(json_data={"cells": []})
        downloader = FileDownloader(str(tmp_path), "canvas", session=session)

        path = downloader.download_file(_attachment(name="notebook.ipynb", url="https://x/nb"), tmp_path)

        assert open(path).read() == '{"cells": []}'

    def test_existing_file_is_not_downloaded_again(self, tmp_path, session):
        (tmp_path / "notes.pdf").write_bytes(b"old")
        downloader = FileDownloader(str(tmp_path), "moodle", token="tok", session=session)

        path = downloader.download_file(_attachment(), tmp_path)

        assert open(path, "rb").read() == b"old"
        session.get.assert_not_called()

    def test_http_error_raises(self, tmp_path, session, make_response):
        session.get.return_value = make_response(status_code=404, content=b"not found")
        downloader = FileDownloader(str(tmp_path), "canvas", session=session)

        with pytest.raises(DownloadError):
            downloader.download_file(_attachment(url="https://x/missing"), tmp_path)


class TestBatchDownload:

    def test_failed_files_map_to_none(self, tmp_path, session, make_response):
        session.get.side_effect = [
            make_response(content=b"one"),
            requests.exceptions.ConnectionError("reset"),
        ]
        downloader = FileDownloader(str(tmp_path), "canvas", session=session)

        results = downloader.download_files(
            [_attachment("a.pdf", "https://x/a"), _attachment("b.pdf", "https://x/b")], tmp_path
        )

        assert results["a.pdf"] == str(tmp_path / "a.pdf")
        assert results["b.pdf"] is None

    def test_assignment_and_lecture_folders(self, tmp_path, session, make_response):
        session.get.side_effect = lambda *args, **kwargs: make_response(content=b"x")
        downloader = FileDownloader(str(tmp_path), "canvas", session=session)
        attachment = _attachment("sheet.pdf", "https://x/sheet")
        assignment = Assignment(id="1", name="HW 1", due_date="2030-01-01T00:00:00Z", course_id="1",
                                course_name="Math", attachments=[attachment])
        lecture = Lecture(id="2", name="Week 1", course_id="1", course_name="Math", attachments=[attachment])

        downloader.download_assignment_attachments(assignment)
        downloader.download_lecture_attachments(lecture)

        assert (tmp_path / "Math" / "HW 1" / "sheet.pdf").exists()
        assert (tmp_path / "Math" / "Lectures" / "Week 1" / "sheet.pdf").exists()


@pytest.mark.parametrize("size, expected", [
    (None, "Unknown size"),
    (0, "Unknown size"),
    (512, "512 Bytes"),
    (1024, "1 KB"),
    (1536, "1.5 KB"),
    (5 * 1024 * 1024, "5 MB"),
])
def test_format_file_size(size, expected):
    assert format_file_size(size) == expected
