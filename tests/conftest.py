"""
Shared fixtures. HTTP is never performed: sessions are mocks returning real
requests.Response objects so status checks, Link headers and redirects behave.
"""
import json
from typing import Any, Dict, Optional
from unittest.mock import Mock

import pytest
import requests

from lmscenter.core.config import LMSConfig
from lmscenter.core.db import dispose_db, init_db


def build_response(
    status_code: int = 200,
    json_data: Any = None,
    headers: Optional[Dict[str, str]] = None,
    content: Optional[bytes] = None,
    url: str = "https://lms.example.edu/api",
) -> requests.Response:
    response = requests.Response()
    response.status_code = status_code
    response.url = url
    response.encoding = "utf-8"
    if json_data is not None:
        response._content = json.dumps(json_data).encode("utf-8")
        response.headers["Content-Type"] = "application/json"
    else:
        response._content = content if content is not None else b""
    response.headers.update(headers or {})
    return response


@pytest.fixture
def make_response():
    return build_response


@pytest.fixture
def session():
    mock = Mock(spec=requests.Session)
    mock.headers = {}
    return mock


@pytest.fixture
def db(tmp_path):
    """Fresh SQLite database per test."""
    init_db(db_url=f"sqlite:///{tmp_path / 'test.db'}")
    yield
    dispose_db()


@pytest.fixture
def canvas_settings():
    return LMSConfig(
        lms_type="canvas",
        lms_url="https://canvas.example.edu/",
        api_token="canvas-token",
        check_interval=15,
    )


@pytest.fixture
def moodle_settings():
    return LMSConfig(
        lms_type="moodle",
        lms_url="https://moodle.example.edu",
        api_token="moodle-token",
        check_interval=15,
    )
