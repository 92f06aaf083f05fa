"""
Username/password login against the LMS, yielding an API token.
"""
import logging
from typing import Any, Dict, Optional

import requests
from pydantic import BaseModel

from lmscenter.clients.base import DEFAULT_TIMEOUT, describe_request_error, message_from_body
from lmscenter.clients.moodle import MOBILE_SERVICE

logger = logging.getLogger(__name__)


class LoginCredentials(BaseModel):
    username: str
    password: str
    lms_url: str
    lms_type: str
    client_id: Optional[str] = None
    client_secret: Optional[str] = None


class AuthResult(BaseModel):
    success: bool
    token: Optional[str] = None
    refresh_token: Optional[str] = None
    error: Optional[str] = None


class AuthService:
    """Stateless: credentials are used for one request and never kept."""

    def __init__(self, session: Optional[requests.Session] = None, timeout: float = DEFAULT_TIMEOUT):
        self.session = session or requests.Session()
        self.timeout = timeout
        self.logger = logging.getLogger(self.__class__.__name__)

    def login(self, credentials: LoginCredentials) -> AuthResult:
        lms_type = (credentials.lms_type or "").lower()
        if lms_type == "canvas":
            return self._login_canvas(credentials)
        if lms_type == "moodle":
            return self._login_moodle(credentials)
        if lms_type == "blackboard":
            return AuthResult(success=False, error="Blackboard authentication not yet implemented")
        return AuthResult(success=False, error=f"Unsupported LMS type: {credentials.lms_type}")

    def _login_canvas(self, credentials: LoginCredentials) -> AuthResult:
        data = {
            "grant_type": "password",
            "username": credentials.username,
            "password": credentials.password,
        }
        if credentials.client_id:
            data["client_id"] = credentials.client_id
        if credentials.client_secret:
            data["client_secret"] = credentials.client_secret
        try:
            response = self.session.post(
                f"{credentials.lms_url.rstrip('/')}/login/oauth2/token",
                data=data,
                timeout=self.timeout,
            )
            response.raise_for_status()
            body = response.json()
        except requests.exceptions.RequestException as e:
            self.logger.error(f"Canvas login error: {describe_request_error(e)}")
            return AuthResult(success=False, error=_login_failure_message(e))
        except ValueError:
            return AuthResult(success=False, error="Invalid response from Canvas")
        if not isinstance(body, dict):
            return AuthResult(success=False, error="Invalid response from Canvas")

        if body.get("access_token"):
            self.logger.info("Canvas login succeeded")
            return AuthResult(success=True, token=body["access_token"], refresh_token=body.get("refresh_token"))
        return AuthResult(success=False, error="No access token received")

    def _login_moodle(self, credentials: LoginCredentials) -> AuthResult:
        try:
            response = self.session.post(
                f"{credentials.lms_url.rstrip('/')}/login/token.php",
                data={
                    "username": credentials.username,
                    "password": credentials.password,
                    "service": MOBILE_SERVICE,
                },
                timeout=self.timeout,
            )
            response.raise_for_status()
            body = response.json()
        except requests.exceptions.RequestException as e:
            self.logger.error(f"Moodle login error: {describe_request_error(e)}")
            return AuthResult(success=False, error=_login_failure_message(e))
        except ValueError:
            return AuthResult(success=False, error="Invalid response from Moodle")
        if not isinstance(body, dict):
            return AuthResult(success=False, error="Invalid response from Moodle")

        # Moodle reports bad credentials with HTTP 200 and an error field
        if body.get("token"):
            self.logger.info("Moodle login succeeded")
            return AuthResult(success=True, token=body["token"])
        return AuthResult(success=False, error=body.get("error") or "No token received")

    def refresh_token(self, lms_url: str, lms_type: str, refresh_token: str) -> AuthResult:
        """Exchange a refresh token for a new access token (Canvas only)."""
        if (lms_type or "").lower() != "canvas":
            return AuthResult(success=False, error="Token refresh not supported for this LMS")
        try:
            response = self.session.post(
                f"{lms_url.rstrip('/')}/login/oauth2/token",
                data={"grant_type": "refresh_token", "refresh_token": refresh_token},
                timeout=self.timeout,
            )
            response.raise_for_status()
            body = response.json()
        except (requests.exceptions.RequestException, ValueError) as e:
            self.logger.error(f"Token refresh error: {e}")
            return AuthResult(success=False, error="Failed to refresh token")
        if not isinstance(body, dict):
            return AuthResult(success=False, error="Invalid response from Canvas")

        if body.get("access_token"):
            return AuthResult(
                success=True,
                token=body["access_token"],
                refresh_token=body.get("refresh_token") or refresh_token,
            )
        return AuthResult(success=False, error="No access token received")


def token_updates(result: AuthResult) -> Dict[str, Any]:
    """Settings to save after a successful login or refresh."""
    updates = {"api_token": result.token}
    if result.refresh_token:
        updates["refresh_token"] = result.refresh_token
    return updates


def _login_failure_message(error: requests.exceptions.RequestException) -> str:
    response = getattr(error, "response", None)
    if response is not None:
        try:
            message = message_from_body(response.json())
        except ValueError:
            message = None
        if message:
            return message
    return "Login failed. Please check your credentials."
