"""Tests for the login service."""

import requests

from lmscenter.services.auth import AuthResult, AuthService, LoginCredentials, token_updates


def _creds(lms_type, url="https://lms.example.edu"):
    return LoginCredentials(username="student", password="secret", lms_url=url, lms_type=lms_type)


class TestLogin:

    def test_canvas_password_grant(self, session, make_response):
        session.post.return_value = make_response(json_data={"access_token": "abc", "refresh_token": "r1"})

        result = AuthService(session=session).login(_creds("canvas", "https://lms.example.edu/"))

        assert result.success is True
        assert result.token == "abc"
        assert result.refresh_token == "r1"
        url = session.post.call_args.args[0]
        assert url == "https://lms.example.edu/login/oauth2/token"
        assert session.post.call_args.kwargs["data"]["grant_type"] == "password"

    def test_canvas_rejected_credentials_use_server_message(self, session, make_response):
        session.post.return_value = make_response(
            status_code=400, json_data={"error": "invalid_grant", "error_description": "Bad password"}
        )

        result = AuthService(session=session).login(_creds("canvas"))

        assert result.success is False
        assert result.error == "Bad password"

    def test_moodle_token(self, session, make_response):
        session.post.return_value = make_response(json_data={"token": "mtok", "privatetoken": None})

        result = AuthService(session=session).login(_creds("moodle"))

        assert result.success is True
        assert result.token == "mtok"
        data = session.post.call_args.kwargs["data"]
        assert data["service"] == "moodle_mobile_app"
        assert session.post.call_args.args[0] == "https://lms.example.edu/login/token.php"

    def test_moodle_error_with_200_is_failure(self, session, make_response):
        session.post.return_value = make_response(
            json_data={"error": "Invalid login, please try again", "errorcode": "invalidlogin"}
        )

        result = AuthService(session=session).login(_creds("moodle"))

        assert result.success is False
        assert result.error == "Invalid login, please try again"

    def test_network_failure_is_structured(self, session):
        session.post.side_effect = requests.exceptions.ConnectionError("down")

        result = AuthService(session=session).login(_creds("moodle"))

        assert result.success is False
        assert result.error == "Login failed. Please check your credentials."

    def test_non_object_body_is_structured_failure(self, session, make_response):
        session.post.return_value = make_response(json_data=["not", "a", "token"])
        service = AuthService(session=session)

        moodle = service.login(_creds("moodle"))
        canvas = service.login(_creds("canvas"))

        assert (moodle.success, moodle.error) == (False, "Invalid response from Moodle")
        assert (canvas.success, canvas.error) == (False, "Invalid response from Canvas")

    def test_blackboard_and_unknown_types(self, session):
        service = AuthService(session=session)

        assert service.login(_creds("blackboard")).error == "Blackboard authentication not yet implemented"
        assert service.login(_creds("sakai")).error == "Unsupported LMS type: sakai"
        session.post.assert_not_called()


class TestRefreshToken:

    def test_canvas_refresh(self, session, make_response):
        session.post.return_value = make_response(json_data={"access_token": "new"})

        result = AuthService(session=session).refresh_token("https://lms.example.edu", "canvas", "r1")

        assert result.success is True
        assert result.token == "new"
        assert result.refresh_token == "r1"
        assert session.post.call_args.kwargs["data"] == {"grant_type": "refresh_token", "refresh_token": "r1"}

    def test_moodle_refresh_not_supported(self, session):
        result = AuthService(session=session).refresh_token("https://lms.example.edu", "moodle", "r1")

        assert result.success is False
        assert result.error == "Token refresh not supported for this LMS"
        session.post.assert_not_called()

    def test_non_object_body_is_structured_failure(self, session, make_response):
        session.post.return_value = make_response(json_data="oops")

        result = AuthService(session=session).refresh_token("https://lms.example.edu", "canvas", "r1")

        assert result.success is False
        assert result.error == "Invalid response from Canvas"


def test_token_updates_keeps_refresh_token_only_when_issued():
    assert token_updates(AuthResult(success=True, token="t", refresh_token="r")) == {
        "api_token": "t", "refresh_token": "r",
    }
    assert token_updates(AuthResult(success=True, token="t")) == {"api_token": "t"}
