"""
Integration tests for double-submit CSRF protection.
"""

from typing import Dict, Tuple

from fastapi.testclient import TestClient

from conftest import RecordingLogger

FORBIDDEN = {
    "statusCode": 403,
    "message": "Forbidden",
    "error": "Invalid CSRF token",
}


def fetch_token(client: TestClient) -> Tuple[str, str]:
    """GET the form page and return (token, set-cookie header)."""
    response = client.get("/form")
    assert response.status_code == 200
    # Secure cookies are never replayed over plain http; send them explicitly
    client.cookies.clear()
    return response.json()["csrf_token"], response.headers["set-cookie"]


def cookie_header(token: str) -> Dict[str, str]:
    return {"cookie": f"_csrf={token}"}


class TestCsrfFlow:
    """Token issuance on safe requests and validation on unsafe ones."""

    def test_safe_request_issues_token_cookie(self, client: TestClient) -> None:
        token, set_cookie = fetch_token(client)

        assert set_cookie.startswith(f"_csrf={token};")
        assert "HttpOnly" in set_cookie
        assert "Secure" in set_cookie
        assert "SameSite=strict" in set_cookie

    def test_each_safe_request_gets_fresh_token(self, client: TestClient) -> None:
        first, _ = fetch_token(client)
        second, _ = fetch_token(client)
        assert first != second

    def test_header_token_accepted(self, client: TestClient) -> None:
        token, _ = fetch_token(client)

        response = client.post(
            "/form",
            data={"comment": "hello"},
            headers={"x-csrf-token": token, **cookie_header(token)},
        )

        assert response.status_code == 200
        assert response.json()["fields"] == {"comment": "hello"}

    def test_form_field_token_accepted(self, client: TestClient) -> None:
        token, _ = fetch_token(client)

        response = client.post("/form", data={"_csrf": token, "comment": "hello"}, headers=cookie_header(token))

        assert response.status_code == 200
        assert response.json()["fields"]["comment"] == "hello"

    def test_json_field_token_accepted(self, client: TestClient) -> None:
        token, _ = fetch_token(client)

        response = client.post("/comments", json={"_csrf": token, "text": "<b>hi</b>"}, headers=cookie_header(token))

        assert response.status_code == 200
        assert response.json()["received"]["text"] == "&lt;b&gt;hi&lt;/b&gt;"

    def test_tampered_token_rejected(self, client: TestClient) -> None:
        token, _ = fetch_token(client)
        tampered = token[:-1] + ("0" if token[-1] != "0" else "1")

        response = client.post(
            "/form",
            data={"comment": "hello"},
            headers={"x-csrf-token": tampered, **cookie_header(token)},
        )
        assert response.status_code == 403
        assert response.json() == FORBIDDEN

        # Both sides forged identically still fails the signature check
        response = client.post(
            "/form",
            data={"comment": "hello"},
            headers={"x-csrf-token": tampered, **cookie_header(tampered)},
        )
        assert response.status_code == 403

    def test_rejections_are_indistinguishable(self, client: TestClient, recording_logger: RecordingLogger) -> None:
        token, _ = fetch_token(client)
        other, _ = fetch_token(client)

        missing_cookie = client.post("/form", data={"a": "1"}, headers={"x-csrf-token": token})
        missing_header = client.post("/form", data={"a": "1"}, headers=cookie_header(token))
        mismatched = client.post("/form", data={"a": "1"}, headers={"x-csrf-token": other, **cookie_header(token)})

        for response in (missing_cookie, missing_header, mismatched):
            assert response.status_code == 403
            assert response.json() == FORBIDDEN
        assert missing_cookie.content == missing_header.content == mismatched.content

        reasons = [fields["reason"] for _, _, fields in recording_logger.find("CSRF token validation failed")]
        assert reasons == ["missing_cookie_token", "missing_submitted_token", "token_mismatch"]

    def test_excluded_paths_skip_validation(self, client: TestClient) -> None:
        response = client.post("/api/echo", json={"ok": True})
        assert response.status_code == 200
        assert "set-cookie" not in client.get("/api/items").headers
