import pytest

from conftest import login


@pytest.fixture
def session(client, expired_token_service, user):
    """A logged in client holding an expired access token."""
    refresh_token = login(client).json()["refreshToken"]
    return refresh_token, expired_token_service.generate_access_token(user)


def test_valid_token_passes_through(client):
    access_token = login(client).json()["accessToken"]

    response = client.get("/api/users/me", headers={"Authorization": f"Bearer {access_token}"})

    assert response.status_code == 200
    assert response.json()["userId"] == 1
    assert "New-Access-Token" not in response.headers


def test_expired_token_without_refresh_secret_requires_refresh(client, session):
    _, expired = session

    response = client.get("/api/users/me", headers={"Authorization": f"Bearer {expired}"})

    assert response.status_code == 401
    assert response.headers["Token-Refresh-Required"] == "true"
    assert response.headers["Token-Refresh-Error"] == "Refresh token is required"
    assert response.json() == {
        "error": "Token refresh required",
        "message": "Refresh token is required",
        "requiresRefresh": True,
    }


def test_expired_token_is_refreshed_transparently(client, session, token_service):
    refresh_token, expired = session

    response = client.get(
        "/api/users/me",
        headers={"Authorization": f"Bearer {expired}", "X-Refresh-Token": refresh_token},
    )

    assert response.status_code == 200
    assert response.json()["username"] == "amal"

    new_access = response.headers["New-Access-Token"]
    new_refresh = response.headers["New-Refresh-Token"]
    assert token_service.is_token_valid(new_access)
    assert new_refresh != refresh_token
    assert "Token-Expires-At" in response.headers


def test_refresh_secret_is_single_use(client, session):
    refresh_token, expired = session
    headers = {"Authorization": f"Bearer {expired}", "X-Refresh-Token": f"Bearer {refresh_token}"}

    assert client.get("/api/users/me", headers=headers).status_code == 200

    replay = client.get("/api/users/me", headers=headers)

    assert replay.status_code == 401
    assert replay.headers["Token-Refresh-Error"] == "Refresh token has been revoked"


def test_token_expired_header_triggers_refresh(client, session):
    refresh_token, _ = session

    response = client.get(
        "/api/health",
        headers={"Token-Expired": "true", "X-Refresh-Token": refresh_token},
    )

    assert response.status_code == 200
    assert "New-Access-Token" in response.headers


def test_unknown_refresh_secret_is_rejected(client, session):
    _, expired = session

    response = client.get(
        "/api/users/me",
        headers={"Authorization": f"Bearer {expired}", "X-Refresh-Token": "forged"},
    )

    assert response.status_code == 401
    assert response.json()["message"] == "Refresh token is invalid"


def test_login_and_refresh_paths_are_not_intercepted(client, session):
    refresh_token, _ = session

    response = client.post(
        "/api/auth/refresh",
        json={"refreshToken": refresh_token},
        headers={"Token-Expired": "true"},
    )

    assert response.status_code == 200
    assert "New-Access-Token" not in response.headers


@pytest.mark.parametrize("auth_settings", [{"use_http_only_cookies": True}], indirect=True)
def test_cookie_mode_reads_and_sets_cookie(client, session):
    _, expired = session

    response = client.get("/api/users/me", headers={"Authorization": f"Bearer {expired}"})

    assert response.status_code == 200
    assert response.cookies["refreshToken"] == response.headers["New-Refresh-Token"]


def test_logout_with_expired_token_revokes_body_refresh_token(client, session):
    refresh_token, expired = session

    response = client.post(
        "/api/auth/logout",
        json={"refreshToken": refresh_token},
        headers={"Authorization": f"Bearer {expired}"},
    )

    assert response.status_code == 200
    assert "New-Access-Token" not in response.headers
    assert client.post("/api/auth/refresh", json={"refreshToken": refresh_token}).status_code == 401


def test_validate_reports_expired_token_as_invalid(client, session):
    _, expired = session

    response = client.get("/api/auth/validate", headers={"Authorization": f"Bearer {expired}"})

    assert response.status_code == 200
    assert response.json() == {"valid": False}
