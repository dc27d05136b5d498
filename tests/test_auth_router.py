import pytest

from conftest import PASSWORD, login


def auth_header(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


def test_login_returns_token_pair(client, token_service):
    response = login(client)

    assert response.status_code == 200
    body = response.json()
    assert body["tokenType"] == "Bearer"
    assert body["expiresIn"] == 900
    assert body["user"] == {
        "userId": 1,
        "username": "amal",
        "email": "amal@ikhtibar.com",
        "firstName": "Amal",
        "lastName": "Haddad",
        "isActive": True,
        "roles": ["student"],
    }
    assert token_service.is_token_valid(body["accessToken"])
    assert body["refreshToken"]


def test_login_email_is_case_insensitive(client):
    assert login(client, email="AMAL@ikhtibar.com").status_code == 200


@pytest.mark.parametrize(
    "email, password",
    [("amal@ikhtibar.com", "wrong"), ("nobody@ikhtibar.com", PASSWORD)],
)
def test_login_with_bad_credentials_is_unauthorized(client, email, password):
    response = login(client, email=email, password=password)

    assert response.status_code == 401
    assert response.json()["detail"] == "Invalid email or password"


def test_inactive_user_cannot_login(client, user_repository, user):
    user_repository.add(user.model_copy(update={"is_active": False}))

    assert login(client).status_code == 401


def test_login_is_rate_limited(client):
    for _ in range(5):
        login(client, password="wrong")

    response = login(client)

    assert response.status_code == 429
    assert response.json()["retryAfter"] == 1800


def test_refresh_with_body(client, token_service):
    tokens = login(client).json()

    response = client.post("/api/auth/refresh", json={"refreshToken": tokens["refreshToken"]})

    assert response.status_code == 200
    assert response.json()["refreshToken"] != tokens["refreshToken"]
    assert token_service.is_token_valid(response.json()["accessToken"])

    replay = client.post("/api/auth/refresh", json={"refreshToken": tokens["refreshToken"]})
    assert replay.status_code == 401
    assert replay.json()["detail"] == "Refresh token has been revoked"


def test_refresh_with_header(client):
    tokens = login(client).json()

    response = client.post("/api/auth/refresh", headers={"X-Refresh-Token": tokens["refreshToken"]})

    assert response.status_code == 200


def test_refresh_without_token(client):
    response = client.post("/api/auth/refresh")

    assert response.status_code == 401
    assert response.json()["detail"] == "Refresh token is required"


@pytest.mark.parametrize("auth_settings", [{"use_http_only_cookies": True}], indirect=True)
def test_cookie_mode_sets_and_uses_cookie(client):
    response = login(client)

    assert response.cookies["refreshToken"] == response.json()["refreshToken"]
    assert "httponly" in response.headers["set-cookie"].lower()

    refreshed = client.post("/api/auth/refresh")

    assert refreshed.status_code == 200
    assert refreshed.cookies["refreshToken"] == refreshed.json()["refreshToken"]


def test_logout_with_access_token_revokes_every_session(client):
    first = login(client).json()
    second = login(client).json()

    response = client.post("/api/auth/logout", headers=auth_header(first["accessToken"]))

    assert response.status_code == 200
    for tokens in (first, second):
        refresh = client.post("/api/auth/refresh", json={"refreshToken": tokens["refreshToken"]})
        assert refresh.status_code == 401


def test_logout_with_refresh_token_only_revokes_it(client):
    first = login(client).json()
    second = login(client).json()

    response = client.post("/api/auth/logout", json={"refreshToken": first["refreshToken"]})

    assert response.status_code == 200
    assert client.post("/api/auth/refresh", json={"refreshToken": first["refreshToken"]}).status_code == 401
    assert client.post("/api/auth/refresh", json={"refreshToken": second["refreshToken"]}).status_code == 200


def test_logout_without_any_token_is_bad_request(client):
    assert client.post("/api/auth/logout").status_code == 400


def test_validate(client):
    access_token = login(client).json()["accessToken"]

    assert client.get("/api/auth/validate", headers=auth_header(access_token)).json() == {"valid": True}
    assert client.get("/api/auth/validate", headers=auth_header("junk")).json() == {"valid": False}
    assert client.get("/api/auth/validate").json() == {"valid": False}


def test_me_requires_token(client):
    response = client.get("/api/users/me")

    assert response.status_code == 401


def test_admin_listing_requires_role(client, token_service, user, admin):
    forbidden = client.get("/api/users", headers=auth_header(token_service.generate_access_token(user)))
    allowed = client.get("/api/users", headers=auth_header(token_service.generate_access_token(admin)))

    assert forbidden.status_code == 403
    assert allowed.status_code == 200
    assert [item["userId"] for item in allowed.json()] == [1, 2]
    assert all("password" not in item for item in allowed.json())


def test_health(client):
    assert client.get("/api/health").json() == {"status": "healthy"}
