"""
Test cases for the authentication routes.
"""
import bcrypt
import pytest

from roboclub.auth.router import FORGOT_PASSWORD_MESSAGE

from conftest import PASSWORD, bearer

NEW_PASSWORD = "N3w!Passw0rd"


def registration(email, **extra):
    return {
        "email": email,
        "password": PASSWORD,
        "first_name": "Robo",
        "last_name": "Builder",
        **extra,
    }


@pytest.mark.asyncio
async def test_auth_ping(client):
    """Test that the auth service is responding."""
    response = await client.get("/auth/ping")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"
    assert response.json()["message"] == "Auth service is alive"
    assert "timestamp" in response.json()["data"]
    assert response.json()["data"]["session_store"] == "enabled"
    assert response.headers["x-request-id"]


@pytest.mark.asyncio
async def test_register_user(client, app):
    """Test user registration process."""
    response = await client.post("/auth/register", json=registration("New.User@Example.com"))

    assert response.status_code == 201
    body = response.json()
    assert body["status"] == "ok"
    assert body["message"] == "User registered successfully"
    assert "role_notice" not in body["data"]

    user = body["data"]["user"]
    assert user["email"] == "new.user@example.com"
    assert user["role"] == "student"
    assert user["is_active"] is True
    assert "password_hash" not in user

    tokens = body["data"]["tokens"]
    assert tokens["token_type"] == "bearer"
    assert tokens["access_token"] and tokens["refresh_token"]

    outbox = app.state.services.notifier.outbox
    assert outbox[-1].to == "new.user@example.com"
    assert "/verify-email/" in outbox[-1].text


@pytest.mark.asyncio
async def test_register_unapproved_role_is_downgraded(client):
    response = await client.post("/auth/register", json=registration("ivy@example.com", role="mentor"))

    assert response.status_code == 201
    body = response.json()
    assert body["data"]["user"]["role"] == "student"
    assert body["data"]["role_notice"]["requested_role"] == "mentor"
    assert body["data"]["role_notice"]["assigned_role"] == "student"
    assert body["message"] == (
        "User registered successfully. Requested role 'mentor' is not pre-approved; assigned 'student'."
    )


@pytest.mark.asyncio
async def test_register_approved_role_is_honored(client, services, db):
    await services.role_approvals.upsert("jack@example.com", ["researcher"], db)

    response = await client.post("/auth/register", json=registration("Jack@example.com", role="researcher"))

    assert response.status_code == 201
    data = response.json()["data"]
    assert data["user"]["role"] == "researcher"
    assert "delete:media" in data["user"]["permissions"]
    assert "role_notice" not in data


@pytest.mark.asyncio
async def test_register_rejects_admin_and_bad_input(client):
    response = await client.post("/auth/register", json=registration("kim@example.com", role="admin"))
    assert response.status_code == 400
    assert response.json()["data"]["kind"] == "validation_error"

    response = await client.post("/auth/register", json=registration("kim@example.com", password="password"))
    assert response.status_code == 400
    assert "password" in response.json()["message"]

    response = await client.post("/auth/register", json={"email": "not-an-email", "password": PASSWORD})
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_register_twice_conflicts(client):
    assert (await client.post("/auth/register", json=registration("lee@example.com"))).status_code == 201

    response = await client.post("/auth/register", json=registration("LEE@example.com"))
    assert response.status_code == 409
    assert response.json()["data"]["kind"] == "conflict"
    assert response.json()["message"] == "User with this email already exists"


@pytest.mark.asyncio
async def test_login_and_me_endpoint(client, make_user, login):
    """Test user login and profile retrieval."""
    user = await make_user("me@example.com", department="Electronics")

    data = await login("ME@example.com")
    assert data["user"]["id"] == user.id
    assert data["user"]["last_login"] is not None

    response = await client.get("/auth/me", headers=bearer(data["tokens"]["access_token"]))
    assert response.status_code == 200
    assert response.json()["data"]["email"] == "me@example.com"
    assert response.json()["data"]["department"] == "Electronics"


@pytest.mark.asyncio
async def test_invalid_login_does_not_disclose_account(client, make_user):
    await make_user("real@example.com")

    wrong_password = await client.post("/auth/login", json={"email": "real@example.com", "password": "Wr0ng!Pass"})
    unknown = await client.post("/auth/login", json={"email": "ghost@example.com", "password": PASSWORD})

    assert wrong_password.status_code == unknown.status_code == 401
    assert wrong_password.json()["message"] == unknown.json()["message"] == "Invalid email or password"
    assert "tokens" not in (wrong_password.json()["data"] or {})


@pytest.mark.asyncio
async def test_unknown_email_login_still_checks_a_hash(client, make_user, monkeypatch):
    await make_user("timed@example.com")
    calls = []
    checkpw = bcrypt.checkpw

    def counting_checkpw(password, hashed):
        calls.append(hashed)
        return checkpw(password, hashed)

    monkeypatch.setattr(bcrypt, "checkpw", counting_checkpw)

    response = await client.post("/auth/login", json={"email": "timed@example.com", "password": "Wr0ng!Pass"})
    assert response.status_code == 401
    assert len(calls) == 1

    response = await client.post("/auth/login", json={"email": "nobody@example.com", "password": "Wr0ng!Pass"})
    assert response.status_code == 401
    assert len(calls) == 2


@pytest.mark.asyncio
async def test_login_inactive_account_is_forbidden(client, make_user, services, db):
    user = await make_user("sleepy@example.com")
    await services.users.deactivate(await services.users.get_by_id(user.id, db), db)

    response = await client.post("/auth/login", json={"email": "sleepy@example.com", "password": PASSWORD})
    assert response.status_code == 403
    assert response.json()["data"]["kind"] == "forbidden"


@pytest.mark.asyncio
async def test_login_desired_role_notice(client, make_user, login, services, db):
    await make_user("nina@example.com")

    data = await login("nina@example.com", desired_role="mentor")
    assert data["user"]["role"] == "student"
    assert data["role_notice"] == (
        "Requested role 'mentor' is not pre-approved. Continuing as 'student'. "
        "Please log in as student or contact admin."
    )

    await services.role_approvals.upsert("nina@example.com", ["mentor"], db)
    data = await login("nina@example.com", desired_role="mentor")
    assert data["user"]["role"] == "student"
    assert data["role_notice"].startswith("Requested role 'mentor' is approved but not yet assigned")

    data = await login("nina@example.com", desired_role="student")
    assert "role_notice" not in data


@pytest.mark.asyncio
async def test_refresh_rotation(client, make_user, login):
    await make_user("otto@example.com")
    tokens = (await login("otto@example.com"))["tokens"]

    response = await client.post("/auth/refresh", json={"refresh_token": tokens["refresh_token"]})
    assert response.status_code == 200
    new_tokens = response.json()["data"]["tokens"]
    assert new_tokens["refresh_token"] != tokens["refresh_token"]

    response = await client.post("/auth/refresh", json={"refresh_token": tokens["refresh_token"]})
    assert response.status_code == 401
    assert response.json()["data"]["kind"] == "token_revoked"


@pytest.mark.asyncio
async def test_logout_revokes_refresh_and_access(client, make_user, login):
    await make_user("pia@example.com")
    tokens = (await login("pia@example.com"))["tokens"]

    response = await client.post(
        "/auth/logout",
        json={"refresh_token": tokens["refresh_token"]},
        headers=bearer(tokens["access_token"]),
    )
    assert response.status_code == 200
    assert response.json()["data"]["revoked"] is True

    response = await client.post("/auth/refresh", json={"refresh_token": tokens["refresh_token"]})
    assert response.status_code == 401

    response = await client.get("/auth/me", headers=bearer(tokens["access_token"]))
    assert response.status_code == 401
    assert response.json()["message"] == "Token has been revoked"


@pytest.mark.asyncio
async def test_logout_always_succeeds(client):
    assert (await client.post("/auth/logout")).status_code == 200
    response = await client.post("/auth/logout", json={"refresh_token": "garbage"}, headers=bearer("garbage"))
    assert response.status_code == 200
    assert response.json()["message"] == "Logout successful"


@pytest.mark.asyncio
async def test_stateless_logout_leaves_tokens_valid(stateless_client):
    response = await stateless_client.post("/auth/register", json=registration("quinn@example.com"))
    tokens = response.json()["data"]["tokens"]

    response = await stateless_client.post(
        "/auth/logout",
        json={"refresh_token": tokens["refresh_token"]},
        headers=bearer(tokens["access_token"]),
    )
    assert response.status_code == 200
    assert response.json()["data"]["revoked"] is False

    response = await stateless_client.post("/auth/refresh", json={"refresh_token": tokens["refresh_token"]})
    assert response.status_code == 200
    response = await stateless_client.get("/auth/me", headers=bearer(tokens["access_token"]))
    assert response.status_code == 200


@pytest.mark.asyncio
async def test_change_password(client, make_user, login):
    await make_user("rae@example.com")
    tokens = (await login("rae@example.com"))["tokens"]
    headers = bearer(tokens["access_token"])

    response = await client.post(
        "/auth/change-password",
        json={"current_password": "Wr0ng!Pass", "new_password": NEW_PASSWORD},
        headers=headers,
    )
    assert response.status_code == 401
    assert response.json()["message"] == "Current password is incorrect"

    response = await client.post(
        "/auth/change-password",
        json={"current_password": PASSWORD, "new_password": PASSWORD},
        headers=headers,
    )
    assert response.status_code == 400

    response = await client.post(
        "/auth/change-password",
        json={"current_password": PASSWORD, "new_password": NEW_PASSWORD},
        headers=headers,
    )
    assert response.status_code == 200
    assert response.json()["message"] == "Password changed successfully. Please log in again."

    assert (await client.post("/auth/refresh", json={"refresh_token": tokens["refresh_token"]})).status_code == 401
    assert (await client.get("/auth/me", headers=headers)).status_code == 401
    assert (await client.post("/auth/login", json={"email": "rae@example.com", "password": PASSWORD})).status_code == 401
    await login("rae@example.com", NEW_PASSWORD)


@pytest.mark.asyncio
async def test_forgot_password_same_reply_for_unknown_email(client, make_user, app):
    await make_user("sam@example.com")
    outbox = app.state.services.notifier.outbox
    outbox.clear()

    known = await client.post("/auth/forgot-password", json={"email": "sam@example.com"})
    unknown = await client.post("/auth/forgot-password", json={"email": "nobody@example.com"})

    assert known.status_code == unknown.status_code == 200
    assert known.json() == unknown.json()
    assert known.json()["message"] == FORGOT_PASSWORD_MESSAGE
    assert [m.to for m in outbox] == ["sam@example.com"]


@pytest.mark.asyncio
async def test_reset_password_flow(client, make_user, login, app):
    await make_user("tia@example.com")
    old_tokens = (await login("tia@example.com"))["tokens"]
    await client.post("/auth/forgot-password", json={"email": "tia@example.com"})
    reset_token = app.state.services.notifier.outbox[-1].text.split("?token=")[1]

    response = await client.post("/auth/reset-password", json={"token": reset_token, "new_password": NEW_PASSWORD})
    assert response.status_code == 200

    response = await client.post("/auth/reset-password", json={"token": reset_token, "new_password": "0ther!Passw0rd"})
    assert response.status_code == 400
    assert response.json()["message"] == "Invalid or expired reset token"

    assert (await client.post("/auth/refresh", json={"refresh_token": old_tokens["refresh_token"]})).status_code == 401
    await login("tia@example.com", NEW_PASSWORD)


@pytest.mark.asyncio
async def test_reset_link_can_be_checked_before_use(client, make_user, app):
    await make_user("ivy@example.com")
    await client.post("/auth/forgot-password", json={"email": "ivy@example.com"})
    reset_token = app.state.services.notifier.outbox[-1].text.split("?token=")[1]

    response = await client.get(f"/auth/reset-password/{reset_token}")
    assert response.status_code == 200
    assert response.json()["data"] == {"valid": True}

    # checking does not spend the token
    response = await client.post("/auth/reset-password", json={"token": reset_token, "new_password": NEW_PASSWORD})
    assert response.status_code == 200

    response = await client.get(f"/auth/reset-password/{reset_token}")
    assert response.status_code == 400
    assert response.json()["message"] == "Invalid or expired reset token"

    response = await client.get("/auth/reset-password/not-a-token")
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_reset_password_rejects_access_token(client, make_user, login):
    await make_user("uma@example.com")
    tokens = (await login("uma@example.com"))["tokens"]

    response = await client.post(
        "/auth/reset-password", json={"token": tokens["access_token"], "new_password": NEW_PASSWORD}
    )
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_verify_email(client, app):
    await client.post("/auth/register", json=registration("vic@example.com"))
    token = app.state.services.notifier.outbox[-1].text.split("/verify-email/")[1]

    response = await client.get(f"/auth/verify-email/{token}")
    assert response.status_code == 200
    assert response.json()["message"] == "Email verified successfully"

    response = await client.get(f"/auth/verify-email/{token}")
    assert response.json()["message"] == "Email already verified"

    response = await client.get("/auth/verify-email/garbage")
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_update_me_is_profile_only(client, make_user, login):
    await make_user("wes@example.com")
    tokens = (await login("wes@example.com"))["tokens"]

    response = await client.put(
        "/auth/me",
        json={"first_name": "Wesley", "year_of_study": 3, "role": "admin", "permissions": ["system:admin"]},
        headers=bearer(tokens["access_token"]),
    )
    assert response.status_code == 200
    user = response.json()["data"]
    assert user["first_name"] == "Wesley"
    assert user["year_of_study"] == 3
    assert user["role"] == "student"
    assert "system:admin" not in user["permissions"]
