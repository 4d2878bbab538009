"""
Test cases for the auth guard chain.
"""
import logging

import pytest
from fastapi import Depends, Request

from roboclub.auth.middleware import (
    Identity, authenticate, require_admin, require_mentor, require_ownership,
    require_permission,
)
from roboclub.auth.models import PERMISSIONS, ADMIN

from conftest import bearer


# Resource store standing in for a business route (e.g. projects)
PROJECTS = {}


async def lookup_project(project_id, db):
    return PROJECTS.get(project_id)


@pytest.fixture
def guarded_app(app):
    PROJECTS.clear()

    @app.get("/guarded/admin")
    async def admin_only(identity: Identity = Depends(require_admin)):
        return {"role": identity.role}

    @app.get("/guarded/mentor")
    async def mentor_only(identity: Identity = Depends(require_mentor)):
        return {"role": identity.role}

    @app.get("/guarded/project-editor")
    async def project_editor(
        identity: Identity = Depends(require_permission("write:projects", "delete:projects")),
    ):
        return {"id": identity.id}

    @app.get("/guarded/projects/{project_id}")
    async def get_project(
        request: Request,
        project=Depends(require_ownership(lookup_project, id_field="project_id")),
    ):
        assert request.state.resource is project
        return {"name": project["name"]}

    @app.get("/guarded/me")
    async def whoami(request: Request, identity: Identity = Depends(authenticate)):
        assert request.state.identity == identity
        return identity.model_dump()

    return app


async def token_for(make_user, login, email, role="student", permissions=None):
    user = await make_user(email, role=role, permissions=permissions)
    data = await login(email)
    return user, data["tokens"]["access_token"]


@pytest.mark.asyncio
async def test_missing_token_is_unauthenticated(client, guarded_app):
    response = await client.get("/guarded/me")
    assert response.status_code == 401
    assert response.json()["status"] == "error"
    assert response.json()["message"] == "Access token required"
    assert response.json()["data"]["kind"] == "unauthenticated"
    assert response.headers["www-authenticate"] == "Bearer"


@pytest.mark.asyncio
async def test_malformed_and_wrong_type_tokens(client, guarded_app, make_user, login):
    response = await client.get("/guarded/me", headers=bearer("garbage"))
    assert response.status_code == 401
    assert response.json()["data"]["kind"] == "invalid_token"

    await make_user("types@example.com")
    data = await login("types@example.com")
    response = await client.get("/guarded/me", headers=bearer(data["tokens"]["refresh_token"]))
    assert response.status_code == 401
    assert response.json()["data"]["kind"] == "wrong_token_type"


@pytest.mark.asyncio
async def test_authenticate_attaches_identity(client, guarded_app, make_user, login):
    user, token = await token_for(make_user, login, "ident@example.com", role="team_member")
    response = await client.get("/guarded/me", headers=bearer(token))
    assert response.status_code == 200
    body = response.json()
    assert body["id"] == user.id
    assert body["email"] == "ident@example.com"
    assert body["role"] == "team_member"
    assert "write:projects" in body["permissions"]


@pytest.mark.asyncio
async def test_require_admin_ignores_permission_contents(client, guarded_app, make_user, login):
    _, loaded_student = await token_for(
        make_user, login, "loaded@example.com", permissions=list(PERMISSIONS)
    )
    _, bare_admin = await token_for(make_user, login, "bare@example.com", role=ADMIN, permissions=[])

    response = await client.get("/guarded/admin", headers=bearer(loaded_student))
    assert response.status_code == 403
    assert response.json()["data"]["kind"] == "forbidden"

    response = await client.get("/guarded/admin", headers=bearer(bare_admin))
    assert response.status_code == 200


@pytest.mark.asyncio
@pytest.mark.parametrize("role,allowed", [
    ("student", False),
    ("team_member", False),
    ("community", False),
    ("mentor", True),
    ("researcher", True),
    ("admin", True),
])
async def test_mentor_ladder(client, guarded_app, make_user, login, role, allowed):
    _, token = await token_for(make_user, login, f"{role}@example.com", role=role)
    response = await client.get("/guarded/mentor", headers=bearer(token))
    assert (response.status_code == 200) is allowed


@pytest.mark.asyncio
async def test_require_permission_needs_all(client, guarded_app, make_user, login):
    _, team_member = await token_for(make_user, login, "tm@example.com", role="team_member")
    _, mentor = await token_for(make_user, login, "m@example.com", role="mentor")

    response = await client.get("/guarded/project-editor", headers=bearer(team_member))
    assert response.status_code == 403
    assert response.json()["message"] == (
        "Access denied. Required permissions: write:projects, delete:projects"
    )

    response = await client.get("/guarded/project-editor", headers=bearer(mentor))
    assert response.status_code == 200


@pytest.mark.asyncio
async def test_ownership_owner_member_and_stranger(client, guarded_app, make_user, login):
    owner, owner_token = await token_for(make_user, login, "owner@example.com")
    member, member_token = await token_for(make_user, login, "member@example.com")
    id_member, id_member_token = await token_for(make_user, login, "idmember@example.com")
    _, stranger_token = await token_for(make_user, login, "stranger@example.com")
    _, admin_token = await token_for(make_user, login, "boss@example.com", role=ADMIN)

    PROJECTS["1"] = {
        "name": "Line follower",
        "user_id": None,
        "created_by": owner.id,
        "team_members": [{"user_id": member.id, "role": "builder"}, id_member.id],
    }

    for token in (owner_token, member_token, id_member_token, admin_token):
        response = await client.get("/guarded/projects/1", headers=bearer(token))
        assert response.status_code == 200, response.text
        assert response.json() == {"name": "Line follower"}

    response = await client.get("/guarded/projects/1", headers=bearer(stranger_token))
    assert response.status_code == 403
    assert response.json()["message"] == "Access denied. You do not own this resource"


@pytest.mark.asyncio
async def test_ownership_sees_deletion_as_not_found(client, guarded_app, make_user, login):
    owner, token = await token_for(make_user, login, "gone@example.com")
    PROJECTS["2"] = {"name": "Arm", "user_id": owner.id}
    assert (await client.get("/guarded/projects/2", headers=bearer(token))).status_code == 200

    del PROJECTS["2"]
    response = await client.get("/guarded/projects/2", headers=bearer(token))
    assert response.status_code == 404
    assert response.json()["data"]["kind"] == "not_found"


@pytest.mark.asyncio
async def test_optional_authentication(client, make_user, login):
    response = await client.get("/auth/session")
    assert response.json()["data"]["authenticated"] is False

    response = await client.get("/auth/session", headers=bearer("garbage"))
    assert response.status_code == 200
    assert response.json()["data"]["authenticated"] is False

    await make_user("known@example.com")
    data = await login("known@example.com")
    response = await client.get("/auth/session", headers=bearer(data["tokens"]["access_token"]))
    assert response.json()["data"]["authenticated"] is True
    assert response.json()["data"]["user"]["email"] == "known@example.com"


@pytest.mark.asyncio
async def test_authentication_attempts_are_audited(client, guarded_app, make_user, login, caplog):
    _, token = await token_for(make_user, login, "audited@example.com")

    with caplog.at_level(logging.INFO, logger="roboclub.audit"):
        await client.get("/guarded/me", headers=bearer(token))
        await client.get("/guarded/me", headers=bearer("garbage"))

    entries = [r for r in caplog.records if r.name == "roboclub.audit" and "token_verification" in r.getMessage()]
    assert len(entries) == 2
    assert entries[0].levelno == logging.INFO
    assert '"success": true' in entries[0].getMessage()
    assert entries[1].levelno == logging.WARNING
    assert '"invalid_token"' in entries[1].getMessage()
    assert '"path": "/guarded/me"' in entries[1].getMessage()
