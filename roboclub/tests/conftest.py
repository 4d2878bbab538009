"""
Shared fixtures: an isolated app per test on in-memory SQLite.
"""
from typing import Optional, List

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy.pool import StaticPool

from roboclub.base_microservice import Database
from roboclub.config import Settings
from roboclub.main import create_app
from roboclub.notifications import EmailNotifier
from roboclub.auth.models import User, STUDENT, ADMIN
from roboclub.auth.session_store import InMemorySessionStore
from roboclub.auth.users import UserCreate

PASSWORD = "Str0ng!Pass"


@pytest.fixture(scope="session")
def anyio_backend():
    return "asyncio"


@pytest.fixture
def settings():
    return Settings(
        database_url="sqlite+aiosqlite:///:memory:",
        jwt_secret_key="test-secret-key",
        bcrypt_rounds=4,
        auth_rate_limit_attempts=1000,
        app_base_url="http://frontend.test",
    )


def make_database() -> Database:
    return Database(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )


async def _build_app(settings, session_store):
    database = make_database()
    application = create_app(
        settings,
        database=database,
        session_store=session_store,
        notifier=EmailNotifier(settings.app_base_url, settings.email_from),
    )
    await database.create_all()
    return application


@pytest_asyncio.fixture
async def app(settings):
    application = await _build_app(settings, InMemorySessionStore())
    yield application
    await application.state.services.database.dispose()


@pytest_asyncio.fixture
async def stateless_app(settings):
    application = await _build_app(settings, None)
    yield application
    await application.state.services.database.dispose()


@pytest_asyncio.fixture
async def client(app):
    transport = ASGITransport(app=app)
    async with AsyncClient(base_url="http://test", transport=transport) as ac:
        yield ac


@pytest_asyncio.fixture
async def stateless_client(stateless_app):
    transport = ASGITransport(app=stateless_app)
    async with AsyncClient(base_url="http://test", transport=transport) as ac:
        yield ac


@pytest.fixture
def services(app):
    return app.state.services


@pytest_asyncio.fixture
async def db(services):
    async with services.database.session_factory() as session:
        yield session


@pytest.fixture
def make_user(app):
    """Create a user directly through the credential store."""
    services = app.state.services

    async def _make_user(
        email: str,
        role: str = STUDENT,
        password: str = PASSWORD,
        permissions: Optional[List[str]] = None,
        **fields,
    ) -> User:
        data = UserCreate(
            email=email,
            password=password,
            first_name=fields.pop("first_name", "Test"),
            last_name=fields.pop("last_name", "User"),
            **fields,
        )
        async with services.database.session_factory() as session:
            user = await services.users.create(data, role, session)
            if permissions is not None:
                user.permissions = permissions
                await session.commit()
            return user

    return _make_user


@pytest.fixture
def login(client):
    """Log in over HTTP and return the response data."""
    async def _login(email: str, password: str = PASSWORD, **extra):
        response = await client.post("/auth/login", json={"email": email, "password": password, **extra})
        assert response.status_code == 200, response.text
        return response.json()["data"]

    return _login


@pytest_asyncio.fixture
async def admin_headers(make_user, login):
    await make_user("admin@example.com", role=ADMIN)
    data = await login("admin@example.com")
    return bearer(data["tokens"]["access_token"])


def bearer(token: str):
    return {"Authorization": f"Bearer {token}"}
