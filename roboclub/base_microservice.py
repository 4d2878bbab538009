import os
import logging
import json
from datetime import datetime, timezone
from typing import Any, Dict, Optional, AsyncIterator

from fastapi import Request
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker, AsyncEngine
from sqlalchemy.orm import declarative_base

# Setup logging
logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
logger = logging.getLogger("roboclub")

Base = declarative_base()


class Database:
    """
    Owns the async engine and session factory for one application instance.

    Created by the app factory and torn down in the lifespan handler, so
    nothing in the process holds a module-level connection.
    """
    def __init__(self, url: str, echo: bool = False, **engine_kwargs):
        self.url = url
        self.engine: AsyncEngine = create_async_engine(url, echo=echo, **engine_kwargs)
        self.session_factory = async_sessionmaker(
            self.engine, expire_on_commit=False, class_=AsyncSession
        )

    async def create_all(self) -> None:
        """Create any missing tables for the registered models."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def dispose(self) -> None:
        await self.engine.dispose()


async def get_db_session(request: Request) -> AsyncIterator[AsyncSession]:
    """Dependency for getting a database session."""
    database: Database = request.app.state.services.database
    async with database.session_factory() as session:
        yield session


class MCPResponse(JSONResponse):
    """
    Standard MCP protocol response for all API endpoints.
    """
    def __init__(self, data: Any = None, message: str = "success", status: str = "ok", **kwargs):
        content = {
            "status": status,
            "message": message,
            "data": data,
        }
        super().__init__(content=content, **kwargs)


class BaseMicroservice:
    """
    Base class for the API services. Provides:
    - Error/event logging
    - MCP protocol response
    - Feature flag lookup
    """
    def __init__(self, name: str = "core", feature_flags: Optional[Dict[str, bool]] = None):
        self.name = name
        self.logger = logging.getLogger(f"roboclub.{name}")
        self.feature_flags = feature_flags or {}

    def mcp_response(self, data: Any = None, message: str = "success", status: str = "ok", status_code: int = 200):
        """
        Return a standard MCP protocol response.
        """
        return MCPResponse(data=data, message=message, status=status, status_code=status_code)

    def log_event(self, event: str, details: Dict[str, Any] = None):
        payload = json.dumps(details or {}, default=str)
        self.logger.info(f"EVENT: {event} | Details: {payload}")

    def log_error(self, error: Exception, context: str = ""):
        self.logger.error(
            f"ERROR: {error.__class__.__name__}: {error} | Context: {context}"
        )

    def feature_enabled(self, feature: str) -> bool:
        return self.feature_flags.get(feature, False)


def utcnow() -> datetime:
    """Naive UTC timestamp, matching the DateTime columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)
