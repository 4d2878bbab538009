"""
Service handles for one application instance.

``create_app`` builds a ``Services`` container and stores it on
``app.state.services``; request handlers reach it through ``get_services``.
"""
from dataclasses import dataclass
from typing import Optional

from fastapi import Request

from roboclub.base_microservice import Database
from roboclub.config import Settings
from roboclub.notifications import EmailNotifier
from roboclub.auth.audit import AuditSink
from roboclub.auth.jwt import TokenService
from roboclub.auth.rate_limit import TokenBucket
from roboclub.auth.role_approvals import RoleApprovalRegistry
from roboclub.auth.session_store import SessionStore
from roboclub.auth.users import UserService


@dataclass
class Services:
    settings: Settings
    database: Database
    tokens: TokenService
    users: UserService
    role_approvals: RoleApprovalRegistry
    audit: AuditSink
    notifier: EmailNotifier
    session_store: Optional[SessionStore] = None
    rate_limiter: Optional[TokenBucket] = None

    @classmethod
    def build(
        cls,
        settings: Settings,
        database: Database,
        session_store: Optional[SessionStore] = None,
        notifier: Optional[EmailNotifier] = None,
    ) -> "Services":
        return cls(
            settings=settings,
            database=database,
            tokens=TokenService(settings, session_store),
            users=UserService(settings),
            role_approvals=RoleApprovalRegistry(),
            audit=AuditSink(),
            notifier=notifier or EmailNotifier(settings.app_base_url, settings.email_from),
            session_store=session_store,
            rate_limiter=TokenBucket.from_settings(settings),
        )

    def attach_session_store(self, store: Optional[SessionStore]) -> None:
        """Swap the session store used by the token service."""
        self.session_store = store
        self.tokens.session_store = store


def get_services(request: Request) -> Services:
    """Dependency returning the services of the running app."""
    return request.app.state.services
