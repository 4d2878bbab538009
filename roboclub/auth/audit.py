"""
Authentication audit trail.

Every authentication attempt, successful or not, is written here with its
outcome, subject and request metadata. The sink is append-only structured
logging; a failure to record never interrupts the request.
"""
import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Union

from fastapi import Request

logger = logging.getLogger("roboclub.audit")


def request_metadata(request: Optional[Request]) -> Dict[str, Any]:
    """Collect the request fields recorded with each audit entry."""
    if request is None:
        return {}
    return {
        "ip": request.client.host if request.client else None,
        "user_agent": request.headers.get("user-agent"),
        "method": request.method,
        "path": request.url.path,
        "request_id": getattr(request.state, "request_id", None),
    }


class AuditSink:
    """Structured, append-only audit log for auth events."""

    def __init__(self, log: Optional[logging.Logger] = None):
        self.logger = log or logger

    def record(
        self,
        action: str,
        user_id: Optional[Union[int, str]],
        success: bool,
        request: Optional[Request] = None,
        **details: Any,
    ) -> Dict[str, Any]:
        """
        Record one auth event.

        Args:
            action: Event name, e.g. ``login_success`` or ``token_verification``
            user_id: Subject of the attempt, if known
            success: Outcome of the attempt
            request: Incoming request, used for ip/user agent/path
            **details: Extra fields such as ``reason`` or ``email``

        Returns:
            The entry as recorded
        """
        entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "action": action,
            "user_id": str(user_id) if user_id is not None else None,
            "success": success,
            "request": request_metadata(request),
            "details": details,
        }
        try:
            level = logging.INFO if success else logging.WARNING
            self.logger.log(level, f"AUDIT: {json.dumps(entry, default=str)}")
        except Exception:
            self.logger.exception(f"Failed to record audit entry for action={action}")
        return entry
