"""
Email notifications triggered by the auth core.

Delivery is an external concern: the notifier builds the message and hands it
to an injected async transport. Without a transport the message is logged
and kept in ``outbox``, which holds only the most recent messages.
Notifications are scheduled as background tasks and a failed send is logged,
never raised to the caller.
"""
import logging
from collections import deque
from dataclasses import dataclass
from typing import Awaitable, Callable, Deque, Optional
from urllib.parse import quote

logger = logging.getLogger("roboclub.notifications")


@dataclass
class EmailMessage:
    to: str
    subject: str
    text: str


EmailTransport = Callable[[EmailMessage], Awaitable[None]]


class EmailNotifier:
    """Builds auth-related emails and sends them through a transport."""

    def __init__(
        self,
        base_url: str,
        sender: str,
        transport: Optional[EmailTransport] = None,
        outbox_size: int = 100,
    ):
        self.base_url = base_url.rstrip("/")
        self.sender = sender
        self.transport = transport
        self.outbox: Deque[EmailMessage] = deque(maxlen=outbox_size)

    async def send(self, message: EmailMessage) -> bool:
        if self.transport is None:
            self.outbox.append(message)
            logger.info(f"Email (not delivered, no transport) to={message.to} subject={message.subject!r}")
            return True
        try:
            await self.transport(message)
            return True
        except Exception as e:
            logger.error(f"Email delivery failed to={message.to} subject={message.subject!r}: {e}")
            return False

    async def send_password_reset(self, email: str, token: str) -> bool:
        link = f"{self.base_url}/reset-password?token={quote(token)}"
        return await self.send(EmailMessage(
            to=email,
            subject="Reset your RoboClub password",
            text=f"We received a request to reset your password. "
                 f"Reset it here (link expires in 1 hour): {link}",
        ))

    async def send_email_verification(self, email: str, token: str) -> bool:
        link = f"{self.base_url}/verify-email/{quote(token)}"
        return await self.send(EmailMessage(
            to=email,
            subject="Verify your RoboClub email address",
            text=f"Confirm your email address: {link}",
        ))

    async def send_role_assigned(self, email: str, full_name: str, role: str) -> bool:
        return await self.send(EmailMessage(
            to=email,
            subject="Your RoboClub role has been updated",
            text=f"Hello {full_name or ''}, your role has been updated to {role}.",
        ))
