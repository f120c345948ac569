"""
Notification dispatcher fed by the event log.

Resolves the customer's email address, renders a message per event type
and sends it. Delivery from the event log is at-least-once, so every send
is guarded by a ``notification-sent:<topic>:<entryId>`` marker: a redelivered
entry whose marker exists is acknowledged without sending again.
"""
from typing import Optional, Protocol, Tuple

import httpx
import structlog

from core.auth import INTERNAL_TOKEN_HEADER, REQUEST_ID_HEADER, sign_internal_token
from core.errors import DependencyError
from core.event_log import LogEntry
from core.events import DomainEvent, OrderCreated, PaymentCaptured, PaymentFailed
from core.idempotency import IdempotencyGuard

logger = structlog.get_logger(__name__)


class RecipientDirectory(Protocol):
    async def email_for(self, user_id: str, request_id: str) -> Optional[str]:
        ...


class EmailSender(Protocol):
    async def send(self, to: str, subject: str, body: str) -> None:
        ...


class HttpRecipientDirectory:
    """Looks up user emails on the user service with an internal token."""

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        base_url: str,
        secret: str,
        token_ttl_seconds: int = 60,
        timeout_seconds: float = 5.0,
    ):
        self.http = http_client
        self.base_url = base_url.rstrip("/")
        self.secret = secret
        self.token_ttl_seconds = token_ttl_seconds
        self.timeout_seconds = timeout_seconds

    async def email_for(self, user_id: str, request_id: str) -> Optional[str]:
        """
        Returns:
            Optional[str]: The email, or None if the user does not exist

        Raises:
            DependencyError: If the user service is unreachable or failing
        """
        headers = {
            INTERNAL_TOKEN_HEADER: sign_internal_token(
                "notifications", request_id, self.secret, self.token_ttl_seconds
            ),
            REQUEST_ID_HEADER: request_id,
        }
        try:
            response = await self.http.get(
                f"{self.base_url}/internal/users/{user_id}",
                headers=headers,
                timeout=self.timeout_seconds,
            )
        except httpx.HTTPError as e:
            raise DependencyError("User service unreachable") from e

        if response.status_code == 404:
            return None
        if not response.is_success:
            raise DependencyError(f"User service answered {response.status_code}")
        return response.json().get("data", {}).get("email")


class LoggingEmailSender:
    """Sender used when no email API is configured."""

    async def send(self, to: str, subject: str, body: str) -> None:
        logger.info("email_logged", subject=subject, body_length=len(body))


class HttpEmailSender:
    """Sends through a JSON email API."""

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        api_url: str,
        sender: str,
        timeout_seconds: float = 10.0,
    ):
        self.http = http_client
        self.api_url = api_url
        self.sender = sender
        self.timeout_seconds = timeout_seconds

    async def send(self, to: str, subject: str, body: str) -> None:
        try:
            response = await self.http.post(
                self.api_url,
                json={"from": self.sender, "to": to, "subject": subject, "text": body},
                timeout=self.timeout_seconds,
            )
        except httpx.HTTPError as e:
            raise DependencyError("Email API unreachable") from e
        if not response.is_success:
            raise DependencyError(f"Email API answered {response.status_code}")


def short_order_ref(order_id: str) -> str:
    return order_id[:8].upper()


def render(event: DomainEvent) -> Tuple[str, str]:
    """Subject and plain-text body for an event."""
    ref = short_order_ref(event.order_id)
    if isinstance(event, OrderCreated):
        return (
            "Your order has been placed!",
            f"Your order #{ref} has been placed successfully.\n"
            f"Total: {event.total_amount}\n"
            "We'll notify you once your payment is confirmed.",
        )
    if isinstance(event, PaymentCaptured):
        return (
            "Payment confirmed, your order is being packed!",
            f"Payment for order #{ref} has been confirmed.\n"
            "Your order is now being prepared for dispatch.",
        )
    if isinstance(event, PaymentFailed):
        return (
            "Payment failed for your order",
            f"Unfortunately, payment for order #{ref} could not be processed.\n"
            "Please try again or contact support.",
        )
    raise ValueError(f"No template for {type(event).__name__}")


class NotificationDispatcher:
    """Event consumer handler sending one email per event."""

    def __init__(
        self,
        directory: RecipientDirectory,
        sender: EmailSender,
        guard: IdempotencyGuard,
        dedup_ttl_seconds: int = 86400 * 7,
    ):
        self.directory = directory
        self.sender = sender
        self.guard = guard
        self.dedup_ttl_seconds = dedup_ttl_seconds

    @staticmethod
    def dedup_key(entry: LogEntry) -> str:
        return f"notification-sent:{entry.topic.value}:{entry.entry_id}"

    async def __call__(self, entry: LogEntry, event: DomainEvent) -> None:
        await self.handle(entry, event)

    async def handle(self, entry: LogEntry, event: DomainEvent) -> bool:
        """
        Send the notification for one entry.

        Returns:
            bool: True if an email was sent by this call

        Raises:
            Exception: Lookup or send failures, leaving the entry pending
        """
        key = self.dedup_key(entry)
        log = logger.bind(
            event_type=event.type,
            order_id=event.order_id,
            entry_id=entry.entry_id,
            request_id=event.request_id,
        )

        if await self.guard.exists(key):
            log.info("notification_already_sent")
            return False

        email = await self.directory.email_for(event.user_id, event.request_id)
        if not email:
            log.warning("notification_recipient_missing", user_id=event.user_id)
            return False

        subject, body = render(event)
        await self.sender.send(email, subject, body)
        await self.guard.claim(key, ttl_seconds=self.dedup_ttl_seconds)
        log.info("notification_sent")
        return True
