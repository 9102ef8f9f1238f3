"""Approver notifications.

Sending is best-effort: failures surface as NotificationFailed (or
CollaboratorTimeout) to the caller, but never touch request state.
"""

import html
from abc import ABC, abstractmethod
from dataclasses import dataclass, field

import httpx

from app.core.config import settings
from app.core.errors import CollaboratorTimeout, NotificationFailed
from app.core.timeouts import bounded
from app.models.change_request import ChangeRequest
from app.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass
class EmailMessage:
    sender: str
    to: list[str]
    subject: str
    body: str
    html: str | None = None
    tags: dict[str, str] = field(default_factory=dict)


class MailTransport(ABC):
    @abstractmethod
    async def send(self, sender: str, to: list[str], subject: str, body: str, html: str | None = None) -> None: ...


class LoggingTransport(MailTransport):
    """Development transport: writes the message to the log instead of sending it."""

    async def send(self, sender: str, to: list[str], subject: str, body: str, html: str | None = None) -> None:
        logger.info("Email from=%s to=%s subject=%r\n%s", sender, to, subject, body)


class ResendTransport(MailTransport):
    def __init__(self, api_key: str, api_url: str = "https://api.resend.com/emails", client: httpx.AsyncClient | None = None) -> None:
        self.api_key = api_key
        self.api_url = api_url
        self._client = client

    async def send(self, sender: str, to: list[str], subject: str, body: str, html: str | None = None) -> None:
        payload = {"from": sender, "to": to, "subject": subject, "text": body}
        if html:
            payload["html"] = html
        headers = {"Authorization": f"Bearer {self.api_key}"}

        if self._client is not None:
            response = await self._client.post(self.api_url, json=payload, headers=headers)
        else:
            async with httpx.AsyncClient(timeout=settings.collaborator_timeout_seconds) as client:
                response = await client.post(self.api_url, json=payload, headers=headers)
        response.raise_for_status()


def summary_fields(change_request: ChangeRequest) -> list[tuple[str, str]]:
    rows = [
        ("Description", change_request.description),
        ("Change Type", change_request.change_type),
        ("Impact Level", change_request.impact_level),
        ("Expected Downtime", change_request.expected_downtime or "N/A"),
        ("Status", change_request.status),
    ]
    if change_request.rollback_plan:
        rows.append(("Rollback Plan", change_request.rollback_plan))
    return rows


def build_approver_message(change_request: ChangeRequest, sender: str | None = None) -> EmailMessage:
    subject = f"Change Request: {change_request.title}"
    rows = summary_fields(change_request)

    text_lines = [subject, ""]
    text_lines += [f"{label}: {value}" for label, value in rows]
    text_lines += ["", f"Submitted by: {change_request.created_by}", f"Request ID: {change_request.id}"]

    html_rows = "".join(
        f"<p><strong>{html.escape(label)}:</strong> {html.escape(str(value))}</p>" for label, value in rows
    )
    html_body = (
        "<html><body>"
        f"<h1>{html.escape(subject)}</h1>"
        f"{html_rows}"
        "</body></html>"
    )

    return EmailMessage(
        sender=sender or settings.notification_sender,
        to=[change_request.approver],
        subject=subject,
        body="\n".join(text_lines),
        html=html_body,
        tags={"request_id": change_request.id, "status": change_request.status},
    )


class NotificationDispatcher:
    def __init__(self, transport: MailTransport, sender: str | None = None) -> None:
        self.transport = transport
        self.sender = sender or settings.notification_sender

    async def notify_approver(self, change_request: ChangeRequest, timeout: float | None = None) -> EmailMessage:
        message = build_approver_message(change_request, self.sender)
        try:
            await bounded(
                self.transport.send(message.sender, message.to, message.subject, message.body, message.html),
                "notification.send",
                timeout,
            )
        except CollaboratorTimeout:
            raise
        except Exception as exc:
            logger.warning("Notification for %s to %s failed: %s", change_request.id, message.to, exc)
            raise NotificationFailed(f"Could not notify {change_request.approver}: {exc}") from exc
        logger.info("Notified %s about change request %s (%s)", message.to, change_request.id, change_request.status)
        return message


def build_transport() -> MailTransport:
    if settings.mail_transport == "resend":
        return ResendTransport(settings.resend_api_key, settings.resend_api_url)
    return LoggingTransport()


_dispatcher: NotificationDispatcher | None = None


def get_dispatcher() -> NotificationDispatcher:
    global _dispatcher
    if _dispatcher is None:
        _dispatcher = NotificationDispatcher(build_transport())
    return _dispatcher
