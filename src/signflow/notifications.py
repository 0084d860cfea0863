"""Outbound notifications to signers, recipients and owners.

Delivery is best-effort: a failed send is logged and reported as False,
never raised, so one unreachable mailbox cannot stall a workflow.

Two transports ship with SignFlow:

* ``LogNotifier`` — logs and keeps the messages in memory (dev/test mode,
  used when no SMTP host is configured);
* ``SmtpNotifier`` — delivers through an SMTP server.
"""

import logging
import smtplib
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.message import EmailMessage
from typing import Optional
from urllib.parse import quote

from .config import Settings

logger = logging.getLogger("signflow.notifications")


@dataclass
class OutboundMessage:
    """One message handed to a transport.

    Attributes:
        to: Recipient address.
        subject: Subject line.
        body: Plain-text body.
        kind: Which notification produced it (e.g. ``signing_request``).
        sent_at: When the transport accepted it.
    """

    to: str
    subject: str
    body: str
    kind: str = "generic"
    sent_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class Notifier:
    """Transport interface: deliver one message, report success."""

    def send(self, message: OutboundMessage) -> bool:
        raise NotImplementedError


class LogNotifier(Notifier):
    """Logs messages instead of sending them and keeps them for inspection."""

    def __init__(self) -> None:
        self.sent: list[OutboundMessage] = []
        self._guard = threading.Lock()

    def send(self, message: OutboundMessage) -> bool:
        with self._guard:
            self.sent.append(message)
        logger.info("[log-only] %s to %s: %s", message.kind, message.to, message.subject)
        return True

    def messages(self, kind: Optional[str] = None, to: Optional[str] = None) -> list[OutboundMessage]:
        with self._guard:
            return [
                m
                for m in self.sent
                if (kind is None or m.kind == kind) and (to is None or m.to == to)
            ]


class SmtpNotifier(Notifier):
    """Delivers messages through SMTP.

    Args:
        host: SMTP server.
        port: SMTP port.
        sender: From address.
        user: Login, if the server requires one.
        password: Password for ``user``.
        use_tls: Issue STARTTLS after connecting.
        timeout: Socket timeout in seconds.
    """

    def __init__(
        self,
        host: str,
        port: int = 587,
        sender: str = "signflow@localhost",
        user: Optional[str] = None,
        password: Optional[str] = None,
        use_tls: bool = True,
        timeout: float = 10.0,
    ) -> None:
        self.host = host
        self.port = port
        self.sender = sender
        self.user = user
        self.password = password
        self.use_tls = use_tls
        self.timeout = timeout

    def send(self, message: OutboundMessage) -> bool:
        email = EmailMessage()
        email["From"] = self.sender
        email["To"] = message.to
        email["Subject"] = message.subject
        email.set_content(message.body)

        with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as smtp:
            if self.use_tls:
                smtp.starttls()
            if self.user:
                smtp.login(self.user, self.password or "")
            smtp.send_message(email)
        logger.info("Sent %s to %s", message.kind, message.to)
        return True


def notifier_from_settings(settings: Settings) -> Notifier:
    """SMTP when a host is configured, log-only otherwise."""
    if settings.smtp_host:
        return SmtpNotifier(
            host=settings.smtp_host,
            port=settings.smtp_port,
            sender=settings.smtp_sender,
            user=settings.smtp_user,
            password=settings.smtp_password,
            use_tls=settings.smtp_use_tls,
        )
    return LogNotifier()


class NotificationService:
    """Builds workflow notifications and hands them to a transport.

    Args:
        notifier: Delivery transport.
        frontend_url: Base URL for signing links.
    """

    def __init__(self, notifier: Notifier, frontend_url: str) -> None:
        self.notifier = notifier
        self.frontend_url = frontend_url.rstrip("/")

    # ------------------------------------------------------------------
    # Links
    # ------------------------------------------------------------------

    def signing_url(self, token: str, email: str) -> str:
        return f"{self.frontend_url}/sign/{token}?email={quote(email)}"

    def recipient_url(self, document_id: str, email: str) -> str:
        return f"{self.frontend_url}/sign-document/{document_id}?email={quote(email)}"

    # ------------------------------------------------------------------
    # Notifications
    # ------------------------------------------------------------------

    def _deliver(self, message: OutboundMessage) -> bool:
        try:
            return bool(self.notifier.send(message))
        except Exception as exc:
            logger.warning("Failed to send %s to %s: %s", message.kind, message.to, exc)
            return False

    def signing_request(
        self,
        to: str,
        signer_name: str,
        document_title: str,
        owner_name: str,
        signing_url: str,
        message: Optional[str] = None,
        subject: Optional[str] = None,
    ) -> bool:
        """Ask one signer to sign through their token link."""
        lines = [
            f"Hello {signer_name},",
            "",
            f"{owner_name} has requested your signature on \"{document_title}\".",
        ]
        if message:
            lines += ["", message]
        lines += ["", "Review and sign the document here:", signing_url]
        return self._deliver(
            OutboundMessage(
                to=to,
                subject=subject or f"Signature Request: {document_title}",
                body="\n".join(lines),
                kind="signing_request",
            )
        )

    def rejection(
        self,
        owner_email: str,
        document_title: str,
        signer_name: str,
        signer_email: str,
        reason: str,
    ) -> bool:
        """Tell the owner that a signer refused to sign."""
        body = (
            f"{signer_name} ({signer_email}) declined to sign \"{document_title}\".\n\n"
            f"Reason: {reason}\n\n"
            "The signing request is on hold until you cancel it or send a new one."
        )
        return self._deliver(
            OutboundMessage(
                to=owner_email,
                subject=f"Signature Declined: {document_title}",
                body=body,
                kind="rejection",
            )
        )

    def completion(self, to: str, document_title: str, signer_names: list[str]) -> bool:
        """Tell the owner that every signer has signed."""
        body = (
            f"All parties have signed \"{document_title}\".\n\n"
            "Signed by:\n" + "\n".join(f"  - {name}" for name in signer_names)
        )
        return self._deliver(
            OutboundMessage(
                to=to,
                subject=f"Document Completed: {document_title}",
                body=body,
                kind="completion",
            )
        )

    def recipient_invite(
        self,
        to: str,
        recipient_name: str,
        role: str,
        document_title: str,
        link: str,
        message: str = "",
    ) -> bool:
        """Invite a document recipient to act in their role."""
        lines = [
            f"Hello {recipient_name},",
            "",
            f"You have been asked to act as {role} on \"{document_title}\".",
        ]
        if message:
            lines += ["", f"Message from sender: {message}"]
        lines += ["", "Open the document here:", link]
        return self._deliver(
            OutboundMessage(
                to=to,
                subject=f"Document Signature Request: {document_title}",
                body="\n".join(lines),
                kind="recipient_invite",
            )
        )
