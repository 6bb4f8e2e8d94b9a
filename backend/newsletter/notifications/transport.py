from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from typing import Protocol

from newsletter.notifications.config import NewsletterConfig
from newsletter.notifications.postmark_provider import PostmarkEmailProvider

logger = logging.getLogger(__name__)


class EmailTransport(Protocol):
    def send(
        self,
        *,
        recipient: str,
        subject: str,
        html: str,
        text: str,
        dedupe_tag: str,
    ) -> str: ...

    def was_already_sent(self, *, recipient: str, dedupe_tag: str) -> bool: ...


@dataclass(frozen=True)
class SentMessage:
    message_id: str
    recipient: str
    subject: str
    html: str
    text: str
    dedupe_tag: str


@dataclass
class DryRunEmailTransport:
    """Logs and remembers messages instead of sending them."""

    sent: list[SentMessage] = field(default_factory=list)

    def send(
        self,
        *,
        recipient: str,
        subject: str,
        html: str,
        text: str,
        dedupe_tag: str,
    ) -> str:
        message_id = f"dry-run-{uuid.uuid4()}"
        self.sent.append(
            SentMessage(
                message_id=message_id,
                recipient=recipient,
                subject=subject,
                html=html,
                text=text,
                dedupe_tag=dedupe_tag,
            )
        )
        logger.info(
            "email_dry_run_send",
            extra={"dedupe_tag": dedupe_tag, "subject": subject},
        )
        return message_id

    def was_already_sent(self, *, recipient: str, dedupe_tag: str) -> bool:
        return any(
            message.recipient == recipient and message.dedupe_tag == dedupe_tag
            for message in self.sent
        )


def build_email_transport(config: NewsletterConfig) -> EmailTransport:
    if config.email_dry_run:
        return DryRunEmailTransport()

    return PostmarkEmailProvider(config)
