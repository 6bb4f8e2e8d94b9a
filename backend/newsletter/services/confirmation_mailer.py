from __future__ import annotations

import logging

from newsletter.notifications.config import NewsletterConfig
from newsletter.notifications.dedupe import build_confirmation_tag
from newsletter.notifications.errors import EmailTransportError
from newsletter.notifications.templates import render_confirmation_email
from newsletter.notifications.transport import EmailTransport

logger = logging.getLogger(__name__)


class ConfirmationMailer:
    def __init__(self, config: NewsletterConfig, transport: EmailTransport) -> None:
        self.config = config
        self.transport = transport

    def send(self, *, email: str, name: str | None, confirm_token: str) -> bool:
        """Send the double opt-in email. Failures are logged, never raised.

        Subscription state is already committed when this runs; the user can
        ask for the confirmation to be resent.
        """
        rendered = render_confirmation_email(
            name=name, confirm_url=self.config.confirm_url(confirm_token)
        )
        try:
            self.transport.send(
                recipient=email,
                subject=rendered.subject,
                html=rendered.html_body,
                text=rendered.text_body,
                dedupe_tag=build_confirmation_tag(),
            )
        except EmailTransportError as exc:
            logger.exception(
                "confirmation_email_failed",
                extra={"error_code": exc.code, "retryable": exc.retryable},
            )
            return False
        return True
