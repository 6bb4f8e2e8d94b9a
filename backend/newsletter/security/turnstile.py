from __future__ import annotations

import logging
from typing import Protocol

import httpx

from newsletter.notifications.config import NewsletterConfig

logger = logging.getLogger(__name__)

TURNSTILE_VERIFY_URL = "https://challenges.cloudflare.com/turnstile/v0/siteverify"


class BotVerifier(Protocol):
    def verify(self, token: str | None, *, remote_ip: str | None = None) -> bool: ...


class AllowAllVerifier:
    def verify(self, token: str | None, *, remote_ip: str | None = None) -> bool:
        return True


class TurnstileVerifier:
    def __init__(
        self,
        secret: str,
        verify_url: str = TURNSTILE_VERIFY_URL,
        http_transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.secret = secret
        self.verify_url = verify_url
        self.http_transport = http_transport

    def verify(self, token: str | None, *, remote_ip: str | None = None) -> bool:
        if not token:
            return False

        form = {"secret": self.secret, "response": token}
        if remote_ip:
            form["remoteip"] = remote_ip

        try:
            with httpx.Client(timeout=10.0, transport=self.http_transport) as client:
                response = client.post(self.verify_url, data=form)
        except httpx.HTTPError:
            logger.warning("turnstile_verify_unreachable", exc_info=True)
            return False

        if response.status_code != 200:
            logger.warning(
                "turnstile_verify_http_error",
                extra={"status_code": response.status_code},
            )
            return False

        try:
            body = response.json() if response.content else {}
        except ValueError:
            logger.warning("turnstile_verify_malformed_response")
            return False
        accepted = isinstance(body, dict) and body.get("success") is True
        if not accepted:
            logger.info(
                "turnstile_verify_rejected",
                extra={"error_codes": body.get("error-codes") if isinstance(body, dict) else None},
            )
        return accepted


def build_bot_verifier(config: NewsletterConfig) -> BotVerifier:
    if not config.turnstile_secret:
        return AllowAllVerifier()
    return TurnstileVerifier(config.turnstile_secret)
