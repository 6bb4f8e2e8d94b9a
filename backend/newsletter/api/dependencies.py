from __future__ import annotations

from functools import lru_cache

from fastapi import Depends

from newsletter.notifications.config import NewsletterConfig, load_newsletter_config
from newsletter.notifications.transport import EmailTransport, build_email_transport
from newsletter.security.turnstile import BotVerifier, build_bot_verifier


@lru_cache(maxsize=1)
def get_config() -> NewsletterConfig:
    return load_newsletter_config()


def get_email_transport(
    config: NewsletterConfig = Depends(get_config),
) -> EmailTransport:
    return build_email_transport(config)


def get_bot_verifier(config: NewsletterConfig = Depends(get_config)) -> BotVerifier:
    return build_bot_verifier(config)
