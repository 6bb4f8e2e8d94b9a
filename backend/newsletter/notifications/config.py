from __future__ import annotations

import os
from dataclasses import dataclass


@dataclass(frozen=True)
class NewsletterConfig:
    canonical_url: str
    from_email: str
    from_name: str
    postmark_api_token: str
    postmark_base_url: str
    postmark_message_stream: str
    email_dry_run: bool
    allowed_recipient_domains: set[str]
    turnstile_secret: str
    dispatch_max_workers: int = 4
    send_max_attempts: int = 3
    send_retry_backoff_seconds: tuple[float, ...] = (1.0, 5.0, 15.0)
    # A started send older than this is presumed dead and may be claimed again.
    send_claim_ttl_seconds: float = 120.0

    @property
    def unsubscribe_url(self) -> str:
        return f"{self.canonical_url}/unsubscribe"

    def confirm_url(self, token: str) -> str:
        return f"{self.canonical_url}/newsletter/confirm?token={token}"


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    return max(1, int(raw))


def _backoff_env(name: str, default: tuple[float, ...]) -> tuple[float, ...]:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    return tuple(float(part) for part in raw.split(",") if part.strip())


def load_newsletter_config() -> NewsletterConfig:
    allowed_domains_raw = os.getenv("EMAIL_ALLOWED_RECIPIENT_DOMAINS", "")
    allowed_domains = {
        domain.strip().lower()
        for domain in allowed_domains_raw.split(",")
        if domain.strip()
    }

    return NewsletterConfig(
        canonical_url=os.getenv("CANONICAL_URL", "http://localhost:4321").rstrip("/"),
        from_email=os.getenv("EMAIL_FROM_ADDRESS", "newsletter@example.com"),
        from_name=os.getenv("EMAIL_FROM_NAME", "Newsletter"),
        postmark_api_token=os.getenv("POSTMARK_API_TOKEN", ""),
        postmark_base_url=os.getenv(
            "POSTMARK_BASE_URL", "https://api.postmarkapp.com"
        ).rstrip("/"),
        postmark_message_stream=os.getenv("POSTMARK_MESSAGE_STREAM", "outbound"),
        email_dry_run=os.getenv("EMAIL_DRY_RUN", "true").lower() == "true",
        allowed_recipient_domains=allowed_domains,
        turnstile_secret=os.getenv("TURNSTILE_SECRET", ""),
        dispatch_max_workers=_int_env("DISPATCH_MAX_WORKERS", 4),
        send_max_attempts=_int_env("SEND_MAX_ATTEMPTS", 3),
        send_retry_backoff_seconds=_backoff_env(
            "SEND_RETRY_BACKOFF_SECONDS", (1.0, 5.0, 15.0)
        ),
        send_claim_ttl_seconds=float(os.getenv("SEND_CLAIM_TTL_SECONDS", "120") or 120),
    )
