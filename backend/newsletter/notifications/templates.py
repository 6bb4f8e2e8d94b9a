from __future__ import annotations

from dataclasses import dataclass
from html import escape

from newsletter.content.issue_source import IssueMetadata


@dataclass(frozen=True)
class RenderedEmail:
    subject: str
    text_body: str
    html_body: str


def _greeting(name: str | None) -> str:
    return f"Hi {name}," if isinstance(name, str) and name.strip() else "Hi,"


def render_issue_email(
    *,
    metadata: IssueMetadata,
    html_content: str,
    recipient_name: str | None,
    unsubscribe_url: str,
) -> RenderedEmail:
    """The issue HTML is sent as-is; only the plain-text fallback is built here."""
    lines = [
        _greeting(recipient_name),
        "",
        metadata.title,
        "",
        metadata.description,
        "",
        f"Read online: {metadata.web_url}",
        "",
        "---",
        "You're receiving this because you subscribed to the newsletter.",
        f"Unsubscribe: {unsubscribe_url}",
    ]

    return RenderedEmail(
        subject=f"{metadata.title} | Newsletter Issue #{metadata.issue_number}",
        text_body="\n".join(lines),
        html_body=html_content,
    )


def render_confirmation_email(*, name: str | None, confirm_url: str) -> RenderedEmail:
    greeting = _greeting(name)
    subject = "Please confirm your newsletter subscription"

    text_body = "\n".join(
        [
            greeting,
            "",
            "thanks for subscribing. Please confirm your email address:",
            confirm_url,
            "",
            "If you did not subscribe, you can ignore this email.",
        ]
    )
    html_body = "\n".join(
        [
            f"<p>{escape(greeting)}</p>",
            "<p>thanks for subscribing. Please confirm your email address:</p>",
            f'<p><a href="{escape(confirm_url, quote=True)}">Confirm subscription</a></p>',
            "<p>If you did not subscribe, you can ignore this email.</p>",
        ]
    )

    return RenderedEmail(subject=subject, text_body=text_body, html_body=html_body)
