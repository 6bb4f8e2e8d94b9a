from __future__ import annotations

import threading
from collections.abc import Callable, Iterator
from dataclasses import replace
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session, sessionmaker

from newsletter.api.dependencies import get_bot_verifier, get_config, get_email_transport
from newsletter.content.issue_source import IssueContentError, IssueMetadata
from newsletter.db.base import Base
from newsletter.db.models import Subscriber
from newsletter.db.session import configure_engine, get_engine, get_session_factory
from newsletter.main import app
from newsletter.notifications.config import NewsletterConfig
from newsletter.notifications.errors import EmailTransportError
from newsletter.security.turnstile import AllowAllVerifier
from newsletter.services.newsletter_dispatch_workflow import NewsletterDispatchWorkflow

TEST_CONFIG = NewsletterConfig(
    canonical_url="https://blog.example.com",
    from_email="newsletter@example.com",
    from_name="Example Newsletter",
    postmark_api_token="",
    postmark_base_url="https://api.postmarkapp.com",
    postmark_message_stream="outbound",
    email_dry_run=True,
    allowed_recipient_domains=set(),
    turnstile_secret="",
    dispatch_max_workers=1,
    send_max_attempts=3,
    send_retry_backoff_seconds=(0.0,),
)


class FakeTransport:
    """In-memory email transport; behaves like a provider with searchable history."""

    def __init__(self) -> None:
        self.sent: list[dict[str, str]] = []
        self.failures: dict[str, list[EmailTransportError]] = {}
        self.delivered: set[tuple[str, str]] = set()
        self.lookups: list[tuple[str, str]] = []
        self.lookup_error: EmailTransportError | None = None
        self._lock = threading.Lock()

    def fail_next(self, recipient: str, *errors: EmailTransportError) -> None:
        self.failures.setdefault(recipient, []).extend(errors)

    def send(
        self,
        *,
        recipient: str,
        subject: str,
        html: str,
        text: str,
        dedupe_tag: str,
    ) -> str:
        with self._lock:
            queued = self.failures.get(recipient)
            if queued:
                raise queued.pop(0)
            message_id = f"msg-{len(self.sent) + 1}"
            self.sent.append(
                {
                    "message_id": message_id,
                    "recipient": recipient,
                    "subject": subject,
                    "html": html,
                    "text": text,
                    "dedupe_tag": dedupe_tag,
                }
            )
            self.delivered.add((recipient, dedupe_tag))
            return message_id

    def was_already_sent(self, *, recipient: str, dedupe_tag: str) -> bool:
        with self._lock:
            self.lookups.append((recipient, dedupe_tag))
            if self.lookup_error is not None:
                raise self.lookup_error
            return (recipient, dedupe_tag) in self.delivered

    def recipients_for(self, dedupe_tag: str) -> list[str]:
        return [item["recipient"] for item in self.sent if item["dedupe_tag"] == dedupe_tag]


class FakeContentSource:
    def __init__(self) -> None:
        self.html: dict[int, str] = {}
        self.metadata: dict[int, IssueMetadata] = {}
        self.html_calls = 0

    def publish(self, issue_number: int, *, html: str | None = None) -> None:
        self.html[issue_number] = html or f"<h1>Issue {issue_number}</h1>"
        self.metadata[issue_number] = IssueMetadata(
            issue_number=issue_number,
            title=f"Issue {issue_number} title",
            description=f"What happened in issue {issue_number}",
            web_url=f"https://blog.example.com/blog/issue-{issue_number}/",
        )

    def load_html(self, issue_number: int) -> str:
        self.html_calls += 1
        if issue_number not in self.html:
            raise IssueContentError(f"HTTP 404 for issue {issue_number}")
        return self.html[issue_number]

    def load_metadata(self, issue_number: int) -> IssueMetadata:
        if issue_number not in self.metadata:
            raise IssueContentError(f"Issue {issue_number} not found in metadata")
        return self.metadata[issue_number]


@pytest.fixture()
def session_factory(tmp_path: Path) -> Iterator[sessionmaker[Session]]:
    database_url = f"sqlite:///{tmp_path / 'test_newsletter.db'}"
    configure_engine(database_url)
    engine = get_engine()
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)

    yield get_session_factory()

    Base.metadata.drop_all(bind=engine)


@pytest.fixture()
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture()
def content() -> FakeContentSource:
    source = FakeContentSource()
    for issue_number in range(1, 11):
        source.publish(issue_number)
    return source


@pytest.fixture()
def client(
    session_factory: sessionmaker[Session], transport: FakeTransport
) -> Iterator[TestClient]:
    app.dependency_overrides[get_config] = lambda: TEST_CONFIG
    app.dependency_overrides[get_email_transport] = lambda: transport
    app.dependency_overrides[get_bot_verifier] = lambda: AllowAllVerifier()

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()


@pytest.fixture()
def make_workflow(
    session_factory: sessionmaker[Session],
    transport: FakeTransport,
    content: FakeContentSource,
) -> Callable[..., NewsletterDispatchWorkflow]:
    def _make(**config_overrides: Any) -> NewsletterDispatchWorkflow:
        sleeps: list[float] = []
        workflow = NewsletterDispatchWorkflow(
            session_factory=session_factory,
            content_source=content,
            transport=transport,
            config=replace(TEST_CONFIG, **config_overrides),
            sleep=sleeps.append,
        )
        workflow.recorded_sleeps = sleeps  # type: ignore[attr-defined]
        return workflow

    return _make


@pytest.fixture()
def add_subscriber(
    session_factory: sessionmaker[Session],
) -> Callable[..., int]:
    def _add(
        email: str,
        *,
        name: str | None = None,
        confirmed: bool = True,
        unsubscribed: bool = False,
        latest_issue_sent: int | None = None,
        issues_received_count: int = 0,
    ) -> int:
        now = datetime.now(UTC)
        with session_factory() as session:
            subscriber = Subscriber(
                email=email,
                name=name,
                subscribed_at=now,
                unsubscribed_at=now if unsubscribed else None,
                confirmed_at=now if confirmed else None,
                confirm_token=None if confirmed else f"token-{email}",
                latest_issue_sent=latest_issue_sent,
                issues_received_count=issues_received_count,
                created_at=now,
                updated_at=now,
            )
            session.add(subscriber)
            session.commit()
            return subscriber.id

    return _add
