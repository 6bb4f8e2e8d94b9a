from __future__ import annotations

import threading
from collections.abc import Callable
from datetime import UTC, datetime, timedelta

import pytest
from conftest import FakeContentSource, FakeTransport
from sqlalchemy import func, select
from sqlalchemy.orm import Session, sessionmaker

from newsletter.db.models import DispatchAttempt, Subscriber, WorkflowRun, WorkflowStep
from newsletter.notifications.errors import EmailTransportError
from newsletter.services.dispatch_ledger import PROVIDER_CONFIRMED_MESSAGE_ID
from newsletter.services.errors import ErrorKind, ServiceError
from newsletter.services.newsletter_dispatch_workflow import (
    WORKFLOW_NAME,
    NewsletterDispatchWorkflow,
    WorkflowFatalError,
)
from newsletter.services.subscription_service import SubscriptionService

MakeWorkflow = Callable[..., NewsletterDispatchWorkflow]
AddSubscriber = Callable[..., int]


def _subscriber(session_factory: sessionmaker[Session], subscriber_id: int) -> Subscriber:
    with session_factory() as session:
        row = session.get(Subscriber, subscriber_id)
        assert row is not None
        return row


def _attempt(
    session_factory: sessionmaker[Session], subscriber_id: int, issue_number: int
) -> DispatchAttempt | None:
    with session_factory() as session:
        return session.scalar(
            select(DispatchAttempt).where(
                DispatchAttempt.subscription_id == subscriber_id,
                DispatchAttempt.issue_number == issue_number,
            )
        )


def _count(session_factory: sessionmaker[Session], model: type) -> int:
    with session_factory() as session:
        return int(session.scalar(select(func.count()).select_from(model)) or 0)


def _retryable(code: str = "HTTP_503") -> EmailTransportError:
    return EmailTransportError(code=code, message="provider unavailable", retryable=True)


def _permanent(code: str = "HTTP_422") -> EmailTransportError:
    return EmailTransportError(code=code, message="inactive recipient", retryable=False)


def test_only_eligible_subscribers_receive_issue(
    make_workflow: MakeWorkflow,
    add_subscriber: AddSubscriber,
    transport: FakeTransport,
    session_factory: sessionmaker[Session],
) -> None:
    fresh = add_subscriber("fresh@example.com")
    caught_up = add_subscriber("caught-up@example.com", latest_issue_sent=5)
    behind = add_subscriber("behind@example.com", latest_issue_sent=4)
    add_subscriber("pending@example.com", confirmed=False)
    add_subscriber("gone@example.com", unsubscribed=True)

    result = make_workflow().run(5)

    assert result.total_recipients == 2
    assert result.successful == 2
    assert sorted(transport.recipients_for("newsletter-issue-5")) == [
        "behind@example.com",
        "fresh@example.com",
    ]
    assert _subscriber(session_factory, fresh).latest_issue_sent == 5
    assert _subscriber(session_factory, behind).issues_received_count == 1
    assert _subscriber(session_factory, caught_up).latest_issue_sent == 5

    next_issue = make_workflow().run(6)

    assert next_issue.total_recipients == 3
    assert "caught-up@example.com" in transport.recipients_for("newsletter-issue-6")


def test_issue_email_is_rendered_for_recipient(
    make_workflow: MakeWorkflow,
    add_subscriber: AddSubscriber,
    transport: FakeTransport,
) -> None:
    add_subscriber("ada@example.com", name="Ada")

    make_workflow().run(4)

    message = transport.sent[0]
    assert message["subject"] == "Issue 4 title | Newsletter Issue #4"
    assert message["html"] == "<h1>Issue 4</h1>"
    assert message["dedupe_tag"] == "newsletter-issue-4"
    assert message["text"].startswith("Hi Ada,\n\nIssue 4 title")
    assert "Read online: https://blog.example.com/blog/issue-4/" in message["text"]
    assert message["text"].endswith("Unsubscribe: https://blog.example.com/unsubscribe")


def test_fresh_runs_never_send_an_issue_twice(
    make_workflow: MakeWorkflow,
    add_subscriber: AddSubscriber,
    transport: FakeTransport,
    session_factory: sessionmaker[Session],
) -> None:
    ids = [add_subscriber(f"reader{index}@example.com") for index in range(3)]

    first = make_workflow().run(3)
    second = make_workflow().run(3)

    assert first.run_id != second.run_id
    assert first.successful == 3
    assert second.total_recipients == 0
    assert len(transport.sent) == 3
    for subscriber_id in ids:
        row = _subscriber(session_factory, subscriber_id)
        assert row.latest_issue_sent == 3
        assert row.issues_received_count == 1
    assert _count(session_factory, DispatchAttempt) == 3


def test_replaying_a_completed_run_sends_nothing(
    make_workflow: MakeWorkflow,
    add_subscriber: AddSubscriber,
    transport: FakeTransport,
    content: FakeContentSource,
) -> None:
    add_subscriber("one@example.com")
    add_subscriber("two@example.com")
    workflow = make_workflow()

    first = workflow.run(2, run_id="run-replay")
    replay = workflow.run(2, run_id="run-replay")

    assert first.successful == 2
    assert replay.successful == 2
    assert replay.results == first.results
    assert len(transport.sent) == 2
    assert content.html_calls == 1
    run = workflow.step_log.get_run("run-replay")
    assert run is not None
    assert run.status == "completed"
    assert run.workflow == WORKFLOW_NAME


def test_unsubscribe_after_snapshot_skips_recipient(
    make_workflow: MakeWorkflow,
    add_subscriber: AddSubscriber,
    transport: FakeTransport,
    session_factory: sessionmaker[Session],
) -> None:
    add_subscriber("stays@example.com")
    leaving = add_subscriber("leaves@example.com")
    workflow = make_workflow()

    workflow.step_log.start_run(
        run_id="run-snapshot",
        workflow=WORKFLOW_NAME,
        params={"issue_number": 7, "limit": None},
    )
    snapshot = workflow.step_log.do(
        "run-snapshot", "get-recipients", lambda: workflow.compute_recipients(7)
    )
    assert len(snapshot) == 2

    with session_factory() as session:
        SubscriptionService().unsubscribe(session, email="leaves@example.com")

    result = workflow.run(7, run_id="run-snapshot")

    assert result.total_recipients == 2
    assert result.successful == 1
    assert result.skipped == 1
    skipped = next(item for item in result.results if item.get("skipped"))
    assert skipped == {
        "skipped": True,
        "reason": "no_longer_eligible",
        "recipient_id": leaving,
    }
    assert transport.recipients_for("newsletter-issue-7") == ["stays@example.com"]
    assert _attempt(session_factory, leaving, 7) is None


def test_dry_run_previews_without_writing(
    make_workflow: MakeWorkflow,
    add_subscriber: AddSubscriber,
    transport: FakeTransport,
    session_factory: sessionmaker[Session],
) -> None:
    ids = [add_subscriber(f"reader{index}@example.com") for index in range(10)]

    result = make_workflow().run(1, dry_run=True, limit=3)

    assert result.dry_run is True
    assert result.total_recipients == 3
    assert [item["id"] for item in result.recipients] == ids[:3]
    assert result.successful == 0
    assert result.results == []
    assert transport.sent == []
    assert _count(session_factory, DispatchAttempt) == 0
    assert _count(session_factory, WorkflowRun) == 0
    assert _count(session_factory, WorkflowStep) == 0
    assert all(_subscriber(session_factory, item).latest_issue_sent is None for item in ids)


def test_limit_caps_recipients_in_id_order(
    make_workflow: MakeWorkflow,
    add_subscriber: AddSubscriber,
    transport: FakeTransport,
) -> None:
    for index in range(5):
        add_subscriber(f"reader{index}@example.com")

    result = make_workflow().run(1, limit=2)

    assert result.total_recipients == 2
    assert sorted(transport.recipients_for("newsletter-issue-1")) == [
        "reader0@example.com",
        "reader1@example.com",
    ]


def test_confirmed_ledger_row_suppresses_resend(
    make_workflow: MakeWorkflow,
    add_subscriber: AddSubscriber,
    transport: FakeTransport,
    session_factory: sessionmaker[Session],
) -> None:
    subscriber_id = add_subscriber("reader@example.com", latest_issue_sent=1)
    with session_factory() as session:
        session.add(
            DispatchAttempt(
                subscription_id=subscriber_id,
                issue_number=2,
                sent_at=datetime.now(UTC),
                provider_message_id="pm-earlier",
                attempt_count=1,
            )
        )
        session.commit()

    result = make_workflow().run(2)

    assert result.skipped == 1
    assert result.results[0]["reason"] == "already_sent"
    assert result.results[0]["message_id"] == "pm-earlier"
    assert transport.sent == []
    assert transport.lookups == []

    row = _subscriber(session_factory, subscriber_id)
    assert row.latest_issue_sent == 2
    assert row.issues_received_count == 1
    attempt = _attempt(session_factory, subscriber_id, 2)
    assert attempt is not None
    assert attempt.provider_message_id == "pm-earlier"


def test_unconfirmed_attempt_is_settled_by_provider_history(
    make_workflow: MakeWorkflow,
    add_subscriber: AddSubscriber,
    transport: FakeTransport,
    session_factory: sessionmaker[Session],
) -> None:
    subscriber_id = add_subscriber("reader@example.com")
    with session_factory() as session:
        session.add(
            DispatchAttempt(
                subscription_id=subscriber_id,
                issue_number=2,
                sent_at=datetime.now(UTC),
                attempt_count=1,
            )
        )
        session.commit()
    transport.delivered.add(("reader@example.com", "newsletter-issue-2"))

    result = make_workflow().run(2)

    assert result.skipped == 1
    assert result.results[0]["message_id"] == PROVIDER_CONFIRMED_MESSAGE_ID
    assert transport.sent == []
    assert transport.lookups == [("reader@example.com", "newsletter-issue-2")]
    attempt = _attempt(session_factory, subscriber_id, 2)
    assert attempt is not None
    assert attempt.provider_message_id == PROVIDER_CONFIRMED_MESSAGE_ID
    assert _subscriber(session_factory, subscriber_id).latest_issue_sent == 2


def test_unconfirmed_attempt_unknown_to_provider_is_sent(
    make_workflow: MakeWorkflow,
    add_subscriber: AddSubscriber,
    transport: FakeTransport,
    session_factory: sessionmaker[Session],
) -> None:
    subscriber_id = add_subscriber("reader@example.com")
    with session_factory() as session:
        session.add(
            DispatchAttempt(
                subscription_id=subscriber_id,
                issue_number=2,
                sent_at=datetime.now(UTC),
                last_error="HTTP_503: provider unavailable",
                attempt_count=1,
            )
        )
        session.commit()

    result = make_workflow().run(2)

    assert result.successful == 1
    assert len(transport.sent) == 1
    attempt = _attempt(session_factory, subscriber_id, 2)
    assert attempt is not None
    assert attempt.provider_message_id == "msg-1"
    assert attempt.last_error is None
    assert attempt.attempt_count == 2


def test_provider_lookup_failure_falls_back_to_sending(
    make_workflow: MakeWorkflow,
    add_subscriber: AddSubscriber,
    transport: FakeTransport,
    session_factory: sessionmaker[Session],
) -> None:
    subscriber_id = add_subscriber("reader@example.com")
    with session_factory() as session:
        session.add(
            DispatchAttempt(
                subscription_id=subscriber_id,
                issue_number=2,
                sent_at=datetime.now(UTC) - timedelta(minutes=10),
                attempt_count=1,
            )
        )
        session.commit()
    transport.lookup_error = _retryable("HTTP_500")

    result = make_workflow().run(2)

    assert result.successful == 1
    assert len(transport.sent) == 1


def test_failed_recipient_does_not_block_others_and_is_retried_on_replay(
    make_workflow: MakeWorkflow,
    add_subscriber: AddSubscriber,
    transport: FakeTransport,
    session_factory: sessionmaker[Session],
) -> None:
    add_subscriber("a@example.com")
    failing = add_subscriber("b@example.com")
    add_subscriber("c@example.com")
    transport.fail_next("b@example.com", _permanent())
    workflow = make_workflow()

    first = workflow.run(3, run_id="run-partial")

    assert first.successful == 2
    assert first.failed == 1
    failed_item = next(item for item in first.results if item.get("success") is False)
    assert failed_item["recipient_id"] == failing
    assert "HTTP_422" in failed_item["error"]

    attempt = _attempt(session_factory, failing, 3)
    assert attempt is not None
    assert attempt.provider_message_id is None
    assert attempt.last_error == "HTTP_422: inactive recipient"
    assert _subscriber(session_factory, failing).latest_issue_sent is None

    replay = workflow.run(3, run_id="run-partial")

    assert replay.successful == 3
    assert replay.failed == 0
    assert sorted(transport.recipients_for("newsletter-issue-3")) == [
        "a@example.com",
        "b@example.com",
        "c@example.com",
    ]
    assert _subscriber(session_factory, failing).latest_issue_sent == 3

    with session_factory() as session:
        step = session.scalar(
            select(WorkflowStep).where(
                WorkflowStep.run_id == "run-partial",
                WorkflowStep.step_name == f"send:{failing}",
            )
        )
    assert step is not None
    assert step.status == "completed"
    assert step.attempt_count == 2


def test_retryable_failure_is_retried_with_backoff(
    make_workflow: MakeWorkflow,
    add_subscriber: AddSubscriber,
    transport: FakeTransport,
    session_factory: sessionmaker[Session],
) -> None:
    subscriber_id = add_subscriber("reader@example.com")
    transport.fail_next("reader@example.com", _retryable("TIMEOUT"))
    workflow = make_workflow(send_retry_backoff_seconds=(0.5, 2.0))

    result = workflow.run(1)

    assert result.successful == 1
    assert len(transport.sent) == 1
    assert workflow.recorded_sleeps == [0.5]  # type: ignore[attr-defined]
    assert transport.lookups == [("reader@example.com", "newsletter-issue-1")]
    attempt = _attempt(session_factory, subscriber_id, 1)
    assert attempt is not None
    assert attempt.attempt_count == 1
    assert attempt.provider_message_id == "msg-1"


def test_retry_stops_when_provider_already_accepted_message(
    make_workflow: MakeWorkflow,
    add_subscriber: AddSubscriber,
    transport: FakeTransport,
) -> None:
    add_subscriber("reader@example.com")
    transport.fail_next("reader@example.com", _retryable("TIMEOUT"))
    # The timed out request reached the provider anyway.
    transport.delivered.add(("reader@example.com", "newsletter-issue-1"))

    result = make_workflow().run(1)

    assert result.successful == 1
    assert result.results[0]["message_id"] == PROVIDER_CONFIRMED_MESSAGE_ID
    assert transport.sent == []


def test_retries_are_bounded(
    make_workflow: MakeWorkflow,
    add_subscriber: AddSubscriber,
    transport: FakeTransport,
) -> None:
    add_subscriber("reader@example.com")
    transport.fail_next(
        "reader@example.com", _retryable(), _retryable(), _retryable(), _retryable()
    )
    workflow = make_workflow(send_max_attempts=3)

    result = workflow.run(1)

    assert result.failed == 1
    assert transport.sent == []
    assert workflow.recorded_sleeps == [0.0, 0.0]  # type: ignore[attr-defined]
    assert len(transport.failures["reader@example.com"]) == 1


def test_permanent_failure_is_not_retried(
    make_workflow: MakeWorkflow,
    add_subscriber: AddSubscriber,
    transport: FakeTransport,
) -> None:
    add_subscriber("reader@example.com")
    transport.fail_next("reader@example.com", _permanent(), _permanent())
    workflow = make_workflow()

    result = workflow.run(1)

    assert result.failed == 1
    assert workflow.recorded_sleeps == []  # type: ignore[attr-defined]
    assert len(transport.failures["reader@example.com"]) == 1


def test_empty_issue_html_aborts_before_sending(
    make_workflow: MakeWorkflow,
    add_subscriber: AddSubscriber,
    transport: FakeTransport,
    content: FakeContentSource,
    session_factory: sessionmaker[Session],
) -> None:
    add_subscriber("reader@example.com")
    content.publish(8, html="   ")
    workflow = make_workflow()

    with pytest.raises(WorkflowFatalError):
        workflow.run(8, run_id="run-empty")

    assert transport.sent == []
    assert _count(session_factory, DispatchAttempt) == 0
    run = workflow.step_log.get_run("run-empty")
    assert run is not None
    assert run.status == "failed"
    assert "empty" in (run.error or "")


def test_unpublished_issue_aborts_and_can_be_retried(
    make_workflow: MakeWorkflow,
    add_subscriber: AddSubscriber,
    transport: FakeTransport,
    content: FakeContentSource,
) -> None:
    add_subscriber("reader@example.com")
    workflow = make_workflow()

    with pytest.raises(WorkflowFatalError):
        workflow.run(42, run_id="run-late")

    content.publish(42)
    result = workflow.run(42, run_id="run-late")

    assert result.successful == 1
    assert transport.recipients_for("newsletter-issue-42") == ["reader@example.com"]


def test_cancelled_run_sends_nothing_and_resumes_on_replay(
    make_workflow: MakeWorkflow,
    add_subscriber: AddSubscriber,
    transport: FakeTransport,
) -> None:
    add_subscriber("one@example.com")
    add_subscriber("two@example.com")
    workflow = make_workflow()
    cancel_event = threading.Event()
    cancel_event.set()

    cancelled = workflow.run(1, run_id="run-cancel", cancel_event=cancel_event)

    assert cancelled.cancelled is True
    assert cancelled.skipped == 2
    assert {item["reason"] for item in cancelled.results} == {"cancelled"}
    assert transport.sent == []

    resumed = workflow.run(1, run_id="run-cancel")

    assert resumed.cancelled is False
    assert resumed.successful == 2
    assert len(transport.sent) == 2


def test_parallel_sends_deliver_once_per_recipient(
    make_workflow: MakeWorkflow,
    add_subscriber: AddSubscriber,
    transport: FakeTransport,
    session_factory: sessionmaker[Session],
) -> None:
    ids = [add_subscriber(f"reader{index}@example.com") for index in range(12)]

    result = make_workflow(dispatch_max_workers=4).run(9)

    assert result.successful == 12
    assert [item["recipient_id"] for item in result.results] == ids
    recipients = transport.recipients_for("newsletter-issue-9")
    assert len(recipients) == 12
    assert len(set(recipients)) == 12
    assert _count(session_factory, DispatchAttempt) == 12


@pytest.mark.parametrize(
    ("issue_number", "limit", "code"),
    [
        (0, None, "INVALID_ISSUE_NUMBER"),
        (-3, None, "INVALID_ISSUE_NUMBER"),
        (1, 0, "INVALID_LIMIT"),
    ],
)
def test_invalid_arguments_are_rejected(
    make_workflow: MakeWorkflow,
    session_factory: sessionmaker[Session],
    issue_number: int,
    limit: int | None,
    code: str,
) -> None:
    with pytest.raises(ServiceError) as excinfo:
        make_workflow().run(issue_number, limit=limit)

    assert excinfo.value.kind is ErrorKind.validation
    assert excinfo.value.code == code
    assert _count(session_factory, WorkflowRun) == 0


def test_reusing_a_run_id_for_another_issue_is_rejected(
    make_workflow: MakeWorkflow,
    add_subscriber: AddSubscriber,
    transport: FakeTransport,
    session_factory: sessionmaker[Session],
) -> None:
    add_subscriber("reader@example.com")
    workflow = make_workflow()
    workflow.run(5, run_id="shared")

    with pytest.raises(ServiceError) as excinfo:
        workflow.run(6, run_id="shared")

    assert excinfo.value.kind is ErrorKind.conflict
    assert excinfo.value.code == "RUN_PARAMS_MISMATCH"
    assert transport.recipients_for("newsletter-issue-6") == []
    with session_factory() as session:
        run = session.get(WorkflowRun, "shared")
        assert run is not None
        assert run.params == {"issue_number": 5, "limit": None}
        assert run.status == "completed"


def test_replaying_a_failed_run_with_another_issue_does_not_mix_content(
    make_workflow: MakeWorkflow,
    add_subscriber: AddSubscriber,
    transport: FakeTransport,
    content: FakeContentSource,
) -> None:
    add_subscriber("reader@example.com")
    content.publish(5, html="<h1>Only in five</h1>")
    transport.fail_next("reader@example.com", _permanent())
    workflow = make_workflow()
    assert workflow.run(5, run_id="shared").failed == 1

    with pytest.raises(ServiceError) as excinfo:
        workflow.run(6, run_id="shared")

    assert excinfo.value.code == "RUN_PARAMS_MISMATCH"
    assert transport.sent == []

    # The same request still replays.
    assert workflow.run(5, run_id="shared").successful == 1
    assert [item["html"] for item in transport.sent] == ["<h1>Only in five</h1>"]
    assert transport.sent[0]["dedupe_tag"] == "newsletter-issue-5"


def test_changing_the_limit_on_replay_is_rejected(
    make_workflow: MakeWorkflow,
    add_subscriber: AddSubscriber,
) -> None:
    add_subscriber("reader@example.com")
    workflow = make_workflow()
    workflow.run(5, run_id="limited", limit=1)

    with pytest.raises(ServiceError) as excinfo:
        workflow.run(5, run_id="limited")

    assert excinfo.value.code == "RUN_PARAMS_MISMATCH"


def test_send_in_flight_under_another_run_is_not_duplicated(
    make_workflow: MakeWorkflow,
    add_subscriber: AddSubscriber,
    transport: FakeTransport,
    session_factory: sessionmaker[Session],
) -> None:
    subscriber_id = add_subscriber("reader@example.com")
    with session_factory() as session:
        session.add(
            DispatchAttempt(
                subscription_id=subscriber_id,
                issue_number=2,
                sent_at=datetime.now(UTC),
                attempt_count=1,
            )
        )
        session.commit()

    result = make_workflow().run(2, run_id="second-run")

    assert result.failed == 1
    assert result.results[0]["retryable"] is True
    assert "already in progress" in result.results[0]["error"]
    assert transport.sent == []
    attempt = _attempt(session_factory, subscriber_id, 2)
    assert attempt is not None
    assert attempt.attempt_count == 1
    assert attempt.last_error is None

    # Once the claim has expired the send goes ahead.
    replay = make_workflow(send_claim_ttl_seconds=0).run(2, run_id="second-run")

    assert replay.successful == 1
    assert transport.recipients_for("newsletter-issue-2") == ["reader@example.com"]
    attempt = _attempt(session_factory, subscriber_id, 2)
    assert attempt is not None
    assert attempt.attempt_count == 2
    assert attempt.provider_message_id == "msg-1"
