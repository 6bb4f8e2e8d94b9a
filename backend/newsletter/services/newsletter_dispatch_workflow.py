from __future__ import annotations

import logging
import threading
import time
import uuid
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from typing import Any

from sqlalchemy.orm import Session, sessionmaker

from newsletter.content.issue_source import (
    HttpIssueContentSource,
    IssueContentError,
    IssueContentSource,
    IssueMetadata,
)
from newsletter.db.session import get_session_factory
from newsletter.notifications.config import NewsletterConfig
from newsletter.notifications.dedupe import build_issue_dedupe_tag
from newsletter.notifications.errors import EmailTransportError
from newsletter.notifications.templates import RenderedEmail, render_issue_email
from newsletter.notifications.transport import EmailTransport, build_email_transport
from newsletter.services.dispatch_ledger import (
    PROVIDER_CONFIRMED_MESSAGE_ID,
    DispatchLedger,
)
from newsletter.services.errors import ServiceError
from newsletter.services.step_log import StepLog
from newsletter.services.subscription_store import SubscriptionStore

logger = logging.getLogger(__name__)

WORKFLOW_NAME = "send-newsletter-issue"


class WorkflowFatalError(Exception):
    """A step failure that aborts the whole run before anything is sent."""


class SendInProgressError(Exception):
    """Another worker holds an unexpired claim on this recipient's send."""


@dataclass(frozen=True)
class DispatchResult:
    issue_number: int
    dry_run: bool
    total_recipients: int
    successful: int = 0
    skipped: int = 0
    failed: int = 0
    cancelled: bool = False
    run_id: str | None = None
    results: list[dict[str, Any]] = field(default_factory=list)
    recipients: list[dict[str, Any]] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


class NewsletterDispatchWorkflow:
    """Sends one issue to every eligible subscriber, at most once each.

    Steps are memoized in the :class:`StepLog` under ``run_id``: replaying a
    run returns the recorded content, metadata and recipient snapshot, and
    skips send steps that already completed. Independently of the step log,
    each send step re-checks eligibility and the dispatch ledger, so a fresh
    run over the same issue is safe as well.
    """

    def __init__(
        self,
        *,
        session_factory: sessionmaker[Session],
        content_source: IssueContentSource,
        transport: EmailTransport,
        config: NewsletterConfig,
        step_log: StepLog | None = None,
        store: SubscriptionStore | None = None,
        ledger: DispatchLedger | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.session_factory = session_factory
        self.content_source = content_source
        self.transport = transport
        self.config = config
        self.step_log = step_log or StepLog(session_factory)
        self.store = store or SubscriptionStore()
        self.ledger = ledger or DispatchLedger()
        self.sleep = sleep
        self.max_workers = max(1, config.dispatch_max_workers)

    @classmethod
    def from_config(
        cls,
        config: NewsletterConfig,
        session_factory: sessionmaker[Session] | None = None,
    ) -> NewsletterDispatchWorkflow:
        return cls(
            session_factory=session_factory or get_session_factory(),
            content_source=HttpIssueContentSource(config.canonical_url),
            transport=build_email_transport(config),
            config=config,
        )

    def run(
        self,
        issue_number: int,
        *,
        dry_run: bool = False,
        limit: int | None = None,
        run_id: str | None = None,
        cancel_event: threading.Event | None = None,
    ) -> DispatchResult:
        if isinstance(issue_number, bool) or not isinstance(issue_number, int) or issue_number < 1:
            raise ServiceError.validation(
                "issue_number must be a positive integer", code="INVALID_ISSUE_NUMBER"
            )
        if limit is not None and (isinstance(limit, bool) or not isinstance(limit, int) or limit < 1):
            raise ServiceError.validation(
                "limit must be a positive integer", code="INVALID_LIMIT"
            )

        logger.info(
            "newsletter_dispatch_started",
            extra={"issue_number": issue_number, "dry_run": dry_run, "limit": limit},
        )

        if dry_run:
            return self._preview(issue_number, limit=limit)

        run_id = run_id or uuid.uuid4().hex
        replay = self.step_log.start_run(
            run_id=run_id,
            workflow=WORKFLOW_NAME,
            params={"issue_number": issue_number, "limit": limit},
        )
        if replay:
            logger.info("newsletter_dispatch_replay", extra={"run_id": run_id})

        try:
            html = self.step_log.do(
                run_id, "load-issue-html", lambda: self.load_issue_html(issue_number)
            )
            metadata = IssueMetadata.from_dict(
                self.step_log.do(
                    run_id,
                    "load-issue-metadata",
                    lambda: self.load_issue_metadata(issue_number).as_dict(),
                )
            )
            recipients = self.step_log.do(
                run_id,
                "get-recipients",
                lambda: self.compute_recipients(issue_number, limit=limit),
            )
        except WorkflowFatalError as exc:
            self.step_log.fail_run(run_id, error=str(exc))
            logger.error(
                "newsletter_dispatch_aborted",
                extra={"run_id": run_id, "issue_number": issue_number, "error": str(exc)},
            )
            raise

        logger.info(
            "newsletter_recipients_selected",
            extra={"run_id": run_id, "issue_number": issue_number, "count": len(recipients)},
        )

        results = self._send_all(
            run_id=run_id,
            issue_number=issue_number,
            html=html,
            metadata=metadata,
            recipients=recipients,
            cancel_event=cancel_event,
        )

        successful = sum(1 for item in results if item.get("success") is True)
        skipped = sum(1 for item in results if item.get("skipped") is True)
        result = DispatchResult(
            run_id=run_id,
            issue_number=issue_number,
            dry_run=False,
            total_recipients=len(recipients),
            successful=successful,
            skipped=skipped,
            failed=len(results) - successful - skipped,
            cancelled=cancel_event is not None and cancel_event.is_set(),
            results=results,
        )
        self.step_log.finish_run(run_id, result=result.as_dict())
        logger.info(
            "newsletter_dispatch_finished",
            extra={
                "run_id": run_id,
                "issue_number": issue_number,
                "total_recipients": result.total_recipients,
                "successful": result.successful,
                "skipped": result.skipped,
                "failed": result.failed,
            },
        )
        return result

    def load_issue_html(self, issue_number: int) -> str:
        try:
            html = self.content_source.load_html(issue_number)
        except IssueContentError as exc:
            raise WorkflowFatalError(
                f"Could not load HTML for issue {issue_number}: {exc}"
            ) from exc
        if not isinstance(html, str) or not html.strip():
            raise WorkflowFatalError(f"Issue HTML is empty for issue {issue_number}")
        return html

    def load_issue_metadata(self, issue_number: int) -> IssueMetadata:
        try:
            return self.content_source.load_metadata(issue_number)
        except IssueContentError as exc:
            raise WorkflowFatalError(
                f"Could not load metadata for issue {issue_number}: {exc}"
            ) from exc

    def compute_recipients(
        self, issue_number: int, *, limit: int | None = None
    ) -> list[dict[str, Any]]:
        with self.session_factory() as session:
            rows = self.store.list_eligible(
                session, issue_number=issue_number, limit=limit
            )
            return [
                {
                    "id": row.id,
                    "email": row.email,
                    "name": row.name,
                    "latest_issue_sent": row.latest_issue_sent,
                }
                for row in rows
            ]

    def send_one(
        self,
        *,
        subscriber_id: int,
        issue_number: int,
        html: str,
        metadata: IssueMetadata,
    ) -> dict[str, Any]:
        tag = build_issue_dedupe_tag(issue_number)

        with self.session_factory() as session:
            recipient = self.store.get_if_eligible(
                session, subscriber_id=subscriber_id, issue_number=issue_number
            )
            if recipient is None:
                logger.info(
                    "newsletter_recipient_no_longer_eligible",
                    extra={"recipient_id": subscriber_id, "issue_number": issue_number},
                )
                return {
                    "skipped": True,
                    "reason": "no_longer_eligible",
                    "recipient_id": subscriber_id,
                }
            email = recipient.email
            name = recipient.name

            attempt = self.ledger.get(
                session, subscriber_id=subscriber_id, issue_number=issue_number
            )
            prior_message_id: str | None = None
            if attempt is not None and attempt.provider_message_id:
                prior_message_id = attempt.provider_message_id
            elif attempt is not None and self._provider_confirms_delivery(email, tag):
                # An earlier attempt started but never recorded its outcome.
                prior_message_id = PROVIDER_CONFIRMED_MESSAGE_ID

            if prior_message_id is not None:
                self._record_delivery(
                    session,
                    subscriber_id=subscriber_id,
                    issue_number=issue_number,
                    message_id=prior_message_id,
                    write_ledger=not (attempt is not None and attempt.provider_message_id),
                )
                session.commit()
                logger.info(
                    "newsletter_already_sent",
                    extra={"recipient_id": subscriber_id, "issue_number": issue_number},
                )
                return {
                    "skipped": True,
                    "reason": "already_sent",
                    "recipient_id": subscriber_id,
                    "email": email,
                    "message_id": prior_message_id,
                }

            now = datetime.now(UTC)
            if attempt is not None and self.ledger.is_claim_live(
                attempt, now=now, ttl_seconds=self.config.send_claim_ttl_seconds
            ):
                raise SendInProgressError(
                    f"Send to recipient {subscriber_id} for issue {issue_number} "
                    "is already in progress"
                )
            claimed = self.ledger.claim(
                session,
                subscriber_id=subscriber_id,
                issue_number=issue_number,
                now=now,
                observed=attempt,
            )
            if not claimed:
                session.rollback()
                raise SendInProgressError(
                    f"Send to recipient {subscriber_id} for issue {issue_number} "
                    "was claimed by another worker"
                )
            session.commit()

        rendered = render_issue_email(
            metadata=metadata,
            html_content=html,
            recipient_name=name,
            unsubscribe_url=self.config.unsubscribe_url,
        )
        try:
            message_id = self._send_with_retry(email=email, rendered=rendered, tag=tag)
        except EmailTransportError as exc:
            with self.session_factory() as session:
                self.ledger.record_failure(
                    session,
                    subscriber_id=subscriber_id,
                    issue_number=issue_number,
                    error=str(exc),
                    now=datetime.now(UTC),
                )
                session.commit()
            raise

        with self.session_factory() as session:
            self._record_delivery(
                session,
                subscriber_id=subscriber_id,
                issue_number=issue_number,
                message_id=message_id,
            )
            session.commit()

        logger.info(
            "newsletter_sent",
            extra={
                "recipient_id": subscriber_id,
                "issue_number": issue_number,
                "message_id": message_id,
            },
        )
        return {
            "success": True,
            "recipient_id": subscriber_id,
            "email": email,
            "message_id": message_id,
        }

    def _preview(self, issue_number: int, *, limit: int | None) -> DispatchResult:
        # Dry runs read but never write: no run row, no steps, no ledger.
        self.load_issue_html(issue_number)
        self.load_issue_metadata(issue_number)
        recipients = self.compute_recipients(issue_number, limit=limit)
        logger.info(
            "newsletter_dispatch_preview",
            extra={"issue_number": issue_number, "count": len(recipients)},
        )
        return DispatchResult(
            issue_number=issue_number,
            dry_run=True,
            total_recipients=len(recipients),
            recipients=[
                {"id": item["id"], "email": item["email"], "name": item["name"]}
                for item in recipients
            ],
        )

    def _send_all(
        self,
        *,
        run_id: str,
        issue_number: int,
        html: str,
        metadata: IssueMetadata,
        recipients: list[dict[str, Any]],
        cancel_event: threading.Event | None,
    ) -> list[dict[str, Any]]:
        results: list[dict[str, Any]] = [{} for _ in recipients]
        with ThreadPoolExecutor(
            max_workers=self.max_workers, thread_name_prefix="newsletter-send"
        ) as executor:
            future_to_index = {
                executor.submit(
                    self._run_send_step,
                    run_id=run_id,
                    recipient=recipient,
                    issue_number=issue_number,
                    html=html,
                    metadata=metadata,
                    cancel_event=cancel_event,
                ): index
                for index, recipient in enumerate(recipients)
            }
            for future in as_completed(future_to_index):
                results[future_to_index[future]] = future.result()
        return results

    def _run_send_step(
        self,
        *,
        run_id: str,
        recipient: dict[str, Any],
        issue_number: int,
        html: str,
        metadata: IssueMetadata,
        cancel_event: threading.Event | None,
    ) -> dict[str, Any]:
        recipient_id = int(recipient["id"])
        if cancel_event is not None and cancel_event.is_set():
            # No step row is written, so a replay of this run picks it up.
            return {"skipped": True, "reason": "cancelled", "recipient_id": recipient_id}

        try:
            return self.step_log.do(
                run_id,
                f"send:{recipient_id}",
                lambda: self.send_one(
                    subscriber_id=recipient_id,
                    issue_number=issue_number,
                    html=html,
                    metadata=metadata,
                ),
            )
        except Exception as exc:
            logger.exception(
                "newsletter_send_step_failed",
                extra={"run_id": run_id, "recipient_id": recipient_id},
            )
            return {
                "success": False,
                "recipient_id": recipient_id,
                "email": recipient.get("email"),
                "error": str(exc),
                "retryable": not (
                    isinstance(exc, EmailTransportError) and not exc.retryable
                ),
            }

    def _send_with_retry(self, *, email: str, rendered: RenderedEmail, tag: str) -> str:
        max_attempts = max(1, self.config.send_max_attempts)
        backoff = self.config.send_retry_backoff_seconds
        attempt_no = 0
        while True:
            attempt_no += 1
            try:
                return self.transport.send(
                    recipient=email,
                    subject=rendered.subject,
                    html=rendered.html_body,
                    text=rendered.text_body,
                    dedupe_tag=tag,
                )
            except EmailTransportError as exc:
                if not exc.retryable or attempt_no >= max_attempts:
                    raise
                logger.warning(
                    "newsletter_send_retrying",
                    extra={"attempt": attempt_no, "error_code": exc.code},
                )
                if backoff:
                    self.sleep(backoff[min(attempt_no - 1, len(backoff) - 1)])
                # A timed out request may still have been accepted.
                if self._provider_confirms_delivery(email, tag):
                    return PROVIDER_CONFIRMED_MESSAGE_ID

    def _provider_confirms_delivery(self, email: str, tag: str) -> bool:
        try:
            return self.transport.was_already_sent(recipient=email, dedupe_tag=tag)
        except EmailTransportError as exc:
            logger.warning(
                "newsletter_provider_lookup_failed",
                extra={"error_code": exc.code, "dedupe_tag": tag},
            )
            return False

    def _record_delivery(
        self,
        session: Session,
        *,
        subscriber_id: int,
        issue_number: int,
        message_id: str,
        write_ledger: bool = True,
    ) -> None:
        now = datetime.now(UTC)
        self.store.advance_issue_high_water_mark(
            session, subscriber_id=subscriber_id, issue_number=issue_number, now=now
        )
        if write_ledger:
            self.ledger.record_success(
                session,
                subscriber_id=subscriber_id,
                issue_number=issue_number,
                provider_message_id=message_id,
                now=now,
            )
