from __future__ import annotations

import logging
from typing import Any

from newsletter.notifications.config import load_newsletter_config
from newsletter.services.newsletter_dispatch_workflow import (
    NewsletterDispatchWorkflow,
    WorkflowFatalError,
)
from newsletter.worker.celery_app import celery_app

logger = logging.getLogger(__name__)

MAX_RETRIES = 5
RETRY_COUNTDOWN_SECONDS = 300


def has_retryable_failures(results: list[dict[str, Any]]) -> bool:
    return any(
        item.get("success") is False and item.get("retryable", True)
        for item in results
    )


@celery_app.task(
    bind=True,
    name="newsletter.worker.tasks.send_newsletter_issue",
    autoretry_for=(WorkflowFatalError,),
    retry_backoff=60,
    retry_backoff_max=3600,
    max_retries=MAX_RETRIES,
)
def send_newsletter_issue(
    self,
    issue_number: int,
    dry_run: bool = False,
    limit: int | None = None,
) -> dict[str, Any]:
    # Retries keep the task id, so they replay the same workflow run.
    run_id = self.request.id
    workflow = NewsletterDispatchWorkflow.from_config(load_newsletter_config())
    result = workflow.run(issue_number, dry_run=dry_run, limit=limit, run_id=run_id)

    payload = {
        "run_id": result.run_id,
        "issue_number": result.issue_number,
        "dry_run": result.dry_run,
        "total_recipients": result.total_recipients,
        "successful": result.successful,
        "skipped": result.skipped,
        "failed": result.failed,
    }
    logger.info("send_newsletter_issue_summary", extra=payload)

    # Permanent rejections would fail the same way on every replay.
    if has_retryable_failures(result.results) and self.request.retries < MAX_RETRIES:
        raise self.retry(countdown=RETRY_COUNTDOWN_SECONDS)
    return payload
