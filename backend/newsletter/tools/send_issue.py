from __future__ import annotations

import json
import logging
import sys

from newsletter.notifications.config import load_newsletter_config
from newsletter.services.errors import ServiceError
from newsletter.services.newsletter_dispatch_workflow import (
    NewsletterDispatchWorkflow,
    WorkflowFatalError,
)


def main(argv: list[str] | None = None) -> int:
    import argparse

    parser = argparse.ArgumentParser(
        description="Send a newsletter issue to all eligible subscribers."
    )
    parser.add_argument("issue_number", type=int, help="Issue number to send")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Only list the recipients; send nothing and write nothing",
    )
    parser.add_argument("--limit", type=int, default=None, help="Cap the recipient snapshot")
    parser.add_argument(
        "--run-id",
        type=str,
        default=None,
        help="Resume a previous run instead of starting a new one",
    )
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )

    workflow = NewsletterDispatchWorkflow.from_config(load_newsletter_config())
    try:
        result = workflow.run(
            args.issue_number,
            dry_run=args.dry_run,
            limit=args.limit,
            run_id=args.run_id,
        )
    except (ServiceError, WorkflowFatalError) as exc:
        print(f"FAILED: {exc}", file=sys.stderr)
        return 2

    print(json.dumps(result.as_dict(), indent=2, default=str))
    return 1 if result.failed else 0


if __name__ == "__main__":
    raise SystemExit(main())
