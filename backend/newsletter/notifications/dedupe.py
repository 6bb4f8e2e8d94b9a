from __future__ import annotations


def build_issue_dedupe_tag(issue_number: int) -> str:
    return f"newsletter-issue-{issue_number}"


def build_confirmation_tag() -> str:
    return "newsletter-confirmation"
