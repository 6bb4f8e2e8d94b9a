from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any, Protocol

import httpx


class IssueContentError(Exception):
    """Raised when an issue's body or metadata cannot be loaded."""


@dataclass(frozen=True)
class IssueMetadata:
    issue_number: int
    title: str
    description: str
    web_url: str

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> IssueMetadata:
        return cls(
            issue_number=int(payload["issue_number"]),
            title=str(payload["title"]),
            description=str(payload.get("description") or ""),
            web_url=str(payload["web_url"]),
        )


class IssueContentSource(Protocol):
    def load_html(self, issue_number: int) -> str: ...

    def load_metadata(self, issue_number: int) -> IssueMetadata: ...


class HttpIssueContentSource:
    """Reads rendered issues from the static site build."""

    def __init__(
        self,
        canonical_url: str,
        http_transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.canonical_url = canonical_url.rstrip("/")
        self.http_transport = http_transport

    def load_html(self, issue_number: int) -> str:
        response = self._get(f"/newsletter/email/{issue_number}/")
        return response.text

    def load_metadata(self, issue_number: int) -> IssueMetadata:
        response = self._get("/newsletter/issues.json")
        try:
            data = response.json()
        except ValueError as exc:
            raise IssueContentError("issues.json is not valid JSON") from exc

        issues = data.get("issues") if isinstance(data, dict) else None
        if not isinstance(issues, list):
            raise IssueContentError("issues.json has no issues list")

        for issue in issues:
            if isinstance(issue, dict) and issue.get("issueNumber") == issue_number:
                title = issue.get("title")
                web_url = issue.get("webUrl")
                if not isinstance(title, str) or not isinstance(web_url, str):
                    raise IssueContentError(
                        f"Issue {issue_number} metadata is incomplete"
                    )
                return IssueMetadata(
                    issue_number=issue_number,
                    title=title,
                    description=str(issue.get("description") or ""),
                    web_url=web_url,
                )

        raise IssueContentError(f"Issue {issue_number} not found in metadata")

    def _get(self, path: str) -> httpx.Response:
        try:
            with httpx.Client(
                base_url=self.canonical_url,
                timeout=10.0,
                transport=self.http_transport,
                follow_redirects=True,
            ) as client:
                response = client.get(path)
        except httpx.HTTPError as exc:
            raise IssueContentError(f"Failed to fetch {path}: {exc}") from exc

        if response.status_code != 200:
            raise IssueContentError(
                f"Failed to fetch {path}: HTTP {response.status_code}"
            )
        return response
