from __future__ import annotations

import httpx

from newsletter.notifications.config import NewsletterConfig
from newsletter.notifications.errors import EmailTransportError


class PostmarkEmailProvider:
    def __init__(
        self,
        config: NewsletterConfig,
        http_transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.config = config
        self.http_transport = http_transport

    def send(
        self,
        *,
        recipient: str,
        subject: str,
        html: str,
        text: str,
        dedupe_tag: str,
    ) -> str:
        recipient_domain = recipient.split("@")[-1].lower()
        if (
            self.config.allowed_recipient_domains
            and recipient_domain not in self.config.allowed_recipient_domains
        ):
            raise EmailTransportError(
                code="RECIPIENT_DOMAIN_NOT_ALLOWED",
                message="recipient domain is not in whitelist",
                retryable=False,
            )

        request_payload = {
            "From": f"{self.config.from_name} <{self.config.from_email}>",
            "To": recipient,
            "Subject": subject,
            "HtmlBody": html,
            "TextBody": text,
            "Tag": dedupe_tag,
            "TrackOpens": False,
            "TrackLinks": "None",
            "MessageStream": self.config.postmark_message_stream,
        }

        try:
            with self._client() as client:
                response = client.post("/email", json=request_payload)
        except httpx.TimeoutException as exc:
            raise EmailTransportError(
                code="TIMEOUT", message=str(exc), retryable=True
            ) from exc
        except httpx.HTTPError as exc:
            raise EmailTransportError(
                code="HTTP_ERROR", message=str(exc), retryable=True
            ) from exc

        if 200 <= response.status_code < 300:
            body = response.json() if response.content else {}
            message_id = body.get("MessageID") if isinstance(body, dict) else None
            if not isinstance(message_id, str) or not message_id:
                raise EmailTransportError(
                    code="MISSING_MESSAGE_ID",
                    message="provider accepted the message without a MessageID",
                    retryable=False,
                )
            return message_id

        if response.status_code in {408, 409, 429} or response.status_code >= 500:
            raise EmailTransportError(
                code=f"HTTP_{response.status_code}",
                message=response.text[:500],
                retryable=True,
            )

        raise EmailTransportError(
            code=f"HTTP_{response.status_code}",
            message=response.text[:500],
            retryable=False,
        )

    def was_already_sent(self, *, recipient: str, dedupe_tag: str) -> bool:
        params = {
            "recipient": recipient,
            "tag": dedupe_tag,
            "count": 1,
            "offset": 0,
        }
        try:
            with self._client() as client:
                response = client.get("/messages/outbound", params=params)
        except httpx.HTTPError as exc:
            raise EmailTransportError(
                code="HTTP_ERROR", message=str(exc), retryable=True
            ) from exc

        if response.status_code != 200:
            raise EmailTransportError(
                code=f"HTTP_{response.status_code}",
                message=response.text[:500],
                retryable=response.status_code == 429 or response.status_code >= 500,
            )

        body = response.json() if response.content else {}
        if not isinstance(body, dict):
            return False
        total = body.get("TotalCount") or 0
        messages = body.get("Messages") or []
        return int(total) > 0 and len(messages) > 0

    def _client(self) -> httpx.Client:
        if not self.config.postmark_api_token:
            raise EmailTransportError(
                code="POSTMARK_API_TOKEN_MISSING",
                message="POSTMARK_API_TOKEN missing",
                retryable=False,
            )
        return httpx.Client(
            base_url=self.config.postmark_base_url,
            timeout=10.0,
            transport=self.http_transport,
            headers={
                "X-Postmark-Server-Token": self.config.postmark_api_token,
                "accept": "application/json",
                "content-type": "application/json",
            },
        )
