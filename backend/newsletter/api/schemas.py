from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field


class SubscribeRequest(BaseModel):
    # Missing fields are reported by the service as 400, not by FastAPI as 422.
    email: str | None = None
    name: str | None = Field(default=None, max_length=200)
    turnstile_token: str | None = None


class UnsubscribeRequest(BaseModel):
    email: str | None = None


class ConfirmRequest(BaseModel):
    token: str | None = None


class ResendConfirmationRequest(BaseModel):
    email: str | None = None


class MessageResponse(BaseModel):
    message: str


class SubscriptionStatusResponse(BaseModel):
    email: str
    name: str | None
    subscribed: bool
    confirmed: bool
    subscribed_at: datetime
    unsubscribed_at: datetime | None
    confirmed_at: datetime | None
    latest_issue_sent: int | None
    issues_received_count: int


class ErrorEnvelope(BaseModel):
    error: dict[str, Any]
    message: str
