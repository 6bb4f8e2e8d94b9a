from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session

from newsletter.api.dependencies import get_bot_verifier, get_config, get_email_transport
from newsletter.api.schemas import (
    ConfirmRequest,
    MessageResponse,
    ResendConfirmationRequest,
    SubscribeRequest,
    SubscriptionStatusResponse,
    UnsubscribeRequest,
)
from newsletter.db.session import get_db_session
from newsletter.notifications.config import NewsletterConfig
from newsletter.notifications.transport import EmailTransport
from newsletter.security.turnstile import BotVerifier
from newsletter.services.confirmation_mailer import ConfirmationMailer
from newsletter.services.errors import ServiceError
from newsletter.services.subscription_service import (
    SubscriptionService,
    no_pending_confirmation,
)

router = APIRouter(tags=["subscriptions"])


@router.post("/subscribe", response_model=MessageResponse)
def subscribe(
    payload: SubscribeRequest,
    request: Request,
    session: Session = Depends(get_db_session),
    config: NewsletterConfig = Depends(get_config),
    transport: EmailTransport = Depends(get_email_transport),
    verifier: BotVerifier = Depends(get_bot_verifier),
) -> MessageResponse:
    remote_ip = request.client.host if request.client else None
    if not verifier.verify(payload.turnstile_token, remote_ip=remote_ip):
        raise ServiceError.validation(
            "Bot verification failed", code="BOT_VERIFICATION_FAILED"
        )

    result = SubscriptionService().subscribe(
        session, email=payload.email or "", name=payload.name
    )
    ConfirmationMailer(config, transport).send(
        email=payload.email or "",
        name=payload.name,
        confirm_token=result.confirm_token,
    )

    if result.already_had_account:
        return MessageResponse(message="Successfully re-subscribed")
    return MessageResponse(message="Successfully subscribed")


@router.post("/unsubscribe", response_model=MessageResponse)
def unsubscribe(
    payload: UnsubscribeRequest,
    session: Session = Depends(get_db_session),
) -> MessageResponse:
    SubscriptionService().unsubscribe(session, email=payload.email or "")
    return MessageResponse(message="Successfully unsubscribed")


@router.post("/confirm", response_model=MessageResponse)
def confirm(
    payload: ConfirmRequest,
    session: Session = Depends(get_db_session),
) -> MessageResponse:
    SubscriptionService().confirm(session, token=payload.token)
    return MessageResponse(message="Subscription confirmed")


@router.post("/confirm/resend", response_model=MessageResponse)
def resend_confirmation(
    payload: ResendConfirmationRequest,
    session: Session = Depends(get_db_session),
    config: NewsletterConfig = Depends(get_config),
    transport: EmailTransport = Depends(get_email_transport),
) -> MessageResponse:
    pending = SubscriptionService().pending_confirmation(
        session, email=payload.email or ""
    )
    if pending.confirm_token is None:
        raise no_pending_confirmation()
    sent = ConfirmationMailer(config, transport).send(
        email=pending.email,
        name=pending.name,
        confirm_token=pending.confirm_token,
    )
    if not sent:
        raise ServiceError.internal(
            "Could not send confirmation email", code="CONFIRMATION_SEND_FAILED"
        )
    return MessageResponse(message="Confirmation email sent")


@router.get("/subscriptions/status", response_model=SubscriptionStatusResponse)
def subscription_status(
    email: str = Query(..., min_length=3),
    session: Session = Depends(get_db_session),
) -> SubscriptionStatusResponse:
    status = SubscriptionService().status(session, email=email)
    if status is None:
        raise ServiceError.not_found("Email not found", code="EMAIL_NOT_FOUND")

    return SubscriptionStatusResponse(
        email=status.email,
        name=status.name,
        subscribed=status.subscribed,
        confirmed=status.confirmed,
        subscribed_at=status.subscribed_at,
        unsubscribed_at=status.unsubscribed_at,
        confirmed_at=status.confirmed_at,
        latest_issue_sent=status.latest_issue_sent,
        issues_received_count=status.issues_received_count,
    )
