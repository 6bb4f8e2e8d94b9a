from __future__ import annotations

import logging
import re
import secrets
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from newsletter.db.models import Subscriber
from newsletter.services.errors import ServiceError
from newsletter.services.subscription_store import SubscriptionStore

logger = logging.getLogger(__name__)

_EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


def is_valid_email(email: object) -> bool:
    return isinstance(email, str) and bool(_EMAIL_PATTERN.fullmatch(email))


def mint_confirm_token() -> str:
    return secrets.token_urlsafe(32)


def no_pending_confirmation() -> ServiceError:
    return ServiceError.conflict(
        "Subscription has no pending confirmation", code="CONFIRMATION_NOT_PENDING"
    )


@dataclass(frozen=True)
class SubscribeResult:
    subscriber_id: int
    already_had_account: bool
    confirm_token: str


@dataclass(frozen=True)
class SubscriptionStatus:
    subscriber_id: int
    email: str
    name: str | None
    subscribed: bool
    confirmed: bool
    confirm_token: str | None
    subscribed_at: datetime
    unsubscribed_at: datetime | None
    confirmed_at: datetime | None
    latest_issue_sent: int | None
    issues_received_count: int

    @classmethod
    def from_row(cls, row: Subscriber) -> SubscriptionStatus:
        return cls(
            subscriber_id=row.id,
            email=row.email,
            name=row.name,
            subscribed=row.unsubscribed_at is None,
            confirmed=row.confirmed_at is not None,
            confirm_token=row.confirm_token,
            subscribed_at=row.subscribed_at,
            unsubscribed_at=row.unsubscribed_at,
            confirmed_at=row.confirmed_at,
            latest_issue_sent=row.latest_issue_sent,
            issues_received_count=row.issues_received_count,
        )


class SubscriptionService:
    def __init__(
        self,
        store: SubscriptionStore | None = None,
        token_factory: Callable[[], str] = mint_confirm_token,
    ) -> None:
        self.store = store or SubscriptionStore()
        self.token_factory = token_factory

    def subscribe(
        self, session: Session, *, email: str, name: str | None = None
    ) -> SubscribeResult:
        self._require_valid_email(email)
        clean_name = name.strip() if isinstance(name, str) and name.strip() else None
        now = datetime.now(UTC)
        token = self.token_factory()

        try:
            existing = self.store.get_by_email(session, email)
            if existing is None:
                subscriber = self.store.insert(
                    session,
                    email=email,
                    name=clean_name,
                    confirm_token=token,
                    now=now,
                )
                subscriber_id = subscriber.id
                session.commit()
                logger.info("subscriber_created", extra={"subscriber_id": subscriber_id})
                return SubscribeResult(
                    subscriber_id=subscriber_id,
                    already_had_account=False,
                    confirm_token=token,
                )

            if existing.unsubscribed_at is None:
                raise ServiceError.conflict(
                    "Email already subscribed", code="ALREADY_SUBSCRIBED"
                )

            subscriber_id = existing.id
            changed = self.store.reactivate(
                session,
                subscriber_id=subscriber_id,
                name=clean_name,
                confirm_token=token,
                now=now,
            )
            if changed == 0:
                raise ServiceError.conflict(
                    "Email already subscribed", code="ALREADY_SUBSCRIBED"
                )
            session.commit()
        except ServiceError:
            session.rollback()
            raise
        except IntegrityError as exc:
            session.rollback()
            raise ServiceError.conflict(
                "Email already subscribed", code="ALREADY_SUBSCRIBED"
            ) from exc
        except SQLAlchemyError as exc:
            session.rollback()
            logger.exception("subscribe_failed")
            raise ServiceError.internal(
                "Internal server error during subscription", code="PERSISTENCE_ERROR"
            ) from exc

        logger.info("subscriber_resubscribed", extra={"subscriber_id": subscriber_id})
        return SubscribeResult(
            subscriber_id=subscriber_id,
            already_had_account=True,
            confirm_token=token,
        )

    def unsubscribe(self, session: Session, *, email: str) -> None:
        self._require_valid_email(email)

        try:
            existing = self.store.get_by_email(session, email)
            if existing is None:
                raise ServiceError.not_found("Email not found", code="EMAIL_NOT_FOUND")
            if existing.unsubscribed_at is not None:
                raise ServiceError.conflict(
                    "Email already unsubscribed", code="ALREADY_UNSUBSCRIBED"
                )

            changed = self.store.mark_unsubscribed(
                session, email=email, now=datetime.now(UTC)
            )
            if changed == 0:
                # Pre-check passed but a concurrent writer got there first.
                logger.error(
                    "unsubscribe_lost_race", extra={"subscriber_id": existing.id}
                )
                raise ServiceError.internal(
                    "Internal server error during unsubscription",
                    code="UNSUBSCRIBE_RACE",
                )
            session.commit()
        except ServiceError:
            session.rollback()
            raise
        except SQLAlchemyError as exc:
            session.rollback()
            logger.exception("unsubscribe_failed")
            raise ServiceError.internal(
                "Internal server error during unsubscription", code="PERSISTENCE_ERROR"
            ) from exc

        logger.info("subscriber_unsubscribed", extra={"subscriber_id": existing.id})

    def confirm(self, session: Session, *, token: str | None) -> None:
        if not isinstance(token, str) or not token.strip():
            raise ServiceError.validation(
                "Confirmation token is required", code="TOKEN_REQUIRED"
            )

        try:
            changed = self.store.consume_confirm_token(
                session, token=token.strip(), now=datetime.now(UTC)
            )
            if changed == 0:
                # Unknown and already-consumed tokens are indistinguishable.
                raise ServiceError.not_found(
                    "Invalid or expired token", code="TOKEN_INVALID"
                )
            session.commit()
        except ServiceError:
            session.rollback()
            raise
        except SQLAlchemyError as exc:
            session.rollback()
            logger.exception("confirm_failed")
            raise ServiceError.internal(
                "Internal server error during confirmation", code="PERSISTENCE_ERROR"
            ) from exc

        logger.info("subscription_confirmed")

    def status(self, session: Session, *, email: str) -> SubscriptionStatus | None:
        try:
            row = self.store.get_by_email(session, email)
        except SQLAlchemyError as exc:
            logger.exception("subscription_status_failed")
            raise ServiceError.internal(
                "Internal server error while fetching subscription status",
                code="PERSISTENCE_ERROR",
            ) from exc
        if row is None:
            return None
        return SubscriptionStatus.from_row(row)

    def pending_confirmation(self, session: Session, *, email: str) -> SubscriptionStatus:
        """Status of a subscription that still awaits double opt-in."""
        self._require_valid_email(email)
        current = self.status(session, email=email)
        if current is None:
            raise ServiceError.not_found("Email not found", code="EMAIL_NOT_FOUND")
        if not current.subscribed:
            raise ServiceError.conflict(
                "Email is unsubscribed", code="ALREADY_UNSUBSCRIBED"
            )
        if current.confirmed:
            raise ServiceError.conflict(
                "Subscription already confirmed", code="ALREADY_CONFIRMED"
            )
        if current.confirm_token is None:
            raise no_pending_confirmation()
        return current

    def _require_valid_email(self, email: object) -> None:
        if not is_valid_email(email):
            raise ServiceError.validation(
                "Invalid email address", code="INVALID_EMAIL"
            )
