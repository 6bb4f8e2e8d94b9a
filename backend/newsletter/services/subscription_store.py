from __future__ import annotations

from datetime import datetime

from sqlalchemy import ColumnElement, and_, or_, select, update
from sqlalchemy.orm import Session

from newsletter.db.models import Subscriber


def eligible_for_issue(issue_number: int) -> ColumnElement[bool]:
    return and_(
        Subscriber.unsubscribed_at.is_(None),
        Subscriber.confirmed_at.is_not(None),
        or_(
            Subscriber.latest_issue_sent.is_(None),
            Subscriber.latest_issue_sent < issue_number,
        ),
    )


class SubscriptionStore:
    """Row-level access to ``subscriptions``.

    Every mutation is one conditional UPDATE whose WHERE clause restates the
    precondition, and returns the affected row count. Callers own the
    transaction.
    """

    def get_by_email(self, session: Session, email: str) -> Subscriber | None:
        stmt = (
            select(Subscriber)
            .where(Subscriber.email == email)
            .execution_options(populate_existing=True)
        )
        return session.scalar(stmt)

    def get_by_id(self, session: Session, subscriber_id: int) -> Subscriber | None:
        return session.get(Subscriber, subscriber_id, populate_existing=True)

    def insert(
        self,
        session: Session,
        *,
        email: str,
        name: str | None,
        confirm_token: str,
        now: datetime,
    ) -> Subscriber:
        subscriber = Subscriber(
            email=email,
            name=name,
            subscribed_at=now,
            unsubscribed_at=None,
            confirmed_at=None,
            confirm_token=confirm_token,
            latest_issue_sent=None,
            issues_received_count=0,
            created_at=now,
            updated_at=now,
        )
        session.add(subscriber)
        session.flush()
        return subscriber

    def reactivate(
        self,
        session: Session,
        *,
        subscriber_id: int,
        name: str | None,
        confirm_token: str,
        now: datetime,
    ) -> int:
        values: dict[str, object] = {
            "unsubscribed_at": None,
            "subscribed_at": now,
            "issues_received_count": 0,
            "confirmed_at": None,
            "confirm_token": confirm_token,
            "updated_at": now,
        }
        if name is not None:
            values["name"] = name

        stmt = (
            update(Subscriber)
            .where(
                Subscriber.id == subscriber_id,
                Subscriber.unsubscribed_at.is_not(None),
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return session.execute(stmt).rowcount

    def mark_unsubscribed(self, session: Session, *, email: str, now: datetime) -> int:
        stmt = (
            update(Subscriber)
            .where(Subscriber.email == email, Subscriber.unsubscribed_at.is_(None))
            .values(unsubscribed_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        return session.execute(stmt).rowcount

    def consume_confirm_token(
        self, session: Session, *, token: str, now: datetime
    ) -> int:
        stmt = (
            update(Subscriber)
            .where(
                Subscriber.confirm_token == token,
                Subscriber.confirmed_at.is_(None),
            )
            .values(confirmed_at=now, confirm_token=None, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        return session.execute(stmt).rowcount

    def list_eligible(
        self, session: Session, *, issue_number: int, limit: int | None = None
    ) -> list[Subscriber]:
        stmt = (
            select(Subscriber)
            .where(eligible_for_issue(issue_number))
            .order_by(Subscriber.id.asc())
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        return list(session.scalars(stmt).all())

    def get_if_eligible(
        self, session: Session, *, subscriber_id: int, issue_number: int
    ) -> Subscriber | None:
        stmt = (
            select(Subscriber)
            .where(Subscriber.id == subscriber_id, eligible_for_issue(issue_number))
            .execution_options(populate_existing=True)
        )
        return session.scalar(stmt)

    def advance_issue_high_water_mark(
        self, session: Session, *, subscriber_id: int, issue_number: int, now: datetime
    ) -> int:
        # Replaying this for the same issue matches zero rows.
        stmt = (
            update(Subscriber)
            .where(
                Subscriber.id == subscriber_id,
                or_(
                    Subscriber.latest_issue_sent.is_(None),
                    Subscriber.latest_issue_sent < issue_number,
                ),
            )
            .values(
                latest_issue_sent=issue_number,
                issues_received_count=Subscriber.issues_received_count + 1,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        return session.execute(stmt).rowcount
