from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.dialects.postgresql import insert as postgresql_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from newsletter.db.models import DispatchAttempt

# Stored as the message id when only the provider's history proves delivery.
PROVIDER_CONFIRMED_MESSAGE_ID = "provider-confirmed"

_UPSERT_INSERTS = {
    "postgresql": postgresql_insert,
    "sqlite": sqlite_insert,
}


class DispatchLedger:
    """Per (subscriber, issue) send audit, upserted on its unique key.

    A row with ``provider_message_id`` set means the issue was delivered.
    A row without one records an attempt whose outcome is not confirmed.
    """

    def get(
        self, session: Session, *, subscriber_id: int, issue_number: int
    ) -> DispatchAttempt | None:
        return session.scalar(
            select(DispatchAttempt)
            .where(
                DispatchAttempt.subscription_id == subscriber_id,
                DispatchAttempt.issue_number == issue_number,
            )
            .execution_options(populate_existing=True)
        )

    def claim(
        self,
        session: Session,
        *,
        subscriber_id: int,
        issue_number: int,
        now: datetime,
        observed: DispatchAttempt | None,
    ) -> bool:
        """Take ownership of the send for this pair before calling the provider.

        ``observed`` is the row read while deciding to send. The claim holds
        only if no other worker inserted or re-claimed the row since then;
        ``False`` means someone else owns the send.
        """
        if observed is None:
            return self._insert_claim(
                session, subscriber_id=subscriber_id, issue_number=issue_number, now=now
            )

        stmt = (
            update(DispatchAttempt)
            .where(
                DispatchAttempt.id == observed.id,
                DispatchAttempt.provider_message_id.is_(None),
                DispatchAttempt.attempt_count == observed.attempt_count,
            )
            .values(
                sent_at=now,
                last_error=None,
                attempt_count=DispatchAttempt.attempt_count + 1,
            )
            .execution_options(synchronize_session=False)
        )
        return session.execute(stmt).rowcount == 1

    def is_claim_live(
        self, attempt: DispatchAttempt, *, now: datetime, ttl_seconds: float
    ) -> bool:
        """An unsettled attempt younger than the TTL may still be sending."""
        if attempt.provider_message_id or attempt.last_error is not None:
            return False
        started = attempt.sent_at
        if started.tzinfo is None:
            # SQLite hands back naive values.
            started = started.replace(tzinfo=UTC)
        return now - started < timedelta(seconds=ttl_seconds)

    def record_success(
        self,
        session: Session,
        *,
        subscriber_id: int,
        issue_number: int,
        provider_message_id: str,
        now: datetime,
    ) -> None:
        self._upsert(
            session,
            subscriber_id=subscriber_id,
            issue_number=issue_number,
            now=now,
            values={"provider_message_id": provider_message_id, "last_error": None},
        )

    def record_failure(
        self,
        session: Session,
        *,
        subscriber_id: int,
        issue_number: int,
        error: str,
        now: datetime,
    ) -> None:
        self._upsert(
            session,
            subscriber_id=subscriber_id,
            issue_number=issue_number,
            now=now,
            values={"last_error": (error or "unknown error")[:500]},
        )

    def _upsert(
        self,
        session: Session,
        *,
        subscriber_id: int,
        issue_number: int,
        now: datetime,
        values: dict[str, Any],
    ) -> None:
        dialect = session.get_bind().dialect.name
        insert_fn = _UPSERT_INSERTS.get(dialect)
        if insert_fn is None:
            self._upsert_orm(
                session,
                subscriber_id=subscriber_id,
                issue_number=issue_number,
                now=now,
                values=values,
            )
            return

        stmt = insert_fn(DispatchAttempt).values(
            subscription_id=subscriber_id,
            issue_number=issue_number,
            sent_at=now,
            attempt_count=0,
            **values,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["subscription_id", "issue_number"],
            set_={"sent_at": now, **values},
        )
        session.execute(stmt)

    def _upsert_orm(
        self,
        session: Session,
        *,
        subscriber_id: int,
        issue_number: int,
        now: datetime,
        values: dict[str, Any],
    ) -> None:
        attempt = self.get(
            session, subscriber_id=subscriber_id, issue_number=issue_number
        )
        if attempt is None:
            attempt = DispatchAttempt(
                subscription_id=subscriber_id,
                issue_number=issue_number,
                attempt_count=0,
            )
        attempt.sent_at = now
        for key, value in values.items():
            setattr(attempt, key, value)
        session.add(attempt)
        session.flush()

    def _insert_claim(
        self, session: Session, *, subscriber_id: int, issue_number: int, now: datetime
    ) -> bool:
        values: dict[str, Any] = {
            "subscription_id": subscriber_id,
            "issue_number": issue_number,
            "sent_at": now,
            "last_error": None,
            "attempt_count": 1,
        }
        insert_fn = _UPSERT_INSERTS.get(session.get_bind().dialect.name)
        if insert_fn is not None:
            stmt = (
                insert_fn(DispatchAttempt)
                .values(**values)
                .on_conflict_do_nothing(index_elements=["subscription_id", "issue_number"])
            )
            return session.execute(stmt).rowcount == 1

        try:
            with session.begin_nested():
                session.add(DispatchAttempt(**values))
        except IntegrityError:
            return False
        return True
