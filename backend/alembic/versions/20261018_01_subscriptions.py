"""create subscriptions and newsletter sends

Revision ID: 20261018_01
Revises:
Create Date: 2026-10-18 09:00:00
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "20261018_01"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "subscriptions",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("email", sa.Text(), nullable=False),
        sa.Column("name", sa.Text(), nullable=True),
        sa.Column("subscribed_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("unsubscribed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("confirmed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("confirm_token", sa.String(length=128), nullable=True),
        sa.Column("latest_issue_sent", sa.Integer(), nullable=True),
        sa.Column(
            "issues_received_count", sa.Integer(), nullable=False, server_default="0"
        ),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("email", name="uq_subscriptions_email"),
        sa.UniqueConstraint("confirm_token", name="uq_subscriptions_confirm_token"),
    )
    op.create_index(
        "ix_subscriptions_eligibility",
        "subscriptions",
        ["unsubscribed_at", "confirmed_at", "latest_issue_sent"],
        unique=False,
    )

    op.create_table(
        "newsletter_sends",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("subscription_id", sa.Integer(), nullable=False),
        sa.Column("issue_number", sa.Integer(), nullable=False),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("provider_message_id", sa.String(length=255), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("attempt_count", sa.Integer(), nullable=False, server_default="0"),
        sa.ForeignKeyConstraint(["subscription_id"], ["subscriptions.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "subscription_id",
            "issue_number",
            name="uq_newsletter_sends_subscription_issue",
        ),
    )
    op.create_index(
        "ix_newsletter_sends_issue", "newsletter_sends", ["issue_number"], unique=False
    )


def downgrade() -> None:
    op.drop_index("ix_newsletter_sends_issue", table_name="newsletter_sends")
    op.drop_table("newsletter_sends")
    op.drop_index("ix_subscriptions_eligibility", table_name="subscriptions")
    op.drop_table("subscriptions")
