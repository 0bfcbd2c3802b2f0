"""Notification engine document store.

Revision ID: 001
Revises:
Create Date: 2026-10-17

"""
from alembic import op
import sqlalchemy as sa


revision = "001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # notification_documents - subscriptions, history, preferences, scheduled,
    # templates and dead letters stored as JSON keyed by (collection, key)
    op.create_table(
        "notification_documents",
        sa.Column("id", sa.BigInteger().with_variant(sa.Integer(), "sqlite"), primary_key=True, autoincrement=True),
        sa.Column("collection", sa.String(30), nullable=False),
        sa.Column("key", sa.String(64), nullable=False),
        sa.Column("user_id", sa.String(64), nullable=True),
        sa.Column("payload", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(), server_default=sa.func.now()),
        sa.UniqueConstraint("collection", "key", name="uq_notification_documents_collection_key"),
    )
    op.create_index(
        "ix_notification_documents_collection_user",
        "notification_documents",
        ["collection", "user_id"],
    )


def downgrade() -> None:
    op.drop_index("ix_notification_documents_collection_user", table_name="notification_documents")
    op.drop_table("notification_documents")
