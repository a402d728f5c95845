"""Booking schema — bookings and booking_transition_log.

Revision ID: 001
Revises: None
Create Date: 2026-10-19
"""
from __future__ import annotations

from typing import Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, tuple[str, ...], None] = None
depends_on: Union[str, tuple[str, ...], None] = None


def upgrade() -> None:
    op.create_table(
        "bookings",
        sa.Column("booking_id", sa.String(64), nullable=False),
        sa.Column("builder_id", sa.String(100), nullable=False),
        sa.Column("client_id", sa.String(100)),
        sa.Column("session_type_id", sa.String(100), nullable=False),
        sa.Column("state", sa.String(30), nullable=False),
        sa.Column("payment_status", sa.String(20), nullable=False),
        sa.Column("payment_exempt", sa.Boolean(), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("client_timezone", sa.String(64)),
        sa.Column("start_time", sa.DateTime(timezone=True)),
        sa.Column("end_time", sa.DateTime(timezone=True)),
        sa.Column("external_session_ref", sa.String(255), comment="Payment checkout-session ID"),
        sa.Column("external_event_ref", sa.String(255), comment="Scheduling-provider event ID"),
        sa.Column("payment_intent_ref_encrypted", sa.Text(), comment="AES-256-GCM encrypted"),
        sa.Column(
            "superseded_session_refs",
            postgresql.ARRAY(sa.String(255)),
            nullable=False,
            server_default="{}",
            comment="Checkout sessions retired by recovery",
        ),
        sa.Column("last_error", postgresql.JSONB(astext_type=sa.Text())),
        sa.Column("cancel_reason", sa.String(500)),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.PrimaryKeyConstraint("booking_id"),
        sa.UniqueConstraint("external_session_ref"),
        sa.UniqueConstraint("external_event_ref"),
    )
    op.create_index("ix_bookings_builder_id", "bookings", ["builder_id"])
    op.create_index("ix_bookings_client_id", "bookings", ["client_id"])
    op.create_index("ix_bookings_state", "bookings", ["state"])
    op.create_index("ix_bookings_updated_at", "bookings", ["updated_at"])
    op.create_index(
        "ix_bookings_superseded_session_refs",
        "bookings",
        ["superseded_session_refs"],
        postgresql_using="gin",
    )

    op.create_table(
        "booking_transition_log",
        sa.Column("booking_id", sa.String(64), sa.ForeignKey("bookings.booking_id"), nullable=False, index=True),
        sa.Column("from_state", sa.String(30), comment="NULL for the creation row"),
        sa.Column("to_state", sa.String(30), nullable=False),
        sa.Column("event_type", sa.String(50), nullable=False),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("data", postgresql.JSONB(astext_type=sa.Text())),
        sa.Column("id", postgresql.UUID(as_uuid=True), server_default=sa.text("gen_random_uuid()"), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )


def downgrade() -> None:
    op.drop_table("booking_transition_log")
    op.drop_table("bookings")
