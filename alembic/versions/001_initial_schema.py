"""Initial schema — the five Tablemate tables.

Revision ID: 001_initial
Revises:
Create Date: 2026-10-17 00:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # ── 1. users ────────────────────────────────────────────────────
    op.create_table(
        "users",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("username", sa.String, unique=True, index=True, nullable=False),
        sa.Column("full_name", sa.String, nullable=False),
        sa.Column("email", sa.String, unique=True, nullable=True),
        sa.Column("city", sa.String, nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.Column(
            "is_active",
            sa.Boolean,
            server_default="true",
            nullable=False,
        ),
    )

    # ── 2. user_preferences ─────────────────────────────────────────
    op.create_table(
        "user_preferences",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column(
            "user_id",
            sa.Integer,
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            unique=True,
            nullable=False,
        ),
        sa.Column("dining_preferences", postgresql.JSONB, nullable=False),
        sa.Column("social_preferences", postgresql.JSONB, nullable=False),
        sa.Column("atmosphere_preferences", postgresql.JSONB, nullable=False),
        sa.Column("interests", postgresql.JSONB, nullable=False),
        sa.Column("dietary_restrictions", postgresql.JSONB, nullable=True),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
    )

    # ── 3. match_scores (pairwise compatibility cache) ──────────────
    op.create_table(
        "match_scores",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column(
            "user1_id",
            sa.Integer,
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
        sa.Column(
            "user2_id",
            sa.Integer,
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
        sa.Column(
            "compatibility_score",
            sa.Float,
            nullable=False,
            comment="0-100, symmetric",
        ),
        sa.Column(
            "calculated_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.UniqueConstraint("user1_id", "user2_id", name="uq_match_score_pair"),
        sa.CheckConstraint("user1_id < user2_id", name="ck_match_score_ordered"),
    )

    # ── 4. meetups ──────────────────────────────────────────────────
    op.create_table(
        "meetups",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("title", sa.String, nullable=False),
        sa.Column("restaurant_id", sa.Integer, nullable=False, index=True),
        sa.Column("date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("start_time", sa.String, nullable=False, comment="HH:MM"),
        sa.Column("end_time", sa.String, nullable=False, comment="HH:MM"),
        sa.Column("max_participants", sa.Integer, nullable=False),
        sa.Column(
            "status",
            sa.String,
            nullable=False,
            server_default="scheduled",
            comment="pending / scheduled / cancelled",
        ),
        sa.Column(
            "created_by",
            sa.Integer,
            sa.ForeignKey("users.id"),
            nullable=False,
        ),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
    )

    # ── 5. meetup_participants ──────────────────────────────────────
    op.create_table(
        "meetup_participants",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column(
            "meetup_id",
            sa.Integer,
            sa.ForeignKey("meetups.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "user_id",
            sa.Integer,
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "status",
            sa.String,
            nullable=False,
            server_default="pending",
            comment="pending / confirmed / cancelled",
        ),
        sa.Column(
            "joined_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.UniqueConstraint("meetup_id", "user_id", name="uq_meetup_participant"),
    )
    op.create_index(
        "ix_meetup_participants_user",
        "meetup_participants",
        ["user_id"],
    )


def downgrade() -> None:
    # Drop in reverse order (children / dependents first).
    op.drop_index("ix_meetup_participants_user", table_name="meetup_participants")
    op.drop_table("meetup_participants")
    op.drop_table("meetups")
    op.drop_table("match_scores")
    op.drop_table("user_preferences")
    op.drop_table("users")
