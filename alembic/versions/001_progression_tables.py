"""Progression tables.

Creates users, levels, user_progress, point_ledger, streaks, companions
and rankings.

Revision ID: 001_progression_tables
Revises:
Create Date: 2026-10-19
"""

from collections.abc import Sequence

from alembic import op

revision: str = "001_progression_tables"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    # --- Users ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS users (
            id BIGSERIAL PRIMARY KEY,
            name VARCHAR(128) NOT NULL,
            email VARCHAR(256) UNIQUE,
            department VARCHAR(64),
            role VARCHAR(16) NOT NULL DEFAULT 'user',
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS ix_users_department
        ON users(department)
    """)

    # --- Level table ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS levels (
            level INTEGER PRIMARY KEY CHECK (level >= 1),
            points_required BIGINT NOT NULL UNIQUE CHECK (points_required >= 0),
            name VARCHAR(64) NOT NULL,
            color VARCHAR(16) NOT NULL,
            benefits JSONB NOT NULL DEFAULT '[]'
        )
    """)

    # --- User progress ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS user_progress (
            user_id BIGINT PRIMARY KEY REFERENCES users(id) ON DELETE CASCADE,
            points_balance BIGINT NOT NULL DEFAULT 0,
            total_points BIGINT NOT NULL DEFAULT 0 CHECK (total_points >= 0),
            current_level INTEGER NOT NULL DEFAULT 1 CHECK (current_level >= 1),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
    """)

    # --- Point ledger ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS point_ledger (
            id BIGSERIAL PRIMARY KEY,
            user_id BIGINT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
            amount INTEGER NOT NULL,
            reason VARCHAR(64) NOT NULL,
            description VARCHAR(256),
            activity_type VARCHAR(64),
            occurred_at TIMESTAMPTZ NOT NULL,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            idempotency_key VARCHAR(256) UNIQUE
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS ix_point_ledger_user_id
        ON point_ledger(user_id)
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_point_ledger_occurred
        ON point_ledger(occurred_at, user_id)
    """)

    # --- Streaks ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS streaks (
            id BIGSERIAL PRIMARY KEY,
            user_id BIGINT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
            activity_type VARCHAR(64) NOT NULL,
            consecutive_days INTEGER NOT NULL DEFAULT 0 CHECK (consecutive_days >= 0),
            last_activity TIMESTAMPTZ NOT NULL,
            longest_streak INTEGER NOT NULL DEFAULT 0,
            rewards_received JSONB NOT NULL DEFAULT '[]',
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            CONSTRAINT streaks_user_activity_key UNIQUE (user_id, activity_type),
            CONSTRAINT streaks_longest_check CHECK (longest_streak >= consecutive_days)
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS ix_streaks_user_id
        ON streaks(user_id)
    """)

    # --- Companions ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS companions (
            id BIGSERIAL PRIMARY KEY,
            user_id BIGINT NOT NULL UNIQUE REFERENCES users(id) ON DELETE CASCADE,
            type VARCHAR(32) NOT NULL DEFAULT 'pet',
            name VARCHAR(50) NOT NULL,
            level INTEGER NOT NULL DEFAULT 1 CHECK (level >= 1),
            experience BIGINT NOT NULL DEFAULT 0 CHECK (experience >= 0),
            current_evolution INTEGER NOT NULL DEFAULT 0 CHECK (current_evolution >= 0),
            next_evolution_level INTEGER NOT NULL DEFAULT 5,
            unlocked_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
    """)

    # --- Rankings ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS rankings (
            id BIGSERIAL PRIMARY KEY,
            type VARCHAR(16) NOT NULL,
            period_start TIMESTAMPTZ NOT NULL,
            period_end TIMESTAMPTZ NOT NULL,
            user_id BIGINT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
            points BIGINT NOT NULL DEFAULT 0,
            position INTEGER NOT NULL CHECK (position >= 1),
            department VARCHAR(64) NOT NULL DEFAULT '',
            computed_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            CONSTRAINT rankings_bucket_user_key UNIQUE (type, user_id, period_start, department)
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS ix_rankings_user_id
        ON rankings(user_id)
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_rankings_bucket_position
        ON rankings(type, period_start, department, position)
    """)


def downgrade() -> None:
    for table in [
        "rankings",
        "companions",
        "streaks",
        "point_ledger",
        "user_progress",
        "levels",
        "users",
    ]:
        op.execute(f"DROP TABLE IF EXISTS {table} CASCADE")  # noqa: S608
