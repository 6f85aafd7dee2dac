"""002: create point_accounts table

Revision ID: 002
Revises: 001
Create Date: 2026-10-19
"""
from typing import Sequence, Union
from alembic import op

revision: str = "002"
down_revision: Union[str, None] = "001"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.execute("""
        CREATE TABLE point_accounts (
            id                  BIGSERIAL   PRIMARY KEY,
            user_id             VARCHAR(64) NOT NULL,
            balance             BIGINT      NOT NULL DEFAULT 0,
            total_earned        BIGINT      NOT NULL DEFAULT 0,
            total_redeemed      BIGINT      NOT NULL DEFAULT 0,
            total_expired       BIGINT      NOT NULL DEFAULT 0,
            expiry_days         INTEGER     NOT NULL DEFAULT 365,
            is_active           BOOLEAN     NOT NULL DEFAULT TRUE,
            version             BIGINT      NOT NULL DEFAULT 0,
            created_at          TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            updated_at          TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            CONSTRAINT uq_point_accounts_user_id        UNIQUE (user_id),
            CONSTRAINT ck_point_accounts_balance_gte_0  CHECK (balance >= 0),
            CONSTRAINT ck_point_accounts_earned_gte_0   CHECK (total_earned >= 0),
            CONSTRAINT ck_point_accounts_redeemed_gte_0 CHECK (total_redeemed >= 0),
            CONSTRAINT ck_point_accounts_expired_gte_0  CHECK (total_expired >= 0),
            CONSTRAINT ck_point_accounts_expiry_days    CHECK (expiry_days BETWEEN 1 AND 3650)
        );
    """)
    op.execute("""
        CREATE TRIGGER trg_point_accounts_updated_at
            BEFORE UPDATE ON point_accounts
            FOR EACH ROW EXECUTE FUNCTION fn_update_timestamp();
    """)
    # Expiry sweep candidate scan
    op.execute("""
        CREATE INDEX idx_point_accounts_sweep
        ON point_accounts (user_id)
        WHERE is_active AND balance > 0;
    """)
    op.execute("CREATE INDEX idx_point_accounts_top_earners ON point_accounts (total_earned DESC);")
    op.execute("COMMENT ON TABLE point_accounts IS 'Loyalty points accounts: one per user, soft-deleted via is_active';")


def downgrade() -> None:
    op.execute("DROP TABLE IF EXISTS point_accounts CASCADE;")
