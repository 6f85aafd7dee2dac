"""003: create point_transactions table

Revision ID: 003
Revises: 002
Create Date: 2026-10-19
"""
from typing import Sequence, Union
from alembic import op

revision: str = "003"
down_revision: Union[str, None] = "002"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.execute("""
        CREATE TABLE point_transactions (
            id              BIGSERIAL       PRIMARY KEY,
            account_id      BIGINT          NOT NULL
                            REFERENCES point_accounts (id) ON DELETE RESTRICT,
            user_id         VARCHAR(64)     NOT NULL,
            type            VARCHAR(20)     NOT NULL,
            status          VARCHAR(20)     NOT NULL DEFAULT 'COMPLETED',
            amount          BIGINT          NOT NULL,
            balance         BIGINT          NOT NULL,
            reference_type  VARCHAR(50),
            reference_id    VARCHAR(64),
            description     VARCHAR(255)    NOT NULL,
            notes           VARCHAR(500),
            expires_at      TIMESTAMPTZ,
            idempotency_key VARCHAR(128),
            created_by      VARCHAR(64),
            created_at      TIMESTAMPTZ     NOT NULL DEFAULT NOW(),
            CONSTRAINT ck_point_tx_type CHECK (
                type IN ('EARN', 'REDEEM', 'REFUND', 'ADJUST', 'EXPIRE')
            ),
            CONSTRAINT ck_point_tx_status CHECK (
                status IN ('PENDING', 'COMPLETED', 'CANCELLED', 'EXPIRED')
            ),
            CONSTRAINT ck_point_tx_amount_nonzero CHECK (amount <> 0),
            CONSTRAINT ck_point_tx_amount_sign CHECK (
                (type IN ('EARN', 'REFUND') AND amount > 0)
                OR (type IN ('REDEEM', 'EXPIRE') AND amount < 0)
                OR type = 'ADJUST'
            ),
            CONSTRAINT ck_point_tx_balance_gte_0 CHECK (balance >= 0),
            CONSTRAINT ck_point_tx_expiry_earn_only CHECK (expires_at IS NULL OR type = 'EARN')
        );
    """)
    op.execute("""
        CREATE UNIQUE INDEX uq_point_tx_user_idempotency
        ON point_transactions (user_id, idempotency_key)
        WHERE idempotency_key IS NOT NULL;
    """)
    op.execute("CREATE INDEX idx_point_tx_user_id ON point_transactions (user_id, id DESC);")
    op.execute("CREATE INDEX idx_point_tx_account ON point_transactions (account_id);")
    op.execute("""
        CREATE INDEX idx_point_tx_expiry
        ON point_transactions (type, expires_at)
        WHERE expires_at IS NOT NULL;
    """)
    op.execute("""
        CREATE INDEX idx_point_tx_reference
        ON point_transactions (reference_type, reference_id)
        WHERE reference_id IS NOT NULL;
    """)
    op.execute("""
        CREATE TRIGGER trg_point_transactions_append_only
            BEFORE UPDATE OR DELETE ON point_transactions
            FOR EACH ROW EXECUTE FUNCTION fn_reject_mutation();
    """)
    op.execute("COMMENT ON TABLE point_transactions IS 'Points ledger: Append-Only, never updated or deleted';")


def downgrade() -> None:
    op.execute("DROP TABLE IF EXISTS point_transactions CASCADE;")
