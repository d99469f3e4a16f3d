"""create issuer, credential and credit transaction tables

Revision ID: 20261019_000001
Revises:
Create Date: 2026-10-19 00:00:01.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "20261019_000001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "issuer_accounts",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("email", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=True),
        sa.Column("role", sa.String(), nullable=False, server_default="ISSUER"),
        sa.Column("credit_balance", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint("credit_balance >= 0", name="ck_issuer_accounts_credit_balance_non_negative"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_issuer_accounts_email"), "issuer_accounts", ["email"], unique=True)

    op.create_table(
        "credentials",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("issuer_id", sa.String(), nullable=False),
        sa.Column("recipient_wallet_address", sa.String(length=42), nullable=True),
        sa.Column("issuer_ref_id", sa.String(length=100), nullable=True),
        sa.Column("metadata_json", sa.JSON(), nullable=True),
        sa.Column("storage_ref", sa.String(length=100), nullable=True),
        sa.Column("tx_hash", sa.String(length=66), nullable=True),
        sa.Column("token_id", sa.String(length=78), nullable=True),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("failure_reason", sa.String(length=500), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("submitted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("confirmed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("revoked_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["issuer_id"], ["issuer_accounts.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_credentials_recipient_wallet_address"), "credentials", ["recipient_wallet_address"], unique=False)
    op.create_index(op.f("ix_credentials_issuer_ref_id"), "credentials", ["issuer_ref_id"], unique=False)
    op.create_index("ix_credentials_status_created", "credentials", ["status", "created_at"], unique=False)
    op.create_index("ix_credentials_issuer_created", "credentials", ["issuer_id", "created_at"], unique=False)
    op.create_index(
        "uq_credentials_confirmed_token_id",
        "credentials",
        ["token_id"],
        unique=True,
        postgresql_where=sa.text("status = 'CONFIRMED'"),
    )

    op.create_table(
        "credit_transactions",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("issuer_id", sa.String(), nullable=False),
        sa.Column("credential_id", sa.String(), nullable=True),
        sa.Column("transaction_type", sa.String(), nullable=False),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("balance_after", sa.Numeric(12, 2), nullable=False),
        sa.Column("description", sa.String(length=500), nullable=True),
        sa.Column("payment_reference", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint("balance_after >= 0", name="ck_credit_transactions_balance_after_non_negative"),
        sa.ForeignKeyConstraint(["issuer_id"], ["issuer_accounts.id"]),
        sa.ForeignKeyConstraint(["credential_id"], ["credentials.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("payment_reference"),
    )
    op.create_index(op.f("ix_credit_transactions_issuer_id"), "credit_transactions", ["issuer_id"], unique=False)
    op.create_index(op.f("ix_credit_transactions_credential_id"), "credit_transactions", ["credential_id"], unique=False)
    op.create_index(op.f("ix_credit_transactions_transaction_type"), "credit_transactions", ["transaction_type"], unique=False)
    op.create_index("ix_credit_transactions_issuer_created", "credit_transactions", ["issuer_id", "created_at"], unique=False)
    op.create_index(
        "uq_credit_transactions_refund_credential",
        "credit_transactions",
        ["credential_id"],
        unique=True,
        postgresql_where=sa.text("transaction_type = 'REFUND'"),
    )


def downgrade() -> None:
    op.drop_index("uq_credit_transactions_refund_credential", table_name="credit_transactions")
    op.drop_index("ix_credit_transactions_issuer_created", table_name="credit_transactions")
    op.drop_index(op.f("ix_credit_transactions_transaction_type"), table_name="credit_transactions")
    op.drop_index(op.f("ix_credit_transactions_credential_id"), table_name="credit_transactions")
    op.drop_index(op.f("ix_credit_transactions_issuer_id"), table_name="credit_transactions")
    op.drop_table("credit_transactions")
    op.drop_index("uq_credentials_confirmed_token_id", table_name="credentials")
    op.drop_index("ix_credentials_issuer_created", table_name="credentials")
    op.drop_index("ix_credentials_status_created", table_name="credentials")
    op.drop_index(op.f("ix_credentials_issuer_ref_id"), table_name="credentials")
    op.drop_index(op.f("ix_credentials_recipient_wallet_address"), table_name="credentials")
    op.drop_table("credentials")
    op.drop_index(op.f("ix_issuer_accounts_email"), table_name="issuer_accounts")
    op.drop_table("issuer_accounts")
