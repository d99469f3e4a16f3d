"""CreditTransaction model for the append-only issuer credit ledger."""

import uuid
from datetime import datetime, timezone

from sqlalchemy import CheckConstraint, Column, DateTime, ForeignKey, Index, Numeric, String, text
from sqlalchemy.orm import relationship

from database import Base


class TransactionType:
    PURCHASE = "PURCHASE"
    DEDUCT = "DEDUCT"
    REFUND = "REFUND"
    ADJUSTMENT = "ADJUSTMENT"

    ALL = (PURCHASE, DEDUCT, REFUND, ADJUSTMENT)


class CreditTransaction(Base):
    """Immutable credit ledger entry. Rows are inserted once and never updated or deleted."""

    __tablename__ = "credit_transactions"
    __table_args__ = (
        CheckConstraint("balance_after >= 0", name="ck_credit_transactions_balance_after_non_negative"),
        Index("ix_credit_transactions_issuer_created", "issuer_id", "created_at"),
        Index(
            "uq_credit_transactions_refund_credential",
            "credential_id",
            unique=True,
            postgresql_where=text("transaction_type = 'REFUND'"),
            sqlite_where=text("transaction_type = 'REFUND'"),
        ),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    issuer_id = Column(String, ForeignKey("issuer_accounts.id"), nullable=False, index=True)
    credential_id = Column(String, ForeignKey("credentials.id"), nullable=True, index=True)
    transaction_type = Column(String, nullable=False, index=True)
    amount = Column(Numeric(12, 2), nullable=False)  # signed delta
    balance_after = Column(Numeric(12, 2), nullable=False)
    description = Column(String(500), nullable=True)
    payment_reference = Column(String, nullable=True, unique=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)

    issuer = relationship("IssuerAccount", back_populates="credit_transactions")
