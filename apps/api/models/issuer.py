"""Issuer account model."""

from sqlalchemy import CheckConstraint, Column, DateTime, Numeric, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import uuid

from database import Base


class IssuerRole:
    ISSUER = "ISSUER"
    ADMIN = "ADMIN"

    ALL = (ISSUER, ADMIN)


class IssuerAccount(Base):
    """Account allowed to mint credentials against a prepaid credit balance.

    ``credit_balance`` is a cached projection of the credit transaction log and is
    only ever written by ``services.credits.CreditLedger``.
    """

    __tablename__ = "issuer_accounts"
    __table_args__ = (
        CheckConstraint("credit_balance >= 0", name="ck_issuer_accounts_credit_balance_non_negative"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    email = Column(String, unique=True, nullable=False, index=True)
    name = Column(String, nullable=True)
    role = Column(String, nullable=False, default=IssuerRole.ISSUER)
    credit_balance = Column(Numeric(12, 2), nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    # Relationships
    credit_transactions = relationship("CreditTransaction", back_populates="issuer")
    credentials = relationship("Credential", back_populates="issuer")
