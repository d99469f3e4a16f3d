"""Credential model for soulbound-token issuance requests."""

import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, ForeignKey, Index, JSON, String, text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


class CredentialStatus:
    QUEUED = "QUEUED"
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    FAILED = "FAILED"
    REVOKED = "REVOKED"

    ALL = (QUEUED, PENDING, CONFIRMED, FAILED, REVOKED)


class Credential(Base):
    """SBT credential tracked from mint request through on-chain finality."""

    __tablename__ = "credentials"
    __table_args__ = (
        Index("ix_credentials_status_created", "status", "created_at"),
        Index("ix_credentials_issuer_created", "issuer_id", "created_at"),
        Index(
            "uq_credentials_confirmed_token_id",
            "token_id",
            unique=True,
            postgresql_where=text("status = 'CONFIRMED'"),
            sqlite_where=text("status = 'CONFIRMED'"),
        ),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    issuer_id = Column(String, ForeignKey("issuer_accounts.id"), nullable=False)
    recipient_wallet_address = Column(String(42), nullable=True, index=True)
    issuer_ref_id = Column(String(100), nullable=True, index=True)
    metadata_json = Column(JSON, nullable=True)
    storage_ref = Column(String(100), nullable=True)  # permanent storage content id
    tx_hash = Column(String(66), nullable=True)
    token_id = Column(String(78), nullable=True)  # uint256 as decimal string
    status = Column(String(20), nullable=False, default=CredentialStatus.QUEUED)
    failure_reason = Column(String(500), nullable=True)
    # Client-side default keeps sub-second ordering for the pipeline scan.
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())
    submitted_at = Column(DateTime(timezone=True), nullable=True)
    confirmed_at = Column(DateTime(timezone=True), nullable=True)
    revoked_at = Column(DateTime(timezone=True), nullable=True)

    issuer = relationship("IssuerAccount", back_populates="credentials")
