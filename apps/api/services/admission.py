"""Mint request admission: validate, debit and queue in one transaction."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from models.credential import Credential
from services.credentials import build_credential
from services.credits import CreditLedger

logger = logging.getLogger(__name__)

WALLET_ADDRESS_PATTERN = re.compile(r"^0x[a-fA-F0-9]{40}$")


class InvalidMintRequestError(ValueError):
    pass


@dataclass(frozen=True)
class MintRequest:
    recipient_wallet_address: str
    metadata: Dict[str, Any]
    issuer_ref_id: Optional[str] = None


def validate_mint_request(request: MintRequest) -> None:
    address = str(request.recipient_wallet_address or "").strip()
    if not address:
        raise InvalidMintRequestError("Recipient wallet address is required")
    if not WALLET_ADDRESS_PATTERN.match(address):
        raise InvalidMintRequestError("Invalid Ethereum wallet address format")
    if not isinstance(request.metadata, dict) or not request.metadata:
        raise InvalidMintRequestError("Metadata is required")
    if request.issuer_ref_id is not None and len(request.issuer_ref_id) > 100:
        raise InvalidMintRequestError("issuer_ref_id must be at most 100 characters")


async def submit_mint_request(
    db: AsyncSession,
    ledger: CreditLedger,
    issuer_id: str,
    request: MintRequest,
) -> Credential:
    """Charge the mint cost and queue a credential.

    Raises ``InvalidMintRequestError`` or ``InsufficientCreditsError`` without writing
    anything; otherwise the QUEUED credential and its DEDUCT row are committed together.
    """
    validate_mint_request(request)
    credential = build_credential(
        issuer_id=issuer_id,
        recipient_wallet_address=request.recipient_wallet_address.strip(),
        metadata=request.metadata,
        issuer_ref_id=(request.issuer_ref_id or "").strip() or None,
    )
    await ledger.debit(
        db,
        issuer_id,
        settings.MINT_COST_CREDITS,
        credential=credential,
        description=f"Mint credential for {credential.recipient_wallet_address}",
    )
    logger.info("Queued credential %s for issuer %s", credential.id, issuer_id)
    return credential
