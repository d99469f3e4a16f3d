"""Chain relayers: EVM (web3.py) soulbound-token minting and a development mock."""

from __future__ import annotations

import asyncio
import functools
import logging
import re
import secrets
from abc import ABC, abstractmethod
from typing import Any, Iterable, Mapping, Optional

from web3 import Web3
from web3.exceptions import TransactionNotFound

from services.capabilities.types import (
    SubmitFailed,
    SubmitResult,
    SubmitSucceeded,
    TxConfirmed,
    TxPending,
    TxRejected,
    TxStatusResult,
    TxStatusUnavailable,
    metadata_uri,
)

logger = logging.getLogger(__name__)

TX_HASH_PATTERN = re.compile(r"^0x[a-fA-F0-9]{64}$")

SBT_MINT_ABI = [
    {
        "name": "mint",
        "type": "function",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "to", "type": "address"},
            {"name": "uri", "type": "string"},
        ],
        "outputs": [{"name": "", "type": "uint256"}],
    }
]

TRANSFER_EVENT_TOPIC = Web3.keccak(text="Transfer(address,address,uint256)")

# Nonce, gas price, transaction build and broadcast share one submit timeout.
SEND_MINT_RPC_CALLS = 4


class ChainRelayer(ABC):
    provider_name: str

    @abstractmethod
    async def submit_mint(self, recipient_address: str, content_ref: str) -> SubmitResult:
        raise NotImplementedError

    @abstractmethod
    async def get_transaction_status(self, tx_hash: str) -> TxStatusResult:
        raise NotImplementedError


class MockChainRelayer(ChainRelayer):
    """Fabricates transaction hashes and reports every well-formed hash as confirmed."""

    provider_name = "mock"

    async def submit_mint(self, recipient_address: str, content_ref: str) -> SubmitResult:
        return SubmitSucceeded(tx_hash="0x" + secrets.token_hex(32))

    async def get_transaction_status(self, tx_hash: str) -> TxStatusResult:
        if not TX_HASH_PATTERN.match(tx_hash or ""):
            return TxStatusUnavailable(f"Malformed transaction hash: {tx_hash!r}")
        return TxConfirmed(token_id=str(int(tx_hash[2:14], 16)))


def token_id_from_logs(logs: Iterable[Mapping[str, Any]], contract_address: str) -> Optional[int]:
    """Token id from the ERC-721 Transfer event emitted by ``contract_address``."""
    expected = contract_address.lower()
    for log in logs:
        if str(log.get("address", "")).lower() != expected:
            continue
        topics = list(log.get("topics") or [])
        if len(topics) != 4 or bytes(topics[0]) != bytes(TRANSFER_EVENT_TOPIC):
            continue
        return int.from_bytes(bytes(topics[3]), "big")
    return None


def _log_abandoned_mint(recipient_address: str, sending: "asyncio.Future[str]") -> None:
    if sending.cancelled():
        return
    exc = sending.exception()
    if exc is not None:
        logger.warning("Abandoned mint for %s was not broadcast: %s", recipient_address, exc)
        return
    logger.error(
        "Mint for %s was broadcast as %s after its submission timed out; the credential carries no tx hash",
        recipient_address,
        sending.result(),
    )


class Web3ChainRelayer(ChainRelayer):
    """Signs ``mint(address,string)`` with the relayer key and tracks receipts."""

    provider_name = "web3"

    def __init__(
        self,
        *,
        rpc_url: str,
        chain_id: int,
        contract_address: str,
        private_key: str,
        min_confirmations: int = 12,
        gas_limit: int = 200000,
        request_timeout: float = 30.0,
        web3: Optional[Web3] = None,
    ) -> None:
        self.request_timeout = float(request_timeout)
        self.web3 = web3 or Web3(Web3.HTTPProvider(rpc_url, request_kwargs={"timeout": request_timeout}))
        self.chain_id = int(chain_id)
        self.contract_address = Web3.to_checksum_address(contract_address)
        self.contract = self.web3.eth.contract(address=self.contract_address, abi=SBT_MINT_ABI)
        self.private_key = private_key
        self.min_confirmations = max(int(min_confirmations), 0)
        self.gas_limit = int(gas_limit)

    def _send_mint(self, recipient_address: str, uri: str) -> str:
        account = self.web3.eth.account.from_key(self.private_key)
        nonce = self.web3.eth.get_transaction_count(account.address, "pending")
        transaction = self.contract.functions.mint(Web3.to_checksum_address(recipient_address), uri).build_transaction(
            {
                "from": account.address,
                "nonce": nonce,
                "gas": self.gas_limit,
                "gasPrice": self.web3.eth.gas_price,
                "chainId": self.chain_id,
            }
        )
        signed = account.sign_transaction(transaction)
        tx_hash = self.web3.eth.send_raw_transaction(signed.raw_transaction)
        return self.web3.to_hex(tx_hash)

    def _read_status(self, tx_hash: str) -> TxStatusResult:
        try:
            receipt = self.web3.eth.get_transaction_receipt(tx_hash)
        except TransactionNotFound:
            return TxPending(confirmations=0)

        if receipt["status"] == 0:
            return TxRejected("Transaction reverted by contract")

        confirmations = int(self.web3.eth.block_number) - int(receipt["blockNumber"])
        if confirmations < self.min_confirmations:
            return TxPending(confirmations=confirmations)

        token_id = token_id_from_logs(receipt.get("logs", []), self.contract_address)
        if token_id is None:
            return TxRejected("Mint event not found in transaction logs")
        return TxConfirmed(token_id=str(token_id), block_number=int(receipt["blockNumber"]))

    async def submit_mint(self, recipient_address: str, content_ref: str) -> SubmitResult:
        if not (self.private_key or "").strip():
            return SubmitFailed("Relayer private key is not configured")
        sending = asyncio.ensure_future(
            asyncio.to_thread(self._send_mint, recipient_address, metadata_uri(content_ref))
        )
        try:
            tx_hash = await asyncio.shield(sending)
        except asyncio.CancelledError:
            # The worker thread cannot be stopped; report what it ends up doing.
            sending.add_done_callback(functools.partial(_log_abandoned_mint, recipient_address))
            raise
        except Exception as exc:
            logger.warning("Mint transaction for %s was not broadcast: %s", recipient_address, exc)
            return SubmitFailed(str(exc) or exc.__class__.__name__)
        logger.info("Mint transaction broadcast: %s", tx_hash)
        return SubmitSucceeded(tx_hash=tx_hash)

    async def get_transaction_status(self, tx_hash: str) -> TxStatusResult:
        try:
            return await asyncio.to_thread(self._read_status, tx_hash)
        except Exception as exc:
            logger.warning("Receipt lookup for %s failed: %s", tx_hash, exc)
            return TxStatusUnavailable(str(exc) or exc.__class__.__name__)
