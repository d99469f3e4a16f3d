"""Capability provider selection from settings."""

from __future__ import annotations

from typing import Dict

from config import settings
from services.capabilities.chain import SEND_MINT_RPC_CALLS, ChainRelayer, MockChainRelayer, Web3ChainRelayer
from services.capabilities.storage import ArweaveStorageUploader, MockStorageUploader, StorageUploader


def capability_modes() -> Dict[str, str]:
    return {
        "storage": (settings.STORAGE_MODE or "mock").strip().lower(),
        "chain": (settings.CHAIN_MODE or "mock").strip().lower(),
    }


def get_storage_uploader() -> StorageUploader:
    if capability_modes()["storage"] == "arweave":
        return ArweaveStorageUploader(
            gateway_url=settings.ARWEAVE_GATEWAY_URL,
            wallet_jwk=settings.ARWEAVE_WALLET_JWK,
            max_retries=settings.STORAGE_MAX_RETRIES,
            timeout_seconds=settings.STORAGE_TIMEOUT_SECONDS,
        )
    return MockStorageUploader()


def get_chain_relayer() -> ChainRelayer:
    if capability_modes()["chain"] == "web3":
        return Web3ChainRelayer(
            rpc_url=settings.CHAIN_RPC_URL,
            chain_id=settings.CHAIN_ID,
            contract_address=settings.SBT_CONTRACT_ADDRESS,
            private_key=settings.RELAYER_PRIVATE_KEY,
            min_confirmations=settings.CONFIRMATION_MIN_CONFIRMATIONS,
            gas_limit=settings.CHAIN_GAS_LIMIT,
            request_timeout=settings.CHAIN_TIMEOUT_SECONDS / SEND_MINT_RPC_CALLS,
        )
    return MockChainRelayer()
