"""Storage and chain capability providers."""

from services.capabilities.chain import ChainRelayer, MockChainRelayer, Web3ChainRelayer
from services.capabilities.providers import capability_modes, get_chain_relayer, get_storage_uploader
from services.capabilities.storage import ArweaveStorageUploader, MockStorageUploader, StorageUploader
from services.capabilities.types import (
    SubmitFailed,
    SubmitResult,
    SubmitSucceeded,
    TxConfirmed,
    TxPending,
    TxRejected,
    TxStatusResult,
    TxStatusUnavailable,
    UploadFailed,
    UploadResult,
    UploadSucceeded,
    metadata_uri,
)

__all__ = [
    "ArweaveStorageUploader",
    "ChainRelayer",
    "MockChainRelayer",
    "MockStorageUploader",
    "StorageUploader",
    "SubmitFailed",
    "SubmitResult",
    "SubmitSucceeded",
    "TxConfirmed",
    "TxPending",
    "TxRejected",
    "TxStatusResult",
    "TxStatusUnavailable",
    "UploadFailed",
    "UploadResult",
    "UploadSucceeded",
    "Web3ChainRelayer",
    "capability_modes",
    "get_chain_relayer",
    "get_storage_uploader",
    "metadata_uri",
]
