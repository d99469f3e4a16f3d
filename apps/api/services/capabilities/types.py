"""Result contracts for the permanent-storage and chain-relayer capabilities.

Capability calls never raise into the pipeline; every outcome, including
timeouts and transport errors, is one of the variants below.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Union


@dataclass(frozen=True)
class UploadSucceeded:
    content_ref: str


@dataclass(frozen=True)
class UploadFailed:
    reason: str


UploadResult = Union[UploadSucceeded, UploadFailed]


@dataclass(frozen=True)
class SubmitSucceeded:
    tx_hash: str


@dataclass(frozen=True)
class SubmitFailed:
    reason: str


SubmitResult = Union[SubmitSucceeded, SubmitFailed]


@dataclass(frozen=True)
class TxPending:
    confirmations: int = 0


@dataclass(frozen=True)
class TxConfirmed:
    token_id: str
    block_number: Optional[int] = None


@dataclass(frozen=True)
class TxRejected:
    reason: str


@dataclass(frozen=True)
class TxStatusUnavailable:
    """The status query itself failed; the chain state is unknown."""

    reason: str


TxStatusResult = Union[TxPending, TxConfirmed, TxRejected, TxStatusUnavailable]


def metadata_uri(content_ref: str) -> str:
    return f"ar://{content_ref}"
