"""Permanent-storage uploaders (Arweave gateway and a development mock)."""

from __future__ import annotations

import asyncio
import base64
import json
import logging
import uuid
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import httpx

from services.capabilities.types import UploadFailed, UploadResult, UploadSucceeded

logger = logging.getLogger(__name__)

APP_NAME = "TRUTH-Protocol"


class StorageUploader(ABC):
    provider_name: str

    @abstractmethod
    async def upload(self, document: Dict[str, Any]) -> UploadResult:
        raise NotImplementedError


class MockStorageUploader(StorageUploader):
    """Returns a fabricated content reference without any network call."""

    provider_name = "mock"

    async def upload(self, document: Dict[str, Any]) -> UploadResult:
        return UploadSucceeded(content_ref=f"ar-hash-TRUTH-{uuid.uuid4()}")


class ArweaveStorageUploader(StorageUploader):
    """Posts JSON metadata to an Arweave gateway, retrying with exponential backoff."""

    provider_name = "arweave"

    def __init__(
        self,
        *,
        gateway_url: str,
        wallet_jwk: str,
        max_retries: int = 3,
        timeout_seconds: float = 30.0,
        backoff_base_seconds: float = 1.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.gateway_url = gateway_url.rstrip("/")
        self.wallet_jwk = wallet_jwk
        self.max_retries = max(int(max_retries), 1)
        self.timeout_seconds = timeout_seconds
        self.backoff_base_seconds = backoff_base_seconds
        self._transport = transport

    def _build_body(self, document: Dict[str, Any]) -> Dict[str, Any]:
        payload = json.dumps(document, separators=(",", ":"), sort_keys=True).encode("utf-8")
        return {
            "data": base64.b64encode(payload).decode("ascii"),
            "tags": [
                {"name": "Content-Type", "value": "application/json"},
                {"name": "App-Name", "value": APP_NAME},
            ],
        }

    async def upload(self, document: Dict[str, Any]) -> UploadResult:
        if not (self.wallet_jwk or "").strip():
            return UploadFailed(
                "Arweave wallet not configured. Set ARWEAVE_WALLET_JWK or use STORAGE_MODE=mock."
            )

        body = self._build_body(document)
        last_error = ""
        async with httpx.AsyncClient(
            base_url=self.gateway_url,
            timeout=self.timeout_seconds,
            transport=self._transport,
        ) as client:
            for attempt in range(1, self.max_retries + 1):
                try:
                    response = await client.post("/tx", json=body)
                    response.raise_for_status()
                    content_ref = str(response.json().get("id") or "").strip()
                    if not content_ref:
                        raise ValueError("Arweave response missing transaction id")
                    logger.info("Arweave upload stored as %s (%s bytes)", content_ref, len(body["data"]))
                    return UploadSucceeded(content_ref=content_ref)
                except (httpx.HTTPError, ValueError) as exc:
                    last_error = str(exc) or exc.__class__.__name__
                    logger.warning("Arweave upload attempt %s/%s failed: %s", attempt, self.max_retries, last_error)
                    if attempt < self.max_retries:
                        await asyncio.sleep(self.backoff_base_seconds * (2 ** attempt))
        return UploadFailed(f"Arweave upload failed after {self.max_retries} attempts: {last_error}")
