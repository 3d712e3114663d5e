"""Walrus Blob Storage Service - memory posters and their manifests"""

import asyncio
import json
import logging
from typing import Any, Dict, Optional

import aiohttp

from config import Config
from utils.data_sanitizer import sanitize_for_log

logger = logging.getLogger(__name__)


class BlobStoreError(Exception):
    """Custom exception for Walrus publisher/aggregator errors"""
    pass


class WalrusClient:
    """Uploads to a Walrus publisher and reads back through an aggregator"""

    def __init__(
        self,
        publisher_url: Optional[str] = None,
        aggregator_url: Optional[str] = None,
        epochs: Optional[int] = None,
        timeout_seconds: Optional[float] = None,
    ):
        self.publisher_url = (publisher_url or Config.WALRUS_PUBLISHER_URL).rstrip("/")
        self.aggregator_url = (aggregator_url or Config.WALRUS_AGGREGATOR_URL).rstrip("/")
        self.epochs = epochs or Config.WALRUS_STORAGE_EPOCHS
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds or Config.HTTP_TIMEOUT_SECONDS)

    @staticmethod
    def _extract_blob_id(data: Dict[str, Any]) -> str:
        """Publisher answers newlyCreated for new content, alreadyCertified for known content"""
        if "newlyCreated" in data:
            return data["newlyCreated"]["blobObject"]["blobId"]
        if "alreadyCertified" in data:
            return data["alreadyCertified"]["blobId"]
        raise BlobStoreError("Unexpected response from Walrus publisher")

    async def upload_blob(
        self,
        content: bytes,
        epochs: Optional[int] = None,
        content_type: str = "application/octet-stream",
    ) -> str:
        """Store bytes for the given number of epochs; returns the blob id"""
        storage_epochs = epochs or self.epochs
        try:
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                async with session.put(
                    f"{self.publisher_url}/v1/blobs",
                    data=content,
                    params={"epochs": str(storage_epochs)},
                    headers={"Content-Type": content_type},
                ) as response:
                    if response.status != 200:
                        error_text = await response.text()
                        logger.error(f"Walrus publisher error: {response.status} - {sanitize_for_log(error_text)[:300]}")
                        raise BlobStoreError(f"Blob upload failed (HTTP {response.status})")

                    data = await response.json(content_type=None)
                    blob_id = self._extract_blob_id(data)
                    logger.info(f"✅ BLOB_STORED: {blob_id} ({len(content)} bytes, {storage_epochs} epochs)")
                    return blob_id
        except aiohttp.ClientError as e:
            logger.error(f"Network error connecting to Walrus publisher: {e}")
            raise BlobStoreError(f"Network error: {e}") from e
        except asyncio.TimeoutError as e:
            raise BlobStoreError("Walrus publisher timed out") from e

    async def retrieve_blob(self, blob_id: str) -> bytes:
        try:
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                async with session.get(
                    self.blob_url(blob_id),
                    headers={"Accept": "application/octet-stream"},
                ) as response:
                    if response.status != 200:
                        logger.error(f"Walrus aggregator error for {blob_id}: {response.status}")
                        raise BlobStoreError(f"Blob {blob_id} unavailable (HTTP {response.status})")
                    return await response.read()
        except aiohttp.ClientError as e:
            logger.error(f"Network error connecting to Walrus aggregator: {e}")
            raise BlobStoreError(f"Network error: {e}") from e
        except asyncio.TimeoutError as e:
            raise BlobStoreError("Walrus aggregator timed out") from e

    async def store_json(self, data: Dict[str, Any], epochs: Optional[int] = None) -> str:
        payload = json.dumps(data, sort_keys=True, default=str).encode("utf-8")
        return await self.upload_blob(payload, epochs=epochs, content_type="application/json")

    async def retrieve_json(self, blob_id: str) -> Dict[str, Any]:
        raw = await self.retrieve_blob(blob_id)
        try:
            return json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise BlobStoreError(f"Blob {blob_id} is not JSON") from e

    def blob_url(self, blob_id: str) -> str:
        return f"{self.aggregator_url}/v1/blobs/{blob_id}"
