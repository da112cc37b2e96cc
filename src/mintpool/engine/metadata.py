"""
Metadata Publisher - pins token metadata and returns its URI.

Publishing happens before any chain interaction, so a failure here never
costs gas or consumes a nonce.
"""

import json
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import httpx
import structlog

from mintpool.config import MinterConfig
from mintpool.core.errors import PublishFailed
from mintpool.core.order import MintPayload

logger = structlog.get_logger(__name__)


def build_metadata(payload: MintPayload) -> Dict[str, Any]:
    """ERC-721 metadata document for a payload."""
    return {
        "name": payload.name,
        "description": payload.description,
        "image": payload.image_ref,
        "attributes": payload.attributes,
    }


class MetadataPublisher(ABC):
    """Durable storage for token metadata."""

    @abstractmethod
    async def publish(self, metadata: Dict[str, Any]) -> str:
        """
        Store ``metadata`` and return the URI the token should point at.

        Raises:
            PublishFailed: On any failure
        """
        pass

    async def close(self) -> None:
        pass


class PinataPublisher(MetadataPublisher):
    """
    Pins metadata JSON through Pinata's file upload endpoint.

    One attempt per call; retries belong to the order-level retry loop.
    """

    def __init__(self, config: MinterConfig, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.config = config
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def headers(self) -> dict:
        headers = {}
        if self.config.pinata_jwt:
            headers["Authorization"] = f"Bearer {self.config.pinata_jwt.get_secret_value()}"
        if self.config.pinata_api_key:
            headers["pinata_api_key"] = self.config.pinata_api_key
        if self.config.pinata_secret_api_key:
            headers["pinata_secret_api_key"] = self.config.pinata_secret_api_key.get_secret_value()
        return headers

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                headers=self.headers,
                timeout=self.config.metadata_timeout_seconds,
                transport=self._transport,
            )
        return self._client

    async def publish(self, metadata: Dict[str, Any]) -> str:
        if not (self.config.pinata_jwt or self.config.pinata_api_key):
            raise PublishFailed("Missing Pinata configuration")

        document = json.dumps(metadata).encode("utf-8")
        try:
            response = await self._get_client().post(
                self.config.pinata_url,
                files={"file": ("metadata.json", document, "application/json")},
                data={"pinataOptions": json.dumps({"cidVersion": 1})},
            )
            response.raise_for_status()
            ipfs_hash = response.json().get("IpfsHash")
        except (httpx.HTTPError, ValueError) as e:
            logger.error("metadata_publish_failed", error=str(e))
            raise PublishFailed(f"Error uploading to Pinata: {e}") from e

        if not ipfs_hash:
            raise PublishFailed("Pinata response missing IpfsHash")

        uri = f"{self.config.pinata_gateway_url}{ipfs_hash}"
        logger.info("metadata_published", uri=uri)
        return uri

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None
