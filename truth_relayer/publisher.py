"""
Metadata publication to permanent storage.

ArweavePublisher talks to an Arweave-compatible upload gateway over HTTP.
MockPublisher derives a deterministic content address locally.
"""

import base64
import hashlib
import json
from typing import Any, Optional, Protocol

import httpx
import structlog

from .errors import PublisherError

logger = structlog.get_logger()

MOCK_PREFIX = "ar-hash-TRUTH-"


def canonical_json(payload: dict[str, Any]) -> bytes:
    """Stable byte encoding of a metadata payload."""
    return json.dumps(payload, sort_keys=True, separators=(",", ":")).encode("utf-8")


class MetadataPublisher(Protocol):
    """Durable metadata storage. `publish` must be safe to retry."""

    def publish(self, payload: dict[str, Any]) -> str:
        """Store `payload` and return its permanent content address."""
        ...


class ArweavePublisher:
    """Client for an Arweave upload gateway."""

    def __init__(
        self,
        gateway_url: str = "https://arweave.net",
        api_key: Optional[str] = None,
        timeout: float = 30.0,
        client: Optional[httpx.Client] = None,
    ):
        self.gateway_url = gateway_url.rstrip("/")
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self.client = client or httpx.Client(timeout=timeout, headers=headers)

    def publish(self, payload: dict[str, Any]) -> str:
        data = canonical_json(payload)
        body = {
            "data": base64.b64encode(data).decode("ascii"),
            "tags": [
                {"name": "Content-Type", "value": "application/json"},
                {"name": "App-Name", "value": "TRUTH-Protocol"},
            ],
        }

        try:
            response = self.client.post(f"{self.gateway_url}/tx", json=body)
            response.raise_for_status()
            content_address = response.json()["id"]
        except httpx.HTTPStatusError as e:
            logger.warning(
                "metadata_upload_rejected",
                status_code=e.response.status_code,
                size=len(data),
            )
            raise PublisherError(
                f"Upload failed: HTTP {e.response.status_code}"
            ) from e
        except (httpx.HTTPError, KeyError, TypeError, ValueError) as e:
            logger.warning("metadata_upload_failed", error=str(e), size=len(data))
            raise PublisherError(f"Upload failed: {e}") from e

        if not content_address:
            raise PublisherError("Gateway returned an empty content address")

        logger.info("metadata_published", content_address=content_address, size=len(data))
        return content_address

    def gateway_link(self, content_address: str) -> str:
        """HTTP URL where the published metadata can be read back."""
        return f"{self.gateway_url}/{content_address}"

    def close(self) -> None:
        """Close the HTTP client."""
        self.client.close()


class MockPublisher:
    """
    Local stand-in for development.

    The address is a hash of the canonical payload, so republishing the same
    metadata yields the same address.
    """

    def __init__(self) -> None:
        self.published: dict[str, dict[str, Any]] = {}

    def publish(self, payload: dict[str, Any]) -> str:
        digest = hashlib.sha256(canonical_json(payload)).hexdigest()
        content_address = f"{MOCK_PREFIX}{digest}"
        self.published[content_address] = payload
        logger.info("metadata_published", content_address=content_address, backend="mock")
        return content_address
