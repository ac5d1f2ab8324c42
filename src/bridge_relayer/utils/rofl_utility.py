import json
import logging
from typing import Any

import httpx

logger = logging.getLogger(__name__)


class RoflUtility:
    """Utility for interacting with the ROFL application daemon.

    Only key derivation is used by the relayer: keys generated by appd are
    bound to the app identity, so the same key id always yields the same key.
    """

    ROFL_SOCKET_PATH: str = "/run/rofl-appd.sock"

    def __init__(self, url: str = '', transport: httpx.AsyncBaseTransport | None = None) -> None:
        """Initialize ROFL utility.

        Args:
            url: Optional URL for HTTP transport (defaults to socket)
            transport: Explicit httpx transport, overrides url-based selection
        """
        self.url: str = url
        self._transport = transport

    def _make_transport(self) -> httpx.AsyncBaseTransport | None:
        if self._transport is not None:
            return self._transport
        if self.url and not self.url.startswith('http'):
            logger.debug(f"Using HTTP socket: {self.url}")
            return httpx.AsyncHTTPTransport(uds=self.url)
        if not self.url:
            logger.debug(f"Using unix domain socket: {self.ROFL_SOCKET_PATH}")
            return httpx.AsyncHTTPTransport(uds=self.ROFL_SOCKET_PATH)
        return None

    async def _appd_post(self, path: str, payload: Any) -> Any:
        """Post request to ROFL application daemon.

        Args:
            path: API endpoint path
            payload: JSON payload to send

        Returns:
            JSON response from the daemon

        Raises:
            httpx.HTTPStatusError: If the request fails
        """
        async with httpx.AsyncClient(transport=self._make_transport()) as client:
            base_url: str = self.url if self.url and self.url.startswith('http') else "http://localhost"
            full_url: str = base_url + path
            logger.debug(f"Posting to {full_url}: {json.dumps(payload)}")
            response: httpx.Response = await client.post(full_url, json=payload, timeout=30.0)
            response.raise_for_status()
            return response.json()

    async def fetch_key(self, key_id: str) -> str:
        """Fetch or generate a secp256k1 key from ROFL.

        Args:
            key_id: Identifier for the key

        Returns:
            The private key as a hex string

        Raises:
            httpx.HTTPStatusError: If key fetch fails
        """
        payload: dict[str, str] = {
            "key_id": key_id,
            "kind": "secp256k1"
        }

        response: dict[str, Any] = await self._appd_post('/rofl/v1/keys/generate', payload)
        return response["key"]
