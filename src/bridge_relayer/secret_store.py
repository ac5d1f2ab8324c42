"""
Secret-store backends for validator signing keys.

Every backend implements the same SecretStore contract; the backend in use
is picked once from configuration by create_secret_store().
"""

import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any

import httpx

from .config import SecretStoreConfig
from .errors import KeyNotFoundError, SecretStoreError
from .utils.rofl_utility import RoflUtility

logger = logging.getLogger(__name__)


class SecretStore(ABC):
    """Key-value store of private keys addressed by key id."""

    @abstractmethod
    async def get_key(self, key_id: str) -> str:
        """Return the key material for key_id.

        Raises:
            KeyNotFoundError: If no key is stored under key_id
            SecretStoreError: If the backend fails
        """

    @abstractmethod
    async def store_key(self, key_id: str, private_key: str) -> None:
        ...

    @abstractmethod
    async def delete_key(self, key_id: str) -> None:
        ...

    @abstractmethod
    async def key_exists(self, key_id: str) -> bool:
        ...

    @abstractmethod
    async def list_keys(self) -> list[str]:
        ...

    async def close(self) -> None:
        """Release backend resources."""


class LocalSecretStore(SecretStore):
    """In-process, non-persistent store for development and tests."""

    def __init__(self, keys: dict[str, str] | None = None) -> None:
        self._keys: dict[str, str] = dict(keys or {})

    async def get_key(self, key_id: str) -> str:
        try:
            key = self._keys[key_id]
        except KeyError:
            raise KeyNotFoundError(key_id) from None
        logger.debug(f"Retrieved key from local storage: {key_id}")
        return key

    async def store_key(self, key_id: str, private_key: str) -> None:
        self._keys[key_id] = private_key
        logger.info(f"Stored key in local storage: {key_id}")

    async def delete_key(self, key_id: str) -> None:
        self._keys.pop(key_id, None)
        logger.info(f"Deleted key from local storage: {key_id}")

    async def key_exists(self, key_id: str) -> bool:
        return key_id in self._keys

    async def list_keys(self) -> list[str]:
        return list(self._keys)


class VaultSecretStore(SecretStore):
    """HashiCorp Vault KV v2 backend.

    Keys live at ``<mount>/data/relayer/keys/<key_id>`` with the key material
    in the ``privateKey`` field.
    """

    KEY_PREFIX: str = "relayer/keys"

    def __init__(
        self,
        address: str,
        token: str,
        namespace: str | None = None,
        mount: str = "secret",
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float = 10.0,
    ) -> None:
        """
        Initialize the Vault backend.

        Args:
            address: Vault server URL
            token: Vault token sent as X-Vault-Token
            namespace: Vault Enterprise namespace (optional)
            mount: KV v2 mount point
            transport: Custom httpx transport (used by tests)
            timeout: Request timeout in seconds
        """
        if not token:
            raise ValueError("Vault token is required")

        headers = {"X-Vault-Token": token}
        if namespace:
            headers["X-Vault-Namespace"] = namespace

        self.mount = mount.strip("/")
        self._client = httpx.AsyncClient(
            base_url=address.rstrip("/"),
            headers=headers,
            transport=transport,
            timeout=timeout,
        )

    def _data_path(self, key_id: str) -> str:
        return f"/v1/{self.mount}/data/{self.KEY_PREFIX}/{key_id}"

    def _metadata_path(self, key_id: str = "") -> str:
        path = f"/v1/{self.mount}/metadata/{self.KEY_PREFIX}"
        return f"{path}/{key_id}" if key_id else path

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            return await self._client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            raise SecretStoreError(f"Vault request {method} {path} failed: {e}") from e

    @staticmethod
    def _raise_for_status(response: httpx.Response, action: str) -> None:
        if response.is_error:
            raise SecretStoreError(
                f"Vault {action} failed with HTTP {response.status_code}: {response.text}"
            )

    async def get_key(self, key_id: str) -> str:
        response = await self._request("GET", self._data_path(key_id))
        if response.status_code == 404:
            raise KeyNotFoundError(key_id)
        self._raise_for_status(response, f"read of {key_id}")

        body = response.json()
        private_key = ((body.get("data") or {}).get("data") or {}).get("privateKey")
        if not private_key:
            raise KeyNotFoundError(key_id)

        logger.info(f"Retrieved key from Vault: {key_id}")
        return private_key

    async def store_key(self, key_id: str, private_key: str) -> None:
        payload = {
            "data": {
                "privateKey": private_key,
                "createdAt": datetime.now(timezone.utc).isoformat(),
            }
        }
        response = await self._request("POST", self._data_path(key_id), json=payload)
        self._raise_for_status(response, f"write of {key_id}")
        logger.info(f"Stored key in Vault: {key_id}")

    async def delete_key(self, key_id: str) -> None:
        # Metadata delete removes every version, not just the latest
        response = await self._request("DELETE", self._metadata_path(key_id))
        if response.status_code != 404:
            self._raise_for_status(response, f"delete of {key_id}")
        logger.info(f"Deleted key from Vault: {key_id}")

    async def key_exists(self, key_id: str) -> bool:
        response = await self._request("GET", self._data_path(key_id))
        if response.status_code == 404:
            return False
        self._raise_for_status(response, f"read of {key_id}")
        return True

    async def list_keys(self) -> list[str]:
        response = await self._request("GET", self._metadata_path(), params={"list": "true"})
        if response.status_code == 404:
            return []
        self._raise_for_status(response, "key listing")
        return list((response.json().get("data") or {}).get("keys") or [])

    async def close(self) -> None:
        await self._client.aclose()


class RoflSecretStore(SecretStore):
    """Keys derived by the ROFL application daemon.

    appd generates a key on first request and returns the same key for the
    same id afterwards, so keys can be neither imported nor deleted.
    """

    def __init__(self, rofl_utility: RoflUtility) -> None:
        self.rofl_utility = rofl_utility
        self._fetched: list[str] = []

    async def get_key(self, key_id: str) -> str:
        try:
            key = await self.rofl_utility.fetch_key(key_id)
        except httpx.HTTPError as e:
            raise SecretStoreError(f"ROFL key fetch for {key_id} failed: {e}") from e
        except KeyError:
            raise SecretStoreError(f"ROFL returned no key for {key_id}") from None

        if key_id not in self._fetched:
            self._fetched.append(key_id)
        logger.info(f"Fetched key from ROFL: {key_id}")
        return key

    async def store_key(self, key_id: str, private_key: str) -> None:
        raise SecretStoreError("ROFL keys are derived by appd and cannot be imported")

    async def delete_key(self, key_id: str) -> None:
        raise SecretStoreError("ROFL keys are derived by appd and cannot be deleted")

    async def key_exists(self, key_id: str) -> bool:
        # Any id resolves to a key
        return True

    async def list_keys(self) -> list[str]:
        return list(self._fetched)


def create_secret_store(config: SecretStoreConfig) -> SecretStore:
    """Create the secret-store backend named in the configuration.

    Args:
        config: Secret-store configuration

    Returns:
        SecretStore instance

    Raises:
        ValueError: If the provider is unknown or misconfigured
    """
    match config.provider:
        case 'local':
            logger.warning("Using LocalSecretStore - NOT SECURE FOR PRODUCTION!")
            return LocalSecretStore()
        case 'vault':
            return VaultSecretStore(
                address=config.vault_address,
                token=config.vault_token,
                namespace=config.vault_namespace,
                mount=config.vault_mount,
            )
        case 'rofl':
            return RoflSecretStore(RoflUtility(config.rofl_url))
        case _:
            raise ValueError(f"Unknown KMS provider: {config.provider}")
