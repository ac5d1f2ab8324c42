"""Configuration management for the Bridge Relayer.

This module provides type-safe configuration dataclasses with validation
for the relayer. Configuration is loaded from environment variables
with sensible defaults where appropriate.
"""

import logging
import os
from dataclasses import dataclass, field
from typing import ClassVar
from urllib.parse import urlparse

from web3 import Web3

# Get logger for this module
logger = logging.getLogger(__name__)

# Local development chains, matching the ganache setup of the bridge repo
DEFAULT_CHAINS: dict[str, dict[str, str]] = {
    "ethereum": {"chain_id": "1337", "rpc_url": "http://localhost:8545"},
    "polygon": {"chain_id": "1338", "rpc_url": "http://localhost:8546"},
}


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None


@dataclass(frozen=True, slots=True)
class ChainConfig:
    """Static descriptor of one chain the relayer serves.

    Attributes:
        name: Human-readable chain name (also the env var prefix)
        chain_id: EVM chain id
        rpc_url: HTTP(S) or WS(S) RPC endpoint
        bridge_address: Checksummed bridge contract address
        start_block: Watermark used for the first catch-up
        private_key: Directly held signing key (optional)
        key_id: Secret-store key id (optional)
    """

    name: str
    chain_id: int
    rpc_url: str
    bridge_address: str
    start_block: int = 0
    private_key: str | None = field(default=None, repr=False)
    key_id: str | None = None

    def __post_init__(self) -> None:
        """Validate chain configuration."""
        if self.chain_id <= 0:
            raise ValueError(f"Chain ID for {self.name} must be positive, got {self.chain_id}")

        if not self.rpc_url:
            raise ValueError(f"RPC URL is required for {self.name} ({self.name.upper()}_RPC_URL)")

        parsed = urlparse(self.rpc_url)
        if parsed.scheme not in ('http', 'https', 'ws', 'wss'):
            raise ValueError(
                f"Invalid RPC URL scheme for {self.name}: {parsed.scheme}. "
                "Expected http, https, ws, or wss"
            )

        if not self.bridge_address:
            raise ValueError(
                f"Bridge address is required for {self.name} "
                f"({self.name.upper()}_BRIDGE_ADDRESS)"
            )

        if not Web3.is_address(self.bridge_address):
            raise ValueError(
                f"Invalid bridge address for {self.name}: {self.bridge_address}"
            )

        checksummed = Web3.to_checksum_address(self.bridge_address)
        if checksummed != self.bridge_address:
            # Use object.__setattr__ since dataclass is frozen
            object.__setattr__(self, 'bridge_address', checksummed)

        if self.start_block < 0:
            raise ValueError(f"Start block for {self.name} must be non-negative, got {self.start_block}")

        if not self.private_key and not self.key_id:
            raise ValueError(
                f"No signing key configured for {self.name}. Set "
                f"{self.name.upper()}_PRIVATE_KEY, or USE_KMS=true with "
                f"{self.name.upper()}_KEY_ID"
            )

        if self.private_key:
            key = self.private_key.removeprefix('0x')
            if len(key) != 64:
                raise ValueError(
                    f"Invalid private key length for {self.name}. "
                    f"Expected 64 hex characters, got {len(key)}"
                )
            try:
                int(key, 16)
            except ValueError:
                raise ValueError(
                    f"Invalid private key format for {self.name}. Must be hexadecimal"
                ) from None


@dataclass(frozen=True, slots=True)
class MonitoringConfig:
    """Configuration for chain monitoring and RPC access."""
    polling_interval: int = 5  # seconds between live log polls
    max_block_range: int = 2000  # blocks per eth_getLogs request
    request_timeout: int = 30  # RPC request timeout in seconds
    receipt_timeout: int = 120  # seconds to wait for a settlement receipt
    catch_up_retries: int = 3  # service-level catch-up attempts per chain

    def __post_init__(self) -> None:
        """Validate monitoring configuration."""
        if self.polling_interval <= 0:
            raise ValueError(f"Polling interval must be positive, got {self.polling_interval}")
        if self.polling_interval > 300:
            raise ValueError(f"Polling interval too long (max 300s), got {self.polling_interval}")

        if self.max_block_range <= 0:
            raise ValueError(f"Max block range must be positive, got {self.max_block_range}")

        if self.request_timeout <= 0:
            raise ValueError(f"Request timeout must be positive, got {self.request_timeout}")
        if self.request_timeout > 120:
            raise ValueError(f"Request timeout too long (max 120s), got {self.request_timeout}")

        if self.receipt_timeout <= 0:
            raise ValueError(f"Receipt timeout must be positive, got {self.receipt_timeout}")

        if self.catch_up_retries < 1:
            raise ValueError(f"Catch-up retries must be at least 1, got {self.catch_up_retries}")


@dataclass(frozen=True, slots=True)
class ProcessorConfig:
    """Configuration for the retry queue processor."""
    retry_delay_ms: int = 5_000  # backoff base
    max_retries: int = 3
    processing_interval_ms: int = 2_000
    cleanup_interval_ms: int = 60_000
    completed_retention_ms: int = 3_600_000  # in-memory retention of COMPLETED
    db_retention_ms: int = 86_400_000  # persisted retention of COMPLETED
    max_concurrent_submissions: int = 1
    shutdown_timeout: float = 60.0  # seconds granted to in-flight submissions

    def __post_init__(self) -> None:
        """Validate processor configuration."""
        if self.retry_delay_ms <= 0:
            raise ValueError(f"Retry delay must be positive, got {self.retry_delay_ms}")

        if self.max_retries < 1:
            raise ValueError(f"Max retries must be at least 1, got {self.max_retries}")
        if self.max_retries > 20:
            raise ValueError(f"Max retries too high (max 20), got {self.max_retries}")

        if self.processing_interval_ms <= 0:
            raise ValueError(
                f"Processing interval must be positive, got {self.processing_interval_ms}"
            )
        if self.cleanup_interval_ms <= 0:
            raise ValueError(f"Cleanup interval must be positive, got {self.cleanup_interval_ms}")

        if self.completed_retention_ms < 0 or self.db_retention_ms < 0:
            raise ValueError("Retention windows must be non-negative")

        if self.max_concurrent_submissions < 1:
            raise ValueError(
                f"Max concurrent submissions must be at least 1, "
                f"got {self.max_concurrent_submissions}"
            )

        if self.shutdown_timeout <= 0:
            raise ValueError(f"Shutdown timeout must be positive, got {self.shutdown_timeout}")


@dataclass(frozen=True, slots=True)
class SecretStoreConfig:
    """Configuration for the secret-store backend.

    Attributes:
        provider: Backend name ('local', 'vault' or 'rofl')
        vault_address: Vault server URL
        vault_token: Vault token (required for the vault provider)
        vault_namespace: Vault Enterprise namespace (optional)
        vault_mount: KV v2 mount point
        rofl_url: ROFL appd URL or unix socket path (empty for the default socket)
    """

    provider: str = "local"
    vault_address: str = "http://localhost:8200"
    vault_token: str = field(default="", repr=False)
    vault_namespace: str | None = None
    vault_mount: str = "secret"
    rofl_url: str = ""

    SUPPORTED_PROVIDERS: ClassVar[set[str]] = {'local', 'vault', 'rofl'}

    def __post_init__(self) -> None:
        """Validate secret-store configuration."""
        if self.provider not in self.SUPPORTED_PROVIDERS:
            raise ValueError(
                f"Unknown KMS provider: {self.provider}. "
                f"Supported providers: {', '.join(sorted(self.SUPPORTED_PROVIDERS))}"
            )

        if self.provider == 'vault' and not self.vault_token:
            raise ValueError("VAULT_TOKEN is required when using Vault KMS provider")


@dataclass(frozen=True, slots=True)
class RelayerConfig:
    """Main configuration for the Bridge Relayer.

    Attributes:
        chains: Per-chain descriptors, in configuration order
        monitoring: Chain monitoring settings
        processor: Retry queue processor settings
        secret_store: Secret-store backend settings
        use_kms: Whether signing keys are resolved through the secret store
        database_url: SQLAlchemy URL for persistence (None keeps state in memory)
    """

    chains: tuple[ChainConfig, ...]
    monitoring: MonitoringConfig = field(default_factory=MonitoringConfig)
    processor: ProcessorConfig = field(default_factory=ProcessorConfig)
    secret_store: SecretStoreConfig = field(default_factory=SecretStoreConfig)
    use_kms: bool = False
    database_url: str | None = None

    def __post_init__(self) -> None:
        """Validate relayer configuration."""
        if not self.chains:
            raise ValueError("At least one chain must be configured (CHAINS)")

        chain_ids = [chain.chain_id for chain in self.chains]
        if len(set(chain_ids)) != len(chain_ids):
            raise ValueError(f"Duplicate chain IDs in configuration: {chain_ids}")

    def chain_by_id(self, chain_id: int) -> ChainConfig | None:
        return next((c for c in self.chains if c.chain_id == chain_id), None)

    @classmethod
    def from_env(cls) -> "RelayerConfig":
        """Load configuration from environment variables.

        Returns:
            RelayerConfig instance with loaded values

        Raises:
            ValueError: If required environment variables are missing or invalid
        """
        use_kms = _env_bool("USE_KMS")
        shared_key = os.environ.get("RELAYER_PRIVATE_KEY") or None

        chain_names = [
            name.strip().lower()
            for name in os.environ.get("CHAINS", ",".join(DEFAULT_CHAINS)).split(",")
            if name.strip()
        ]

        chains = []
        for name in chain_names:
            prefix = name.upper()
            defaults = DEFAULT_CHAINS.get(name, {})

            raw_chain_id = os.environ.get(f"{prefix}_CHAIN_ID", defaults.get("chain_id", ""))
            if not raw_chain_id:
                raise ValueError(f"{prefix}_CHAIN_ID environment variable is required")

            if use_kms:
                key_id = os.environ.get(f"{prefix}_KEY_ID") or f"{name}-validator-key"
                private_key = None
            else:
                key_id = None
                private_key = os.environ.get(f"{prefix}_PRIVATE_KEY") or shared_key

            chains.append(ChainConfig(
                name=name,
                chain_id=_env_int(f"{prefix}_CHAIN_ID", int(raw_chain_id)),
                rpc_url=os.environ.get(f"{prefix}_RPC_URL", defaults.get("rpc_url", "")),
                bridge_address=os.environ.get(f"{prefix}_BRIDGE_ADDRESS", ""),
                start_block=_env_int(f"{prefix}_START_BLOCK", 0),
                private_key=private_key,
                key_id=key_id,
            ))

        monitoring = MonitoringConfig(
            polling_interval=_env_int("POLLING_INTERVAL", 5),
            max_block_range=_env_int("MAX_BLOCK_RANGE", 2000),
            request_timeout=_env_int("REQUEST_TIMEOUT", 30),
            receipt_timeout=_env_int("RECEIPT_TIMEOUT", 120),
            catch_up_retries=_env_int("CATCH_UP_RETRIES", 3),
        )

        processor = ProcessorConfig(
            retry_delay_ms=_env_int("RETRY_DELAY_MS", 5_000),
            max_retries=_env_int("MAX_RETRIES", 3),
            processing_interval_ms=_env_int("PROCESSING_INTERVAL_MS", 2_000),
            cleanup_interval_ms=_env_int("CLEANUP_INTERVAL_MS", 60_000),
            completed_retention_ms=_env_int("COMPLETED_RETENTION_MS", 3_600_000),
            db_retention_ms=_env_int("DB_RETENTION_MS", 86_400_000),
            max_concurrent_submissions=_env_int("MAX_CONCURRENT_SUBMISSIONS", 1),
            shutdown_timeout=float(_env_int("SHUTDOWN_TIMEOUT", 60)),
        )

        secret_store = SecretStoreConfig(
            provider=os.environ.get("KMS_PROVIDER", "local").strip().lower(),
            vault_address=os.environ.get("VAULT_ADDR", "http://localhost:8200"),
            vault_token=os.environ.get("VAULT_TOKEN", ""),
            vault_namespace=os.environ.get("VAULT_NAMESPACE") or None,
            vault_mount=os.environ.get("VAULT_MOUNT", "secret"),
            rofl_url=os.environ.get("ROFL_APPD_URL", ""),
        )

        return cls(
            chains=tuple(chains),
            monitoring=monitoring,
            processor=processor,
            secret_store=secret_store,
            use_kms=use_kms,
            database_url=os.environ.get("DATABASE_URL") or None,
        )

    def log_config(self) -> None:
        """Log the configuration in a readable format (hiding sensitive data)."""
        logger.info("=" * 60)
        logger.info("Bridge Relayer Configuration")
        logger.info("=" * 60)

        for chain in self.chains:
            logger.info(f"Chain {chain.name} (ID {chain.chain_id}):")
            logger.info(f"  RPC URL: {chain.rpc_url}")
            logger.info(f"  Bridge: {chain.bridge_address}")
            logger.info(f"  Start Block: {chain.start_block}")
            if chain.key_id:
                logger.info(f"  Key ID: {chain.key_id}")
            else:
                logger.info(f"  Private Key: {'[SET]' if chain.private_key else '[NOT SET]'}")

        logger.info("Key Management:")
        logger.info(f"  Use KMS: {self.use_kms}")
        logger.info(f"  Provider: {self.secret_store.provider}")
        if self.secret_store.provider == 'vault':
            logger.info(f"  Vault Address: {self.secret_store.vault_address}")
            logger.info(f"  Vault Token: {'[SET]' if self.secret_store.vault_token else '[NOT SET]'}")

        logger.info("Queue Processing:")
        logger.info(f"  Retry Delay: {self.processor.retry_delay_ms} ms")
        logger.info(f"  Max Retries: {self.processor.max_retries}")
        logger.info(f"  Processing Interval: {self.processor.processing_interval_ms} ms")
        logger.info(f"  Cleanup Interval: {self.processor.cleanup_interval_ms} ms")
        logger.info(f"  Max Concurrent Submissions: {self.processor.max_concurrent_submissions}")

        logger.info("Monitoring Settings:")
        logger.info(f"  Polling Interval: {self.monitoring.polling_interval} seconds")
        logger.info(f"  Max Block Range: {self.monitoring.max_block_range}")
        logger.info(f"  Request Timeout: {self.monitoring.request_timeout} seconds")
        logger.info(f"  Receipt Timeout: {self.monitoring.receipt_timeout} seconds")

        logger.info(f"Persistence: {'[DATABASE]' if self.database_url else 'in-memory'}")
        logger.info("=" * 60)
