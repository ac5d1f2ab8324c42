"""
Exception definitions for the Bridge Relayer.

Transient RPC and submission faults are not modelled here; they surface as
failed SubmitResults or plain exceptions and are retried by the queue.
"""


class RelayerError(Exception):
    """Base exception for all relayer errors."""


class InvalidEventError(RelayerError, ValueError):
    """A malformed or wrong-kind event reached the transaction builder.

    Such events are never enqueued.
    """


class MissingChainComponentError(RelayerError):
    """No signer or submitter is configured for a chain id.

    Recorded against the transaction so it counts towards its retries.
    """

    def __init__(self, component: str, chain_id: int) -> None:
        super().__init__(f"No {component} found for chain {chain_id}")
        self.component = component
        self.chain_id = chain_id


class SecretStoreError(RelayerError):
    """A secret-store backend failed to serve a request."""


class KeyNotFoundError(SecretStoreError, KeyError):
    """The requested key id does not exist in the secret store."""

    def __init__(self, key_id: str) -> None:
        super().__init__(f"Key not found: {key_id}")
        self.key_id = key_id

    def __str__(self) -> str:
        return f"Key not found: {self.key_id}"


class CatchUpError(RelayerError):
    """Historical catch-up for a chain failed after all attempts."""

    def __init__(self, chain_name: str, attempts: int, cause: Exception) -> None:
        super().__init__(
            f"Catch-up for {chain_name} failed after {attempts} attempt(s): {cause}"
        )
        self.chain_name = chain_name
        self.attempts = attempts
