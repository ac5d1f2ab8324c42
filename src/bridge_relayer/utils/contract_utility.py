import json
from pathlib import Path
from typing import Any

from web3 import AsyncHTTPProvider, AsyncWeb3, WebSocketProvider


class ContractUtility:
    """
    Utility for RPC connections and ABI loading.

    Can be used in two modes:
    1. Connected mode: Initialize with an RPC URL to get an AsyncWeb3 client
    2. ABI-only mode: Initialize without a URL to just load ABIs
    """

    def __init__(self, rpc_url: str = "", request_timeout: int = 30) -> None:
        """
        Initialize the ContractUtility.

        Args:
            rpc_url: RPC URL for the network (optional for ABI-only mode)
            request_timeout: Per-request timeout in seconds
        """
        self.rpc_url = rpc_url
        self.request_timeout = request_timeout
        self.w3: AsyncWeb3 | None = self.create_web3() if rpc_url else None

    def create_web3(self) -> AsyncWeb3:
        """Create an AsyncWeb3 client for the configured RPC URL."""
        if not self.rpc_url:
            raise ValueError("RPC URL is required")

        if self.rpc_url.startswith(("ws://", "wss://")):
            # Persistent connection; the caller must connect and disconnect it
            return AsyncWeb3(WebSocketProvider(self.rpc_url))

        return AsyncWeb3(AsyncHTTPProvider(
            self.rpc_url,
            request_kwargs={"timeout": self.request_timeout},
        ))

    def get_contract_abi(self, contract_name: str) -> list[dict[str, Any]]:
        """Fetches ABI of the given contract from the contracts folder.

        Args:
            contract_name: Name of the contract (without .json extension)

        Returns:
            List of ABI dictionaries for the contract

        Raises:
            FileNotFoundError: If the contract file doesn't exist
            json.JSONDecodeError: If the contract file is invalid JSON
        """
        contract_path: Path = (
            Path(__file__).parent.parent
            / "contracts"
            / f"{contract_name}.json"
        ).resolve()

        with contract_path.open() as file:
            contract_data: dict[str, Any] = json.load(file)

        return contract_data["abi"]
