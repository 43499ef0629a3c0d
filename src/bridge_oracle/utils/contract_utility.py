import json
from pathlib import Path
from typing import Any
from urllib.parse import urlparse

from web3 import AsyncHTTPProvider, AsyncWeb3
from web3.providers import WebSocketProvider


class ContractUtility:
    """
    Utility for contract interaction and ABI loading.

    Owns the async web3 instance used for one-shot RPC calls against the EVM
    chain. A ws(s) endpoint gets a persistent connection that must be opened
    with ``connect()``; log subscriptions open their own.
    """

    def __init__(self, rpc_url: str, request_timeout: int = 30) -> None:
        """
        Initialize the ContractUtility.

        Args:
            rpc_url: HTTP(S) or WS(S) RPC URL for the EVM chain
            request_timeout: Request timeout in seconds
        """
        if not rpc_url:
            raise ValueError("RPC URL is required")

        self.rpc_url = rpc_url
        self.persistent = urlparse(rpc_url).scheme in ("ws", "wss")
        if self.persistent:
            self.w3 = AsyncWeb3(WebSocketProvider(rpc_url, request_timeout=request_timeout))
        else:
            self.w3 = AsyncWeb3(
                AsyncHTTPProvider(rpc_url, request_kwargs={"timeout": request_timeout})
            )

    async def connect(self) -> None:
        if self.persistent:
            await self.w3.provider.connect()

    async def disconnect(self) -> None:
        if self.persistent:
            await self.w3.provider.disconnect()

    @staticmethod
    def get_contract_abi(contract_name: str) -> list[dict[str, Any]]:
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
