import json
from pathlib import Path

from eth_account import Account
from eth_account.signers.local import LocalAccount
from web3 import LegacyWebSocketProvider, Web3


class ContractUtility:
    """
    Utility for contract interaction and ABI loading.

    Can be used in two modes:
    1. Full mode: Initialize with an RPC URL (and optionally a key) to get a Web3 connection
    2. ABI-only mode: Initialize with no arguments to just load ABIs
    """

    CONTRACTS_DIR = Path(__file__).parent.parent / "contracts"

    def __init__(self, rpc_url: str = "", private_key: str = ""):
        """
        Initialize the ContractUtility.

        Args:
            rpc_url: RPC endpoint to connect to (optional for ABI-only mode)
            private_key: Key whose address becomes the default account (optional)
        """
        self.rpc_url = rpc_url or None
        self.account: LocalAccount | None = Account.from_key(private_key) if private_key else None
        self.w3 = self.setup_web3() if rpc_url else None

    def setup_web3(self) -> Web3:
        provider = (
            LegacyWebSocketProvider(self.rpc_url)
            if self.rpc_url.startswith(("ws:", "wss:"))
            else Web3.HTTPProvider(self.rpc_url)
        )
        w3 = Web3(provider)
        if self.account:
            w3.eth.default_account = self.account.address
        return w3

    def get_contract_abi(self, contract_name: str) -> list:
        """Fetches ABI of the given contract from the contracts folder"""
        contract_path = (self.CONTRACTS_DIR / f"{contract_name}.json").resolve()

        with contract_path.open() as file:
            contract_data = json.load(file)

        return contract_data["abi"]
