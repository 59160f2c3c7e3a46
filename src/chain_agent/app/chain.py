"""Chain port: the boundary between the agent core and an EVM JSON-RPC node.

The core only depends on `ChainPort`. `Web3ChainClient` is the concrete
implementation used at runtime; tests substitute an in-memory double.
"""

from __future__ import annotations

import json
from typing import Any, Protocol

from eth_account import Account
from web3 import AsyncHTTPProvider, AsyncWeb3, Web3

from .models import EventFilter, TransactionReceipt


class ChainPort(Protocol):
    """Primitives the observer and executor need from a chain node."""

    @property
    def address(self) -> str: ...

    async def latest_block_number(self) -> int: ...

    async def get_block(self, number: int, *, include_transactions: bool = True) -> dict[str, Any]: ...

    async def get_logs(
        self,
        event_filter: EventFilter,
        *,
        from_block: int,
        to_block: int,
    ) -> list[dict[str, Any]]: ...

    async def get_balance(self, address: str | None = None) -> int: ...

    async def estimate_gas(self, to: str, value: int, data: str | None = None) -> int: ...

    async def send(
        self,
        to: str,
        value: int,
        data: str | None = None,
        gas_limit: int | None = None,
    ) -> TransactionReceipt: ...

    async def deploy_contract(
        self,
        bytecode: str,
        args: list[Any],
        abi: list[dict[str, Any]] | None = None,
    ) -> TransactionReceipt: ...

    async def read_contract(
        self,
        address: str,
        abi: list[dict[str, Any]],
        function: str,
        args: list[Any],
    ) -> Any: ...

    def encode_call(self, abi: list[dict[str, Any]], function: str, args: list[Any]) -> str: ...


class Web3ChainClient:
    """AsyncWeb3-backed chain port signing with a local private key."""

    def __init__(self, *, rpc_url: str, private_key: str, chain_id: int = 747) -> None:
        if not rpc_url:
            raise ValueError("rpc_url is required")
        key = private_key if private_key.startswith("0x") else f"0x{private_key}"
        self._account = Account.from_key(key)
        self.chain_id = chain_id
        self.w3 = AsyncWeb3(AsyncHTTPProvider(rpc_url))

    @property
    def address(self) -> str:
        return self._account.address

    async def latest_block_number(self) -> int:
        return int(await self.w3.eth.block_number)

    async def get_block(self, number: int, *, include_transactions: bool = True) -> dict[str, Any]:
        block = await self.w3.eth.get_block(number, full_transactions=include_transactions)
        return _to_plain(block)

    async def get_logs(
        self,
        event_filter: EventFilter,
        *,
        from_block: int,
        to_block: int,
    ) -> list[dict[str, Any]]:
        params: dict[str, Any] = {"fromBlock": from_block, "toBlock": to_block}
        if event_filter.address is not None:
            if isinstance(event_filter.address, list):
                params["address"] = [Web3.to_checksum_address(item) for item in event_filter.address]
            else:
                params["address"] = Web3.to_checksum_address(event_filter.address)
        if event_filter.topics:
            params["topics"] = event_filter.topics
        logs = await self.w3.eth.get_logs(params)
        return [_to_plain(item) for item in logs]

    async def get_balance(self, address: str | None = None) -> int:
        target = Web3.to_checksum_address(address) if address else self.address
        return int(await self.w3.eth.get_balance(target))

    async def estimate_gas(self, to: str, value: int, data: str | None = None) -> int:
        tx: dict[str, Any] = {
            "from": self.address,
            "to": Web3.to_checksum_address(to),
            "value": value,
        }
        if data:
            tx["data"] = data
        return int(await self.w3.eth.estimate_gas(tx))

    async def send(
        self,
        to: str,
        value: int,
        data: str | None = None,
        gas_limit: int | None = None,
    ) -> TransactionReceipt:
        tx: dict[str, Any] = {
            "nonce": await self.w3.eth.get_transaction_count(self.address, "pending"),
            "gasPrice": await self.w3.eth.gas_price,
            "to": Web3.to_checksum_address(to),
            "value": value,
            "chainId": self.chain_id,
        }
        if data:
            tx["data"] = data
        tx["gas"] = gas_limit or await self.estimate_gas(to, value, data)
        return await self._sign_and_wait(tx)

    async def deploy_contract(
        self,
        bytecode: str,
        args: list[Any],
        abi: list[dict[str, Any]] | None = None,
    ) -> TransactionReceipt:
        contract = self.w3.eth.contract(abi=abi or [], bytecode=bytecode)
        tx = await contract.constructor(*args).build_transaction(
            {
                "from": self.address,
                "nonce": await self.w3.eth.get_transaction_count(self.address, "pending"),
                "chainId": self.chain_id,
            }
        )
        return await self._sign_and_wait(tx)

    async def read_contract(
        self,
        address: str,
        abi: list[dict[str, Any]],
        function: str,
        args: list[Any],
    ) -> Any:
        contract = self.w3.eth.contract(address=Web3.to_checksum_address(address), abi=abi)
        return await contract.get_function_by_name(function)(*args).call()

    def encode_call(self, abi: list[dict[str, Any]], function: str, args: list[Any]) -> str:
        contract = self.w3.eth.contract(abi=abi)
        return contract.encode_abi(function, args=list(args))

    async def _sign_and_wait(self, tx: dict[str, Any]) -> TransactionReceipt:
        signed = self._account.sign_transaction(tx)
        tx_hash = await self.w3.eth.send_raw_transaction(signed.raw_transaction)
        receipt = await self.w3.eth.wait_for_transaction_receipt(tx_hash)
        contract_address = receipt.get("contractAddress")
        return TransactionReceipt(
            hash=Web3.to_hex(tx_hash),
            status="success" if receipt.get("status") == 1 else "reverted",
            gas_used=int(receipt.get("gasUsed", 0)),
            contract_address=str(contract_address) if contract_address else None,
        )


def _to_plain(value: Any) -> Any:
    """Convert web3 AttributeDict/HexBytes structures to JSON-ready dicts."""
    return json.loads(Web3.to_json(value))
