from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, ValidationError

from .chain import ChainPort
from .models import (
    CallContractArgs,
    CheckBalanceArgs,
    DeployContractArgs,
    ExecutorResult,
    TransferFlowArgs,
    TransferTokenArgs,
)

WEI_PER_ETHER = Decimal(10) ** 18

ERC20_TRANSFER_ABI: list[dict[str, Any]] = [
    {
        "type": "function",
        "name": "transfer",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "to", "type": "address"},
            {"name": "amount", "type": "uint256"},
        ],
        "outputs": [{"name": "", "type": "bool"}],
    }
]
ERC20_BALANCE_OF_ABI: list[dict[str, Any]] = [
    {
        "type": "function",
        "name": "balanceOf",
        "stateMutability": "view",
        "inputs": [{"name": "owner", "type": "address"}],
        "outputs": [{"name": "", "type": "uint256"}],
    }
]

# Frequent alternate spellings in planner output, per action.
_ARG_ALIASES: dict[str, dict[str, str]] = {
    "transfer_flow": {"recipient": "to", "address": "to", "value": "amount"},
    "check_balance": {"account": "address", "owner": "address"},
    "deploy_contract": {"constructor_args": "args", "constructorArgs": "args"},
    "call_contract": {
        "contract": "address",
        "contract_address": "address",
        "contractAddress": "address",
        "function_name": "function",
        "functionName": "function",
    },
    "transfer_token": {"token": "token_address", "recipient": "to", "value": "amount"},
}


@dataclass(frozen=True)
class ActionSpec:
    input_model: type[BaseModel]
    fn: Callable[[Any], Awaitable[Any]]


def to_wei(amount: Decimal | str) -> int:
    return int(Decimal(amount) * WEI_PER_ETHER)


def from_wei(value: int) -> Decimal:
    return Decimal(value) / WEI_PER_ETHER


class Executor:
    """Execute named agent actions against the chain port."""

    def __init__(self, chain: ChainPort, *, logger: logging.Logger | None = None) -> None:
        self.chain = chain
        self.logger = logger or logging.getLogger(__name__)
        self.registry: dict[str, ActionSpec] = {
            "transfer_flow": ActionSpec(TransferFlowArgs, self._run_transfer_flow),
            "check_balance": ActionSpec(CheckBalanceArgs, self._run_check_balance),
            "deploy_contract": ActionSpec(DeployContractArgs, self._run_deploy_contract),
            "call_contract": ActionSpec(CallContractArgs, self._run_call_contract),
            "transfer_token": ActionSpec(TransferTokenArgs, self._run_transfer_token),
        }

    @property
    def address(self) -> str:
        return self.chain.address

    async def execute_action(self, action: str, parameters: dict[str, Any]) -> Any:
        """Validate parameters for `action` and run it.

        Raises ValueError for unknown actions and ValidationError when the
        parameters cannot be repaired into the action's argument model.
        """
        spec = self.registry.get(action)
        if spec is None:
            raise ValueError(f"Unknown action: {action}")

        self.logger.info("executor event=execute action=%s parameters=%s", action, parameters)
        try:
            payload = spec.input_model.model_validate(parameters)
        except ValidationError:
            repaired = self._repair_action_args(action, parameters)
            if repaired == parameters:
                raise
            payload = spec.input_model.model_validate(repaired)
        return await spec.fn(payload)

    async def get_balance(self, address: str | None = None) -> int:
        return await self.chain.get_balance(address)

    async def estimate_gas(self, to: str, value: int = 0, data: str | None = None) -> int:
        try:
            return await self.chain.estimate_gas(to, value, data)
        except Exception:
            self.logger.exception("executor event=gas_estimation_failed to=%s", to)
            raise

    async def send_transaction(
        self,
        to: str,
        value: int = 0,
        data: str | None = None,
        gas_limit: int | None = None,
    ) -> ExecutorResult:
        try:
            self.logger.info(
                "executor event=send_prepare to=%s value_flow=%s", to, from_wei(value)
            )
            gas = gas_limit or await self.estimate_gas(to, value, data)
            receipt = await self.chain.send(to, value, data, gas)
        except Exception as exc:  # noqa: BLE001
            self.logger.exception("executor event=send_failed to=%s", to)
            return ExecutorResult(success=False, error=str(exc) or type(exc).__name__)

        if receipt.status == "success":
            self.logger.info(
                "executor event=send_confirmed hash=%s gas_used=%s", receipt.hash, receipt.gas_used
            )
            return ExecutorResult(
                success=True,
                transaction_hash=receipt.hash,
                result=receipt.model_dump(),
                gas_used=receipt.gas_used,
            )
        self.logger.error("executor event=send_reverted hash=%s", receipt.hash)
        return ExecutorResult(
            success=False,
            transaction_hash=receipt.hash,
            error="Transaction reverted",
            gas_used=receipt.gas_used,
        )

    async def transfer_flow(self, to: str, amount: Decimal | str) -> ExecutorResult:
        return await self.send_transaction(to, to_wei(amount))

    async def deploy_contract(
        self,
        bytecode: str,
        args: list[Any] | None = None,
    ) -> ExecutorResult:
        try:
            self.logger.info("executor event=deploy_prepare")
            receipt = await self.chain.deploy_contract(bytecode, list(args or []))
        except Exception as exc:  # noqa: BLE001
            self.logger.exception("executor event=deploy_failed")
            return ExecutorResult(success=False, error=str(exc) or type(exc).__name__)

        if receipt.status == "success":
            self.logger.info(
                "executor event=deploy_confirmed address=%s hash=%s",
                receipt.contract_address,
                receipt.hash,
            )
            return ExecutorResult(
                success=True,
                transaction_hash=receipt.hash,
                result={"contract_address": receipt.contract_address, "receipt": receipt.model_dump()},
                gas_used=receipt.gas_used,
            )
        return ExecutorResult(
            success=False,
            transaction_hash=receipt.hash,
            error="Contract deployment failed",
            gas_used=receipt.gas_used,
        )

    async def call_contract(
        self,
        address: str,
        abi: list[dict[str, Any]],
        function: str,
        args: list[Any] | None = None,
        value: int = 0,
    ) -> ExecutorResult:
        self.logger.info("executor event=call_contract function=%s address=%s", function, address)
        try:
            data = self.chain.encode_call(abi, function, list(args or []))
        except Exception as exc:  # noqa: BLE001
            self.logger.exception("executor event=encode_failed function=%s", function)
            return ExecutorResult(success=False, error=str(exc) or type(exc).__name__)
        return await self.send_transaction(address, value, data)

    async def read_contract(
        self,
        address: str,
        abi: list[dict[str, Any]],
        function: str,
        args: list[Any] | None = None,
    ) -> Any:
        try:
            return await self.chain.read_contract(address, abi, function, list(args or []))
        except Exception:
            self.logger.exception("executor event=read_failed function=%s", function)
            raise

    async def transfer_token(self, token_address: str, to: str, amount: int) -> ExecutorResult:
        return await self.call_contract(token_address, ERC20_TRANSFER_ABI, "transfer", [to, amount])

    async def get_token_balance(self, token_address: str, address: str | None = None) -> int:
        owner = address or self.address
        return int(
            await self.read_contract(token_address, ERC20_BALANCE_OF_ABI, "balanceOf", [owner])
        )

    async def _run_transfer_flow(self, payload: TransferFlowArgs) -> ExecutorResult:
        return await self.transfer_flow(payload.to, payload.amount)

    async def _run_check_balance(self, payload: CheckBalanceArgs) -> dict[str, Any]:
        address = payload.address or self.address
        balance = await self.get_balance(address)
        return {"address": address, "balance_wei": balance, "balance": str(from_wei(balance))}

    async def _run_deploy_contract(self, payload: DeployContractArgs) -> ExecutorResult:
        return await self.deploy_contract(payload.bytecode, payload.args)

    async def _run_call_contract(self, payload: CallContractArgs) -> ExecutorResult:
        return await self.call_contract(
            payload.address, payload.abi, payload.function, payload.args, payload.value
        )

    async def _run_transfer_token(self, payload: TransferTokenArgs) -> ExecutorResult:
        return await self.transfer_token(payload.token_address, payload.to, payload.amount)

    def _repair_action_args(self, action: str, parameters: dict[str, Any]) -> dict[str, Any]:
        """Rename known aliases and drop unsupported keys before giving up."""
        spec = self.registry[action]
        aliases = _ARG_ALIASES.get(action, {})
        allowed_fields = set(spec.input_model.model_fields.keys())
        for field_info in spec.input_model.model_fields.values():
            if field_info.alias:
                allowed_fields.add(field_info.alias)

        repaired: dict[str, Any] = {}
        for key, value in parameters.items():
            target = key if key in allowed_fields else aliases.get(key)
            if target is None or target in repaired:
                continue
            repaired[target] = value
        return repaired
