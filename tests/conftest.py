from __future__ import annotations

import itertools
import logging
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest
from pydantic import BaseModel

from chain_agent.app import knowledge as knowledge_module
from chain_agent.app.agent import Agent
from chain_agent.app.executor import Executor
from chain_agent.app.knowledge import KnowledgeStore
from chain_agent.app.models import (
    EventFilter,
    Goal,
    GoalEvaluation,
    Memory,
    Plan,
    PlannerInput,
    Task,
    TransactionReceipt,
)
from chain_agent.app.observer import Observer
from chain_agent.app.planner import Planner

AGENT_ADDRESS = "0x00000000000000000000000000000000000a11ce"


class FakeChain:
    """Test-only chain port double with scripted blocks, logs, and receipts."""

    def __init__(self, *, head: int = 0) -> None:
        self.head = head
        self.head_error: Exception | None = None
        self.balance_error: Exception | None = None
        self.failing_blocks: set[int] = set()
        self.transactions: dict[int, list[dict[str, Any]]] = {}
        self.logs: list[dict[str, Any]] = []
        self.balances: dict[str, int] = {}
        self.token_balances: dict[tuple[str, str], int] = {}
        self.receipt_status = "success"
        self.send_error: Exception | None = None
        self.gas_estimate = 21_000
        self.on_get_block: Callable[[int], Awaitable[None]] | None = None

        self.fetched_blocks: list[int] = []
        self.sent: list[dict[str, Any]] = []
        self.deployed: list[dict[str, Any]] = []
        self.balance_calls = 0
        self._hashes = itertools.count(1)

    @property
    def address(self) -> str:
        return AGENT_ADDRESS

    async def latest_block_number(self) -> int:
        if self.head_error is not None:
            raise self.head_error
        return self.head

    async def get_block(self, number: int, *, include_transactions: bool = True) -> dict[str, Any]:
        self.fetched_blocks.append(number)
        if self.on_get_block is not None:
            await self.on_get_block(number)
        if number in self.failing_blocks:
            raise ConnectionError(f"block {number} unavailable")
        return {
            "number": number,
            "hash": f"0xblock{number}",
            "timestamp": 1_700_000_000 + number,
            "transactions": list(self.transactions.get(number, [])),
        }

    async def get_logs(
        self,
        event_filter: EventFilter,
        *,
        from_block: int,
        to_block: int,
    ) -> list[dict[str, Any]]:
        matches = []
        for log in self.logs:
            if not from_block <= log["blockNumber"] <= to_block:
                continue
            if event_filter.address is not None and log["address"] != event_filter.address:
                continue
            if event_filter.topics and log["topics"][:1] != event_filter.topics[:1]:
                continue
            matches.append(log)
        return matches

    async def get_balance(self, address: str | None = None) -> int:
        self.balance_calls += 1
        if self.balance_error is not None:
            raise self.balance_error
        return self.balances.get(address or self.address, 10**18)

    async def estimate_gas(self, to: str, value: int, data: str | None = None) -> int:
        return self.gas_estimate

    async def send(
        self,
        to: str,
        value: int,
        data: str | None = None,
        gas_limit: int | None = None,
    ) -> TransactionReceipt:
        if self.send_error is not None:
            raise self.send_error
        self.sent.append({"to": to, "value": value, "data": data, "gas_limit": gas_limit})
        return TransactionReceipt(
            hash=f"0xtx{next(self._hashes)}",
            status=self.receipt_status,
            gas_used=gas_limit or 0,
        )

    async def deploy_contract(
        self,
        bytecode: str,
        args: list[Any],
        abi: list[dict[str, Any]] | None = None,
    ) -> TransactionReceipt:
        self.deployed.append({"bytecode": bytecode, "args": args})
        return TransactionReceipt(
            hash=f"0xtx{next(self._hashes)}",
            status=self.receipt_status,
            gas_used=100_000,
            contract_address="0x00000000000000000000000000000000000c0de0",
        )

    async def read_contract(
        self,
        address: str,
        abi: list[dict[str, Any]],
        function: str,
        args: list[Any],
    ) -> Any:
        if function == "balanceOf":
            return self.token_balances.get((address, args[0]), 0)
        raise ValueError(f"unexpected read: {function}")

    def encode_call(self, abi: list[dict[str, Any]], function: str, args: list[Any]) -> str:
        return f"0x{function}:" + ",".join(str(arg) for arg in args)


class InMemoryDurableTier:
    """Test-only durable tier; ignores TTL but records it."""

    name = "memory-durable"
    enabled = True

    def __init__(self) -> None:
        self.items: dict[str, Memory] = {}
        self.ttls: dict[str, int] = {}
        self.connected = False
        self.closed = False

    async def connect(self) -> None:
        self.connected = True

    async def put(self, memory: Memory, *, ttl_s: int) -> None:
        self.items[memory.id] = memory
        self.ttls[memory.id] = ttl_s

    async def get(self, memory_id: str) -> Memory | None:
        return self.items.get(memory_id)

    async def delete(self, memory_id: str) -> None:
        self.items.pop(memory_id, None)

    async def clear(self) -> None:
        self.items.clear()

    async def close(self) -> None:
        self.closed = True


class InMemoryIndexTier:
    """Test-only index tier with word-overlap matching."""

    name = "memory-index"
    enabled = True

    def __init__(self) -> None:
        self.items: dict[str, Memory] = {}
        self.queries: list[str] = []

    async def connect(self) -> None:
        return None

    async def add(self, memory: Memory) -> None:
        self.items[memory.id] = memory

    async def search(self, query: str, *, limit: int) -> list[Memory]:
        self.queries.append(query)
        words = set(query.lower().split())
        hits = [m for m in self.items.values() if words & set(m.content.lower().split())]
        return [m.model_copy(update={"metadata": {}}) for m in hits[:limit]]

    async def delete(self, memory_id: str) -> None:
        self.items.pop(memory_id, None)

    async def clear(self) -> None:
        self.items.clear()


class BrokenTier:
    """Test-only tier whose every call fails."""

    name = "broken"
    enabled = True

    def __init__(self, *, fail_connect: bool = False) -> None:
        self.fail_connect = fail_connect
        self.calls: list[str] = []

    async def connect(self) -> None:
        self.calls.append("connect")
        if self.fail_connect:
            raise ConnectionError("tier down")

    async def _fail(self, op: str) -> Any:
        self.calls.append(op)
        raise ConnectionError(f"{op} failed")

    async def put(self, memory: Memory, *, ttl_s: int) -> None:
        await self._fail("put")

    async def add(self, memory: Memory) -> None:
        await self._fail("add")

    async def get(self, memory_id: str) -> Memory | None:
        return await self._fail("get")

    async def search(self, query: str, *, limit: int) -> list[Memory]:
        return await self._fail("search")

    async def delete(self, memory_id: str) -> None:
        await self._fail("delete")

    async def clear(self) -> None:
        await self._fail("clear")

    async def close(self) -> None:
        await self._fail("close")


class ScriptedDecisionProvider:
    """Test-only decision provider returning queued plans."""

    def __init__(self, plans: list[Plan] | None = None, *, satisfied: bool = False) -> None:
        self.plans = list(plans or [])
        self.default = Plan(next_action="observe", reasoning="idle", confidence=0.5)
        self.satisfied = satisfied
        self.inputs: list[PlannerInput] = []

    async def decide(self, planner_input: PlannerInput) -> Plan:
        self.inputs.append(planner_input)
        if self.plans:
            return self.plans.pop(0)
        return self.default

    async def is_goal_satisfied(self, goal: Goal, task_history: list[Task]) -> bool:
        return self.satisfied


class ScriptedDecisionModel:
    """Test-only language model returning queued JSON payloads or raising."""

    def __init__(self, responses: list[dict[str, Any] | Exception]) -> None:
        self.responses = list(responses)
        self.calls: list[tuple[str, Any]] = []

    def _next(self, response_model: type[BaseModel]) -> Any:
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response_model.model_validate(response)

    async def choose_action(self, planner_input: PlannerInput) -> Plan:
        self.calls.append(("choose_action", planner_input))
        return self._next(Plan)

    async def judge_goal(self, goal: Goal, recent_tasks: list[Task]) -> GoalEvaluation:
        self.calls.append(("judge_goal", recent_tasks))
        return self._next(GoalEvaluation)


@pytest.fixture
def test_logger() -> logging.Logger:
    return logging.getLogger("chain_agent.tests")


@pytest.fixture
def chain() -> FakeChain:
    return FakeChain()


@pytest.fixture
def clock(monkeypatch: pytest.MonkeyPatch) -> Callable[[], datetime]:
    """Strictly increasing timestamps for memories and goals."""
    start = datetime(2026, 1, 1, tzinfo=UTC)
    ticks = itertools.count()

    def now() -> datetime:
        return start + timedelta(seconds=next(ticks))

    from chain_agent.app import agent as agent_module

    monkeypatch.setattr(knowledge_module, "utc_now", now)
    monkeypatch.setattr(agent_module, "utc_now", now)
    return now


@pytest.fixture
def knowledge(test_logger: logging.Logger) -> KnowledgeStore:
    return KnowledgeStore("test-agent", logger=test_logger)


def build_agent(
    chain: FakeChain,
    *,
    provider: ScriptedDecisionProvider | None = None,
    knowledge: KnowledgeStore | None = None,
    loop_interval_s: float = 0.01,
    error_interval_s: float = 0.01,
) -> Agent:
    logger = logging.getLogger("chain_agent.tests.agent")
    return Agent(
        "test-agent",
        chain=chain,
        observer=Observer(chain, polling_interval_s=0.01, retry_delay_s=0.01, logger=logger),
        planner=Planner(provider=provider, logger=logger),
        executor=Executor(chain, logger=logger),
        knowledge=knowledge or KnowledgeStore("test-agent", logger=logger),
        loop_interval_s=loop_interval_s,
        error_interval_s=error_interval_s,
        stop_timeout_s=2.0,
        logger=logger,
    )


@pytest.fixture
def agent(chain: FakeChain) -> Agent:
    return build_agent(chain)
