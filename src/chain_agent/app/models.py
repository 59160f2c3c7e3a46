"""Pydantic models shared by the observer, planner, executor, knowledge store, and API.

Terms used in this file:
- Goal: a standing objective tracked until it is completed or removed.
- Task: the lifecycle record of one executed action.
- Event: one block, transaction, or log delivered by the observer.
- Memory: a persisted, searchable note of something the agent observed or did.
- Plan: the decision provider's choice of the next action for one cycle.
"""

from __future__ import annotations

from datetime import UTC, datetime
from decimal import Decimal
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

# Task lifecycle states. Transitions only move forward:
# pending -> running -> completed | failed.
TaskStatus = Literal["pending", "running", "completed", "failed"]
EventType = Literal["block", "transaction", "log"]
ReceiptStatus = Literal["success", "reverted"]


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


class Goal(BaseModel):
    """Standing objective owned by the agent control loop."""

    id: str
    description: str
    completed: bool = False
    created_at: datetime
    # Set iff completed.
    completed_at: datetime | None = None


class Task(BaseModel):
    """One executed action, from creation until it lands in history."""

    id: str
    kind: Literal["execute"] = "execute"
    description: str
    status: TaskStatus = "pending"
    result: Any = None
    error: str | None = None
    created_at: datetime
    completed_at: datetime | None = None


class AgentEvent(BaseModel):
    """Observer output. Immutable once created."""

    model_config = ConfigDict(frozen=True)

    id: str
    type: EventType
    timestamp: datetime
    data: dict[str, Any] = Field(default_factory=dict)
    # Informational only; every listener sees every event regardless.
    processed: bool = False


class Memory(BaseModel):
    id: str
    content: str
    metadata: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime


class EventFilter(BaseModel):
    """Chain log-matching predicate keyed by filter id in the observer."""

    address: str | list[str] | None = None
    topics: list[str | list[str] | None] | None = None
    from_block: int | None = None
    to_block: int | None = None


class PlannerInput(BaseModel):
    """Everything the decision provider sees for one plan-execute cycle."""

    goals: list[Goal] = Field(default_factory=list)
    task_history: list[Task] = Field(default_factory=list)
    current_context: dict[str, Any] = Field(default_factory=dict)
    available_actions: list[str] = Field(default_factory=list)


class Plan(BaseModel):
    """Decision provider output: which action to take next and why."""

    next_action: str
    reasoning: str = ""
    parameters: dict[str, Any] = Field(default_factory=dict)
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)


class GoalEvaluation(BaseModel):
    completed: bool
    reasoning: str = ""


class TransactionReceipt(BaseModel):
    """Chain port result for a sent transaction or a contract deployment."""

    hash: str
    status: ReceiptStatus
    gas_used: int = 0
    contract_address: str | None = None


class ExecutorResult(BaseModel):
    success: bool
    transaction_hash: str | None = None
    result: Any = None
    error: str | None = None
    gas_used: int | None = None


class StrictModel(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)


class TransferFlowArgs(StrictModel):
    to: str = Field(min_length=1)
    # Amount in whole FLOW (ether units), e.g. "1.5".
    amount: Decimal = Field(gt=0)


class CheckBalanceArgs(StrictModel):
    address: str | None = None


class DeployContractArgs(StrictModel):
    bytecode: str = Field(min_length=2)
    args: list[Any] = Field(default_factory=list)


class CallContractArgs(StrictModel):
    address: str = Field(min_length=1)
    abi: list[dict[str, Any]]
    function: str = Field(min_length=1)
    args: list[Any] = Field(default_factory=list)
    value: int = Field(default=0, ge=0)


class TransferTokenArgs(StrictModel):
    token_address: str = Field(min_length=1, alias="tokenAddress")
    to: str = Field(min_length=1)
    # Raw token units (no decimals applied).
    amount: int = Field(gt=0)
