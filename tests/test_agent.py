from __future__ import annotations

import asyncio

import pytest

from chain_agent.app.knowledge import KnowledgeStore
from chain_agent.app.models import AgentEvent, Plan

from conftest import (
    AGENT_ADDRESS,
    FakeChain,
    InMemoryDurableTier,
    ScriptedDecisionProvider,
    build_agent,
)


def _plan(action: str, **parameters) -> Plan:
    return Plan(next_action=action, reasoning=f"do {action}", parameters=parameters, confidence=0.7)


@pytest.mark.asyncio
async def test_add_goal_then_get_goals(agent) -> None:
    goal_id = await agent.add_goal("Check my balance")

    goals = agent.get_goals()
    assert [goal.id for goal in goals] == [goal_id]
    assert goals[0].completed is False
    assert goals[0].completed_at is None
    recent = await agent.knowledge.get_recent_memories()
    assert recent[0].content == "New goal added: Check my balance"
    assert recent[0].metadata["goal_id"] == goal_id


@pytest.mark.asyncio
async def test_mark_goal_completed_is_first_write_wins(agent) -> None:
    goal_id = await agent.add_goal("Deploy the registry")

    assert await agent.mark_goal_completed(goal_id) is True
    first_completed_at = agent.get_goals()[0].completed_at
    assert await agent.mark_goal_completed(goal_id) is True

    goal = agent.get_goals()[0]
    assert goal.completed is True
    assert goal.completed_at == first_completed_at
    completions = await agent.knowledge.search_memories("Goal completed")
    assert len(completions) == 1
    assert await agent.mark_goal_completed("missing") is False


@pytest.mark.asyncio
async def test_remove_goal(agent) -> None:
    goal_id = await agent.add_goal("Transfer 1 FLOW")

    assert agent.remove_goal(goal_id) is True
    assert agent.remove_goal(goal_id) is False
    assert agent.get_goals() == []


@pytest.mark.asyncio
async def test_observe_plan_creates_no_task(agent) -> None:
    assert await agent.plan_and_execute() is None
    assert agent.get_task_history() == []
    assert agent.get_live_tasks() == []


@pytest.mark.asyncio
async def test_successful_step_records_task_and_memory(chain) -> None:
    provider = ScriptedDecisionProvider([_plan("check_balance")])
    agent = build_agent(chain, provider=provider)
    await agent.add_goal("Check my balance")

    task = await agent.plan_and_execute()

    assert task is not None
    assert task.status == "completed"
    assert task.description == "Execute action: check_balance"
    assert task.result["address"] == AGENT_ADDRESS
    assert task.completed_at is not None
    assert agent.get_task_history() == [task]
    assert agent.get_live_tasks() == []

    planner_input = provider.inputs[0]
    assert planner_input.available_actions[0] == "observe"
    assert planner_input.current_context["address"] == AGENT_ADDRESS
    assert planner_input.current_context["active_goals"] == 1
    assert planner_input.current_context["recent_memories"] == ["New goal added: Check my balance"]

    memories = await agent.knowledge.search_memories("Task completed")
    assert memories[0].content == "Task completed: check_balance - do check_balance"
    assert memories[0].metadata["confidence"] == 0.7


@pytest.mark.asyncio
async def test_unknown_action_fails_task_without_raising(chain) -> None:
    agent = build_agent(chain, provider=ScriptedDecisionProvider([_plan("mint_nft")]))

    task = await agent.plan_and_execute()

    assert task.status == "failed"
    assert task.error == "Unknown action: mint_nft"
    assert agent.get_task_history()[-1].id == task.id
    assert (await agent.knowledge.search_memories("Task failed"))[0].metadata["status"] == "failed"


@pytest.mark.asyncio
async def test_reverted_transfer_fails_task(chain) -> None:
    chain.receipt_status = "reverted"
    plan = _plan("transfer_flow", to="0x00000000000000000000000000000000000b0b00", amount="1")
    agent = build_agent(chain, provider=ScriptedDecisionProvider([plan]))

    task = await agent.plan_and_execute()

    assert task.status == "failed"
    assert task.error == "Transaction reverted"
    assert task.result["success"] is False


@pytest.mark.asyncio
async def test_goal_marked_completed_after_satisfying_step(chain) -> None:
    agent = build_agent(chain)
    goal_id = await agent.add_goal("execute a balance check")

    task = await agent.plan_and_execute()

    assert task.status == "completed"
    goal = agent.get_goals()[0]
    assert goal.id == goal_id
    assert goal.completed is True
    assert goal.completed_at is not None
    assert await agent.plan_and_execute() is None


@pytest.mark.asyncio
async def test_task_history_keeps_last_hundred(chain) -> None:
    provider = ScriptedDecisionProvider()
    provider.default = _plan("check_balance")
    agent = build_agent(chain, provider=provider)

    ids = [(await agent.plan_and_execute()).id for _ in range(105)]

    history_ids = [task.id for task in agent.get_task_history()]
    assert len(history_ids) == 100
    assert history_ids == ids[5:]
    assert not set(ids[:5]) & set(history_ids)
    assert len(provider.inputs[-1].task_history) == 10


@pytest.mark.asyncio
async def test_query_is_read_only(chain) -> None:
    provider = ScriptedDecisionProvider([_plan("check_balance")])
    agent = build_agent(chain, provider=provider)
    await agent.add_goal("Check my balance")
    await agent.plan_and_execute()
    goals_before = [goal.model_dump() for goal in agent.get_goals()]
    history_before = [task.model_dump() for task in agent.get_task_history()]

    answer = await agent.query("balance")

    assert "New goal added: Check my balance" in answer
    assert AGENT_ADDRESS in answer
    assert [goal.model_dump() for goal in agent.get_goals()] == goals_before
    assert [task.model_dump() for task in agent.get_task_history()] == history_before
    assert agent.get_live_tasks() == []


@pytest.mark.asyncio
async def test_observed_events_are_stored_and_rebroadcast(chain) -> None:
    chain.head = 1
    chain.transactions = {1: [{"hash": "0xfeed"}]}
    agent = build_agent(chain)
    received: list[AgentEvent] = []
    agent.add_listener(received.append, event_types=["transaction"])

    await agent.observer.poll_once()
    await agent.observer.bus.drain()
    await agent.events.drain()

    assert [event.data["transaction"]["hash"] for event in received] == ["0xfeed"]
    observations = await agent.knowledge.search_memories("Observed transaction event")
    assert len(observations) == 1
    metadata = observations[0].metadata
    assert metadata["type"] == "observation"
    assert metadata["event_type"] == "transaction"
    assert metadata["event_data"]["block_number"] == 1
    assert len(await agent.knowledge.search_memories("Observed block event")) == 1


@pytest.mark.asyncio
async def test_start_and_stop_lifecycle(chain) -> None:
    chain.head = 7
    agent = build_agent(chain)

    await agent.start()
    assert agent.running is True
    assert agent.observer.running is True
    assert agent.observer.watermark == 7
    assert agent.get_status()["running"] is True
    started = await agent.knowledge.search_memories("Agent test-agent started")
    assert started[0].metadata["action"] == "startup"

    await agent.stop()
    assert agent.running is False
    assert agent.observer.running is False


@pytest.mark.asyncio
async def test_start_fails_fast_when_chain_head_unreadable(chain) -> None:
    chain.head_error = ConnectionError("rpc down")
    agent = build_agent(chain)

    with pytest.raises(ConnectionError):
        await agent.start()
    assert agent.running is False


@pytest.mark.asyncio
async def test_failed_start_closes_knowledge_store(chain, test_logger) -> None:
    chain.head_error = ConnectionError("rpc down")
    durable = InMemoryDurableTier()
    agent = build_agent(
        chain, knowledge=KnowledgeStore("test-agent", durable=durable, logger=test_logger)
    )

    with pytest.raises(ConnectionError):
        await agent.start()
    assert durable.connected is True
    assert durable.closed is True


@pytest.mark.asyncio
async def test_stop_cancels_observer_stuck_past_timeout(chain, caplog) -> None:
    chain.head = 1
    agent = build_agent(chain)
    agent.stop_timeout_s = 0.05
    entered = asyncio.Event()

    async def hang(number: int) -> None:
        entered.set()
        await asyncio.sleep(60)

    chain.on_get_block = hang
    await agent.start()
    chain.head = 2
    await asyncio.wait_for(entered.wait(), timeout=1.0)

    with caplog.at_level("WARNING", logger="chain_agent.tests.agent"):
        await asyncio.wait_for(agent.stop(), timeout=2.0)

    assert agent.running is False
    assert await agent.observer.join(timeout_s=1.0) is True
    assert agent.observer.watermark == 1
    assert "agent event=observer_stop_timeout" in caplog.text
    assert "observer event=cancelled" in caplog.text


@pytest.mark.asyncio
async def test_main_loop_survives_step_errors() -> None:
    chain = FakeChain(head=1)
    chain.balance_error = ConnectionError("balance unavailable")
    agent = build_agent(chain)

    await agent.start()
    await asyncio.sleep(0.1)
    assert agent.running is True
    assert chain.balance_calls >= 2

    await agent.stop()
    assert agent.running is False


@pytest.mark.asyncio
async def test_status_reports_recent_tasks(chain) -> None:
    provider = ScriptedDecisionProvider()
    provider.default = _plan("check_balance")
    agent = build_agent(chain, provider=provider)
    for _ in range(7):
        await agent.plan_and_execute()

    status = agent.get_status()
    assert status["running"] is False
    assert status["address"] == AGENT_ADDRESS
    assert [task.id for task in status["recent_tasks"]] == [
        task.id for task in agent.get_task_history()[-5:]
    ]
