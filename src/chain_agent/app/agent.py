"""Agent control loop.

Beginner terms used in this file:
- Goal: a standing objective the loop works toward until it is completed or removed.
- Task: the record of one executed action. It lives in the live task map while it
  runs and then moves to the bounded task history.
- Plan-execute step: one cycle of plan -> act -> record -> evaluate goals.

The loop and the observer's event handler run as independent asyncio tasks and
share only the knowledge store and the task history.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections import deque
from collections.abc import Iterable
from typing import Any
from uuid import uuid4

from pydantic import BaseModel

from .chain import ChainPort
from .events import EventBus, EventListener
from .executor import Executor
from .knowledge import KnowledgeStore
from .models import AgentEvent, EventType, Goal, Plan, PlannerInput, Task, utc_now
from .observer import Observer
from .planner import AVAILABLE_ACTIONS, OBSERVE, Planner

TASK_HISTORY_LIMIT = 100
PLANNER_HISTORY_WINDOW = 10
CONTEXT_MEMORY_WINDOW = 5
QUERY_MEMORY_LIMIT = 5
STATUS_TASK_WINDOW = 5


class Agent:
    """Owns goals and tasks and drives the plan-execute cycle."""

    def __init__(
        self,
        name: str,
        *,
        chain: ChainPort,
        observer: Observer | None = None,
        planner: Planner | None = None,
        executor: Executor | None = None,
        knowledge: KnowledgeStore | None = None,
        loop_interval_s: float = 5.0,
        error_interval_s: float = 10.0,
        stop_timeout_s: float = 30.0,
        logger: logging.Logger | None = None,
    ) -> None:
        self.name = name
        self.logger = logger or logging.getLogger(__name__)
        self.observer = observer or Observer(chain, logger=self.logger)
        self.planner = planner or Planner(logger=self.logger)
        self.executor = executor or Executor(chain, logger=self.logger)
        self.knowledge = knowledge or KnowledgeStore(name, logger=self.logger)
        self.loop_interval_s = loop_interval_s
        self.error_interval_s = error_interval_s
        self.stop_timeout_s = stop_timeout_s

        self.events = EventBus(name=f"{name}-events", logger=self.logger)
        self._goals: dict[str, Goal] = {}
        self._tasks: dict[str, Task] = {}
        self._history: deque[Task] = deque(maxlen=TASK_HISTORY_LIMIT)
        self._running = False
        self._wake = asyncio.Event()
        self._loop_task: asyncio.Task[None] | None = None

        self.observer.add_listener(self._handle_observed_event)

    @property
    def running(self) -> bool:
        return self._running

    @property
    def address(self) -> str:
        return self.executor.address

    async def start(self) -> None:
        """Initialize the knowledge store, start the observer, then the main loop.

        Errors from the observer start (initial chain head read) propagate and
        leave the agent stopped.
        """
        if self._running:
            return
        self.logger.info("agent event=starting name=%s", self.name)
        try:
            await self.knowledge.initialize()
            await self.observer.start()
        except Exception:
            self.logger.exception("agent event=start_failed name=%s", self.name)
            await self.knowledge.close()
            raise

        self._running = True
        self._wake = asyncio.Event()
        await self.knowledge.store_memory(
            f"Agent {self.name} started", {"type": "system", "action": "startup"}
        )
        self._loop_task = asyncio.create_task(self._main_loop(), name=f"{self.name}-main-loop")
        self.logger.info("agent event=started name=%s address=%s", self.name, self.address)

    async def stop(self) -> None:
        """Stop the loop cooperatively; an in-flight step finishes first.

        A loop still busy after ``stop_timeout_s`` is cancelled before the
        knowledge store closes underneath it.
        """
        if not self._running:
            return
        self.logger.info("agent event=stopping name=%s", self.name)
        self._running = False
        self._wake.set()
        await self.observer.stop()

        if not await self.observer.join(timeout_s=self.stop_timeout_s):
            self.logger.warning("agent event=observer_stop_timeout name=%s", self.name)
            await self.observer.cancel()
        if self._loop_task is not None:
            done, _ = await asyncio.wait({self._loop_task}, timeout=self.stop_timeout_s)
            if not done:
                self.logger.warning("agent event=loop_stop_timeout name=%s", self.name)
                self._loop_task.cancel()
                await asyncio.gather(self._loop_task, return_exceptions=True)
            self._loop_task = None

        await self.observer.bus.close()
        await self.events.close()
        await self.knowledge.close()
        self.logger.info("agent event=stopped name=%s", self.name)

    async def add_goal(self, description: str) -> str:
        goal = Goal(id=str(uuid4()), description=description, created_at=utc_now())
        self._goals[goal.id] = goal
        self.logger.info("agent event=goal_added goal_id=%s description=%r", goal.id, description)
        await self.knowledge.store_memory(
            f"New goal added: {description}", {"type": "goal", "goal_id": goal.id}
        )
        return goal.id

    def remove_goal(self, goal_id: str) -> bool:
        goal = self._goals.pop(goal_id, None)
        if goal is None:
            return False
        self.logger.info("agent event=goal_removed goal_id=%s", goal_id)
        return True

    async def mark_goal_completed(self, goal_id: str) -> bool:
        """Complete a goal. Repeated calls keep the first completion time."""
        goal = self._goals.get(goal_id)
        if goal is None:
            return False
        if goal.completed:
            return True

        goal.completed = True
        goal.completed_at = utc_now()
        self.logger.info(
            "agent event=goal_completed goal_id=%s description=%r", goal_id, goal.description
        )
        await self.knowledge.store_memory(
            f"Goal completed: {goal.description}",
            {"type": "goal", "goal_id": goal_id, "status": "completed"},
        )
        return True

    def get_goals(self) -> list[Goal]:
        return [goal.model_copy() for goal in self._goals.values()]

    def get_task_history(self) -> list[Task]:
        return list(self._history)

    def get_live_tasks(self) -> list[Task]:
        return list(self._tasks.values())

    def add_listener(
        self,
        listener: EventListener,
        *,
        event_types: Iterable[EventType] | None = None,
    ) -> str:
        """Receive every observed event after the agent has recorded it."""
        return self.events.subscribe(listener, event_types=event_types)

    def remove_listener(self, subscription_id: str) -> bool:
        return self.events.unsubscribe(subscription_id)

    async def plan_and_execute(self) -> Task | None:
        """Run one plan-execute step. Returns the finished task, or None for `observe`."""
        planner_input = PlannerInput(
            goals=self.get_goals(),
            task_history=list(self._history)[-PLANNER_HISTORY_WINDOW:],
            current_context=await self.get_current_context(),
            available_actions=list(AVAILABLE_ACTIONS),
        )
        plan = await self.planner.plan(planner_input)
        if plan.next_action == OBSERVE:
            self.logger.debug("agent event=observe reasoning=%r", plan.reasoning)
            return None

        task = Task(
            id=str(uuid4()),
            description=f"Execute action: {plan.next_action}",
            created_at=utc_now(),
        )
        self._tasks[task.id] = task
        await self._run_task(task, plan)

        self._history.append(task)
        self._tasks.pop(task.id, None)

        await self._evaluate_goals()
        return task

    async def get_current_context(self) -> dict[str, Any]:
        balance = await self.executor.get_balance()
        recent = await self.knowledge.get_recent_memories(CONTEXT_MEMORY_WINDOW)
        goals = list(self._goals.values())
        return {
            "address": self.address,
            "balance": str(balance),
            "recent_memories": [memory.content for memory in recent],
            "active_goals": sum(1 for goal in goals if not goal.completed),
            "completed_goals": sum(1 for goal in goals if goal.completed),
        }

    async def query(self, question: str) -> str:
        """Answer from memory search plus a context snapshot. Read-only."""
        memories = await self.knowledge.search_memories(question, QUERY_MEMORY_LIMIT)
        context = await self.get_current_context()
        return (
            f"Based on recent activity and current state: {json.dumps(context, default=str)}. "
            f"Recent memories: {', '.join(memory.content for memory in memories)}"
        )

    def get_status(self) -> dict[str, Any]:
        return {
            "running": self._running,
            "goals": self.get_goals(),
            "recent_tasks": list(self._history)[-STATUS_TASK_WINDOW:],
            "address": self.address,
        }

    async def _run_task(self, task: Task, plan: Plan) -> None:
        task.status = "running"
        self.logger.info(
            "agent event=task_start task_id=%s action=%s confidence=%.2f",
            task.id,
            plan.next_action,
            plan.confidence,
        )
        try:
            outcome = await self.executor.execute_action(plan.next_action, plan.parameters)
        except Exception as exc:  # noqa: BLE001
            self.logger.exception("agent event=task_failed task_id=%s", task.id)
            self._finish_task(task, status="failed", error=str(exc) or type(exc).__name__)
        else:
            result = _to_jsonable(outcome)
            success = getattr(outcome, "success", True)
            if success:
                self._finish_task(task, status="completed", result=result)
                self.logger.info("agent event=task_completed task_id=%s", task.id)
            else:
                error = getattr(outcome, "error", None) or "Action failed"
                self._finish_task(task, status="failed", result=result, error=error)
                self.logger.error("agent event=task_failed task_id=%s error=%s", task.id, error)

        verb = "completed" if task.status == "completed" else "failed"
        await self.knowledge.store_memory(
            f"Task {verb}: {plan.next_action} - {plan.reasoning}",
            {
                "type": "task",
                "task_id": task.id,
                "action": plan.next_action,
                "status": task.status,
                "result": task.result,
                "error": task.error,
                "confidence": plan.confidence,
            },
        )

    @staticmethod
    def _finish_task(
        task: Task,
        *,
        status: str,
        result: Any = None,
        error: str | None = None,
    ) -> None:
        task.status = status  # type: ignore[assignment]
        task.result = result
        task.error = error
        task.completed_at = utc_now()

    async def _evaluate_goals(self) -> None:
        history = list(self._history)
        for goal in list(self._goals.values()):
            if goal.completed:
                continue
            if await self.planner.evaluate_goal(goal, history):
                await self.mark_goal_completed(goal.id)

    async def _main_loop(self) -> None:
        while self._running:
            delay = self.loop_interval_s
            try:
                await self.plan_and_execute()
            except Exception:  # noqa: BLE001
                self.logger.exception("agent event=step_error name=%s", self.name)
                delay = self.error_interval_s
            await self._sleep(delay)

    async def _sleep(self, delay_s: float) -> None:
        try:
            await asyncio.wait_for(self._wake.wait(), timeout=delay_s)
        except TimeoutError:
            pass

    async def _handle_observed_event(self, event: AgentEvent) -> None:
        self.logger.debug("agent event=observed type=%s event_id=%s", event.type, event.id)
        await self.knowledge.store_memory(
            f"Observed {event.type} event",
            {
                "type": "observation",
                "event_type": event.type,
                "event_id": event.id,
                "event_data": event.model_dump(mode="json")["data"],
            },
        )
        self.events.publish(event)


def _to_jsonable(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    return json.loads(json.dumps(value, default=str))
