"""Decision layer for the agent control loop.

Two decision styles share the `DecisionProvider` interface:
1) Rule-based: keyword matching on the oldest open goal. Deterministic and
   always available.
2) LLM-backed: the model picks the next action; code validates the action
   name against an allowlist and cleans up its parameters.

`Planner` is the entrypoint used by the agent. It tries the configured
provider and falls back to the rule-based one on any failure, so planning
never raises.
"""

from __future__ import annotations

import logging
from typing import Any, Protocol

from .llm import DecisionModel
from .models import Goal, Plan, PlannerInput, Task

OBSERVE = "observe"
AVAILABLE_ACTIONS = (
    OBSERVE,
    "transfer_flow",
    "check_balance",
    "deploy_contract",
    "call_contract",
    "transfer_token",
)
# Most recent history tasks shown to goal evaluation.
GOAL_EVALUATION_WINDOW = 5


class DecisionProvider(Protocol):
    async def decide(self, planner_input: PlannerInput) -> Plan: ...

    async def is_goal_satisfied(self, goal: Goal, task_history: list[Task]) -> bool: ...


class RuleBasedDecisionProvider:
    """Keyword planner used when no model is configured or the model fails."""

    # Checked in order; first match wins.
    KEYWORD_ACTIONS = (
        ("transfer", "transfer_flow", "Goal involves transferring tokens"),
        ("balance", "check_balance", "Goal involves checking balances"),
        ("deploy", "deploy_contract", "Goal involves deploying a contract"),
    )

    async def decide(self, planner_input: PlannerInput) -> Plan:
        incomplete = [goal for goal in planner_input.goals if not goal.completed]
        if not incomplete:
            return Plan(
                next_action=OBSERVE,
                reasoning="No incomplete goals, continuing observation",
                parameters={},
                confidence=0.8,
            )

        # min() keeps the first of equal timestamps, so insertion order breaks ties.
        oldest = min(incomplete, key=lambda goal: goal.created_at)
        description = oldest.description.lower()
        for keyword, action, reasoning in self.KEYWORD_ACTIONS:
            if keyword in description:
                return Plan(next_action=action, reasoning=reasoning, parameters={}, confidence=0.6)
        return Plan(
            next_action=OBSERVE,
            reasoning=f"Working on goal: {oldest.description}",
            parameters={},
            confidence=0.6,
        )

    async def is_goal_satisfied(self, goal: Goal, task_history: list[Task]) -> bool:
        """Approximate completion check.

        A goal counts as done when one of the last five completed tasks mentions
        the goal description, or the goal description mentions the task kind.
        This is a keyword heuristic, not a proof of completion.
        """
        recent_completed = [task for task in task_history if task.status == "completed"]
        goal_text = goal.description.lower()
        return any(
            goal_text in task.description.lower() or task.kind in goal_text
            for task in recent_completed[-GOAL_EVALUATION_WINDOW:]
        )


class LLMDecisionProvider:
    """Provider that asks a language model for the next action.

    Model output is never trusted directly: the action name must be one of the
    available actions and parameters are normalized before dispatch.
    """

    def __init__(self, *, model: DecisionModel) -> None:
        self.model = model

    async def decide(self, planner_input: PlannerInput) -> Plan:
        plan = await self.model.choose_action(planner_input)
        self._validate_action(plan, planner_input.available_actions)
        plan.parameters = self._normalize_parameters(plan.next_action, plan.parameters)
        return plan

    async def is_goal_satisfied(self, goal: Goal, task_history: list[Task]) -> bool:
        evaluation = await self.model.judge_goal(goal, task_history[-GOAL_EVALUATION_WINDOW:])
        return evaluation.completed

    @staticmethod
    def _validate_action(plan: Plan, available_actions: list[str]) -> None:
        if plan.next_action not in available_actions:
            raise ValueError(f"Unsupported action from LLM planner: {plan.next_action}")

    @staticmethod
    def _normalize_parameters(action: str, parameters: dict[str, Any]) -> dict[str, Any]:
        """Drop empty values and coerce common numeric shapes."""
        args = {key: value for key, value in parameters.items() if value is not None}
        if action == "transfer_flow" and isinstance(args.get("amount"), (int, float)):
            # Keep ether amounts as decimal strings to avoid float rounding.
            args["amount"] = str(args["amount"])
        if action == "transfer_token" and "tokenAddress" in args and "token_address" not in args:
            args["token_address"] = args.pop("tokenAddress")
        if action == "check_balance" and args.get("address") == "":
            args.pop("address")
        return args


class Planner:
    """Route decisions to the configured provider with rule-based fallback."""

    def __init__(
        self,
        *,
        mode: str = "rule_based",
        llm: DecisionModel | None = None,
        provider: DecisionProvider | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.mode = mode.lower().strip()
        self.logger = logger or logging.getLogger(__name__)
        self.fallback = RuleBasedDecisionProvider()
        if provider is None and self.mode == "llm" and llm is not None:
            provider = LLMDecisionProvider(model=llm)
        self.provider = provider
        if self.mode == "llm" and self.provider is None:
            self.logger.warning(
                "Planner mode is 'llm' but no LLM client was available; using rule-based planning."
            )

    @property
    def effective_mode(self) -> str:
        return "rule_based" if self.provider is None else self.mode

    async def plan(self, planner_input: PlannerInput) -> Plan:
        if self.provider is not None:
            try:
                plan = await self.provider.decide(planner_input)
                self.logger.info(
                    "planner event=planned mode=%s action=%s confidence=%.2f",
                    self.effective_mode,
                    plan.next_action,
                    plan.confidence,
                )
                return plan
            except Exception as exc:  # noqa: BLE001
                self.logger.warning(
                    "planner event=fallback reason=%s; using rule-based planning", exc
                )
        plan = await self.fallback.decide(planner_input)
        self.logger.info(
            "planner event=planned mode=rule_based action=%s confidence=%.2f",
            plan.next_action,
            plan.confidence,
        )
        return plan

    async def evaluate_goal(self, goal: Goal, task_history: list[Task]) -> bool:
        if self.provider is not None:
            try:
                return await self.provider.is_goal_satisfied(goal, task_history)
            except Exception as exc:  # noqa: BLE001
                self.logger.warning(
                    "planner event=goal_evaluation_fallback goal_id=%s reason=%s", goal.id, exc
                )
        return await self.fallback.is_goal_satisfied(goal, task_history)
