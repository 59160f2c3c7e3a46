"""Language-model decision backend.

`ChatCompletionsClient` talks to any OpenAI-compatible `/chat/completions`
endpoint and owns the full model contract for the planner: the prompt wording,
the JSON schema each reply must satisfy, and which transport failures earn
another attempt. The HTTP call is blocking urllib and runs in a worker thread.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from typing import Any, Protocol, TypeVar
from urllib import error, request

from pydantic import BaseModel, ValidationError

from .models import Goal, GoalEvaluation, Plan, PlannerInput, Task
from .settings import Settings

TModel = TypeVar("TModel", bound=BaseModel)

# Rate limits, conflicts, and server-side failures; other 4xx are final.
RETRYABLE_STATUS = frozenset({408, 409, 429, 500, 502, 503, 504})
ERROR_DETAIL_LIMIT = 500

ACTION_PARAMETER_SHAPES = {
    "transfer_flow": "{to, amount}",
    "check_balance": "{address?}",
    "deploy_contract": "{bytecode, args?}",
    "call_contract": "{address, abi, function, args?, value?}",
    "transfer_token": "{token_address, to, amount}",
}


class DecisionModel(Protocol):
    """What the planner needs from a language model."""

    async def choose_action(self, planner_input: PlannerInput) -> Plan: ...

    async def judge_goal(self, goal: Goal, recent_tasks: list[Task]) -> GoalEvaluation: ...


class LLMRequestError(RuntimeError):
    """Transport-level failure talking to the completions endpoint."""

    def __init__(self, message: str, *, status: int | None = None, retryable: bool = False) -> None:
        super().__init__(message)
        self.status = status
        self.retryable = retryable


class ChatCompletionsClient:
    def __init__(
        self,
        *,
        api_key: str,
        model: str = "gpt-4o-mini",
        base_url: str = "https://api.openai.com/v1",
        temperature: float = 0.1,
        timeout_s: float = 8.0,
        max_retries: int = 1,
        backoff_s: float = 0.2,
        logger: logging.Logger | None = None,
    ) -> None:
        if not api_key:
            raise ValueError("api_key is required")
        self.api_key = api_key
        self.model = model
        self.endpoint = f"{base_url.rstrip('/')}/chat/completions"
        self.temperature = temperature
        self.timeout_s = timeout_s
        self.max_retries = max(0, max_retries)
        self.backoff_s = max(0.0, backoff_s)
        self.logger = logger or logging.getLogger(__name__)

    async def choose_action(self, planner_input: PlannerInput) -> Plan:
        shapes = "; ".join(
            f"{action} {ACTION_PARAMETER_SHAPES[action]}"
            for action in planner_input.available_actions
            if action in ACTION_PARAMETER_SHAPES
        )
        system_prompt = (
            "You are an autonomous agent operating on an EVM blockchain. "
            "Read the goals, the recent task history and the current context, then pick "
            "exactly one next action. Reply with JSON holding next_action, reasoning, "
            "parameters and confidence (0 to 1). next_action must be one of: "
            f"{', '.join(planner_input.available_actions)}. "
            "Pick 'observe' when no chain action is needed this cycle. "
            f"Parameter shapes: {shapes}."
        )
        user_prompt = "\n\n".join(
            [
                f"Goals:\n{_dump([goal.model_dump(mode='json') for goal in planner_input.goals])}",
                "Task history (most recent last):\n"
                + _dump([task.model_dump(mode="json") for task in planner_input.task_history]),
                f"Current context:\n{_dump(planner_input.current_context)}",
            ]
        )
        return await self._complete(Plan, system_prompt, user_prompt)

    async def judge_goal(self, goal: Goal, recent_tasks: list[Task]) -> GoalEvaluation:
        system_prompt = (
            "Decide whether the goal has been achieved by the tasks listed. "
            "Reply with JSON holding completed (boolean) and reasoning."
        )
        user_prompt = (
            f"Goal:\n{_dump(goal.model_dump(mode='json'))}\n\n"
            f"Recent tasks:\n{_dump([task.model_dump(mode='json') for task in recent_tasks])}"
        )
        return await self._complete(GoalEvaluation, system_prompt, user_prompt)

    def build_payload(
        self,
        response_model: type[BaseModel],
        system_prompt: str,
        user_prompt: str,
    ) -> dict[str, Any]:
        return {
            "model": self.model,
            "temperature": self.temperature,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            "response_format": {
                "type": "json_schema",
                "json_schema": {
                    "name": response_model.__name__.lower(),
                    # Plan.parameters is free-form, which strict mode rejects.
                    "strict": False,
                    "schema": response_model.model_json_schema(),
                },
            },
        }

    async def _complete(
        self,
        response_model: type[TModel],
        system_prompt: str,
        user_prompt: str,
    ) -> TModel:
        payload = self.build_payload(response_model, system_prompt, user_prompt)
        attempt = 0
        while True:
            attempt += 1
            try:
                body = await asyncio.to_thread(self._post, payload)
            except LLMRequestError as exc:
                if not exc.retryable or attempt > self.max_retries:
                    raise
                delay = self.backoff_s * 2 ** (attempt - 1)
                self.logger.warning(
                    "llm event=retrying attempt=%d/%d model=%s status=%s delay_s=%.2f reason=%s",
                    attempt,
                    self.max_retries + 1,
                    self.model,
                    exc.status,
                    delay,
                    exc,
                )
                await asyncio.sleep(delay)
                continue
            return parse_reply(body, response_model)

    def _post(self, payload: dict[str, Any]) -> dict[str, Any]:
        if _trace_enabled():
            self.logger.debug("llm event=request model=%s endpoint=%s", self.model, self.endpoint)
        req = request.Request(
            self.endpoint,
            data=json.dumps(payload).encode("utf-8"),
            method="POST",
            headers={
                "Authorization": f"Bearer {self.api_key}",
                "Content-Type": "application/json",
            },
        )
        try:
            with request.urlopen(req, timeout=self.timeout_s) as response:
                raw = response.read()
        except error.HTTPError as exc:
            detail = exc.read().decode("utf-8", errors="replace")[:ERROR_DETAIL_LIMIT]
            raise LLMRequestError(
                f"HTTP {exc.code} from {self.endpoint}: {detail}",
                status=exc.code,
                retryable=exc.code in RETRYABLE_STATUS,
            ) from exc
        except (error.URLError, TimeoutError) as exc:
            raise LLMRequestError(f"transport failure: {exc}", retryable=True) from exc
        try:
            return json.loads(raw)
        except json.JSONDecodeError as exc:
            raise LLMRequestError("completion body is not JSON") from exc


def parse_reply(body: dict[str, Any], response_model: type[TModel]) -> TModel:
    """Validate the first choice's message text against ``response_model``."""
    try:
        message = body["choices"][0]["message"]
    except (KeyError, IndexError, TypeError) as exc:
        raise ValueError("completion has no message") from exc
    if message.get("refusal"):
        raise ValueError(f"model refused: {message['refusal']}")

    content = message.get("content")
    if isinstance(content, list):
        content = "".join(
            part["text"]
            for part in content
            if isinstance(part, dict) and isinstance(part.get("text"), str)
        )
    if not isinstance(content, str) or not content.strip():
        raise ValueError("completion message has no text content")

    try:
        return response_model.model_validate_json(_strip_code_fence(content))
    except ValidationError as exc:
        raise ValueError(f"reply does not match {response_model.__name__}: {exc}") from exc


def build_llm_client(
    settings: Settings,
    *,
    logger: logging.Logger | None = None,
) -> ChatCompletionsClient | None:
    """Return a client when an API key is configured, otherwise None."""
    api_key = settings.resolved_openai_api_key()
    if not api_key:
        return None
    return ChatCompletionsClient(
        api_key=api_key,
        model=settings.llm_model,
        base_url=settings.llm_base_url,
        timeout_s=settings.llm_timeout_s,
        max_retries=settings.llm_max_retries,
        backoff_s=settings.llm_backoff_s,
        logger=logger,
    )


def _strip_code_fence(text: str) -> str:
    # Some models wrap JSON in a ```json fence even with response_format set.
    text = text.strip()
    if text.startswith("```"):
        text = text.split("\n", 1)[1] if "\n" in text else ""
        text = text.rsplit("```", 1)[0]
    return text.strip()


def _dump(value: Any) -> str:
    return json.dumps(value, indent=2, default=str, ensure_ascii=True)


def _trace_enabled() -> bool:
    return os.getenv("CHAIN_AGENT_LLM_TRACE", "0").strip() == "1"
