"""FastAPI application wiring for the chain agent.

Beginner terms used in this file:
- FastAPI app: the main web application object.
- Lifespan: startup/shutdown hook; here it starts and stops the agent loop.
- app.state: a place to store shared runtime objects (the agent, settings).
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, HTTPException, Query, Request
from pydantic import BaseModel, Field

from .app.agent import Agent
from .app.chain import Web3ChainClient
from .app.durable import build_durable_tier
from .app.executor import Executor, from_wei
from .app.index import ChromaIndexTier
from .app.knowledge import KnowledgeStore
from .app.llm import build_llm_client
from .app.models import Goal, Memory
from .app.observer import Observer
from .app.planner import Planner
from .app.settings import Settings, get_settings

logger = logging.getLogger(__name__)


class CreateGoalRequest(BaseModel):
    description: str = Field(min_length=1)


class CreateGoalResponse(BaseModel):
    goal_id: str


class QueryRequest(BaseModel):
    question: str = Field(min_length=1)


class QueryResponse(BaseModel):
    answer: str


def build_agent_from_settings(settings: Settings) -> Agent:
    """Assemble an agent and its collaborators from settings.

    Raises RuntimeError when chain access is not configured.
    """
    settings.require_chain()
    name = settings.resolved_agent_name()
    agent_logger = logging.getLogger(f"chain_agent.{name}")

    chain = Web3ChainClient(
        rpc_url=settings.resolved_rpc_url(),
        private_key=settings.resolved_private_key(),
        chain_id=settings.chain_id,
    )
    chroma_host = settings.resolved_chroma_host()
    knowledge = KnowledgeStore(
        name,
        durable=build_durable_tier(settings.resolved_durable_url()),
        index=ChromaIndexTier(chroma_host, collection_name=f"{name}-memories") if chroma_host else None,
        ttl_s=settings.memory_ttl_s,
        logger=agent_logger,
    )
    planner = Planner(
        mode=settings.decision_mode,
        llm=build_llm_client(settings, logger=agent_logger),
        logger=agent_logger,
    )
    return Agent(
        name,
        chain=chain,
        observer=Observer(
            chain,
            polling_interval_s=settings.resolved_polling_interval_s(),
            logger=agent_logger,
        ),
        planner=planner,
        executor=Executor(chain, logger=agent_logger),
        knowledge=knowledge,
        loop_interval_s=settings.loop_interval_s,
        error_interval_s=settings.loop_error_interval_s,
        logger=agent_logger,
    )


def create_app(
    *,
    agent: Agent | None = None,
    settings_override: Settings | None = None,
) -> FastAPI:
    """Application factory.

    With an injected agent the lifespan hook is skipped and the caller owns the
    agent's start/stop. Otherwise the agent is built from settings at startup.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        settings = settings_override or get_settings()
        built = build_agent_from_settings(settings)
        app.state.agent = built
        await built.start()
        logger.info("api event=agent_started name=%s", built.name)
        try:
            yield
        finally:
            await built.stop()
            logger.info("api event=agent_stopped name=%s", built.name)

    app = FastAPI(
        title="chain_agent",
        version="0.1.0",
        lifespan=None if agent is not None else lifespan,
    )
    app.state.agent = agent

    @app.get("/health")
    @app.get("/healthz")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/status")
    def status(request: Request) -> dict[str, Any]:
        return _require_agent(request).get_status()

    @app.get("/goals", response_model=list[Goal])
    def list_goals(request: Request) -> list[Goal]:
        return _require_agent(request).get_goals()

    @app.post("/goals", response_model=CreateGoalResponse)
    async def create_goal(payload: CreateGoalRequest, request: Request) -> CreateGoalResponse:
        goal_id = await _require_agent(request).add_goal(payload.description)
        return CreateGoalResponse(goal_id=goal_id)

    @app.post("/goals/{goal_id}/complete")
    async def complete_goal(goal_id: str, request: Request) -> dict[str, Any]:
        if not await _require_agent(request).mark_goal_completed(goal_id):
            raise HTTPException(status_code=404, detail="Goal not found")
        return {"goal_id": goal_id, "completed": True}

    @app.delete("/goals/{goal_id}")
    def delete_goal(goal_id: str, request: Request) -> dict[str, Any]:
        if not _require_agent(request).remove_goal(goal_id):
            raise HTTPException(status_code=404, detail="Goal not found")
        return {"goal_id": goal_id, "removed": True}

    @app.post("/query", response_model=QueryResponse)
    async def query(payload: QueryRequest, request: Request) -> QueryResponse:
        answer = await _require_agent(request).query(payload.question)
        return QueryResponse(answer=answer)

    @app.get("/memories/recent", response_model=list[Memory])
    async def recent_memories(
        request: Request,
        limit: int = Query(default=10, ge=1, le=100),
    ) -> list[Memory]:
        return await _require_agent(request).knowledge.get_recent_memories(limit)

    @app.get("/memories/search", response_model=list[Memory])
    async def search_memories(
        request: Request,
        q: str = Query(min_length=1),
        limit: int = Query(default=10, ge=1, le=100),
    ) -> list[Memory]:
        return await _require_agent(request).knowledge.search_memories(q, limit)

    @app.get("/balance")
    async def balance(request: Request) -> dict[str, str]:
        current = _require_agent(request)
        balance_wei = await current.executor.get_balance()
        return {
            "address": current.address,
            "balance_wei": str(balance_wei),
            "balance": str(from_wei(balance_wei)),
        }

    return app


def _require_agent(request: Request) -> Agent:
    current = getattr(request.app.state, "agent", None)
    if current is None:
        raise HTTPException(status_code=503, detail="Agent is not running")
    return current


# Module-level app for `uvicorn chain_agent.main:app`.
app = create_app()
