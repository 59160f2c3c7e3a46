"""Non-blocking event fan-out.

Every subscription owns an unbounded queue and a consumer task. Publishing is
`put_nowait` on each matching queue, so a slow listener delays only itself.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from uuid import uuid4

from .models import AgentEvent

EventListener = Callable[[AgentEvent], Awaitable[None] | None]


@dataclass
class _Subscription:
    subscription_id: str
    listener: EventListener
    # None means every event type.
    event_types: frozenset[str] | None
    queue: asyncio.Queue[AgentEvent] = field(default_factory=asyncio.Queue)
    task: asyncio.Task[None] | None = None

    def accepts(self, event: AgentEvent) -> bool:
        return self.event_types is None or event.type in self.event_types


class EventBus:
    """Broadcast events to every registered listener."""

    def __init__(self, *, name: str = "events", logger: logging.Logger | None = None) -> None:
        self.name = name
        self.logger = logger or logging.getLogger(__name__)
        self._subscriptions: dict[str, _Subscription] = {}

    def subscribe(
        self,
        listener: EventListener,
        *,
        event_types: Iterable[str] | None = None,
    ) -> str:
        subscription_id = str(uuid4())
        self._subscriptions[subscription_id] = _Subscription(
            subscription_id=subscription_id,
            listener=listener,
            event_types=frozenset(event_types) if event_types is not None else None,
        )
        return subscription_id

    def unsubscribe(self, subscription_id: str) -> bool:
        subscription = self._subscriptions.pop(subscription_id, None)
        if subscription is None:
            return False
        if subscription.task is not None:
            subscription.task.cancel()
        return True

    @property
    def listener_count(self) -> int:
        return len(self._subscriptions)

    def publish(self, event: AgentEvent) -> None:
        """Enqueue the event for every matching listener. Never awaits."""
        for subscription in list(self._subscriptions.values()):
            if not subscription.accepts(event):
                continue
            if subscription.task is None or subscription.task.done():
                # Consumers start lazily so subscribing works before the loop runs.
                subscription.task = asyncio.get_running_loop().create_task(
                    self._consume(subscription),
                    name=f"{self.name}-listener-{subscription.subscription_id[:8]}",
                )
            subscription.queue.put_nowait(event)

    async def drain(self) -> None:
        """Wait until every queued event has been handled by its listener."""
        await asyncio.gather(
            *(subscription.queue.join() for subscription in list(self._subscriptions.values()))
        )

    async def close(self) -> None:
        """Cancel every consumer and drop undelivered events."""
        tasks = [sub.task for sub in self._subscriptions.values() if sub.task is not None]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        for subscription in self._subscriptions.values():
            subscription.task = None
            dropped = subscription.queue.qsize()
            if dropped:
                self.logger.warning(
                    "event_bus event=events_dropped bus=%s subscription=%s count=%s",
                    self.name,
                    subscription.subscription_id,
                    dropped,
                )
            # A fresh queue has no unfinished items, so a later drain() returns.
            subscription.queue = asyncio.Queue()

    async def _consume(self, subscription: _Subscription) -> None:
        while True:
            event = await subscription.queue.get()
            try:
                outcome = subscription.listener(event)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception:  # noqa: BLE001
                self.logger.exception(
                    "event_bus event=listener_error bus=%s subscription=%s event_type=%s",
                    self.name,
                    subscription.subscription_id,
                    event.type,
                )
            finally:
                subscription.queue.task_done()
