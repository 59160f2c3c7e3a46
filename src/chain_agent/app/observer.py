"""Chain observer: polls for new blocks and fans out block, transaction, and log events.

Delivery model:
- The watermark is the highest block number fully processed. It only moves
  forward, and only after a whole range has been walked.
- Blocks in a range are fetched one at a time in increasing order. Within a
  block the order is block -> transactions (block order) -> logs (per filter).
- A failed block fetch or log query is logged and skipped; the watermark still
  advances past it. Gaps are possible and never retried automatically.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable
from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

from .chain import ChainPort
from .events import EventBus, EventListener
from .models import AgentEvent, EventFilter, EventType, utc_now

# keccak256("Transfer(address,address,uint256)")
TRANSFER_EVENT_TOPIC = "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"


class Observer:
    """Watermark-driven block poller."""

    def __init__(
        self,
        chain: ChainPort,
        *,
        polling_interval_s: float = 5.0,
        retry_delay_s: float = 5.0,
        bus: EventBus | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.chain = chain
        self.polling_interval_s = polling_interval_s
        self.retry_delay_s = retry_delay_s
        self.logger = logger or logging.getLogger(__name__)
        self.bus = bus or EventBus(name="observer", logger=self.logger)
        self._filters: dict[str, EventFilter] = {}
        self._watermark = 0
        self._running = False
        self._wake = asyncio.Event()
        self._task: asyncio.Task[None] | None = None

    @property
    def watermark(self) -> int:
        return self._watermark

    @property
    def running(self) -> bool:
        return self._running

    @property
    def filters(self) -> dict[str, EventFilter]:
        return dict(self._filters)

    async def start(self) -> None:
        """Read the chain head into the watermark and start polling.

        A failure to read the initial head propagates; the observer stays stopped.
        A poll task left over from a previous ``stop()`` is awaited first so two
        loops never walk the same range.
        """
        if self._running:
            return
        if self._task is not None and not self._task.done():
            self.logger.info("observer event=awaiting_previous_loop watermark=%s", self._watermark)
            await asyncio.gather(self._task, return_exceptions=True)
        self.logger.info("observer event=starting")
        try:
            self._watermark = await self.chain.latest_block_number()
        except Exception:
            self.logger.exception("observer event=start_failed")
            raise
        self._running = True
        self._wake = asyncio.Event()
        self._task = asyncio.create_task(self._poll_loop(), name="observer-poll")
        self.logger.info("observer event=started watermark=%s", self._watermark)

    async def stop(self) -> None:
        """Ask the polling loop to exit at the top of its next iteration.

        An in-flight block range is not interrupted.
        """
        if not self._running:
            return
        self.logger.info("observer event=stopping watermark=%s", self._watermark)
        self._running = False
        self._wake.set()

    async def join(self, timeout_s: float | None = None) -> bool:
        """Wait for the polling loop to exit. Returns False on timeout."""
        if self._task is None:
            return True
        done, _ = await asyncio.wait({self._task}, timeout=timeout_s)
        if done:
            self.logger.info("observer event=stopped watermark=%s", self._watermark)
        return bool(done)

    async def cancel(self) -> None:
        """Cancel the polling task outright, abandoning any in-flight range."""
        self._running = False
        self._wake.set()
        task = self._task
        if task is None or task.done():
            return
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        self.logger.warning("observer event=cancelled watermark=%s", self._watermark)

    def add_listener(
        self,
        listener: EventListener,
        *,
        event_types: Iterable[EventType] | None = None,
    ) -> str:
        return self.bus.subscribe(listener, event_types=event_types)

    def remove_listener(self, subscription_id: str) -> bool:
        return self.bus.unsubscribe(subscription_id)

    def add_filter(self, event_filter: EventFilter, filter_id: str | None = None) -> str:
        resolved_id = filter_id or str(uuid4())
        self._filters[resolved_id] = event_filter
        self.logger.info(
            "observer event=filter_added filter_id=%s filter=%s",
            resolved_id,
            event_filter.model_dump(exclude_none=True),
        )
        return resolved_id

    def remove_filter(self, filter_id: str) -> bool:
        removed = self._filters.pop(filter_id, None) is not None
        if removed:
            self.logger.info("observer event=filter_removed filter_id=%s", filter_id)
        return removed

    def subscribe_to_contract(
        self,
        address: str,
        topics: list[str | list[str] | None] | None = None,
    ) -> str:
        return self.add_filter(EventFilter(address=address, topics=topics))

    def subscribe_to_token_transfers(self, token_address: str | None = None) -> str:
        return self.add_filter(EventFilter(address=token_address, topics=[TRANSFER_EVENT_TOPIC]))

    async def poll_once(self) -> int:
        """Process every block above the watermark up to the current head.

        Returns the number of blocks walked. Errors reading the head propagate.
        """
        head = await self.chain.latest_block_number()
        if head <= self._watermark:
            return 0
        from_block = self._watermark + 1
        await self._process_block_range(from_block, head)
        self._watermark = head
        return head - from_block + 1

    async def _poll_loop(self) -> None:
        # A superseded task exits even if a later start() flipped _running back on.
        while self._running and asyncio.current_task() is self._task:
            delay = self.polling_interval_s
            try:
                await self.poll_once()
            except Exception:  # noqa: BLE001
                self.logger.exception("observer event=poll_error watermark=%s", self._watermark)
                delay = self.retry_delay_s
            await self._sleep(delay)

    async def _sleep(self, delay_s: float) -> None:
        try:
            await asyncio.wait_for(self._wake.wait(), timeout=delay_s)
        except TimeoutError:
            pass

    async def _process_block_range(self, from_block: int, to_block: int) -> None:
        self.logger.debug("observer event=range_start from=%s to=%s", from_block, to_block)
        for number in range(from_block, to_block + 1):
            await self._process_block(number)
        self.logger.debug("observer event=range_processed from=%s to=%s", from_block, to_block)

    async def _process_block(self, number: int) -> None:
        try:
            block = await self.chain.get_block(number, include_transactions=True)
        except Exception:  # noqa: BLE001
            self.logger.exception("observer event=block_skipped block=%s", number)
            return

        block_time = _block_timestamp(block)
        self._emit("block", {"block": block, "block_number": number, "timestamp": block_time})
        for tx in block.get("transactions") or []:
            self._emit(
                "transaction",
                {
                    "transaction": tx,
                    "block": block,
                    "block_number": number,
                    "timestamp": block_time,
                },
            )
        await self._process_logs_for_block(number)

    async def _process_logs_for_block(self, number: int) -> None:
        for filter_id, event_filter in list(self._filters.items()):
            try:
                logs = await self.chain.get_logs(event_filter, from_block=number, to_block=number)
            except Exception:  # noqa: BLE001
                self.logger.exception(
                    "observer event=logs_skipped block=%s filter_id=%s", number, filter_id
                )
                continue
            for log in logs:
                self._emit(
                    "log",
                    {
                        "log": log,
                        "filter_id": filter_id,
                        "block_number": number,
                        "timestamp": utc_now(),
                    },
                )

    def _emit(self, event_type: EventType, data: dict[str, Any]) -> None:
        event = AgentEvent(id=str(uuid4()), type=event_type, timestamp=utc_now(), data=data)
        self.bus.publish(event)


def _block_timestamp(block: dict[str, Any]) -> datetime:
    raw = block.get("timestamp")
    if isinstance(raw, str):
        raw = int(raw, 16) if raw.startswith("0x") else int(raw)
    if isinstance(raw, int):
        return datetime.fromtimestamp(raw, tz=UTC)
    return utc_now()
