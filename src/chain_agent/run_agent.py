from __future__ import annotations

import argparse
import asyncio
import logging
import signal
from typing import Any

from .app.models import AgentEvent
from .app.settings import configure_logging, get_settings
from .main import build_agent_from_settings

logger = logging.getLogger(__name__)


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run the chain agent until interrupted.")
    parser.add_argument(
        "--goal",
        action="append",
        default=[],
        help="Goal description to add at startup. Repeatable.",
    )
    parser.add_argument(
        "--watch-token",
        action="append",
        default=[],
        metavar="ADDRESS",
        help="Token contract whose Transfer events should be observed. Repeatable.",
    )
    parser.add_argument(
        "--echo-transactions",
        action="store_true",
        help="Log every observed transaction.",
    )
    return parser.parse_args(argv)


def format_transaction(event: AgentEvent) -> str:
    """One-line summary of a transaction event."""
    tx: dict[str, Any] = event.data.get("transaction") or {}
    value = _as_int(tx.get("value"))
    gas_price = _as_int(tx.get("gasPrice"))
    return (
        f"hash={tx.get('hash')} from={tx.get('from')} to={tx.get('to') or 'contract-creation'} "
        f"value_flow={value / 10**18:.4f} gas_price_gwei={gas_price / 10**9:.2f} "
        f"block={event.data.get('block_number')}"
    )


async def run(args: argparse.Namespace) -> None:
    settings = get_settings()
    configure_logging(settings)
    agent = build_agent_from_settings(settings)

    for token_address in args.watch_token:
        agent.observer.subscribe_to_token_transfers(token_address)
    if args.echo_transactions:
        agent.add_listener(_echo_transaction, event_types=["transaction"])

    stop_requested = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_requested.set)

    await agent.start()
    for description in args.goal:
        await agent.add_goal(description)
    logger.info("run_agent event=running name=%s address=%s", agent.name, agent.address)

    await stop_requested.wait()
    logger.info("run_agent event=shutdown_requested name=%s", agent.name)
    await agent.stop()


def _echo_transaction(event: AgentEvent) -> None:
    logger.info("run_agent event=transaction %s", format_transaction(event))


def _as_int(raw: Any) -> int:
    if isinstance(raw, str):
        return int(raw, 16) if raw.startswith("0x") else int(raw or 0)
    if isinstance(raw, int):
        return raw
    return 0


def main(argv: list[str] | None = None) -> None:
    args = _parse_args(argv)
    asyncio.run(run(args))


if __name__ == "__main__":
    main()
