from __future__ import annotations

import argparse
import asyncio
import json
import logging
import signal
from dataclasses import replace
from typing import Iterable

from web3 import Web3

from relay_monitor.clients_ledger import LedgerClient
from relay_monitor.clients_relay import RelayClient
from relay_monitor.config import RelayConfig, load_config, validate_config
from relay_monitor.dispatcher import DispatchState, Dispatcher
from relay_monitor.errors import FatalSubmissionError, RelayMonitorError
from relay_monitor.funding import BalanceKeeper
from relay_monitor.models import Identity, SubmissionDescriptor
from relay_monitor.notify import build_notifier
from relay_monitor.signing import RelaySigner, function_selector, load_identities, recover_signer

LOGGER = logging.getLogger("relay_monitor")


def _setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    for noisy in ("urllib3", "web3", "aiohttp", "asyncio"):
        logging.getLogger(noisy).setLevel(logging.ERROR)


def _apply_overrides(config: RelayConfig, args: argparse.Namespace) -> RelayConfig:
    updates: dict[str, object] = {}
    if getattr(args, "pacing", None) is not None:
        if args.pacing <= 0:
            raise ValueError("--pacing must be > 0")
        updates["pacing_interval_seconds"] = float(args.pacing)
    if getattr(args, "budget", None) is not None:
        if args.budget <= 0:
            raise ValueError("--budget must be > 0")
        updates["budget_capacity"] = int(args.budget)
    if getattr(args, "cost", None) is not None:
        if args.cost <= 0:
            raise ValueError("--cost must be > 0")
        updates["cost_per_item"] = int(args.cost)
    if getattr(args, "rounds", None) is not None:
        if args.rounds <= 0:
            raise ValueError("--rounds must be > 0")
        updates["max_rounds"] = int(args.rounds)
    if getattr(args, "window", None) is not None:
        if args.window <= 0:
            raise ValueError("--window must be > 0")
        updates["window_size_seconds"] = float(args.window)
    if getattr(args, "print_interval", None) is not None:
        if args.print_interval <= 0:
            raise ValueError("--print-interval must be > 0")
        updates["print_interval_seconds"] = float(args.print_interval)
    return replace(config, **updates) if updates else config


def _relay_client(config: RelayConfig) -> RelayClient:
    return RelayClient(config.relay_api_url, timeout_seconds=config.api_timeout_seconds)


def _ledger_client(config: RelayConfig) -> LedgerClient:
    return LedgerClient(
        config.rpc_url,
        relay_contract_address=config.relay_contract_address,
        chain_id=config.chain_id,
        timeout_seconds=config.api_timeout_seconds,
    )


def build_dispatcher(config: RelayConfig, identities: list[Identity]) -> Dispatcher:
    relay = _relay_client(config)
    ledger = _ledger_client(config)
    notifier = build_notifier(config)
    funding = BalanceKeeper(
        relay,
        ledger,
        min_balance_eth=config.min_relay_balance_eth,
        topup_eth=config.topup_amount_eth,
        confirmations=config.topup_confirmations,
        every_rounds=config.balance_check_every_rounds,
        notifier=notifier,
    )
    return Dispatcher(
        config,
        identities=identities,
        signer=RelaySigner(),
        relay=relay,
        ledger=ledger,
        notifier=notifier,
        funding=funding,
    )


async def _serve(dispatcher: Dispatcher) -> DispatchState:
    loop = asyncio.get_running_loop()
    signal_count = {"count": 0}

    def _handle_signal(signum: int, _frame: object) -> None:
        signal_count["count"] += 1
        if signal_count["count"] >= 2:
            LOGGER.error("Received signal %s again, forcing exit now", signum)
            raise SystemExit(130)
        LOGGER.warning(
            "Received signal %s, stopping dispatcher (press Ctrl+C again to force-exit)",
            signum,
        )
        loop.call_soon_threadsafe(dispatcher.stop)

    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)
    ledger = dispatcher.ledger
    try:
        return await dispatcher.run()
    finally:
        if isinstance(ledger, LedgerClient):
            await ledger.close()


def _load_identities(config: RelayConfig) -> list[Identity] | None:
    problems = validate_config(config)
    if problems:
        for problem in problems:
            LOGGER.error("Invalid configuration: %s", problem)
        return None
    try:
        return load_identities(config.private_keys)
    except ValueError as exc:
        LOGGER.error("Invalid configuration: %s", exc)
        return None


def _run_command(args: argparse.Namespace) -> int:
    config = load_config()
    _setup_logging(config.log_level)
    try:
        config = _apply_overrides(config, args)
    except ValueError as exc:
        LOGGER.error(str(exc))
        return 2

    identities = _load_identities(config)
    if identities is None:
        return 2

    dispatcher = build_dispatcher(config, identities)
    try:
        state = asyncio.run(_serve(dispatcher))
    except FatalSubmissionError as exc:
        LOGGER.error("Fatal submission error: %s", exc)
        return 2
    except Exception as exc:
        LOGGER.error("Fatal runtime error: %s", exc)
        return 2
    return 0 if state == DispatchState.STOPPED else 2


async def _collect_balances(config: RelayConfig, identities: list[Identity]) -> list[dict[str, object]]:
    relay = _relay_client(config)
    rows: list[dict[str, object]] = []
    for identity in identities:
        balance_wei = await relay.balance(identity.address)
        rows.append(
            {
                "address": identity.address,
                "relay_balance_wei": balance_wei,
                "relay_balance_eth": str(Web3.from_wei(balance_wei, "ether")),
            }
        )
    return rows


def _balance_command(args: argparse.Namespace) -> int:
    config = load_config()
    _setup_logging(config.log_level)
    identities = _load_identities(config)
    if identities is None:
        return 2
    try:
        rows = asyncio.run(_collect_balances(config, identities))
    except RelayMonitorError as exc:
        LOGGER.error("balance lookup failed: %s", exc)
        return 2
    print(json.dumps(rows, indent=2))
    return 0


def _relay_id_command(args: argparse.Namespace) -> int:
    config = load_config()
    _setup_logging(config.log_level)
    identities = _load_identities(config)
    if identities is None:
        return 2
    descriptor = SubmissionDescriptor(
        identity=identities[0],
        to=config.target_contract_address,
        data=function_selector(config.target_function),
        gas=config.cost_per_item,
        deadline_block_number=int(args.height) + config.relay_deadline_blocks,
        compensation=config.compensation_wei,
        relay_contract_address=config.relay_contract_address,
    )
    try:
        signed = RelaySigner().sign(descriptor)
    except RelayMonitorError as exc:
        LOGGER.error("relay-id failed: %s", exc)
        return 2
    out = signed.to_payload()
    out["id"] = signed.relay_tx_id
    out["recovered"] = recover_signer(signed)
    print(json.dumps(out, indent=2))
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="relay_monitor", description="Relay transaction dispatch and confirmation monitor"
    )
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Run the dispatch loop")
    run.add_argument("--pacing", type=float, default=None, help="Seconds between submissions")
    run.add_argument("--budget", type=int, default=None, help="In-flight budget capacity (gas)")
    run.add_argument("--cost", type=int, default=None, help="Declared cost (gas) per submission")
    run.add_argument("--rounds", type=int, default=None, help="Stop after this many rounds")
    run.add_argument("--window", type=float, default=None, help="Stats window size in seconds")
    run.add_argument(
        "--print-interval",
        type=float,
        default=None,
        help="Seconds between stats reports",
    )
    run.set_defaults(func=_run_command)

    balance = sub.add_parser("balance", help="Print relay balances of configured identities")
    balance.set_defaults(func=_balance_command)

    relay_id = sub.add_parser(
        "relay-id",
        help="Sign a sample relay transaction for the first identity (offline)",
    )
    relay_id.add_argument(
        "--height",
        type=int,
        default=0,
        help="Chain height the deadline block number is computed from",
    )
    relay_id.set_defaults(func=_relay_id_command)
    return parser


def cli(argv: Iterable[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)
    return int(args.func(args))


def main() -> None:
    raise SystemExit(cli())


if __name__ == "__main__":
    main()
