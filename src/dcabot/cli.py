from __future__ import annotations

import argparse
import json
import logging
import os
import time
from collections.abc import Sequence
from dataclasses import asdict, dataclass
from datetime import UTC, datetime
from decimal import Decimal, InvalidOperation

from dcabot.adapters.settlement import InMemorySettlementLedger
from dcabot.adapters.simulated_venue import SimulatedVenue
from dcabot.adapters.venue import SwapVenue
from dcabot.adapters.venue_http import HttpSwapVenue
from dcabot.config import Settings
from dcabot.domain.errors import DcaError, VenueError
from dcabot.domain.events import json_default
from dcabot.domain.messages import Response
from dcabot.domain.models import Block, Coin, Destination, PositionType
from dcabot.domain.time_intervals import TimeInterval, ensure_utc
from dcabot.logging_context import with_logging_context
from dcabot.logging_utils import setup_logging
from dcabot.observability import (
    configure_instrumentation,
    flush_instrumentation,
    shutdown_instrumentation,
)
from dcabot.persistence.uow import UnitOfWorkFactory
from dcabot.services.admin_service import AdminService
from dcabot.services.dispatcher import MessageDispatcher
from dcabot.services.escrow_service import EscrowService
from dcabot.services.execution_service import ExecutionService
from dcabot.services.keeper import Keeper
from dcabot.services.query_service import QueryService
from dcabot.services.trigger_scheduler import TriggerScheduler
from dcabot.services.vault_service import VaultService

logger = logging.getLogger(__name__)


@dataclass
class Runtime:
    settings: Settings
    venue: SwapVenue
    ledger: InMemorySettlementLedger
    dispatcher: MessageDispatcher
    admin: AdminService
    vaults: VaultService
    executions: ExecutionService
    escrow: EscrowService
    queries: QueryService
    keeper: Keeper


def _decimal_arg(raw: str) -> Decimal:
    try:
        value = Decimal(raw)
    except InvalidOperation as exc:
        raise argparse.ArgumentTypeError(f"not a decimal: {raw!r}") from exc
    if not value.is_finite():
        raise argparse.ArgumentTypeError(f"not a finite decimal: {raw!r}")
    return value


def _timestamp_arg(raw: str) -> datetime:
    try:
        return ensure_utc(datetime.fromisoformat(raw))
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"not an ISO-8601 timestamp: {raw!r}") from exc


def _assignment_arg(raw: str) -> tuple[str, Decimal]:
    key, sep, value = raw.partition("=")
    if not sep or not key:
        raise argparse.ArgumentTypeError(f"expected KEY=VALUE, got {raw!r}")
    return key, _decimal_arg(value)


def current_block() -> Block:
    now = datetime.now(UTC)
    return Block(height=int(now.timestamp()), time=now)


def build_venue(
    settings: Settings,
    *,
    kind: str,
    sim_prices: Sequence[tuple[str, Decimal]] = (),
) -> SwapVenue:
    if kind == "http":
        return HttpSwapVenue(
            settings.venue_base_url,
            api_key=(
                settings.venue_api_key.get_secret_value() if settings.venue_api_key else None
            ),
            timeout=settings.venue_timeout_seconds,
        )
    venue = SimulatedVenue()
    prices = dict(sim_prices)
    with UnitOfWorkFactory(settings.state_db_path, read_only=True)() as uow:
        for pair in uow.pairs.list_pairs():
            venue.list_pair(pair, prices.get(pair.address, Decimal("1")))
    return venue


def build_runtime(settings: Settings, venue: SwapVenue) -> Runtime:
    uow_factory = UnitOfWorkFactory(settings.state_db_path)
    ledger = InMemorySettlementLedger()
    dispatcher = MessageDispatcher(venue, ledger)
    executions = ExecutionService(uow_factory, venue, settings)
    escrow = EscrowService(uow_factory, settings)
    return Runtime(
        settings=settings,
        venue=venue,
        ledger=ledger,
        dispatcher=dispatcher,
        admin=AdminService(uow_factory, settings),
        vaults=VaultService(uow_factory, settings),
        executions=executions,
        escrow=escrow,
        queries=QueryService(uow_factory, settings),
        keeper=Keeper(
            scheduler=TriggerScheduler(uow_factory, page_limit=settings.page_limit),
            execution_service=executions,
            escrow_service=escrow,
            venue=venue,
            dispatcher=dispatcher,
            page_limit=settings.page_limit,
        ),
    )


def _print_json(payload: object) -> None:
    print(json.dumps(payload, indent=2, sort_keys=True, default=json_default))


def _finish(runtime: Runtime, response: Response) -> int:
    runtime.dispatcher.dispatch(response)
    _print_json(
        {
            "action": response.action,
            "vault_id": response.vault_id,
            "attributes": response.attributes,
            "messages": len(response.messages),
        }
    )
    return 0


def run_keeper(
    runtime: Runtime,
    *,
    loop_enabled: bool,
    cycle_seconds: int,
    max_cycles: int | None,
) -> int:
    if cycle_seconds < 0:
        print("cycle-seconds must be >= 0")
        return 2
    if max_cycles is not None and max_cycles < 1:
        print("max-cycles must be >= 1")
        return 2

    runtime.keeper.recover()
    cycle = 0
    last_rc = 0
    while True:
        cycle += 1
        report = runtime.keeper.run_cycle(current_block())
        _print_json(asdict(report))
        last_rc = 1 if report.errors else 0
        if not loop_enabled or (max_cycles is not None and cycle >= max_cycles):
            return last_rc
        flush_instrumentation()
        time.sleep(cycle_seconds)


def show_vault(runtime: Runtime, vault_id: int) -> int:
    view = runtime.queries.get_vault(vault_id)
    events = runtime.queries.get_events_by_resource_id(vault_id, limit=100)
    executions = runtime.queries.get_executions(vault_id, limit=100)
    _print_json(
        {
            "vault": asdict(view.vault),
            "trigger": asdict(view.trigger) if view.trigger else None,
            "events": [asdict(event) for event in events.items],
            "executions": [asdict(execution) for execution in executions.items],
        }
    )
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="dcabot",
        epilog="Settings are read from the environment (STATE_DB_PATH, VENUE_BASE_URL, ...).",
    )
    parser.add_argument(
        "--venue",
        choices=("sim", "http"),
        default="sim",
        help="Swap venue backend (default: in-process simulation)",
    )
    parser.add_argument(
        "--sim-price",
        action="append",
        type=_assignment_arg,
        default=[],
        metavar="PAIR=PRICE",
        help="Listed price of a pair on the simulated venue (repeatable)",
    )
    parser.add_argument("--db", default=None, help="State sqlite DB path (overrides STATE_DB_PATH)")
    subparsers = parser.add_subparsers(dest="command", required=True)

    pair_parser = subparsers.add_parser("create-pair", help="Register a tradable pair")
    pair_parser.add_argument("--caller", default=None, help="Defaults to ADMIN_ADDRESS")
    pair_parser.add_argument("--address", required=True)
    pair_parser.add_argument("--base-denom", required=True)
    pair_parser.add_argument("--quote-denom", required=True)

    create_parser = subparsers.add_parser("create-vault", help="Create and fund a vault")
    create_parser.add_argument("--owner", required=True)
    create_parser.add_argument("--pair", required=True)
    create_parser.add_argument("--amount", type=int, required=True)
    create_parser.add_argument("--denom", required=True)
    create_parser.add_argument("--swap-amount", type=int, required=True)
    create_parser.add_argument(
        "--interval", choices=[item.value for item in TimeInterval], default="daily"
    )
    create_parser.add_argument("--interval-seconds", type=int, default=None)
    create_parser.add_argument(
        "--position-type", choices=[item.value for item in PositionType], default=None
    )
    create_parser.add_argument("--slippage-tolerance", type=_decimal_arg, default=None)
    create_parser.add_argument("--price-threshold", type=_decimal_arg, default=None)
    create_parser.add_argument("--target-price", type=_decimal_arg, default=None)
    create_parser.add_argument("--repeat-price-trigger", action="store_true")
    create_parser.add_argument("--start-time", type=_timestamp_arg, default=None)
    create_parser.add_argument("--dca-plus", action="store_true")
    create_parser.add_argument("--label", default=None)
    create_parser.add_argument(
        "--destination",
        action="append",
        type=_assignment_arg,
        default=[],
        metavar="ADDRESS=ALLOCATION",
        help="Share of the proceeds sent to ADDRESS (repeatable; defaults to the owner)",
    )

    deposit_parser = subparsers.add_parser("deposit", help="Add funds to a vault")
    deposit_parser.add_argument("--vault-id", type=int, required=True)
    deposit_parser.add_argument("--owner", required=True)
    deposit_parser.add_argument("--amount", type=int, required=True)
    deposit_parser.add_argument("--denom", required=True)

    cancel_parser = subparsers.add_parser("cancel-vault", help="Cancel a vault and refund it")
    cancel_parser.add_argument("--vault-id", type=int, required=True)
    cancel_parser.add_argument("--caller", required=True)

    keeper_parser = subparsers.add_parser("run-keeper", help="Run keeper cycles")
    keeper_parser.add_argument("--loop", action="store_true", help="Run continuously")
    keeper_parser.add_argument("--cycle-seconds", type=int, default=None)
    keeper_parser.add_argument("--max-cycles", type=int, default=None)

    disburse_parser = subparsers.add_parser("disburse-escrow", help="Release a DCA+ escrow")
    disburse_parser.add_argument("--vault-id", type=int, required=True)

    show_parser = subparsers.add_parser("show-vault", help="Print a vault with its ledger")
    show_parser.add_argument("--vault-id", type=int, required=True)

    adjust_parser = subparsers.add_parser(
        "update-swap-adjustments", help="Set DCA+ swap-adjustment coefficients"
    )
    adjust_parser.add_argument("--caller", default=None, help="Defaults to ADMIN_ADDRESS")
    adjust_parser.add_argument("--pair", required=True)
    adjust_parser.add_argument(
        "--position-type", choices=[item.value for item in PositionType], required=True
    )
    adjust_parser.add_argument(
        "--adjustment",
        action="append",
        type=_assignment_arg,
        required=True,
        metavar="MODEL_ID=VALUE",
    )

    args = parser.parse_args(argv)
    settings = Settings()
    if args.db:
        settings = settings.model_copy(update={"state_db_path": args.db})
    setup_logging(settings.log_level)
    configure_instrumentation(settings)
    logger.info(
        "runtime_prepared",
        extra={
            "extra": {
                "command": args.command,
                "db_path": settings.state_db_path,
                "venue": args.venue,
                "pid": os.getpid(),
            }
        },
    )

    venue = build_venue(settings, kind=args.venue, sim_prices=args.sim_price)
    runtime = build_runtime(settings, venue)
    try:
        with with_logging_context(run_id=f"{args.command}-{os.getpid()}"):
            return _run_command(runtime, args)
    except (DcaError, VenueError) as exc:
        logger.error(
            "command_failed",
            extra={"extra": {"command": args.command, "error_type": type(exc).__name__}},
        )
        print(f"error: {exc}")
        return 2
    finally:
        venue.close()
        shutdown_instrumentation()


def _run_command(runtime: Runtime, args: argparse.Namespace) -> int:
    settings = runtime.settings
    block = current_block()

    if args.command == "create-pair":
        pair = runtime.admin.create_pair(
            args.caller or settings.admin_address,
            args.address,
            args.base_denom,
            args.quote_denom,
        )
        _print_json(asdict(pair))
        return 0

    if args.command == "create-vault":
        response = runtime.vaults.create(
            args.owner,
            args.pair,
            args.swap_amount,
            TimeInterval(args.interval),
            [Coin(args.denom, args.amount)],
            position_type=PositionType(args.position_type) if args.position_type else None,
            slippage_tolerance=args.slippage_tolerance,
            price_threshold=args.price_threshold,
            target_price=args.target_price,
            repeat_price_trigger=args.repeat_price_trigger,
            target_start_time=args.start_time,
            use_dca_plus=args.dca_plus,
            label=args.label,
            interval_seconds=args.interval_seconds,
            destinations=[
                Destination(address, allocation) for address, allocation in args.destination
            ],
            block=block,
        )
        return _finish(runtime, response)

    if args.command == "deposit":
        response = runtime.vaults.deposit(
            args.vault_id, args.owner, [Coin(args.denom, args.amount)], block=block
        )
        return _finish(runtime, response)

    if args.command == "cancel-vault":
        return _finish(runtime, runtime.vaults.cancel(args.vault_id, args.caller, block=block))

    if args.command == "run-keeper":
        return run_keeper(
            runtime,
            loop_enabled=args.loop,
            cycle_seconds=(
                args.cycle_seconds
                if args.cycle_seconds is not None
                else settings.keeper_interval_seconds
            ),
            max_cycles=args.max_cycles,
        )

    if args.command == "disburse-escrow":
        return _finish(runtime, runtime.escrow.disburse(args.vault_id, block=block))

    if args.command == "show-vault":
        return show_vault(runtime, args.vault_id)

    if args.command == "update-swap-adjustments":
        count = runtime.admin.update_swap_adjustments(
            args.caller or settings.admin_address,
            args.pair,
            PositionType(args.position_type),
            [(int(model_id), value) for model_id, value in args.adjustment],
        )
        _print_json({"updated": count})
        return 0

    return 2


if __name__ == "__main__":
    raise SystemExit(main())
