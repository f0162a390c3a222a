"""Operator CLI: create and trade markets, file disputes, run the monitor, inspect state."""

from __future__ import annotations

import argparse
import logging
import sys
import uuid
from datetime import UTC, datetime, timedelta
from typing import Any

from rich.console import Console
from rich.markup import escape
from rich.table import Table

from .config import Settings, load_settings
from .disputes.models import Evidence
from .engine import MarketEngine
from .exceptions import (
    ConfigError,
    EngineError,
    JournalError,
    LedgerUnavailableError,
    StoreError,
    TransientChainError,
)
from .journal import JournalWriter
from .log_setup import setup_logger
from .models import Market, Outcome
from .monitor.models import MonitorCycleReport
from .pricing.curve import PRICE_SCALE
from .redaction import sanitize_text


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse CLI arguments."""
    parser = argparse.ArgumentParser(
        description="Prediction-market resolution and AMM pricing engine.",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    fund = sub.add_parser("fund", help="Mint collateral to an account.")
    fund.add_argument("account")
    fund.add_argument("amount", type=int)

    create = sub.add_parser("create-market", help="Submit a new market.")
    create.add_argument("--question", required=True)
    create.add_argument("--creator", required=True)
    expiry = create.add_mutually_exclusive_group(required=True)
    expiry.add_argument("--expires-at", type=datetime.fromisoformat)
    expiry.add_argument("--expires-in-hours", type=float)
    create.add_argument("--fee-bps", type=int, default=None)

    approve = sub.add_parser("approve", help="Open a submitted market for trading.")
    approve.add_argument("market_id")
    approve.add_argument("--actor", required=True)

    cancel = sub.add_parser("cancel", help="Cancel a submitted or open market.")
    cancel.add_argument("market_id")
    cancel.add_argument("--actor", required=True)
    cancel.add_argument("--reason", default=None)

    buy = sub.add_parser("buy", help="Buy YES or NO shares.")
    buy.add_argument("market_id")
    buy.add_argument("--account", required=True)
    buy.add_argument("--side", choices=["yes", "no"], required=True)
    size = buy.add_mutually_exclusive_group(required=True)
    size.add_argument("--shares", type=int)
    size.add_argument("--budget", type=int, help="Buy as many shares as this collateral allows.")
    buy.add_argument("--max-cost", type=int, default=None)

    sell = sub.add_parser("sell", help="Sell YES or NO shares back to the pool.")
    sell.add_argument("market_id")
    sell.add_argument("--account", required=True)
    sell.add_argument("--side", choices=["yes", "no"], required=True)
    sell.add_argument("--shares", type=int, required=True)
    sell.add_argument("--min-proceeds", type=int, default=0)

    dispute = sub.add_parser("dispute", help="Bond a dispute against a preliminary outcome.")
    dispute.add_argument("market_id")
    dispute.add_argument("--account", required=True)
    dispute.add_argument("--bond", type=int, default=None)
    dispute.add_argument("--evidence", required=True)
    dispute.add_argument("--link", action="append", default=[])
    dispute.add_argument("--declared", choices=["yes", "no", "invalid"], default=None)

    validate = sub.add_parser("validate-dispute", help="Record admin review of a dispute.")
    validate.add_argument("dispute_id")
    validate.add_argument("--actor", required=True)
    validate.add_argument("--legitimate", action=argparse.BooleanOptionalAction, required=True)
    validate.add_argument(
        "--contradicts-consensus",
        action=argparse.BooleanOptionalAction,
        default=False,
    )

    resolve = sub.add_parser("resolve-dispute", help="Accept or reject a dispute bond.")
    resolve.add_argument("dispute_id")
    resolve.add_argument("--actor", required=True)
    resolve.add_argument("--accept", action=argparse.BooleanOptionalAction, required=True)

    tick = sub.add_parser("tick", help="Run the resolution monitor and reconciliation.")
    tick.add_argument("--loop", action="store_true", help="Keep running on the schedule.")
    tick.add_argument("--max-ticks", type=int, default=None)

    redeem = sub.add_parser("redeem", help="Redeem a position after resolution.")
    redeem.add_argument("market_id")
    redeem.add_argument("--account", required=True)

    status = sub.add_parser("status", help="Show markets or one market in detail.")
    status.add_argument("market_id", nargs="?", default=None)
    status.add_argument("--account", default=None)

    return parser.parse_args(argv)


def _fmt_price(value: int) -> str:
    return f"{value / PRICE_SCALE:.4f}"


def _print_markets(console: Console, engine: MarketEngine, markets: list[Market]) -> None:
    if not markets:
        console.print("No markets found.")
        return
    table = Table(title="Markets")
    table.add_column("Market ID", overflow="fold")
    table.add_column("Question", overflow="fold")
    table.add_column("Status")
    table.add_column("Expires (UTC)")
    table.add_column("P(yes)", justify="right")
    table.add_column("Reserve", justify="right")
    for market in markets:
        prices = engine.pricing.prices(market.market_id)
        reserves = engine.pricing.reserves(market.market_id)
        status = market.status.name + (" (halted)" if market.halted else "")
        table.add_row(
            market.market_id,
            escape(market.question),
            status,
            market.expires_at.astimezone(UTC).isoformat(),
            _fmt_price(prices.price_yes),
            str(reserves.reserve),
        )
    console.print(table)


def _print_market_detail(
    console: Console,
    engine: MarketEngine,
    market_id: str,
    account: str | None,
) -> None:
    market = engine.lifecycle.get_market(market_id)
    _print_markets(console, engine, [market])
    record = engine.lifecycle.get_record(market_id)
    if record is not None:
        console.print(
            f"preliminary={record.preliminary_outcome.value} "
            f"confidence={record.confidence:.2f} "
            f"opposite_confidence={record.opposite_confidence:.2f} "
            f"window_end={record.dispute_window_end.isoformat()} "
            f"final={record.final_outcome.value if record.final_outcome else '-'} "
            f"requires_review={record.requires_review}"
        )
    disputes = engine.disputes.list_disputes(market_id)
    if disputes:
        table = Table(title="Disputes")
        table.add_column("Dispute ID", overflow="fold")
        table.add_column("Disputer")
        table.add_column("Declared")
        table.add_column("Bond", justify="right")
        table.add_column("Status")
        table.add_column("Legitimate")
        for dispute in disputes:
            table.add_row(
                dispute.dispute_id,
                dispute.disputer,
                dispute.declared_outcome.value,
                str(dispute.bond_amount),
                dispute.status.value,
                "-" if dispute.legitimate is None else str(dispute.legitimate),
            )
        console.print(table)
    if account:
        position = engine.pricing.position(market_id, account)
        console.print(
            f"position account={account} yes={position.yes_shares} no={position.no_shares} "
            f"cost_basis={position.cost_basis} redeemed={position.redeemed} "
            f"balance={engine.balance(account)}"
        )


def _print_cycle(console: Console, report: MonitorCycleReport) -> None:
    console.print(
        f"scanned={report.scanned} actions={len(report.actions)} noops={len(report.noops)} "
        f"skipped={len(report.skipped)} errors={len(report.errors)}"
    )
    if not report.actions:
        return
    table = Table(title="Monitor Actions")
    table.add_column("Market ID", overflow="fold")
    table.add_column("Action")
    table.add_column("Detail", overflow="fold")
    for action in report.actions:
        table.add_row(action.market_id, action.action, action.detail or "-")
    console.print(table)


def _run_command(
    args: argparse.Namespace,
    settings: Settings,
    engine: MarketEngine,
    console: Console,
) -> dict[str, Any]:
    """Execute one subcommand and return its journal summary."""
    command = args.command
    if command == "fund":
        balance = engine.fund(args.account, args.amount)
        console.print(f"account={args.account} balance={balance}")
        return {"account": args.account, "balance": balance}

    if command == "create-market":
        expires_at = args.expires_at or (
            datetime.now(UTC) + timedelta(hours=args.expires_in_hours)
        )
        market = engine.create_market(
            args.question,
            args.creator,
            expires_at,
            fee_rate_bps=args.fee_bps,
        )
        console.print(f"market_id={market.market_id} status={market.status.name}")
        return {"market_id": market.market_id}

    if command == "approve":
        market = engine.lifecycle.approve_market(args.market_id, args.actor)
        engine.sync_market(market.market_id)
        console.print(f"market_id={market.market_id} status={market.status.name}")
        return {"market_id": market.market_id, "status": market.status.name}

    if command == "cancel":
        market = engine.lifecycle.cancel_market(args.market_id, args.actor, args.reason)
        engine.sync_market(market.market_id)
        console.print(f"market_id={market.market_id} status={market.status.name}")
        return {"market_id": market.market_id, "status": market.status.name}

    if command == "buy":
        shares = args.shares
        if shares is None:
            shares = engine.pricing.shares_for_collateral(args.market_id, args.side, args.budget)
            if shares <= 0:
                console.print("Budget does not cover a single share.")
                return {"market_id": args.market_id, "shares": 0}
        max_cost = args.max_cost
        if max_cost is None:
            max_cost = args.budget if args.budget is not None else engine.balance(args.account)
        receipt = engine.buy(args.market_id, args.account, args.side, shares, max_cost)
        console.print(
            f"bought shares={receipt.shares} side={receipt.side} total={receipt.net} "
            f"fee={receipt.fee} p_yes={_fmt_price(receipt.price_yes)}"
        )
        return receipt.model_dump(mode="json")

    if command == "sell":
        receipt = engine.pricing.sell(
            args.market_id,
            args.account,
            args.side,
            args.shares,
            args.min_proceeds,
        )
        engine.sync_market(args.market_id)
        console.print(
            f"sold shares={receipt.shares} side={receipt.side} net={receipt.net} "
            f"fee={receipt.fee} p_yes={_fmt_price(receipt.price_yes)}"
        )
        return receipt.model_dump(mode="json")

    if command == "dispute":
        dispute_id = engine.submit_dispute(
            args.market_id,
            args.account,
            args.bond if args.bond is not None else settings.dispute_min_bond,
            Evidence(text=args.evidence, links=args.link),
            Outcome(args.declared) if args.declared else None,
        )
        console.print(f"dispute_id={dispute_id}")
        return {"dispute_id": dispute_id}

    if command == "validate-dispute":
        dispute = engine.disputes.validate_dispute(
            args.dispute_id,
            args.legitimate,
            args.contradicts_consensus,
            args.actor,
        )
        engine.sync_market(dispute.market_id)
        record = engine.lifecycle.get_record(dispute.market_id)
        confidence = record.confidence if record else 0.0
        console.print(f"dispute_id={dispute.dispute_id} confidence={confidence:.2f}")
        return {"dispute_id": dispute.dispute_id, "confidence": confidence}

    if command == "resolve-dispute":
        settlement = engine.disputes.resolve_dispute(args.dispute_id, args.accept, args.actor)
        dispute = engine.disputes.get_dispute(args.dispute_id)
        engine.sync_market(dispute.market_id)
        console.print(
            f"dispute_id={settlement.dispute_id} status={settlement.status.value} "
            f"refunded={settlement.refunded} slashed={settlement.slashed}"
        )
        return settlement.model_dump(mode="json")

    if command == "tick":
        if args.loop:
            ticks = engine.build_scheduler(persist=True).run_forever(max_ticks=args.max_ticks)
            console.print(f"ticks={ticks}")
            return {"ticks": ticks}
        report = engine.monitor.run_cycle()
        _print_cycle(console, report)
        summary: dict[str, Any] = {"monitor": report.model_dump(mode="json")}
        if engine.synchronizer is not None:
            sync_report = engine.synchronizer.reconcile()
            console.print(
                f"reconcile repairs={sync_report.repaired_count} errors={len(sync_report.errors)}"
            )
            summary["repairs"] = sync_report.repaired_count
        return summary

    if command == "redeem":
        receipt = engine.redeem(args.market_id, args.account)
        console.print(
            f"redeemed payout={receipt.payout} mode={receipt.mode} "
            f"already_redeemed={receipt.already_redeemed}"
        )
        return receipt.model_dump(mode="json")

    if command == "status":
        if args.market_id:
            _print_market_detail(console, engine, args.market_id, args.account)
        else:
            _print_markets(console, engine, engine.lifecycle.list_markets())
        return {"market_id": args.market_id}

    raise EngineError(f"Unknown command {command}.")


def _persist_committed(engine: MarketEngine, logger: logging.Logger) -> None:
    """Save transactions that committed before the command failed, such as a halt."""
    try:
        engine.save()
    except LedgerUnavailableError as exc:
        logger.error("Failed to save ledger state: %s", sanitize_text(str(exc)))


def main(argv: list[str] | None = None) -> int:
    """Run one CLI command against the persisted ledger."""
    args = parse_args(argv)
    logger = setup_logger()
    console = Console()
    session_id = uuid.uuid4().hex[:12]

    try:
        settings = load_settings()
    except ConfigError as exc:
        logger.error("Configuration failure: %s", exc)
        return 2

    try:
        journal = JournalWriter(journal_dir=settings.journal_dir, session_id=session_id)
        journal.write_event(
            event_type="startup",
            payload={"command": args.command, "settings": settings.safe_summary()},
            metadata={"session_id": session_id},
        )
    except JournalError as exc:
        logger.error("Failed to initialize journal: %s", exc)
        return 3

    try:
        engine = MarketEngine.from_settings(settings, logger, journal=journal)
    except (LedgerUnavailableError, StoreError) as exc:
        logger.error("Failed to open engine state: %s", exc)
        return 5

    exit_code = 0
    try:
        summary = _run_command(args, settings, engine, console)
        engine.save()
        journal.write_event(
            "command_complete",
            payload={"command": args.command, "summary": summary},
            metadata={"session_id": session_id},
        )
    except (LedgerUnavailableError, StoreError, TransientChainError) as exc:
        exit_code = 5
        logger.error("Engine state unavailable: %s", sanitize_text(str(exc)))
        _persist_committed(engine, logger)
    except EngineError as exc:
        exit_code = 4
        console.print(f"[red]{type(exc).__name__}[/red]: {escape(sanitize_text(str(exc)))}")
        _persist_committed(engine, logger)
        try:
            journal.write_event(
                "command_failure",
                payload={"command": args.command, "error": str(exc), "type": type(exc).__name__},
                metadata={"session_id": session_id},
            )
        except JournalError:
            logger.error("Failed to write command_failure event to journal.")
    finally:
        engine.close()
        try:
            journal.write_event(
                "shutdown",
                payload={"exit_code": exit_code},
                metadata={"session_id": session_id},
            )
        except JournalError:
            logger.error("Failed to write shutdown event to journal.")

    return exit_code


if __name__ == "__main__":
    sys.exit(main())
