from __future__ import annotations

import argparse
import dataclasses
import os
import signal
import sys
import threading
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import List, Optional

from tributary.cache import CacheStore
from tributary.collector import HolderCollector
from tributary.config import Settings, load_settings
from tributary.db import DB, ReportStore, init_db
from tributary.engine import BatchExecutionEngine
from tributary.errors import EXIT_SUCCESS, TributaryError, validation_error
from tributary.models import Progress
from tributary.orchestrator import DistributionOrchestrator
from tributary.reporting import export_plan_csv, export_wallets_csv, format_summary, write_history, write_report
from tributary.solana_payer import SolanaCLISigner
from tributary.solana_rpc import SolanaRPC
from tributary.validation import is_valid_solana_pubkey


def _parse_amount(s: str) -> Decimal:
    try:
        amount = Decimal(s)
    except InvalidOperation as e:
        raise validation_error(f"Invalid amount: {s}", amount=s) from e
    if not amount.is_finite() or amount <= 0:
        raise validation_error("Distribution amount must be positive", amount=s)
    return amount


def _parse_when(s: Optional[str]) -> Optional[datetime]:
    if not s:
        return None
    try:
        dt = datetime.fromisoformat(s.replace("Z", "+00:00"))
    except ValueError as e:
        raise validation_error(f"Invalid date: {s} (expected ISO format)", value=s) from e
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def apply_collect_overrides(s: Settings, args: argparse.Namespace) -> Settings:
    """Command-line holder filters take precedence over the environment."""
    changes = {}
    if getattr(args, "threshold", None) is not None:
        try:
            threshold = Decimal(args.threshold)
        except InvalidOperation as e:
            raise validation_error(f"Invalid threshold: {args.threshold}", threshold=args.threshold) from e
        if not threshold.is_finite() or threshold < 0:
            raise validation_error("Threshold must be non-negative", threshold=args.threshold)
        changes["threshold"] = threshold
    if getattr(args, "max_holders", None) is not None:
        if args.max_holders < 1:
            raise validation_error("--max-holders must be positive", max_holders=args.max_holders)
        changes["max_holders"] = args.max_holders
    if getattr(args, "exclude", None):
        extra = tuple(a.strip() for a in ",".join(args.exclude).split(",") if a.strip())
        bad = [a for a in extra if not is_valid_solana_pubkey(a)]
        if bad:
            raise validation_error("--exclude contains invalid addresses", values=",".join(bad))
        changes["exclude"] = tuple(dict.fromkeys(s.exclude + extra))
    if getattr(args, "cache_ttl", None) is not None:
        if args.cache_ttl < 0:
            raise validation_error("--cache-ttl must be non-negative", cache_ttl=args.cache_ttl)
        changes["cache_ttl_s"] = args.cache_ttl
    if getattr(args, "no_cache", False):
        changes["use_cache"] = False
    return dataclasses.replace(s, **changes) if changes else s


def _add_collect_options(p: argparse.ArgumentParser) -> None:
    p.add_argument("--threshold", type=str, help="Minimum holder balance (UI units, inclusive)")
    p.add_argument("--max-holders", type=int, help="Keep at most this many holders")
    p.add_argument(
        "--exclude",
        action="append",
        metavar="ADDRESS[,ADDRESS...]",
        help="Exclude these owners (repeatable; added to TRIBUTARY_EXCLUDE)",
    )
    p.add_argument("--cache-ttl", type=int, help="Holder cache TTL in seconds")
    p.add_argument("--no-cache", action="store_true", help="Always fetch holders from the network")


def _print_progress(p: Progress) -> None:
    rate = p.completed / p.elapsed_s if p.elapsed_s > 0 else 0.0
    print(f"  batch {p.batch_index}: {p.completed}/{p.total} entries ({p.elapsed_s:.1f}s, {rate:.1f}/s)")


def build_rpc(s: Settings) -> SolanaRPC:
    return SolanaRPC(url=s.rpc_url, timeout_s=s.timeout_s, max_retries=s.max_retries, retry_delay_s=s.retry_delay_s)


def build_orchestrator(s: Settings, cancel: Optional[threading.Event] = None) -> DistributionOrchestrator:
    db = DB(s.db_path)
    init_db(db)
    rpc = build_rpc(s)
    collector = HolderCollector(
        source=rpc,
        cache=CacheStore(db),
        holder_source=s.holder_source,
        page_size=s.page_size,
        cap_order=s.cap_order,
    )
    engine = BatchExecutionEngine(
        ledger=rpc,
        payout_mint=s.payout_mint,
        max_concurrency=s.max_concurrency,
        entry_retries=s.entry_retries,
        retry_delay_s=s.retry_delay_s,
        confirm_polls=s.confirm_polls,
        confirm_interval_s=s.confirm_interval_s,
        estimated_fee=s.estimated_fee,
        estimated_latency_s=s.estimated_latency_s,
    )
    return DistributionOrchestrator(
        settings=s,
        collector=collector,
        engine=engine,
        store=ReportStore(db),
        on_progress=_print_progress,
        cancel=cancel,
    )


def _build_signer(s: Settings) -> SolanaCLISigner:
    signer = SolanaCLISigner(keypair_path=s.keypair_path, rpc_url=s.rpc_url, payout_mint=s.payout_mint)
    print(f"using payer: {signer.pubkey}")
    return signer


def _install_cancel_handler() -> threading.Event:
    """First Ctrl-C stops after the current batch; in-flight entries are allowed to finish."""
    cancel = threading.Event()

    def _handler(signum, frame):
        if cancel.is_set():
            raise KeyboardInterrupt
        print("\nWARNING: Cancelling after the current batch (Ctrl-C again to abort)")
        cancel.set()

    signal.signal(signal.SIGINT, _handler)
    return cancel


def _token(s: Settings, arg: Optional[str]) -> str:
    token = (arg or s.token_mint).strip()
    if not token:
        raise validation_error("Token address is required (--token or TRIBUTARY_TOKEN_MINT)")
    return token


def cmd_init_db() -> None:
    s = load_settings()
    init_db(DB(s.db_path))
    print(f"OK: initialized DB at {s.db_path}")


def cmd_collect(args: argparse.Namespace) -> None:
    s = apply_collect_overrides(load_settings(), args)
    orch = build_orchestrator(s)
    snapshot = orch.collector.collect(
        _token(s, args.token),
        threshold=s.threshold,
        max_holders=s.max_holders,
        exclude=s.exclude,
        use_cache=s.use_cache,
        cache_ttl_s=s.cache_ttl_s,
    )
    print(f"OK: {len(snapshot.records)} holders, supply considered {snapshot.total_supply_considered:f}")
    for rec in snapshot.records[:20]:
        print(f"  {rec.address}: {rec.balance:f}")
    if args.export:
        print(f"OK: Exported holders to {export_wallets_csv(snapshot, args.export)}")


def cmd_simulate(args: argparse.Namespace) -> None:
    s = apply_collect_overrides(load_settings(), args)
    orch = build_orchestrator(s)
    report = orch.simulate(_token(s, args.token), _parse_amount(args.amount), batch_size=args.batch_size)
    write_report(s.public_dir, report)
    print(format_summary(report))


def cmd_execute(args: argparse.Namespace) -> None:
    s = apply_collect_overrides(load_settings(), args)
    dry_run = bool(args.dry_run)
    cancel = _install_cancel_handler()
    orch = build_orchestrator(s, cancel=cancel)
    signer = None if dry_run else _build_signer(s)
    report = orch.execute(
        _token(s, args.token), _parse_amount(args.amount), signer, batch_size=args.batch_size, dry_run=dry_run
    )
    write_report(s.public_dir, report)
    print(format_summary(report))


def cmd_resume(report_id: str, batch_size: Optional[int], dry_run: bool) -> None:
    s = load_settings()
    cancel = _install_cancel_handler()
    orch = build_orchestrator(s, cancel=cancel)
    signer = None if dry_run else _build_signer(s)
    report = orch.resume(report_id, signer, batch_size=batch_size, dry_run=dry_run)
    write_report(s.public_dir, report)
    print(format_summary(report))


def cmd_history(since: Optional[str], until: Optional[str], limit: Optional[int], fmt: str) -> None:
    s = load_settings()
    orch = build_orchestrator(s)
    reports = orch.history(_parse_when(since), _parse_when(until), limit=limit)
    if fmt != "table":
        write_history(reports, sys.stdout, fmt)
        return
    if not reports:
        print("No distributions found")
        return
    for r in reports:
        p = orch.progress(r.report_id)
        print(
            f"  {r.report_id} | {r.mode.value:10s} | {r.started_at.isoformat()} | "
            f"{p.completed}/{p.total} settled | requested {r.plan.total_requested:f}"
        )


def cmd_export_plan(report_id: str, output: Optional[str]) -> None:
    s = load_settings()
    store = ReportStore(DB(s.db_path))
    report = store.load_report(report_id)
    if report is None:
        raise validation_error(f"No distribution report with id {report_id}", report_id=report_id)
    path = output or os.path.join(s.public_dir, "exports", f"{report_id}.csv")
    print(f"OK: Exported plan to {export_plan_csv(report, path)}")


def cmd_clear_cache(token: Optional[str], expired_only: bool) -> None:
    s = load_settings()
    db = DB(s.db_path)
    init_db(db)
    cache = CacheStore(db)
    removed = cache.purge_expired() if expired_only else cache.clear(token)
    print(f"OK: Removed {removed} cached snapshot(s)")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="tributary")
    sub = parser.add_subparsers(dest="cmd", required=True)

    sub.add_parser("init-db")

    p_collect = sub.add_parser("collect", help="Collect qualifying holders of the reference token")
    p_collect.add_argument("--token", type=str, help="Reference token mint (default: TRIBUTARY_TOKEN_MINT)")
    p_collect.add_argument("--export", type=str, help="Write holders to this CSV path")
    _add_collect_options(p_collect)

    p_sim = sub.add_parser("simulate", help="Simulate a distribution (no transfers)")
    p_sim.add_argument("--token", type=str)
    p_sim.add_argument("--amount", type=str, required=True)
    p_sim.add_argument("--batch-size", type=int)
    _add_collect_options(p_sim)

    p_exec = sub.add_parser("execute", help="Execute a distribution")
    p_exec.add_argument("--token", type=str)
    p_exec.add_argument("--amount", type=str, required=True)
    p_exec.add_argument("--batch-size", type=int)
    p_exec.add_argument("--dry-run", action="store_true", help="Simulate only; never submits transfers")
    _add_collect_options(p_exec)

    p_resume = sub.add_parser("resume", help="Re-attempt unconfirmed entries of a stored execution")
    p_resume.add_argument("report_id", type=str)
    p_resume.add_argument("--batch-size", type=int)
    p_resume.add_argument("--dry-run", action="store_true")

    p_hist = sub.add_parser("history", help="List stored distributions")
    p_hist.add_argument("--since", type=str, help="ISO start (inclusive)")
    p_hist.add_argument("--until", type=str, help="ISO end (inclusive)")
    p_hist.add_argument("--limit", type=int, help="Show at most this many (newest first)")
    p_hist.add_argument("--format", choices=("table", "json", "csv"), default="table")

    p_export = sub.add_parser("export-plan", help="Export a stored distribution to CSV")
    p_export.add_argument("report_id", type=str)
    p_export.add_argument("--output", type=str)

    p_clear = sub.add_parser("clear-cache", help="Drop cached holder snapshots")
    p_clear.add_argument("--token", type=str)
    p_clear.add_argument("--expired", action="store_true", help="Only drop entries past their TTL")

    return parser


def main(argv: Optional[List[str]] = None) -> None:
    args = build_parser().parse_args(argv)

    try:
        if args.cmd == "init-db":
            cmd_init_db()
        elif args.cmd == "collect":
            cmd_collect(args)
        elif args.cmd == "simulate":
            cmd_simulate(args)
        elif args.cmd == "execute":
            cmd_execute(args)
        elif args.cmd == "resume":
            cmd_resume(args.report_id, args.batch_size, bool(args.dry_run))
        elif args.cmd == "history":
            cmd_history(args.since, args.until, args.limit, args.format)
        elif args.cmd == "export-plan":
            cmd_export_plan(args.report_id, args.output)
        elif args.cmd == "clear-cache":
            cmd_clear_cache(args.token, bool(args.expired))
        else:
            raise SystemExit("Unknown command")
    except TributaryError as e:
        print(f"ERROR: {e}")
        raise SystemExit(e.exit_code)
    raise SystemExit(EXIT_SUCCESS)


if __name__ == "__main__":
    main()
