from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Callable, List, Optional

from tributary.collector import HolderCollector
from tributary.config import Settings
from tributary.db import ReportStore
from tributary.engine import BatchExecutionEngine
from tributary.errors import ErrorKind, TributaryError, configuration_error, integrity_error, validation_error
from tributary.models import DistributionReport, EntryStatus, HolderSnapshot, PayoutPlan, Progress, RunMode
from tributary.payouts import allocate, plan_summary
from tributary.solana_payer import Signer
from tributary.solana_rpc import SOL_DECIMALS

# Risk notes attached to simulations
LARGE_AMOUNT_THRESHOLD = Decimal("100000")
LARGE_RECIPIENT_COUNT = 1000
SMALL_PAYOUT_THRESHOLD = Decimal("0.001")


def risk_notes(plan: PayoutPlan) -> List[str]:
    notes: List[str] = []
    if plan.total_requested > LARGE_AMOUNT_THRESHOLD:
        notes.append("Large distribution amount may require additional confirmation")
    if len(plan.entries) > LARGE_RECIPIENT_COUNT:
        notes.append("Large number of recipients may result in longer execution time")
    small = sum(1 for e in plan.entries if e.amount < SMALL_PAYOUT_THRESHOLD)
    if small:
        notes.append(f"{small} recipients will receive very small amounts")
    if plan.residue > 0:
        notes.append(f"residue {plan.residue} left unallocated by truncation")
    return notes


@dataclass
class DistributionOrchestrator:
    """
    Composes Collector -> Allocator -> Engine. Plans are always derived here,
    never accepted from the caller.
    """

    settings: Settings
    collector: HolderCollector
    engine: BatchExecutionEngine
    store: ReportStore
    log: Callable[[str], None] = print
    on_progress: Optional[Callable[[Progress], None]] = None
    cancel: Optional[threading.Event] = None

    def _collect(self, token_address: str) -> HolderSnapshot:
        s = self.settings
        return self.collector.collect(
            token_address,
            threshold=s.threshold,
            max_holders=s.max_holders,
            exclude=s.exclude,
            use_cache=s.use_cache,
            cache_ttl_s=s.cache_ttl_s,
        )

    def _payout_precision(self) -> int:
        """
        Allocation precision. Defaults to the payout asset's decimals; a configured
        precision finer than the asset can represent is refused.
        """
        s = self.settings
        if s.payout_mint:
            asset, limit = s.payout_mint, self.collector.source.get_token_decimals(s.payout_mint)
        else:
            asset, limit = "SOL", SOL_DECIMALS
        if s.payout_decimals is None:
            return limit
        if s.payout_decimals > limit:
            raise configuration_error(
                f"TRIBUTARY_PAYOUT_DECIMALS={s.payout_decimals} exceeds the {limit} decimals of {asset}",
                payout_decimals=s.payout_decimals,
                asset_decimals=limit,
                payout_mint=asset,
            )
        return s.payout_decimals

    def _plan(self, snapshot: HolderSnapshot, amount: Decimal) -> PayoutPlan:
        plan = allocate(snapshot, Decimal(amount), self._payout_precision())
        self.log(f"Plan: {plan_summary(plan)}")
        return plan

    def _latency_history(self) -> List[float]:
        latencies: List[float] = []
        for report in self.store.list_reports(mode=RunMode.EXECUTION.value):
            latencies.extend(
                r.latency_s for r in report.results if r.status == EntryStatus.CONFIRMED and r.latency_s is not None
            )
        return latencies

    def _run(
        self,
        snapshot: HolderSnapshot,
        plan: PayoutPlan,
        signer: Optional[Signer],
        batch_size: int,
        mode: RunMode,
        previous: Optional[DistributionReport] = None,
    ) -> DistributionReport:
        if batch_size > self.settings.max_batch_size:
            raise validation_error(
                "Batch size exceeds the configured maximum",
                batch_size=batch_size,
                max_batch_size=self.settings.max_batch_size,
            )
        latency_history = self._latency_history() if mode == RunMode.SIMULATION else []
        snapshot_saved = False

        def persist(r: DistributionReport) -> None:
            # snapshot before the first report row, so every stored report is resumable
            nonlocal snapshot_saved
            if not snapshot_saved:
                self.store.save_snapshot(r.report_id, snapshot)
                snapshot_saved = True
            self.store.save_report(r)

        report = self.engine.execute(
            plan,
            signer,
            batch_size,
            mode,
            previous=previous,
            on_progress=self.on_progress,
            cancel=self.cancel,
            latency_history=latency_history,
            token_mint=snapshot.token_mint,
            on_report=persist,
        )
        if mode == RunMode.SIMULATION:
            report.notes.extend(risk_notes(plan))
            self.store.save_report(report)
        return report

    def simulate(self, token_address: str, amount: Decimal, batch_size: Optional[int] = None) -> DistributionReport:
        snapshot = self._collect(token_address)
        plan = self._plan(snapshot, amount)
        return self._run(snapshot, plan, None, self._batch_size(batch_size), RunMode.SIMULATION)

    def _batch_size(self, batch_size: Optional[int]) -> int:
        return batch_size if batch_size is not None else self.settings.batch_size

    def execute(
        self,
        token_address: str,
        amount: Decimal,
        signer: Optional[Signer],
        batch_size: Optional[int] = None,
        dry_run: bool = False,
    ) -> DistributionReport:
        """dry_run always wins: a dry run never reaches the signer."""
        mode = RunMode.SIMULATION if dry_run else RunMode.EXECUTION
        snapshot = self._collect(token_address)
        plan = self._plan(snapshot, amount)
        return self._run(
            snapshot,
            plan,
            None if dry_run else signer,
            self._batch_size(batch_size),
            mode,
        )

    def resume(
        self,
        report_id: str,
        signer: Optional[Signer],
        batch_size: Optional[int] = None,
        dry_run: bool = False,
    ) -> DistributionReport:
        """
        Re-run a stored execution, attempting only the entries it did not confirm.
        The plan is re-derived from the stored snapshot and must match the stored plan.
        """
        previous = self.store.load_report(report_id)
        if previous is None:
            raise validation_error(f"No distribution report with id {report_id}", report_id=report_id)
        if previous.mode != RunMode.EXECUTION:
            raise validation_error("Only execution runs can be resumed", report_id=report_id, mode=previous.mode.value)
        snapshot = self.store.load_snapshot(report_id)
        if snapshot is None:
            raise TributaryError(
                ErrorKind.DATA_INTEGRITY,
                f"Snapshot for report {report_id} is missing",
                {"report_id": report_id},
            )

        plan = allocate(snapshot, previous.plan.total_requested, previous.plan.precision)
        if plan != previous.plan:
            raise integrity_error(
                "Re-derived plan differs from the stored plan",
                report_id=report_id,
                stored_allocated=previous.plan.total_allocated,
                derived_allocated=plan.total_allocated,
            )

        mode = RunMode.SIMULATION if dry_run else RunMode.EXECUTION
        return self._run(
            snapshot,
            plan,
            None if dry_run else signer,
            self._batch_size(batch_size),
            mode,
            previous=previous,
        )

    def history(
        self,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> List[DistributionReport]:
        if since and until and since > until:
            raise validation_error("history range is inverted", since=since, until=until)
        if limit is not None and limit < 1:
            raise validation_error("history limit must be positive", limit=limit)
        return self.store.list_reports(since=since, until=until, limit=limit)

    def progress(self, report_id: str) -> Progress:
        """Completed vs. total entries for a stored report."""
        report = self.store.load_report(report_id)
        if report is None:
            raise validation_error(f"No distribution report with id {report_id}", report_id=report_id)
        done = report.count(EntryStatus.CONFIRMED) + report.count(EntryStatus.FAILED)
        elapsed = (report.finished_at - report.started_at).total_seconds() if report.finished_at else 0.0
        last = report.batches[-1].batch_index if report.batches else -1
        return Progress(completed=done, total=len(report.plan.entries), elapsed_s=elapsed, batch_index=last)
