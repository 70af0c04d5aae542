from __future__ import annotations

import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Protocol, Sequence

from tributary.errors import ErrorKind, TributaryError, integrity_error, validation_error
from tributary.models import (
    BatchResult,
    DistributionReport,
    EntryResult,
    EntryStatus,
    PayoutPlan,
    Progress,
    RunMode,
    utc_now,
)
from tributary.payouts import verify_plan
from tributary.retry import backoff_delay
from tributary.solana_payer import Signer

CONFIRMED_LEVELS = ("confirmed", "finalized")


class Ledger(Protocol):
    def get_payout_balance(self, owner: str, payout_mint: Optional[str]) -> Decimal: ...

    def get_signature_status(self, signature: str) -> Optional[Dict[str, Any]]: ...


def new_report_id(now: datetime) -> str:
    return f"dist_{now.strftime('%Y%m%d%H%M%S')}_{uuid.uuid4().hex[:8]}"


def partition(plan: PayoutPlan, batch_size: int) -> List[range]:
    """Index ranges of consecutive batches over plan.entries; the last one may be short."""
    n = len(plan.entries)
    return [range(start, min(start + batch_size, n)) for start in range(0, n, batch_size)]


@dataclass
class BatchExecutionEngine:
    """
    Runs a payout plan batch by batch.

    Batches run sequentially; entries inside a batch run on a small thread pool.
    Submissions through the signer are serialized (one in flight per run),
    confirmation polling is concurrent. A failed entry is recorded and the
    run carries on.
    """

    ledger: Ledger
    payout_mint: Optional[str] = None
    max_concurrency: int = 4
    entry_retries: int = 3
    retry_delay_s: float = 1.0
    confirm_polls: int = 30
    confirm_interval_s: float = 2.0
    estimated_fee: Decimal = Decimal("0.000005")
    estimated_latency_s: float = 2.0
    log: Callable[[str], None] = print
    sleep: Callable[[float], None] = field(default=time.sleep)
    clock: Callable[[], datetime] = field(default=utc_now)

    def execute(
        self,
        plan: PayoutPlan,
        signer: Optional[Signer],
        batch_size: int,
        mode: RunMode,
        previous: Optional[DistributionReport] = None,
        on_progress: Optional[Callable[[Progress], None]] = None,
        cancel: Optional[threading.Event] = None,
        latency_history: Sequence[float] = (),
        token_mint: str = "",
        on_report: Optional[Callable[[DistributionReport], None]] = None,
    ) -> DistributionReport:
        """
        on_report is called with the report before the first batch, after
        every batch and once more when the run ends, even if it ends with an
        exception. Callers persist from there so an aborted run keeps every
        confirmed transfer.
        """
        verify_plan(plan)
        if batch_size < 1:
            raise validation_error("Batch size must be positive", batch_size=batch_size)

        carried = self._carry_over(plan, previous, check_chain=mode == RunMode.EXECUTION)
        pending = [i for i in range(len(plan.entries)) if i not in carried]

        if mode == RunMode.EXECUTION:
            if signer is None:
                raise TributaryError(ErrorKind.CONFIGURATION, "Execution mode requires a signer")
            self._check_payer_balance(plan, pending, signer)

        started = self.clock()
        report = DistributionReport(
            report_id=new_report_id(started),
            mode=mode,
            plan=plan,
            token_mint=token_mint,
            payout_mint=self.payout_mint,
            started_at=started,
            resumed_from=previous.report_id if previous else None,
        )
        if mode == RunMode.SIMULATION:
            transfers = sum(1 for i in pending if plan.entries[i].amount > 0)
            per_transfer = (sum(latency_history) / len(latency_history)) if latency_history else self.estimated_latency_s
            report.estimated_fee_total = self.estimated_fee * transfers
            report.estimated_duration_s = per_transfer * transfers

        if carried:
            self.log(f"Resuming: {len(carried)} entries already confirmed, {len(pending)} to attempt")

        persist = on_report or (lambda r: None)
        persist(report)

        t0 = time.monotonic()
        completed = 0
        submit_lock = threading.Lock()

        try:
            for batch_index, indices in enumerate(partition(plan, batch_size)):
                if cancel is not None and cancel.is_set():
                    report.cancelled = True
                    self.log(f"WARNING: Run cancelled before batch {batch_index}")
                    break

                results: List[EntryResult] = []
                todo: List[EntryResult] = []
                for i in indices:
                    if i in carried:
                        results.append(replace(carried[i]))
                    else:
                        r = EntryResult(entry=plan.entries[i])
                        results.append(r)
                        todo.append(r)

                # appended up front so an abort mid-batch still records what was sent
                batch = BatchResult(batch_index=batch_index, results=results)
                report.batches.append(batch)

                if mode == RunMode.SIMULATION:
                    for r in todo:
                        r.status = EntryStatus.CONFIRMED
                        r.estimated_fee = self.estimated_fee if r.entry.amount > 0 else Decimal("0")
                elif todo:
                    workers = max(1, min(self.max_concurrency, len(todo)))
                    with ThreadPoolExecutor(max_workers=workers) as pool:
                        futures = [pool.submit(self._run_entry, r, signer, submit_lock) for r in todo]
                        # batch settles as a whole before it is reported
                        for f in futures:
                            f.result()

                completed += len(results)

                if mode == RunMode.EXECUTION:
                    self.log(
                        f"Batch {batch_index}: {batch.count(EntryStatus.CONFIRMED)} confirmed, "
                        f"{batch.count(EntryStatus.FAILED)} failed"
                    )
                persist(report)
                if on_progress:
                    on_progress(
                        Progress(
                            completed=completed,
                            total=len(plan.entries),
                            elapsed_s=time.monotonic() - t0,
                            batch_index=batch_index,
                        )
                    )
        except BaseException as e:
            report.cancelled = True
            report.notes.append(f"aborted: {type(e).__name__}")
            self.log(f"ERROR: Run aborted after {completed}/{len(plan.entries)} entries; partial report kept")
            raise
        finally:
            report.finished_at = self.clock()
            persist(report)

        return report

    def _carry_over(
        self, plan: PayoutPlan, previous: Optional[DistributionReport], check_chain: bool
    ) -> Dict[int, EntryResult]:
        """
        Plan positions already CONFIRMED by a previous execution run of the same plan.
        With check_chain, unconfirmed entries that carry a signature are looked up
        so a transfer that landed after the run stopped is not sent twice.
        """
        if previous is None:
            return {}
        if previous.plan != plan:
            raise integrity_error(
                "Cannot resume: previous report was produced from a different plan",
                previous_report=previous.report_id,
            )
        if previous.mode != RunMode.EXECUTION:
            return {}
        carried: Dict[int, EntryResult] = {}
        for i, r in enumerate(previous.results):
            if r.entry != plan.entries[i]:
                raise integrity_error(
                    "Cannot resume: previous report entries are out of plan order",
                    position=i,
                    previous_report=previous.report_id,
                )
            if r.status == EntryStatus.CONFIRMED:
                carried[i] = r
            elif check_chain and r.transaction_reference and self._landed(r.transaction_reference):
                self.log(f"OK: {r.transaction_reference} landed after the previous run stopped")
                carried[i] = replace(r, status=EntryStatus.CONFIRMED, reason=None)
        return carried

    def _landed(self, signature: str) -> bool:
        """True when an earlier submission is confirmed on-chain without error."""
        try:
            status = self.ledger.get_signature_status(signature)
        except TributaryError as e:
            raise integrity_error(
                f"Cannot resume: state of earlier transfer {signature} is unknown ({e.message})",
                signature=signature,
            ) from e
        return (
            isinstance(status, dict)
            and not status.get("err")
            and status.get("confirmationStatus") in CONFIRMED_LEVELS
        )

    def _check_payer_balance(self, plan: PayoutPlan, pending: List[int], signer: Signer) -> None:
        """
        The payer must hold the pending amount plus the estimated network fee
        for every non-zero transfer. For SPL payouts the fees are paid in SOL,
        so the payer's SOL balance is checked against the fee budget separately.
        """
        amounts = [plan.entries[i].amount for i in pending if plan.entries[i].amount > 0]
        if not amounts:
            return
        transfer_amount = sum(amounts, Decimal("0"))
        fee_budget = self.estimated_fee * len(amounts)
        payer = signer.pubkey

        if self.payout_mint is None:
            self._require(payer, "SOL", transfer_amount + fee_budget, transfer_amount, fee_budget)
        else:
            self._require(payer, self.payout_mint, transfer_amount, transfer_amount, fee_budget)
            self._require(payer, "SOL", fee_budget, transfer_amount, fee_budget)

    def _require(
        self, payer: str, asset: str, required: Decimal, transfer_amount: Decimal, fee_budget: Decimal
    ) -> None:
        available = self.ledger.get_payout_balance(payer, None if asset == "SOL" else asset)
        if available < required:
            raise TributaryError(
                ErrorKind.RESOURCE,
                f"Insufficient payer {asset} balance: required {required:f}, available {available:f}",
                {
                    "required": required,
                    "available": available,
                    "shortfall": required - available,
                    "transfer_amount": transfer_amount,
                    "fee_budget": fee_budget,
                    "payer": payer,
                    "payout_mint": self.payout_mint or "SOL",
                },
            )
        self.log(f"OK: Payer {asset} balance {available:f} covers required {required:f}")

    def _run_entry(self, result: EntryResult, signer: Signer, submit_lock: threading.Lock) -> None:
        entry = result.entry
        if entry.amount <= 0:
            result.status = EntryStatus.CONFIRMED
            result.reason = "zero amount, nothing to transfer"
            return

        start = time.monotonic()
        signature: Optional[str] = None
        for attempt in range(self.entry_retries + 1):
            result.attempts += 1
            try:
                with submit_lock:
                    signature = signer.transfer(entry.recipient, entry.amount)
                break
            except TributaryError as e:
                if e.transient and attempt < self.entry_retries:
                    self.log(f"WARNING: Transfer to {entry.recipient.short()} failed, retrying: {e.message}")
                    self.sleep(backoff_delay(self.retry_delay_s, attempt))
                    continue
                self._fail(result, str(e))
                return
            except Exception as e:
                self._fail(result, f"{ErrorKind.GENERAL.name}: {e}")
                return

        result.status = EntryStatus.SUBMITTED
        result.transaction_reference = signature
        self._await_confirmation(result, signature, start)

    def _await_confirmation(self, result: EntryResult, signature: str, start: float) -> None:
        last_error: Optional[TributaryError] = None
        for poll in range(self.confirm_polls):
            try:
                status = self.ledger.get_signature_status(signature)
            except TributaryError as e:
                if not e.transient:
                    self._fail(result, str(e))
                    return
                last_error = e
                status = None
            except Exception as e:
                self._fail(result, f"{ErrorKind.GENERAL.name}: {e}")
                return

            if status is not None and not isinstance(status, dict):
                self._fail(result, f"{ErrorKind.GENERAL.name}: unexpected signature status {status!r}")
                return
            if status:
                if status.get("err"):
                    self._fail(result, f"transaction failed on-chain: {status['err']}")
                    return
                if status.get("confirmationStatus") in CONFIRMED_LEVELS:
                    result.status = EntryStatus.CONFIRMED
                    result.latency_s = time.monotonic() - start
                    self.log(f"Sent {result.entry.amount:f} to {result.entry.recipient.short()} - sig: {signature}")
                    return

            if poll < self.confirm_polls - 1:
                self.sleep(self.confirm_interval_s)

        reason = f"{ErrorKind.TIMEOUT.name}: not confirmed after {self.confirm_polls} polls"
        if last_error is not None:
            reason += f" (last error: {last_error.message})"
        self._fail(result, reason)

    def _fail(self, result: EntryResult, reason: str) -> None:
        result.status = EntryStatus.FAILED
        result.reason = reason
        self.log(f"ERROR: Failed to send {result.entry.amount:f} to {result.entry.recipient.short()}: {reason}")
