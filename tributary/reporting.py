from __future__ import annotations

import csv
import json
import os
from datetime import datetime, timezone
from typing import Any, Dict, List, TextIO

from tributary.models import DistributionReport, EntryStatus, HolderSnapshot, RunMode


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def ensure_dir(path: str) -> None:
    os.makedirs(path, exist_ok=True)


def build_report(report: DistributionReport) -> Dict[str, Any]:
    """Report payload plus a summary block for dashboards."""
    payload = report.to_dict()
    payload["generated_at_utc"] = utc_now_iso()
    payload["summary"] = {
        "recipients": len(report.plan.entries),
        "batches": len(report.batches),
        "confirmed": report.count(EntryStatus.CONFIRMED),
        "failed": report.count(EntryStatus.FAILED),
        "pending": len(report.plan.entries) - report.count(EntryStatus.CONFIRMED) - report.count(EntryStatus.FAILED),
        "confirmed_amount": format(report.confirmed_amount, "f"),
        "total_requested": format(report.plan.total_requested, "f"),
        "residue": format(report.plan.residue, "f"),
    }
    return payload


def write_report(public_dir: str, report: DistributionReport) -> str:
    ensure_dir(public_dir)
    ensure_dir(os.path.join(public_dir, "history"))

    latest_path = os.path.join(public_dir, "latest.json")
    hist_path = os.path.join(public_dir, "history", f"{report.report_id}.json")

    payload = json.dumps(build_report(report), indent=2, sort_keys=True)
    with open(latest_path, "w", encoding="utf-8") as f:
        f.write(payload)
    with open(hist_path, "w", encoding="utf-8") as f:
        f.write(payload)

    return latest_path


def export_plan_csv(report: DistributionReport, output_path: str) -> str:
    """
    Export a report's payout plan with per-entry outcome to CSV.

    Args:
        report: DistributionReport to export
        output_path: Full path to output CSV file

    Returns:
        Path to created CSV file
    """
    parent = os.path.dirname(output_path)
    if parent:
        ensure_dir(parent)

    with open(output_path, "w", newline="", encoding="utf-8") as f:
        writer = csv.writer(f)
        writer.writerow([
            "batch_index",
            "recipient",
            "source_balance",
            "share_percentage",
            "amount",
            "status",
            "transaction_reference",
            "reason",
        ])
        for batch in report.batches:
            for r in batch.results:
                writer.writerow([
                    batch.batch_index,
                    str(r.entry.recipient),
                    format(r.entry.source_balance, "f"),
                    format(r.entry.share_percentage, "f"),
                    format(r.entry.amount, "f"),
                    r.status.value,
                    r.transaction_reference or "",
                    r.reason or "",
                ])

    return output_path


def export_wallets_csv(snapshot: HolderSnapshot, output_path: str) -> str:
    parent = os.path.dirname(output_path)
    if parent:
        ensure_dir(parent)
    total = snapshot.total_supply_considered
    with open(output_path, "w", newline="", encoding="utf-8") as f:
        writer = csv.writer(f)
        writer.writerow(["address", "balance", "percentage"])
        for rec in snapshot.records:
            pct = (rec.balance * 100 / total) if total > 0 else 0
            writer.writerow([str(rec.address), format(rec.balance, "f"), f"{pct:.4f}"])
    return output_path


HISTORY_COLUMNS = [
    "report_id",
    "mode",
    "token_mint",
    "payout_mint",
    "started_at_utc",
    "finished_at_utc",
    "recipients",
    "confirmed",
    "failed",
    "pending",
    "total_requested",
    "confirmed_amount",
    "residue",
    "cancelled",
]


def history_row(report: DistributionReport) -> Dict[str, Any]:
    summary = build_report(report)["summary"]
    return {
        "report_id": report.report_id,
        "mode": report.mode.value,
        "token_mint": report.token_mint,
        "payout_mint": report.payout_mint or "SOL",
        "started_at_utc": report.started_at.isoformat(),
        "finished_at_utc": report.finished_at.isoformat() if report.finished_at else "",
        "recipients": summary["recipients"],
        "confirmed": summary["confirmed"],
        "failed": summary["failed"],
        "pending": summary["pending"],
        "total_requested": summary["total_requested"],
        "confirmed_amount": summary["confirmed_amount"],
        "residue": summary["residue"],
        "cancelled": report.cancelled,
    }


def write_history(reports: List[DistributionReport], out: TextIO, fmt: str) -> None:
    """History listing as json (full report payloads) or csv (one summary row per report)."""
    if fmt == "json":
        json.dump([build_report(r) for r in reports], out, indent=2, sort_keys=True)
        out.write("\n")
    elif fmt == "csv":
        writer = csv.DictWriter(out, fieldnames=HISTORY_COLUMNS)
        writer.writeheader()
        for r in reports:
            writer.writerow(history_row(r))
    else:
        raise ValueError(f"unknown history format: {fmt}")


def format_summary(report: DistributionReport) -> str:
    mode = "DRY RUN / SIMULATION" if report.mode == RunMode.SIMULATION else "EXECUTION"
    lines: List[str] = [
        "=" * 60,
        f"Distribution {report.report_id} ({mode})",
        "=" * 60,
        f"Token: {report.token_mint}",
        f"Payout: {report.payout_mint or 'SOL'}",
        f"Recipients: {len(report.plan.entries)} in {len(report.batches)} batch(es)",
        f"Requested: {report.plan.total_requested:f}",
        f"Allocated: {report.plan.total_allocated:f}",
        f"Residue: {report.plan.residue:f}",
        f"  - Confirmed: {report.count(EntryStatus.CONFIRMED)}",
        f"  - Failed: {report.count(EntryStatus.FAILED)}",
    ]
    if report.mode == RunMode.SIMULATION:
        lines.append(f"Estimated fees: {report.estimated_fee_total:f} SOL")
        lines.append(f"Estimated duration: {report.estimated_duration_s:.1f}s")
    if report.resumed_from:
        lines.append(f"Resumed from: {report.resumed_from}")
    if report.cancelled:
        lines.append("WARNING: Run was cancelled before all batches were processed")
    for note in report.notes:
        lines.append(f"NOTE: {note}")
    return "\n".join(lines)
