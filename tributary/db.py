from __future__ import annotations

import json
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterator, List, Optional

from tributary.errors import integrity_error
from tributary.models import DistributionReport, HolderSnapshot


SCHEMA = """
PRAGMA journal_mode=WAL;

CREATE TABLE IF NOT EXISTS holder_cache (
  fingerprint TEXT PRIMARY KEY,
  token_mint TEXT NOT NULL,
  payload TEXT NOT NULL,
  written_at_utc TEXT NOT NULL,
  expires_at_utc TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS holder_snapshots (
  report_id TEXT PRIMARY KEY,
  fingerprint TEXT NOT NULL,
  payload TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS distribution_reports (
  report_id TEXT PRIMARY KEY,
  mode TEXT NOT NULL,
  token_mint TEXT NOT NULL,
  started_at_utc TEXT NOT NULL,
  finished_at_utc TEXT,
  payload TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_reports_started ON distribution_reports(started_at_utc);
"""


@dataclass(frozen=True)
class DB:
    path: str


@contextmanager
def connect(db: DB) -> Iterator[sqlite3.Connection]:
    conn = sqlite3.connect(db.path, timeout=30)
    try:
        conn.row_factory = sqlite3.Row
        yield conn
        conn.commit()
    finally:
        conn.close()


def init_db(db: DB) -> None:
    with connect(db) as conn:
        conn.executescript(SCHEMA)


def _utc_iso(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).isoformat()


@dataclass(frozen=True)
class ReportStore:
    """Persists DistributionReports and the HolderSnapshot each was derived from."""

    db: DB

    def save_report(self, report: DistributionReport) -> None:
        with connect(self.db) as conn:
            conn.execute(
                """INSERT OR REPLACE INTO distribution_reports
                   (report_id, mode, token_mint, started_at_utc, finished_at_utc, payload)
                   VALUES (?,?,?,?,?,?)""",
                (
                    report.report_id,
                    report.mode.value,
                    report.token_mint,
                    _utc_iso(report.started_at),
                    _utc_iso(report.finished_at) if report.finished_at else None,
                    json.dumps(report.to_dict(), sort_keys=True),
                ),
            )

    def save_snapshot(self, report_id: str, snapshot: HolderSnapshot) -> None:
        with connect(self.db) as conn:
            conn.execute(
                "INSERT OR REPLACE INTO holder_snapshots (report_id, fingerprint, payload) VALUES (?,?,?)",
                (report_id, snapshot.fingerprint, json.dumps(snapshot.to_dict(), sort_keys=True)),
            )

    def load_report(self, report_id: str) -> Optional[DistributionReport]:
        with connect(self.db) as conn:
            row = conn.execute(
                "SELECT payload FROM distribution_reports WHERE report_id = ?", (report_id,)
            ).fetchone()
        if not row:
            return None
        return _decode(row["payload"], DistributionReport.from_dict, report_id)

    def load_snapshot(self, report_id: str) -> Optional[HolderSnapshot]:
        with connect(self.db) as conn:
            row = conn.execute(
                "SELECT payload FROM holder_snapshots WHERE report_id = ?", (report_id,)
            ).fetchone()
        if not row:
            return None
        return _decode(row["payload"], HolderSnapshot.from_dict, report_id)

    def list_reports(
        self,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        mode: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[DistributionReport]:
        """Reports whose started_at is within [since, until], newest first."""
        query = "SELECT report_id, payload FROM distribution_reports WHERE 1=1"
        params: list = []
        if since is not None:
            query += " AND started_at_utc >= ?"
            params.append(_utc_iso(since))
        if until is not None:
            query += " AND started_at_utc <= ?"
            params.append(_utc_iso(until))
        if mode is not None:
            query += " AND mode = ?"
            params.append(mode)
        query += " ORDER BY started_at_utc DESC"
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)
        with connect(self.db) as conn:
            rows = conn.execute(query, params).fetchall()
        return [_decode(r["payload"], DistributionReport.from_dict, r["report_id"]) for r in rows]


def _decode(payload: str, factory, key: str):
    try:
        return factory(json.loads(payload))
    except (ValueError, KeyError, TypeError) as e:
        raise integrity_error(f"Stored record {key} is corrupt: {e}", key=key) from e
