#!/usr/bin/env python3
"""Quick script to view stored distributions and cached holder snapshots from the database."""

import json
import sqlite3
import sys
from pathlib import Path

# Fix Unicode encoding on Windows
if sys.platform == 'win32':
    import io
    sys.stdout = io.TextIOWrapper(sys.stdout.buffer, encoding='utf-8', errors='replace')

db_path = Path(sys.argv[1] if len(sys.argv) > 1 else "tributary.sqlite3")
if not db_path.exists():
    print(f"Database not found at {db_path}")
    exit(1)

conn = sqlite3.connect(str(db_path))
conn.row_factory = sqlite3.Row

print("=" * 80)
print("DISTRIBUTIONS")
print("=" * 80)
rows = conn.execute(
    "SELECT report_id, mode, token_mint, started_at_utc, finished_at_utc, payload FROM distribution_reports ORDER BY started_at_utc DESC LIMIT 20"
).fetchall()
print(f"Total distributions: {len(rows)}")
for r in rows:
    report = json.loads(r['payload'])
    results = [e for b in report.get('batches', []) for e in b.get('results', [])]
    confirmed = sum(1 for e in results if e['status'] == 'CONFIRMED')
    failed = sum(1 for e in results if e['status'] == 'FAILED')
    plan = report['plan']
    print(f"  {r['report_id']} ({r['mode']})")
    print(f"    Token: {r['token_mint']} | Payout: {report.get('payout_mint') or 'SOL'}")
    print(f"    Requested: {plan['total_requested']} | Allocated: {plan['total_allocated']} | Residue: {plan['residue']}")
    print(f"    Entries: {len(plan['entries'])} | Confirmed: {confirmed} | Failed: {failed}")
    print(f"    {r['started_at_utc']} -> {r['finished_at_utc'] or '(unfinished)'}")
    if report.get('resumed_from'):
        print(f"    Resumed from: {report['resumed_from']}")
    print()

print("=" * 80)
print("HOLDER CACHE")
print("=" * 80)
cached = conn.execute(
    "SELECT fingerprint, token_mint, payload, written_at_utc, expires_at_utc FROM holder_cache ORDER BY written_at_utc DESC LIMIT 20"
).fetchall()
print(f"Total cached snapshots: {len(cached)}")
for c in cached:
    snap = json.loads(c['payload'])
    print(f"  {c['fingerprint'][:16]}... {c['token_mint']}: {len(snap['records'])} holders")
    print(f"      Written: {c['written_at_utc']} | Expires: {c['expires_at_utc']}")
print()

conn.close()
