"""
Tests for the holder snapshot cache and report store.
"""

from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from solders.pubkey import Pubkey

from tributary.cache import CacheStore, query_fingerprint
from tributary.db import DB, ReportStore, connect, init_db
from tributary.errors import ErrorKind, TributaryError
from tributary.models import AccountAddress, HolderRecord, HolderSnapshot

MINT = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"
T0 = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


class Clock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


def _db(tmp_path) -> DB:
    db = DB(str(tmp_path / "cache.sqlite3"))
    init_db(db)
    return db


def _snapshot(fingerprint: str, *balances: str) -> HolderSnapshot:
    records = tuple(
        HolderRecord(address=AccountAddress.parse(str(Pubkey.new_unique())), balance=Decimal(b)) for b in balances
    )
    return HolderSnapshot(
        token_mint=MINT,
        records=records,
        total_supply_considered=sum((r.balance for r in records), Decimal("0")),
        collected_at=T0,
        fingerprint=fingerprint,
    )


def test_fingerprint_ignores_exclude_order_and_duplicates():
    a, b = str(Pubkey.new_unique()), str(Pubkey.new_unique())
    one = query_fingerprint(MINT, Decimal("10"), [a, b], None, "filter-then-cap")
    two = query_fingerprint(MINT, Decimal("10.0"), [b, a, a], None, "filter-then-cap")
    assert one == two


def test_fingerprint_distinguishes_parameters():
    base = query_fingerprint(MINT, Decimal("10"), [], None, "filter-then-cap")
    assert base != query_fingerprint(MINT, Decimal("11"), [], None, "filter-then-cap")
    assert base != query_fingerprint(MINT, Decimal("10"), [], 5, "filter-then-cap")
    assert base != query_fingerprint(MINT, Decimal("10"), [], None, "cap-then-filter")


def test_get_returns_live_entry(tmp_path):
    clock = Clock(T0)
    cache = CacheStore(_db(tmp_path), clock=clock)
    snap = _snapshot("a" * 64, "1", "2")
    cache.put(snap, ttl_s=60)

    clock.now = T0 + timedelta(seconds=59)
    entry = cache.get("a" * 64)
    assert entry is not None
    assert entry.snapshot == snap
    assert entry.expires_at == T0 + timedelta(seconds=60)


def test_expired_entry_is_evicted_on_read(tmp_path):
    db = _db(tmp_path)
    clock = Clock(T0)
    cache = CacheStore(db, clock=clock)
    cache.put(_snapshot("b" * 64, "1"), ttl_s=60)

    clock.now = T0 + timedelta(seconds=61)
    assert cache.get("b" * 64) is None
    with connect(db) as conn:
        assert conn.execute("SELECT COUNT(*) FROM holder_cache").fetchone()[0] == 0


def test_put_supersedes_existing_entry(tmp_path):
    cache = CacheStore(_db(tmp_path), clock=Clock(T0))
    cache.put(_snapshot("c" * 64, "1"), ttl_s=60)
    newer = _snapshot("c" * 64, "5", "6")
    cache.put(newer, ttl_s=60)

    assert cache.get("c" * 64).snapshot == newer


def test_clear_by_token_and_purge(tmp_path):
    clock = Clock(T0)
    cache = CacheStore(_db(tmp_path), clock=clock)
    cache.put(_snapshot("d" * 64, "1"), ttl_s=10)
    cache.put(_snapshot("e" * 64, "1"), ttl_s=1000)

    clock.now = T0 + timedelta(seconds=30)
    assert cache.purge_expired() == 1
    assert cache.clear(MINT) == 1
    assert cache.clear() == 0


def test_corrupt_cached_payload_is_integrity_error(tmp_path):
    db = _db(tmp_path)
    cache = CacheStore(db, clock=Clock(T0))
    cache.put(_snapshot("f" * 64, "1"), ttl_s=60)
    with connect(db) as conn:
        conn.execute("UPDATE holder_cache SET payload = ? WHERE fingerprint = ?", ("{not json", "f" * 64))

    with pytest.raises(TributaryError) as exc:
        cache.get("f" * 64)
    assert exc.value.kind == ErrorKind.DATA_INTEGRITY


def test_mismatched_fingerprint_is_integrity_error(tmp_path):
    db = _db(tmp_path)
    cache = CacheStore(db, clock=Clock(T0))
    snap = _snapshot("1" * 64, "1")
    cache.put(snap, ttl_s=60)
    payload = dict(snap.to_dict(), fingerprint="2" * 64)
    with connect(db) as conn:
        conn.execute("UPDATE holder_cache SET payload = ? WHERE fingerprint = ?", (json.dumps(payload), "1" * 64))

    with pytest.raises(TributaryError) as exc:
        cache.get("1" * 64)
    assert exc.value.kind == ErrorKind.DATA_INTEGRITY


def test_report_store_snapshot_round_trip(tmp_path):
    store = ReportStore(_db(tmp_path))
    snap = _snapshot("9" * 64, "3", "4")
    store.save_snapshot("dist_x", snap)

    assert store.load_snapshot("dist_x") == snap
    assert store.load_snapshot("missing") is None
    assert store.load_report("missing") is None
