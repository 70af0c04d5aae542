"""
Tests for proportional allocation: exact decimal math, truncation, residue accounting.
"""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timezone
from decimal import Decimal

import pytest
from solders.pubkey import Pubkey

from tributary.errors import ErrorKind, TributaryError
from tributary.models import AccountAddress, HolderRecord, HolderSnapshot, PayoutPlan
from tributary.payouts import allocate, verify_plan

MINT = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"


def _snapshot(*balances: str) -> HolderSnapshot:
    records = tuple(
        HolderRecord(address=AccountAddress.parse(str(Pubkey.new_unique())), balance=Decimal(b)) for b in balances
    )
    return HolderSnapshot(
        token_mint=MINT,
        records=records,
        total_supply_considered=sum((r.balance for r in records), Decimal("0")),
        collected_at=datetime(2026, 1, 10, 14, 0, tzinfo=timezone.utc),
        fingerprint="f" * 64,
    )


def test_three_holder_example():
    """100/50/50 split of 9999 at 2 decimals."""
    snap = _snapshot("100", "50", "50")
    plan = allocate(snap, Decimal("9999"), 2)

    assert [e.amount for e in plan.entries] == [Decimal("4999.50"), Decimal("2499.75"), Decimal("2499.75")]
    assert [e.share_percentage for e in plan.entries] == [Decimal("50"), Decimal("25"), Decimal("25")]
    assert plan.total_allocated == Decimal("9999.00")
    assert plan.residue == 0
    assert [e.recipient for e in plan.entries] == [r.address for r in snap.records]


def test_allocation_is_deterministic():
    snap = _snapshot("3", "7", "11", "13.5")
    first = allocate(snap, Decimal("1000"), 6)
    second = allocate(snap, Decimal("1000"), 6)

    assert first == second
    assert first.to_dict() == second.to_dict()


def test_truncation_never_exceeds_requested():
    snap = _snapshot("1", "1", "1")
    plan = allocate(snap, Decimal("100"), 2)

    assert all(e.amount == Decimal("33.33") for e in plan.entries)
    assert plan.total_allocated == Decimal("99.99")
    assert plan.residue == Decimal("0.01")
    assert sum(e.amount for e in plan.entries) + plan.residue == plan.total_requested


def test_single_holder_gets_truncated_total():
    snap = _snapshot("42")
    plan = allocate(snap, Decimal("10.123456"), 3)

    assert plan.entries[0].amount == Decimal("10.123")
    assert plan.residue == Decimal("0.000456")
    assert plan.entries[0].share_percentage == Decimal("100")


def test_zero_precision_rounds_down_to_whole_units():
    snap = _snapshot("2", "1")
    plan = allocate(snap, Decimal("10"), 0)

    assert [e.amount for e in plan.entries] == [Decimal("6"), Decimal("3")]
    assert plan.residue == Decimal("1")


def test_zero_amount_is_allowed():
    plan = allocate(_snapshot("5", "5"), Decimal("0"), 9)
    assert all(e.amount == 0 for e in plan.entries)
    assert plan.residue == 0


def test_invariants_hold_for_awkward_balances():
    snap = _snapshot("0.000000001", "123456789.123456789", "7", "1e-9", "999999999999")
    for amount in ("1", "0.3", "1000000", "123.456789"):
        plan = allocate(snap, Decimal(amount), 9)
        assert plan.total_allocated == sum(e.amount for e in plan.entries)
        assert plan.total_allocated + plan.residue == plan.total_requested
        assert all(e.amount >= 0 for e in plan.entries)
        assert plan.residue >= 0


def test_negative_amount_rejected():
    with pytest.raises(TributaryError) as exc:
        allocate(_snapshot("1"), Decimal("-1"), 2)
    assert exc.value.kind == ErrorKind.VALIDATION


def test_empty_snapshot_rejected():
    with pytest.raises(TributaryError) as exc:
        allocate(_snapshot(), Decimal("1"), 2)
    assert exc.value.kind == ErrorKind.VALIDATION


def test_zero_supply_rejected():
    with pytest.raises(TributaryError) as exc:
        allocate(_snapshot("0", "0"), Decimal("1"), 2)
    assert exc.value.kind == ErrorKind.VALIDATION


def test_inconsistent_snapshot_supply_is_integrity_error():
    snap = replace(_snapshot("1", "2"), total_supply_considered=Decimal("4"))
    with pytest.raises(TributaryError) as exc:
        allocate(snap, Decimal("1"), 2)
    assert exc.value.kind == ErrorKind.DATA_INTEGRITY


def test_verify_plan_detects_tampering():
    plan = allocate(_snapshot("1", "1"), Decimal("10"), 2)
    tampered = replace(plan, residue=Decimal("0.01"))

    with pytest.raises(TributaryError) as exc:
        verify_plan(tampered)
    assert exc.value.kind == ErrorKind.DATA_INTEGRITY
    assert exc.value.details["total_requested"] == Decimal("10")


def test_plan_round_trips_through_dict():
    plan = allocate(_snapshot("100", "50", "50"), Decimal("9999"), 2)
    assert PayoutPlan.from_dict(plan.to_dict()) == plan
