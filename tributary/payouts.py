from __future__ import annotations

from decimal import ROUND_DOWN, Context, Decimal, localcontext
from typing import List

from tributary.errors import integrity_error, validation_error
from tributary.models import HolderSnapshot, PayoutEntry, PayoutPlan

# Working precision for the proportional math. Large enough that
# amount * balance never loses digits before the final truncation.
_MATH_CONTEXT = Context(prec=80, rounding=ROUND_DOWN)

SHARE_PERCENT_PLACES = 6


def _quantum(precision: int) -> Decimal:
    return Decimal(1).scaleb(-precision)


def allocate(snapshot: HolderSnapshot, total_amount: Decimal, precision: int) -> PayoutPlan:
    """
    Compute a proportional payout plan from a holder snapshot.
    Each holder gets total_amount * balance / supply_considered, truncated
    (never rounded up) to `precision` decimal places, so the sum never exceeds
    total_amount. The truncation remainder is reported as residue.
    Pure function with no side effects; output depends only on the inputs.
    """
    total_amount = Decimal(total_amount)
    if not total_amount.is_finite() or total_amount < 0:
        raise validation_error("Distribution amount must be non-negative", amount=total_amount)
    if precision < 0:
        raise validation_error("Precision must be non-negative", precision=precision)
    if not snapshot.records:
        raise validation_error("Holder snapshot is empty; nothing to allocate", token=snapshot.token_mint)

    supply = snapshot.total_supply_considered
    if supply != sum((r.balance for r in snapshot.records), Decimal("0")):
        raise integrity_error(
            "Snapshot supply does not match the sum of its balances",
            supply=supply,
            fingerprint=snapshot.fingerprint,
        )
    if supply <= 0:
        raise validation_error("Qualifying holders have zero combined balance", token=snapshot.token_mint)

    quantum = _quantum(precision)
    pct_quantum = _quantum(SHARE_PERCENT_PLACES)
    entries: List[PayoutEntry] = []

    with localcontext(_MATH_CONTEXT):
        for record in snapshot.records:
            exact = total_amount * record.balance / supply
            amount = exact.quantize(quantum, rounding=ROUND_DOWN)
            share_pct = (record.balance * 100 / supply).quantize(pct_quantum, rounding=ROUND_DOWN)
            entries.append(
                PayoutEntry(
                    recipient=record.address,
                    amount=amount,
                    source_balance=record.balance,
                    share_percentage=share_pct,
                )
            )
        allocated = sum((e.amount for e in entries), Decimal("0"))
        residue = total_amount - allocated

    plan = PayoutPlan(
        entries=tuple(entries),
        total_requested=total_amount,
        total_allocated=allocated,
        residue=residue,
        precision=precision,
    )
    verify_plan(plan)
    return plan


def verify_plan(plan: PayoutPlan) -> None:
    """Raise DATA_INTEGRITY if the plan's accounting invariants do not hold."""
    with localcontext(_MATH_CONTEXT):
        summed = sum((e.amount for e in plan.entries), Decimal("0"))
        if summed != plan.total_allocated:
            raise integrity_error(
                "Plan total_allocated does not equal the sum of its entries",
                total_allocated=plan.total_allocated,
                entries_sum=summed,
            )
        if plan.total_allocated + plan.residue != plan.total_requested:
            raise integrity_error(
                "Plan total_allocated + residue does not equal total_requested",
                total_allocated=plan.total_allocated,
                residue=plan.residue,
                total_requested=plan.total_requested,
            )
        if plan.residue < 0:
            raise integrity_error("Plan allocates more than requested", residue=plan.residue)
        negative = [str(e.recipient) for e in plan.entries if e.amount < 0]
        if negative:
            raise integrity_error("Plan contains negative amounts", recipients=",".join(negative))


def plan_summary(plan: PayoutPlan) -> str:
    return (
        f"{len(plan.entries)} recipients, requested {plan.total_requested}, "
        f"allocated {plan.total_allocated}, residue {plan.residue}"
    )
