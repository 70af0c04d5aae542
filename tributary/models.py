from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from tributary.errors import validation_error
from tributary.validation import decode_pubkey


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _iso(dt: Optional[datetime]) -> Optional[str]:
    return dt.astimezone(timezone.utc).isoformat() if dt else None


def _parse_iso(s: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(s) if s else None


@dataclass(frozen=True, order=True)
class AccountAddress:
    """A 32-byte ledger account, rendered as base58. Validated once, at parse time."""

    raw: bytes = field(repr=False)
    text: str = field(compare=False)

    @classmethod
    def parse(cls, value: Any) -> "AccountAddress":
        if isinstance(value, AccountAddress):
            return value
        if not isinstance(value, str):
            raise validation_error("Address must be a base58 string", value=repr(value))
        text = value.strip()
        try:
            raw = decode_pubkey(text)
        except ValueError as e:
            raise validation_error(f"Malformed account address: {e}", address=text) from e
        return cls(raw=raw, text=text)

    def __str__(self) -> str:
        return self.text

    def short(self) -> str:
        return f"{self.text[:8]}..."


@dataclass(frozen=True)
class HolderRecord:
    address: AccountAddress
    balance: Decimal

    def to_dict(self) -> Dict[str, Any]:
        return {"address": str(self.address), "balance": str(self.balance)}

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "HolderRecord":
        return cls(address=AccountAddress.parse(d["address"]), balance=Decimal(d["balance"]))


@dataclass(frozen=True)
class HolderSnapshot:
    token_mint: str
    records: Tuple[HolderRecord, ...]
    total_supply_considered: Decimal
    collected_at: datetime
    fingerprint: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "token_mint": self.token_mint,
            "records": [r.to_dict() for r in self.records],
            "total_supply_considered": str(self.total_supply_considered),
            "collected_at": _iso(self.collected_at),
            "fingerprint": self.fingerprint,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "HolderSnapshot":
        return cls(
            token_mint=d["token_mint"],
            records=tuple(HolderRecord.from_dict(r) for r in d["records"]),
            total_supply_considered=Decimal(d["total_supply_considered"]),
            collected_at=_parse_iso(d["collected_at"]),
            fingerprint=d["fingerprint"],
        )


@dataclass(frozen=True)
class PayoutEntry:
    recipient: AccountAddress
    amount: Decimal
    source_balance: Decimal
    share_percentage: Decimal

    def to_dict(self) -> Dict[str, Any]:
        return {
            "recipient": str(self.recipient),
            "amount": str(self.amount),
            "source_balance": str(self.source_balance),
            "share_percentage": str(self.share_percentage),
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "PayoutEntry":
        return cls(
            recipient=AccountAddress.parse(d["recipient"]),
            amount=Decimal(d["amount"]),
            source_balance=Decimal(d["source_balance"]),
            share_percentage=Decimal(d["share_percentage"]),
        )


@dataclass(frozen=True)
class PayoutPlan:
    entries: Tuple[PayoutEntry, ...]
    total_requested: Decimal
    total_allocated: Decimal
    residue: Decimal
    precision: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entries": [e.to_dict() for e in self.entries],
            "total_requested": str(self.total_requested),
            "total_allocated": str(self.total_allocated),
            "residue": str(self.residue),
            "precision": self.precision,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "PayoutPlan":
        return cls(
            entries=tuple(PayoutEntry.from_dict(e) for e in d["entries"]),
            total_requested=Decimal(d["total_requested"]),
            total_allocated=Decimal(d["total_allocated"]),
            residue=Decimal(d["residue"]),
            precision=int(d["precision"]),
        )


class EntryStatus(str, Enum):
    PENDING = "PENDING"
    SUBMITTED = "SUBMITTED"
    CONFIRMED = "CONFIRMED"
    FAILED = "FAILED"


class RunMode(str, Enum):
    SIMULATION = "SIMULATION"
    EXECUTION = "EXECUTION"


@dataclass
class EntryResult:
    entry: PayoutEntry
    status: EntryStatus = EntryStatus.PENDING
    transaction_reference: Optional[str] = None
    reason: Optional[str] = None
    attempts: int = 0
    latency_s: Optional[float] = None
    estimated_fee: Optional[Decimal] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entry": self.entry.to_dict(),
            "status": self.status.value,
            "transaction_reference": self.transaction_reference,
            "reason": self.reason,
            "attempts": self.attempts,
            "latency_s": self.latency_s,
            "estimated_fee": str(self.estimated_fee) if self.estimated_fee is not None else None,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "EntryResult":
        fee = d.get("estimated_fee")
        return cls(
            entry=PayoutEntry.from_dict(d["entry"]),
            status=EntryStatus(d["status"]),
            transaction_reference=d.get("transaction_reference"),
            reason=d.get("reason"),
            attempts=int(d.get("attempts", 0)),
            latency_s=d.get("latency_s"),
            estimated_fee=Decimal(fee) if fee is not None else None,
        )


@dataclass
class BatchResult:
    batch_index: int
    results: List[EntryResult]

    @property
    def entries(self) -> List[PayoutEntry]:
        return [r.entry for r in self.results]

    @property
    def transaction_references(self) -> List[str]:
        return [r.transaction_reference for r in self.results if r.transaction_reference]

    def count(self, status: EntryStatus) -> int:
        return sum(1 for r in self.results if r.status == status)

    @property
    def settled(self) -> bool:
        return all(r.status in (EntryStatus.CONFIRMED, EntryStatus.FAILED) for r in self.results)

    def to_dict(self) -> Dict[str, Any]:
        return {"batch_index": self.batch_index, "results": [r.to_dict() for r in self.results]}

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "BatchResult":
        return cls(batch_index=int(d["batch_index"]), results=[EntryResult.from_dict(r) for r in d["results"]])


@dataclass
class DistributionReport:
    report_id: str
    mode: RunMode
    plan: PayoutPlan
    token_mint: str
    payout_mint: Optional[str]
    started_at: datetime
    batches: List[BatchResult] = field(default_factory=list)
    finished_at: Optional[datetime] = None
    estimated_fee_total: Decimal = Decimal("0")
    estimated_duration_s: float = 0.0
    cancelled: bool = False
    resumed_from: Optional[str] = None
    notes: List[str] = field(default_factory=list)

    @property
    def results(self) -> List[EntryResult]:
        return [r for b in self.batches for r in b.results]

    def count(self, status: EntryStatus) -> int:
        return sum(b.count(status) for b in self.batches)

    @property
    def confirmed_amount(self) -> Decimal:
        return sum((r.entry.amount for r in self.results if r.status == EntryStatus.CONFIRMED), Decimal("0"))

    @property
    def frozen(self) -> bool:
        return self.finished_at is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "report_id": self.report_id,
            "mode": self.mode.value,
            "plan": self.plan.to_dict(),
            "token_mint": self.token_mint,
            "payout_mint": self.payout_mint,
            "started_at": _iso(self.started_at),
            "finished_at": _iso(self.finished_at),
            "batches": [b.to_dict() for b in self.batches],
            "estimated_fee_total": str(self.estimated_fee_total),
            "estimated_duration_s": self.estimated_duration_s,
            "cancelled": self.cancelled,
            "resumed_from": self.resumed_from,
            "notes": list(self.notes),
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "DistributionReport":
        return cls(
            report_id=d["report_id"],
            mode=RunMode(d["mode"]),
            plan=PayoutPlan.from_dict(d["plan"]),
            token_mint=d["token_mint"],
            payout_mint=d.get("payout_mint"),
            started_at=_parse_iso(d["started_at"]),
            finished_at=_parse_iso(d.get("finished_at")),
            batches=[BatchResult.from_dict(b) for b in d.get("batches", [])],
            estimated_fee_total=Decimal(d.get("estimated_fee_total", "0")),
            estimated_duration_s=float(d.get("estimated_duration_s", 0.0)),
            cancelled=bool(d.get("cancelled", False)),
            resumed_from=d.get("resumed_from"),
            notes=list(d.get("notes", [])),
        )


@dataclass(frozen=True)
class CacheEntry:
    fingerprint: str
    snapshot: HolderSnapshot
    expires_at: datetime

    def expired(self, now: datetime) -> bool:
        return now > self.expires_at


@dataclass(frozen=True)
class Progress:
    completed: int
    total: int
    elapsed_s: float
    batch_index: int
