from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Callable, Dict, Iterable, Iterator, List, Optional, Protocol

from tributary.cache import CacheStore, query_fingerprint
from tributary.errors import TributaryError, validation_error
from tributary.models import AccountAddress, HolderRecord, HolderSnapshot, utc_now
from tributary.solana_rpc import HolderRow, raw_to_decimal
from tributary.validation import find_duplicates


class HolderSource(Protocol):
    def get_token_decimals(self, mint: str) -> int: ...

    def get_token_program(self, mint: str) -> str: ...

    def get_program_accounts_page(self, mint: str, program_id: str) -> List[HolderRow]: ...

    def get_token_accounts_page(self, mint: str, page: int, limit: int) -> List[HolderRow]: ...


@dataclass
class HolderCollector:
    """Enumerates reference-token holders page by page, with threshold/exclude filters and caching."""

    source: HolderSource
    cache: Optional[CacheStore] = None
    holder_source: str = "program-accounts"
    page_size: int = 1000
    cap_order: str = "filter-then-cap"
    log: Callable[[str], None] = print
    clock: Callable[[], datetime] = field(default=utc_now)

    def iter_holder_pages(self, mint: str) -> Iterator[List[HolderRow]]:
        """
        Lazy, finite sequence of token-account pages for mint.
        Each call starts a fresh enumeration from the first page.
        """
        if self.holder_source == "das":
            page = 1
            while True:
                rows = self.source.get_token_accounts_page(mint, page, self.page_size)
                if rows:
                    yield rows
                if len(rows) < self.page_size:
                    return
                page += 1
        else:
            program_id = self.source.get_token_program(mint)
            rows = self.source.get_program_accounts_page(mint, program_id)
            if rows:
                yield rows

    def collect(
        self,
        token_address: str,
        threshold: Decimal = Decimal("0"),
        max_holders: Optional[int] = None,
        exclude: Iterable[str] = (),
        use_cache: bool = True,
        cache_ttl_s: int = 3600,
    ) -> HolderSnapshot:
        mint = AccountAddress.parse(token_address)
        threshold = Decimal(threshold)
        if threshold < 0:
            raise validation_error("Threshold must be non-negative", threshold=threshold)
        if max_holders is not None and max_holders <= 0:
            raise validation_error("Max holders must be positive", max_holders=max_holders)
        if use_cache and cache_ttl_s <= 0:
            raise validation_error("Cache TTL must be positive", cache_ttl_s=cache_ttl_s)
        exclude = [a.strip() for a in exclude]
        dupes = find_duplicates(exclude)
        if dupes:
            self.log(f"WARNING: Exclusion list repeats {len(dupes)} address(es): {', '.join(dupes)}")
        excluded = {AccountAddress.parse(a) for a in exclude}

        fingerprint = query_fingerprint(
            str(mint), threshold, (str(a) for a in excluded), max_holders, self.cap_order
        )

        if use_cache and self.cache is not None:
            entry = self.cache.get(fingerprint)
            if entry is not None:
                self.log(f"OK: Using cached holders for {mint.short()} ({len(entry.snapshot.records)} holders)")
                return entry.snapshot

        records = self._enumerate(mint, threshold, max_holders, excluded)
        total = sum((r.balance for r in records), Decimal("0"))
        snapshot = HolderSnapshot(
            token_mint=str(mint),
            records=tuple(records),
            total_supply_considered=total,
            collected_at=self.clock(),
            fingerprint=fingerprint,
        )

        if use_cache and self.cache is not None:
            self.cache.put(snapshot, cache_ttl_s)

        self.log(f"OK: Collected {len(records)} qualifying holders for {mint.short()} (supply considered {total})")
        return snapshot

    def _enumerate(
        self,
        mint: AccountAddress,
        threshold: Decimal,
        max_holders: Optional[int],
        excluded: set,
    ) -> List[HolderRecord]:
        decimals = self.source.get_token_decimals(str(mint))
        # Running balance per owner, insertion order = first-seen enumeration order
        balances: Dict[AccountAddress, Decimal] = {}
        pages = 0
        skipped = 0

        for rows in self.iter_holder_pages(str(mint)):
            pages += 1
            for owner_text, raw in rows:
                try:
                    owner = AccountAddress.parse(owner_text)
                except TributaryError:
                    skipped += 1
                    continue
                if self.cap_order == "cap-then-filter":
                    # excluded owners still count toward the cap; filtered out below
                    if max_holders is not None and owner not in balances and len(balances) >= max_holders:
                        continue
                elif owner in excluded:
                    continue
                balances[owner] = balances.get(owner, Decimal("0")) + raw_to_decimal(raw, decimals)

            if max_holders is None:
                continue
            if self.cap_order == "cap-then-filter":
                if len(balances) >= max_holders:
                    break
            elif self._qualifying_count(balances, threshold) >= max_holders:
                break

        if skipped:
            self.log(f"WARNING: Skipped {skipped} token accounts with malformed owners")

        records = [
            HolderRecord(address=owner, balance=bal)
            for owner, bal in balances.items()
            if bal >= threshold and owner not in excluded
        ]
        if max_holders is not None and self.cap_order == "filter-then-cap":
            records = records[:max_holders]
        self.log(f"Enumerated {pages} page(s), {len(balances)} distinct owners")
        return records

    @staticmethod
    def _qualifying_count(balances: Dict[AccountAddress, Decimal], threshold: Decimal) -> int:
        return sum(1 for bal in balances.values() if bal >= threshold)

