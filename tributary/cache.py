from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Callable, Iterable, Optional

from tributary.db import DB, connect
from tributary.errors import integrity_error
from tributary.models import CacheEntry, HolderSnapshot, utc_now


def query_fingerprint(
    token_mint: str,
    threshold: Decimal,
    exclude: Iterable[str],
    max_holders: Optional[int],
    cap_order: str,
) -> str:
    """
    Deterministic cache key for a collection query.
    Exclusions are sorted and de-duplicated so their order never changes the key.
    """
    canonical = {
        "token": token_mint,
        # normalize() so 10, 10.0 and 1E+1 share a key
        "threshold": str(Decimal(threshold).normalize()),
        "exclude": sorted(set(exclude)),
        "max_holders": max_holders,
        "cap_order": cap_order,
    }
    blob = json.dumps(canonical, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(blob.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class CacheStore:
    """
    Read-through/write-through store of holder snapshots keyed by query fingerprint.
    One sqlite connection per operation; concurrent writers for the same
    fingerprint resolve last-writer-wins.
    """

    db: DB
    clock: Callable[[], datetime] = utc_now

    def get(self, fingerprint: str) -> Optional[CacheEntry]:
        """Return a live entry, lazily evicting it if it has expired."""
        now = self.clock()
        with connect(self.db) as conn:
            row = conn.execute(
                "SELECT payload, expires_at_utc FROM holder_cache WHERE fingerprint = ?",
                (fingerprint,),
            ).fetchone()
            if not row:
                return None
            expires_at = datetime.fromisoformat(row["expires_at_utc"])
            if now > expires_at:
                conn.execute(
                    "DELETE FROM holder_cache WHERE fingerprint = ? AND expires_at_utc = ?",
                    (fingerprint, row["expires_at_utc"]),
                )
                return None
            payload = row["payload"]

        try:
            snapshot = HolderSnapshot.from_dict(json.loads(payload))
        except (ValueError, KeyError, TypeError) as e:
            raise integrity_error(f"Cached snapshot {fingerprint[:12]} is corrupt: {e}", fingerprint=fingerprint) from e
        if snapshot.fingerprint != fingerprint:
            raise integrity_error(
                "Cached snapshot fingerprint does not match its key",
                key=fingerprint,
                stored=snapshot.fingerprint,
            )
        return CacheEntry(fingerprint=fingerprint, snapshot=snapshot, expires_at=expires_at)

    def put(self, snapshot: HolderSnapshot, ttl_s: int) -> CacheEntry:
        """Write a fresh entry, superseding whatever was there."""
        now = self.clock()
        expires_at = now + timedelta(seconds=ttl_s)
        with connect(self.db) as conn:
            conn.execute(
                """INSERT OR REPLACE INTO holder_cache
                   (fingerprint, token_mint, payload, written_at_utc, expires_at_utc)
                   VALUES (?,?,?,?,?)""",
                (
                    snapshot.fingerprint,
                    snapshot.token_mint,
                    json.dumps(snapshot.to_dict(), sort_keys=True),
                    now.astimezone(timezone.utc).isoformat(),
                    expires_at.astimezone(timezone.utc).isoformat(),
                ),
            )
        return CacheEntry(fingerprint=snapshot.fingerprint, snapshot=snapshot, expires_at=expires_at)

    def clear(self, token_mint: Optional[str] = None) -> int:
        with connect(self.db) as conn:
            if token_mint:
                cur = conn.execute("DELETE FROM holder_cache WHERE token_mint = ?", (token_mint,))
            else:
                cur = conn.execute("DELETE FROM holder_cache")
            return cur.rowcount

    def purge_expired(self) -> int:
        now = self.clock().astimezone(timezone.utc).isoformat()
        with connect(self.db) as conn:
            cur = conn.execute("DELETE FROM holder_cache WHERE expires_at_utc < ?", (now,))
            return cur.rowcount
