from __future__ import annotations

import re
from typing import Iterable, List

from solders.pubkey import Pubkey

# Solana pubkey is Base58 encoded, 32-44 characters
# Base58 alphabet: 123456789ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnopqrstuvwxyz
_SOLANA_PUBKEY_PATTERN = re.compile(r"^[1-9A-HJ-NP-Za-km-z]{32,44}$")

PUBKEY_LENGTH = 32


def is_valid_solana_pubkey(address: str) -> bool:
    """
    Validate Solana pubkey format.
    Charset and length are checked first, then the decoded value must be exactly 32 bytes.
    """
    if not address or not isinstance(address, str):
        return False
    address = address.strip()
    if not _SOLANA_PUBKEY_PATTERN.match(address):
        return False
    try:
        return len(bytes(Pubkey.from_string(address))) == PUBKEY_LENGTH
    except ValueError:
        return False


def decode_pubkey(address: str) -> bytes:
    """Return the 32 raw bytes of a base58 pubkey. Raises ValueError if malformed."""
    address = (address or "").strip()
    if not _SOLANA_PUBKEY_PATTERN.match(address):
        raise ValueError(f"not a base58 pubkey: {address!r}")
    raw = bytes(Pubkey.from_string(address))
    if len(raw) != PUBKEY_LENGTH:
        raise ValueError(f"pubkey must decode to {PUBKEY_LENGTH} bytes, got {len(raw)}")
    return raw


def find_duplicates(addresses: Iterable[str]) -> List[str]:
    """Addresses that appear more than once, in first-duplicate order."""
    seen: set[str] = set()
    dupes: List[str] = []
    for a in addresses:
        if a in seen and a not in dupes:
            dupes.append(a)
        seen.add(a)
    return dupes
