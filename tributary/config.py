from __future__ import annotations

import os
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Dict, Optional, Tuple

from dotenv import load_dotenv

from tributary.errors import configuration_error
from tributary.validation import is_valid_solana_pubkey


def _getenv(name: str, default: Optional[str] = None) -> str:
    val = os.getenv(name, default)
    if val is None:
        raise configuration_error(f"Missing required env var: {name}", variable=name)
    return val


def _getenv_bool(name: str, default: str = "false") -> bool:
    return _getenv(name, default).strip().lower() in {"1", "true", "yes", "y"}


def _getenv_float(name: str, default: str) -> float:
    raw = _getenv(name, default)
    try:
        return float(raw)
    except ValueError as e:
        raise configuration_error(f"{name} must be a number", value=raw) from e


def _getenv_int(name: str, default: str) -> int:
    raw = _getenv(name, default)
    try:
        return int(raw)
    except ValueError as e:
        raise configuration_error(f"{name} must be an integer", value=raw) from e


def _getenv_decimal(name: str, default: str) -> Decimal:
    raw = _getenv(name, default)
    try:
        return Decimal(raw.strip())
    except InvalidOperation as e:
        raise configuration_error(f"{name} must be a decimal", value=raw) from e


def _parse_csv(s: str) -> Tuple[str, ...]:
    return tuple(x.strip() for x in s.split(",") if x.strip())


RPC_ENDPOINTS: Dict[str, str] = {
    "devnet": "https://api.devnet.solana.com",
    "testnet": "https://api.testnet.solana.com",
    "mainnet-beta": "https://api.mainnet-beta.solana.com",
}

CAP_ORDERS = ("filter-then-cap", "cap-then-filter")
HOLDER_SOURCES = ("program-accounts", "das")


def validate_rpc_url(network: str, rpc_url: str) -> None:
    """Hard fail when the RPC URL points at a different cluster than the selected network."""
    url = rpc_url.lower()
    if network != "mainnet-beta" and "mainnet" in url:
        raise configuration_error(
            f"FATAL: {network} selected but RPC URL points at mainnet. Refusing to run.",
            network=network,
            rpc_url=rpc_url,
        )
    if network == "mainnet-beta" and ("devnet" in url or "testnet" in url):
        raise configuration_error(
            "FATAL: mainnet-beta selected but RPC URL points at a test cluster. Refusing to run.",
            network=network,
            rpc_url=rpc_url,
        )


@dataclass(frozen=True)
class Settings:
    network: str
    rpc_url: str

    token_mint: str
    payout_mint: Optional[str]
    payout_decimals: Optional[int]  # None: the payout asset's own decimals
    keypair_path: str

    batch_size: int
    max_batch_size: int
    threshold: Decimal
    max_holders: Optional[int]
    exclude: Tuple[str, ...]

    use_cache: bool
    cache_ttl_s: int
    cap_order: str
    holder_source: str
    page_size: int

    timeout_s: float
    max_retries: int
    retry_delay_s: float
    entry_retries: int
    confirm_polls: int
    confirm_interval_s: float
    max_concurrency: int

    estimated_fee: Decimal
    estimated_latency_s: float

    db_path: str
    public_dir: str


def load_settings() -> Settings:
    load_dotenv()

    network = _getenv("TRIBUTARY_NETWORK", "devnet").strip()
    if network not in RPC_ENDPOINTS:
        raise configuration_error(
            f"Unknown network: {network} (expected one of {', '.join(RPC_ENDPOINTS)})",
            network=network,
        )
    rpc_url = _getenv("TRIBUTARY_RPC_URL", RPC_ENDPOINTS[network]).strip()
    validate_rpc_url(network, rpc_url)

    token_mint = _getenv("TRIBUTARY_TOKEN_MINT", "").strip()
    payout_mint = _getenv("TRIBUTARY_PAYOUT_MINT", "").strip() or None
    payout_decimals_raw = _getenv("TRIBUTARY_PAYOUT_DECIMALS", "").strip()
    payout_decimals = _getenv_int("TRIBUTARY_PAYOUT_DECIMALS", "") if payout_decimals_raw else None
    keypair_path = _getenv("TRIBUTARY_KEYPAIR_PATH", "").strip()

    batch_size = _getenv_int("TRIBUTARY_BATCH_SIZE", "10")
    max_batch_size = _getenv_int("TRIBUTARY_MAX_BATCH_SIZE", "50")
    threshold = _getenv_decimal("TRIBUTARY_THRESHOLD", "0")
    max_holders_raw = _getenv("TRIBUTARY_MAX_HOLDERS", "").strip()
    max_holders = _getenv_int("TRIBUTARY_MAX_HOLDERS", "") if max_holders_raw else None
    exclude = _parse_csv(_getenv("TRIBUTARY_EXCLUDE", ""))

    use_cache = _getenv_bool("TRIBUTARY_USE_CACHE", "true")
    cache_ttl_s = _getenv_int("TRIBUTARY_CACHE_TTL_S", "3600")
    cap_order = _getenv("TRIBUTARY_CAP_ORDER", "filter-then-cap").strip()
    holder_source = _getenv("TRIBUTARY_HOLDER_SOURCE", "program-accounts").strip()
    page_size = _getenv_int("TRIBUTARY_PAGE_SIZE", "1000")

    timeout_s = _getenv_float("TRIBUTARY_TIMEOUT_S", "30")
    max_retries = _getenv_int("TRIBUTARY_MAX_RETRIES", "3")
    retry_delay_s = _getenv_float("TRIBUTARY_RETRY_DELAY_S", "1.0")
    entry_retries = _getenv_int("TRIBUTARY_ENTRY_RETRIES", "3")
    confirm_polls = _getenv_int("TRIBUTARY_CONFIRM_POLLS", "30")
    confirm_interval_s = _getenv_float("TRIBUTARY_CONFIRM_INTERVAL_S", "2.0")
    max_concurrency = _getenv_int("TRIBUTARY_MAX_CONCURRENCY", "4")

    estimated_fee = _getenv_decimal("TRIBUTARY_ESTIMATED_FEE", "0.000005")
    estimated_latency_s = _getenv_float("TRIBUTARY_ESTIMATED_LATENCY_S", "2.0")

    db_path = _getenv("TRIBUTARY_DB_PATH", "tributary.sqlite3")
    public_dir = _getenv("TRIBUTARY_PUBLIC_DIR", "public")

    if cap_order not in CAP_ORDERS:
        raise configuration_error(f"TRIBUTARY_CAP_ORDER must be one of {CAP_ORDERS}", value=cap_order)
    if holder_source not in HOLDER_SOURCES:
        raise configuration_error(f"TRIBUTARY_HOLDER_SOURCE must be one of {HOLDER_SOURCES}", value=holder_source)
    if not 1 <= batch_size <= max_batch_size:
        raise configuration_error(
            "TRIBUTARY_BATCH_SIZE must be between 1 and TRIBUTARY_MAX_BATCH_SIZE",
            batch_size=batch_size,
            max_batch_size=max_batch_size,
        )
    for name, addr in [("TRIBUTARY_TOKEN_MINT", token_mint), ("TRIBUTARY_PAYOUT_MINT", payout_mint)]:
        if addr and not is_valid_solana_pubkey(addr):
            raise configuration_error(f"{name} is not a valid Solana address", value=addr)
    bad_excludes = [a for a in exclude if not is_valid_solana_pubkey(a)]
    if bad_excludes:
        raise configuration_error("TRIBUTARY_EXCLUDE contains invalid addresses", values=",".join(bad_excludes))
    if max_concurrency < 1:
        raise configuration_error("TRIBUTARY_MAX_CONCURRENCY must be at least 1", value=max_concurrency)
    if payout_decimals is not None and payout_decimals < 0:
        raise configuration_error("TRIBUTARY_PAYOUT_DECIMALS must be non-negative", value=payout_decimals)

    return Settings(
        network=network,
        rpc_url=rpc_url,
        token_mint=token_mint,
        payout_mint=payout_mint,
        payout_decimals=payout_decimals,
        keypair_path=keypair_path,
        batch_size=batch_size,
        max_batch_size=max_batch_size,
        threshold=threshold,
        max_holders=max_holders,
        exclude=exclude,
        use_cache=use_cache,
        cache_ttl_s=cache_ttl_s,
        cap_order=cap_order,
        holder_source=holder_source,
        page_size=page_size,
        timeout_s=timeout_s,
        max_retries=max_retries,
        retry_delay_s=retry_delay_s,
        entry_retries=entry_retries,
        confirm_polls=confirm_polls,
        confirm_interval_s=confirm_interval_s,
        max_concurrency=max_concurrency,
        estimated_fee=estimated_fee,
        estimated_latency_s=estimated_latency_s,
        db_path=db_path,
        public_dir=public_dir,
    )
