"""
Tests for env-driven settings, address validation and error rendering.
"""

from __future__ import annotations

import os
from decimal import Decimal

import pytest
from solders.pubkey import Pubkey

from tributary import config
from tributary.config import load_settings, validate_rpc_url
from tributary.errors import EXIT_SUCCESS, ErrorKind, TributaryError, network_error
from tributary.models import AccountAddress
from tributary.validation import find_duplicates, is_valid_solana_pubkey


@pytest.fixture(autouse=True)
def clean_env(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr(config, "load_dotenv", lambda: False)
    for name in list(os.environ):
        if name.startswith("TRIBUTARY_"):
            monkeypatch.delenv(name, raising=False)


def test_defaults(monkeypatch):
    s = load_settings()
    assert s.network == "devnet"
    assert s.rpc_url == "https://api.devnet.solana.com"
    assert s.batch_size == 10
    assert s.max_batch_size == 50
    assert s.cache_ttl_s == 3600
    assert s.payout_mint is None
    assert s.max_holders is None
    assert s.cap_order == "filter-then-cap"
    assert s.estimated_fee == Decimal("0.000005")
    assert s.payout_decimals is None


def test_env_overrides(monkeypatch):
    a, b = str(Pubkey.new_unique()), str(Pubkey.new_unique())
    monkeypatch.setenv("TRIBUTARY_THRESHOLD", "12.5")
    monkeypatch.setenv("TRIBUTARY_EXCLUDE", f"{a}, {b} ,")
    monkeypatch.setenv("TRIBUTARY_MAX_HOLDERS", "25")
    monkeypatch.setenv("TRIBUTARY_USE_CACHE", "no")
    monkeypatch.setenv("TRIBUTARY_HOLDER_SOURCE", "das")
    monkeypatch.setenv("TRIBUTARY_PAYOUT_DECIMALS", "6")

    s = load_settings()
    assert s.threshold == Decimal("12.5")
    assert s.exclude == (a, b)
    assert s.max_holders == 25
    assert s.use_cache is False
    assert s.holder_source == "das"
    assert s.payout_decimals == 6


@pytest.mark.parametrize(
    "name,value",
    [
        ("TRIBUTARY_NETWORK", "moonnet"),
        ("TRIBUTARY_BATCH_SIZE", "abc"),
        ("TRIBUTARY_BATCH_SIZE", "100"),
        ("TRIBUTARY_CAP_ORDER", "random"),
        ("TRIBUTARY_MAX_HOLDERS", "lots"),
        ("TRIBUTARY_THRESHOLD", "ten"),
        ("TRIBUTARY_EXCLUDE", "not-an-address"),
        ("TRIBUTARY_PAYOUT_MINT", "0xdeadbeef"),
        ("TRIBUTARY_PAYOUT_DECIMALS", "-1"),
    ],
)
def test_bad_settings_are_configuration_errors(monkeypatch, name, value):
    monkeypatch.setenv(name, value)
    with pytest.raises(TributaryError) as exc:
        load_settings()
    assert exc.value.kind == ErrorKind.CONFIGURATION
    assert exc.value.exit_code == 3


def test_cluster_mismatch_refused():
    with pytest.raises(TributaryError):
        validate_rpc_url("devnet", "https://api.mainnet-beta.solana.com")
    with pytest.raises(TributaryError):
        validate_rpc_url("mainnet-beta", "https://api.devnet.solana.com")
    validate_rpc_url("mainnet-beta", "https://my-provider.example/rpc")


def test_address_validation():
    good = str(Pubkey.new_unique())
    assert is_valid_solana_pubkey(good)
    assert not is_valid_solana_pubkey("0OIl" * 10)
    assert not is_valid_solana_pubkey("")

    with pytest.raises(TributaryError) as exc:
        AccountAddress.parse("short")
    assert exc.value.kind == ErrorKind.VALIDATION
    assert AccountAddress.parse(f"  {good} ") == AccountAddress.parse(good)


def test_find_duplicates():
    a, b = str(Pubkey.new_unique()), str(Pubkey.new_unique())
    assert find_duplicates([a, b, a, a]) == [a]
    assert find_duplicates([a, b]) == []


def test_error_rendering_and_exit_codes():
    e = TributaryError(ErrorKind.RESOURCE, "not enough", {"required": 5, "available": 3})
    assert str(e) == "RESOURCE: not enough (available=3, required=5)"
    assert e.to_dict()["code"] == 7
    assert EXIT_SUCCESS == 0
    assert [k.exit_code for k in ErrorKind] == [1, 2, 3, 4, 5, 6, 7, 8]


def test_transient_override():
    assert network_error("flaky").transient
    assert not network_error("bad request", retryable=False).transient
    assert TributaryError(ErrorKind.TIMEOUT, "slow").transient
    assert not TributaryError(ErrorKind.VALIDATION, "bad").transient
