"""
Tests for the JSON-RPC client: failure classification and retry behaviour.
requests.post is replaced with a scripted fake; nothing touches the network.
"""

from __future__ import annotations

from decimal import Decimal

import pytest
import requests

from tributary.errors import ErrorKind, TributaryError
from tributary.retry import backoff_delay, with_retry
from tributary.solana_rpc import TOKEN_2022_PROGRAM_ID, TOKEN_PROGRAM_ID, SolanaRPC, raw_to_decimal


class FakeResponse:
    def __init__(self, status_code=200, body=None, text=None):
        self.status_code = status_code
        self._body = body
        self.text = text if text is not None else str(body)

    def json(self):
        if self._body is None:
            raise ValueError("Expecting value")
        return self._body


class Script:
    """Replays responses (or raises exceptions) in order; records request payloads."""

    def __init__(self, *steps):
        self.steps = list(steps)
        self.payloads = []

    def __call__(self, url, json=None, headers=None, timeout=None):
        self.payloads.append(json)
        step = self.steps.pop(0)
        if isinstance(step, Exception):
            raise step
        return step


def _ok(result):
    return FakeResponse(200, {"jsonrpc": "2.0", "id": 1, "result": result})


def _rpc(monkeypatch, *steps, max_retries=3):
    script = Script(*steps)
    monkeypatch.setattr(requests, "post", script)
    delays = []
    rpc = SolanaRPC(url="https://rpc.test", max_retries=max_retries, retry_delay_s=0.5, sleep=delays.append)
    return rpc, script, delays


def test_rate_limited_call_is_retried_with_backoff(monkeypatch):
    rpc, script, delays = _rpc(monkeypatch, FakeResponse(429, text="slow down"), FakeResponse(503, text="busy"), _ok({"value": 5}))

    assert rpc.get_balance_lamports("X") == 5
    assert len(script.payloads) == 3
    assert delays == [0.5, 1.0]


def test_forbidden_is_authentication_error_without_retry(monkeypatch):
    rpc, script, delays = _rpc(monkeypatch, FakeResponse(403, text="forbidden"))

    with pytest.raises(TributaryError) as exc:
        rpc.get_balance_lamports("X")
    assert exc.value.kind == ErrorKind.AUTHENTICATION
    assert exc.value.exit_code == 5
    assert delays == []


def test_invalid_json_fails_immediately(monkeypatch):
    rpc, script, delays = _rpc(monkeypatch, FakeResponse(200, None, text="<html>"))

    with pytest.raises(TributaryError) as exc:
        rpc.get_balance_lamports("X")
    assert exc.value.kind == ErrorKind.NETWORK
    assert not exc.value.transient
    assert len(script.payloads) == 1


def test_rpc_error_object_is_not_retried(monkeypatch):
    body = {"jsonrpc": "2.0", "id": 1, "error": {"code": -32602, "message": "Invalid param"}}
    rpc, script, _ = _rpc(monkeypatch, FakeResponse(200, body))

    with pytest.raises(TributaryError):
        rpc.get_token_decimals("M")
    assert len(script.payloads) == 1


def test_node_behind_error_is_retried(monkeypatch):
    behind = FakeResponse(200, {"jsonrpc": "2.0", "id": 1, "error": {"code": -32005, "message": "Node is behind"}})
    rpc, script, _ = _rpc(monkeypatch, behind, _ok({"value": {"decimals": 6}}))

    assert rpc.get_token_decimals("M") == 6
    assert len(script.payloads) == 2


def test_repeated_timeouts_escalate_to_timeout(monkeypatch):
    rpc, script, delays = _rpc(
        monkeypatch, *[requests.exceptions.Timeout("read timed out") for _ in range(3)], max_retries=2
    )

    with pytest.raises(TributaryError) as exc:
        rpc.get_balance_lamports("X")
    assert exc.value.kind == ErrorKind.TIMEOUT
    assert exc.value.exit_code == 8
    assert exc.value.details["attempts"] == 3
    assert delays == [0.5, 1.0]


def test_mixed_failures_escalate_to_network(monkeypatch):
    rpc, _, _ = _rpc(
        monkeypatch,
        requests.exceptions.Timeout("read timed out"),
        requests.exceptions.ConnectionError("refused"),
        max_retries=1,
    )

    with pytest.raises(TributaryError) as exc:
        rpc.get_balance_lamports("X")
    assert exc.value.kind == ErrorKind.NETWORK


def test_token_program_detection(monkeypatch):
    rpc, _, _ = _rpc(monkeypatch, _ok({"value": {"owner": TOKEN_2022_PROGRAM_ID}}), _ok({"value": None}))

    assert rpc.get_token_program("M") == TOKEN_2022_PROGRAM_ID
    with pytest.raises(TributaryError):
        rpc.get_token_program("M")


def test_program_accounts_page_parses_owners(monkeypatch):
    accounts = [
        {"account": {"data": {"parsed": {"info": {"owner": "A", "tokenAmount": {"amount": "10"}}}}}},
        {"account": {"data": {"parsed": {"info": {"owner": "B", "tokenAmount": {"amount": "0"}}}}}},
    ]
    rpc, script, _ = _rpc(monkeypatch, _ok(accounts))

    assert rpc.get_program_accounts_page("M", TOKEN_PROGRAM_ID) == [("A", 10), ("B", 0)]
    filters = script.payloads[0]["params"][1]["filters"]
    assert {"dataSize": 165} in filters
    assert {"memcmp": {"offset": 0, "bytes": "M"}} in filters


def test_das_page_sends_named_params(monkeypatch):
    rpc, script, _ = _rpc(monkeypatch, _ok({"token_accounts": [{"owner": "A", "amount": 7}]}))

    assert rpc.get_token_accounts_page("M", 2, 100) == [("A", 7)]
    assert script.payloads[0]["params"] == {"mint": "M", "page": 2, "limit": 100}


def test_payout_balance_in_sol_and_tokens(monkeypatch):
    token_accounts = {
        "value": [
            {"account": {"data": {"parsed": {"info": {"tokenAmount": {"amount": "1500000", "decimals": 6}}}}}},
            {"account": {"data": {"parsed": {"info": {"tokenAmount": {"amount": "500000", "decimals": 6}}}}}},
        ]
    }
    rpc, _, _ = _rpc(monkeypatch, _ok({"value": 2_500_000_000}), _ok(token_accounts))

    assert rpc.get_payout_balance("P", None) == Decimal("2.5")
    assert rpc.get_payout_balance("P", "M") == Decimal("2")


def test_signature_status_unknown_is_none(monkeypatch):
    rpc, _, _ = _rpc(monkeypatch, _ok({"value": [None]}))
    assert rpc.get_signature_status("sig") is None


@pytest.mark.parametrize("result", [["not", "a", "dict"], {"value": "finalized"}, {"value": ["finalized"]}])
def test_malformed_signature_status_is_non_retryable_network_error(monkeypatch, result):
    rpc, script, _ = _rpc(monkeypatch, _ok(result))

    with pytest.raises(TributaryError) as exc:
        rpc.get_signature_status("sig")
    assert exc.value.kind == ErrorKind.NETWORK
    assert not exc.value.transient
    assert len(script.payloads) == 1


def test_raw_to_decimal():
    assert raw_to_decimal(123456, 3) == Decimal("123.456")
    assert raw_to_decimal(5, 0) == Decimal("5")


def test_backoff_delay_doubles():
    assert [backoff_delay(0.25, a) for a in range(4)] == [0.25, 0.5, 1.0, 2.0]


def test_with_retry_passes_through_non_transient():
    calls = []

    def op():
        calls.append(1)
        raise TributaryError(ErrorKind.VALIDATION, "bad input")

    with pytest.raises(TributaryError) as exc:
        with_retry(op, max_retries=5, base_delay_s=0, sleep=lambda s: None)
    assert exc.value.kind == ErrorKind.VALIDATION
    assert len(calls) == 1
