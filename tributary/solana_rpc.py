from __future__ import annotations

import time
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union

import requests

from tributary.errors import ErrorKind, TributaryError, network_error, timeout_error
from tributary.retry import with_retry

LAMPORTS_PER_SOL = 1_000_000_000
SOL_DECIMALS = 9

TOKEN_PROGRAM_ID = "TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA"
TOKEN_2022_PROGRAM_ID = "TokenzQdBNbLqP5VEhdkAS6EhFLuFvGfu3mxzPp1tDo"
TOKEN_ACCOUNT_SIZE = 165

# One page of token accounts: (owner, raw integer amount)
HolderRow = Tuple[str, int]


def lamports_to_sol(lamports: int) -> Decimal:
    return Decimal(lamports) / LAMPORTS_PER_SOL


def raw_to_decimal(raw: int, decimals: int) -> Decimal:
    return Decimal(raw).scaleb(-decimals)


@dataclass(frozen=True)
class SolanaRPC:
    """Thin JSON-RPC client. Every call is retried on transient failures."""

    url: str
    timeout_s: float = 30
    max_retries: int = 3
    retry_delay_s: float = 1.0
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False, compare=False)

    def _post(self, method: str, params: Union[Sequence[Any], Dict[str, Any]]) -> Any:
        body_params = params if isinstance(params, dict) else list(params)
        payload = {"jsonrpc": "2.0", "id": 1, "method": method, "params": body_params}
        try:
            resp = requests.post(
                self.url,
                json=payload,
                headers={"Content-Type": "application/json"},
                timeout=self.timeout_s,
            )
        except requests.exceptions.Timeout as e:
            raise timeout_error(f"Solana RPC {method} timed out after {self.timeout_s}s", method=method) from e
        except requests.exceptions.ConnectionError as e:
            raise network_error(f"Solana RPC connection failed: {e}", method=method) from e
        except requests.exceptions.RequestException as e:
            raise network_error(f"Solana RPC request failed: {e}", retryable=False, method=method) from e

        if resp.status_code == 429 or resp.status_code >= 500:
            raise network_error(
                f"Solana RPC {method} returned HTTP {resp.status_code}",
                method=method,
                status=resp.status_code,
            )
        if resp.status_code in (401, 403):
            raise TributaryError(
                ErrorKind.AUTHENTICATION,
                f"Solana RPC rejected the request (HTTP {resp.status_code})",
                {"method": method, "status": resp.status_code},
            )
        if resp.status_code >= 400:
            raise network_error(
                f"Solana RPC {method} returned HTTP {resp.status_code}: {resp.text[:200]}",
                retryable=False,
                method=method,
                status=resp.status_code,
            )

        try:
            body = resp.json()
        except ValueError as e:
            raise network_error(
                f"Solana RPC invalid JSON response: {resp.text[:200]}", retryable=False, method=method
            ) from e
        if not isinstance(body, dict):
            raise network_error(f"Solana RPC malformed response: {body!r:.200}", retryable=False, method=method)
        if body.get("error"):
            err = body["error"]
            # -32005 is "node is behind", worth another try
            code = err.get("code") if isinstance(err, dict) else None
            raise network_error(f"Solana RPC error: {err}", retryable=code == -32005, method=method)
        if "result" not in body:
            raise network_error(f"Solana RPC missing result: {body!r:.200}", retryable=False, method=method)
        return body["result"]

    def call(self, method: str, params: Union[Sequence[Any], Dict[str, Any]]) -> Any:
        return with_retry(
            lambda: self._post(method, params),
            max_retries=self.max_retries,
            base_delay_s=self.retry_delay_s,
            sleep=self.sleep,
        )

    def get_balance_lamports(self, pubkey: str) -> int:
        result = self.call("getBalance", [pubkey])
        try:
            return int(result["value"])
        except (KeyError, TypeError, ValueError) as e:
            raise network_error(f"Solana RPC missing balance value: {result!r:.200}", retryable=False) from e

    def get_token_decimals(self, mint: str) -> int:
        result = self.call("getTokenSupply", [mint])
        try:
            return int(result["value"]["decimals"])
        except (KeyError, TypeError, ValueError) as e:
            raise network_error(f"Solana RPC invalid token supply: {result!r:.200}", retryable=False) from e

    def get_token_program(self, mint: str) -> str:
        """Owner program of the mint account (classic SPL Token or Token-2022)."""
        result = self.call("getAccountInfo", [mint, {"encoding": "jsonParsed"}])
        value = (result or {}).get("value")
        if not value:
            raise network_error(f"Mint account not found: {mint}", retryable=False, mint=mint)
        owner = value.get("owner")
        if owner not in (TOKEN_PROGRAM_ID, TOKEN_2022_PROGRAM_ID):
            raise network_error(f"Account {mint} is not a token mint (owner {owner})", retryable=False, mint=mint)
        return owner

    def get_token_balance(self, owner: str, mint: str) -> Decimal:
        """
        Sum of all token accounts of owner for mint, in UI units.
        Returns 0 if the owner doesn't hold the token.
        """
        result = self.call("getTokenAccountsByOwner", [owner, {"mint": mint}, {"encoding": "jsonParsed"}])
        total = Decimal("0")
        try:
            for acc in result.get("value", []):
                token_amount = acc["account"]["data"]["parsed"]["info"]["tokenAmount"]
                total += raw_to_decimal(int(token_amount["amount"]), int(token_amount["decimals"]))
        except (KeyError, TypeError, ValueError) as e:
            raise network_error(f"Solana RPC invalid response format: {e}", retryable=False) from e
        return total

    def get_payout_balance(self, owner: str, payout_mint: Optional[str]) -> Decimal:
        """Payout balance of owner: SOL when payout_mint is None, otherwise the token balance."""
        if payout_mint is None:
            return lamports_to_sol(self.get_balance_lamports(owner))
        return self.get_token_balance(owner, payout_mint)

    def get_program_accounts_page(self, mint: str, program_id: str) -> List[HolderRow]:
        """All token accounts for mint via getProgramAccounts. The standard RPC returns them in one page."""
        filters: List[Dict[str, Any]] = [{"memcmp": {"offset": 0, "bytes": mint}}]
        if program_id == TOKEN_PROGRAM_ID:
            filters.insert(0, {"dataSize": TOKEN_ACCOUNT_SIZE})
        result = self.call("getProgramAccounts", [program_id, {"encoding": "jsonParsed", "filters": filters}])
        if not isinstance(result, list):
            raise network_error("getProgramAccounts returned a non-list result", retryable=False, mint=mint)
        rows: List[HolderRow] = []
        try:
            for acc in result:
                info = acc["account"]["data"]["parsed"]["info"]
                rows.append((info["owner"], int(info["tokenAmount"]["amount"])))
        except (KeyError, TypeError, ValueError) as e:
            raise network_error(f"Malformed token account in getProgramAccounts: {e}", retryable=False) from e
        return rows

    def get_token_accounts_page(self, mint: str, page: int, limit: int) -> List[HolderRow]:
        """One page of the DAS getTokenAccounts method (1-based pages)."""
        result = self.call("getTokenAccounts", {"mint": mint, "page": page, "limit": limit})
        rows: List[HolderRow] = []
        try:
            for acc in result.get("token_accounts", []):
                rows.append((acc["owner"], int(acc["amount"])))
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            raise network_error(f"Malformed token account in getTokenAccounts: {e}", retryable=False) from e
        return rows

    def get_signature_status(self, signature: str) -> Optional[Dict[str, Any]]:
        """
        Status dict ({confirmationStatus, err, ...}) for a signature,
        or None when the cluster hasn't seen it yet.
        """
        result = self.call("getSignatureStatuses", [[signature], {"searchTransactionHistory": True}])
        if result is None:
            return None
        values = result.get("value") if isinstance(result, dict) else None
        if not isinstance(values, list):
            raise network_error(
                f"Solana RPC invalid signature statuses: {result!r:.200}", retryable=False, signature=signature
            )
        status = values[0] if values else None
        if status is not None and not isinstance(status, dict):
            raise network_error(
                f"Solana RPC invalid signature status: {status!r:.200}", retryable=False, signature=signature
            )
        return status
