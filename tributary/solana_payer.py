from __future__ import annotations

import json
import os
import re
import subprocess
from dataclasses import dataclass
from decimal import Decimal
from typing import List, Optional, Protocol

from solders.keypair import Keypair

from tributary.errors import ErrorKind, TributaryError, configuration_error, network_error, timeout_error
from tributary.models import AccountAddress

_SIGNATURE_PATTERN = re.compile(r"^[1-9A-HJ-NP-Za-km-z]{64,90}$")

# stderr fragments from the solana / spl-token CLIs, lowercased
_AUTH_MARKERS = ("keypair", "signer", "signature verification", "not authorized", "owner does not match")
_TRANSIENT_MARKERS = ("timed out", "timeout", "connection", "429", "too many requests", "blockhash", "node is behind")
_FUNDS_MARKERS = ("insufficient",)


class Signer(Protocol):
    """Capability to sign and submit a payout transfer; serialization is the signer's business."""

    @property
    def pubkey(self) -> str: ...

    def transfer(self, recipient: AccountAddress, amount: Decimal) -> str: ...


def load_keypair_pubkey(keypair_path: str) -> str:
    """Read a solana-keygen JSON keypair file and return its base58 public key."""
    if not keypair_path:
        raise configuration_error("FATAL: keypair path is not set")
    if not os.path.exists(keypair_path):
        raise configuration_error(f"FATAL: keypair not found at {keypair_path}", path=keypair_path)
    try:
        with open(keypair_path, "r", encoding="utf-8") as f:
            secret = json.load(f)
        kp = Keypair.from_bytes(bytes(secret))
    except (OSError, ValueError, TypeError) as e:
        raise configuration_error(f"FATAL: keypair at {keypair_path} is unreadable: {e}", path=keypair_path) from e
    return str(kp.pubkey())


def _classify_failure(cmd_name: str, stdout: str, stderr: str) -> TributaryError:
    text = f"{stdout}\n{stderr}".lower()
    message = f"{cmd_name} transfer failed:\nSTDOUT:\n{stdout}\nSTDERR:\n{stderr}"
    if any(m in text for m in _FUNDS_MARKERS):
        return TributaryError(ErrorKind.RESOURCE, message)
    if any(m in text for m in _AUTH_MARKERS):
        return TributaryError(ErrorKind.AUTHENTICATION, message)
    if any(m in text for m in _TRANSIENT_MARKERS):
        return network_error(message)
    return TributaryError(ErrorKind.GENERAL, message)


def parse_signature(stdout: str) -> Optional[str]:
    """Pull the transaction signature out of solana / spl-token CLI output."""
    lines = [line.strip() for line in stdout.splitlines() if line.strip()]
    for line in lines:
        if "Signature:" in line:
            return line.split("Signature:", 1)[1].strip()
    # --no-wait output is just the signature
    for line in reversed(lines):
        if _SIGNATURE_PATTERN.match(line):
            return line
    return None


@dataclass(frozen=True)
class SolanaCLISigner:
    """Execute payout transfers using the Solana CLI tools."""

    keypair_path: str
    rpc_url: str
    payout_mint: Optional[str] = None
    timeout_s: float = 60

    @property
    def pubkey(self) -> str:
        return load_keypair_pubkey(self.keypair_path)

    def build_command(self, recipient: AccountAddress, amount: Decimal) -> List[str]:
        if self.payout_mint is None:
            return [
                "solana",
                "transfer",
                str(recipient),
                format(amount, "f"),
                "--keypair",
                self.keypair_path,
                "--url",
                self.rpc_url,
                "--allow-unfunded-recipient",
                "--no-wait",
            ]
        return [
            "spl-token",
            "transfer",
            self.payout_mint,
            format(amount, "f"),
            str(recipient),
            "--owner",
            self.keypair_path,
            "--fee-payer",
            self.keypair_path,
            "--url",
            self.rpc_url,
            "--fund-recipient",
            "--allow-unfunded-recipient",
            "--no-wait",
        ]

    def transfer(self, recipient: AccountAddress, amount: Decimal) -> str:
        """
        Submit one transfer and return its transaction signature.
        Does not wait for confirmation; the caller polls the cluster.
        """
        cmd = self.build_command(recipient, amount)
        try:
            proc = subprocess.run(cmd, capture_output=True, text=True, timeout=self.timeout_s)
        except subprocess.TimeoutExpired as e:
            raise timeout_error(f"{cmd[0]} transfer timed out after {self.timeout_s}s", recipient=str(recipient)) from e
        except FileNotFoundError as e:
            raise configuration_error(f"{cmd[0]} CLI not found in PATH") from e

        if proc.returncode != 0:
            raise _classify_failure(cmd[0], proc.stdout, proc.stderr)

        signature = parse_signature(proc.stdout)
        if not signature:
            raise TributaryError(
                ErrorKind.GENERAL,
                f"{cmd[0]} transfer returned no signature",
                {"stdout": proc.stdout[:200]},
            )
        return signature
