from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Optional


class ErrorKind(Enum):
    """Error kinds. The value is the process exit code and must stay stable."""

    GENERAL = 1
    VALIDATION = 2
    CONFIGURATION = 3
    NETWORK = 4
    AUTHENTICATION = 5
    DATA_INTEGRITY = 6
    RESOURCE = 7
    TIMEOUT = 8

    @property
    def exit_code(self) -> int:
        return self.value


EXIT_SUCCESS = 0

# Kinds worth retrying for a single network operation.
TRANSIENT_KINDS = frozenset({ErrorKind.NETWORK, ErrorKind.TIMEOUT})


class TributaryError(Exception):
    """Single error type for the whole pipeline, tagged with an ErrorKind."""

    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        retryable: Optional[bool] = None,
    ):
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.details: Dict[str, Any] = dict(details or {})
        self._retryable = retryable

    @property
    def exit_code(self) -> int:
        return self.kind.exit_code

    @property
    def transient(self) -> bool:
        if self._retryable is not None:
            return self._retryable
        return self.kind in TRANSIENT_KINDS

    def __str__(self) -> str:
        text = f"{self.kind.name}: {self.message}"
        if self.details:
            parts = ", ".join(f"{k}={v}" for k, v in sorted(self.details.items()))
            text += f" ({parts})"
        return text

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.name,
            "code": self.kind.value,
            "message": self.message,
            "details": {k: str(v) for k, v in self.details.items()},
        }


def validation_error(message: str, **details: Any) -> TributaryError:
    return TributaryError(ErrorKind.VALIDATION, message, details)


def configuration_error(message: str, **details: Any) -> TributaryError:
    return TributaryError(ErrorKind.CONFIGURATION, message, details)


def network_error(message: str, retryable: bool = True, **details: Any) -> TributaryError:
    return TributaryError(ErrorKind.NETWORK, message, details, retryable=retryable)


def timeout_error(message: str, **details: Any) -> TributaryError:
    return TributaryError(ErrorKind.TIMEOUT, message, details)


def integrity_error(message: str, **details: Any) -> TributaryError:
    return TributaryError(ErrorKind.DATA_INTEGRITY, message, details)
