"""
Typed failures for the transfer engine.

Each component raises exactly one family of error; the assembler folds them
into a failed TransferOutcome so callers can decide whether to retry, prompt
the user, or give up.
"""

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    TRANSPORT = "transport"
    PROTOCOL = "protocol"
    STATE = "state"
    ENCODING = "encoding"
    SIGNING = "signing"


class TransferError(Exception):
    kind: ErrorKind
    retryable: bool = False

    def __init__(self, message: str, *, detail: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}

    def to_dict(self) -> dict:
        return {
            "kind": self.kind.value,
            "message": self.message,
            "retryable": self.retryable,
            "detail": self.detail,
        }


class TransportError(TransferError):
    """Network failure or timeout reaching the RPC endpoint."""

    kind = ErrorKind.TRANSPORT
    retryable = True


class ProtocolError(TransferError):
    """The RPC endpoint answered with a JSON-RPC `error` (or an unusable body)."""

    kind = ErrorKind.PROTOCOL

    def __init__(self, message: str, *, code: Optional[int] = None, detail: Optional[dict] = None):
        super().__init__(message, detail=detail)
        self.code = code


class StateError(TransferError):
    """On-chain state makes the request impossible (e.g. sender has no token account)."""

    kind = ErrorKind.STATE


class EncodingError(TransferError):
    kind = ErrorKind.ENCODING


class SigningError(TransferError):
    kind = ErrorKind.SIGNING
