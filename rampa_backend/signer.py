"""
Local signing of manually serialized transactions.

A signing capability is anything with `sign(message: bytes) -> bytes` that
returns a 64-byte ed25519 signature; the engine never sees the key type of
whatever login provider produced it.
"""

import json
import logging
from pathlib import Path
from typing import Protocol, Union

import base58
from solders.keypair import Keypair
from solders.pubkey import Pubkey

from rampa_backend.errors import EncodingError, SigningError
from rampa_backend.wire import SIGNATURE_LENGTH, decode_transaction

logger = logging.getLogger("rampa.signer")


class SigningCapability(Protocol):
    def sign(self, message: bytes) -> bytes:
        ...


class KeypairSigner:
    def __init__(self, keypair: Keypair):
        self.keypair = keypair

    def pubkey(self) -> Pubkey:
        return self.keypair.pubkey()

    def sign(self, message: bytes) -> bytes:
        return bytes(self.keypair.sign_message(message))


def keypair_from_secret(secret: Union[str, bytes, list]) -> Keypair:
    """
    Build a keypair from a raw private key as handed out by social-login providers:
    hex or base58 text, a JSON byte array, or raw bytes; 32 bytes are treated as
    the ed25519 seed and 64 bytes as seed + public key.
    """
    try:
        if isinstance(secret, list):
            raw = bytes(secret)
        elif isinstance(secret, str):
            text = secret.strip()
            if text.startswith("0x"):
                text = text[2:]
            if text.startswith("["):
                raw = bytes(json.loads(text))
            else:
                try:
                    raw = bytes.fromhex(text)
                except ValueError:
                    raw = base58.b58decode(text)
        else:
            raw = bytes(secret)
    except (TypeError, ValueError) as exc:
        # JSONDecodeError and out-of-range byte values are ValueErrors too.
        raise SigningError(f"Private key is not hex, base58 or a JSON byte array: {exc}") from exc

    try:
        if len(raw) == 32:
            return Keypair.from_seed(raw)
        if len(raw) == 64:
            return Keypair.from_bytes(raw)
    except Exception as exc:  # noqa: BLE001
        raise SigningError(f"Invalid private key: {exc}") from exc
    raise SigningError(f"Private key must be 32 or 64 bytes, got {len(raw)}")


def load_keypair_file(path: Union[str, Path]) -> Keypair:
    return keypair_from_secret(Path(path).read_text(encoding="utf-8"))


def sign_transaction(tx_bytes: bytes, capability: SigningCapability) -> bytes:
    """Sign the message region of `tx_bytes` and write the result into signature slot 0."""
    try:
        decoded = decode_transaction(tx_bytes)
    except EncodingError as exc:
        raise SigningError(f"Cannot locate message to sign: {exc.message}") from exc
    required = decoded.header.num_required_signatures
    if required == 0:
        raise SigningError("Transaction has no signature slots")
    if required > 1:
        raise SigningError(f"Only single-signer transactions are supported (message requires {required})")

    try:
        signature = capability.sign(decoded.message)
    except SigningError:
        raise
    except Exception as exc:  # noqa: BLE001
        raise SigningError(f"Signer rejected the message: {exc}") from exc
    signature = bytes(signature) if signature is not None else b""
    if len(signature) != SIGNATURE_LENGTH:
        raise SigningError(f"Signer returned {len(signature)} bytes, expected {SIGNATURE_LENGTH}")

    start = decoded.signature_offset
    signed = bytearray(tx_bytes)
    signed[start : start + SIGNATURE_LENGTH] = signature
    logger.debug("transaction_signed message_offset=%s size=%s", decoded.message_offset, len(signed))
    return bytes(signed)
