"""
Legacy transaction wire format, written out by hand.

The account table, header and compact-u16 lengths are produced here instead of
through `solders.message.Message`, so the bytes handed to wallets are exactly
the ones described below and nothing is reordered behind our back.

Layout of a transaction:

    compact-u16 signature count
    64-byte signature slot * count        (zero-filled until signed)
    header: num_required_signatures, num_readonly_signed, num_readonly_unsigned
    compact-u16 account count + 32-byte keys
    32-byte recent blockhash
    compact-u16 instruction count
      per instruction: u8 program index,
                       compact-u16 account count + u8 indices,
                       compact-u16 data length + data
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence, Tuple, Union

from solders.hash import Hash
from solders.instruction import CompiledInstruction, Instruction
from solders.message import MessageHeader
from solders.pubkey import Pubkey

from rampa_backend.errors import EncodingError

logger = logging.getLogger("rampa.wire")

SIGNATURE_LENGTH = 64
PUBKEY_LENGTH = 32
HASH_LENGTH = 32
MAX_COMPACT_U16 = 0xFFFF
MAX_ACCOUNT_INDEX = 0xFF


def encode_compact_u16(value: int) -> bytes:
    """7 bits per byte, low bits first, high bit set while more bytes follow."""
    if not isinstance(value, int) or value < 0 or value > MAX_COMPACT_U16:
        raise EncodingError(f"compact-u16 value out of range: {value}")
    out = bytearray()
    remaining = value
    while True:
        elem = remaining & 0x7F
        remaining >>= 7
        if remaining == 0:
            out.append(elem)
            return bytes(out)
        out.append(elem | 0x80)


def decode_compact_u16(data: bytes, offset: int = 0) -> Tuple[int, int]:
    """Return (value, bytes consumed) for the compact-u16 starting at offset."""
    value = 0
    for idx in range(3):
        pos = offset + idx
        if pos >= len(data):
            raise EncodingError(f"truncated compact-u16 at offset {offset}")
        byte = data[pos]
        # Only bits 14-15 fit in the third byte, and it may not continue.
        if idx == 2 and byte > 0x03:
            raise EncodingError(f"compact-u16 overflow at offset {offset}")
        value |= (byte & 0x7F) << (7 * idx)
        if not byte & 0x80:
            if idx > 0 and byte == 0:
                raise EncodingError(f"non-canonical compact-u16 at offset {offset}")
            return value, idx + 1
    raise EncodingError(f"compact-u16 overflow at offset {offset}")


@dataclass(frozen=True)
class AccountRef:
    pubkey: Pubkey
    is_signer: bool = False
    is_writable: bool = False

    @property
    def tier(self) -> int:
        if self.is_signer:
            return 0 if self.is_writable else 1
        return 2 if self.is_writable else 3

    def merge(self, is_signer: bool, is_writable: bool) -> "AccountRef":
        return AccountRef(self.pubkey, self.is_signer or is_signer, self.is_writable or is_writable)

    def flags(self) -> str:
        if not self.is_signer and not self.is_writable:
            return "R"
        return ("S" if self.is_signer else "") + ("W" if self.is_writable else "")


def compile_accounts(fee_payer: Optional[Pubkey], instructions: Iterable[Instruction]) -> List[AccountRef]:
    """
    Collect every account touched by `instructions`, merge duplicate flags with OR,
    and order the table signer-writable, signer-readonly, writable, readonly.
    The sort is stable, so within a tier accounts keep first-seen order and the
    fee payer (inserted first) stays at index 0.
    """
    if fee_payer is None:
        raise EncodingError("fee payer is required")
    if not isinstance(fee_payer, Pubkey):
        raise EncodingError(f"fee payer must be a Pubkey, got {type(fee_payer).__name__}")

    refs: Dict[Pubkey, AccountRef] = {fee_payer: AccountRef(fee_payer, True, True)}

    def upsert(pubkey: Pubkey, is_signer: bool, is_writable: bool) -> None:
        existing = refs.get(pubkey)
        if existing is None:
            refs[pubkey] = AccountRef(pubkey, is_signer, is_writable)
        else:
            refs[pubkey] = existing.merge(is_signer, is_writable)

    for ix in instructions:
        for meta in ix.accounts:
            upsert(meta.pubkey, meta.is_signer, meta.is_writable)
        upsert(ix.program_id, False, False)

    return sorted(refs.values(), key=lambda ref: (ref.tier, ref.pubkey != fee_payer))


def message_header(accounts: Sequence[AccountRef]) -> MessageHeader:
    num_required = 0
    for ref in accounts:
        if not ref.is_signer:
            break
        num_required += 1
    if any(ref.is_signer for ref in accounts[num_required:]):
        raise EncodingError("signer accounts must lead the account table")
    readonly_signed = sum(1 for ref in accounts[:num_required] if not ref.is_writable)
    readonly_unsigned = sum(1 for ref in accounts[num_required:] if not ref.is_writable)
    return MessageHeader(
        num_required_signatures=num_required,
        num_readonly_signed_accounts=readonly_signed,
        num_readonly_unsigned_accounts=readonly_unsigned,
    )


def _to_hash(blockhash: Union[str, Hash, bytes]) -> Hash:
    if isinstance(blockhash, Hash):
        return blockhash
    try:
        if isinstance(blockhash, (bytes, bytearray)):
            return Hash(bytes(blockhash))
        return Hash.from_string(blockhash)
    except Exception as exc:  # noqa: BLE001
        raise EncodingError(f"invalid blockhash {blockhash!r}: {exc}") from exc


@dataclass
class CompiledMessage:
    header: MessageHeader
    account_keys: List[Pubkey]
    recent_blockhash: Hash
    instructions: List[CompiledInstruction] = field(default_factory=list)

    @property
    def num_required_signatures(self) -> int:
        return self.header.num_required_signatures

    def serialize(self) -> bytes:
        out = bytearray()
        out.append(self.header.num_required_signatures)
        out.append(self.header.num_readonly_signed_accounts)
        out.append(self.header.num_readonly_unsigned_accounts)
        out += encode_compact_u16(len(self.account_keys))
        for key in self.account_keys:
            out += bytes(key)
        out += bytes(self.recent_blockhash)
        out += encode_compact_u16(len(self.instructions))
        for ix in self.instructions:
            out.append(ix.program_id_index)
            accounts = bytes(ix.accounts)
            out += encode_compact_u16(len(accounts))
            out += accounts
            data = bytes(ix.data)
            out += encode_compact_u16(len(data))
            out += data
        return bytes(out)


def compile_message(
    accounts: Sequence[AccountRef],
    blockhash: Union[str, Hash, bytes],
    instructions: Sequence[Instruction],
) -> CompiledMessage:
    if not accounts:
        raise EncodingError("account table is empty")
    if len(accounts) > MAX_ACCOUNT_INDEX + 1:
        raise EncodingError(f"too many accounts for one-byte indices: {len(accounts)}")
    header = message_header(accounts)
    index: Dict[Pubkey, int] = {}
    for pos, ref in enumerate(accounts):
        if ref.pubkey in index:
            raise EncodingError(f"duplicate account in table: {ref.pubkey}")
        index[ref.pubkey] = pos

    def position(pubkey: Pubkey) -> int:
        try:
            return index[pubkey]
        except KeyError:
            raise EncodingError(f"account {pubkey} missing from account table") from None

    compiled: List[CompiledInstruction] = []
    for ix in instructions:
        compiled.append(
            CompiledInstruction(
                program_id_index=position(ix.program_id),
                data=bytes(ix.data),
                accounts=bytes(position(meta.pubkey) for meta in ix.accounts),
            )
        )

    if logger.isEnabledFor(logging.DEBUG):
        for pos, ref in enumerate(accounts):
            logger.debug("account_table index=%s pubkey=%s flags=%s", pos, ref.pubkey, ref.flags())
        logger.debug(
            "message_header signatures=%s readonly_signed=%s readonly_unsigned=%s",
            header.num_required_signatures,
            header.num_readonly_signed_accounts,
            header.num_readonly_unsigned_accounts,
        )

    return CompiledMessage(
        header=header,
        account_keys=[ref.pubkey for ref in accounts],
        recent_blockhash=_to_hash(blockhash),
        instructions=compiled,
    )


def serialize_transaction(message: CompiledMessage, signatures: Optional[Sequence[bytes]] = None) -> bytes:
    count = message.num_required_signatures
    slots = list(signatures or [])
    if len(slots) > count:
        raise EncodingError(f"{len(slots)} signatures for {count} required")
    slots.extend([bytes(SIGNATURE_LENGTH)] * (count - len(slots)))
    out = bytearray(encode_compact_u16(count))
    for sig in slots:
        sig = bytes(sig)
        if len(sig) != SIGNATURE_LENGTH:
            raise EncodingError(f"signature must be {SIGNATURE_LENGTH} bytes, got {len(sig)}")
        out += sig
    out += message.serialize()
    return bytes(out)


def compile_transaction(
    accounts: Sequence[AccountRef],
    blockhash: Union[str, Hash, bytes],
    instructions: Sequence[Instruction],
) -> bytes:
    """Unsigned transaction bytes: zeroed signature slots followed by the message."""
    message = compile_message(accounts, blockhash, instructions)
    raw = serialize_transaction(message)
    logger.debug(
        "transaction_compiled size=%s accounts=%s instructions=%s",
        len(raw),
        len(message.account_keys),
        len(message.instructions),
    )
    return raw


@dataclass
class DecodedTransaction:
    signatures: List[bytes]
    message_offset: int
    header: MessageHeader
    account_keys: List[Pubkey]
    message: bytes

    @property
    def signature_offset(self) -> int:
        return self.message_offset - SIGNATURE_LENGTH * len(self.signatures)


def decode_transaction(raw: bytes) -> DecodedTransaction:
    """Split raw transaction bytes into signature slots and the signable message."""
    raw = bytes(raw)
    count, offset = decode_compact_u16(raw, 0)
    sig_end = offset + SIGNATURE_LENGTH * count
    if len(raw) < sig_end + 3:
        raise EncodingError("transaction truncated before message header")
    signatures = [raw[pos : pos + SIGNATURE_LENGTH] for pos in range(offset, sig_end, SIGNATURE_LENGTH)]
    header = MessageHeader(
        num_required_signatures=raw[sig_end],
        num_readonly_signed_accounts=raw[sig_end + 1],
        num_readonly_unsigned_accounts=raw[sig_end + 2],
    )
    if header.num_required_signatures != count:
        raise EncodingError(
            f"signature count {count} does not match header ({header.num_required_signatures})"
        )
    num_keys, used = decode_compact_u16(raw, sig_end + 3)
    keys_start = sig_end + 3 + used
    keys_end = keys_start + PUBKEY_LENGTH * num_keys
    if len(raw) < keys_end + HASH_LENGTH:
        raise EncodingError("transaction truncated inside account table")
    account_keys = [
        Pubkey.from_bytes(raw[pos : pos + PUBKEY_LENGTH]) for pos in range(keys_start, keys_end, PUBKEY_LENGTH)
    ]
    return DecodedTransaction(
        signatures=signatures,
        message_offset=sig_end,
        header=header,
        account_keys=account_keys,
        message=raw[sig_end:],
    )
