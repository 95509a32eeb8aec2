import base64
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Dict, List, Optional, Union

from solders.instruction import AccountMeta, Instruction
from solders.pubkey import Pubkey

SYS_PROGRAM_ID = Pubkey.from_string("11111111111111111111111111111111")
TOKEN_PROGRAM_ID = Pubkey.from_string("TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA")
ASSOCIATED_TOKEN_PROGRAM_ID = Pubkey.from_string("ATokenGPvbdGVxr1b2hvZbsiqW5xWH25efTNsLJA8knL")

# SPL Token instruction tags
TOKEN_IX_TRANSFER = 3
# Associated Token Account CreateIdempotent tag; an empty payload is the legacy Create.
ATA_IX_CREATE_IDEMPOTENT = 1

U64_MAX = 2**64 - 1


@dataclass(frozen=True)
class TokenInfo:
    symbol: str
    mint: str
    decimals: int


TOKEN_REGISTRY: Dict[str, List[TokenInfo]] = {
    "mainnet": [
        TokenInfo("USDC", "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v", 6),
        TokenInfo("EURC", "HzwqbKZw8HxMN6bF2yFZNrht3c2iXXzpKcFu7uBEDKtr", 6),
        TokenInfo("USDT", "Es9vMFrzaCERmJfrF4H2FYD4KCoNkY11McCe8BenwNYB", 6),
        TokenInfo("wSOL", "So11111111111111111111111111111111111111112", 9),
    ],
    "devnet": [
        TokenInfo("USDC", "4zMMC9srt5Ri5X14GAgXhaHii3GnPAEERYPJgZJDncDU", 6),
        TokenInfo("EURC", "HzwqbKZw8HxMN6bF2yFZNrht3c2iXXzpKcFu7uBEDKtr", 6),
        TokenInfo("wSOL", "So11111111111111111111111111111111111111112", 9),
    ],
}


def to_pubkey(value: Union[str, Pubkey]) -> Pubkey:
    if isinstance(value, Pubkey):
        return value
    return Pubkey.from_string(value)


def lookup_token(mint: Union[str, Pubkey], network: str = "devnet") -> Optional[TokenInfo]:
    mint_str = str(mint)
    for info in TOKEN_REGISTRY.get(network, []):
        if info.mint == mint_str:
            return info
    return None


def token_symbol(mint: Union[str, Pubkey], network: str = "devnet") -> str:
    info = lookup_token(mint, network)
    return info.symbol if info else "Token"


def to_raw_amount(amount: Union[str, int, Decimal], decimals: int) -> int:
    """Convert a human amount ("1.5") to base units, refusing anything that would round."""
    try:
        value = Decimal(str(amount))
    except InvalidOperation as exc:
        raise ValueError(f"Invalid amount: {amount}") from exc
    if not value.is_finite() or value <= 0:
        raise ValueError(f"Amount must be positive: {amount}")
    scaled = value.scaleb(decimals)
    if scaled != scaled.to_integral_value():
        raise ValueError(f"Amount {amount} has more than {decimals} decimal places")
    raw = int(scaled)
    if raw > U64_MAX:
        raise ValueError(f"Amount {amount} exceeds u64")
    return raw


def to_ui_amount(raw: int, decimals: int) -> str:
    return format(Decimal(raw).scaleb(-decimals), "f")


def derive_ata(owner: Pubkey, mint: Pubkey) -> Pubkey:
    return Pubkey.find_program_address(
        [bytes(owner), bytes(TOKEN_PROGRAM_ID), bytes(mint)],
        ASSOCIATED_TOKEN_PROGRAM_ID,
    )[0]


def build_create_ata_ix(payer: Pubkey, owner: Pubkey, mint: Pubkey, ata: Pubkey, idempotent: bool = True) -> Instruction:
    # The idempotent variant succeeds when the account already exists, so it is
    # safe to emit on a guess.
    data = bytes([ATA_IX_CREATE_IDEMPOTENT]) if idempotent else b""
    metas = [
        AccountMeta(pubkey=payer, is_signer=True, is_writable=True),
        AccountMeta(pubkey=ata, is_signer=False, is_writable=True),
        AccountMeta(pubkey=owner, is_signer=False, is_writable=False),
        AccountMeta(pubkey=mint, is_signer=False, is_writable=False),
        AccountMeta(pubkey=SYS_PROGRAM_ID, is_signer=False, is_writable=False),
        AccountMeta(pubkey=TOKEN_PROGRAM_ID, is_signer=False, is_writable=False),
    ]
    return Instruction(program_id=ASSOCIATED_TOKEN_PROGRAM_ID, data=data, accounts=metas)


def encode_spl_transfer(amount: int) -> bytes:
    if amount < 0 or amount > U64_MAX:
        raise ValueError(f"Transfer amount out of u64 range: {amount}")
    return bytes([TOKEN_IX_TRANSFER]) + amount.to_bytes(8, "little")


def build_spl_transfer_ix(source: Pubkey, dest: Pubkey, owner: Pubkey, amount: int) -> Instruction:
    metas = [
        AccountMeta(pubkey=source, is_signer=False, is_writable=True),
        AccountMeta(pubkey=dest, is_signer=False, is_writable=True),
        AccountMeta(pubkey=owner, is_signer=True, is_writable=False),
    ]
    return Instruction(program_id=TOKEN_PROGRAM_ID, data=encode_spl_transfer(amount), accounts=metas)


def describe_instruction(ix: Instruction) -> str:
    if ix.program_id == ASSOCIATED_TOKEN_PROGRAM_ID:
        return "create_associated_token_account"
    if ix.program_id == TOKEN_PROGRAM_ID and bytes(ix.data)[:1] == bytes([TOKEN_IX_TRANSFER]):
        return "spl_transfer"
    return "unknown"


def instruction_to_dict(ix: Instruction) -> dict:
    return {
        "name": describe_instruction(ix),
        "program_id": str(ix.program_id),
        "keys": [
            {
                "pubkey": str(k.pubkey),
                "is_signer": k.is_signer,
                "is_writable": k.is_writable,
            }
            for k in ix.accounts
        ],
        "data": base64.b64encode(bytes(ix.data)).decode(),
    }
