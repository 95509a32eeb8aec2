"""
Shared fixtures: a fake RPC endpoint with preset account state, plus fixed keys.
"""

import base64
from typing import Dict, List, Optional, Set

import pytest
from solders.hash import Hash
from solders.keypair import Keypair
from solders.pubkey import Pubkey
from solders.signature import Signature

from rampa_backend.errors import TransferError
from rampa_backend.rpc import SendOptions
from rampa_backend.tx_builder import derive_ata
from rampa_backend.wire import decode_transaction

BLOCKHASH = str(Hash(bytes([7] * 32)))


class FakeRpc:
    """
    Stands in for RpcClient. Accounts listed in `existing` are reported as
    present; `probe_errors` maps an account to the error its probe raises.
    """

    def __init__(self, existing: Optional[Set[Pubkey]] = None):
        self.existing: Set[str] = {str(pk) for pk in (existing or set())}
        self.probe_errors: Dict[str, TransferError] = {}
        self.blockhash = BLOCKHASH
        self.blockhash_error: Optional[TransferError] = None
        self.send_error: Optional[TransferError] = None
        self.probed: List[str] = []
        self.sent: List[bytes] = []
        self.send_opts: List[SendOptions] = []

    def mark_existing(self, pubkey: Pubkey) -> None:
        self.existing.add(str(pubkey))

    def fail_probe(self, pubkey: Pubkey, error: TransferError) -> None:
        self.probe_errors[str(pubkey)] = error

    def get_latest_blockhash(self, commitment: str = "confirmed") -> str:
        if self.blockhash_error is not None:
            raise self.blockhash_error
        return self.blockhash

    def account_exists(self, pubkey, commitment: str = "confirmed") -> bool:
        key = str(pubkey)
        self.probed.append(key)
        if key in self.probe_errors:
            raise self.probe_errors[key]
        return key in self.existing

    def send_transaction(self, tx_b64: str, opts: Optional[SendOptions] = None) -> str:
        if self.send_error is not None:
            raise self.send_error
        raw = base64.b64decode(tx_b64)
        self.sent.append(raw)
        self.send_opts.append(opts)
        return str(Signature.from_bytes(decode_transaction(raw).signatures[0]))


@pytest.fixture
def sender() -> Keypair:
    return Keypair.from_seed(bytes([1] * 32))


@pytest.fixture
def recipient() -> Pubkey:
    return Keypair.from_seed(bytes([2] * 32)).pubkey()


@pytest.fixture
def mint() -> Pubkey:
    return Keypair.from_seed(bytes([3] * 32)).pubkey()


@pytest.fixture
def sender_ata(sender, mint) -> Pubkey:
    return derive_ata(sender.pubkey(), mint)


@pytest.fixture
def recipient_ata(recipient, mint) -> Pubkey:
    return derive_ata(recipient, mint)


@pytest.fixture
def rpc(sender_ata) -> FakeRpc:
    # Sender holds the token by default; the recipient account is absent.
    return FakeRpc(existing={sender_ata})
