import base64
from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

from rampa_backend import main
from rampa_backend.assembler import TransactionAssembler
from rampa_backend.errors import TransportError
from rampa_backend.signer import KeypairSigner, sign_transaction
from rampa_backend.tx_builder import build_spl_transfer_ix
from rampa_backend.wire import compile_accounts, compile_transaction

from .conftest import BLOCKHASH


class FakeSolanaClient:
    def __init__(self):
        self.balance = SimpleNamespace(amount="1500000", decimals=6, ui_amount_string="1.5")
        self.status = SimpleNamespace(err=None, confirmation_status="confirmed")

    def get_token_account_balance(self, pubkey):
        return SimpleNamespace(value=self.balance)

    def get_signature_statuses(self, signatures):
        return SimpleNamespace(value=[self.status])


@pytest.fixture
def db_engine():
    engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    SQLModel.metadata.create_all(engine)
    return engine


@pytest.fixture
def sol():
    return FakeSolanaClient()


@pytest.fixture
def client(db_engine, rpc, sol, sender):
    def get_session_override():
        with Session(db_engine) as session:
            yield session

    engine = TransactionAssembler(rpc, probe_delay=0)
    main.app.dependency_overrides[main.get_session] = get_session_override
    main.app.dependency_overrides[main.get_assembler] = lambda: engine
    main.app.dependency_overrides[main.get_sol_client] = lambda: sol
    main.app.dependency_overrides[main.load_custodial_keypair] = lambda: sender
    yield TestClient(main.app)
    main.app.dependency_overrides.clear()


def test_health(client):
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json()["status"] == "ok"


def test_build_returns_unsigned_transaction(client, sender, recipient, mint):
    resp = client.post(
        "/transfer/build",
        json={"owner": str(sender.pubkey()), "recipient": str(recipient), "mint": str(mint), "amount": "1.5", "decimals": 6},
    )
    assert resp.status_code == 200, resp.text
    data = resp.json()
    assert data["success"] is True
    assert data["amount"] == 1_500_000
    assert data["state"] == "message_compiled"
    assert data["instructions"] == ["create_associated_token_account", "spl_transfer"]
    assert [d["name"] for d in data["instruction_details"]] == data["instructions"]
    assert data["probe_warnings"] == []
    raw = base64.b64decode(data["transaction_b64"])
    assert raw[1:65] == bytes(64)
    assert data["signature"] is None


def test_build_accepts_u64_max(client, sender, recipient, mint):
    resp = client.post(
        "/transfer/build",
        json={"owner": str(sender.pubkey()), "recipient": str(recipient), "mint": str(mint), "raw_amount": 2**64 - 1},
    )
    assert resp.status_code == 200, resp.text
    assert resp.json()["amount"] == 2**64 - 1

    history = client.get("/transfer/history", params={"wallet": str(sender.pubkey())}).json()
    assert history[0]["amount"] == 2**64 - 1
    assert history[0]["status"] == "built"


@pytest.mark.parametrize("raw_amount", [2**64, 0, -1])
def test_build_rejects_amount_outside_u64(client, sender, recipient, mint, raw_amount):
    resp = client.post(
        "/transfer/build",
        json={"owner": str(sender.pubkey()), "recipient": str(recipient), "mint": str(mint), "raw_amount": raw_amount},
    )
    assert resp.status_code == 422
    assert resp.json()["detail"]["kind"] == "encoding"


def test_build_unknown_mint_needs_decimals(client, sender, recipient, mint):
    resp = client.post(
        "/transfer/build",
        json={"owner": str(sender.pubkey()), "recipient": str(recipient), "mint": str(mint), "amount": "1"},
    )
    assert resp.status_code == 400


def test_build_rejects_bad_pubkey(client, recipient, mint):
    resp = client.post(
        "/transfer/build",
        json={"owner": "not-a-key", "recipient": str(recipient), "mint": str(mint), "raw_amount": 5},
    )
    assert resp.status_code == 400


def test_build_maps_state_error(client, rpc, sender, recipient, mint):
    rpc.existing = set()
    resp = client.post(
        "/transfer/build",
        json={"owner": str(sender.pubkey()), "recipient": str(recipient), "mint": str(mint), "raw_amount": 5},
    )
    assert resp.status_code == 409
    assert resp.json()["detail"]["kind"] == "state"


def test_build_maps_transport_error(client, rpc, sender, recipient, mint):
    rpc.blockhash_error = TransportError("connection refused")
    resp = client.post(
        "/transfer/build",
        json={"owner": str(sender.pubkey()), "recipient": str(recipient), "mint": str(mint), "raw_amount": 5},
    )
    assert resp.status_code == 503
    assert resp.json()["detail"]["retryable"] is True


def test_send_uses_custodial_key(client, rpc, sender, recipient, mint):
    resp = client.post("/transfer/send", json={"recipient": str(recipient), "mint": str(mint), "raw_amount": 1_000_000})
    assert resp.status_code == 200, resp.text
    data = resp.json()
    assert data["state"] == "submitted"
    assert data["signature"]
    assert len(rpc.sent) == 1

    history = client.get("/transfer/history", params={"wallet": str(sender.pubkey())}).json()
    assert len(history) == 1
    assert history[0]["mode"] == "custodial"
    assert history[0]["status"] == "submitted"
    assert history[0]["signature"] == data["signature"]


def test_history_records_failures(client, rpc, sender, recipient, mint):
    rpc.existing = set()
    client.post(
        "/transfer/build",
        json={"owner": str(sender.pubkey()), "recipient": str(recipient), "mint": str(mint), "raw_amount": 5},
    )
    history = client.get("/transfer/history", params={"wallet": str(sender.pubkey())}).json()
    assert history[0]["status"] == "failed"
    assert history[0]["error_kind"] == "state"


def test_submit_signed_transaction(client, rpc, sender, sender_ata, recipient_ata):
    ix = build_spl_transfer_ix(sender_ata, recipient_ata, sender.pubkey(), 7)
    unsigned = compile_transaction(compile_accounts(sender.pubkey(), [ix]), BLOCKHASH, [ix])
    signed = sign_transaction(unsigned, KeypairSigner(sender))
    resp = client.post("/transfer/submit", json={"signed_tx_b64": base64.b64encode(signed).decode()})
    assert resp.status_code == 200, resp.text
    assert resp.json()["signature"]
    assert rpc.sent == [signed]


def test_submit_rejects_unsigned(client, sender, sender_ata, recipient_ata):
    ix = build_spl_transfer_ix(sender_ata, recipient_ata, sender.pubkey(), 7)
    unsigned = compile_transaction(compile_accounts(sender.pubkey(), [ix]), BLOCKHASH, [ix])
    resp = client.post("/transfer/submit", json={"signed_tx_b64": base64.b64encode(unsigned).decode()})
    assert resp.status_code == 422
    assert resp.json()["detail"]["kind"] == "encoding"


def test_balance(client, sender, mint, sender_ata):
    resp = client.get("/token/balance", params={"owner": str(sender.pubkey()), "mint": str(mint)})
    assert resp.status_code == 200, resp.text
    data = resp.json()
    assert data["token_account"] == str(sender_ata)
    assert data["amount"] == 1_500_000
    assert data["ui_amount"] == "1.500000"


def test_balance_missing_account(client, recipient, mint):
    resp = client.get("/token/balance", params={"owner": str(recipient), "mint": str(mint)})
    assert resp.status_code == 409


def test_confirm(client, sender):
    signature = str(sender.sign_message(b"rampa"))
    resp = client.get(f"/transfer/confirm/{signature}")
    assert resp.status_code == 200
    assert resp.json() == {"signature": signature, "confirmed": True}


def test_confirm_maps_rpc_failure(client, sol, sender):
    def unreachable(signatures):
        raise ConnectionError("rpc down")

    sol.get_signature_statuses = unreachable
    signature = str(sender.sign_message(b"rampa"))
    resp = client.get(f"/transfer/confirm/{signature}")
    assert resp.status_code == 503
    detail = resp.json()["detail"]
    assert detail["kind"] == "transport"
    assert detail["retryable"] is True
    assert detail["detail"]["signature"] == signature


def test_balance_maps_rpc_failure(client, sol, sender, mint):
    def unreachable(pubkey):
        raise ConnectionError("rpc down")

    sol.get_token_account_balance = unreachable
    resp = client.get("/token/balance", params={"owner": str(sender.pubkey()), "mint": str(mint)})
    assert resp.status_code == 503
    assert resp.json()["detail"]["kind"] == "transport"


def test_confirm_rejects_bad_signature(client):
    assert client.get("/transfer/confirm/xyz").status_code == 400
