from __future__ import annotations

import logging
import time
from typing import List, Optional

from fastapi import Depends, FastAPI, HTTPException
from pydantic import BaseModel
from pydantic_settings import BaseSettings
from solana.rpc.api import Client as SolanaClient
from solders.keypair import Keypair as SoldersKeypair
from solders.pubkey import Pubkey
from solders.signature import Signature
from sqlmodel import Field, Session, SQLModel, create_engine, select

from rampa_backend.assembler import TransactionAssembler, TransferOutcome, TransferRequest, WalletSession
from rampa_backend.errors import EncodingError, ErrorKind, SigningError, StateError, TransferError, TransportError
from rampa_backend.rpc import RpcClient
from rampa_backend.signer import KeypairSigner, load_keypair_file
from rampa_backend.tx_builder import U64_MAX, derive_ata, lookup_token, to_pubkey, to_raw_amount, to_ui_amount, token_symbol


class Settings(BaseSettings):
    solana_rpc: str = "https://api.devnet.solana.com"
    helius_rpc_url: str = ""
    network: str = "devnet"
    commitment: str = "confirmed"
    probe_delay_seconds: float = 0.1
    custodial_keypair_path: Optional[str] = None
    database_url: str = "sqlite:///./rampa.db"
    confirm_timeout_seconds: int = 30

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


settings = Settings()
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("rampa")

connect_args = {"check_same_thread": False} if settings.database_url.startswith("sqlite") else {}
engine = create_engine(settings.database_url, connect_args=connect_args)
# Prefer Helius RPC if provided to improve reliability.
rpc_url = settings.helius_rpc_url or settings.solana_rpc
rpc_client = RpcClient(rpc_url)
sol_client = SolanaClient(rpc_url)
assembler = TransactionAssembler(rpc_client, commitment=settings.commitment, probe_delay=settings.probe_delay_seconds)
CUSTODIAL_KEYPAIR: Optional[SoldersKeypair] = None

ERROR_STATUS = {
    ErrorKind.TRANSPORT: 503,
    ErrorKind.PROTOCOL: 502,
    ErrorKind.STATE: 409,
    ErrorKind.ENCODING: 422,
    ErrorKind.SIGNING: 400,
}


class TransferLog(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    sender: str = Field(index=True)
    recipient: str
    mint: str
    token_symbol: str = Field(default="Token")
    amount: str  # u64 base units; SQLite INTEGER is signed 64-bit
    mode: str = Field(default="wallet")  # wallet | custodial | submit
    status: str = Field(default="pending")
    signature: Optional[str] = None
    error_kind: Optional[str] = None
    error: Optional[str] = None
    created_at: float = Field(default_factory=lambda: time.time())


def init_db():
    SQLModel.metadata.create_all(engine)


def get_session():
    with Session(engine) as session:
        yield session


def get_assembler() -> TransactionAssembler:
    return assembler


def get_sol_client() -> SolanaClient:
    return sol_client


def load_custodial_keypair() -> SoldersKeypair:
    global CUSTODIAL_KEYPAIR
    if CUSTODIAL_KEYPAIR is not None:
        return CUSTODIAL_KEYPAIR
    path = settings.custodial_keypair_path
    if not path:
        raise HTTPException(status_code=500, detail="CUSTODIAL_KEYPAIR_PATH not configured")
    try:
        CUSTODIAL_KEYPAIR = load_keypair_file(path)
    except FileNotFoundError as exc:
        raise HTTPException(status_code=500, detail=f"Custodial keypair file not found: {path}") from exc
    except (SigningError, ValueError) as exc:
        raise HTTPException(status_code=500, detail=f"Failed to parse custodial keypair: {exc}") from exc
    return CUSTODIAL_KEYPAIR


app = FastAPI(title="Rampa Transfer API", version="0.1.0")


class TransferBuildRequest(BaseModel):
    owner: str
    recipient: str
    mint: str
    amount: Optional[str] = None  # human amount, e.g. "1.25"
    raw_amount: Optional[int] = None  # smallest units, wins over amount
    decimals: Optional[int] = None  # required for mints outside the registry


class TransferSendRequest(BaseModel):
    recipient: str
    mint: str
    amount: Optional[str] = None
    raw_amount: Optional[int] = None
    decimals: Optional[int] = None


class TransferSubmitRequest(BaseModel):
    signed_tx_b64: str
    sender: Optional[str] = None
    recipient: Optional[str] = None
    mint: Optional[str] = None
    raw_amount: Optional[int] = None


class TransferResponse(BaseModel):
    success: bool
    state: str
    sender: str
    recipient: str
    mint: str
    token_symbol: str
    amount: int
    timestamp: float
    signature: Optional[str] = None
    transaction_b64: Optional[str] = None
    blockhash: Optional[str] = None
    sender_ata: Optional[str] = None
    recipient_ata: Optional[str] = None
    creates_recipient_ata: bool = False
    instructions: List[str] = []
    instruction_details: List[dict] = []
    probe_warnings: List[str] = []


class SubmitResponse(BaseModel):
    signature: str


class ConfirmResponse(BaseModel):
    signature: str
    confirmed: bool


class BalanceResponse(BaseModel):
    owner: str
    mint: str
    token_account: str
    amount: int
    decimals: int
    ui_amount: str


class TransferLogView(BaseModel):
    id: int
    sender: str
    recipient: str
    mint: str
    token_symbol: str
    amount: int
    mode: str
    status: str
    signature: Optional[str] = None
    error_kind: Optional[str] = None
    error: Optional[str] = None
    created_at: float


def parse_pubkey(value: str, field_name: str) -> Pubkey:
    try:
        return to_pubkey(value)
    except Exception as exc:  # noqa: BLE001
        raise HTTPException(status_code=400, detail=f"Invalid {field_name}: {exc}") from exc


def resolve_raw_amount(mint: str, amount: Optional[str], raw_amount: Optional[int], decimals: Optional[int]) -> int:
    if raw_amount is not None:
        if not 0 < raw_amount <= U64_MAX:
            raise http_error(EncodingError(f"raw_amount must be between 1 and {U64_MAX}, got {raw_amount}"))
        return raw_amount
    if amount is None:
        raise HTTPException(status_code=400, detail="amount or raw_amount is required")
    if decimals is None:
        info = lookup_token(mint, settings.network)
        if info is None:
            raise HTTPException(status_code=400, detail=f"Unknown mint {mint}; pass decimals explicitly")
        decimals = info.decimals
    try:
        return to_raw_amount(amount, decimals)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


def http_error(exc: TransferError) -> HTTPException:
    return HTTPException(status_code=ERROR_STATUS.get(exc.kind, 500), detail=exc.to_dict())


def record_transfer(db: Session, outcome: TransferOutcome, mode: str) -> TransferLog:
    log = TransferLog(
        sender=outcome.sender,
        recipient=outcome.recipient,
        mint=outcome.mint,
        token_symbol=outcome.token_symbol,
        amount=str(outcome.amount),
        mode=mode,
        status=("submitted" if outcome.signature else "built") if outcome.success else "failed",
        signature=outcome.signature,
        error_kind=outcome.error.kind.value if outcome.error else None,
        error=outcome.error.message if outcome.error else None,
        created_at=outcome.timestamp,
    )
    db.add(log)
    db.commit()
    return log


def outcome_response(outcome: TransferOutcome) -> TransferResponse:
    payload = outcome.to_dict()
    payload.pop("error", None)
    payload.pop("failed_at", None)
    return TransferResponse(**payload)


def wait_for_confirmation(client: SolanaClient, signature: str, timeout_sec: int = 30) -> bool:
    start = time.time()
    sig_obj = Signature.from_string(signature)
    while time.time() - start < timeout_sec:
        resp = client.get_signature_statuses([sig_obj])
        if resp.value and resp.value[0]:
            status = resp.value[0]
            if status.err is not None:
                return False
            if status.confirmation_status:
                return True
        time.sleep(0.8)
    return False


@app.on_event("startup")
def startup_event():
    init_db()
    logger.info("rampa_started rpc=%s network=%s", rpc_url, settings.network)


@app.get("/health")
def health():
    return {"status": "ok", "network": settings.network}


@app.post("/transfer/build", response_model=TransferResponse)
def transfer_build(
    req: TransferBuildRequest,
    db: Session = Depends(get_session),
    engine_: TransactionAssembler = Depends(get_assembler),
):
    owner = parse_pubkey(req.owner, "owner")
    request = TransferRequest(
        recipient=parse_pubkey(req.recipient, "recipient"),
        mint=parse_pubkey(req.mint, "mint"),
        amount=resolve_raw_amount(req.mint, req.amount, req.raw_amount, req.decimals),
    )
    outcome = engine_.build_transfer(WalletSession(owner=owner, network=settings.network), request)
    record_transfer(db, outcome, "wallet")
    if not outcome.success:
        raise http_error(outcome.error)
    return outcome_response(outcome)


@app.post("/transfer/send", response_model=TransferResponse)
def transfer_send(
    req: TransferSendRequest,
    db: Session = Depends(get_session),
    engine_: TransactionAssembler = Depends(get_assembler),
    keypair: SoldersKeypair = Depends(load_custodial_keypair),
):
    request = TransferRequest(
        recipient=parse_pubkey(req.recipient, "recipient"),
        mint=parse_pubkey(req.mint, "mint"),
        amount=resolve_raw_amount(req.mint, req.amount, req.raw_amount, req.decimals),
    )
    signer = KeypairSigner(keypair)
    session = WalletSession(owner=signer.pubkey(), signer=signer, network=settings.network)
    outcome = engine_.send_transfer(session, request)
    record_transfer(db, outcome, "custodial")
    if not outcome.success:
        raise http_error(outcome.error)
    return outcome_response(outcome)


@app.post("/transfer/submit", response_model=SubmitResponse)
def transfer_submit(
    req: TransferSubmitRequest,
    db: Session = Depends(get_session),
    engine_: TransactionAssembler = Depends(get_assembler),
):
    try:
        signature = engine_.submitter.submit_b64(req.signed_tx_b64)
    except TransferError as exc:
        logger.warning("transfer_submit_failed kind=%s error=%s", exc.kind.value, exc.message)
        raise http_error(exc) from exc
    if req.sender and req.recipient and req.mint and req.raw_amount is not None:
        db.add(
            TransferLog(
                sender=req.sender,
                recipient=req.recipient,
                mint=req.mint,
                token_symbol=token_symbol(req.mint, settings.network),
                amount=str(req.raw_amount),
                mode="submit",
                status="submitted",
                signature=signature,
            )
        )
        db.commit()
    return SubmitResponse(signature=signature)


@app.get("/transfer/confirm/{signature}", response_model=ConfirmResponse)
def transfer_confirm(signature: str, client: SolanaClient = Depends(get_sol_client)):
    try:
        Signature.from_string(signature)
    except Exception as exc:  # noqa: BLE001
        raise HTTPException(status_code=400, detail=f"Invalid signature: {exc}") from exc
    try:
        confirmed = wait_for_confirmation(client, signature, settings.confirm_timeout_seconds)
    except Exception as exc:  # noqa: BLE001
        logger.warning("transfer_confirm_failed signature=%s error=%s", signature, exc, exc_info=True)
        raise http_error(
            TransportError(f"RPC error reading signature status: {exc}", detail={"signature": signature})
        ) from exc
    logger.info("transfer_confirm signature=%s confirmed=%s", signature, confirmed)
    return ConfirmResponse(signature=signature, confirmed=confirmed)


@app.get("/token/balance", response_model=BalanceResponse)
def token_balance(
    owner: str,
    mint: str,
    engine_: TransactionAssembler = Depends(get_assembler),
    client: SolanaClient = Depends(get_sol_client),
):
    owner_pub = parse_pubkey(owner, "owner")
    mint_pub = parse_pubkey(mint, "mint")
    ata = derive_ata(owner_pub, mint_pub)
    try:
        if not engine_.rpc.account_exists(ata, settings.commitment):
            raise StateError(f"Token account does not exist: {ata}", detail={"token_account": str(ata)})
    except TransferError as exc:
        raise http_error(exc) from exc
    try:
        value = client.get_token_account_balance(ata).value
    except Exception as exc:  # noqa: BLE001
        logger.warning("token_balance_failed ata=%s error=%s", ata, exc, exc_info=True)
        raise http_error(
            TransportError(f"RPC error reading token balance: {exc}", detail={"token_account": str(ata)})
        ) from exc
    amount = int(value.amount)
    return BalanceResponse(
        owner=owner,
        mint=mint,
        token_account=str(ata),
        amount=amount,
        decimals=value.decimals,
        ui_amount=to_ui_amount(amount, value.decimals),
    )


@app.get("/transfer/history", response_model=List[TransferLogView])
def transfer_history(wallet: str, limit: int = 20, db: Session = Depends(get_session)):
    rows = db.exec(
        select(TransferLog)
        .where(TransferLog.sender == wallet)
        .order_by(TransferLog.created_at.desc())
        .limit(max(1, min(limit, 100)))
    ).all()
    return [TransferLogView(**{**row.model_dump(), "amount": int(row.amount)}) for row in rows]


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("rampa_backend.main:app", host="0.0.0.0", port=4000, reload=True)
