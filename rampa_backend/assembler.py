"""
SPL token transfer orchestration.

    IDLE -> ANCHOR_FETCHED -> ACCOUNTS_DERIVED -> EXISTENCE_CHECKED
         -> INSTRUCTIONS_BUILT -> MESSAGE_COMPILED [-> SIGNED -> SUBMITTED]

Any step may end in FAILED. `build_transfer` stops after MESSAGE_COMPILED and
hands back unsigned bytes for a wallet to sign; `send_transfer` signs locally
with the session's signing capability and submits.

Existence probes are allowed to fail: an unreadable sender account is assumed
to exist (the transfer will fail on-chain if it does not), an unreadable
recipient account is assumed missing (the idempotent create instruction is
harmless if it exists after all).
"""

import base64
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List, Optional

from solders.instruction import Instruction
from solders.pubkey import Pubkey
from solders.signature import Signature

from rampa_backend.errors import (
    EncodingError,
    ProtocolError,
    SigningError,
    StateError,
    TransferError,
    TransportError,
)
from rampa_backend.rpc import RpcClient
from rampa_backend.signer import SigningCapability, sign_transaction
from rampa_backend.submitter import Submitter
from rampa_backend.tx_builder import (
    U64_MAX,
    build_create_ata_ix,
    build_spl_transfer_ix,
    derive_ata,
    describe_instruction,
    instruction_to_dict,
    token_symbol,
)
from rampa_backend.wire import compile_accounts, compile_transaction, decode_transaction

logger = logging.getLogger("rampa.transfer")

DeriveFn = Callable[[Pubkey, Pubkey], Pubkey]


class TransferState(str, Enum):
    IDLE = "idle"
    ANCHOR_FETCHED = "anchor_fetched"
    ACCOUNTS_DERIVED = "accounts_derived"
    EXISTENCE_CHECKED = "existence_checked"
    INSTRUCTIONS_BUILT = "instructions_built"
    MESSAGE_COMPILED = "message_compiled"
    SIGNED = "signed"
    SUBMITTED = "submitted"
    FAILED = "failed"


@dataclass
class WalletSession:
    """The connected wallet for one request. `signer` is only needed for custodial sends."""

    owner: Pubkey
    signer: Optional[SigningCapability] = None
    network: str = "devnet"


@dataclass
class TransferRequest:
    recipient: Pubkey
    mint: Pubkey
    amount: int


@dataclass
class ProbeResult:
    exists: bool
    assumed: bool = False
    error: Optional[str] = None


@dataclass
class TransferOutcome:
    success: bool
    state: TransferState
    sender: str
    recipient: str
    mint: str
    token_symbol: str
    amount: int
    timestamp: float = field(default_factory=time.time)
    signature: Optional[str] = None
    transaction: Optional[bytes] = None
    blockhash: Optional[str] = None
    sender_ata: Optional[str] = None
    recipient_ata: Optional[str] = None
    creates_recipient_ata: bool = False
    instructions: List[str] = field(default_factory=list)
    instruction_details: List[dict] = field(default_factory=list)
    probe_warnings: List[str] = field(default_factory=list)
    error: Optional[TransferError] = None
    failed_at: Optional[TransferState] = None

    @property
    def transaction_b64(self) -> Optional[str]:
        if self.transaction is None:
            return None
        return base64.b64encode(self.transaction).decode()

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "state": self.state.value,
            "sender": self.sender,
            "recipient": self.recipient,
            "mint": self.mint,
            "token_symbol": self.token_symbol,
            "amount": self.amount,
            "timestamp": self.timestamp,
            "signature": self.signature,
            "transaction_b64": self.transaction_b64,
            "blockhash": self.blockhash,
            "sender_ata": self.sender_ata,
            "recipient_ata": self.recipient_ata,
            "creates_recipient_ata": self.creates_recipient_ata,
            "instructions": list(self.instructions),
            "instruction_details": list(self.instruction_details),
            "probe_warnings": list(self.probe_warnings),
            "error": self.error.to_dict() if self.error else None,
            "failed_at": self.failed_at.value if self.failed_at else None,
        }


class TransactionAssembler:
    def __init__(
        self,
        rpc: RpcClient,
        derive: DeriveFn = derive_ata,
        submitter: Optional[Submitter] = None,
        commitment: str = "confirmed",
        probe_delay: float = 0.1,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.rpc = rpc
        self.derive = derive
        self.submitter = submitter or Submitter(rpc)
        self.commitment = commitment
        self.probe_delay = probe_delay
        self._sleep = sleep

    def build_transfer(self, session: WalletSession, request: TransferRequest) -> TransferOutcome:
        """Unsigned transaction bytes for wallet-mediated signing."""
        return self._run(session, request, submit=False)

    def send_transfer(self, session: WalletSession, request: TransferRequest) -> TransferOutcome:
        """Sign with the session's capability and submit."""
        return self._run(session, request, submit=True)

    def _run(self, session: WalletSession, request: TransferRequest, submit: bool) -> TransferOutcome:
        outcome = TransferOutcome(
            success=False,
            state=TransferState.IDLE,
            sender=str(session.owner),
            recipient=str(request.recipient),
            mint=str(request.mint),
            token_symbol=token_symbol(request.mint, session.network),
            amount=request.amount,
        )
        logger.info(
            "transfer_start sender=%s recipient=%s mint=%s amount=%s mode=%s",
            outcome.sender,
            outcome.recipient,
            outcome.mint,
            request.amount,
            "custodial" if submit else "wallet",
        )
        try:
            self._execute(session, request, submit, outcome)
        except TransferError as exc:
            logger.warning(
                "transfer_failed state=%s kind=%s sender=%s error=%s",
                outcome.state.value,
                exc.kind.value,
                outcome.sender,
                exc.message,
            )
            outcome.error = exc
            outcome.failed_at = outcome.state
            outcome.state = TransferState.FAILED
            return outcome
        outcome.success = True
        return outcome

    def _execute(self, session: WalletSession, request: TransferRequest, submit: bool, outcome: TransferOutcome) -> None:
        if not isinstance(request.amount, int) or not 0 < request.amount <= U64_MAX:
            raise EncodingError(f"Amount must be between 1 and {U64_MAX} base units, got {request.amount}")
        if submit and session.signer is None:
            raise SigningError("Custodial transfer requires a signing capability")

        outcome.blockhash = self.rpc.get_latest_blockhash(self.commitment)
        outcome.state = TransferState.ANCHOR_FETCHED

        try:
            sender_ata = self.derive(session.owner, request.mint)
            recipient_ata = self.derive(request.recipient, request.mint)
        except Exception as exc:  # noqa: BLE001
            raise EncodingError(f"Failed to derive associated token accounts: {exc}", detail={"stage": "derive"}) from exc
        outcome.sender_ata = str(sender_ata)
        outcome.recipient_ata = str(recipient_ata)
        outcome.state = TransferState.ACCOUNTS_DERIVED

        sender_probe = self._probe(sender_ata, "sender", assume_exists=True)
        if self.probe_delay > 0:
            self._sleep(self.probe_delay)
        recipient_probe = self._probe(recipient_ata, "recipient", assume_exists=False)
        outcome.state = TransferState.EXISTENCE_CHECKED
        for role, probe in (("sender", sender_probe), ("recipient", recipient_probe)):
            if probe.assumed:
                assumed = "present" if probe.exists else "absent"
                outcome.probe_warnings.append(f"{role} account assumed {assumed}: {probe.error}")
        if not sender_probe.exists and not sender_probe.assumed:
            raise StateError(
                "Sender token account does not exist; fund it with this token first",
                detail={"sender_ata": str(sender_ata)},
            )

        instructions = self.plan_instructions(
            session.owner, request, sender_ata, recipient_ata, recipient_exists=recipient_probe.exists
        )
        outcome.creates_recipient_ata = not recipient_probe.exists
        outcome.instructions = [describe_instruction(ix) for ix in instructions]
        outcome.instruction_details = [instruction_to_dict(ix) for ix in instructions]
        outcome.state = TransferState.INSTRUCTIONS_BUILT

        accounts = compile_accounts(session.owner, instructions)
        outcome.transaction = compile_transaction(accounts, outcome.blockhash, instructions)
        outcome.state = TransferState.MESSAGE_COMPILED
        logger.info(
            "transfer_compiled sender=%s size=%s instructions=%s",
            outcome.sender,
            len(outcome.transaction),
            ",".join(outcome.instructions),
        )
        if not submit:
            return

        outcome.transaction = self._sign(session, outcome.transaction)
        outcome.state = TransferState.SIGNED

        outcome.signature = self.submitter.submit(outcome.transaction)
        outcome.state = TransferState.SUBMITTED
        logger.info("transfer_submitted sender=%s signature=%s", outcome.sender, outcome.signature)

    def plan_instructions(
        self,
        owner: Pubkey,
        request: TransferRequest,
        sender_ata: Pubkey,
        recipient_ata: Pubkey,
        recipient_exists: bool,
    ) -> List[Instruction]:
        instructions: List[Instruction] = []
        if not recipient_exists:
            instructions.append(build_create_ata_ix(owner, request.recipient, request.mint, recipient_ata))
        instructions.append(build_spl_transfer_ix(sender_ata, recipient_ata, owner, request.amount))
        return instructions

    def _probe(self, ata: Pubkey, role: str, assume_exists: bool) -> ProbeResult:
        try:
            exists = self.rpc.account_exists(ata, self.commitment)
        except (TransportError, ProtocolError) as exc:
            logger.warning(
                "ata_probe_failed role=%s ata=%s assume_exists=%s error=%s",
                role,
                ata,
                assume_exists,
                exc.message,
            )
            return ProbeResult(exists=assume_exists, assumed=True, error=exc.message)
        logger.info("ata_probe role=%s ata=%s exists=%s", role, ata, exists)
        return ProbeResult(exists=exists)

    def _sign(self, session: WalletSession, unsigned: bytes) -> bytes:
        signed = sign_transaction(unsigned, session.signer)
        decoded = decode_transaction(signed)
        signature = Signature.from_bytes(decoded.signatures[0])
        if not signature.verify(session.owner, decoded.message):
            raise SigningError("Signing key does not match the sender wallet")
        return signed
