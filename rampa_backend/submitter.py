import base64
import logging
from typing import Optional

from rampa_backend.errors import EncodingError, ProtocolError
from rampa_backend.rpc import RpcClient, SendOptions
from rampa_backend.wire import SIGNATURE_LENGTH, decode_transaction

logger = logging.getLogger("rampa.submitter")


class Submitter:
    def __init__(self, rpc: RpcClient, opts: Optional[SendOptions] = None):
        self.rpc = rpc
        self.opts = opts or SendOptions()

    def submit(self, signed_tx: bytes) -> str:
        """Send a signed transaction and return its base58 signature."""
        decoded = decode_transaction(signed_tx)
        if any(sig == bytes(SIGNATURE_LENGTH) for sig in decoded.signatures):
            raise EncodingError("Transaction still has an empty signature slot")
        tx_b64 = base64.b64encode(bytes(signed_tx)).decode()
        try:
            signature = self.rpc.send_transaction(tx_b64, self.opts)
        except ProtocolError as exc:
            # The node's text usually names the on-chain cause (funds, expired blockhash).
            logger.warning("submit_rejected code=%s message=%s", exc.code, exc.message)
            raise ProtocolError(
                exc.message,
                code=exc.code,
                detail={**exc.detail, "stage": "submit"},
            ) from exc
        logger.info("submit_ok signature=%s size=%s", signature, len(signed_tx))
        return signature

    def submit_b64(self, signed_tx_b64: str) -> str:
        try:
            raw = base64.b64decode(signed_tx_b64, validate=True)
        except ValueError as exc:
            raise EncodingError(f"Signed transaction is not valid base64: {exc}") from exc
        return self.submit(raw)
