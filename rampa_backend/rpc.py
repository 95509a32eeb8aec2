"""
Minimal JSON-RPC client for the calls the transfer engine needs.

Requests go through one pooled `requests.Session`; every call carries an
explicit (connect, read) timeout and is never retried here.
"""

import itertools
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple, Union

import requests
from requests.adapters import HTTPAdapter
from solders.pubkey import Pubkey

from rampa_backend.errors import ProtocolError, TransportError

logger = logging.getLogger("rampa.rpc")

QUERY_TIMEOUT: Tuple[float, float] = (5.0, 8.0)
SUBMIT_TIMEOUT: Tuple[float, float] = (10.0, 15.0)
USER_AGENT = "rampa-transfer/0.1"


@dataclass
class SendOptions:
    skip_preflight: bool = False
    preflight_commitment: str = "confirmed"
    max_retries: Optional[int] = 3
    encoding: str = "base64"

    def to_params(self) -> Dict[str, Any]:
        params: Dict[str, Any] = {
            "encoding": self.encoding,
            "skipPreflight": self.skip_preflight,
            "preflightCommitment": self.preflight_commitment,
        }
        if self.max_retries is not None:
            params["maxRetries"] = self.max_retries
        return params


class RpcClient:
    def __init__(
        self,
        url: str,
        session: Optional[requests.Session] = None,
        query_timeout: Tuple[float, float] = QUERY_TIMEOUT,
        submit_timeout: Tuple[float, float] = SUBMIT_TIMEOUT,
        pool_size: int = 10,
    ):
        self.url = url
        self.query_timeout = query_timeout
        self.submit_timeout = submit_timeout
        if session is None:
            session = requests.Session()
            adapter = HTTPAdapter(pool_connections=pool_size, pool_maxsize=pool_size)
            session.mount("https://", adapter)
            session.mount("http://", adapter)
        session.headers.update({"Content-Type": "application/json", "User-Agent": USER_AGENT})
        self.session = session
        self._ids = itertools.count(1)

    def close(self) -> None:
        self.session.close()

    def call(self, method: str, params: List[Any], timeout: Optional[Tuple[float, float]] = None) -> Any:
        """POST one JSON-RPC request and return its `result`."""
        body = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        try:
            resp = self.session.post(self.url, json=body, timeout=timeout or self.query_timeout)
        except requests.Timeout as exc:
            raise TransportError(f"{method} timed out: {exc}", detail={"method": method}) from exc
        except requests.RequestException as exc:
            raise TransportError(f"{method} failed: {exc}", detail={"method": method}) from exc

        try:
            payload = resp.json()
        except ValueError:
            payload = None

        if isinstance(payload, dict) and payload.get("error") is not None:
            error = payload["error"]
            if isinstance(error, dict):
                message = error.get("message") or "Unknown RPC error"
                code = error.get("code")
                data = error.get("data")
            else:
                message, code, data = str(error), None, None
            logger.warning("rpc_error method=%s code=%s message=%s", method, code, message)
            raise ProtocolError(message, code=code, detail={"method": method, "data": data})

        if resp.status_code != 200:
            raise TransportError(
                f"{method} failed with HTTP {resp.status_code}: {resp.text[:200]}",
                detail={"method": method, "status": resp.status_code},
            )
        if not isinstance(payload, dict) or "result" not in payload:
            raise ProtocolError(f"{method} returned no result", detail={"method": method})
        return payload["result"]

    def get_latest_blockhash(self, commitment: str = "confirmed") -> str:
        result = self.call("getLatestBlockhash", [{"commitment": commitment}])
        try:
            blockhash = result["value"]["blockhash"]
        except (KeyError, TypeError) as exc:
            raise ProtocolError(f"getLatestBlockhash response missing blockhash: {result!r}") from exc
        if not blockhash:
            raise ProtocolError("getLatestBlockhash returned an empty blockhash")
        return blockhash

    def account_exists(self, pubkey: Union[str, Pubkey], commitment: str = "confirmed") -> bool:
        result = self.call(
            "getAccountInfo",
            [str(pubkey), {"encoding": "base64", "commitment": commitment}],
        )
        if not isinstance(result, dict) or "value" not in result:
            raise ProtocolError(f"getAccountInfo response missing value: {result!r}")
        return result["value"] is not None

    def send_transaction(self, tx_b64: str, opts: Optional[SendOptions] = None) -> str:
        opts = opts or SendOptions()
        signature = self.call("sendTransaction", [tx_b64, opts.to_params()], timeout=self.submit_timeout)
        if not isinstance(signature, str) or not signature:
            raise ProtocolError(f"sendTransaction returned no signature: {signature!r}")
        return signature
