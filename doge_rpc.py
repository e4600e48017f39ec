"""
JSON-RPC client for a dogecoind full node.

Only the handful of calls the engine needs are wrapped: verbose
getrawtransaction for prevout lookup, sendrawtransaction for broadcast, and
the two info calls used to check connectivity.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Any

import requests
from bitcoin.core.script import CScript
from structlog import get_logger

from doge_errors import BroadcastRejected, PrevoutNotFound, ResolutionError, TransportError
from doge_prevout import Outpoint, Utxo, doge_to_sats

logger = get_logger()

PROVIDER = "node"

# bitcoind/dogecoind RPC_INVALID_ADDRESS_OR_KEY, returned for unknown txids
RPC_INVALID_ADDRESS_OR_KEY = -5


class RpcError(ResolutionError):
    """Error object returned by the node in a JSON-RPC reply."""

    def __init__(self, code: int, message: str) -> None:
        self.code = code
        self.message = message
        super().__init__(f"RPC Error {code}: {message}", PROVIDER)


class DogeRpcClient:
    def __init__(
        self,
        url: str,
        username: str | None = None,
        password: str | None = None,
        timeout: float = 10,
    ) -> None:
        self.url = url
        self.auth = (username, password) if username and password else None
        self.timeout = timeout
        self._next_id = 0
        self.log = logger.new(rpc_url=url)

    def call(self, method: str, params: list[Any] | None = None) -> Any:
        """
        Send a JSON-RPC request and return its `result`.

        Raises TransportError when the node can not be reached or answers
        with something that is not a JSON-RPC envelope, and RpcError when the
        node reports an error.
        """
        self._next_id += 1
        payload = {
            "jsonrpc": "1.0",
            "id": self._next_id,
            "method": method,
            "params": params or [],
        }
        try:
            resp = requests.post(self.url, json=payload, auth=self.auth, timeout=self.timeout)
        except requests.RequestException as exc:
            raise TransportError(f"{method} failed: {exc}", PROVIDER) from exc

        if resp.status_code in (401, 403):
            raise TransportError(
                f"{method} rejected: HTTP {resp.status_code} (check RPC credentials)", PROVIDER
            )
        # dogecoind answers RPC errors with HTTP 500 and a JSON body, so the
        # body is parsed before looking at the status code.
        try:
            data = resp.json(parse_float=Decimal)
        except ValueError as exc:
            raise TransportError(
                f"{method} returned non-JSON response (HTTP {resp.status_code})", PROVIDER
            ) from exc

        error = data.get("error") if isinstance(data, dict) else None
        if error:
            raise RpcError(int(error.get("code", 0)), str(error.get("message", "")))
        if not isinstance(data, dict) or "result" not in data:
            raise TransportError(f"{method} returned malformed response", PROVIDER)
        return data["result"]

    def get_raw_transaction(self, txid: str) -> dict[str, Any]:
        return self.call("getrawtransaction", [txid, True])

    def fetch_utxo(self, outpoint: Outpoint) -> Utxo:
        """Look up value and scriptPubKey of `outpoint` via getrawtransaction."""
        try:
            tx = self.get_raw_transaction(outpoint.txid)
        except RpcError as exc:
            if exc.code == RPC_INVALID_ADDRESS_OR_KEY:
                raise PrevoutNotFound(exc.message, PROVIDER, outpoint) from exc
            raise TransportError(exc.detail, PROVIDER, outpoint) from exc
        except TransportError as exc:
            raise TransportError(exc.detail, PROVIDER, outpoint) from exc

        outputs = tx.get("vout") or []
        if outpoint.vout >= len(outputs):
            raise PrevoutNotFound(
                f"output index {outpoint.vout} out of range ({len(outputs)} outputs)",
                PROVIDER,
                outpoint,
            )
        output = outputs[outpoint.vout]
        try:
            utxo = Utxo(
                outpoint=outpoint,
                value=doge_to_sats(output["value"]),
                locking_script=CScript(bytes.fromhex(output["scriptPubKey"]["hex"])),
                confirmations=int(tx.get("confirmations") or 0),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise TransportError(f"malformed vout entry: {exc}", PROVIDER, outpoint) from exc

        self.log.debug("fetched prevout", outpoint=str(outpoint), value=utxo.value)
        return utxo

    def broadcast_tx(self, tx_hex: str) -> str:
        try:
            txid = self.call("sendrawtransaction", [tx_hex])
        except RpcError as exc:
            raise BroadcastRejected(exc.detail, PROVIDER) from exc
        if not isinstance(txid, str):
            raise TransportError("sendrawtransaction did not return a txid", PROVIDER)
        self.log.info("transaction broadcast", txid=txid)
        return txid

    def get_blockchain_info(self) -> dict[str, Any]:
        return self.call("getblockchaininfo")

    def get_network_info(self) -> dict[str, Any]:
        return self.call("getnetworkinfo")
