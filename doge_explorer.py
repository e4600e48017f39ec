"""
SoChain (chain.so) public explorer client.

- v2 endpoints (no key): unspent outputs for an address, broadcast.
- v3 endpoint (API key required): a single transaction's outputs, used to
  resolve a prevout by (txid, vout).
"""

from __future__ import annotations

from typing import Any

import requests
from bitcoin.core.script import CScript
from structlog import get_logger

from doge_errors import (
    BroadcastRejected,
    PrevoutNotFound,
    RateLimited,
    ResolutionError,
    TransportError,
)
from doge_network import NetworkParams
from doge_prevout import Outpoint, Utxo, doge_to_sats

logger = get_logger()

PROVIDER = "explorer"
SOCHAIN_BASE_URL = "https://chain.so/api"


class SoChainClient:
    def __init__(
        self,
        params: NetworkParams,
        base_url: str = SOCHAIN_BASE_URL,
        api_key: str | None = None,
        timeout: float = 15,
    ) -> None:
        self.params = params
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self.log = logger.new(explorer=self.base_url, network=params.name)

    def _request(
        self,
        method: str,
        path: str,
        outpoint: Outpoint | None = None,
        failure: type[ResolutionError] = TransportError,
        **kwargs: Any,
    ) -> Any:
        url = f"{self.base_url}{path}"
        try:
            resp = requests.request(method, url, timeout=self.timeout, **kwargs)
        except requests.RequestException as exc:
            raise TransportError(f"{method} {path} failed: {exc}", PROVIDER, outpoint) from exc

        if resp.status_code == 429:
            raise RateLimited(
                f"rate limited (retry after {resp.headers.get('Retry-After', '?')}s)",
                PROVIDER,
                outpoint,
            )
        if resp.status_code == 404 and outpoint is not None:
            raise PrevoutNotFound(f"{path} not found", PROVIDER, outpoint)
        if not resp.ok:
            raise failure(f"{method} {path}: HTTP {resp.status_code}", PROVIDER, outpoint)

        try:
            envelope = resp.json()
        except ValueError as exc:
            raise failure(f"{path} returned non-JSON response", PROVIDER, outpoint) from exc
        if not isinstance(envelope, dict) or envelope.get("status") != "success":
            status = envelope.get("status") if isinstance(envelope, dict) else None
            raise failure(f"chain.so status: {status}", PROVIDER, outpoint)
        return envelope.get("data") or {}

    def get_tx_unspent(self, address: str) -> list[Utxo]:
        """Unspent outputs for `address`, in the order the explorer returns them."""
        data = self._request(
            "GET", f"/v2/get_tx_unspent/{self.params.explorer_code}/{address}"
        )
        utxos = []
        for u in data.get("txs", []):
            try:
                utxos.append(
                    Utxo(
                        outpoint=Outpoint(u["txid"], int(u["output_no"])),
                        value=doge_to_sats(u["value"]),
                        locking_script=CScript(bytes.fromhex(u["script_hex"])),
                        confirmations=int(u.get("confirmations") or 0),
                    )
                )
            except (KeyError, TypeError, ValueError) as exc:
                raise TransportError(f"malformed unspent entry: {exc}", PROVIDER) from exc
        return utxos

    def fetch_output(self, outpoint: Outpoint) -> Utxo:
        if not self.api_key:
            raise TransportError("SoChain v3 lookups require an API key", PROVIDER, outpoint)
        data = self._request(
            "GET",
            f"/v3/transaction/{self.params.explorer_code}/{outpoint.txid}",
            outpoint,
            headers={"API-KEY": self.api_key},
        )

        output = next(
            (o for o in data.get("outputs", []) if int(o.get("index", -1)) == outpoint.vout),
            None,
        )
        if output is None:
            raise PrevoutNotFound(f"output index {outpoint.vout} not found", PROVIDER, outpoint)

        script_hex = (output.get("script") or {}).get("hex") or ""
        if not script_hex:
            raise TransportError("missing script hex in chain.so v3 response", PROVIDER, outpoint)
        try:
            utxo = Utxo(
                outpoint=outpoint,
                value=doge_to_sats(output["value"]),
                locking_script=CScript(bytes.fromhex(script_hex)),
                confirmations=int(data.get("confirmations") or 0),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise TransportError(f"malformed output entry: {exc}", PROVIDER, outpoint) from exc

        self.log.debug("fetched prevout", outpoint=str(outpoint), value=utxo.value)
        return utxo

    def send_tx(self, tx_hex: str) -> str:
        data = self._request(
            "POST",
            f"/v2/send_tx/{self.params.explorer_code}/",
            failure=BroadcastRejected,
            json={"tx_hex": tx_hex},
        )
        txid = data.get("txid")
        if not txid:
            raise BroadcastRejected("explorer did not return a txid", PROVIDER)
        self.log.info("transaction broadcast", txid=txid)
        return txid
