"""
Prevout resolution: turn an outpoint into the value and locking script
needed to sign it.

Three interchangeable providers are supported:
- ManualPrevoutProvider: caller-supplied value and script.
- NodePrevoutProvider: a dogecoind JSON-RPC node (see doge_rpc).
- ExplorerPrevoutProvider: the SoChain public API (see doge_explorer).

PrevoutResolver holds them in fixed precedence order (manual, node,
explorer) and asks only the first provider that handles the outpoint.
A provider error is passed through untouched; there is no fallback to the
next provider.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Protocol

from bitcoin.core import lx
from bitcoin.core.script import CScript
from structlog import get_logger

from doge_errors import PrevoutNotFound

logger = get_logger()

COIN = 100_000_000
MAX_MONEY = 10_000_000_000 * COIN
_TXID_RE = re.compile(r"^[0-9a-fA-F]{64}$")


def doge_to_sats(value: object) -> int:
    """Convert a DOGE amount (str, int, float or Decimal) to exact satoshis."""
    try:
        amount = Decimal(str(value)) * COIN
    except (InvalidOperation, ValueError) as exc:
        raise ValueError(f"Invalid DOGE amount: {value!r}") from exc
    if not amount.is_finite():
        raise ValueError(f"DOGE amount must be finite: {value!r}")
    if amount != amount.to_integral_value():
        raise ValueError(f"DOGE amount has more than 8 decimal places: {value!r}")
    return int(amount)


@dataclass(frozen=True)
class Outpoint:
    txid: str  # display (RPC/explorer) order
    vout: int

    def __post_init__(self) -> None:
        if not _TXID_RE.match(self.txid):
            raise ValueError(f"txid must be 64 hex characters: {self.txid!r}")
        if not 0 <= self.vout <= 0xFFFFFFFF:
            raise ValueError(f"vout out of range: {self.vout}")
        object.__setattr__(self, "txid", self.txid.lower())

    @classmethod
    def parse(cls, text: str) -> Outpoint:
        txid, sep, vout = text.strip().partition(":")
        if not sep:
            raise ValueError(f"Expected 'txid:vout', got {text!r}")
        return cls(txid, int(vout))

    @property
    def txid_bytes(self) -> bytes:
        """Storage (wire) order, i.e. the display txid reversed."""
        return lx(self.txid)

    def __str__(self) -> str:
        return f"{self.txid}:{self.vout}"


@dataclass(frozen=True)
class Utxo:
    outpoint: Outpoint
    value: int
    locking_script: CScript
    confirmations: int = 0

    def __post_init__(self) -> None:
        if not 0 <= self.value <= MAX_MONEY:
            raise ValueError(f"Output value out of range: {self.value}")
        object.__setattr__(self, "locking_script", CScript(bytes(self.locking_script)))

    def to_dict(self) -> dict[str, object]:
        return {
            "txid": self.outpoint.txid,
            "vout": self.outpoint.vout,
            "value_sats": self.value,
            "script_hex": bytes(self.locking_script).hex(),
            "confirmations": self.confirmations,
        }


class PrevoutProvider(Protocol):
    name: str

    def handles(self, outpoint: Outpoint) -> bool: ...

    def resolve(self, outpoint: Outpoint) -> Utxo: ...


class ManualPrevoutProvider:
    """Caller-asserted prevout data. Never superseded by a network lookup."""

    name = "manual"

    def __init__(self) -> None:
        self._entries: dict[Outpoint, Utxo] = {}

    def add(self, outpoint: Outpoint, value: int, locking_script: bytes | str) -> Utxo:
        if isinstance(locking_script, str):
            try:
                locking_script = bytes.fromhex(locking_script)
            except ValueError as exc:
                raise ValueError(f"Locking script is not valid hex: {exc}") from exc
        if not locking_script:
            raise ValueError("Locking script must not be empty.")
        utxo = Utxo(outpoint, int(value), CScript(locking_script))
        self._entries[outpoint] = utxo
        return utxo

    def handles(self, outpoint: Outpoint) -> bool:
        return outpoint in self._entries

    def resolve(self, outpoint: Outpoint) -> Utxo:
        try:
            return self._entries[outpoint]
        except KeyError:
            raise PrevoutNotFound("no manual entry", self.name, outpoint) from None


class NodePrevoutProvider:
    name = "node"

    def __init__(self, client) -> None:
        self.client = client

    def handles(self, outpoint: Outpoint) -> bool:
        return True

    def resolve(self, outpoint: Outpoint) -> Utxo:
        return self.client.fetch_utxo(outpoint)


class ExplorerPrevoutProvider:
    name = "explorer"

    def __init__(self, client) -> None:
        self.client = client

    def handles(self, outpoint: Outpoint) -> bool:
        return True

    def resolve(self, outpoint: Outpoint) -> Utxo:
        return self.client.fetch_output(outpoint)


class PrevoutResolver:
    def __init__(self, providers: list[PrevoutProvider]) -> None:
        self.providers = list(providers)
        self.log = logger.new(providers=[p.name for p in self.providers])

    @classmethod
    def build(
        cls,
        manual: ManualPrevoutProvider | None = None,
        node: NodePrevoutProvider | None = None,
        explorer: ExplorerPrevoutProvider | None = None,
    ) -> PrevoutResolver:
        """Create a resolver with the fixed manual -> node -> explorer precedence."""
        return cls([p for p in (manual, node, explorer) if p is not None])

    def provider_for(self, outpoint: Outpoint) -> PrevoutProvider | None:
        return next((p for p in self.providers if p.handles(outpoint)), None)

    def resolve(self, outpoint: Outpoint) -> Utxo:
        provider = self.provider_for(outpoint)
        if provider is None:
            raise PrevoutNotFound("no prevout provider configured", "none", outpoint)
        self.log.debug("resolving prevout", provider=provider.name, outpoint=str(outpoint))
        utxo = provider.resolve(outpoint)
        self.log.info(
            "prevout resolved",
            provider=provider.name,
            outpoint=str(outpoint),
            value=utxo.value,
        )
        return utxo
