"""
Dogecoin network parameters.

Version bytes are plain configuration data handed to the codec and the
script builder. Nothing here touches python-bitcoinlib's global
SelectParams() state, so mainnet and testnet objects can coexist in the
same process.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal

DogeNetwork = Literal["mainnet", "testnet"]


@dataclass(frozen=True)
class NetworkParams:
    name: DogeNetwork
    pubkey_hash_version: int
    script_hash_version: int
    wif_version: int
    magic: bytes
    rpc_port: int
    # Network code used by the SoChain explorer API
    explorer_code: str

    def __post_init__(self) -> None:
        versions = (self.pubkey_hash_version, self.script_hash_version, self.wif_version)
        if any(not 0 <= v <= 0xFF for v in versions):
            raise ValueError(f"Version bytes must fit in one byte: {versions}")
        if len(set(versions)) != len(versions):
            raise ValueError(f"Version bytes must be distinct per kind: {versions}")
        if len(self.magic) != 4:
            raise ValueError("Protocol magic must be 4 bytes.")

    def __str__(self) -> str:
        return self.name


MAINNET = NetworkParams(
    name="mainnet",
    pubkey_hash_version=0x1E,  # 'D'
    script_hash_version=0x16,  # '9' or 'A'
    wif_version=0x9E,
    magic=bytes.fromhex("c0c0c0c0"),
    rpc_port=22555,
    explorer_code="DOGE",
)

TESTNET = NetworkParams(
    name="testnet",
    pubkey_hash_version=0x71,  # 'n' or 'm'
    script_hash_version=0xC4,  # '2'
    wif_version=0xF1,
    magic=bytes.fromhex("fcc1b7dc"),
    rpc_port=44555,
    explorer_code="DOGETEST",
)

_ALIASES: dict[str, NetworkParams] = {
    "mainnet": MAINNET,
    "main": MAINNET,
    "testnet": TESTNET,
    "test": TESTNET,
}


def get_network(name: str) -> NetworkParams:
    try:
        return _ALIASES[name.strip().lower()]
    except KeyError:
        raise ValueError(
            f"Unknown network: {name!r}. Use 'testnet' or 'mainnet'."
        ) from None


def network_for_wif_version(version: int) -> NetworkParams | None:
    """Return the network whose WIF version byte is `version`, if any."""
    for params in (MAINNET, TESTNET):
        if params.wif_version == version:
            return params
    return None
