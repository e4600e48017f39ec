"""
Base58Check address codec for Dogecoin.

The digit mapping comes from python-bitcoinlib's base58 module; the
version byte is always supplied by the caller instead of being read from
bitcoin.params, which is what lets one library serve a non-Bitcoin chain.

Layout of an encoded address (25 bytes before base-58):

    [version: 1][hash160: 20][checksum: 4]

where checksum = Hash(version || hash160)[:4] and Hash is double SHA-256.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from bitcoin import base58
from bitcoin.core import Hash, Hash160

from doge_errors import InvalidCharacter, InvalidChecksum, InvalidLength, InvalidVersion
from doge_network import NetworkParams

HASH160_SIZE = 20
CHECKSUM_SIZE = 4
ADDRESS_SIZE = 1 + HASH160_SIZE + CHECKSUM_SIZE


def _checksum(data: bytes) -> bytes:
    return Hash(data)[:CHECKSUM_SIZE]


def b58check_encode(data: bytes) -> str:
    """Append a 4-byte double-SHA256 checksum and base-58 encode."""
    return base58.encode(data + _checksum(data))


def b58check_decode(encoded: str) -> bytes:
    """
    Decode a Base58Check string of any length and verify its checksum.

    Returns the payload without the checksum. Raises InvalidCharacter,
    InvalidLength (shorter than a checksum) or InvalidChecksum.
    """
    try:
        raw = base58.decode(encoded)
    except base58.InvalidBase58Error as exc:
        raise InvalidCharacter(str(exc)) from exc
    if len(raw) <= CHECKSUM_SIZE:
        raise InvalidLength(f"Decoded data too short: {len(raw)} bytes")
    data, check = raw[:-CHECKSUM_SIZE], raw[-CHECKSUM_SIZE:]
    if _checksum(data) != check:
        raise InvalidChecksum(f"Checksum mismatch for {encoded!r}")
    return data


def encode(payload: bytes, version: int) -> str:
    if len(payload) != HASH160_SIZE:
        raise ValueError(f"Address payload must be {HASH160_SIZE} bytes, got {len(payload)}")
    if not 0 <= version <= 0xFF:
        raise ValueError(f"Version must be a single byte, got {version}")
    return b58check_encode(bytes([version]) + payload)


def decode(address: str) -> tuple[int, bytes]:
    """Decode an address string into (version, 20-byte hash)."""
    try:
        raw = base58.decode(address)
    except base58.InvalidBase58Error as exc:
        raise InvalidCharacter(str(exc)) from exc
    if len(raw) != ADDRESS_SIZE:
        raise InvalidLength(f"Address must decode to {ADDRESS_SIZE} bytes, got {len(raw)}")
    body, check = raw[:-CHECKSUM_SIZE], raw[-CHECKSUM_SIZE:]
    if _checksum(body) != check:
        raise InvalidChecksum(f"Checksum mismatch for address {address!r}")
    return body[0], body[1:]


class AddressKind(Enum):
    P2PKH = "p2pkh"
    P2SH = "p2sh"


@dataclass(frozen=True)
class Address:
    kind: AddressKind
    hash160: bytes
    params: NetworkParams

    def __post_init__(self) -> None:
        if len(self.hash160) != HASH160_SIZE:
            raise ValueError(f"Address hash must be {HASH160_SIZE} bytes")

    @property
    def version(self) -> int:
        if self.kind is AddressKind.P2PKH:
            return self.params.pubkey_hash_version
        return self.params.script_hash_version

    @classmethod
    def from_string(cls, address: str, params: NetworkParams) -> Address:
        """
        Parse an address for the given network.

        A valid Base58Check string whose version byte belongs to another
        network (or to nothing) is rejected with InvalidVersion.
        """
        version, payload = decode(address.strip())
        if version == params.pubkey_hash_version:
            return cls(AddressKind.P2PKH, payload, params)
        if version == params.script_hash_version:
            return cls(AddressKind.P2SH, payload, params)
        raise InvalidVersion(
            f"Version byte 0x{version:02x} is not a {params.name} address version"
        )

    @classmethod
    def from_pubkey(cls, pubkey: bytes, params: NetworkParams) -> Address:
        return cls(AddressKind.P2PKH, Hash160(pubkey), params)

    @classmethod
    def from_redeem_script(cls, redeem_script: bytes, params: NetworkParams) -> Address:
        return cls(AddressKind.P2SH, Hash160(bytes(redeem_script)), params)

    def __str__(self) -> str:
        return encode(self.hash160, self.version)
