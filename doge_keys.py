"""
secp256k1 key pairs for signing Dogecoin inputs.

Keys are always used in compressed form (33-byte public keys). WIF strings
use the network's own version byte and the 0x01 compression suffix.
"""

from __future__ import annotations

from dataclasses import dataclass, field

import coincurve
from bip_utils import (
    Bip39MnemonicValidator,
    Bip39SeedGenerator,
    Bip44,
    Bip44Changes,
    Bip44Coins,
)
from bitcoin.core import Hash160

from doge_address import Address, b58check_decode, b58check_encode
from doge_errors import DogeConfigError, EncodingError, InvalidPrivateKey
from doge_network import NetworkParams, network_for_wif_version

SECRET_SIZE = 32
COMPRESSED_PUBKEY_SIZE = 33
_COMPRESSED_SUFFIX = b"\x01"

_BIP44_COINS = {
    "mainnet": Bip44Coins.DOGECOIN,
    "testnet": Bip44Coins.DOGECOIN_TESTNET,
}


@dataclass(frozen=True)
class KeyPair:
    secret: bytes = field(repr=False)
    public_key: bytes

    @classmethod
    def from_secret(cls, secret: bytes) -> KeyPair:
        if len(secret) != SECRET_SIZE:
            raise InvalidPrivateKey(
                f"Private key must be {SECRET_SIZE} bytes, got {len(secret)}"
            )
        try:
            privkey = coincurve.PrivateKey(secret)
        except ValueError as exc:
            raise InvalidPrivateKey(f"Private key out of range: {exc}") from exc
        return cls(secret=bytes(secret), public_key=privkey.public_key.format(compressed=True))

    @classmethod
    def generate(cls) -> KeyPair:
        return cls.from_secret(coincurve.PrivateKey().secret)

    @classmethod
    def from_wif(cls, wif: str, params: NetworkParams | None = None) -> KeyPair:
        """
        Import a compressed-key WIF.

        If `params` is given the WIF must carry that network's version byte;
        otherwise any known Dogecoin network is accepted.
        """
        data = _decode_wif(wif)
        version = data[0]
        expected = params.wif_version if params is not None else None
        if expected is not None and version != expected:
            raise InvalidPrivateKey(
                f"WIF version 0x{version:02x} does not match {params.name} (0x{expected:02x})"
            )
        if expected is None and network_for_wif_version(version) is None:
            raise InvalidPrivateKey(f"Unknown WIF version byte 0x{version:02x}")
        return cls.from_secret(data[1 : 1 + SECRET_SIZE])

    @classmethod
    def from_mnemonic(
        cls,
        mnemonic: str,
        params: NetworkParams,
        passphrase: str = "",
        index: int = 0,
    ) -> KeyPair:
        """Derive the BIP-44 m/44'/coin'/0'/0/index key from a BIP-39 phrase."""
        try:
            Bip39MnemonicValidator().Validate(mnemonic)
        except Exception:  # noqa: BLE001
            # Do not let the phrase end up in the exception chain.
            raise DogeConfigError(
                "DOGE_MNEMONIC is not a valid BIP-39 seed phrase. "
                "Double-check words and spacing."
            ) from None

        seed_bytes = Bip39SeedGenerator(mnemonic).Generate(passphrase)
        ctx = (
            Bip44.FromSeed(seed_bytes, _BIP44_COINS[params.name])
            .Purpose()
            .Coin()
            .Account(0)
            .Change(Bip44Changes.CHAIN_EXT)
            .AddressIndex(index)
        )
        return cls.from_secret(ctx.PrivateKey().Raw().ToBytes())

    @property
    def pubkey_hash(self) -> bytes:
        return Hash160(self.public_key)

    def address(self, params: NetworkParams) -> Address:
        return Address.from_pubkey(self.public_key, params)

    def to_wif(self, params: NetworkParams) -> str:
        return b58check_encode(bytes([params.wif_version]) + self.secret + _COMPRESSED_SUFFIX)


def _decode_wif(wif: str) -> bytes:
    try:
        data = b58check_decode(wif.strip())
    except EncodingError as exc:
        raise InvalidPrivateKey(f"Malformed WIF: {exc}") from exc
    if len(data) == 1 + SECRET_SIZE:
        raise InvalidPrivateKey("Uncompressed WIF keys are not supported.")
    if len(data) != 1 + SECRET_SIZE + 1 or data[-1:] != _COMPRESSED_SUFFIX:
        raise InvalidPrivateKey(f"Unexpected WIF payload length {len(data)}")
    return data


def wif_network(wif: str) -> NetworkParams | None:
    """Return the network a WIF belongs to, or None if the version is unknown."""
    return network_for_wif_version(_decode_wif(wif)[0])
