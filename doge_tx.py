"""
Legacy (non-segwit) Dogecoin transaction construction and signing.

One spend runs as a single pass:

1. assemble()        one input for the outpoint, a payment output and an
                     optional change output
2. legacy_sighash()  the input's scriptSig is replaced by the script code
                     (the prevout's locking script, or the redeem script for
                     P2SH) and the transaction is hashed with SIGHASH_ALL
3. sign_digest()     RFC 6979 ECDSA, low-S, sighash byte appended
4. finalize()        scriptSig installed, transaction serialized

Any error aborts the whole spend; nothing partially signed is returned.
"""

from __future__ import annotations

from typing import Any

import coincurve
from coincurve.ecdsa import cdata_to_der, der_to_cdata, signature_normalize
from bitcoin.core import (
    CMutableTransaction,
    CMutableTxIn,
    CMutableTxOut,
    COutPoint,
    CTransaction,
    Hash,
    Hash160,
    b2lx,
    b2x,
)
from bitcoin.core.script import SIGHASH_ALL, CScript, CScriptInvalidError, SignatureHash
from structlog import get_logger

from doge_address import Address, AddressKind
from doge_errors import (
    ConstructionError,
    CryptoError,
    InsufficientFunds,
    InvalidAmount,
    KeyMismatch,
    SignatureCountMismatch,
    SignatureOrderError,
    SignatureVerificationFailed,
    UnsupportedLockingScript,
)
from doge_keys import KeyPair
from doge_prevout import MAX_MONEY, Outpoint, PrevoutResolver, Utxo
from doge_script import (
    check_signature_order,
    classify_locking_script,
    locking_script_for,
    locking_script_hash,
    p2pkh_unlocking_script,
    p2sh_multisig_unlocking_script,
    parse_multisig_redeem_script,
)

logger = get_logger()

DEFAULT_VERSION = 1
DEFAULT_LOCK_TIME = 0
DEFAULT_SEQUENCE = 0xFFFFFFFF


# ---------------------------------------------------------------------------
# Transaction containers
# ---------------------------------------------------------------------------


class UnsignedTransaction:
    """
    Single-input skeleton with an empty scriptSig.

    The wrapped CTransaction is immutable; finalize() produces a new signed
    transaction rather than filling this one in.
    """

    def __init__(self, tx: CMutableTransaction | CTransaction, utxo: Utxo) -> None:
        self.tx = CTransaction.from_tx(tx)
        self.utxo = utxo

    @property
    def outputs(self) -> list[tuple[int, CScript]]:
        return [(out.nValue, out.scriptPubKey) for out in self.tx.vout]

    @property
    def fee(self) -> int:
        return self.utxo.value - sum(value for value, _ in self.outputs)

    @property
    def change_value(self) -> int:
        # Change, when present, is always the second output.
        outputs = self.outputs
        return outputs[1][0] if len(outputs) > 1 else 0

    def serialize(self) -> bytes:
        return self.tx.serialize()

    @property
    def hex(self) -> str:
        return b2x(self.serialize())

    def finalize(self, script_sig: CScript) -> SignedTransaction:
        tx = CMutableTransaction.from_tx(self.tx)
        tx.vin[0].scriptSig = CScript(script_sig)
        return SignedTransaction(tx, self.utxo)


class SignedTransaction:
    def __init__(self, tx: CMutableTransaction | CTransaction, utxo: Utxo) -> None:
        self.tx = CTransaction.from_tx(tx)
        self.utxo = utxo

    @property
    def script_sig(self) -> CScript:
        return self.tx.vin[0].scriptSig

    def serialize(self) -> bytes:
        return self.tx.serialize()

    @property
    def hex(self) -> str:
        return b2x(self.serialize())

    @property
    def txid(self) -> str:
        return b2lx(Hash(self.serialize()))

    def to_dict(self) -> dict[str, Any]:
        raw = self.serialize()
        return {
            "txid": self.txid,
            "hex": b2x(raw),
            "size": len(raw),
            "version": self.tx.nVersion,
            "lock_time": self.tx.nLockTime,
            "inputs": [
                {
                    "txid": b2lx(txin.prevout.hash),
                    "vout": txin.prevout.n,
                    "script_sig": b2x(txin.scriptSig),
                    "sequence": txin.nSequence,
                }
                for txin in self.tx.vin
            ],
            "outputs": [
                {"value_sats": out.nValue, "script_hex": b2x(out.scriptPubKey)}
                for out in self.tx.vout
            ],
            "fee_sats": self.utxo.value - sum(out.nValue for out in self.tx.vout),
        }


# ---------------------------------------------------------------------------
# 1. Assemble
# ---------------------------------------------------------------------------


def _check_amounts(amount: int, fee: int) -> None:
    if amount <= 0:
        raise InvalidAmount("Amount must be greater than zero.")
    if fee < 0:
        raise InvalidAmount("Fee must not be negative.")
    if amount + fee > MAX_MONEY:
        raise InvalidAmount(f"Amount plus fee exceeds the money supply: {amount + fee}")


def assemble(
    utxo: Utxo,
    destination: Address,
    amount: int,
    fee: int,
    change_address: Address | None = None,
    *,
    version: int = DEFAULT_VERSION,
    lock_time: int = DEFAULT_LOCK_TIME,
    sequence: int = DEFAULT_SEQUENCE,
) -> UnsignedTransaction:
    """
    Build the unsigned skeleton spending `utxo`.

    A change output is added only when something is left over after amount
    and fee. It pays `change_address`, or back to the prevout's own locking
    script when no change address is given.
    """
    _check_amounts(amount, fee)
    required = amount + fee
    if utxo.value < required:
        raise InsufficientFunds(utxo.value, required)
    change = utxo.value - required

    txin = CMutableTxIn(
        COutPoint(utxo.outpoint.txid_bytes, utxo.outpoint.vout),
        CScript(),
        sequence,
    )
    txouts = [CMutableTxOut(amount, locking_script_for(destination))]
    if change > 0:
        if change_address is not None:
            change_script = locking_script_for(change_address)
        else:
            change_script = utxo.locking_script
        txouts.append(CMutableTxOut(change, change_script))

    tx = CMutableTransaction([txin], txouts, nLockTime=lock_time, nVersion=version)
    return UnsignedTransaction(tx, utxo)


# ---------------------------------------------------------------------------
# 2. Legacy sighash
# ---------------------------------------------------------------------------


def legacy_sighash(
    tx: CTransaction,
    input_index: int,
    script_code: bytes,
    hashtype: int = SIGHASH_ALL,
) -> bytes:
    """
    Pre-segwit signature hash of input `input_index`.

    The input's scriptSig is replaced by `script_code` and every other
    input's scriptSig is emptied; the serialized transaction plus the 4-byte
    hashtype is double-SHA256'd.
    """
    if len(tx.vin) != 1:
        raise ConstructionError(
            f"Only single-input transactions are supported, got {len(tx.vin)} inputs"
        )
    if input_index != 0:
        raise ConstructionError(f"Input index {input_index} out of range")
    return SignatureHash(CScript(bytes(script_code)), tx, input_index, hashtype)


# ---------------------------------------------------------------------------
# 3. Sign
# ---------------------------------------------------------------------------


def _parse_der(der_sig: bytes) -> Any:
    try:
        return der_to_cdata(der_sig)
    except ValueError as exc:
        raise CryptoError("Malformed DER signature") from exc


def is_low_s(der_sig: bytes) -> bool:
    was_high, _ = signature_normalize(_parse_der(der_sig))
    return not was_high


def normalize_low_s(der_sig: bytes) -> bytes:
    """
    Replace a high S value with n - S; both verify, only low S is standard.

    libsecp256k1 (through coincurve) already signs with low S, so signatures
    from sign_digest come back unchanged.
    """
    was_high, normalized = signature_normalize(_parse_der(der_sig))
    if was_high:
        return cdata_to_der(normalized)
    return der_sig


def sign_digest(keypair: KeyPair, digest: bytes, hashtype: int = SIGHASH_ALL) -> bytes:
    """Return DER(low-S ECDSA signature) || hashtype byte."""
    if len(digest) != 32:
        raise ValueError(f"Digest must be 32 bytes, got {len(digest)}")
    der = coincurve.PrivateKey(keypair.secret).sign(digest, hasher=None)
    der = normalize_low_s(der)
    if not coincurve.PublicKey(keypair.public_key).verify(der, digest, hasher=None):
        raise SignatureVerificationFailed("Produced signature does not verify against digest")
    return der + bytes([hashtype])


# ---------------------------------------------------------------------------
# 4. Finalize
# ---------------------------------------------------------------------------


def sign_p2pkh(unsigned: UnsignedTransaction, keypair: KeyPair) -> SignedTransaction:
    prev_script = unsigned.utxo.locking_script
    if classify_locking_script(prev_script) is not AddressKind.P2PKH:
        raise UnsupportedLockingScript(
            f"Prevout {unsigned.utxo.outpoint} is not a P2PKH output: {b2x(prev_script)}"
        )
    if locking_script_hash(prev_script) != keypair.pubkey_hash:
        raise KeyMismatch(f"Key does not control prevout {unsigned.utxo.outpoint}")

    digest = legacy_sighash(unsigned.tx, 0, prev_script)
    signature = sign_digest(keypair, digest)
    signed = unsigned.finalize(p2pkh_unlocking_script(signature, keypair.public_key))
    logger.info("signed p2pkh input", outpoint=str(unsigned.utxo.outpoint), txid=signed.txid)
    return signed


def _key_positions(keypairs: list[KeyPair], pubkeys: list[bytes]) -> list[int]:
    positions: list[int] = []
    for kp in keypairs:
        pos = next(
            (i for i, pk in enumerate(pubkeys) if pk == kp.public_key and i not in positions),
            None,
        )
        if pos is None:
            raise KeyMismatch(f"Key {kp.public_key.hex()} is not an unused redeem script key")
        positions.append(pos)
    return positions


def sign_p2sh_multisig(
    unsigned: UnsignedTransaction,
    keypairs: list[KeyPair],
    redeem_script: bytes,
) -> SignedTransaction:
    """
    Spend a P2SH multisig output with exactly m keys.

    The redeem script is the script code for the sighash. Signatures are
    placed in the order of their keys in the redeem script, whatever order
    the keys were passed in.
    """
    prev_script = unsigned.utxo.locking_script
    redeem_script = CScript(bytes(redeem_script))
    if classify_locking_script(prev_script) is not AddressKind.P2SH:
        raise UnsupportedLockingScript(
            f"Prevout {unsigned.utxo.outpoint} is not a P2SH output: {b2x(prev_script)}"
        )
    if locking_script_hash(prev_script) != Hash160(redeem_script):
        raise UnsupportedLockingScript(
            f"Prevout {unsigned.utxo.outpoint} does not commit to this redeem script"
        )

    m, pubkeys = parse_multisig_redeem_script(redeem_script)
    if len(keypairs) != m:
        raise SignatureCountMismatch(f"Redeem script requires {m} keys, got {len(keypairs)}")
    positions = _key_positions(keypairs, pubkeys)

    digest = legacy_sighash(unsigned.tx, 0, redeem_script)
    ordered = sorted(zip(positions, keypairs), key=lambda item: item[0])
    signatures = [sign_digest(kp, digest) for _, kp in ordered]

    script_sig = p2sh_multisig_unlocking_script(signatures, redeem_script, sighash=digest)
    signed = unsigned.finalize(script_sig)
    logger.info(
        "signed p2sh multisig input",
        outpoint=str(unsigned.utxo.outpoint),
        m=m,
        n=len(pubkeys),
        txid=signed.txid,
    )
    return signed


# ---------------------------------------------------------------------------
# Verification
# ---------------------------------------------------------------------------


def _script_sig_pushes(script_sig: CScript) -> list[bytes] | None:
    try:
        ops = list(script_sig.raw_iter())
    except CScriptInvalidError:
        return None
    if any(data is None for _, data, _ in ops):
        return None
    return [data for _, data, _ in ops]


def verify_input(signed: SignedTransaction, utxo: Utxo | None = None) -> bool:
    """
    Check the scriptSig of the single input against its prevout.

    Covers the two templates this engine produces; returns False for
    anything that would not validate, including unknown templates.
    """
    utxo = utxo or signed.utxo
    prev_script = utxo.locking_script
    kind = classify_locking_script(prev_script)
    pushes = _script_sig_pushes(signed.script_sig)
    if kind is None or not pushes:
        return False

    if kind is AddressKind.P2PKH:
        if len(pushes) != 2:
            return False
        signature, pubkey = pushes
        if Hash160(pubkey) != locking_script_hash(prev_script) or not signature:
            return False
        digest = legacy_sighash(signed.tx, 0, prev_script)
        try:
            return coincurve.PublicKey(pubkey).verify(signature[:-1], digest, hasher=None)
        except ValueError:
            return False

    redeem_script = CScript(pushes[-1])
    if pushes[0] != b"" or Hash160(redeem_script) != locking_script_hash(prev_script):
        return False
    try:
        m, pubkeys = parse_multisig_redeem_script(redeem_script)
    except ConstructionError:
        return False
    signatures = pushes[1:-1]
    if len(signatures) != m:
        return False
    digest = legacy_sighash(signed.tx, 0, redeem_script)
    try:
        check_signature_order(signatures, pubkeys, digest)
    except SignatureOrderError:
        return False
    return True


# ---------------------------------------------------------------------------
# Full pipeline
# ---------------------------------------------------------------------------


def build_and_sign(
    resolver: PrevoutResolver,
    keypair: KeyPair,
    outpoint: Outpoint,
    destination: Address,
    amount: int,
    fee: int,
    change_address: Address | None = None,
) -> SignedTransaction:
    """Resolve, assemble, sign and finalize a P2PKH spend of `outpoint`."""
    _check_amounts(amount, fee)
    utxo = resolver.resolve(outpoint)
    unsigned = assemble(utxo, destination, amount, fee, change_address)
    return sign_p2pkh(unsigned, keypair)


def build_and_sign_multisig(
    resolver: PrevoutResolver,
    keypairs: list[KeyPair],
    redeem_script: bytes,
    outpoint: Outpoint,
    destination: Address,
    amount: int,
    fee: int,
    change_address: Address | None = None,
) -> SignedTransaction:
    """Same as build_and_sign for a P2SH multisig prevout."""
    _check_amounts(amount, fee)
    m, _ = parse_multisig_redeem_script(redeem_script)
    if len(keypairs) != m:
        raise SignatureCountMismatch(f"Redeem script requires {m} keys, got {len(keypairs)}")
    utxo = resolver.resolve(outpoint)
    unsigned = assemble(utxo, destination, amount, fee, change_address)
    return sign_p2sh_multisig(unsigned, keypairs, redeem_script)
