"""
Locking and unlocking script templates for legacy Dogecoin outputs.

Scripts are python-bitcoinlib CScript objects, so pushes get the minimal
push opcode (direct push up to 75 bytes, OP_PUSHDATA1 above that) and
small integers are encoded as OP_1..OP_16.
"""

from __future__ import annotations

import coincurve
from bitcoin.core.script import (
    OP_0,
    OP_CHECKMULTISIG,
    OP_CHECKSIG,
    OP_DUP,
    OP_EQUAL,
    OP_EQUALVERIFY,
    OP_HASH160,
    CScript,
    CScriptInvalidError,
    CScriptOp,
)

from doge_address import HASH160_SIZE, Address, AddressKind
from doge_errors import (
    InvalidMultisigParams,
    InvalidPublicKey,
    SignatureCountMismatch,
    SignatureOrderError,
)

MAX_MULTISIG_KEYS = 16
COMPRESSED_PUBKEY_SIZE = 33

# OP_CHECKMULTISIG pops one stack item more than it uses (a consensus bug
# kept for compatibility). Every multisig scriptSig starts with this dummy.
CHECKMULTISIG_DUMMY = OP_0


def _require_hash160(value: bytes, what: str) -> bytes:
    if len(value) != HASH160_SIZE:
        raise ValueError(f"{what} must be {HASH160_SIZE} bytes, got {len(value)}")
    return bytes(value)


def p2pkh_locking_script(pubkey_hash: bytes) -> CScript:
    # OP_DUP OP_HASH160 <pubkey_hash> OP_EQUALVERIFY OP_CHECKSIG
    pubkey_hash = _require_hash160(pubkey_hash, "Public key hash")
    return CScript([OP_DUP, OP_HASH160, pubkey_hash, OP_EQUALVERIFY, OP_CHECKSIG])


def p2sh_locking_script(script_hash: bytes) -> CScript:
    # OP_HASH160 <script_hash> OP_EQUAL
    script_hash = _require_hash160(script_hash, "Script hash")
    return CScript([OP_HASH160, script_hash, OP_EQUAL])


def locking_script_for(address: Address) -> CScript:
    if address.kind is AddressKind.P2PKH:
        return p2pkh_locking_script(address.hash160)
    return p2sh_locking_script(address.hash160)


def classify_locking_script(script: bytes) -> AddressKind | None:
    """Recognise the two standard templates; anything else is None."""
    script = bytes(script)
    if (
        len(script) == 25
        and script[:3] == b"\x76\xa9\x14"
        and script[23:] == b"\x88\xac"
    ):
        return AddressKind.P2PKH
    if CScript(script).is_p2sh():
        return AddressKind.P2SH
    return None


def locking_script_hash(script: bytes) -> bytes | None:
    """Return the 20-byte hash committed to by a P2PKH/P2SH script."""
    kind = classify_locking_script(script)
    if kind is AddressKind.P2PKH:
        return bytes(script)[3:23]
    if kind is AddressKind.P2SH:
        return bytes(script)[2:22]
    return None


def _check_pubkey(pubkey: bytes) -> bytes:
    pubkey = bytes(pubkey)
    if len(pubkey) != COMPRESSED_PUBKEY_SIZE or pubkey[0] not in (0x02, 0x03):
        raise InvalidPublicKey(
            f"Expected a {COMPRESSED_PUBKEY_SIZE}-byte compressed public key, "
            f"got {len(pubkey)} bytes"
        )
    return pubkey


def multisig_redeem_script(m: int, pubkeys: list[bytes]) -> CScript:
    """
    Build `OP_m <pubkey_1> ... <pubkey_n> OP_n OP_CHECKMULTISIG`.

    Key order is kept exactly as given; it determines the P2SH address and
    the order signatures must appear in when spending.
    """
    n = len(pubkeys)
    if not 1 <= m <= MAX_MULTISIG_KEYS or not 1 <= n <= MAX_MULTISIG_KEYS or m > n:
        raise InvalidMultisigParams(f"Invalid multisig threshold: m={m}, n={n}")
    keys = [_check_pubkey(pk) for pk in pubkeys]
    return CScript(
        [CScriptOp.encode_op_n(m)]
        + keys
        + [CScriptOp.encode_op_n(n), OP_CHECKMULTISIG]
    )


def parse_multisig_redeem_script(redeem_script: bytes) -> tuple[int, list[bytes]]:
    """Inverse of multisig_redeem_script: return (m, pubkeys)."""
    try:
        ops = list(CScript(bytes(redeem_script)).raw_iter())
    except CScriptInvalidError as exc:
        raise InvalidMultisigParams(f"Malformed redeem script: {exc}") from exc

    if len(ops) < 4 or ops[-1][0] != OP_CHECKMULTISIG:
        raise InvalidMultisigParams("Not a standard multisig redeem script.")
    try:
        m = CScriptOp(ops[0][0]).decode_op_n()
        n = CScriptOp(ops[-2][0]).decode_op_n()
    except ValueError as exc:
        raise InvalidMultisigParams(f"Bad multisig threshold opcode: {exc}") from exc

    pubkeys = [data for _, data, _ in ops[1:-2]]
    if any(pk is None for pk in pubkeys) or len(pubkeys) != n:
        raise InvalidMultisigParams("Redeem script key count does not match n.")
    # Re-validates bounds and key encoding.
    multisig_redeem_script(m, pubkeys)
    return m, pubkeys


def p2pkh_unlocking_script(signature: bytes, pubkey: bytes) -> CScript:
    """`<signature||hashtype> <pubkey>`."""
    return CScript([bytes(signature), _check_pubkey(pubkey)])


def _signature_matches(signature: bytes, pubkey: bytes, sighash: bytes) -> bool:
    # Trailing byte is the sighash type, not part of the DER body.
    try:
        return coincurve.PublicKey(pubkey).verify(signature[:-1], sighash, hasher=None)
    except ValueError:
        return False


def check_signature_order(
    signatures: list[bytes], pubkeys: list[bytes], sighash: bytes
) -> None:
    # Same walk as OP_CHECKMULTISIG: keys are consumed left to right and a
    # key that has been passed over can not be matched again.
    key_idx = 0
    for sig_idx, sig in enumerate(signatures):
        while key_idx < len(pubkeys) and not _signature_matches(sig, pubkeys[key_idx], sighash):
            key_idx += 1
        if key_idx == len(pubkeys):
            raise SignatureOrderError(
                f"Signature #{sig_idx} does not match any remaining public key "
                "in redeem script order."
            )
        key_idx += 1


def p2sh_multisig_unlocking_script(
    signatures: list[bytes],
    redeem_script: bytes,
    sighash: bytes | None = None,
) -> CScript:
    """
    `OP_0 <sig_1> ... <sig_m> <redeem_script>`.

    Signatures must already be ordered to match their public keys' positions
    in the redeem script; they are never reordered here. When the signed
    digest is passed in, that ordering is checked.
    """
    m, pubkeys = parse_multisig_redeem_script(redeem_script)
    if len(signatures) != m:
        raise SignatureCountMismatch(
            f"Redeem script requires {m} signatures, got {len(signatures)}"
        )
    if sighash is not None:
        check_signature_order(signatures, pubkeys, sighash)
    return CScript(
        [CHECKMULTISIG_DUMMY]
        + [bytes(sig) for sig in signatures]
        + [bytes(redeem_script)]
    )
