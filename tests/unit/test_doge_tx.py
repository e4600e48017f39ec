import sys
from pathlib import Path

import pytest
from bitcoin.core import (
    CMutableTransaction,
    CMutableTxIn,
    CMutableTxOut,
    COutPoint,
    CTransaction,
    Hash,
    Hash160,
    b2lx,
    lx,
)
from bitcoin.core.script import CScript
from coincurve.ecdsa import cdata_to_der, der_to_cdata, deserialize_compact, serialize_compact

REPO_ROOT = Path(__file__).resolve().parents[2]
sys.path.insert(0, str(REPO_ROOT))

from doge_address import Address  # noqa: E402
from doge_errors import (  # noqa: E402
    ConstructionError,
    CryptoError,
    InsufficientFunds,
    InvalidAmount,
    KeyMismatch,
    SignatureCountMismatch,
    UnsupportedLockingScript,
)
from doge_keys import KeyPair  # noqa: E402
from doge_network import TESTNET  # noqa: E402
from doge_prevout import ManualPrevoutProvider, Outpoint, PrevoutResolver, Utxo  # noqa: E402
from doge_script import (  # noqa: E402
    multisig_redeem_script,
    p2pkh_locking_script,
    p2sh_locking_script,
)
from doge_tx import (  # noqa: E402
    SignedTransaction,
    _script_sig_pushes,
    assemble,
    build_and_sign,
    build_and_sign_multisig,
    is_low_s,
    legacy_sighash,
    normalize_low_s,
    sign_digest,
    sign_p2pkh,
    sign_p2sh_multisig,
    verify_input,
)

SECP256K1_ORDER = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141
TXID = "fb48f9e2068d0674c965e9057b6f87494df9278065a7f98ee591f7d3d7568553"
KEYS = [KeyPair.from_secret(i.to_bytes(32, "big")) for i in (1, 2, 3)]
G_SCRIPT = p2pkh_locking_script(KEYS[0].pubkey_hash)
G_ADDRESS = KEYS[0].address(TESTNET)
OTHER_ADDRESS = KEYS[1].address(TESTNET)

UNSIGNED_HEX = (
    "0100000001538556d7d3f791e58ef9a7658027f94d49876f7b05e965c974068d06e2f948fb"
    "0000000000ffffffff01c0aff629010000001976a914751e76e8199196d454941c45d1b3a3"
    "23f1433bd688ac00000000"
)
SIGHASH = "a57f8154bd8558e997ddc7c4970eb8b062b53b384db4e6e906496fc65c56a3c9"
SIGHASH_TAMPERED_PREVOUT = "279188d55dd09f3c6d604231143435b52222a815dec03b6a82c75cfebf052148"


def _utxo(value=5_000_000_000, script=G_SCRIPT, vout=0):
    return Utxo(Outpoint(TXID, vout), value, script)


def _resolver(utxo):
    manual = ManualPrevoutProvider()
    manual.add(utxo.outpoint, utxo.value, bytes(utxo.locking_script))
    return PrevoutResolver.build(manual=manual)


# ---------------------------------------------------------------------------
# assemble: fee and change arithmetic
# ---------------------------------------------------------------------------


def test_change_returns_to_sender_by_default():
    unsigned = assemble(_utxo(100_000_000), OTHER_ADDRESS, 50_000_000, 1_000_000)
    outputs = unsigned.outputs
    assert [value for value, _ in outputs] == [50_000_000, 49_000_000]
    assert outputs[0][1] == p2pkh_locking_script(KEYS[1].pubkey_hash)
    assert outputs[1][1] == G_SCRIPT
    assert unsigned.fee == 1_000_000
    assert unsigned.change_value == 49_000_000


def test_change_address_override():
    change = KeyPair.from_secret((9).to_bytes(32, "big")).address(TESTNET)
    unsigned = assemble(_utxo(100_000_000), OTHER_ADDRESS, 50_000_000, 1_000_000, change)
    assert unsigned.outputs[1] == (49_000_000, p2pkh_locking_script(change.hash160))


def test_exact_spend_has_no_change_output():
    unsigned = assemble(_utxo(100_000_000), OTHER_ADDRESS, 99_000_000, 1_000_000)
    assert len(unsigned.outputs) == 1
    assert unsigned.change_value == 0
    assert unsigned.fee == 1_000_000


def test_zero_fee_is_allowed():
    unsigned = assemble(_utxo(100_000_000), OTHER_ADDRESS, 100_000_000, 0)
    assert unsigned.outputs == [(100_000_000, p2pkh_locking_script(KEYS[1].pubkey_hash))]


def test_overspend_raises_insufficient_funds():
    with pytest.raises(InsufficientFunds) as excinfo:
        assemble(_utxo(100_000_000), OTHER_ADDRESS, 100_000_000, 1_000_000)
    assert excinfo.value.available == 100_000_000
    assert excinfo.value.required == 101_000_000


@pytest.mark.parametrize("amount, fee", [(0, 1), (-5, 1), (1, -1)])
def test_invalid_amounts(amount, fee):
    with pytest.raises(InvalidAmount):
        assemble(_utxo(), OTHER_ADDRESS, amount, fee)


def test_pays_p2sh_destination():
    redeem = multisig_redeem_script(2, [kp.public_key for kp in KEYS])
    dest = Address.from_redeem_script(redeem, TESTNET)
    unsigned = assemble(_utxo(), dest, 1_000_000_000, 1_000_000)
    assert unsigned.outputs[0][1] == p2sh_locking_script(Hash160(redeem))


def test_skeleton_fields():
    unsigned = assemble(_utxo(), G_ADDRESS, 4_999_000_000, 1_000_000)
    txin = unsigned.tx.vin[0]
    assert unsigned.tx.nVersion == 1
    assert unsigned.tx.nLockTime == 0
    assert txin.nSequence == 0xFFFFFFFF
    assert txin.prevout.hash == lx(TXID)
    assert txin.prevout.n == 0
    assert bytes(txin.scriptSig) == b""


# ---------------------------------------------------------------------------
# Legacy sighash
# ---------------------------------------------------------------------------


def test_unsigned_serialization_vector():
    unsigned = assemble(_utxo(), G_ADDRESS, 4_999_000_000, 1_000_000)
    assert unsigned.hex == UNSIGNED_HEX


def test_sighash_vector():
    unsigned = assemble(_utxo(), G_ADDRESS, 4_999_000_000, 1_000_000)
    assert legacy_sighash(unsigned.tx, 0, G_SCRIPT).hex() == SIGHASH


def test_sighash_depends_on_prevout_script():
    unsigned = assemble(_utxo(), G_ADDRESS, 4_999_000_000, 1_000_000)
    tampered = bytearray(G_SCRIPT)
    tampered[3] ^= 0x01
    digest = legacy_sighash(unsigned.tx, 0, bytes(tampered))
    assert digest.hex() == SIGHASH_TAMPERED_PREVOUT


def test_sighash_rejects_multiple_inputs():
    txins = [
        CMutableTxIn(COutPoint(lx(TXID), 0)),
        CMutableTxIn(COutPoint(lx(TXID), 1)),
    ]
    tx = CTransaction.from_tx(CMutableTransaction(txins, [CMutableTxOut(1, G_SCRIPT)]))
    with pytest.raises(ConstructionError):
        legacy_sighash(tx, 0, G_SCRIPT)


def test_sighash_rejects_out_of_range_index():
    unsigned = assemble(_utxo(), G_ADDRESS, 4_999_000_000, 1_000_000)
    with pytest.raises(ConstructionError):
        legacy_sighash(unsigned.tx, 1, G_SCRIPT)


# ---------------------------------------------------------------------------
# Signatures
# ---------------------------------------------------------------------------


def test_sign_digest_is_deterministic_low_s_with_hashtype():
    digest = bytes.fromhex(SIGHASH)
    sig = sign_digest(KEYS[0], digest)
    assert sig == sign_digest(KEYS[0], digest)
    assert sig[-1] == 0x01
    assert sig[0] == 0x30
    assert is_low_s(sig[:-1])


def _high_s_twin(der):
    compact = serialize_compact(der_to_cdata(der))
    s = int.from_bytes(compact[32:], "big")
    return cdata_to_der(deserialize_compact(compact[:32] + (SECP256K1_ORDER - s).to_bytes(32, "big")))


def test_normalize_low_s_flips_high_s():
    der = sign_digest(KEYS[0], bytes.fromhex(SIGHASH))[:-1]
    high = _high_s_twin(der)

    assert high != der
    assert not is_low_s(high)
    assert normalize_low_s(high) == der
    assert normalize_low_s(der) == der


def test_low_s_check_rejects_malformed_der():
    with pytest.raises(CryptoError, match="Malformed DER"):
        is_low_s(b"\x30\x00")


def test_sign_digest_rejects_wrong_digest_size():
    with pytest.raises(ValueError):
        sign_digest(KEYS[0], b"\x00" * 31)


# ---------------------------------------------------------------------------
# P2PKH end to end
# ---------------------------------------------------------------------------


def test_p2pkh_spend_end_to_end():
    utxo = _utxo()
    signed = build_and_sign(
        _resolver(utxo), KEYS[0], utxo.outpoint, OTHER_ADDRESS, 4_999_000_000, 1_000_000
    )

    assert verify_input(signed)
    sig, pubkey = _script_sig_pushes(signed.script_sig)
    assert pubkey == KEYS[0].public_key
    assert is_low_s(sig[:-1])
    assert signed.txid == b2lx(Hash(signed.serialize()))

    details = signed.to_dict()
    assert details["fee_sats"] == 1_000_000
    assert details["inputs"][0]["txid"] == TXID
    assert details["outputs"] == [
        {"value_sats": 4_999_000_000, "script_hex": bytes(p2pkh_locking_script(KEYS[1].pubkey_hash)).hex()}
    ]
    assert details["size"] == len(bytes.fromhex(details["hex"]))


def test_p2pkh_spend_is_reproducible():
    utxo = _utxo()
    first = build_and_sign(_resolver(utxo), KEYS[0], utxo.outpoint, OTHER_ADDRESS, 10**9, 10**6)
    second = build_and_sign(_resolver(utxo), KEYS[0], utxo.outpoint, OTHER_ADDRESS, 10**9, 10**6)
    assert first.hex == second.hex


def test_tampered_output_fails_verification():
    utxo = _utxo()
    signed = build_and_sign(_resolver(utxo), KEYS[0], utxo.outpoint, OTHER_ADDRESS, 10**9, 10**6)
    tx = CMutableTransaction.from_tx(signed.tx)
    tx.vout[0].nValue -= 1
    assert not verify_input(SignedTransaction(tx, utxo))


def test_verification_against_a_different_prevout_script_fails():
    utxo = _utxo()
    signed = build_and_sign(_resolver(utxo), KEYS[0], utxo.outpoint, OTHER_ADDRESS, 10**9, 10**6)
    other = _utxo(script=p2pkh_locking_script(KEYS[1].pubkey_hash))
    assert not verify_input(signed, other)


def test_sign_p2pkh_rejects_foreign_key():
    unsigned = assemble(_utxo(), OTHER_ADDRESS, 10**9, 10**6)
    with pytest.raises(KeyMismatch):
        sign_p2pkh(unsigned, KEYS[1])


def test_sign_p2pkh_rejects_non_p2pkh_prevout():
    unsigned = assemble(_utxo(script=p2sh_locking_script(bytes(20))), OTHER_ADDRESS, 10**9, 10**6)
    with pytest.raises(UnsupportedLockingScript):
        sign_p2pkh(unsigned, KEYS[0])


def test_build_and_sign_validates_amount_before_lookup():
    with pytest.raises(InvalidAmount):
        build_and_sign(PrevoutResolver.build(), KEYS[0], Outpoint(TXID, 0), OTHER_ADDRESS, 0, 0)


# ---------------------------------------------------------------------------
# P2SH multisig
# ---------------------------------------------------------------------------

REDEEM = multisig_redeem_script(2, [kp.public_key for kp in KEYS])
P2SH_SCRIPT = p2sh_locking_script(Hash160(REDEEM))


def test_multisig_spend_orders_signatures_by_key_position():
    utxo = _utxo(script=P2SH_SCRIPT)
    signed = build_and_sign_multisig(
        _resolver(utxo), [KEYS[2], KEYS[0]], REDEEM, utxo.outpoint, OTHER_ADDRESS, 10**9, 10**6
    )
    assert verify_input(signed)

    pushes = _script_sig_pushes(signed.script_sig)
    assert pushes[0] == b""
    assert pushes[-1] == bytes(REDEEM)
    digest = legacy_sighash(signed.tx, 0, REDEEM)
    assert pushes[1] == sign_digest(KEYS[0], digest)
    assert pushes[2] == sign_digest(KEYS[2], digest)


def test_multisig_sighash_uses_redeem_script():
    unsigned = assemble(_utxo(script=P2SH_SCRIPT), OTHER_ADDRESS, 10**9, 10**6)
    assert legacy_sighash(unsigned.tx, 0, REDEEM) != legacy_sighash(unsigned.tx, 0, P2SH_SCRIPT)


def test_multisig_requires_exactly_m_keys():
    utxo = _utxo(script=P2SH_SCRIPT)
    unsigned = assemble(utxo, OTHER_ADDRESS, 10**9, 10**6)
    with pytest.raises(SignatureCountMismatch):
        sign_p2sh_multisig(unsigned, [KEYS[0]], REDEEM)
    with pytest.raises(SignatureCountMismatch):
        build_and_sign_multisig(
            _resolver(utxo), KEYS, REDEEM, utxo.outpoint, OTHER_ADDRESS, 10**9, 10**6
        )


def test_multisig_rejects_key_outside_redeem_script():
    unsigned = assemble(_utxo(script=P2SH_SCRIPT), OTHER_ADDRESS, 10**9, 10**6)
    outsider = KeyPair.from_secret((4).to_bytes(32, "big"))
    with pytest.raises(KeyMismatch):
        sign_p2sh_multisig(unsigned, [KEYS[0], outsider], REDEEM)
    with pytest.raises(KeyMismatch):
        sign_p2sh_multisig(unsigned, [KEYS[0], KEYS[0]], REDEEM)


def test_multisig_rejects_uncommitted_redeem_script():
    unsigned = assemble(_utxo(script=P2SH_SCRIPT), OTHER_ADDRESS, 10**9, 10**6)
    other_redeem = multisig_redeem_script(2, [KEYS[1].public_key, KEYS[0].public_key])
    with pytest.raises(UnsupportedLockingScript):
        sign_p2sh_multisig(unsigned, [KEYS[0], KEYS[1]], other_redeem)


def test_verify_input_rejects_swapped_multisig_signatures():
    utxo = _utxo(script=P2SH_SCRIPT)
    signed = build_and_sign_multisig(
        _resolver(utxo), [KEYS[0], KEYS[1]], REDEEM, utxo.outpoint, OTHER_ADDRESS, 10**9, 10**6
    )
    pushes = _script_sig_pushes(signed.script_sig)
    swapped = CScript([0, pushes[2], pushes[1], pushes[3]])
    tx = CMutableTransaction.from_tx(signed.tx)
    tx.vin[0].scriptSig = swapped
    assert not verify_input(SignedTransaction(tx, utxo))
