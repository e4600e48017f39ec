from __future__ import annotations

import hashlib
import os
from dataclasses import dataclass
from decimal import Decimal
from pathlib import Path
from typing import Any

from dotenv import load_dotenv
from structlog import get_logger

from doge_address import Address
from doge_errors import (
    DogeConfigError,
    InvalidPrivateKey,
    ResolutionError,
    SignatureVerificationFailed,
)
from doge_explorer import SOCHAIN_BASE_URL, SoChainClient
from doge_keys import KeyPair, wif_network
from doge_network import DogeNetwork, NetworkParams, get_network
from doge_prevout import (
    COIN,
    ExplorerPrevoutProvider,
    ManualPrevoutProvider,
    NodePrevoutProvider,
    Outpoint,
    PrevoutResolver,
)
from doge_rpc import DogeRpcClient
from doge_script import multisig_redeem_script
from doge_tx import SignedTransaction, build_and_sign, verify_input

# Load .env from project root
PROJECT_ROOT = Path(__file__).parent
load_dotenv(PROJECT_ROOT / ".env")

logger = get_logger()

DEFAULT_FEE_SATS = 1_000_000  # 0.01 DOGE


@dataclass
class DogeConfig:
    """
    Configuration for the DOGE wallet.

    Values are sourced from environment variables or a .env file.

    Key material:
    - DOGE_PRIVATE_KEY: WIF-encoded private key (takes precedence).
    - DOGE_MNEMONIC: BIP-39 seed phrase; the BIP-44 m/44'/3'/0'/0/0 key
      (m/44'/1'/... on testnet) is used if DOGE_PRIVATE_KEY is not set.
    - DOGE_MNEMONIC_PASSPHRASE: optional BIP-39 passphrase.

    Network and providers:
    - DOGE_NETWORK: "mainnet" or "testnet". Inferred from the WIF when unset.
    - DOGE_RPC_URL / DOGE_RPC_USER / DOGE_RPC_PASSWORD / DOGE_RPC_TIMEOUT:
      dogecoind JSON-RPC endpoint; enables the node provider.
    - SOCHAIN_API_KEY: enables prevout lookups through the SoChain v3 API.
    - DOGE_EXPLORER_URL: explorer base URL (default https://chain.so/api).
    - DOGE_EXPLORER_DISABLED: if true, never talk to the explorer.

    Spending:
    - DOGE_FEE_SATS: absolute fee per transaction (default 0.01 DOGE).
    - DOGE_DRY_RUN: if true (default), build and sign but do not broadcast.
    """

    params: NetworkParams
    private_key_wif: str | None = None
    mnemonic: str | None = None
    mnemonic_passphrase: str = ""
    rpc_url: str | None = None
    rpc_user: str | None = None
    rpc_password: str | None = None
    rpc_timeout: float = 10
    explorer_url: str = SOCHAIN_BASE_URL
    explorer_api_key: str | None = None
    explorer_enabled: bool = True
    fee_sats: int = DEFAULT_FEE_SATS
    dry_run_default: bool = True

    @property
    def network(self) -> DogeNetwork:
        return self.params.name

    @classmethod
    def from_env(cls) -> DogeConfig:
        private_key = (os.getenv("DOGE_PRIVATE_KEY") or "").strip() or None
        mnemonic = (os.getenv("DOGE_MNEMONIC") or "").strip() or None
        if not private_key and not mnemonic:
            raise DogeConfigError(
                "No key material configured. Set DOGE_PRIVATE_KEY (WIF) or "
                "DOGE_MNEMONIC (BIP-39 seed phrase) in your environment or .env file."
            )

        # Determine network:
        # 1) DOGE_NETWORK, if provided and valid.
        # 2) Infer from the WIF version byte if DOGE_PRIVATE_KEY is set.
        # 3) Default to testnet.
        raw_network = os.getenv("DOGE_NETWORK")
        if raw_network:
            try:
                params = get_network(raw_network)
            except ValueError as exc:
                raise DogeConfigError(str(exc)) from exc
        elif private_key:
            try:
                params = wif_network(private_key)
            except InvalidPrivateKey as exc:
                raise DogeConfigError(f"Invalid DOGE_PRIVATE_KEY: {exc}") from exc
            if params is None:
                raise DogeConfigError("DOGE_PRIVATE_KEY is not a Dogecoin WIF.")
        else:
            params = get_network("testnet")

        fee_sats = DEFAULT_FEE_SATS
        fee_env = os.getenv("DOGE_FEE_SATS")
        if fee_env is not None and fee_env.strip():
            try:
                fee_sats = max(0, int(fee_env))
            except ValueError as exc:
                raise DogeConfigError(f"Invalid DOGE_FEE_SATS={fee_env!r}") from exc

        timeout_env = os.getenv("DOGE_RPC_TIMEOUT") or "10"
        try:
            rpc_timeout = float(timeout_env)
        except ValueError as exc:
            raise DogeConfigError(f"Invalid DOGE_RPC_TIMEOUT={timeout_env!r}") from exc

        # DOGE_DRY_RUN defaults to True; "false", "0", "no" or "off" disable it.
        dry_run_env = os.getenv("DOGE_DRY_RUN", "true").lower()
        dry_run_default = dry_run_env not in ("false", "0", "no", "off")
        explorer_disabled = os.getenv("DOGE_EXPLORER_DISABLED", "false").lower()

        return cls(
            params=params,
            private_key_wif=private_key,
            mnemonic=None if private_key else mnemonic,
            mnemonic_passphrase=os.getenv("DOGE_MNEMONIC_PASSPHRASE", ""),
            rpc_url=os.getenv("DOGE_RPC_URL") or None,
            rpc_user=os.getenv("DOGE_RPC_USER") or None,
            rpc_password=os.getenv("DOGE_RPC_PASSWORD") or None,
            rpc_timeout=rpc_timeout,
            explorer_url=os.getenv("DOGE_EXPLORER_URL") or SOCHAIN_BASE_URL,
            explorer_api_key=os.getenv("SOCHAIN_API_KEY") or None,
            explorer_enabled=explorer_disabled in ("false", "0", "no", "off", ""),
            fee_sats=fee_sats,
            dry_run_default=dry_run_default,
        )


def load_keypair(cfg: DogeConfig) -> KeyPair:
    if cfg.private_key_wif:
        try:
            return KeyPair.from_wif(cfg.private_key_wif, cfg.params)
        except InvalidPrivateKey as exc:
            raise DogeConfigError(f"Invalid DOGE_PRIVATE_KEY: {exc}") from exc
    if cfg.mnemonic:
        return KeyPair.from_mnemonic(cfg.mnemonic, cfg.params, cfg.mnemonic_passphrase)
    raise DogeConfigError("No key material configured.")


def get_address(cfg: DogeConfig) -> dict[str, str]:
    keypair = load_keypair(cfg)
    return {
        "address": str(keypair.address(cfg.params)),
        "public_key": keypair.public_key.hex(),
        "network": cfg.network,
    }


def format_doge(sats: int) -> str:
    return f"{Decimal(sats) / COIN:.8f}"


# ---------------------------------------------------------------------------
# Providers
# ---------------------------------------------------------------------------


def _node_client(cfg: DogeConfig) -> DogeRpcClient | None:
    if not cfg.rpc_url:
        return None
    return DogeRpcClient(cfg.rpc_url, cfg.rpc_user, cfg.rpc_password, cfg.rpc_timeout)


def _explorer_client(cfg: DogeConfig) -> SoChainClient | None:
    if not cfg.explorer_enabled:
        return None
    return SoChainClient(cfg.params, cfg.explorer_url, cfg.explorer_api_key)


def make_resolver(
    cfg: DogeConfig, manual: ManualPrevoutProvider | None = None
) -> PrevoutResolver:
    """
    Resolver with manual -> node -> explorer precedence.

    The explorer can only resolve prevouts with a SoChain API key, so it is
    left out when none is configured.
    """
    node = _node_client(cfg)
    explorer = _explorer_client(cfg)
    return PrevoutResolver.build(
        manual=manual,
        node=NodePrevoutProvider(node) if node else None,
        explorer=(
            ExplorerPrevoutProvider(explorer)
            if explorer is not None and cfg.explorer_api_key
            else None
        ),
    )


def broadcast(cfg: DogeConfig, raw_hex: str) -> str:
    """Broadcast through the node when configured, otherwise the explorer."""
    node = _node_client(cfg)
    if node is not None:
        return node.broadcast_tx(raw_hex)
    explorer = _explorer_client(cfg)
    if explorer is not None:
        return explorer.send_tx(raw_hex)
    raise ResolutionError("no broadcast provider configured", "none")


def list_unspent(cfg: DogeConfig, address: str | None = None) -> list[dict[str, object]]:
    """Unspent outputs for `address` (default: the wallet address) via the explorer."""
    explorer = _explorer_client(cfg)
    if explorer is None:
        raise ResolutionError("explorer is disabled", "explorer")
    if address is None:
        address = str(load_keypair(cfg).address(cfg.params))
    else:
        Address.from_string(address, cfg.params)
    return [u.to_dict() for u in explorer.get_tx_unspent(address)]


def get_node_info(cfg: DogeConfig) -> dict[str, Any]:
    node = _node_client(cfg)
    if node is None:
        raise ResolutionError("DOGE_RPC_URL is not configured", "node")
    chain = node.get_blockchain_info()
    net = node.get_network_info()
    return {
        "chain": chain.get("chain"),
        "blocks": chain.get("blocks"),
        "headers": chain.get("headers"),
        "verification_progress": str(chain.get("verificationprogress", "")),
        "version": net.get("version"),
        "subversion": net.get("subversion"),
        "connections": net.get("connections"),
        "network": cfg.network,
    }


# ---------------------------------------------------------------------------
# Multisig
# ---------------------------------------------------------------------------


def create_multisig(cfg: DogeConfig, m: int, pubkeys_hex: list[str]) -> dict[str, Any]:
    try:
        pubkeys = [bytes.fromhex(pk) for pk in pubkeys_hex]
    except ValueError as exc:
        raise ValueError(f"Public keys must be hex: {exc}") from exc
    redeem_script = multisig_redeem_script(m, pubkeys)
    address = Address.from_redeem_script(redeem_script, cfg.params)
    return {
        "address": str(address),
        "redeem_script": bytes(redeem_script).hex(),
        "m": m,
        "n": len(pubkeys),
        "network": cfg.network,
    }


# ---------------------------------------------------------------------------
# Spending
# ---------------------------------------------------------------------------


def prepare_transaction(
    cfg: DogeConfig,
    to_address: str,
    amount_sats: int,
    txid: str,
    vout: int,
    fee_sats: int | None = None,
    change_address: str | None = None,
    prevout_value: int | None = None,
    prevout_script_hex: str | None = None,
) -> SignedTransaction:
    """
    Build and sign a P2PKH spend of txid:vout.

    If prevout_value and prevout_script_hex are both given, they are used as
    the prevout and no network lookup happens for it.
    """
    destination = Address.from_string(to_address, cfg.params)
    change = Address.from_string(change_address, cfg.params) if change_address else None
    outpoint = Outpoint(txid, int(vout))
    keypair = load_keypair(cfg)

    manual = None
    if prevout_value is not None or prevout_script_hex is not None:
        if prevout_value is None or prevout_script_hex is None:
            raise ValueError("Provide both prevout_value and prevout_script_hex, or neither.")
        manual = ManualPrevoutProvider()
        manual.add(outpoint, int(prevout_value), prevout_script_hex)

    signed = build_and_sign(
        make_resolver(cfg, manual),
        keypair,
        outpoint,
        destination,
        int(amount_sats),
        cfg.fee_sats if fee_sats is None else int(fee_sats),
        change,
    )
    if not verify_input(signed):
        raise SignatureVerificationFailed("Signed input does not validate against its prevout")
    return signed


def send_transaction(
    cfg: DogeConfig,
    to_address: str,
    amount_sats: int,
    txid: str,
    vout: int,
    fee_sats: int | None = None,
    change_address: str | None = None,
    prevout_value: int | None = None,
    prevout_script_hex: str | None = None,
    dry_run: bool | None = None,
) -> dict[str, Any]:
    """
    Build, sign and broadcast a DOGE transaction.

    dry_run: If True, the transaction is built and signed but not broadcast.
             If None, uses cfg.dry_run_default.
    """
    if dry_run is None:
        dry_run = cfg.dry_run_default

    signed = prepare_transaction(
        cfg,
        to_address,
        amount_sats,
        txid,
        vout,
        fee_sats=fee_sats,
        change_address=change_address,
        prevout_value=prevout_value,
        prevout_script_hex=prevout_script_hex,
    )
    raw_hex = signed.hex

    if dry_run:
        # Deterministic placeholder derived from the raw transaction.
        fake_txid = hashlib.sha256(bytes.fromhex(raw_hex)).hexdigest()
        logger.info("dry run, not broadcasting", txid=signed.txid)
        broadcast_txid = f"DRYRUN_{fake_txid}"
    else:
        broadcast_txid = broadcast(cfg, raw_hex)

    return {
        "txid": broadcast_txid,
        "hex": raw_hex,
        "dry_run": bool(dry_run),
        "fee_sats": signed.to_dict()["fee_sats"],
        "network": cfg.network,
    }
