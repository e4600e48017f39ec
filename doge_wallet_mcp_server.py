#!/usr/bin/env python3
"""
MCP server for Dogecoin wallet operations.

Wraps doge_wallet.py as MCP tools.
"""

from __future__ import annotations

import asyncio
import json
from typing import Any, List

from mcp.server import Server
from mcp.server.stdio import stdio_server
from mcp.types import TextContent, Tool

from doge_prevout import Outpoint, doge_to_sats
from doge_wallet import (
    DogeConfig,
    create_multisig,
    format_doge,
    get_address,
    get_node_info,
    list_unspent,
    prepare_transaction,
    send_transaction,
)

app = Server("doge_wallet")

_SPEND_PROPERTIES: dict[str, Any] = {
    "to_address": {"type": "string", "description": "Recipient address"},
    "amount_doge": {"type": "string", "description": "Amount to send in DOGE"},
    "amount_sats": {"type": "integer", "description": "Amount to send in satoshis"},
    "outpoint": {"type": "string", "description": "Output to spend, as txid:vout"},
    "fee_sats": {"type": "integer", "description": "Optional absolute fee in satoshis"},
    "change_address": {
        "type": "string",
        "description": "Optional change address (defaults to the spent output's owner)",
    },
    "prevout_value_sats": {
        "type": "integer",
        "description": "Value of the spent output; skips the network lookup",
    },
    "prevout_script_hex": {
        "type": "string",
        "description": "Locking script of the spent output; skips the network lookup",
    },
}


def _error_response(message: str) -> List[TextContent]:
    return [TextContent(type="text", text=json.dumps({"success": False, "error": message}))]


def _ok(result: dict[str, Any]) -> List[TextContent]:
    return [TextContent(type="text", text=json.dumps({"success": True, **result}))]


def _resolve_amount_sats(arguments: dict[str, Any]) -> int:
    amount_doge = arguments.get("amount_doge")
    amount_sats = arguments.get("amount_sats")

    if amount_doge is not None and amount_sats is not None:
        raise ValueError("Provide exactly one of amount_doge or amount_sats, not both.")
    if amount_doge is None and amount_sats is None:
        raise ValueError("Missing amount. Provide amount_doge or amount_sats.")

    if amount_sats is not None:
        sats = int(amount_sats)
    else:
        sats = doge_to_sats(amount_doge)
    if sats <= 0:
        raise ValueError("Invalid amount. Must be greater than zero.")
    return sats


def _spend_arguments(arguments: dict[str, Any]) -> dict[str, Any]:
    to_address = (arguments.get("to_address") or "").strip()
    if not to_address:
        raise ValueError("Missing to_address.")
    outpoint_text = (arguments.get("outpoint") or "").strip()
    if not outpoint_text:
        raise ValueError("Missing outpoint. Expected txid:vout.")
    outpoint = Outpoint.parse(outpoint_text)

    fee_sats = arguments.get("fee_sats")
    prevout_value = arguments.get("prevout_value_sats")
    return {
        "to_address": to_address,
        "amount_sats": _resolve_amount_sats(arguments),
        "txid": outpoint.txid,
        "vout": outpoint.vout,
        "fee_sats": int(fee_sats) if fee_sats is not None else None,
        "change_address": (arguments.get("change_address") or "").strip() or None,
        "prevout_value": int(prevout_value) if prevout_value is not None else None,
        "prevout_script_hex": arguments.get("prevout_script_hex") or None,
    }


@app.list_tools()
async def list_tools() -> List[Tool]:
    return [
        Tool(
            name="doge_get_address",
            description="Return the wallet's DOGE address and public key.",
            inputSchema={"type": "object", "properties": {}},
        ),
        Tool(
            name="doge_list_utxos",
            description="List unspent outputs for an address (default: the wallet address).",
            inputSchema={
                "type": "object",
                "properties": {
                    "address": {"type": "string", "description": "Address to query"},
                },
            },
        ),
        Tool(
            name="doge_create_multisig",
            description=(
                "Create an m-of-n P2SH multisig address from compressed public keys. "
                "Key order matters and is kept as given."
            ),
            inputSchema={
                "type": "object",
                "properties": {
                    "m": {"type": "integer", "description": "Required signatures"},
                    "public_keys": {
                        "type": "array",
                        "items": {"type": "string"},
                        "description": "Hex-encoded compressed public keys",
                    },
                },
                "required": ["m", "public_keys"],
            },
        ),
        Tool(
            name="doge_preview_transaction",
            description=(
                "Build and sign a transaction spending one output without broadcasting. "
                "Provide amount_doge or amount_sats."
            ),
            inputSchema={
                "type": "object",
                "properties": dict(_SPEND_PROPERTIES),
                "required": ["to_address", "outpoint"],
            },
        ),
        Tool(
            name="doge_send_transaction",
            description=(
                "Send DOGE by spending one output. Requires explicit user confirmation. "
                "Call doge_preview_transaction first and confirm before sending."
            ),
            inputSchema={
                "type": "object",
                "properties": {
                    **_SPEND_PROPERTIES,
                    "dry_run": {
                        "type": "boolean",
                        "description": "If true, build but do not broadcast",
                    },
                },
                "required": ["to_address", "outpoint"],
            },
        ),
        Tool(
            name="doge_get_node_info",
            description="Return chain and network info from the configured dogecoind node.",
            inputSchema={"type": "object", "properties": {}},
        ),
    ]


@app.call_tool()
async def call_tool(name: str, arguments: Any) -> List[TextContent]:
    if arguments is None:
        arguments = {}
    if not isinstance(arguments, dict):
        return _error_response("Invalid arguments. Expected an object.")

    if name == "doge_get_address":
        return await _handle_get_address()
    if name == "doge_list_utxos":
        return await _handle_list_utxos(arguments)
    if name == "doge_create_multisig":
        return await _handle_create_multisig(arguments)
    if name == "doge_preview_transaction":
        return await _handle_preview_transaction(arguments)
    if name == "doge_send_transaction":
        return await _handle_send_transaction(arguments)
    if name == "doge_get_node_info":
        return await _handle_get_node_info()

    return _error_response(f"Unknown tool: {name}")


async def _handle_get_address() -> List[TextContent]:
    try:
        cfg = await asyncio.to_thread(DogeConfig.from_env)
        return _ok(await asyncio.to_thread(get_address, cfg))
    except Exception as exc:  # noqa: BLE001
        return _error_response(str(exc))


async def _handle_list_utxos(arguments: dict[str, Any]) -> List[TextContent]:
    address = (arguments.get("address") or "").strip() or None
    try:
        cfg = await asyncio.to_thread(DogeConfig.from_env)
        utxos = await asyncio.to_thread(list_unspent, cfg, address)
        total = sum(int(u["value_sats"]) for u in utxos)
        return _ok(
            {
                "utxos": utxos,
                "count": len(utxos),
                "total_doge": format_doge(total),
                "network": cfg.network,
            }
        )
    except Exception as exc:  # noqa: BLE001
        return _error_response(str(exc))


async def _handle_create_multisig(arguments: dict[str, Any]) -> List[TextContent]:
    public_keys = arguments.get("public_keys")
    if not isinstance(public_keys, list) or not public_keys:
        return _error_response("Missing public_keys. Expected a list of hex strings.")
    try:
        m = int(arguments.get("m"))
        cfg = await asyncio.to_thread(DogeConfig.from_env)
        return _ok(await asyncio.to_thread(create_multisig, cfg, m, public_keys))
    except Exception as exc:  # noqa: BLE001
        return _error_response(str(exc))


async def _handle_preview_transaction(arguments: dict[str, Any]) -> List[TextContent]:
    try:
        spend = _spend_arguments(arguments)
        cfg = await asyncio.to_thread(DogeConfig.from_env)
        signed = await asyncio.to_thread(prepare_transaction, cfg, **spend)
        details = signed.to_dict()
        return _ok(
            {
                **details,
                "amount_doge": format_doge(spend["amount_sats"]),
                "fee_doge": format_doge(details["fee_sats"]),
                "network": cfg.network,
            }
        )
    except Exception as exc:  # noqa: BLE001
        return _error_response(str(exc))


async def _handle_send_transaction(arguments: dict[str, Any]) -> List[TextContent]:
    try:
        spend = _spend_arguments(arguments)
        cfg = await asyncio.to_thread(DogeConfig.from_env)

        dry_run = arguments.get("dry_run")
        if dry_run is None:
            dry_run = cfg.dry_run_default

        result = await asyncio.to_thread(send_transaction, cfg, dry_run=bool(dry_run), **spend)
        return _ok(result)
    except Exception as exc:  # noqa: BLE001
        return _error_response(str(exc))


async def _handle_get_node_info() -> List[TextContent]:
    try:
        cfg = await asyncio.to_thread(DogeConfig.from_env)
        return _ok(await asyncio.to_thread(get_node_info, cfg))
    except Exception as exc:  # noqa: BLE001
        return _error_response(str(exc))


async def main() -> None:
    async with stdio_server() as (read_stream, write_stream):
        await app.run(read_stream, write_stream, app.create_initialization_options())


if __name__ == "__main__":
    asyncio.run(main())
