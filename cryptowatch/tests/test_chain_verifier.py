"""Tests for reading wallet payments back from Base and Solana JSON-RPC."""
import json
from datetime import datetime, timezone
from decimal import Decimal

import httpx
import pytest

from cryptowatch.features.billing.chain import ERC20_TRANSFER_SELECTOR, ChainVerifier
from cryptowatch.features.billing.provider import ChainUnavailableError

USDC_BASE = "0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913"
USDC_MINT = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"
DEPOSIT = "0x1111111111111111111111111111111111111111"
TX = "0x" + "a" * 64
BLOCK_TS = 1772366400  # 2026-03-01T12:00:00Z


def transfer_input(to: str, amount_units: int) -> str:
    return f"{ERC20_TRANSFER_SELECTOR}{'0' * 24}{to[2:].lower()}{amount_units:064x}"


def rpc_handler(results):
    """MockTransport handler answering JSON-RPC calls from a {method: result} map."""
    calls = []

    def handler(request: httpx.Request):
        body = json.loads(request.content)
        calls.append(body["method"])
        result = results.get(body["method"])
        if isinstance(result, dict) and "error" in result:
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "error": result["error"]})
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "result": result})

    handler.calls = calls
    return handler


def make_verifier(handler):
    return ChainVerifier(
        http=httpx.Client(transport=httpx.MockTransport(handler)),
        rpc_urls={"base": "https://base.test", "solana": "https://solana.test"},
        usdc_tokens={"base": USDC_BASE, "solana": USDC_MINT},
    )


def test_base_usdc_transfer():
    handler = rpc_handler({
        "eth_getTransactionByHash": {"to": USDC_BASE.lower(), "input": transfer_input(DEPOSIT, 29_990_000), "value": "0x0"},
        "eth_getTransactionReceipt": {"status": "0x1", "blockNumber": "0x10"},
        "eth_getBlockByNumber": {"timestamp": hex(BLOCK_TS)},
    })

    transfer = make_verifier(handler).get_transfer("base", TX)

    assert transfer.asset == "USDC"
    assert transfer.amount == Decimal("29.99")
    assert transfer.to_address == DEPOSIT
    assert transfer.succeeded is True
    assert transfer.confirmed is True
    assert transfer.block_time == datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def test_base_native_transfer_is_not_usdc():
    handler = rpc_handler({
        "eth_getTransactionByHash": {"to": DEPOSIT, "input": "0x", "value": hex(10 ** 16)},
        "eth_getTransactionReceipt": {"status": "0x1", "blockNumber": "0x10"},
        "eth_getBlockByNumber": {"timestamp": hex(BLOCK_TS)},
    })
    transfer = make_verifier(handler).get_transfer("base", TX)
    assert transfer.asset == "ETH"
    assert transfer.amount == Decimal("0.01")


def test_base_reverted_transaction():
    handler = rpc_handler({
        "eth_getTransactionByHash": {"to": USDC_BASE, "input": transfer_input(DEPOSIT, 29_990_000)},
        "eth_getTransactionReceipt": {"status": "0x0", "blockNumber": "0x10"},
        "eth_getBlockByNumber": {"timestamp": hex(BLOCK_TS)},
    })
    transfer = make_verifier(handler).get_transfer("base", TX)
    assert transfer.confirmed is True
    assert transfer.succeeded is False


def test_base_pending_transaction_is_unconfirmed():
    handler = rpc_handler({
        "eth_getTransactionByHash": {"to": USDC_BASE, "input": transfer_input(DEPOSIT, 29_990_000)},
        "eth_getTransactionReceipt": None,
    })
    transfer = make_verifier(handler).get_transfer("base", TX)
    assert transfer.confirmed is False
    assert "eth_getBlockByNumber" not in handler.calls


def test_base_unknown_hash():
    assert make_verifier(rpc_handler({"eth_getTransactionByHash": None})).get_transfer("base", TX) is None


def test_malformed_hash_is_unknown():
    handler = rpc_handler({"eth_getTransactionByHash": {"error": {"code": -32602, "message": "invalid argument"}}})
    assert make_verifier(handler).get_transfer("base", "0x123") is None


def test_rpc_error_raises_unavailable():
    handler = rpc_handler({"eth_getTransactionByHash": {"error": {"code": -32000, "message": "header not found"}}})
    with pytest.raises(ChainUnavailableError):
        make_verifier(handler).get_transfer("base", TX)


def test_transport_failure_raises_unavailable():
    def handler(request):
        raise httpx.ConnectError("connection refused")

    with pytest.raises(ChainUnavailableError):
        make_verifier(handler).get_transfer("base", TX)


def test_http_error_status_raises_unavailable():
    with pytest.raises(ChainUnavailableError):
        make_verifier(lambda request: httpx.Response(502, text="bad gateway")).get_transfer("solana", "sig")


def test_solana_usdc_transfer():
    sender, recipient = "SenderOwner1111", "CwDeposit1111"
    handler = rpc_handler({
        "getTransaction": {
            "blockTime": BLOCK_TS,
            "meta": {
                "err": None,
                "preTokenBalances": [
                    {"mint": USDC_MINT, "owner": sender, "uiTokenAmount": {"uiAmountString": "100.0", "decimals": 6}},
                    {"mint": USDC_MINT, "owner": recipient, "uiTokenAmount": {"uiAmountString": "5.0", "decimals": 6}},
                ],
                "postTokenBalances": [
                    {"mint": USDC_MINT, "owner": sender, "uiTokenAmount": {"uiAmountString": "70.01", "decimals": 6}},
                    {"mint": USDC_MINT, "owner": recipient, "uiTokenAmount": {"uiAmountString": "34.99", "decimals": 6}},
                ],
            },
        },
    })

    transfer = make_verifier(handler).get_transfer("solana", "5sig")

    assert transfer.asset == "USDC"
    assert transfer.to_address == recipient
    assert transfer.amount == Decimal("29.99")
    assert transfer.succeeded is True
    assert transfer.block_time == datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def test_solana_transfer_of_other_token_is_not_usdc():
    handler = rpc_handler({
        "getTransaction": {
            "meta": {
                "err": None,
                "preTokenBalances": [{"mint": "OtherMint", "owner": "A", "uiTokenAmount": {"uiAmountString": "0"}}],
                "postTokenBalances": [{"mint": "OtherMint", "owner": "A", "uiTokenAmount": {"uiAmountString": "30"}}],
            },
        },
    })
    transfer = make_verifier(handler).get_transfer("solana", "5sig")
    assert transfer.asset == "SOL"
    assert transfer.to_address is None


def test_solana_failed_transaction():
    handler = rpc_handler({"getTransaction": {"meta": {"err": {"InstructionError": [0, "Custom"]}}}})
    assert make_verifier(handler).get_transfer("solana", "5sig").succeeded is False


def test_unsupported_network():
    with pytest.raises(ValueError):
        make_verifier(rpc_handler({})).get_transfer("bitcoin", TX)
