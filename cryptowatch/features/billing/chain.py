"""Chain state reads for direct wallet payments (Base and Solana JSON-RPC)."""

from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

import httpx

from cryptowatch.features.billing.provider import ChainTransfer, ChainUnavailableError

# ERC-20 transfer(address,uint256)
ERC20_TRANSFER_SELECTOR = "0xa9059cbb"
USDC_DECIMALS = 6
ETH_DECIMALS = 18

# JSON-RPC "invalid params": a malformed hash is simply not a known transaction
_INVALID_PARAMS = -32602

SUPPORTED_NETWORKS = ("base", "solana")


class ChainVerifier:
    """
    Reads a transaction back from chain state and reports what it moved.

    Networks are configured by RPC URL; the USDC token address per network
    decides which transfers count as USDC.
    """

    def __init__(self, http: httpx.Client, rpc_urls: Dict[str, str], usdc_tokens: Dict[str, str]):
        self.http = http
        self.rpc_urls = rpc_urls
        self.usdc_tokens = usdc_tokens

    def get_transfer(self, network: str, tx_hash: str) -> Optional[ChainTransfer]:
        if network == "base":
            return self._base_transfer(tx_hash)
        if network == "solana":
            return self._solana_transfer(tx_hash)
        raise ValueError(f"Unsupported network: {network}")

    def _rpc(self, network: str, method: str, params: List[Any]):
        url = self.rpc_urls.get(network)
        if not url:
            raise ChainUnavailableError(f"No RPC URL configured for {network}")
        try:
            resp = self.http.post(url, json={"jsonrpc": "2.0", "id": 1, "method": method, "params": params})
            resp.raise_for_status()
            body = resp.json()
        except httpx.HTTPError as e:
            raise ChainUnavailableError(f"{network} RPC {method} failed: {e}")
        except ValueError as e:
            raise ChainUnavailableError(f"{network} RPC {method} returned invalid JSON: {e}")

        error = body.get("error")
        if error:
            if error.get("code") == _INVALID_PARAMS:
                return None
            raise ChainUnavailableError(f"{network} RPC {method} error: {error.get('message')}")
        return body.get("result")

    def _base_transfer(self, tx_hash: str) -> Optional[ChainTransfer]:
        tx = self._rpc("base", "eth_getTransactionByHash", [tx_hash])
        if not tx:
            return None

        to_address = tx.get("to")
        data = tx.get("input") or "0x"
        usdc = (self.usdc_tokens.get("base") or "").lower()
        if to_address and to_address.lower() == usdc and data.startswith(ERC20_TRANSFER_SELECTOR) and len(data) >= 138:
            recipient = "0x" + data[34:74]
            amount = Decimal(int(data[74:138], 16)) / Decimal(10 ** USDC_DECIMALS)
            asset = "USDC"
        else:
            recipient = to_address
            amount = Decimal(int(tx.get("value") or "0x0", 16)) / Decimal(10 ** ETH_DECIMALS)
            asset = "ETH"

        receipt = self._rpc("base", "eth_getTransactionReceipt", [tx_hash])
        if not receipt:
            # Known to the node but not mined yet
            return ChainTransfer(
                tx_hash=tx_hash, network="base", to_address=recipient, amount=amount,
                asset=asset, succeeded=False, confirmed=False,
            )

        block_time = None
        block_number = receipt.get("blockNumber") or tx.get("blockNumber")
        if block_number:
            block = self._rpc("base", "eth_getBlockByNumber", [block_number, False])
            if block and block.get("timestamp"):
                block_time = datetime.fromtimestamp(int(block["timestamp"], 16), timezone.utc)

        return ChainTransfer(
            tx_hash=tx_hash,
            network="base",
            to_address=recipient,
            amount=amount,
            asset=asset,
            succeeded=receipt.get("status") == "0x1",
            confirmed=True,
            block_time=block_time,
        )

    def _solana_transfer(self, signature: str) -> Optional[ChainTransfer]:
        tx = self._rpc(
            "solana",
            "getTransaction",
            [signature, {"encoding": "jsonParsed", "maxSupportedTransactionVersion": 0, "commitment": "confirmed"}],
        )
        if not tx:
            return None

        meta = tx.get("meta") or {}
        block_time = datetime.fromtimestamp(tx["blockTime"], timezone.utc) if tx.get("blockTime") else None
        mint = self.usdc_tokens.get("solana")

        deltas = _token_deltas(meta.get("preTokenBalances") or [], meta.get("postTokenBalances") or [], mint)
        credited = {owner: d for owner, d in deltas.items() if d > 0}
        if credited:
            recipient, amount = max(credited.items(), key=lambda kv: kv[1])
            asset = "USDC"
        else:
            recipient, amount, asset = None, Decimal("0"), "SOL"

        return ChainTransfer(
            tx_hash=signature,
            network="solana",
            to_address=recipient,
            amount=amount,
            asset=asset,
            succeeded=meta.get("err") is None,
            confirmed=True,
            block_time=block_time,
        )


def _ui_amount(balance: Dict[str, Any]) -> Decimal:
    ui = balance.get("uiTokenAmount") or {}
    if ui.get("uiAmountString") is not None:
        return Decimal(ui["uiAmountString"])
    return Decimal(int(ui.get("amount") or 0)) / Decimal(10 ** int(ui.get("decimals") or USDC_DECIMALS))


def _token_deltas(pre: List[Dict[str, Any]], post: List[Dict[str, Any]], mint: Optional[str]) -> Dict[str, Decimal]:
    """Per-owner change in `mint` balance across the transaction."""
    deltas: Dict[str, Decimal] = {}
    for sign, balances in ((-1, pre), (1, post)):
        for bal in balances:
            if bal.get("mint") != mint or not bal.get("owner"):
                continue
            deltas[bal["owner"]] = deltas.get(bal["owner"], Decimal("0")) + sign * _ui_amount(bal)
    return deltas
