"""
Test helpers shared across the Custodia suite: fixture keys, addresses and a
scripted fake JSON-RPC node.
"""

from __future__ import annotations

from eth_abi import encode

from custodia_core import erc20
from custodia_core.crypto_utils import keccak256
from custodia_core.gateway import GatewayConfig
from custodia_core.rpc import RpcResponseError

# Private key 0x00..01 and its well-known address.
KEY_ONE = bytes(31) + b"\x01"
KEY_ONE_ADDRESS = "0x7E5F4552091A69125d5DfCb7b8C2659029395Bdf"

TOKEN = "0xdAC17F958D2ee523a2206206994597C13D831ec7"
RECIPIENT = "0x5aAeb6053F3E94C9b9A09f33669435E7Ef1BeAed"

# Cheap KDF parameters so fixtures build in milliseconds.
FAST_SCRYPT = {"kdf": "scrypt", "n": 1024, "r": 8, "p": 1}
FAST_PBKDF2 = {"kdf": "pbkdf2", "iterations": 1000}


def _word(value: int) -> str:
    return "0x" + encode(["uint256"], [value]).hex()


class FakeNode:
    """
    Scripted stand-in for ``RpcClient`` that answers the handful of
    JSON-RPC methods the gateway uses and records every call.
    """

    def __init__(
        self,
        *,
        chain_id: int = 1,
        decimals: int = 6,
        symbol: str | None = "USDT",
        token_balance: int = 25_000_000,
        native_balance: int = 2 * 10**18,
        base_fee: int | None = 10**9,
        auto_mine: bool = True,
        receipt_status: int = 1,
    ):
        self.chain_id = chain_id
        self.decimals = decimals
        self.symbol = symbol
        self.symbol_raw: str | None = None
        self.token_balance = token_balance
        self.native_balance = native_balance
        self.base_fee = base_fee
        self.auto_mine = auto_mine
        self.receipt_status = receipt_status
        self.nonce = 0
        self.block = 100
        self.calls: list[tuple[str, list, bool]] = []
        self.sent: list[str] = []
        self.served_nonces: list[int] = []
        self.receipts: dict[str, dict] = {}
        self.errors: dict[str, Exception] = {}

    def methods(self) -> list[str]:
        return [m for m, _, _ in self.calls]

    async def call(self, method: str, params: list | None = None, *, retry: bool = True):
        params = params or []
        self.calls.append((method, params, retry))
        if method in self.errors:
            raise self.errors[method]
        handler = getattr(self, "_" + method)
        return handler(params)

    async def close(self) -> None:
        pass

    # ── method handlers ──────────────────────────────────────────

    def _eth_chainId(self, params):
        return hex(self.chain_id)

    def _eth_getBalance(self, params):
        return hex(self.native_balance)

    def _eth_call(self, params):
        data = params[0]["data"]
        selector = bytes.fromhex(data[2:10])
        if selector == erc20.DECIMALS_SELECTOR:
            return _word(self.decimals)
        if selector == erc20.SYMBOL_SELECTOR:
            if self.symbol_raw is not None:
                return self.symbol_raw
            if self.symbol is None:
                raise RpcResponseError("eth_call", 3, "execution reverted")
            return "0x" + encode(["string"], [self.symbol]).hex()
        if selector == erc20.BALANCE_OF_SELECTOR:
            return _word(self.token_balance)
        raise RpcResponseError("eth_call", -32601, "unknown selector")

    def _eth_getTransactionCount(self, params):
        self.served_nonces.append(self.nonce)
        return hex(self.nonce)

    def _eth_estimateGas(self, params):
        return hex(50_000)

    def _eth_getBlockByNumber(self, params):
        block = {"number": hex(self.block)}
        if self.base_fee is not None:
            block["baseFeePerGas"] = hex(self.base_fee)
        return block

    def _eth_gasPrice(self, params):
        return hex(20 * 10**9)

    def _eth_blockNumber(self, params):
        return hex(self.block)

    def _eth_sendRawTransaction(self, params):
        raw = params[0]
        tx_hash = "0x" + keccak256(bytes.fromhex(raw[2:])).hex()
        self.sent.append(raw)
        self.nonce += 1
        if self.auto_mine:
            self.receipts[tx_hash] = {
                "transactionHash": tx_hash,
                "blockNumber": hex(self.block),
                "blockHash": "0x" + "ab" * 32,
                "gasUsed": hex(46_000),
                "status": hex(self.receipt_status),
            }
        return tx_hash

    def _eth_getTransactionReceipt(self, params):
        return self.receipts.get(params[0])


def fast_gateway_config(**overrides) -> GatewayConfig:
    defaults = {
        "chain_id": 1,
        "token_address": TOKEN,
        "default_symbol": "USDT",
        "confirm_timeout": 1.0,
        "poll_interval": 0.0,
    }
    defaults.update(overrides)
    return GatewayConfig(**defaults)


