"""
ChainGateway — bridges the held signing identity to the blockchain node.

Read paths (balances, token metadata, receipts) go through the RPC client's
bounded retry.  The transfer path validates everything it can locally first,
then allocates a nonce, signs and submits under a gateway-wide lock, and
finally polls for the receipt.  Submission is attempted exactly once; the
caller only ever sees a confirmed receipt or a typed error.
"""

from __future__ import annotations

import asyncio
import logging
import math
from dataclasses import asdict, dataclass
from typing import TYPE_CHECKING, Any

from custodia_core import erc20
from custodia_core.amounts import NATIVE_DECIMALS, Amount, parse_units
from custodia_core.crypto_utils import is_valid_address, to_checksum_address
from custodia_core.errors import (
    InvalidRecipient,
    NodeUnavailable,
    NoIdentityLoaded,
    TransferFailed,
)
from custodia_core.rpc import RpcClient, RpcResponseError

if TYPE_CHECKING:
    from custodia_core.config import CustodiaConfig
    from custodia_core.session import SessionKeyStore, SigningIdentity

logger = logging.getLogger("custodia_gateway")

GWEI = 10**9


@dataclass(frozen=True)
class TokenInfo:
    address: str
    symbol: str
    decimals: int

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class TransferReceipt:
    """Outcome of a mined transfer.  Never built from a submission alone."""

    tx_hash: str
    status: str
    block_number: int
    block_hash: str
    gas_used: int

    def to_dict(self) -> dict:
        return {
            "txHash": self.tx_hash,
            "status": self.status,
            "blockNumber": self.block_number,
            "blockHash": self.block_hash,
            "gasUsed": self.gas_used,
        }


@dataclass
class GatewayConfig:
    chain_id: int = 1
    token_address: str = "0xdAC17F958D2ee523a2206206994597C13D831ec7"
    default_symbol: str = "USDT"
    confirmations: int = 1
    confirm_timeout: float = 300.0
    poll_interval: float = 2.0
    priority_fee_wei: int = 1 * GWEI
    gas_multiplier: float = 1.2

    @classmethod
    def from_config(cls, cfg: CustodiaConfig) -> GatewayConfig:
        return cls(
            chain_id=cfg.node.chain_id,
            token_address=cfg.token.address,
            default_symbol=cfg.token.default_symbol,
            confirmations=cfg.transfer.confirmations,
            confirm_timeout=cfg.transfer.confirm_timeout_seconds,
            poll_interval=cfg.transfer.poll_interval_seconds,
            priority_fee_wei=int(cfg.transfer.priority_fee_gwei * GWEI),
            gas_multiplier=cfg.transfer.gas_multiplier,
        )


def _quantity(value: Any) -> int:
    """Decode a JSON-RPC hex quantity."""
    if isinstance(value, int):
        return value
    if not isinstance(value, str) or not value.startswith("0x"):
        raise NodeUnavailable("Node returned a malformed quantity")
    return int(value, 16)


class ChainGateway:
    """Balance reads and token transfers against a single node."""

    def __init__(self, rpc: RpcClient, session: SessionKeyStore, config: GatewayConfig | None = None):
        self._rpc = rpc
        self._session = session
        self.config = config or GatewayConfig()
        self._submit_lock = asyncio.Lock()
        self.chain_id: int | None = None

    # ── reads ────────────────────────────────────────────────────

    async def _read(self, method: str, params: list[Any]) -> Any:
        try:
            return await self._rpc.call(method, params, retry=True)
        except RpcResponseError as exc:
            logger.debug(f"{method} rejected by node: {exc.message}")
            raise NodeUnavailable(f"Node rejected {method}") from None

    async def _eth_call(self, to: str, data: str) -> str:
        return await self._read("eth_call", [{"to": to, "data": data}, "latest"])

    async def check_network(self) -> int:
        """Read the node's chain id and warn when it differs from the expected one."""
        chain_id = _quantity(await self._read("eth_chainId", []))
        if chain_id != self.config.chain_id:
            logger.warning(
                f"Warning: provider chainId {chain_id} != expected {self.config.chain_id}",
                extra={"chain_id": chain_id},
            )
        self.chain_id = chain_id
        return chain_id

    async def get_native_balance(self, address: str) -> Amount:
        raw = _quantity(await self._read("eth_getBalance", [address, "latest"]))
        return Amount(raw, NATIVE_DECIMALS)

    async def get_decimals(self, token: str | None = None) -> int:
        token = token or self.config.token_address
        try:
            decimals = erc20.decode_uint(await self._eth_call(token, erc20.encode_decimals()))
        except ValueError:
            raise NodeUnavailable(f"Token {token} did not return decimals()") from None
        if decimals > 255:
            raise NodeUnavailable(f"Token {token} reported invalid decimals")
        return decimals

    async def get_symbol(self, token: str | None = None) -> str:
        """``symbol()`` with a permissive fallback to the configured default."""
        token = token or self.config.token_address
        try:
            symbol = erc20.decode_symbol(await self._eth_call(token, erc20.encode_symbol()))
        except (NodeUnavailable, ValueError) as exc:
            logger.debug(f"symbol() failed for {token} ({exc}); using default")
            return self.config.default_symbol
        return symbol or self.config.default_symbol

    async def get_token_info(self, token: str | None = None) -> TokenInfo:
        token = token or self.config.token_address
        decimals, symbol = await asyncio.gather(self.get_decimals(token), self.get_symbol(token))
        return TokenInfo(address=token, symbol=symbol, decimals=decimals)

    async def get_token_balance(self, token: str, address: str, decimals: int | None = None) -> Amount:
        if decimals is None:
            decimals = await self.get_decimals(token)
        try:
            raw = erc20.decode_uint(await self._eth_call(token, erc20.encode_balance_of(address)))
        except ValueError:
            raise NodeUnavailable(f"Token {token} did not return balanceOf()") from None
        return Amount(raw, decimals)

    # ── transfer ─────────────────────────────────────────────────

    async def _fee_fields(self) -> dict[str, Any]:
        """EIP-1559 fees when the chain reports a base fee, legacy gas price otherwise."""
        block = await self._read("eth_getBlockByNumber", ["latest", False])
        base_fee = block.get("baseFeePerGas") if isinstance(block, dict) else None
        if base_fee is not None:
            priority = self.config.priority_fee_wei
            return {
                "type": 2,
                "maxFeePerGas": _quantity(base_fee) * 2 + priority,
                "maxPriorityFeePerGas": priority,
                "accessList": [],
            }
        return {"gasPrice": _quantity(await self._read("eth_gasPrice", []))}

    async def _estimate_gas(self, call: dict[str, Any]) -> int:
        try:
            estimate = await self._rpc.call("eth_estimateGas", [call], retry=True)
        except RpcResponseError as exc:
            raise TransferFailed("Node rejected the transfer", node_message=exc.message) from None
        return math.ceil(_quantity(estimate) * self.config.gas_multiplier)

    async def transfer_token(self, token: str | None, to: str, human_amount: str) -> TransferReceipt:
        """
        Send ``human_amount`` of *token* to *to* and wait for confirmation.

        Raises ``InvalidRecipient`` / ``InvalidAmount`` before touching the
        node for anything beyond ``decimals()``; ``TransferFailed`` when the
        node rejects or reverts; ``NodeUnavailable`` on connectivity loss or
        when confirmation does not arrive in time.
        """
        if not is_valid_address(to):
            raise InvalidRecipient()
        to = to_checksum_address(to)
        token = to_checksum_address(token or self.config.token_address)

        sender = await self._session.current_address()
        if sender is None:
            raise NoIdentityLoaded()

        decimals = await self.get_decimals(token)
        value = parse_units(human_amount, decimals)
        data = erc20.encode_transfer(to, value)
        logger.info(f"Transfer {human_amount} ({value} base units) of {token} from {sender} to {to}")

        async with self._submit_lock:
            chain_id = self.chain_id if self.chain_id is not None else await self.check_network()
            nonce = _quantity(await self._read("eth_getTransactionCount", [sender, "pending"]))
            gas = await self._estimate_gas({"from": sender, "to": token, "data": data, "value": "0x0"})
            tx: dict[str, Any] = {
                "chainId": chain_id,
                "nonce": nonce,
                "to": token,
                "value": 0,
                "data": data,
                "gas": gas,
            }
            tx.update(await self._fee_fields())

            def _sign(identity: SigningIdentity) -> Any:
                if identity.address != sender:
                    raise NoIdentityLoaded("Wallet changed during the transfer; nothing was sent")
                return identity.sign_transaction(tx)

            signed = await self._session.with_identity(_sign)
            tx_hash = "0x" + bytes(signed.hash).hex()
            raw_tx = "0x" + bytes(signed.raw_transaction).hex()

            try:
                await self._rpc.call("eth_sendRawTransaction", [raw_tx], retry=False)
            except RpcResponseError as exc:
                raise TransferFailed(
                    "Node rejected the transfer", node_message=exc.message, tx_hash=tx_hash
                ) from None
            except NodeUnavailable:
                raise NodeUnavailable(
                    f"Submission state of {tx_hash} is unknown; check it on-chain before sending again"
                ) from None
        logger.info(
            "Submitted; waiting for confirmation",
            extra={"tx_hash": tx_hash, "address": sender, "nonce": nonce, "chain_id": chain_id},
        )
        return await self.wait_for_receipt(tx_hash)

    async def wait_for_receipt(self, tx_hash: str) -> TransferReceipt:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.config.confirm_timeout
        while True:
            try:
                receipt = await self._read("eth_getTransactionReceipt", [tx_hash])
                if receipt:
                    block_number = _quantity(receipt["blockNumber"])
                    if _quantity(receipt.get("status", "0x1")) == 0:
                        raise TransferFailed(
                            "Transaction reverted", node_message="execution reverted", tx_hash=tx_hash
                        )
                    if await self._confirmed(block_number):
                        logger.info("Confirmed", extra={"tx_hash": tx_hash, "block": block_number})
                        return TransferReceipt(
                            tx_hash=tx_hash,
                            status="success",
                            block_number=block_number,
                            block_hash=receipt.get("blockHash", ""),
                            gas_used=_quantity(receipt.get("gasUsed", "0x0")),
                        )
            except NodeUnavailable as exc:
                logger.warning(f"Receipt poll failed: {exc.message}", extra={"tx_hash": tx_hash})
            if loop.time() >= deadline:
                raise NodeUnavailable(
                    f"Transaction {tx_hash} was submitted but not confirmed "
                    f"within {self.config.confirm_timeout:g}s"
                )
            await asyncio.sleep(self.config.poll_interval)

    async def _confirmed(self, block_number: int) -> bool:
        if self.config.confirmations <= 1:
            return True
        head = _quantity(await self._read("eth_blockNumber", []))
        return head - block_number + 1 >= self.config.confirmations
