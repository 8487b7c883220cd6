"""
Core-facing interface used by the HTTP layer.

``CustodyService`` wires together the keystore decryptor, the session key
store and the chain gateway:

    import_keystore(raw_document, password) -> ImportResult
    get_balances(address=None)             -> Balances
    send_token(to, amount)                 -> TransferReceipt
    clear()
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

from custodia_core import keystore
from custodia_core.amounts import Amount
from custodia_core.config import CustodiaConfig
from custodia_core.crypto_utils import is_valid_address, to_checksum_address, wipe
from custodia_core.errors import InvalidRecipient, NoIdentityLoaded
from custodia_core.gateway import ChainGateway, GatewayConfig, TokenInfo, TransferReceipt
from custodia_core.rpc import RetryPolicy, RpcClient
from custodia_core.session import SessionKeyStore

logger = logging.getLogger("custodia_service")


@dataclass(frozen=True)
class Balances:
    address: str
    native: Amount
    token: TokenInfo
    token_balance: Amount

    def to_dict(self) -> dict:
        return {
            "address": self.address,
            "native": str(self.native),
            "token": {
                "address": self.token.address,
                "symbol": self.token.symbol,
                "decimals": self.token.decimals,
                "balance": str(self.token_balance),
            },
        }


@dataclass(frozen=True)
class ImportResult:
    address: str
    chain_id: int
    balances: Balances

    def to_dict(self) -> dict:
        return {"address": self.address, "chainId": self.chain_id, **self.balances.to_dict()}


class CustodyService:
    """Single-operator custody session over one node and one token."""

    def __init__(self, gateway: ChainGateway, session: SessionKeyStore, rpc: RpcClient | None = None):
        self.gateway = gateway
        self.session = session
        self._rpc = rpc

    @classmethod
    def from_config(cls, cfg: CustodiaConfig) -> CustodyService:
        rpc = RpcClient(
            cfg.node.rpc_url,
            timeout=cfg.node.timeout_seconds,
            retry_policy=RetryPolicy(
                attempts=max(1, cfg.node.read_retries),
                backoff_seconds=cfg.node.retry_backoff_seconds,
            ),
        )
        session = SessionKeyStore()
        gateway = ChainGateway(rpc, session, GatewayConfig.from_config(cfg))
        return cls(gateway, session, rpc)

    @property
    def expected_chain_id(self) -> int:
        return self.gateway.config.chain_id

    async def import_keystore(self, raw_document: bytes | str, password: str | bytes | bytearray) -> ImportResult:
        """Decrypt *raw_document*, replace the held identity and report balances."""
        pw = password if isinstance(password, bytearray) else None
        try:
            # The KDF is deliberately slow; keep it off the event loop.
            identity = await asyncio.to_thread(keystore.decrypt, raw_document, password)
        finally:
            wipe(pw)
        await self.session.set(identity)

        chain_id = await self.gateway.check_network()
        balances = await self.get_balances()
        return ImportResult(address=identity.address, chain_id=chain_id, balances=balances)

    async def get_balances(self, address: str | None = None) -> Balances:
        current = await self.session.current_address()
        if current is None:
            raise NoIdentityLoaded()
        if address is None:
            address = current
        elif not is_valid_address(address):
            raise InvalidRecipient("Address is not valid")
        else:
            address = to_checksum_address(address)

        token = self.gateway.config.token_address
        native, info = await asyncio.gather(
            self.gateway.get_native_balance(address),
            self.gateway.get_token_info(token),
        )
        token_balance = await self.gateway.get_token_balance(token, address, info.decimals)
        return Balances(address=address, native=native, token=info, token_balance=token_balance)

    async def send_token(self, to: str, amount: str) -> TransferReceipt:
        if not self.session.loaded:
            raise NoIdentityLoaded()
        return await self.gateway.transfer_token(None, to, amount)

    async def clear(self) -> None:
        await self.session.clear()

    async def close(self) -> None:
        await self.session.clear()
        if self._rpc is not None:
            await self._rpc.close()
