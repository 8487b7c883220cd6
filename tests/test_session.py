"""
Tests for custodia_core.session — SigningIdentity and SessionKeyStore.

Covers:
  - Identity exposes its address, signs, and refuses serialisation
  - Wiping zeroes the key and disables signing
  - set() replaces and wipes the previous identity
  - with_identity() lends exactly once and never returns key material
  - clear() and NoIdentityLoaded
  - Re-import racing a signing callback
"""

from __future__ import annotations

import asyncio
import copy
import pickle

import pytest
from eth_account import Account

from custodia_core.errors import NoIdentityLoaded
from custodia_core.session import SessionKeyStore, SigningIdentity

from helpers import KEY_ONE, KEY_ONE_ADDRESS, RECIPIENT

OTHER_KEY = bytes(31) + b"\x02"

SAMPLE_TX = {
    "chainId": 1,
    "nonce": 0,
    "to": RECIPIENT,
    "value": 0,
    "data": "0x",
    "gas": 21_000,
    "maxFeePerGas": 3 * 10**9,
    "maxPriorityFeePerGas": 10**9,
    "type": 2,
    "accessList": [],
}


# ═══════════════════════════════════════════════════════════════════
#  SigningIdentity
# ═══════════════════════════════════════════════════════════════════

class TestSigningIdentity:

    def test_address_derived(self, identity):
        assert identity.address == KEY_ONE_ADDRESS

    def test_requires_bytearray(self):
        with pytest.raises(TypeError):
            SigningIdentity(KEY_ONE)  # type: ignore[arg-type]

    def test_rejects_invalid_scalar(self):
        with pytest.raises(ValueError):
            SigningIdentity(bytearray(32))

    def test_signature_recovers_to_address(self, identity):
        signed = identity.sign_transaction(SAMPLE_TX)
        assert Account.recover_transaction(signed.raw_transaction) == KEY_ONE_ADDRESS

    def test_not_picklable(self, identity):
        with pytest.raises(TypeError):
            pickle.dumps(identity)

    def test_not_copyable(self, identity):
        with pytest.raises(TypeError):
            copy.copy(identity)
        with pytest.raises(TypeError):
            copy.deepcopy(identity)

    def test_repr_shows_only_address(self, identity):
        assert repr(identity) == f"SigningIdentity({KEY_ONE_ADDRESS})"

    def test_wipe_zeroes_and_disables_signing(self):
        buf = bytearray(KEY_ONE)
        identity = SigningIdentity(buf)
        identity.wipe()
        assert buf == bytearray(32)
        assert identity.wiped
        with pytest.raises(NoIdentityLoaded):
            identity.sign_transaction(SAMPLE_TX)

    def test_holds(self, identity):
        assert identity.holds(identity)
        assert identity.holds(KEY_ONE)
        assert identity.holds(b"prefix" + KEY_ONE)
        assert not identity.holds(b"unrelated")
        assert not identity.holds("string")


# ═══════════════════════════════════════════════════════════════════
#  SessionKeyStore
# ═══════════════════════════════════════════════════════════════════

@pytest.mark.asyncio
class TestSessionKeyStore:

    async def test_empty_store(self, session):
        assert not session.loaded
        assert await session.current_address() is None
        with pytest.raises(NoIdentityLoaded):
            await session.with_identity(lambda ident: ident.address)

    async def test_set_and_read(self, session, identity):
        await session.set(identity)
        assert session.loaded
        assert await session.current_address() == KEY_ONE_ADDRESS

    async def test_replace_wipes_previous(self, session):
        first_buf = bytearray(KEY_ONE)
        first = SigningIdentity(first_buf)
        second = SigningIdentity(bytearray(OTHER_KEY))
        await session.set(first)
        await session.set(second)
        assert first_buf == bytearray(32)
        assert await session.current_address() == second.address

    async def test_set_same_identity_keeps_key(self, session, identity):
        await session.set(identity)
        await session.set(identity)
        assert not identity.wiped

    async def test_clear_wipes(self, session):
        buf = bytearray(KEY_ONE)
        await session.set(SigningIdentity(buf))
        await session.clear()
        assert buf == bytearray(32)
        assert not session.loaded
        with pytest.raises(NoIdentityLoaded):
            await session.with_identity(lambda ident: None)

    async def test_clear_empty_is_noop(self, session):
        await session.clear()
        assert not session.loaded

    async def test_with_identity_returns_callback_result(self, session, identity):
        await session.set(identity)
        signed = await session.with_identity(lambda ident: ident.sign_transaction(SAMPLE_TX))
        assert Account.recover_transaction(signed.raw_transaction) == KEY_ONE_ADDRESS

    async def test_with_identity_refuses_to_leak_identity(self, session, identity):
        await session.set(identity)
        with pytest.raises(TypeError):
            await session.with_identity(lambda ident: ident)

    async def test_with_identity_refuses_to_leak_key_bytes(self, session, identity):
        await session.set(identity)
        with pytest.raises(TypeError):
            await session.with_identity(lambda ident: bytes(ident._key))

    async def test_callback_error_releases_lock(self, session, identity):
        await session.set(identity)

        def boom(ident):
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError):
            await session.with_identity(boom)
        assert await session.current_address() == KEY_ONE_ADDRESS

    async def test_reimport_waits_for_lent_identity(self, session, identity):
        await session.set(identity)
        seen: list[str] = []
        started = asyncio.Event()

        async def slow_sign():
            def fn(ident):
                seen.append(ident.address)
                return ident.sign_transaction(SAMPLE_TX)
            # Hold the lock across a yield point to force contention.
            async with session._lock:
                started.set()
                await asyncio.sleep(0.01)
            return await session.with_identity(fn)

        async def reimport():
            await started.wait()
            await session.set(SigningIdentity(bytearray(OTHER_KEY)))

        signed, _ = await asyncio.gather(slow_sign(), reimport())
        # Whichever identity signed, it signed whole: signature recovers to
        # the address the callback observed.
        assert Account.recover_transaction(signed.raw_transaction) == seen[0]
