"""
Shared pytest fixtures for the Custodia test suite.
"""

from __future__ import annotations

import pytest

from custodia_core.gateway import ChainGateway
from custodia_core.keystore import encrypt_keystore
from custodia_core.service import CustodyService
from custodia_core.session import SessionKeyStore, SigningIdentity

from helpers import FAST_SCRYPT, KEY_ONE, FakeNode, fast_gateway_config


@pytest.fixture
def key_one_keystore():
    """v3 keystore for KEY_ONE under password ``correct`` (scrypt)."""
    return encrypt_keystore(KEY_ONE, "correct", **FAST_SCRYPT)


@pytest.fixture
def identity():
    return SigningIdentity(bytearray(KEY_ONE))


@pytest.fixture
def fake_node():
    return FakeNode()


@pytest.fixture
def session():
    return SessionKeyStore()


@pytest.fixture
def gateway(fake_node, session):
    return ChainGateway(fake_node, session, fast_gateway_config())


@pytest.fixture
def service(gateway, session):
    return CustodyService(gateway, session)
