"""
Cryptographic helpers for Custodia.

  - Keccak-256 (the pre-standard SHA-3 variant used by Ethereum)
  - secp256k1 public-key and address derivation
  - EIP-55 mixed-case checksum encoding and address validation
  - In-place wiping of mutable secret buffers
"""

from __future__ import annotations

import re

from Crypto.Hash import keccak
from ecdsa import SECP256k1, SigningKey

_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}\Z")

# Order of the secp256k1 group; valid private keys lie in [1, N).
SECP256K1_N: int = SECP256k1.order


def keccak256(data: bytes | bytearray) -> bytes:
    """Return the 32-byte Keccak-256 digest of *data*."""
    return keccak.new(digest_bits=256, data=bytes(data)).digest()


def wipe(buf: bytearray | None) -> None:
    """Overwrite a mutable buffer with zeros."""
    if buf is None:
        return
    for i in range(len(buf)):
        buf[i] = 0


def is_valid_private_key(key: bytes | bytearray) -> bool:
    if len(key) != 32:
        return False
    k = int.from_bytes(key, "big")
    return 0 < k < SECP256K1_N


def public_key_from_private(private_key: bytes | bytearray) -> bytes:
    """Uncompressed 64-byte public key (X || Y, no 0x04 prefix)."""
    sk = SigningKey.from_string(bytes(private_key), curve=SECP256k1)
    return sk.get_verifying_key().to_string()


def address_from_public_key(public_key: bytes) -> str:
    """Checksummed address: last 20 bytes of keccak256(pubkey)."""
    if len(public_key) == 65 and public_key[0] == 0x04:
        public_key = public_key[1:]
    if len(public_key) != 64:
        raise ValueError("public key must be 64 bytes (uncompressed, unprefixed)")
    return to_checksum_address("0x" + keccak256(public_key)[-20:].hex())


def derive_address(private_key: bytes | bytearray) -> str:
    return address_from_public_key(public_key_from_private(private_key))


def to_checksum_address(address: str) -> str:
    """EIP-55 encode a 20-byte hex address."""
    if not _ADDRESS_RE.match(address):
        raise ValueError("address must be 0x followed by 40 hex characters")
    lower = address[2:].lower()
    digest = keccak256(lower.encode("ascii")).hex()
    out = []
    for ch, nibble in zip(lower, digest):
        if ch.isalpha() and int(nibble, 16) >= 8:
            out.append(ch.upper())
        else:
            out.append(ch)
    return "0x" + "".join(out)


def is_valid_address(address: object) -> bool:
    """
    True when *address* is a well-formed 20-byte hex address.

    All-lowercase and all-uppercase forms carry no checksum and are
    accepted as-is.  Mixed-case input must match its EIP-55 encoding.
    """
    if not isinstance(address, str) or not _ADDRESS_RE.match(address):
        return False
    body = address[2:]
    if body == body.lower() or body == body.upper():
        return True
    return to_checksum_address(address) == address
