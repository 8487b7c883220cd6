"""
Encrypted keystore decryption (Web3 Secret Storage, version 3).

A v3 keystore is a JSON document of the form::

    {
      "version": 3,
      "id": "...",
      "address": "008aeeda4d80...",
      "crypto": {
        "cipher": "aes-128-ctr",
        "cipherparams": {"iv": "<16 bytes hex>"},
        "ciphertext": "<hex>",
        "kdf": "scrypt" | "pbkdf2",
        "kdfparams": {...},
        "mac": "<32 bytes hex>"
      }
    }

Decryption proceeds strictly in this order:

1. Parse and validate every field against the supported allow-list.
   Nothing expensive happens for a document that is going to be rejected.
2. Derive the key from the password with the declared KDF.
3. Verify ``keccak256(dk[16:32] || ciphertext)`` against the stored MAC in
   constant time.  A mismatch is reported as ``InvalidPassword`` whether the
   password was wrong or the file was tampered with.
4. Only then decrypt the ciphertext with AES-128-CTR under ``dk[:16]``.

All intermediate secret buffers are ``bytearray``s and are zeroed before
returning, on success or failure.
"""

from __future__ import annotations

import hmac
import json
import logging
import os
import unicodedata
import uuid
from dataclasses import dataclass
from typing import Any, Mapping, Union

from Crypto.Cipher import AES
from Crypto.Hash import SHA256
from Crypto.Protocol.KDF import PBKDF2, scrypt

from custodia_core.crypto_utils import (
    derive_address,
    is_valid_private_key,
    keccak256,
    wipe,
)
from custodia_core.errors import InvalidPassword, UnsupportedFormat
from custodia_core.session import SigningIdentity

logger = logging.getLogger("custodia_keystore")

SUPPORTED_VERSION = 3
SUPPORTED_CIPHERS = frozenset({"aes-128-ctr"})
SUPPORTED_KDFS = frozenset({"scrypt", "pbkdf2"})
SUPPORTED_PRFS = frozenset({"hmac-sha256"})

# Work-factor bounds.  Anything above these would let a hostile document
# pin the process on a single import.
MAX_SCRYPT_N = 1 << 20
# scrypt needs 128·r·n bytes for its main loop and 128·r·p for the
# PBKDF2 stage; geth's standard parameters sit exactly at this cap.
MAX_SCRYPT_MEM = 256 * 1024 * 1024
MAX_PBKDF2_ITERATIONS = 10_000_000
MIN_DKLEN = 32

# Defaults used by ``encrypt_keystore`` (geth "standard" work factors).
DEFAULT_SCRYPT_N = 262_144
DEFAULT_SCRYPT_R = 8
DEFAULT_SCRYPT_P = 1
DEFAULT_PBKDF2_ITERATIONS = 262_144

Password = Union[str, bytes, bytearray]


# ═══════════════════════════════════════════════════════════════════
#  Typed document
# ═══════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class ScryptParams:
    n: int
    r: int
    p: int
    dklen: int
    salt: bytes
    name: str = "scrypt"

    def derive(self, password: bytearray) -> bytearray:
        return bytearray(scrypt(bytes(password), self.salt, self.dklen, self.n, self.r, self.p))

    def to_dict(self) -> dict[str, Any]:
        return {"dklen": self.dklen, "n": self.n, "r": self.r, "p": self.p, "salt": self.salt.hex()}


@dataclass(frozen=True)
class Pbkdf2Params:
    c: int
    dklen: int
    salt: bytes
    prf: str = "hmac-sha256"
    name: str = "pbkdf2"

    def derive(self, password: bytearray) -> bytearray:
        return bytearray(
            PBKDF2(bytes(password), self.salt, dkLen=self.dklen, count=self.c, hmac_hash_module=SHA256)
        )

    def to_dict(self) -> dict[str, Any]:
        return {"c": self.c, "dklen": self.dklen, "prf": self.prf, "salt": self.salt.hex()}


KdfParams = Union[ScryptParams, Pbkdf2Params]


@dataclass(frozen=True)
class EncryptedKeystore:
    """A validated v3 keystore.  Immutable; never persisted."""

    version: int
    cipher: str
    iv: bytes
    ciphertext: bytes
    kdf: KdfParams
    mac: bytes
    address: str | None = None
    id: str | None = None


# ═══════════════════════════════════════════════════════════════════
#  Parsing
# ═══════════════════════════════════════════════════════════════════

def _hex_field(name: str, value: Any, length: int | None = None) -> bytes:
    if not isinstance(value, str):
        raise UnsupportedFormat(f"Keystore field '{name}' must be a hex string")
    text = value[2:] if value.startswith(("0x", "0X")) else value
    try:
        raw = bytes.fromhex(text)
    except ValueError:
        raise UnsupportedFormat(f"Keystore field '{name}' is not valid hex") from None
    if length is not None and len(raw) != length:
        raise UnsupportedFormat(f"Keystore field '{name}' must be {length} bytes")
    return raw


def _int_field(name: str, params: Mapping[str, Any], minimum: int = 1, maximum: int | None = None) -> int:
    value = params.get(name)
    if isinstance(value, bool) or not isinstance(value, int):
        raise UnsupportedFormat(f"KDF parameter '{name}' must be an integer")
    if value < minimum or (maximum is not None and value > maximum):
        raise UnsupportedFormat(f"KDF parameter '{name}' is out of range")
    return value


def _parse_kdf(kdf: Any, params: Any) -> KdfParams:
    if kdf not in SUPPORTED_KDFS:
        raise UnsupportedFormat(f"Unsupported key derivation function: {kdf!r}")
    if not isinstance(params, Mapping):
        raise UnsupportedFormat("Keystore 'kdfparams' must be an object")

    dklen = _int_field("dklen", params, minimum=MIN_DKLEN, maximum=1024)
    salt = _hex_field("salt", params.get("salt"))
    if not salt:
        raise UnsupportedFormat("KDF salt must not be empty")

    if kdf == "scrypt":
        n = _int_field("n", params, minimum=2, maximum=MAX_SCRYPT_N)
        if n & (n - 1):
            raise UnsupportedFormat("scrypt parameter 'n' must be a power of two")
        r = _int_field("r", params)
        p = _int_field("p", params)
        if r * p >= 1 << 30:
            raise UnsupportedFormat("scrypt parameters 'r' * 'p' are too large")
        if 128 * r * n > MAX_SCRYPT_MEM or 128 * r * p > MAX_SCRYPT_MEM:
            raise UnsupportedFormat("scrypt parameters exceed the memory limit")
        return ScryptParams(n=n, r=r, p=p, dklen=dklen, salt=salt)

    prf = params.get("prf")
    if prf not in SUPPORTED_PRFS:
        raise UnsupportedFormat(f"Unsupported pbkdf2 prf: {prf!r}")
    c = _int_field("c", params, maximum=MAX_PBKDF2_ITERATIONS)
    return Pbkdf2Params(c=c, dklen=dklen, salt=salt, prf=prf)


def _parse_address_hint(value: Any) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise UnsupportedFormat("Keystore 'address' must be a string")
    text = value[2:] if value.startswith(("0x", "0X")) else value
    if len(text) != 40:
        raise UnsupportedFormat("Keystore 'address' must be 20 bytes")
    _hex_field("address", text)
    return text.lower()


def parse_keystore(document: bytes | bytearray | str | Mapping[str, Any]) -> EncryptedKeystore:
    """Decode *document* into an ``EncryptedKeystore`` or raise ``UnsupportedFormat``."""
    if isinstance(document, EncryptedKeystore):
        return document
    if isinstance(document, (bytes, bytearray)):
        try:
            document = bytes(document).decode("utf-8-sig")
        except UnicodeDecodeError:
            raise UnsupportedFormat("Keystore is not UTF-8 text") from None
    if isinstance(document, str):
        try:
            document = json.loads(document)
        except json.JSONDecodeError:
            raise UnsupportedFormat("Keystore is not valid JSON") from None
    if not isinstance(document, Mapping):
        raise UnsupportedFormat("Keystore must be a JSON object")

    version = document.get("version")
    if isinstance(version, bool) or not isinstance(version, int) or version != SUPPORTED_VERSION:
        raise UnsupportedFormat(f"Unsupported keystore version: {version!r}")

    crypto = document.get("crypto", document.get("Crypto"))
    if not isinstance(crypto, Mapping):
        raise UnsupportedFormat("Keystore is missing its 'crypto' section")

    cipher = crypto.get("cipher")
    if cipher not in SUPPORTED_CIPHERS:
        raise UnsupportedFormat(f"Unsupported cipher: {cipher!r}")
    cipherparams = crypto.get("cipherparams")
    if not isinstance(cipherparams, Mapping):
        raise UnsupportedFormat("Keystore 'cipherparams' must be an object")

    ks_id = document.get("id")
    return EncryptedKeystore(
        version=version,
        cipher=cipher,
        iv=_hex_field("iv", cipherparams.get("iv"), length=16),
        ciphertext=_hex_field("ciphertext", crypto.get("ciphertext")),
        kdf=_parse_kdf(crypto.get("kdf"), crypto.get("kdfparams")),
        mac=_hex_field("mac", crypto.get("mac"), length=32),
        address=_parse_address_hint(document.get("address")),
        id=ks_id if isinstance(ks_id, str) else None,
    )


# ═══════════════════════════════════════════════════════════════════
#  Decrypt / encrypt
# ═══════════════════════════════════════════════════════════════════

def _password_buffer(password: Password) -> bytearray:
    """
    Copy *password* into a wipeable buffer of NFKC-normalised UTF-8.

    Byte passwords get the same normalisation as ``str`` ones so a form
    upload and a direct call agree.  ASCII is NFKC-stable and is copied
    without decoding; bytes that are not UTF-8 are used verbatim.
    """
    if isinstance(password, str):
        return bytearray(unicodedata.normalize("NFKC", password).encode("utf-8"))
    if not isinstance(password, (bytes, bytearray, memoryview)):
        raise TypeError("password must be str, bytes or bytearray")
    buf = bytearray(password)
    if buf.isascii():
        return buf
    try:
        text = buf.decode("utf-8")
    except UnicodeDecodeError:
        return buf
    normalised = bytearray(unicodedata.normalize("NFKC", text).encode("utf-8"))
    wipe(buf)
    return normalised


def _mac(derived: bytearray, ciphertext: bytes) -> bytes:
    return keccak256(bytes(derived[16:32]) + ciphertext)


def _aes_ctr(key: bytearray, iv: bytes, data: bytes) -> bytearray:
    cipher = AES.new(bytes(key[:16]), AES.MODE_CTR, nonce=b"", initial_value=iv)
    return bytearray(cipher.decrypt(data))


def decrypt(document: Any, password: Password) -> SigningIdentity:
    """
    Recover the signing identity protected by *document*.

    A ``bytearray`` password is consumed: it is zeroed before this function
    returns.  Raises ``UnsupportedFormat`` or ``InvalidPassword``.
    """
    try:
        ks = parse_keystore(document)
    except UnsupportedFormat:
        if isinstance(password, bytearray):
            wipe(password)
        raise

    pw = _password_buffer(password)
    if isinstance(password, bytearray):
        wipe(password)
    derived: bytearray | None = None
    plaintext: bytearray | None = None
    try:
        derived = ks.kdf.derive(pw)
        wipe(pw)
        if not hmac.compare_digest(_mac(derived, ks.ciphertext), ks.mac):
            raise InvalidPassword()

        plaintext = _aes_ctr(derived, ks.iv, ks.ciphertext)
        if not is_valid_private_key(plaintext):
            raise UnsupportedFormat("Keystore does not contain a valid secp256k1 key")
        address = derive_address(plaintext)
        if ks.address is not None and ks.address != address[2:].lower():
            raise UnsupportedFormat("Keystore address does not match its key")

        identity = SigningIdentity(plaintext, address)
        plaintext = None  # owned by the identity now
        logger.debug(f"Decrypted keystore for {address} ({ks.kdf.name})")
        return identity
    finally:
        wipe(pw)
        wipe(derived)
        wipe(plaintext)


def encrypt_keystore(
    private_key: bytes | bytearray,
    password: Password,
    *,
    kdf: str = "scrypt",
    n: int = DEFAULT_SCRYPT_N,
    r: int = DEFAULT_SCRYPT_R,
    p: int = DEFAULT_SCRYPT_P,
    iterations: int = DEFAULT_PBKDF2_ITERATIONS,
) -> dict[str, Any]:
    """
    Produce a v3 keystore document for *private_key*.

    The result is a plain dict; writing it anywhere is the caller's choice.
    """
    if not is_valid_private_key(private_key):
        raise ValueError("private key is not a valid secp256k1 scalar")
    if kdf == "scrypt":
        params: KdfParams = ScryptParams(n=n, r=r, p=p, dklen=32, salt=os.urandom(32))
    elif kdf == "pbkdf2":
        params = Pbkdf2Params(c=iterations, dklen=32, salt=os.urandom(32))
    else:
        raise ValueError(f"unsupported kdf {kdf!r}")

    pw = _password_buffer(password)
    derived: bytearray | None = None
    try:
        derived = params.derive(pw)
        iv = os.urandom(16)
        ciphertext = bytes(_aes_ctr(derived, iv, bytes(private_key)))
        mac = _mac(derived, ciphertext)
    finally:
        wipe(pw)
        wipe(derived)

    return {
        "version": SUPPORTED_VERSION,
        "id": str(uuid.uuid4()),
        "address": derive_address(private_key)[2:].lower(),
        "crypto": {
            "cipher": "aes-128-ctr",
            "cipherparams": {"iv": iv.hex()},
            "ciphertext": ciphertext.hex(),
            "kdf": params.name,
            "kdfparams": params.to_dict(),
            "mac": mac.hex(),
        },
    }
