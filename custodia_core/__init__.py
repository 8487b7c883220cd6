"""
Custodia - single-user, local-only custody of an encrypted keystore.

Key features:
- Web3 Secret Storage (v3) keystore decryption (scrypt / pbkdf2, AES-128-CTR)
- Constant-time MAC verification before any decryption
- In-memory key custody with explicit wiping and a serialised session store
- ERC-20 balance reads and confirmed token transfers over JSON-RPC
- Explicit, read-only retry policy; submissions are never retried
"""

__version__ = "0.1.0"
__all__ = [
    "amounts",
    "api",
    "config",
    "crypto_utils",
    "erc20",
    "errors",
    "gateway",
    "keystore",
    "rpc",
    "service",
    "session",
]
