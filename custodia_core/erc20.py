"""
Contract-call encoding for the subset of ERC-20 the service uses:

    decimals()                       view returns (uint8)
    symbol()                         view returns (string)
    balanceOf(address)               view returns (uint256)
    transfer(address,uint256)        returns (bool)

Calldata is ``selector || abi.encode(args)`` where the selector is the first
four bytes of the Keccak-256 hash of the canonical signature.
"""

from __future__ import annotations

from eth_abi import decode, encode
from eth_abi.exceptions import DecodingError

from custodia_core.crypto_utils import keccak256


def function_selector(signature: str) -> bytes:
    return keccak256(signature.encode("ascii"))[:4]


DECIMALS_SELECTOR = function_selector("decimals()")
SYMBOL_SELECTOR = function_selector("symbol()")
BALANCE_OF_SELECTOR = function_selector("balanceOf(address)")
TRANSFER_SELECTOR = function_selector("transfer(address,uint256)")


def _hex(data: bytes) -> str:
    return "0x" + data.hex()


def _bytes(result: str) -> bytes:
    if not isinstance(result, str):
        raise ValueError("call result must be a hex string")
    text = result[2:] if result.startswith("0x") else result
    return bytes.fromhex(text)


def encode_decimals() -> str:
    return _hex(DECIMALS_SELECTOR)


def encode_symbol() -> str:
    return _hex(SYMBOL_SELECTOR)


def encode_balance_of(owner: str) -> str:
    return _hex(BALANCE_OF_SELECTOR + encode(["address"], [owner]))


def encode_transfer(to: str, amount: int) -> str:
    return _hex(TRANSFER_SELECTOR + encode(["address", "uint256"], [to, amount]))


def decode_uint(result: str) -> int:
    data = _bytes(result)
    if len(data) < 32:
        raise ValueError("call returned no data")
    try:
        return decode(["uint256"], data[:32])[0]
    except DecodingError as exc:
        raise ValueError(str(exc)) from None


def decode_symbol(result: str) -> str:
    """Decode ``symbol()`` output, accepting both ``string`` and legacy ``bytes32``."""
    data = _bytes(result)
    if not data:
        raise ValueError("call returned no data")
    try:
        return decode(["string"], data)[0]
    except (DecodingError, UnicodeDecodeError, OverflowError):
        pass
    if len(data) == 32:
        try:
            return data.rstrip(b"\x00").decode("utf-8")
        except UnicodeDecodeError:
            pass
    raise ValueError("symbol() output is not a string")
