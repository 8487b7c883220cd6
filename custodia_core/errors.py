"""
Error taxonomy for the Custodia core.

Every failure that crosses the core boundary is a ``CustodyError`` subclass
carrying a stable ``kind`` string and a message that is safe to show to the
operator.  Messages never contain key bytes, password bytes or keystore
contents.  Only ``TransferFailed`` may carry text from the node, since node
error strings hold no secret material.
"""

from __future__ import annotations

from typing import Any


class CustodyError(Exception):
    """Base class for all errors surfaced by the core."""

    kind: str = "CustodyError"
    default_message: str = "Operation failed"

    def __init__(self, message: str | None = None):
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.kind, "message": self.message}

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.message!r})"


class UnsupportedFormat(CustodyError):
    kind = "UnsupportedFormat"
    default_message = "Keystore format is not supported"


class InvalidPassword(CustodyError):
    """Wrong password or tampered keystore.  The two are indistinguishable."""

    kind = "InvalidPassword"
    default_message = "Invalid password or corrupted keystore"

    def __init__(self, message: str | None = None):
        # Fixed text so callers cannot tell a bad password from a bad MAC.
        super().__init__(self.default_message)


class InvalidRecipient(CustodyError):
    kind = "InvalidRecipient"
    default_message = "Recipient is not a valid address"


class InvalidAmount(CustodyError):
    kind = "InvalidAmount"
    default_message = "Amount is not valid for this token"


class NodeUnavailable(CustodyError):
    kind = "NodeUnavailable"
    default_message = "Blockchain node is unavailable"


class NoIdentityLoaded(CustodyError):
    kind = "NoIdentityLoaded"
    default_message = "No wallet loaded. Import a keystore first."


class TransferFailed(CustodyError):
    """The node rejected the transfer or the transaction reverted."""

    kind = "TransferFailed"
    default_message = "Token transfer failed"

    def __init__(
        self,
        message: str | None = None,
        *,
        node_message: str | None = None,
        tx_hash: str | None = None,
    ):
        super().__init__(message)
        self.node_message = node_message
        self.tx_hash = tx_hash

    def to_dict(self) -> dict[str, Any]:
        d = super().to_dict()
        if self.node_message:
            d["details"] = self.node_message
        if self.tx_hash:
            d["txHash"] = self.tx_hash
        return d
