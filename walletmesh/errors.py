"""
Caller-visible errors.

Silent drops on the shared channel are not exceptions; see DropReason in models.

Depends on: nothing
"""

from typing import Any, Optional


class WalletMeshError(Exception):
    """Base class for all walletmesh errors."""


class ProtocolError(WalletMeshError):
    """An explicit error payload carried in a response."""

    def __init__(self, code: int, message: str, data: Any = None):
        super().__init__(f"[{code}] {message}")
        self.code = code
        self.message = message
        self.data = data

    def to_dict(self) -> dict:
        err = {"code": self.code, "message": self.message}
        if self.data is not None:
            err["data"] = self.data
        return err


class HandshakeRejected(ProtocolError):
    """The counterparty answered a handshake with an error. No session was created."""


class DuplicateSessionPromotion(HandshakeRejected):
    """The discovery id already backs an established (or revoked) session."""


class RequestTimeout(WalletMeshError):
    """No matching response arrived before the request deadline."""

    def __init__(self, request_id, method: Optional[str] = None, timeout: Optional[float] = None):
        detail = f"request {request_id!r}"
        if method:
            detail += f" ({method})"
        if timeout is not None:
            detail += f" timed out after {timeout:g}s"
        else:
            detail += " timed out"
        super().__init__(detail)
        self.request_id = request_id
        self.method = method
        self.timeout = timeout


class TransportError(WalletMeshError):
    """The transport failed to publish a message."""


class InvalidTransition(WalletMeshError):
    """A session state transition not permitted by the lifecycle."""


class UnknownDiscoveryId(WalletMeshError, KeyError):
    """No announcement recorded for this discovery id."""


class UnknownSession(WalletMeshError, KeyError):
    """No session recorded for this session id."""
