"""
Data models — pure data classes with no business logic.

Depends on: config
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional, Union

from walletmesh.config import UNSCOPED

RequestId = Union[int, str]


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


# =============================================================================
# Enums
# =============================================================================

class SessionState(str, Enum):
    DISCOVERED = "discovered"
    HANDSHAKE_REQUESTED = "handshake_requested"
    ESTABLISHED = "established"
    REVOKED = "revoked"


class DropReason(str, Enum):
    """Why an inbound delivery was ignored. Never surfaced to callers."""
    MALFORMED = "malformed"
    ORIGIN_MISMATCH = "origin_mismatch"
    UNKNOWN_CORRELATION_ID = "unknown_correlation_id"
    UNRECOGNIZED_METHOD = "unrecognized_method"
    DUPLICATE_DELIVERY = "duplicate_delivery"


# =============================================================================
# Discovery
# =============================================================================

@dataclass
class Announcement:
    """A provider's self-description, as received by a library."""
    discovery_id: str
    display_name: str
    icon_ref: str
    reverse_domain_name: str
    source_origin: str
    received_at: str = field(default_factory=utc_now)


@dataclass
class PromptFilter:
    """Optional hint carried by a prompt. Not a security boundary."""
    chains: Optional[list[str]] = None
    auth_name: Optional[str] = None


# =============================================================================
# Correlation
# =============================================================================

@dataclass
class PendingRequest:
    """An outstanding request awaiting exactly one settlement.

    issued_at and deadline are event-loop clock values (loop.time()).
    The future is both continuations: set_result resolves, set_exception rejects.
    """
    request_id: RequestId
    method: str
    expected_origin: str = UNSCOPED
    issued_at: float = 0.0
    deadline: float = 0.0
    future: Optional[asyncio.Future] = None
    # Ephemeral
    _timer: Optional[asyncio.TimerHandle] = None


# =============================================================================
# Sessions
# =============================================================================

@dataclass
class Session:
    """One side's record of a session. The counterparty holds its own mirror."""
    session_id: str
    counterparty_origin: str
    state: SessionState = SessionState.DISCOVERED
    scopes: dict = field(default_factory=dict)
    established_at: Optional[str] = None
    revoked_at: Optional[str] = None
    # Request id of the handshake that is (or was) in flight for this session
    handshake_request_id: Optional[RequestId] = None


@dataclass
class HandshakeRequest:
    """What a provider's approval callable is asked to decide on."""
    request_id: RequestId
    discovery_id: str
    origin: str
    payload: dict


@dataclass
class SessionCall:
    """An inbound session-scoped request or notification handed to a handler."""
    session: Session
    method: str
    params: dict
    request_id: Optional[RequestId] = None
    received_at: str = field(default_factory=utc_now)

    @property
    def payload(self) -> Any:
        return {k: v for k, v in self.params.items() if k != "sessionId"}
