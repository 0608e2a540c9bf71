"""
Transport plugin interface — ABC for the broadcast primitive.

A transport publishes JSON-RPC envelopes to every listener on the channel
(optionally restricted to one target origin) and yields every delivery with
the sender's origin attached. Delivery is unordered and at-least-once.

Depends on: config
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import AsyncIterator, Optional

from walletmesh.config import UNSCOPED


@dataclass(frozen=True)
class Delivery:
    """One inbound message, tagged by the transport with its sender's origin."""
    message: dict
    origin: str


@dataclass
class SendResult:
    """Result of a transport publish operation."""
    success: bool
    transport_name: str
    error: Optional[str] = None
    delivered: int = 0


class Transport(ABC):
    """Abstract base class for broadcast transports (in-memory, HTTP relay, etc.)."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Transport identifier (e.g. 'memory', 'http')."""
        ...

    @property
    @abstractmethod
    def origin(self) -> str:
        """The origin this transport attaches to everything it publishes."""
        ...

    @abstractmethod
    async def publish(self, message: dict, target_origin: str = UNSCOPED) -> SendResult:
        """Publish a message to the channel.

        Args:
            message: The JSON-serializable envelope.
            target_origin: Deliver only to listeners of this origin, or UNSCOPED for all.

        Returns:
            SendResult indicating success/failure.
        """
        ...

    @abstractmethod
    def subscribe(self) -> AsyncIterator[Delivery]:
        """Return the (single, non-restartable) infinite stream of deliveries."""
        ...

    async def start(self) -> None:
        """One-time setup before the first publish/subscribe.

        Override for transports that need initialization.
        """
        pass

    async def stop(self) -> None:
        """Shutdown the transport.

        Override for transports that need cleanup on shutdown.
        """
        pass
