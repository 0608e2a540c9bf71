"""
In-memory broadcast channel — every attached transport sees every publish.

Models the shared browsing-context channel for agents living in one process:
messages are JSON round-tripped (no shared objects between agents), tagged
with the publisher's origin, and fanned out to every subscriber whose origin
matches the target. The publisher receives its own broadcasts too.

Depends on: config, origin, network/transport
"""

import asyncio
import json
import sys
from typing import AsyncIterator

from walletmesh.config import UNSCOPED
from walletmesh.network.transport import Delivery, SendResult, Transport
from walletmesh.origin import validate, validate_origin


class BroadcastChannel:
    """A shared channel. Attach one ChannelTransport per agent."""

    def __init__(self, copies: int = 1):
        # copies > 1 re-delivers every message, exercising at-least-once handling
        self.copies = max(1, copies)
        self._transports: list["ChannelTransport"] = []

    def attach(self, origin: str) -> "ChannelTransport":
        err = validate_origin(origin)
        if err:
            raise ValueError(err)
        transport = ChannelTransport(self, origin)
        self._transports.append(transport)
        return transport

    def detach(self, transport: "ChannelTransport") -> None:
        if transport in self._transports:
            self._transports.remove(transport)

    def _fan_out(self, data: str, sender_origin: str, target_origin: str) -> int:
        delivered = 0
        for transport in list(self._transports):
            if not validate(target_origin, transport.origin):
                continue
            for _ in range(self.copies):
                transport._queue.put_nowait(Delivery(message=json.loads(data), origin=sender_origin))
            delivered += 1
        return delivered


class ChannelTransport(Transport):
    """One agent's view of a BroadcastChannel."""

    def __init__(self, channel: BroadcastChannel, origin: str):
        self._channel = channel
        self._origin = origin
        self._queue: asyncio.Queue = asyncio.Queue()
        self._subscribed = False

    @property
    def name(self) -> str:
        return "memory"

    @property
    def origin(self) -> str:
        return self._origin

    async def publish(self, message: dict, target_origin: str = UNSCOPED) -> SendResult:
        try:
            data = json.dumps(message)
        except (TypeError, ValueError) as e:
            return SendResult(success=False, transport_name=self.name, error=f"Unserializable message: {e}")
        delivered = self._channel._fan_out(data, self._origin, target_origin)
        return SendResult(success=True, transport_name=self.name, delivered=delivered)

    def subscribe(self) -> AsyncIterator[Delivery]:
        if self._subscribed:
            raise RuntimeError("ChannelTransport.subscribe() may only be called once")
        self._subscribed = True
        return self._deliveries()

    async def _deliveries(self) -> AsyncIterator[Delivery]:
        while True:
            yield await self._queue.get()

    async def stop(self) -> None:
        self._channel.detach(self)
        pending = self._queue.qsize()
        if pending:
            print(f"[WalletMesh] Channel transport for {self._origin} stopped with "
                  f"{pending} undelivered message(s)", file=sys.stderr)
