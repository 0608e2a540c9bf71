"""
Message dispatcher — the single entry point from the transport.

Classifies every delivery into an InboundMessage variant and routes it:
responses to the correlator, everything else to the handler registered for
its variant. Anything no one claims is dropped silently.

Depends on: config, models, messages, correlator, network/transport
"""

import asyncio
import hashlib
import json
import sys
import time
from typing import Awaitable, Callable, Optional, Union

from walletmesh.config import REPLAY_MAX_SIZE, REPLAY_WINDOW, TRACE_DROPS
from walletmesh.correlator import RequestCorrelator
from walletmesh.messages import (
    InboundMessage,
    Response,
    Unrecognized,
    parse_delivery,
)
from walletmesh.models import DropReason, RequestId
from walletmesh.network.transport import Delivery, Transport


# A handler gets the classified message and may return a list of
# (message, target_origin) pairs for the dispatcher to publish.
Outbound = tuple[dict, str]
HandlerResult = Optional[list[Outbound]]
Handler = Callable[[InboundMessage], Union[HandlerResult, Awaitable[HandlerResult]]]


def trace_drop(reason: DropReason, origin: str, detail: str = "") -> None:
    """Trace a silent drop (only when WALLETMESH_TRACE_DROPS is set)."""
    if TRACE_DROPS:
        suffix = f": {detail}" if detail else ""
        print(f"[WalletMesh] drop ({reason.value}) from {origin}{suffix}", file=sys.stderr)


# =============================================================================
# Replay Protection
# =============================================================================

class ReplayGuard:
    """Suppresses re-deliveries of requests.

    A key is (origin, method, request id, params digest). From begin() until
    finish() the key is in flight and re-deliveries are dropped. An answer
    passed to finish() is kept for `window` seconds and re-sent when the same
    request is delivered again, so no handler runs twice for one request.
    Request ids are only unique among a sender's outstanding requests: a key
    finished without an answer is forgotten, and a later request reusing the
    id with other params is a different key.
    """

    def __init__(self, window: float = REPLAY_WINDOW, max_size: int = REPLAY_MAX_SIZE):
        self.window = window
        self.max_size = max_size
        self._in_flight: set[tuple] = set()
        self._answered: dict[tuple, tuple[float, dict]] = {}

    @staticmethod
    def key(origin: str, method: str, request_id: RequestId, params: dict) -> tuple:
        encoded = json.dumps(params, sort_keys=True, separators=(",", ":"), default=str)
        return (origin, method, request_id, hashlib.sha256(encoded.encode()).hexdigest())

    def check(self, key: tuple) -> bool:
        """Return True if this key is being served or was answered recently (replay)."""
        return key in self._in_flight or self.answer(key) is not None

    def answer(self, key: tuple) -> Optional[dict]:
        entry = self._answered.get(key)
        if entry is None:
            return None
        ts, response = entry
        if time.monotonic() - ts >= self.window:
            del self._answered[key]
            return None
        return response

    def begin(self, key: tuple) -> None:
        self._in_flight.add(key)

    def finish(self, key: tuple, answer: Optional[dict] = None) -> None:
        self._in_flight.discard(key)
        if answer is None:
            return
        now = time.monotonic()
        if len(self._answered) > self.max_size:
            cutoff = now - self.window
            expired = [k for k, (ts, _) in self._answered.items() if ts < cutoff]
            for k in expired:
                del self._answered[k]
        self._answered[key] = (now, answer)


# =============================================================================
# Dispatcher
# =============================================================================

class MessageDispatcher:
    """Routes deliveries for one agent. Handlers run to completion, one delivery at a time."""

    def __init__(self, transport: Transport, correlator: RequestCorrelator):
        self.transport = transport
        self.correlator = correlator
        self._handlers: dict[type, Handler] = {}
        self._task: Optional[asyncio.Task] = None
        self.dropped: dict[DropReason, int] = {r: 0 for r in DropReason}

    def on(self, variant: type, handler: Handler) -> None:
        """Register the handler for one InboundMessage variant (replaces any previous)."""
        if variant is Response:
            raise ValueError("responses are always routed to the correlator")
        self._handlers[variant] = handler

    def drop(self, reason: DropReason, origin: str, detail: str = "") -> None:
        self.dropped[reason] += 1
        trace_drop(reason, origin, detail)

    async def dispatch(self, delivery: Delivery) -> None:
        """Classify and route one delivery. Never raises."""
        msg = parse_delivery(delivery)

        if isinstance(msg, Unrecognized):
            self.drop(msg.reason, msg.origin, msg.detail or (msg.method or ""))
            return

        if isinstance(msg, Response):
            if not self.correlator.on_message(msg):
                self.drop(DropReason.UNKNOWN_CORRELATION_ID, msg.origin, f"id={msg.request_id!r}")
            return

        handler = self._handlers.get(type(msg))
        if handler is None:
            # Valid message, but not one this agent's role handles (e.g. a
            # library seeing a prompt, or its own echo).
            self.drop(DropReason.UNRECOGNIZED_METHOD, msg.origin, type(msg).__name__)
            return

        try:
            result = handler(msg)
            if asyncio.iscoroutine(result):
                result = await result
        except Exception as e:
            print(f"[WalletMesh] Handler {getattr(handler, '__name__', handler)!s} raised: {e}",
                  file=sys.stderr)
            return

        for message, target_origin in result or []:
            await self.publish(message, target_origin)

    async def publish(self, message: dict, target_origin: str) -> None:
        """Publish a handler's outbound message; failures are logged, not raised."""
        try:
            res = await self.transport.publish(message, target_origin)
        except Exception as e:
            print(f"[WalletMesh] Publish via {self.transport.name} failed: {e}", file=sys.stderr)
            return
        if not res.success:
            print(f"[WalletMesh] Publish via {self.transport.name} failed: {res.error}", file=sys.stderr)

    async def run(self) -> None:
        """Consume the transport's subscription forever."""
        async for delivery in self.transport.subscribe():
            await self.dispatch(delivery)

    def start(self) -> asyncio.Task:
        if self._task is None:
            self._task = asyncio.get_running_loop().create_task(self.run())
        return self._task

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
