"""
HTTP relay — the broadcast channel for agents in different processes.

Each agent subscribes once with its origin and long-polls for deliveries.
A publish is fanned out to every subscriber whose origin matches the target,
tagged with the publisher's origin taken from the Origin header, never from
the body. Buffers are per subscriber, capped, and expire. Subscribers that
stop polling are dropped after RELAY_SUBSCRIBER_TTL seconds.

Depends on: config, origin
"""

import asyncio
import sys
import time
import uuid
from collections import deque
from typing import Optional

from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Mount, Route, Router

from walletmesh.config import (
    PROTOCOL_VERSION,
    RELAY_BUFFER_MAX,
    RELAY_ENTRY_TTL,
    RELAY_POLL_WAIT,
    RELAY_SUBSCRIBER_TTL,
    UNSCOPED,
)
from walletmesh.origin import validate, validate_origin


class _Subscriber:
    def __init__(self, subscriber_id: str, origin: str, buffer_max: int):
        self.subscriber_id = subscriber_id
        self.origin = origin
        self.entries: deque = deque(maxlen=buffer_max)
        self.wakeup = asyncio.Event()
        self.last_seen = time.time()
        self.polling = 0


class RelayHub:
    """In-memory fan-out buffer behind the relay routes."""

    def __init__(self, buffer_max: int = RELAY_BUFFER_MAX, entry_ttl: float = RELAY_ENTRY_TTL,
                 subscriber_ttl: float = RELAY_SUBSCRIBER_TTL):
        self.buffer_max = buffer_max
        self.entry_ttl = entry_ttl
        self.subscriber_ttl = subscriber_ttl
        self._subscribers: dict[str, _Subscriber] = {}
        self.published = 0

    def prune_idle(self) -> int:
        """Drop subscribers that stopped polling. Returns how many were dropped."""
        cutoff = time.time() - self.subscriber_ttl
        idle = [
            sub for sub in self._subscribers.values()
            if not sub.polling and sub.last_seen < cutoff
        ]
        for sub in idle:
            del self._subscribers[sub.subscriber_id]
            print(f"[WalletMesh] Relay dropped idle subscriber {sub.subscriber_id[:8]}... "
                  f"({sub.origin}, {len(sub.entries)} undelivered)", file=sys.stderr)
        return len(idle)

    def subscribe(self, origin: str) -> str:
        err = validate_origin(origin)
        if err:
            raise ValueError(err)
        self.prune_idle()
        subscriber_id = uuid.uuid4().hex
        self._subscribers[subscriber_id] = _Subscriber(subscriber_id, origin, self.buffer_max)
        return subscriber_id

    def unsubscribe(self, subscriber_id: str) -> bool:
        sub = self._subscribers.pop(subscriber_id, None)
        if sub is None:
            return False
        sub.wakeup.set()
        return True

    def publish(self, message: dict, sender_origin: str, target_origin: str = UNSCOPED) -> int:
        """Buffer message for every matching subscriber. Returns how many got it."""
        self.prune_idle()
        now = time.time()
        delivered = 0
        for sub in list(self._subscribers.values()):
            if not validate(target_origin, sub.origin):
                continue
            # Full buffers drop their oldest entry
            sub.entries.append({"origin": sender_origin, "message": message, "timestamp": now})
            sub.wakeup.set()
            delivered += 1
        self.published += 1
        return delivered

    async def poll(self, subscriber_id: str, wait: float = 0.0) -> list[dict]:
        """Drain a subscriber's buffer, waiting up to `wait` seconds for the first entry.

        Raises KeyError for an unknown subscriber.
        """
        sub = self._subscribers[subscriber_id]
        sub.last_seen = time.time()
        if not sub.entries and wait > 0:
            sub.wakeup.clear()
            sub.polling += 1
            try:
                await asyncio.wait_for(sub.wakeup.wait(), timeout=wait)
            except asyncio.TimeoutError:
                pass
            finally:
                sub.polling -= 1
                sub.last_seen = time.time()

        cutoff = time.time() - self.entry_ttl
        drained = [
            {"origin": e["origin"], "message": e["message"]}
            for e in sub.entries if e["timestamp"] >= cutoff
        ]
        sub.entries.clear()
        sub.wakeup.clear()
        return drained

    def status(self) -> dict:
        return {
            "walletmesh": True,
            "protocol_version": PROTOCOL_VERSION,
            "subscribers": len(self._subscribers),
            "buffered": sum(len(s.entries) for s in self._subscribers.values()),
            "published": self.published,
        }

    def __contains__(self, subscriber_id: object) -> bool:
        return subscriber_id in self._subscribers


# =============================================================================
# Starlette routes
# =============================================================================

def create_relay_app(hub: Optional[RelayHub] = None) -> Router:
    """Build the relay ASGI app around a hub (a fresh one if not given)."""
    hub = hub if hub is not None else RelayHub()

    def sender_origin(request: Request) -> tuple[Optional[str], Optional[str]]:
        origin = request.headers.get("origin", "")
        err = validate_origin(origin)
        return (None, err) if err else (origin, None)

    async def handle_subscribe(request: Request) -> JSONResponse:
        origin, err = sender_origin(request)
        if err:
            return JSONResponse({"error": err}, status_code=400)
        subscriber_id = hub.subscribe(origin)
        return JSONResponse({"success": True, "subscriber_id": subscriber_id, "origin": origin})

    async def handle_unsubscribe(request: Request) -> JSONResponse:
        subscriber_id = request.path_params["subscriber_id"]
        if not hub.unsubscribe(subscriber_id):
            return JSONResponse({"error": "Unknown subscriber"}, status_code=404)
        return JSONResponse({"success": True})

    async def handle_publish(request: Request) -> JSONResponse:
        origin, err = sender_origin(request)
        if err:
            return JSONResponse({"error": err}, status_code=400)
        try:
            data = await request.json()
        except Exception:
            return JSONResponse({"error": "Invalid JSON body"}, status_code=400)
        if not isinstance(data, dict) or not isinstance(data.get("message"), dict):
            return JSONResponse({"error": "Body must be {\"message\": {...}}"}, status_code=400)
        target_origin = data.get("target_origin") or UNSCOPED
        if not isinstance(target_origin, str):
            return JSONResponse({"error": "target_origin must be a string"}, status_code=400)

        delivered = hub.publish(data["message"], origin, target_origin)
        return JSONResponse({"success": True, "delivered": delivered})

    async def handle_poll(request: Request) -> JSONResponse:
        subscriber_id = request.path_params["subscriber_id"]
        try:
            wait = float(request.query_params.get("wait", "0"))
        except ValueError:
            return JSONResponse({"error": "wait must be a number"}, status_code=400)
        wait = min(max(wait, 0.0), RELAY_POLL_WAIT)
        if subscriber_id not in hub:
            return JSONResponse({"error": "Unknown subscriber"}, status_code=404)
        deliveries = await hub.poll(subscriber_id, wait)
        return JSONResponse({"success": True, "deliveries": deliveries})

    async def handle_status(request: Request) -> JSONResponse:
        return JSONResponse(hub.status())

    relay_routes = [
        Route("/subscribe", handle_subscribe, methods=["POST"]),
        Route("/subscribe/{subscriber_id}", handle_unsubscribe, methods=["DELETE"]),
        Route("/publish", handle_publish, methods=["POST"]),
        Route("/poll/{subscriber_id}", handle_poll, methods=["GET"]),
        Route("/status", handle_status, methods=["GET"]),
    ]

    app = Router(
        routes=[Mount("/__walletmesh__", routes=relay_routes)],
        redirect_slashes=False,
    )
    return app
