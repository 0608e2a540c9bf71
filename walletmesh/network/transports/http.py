"""
HTTP transport plugin — publishes to and long-polls a walletmesh relay.

The relay tags every publish with the origin this transport sends in its
Origin header. Browsers set that header themselves, but any other HTTP
client can put what it likes there, so a sender origin is only as
trustworthy as the clients the relay admits.

Depends on: config, network/transport
"""

import asyncio
import sys
from typing import AsyncIterator, Optional

import httpx

from walletmesh.config import RELAY_CLIENT_TIMEOUT, RELAY_POLL_WAIT, UNSCOPED
from walletmesh.errors import TransportError
from walletmesh.network.transport import Delivery, SendResult, Transport


def strip_base_url(url: str) -> str:
    """Strip a trailing /__walletmesh__ suffix from a relay URL."""
    base = url.rstrip("/")
    if base.endswith("/__walletmesh__"):
        return base[:-len("/__walletmesh__")]
    return base


class HttpTransport(Transport):
    """Relay client. Pass `client` to share a pool or to test against an ASGI app."""

    def __init__(self, relay_url: str, origin: str,
                 client: Optional[httpx.AsyncClient] = None,
                 poll_wait: float = RELAY_POLL_WAIT,
                 retry_delay: float = 1.0):
        self.relay_url = strip_base_url(relay_url)
        self._origin = origin
        self._client = client
        self._owns_client = client is None
        self.poll_wait = poll_wait
        self.retry_delay = retry_delay
        self.subscriber_id: Optional[str] = None
        self._subscribed = False

    @property
    def name(self) -> str:
        return "http"

    @property
    def origin(self) -> str:
        return self._origin

    def _url(self, path: str) -> str:
        return f"{self.relay_url}/__walletmesh__{path}"

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=RELAY_CLIENT_TIMEOUT)
        return self._client

    async def start(self) -> None:
        """Register with the relay. Deliveries are buffered from this point on."""
        if self.subscriber_id is not None:
            return
        try:
            resp = await self.client.post(self._url("/subscribe"), headers={"Origin": self._origin})
            data = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            raise TransportError(f"relay subscribe failed: {e}") from e
        if resp.status_code != 200 or "subscriber_id" not in data:
            raise TransportError(f"relay subscribe failed: {data.get('error', resp.status_code)}")
        self.subscriber_id = data["subscriber_id"]
        print(f"[WalletMesh] Subscribed to relay {self.relay_url} as {self._origin}", file=sys.stderr)

    async def publish(self, message: dict, target_origin: str = UNSCOPED) -> SendResult:
        try:
            resp = await self.client.post(
                self._url("/publish"),
                json={"message": message, "target_origin": target_origin},
                headers={"Origin": self._origin},
            )
            data = resp.json()
        except (httpx.HTTPError, ValueError, TypeError) as e:
            return SendResult(success=False, transport_name=self.name, error=str(e))
        if resp.status_code != 200:
            return SendResult(success=False, transport_name=self.name,
                              error=data.get("error", f"HTTP {resp.status_code}"))
        return SendResult(success=True, transport_name=self.name, delivered=data.get("delivered", 0))

    def subscribe(self) -> AsyncIterator[Delivery]:
        if self._subscribed:
            raise RuntimeError("HttpTransport.subscribe() may only be called once")
        self._subscribed = True
        return self._deliveries()

    async def _deliveries(self) -> AsyncIterator[Delivery]:
        if self.subscriber_id is None:
            await self.start()
        while True:
            try:
                resp = await self.client.get(
                    self._url(f"/poll/{self.subscriber_id}"),
                    params={"wait": self.poll_wait},
                )
                data = resp.json()
            except (httpx.HTTPError, ValueError) as e:
                print(f"[WalletMesh] Relay poll failed: {e}", file=sys.stderr)
                await asyncio.sleep(self.retry_delay)
                continue

            if resp.status_code == 404:
                # The relay forgot us (restart); buffered deliveries are lost
                print(f"[WalletMesh] Relay lost subscription {self.subscriber_id[:8]}..., resubscribing",
                      file=sys.stderr)
                self.subscriber_id = None
                try:
                    await self.start()
                except TransportError as e:
                    print(f"[WalletMesh] {e}", file=sys.stderr)
                    await asyncio.sleep(self.retry_delay)
                continue
            if resp.status_code != 200:
                print(f"[WalletMesh] Relay poll failed: {data.get('error', resp.status_code)}",
                      file=sys.stderr)
                await asyncio.sleep(self.retry_delay)
                continue

            for entry in data.get("deliveries", []):
                if isinstance(entry, dict) and isinstance(entry.get("origin"), str):
                    yield Delivery(message=entry.get("message"), origin=entry["origin"])

    async def stop(self) -> None:
        if self.subscriber_id is not None:
            try:
                await self.client.delete(self._url(f"/subscribe/{self.subscriber_id}"))
            except httpx.HTTPError as e:
                print(f"[WalletMesh] Relay unsubscribe failed: {e}", file=sys.stderr)
            self.subscriber_id = None
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None
