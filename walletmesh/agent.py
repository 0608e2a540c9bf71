"""
Agent — one participant on the channel: a transport, a correlator, a
dispatcher and a session table, wired together.

Library and Provider extend this with their side of discovery and the
handshake. Everything runs on one event loop; no locks are needed.

Depends on: config, models, correlator, dispatcher, session, network/transport
"""

import sys
from dataclasses import replace
from typing import Any, Optional

from walletmesh.config import DEFAULT_REQUEST_TIMEOUT, METHOD_INVOKE
from walletmesh.correlator import RequestCorrelator
from walletmesh.dispatcher import MessageDispatcher
from walletmesh.messages import SessionRequestMsg
from walletmesh.models import PendingRequest, RequestId, Session
from walletmesh.network.transport import Transport
from walletmesh.session import SessionManager, SessionTable


class Agent:
    """Shared plumbing for both roles. Not used directly."""

    role = "agent"

    def __init__(self, transport: Transport):
        self.transport = transport
        self.correlator = RequestCorrelator(transport.publish)
        self.dispatcher = MessageDispatcher(transport, self.correlator)
        self.table = SessionTable()
        self.session_manager: SessionManager
        self._started = False

    @property
    def origin(self) -> str:
        return self.transport.origin

    def _register_session_routes(self) -> None:
        self.dispatcher.on(SessionRequestMsg, self.session_manager.handle_session_message)

    async def start(self) -> None:
        if self._started:
            return
        await self.transport.start()
        self.dispatcher.start()
        self._started = True
        print(f"[WalletMesh] {self.role.capitalize()} started on {self.origin} "
              f"via {self.transport.name}", file=sys.stderr)

    async def stop(self) -> None:
        if not self._started:
            return
        self._started = False
        self.correlator.cancel_all(f"{self.role} stopped")
        await self.session_manager.close()
        await self.dispatcher.stop()
        await self.transport.stop()

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, *exc):
        await self.stop()

    # -- session traffic --

    async def request(self, session_id: str, payload: Optional[dict] = None,
                      timeout: float = DEFAULT_REQUEST_TIMEOUT,
                      request_id: Optional[RequestId] = None,
                      method: str = METHOD_INVOKE) -> Any:
        return await self.session_manager.request(session_id, payload, timeout, request_id, method)

    async def notify(self, session_id: str, payload: Optional[dict] = None) -> None:
        await self.session_manager.notify(session_id, payload)

    async def disconnect(self, session_id: str, timeout: float = DEFAULT_REQUEST_TIMEOUT) -> bool:
        return await self.session_manager.disconnect(session_id, timeout)

    # -- snapshots --

    def sessions(self) -> list[Session]:
        return self.table.snapshot()

    def session(self, session_id: str) -> Optional[Session]:
        s = self.table.get(session_id)
        return replace(s, scopes=dict(s.scopes)) if s is not None else None

    def pending(self) -> list[PendingRequest]:
        return self.correlator.pending()
