"""
Provider — the wallet side. Announces itself and answers handshakes and
session requests.

Depends on: config, origin, models, discovery, session, agent
"""

import sys
from typing import Optional

from walletmesh.agent import Agent
from walletmesh.discovery import ProviderDiscovery
from walletmesh.messages import HandshakeRequestMsg, Prompt
from walletmesh.network.transport import Transport
from walletmesh.origin import canonical_id, new_discovery_id
from walletmesh.session import ApprovalFn, ProviderSessionManager, RequestHandler


class Provider(Agent):
    """A wallet provider with a fixed self-description.

    approve(HandshakeRequest) decides each handshake; see ProviderSessionManager.
    request_handler(SessionCall) serves wallet_invokeMethod; its return value
    is the result, a raised ProtocolError becomes the error response.
    """

    role = "provider"

    def __init__(self, transport: Transport, display_name: str, icon_ref: str,
                 reverse_domain_name: str,
                 approve: Optional[ApprovalFn] = None,
                 request_handler: Optional[RequestHandler] = None,
                 notification_handler: Optional[RequestHandler] = None,
                 supported_chains: Optional[list[str]] = None,
                 auth_name: Optional[str] = None,
                 discovery_id: Optional[str] = None):
        super().__init__(transport)
        discovery_id = canonical_id(discovery_id) if discovery_id else new_discovery_id()
        self.discovery = ProviderDiscovery(
            discovery_id, display_name, icon_ref, reverse_domain_name,
            self.dispatcher.publish,
            supported_chains=supported_chains, auth_name=auth_name,
        )
        self.session_manager = ProviderSessionManager(
            discovery_id, self.table, self.correlator,
            self.dispatcher.publish, self.dispatcher.drop,
            approve=approve,
            request_handler=request_handler,
            notification_handler=notification_handler,
        )
        self.dispatcher.on(Prompt, self.discovery.handle_prompt)
        self.dispatcher.on(HandshakeRequestMsg, self.session_manager.handle_handshake)
        self._register_session_routes()

    @property
    def discovery_id(self) -> str:
        return self.discovery.discovery_id

    async def start(self) -> None:
        """Start listening, then broadcast the initial announce."""
        if self._started:
            return
        await super().start()
        await self.discovery.start()

    async def announce(self) -> None:
        await self.discovery.announce()

    async def renegotiate(self) -> str:
        """Switch to a fresh discovery id and announce it.

        Sessions already established keep working. The old id can no longer
        be promoted, by anyone.
        """
        old_id = self.discovery.discovery_id
        new_id = new_discovery_id()
        self.session_manager.rotate(new_id)
        self.discovery.discovery_id = new_id
        print(f"[WalletMesh] Provider renegotiated discovery id {old_id[:8]}... -> {new_id[:8]}...",
              file=sys.stderr)
        await self.discovery.announce()
        return new_id
