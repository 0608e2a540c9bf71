"""
Library — the dApp side. Discovers providers and opens sessions with them.

    library = Library(channel.attach("https://dapp.example"))
    await library.start()
    ...
    session = await library.connect(library.announcements()[0].discovery_id)
    result = await library.request(session.session_id, {"method": "eth_accounts"})

Depends on: config, models, registry, discovery, session, agent
"""

from typing import Callable, Optional

from walletmesh.agent import Agent
from walletmesh.config import HANDSHAKE_TIMEOUT
from walletmesh.discovery import LibraryDiscovery
from walletmesh.messages import Announce
from walletmesh.models import Announcement, PromptFilter, RequestId, Session
from walletmesh.network.transport import Transport
from walletmesh.registry import AnnouncementRegistry
from walletmesh.session import LibrarySessionManager, RequestHandler


class Library(Agent):
    role = "library"

    def __init__(self, transport: Transport,
                 prompt_filter: Optional[PromptFilter] = None,
                 on_announcement: Optional[Callable[[Announcement, bool], None]] = None,
                 request_handler: Optional[RequestHandler] = None,
                 notification_handler: Optional[RequestHandler] = None):
        super().__init__(transport)
        self.registry = AnnouncementRegistry()
        self.discovery = LibraryDiscovery(
            self.registry, self.dispatcher.publish,
            prompt_filter=prompt_filter, on_announcement=on_announcement,
        )
        self.session_manager = LibrarySessionManager(
            self.registry, self.table, self.correlator,
            self.dispatcher.publish, self.dispatcher.drop,
            request_handler=request_handler,
            notification_handler=notification_handler,
        )
        self.dispatcher.on(Announce, self.discovery.handle_announce)
        self._register_session_routes()

    async def start(self) -> None:
        """Start listening, then broadcast the initial prompt."""
        if self._started:
            return
        await super().start()
        await self.discovery.start()

    async def prompt(self) -> None:
        await self.discovery.prompt()

    def announcements(self) -> list[Announcement]:
        return self.registry.list()

    def announcement(self, discovery_id: str) -> Optional[Announcement]:
        return self.registry.get(discovery_id)

    async def connect(self, discovery_id: str, payload: Optional[dict] = None,
                      timeout: float = HANDSHAKE_TIMEOUT,
                      request_id: Optional[RequestId] = None) -> Session:
        """Promote an announced discovery id to a session. See LibrarySessionManager.connect."""
        return await self.session_manager.connect(discovery_id, payload, timeout, request_id)
