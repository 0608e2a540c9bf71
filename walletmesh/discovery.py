"""
Discovery — prompt/announce exchange on the shared channel.

Libraries broadcast one prompt at start and record every announcement they
hear. Providers broadcast one announce at start and repeat it for every
prompt. Agents start in any order and the channel drops nothing but promises
no ordering, so a provider that starts first is caught by the prompt, and a
provider that starts later is caught by its own initial announce.

Depends on: config, models, messages, registry
"""

import sys
from typing import Callable, Optional

from walletmesh.config import UNSCOPED
from walletmesh.messages import Announce, Prompt, build_announce, build_prompt
from walletmesh.models import Announcement, PromptFilter
from walletmesh.registry import AnnouncementRegistry


# =============================================================================
# Library Side
# =============================================================================

class LibraryDiscovery:
    """Owns the library's view of the announcement registry."""

    def __init__(self, registry: AnnouncementRegistry, publish: Callable,
                 prompt_filter: Optional[PromptFilter] = None,
                 on_announcement: Optional[Callable[[Announcement, bool], None]] = None):
        self.registry = registry
        self._publish = publish
        self.prompt_filter = prompt_filter
        self._on_announcement = on_announcement

    async def start(self) -> None:
        await self.prompt()

    async def prompt(self) -> None:
        """Broadcast a wallet_prompt. Safe to repeat; providers just re-announce."""
        await self._publish(build_prompt(self.prompt_filter), UNSCOPED)

    def handle_announce(self, msg: Announce) -> None:
        """Record the announcement whatever the prompt filter said."""
        is_new = self.registry.upsert(msg.announcement)
        if is_new:
            a = msg.announcement
            print(f"[WalletMesh] Discovered provider '{a.display_name}' ({a.reverse_domain_name}) "
                  f"id={a.discovery_id[:8]}... from {a.source_origin}", file=sys.stderr)
        if self._on_announcement is not None:
            self._on_announcement(self.registry.get(msg.announcement.discovery_id), is_new)


# =============================================================================
# Provider Side
# =============================================================================

def prompt_matches(prompt_filter: PromptFilter, supported_chains: Optional[list[str]],
                   auth_name: Optional[str]) -> bool:
    """Whether a provider with these capabilities should answer a prompt.

    Providers that declare nothing answer everything.
    """
    if prompt_filter.chains and supported_chains is not None:
        if not set(prompt_filter.chains) & set(supported_chains):
            return False
    if prompt_filter.auth_name and auth_name is not None:
        if prompt_filter.auth_name != auth_name:
            return False
    return True


class ProviderDiscovery:
    """Announces one provider's fixed self-description."""

    def __init__(self, discovery_id: str, display_name: str, icon_ref: str,
                 reverse_domain_name: str, publish: Callable,
                 supported_chains: Optional[list[str]] = None,
                 auth_name: Optional[str] = None):
        self.discovery_id = discovery_id
        self.display_name = display_name
        self.icon_ref = icon_ref
        self.reverse_domain_name = reverse_domain_name
        self.supported_chains = supported_chains
        self.auth_name = auth_name
        self._publish = publish
        self.announcements_sent = 0

    def announce_message(self) -> dict:
        return build_announce(self.discovery_id, self.display_name,
                              self.icon_ref, self.reverse_domain_name)

    async def start(self) -> None:
        await self.announce()

    async def announce(self) -> None:
        await self._publish(self.announce_message(), UNSCOPED)
        self.announcements_sent += 1

    def handle_prompt(self, msg: Prompt) -> Optional[list[tuple[dict, str]]]:
        """Re-announce (identically) in answer to a prompt."""
        if not prompt_matches(msg.filter, self.supported_chains, self.auth_name):
            return None
        self.announcements_sent += 1
        return [(self.announce_message(), UNSCOPED)]
