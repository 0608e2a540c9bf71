"""
Announcement registry — the library side's table of discovered providers.

Depends on: models, origin
"""

from dataclasses import replace
from typing import Optional

from walletmesh.models import Announcement
from walletmesh.origin import canonical_id


class AnnouncementRegistry:
    """discovery_id -> most recent Announcement. Last write wins, entries never merge.

    Owned by exactly one library agent. Nothing expires implicitly; callers
    that want an expiry policy can prune with their own bookkeeping.
    """

    def __init__(self):
        self._entries: dict[str, Announcement] = {}

    def upsert(self, announcement: Announcement) -> bool:
        """Record an announcement, replacing any previous one for its id.

        Returns True if the id was not known before.
        """
        key = canonical_id(announcement.discovery_id)
        is_new = key not in self._entries
        self._entries[key] = replace(announcement, discovery_id=key)
        return is_new

    def get(self, discovery_id: str) -> Optional[Announcement]:
        try:
            key = canonical_id(discovery_id)
        except ValueError:
            return None
        entry = self._entries.get(key)
        return replace(entry) if entry is not None else None

    def list(self) -> list[Announcement]:
        """Snapshot of all entries. Order carries no meaning."""
        return [replace(a) for a in self._entries.values()]

    def __contains__(self, discovery_id: object) -> bool:
        return isinstance(discovery_id, str) and self.get(discovery_id) is not None

    def __len__(self) -> int:
        return len(self._entries)
