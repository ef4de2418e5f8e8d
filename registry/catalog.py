# registry/catalog.py
#
# In-memory table of published content. Slots are never removed: deregistering
# only clears the active flag, so usage counters survive for the life of the
# process. Only the index server's receive loop mutates it.

from typing import List, Optional, Tuple

from config import MAX_ENTRIES, MAX_HISTORY
from protocol.errors import CapacityExceeded


class CatalogEntry:
    """One (peer, content) publication."""

    def __init__(self, peer_name: str, content_name: str, address: Tuple[str, int]):
        self.peer_name = peer_name
        self.content_name = content_name
        self.address = address
        self.used_count = 0
        self.active = True

    def __repr__(self):
        state = "active" if self.active else "inactive"
        return (f"CatalogEntry({self.content_name} by {self.peer_name} "
                f"@ {self.address[0]}:{self.address[1]}, used={self.used_count}, {state})")


class Catalog:
    """
    Entries in insertion order. `max_entries` bounds how many are active at
    once; `max_history` bounds every slot ever used, since deactivated slots
    are kept and never reclaimed. Either limit raises CapacityExceeded.
    """

    def __init__(self, max_entries: int = MAX_ENTRIES, max_history: int = MAX_HISTORY):
        self.max_entries = max_entries
        self.max_history = max(max_history, max_entries)
        self._entries: List[CatalogEntry] = []

    def __len__(self):
        return len(self._entries)

    def __getitem__(self, index: int) -> CatalogEntry:
        return self._entries[index]

    def active_entries(self) -> List[CatalogEntry]:
        return [e for e in self._entries if e.active]

    def active_count(self) -> int:
        return sum(1 for e in self._entries if e.active)

    def find_exact(self, peer_name: str, content_name: str) -> Optional[int]:
        for i, entry in enumerate(self._entries):
            if entry.active and entry.peer_name == peer_name and entry.content_name == content_name:
                return i
        return None

    def find_least_used(self, content_name: str) -> Optional[int]:
        """
        Among active entries for `content_name`, return the index of the one
        searched the fewest times. Ties go to the earliest inserted entry.
        """
        best = None
        for i, entry in enumerate(self._entries):
            if not entry.active or entry.content_name != content_name:
                continue
            if best is None or entry.used_count < self._entries[best].used_count:
                best = i
        return best

    def insert(self, entry: CatalogEntry) -> int:
        if self.active_count() >= self.max_entries:
            raise CapacityExceeded("Server storage full")
        if len(self._entries) >= self.max_history:
            raise CapacityExceeded("Server storage full")
        self._entries.append(entry)
        return len(self._entries) - 1

    def record_hit(self, index: int) -> int:
        self._entries[index].used_count += 1
        return self._entries[index].used_count

    def deactivate(self, index: int):
        self._entries[index].active = False

    def deactivate_publisher(self, peer_name: str) -> int:
        """Deactivate every active entry of `peer_name`; returns how many."""
        removed = 0
        for entry in self._entries:
            if entry.active and entry.peer_name == peer_name:
                entry.active = False
                removed += 1
        return removed
