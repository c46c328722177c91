from datetime import datetime, timedelta
from typing import Dict, Optional, Tuple

from docvault.schemas.events import PubSubEvent
from docvault.utils.clock import Clock, SystemClock


class EventCache:
    """Latest event per ``<type>:<target>`` key, expiring after a TTL.

    Entries are kept in put order, which is also expiry order since every
    entry gets the same TTL. Each ``put`` drops expired entries from the front
    and evicts the oldest entries beyond ``max_entries``.
    """

    def __init__(
        self,
        ttl_seconds: float = 3600.0,
        clock: Optional[Clock] = None,
        max_entries: int = 10000,
    ):
        self.ttl = timedelta(seconds=ttl_seconds)
        self.clock = clock or SystemClock()
        self.max_entries = max_entries
        self._entries: Dict[str, Tuple[PubSubEvent, datetime]] = {}

    def put(self, event: PubSubEvent) -> None:
        self.purge_expired()
        key = event.cache_key
        # Re-inserting moves the key to the back of the expiry order
        self._entries.pop(key, None)
        self._entries[key] = (event, self.clock.now() + self.ttl)
        while len(self._entries) > self.max_entries:
            del self._entries[next(iter(self._entries))]

    def get(self, key: str) -> Optional[PubSubEvent]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        event, expires_at = entry
        if expires_at <= self.clock.now():
            del self._entries[key]
            return None
        return event

    def purge_expired(self) -> int:
        now = self.clock.now()
        purged = 0
        for key, (_, expires_at) in list(self._entries.items()):
            if expires_at > now:
                break
            del self._entries[key]
            purged += 1
        return purged

    def __len__(self) -> int:
        return len(self._entries)
