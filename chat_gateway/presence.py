"""
Presence registry - which connection currently represents each user.
"""
from typing import Dict, Optional

from loguru import logger


class PresenceRegistry:
    """Process-scoped user_id -> connection_id map.

    Last registration wins: a second connection for the same user replaces
    the pointer. Only touched from the event loop, so no lock is needed.
    """

    def __init__(self):
        self._entries: Dict[str, str] = {}

    def register(self, user_id: str, connection_id: str) -> Optional[str]:
        """Point `user_id` at `connection_id`; returns the replaced connection id."""
        previous = self._entries.get(user_id)
        self._entries[user_id] = connection_id
        if previous and previous != connection_id:
            logger.debug(f"Presence for {user_id} moved {previous} -> {connection_id}")
        return previous

    def lookup(self, user_id: str) -> Optional[str]:
        return self._entries.get(user_id)

    def deregister(self, user_id: str, connection_id: Optional[str] = None) -> bool:
        """Remove the entry for `user_id`.

        With `connection_id`, only removes it if it still points at that
        connection, so a stale socket closing does not evict a newer one.
        """
        current = self._entries.get(user_id)
        if current is None:
            return False
        if connection_id is not None and current != connection_id:
            return False
        del self._entries[user_id]
        return True

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, user_id: str) -> bool:
        return user_id in self._entries

    def snapshot(self) -> Dict[str, str]:
        return dict(self._entries)
