"""Cache of the controller's blocked set, owned by the reconciler."""

from datetime import datetime
from typing import Optional


class BlockedCache:
    """Controller blocked-state as last observed.

    Refreshed from ``list_blocked()`` at the start of every tick. Between
    refreshes the reconciler records the commands the engine itself issued,
    so a device changed since the refresh is not mistaken for drift.
    """

    def __init__(self) -> None:
        self._blocked: set[str] = set()
        self._observed: set[str] = set()
        self._touched: set[str] = set()
        self.refreshed_at: Optional[datetime] = None

    def refresh(self, blocked: set[str], now: datetime) -> None:
        """Replace the cache with a full controller listing."""
        self._blocked = set(blocked)
        self._observed.clear()
        self._touched.clear()
        self.refreshed_at = now

    @property
    def is_fresh(self) -> bool:
        return self.refreshed_at is not None

    def is_blocked(self, mac: str) -> Optional[bool]:
        """Observed state for ``mac``, or None before the first refresh."""
        if not self.is_fresh and mac not in self._observed:
            return None
        return mac in self._blocked

    def observe(self, mac: str, blocked: bool) -> None:
        """Record controller state for one MAC learned outside a full refresh."""
        self._set(mac, blocked)
        self._observed.add(mac)

    def record(self, mac: str, blocked: bool) -> None:
        """Record a state the engine itself just applied."""
        self._set(mac, blocked)
        self._touched.add(mac)

    def was_touched(self, mac: str) -> bool:
        """True if the engine changed ``mac`` since the last refresh."""
        return mac in self._touched

    def forget(self, mac: str) -> None:
        self._blocked.discard(mac)
        self._observed.discard(mac)
        self._touched.discard(mac)

    def _set(self, mac: str, blocked: bool) -> None:
        if blocked:
            self._blocked.add(mac)
        else:
            self._blocked.discard(mac)

    def __len__(self) -> int:
        return len(self._blocked)
