"""In-memory record of the bulbs the discovery listener has heard from."""

import logging
import time

from discovery.models import KnownBulb, PeerHandle

logger = logging.getLogger(__name__)


class BulbRegistry:
    """Deduplicates discovery reports by MAC. The latest IP wins."""

    def __init__(self) -> None:
        self._bulbs: dict[str, KnownBulb] = {}

    def __len__(self) -> int:
        return len(self._bulbs)

    def observe(self, handle: PeerHandle) -> bool:
        """Record a discovery report. Returns True the first time a MAC is seen."""
        now = time.time()
        ip = str(handle.ip)
        known = self._bulbs.get(handle.mac)

        if known is None:
            self._bulbs[handle.mac] = KnownBulb(
                mac=handle.mac, ip=ip, first_seen=now, last_seen=now
            )
            logger.info(f"New bulb {handle.mac} at {ip}")
            return True

        if known.ip != ip:
            logger.info(f"Bulb {handle.mac} moved from {known.ip} to {ip}")
        known.ip = ip
        known.last_seen = now
        known.replies += 1
        return False

    def get(self, mac: str) -> KnownBulb | None:
        return self._bulbs.get(mac.lower())

    def handle_for(self, mac: str) -> PeerHandle | None:
        """Build a handle for talking to a known bulb."""
        known = self.get(mac)
        if known is None:
            return None
        return PeerHandle(known.mac, known.ip)

    def all(self) -> list[KnownBulb]:
        return list(self._bulbs.values())
