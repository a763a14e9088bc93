"""Single-flight lease registry keyed by ``(user_id, render_hash)``."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Hashable

logger = logging.getLogger(__name__)


class Lease:
    """Exclusive right to generate one render. Release is idempotent."""

    def __init__(self, registry: InProcessLeaseRegistry, key: Hashable) -> None:
        self._registry = registry
        self.key = key
        self._done = asyncio.Event()
        self._released = False

    @property
    def released(self) -> bool:
        return self._released

    def release(self) -> None:
        if self._released:
            return
        self._released = True
        self._registry._release(self)
        self._done.set()

    async def wait(self) -> None:
        await self._done.wait()

    async def __aenter__(self) -> Lease:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        self.release()


class InProcessLeaseRegistry:
    """One leader per key; everyone else waits for the leader to finish.

    Keys are independent, so callers for different renders never block each
    other. Waiting never releases: only the Lease holder can.
    """

    def __init__(self) -> None:
        self._leases: dict[Hashable, Lease] = {}

    def try_acquire(self, key: Hashable) -> Lease | None:
        """Return a new Lease if nobody holds ``key``, else None."""
        if key in self._leases:
            return None
        lease = Lease(self, key)
        self._leases[key] = lease
        logger.debug("Lease acquired for %s", key)
        return lease

    async def wait(self, key: Hashable, timeout: float | None) -> bool:
        """Block until the current holder of ``key`` releases.

        Returns False when ``timeout`` elapses first, True otherwise
        (including when nobody held the key).
        """
        lease = self._leases.get(key)
        if lease is None:
            return True
        try:
            await asyncio.wait_for(lease.wait(), timeout)
        except TimeoutError:
            logger.warning("Timed out after %.1fs waiting on lease %s", timeout or 0, key)
            return False
        return True

    def is_held(self, key: Hashable) -> bool:
        return key in self._leases

    def __len__(self) -> int:
        return len(self._leases)

    def _release(self, lease: Lease) -> None:
        if self._leases.get(lease.key) is lease:
            del self._leases[lease.key]
            logger.debug("Lease released for %s", lease.key)
