"""
Distributed lock with a renewable lease.

Only the owner whose token is stored under the key may extend or release the
lease, so an instance whose lease expired can never touch the lease of the
process that took over.
"""

import asyncio
import uuid
from contextlib import suppress
from typing import Awaitable, Callable, Optional

from brawlsync.core.errors import LockLostError, StoreUnavailableError
from brawlsync.core.store import SharedStore
from brawlsync.utils.logger import get_logger

log = get_logger(__name__)


class LockLease:
    """Handle given to the exclusive body."""

    def __init__(self, store: SharedStore, key: str, token: str, ttl: float) -> None:
        self.store = store
        self.key = key
        self.token = token
        self.ttl = ttl
        self.lost = False

    async def renew(self) -> bool:
        """Extend the lease if this instance still owns it."""
        if self.lost:
            return False
        try:
            extended = await self.store.compare_and_extend(self.key, self.token, self.ttl)
        except StoreUnavailableError as exc:
            log.warning(f"Could not renew lock {self.key}, will retry: {exc}")
            return False
        if not extended:
            self.lost = True
            log.warning(f"Lock {self.key} lost: owner token no longer matches")
        return extended

    def ensure_held(self) -> None:
        if self.lost:
            raise LockLostError(f"Lock {self.key} is held by another owner", key=self.key)

    async def checkpoint(self) -> None:
        await self.renew()
        self.ensure_held()


class DistributedLock:
    def __init__(self, store: SharedStore, key: str, ttl: float = 300.0, heartbeat_interval: float = 30.0) -> None:
        self.store = store
        self.key = key
        self.ttl = ttl
        self.heartbeat_interval = heartbeat_interval

    async def run_exclusive(self, body: Callable[[LockLease], Awaitable[None]]) -> bool:
        """
        Run ``body`` only if the lease could be created.

        Returns ``False`` without running the body when another owner holds the
        lease or the store is unreachable. Losing the lease mid-run ends the body
        at its next checkpoint; errors raised by the body propagate after release.
        """
        token = uuid.uuid4().hex
        try:
            acquired = await self.store.set_if_absent(self.key, token, self.ttl)
        except StoreUnavailableError as exc:
            log.warning(f"Lock store unavailable, not acquiring {self.key}: {exc}")
            return False
        if not acquired:
            log.debug(f"Lock {self.key} busy; skipping")
            return False

        lease = LockLease(self.store, self.key, token, self.ttl)
        heartbeat = asyncio.create_task(self._heartbeat(lease))
        try:
            await body(lease)
        except LockLostError as exc:
            log.warning(f"Stopping exclusive run: {exc.message}")
        finally:
            heartbeat.cancel()
            with suppress(asyncio.CancelledError):
                await heartbeat
            await self._release(lease)
        return True

    async def _heartbeat(self, lease: LockLease) -> None:
        while not lease.lost:
            await asyncio.sleep(self.heartbeat_interval)
            await lease.renew()

    async def _release(self, lease: LockLease) -> Optional[bool]:
        try:
            released = await self.store.compare_and_delete(self.key, lease.token)
        except StoreUnavailableError as exc:
            log.warning(f"Could not release lock {self.key}; it will expire after {self.ttl:.0f}s: {exc}")
            return None
        if not released:
            log.debug(f"Lock {self.key} was no longer ours at release")
        return released
