"""Retention policy: purge expired transfers and orphaned landing areas."""

from __future__ import annotations

import asyncio
import logging

from relaydrop.server.engine import TransferEngine
from relaydrop.server.errors import NotFoundError
from relaydrop.server.models import TransferRecord

logger = logging.getLogger(__name__)

SWEEP_INTERVAL = 60 * 60  # 1 hour


class RetentionSweeper:
    def __init__(self, engine: TransferEngine) -> None:
        self.engine = engine
        self.store = engine.store

    async def list_expired(self) -> list[TransferRecord]:
        return await self.store.list_expired(self.engine.clock())

    async def purge(self, transfer_id: str) -> None:
        await self.engine.delete(transfer_id)

    async def sweep(self) -> int:
        """Run one cleanup pass. Returns the number of items removed."""
        logger.info("Running cleanup job...")
        removed = 0

        for transfer in await self.list_expired():
            try:
                await self.purge(transfer.id)
            except NotFoundError:
                # Deleted by someone else since the listing.
                continue
            except Exception:
                logger.exception("Failed to clean up transfer %s", transfer.id)
                continue
            removed += 1
            logger.info("Deleted expired transfer: %s", transfer.id)

        removed += await self._remove_orphans()
        logger.info("Cleanup complete. Removed %d item(s).", removed)
        return removed

    async def _remove_orphans(self) -> int:
        removed = 0

        for transfer_id in await self.engine.chunks.scan():
            if await self.engine.artifacts.exists(transfer_id):
                continue
            if await self.store.has_transfer(transfer_id):
                continue
            if await self._remove_quietly(self.engine.chunks.remove, transfer_id, "chunks"):
                removed += 1

        for transfer_id in await self.engine.files.scan():
            if await self.store.has_transfer(transfer_id):
                continue
            if await self._remove_quietly(self.engine.files.remove, transfer_id, "files"):
                removed += 1

        return removed

    async def _remove_quietly(self, remove, transfer_id: str, label: str) -> bool:
        try:
            await remove(transfer_id)
        except OSError as exc:
            logger.warning("Could not remove orphaned %s of %s: %s", label, transfer_id, exc)
            return False
        logger.info("Deleted orphaned %s: %s", label, transfer_id)
        return True

    async def run_periodically(self, interval: float = SWEEP_INTERVAL) -> None:
        """Sweep now, then every ``interval`` seconds until cancelled."""
        logger.info("Cleanup job scheduled (every %.0f s)", interval)
        while True:
            try:
                await self.sweep()
            except Exception:
                logger.exception("Cleanup job failed")
            await asyncio.sleep(interval)
