"""Per-transfer multicast of progress events to live observers."""

from __future__ import annotations

import asyncio
import logging
from functools import partial
from typing import Protocol, runtime_checkable

from relaydrop.server.models import ProgressEvent

logger = logging.getLogger(__name__)

# Seconds one observer may take to accept a frame before it is dropped.
DELIVERY_TIMEOUT = 5.0


@runtime_checkable
class Observer(Protocol):
    """Anything that can receive a text frame, e.g. a Starlette WebSocket."""

    async def send_text(self, data: str) -> None: ...


class ProgressChannel:
    """Mapping of transfer id to the observers currently watching it.

    Delivery is at-most-once with no replay: an observer only sees events
    published while it is subscribed. Each delivery runs as its own task,
    so publishing never waits on an observer. Deliveries to one observer
    are chained and arrive in publish order.
    """

    def __init__(self, delivery_timeout: float = DELIVERY_TIMEOUT) -> None:
        self.delivery_timeout = delivery_timeout
        self._observers: dict[str, set[Observer]] = {}
        self._tails: dict[Observer, asyncio.Task[bool]] = {}
        self._pending: set[asyncio.Task[bool]] = set()

    def subscribe(self, transfer_id: str, observer: Observer) -> None:
        self._observers.setdefault(transfer_id, set()).add(observer)
        logger.debug("Observer attached to %s", transfer_id)

    def unsubscribe(self, transfer_id: str, observer: Observer) -> None:
        observers = self._observers.get(transfer_id)
        if observers is None:
            return
        observers.discard(observer)
        if not observers:
            del self._observers[transfer_id]
        logger.debug("Observer detached from %s", transfer_id)

    def subscriber_count(self, transfer_id: str) -> int:
        return len(self._observers.get(transfer_id, ()))

    def watched(self) -> list[str]:
        return list(self._observers)

    def publish(self, transfer_id: str, event: ProgressEvent) -> int:
        """Schedule delivery of ``event`` to every observer of ``transfer_id``.

        Returns immediately with the number of deliveries scheduled and
        never raises. Observers whose delivery fails or times out are
        dropped.
        """
        observers = self._observers.get(transfer_id)
        if not observers:
            return 0

        message = event.to_json()
        for observer in list(observers):
            task = asyncio.create_task(
                self._deliver(transfer_id, observer, message, self._tails.get(observer))
            )
            self._tails[observer] = task
            self._pending.add(task)
            task.add_done_callback(partial(self._delivery_done, observer))
        return len(observers)

    async def _deliver(
        self,
        transfer_id: str,
        observer: Observer,
        message: str,
        previous: asyncio.Task[bool] | None,
    ) -> bool:
        if previous is not None:
            await asyncio.wait({previous})
        if observer not in self._observers.get(transfer_id, ()):
            return False
        try:
            await asyncio.wait_for(observer.send_text(message), self.delivery_timeout)
        except asyncio.TimeoutError:
            logger.warning(
                "Dropping observer of %s: delivery took longer than %.1fs",
                transfer_id,
                self.delivery_timeout,
            )
        except Exception as exc:
            logger.warning("Dropping observer of %s after failed delivery: %s", transfer_id, exc)
        else:
            return True
        self.unsubscribe(transfer_id, observer)
        return False

    def _delivery_done(self, observer: Observer, task: asyncio.Task[bool]) -> None:
        self._pending.discard(task)
        if self._tails.get(observer) is task:
            del self._tails[observer]

    async def drain(self) -> int:
        """Wait for every scheduled delivery. Returns how many succeeded."""
        delivered = 0
        while self._pending:
            results = await asyncio.gather(*self._pending, return_exceptions=True)
            delivered += sum(result is True for result in results)
        return delivered

    async def close(self) -> None:
        """Cancel deliveries still in flight."""
        for task in list(self._pending):
            task.cancel()
        await asyncio.gather(*self._pending, return_exceptions=True)
        self._pending.clear()
        self._tails.clear()
