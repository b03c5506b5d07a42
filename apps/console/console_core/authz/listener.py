from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from console_core.authz.resolver import PermissionResolver
from console_core.authz.schemas import PERMISSIONS_TABLE
from console_core.context import correlation_scope
from console_core.gateway.base import ChangeEvent, RemoteGateway, Unsubscribe
from console_core.metrics import observe_permission_change_event


logger = logging.getLogger("console_core.authz.listener")


class PermissionChangeListener:
    """Keeps the resolver live while permission rows change out of band.

    Change events land on a queue drained by a single worker task, so
    refreshes never run concurrently from this listener. The gateway feed
    and the worker are owned together: ``unsubscribe()`` releases both.
    """

    def __init__(self, gateway: RemoteGateway, resolver: PermissionResolver) -> None:
        self._gateway = gateway
        self._resolver = resolver
        self._queue: asyncio.Queue[ChangeEvent] | None = None
        self._worker: asyncio.Task[None] | None = None
        self._release_feed: Unsubscribe | None = None
        self._principal_id: str | None = None

    @property
    def active(self) -> bool:
        return self._release_feed is not None

    @property
    def principal_id(self) -> str | None:
        return self._principal_id

    def subscribe(self, principal_id: str) -> Unsubscribe:
        if self.active:
            self.unsubscribe()

        queue: asyncio.Queue[ChangeEvent] = asyncio.Queue()
        self._release_feed = self._gateway.subscribe_to_changes(PERMISSIONS_TABLE, queue.put_nowait)
        self._queue = queue
        self._principal_id = principal_id
        self._worker = asyncio.get_running_loop().create_task(self._consume(queue))
        logger.info("authz.listener_subscribed", extra={"principal_id": principal_id, "table": PERMISSIONS_TABLE})
        return self.unsubscribe

    def unsubscribe(self) -> None:
        release, self._release_feed = self._release_feed, None
        worker, self._worker = self._worker, None
        if release is not None:
            release()
        if worker is not None:
            worker.cancel()
        if release is not None or worker is not None:
            logger.info("authz.listener_unsubscribed", extra={"principal_id": self._principal_id})
        self._queue = None
        self._principal_id = None

    async def aclose(self) -> None:
        worker = self._worker
        self.unsubscribe()
        if worker is not None:
            try:
                await worker
            except asyncio.CancelledError:
                pass

    async def drain(self) -> None:
        """Wait until every queued event has been handled."""

        queue = self._queue
        if queue is not None:
            await queue.join()

    @asynccontextmanager
    async def subscribed(self, principal_id: str) -> AsyncIterator[PermissionChangeListener]:
        self.subscribe(principal_id)
        try:
            yield self
        finally:
            await self.aclose()

    async def _consume(self, queue: asyncio.Queue[ChangeEvent]) -> None:
        while True:
            event = await queue.get()
            try:
                await self._handle(event)
            except Exception:
                logger.exception(
                    "authz.change_handling_failed",
                    extra={"table": event.table, "event_type": event.event_type.value},
                )
            finally:
                queue.task_done()

    async def _handle(self, event: ChangeEvent) -> None:
        if not self._resolver.is_relevant(event):
            observe_permission_change_event("ignored")
            logger.debug("authz.change_ignored", extra={"event_type": event.event_type.value, "decision": "ignored"})
            return

        observe_permission_change_event("relevant")
        with correlation_scope():
            logger.info(
                "authz.change_relevant",
                extra={"event_type": event.event_type.value, "decision": "relevant", "principal_id": self._principal_id},
            )
            await self._resolver.refresh()
