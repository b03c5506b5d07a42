from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Iterable, Mapping
from contextlib import asynccontextmanager
from typing import Any, Generic, TypeVar

from opentelemetry import trace

from console_core.context import correlation_scope
from console_core.entities.optimistic import Committed, OptimisticState, Pending, RolledBack, settle
from console_core.entities.registry import ENTITY_KINDS, EntityKind, InsertPosition
from console_core.entities.schemas import EntityModel
from console_core.errors import CollectionLoadError, InvalidOperationError, NotFoundError
from console_core.gateway.base import RemoteGateway
from console_core.metrics import observe_entity_load, observe_entity_mutation
from console_core.retry import with_retry


logger = logging.getLogger("console_core.entities")
tracer = trace.get_tracer("console_core.entities")

ModelT = TypeVar("ModelT", bound=EntityModel)


def _key(item_id: Any) -> str:
    return str(item_id)


class EntityCollection(Generic[ModelT]):
    """Local mirror of one remote collection.

    Every mutation is write-through: the remote call runs first and the
    local list changes only with the row the backend returned. A failed call
    leaves the list untouched and re-raises the gateway error unchanged.
    Results that arrive after ``clear()`` or ``teardown()`` are dropped.
    """

    def __init__(self, kind: EntityKind[ModelT], gateway: RemoteGateway) -> None:
        self.kind = kind
        self._gateway = gateway
        self._items: list[ModelT] = []
        self._states: dict[str, OptimisticState[ModelT]] = {}
        self._epoch = 0
        self._loaded = False
        self._closed = False

    @property
    def name(self) -> str:
        return self.kind.name

    @property
    def items(self) -> list[ModelT]:
        return list(self._items)

    @property
    def active_items(self) -> list[ModelT]:
        if not self.kind.soft_delete:
            return list(self._items)
        return [item for item in self._items if getattr(item, "active", True)]

    @property
    def loaded(self) -> bool:
        return self._loaded

    @property
    def closed(self) -> bool:
        return self._closed

    def get(self, item_id: Any) -> ModelT | None:
        key = _key(item_id)
        for item in self._items:
            if _key(item.id) == key:
                return item
        return None

    def state_of(self, item_id: Any) -> OptimisticState[ModelT] | None:
        return self._states.get(_key(item_id))

    def __len__(self) -> int:
        return len(self._items)

    async def load(self) -> list[ModelT]:
        epoch = self._begin()
        try:
            rows = await with_retry(
                lambda: self._gateway.fetch_collection(
                    self.kind.table, order_by=self.kind.order_by, descending=self.kind.descending
                ),
                operation_name=f"load.{self.name}",
            )
            items = self.kind.parse_many(rows)
        except Exception:
            observe_entity_load(self.name, "error")
            raise

        if not self._current(epoch, "load"):
            return items
        self._items = items
        self._loaded = True
        observe_entity_load(self.name, "ok")
        logger.info("entity.loaded", extra={"kind": self.name, "status": "ok", "operation": "load"})
        return list(items)

    async def create(self, fields: Mapping[str, Any] | ModelT) -> ModelT:
        payload = self.kind.dump_new(fields)
        epoch = self._begin()
        async with self._mutation("create") as span:
            row = await self._gateway.insert(self.kind.table, payload)
            item = self.kind.parse(row)
            span.set_attribute("entity_id", _key(item.id))
        if self._current(epoch, "create", item.id):
            self._insert(item)
        return item

    async def update(self, item: ModelT) -> ModelT:
        if item.id is None:
            raise InvalidOperationError(f"cannot update a {self.name} item without an id")
        payload = self.kind.dump_full(item)
        epoch = self._begin()
        async with self._mutation("update", item.id):
            row = await self._gateway.update(self.kind.table, item.id, payload)
            updated = self.kind.parse(row)
        if self._current(epoch, "update", item.id):
            self._replace(updated)
        return updated

    async def patch(self, item_id: Any, fields: Mapping[str, Any]) -> ModelT:
        current = self.get(item_id)
        if current is None:
            raise NotFoundError(self.kind.table, item_id)
        payload = self.kind.dump_patch(current, fields)
        epoch = self._begin()
        async with self._mutation("patch", item_id):
            row = await self._gateway.update(self.kind.table, current.id, payload)
            updated = self.kind.parse(row)
        if self._current(epoch, "patch", item_id):
            self._replace(updated)
        return updated

    async def remove(self, item_id: Any) -> None:
        epoch = self._begin()
        if self.kind.soft_delete:
            async with self._mutation("soft_delete", item_id):
                await self._gateway.soft_delete(self.kind.table, item_id)
            if not self._current(epoch, "soft_delete", item_id):
                return
            current = self.get(item_id)
            if current is not None:
                self._replace(current.model_copy(update={"active": False}))
            return

        async with self._mutation("hard_delete", item_id):
            await self._gateway.hard_delete(self.kind.table, item_id)
        if self._current(epoch, "hard_delete", item_id):
            self._items = [item for item in self._items if _key(item.id) != _key(item_id)]

    async def optimistic_update(self, item: ModelT) -> Committed[ModelT] | RolledBack[ModelT]:
        """Show ``item`` immediately, then commit it or restore the previous value.

        The write itself is not retried. A failure ends in ``RolledBack`` with
        the original error attached instead of raising.
        """

        previous = self.get(item.id) if item.id is not None else None
        if previous is None:
            raise NotFoundError(self.kind.table, item.id)

        key = _key(item.id)
        pending: Pending[ModelT] = Pending(value=item, previous=previous)
        self._states[key] = pending
        self._replace(item)

        outcome: ModelT | BaseException
        try:
            outcome = await self.update(item)
        except Exception as exc:
            outcome = exc

        state = settle(pending, outcome)
        if self._states.get(key) is pending:
            self._states[key] = state
            if isinstance(state, RolledBack) and not self._closed:
                self._replace(state.value)
        return state

    def clear(self) -> None:
        self._epoch += 1
        self._items = []
        self._states = {}
        self._loaded = False

    def teardown(self) -> None:
        self.clear()
        self._closed = True

    # -- internals ------------------------------------------------------

    def _begin(self) -> int:
        if self._closed:
            raise InvalidOperationError(f"collection '{self.name}' has been torn down")
        return self._epoch

    def _current(self, epoch: int, operation: str, item_id: Any = None) -> bool:
        if epoch == self._epoch and not self._closed:
            return True
        logger.info(
            "entity.result_discarded",
            extra={"kind": self.name, "operation": operation, "entity_id": None if item_id is None else _key(item_id)},
        )
        return False

    def _insert(self, item: ModelT) -> None:
        if self.get(item.id) is not None:
            self._replace(item)
        elif self.kind.insert_at == InsertPosition.START:
            self._items.insert(0, item)
        else:
            self._items.append(item)

    def _replace(self, updated: ModelT) -> None:
        key = _key(updated.id)
        for index, item in enumerate(self._items):
            if _key(item.id) == key:
                self._items[index] = updated
                return
        self._insert(updated)

    @asynccontextmanager
    async def _mutation(self, operation: str, item_id: Any = None) -> AsyncIterator[trace.Span]:
        with correlation_scope(), tracer.start_as_current_span(f"entities.{operation}") as span:
            span.set_attribute("kind", self.name)
            if item_id is not None:
                span.set_attribute("entity_id", _key(item_id))
            try:
                yield span
            except Exception as exc:
                observe_entity_mutation(self.name, operation, "error")
                logger.warning(
                    "entity.mutation_failed",
                    extra={
                        "kind": self.name,
                        "operation": operation,
                        "entity_id": None if item_id is None else _key(item_id),
                        "error": str(exc),
                    },
                )
                raise
            observe_entity_mutation(self.name, operation, "ok")
            logger.info(
                "entity.mutation",
                extra={"kind": self.name, "operation": operation, "entity_id": None if item_id is None else _key(item_id)},
            )


class EntityStore:
    """All entity collections of one console session."""

    def __init__(self, gateway: RemoteGateway, kinds: Iterable[EntityKind[Any]] | None = None) -> None:
        selected = list(kinds) if kinds is not None else list(ENTITY_KINDS.values())
        self._collections: dict[str, EntityCollection[Any]] = {
            kind.name: EntityCollection(kind, gateway) for kind in selected
        }

    def collection(self, name: str) -> EntityCollection[Any]:
        try:
            return self._collections[name]
        except KeyError:
            raise KeyError(f"entity kind '{name}' is not tracked by this store") from None

    __getitem__ = collection

    def __contains__(self, name: object) -> bool:
        return name in self._collections

    @property
    def kinds(self) -> list[str]:
        return list(self._collections)

    async def load_all(self, names: Iterable[str] | None = None) -> None:
        """Load collections concurrently.

        Collections that fail keep their previous items; the others are
        replaced. All failures are reported together.
        """

        targets = [self.collection(name) for name in names] if names is not None else list(self._collections.values())
        results = await asyncio.gather(*(collection.load() for collection in targets), return_exceptions=True)

        failures: dict[str, BaseException] = {}
        for collection, result in zip(targets, results):
            if isinstance(result, Exception):
                failures[collection.name] = result
            elif isinstance(result, BaseException):
                raise result
        if failures:
            logger.error(
                "entity.load_all_failed",
                extra={"status": "partial", "error": ", ".join(sorted(failures))},
            )
            raise CollectionLoadError(failures)

    def clear(self) -> None:
        for collection in self._collections.values():
            collection.clear()

    def teardown(self) -> None:
        for collection in self._collections.values():
            collection.teardown()
