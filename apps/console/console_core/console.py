from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable
from typing import Any

from console_core.authz.admin import PermissionAdminService
from console_core.authz.listener import PermissionChangeListener
from console_core.authz.modules import Action, Module
from console_core.authz.resolver import PermissionResolver, check
from console_core.authz.schemas import EffectivePermissions
from console_core.core.config import Settings, get_settings
from console_core.core.events import InProcessEventBus, InternalEvent, Unsubscribe
from console_core.entities.registry import EntityKind
from console_core.entities.store import EntityCollection, EntityStore
from console_core.errors import CollectionLoadError, InvalidOperationError, PermissionDeniedError
from console_core.gateway.base import RemoteGateway
from console_core.principal import Principal, SessionState
from console_core.session.manager import SESSION_AUTHENTICATED, SESSION_CLEARED, SessionManager
from console_core.session.provisioning import AccountProvisioner


logger = logging.getLogger("console_core.console")


class ConsoleStore:
    """One console session: auth, permissions and entity collections.

    Build with ``create()``, call ``start()`` and release everything with
    ``teardown()``, or use it as an async context manager.
    """

    def __init__(
        self,
        gateway: RemoteGateway,
        settings: Settings,
        resolver: PermissionResolver,
        listener: PermissionChangeListener,
        session: SessionManager,
        entities: EntityStore,
        admin: PermissionAdminService,
        provisioner: AccountProvisioner,
        *,
        autoload: bool = True,
    ) -> None:
        self.gateway = gateway
        self.settings = settings
        self.resolver = resolver
        self.listener = listener
        self.session = session
        self.entities = entities
        self.admin = admin
        self.provisioner = provisioner
        self.autoload = autoload
        self.load_error: CollectionLoadError | None = None
        self._subscriptions: list[Unsubscribe] = []
        self._loads: set[asyncio.Task[None]] = set()
        self._started = False
        self._closed = False

    @classmethod
    def create(
        cls,
        gateway: RemoteGateway,
        settings: Settings | None = None,
        *,
        kinds: Iterable[EntityKind[Any]] | None = None,
        autoload: bool = True,
    ) -> ConsoleStore:
        settings = settings or get_settings()
        resolver = PermissionResolver(gateway, settings)
        listener = PermissionChangeListener(gateway, resolver)
        admin = PermissionAdminService(gateway)
        provisioner = AccountProvisioner(gateway, admin, settings)
        session = SessionManager(
            gateway,
            resolver,
            listener,
            provisioner=provisioner,
            settings=settings,
            events=InProcessEventBus(),
        )
        entities = EntityStore(gateway, kinds)
        return cls(
            gateway,
            settings,
            resolver,
            listener,
            session,
            entities,
            admin,
            provisioner,
            autoload=autoload,
        )

    async def __aenter__(self) -> ConsoleStore:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.teardown()

    @property
    def principal(self) -> Principal | None:
        return self.session.principal

    @property
    def permissions(self) -> EffectivePermissions | None:
        return self.resolver.current

    @property
    def state(self) -> SessionState:
        return self.session.state

    def collection(self, name: str) -> EntityCollection[Any]:
        return self.entities.collection(name)

    async def start(self) -> Principal | None:
        if self._closed:
            raise InvalidOperationError("console store has been torn down")
        if self._started:
            return self.principal
        self._started = True

        self._subscriptions.append(self.session.events.subscribe(SESSION_AUTHENTICATED, self._on_authenticated))
        self._subscriptions.append(self.session.events.subscribe(SESSION_CLEARED, self._on_cleared))
        self._subscriptions.append(self.session.attach())

        principal = await self.session.establish()
        await self.wait_loaded()
        return principal

    async def sign_in(self, email: str, password: str) -> Principal | None:
        principal = await self.session.sign_in(email, password)
        await self.wait_loaded()
        return principal

    async def sign_out(self) -> None:
        await self.session.sign_out()

    async def reload(self) -> None:
        """Load every collection. Failed kinds are kept in ``load_error``."""

        try:
            await self.entities.load_all()
        except CollectionLoadError as exc:
            self.load_error = exc
            raise
        self.load_error = None

    def can(self, module: Module | str, action: Action | str) -> bool:
        return check(self.resolver.current, module, action)

    def require(self, module: Module | str, action: Action | str) -> None:
        if not self.can(module, action):
            principal = self.principal
            logger.info(
                "authz.denied",
                extra={
                    "principal_id": principal.id if principal is not None else None,
                    "module": str(module),
                    "operation": str(action),
                },
            )
            raise PermissionDeniedError(str(module), str(action))

    async def teardown(self) -> None:
        if self._closed:
            return
        self._closed = True
        for unsubscribe in reversed(self._subscriptions):
            unsubscribe()
        self._subscriptions.clear()
        await self.session.wait_idle()
        await self.listener.aclose()
        loads = list(self._loads)
        for task in loads:
            task.cancel()
        await asyncio.gather(*loads, return_exceptions=True)
        self.resolver.clear()
        self.entities.teardown()
        logger.info("console.teardown", extra={"status": "closed"})

    async def wait_loaded(self) -> None:
        while pending := [task for task in self._loads if not task.done()]:
            await asyncio.gather(*pending, return_exceptions=True)

    def _on_authenticated(self, event: InternalEvent) -> None:
        if not self.autoload or self._closed:
            return
        task = asyncio.get_running_loop().create_task(self._autoload())
        self._loads.add(task)
        task.add_done_callback(self._loads.discard)

    async def _autoload(self) -> None:
        try:
            await self.reload()
        except CollectionLoadError as exc:
            logger.error("console.autoload_failed", extra={"error": str(exc)})

    def _on_cleared(self, event: InternalEvent) -> None:
        self.entities.clear()
        self.load_error = None
