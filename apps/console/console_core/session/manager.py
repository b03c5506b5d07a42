from __future__ import annotations

import asyncio
import logging

from opentelemetry import trace

from console_core.authz.listener import PermissionChangeListener
from console_core.authz.resolver import PermissionResolver
from console_core.authz.schemas import EffectivePermissions
from console_core.context import correlation_scope, set_principal_id
from console_core.core.auth import decode_access_token
from console_core.core.config import Settings, get_settings
from console_core.core.events import InProcessEventBus
from console_core.errors import NotFoundError
from console_core.gateway.base import AuthEvent, AuthSession, RemoteGateway, Unsubscribe
from console_core.metrics import observe_session_transition
from console_core.principal import USERS_TABLE, Principal, SessionState, parse_principal
from console_core.retry import with_retry
from console_core.session.provisioning import AccountProvisioner


logger = logging.getLogger("console_core.session")
tracer = trace.get_tracer("console_core.session")

SESSION_AUTHENTICATED = "session.authenticated"
SESSION_CLEARED = "session.cleared"


class SessionManager:
    """Owns the signed-in principal and everything derived from it.

    State moves UNAUTHENTICATED -> LOADING -> AUTHENTICATED and back. Each
    bootstrap takes an epoch number; a sign-out or a newer bootstrap bumps
    the epoch and any bootstrap still in flight is discarded when it
    resumes. Lifecycle changes are published on ``events`` as
    ``session.authenticated`` and ``session.cleared``.
    """

    def __init__(
        self,
        gateway: RemoteGateway,
        resolver: PermissionResolver,
        listener: PermissionChangeListener,
        *,
        provisioner: AccountProvisioner | None = None,
        settings: Settings | None = None,
        events: InProcessEventBus | None = None,
    ) -> None:
        self._gateway = gateway
        self._resolver = resolver
        self._listener = listener
        self._settings = settings or get_settings()
        self._provisioner = provisioner
        self.events = events or InProcessEventBus()
        self._state = SessionState.UNAUTHENTICATED
        self._principal: Principal | None = None
        self._epoch = 0
        self._tasks: set[asyncio.Task[None]] = set()
        self._release_auth: Unsubscribe | None = None

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def principal(self) -> Principal | None:
        return self._principal

    @property
    def permissions(self) -> EffectivePermissions | None:
        return self._resolver.current

    @property
    def is_authenticated(self) -> bool:
        return self._state == SessionState.AUTHENTICATED

    # -- auth events ----------------------------------------------------

    def attach(self) -> Unsubscribe:
        if self._release_auth is None:
            self._release_auth = self._gateway.on_auth_event(self.on_session_event)
        return self.detach

    def detach(self) -> None:
        release, self._release_auth = self._release_auth, None
        if release is not None:
            release()

    def on_session_event(self, event: AuthEvent, session: AuthSession | None) -> None:
        task = asyncio.get_running_loop().create_task(self.handle_auth_event(event, session))
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    async def handle_auth_event(self, event: AuthEvent, session: AuthSession | None) -> None:
        logger.info("session.auth_event", extra={"event_type": event.value})
        if event == AuthEvent.SIGNED_OUT:
            self._clear_local()
            return

        if session is None:
            session = await self._gateway.get_session()
        if not self._usable(session):
            self._clear_local()
            return
        await self._bootstrap(session)

    async def wait_idle(self) -> None:
        """Wait for scheduled auth event handling to finish."""

        while pending := [task for task in self._tasks if not task.done()]:
            await asyncio.gather(*pending, return_exceptions=True)

    def _task_done(self, task: asyncio.Task[None]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("session.auth_event_failed", exc_info=exc, extra={"error": str(exc)})

    # -- operations -----------------------------------------------------

    async def establish(self) -> Principal | None:
        """Pick up an existing remote session, if any."""

        with correlation_scope():
            session = await self._gateway.get_session()
            if not self._usable(session):
                self._clear_local()
                return None
            return await self._bootstrap(session)

    async def sign_in(self, email: str, password: str) -> Principal | None:
        with correlation_scope():
            session = await self._gateway.sign_in_with_password(email, password)
            if self._release_auth is not None:
                await self.wait_idle()
                return self._principal
            return await self._bootstrap(session)

    async def sign_out(self) -> None:
        """Invalidate the remote session. Local state is cleared even if that fails."""

        with correlation_scope():
            try:
                await self._gateway.sign_out()
            except Exception as exc:
                logger.warning("session.remote_sign_out_failed", extra={"error": str(exc)})
                raise
            finally:
                self._clear_local()

    async def refresh_principal(self) -> Principal | None:
        current = self._principal
        if current is None:
            return None

        epoch = self._epoch
        row = await with_retry(
            lambda: self._gateway.fetch_by_id(USERS_TABLE, current.id),
            operation_name="session.refresh_profile",
        )
        principal = parse_principal(row)
        if epoch != self._epoch:
            return None
        if not principal.active:
            logger.warning("session.inactive_principal", extra={"principal_id": principal.id})
            await self.sign_out()
            return None

        self._principal = principal
        if principal.role != current.role or principal.is_admin != current.is_admin:
            await self._resolver.resolve(principal)
        return principal

    # -- internals ------------------------------------------------------

    def _usable(self, session: AuthSession | None) -> bool:
        if session is None:
            return False
        claims = decode_access_token(session.access_token, self._settings)
        if claims is None:
            logger.warning("session.invalid_token", extra={"principal_id": session.user_id})
            return False
        if claims.is_expired():
            logger.info("session.expired", extra={"principal_id": session.user_id})
            return False
        return True

    async def _bootstrap(self, session: AuthSession) -> Principal | None:
        self._epoch += 1
        epoch = self._epoch
        self._transition(SessionState.LOADING)

        with tracer.start_as_current_span("session.bootstrap") as span:
            span.set_attribute("principal_id", session.user_id)

            try:
                principal = await self._load_principal(session)
            except Exception as exc:
                if self._stale(epoch):
                    return None
                logger.error("session.profile_unavailable", extra={"principal_id": session.user_id, "error": str(exc)})
                self._clear_local()
                return None
            if self._stale(epoch):
                return None

            if not principal.active:
                logger.warning("session.inactive_principal", extra={"principal_id": principal.id})
                try:
                    await self.sign_out()
                except Exception as exc:
                    logger.error("session.inactive_sign_out_failed", extra={"principal_id": principal.id, "error": str(exc)})
                return None

            try:
                await self._resolver.resolve(principal)
            except Exception as exc:
                if self._stale(epoch):
                    return None
                logger.error("session.permissions_unavailable", extra={"principal_id": principal.id, "error": str(exc)})
                self._clear_local()
                return None
            if self._stale(epoch):
                return None

            self._principal = principal
            set_principal_id(principal.id)
            try:
                self._listener.subscribe(principal.id)
            except Exception as exc:
                logger.error("session.change_feed_unavailable", extra={"principal_id": principal.id, "error": str(exc)})
                self._clear_local()
                raise
            self._transition(SessionState.AUTHENTICATED)

        self.events.publish(SESSION_AUTHENTICATED, principal)
        return principal

    async def _load_principal(self, session: AuthSession) -> Principal:
        try:
            row = await with_retry(
                lambda: self._gateway.fetch_by_id(USERS_TABLE, session.user_id),
                operation_name="session.fetch_profile",
            )
        except NotFoundError:
            if self._settings.auto_provision_profiles and self._provisioner is not None:
                return await self._provisioner.ensure_profile(session)
            raise
        return parse_principal(row)

    def _stale(self, epoch: int) -> bool:
        if epoch == self._epoch:
            return False
        logger.info("session.bootstrap_discarded", extra={"status": f"epoch {epoch} < {self._epoch}"})
        return True

    def _clear_local(self) -> None:
        self._epoch += 1
        had_state = self._principal is not None or self._state != SessionState.UNAUTHENTICATED
        self._listener.unsubscribe()
        self._resolver.clear()
        self._principal = None
        set_principal_id(None)
        self._transition(SessionState.UNAUTHENTICATED)
        if had_state:
            self.events.publish(SESSION_CLEARED, None)

    def _transition(self, to_state: SessionState) -> None:
        if to_state == self._state:
            return
        from_state, self._state = self._state, to_state
        observe_session_transition(from_state.value, to_state.value)
        logger.info("session.transition", extra={"from_state": from_state.value, "to_state": to_state.value})
