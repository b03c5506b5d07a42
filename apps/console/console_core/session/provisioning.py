from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from typing import Any

from pydantic import ValidationError

from console_core.authz.admin import PermissionAdminService
from console_core.core.config import Settings, get_settings
from console_core.entities.schemas import SERVER_FIELDS, UserProfile
from console_core.errors import AccountExistsError, SchemaError
from console_core.gateway.base import AuthSession, RemoteGateway
from console_core.principal import USERS_TABLE, Principal, parse_principal
from console_core.retry import with_retry


logger = logging.getLogger("console_core.session.provisioning")


def _retryable(exc: Exception) -> bool:
    return not isinstance(exc, (AccountExistsError, SchemaError))


def _profile_payload(fields: Mapping[str, Any]) -> dict[str, Any]:
    try:
        profile = UserProfile.model_validate(dict(fields))
    except ValidationError as exc:
        raise SchemaError(USERS_TABLE, exc.errors()) from exc
    return profile.model_dump(mode="json", exclude=set(SERVER_FIELDS))


class AccountProvisioner:
    """Creates auth accounts together with their profile rows."""

    def __init__(
        self,
        gateway: RemoteGateway,
        admin: PermissionAdminService | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._gateway = gateway
        self._admin = admin or PermissionAdminService(gateway)
        self._settings = settings or get_settings()

    async def create_account(
        self,
        email: str,
        password: str,
        profile: Mapping[str, Any],
        rules: Iterable[Mapping[str, Any]] | None = None,
    ) -> Principal:
        """Sign up, insert the profile and attach principal-scoped rules.

        An email that is already registered raises ``AccountExistsError``
        without retrying. Each step runs on its own; a failure after sign-up
        leaves an auth account without a profile, which ``ensure_profile``
        can repair on first sign-in.
        """

        payload = _profile_payload({**profile, "email": email})
        retries = self._settings.provisioning_max_retries

        try:
            user_id = await with_retry(
                lambda: self._gateway.sign_up(email, password, {"name": payload.get("name")}),
                retries=retries,
                operation_name="provisioning.sign_up",
                retry_if=_retryable,
            )
        except AccountExistsError as exc:
            logger.warning("provisioning.account_exists", extra={"error": exc.message})
            raise AccountExistsError(
                f"An account for {email} already exists. Sign in instead, or reset the password.",
                status_code=exc.status_code,
                code=exc.code,
            ) from exc

        row = await with_retry(
            lambda: self._gateway.insert(USERS_TABLE, {**payload, "id": user_id}),
            retries=retries,
            operation_name="provisioning.insert_profile",
            retry_if=_retryable,
        )
        principal = parse_principal(row)

        if rules:
            await self._admin.grant_to_principal(principal.id, rules)

        logger.info("provisioning.account_created", extra={"principal_id": principal.id})
        return principal

    async def ensure_profile(self, session: AuthSession) -> Principal:
        """Create a default profile for an auth user that has none."""

        metadata = session.user_metadata or {}
        email = session.email or ""
        name = str(metadata.get("name") or email.split("@")[0] or session.user_id)
        payload = _profile_payload(
            {
                "name": name,
                "email": email or f"{session.user_id}@unknown.invalid",
                "role": self._settings.default_profile_role,
                "active": True,
            }
        )
        row = await with_retry(
            lambda: self._gateway.insert(USERS_TABLE, {**payload, "id": session.user_id}),
            retries=self._settings.provisioning_max_retries,
            operation_name="provisioning.ensure_profile",
            retry_if=_retryable,
        )
        logger.warning("provisioning.profile_created", extra={"principal_id": session.user_id})
        return parse_principal(row)
