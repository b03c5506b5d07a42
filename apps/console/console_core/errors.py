from __future__ import annotations

from typing import Any


class ConsoleError(Exception):
    """Base error for the authorization and synchronization layer."""


class GatewayError(ConsoleError):
    """Raised when the remote backend rejects or fails a request."""

    def __init__(self, message: str, *, status_code: int | None = None, code: str | None = None) -> None:
        self.message = message
        self.status_code = status_code
        self.code = code
        super().__init__(message)


class TransientGatewayError(GatewayError):
    """Network failure, timeout or server-side error worth retrying."""


class NotFoundError(GatewayError):
    def __init__(self, table: str, item_id: Any) -> None:
        self.table = table
        self.item_id = item_id
        super().__init__(f"{table} row '{item_id}' not found", status_code=404, code="not_found")


class ConflictError(GatewayError):
    """Unique constraint or duplicate-row rejection."""


class AuthorizationError(GatewayError):
    """The backend refused the caller. The message is passed through verbatim."""


class AccountExistsError(GatewayError):
    """Sign-up rejected because the email is already registered."""


class SchemaError(ConsoleError):
    """A payload did not match the schema of its entity kind."""

    def __init__(self, kind: str, errors: list[dict[str, Any]]) -> None:
        self.kind = kind
        self.errors = errors
        fields = sorted({".".join(str(part) for part in error.get("loc", ())) for error in errors})
        super().__init__(f"Invalid payload for '{kind}': {', '.join(fields) or 'unknown field'}")


class PermissionDeniedError(ConsoleError):
    """Local permission check failed for the current principal."""

    def __init__(self, module: str, action: str) -> None:
        self.module = module
        self.action = action
        super().__init__(f"Missing permission: {module}.{action}")


class CollectionLoadError(ConsoleError):
    """One or more collections failed to load; the others were replaced."""

    def __init__(self, failures: dict[str, BaseException]) -> None:
        self.failures = failures
        super().__init__(f"Failed to load collections: {', '.join(sorted(failures))}")


class InvalidOperationError(ConsoleError):
    """The requested operation does not apply to the entity's current state."""


class CompositeOperationError(ConsoleError):
    """A multi-step write failed partway. Completed steps are not rolled back."""

    def __init__(self, operation: str, step: str, completed: dict[str, Any], cause: BaseException) -> None:
        self.operation = operation
        self.step = step
        self.completed = completed
        self.cause = cause
        super().__init__(f"{operation} failed at step '{step}': {cause}")
