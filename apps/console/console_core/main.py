from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys

from console_core.authz.modules import Action, Module
from console_core.console import ConsoleStore
from console_core.core.config import get_settings
from console_core.errors import ConsoleError
from console_core.gateway.rest import RestGateway
from console_core.logging import configure_logging
from console_core.otel import setup_otel


configure_logging()
logger = logging.getLogger("console_core.lifecycle")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Sign in and report the effective console permissions.")
    parser.add_argument("--email", required=True, help="account to sign in with")
    parser.add_argument(
        "--password-env",
        default="CONSOLE_PASSWORD",
        help="environment variable holding the password (default: CONSOLE_PASSWORD)",
    )
    parser.add_argument("--no-load", action="store_true", help="skip loading entity collections")
    parser.add_argument(
        "--verify-tokens",
        action="store_true",
        help=(
            "verify access token signatures with JWT_SECRET. Off by default: the backend signs "
            "tokens with its own secret and stays the authority, so claims are read unverified"
        ),
    )
    return parser


async def run(email: str, password: str | None, autoload: bool, verify_tokens: bool = False) -> int:
    settings = get_settings().model_copy(update={"jwt_verify_signature": verify_tokens})
    setup_otel(settings)

    async with RestGateway(settings) as gateway:
        store = ConsoleStore.create(gateway, settings, autoload=autoload)
        async with store:
            await store.sign_in(email, password or "")

            principal = store.principal
            if principal is None:
                logger.warning("console.no_principal")
                return 1

            for module in Module:
                granted = [action.value for action in Action if store.can(module, action)]
                logger.info("console.permissions", extra={"module": module.value, "status": ",".join(granted) or "-"})
            if store.load_error is not None:
                logger.error("console.partial_load", extra={"error": str(store.load_error)})
            await store.sign_out()
    return 0


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    password = os.getenv(args.password_env)
    try:
        return asyncio.run(run(args.email, password, not args.no_load, args.verify_tokens))
    except ConsoleError as exc:
        logger.error("console.failed", extra={"error": str(exc)})
        return 2


if __name__ == "__main__":
    sys.exit(main())
