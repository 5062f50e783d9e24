"""Command-line interface for deskauth credential management."""

from __future__ import annotations

import argparse
import asyncio
import json
import sys

from typing import TYPE_CHECKING, Any

from . import log
from .exceptions import DeskAuthError


if TYPE_CHECKING:
    from .auth import OAuthService
    from .config import DeskAuthSettings


def main() -> int:
    """Run the main CLI entry point.

    Returns
    -------
    int
        Exit code.
    """
    parser = argparse.ArgumentParser(
        prog="deskauth",
        description="Manage OAuth provider credentials stored by deskauth",
    )
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    subparsers.add_parser("status", help="Show stored credentials per provider")
    subparsers.add_parser("providers", help="List provider configurations")
    subparsers.add_parser("migrate", help="Migrate legacy single-file tokens")

    login_parser = subparsers.add_parser("login", help="Authenticate with a provider")
    login_parser.add_argument("provider", help="Provider id (e.g. google, github)")

    logout_parser = subparsers.add_parser("logout", help="Forget a provider's tokens")
    logout_parser.add_argument("provider", help="Provider id")

    key_parser = subparsers.add_parser("key", help="Inspect or rotate the encryption key")
    key_parser.add_argument(
        "action",
        choices=["info", "regenerate"],
        help="Show key details or generate a new key",
    )

    config_parser = subparsers.add_parser("config", help="Show configuration")
    config_parser.add_argument(
        "--show",
        action="store_true",
        help="Show current configuration (secrets redacted)",
    )

    args = parser.parse_args()

    if args.debug:
        log.enable_debug()

    handlers = {
        "status": handle_status,
        "providers": handle_providers,
        "migrate": handle_migrate,
        "login": handle_login,
        "logout": handle_logout,
        "key": handle_key,
        "config": handle_config,
    }
    handler = handlers.get(args.command)
    if handler is None:
        parser.print_help()
        return 0

    try:
        return handler(args)
    except DeskAuthError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1


def _load_settings() -> DeskAuthSettings:
    from .config import get_settings

    settings = get_settings()
    log.configure(settings.log)
    return settings


def _service() -> OAuthService:
    from .auth import OAuthService

    return OAuthService(_load_settings())


def _print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, default=str))


def handle_status(args: argparse.Namespace) -> int:  # pylint: disable=unused-argument
    """Print the status of every provider with stored tokens."""

    async def _run() -> dict[str, Any]:
        service = _service()
        try:
            statuses = await service.status()
            return {pid: status.to_dict() for pid, status in statuses.items()}
        finally:
            await service.close()

    statuses = asyncio.run(_run())
    if not statuses:
        print("No stored credentials")
        return 0
    _print_json(statuses)
    return 0


def handle_providers(args: argparse.Namespace) -> int:  # pylint: disable=unused-argument
    """List provider configurations and whether they can be used."""

    async def _run() -> list[tuple[str, str, bool]]:
        service = _service()
        try:
            return [(c.id, c.name, c.configured) for c in await service.list_providers()]
        finally:
            await service.close()

    for provider_id, name, configured in asyncio.run(_run()):
        marker = "configured" if configured else "missing client id"
        print(f"{provider_id:16} {name:20} {marker}")
    return 0


def handle_migrate(args: argparse.Namespace) -> int:  # pylint: disable=unused-argument
    """Copy legacy tokens into per-provider files."""

    async def _run() -> list[str]:
        service = _service()
        try:
            await service.tokens.initialize()
            return await service.migrate()
        finally:
            await service.close()

    migrated = asyncio.run(_run())
    if migrated:
        print(f"Migrated: {', '.join(migrated)}")
    else:
        print("Nothing to migrate")
    return 0


def handle_login(args: argparse.Namespace) -> int:
    """Authenticate with a provider through the system browser."""

    async def _run() -> str:
        async with _service() as service:
            result = await service.authenticate(args.provider)
            user = result.record.user if result.record else None
            return user.email or user.name or user.id if user else args.provider

    who = asyncio.run(_run())
    print(f"Authenticated: {who}")
    return 0


def handle_logout(args: argparse.Namespace) -> int:
    """Forget a provider's tokens."""

    async def _run() -> bool:
        service = _service()
        try:
            return await service.logout(args.provider)
        finally:
            await service.close()

    if asyncio.run(_run()):
        print(f"Logged out of {args.provider}")
    else:
        print(f"No stored credentials for {args.provider}")
    return 0


def handle_key(args: argparse.Namespace) -> int:
    """Show or regenerate the encryption key."""
    service = _service()
    if args.action == "regenerate":
        info = service.regenerate_key()
        print("Encryption key regenerated; stored credentials must be re-authorized.")
    else:
        info = service.key_info()
    _print_json(info)
    return 0


def handle_config(args: argparse.Namespace) -> int:  # pylint: disable=unused-argument
    """Show the current configuration with secrets redacted."""
    from .config import DeskAuthSettings

    print(DeskAuthSettings().show())
    return 0
