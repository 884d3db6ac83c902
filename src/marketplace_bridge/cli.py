"""
Command-line interface for Marketplace Bridge operations.

Covers operator setup (encryption key, database, configuration check), tenant
credential management, the authorization flow, connection checks and manual
listing aggregation.
"""

import argparse
import asyncio
import getpass
import json
import os
import sys
from pathlib import Path
from typing import List, Optional

from marketplace_bridge.bridge import MarketplaceBridge
from marketplace_bridge.database.connection import get_session_factory, init_db
from marketplace_bridge.security.encryption import generate_encryption_key
from marketplace_bridge.utils.config import get_config, validate_configuration
from marketplace_bridge.utils.exceptions import MarketplaceBridgeError
from marketplace_bridge.utils.logger import get_logger, setup_logging


cli_logger = get_logger(__name__)


class MarketplaceBridgeCLI:
    """Command-line interface for Marketplace Bridge operations."""

    def __init__(self):
        self.bridge: Optional[MarketplaceBridge] = None

    def _init_bridge(self) -> MarketplaceBridge:
        """Initialize the bridge (lazy loading)."""
        if self.bridge is None:
            self.bridge = MarketplaceBridge(get_config(), session_factory=get_session_factory())
            cli_logger.debug("Bridge initialized")
        return self.bridge

    async def close(self) -> None:
        if self.bridge is not None:
            await self.bridge.aclose()

    async def cmd_key(self, args) -> int:
        """Handle encryption key commands."""
        if args.key_action == "generate":
            print(generate_encryption_key())
            print("Store this value as ENCRYPTION_KEY. Losing it makes stored "
                  "credentials unreadable.", file=sys.stderr)
            return 0
        print(f"❌ Unknown key action: {args.key_action}")
        return 1

    async def cmd_db(self, args) -> int:
        """Handle database commands."""
        if args.db_action == "init":
            init_db(get_session_factory())
            print("✅ Database tables created")
            return 0
        print(f"❌ Unknown db action: {args.db_action}")
        return 1

    async def cmd_config(self, args) -> int:
        """Handle configuration commands."""
        cli_logger.info("Validating configuration...")
        result = validate_configuration()

        if not result["valid"]:
            print(f"❌ Configuration invalid: {result.get('error') or '; '.join(result.get('warnings', []))}")
            return 1

        print("✅ Configuration is valid")
        for warning in result["warnings"]:
            print(f"⚠️  {warning}")
        print(f"📊 Summary: {json.dumps(result['summary'], indent=2)}")
        return 0

    async def cmd_credentials(self, args) -> int:
        """Store a tenant's own app credentials."""
        app_secret = args.app_secret or getpass.getpass("App secret: ")
        snapshot = self._init_bridge().save_app_credentials(args.tenant, args.app_id, app_secret)
        print(f"✅ App credentials stored for tenant {snapshot.tenant_id}")
        return 0

    async def cmd_authorize(self, args) -> int:
        """Run the two halves of the authorization flow."""
        bridge = self._init_bridge()

        if args.authorize_action == "url":
            request = bridge.build_authorization_url(args.tenant)
            print("Open this URL to grant access:")
            print(request.url)
            print(f"\nState: {request.state}")
            return 0

        if args.authorize_action == "complete":
            snapshot = await bridge.complete_authorization(args.tenant, args.code, args.state)
            print(f"✅ Tenant {snapshot.tenant_id} connected "
                  f"(marketplace user: {snapshot.marketplace_user_id or 'unknown'})")
            return 0

        print(f"❌ Unknown authorize action: {args.authorize_action}")
        return 1

    async def cmd_status(self, args) -> int:
        """Show a tenant's connection status."""
        status = await self._init_bridge().get_connection_status(args.tenant)

        if args.json:
            print(json.dumps(status.to_dict(), indent=2))
        else:
            icon = "✅" if status.connected else "❌"
            print(f"{icon} Connected: {status.connected}")
            print(f"   Has credentials: {status.has_credentials}")
            print(f"   Can sync: {status.can_sync}")
            if status.marketplace_user_id:
                print(f"   Marketplace user: {status.marketplace_user_id}")
            for issue in status.issues:
                print(f"⚠️  [{issue.code}] {issue.message} -> {issue.action}")

        return 0 if status.connected else 2

    async def cmd_fetch(self, args) -> int:
        """Aggregate a tenant's listings."""
        result = await self._init_bridge().fetch_all_listings(args.tenant, use_cache=not args.no_cache)
        payload = json.dumps(result.to_dict(), indent=2)

        if args.output:
            Path(args.output).write_text(payload, encoding="utf-8")
            print(f"✅ Wrote {result.total} listings to {args.output}")
        else:
            print(payload)

        for error in result.errors:
            print(f"⚠️  {error.stage}: {error.message}", file=sys.stderr)
        return 0

    async def cmd_disconnect(self, args) -> int:
        """Disconnect a tenant, keeping its app credentials."""
        if self._init_bridge().disconnect(args.tenant):
            print(f"✅ Tenant {args.tenant} disconnected")
            return 0
        print(f"❌ No credentials on file for tenant {args.tenant}")
        return 1


def create_parser() -> argparse.ArgumentParser:
    """Create command-line argument parser."""
    parser = argparse.ArgumentParser(
        prog="marketplace-bridge",
        description="Marketplace Bridge CLI - credential, token and listing operations",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  marketplace-bridge key generate                     # New ENCRYPTION_KEY
  marketplace-bridge db init                          # Create tables
  marketplace-bridge config validate                  # Check configuration
  marketplace-bridge credentials set t1 --app-id ID   # Store tenant app credentials
  marketplace-bridge authorize url t1                 # Start authorization
  marketplace-bridge authorize complete t1 --code C --state S
  marketplace-bridge status t1                        # Connection status
  marketplace-bridge fetch t1 --output listings.json  # Aggregate listings
  marketplace-bridge disconnect t1
        """
    )

    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Override LOG_LEVEL"
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    key_parser = subparsers.add_parser("key", help="Encryption key management")
    key_parser.add_argument("key_action", choices=["generate"])

    db_parser = subparsers.add_parser("db", help="Database management")
    db_parser.add_argument("db_action", choices=["init"])

    config_parser = subparsers.add_parser("config", help="Configuration management")
    config_parser.add_argument("config_action", choices=["validate"])

    credentials_parser = subparsers.add_parser("credentials", help="Tenant app credentials")
    credentials_parser.add_argument("credentials_action", choices=["set"])
    credentials_parser.add_argument("tenant", help="Tenant id")
    credentials_parser.add_argument("--app-id", required=True, help="Marketplace App ID")
    credentials_parser.add_argument("--app-secret", help="App secret (prompted if omitted)")

    authorize_parser = subparsers.add_parser("authorize", help="Marketplace authorization flow")
    authorize_subparsers = authorize_parser.add_subparsers(dest="authorize_action")
    url_parser = authorize_subparsers.add_parser("url", help="Print the consent URL")
    url_parser.add_argument("tenant", help="Tenant id")
    complete_parser = authorize_subparsers.add_parser("complete", help="Exchange the callback code")
    complete_parser.add_argument("tenant", help="Tenant id")
    complete_parser.add_argument("--code", required=True, help="Authorization code from the callback")
    complete_parser.add_argument("--state", required=True, help="State from the callback")

    status_parser = subparsers.add_parser("status", help="Connection status")
    status_parser.add_argument("tenant", help="Tenant id")
    status_parser.add_argument("--json", action="store_true", help="Print JSON")

    fetch_parser = subparsers.add_parser("fetch", help="Aggregate listings")
    fetch_parser.add_argument("tenant", help="Tenant id")
    fetch_parser.add_argument("--no-cache", action="store_true", help="Bypass the listing cache")
    fetch_parser.add_argument("--output", "-o", help="Write JSON to this file")

    disconnect_parser = subparsers.add_parser("disconnect", help="Disconnect a tenant")
    disconnect_parser.add_argument("tenant", help="Tenant id")

    return parser


async def main(argv: Optional[List[str]] = None) -> int:
    """Main CLI entry point."""
    parser = create_parser()
    args = parser.parse_args(argv)

    if args.log_level:
        os.environ["LOG_LEVEL"] = args.log_level
    setup_logging()

    if not args.command:
        parser.print_help()
        return 1

    cli = MarketplaceBridgeCLI()
    handlers = {
        "key": cli.cmd_key,
        "db": cli.cmd_db,
        "config": cli.cmd_config,
        "credentials": cli.cmd_credentials,
        "authorize": cli.cmd_authorize,
        "status": cli.cmd_status,
        "fetch": cli.cmd_fetch,
        "disconnect": cli.cmd_disconnect,
    }

    try:
        return await handlers[args.command](args)

    except MarketplaceBridgeError as e:
        cli_logger.error(f"{e.code}: {e}")
        print(f"❌ {e.message} [{e.code}] -> {e.action}")
        return 1
    except KeyboardInterrupt:
        print("\n⏹️  Operation cancelled by user")
        return 130
    except Exception as e:
        cli_logger.error(f"CLI operation failed: {e}", exc_info=True)
        print(f"❌ Operation failed: {e}")
        return 1
    finally:
        await cli.close()


def cli_entry_point():
    """Entry point for console script."""
    try:
        exit_code = asyncio.run(main())
        sys.exit(exit_code)
    except KeyboardInterrupt:
        print("\n⏹️  Interrupted")
        sys.exit(130)


if __name__ == "__main__":
    cli_entry_point()
