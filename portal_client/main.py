"""
Command line entry point for the Portal API Client.

Provides login, logout, credential status and authenticated requests against
the portal backend, mainly for scripting and troubleshooting.
"""

import sys
import json
import asyncio
import getpass
import argparse
import logging
from typing import Optional, List

from portal_client.api_client import AuthenticatedClient, UNAUTHORIZED
from portal_client.auth.credential_store import create_credential_store
from portal_client.auth.token_info import describe_credentials
from portal_client.auth_api import AuthApi
from portal_client.config import ClientConfiguration
from portal_shared.exceptions import PortalClientError
from portal_shared.logging_config import LogFormat, LogLevel, log_structured_error, setup_logging
from portal_shared.models import PortalType, RequestEnvelope

logger = logging.getLogger(__name__)

EXIT_SUCCESS = 0
EXIT_FAILURE = 1
EXIT_NOT_AUTHENTICATED = 2
EXIT_INTERRUPTED = 130


def parse_arguments(argv: Optional[List[str]] = None):
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        prog="portal-client",
        description="Portal API Client",
        epilog="""
Examples:
  %(prog)s --login admin@example.com              # Sign in (prompts for password)
  %(prog)s --status --json                        # Show stored credential state
  %(prog)s --request GET /api/v1/licenses         # Authenticated request
  %(prog)s --request POST /api/v1/categories --data '{"name": "Tools"}'
  %(prog)s --logout                               # Sign out and clear credentials
        """,
        formatter_class=argparse.RawDescriptionHelpFormatter
    )

    operation_group = parser.add_mutually_exclusive_group(required=True)
    operation_group.add_argument("--login", type=str, metavar="EMAIL",
                                 help="Sign in and store credentials")
    operation_group.add_argument("--logout", action="store_true",
                                 help="Sign out and clear stored credentials")
    operation_group.add_argument("--status", action="store_true",
                                 help="Show stored credential state and exit")
    operation_group.add_argument("--request", nargs=2, metavar=("METHOD", "PATH"),
                                 help="Send an authenticated request")

    login_group = parser.add_argument_group('Login')
    login_group.add_argument("--password", type=str,
                             help="Password (prompted for when omitted)")
    login_group.add_argument("--portal", type=str, default=PortalType.ADMIN.value,
                             choices=[p.value for p in PortalType],
                             help="Portal to sign in to (default: admin)")

    request_group = parser.add_argument_group('Request')
    request_group.add_argument("--data", type=str, metavar="JSON",
                               help="JSON request body")

    config_group = parser.add_argument_group('Configuration')
    config_group.add_argument("--config", type=str, metavar="FILE",
                              help="Path to configuration file")
    config_group.add_argument("--server-url", type=str, metavar="URL",
                              help="Override server URL")
    config_group.add_argument("--storage", type=str, choices=['auto', 'memory', 'file', 'keyring'],
                              help="Override credential storage backend")

    output_group = parser.add_argument_group('Output')
    output_group.add_argument("--json", action="store_true",
                              help="Output in JSON format")

    debug_group = parser.add_argument_group('Debug')
    debug_group.add_argument("--debug", action="store_true",
                             help="Enable debug logging")
    debug_group.add_argument("--log-file", type=str, metavar="FILE",
                             help="Also log to file")

    args = parser.parse_args(argv)

    if args.data is not None and not args.request:
        parser.error("--data can only be used with --request")

    return args


def configure_logging(args, config: ClientConfiguration) -> None:
    """Configure logging from arguments and configuration."""
    try:
        level = LogLevel.DEBUG if args.debug else LogLevel(config.get_log_level())
    except ValueError:
        level = LogLevel.INFO

    try:
        log_format = LogFormat(config.get_log_format())
    except ValueError:
        log_format = LogFormat.STANDARD

    setup_logging(
        log_level=level,
        log_format=log_format,
        log_file=args.log_file or config.get_log_file(),
        max_file_size=config.get_log_max_size(),
        backup_count=config.get_log_backup_count()
    )


def load_configuration(args) -> ClientConfiguration:
    config = ClientConfiguration(args.config)
    if args.server_url:
        config.set_override('server.url', args.server_url)
    if args.storage:
        config.set_override('storage.backend', args.storage)
    return config


def _print_session_ended(outcome) -> None:
    print(f"Session expired ({outcome.reason}). Sign in again with --login.", file=sys.stderr)


def _emit(args, payload: dict, text: str) -> None:
    if args.json:
        print(json.dumps(payload, indent=2, default=str))
    else:
        print(text)


async def run_status(args, config: ClientConfiguration) -> int:
    store = create_credential_store(config)
    status = describe_credentials(store.read())
    status['server_url'] = config.get_server_url()

    if status['authenticated']:
        expiry = status['access_token_expires_at'] or 'unknown'
        text = f"Authenticated against {status['server_url']} (access token expires: {expiry})"
    else:
        text = f"Not authenticated against {status['server_url']}"

    _emit(args, status, text)
    return EXIT_SUCCESS if status['authenticated'] else EXIT_NOT_AUTHENTICATED


async def run_login(args, config: ClientConfiguration) -> int:
    password = args.password or getpass.getpass(f"Password for {args.login}: ")

    async with AuthenticatedClient.from_config(config) as client:
        auth_api = AuthApi.from_config(client, config)
        user = await auth_api.login(args.login, password, PortalType(args.portal))

    name = ' '.join(filter(None, [user.get('firstName'), user.get('lastName')])) or args.login
    _emit(args, {'authenticated': True, 'user': user}, f"Signed in as {name}")
    return EXIT_SUCCESS


async def run_logout(args, config: ClientConfiguration) -> int:
    async with AuthenticatedClient.from_config(config) as client:
        remote_revoked = await AuthApi.from_config(client, config).logout()

    _emit(args, {'authenticated': False, 'remote_revoked': remote_revoked}, "Signed out")
    return EXIT_SUCCESS


async def run_request(args, config: ClientConfiguration) -> int:
    method, path = args.request
    body = json.loads(args.data) if args.data is not None else None

    async with AuthenticatedClient.from_config(config, on_session_ended=_print_session_ended) as client:
        response = await client.request(RequestEnvelope(method, path, body=body))

    try:
        parsed = response.json()
    except ValueError:
        parsed = response.text

    if args.json:
        print(json.dumps({'status': response.status, 'body': parsed}, indent=2, default=str))
    else:
        print(f"HTTP {response.status}", file=sys.stderr)
        print(json.dumps(parsed, indent=2) if not isinstance(parsed, str) else parsed)

    if response.status == UNAUTHORIZED:
        return EXIT_NOT_AUTHENTICATED
    return EXIT_SUCCESS if response.ok else EXIT_FAILURE


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    args = parse_arguments(argv)

    try:
        config = load_configuration(args)
        configure_logging(args, config)

        if args.status:
            return asyncio.run(run_status(args, config))
        if args.login:
            return asyncio.run(run_login(args, config))
        if args.logout:
            return asyncio.run(run_logout(args, config))
        return asyncio.run(run_request(args, config))

    except KeyboardInterrupt:
        print("\nOperation cancelled by user", file=sys.stderr)
        return EXIT_INTERRUPTED
    except json.JSONDecodeError as e:
        print(f"Invalid JSON for --data: {e}", file=sys.stderr)
        return EXIT_FAILURE
    except PortalClientError as e:
        log_structured_error(logger, e)
        print(f"Error: {e.user_message}", file=sys.stderr)
        return EXIT_FAILURE


if __name__ == "__main__":
    sys.exit(main())
