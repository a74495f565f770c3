"""CLI entry point for zotero-remote.

Two subcommands:

    setup    reset the test users and groups, print the resulting SuiteState
    request  send one request with suite credentials and print the response
"""

from __future__ import annotations

import argparse
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from zotero_remote.client import ApiClient
    from zotero_remote.models import ResponseHandle, SuiteConfig


@dataclass
class SetupArgs:
    config: Path
    api_version: int


@dataclass
class RequestArgs:
    config: Path
    api_version: int
    method: str
    path: str
    headers: list[str] = field(default_factory=list)
    data: str | None = None
    root: bool = False
    api_key: str | None = None
    verbose: int | None = None


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser with setup and request subcommands."""
    parser = argparse.ArgumentParser(
        prog="zotero-remote",
        description="Client tooling for the Zotero API integration suite.",
    )

    subparsers = parser.add_subparsers(dest="command", required=True, help="Command")

    def add_common(sub: argparse.ArgumentParser) -> None:
        sub.add_argument(
            "--config",
            type=Path,
            required=True,
            help="Path to suite configuration YAML",
        )
        sub.add_argument(
            "--api-version",
            type=int,
            default=3,
            choices=(1, 2, 3),
            help="Protocol version to speak (default: 3)",
        )

    # Setup subcommand
    setup_parser = subparsers.add_parser(
        "setup",
        help="Wipe the test users, issue API keys and reconcile the owned groups",
    )
    add_common(setup_parser)

    # Request subcommand
    request_parser = subparsers.add_parser(
        "request",
        help="Send one request and print status, headers and body",
    )
    add_common(request_parser)
    request_parser.add_argument("method", type=str.upper, help="HTTP method")
    request_parser.add_argument("path", help="Path relative to the API prefix, with query string")
    request_parser.add_argument(
        "--header",
        "-H",
        action="append",
        default=[],
        dest="headers",
        metavar="'NAME: VALUE'",
        help="Extra request header (can be repeated)",
    )
    request_parser.add_argument(
        "--data",
        "-d",
        default=None,
        help="Request body; prefix with @ to read it from a file",
    )
    request_parser.add_argument(
        "--root",
        action="store_true",
        help="Authenticate with the root credentials from the config",
    )
    request_parser.add_argument(
        "--api-key",
        default=None,
        help="API key to use instead of the one in the config",
    )
    request_parser.add_argument(
        "--verbose",
        "-v",
        type=int,
        choices=(0, 1, 2),
        default=None,
        help="Override the configured verbosity",
    )

    return parser


def parse_args(args: list[str] | None = None) -> SetupArgs | RequestArgs:
    """Parse command-line arguments and return typed args dataclass.

    Raises:
        SystemExit: If arguments are invalid (argparse behavior).
    """
    parser = build_parser()
    namespace = parser.parse_args(args)

    if namespace.command == "setup":
        return SetupArgs(config=namespace.config, api_version=namespace.api_version)
    elif namespace.command == "request":
        return RequestArgs(
            config=namespace.config,
            api_version=namespace.api_version,
            method=namespace.method,
            path=namespace.path,
            headers=namespace.headers or [],
            data=namespace.data,
            root=namespace.root,
            api_key=namespace.api_key,
            verbose=namespace.verbose,
        )
    else:
        parser.error(f"Unknown command: {namespace.command}")


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    try:
        parsed = parse_args(argv)

        if isinstance(parsed, SetupArgs):
            return run_setup(parsed)
        return run_request(parsed)

    except KeyboardInterrupt:
        print("\nInterrupted", file=sys.stderr)
        return 1


def _load_config(path: Path) -> SuiteConfig | None:
    from zotero_remote.config_loader import ConfigError, load_suite_config

    try:
        return load_suite_config(path)
    except ConfigError as e:
        print(f"Error loading config: {e}", file=sys.stderr)
        return None


def _make_client(config: SuiteConfig, api_version: int) -> ApiClient:
    from zotero_remote.client import ApiClient
    from zotero_remote.models import dialect_for_version

    return ApiClient(config, dialect_for_version(api_version))


def run_setup(args: SetupArgs) -> int:
    """Run setup mode. Prints the SuiteState as JSON on stdout."""
    from zotero_remote.client import ClientError
    from zotero_remote.normalizer import MalformedBodyError
    from zotero_remote.suite_setup import run_suite_setup
    from zotero_remote.transport import TransportError

    config = _load_config(args.config)
    if config is None:
        return 1

    with _make_client(config, args.api_version) as client:
        try:
            state = run_suite_setup(client)
        except (ClientError, MalformedBodyError, TransportError) as e:
            print(f"Setup failed: {e}", file=sys.stderr)
            return 1

    print(state.model_dump_json(indent=2))
    return 0


def _read_body(data: str | None) -> str | None:
    if data is None or not data.startswith("@"):
        return data
    return Path(data[1:]).read_text(encoding="utf-8")


def print_response(response: ResponseHandle) -> None:
    print(f"{response.status_code} {response.method} {response.url}")
    for name, values in response.headers.items():
        for value in values:
            print(f"{name}: {value}")
    print()
    print(response.body)


def run_request(args: RequestArgs) -> int:
    """Run request mode. Exit status is 0 for 2xx/3xx responses, 1 otherwise."""
    from zotero_remote.transport import TransportError

    config = _load_config(args.config)
    if config is None:
        return 1
    if args.verbose is not None:
        config = config.model_copy(update={"verbose": args.verbose})

    try:
        body = _read_body(args.data)
    except OSError as e:
        print(f"Error reading request body: {e}", file=sys.stderr)
        return 1

    with _make_client(config, args.api_version) as client:
        if args.api_key:
            client.use_api_key(args.api_key)
        auth = client.root_auth() if args.root else None
        try:
            response = client.request(args.method, args.path, body, args.headers, auth)
        except TransportError as e:
            print(f"Error: {e}", file=sys.stderr)
            return 1

    print_response(response)
    return 0 if response.status_code < 400 else 1


if __name__ == "__main__":
    sys.exit(main())
