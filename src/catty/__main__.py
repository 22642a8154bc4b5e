"""Command line entry point: ``python -m catty connect <label>``."""

from __future__ import annotations

import argparse
import asyncio
import sys

from ._logging import configure_debug_logging
from .errors import CattyError
from .pty import (
    ConnectionOutcome,
    ProcessExited,
    ReconnectSupervisor,
    ReplacedByPeer,
    Terminal,
    UserInterrupted,
)
from .sessions import APIError, AsyncSessionClient

EXIT_INTERRUPTED = 130  # 128 + SIGINT


def exit_code_for(outcome: ConnectionOutcome) -> int:
    """Map a final connection outcome to a process exit status.

    The relay has already printed the one-line notice for the outcome.
    """
    if isinstance(outcome, ProcessExited):
        return outcome.code
    if isinstance(outcome, UserInterrupted):
        return EXIT_INTERRUPTED
    if isinstance(outcome, ReplacedByPeer):
        return 0
    return 1


async def _connect(args: argparse.Namespace) -> int:
    async with AsyncSessionClient(host=args.api) as client:
        supervisor = ReconnectSupervisor(
            client,
            args.label,
            sync_back=args.sync_back,
            auto_reconnect=args.auto_reconnect,
        )
        outcome = await supervisor.run()
    return exit_code_for(outcome)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="catty")
    parser.add_argument("--api", default=None, help="API address (default: $CATTY_API_ADDR)")
    sub = parser.add_subparsers(dest="command", required=True)

    connect = sub.add_parser("connect", help="Reconnect to an existing session")
    connect.add_argument("label", help="Session label (e.g., brave-tiger-1234)")
    connect.add_argument(
        "--no-auto-reconnect",
        dest="auto_reconnect",
        action="store_false",
        help="Disable automatic reconnection on disconnect",
    )
    connect.add_argument(
        "--no-sync-back",
        dest="sync_back",
        action="store_false",
        help="Don't sync remote file changes back to local",
    )

    sub.add_parser("reset", help="Reset a terminal left in a broken state")
    return parser


def main(argv: list[str] | None = None) -> int:
    """Run the CLI.

    Returns:
        Exit code (the remote process's code on a clean exit).
    """
    args = _build_parser().parse_args(argv)
    configure_debug_logging()

    if args.command == "reset":
        Terminal.force_reset()
        return 0

    try:
        return asyncio.run(_connect(args))
    except APIError as e:
        print(f"\x1b[31m✗ {e}\x1b[0m", file=sys.stderr)
        if e.is_quota_exceeded() and e.upgrade_url:
            print(f"  Upgrade your plan: {e.upgrade_url}", file=sys.stderr)
        return 1
    except CattyError as e:
        print(f"\x1b[31m✗ {e}\x1b[0m", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        return EXIT_INTERRUPTED
    finally:
        Terminal.restore_active()


if __name__ == "__main__":
    sys.exit(main())
