#!/usr/bin/env python3
"""CLI for running and inspecting the Botify Codex bridge."""
from __future__ import annotations

import argparse
import sys

from botify.chat import ReplyContext
from botify.common import get_version


class _DiscardReplies:
    """Reply sink for a bridge that is only inspected, never started."""

    async def send(self, chat_id: str, text: str, context: ReplyContext) -> None:
        return None


def cmd_run(args):
    """Run the daemon in the foreground."""
    from botify import manager
    try:
        return manager.main()
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 1


def cmd_status(args):
    """Print the status report of a bridge built from the current config."""
    from botify.bridge import CodexBridge
    from botify.config import load_bridge_config
    try:
        config = load_bridge_config()
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 1

    bridge = CodexBridge(config, _DiscardReplies())
    chat_id = args.chat_id or config.owner_chat_id or ""
    print(bridge.status_report(chat_id))
    return 0


def cmd_version(args):
    """Print the installed version."""
    print(f"botify {get_version()}")
    return 0


def main(argv=None):
    parser = argparse.ArgumentParser(
        prog="botify",
        description="Bridge chat conversations to a Codex MCP server"
    )
    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # run
    subparsers.add_parser("run", help="Start the bridge daemon in the foreground")

    # status
    status_parser = subparsers.add_parser("status", help="Show bridge status")
    status_parser.add_argument("chat_id", nargs="?", help="Chat to report on (defaults to the owner chat)")

    # version
    subparsers.add_parser("version", help="Show version")

    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    commands = {
        "run": cmd_run,
        "status": cmd_status,
        "version": cmd_version,
    }

    return commands[args.command](args)


if __name__ == "__main__":
    sys.exit(main())
