#!/usr/bin/env python3
"""
Sandbox Relay CLI - Main Entry Point

Usage:
    sandbox-relay create-snapshot                 # Build the sandbox snapshot
    sandbox-relay create-snapshot --name my-env:2 # Custom snapshot name
    sandbox-relay serve --port 8000               # Run the API server
    sandbox-relay --help                          # Show help
"""

import argparse
import sys
from pathlib import Path

from rich.console import Console

from cli.snapshot import DEFAULT_DOCKERFILE, DEFAULT_SNAPSHOT_NAME


def create_parser() -> argparse.ArgumentParser:
    """Create argument parser for CLI"""
    parser = argparse.ArgumentParser(
        prog="sandbox-relay",
        description="Sandbox Relay - per-tenant sandboxes with a streaming agent bridge",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  sandbox-relay create-snapshot                 Build the default snapshot
  sandbox-relay serve --reload                  Run the API with auto-reload

Configuration:
  create-snapshot reads DAYTONA_API_KEY from the environment or .dev.vars.
  serve reads its settings from the environment or .env.
        """
    )

    parser.add_argument(
        "--version",
        action="version",
        version="%(prog)s 1.0.0"
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    snapshot_parser = subparsers.add_parser("create-snapshot", help="Build the sandbox snapshot")
    snapshot_parser.add_argument(
        "--name",
        default=DEFAULT_SNAPSHOT_NAME,
        help=f"Snapshot name (default: {DEFAULT_SNAPSHOT_NAME})"
    )
    snapshot_parser.add_argument(
        "--dockerfile",
        type=Path,
        default=DEFAULT_DOCKERFILE,
        help="Dockerfile to build from (default: docker/sandbox.Dockerfile)"
    )

    serve_parser = subparsers.add_parser("serve", help="Run the API server")
    serve_parser.add_argument("--host", default=None, help="Bind host (default: SERVER_HOST)")
    serve_parser.add_argument("--port", type=int, default=None, help="Bind port (default: SERVER_PORT)")
    serve_parser.add_argument("--reload", action="store_true", help="Reload on code changes")

    return parser


def serve(host, port, reload: bool) -> int:
    import uvicorn
    from sandbox_relay.core.config import settings

    uvicorn.run(
        "sandbox_relay.main:app",
        host=host or settings.SERVER_HOST,
        port=port or settings.SERVER_PORT,
        reload=reload
    )
    return 0


def main(argv=None):
    """Main entry point"""
    parser = create_parser()
    args = parser.parse_args(argv)
    console = Console()

    try:
        if args.command == "create-snapshot":
            from cli import snapshot
            sys.exit(snapshot.run(args.name, args.dockerfile, console))

        elif args.command == "serve":
            sys.exit(serve(args.host, args.port, args.reload))

        parser.print_help()
        sys.exit(1)

    except KeyboardInterrupt:
        console.print("\n[dim]Interrupted[/dim]")
        sys.exit(130)


if __name__ == "__main__":
    main()
