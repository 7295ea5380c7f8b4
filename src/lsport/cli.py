"""Command-line entry point for lsport."""

import argparse
import sys
from pathlib import Path

from lsport.config import Settings
from lsport.engine import Engine, one_shot
from lsport.errors import Ambiguous, ConnectError, KillError, ScanError
from lsport.kill import PidRef, PortRef
from lsport.logging_setup import setup_logging
from lsport.models import PortEntry
from lsport.remote import HostSpec


def port_number(value: str) -> int:
    port = int(value)
    if not 0 <= port <= 65535:
        raise argparse.ArgumentTypeError(f"invalid port: {value}")
    return port


def positive_float(value: str) -> float:
    seconds = float(value)
    if seconds <= 0:
        raise argparse.ArgumentTypeError(f"must be positive: {value}")
    return seconds


def add_remote_arguments(parser: argparse.ArgumentParser, inherited: bool = False) -> None:
    # Subcommands must not reset options given before the subcommand name
    extra = {"default": argparse.SUPPRESS} if inherited else {}
    parser.add_argument("-H", "--host", help="Remote host: [user@]host[:port]", **extra)
    parser.add_argument("-i", "--identity", type=Path, help="SSH private key (default: agent, then ~/.ssh keys)", **extra)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="lsport",
        description="Show listening ports and the processes that own them, locally or over SSH.",
    )
    add_remote_arguments(parser)
    parser.add_argument("-s", "--scan-interval", type=positive_float, help="Seconds between refreshes (default: 2)")
    parser.add_argument(
        "--cpu-threshold",
        type=float,
        help="CPU%% above which an orphaned process is flagged suspicious (default: 50)",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    parser.add_argument("--log-file", help="Write logs to this file")

    subparsers = parser.add_subparsers(dest="command")

    describe = subparsers.add_parser("describe", help="Describe a port or process (by port number or PID)")
    describe.add_argument("target", metavar="PORT_OR_PID", help="Port number, PID or process name")
    add_remote_arguments(describe, inherited=True)

    kill = subparsers.add_parser("kill", help="Kill a process by PID or port number")
    target = kill.add_mutually_exclusive_group(required=True)
    target.add_argument("--pid", type=int, help="Kill process by PID")
    target.add_argument("--port", type=port_number, help="Kill the process listening on this port")
    kill.add_argument("-f", "--force", action="store_true", help="Force kill (SIGKILL instead of SIGTERM)")
    add_remote_arguments(kill, inherited=True)

    return parser


def format_entry(entry: PortEntry) -> str:
    lines = [
        f"Port:        {entry.port}",
        f"Protocol:    {entry.protocol}",
        f"PID:         {'-' if entry.pid is None else entry.pid}",
        f"Process:     {entry.display_name}",
        f"CPU Usage:   {entry.cpu_percent:.1f}%",
        f"Memory:      {entry.memory_display}",
        f"Parent PID:  {'-' if entry.parent_pid is None else entry.parent_pid}",
        f"Has Parent:  {'Yes' if entry.has_live_parent else 'No'}",
        f"Suspicious:  {'Yes (high CPU and orphaned; heuristic)' if entry.is_suspicious else 'No'}",
    ]
    return "\n".join(lines)


def run_describe(args: argparse.Namespace, settings: Settings) -> int:
    with one_shot(args.host, args.identity, settings) as scan:
        entries = scan.describe(args.target)

    if not entries:
        print(f"No process found matching '{args.target}'", file=sys.stderr)
        return 1

    print(f"Found {len(entries)} matching process(es):\n")
    for entry in entries:
        print(format_entry(entry))
        print()
    return 0


def run_kill(args: argparse.Namespace, settings: Settings) -> int:
    target = PidRef(args.pid) if args.pid is not None else PortRef(args.port)

    with one_shot(args.host, args.identity, settings) as scan:
        try:
            outcome = scan.kill(target, force=args.force)
        except Ambiguous as e:
            print(f"Error: {e}", file=sys.stderr)
            for entry in scan.snapshot.entries:
                if entry.port == e.port and entry.pid in e.pids:
                    print(f"  PID {entry.pid}: {entry.display_name} on port {entry.port} ({entry.protocol})", file=sys.stderr)
            return 1
        except KillError as e:
            print(f"Error: {e}", file=sys.stderr)
            return 1

    print(outcome.describe())
    return 0


def run_tui(args: argparse.Namespace, settings: Settings) -> int:
    from lsport.app import LsportApp

    app = LsportApp(Engine(settings), host=args.host, identity=args.identity)
    app.run()
    return 0


def main(argv: list[str] | None = None) -> int:
    """Entry point for the lsport command."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.host is not None:
        try:
            HostSpec.parse(args.host)
        except ValueError as e:
            parser.error(str(e))

    setup_logging(verbose=args.verbose, log_file=args.log_file, console=args.command is not None)
    settings = Settings.from_env().with_overrides(
        scan_interval=args.scan_interval,
        suspicious_cpu_threshold=args.cpu_threshold,
    )

    try:
        if args.command == "describe":
            return run_describe(args, settings)
        if args.command == "kill":
            return run_kill(args, settings)
        return run_tui(args, settings)
    except (ConnectError, ScanError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
