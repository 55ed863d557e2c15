"""
Command line entrypoint for the UDP redirector.

Parses and validates options, configures logging, then hands a validated
configuration to `udp_redirect.redirector.run_redirect`. Any fatal condition
exits with status 1.
"""

import sys
import argparse
import signal
import json
import time
from pathlib import Path
from typing import Any, Dict, List, Optional

from udp_redirect.config import ConfigError, build_config
from udp_redirect.errors import RedirectError
from udp_redirect.logging_utils import configure_file_logger, get_logger, level_from_flags
from udp_redirect.redirector import run_redirect

logger = get_logger("udp_redirect")


def signal_handler(signum, frame):
    """Stop the loop on SIGTERM the same way Ctrl-C does."""
    raise KeyboardInterrupt


def write_json_report(json_path: Optional[str], counters: Dict[str, int]) -> None:
    """Write the final redirect counters, stamped with the stop time."""
    if not json_path:
        return
    path = Path(json_path).expanduser()
    report = {"counters": counters, "ts_stop_ns": time.time_ns()}
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(report, indent=2, sort_keys=True), encoding="utf-8")
    except OSError as exc:
        logger.warning("Failed to write counters report", extra={"path": str(path), "error": str(exc)})
        return
    logger.info("Wrote counters report", extra={"path": str(path)})


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="udp-redirect",
        description="A simple UDP redirector: relays datagrams between a listen endpoint and a connect peer.",
    )

    parser.add_argument("--verbose", "-v", action="count", default=0,
                        help="Verbose mode, can be specified multiple times")
    parser.add_argument("--debug", action="store_true",
                        help="Debug mode")
    parser.add_argument("--quiet", action="store_true",
                        help="Only log warnings and errors")

    listen = parser.add_argument_group("listen endpoint")
    listen.add_argument("--listen-address", help="Listen address (default: any)")
    listen.add_argument("--listen-port", type=int, help="Listen port (required)")
    listen.add_argument("--listen-interface", help="Listen interface name")
    listen.add_argument("--listen-address-strict", action="store_true", default=None,
                        help="Only receive packets from the same source as the first packet")

    connect = parser.add_argument_group("connect peer")
    connect.add_argument("--connect-address", help="Connect address (required unless --connect-host)")
    connect.add_argument("--connect-host", help="Connect host, overrides --connect-address if both are specified")
    connect.add_argument("--connect-port", type=int, help="Connect port (required)")
    connect.add_argument("--connect-address-strict", action="store_true", default=None,
                         help="Only receive packets from the connect address / port")

    send = parser.add_argument_group("send endpoint")
    send.add_argument("--send-address", help="Send packets from address")
    send.add_argument("--send-port", type=int, help="Send packets from port")
    send.add_argument("--send-interface", help="Send packets from interface")

    sender = parser.add_argument_group("fixed listen sender")
    sender.add_argument("--listen-sender-address",
                        help="Listen endpoint only accepts packets from this source address")
    sender.add_argument("--listen-sender-port", type=int,
                        help="Listen endpoint only accepts packets from this source port "
                             "(must be set together, --listen-address-strict is implied)")

    errors = parser.add_mutually_exclusive_group()
    errors.add_argument("--ignore-errors", dest="ignore_errors", action="store_true", default=None,
                        help="Ignore most receive or send errors (unreachable, etc.) instead of exiting (default)")
    errors.add_argument("--stop-errors", dest="ignore_errors", action="store_false",
                        default=None, help="Exit on most receive or send errors (unreachable, etc.)")

    parser.add_argument("--stats", action="store_true", default=None,
                        help="Display statistics periodically")
    parser.add_argument("--stats-interval", type=float,
                        help="Statistics display interval in seconds (default: 60)")

    parser.add_argument("--stop-seconds", type=float,
                        help="Auto-stop after N seconds (for testing)")
    parser.add_argument("--json-out",
                        help="Optional path to write counters JSON on shutdown")
    parser.add_argument("--status-file",
                        help="Path to write redirector status JSON updates")
    parser.add_argument("--log-dir",
                        help="Also write JSON logs to a timestamped file in this directory")
    return parser


def config_overrides(args: argparse.Namespace) -> Dict[str, Any]:
    """Map parsed arguments onto configuration keys (None means not given)."""
    return {
        "LISTEN_ADDRESS": args.listen_address,
        "LISTEN_PORT": args.listen_port,
        "LISTEN_INTERFACE": args.listen_interface,
        "CONNECT_ADDRESS": args.connect_address,
        "CONNECT_HOST": args.connect_host,
        "CONNECT_PORT": args.connect_port,
        "SEND_ADDRESS": args.send_address,
        "SEND_PORT": args.send_port,
        "SEND_INTERFACE": args.send_interface,
        "LISTEN_STRICT": args.listen_address_strict,
        "CONNECT_STRICT": args.connect_address_strict,
        "LISTEN_SENDER_ADDRESS": args.listen_sender_address,
        "LISTEN_SENDER_PORT": args.listen_sender_port,
        "IGNORE_ERRORS": args.ignore_errors,
        "STATS": args.stats,
        "STATS_INTERVAL_S": args.stats_interval,
    }


def main(argv: Optional[List[str]] = None) -> int:
    """Main CLI entrypoint."""
    if hasattr(signal, "SIGTERM"):
        signal.signal(signal.SIGTERM, signal_handler)

    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        cfg = build_config(config_overrides(args))
    except ConfigError as exc:
        parser.print_usage(sys.stderr)
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)

    logger.setLevel(level_from_flags(args.verbose, args.debug, args.quiet))
    if args.log_dir:
        log_path = configure_file_logger("udp-redirect", logger, Path(args.log_dir))
        logger.info("Log file", extra={"path": str(log_path)})

    try:
        counters = run_redirect(
            cfg,
            stop_after_seconds=args.stop_seconds,
            status_file=args.status_file,
        )
    except RedirectError as exc:
        logger.error(str(exc), extra={"error_type": type(exc).__name__})
        sys.exit(1)
    except KeyboardInterrupt:
        # Signalled before the forwarding loop started.
        logger.info("Interrupted during startup, exiting")
        return 0

    logger.info("Redirector shutdown", extra={"counters": counters})
    write_json_report(args.json_out, counters)
    return 0


if __name__ == "__main__":
    sys.exit(main())
