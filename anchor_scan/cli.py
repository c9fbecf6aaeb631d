#!/usr/bin/env python3
#
# anchor-scan - BLE anchor that runs server-issued beacon scan jobs
#
# Polls the job server for scan jobs addressed to this anchor, listens for
# the Eddystone UID beacons of the job's tag roster, and uploads the best
# RSSI seen for every tag found before the job's deadline.
#

"""Command-line entry point for the anchor daemon."""

import argparse
import asyncio
import logging
import os
import platform
import signal
import sys

from .api import DEFAULT_BASE_URL, DEFAULT_TIMEOUT, JobApi
from .frames import DEFAULT_NAMESPACE, normalize_namespace
from .gui import GuiServer
from .identity import DEFAULT_STATE_FILE, load_anchor_id
from .orchestrator import DEBUG_SCAN_SECONDS, DEFAULT_POLL_INTERVAL, Orchestrator
from .radio import BleakRadio
from .results import ResultLog

logger = logging.getLogger("anchor_scan")

_TOKEN_ENV = "ANCHOR_SCAN_TOKEN"
_STATE_ENV = "ANCHOR_SCAN_STATE"

_BANNER = r"""
                  _
   __ _ _ __   ___| |__   ___  _ __      ___  ___ __ _ _ __
  / _` | '_ \ / __| '_ \ / _ \| '__|____/ __|/ __/ _` | '_ \
 | (_| | | | | (__| | | | (_) | | |_____\__ \ (_| (_| | | | |
  \__,_|_| |_|\___|_| |_|\___/|_|       |___/\___\__,_|_| |_|

   BLE anchor for server-issued beacon scan jobs
"""


def _configure_logging(verbose: bool, quiet: bool):
    if verbose:
        level = logging.DEBUG
    elif quiet:
        level = logging.WARNING
    else:
        level = logging.INFO
    logging.basicConfig(
        level=level,
        format='[%(asctime)s] %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S',
    )
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(
        logging.DEBUG if verbose else logging.WARNING)


def _print_header(args, anchor_id: str, namespace: str):
    """Print daemon configuration banner."""
    print(_BANNER)
    print(f"Anchor ID    : {anchor_id}")
    if args.debug_scan:
        print(f"Mode: DEBUG SCAN — {DEBUG_SCAN_SECONDS:.0f}s, no jobs, no uploads")
    else:
        print(f"Mode: JOB DAEMON — polling {args.base_url} every {args.poll_interval}s")
    print(f"Namespace    : {namespace}")
    if args.adapter:
        print(f"Adapter      : {args.adapter}")
    if args.log:
        print(f"Result log   : {args.log}")
    if args.gui:
        print(f"GUI port     : {args.gui_port}")
    print("Press Ctrl+C to stop")
    print(f"{'—'*60}")


def _print_sightings(orchestrator: Orchestrator):
    """Print the devices collected by a debug scan."""
    devices = orchestrator.snapshot()["devices"]
    print(f"\n{'—'*60}")
    print(f"Debug scan complete — {len(devices)} device(s)")
    if not devices:
        return
    print(f"\n  {'Address':<40} {'RSSI':>6}  {'Name'}")
    print(f"  {'—'*40} {'—'*6}  {'—'*20}")
    for d in devices:
        print(f"  {d['address']:<40} {d['rssi']:>6}  {d['name']}")
        print(f"    {d['details']}")


def _read_token(args, parser: argparse.ArgumentParser) -> str:
    if args.token:
        return args.token.strip()
    if args.token_file:
        try:
            with open(args.token_file) as f:
                token = f.read().strip()
        except OSError as e:
            parser.error(f"Cannot read token file: {e}")
        if not token:
            parser.error("Token file is empty")
        return token
    return os.environ.get(_TOKEN_ENV, "").strip()


async def _run(args, token: str, anchor_id: str, namespace: str) -> int:
    radio = BleakRadio(adapter=args.adapter)
    api = JobApi(token, base_url=args.base_url, timeout=args.http_timeout)
    orchestrator = Orchestrator(
        api, radio, anchor_id,
        namespace=namespace,
        poll_interval=args.poll_interval,
        result_log=ResultLog(args.log) if args.log else None,
    )

    # Install signal handlers inside the async context for clean
    # shutdown without the signal-handler / KeyboardInterrupt race.
    loop = asyncio.get_running_loop()
    if platform.system() != "Windows":
        loop.add_signal_handler(signal.SIGINT, orchestrator.stop)
        loop.add_signal_handler(signal.SIGTERM, orchestrator.stop)

    if not await radio.probe():
        orchestrator.radio_state_changed(False)

    if args.debug_scan:
        if not await orchestrator.run_debug_scan():
            print("Error: Bluetooth is not available")
            return 1
        _print_sightings(orchestrator)
        return 0

    gui = None
    if args.gui:
        gui = GuiServer(orchestrator, loop, port=args.gui_port)
        try:
            gui.start()
        except OSError as e:
            print(f"Error: {e}")
            return 1

    try:
        async with api:
            await orchestrator.run()
    finally:
        if gui is not None:
            gui.stop()
    return 0


def main():
    parser = argparse.ArgumentParser(
        description="BLE anchor — run beacon scan jobs issued by the job server"
    )

    # Server
    parser.add_argument(
        "--base-url", type=str, default=DEFAULT_BASE_URL, metavar="URL",
        help=f"Job server API root (default: {DEFAULT_BASE_URL})"
    )
    parser.add_argument(
        "--token", type=str, default=None,
        help=f"Bearer token for the job server (or set {_TOKEN_ENV})"
    )
    parser.add_argument(
        "--token-file", type=str, default=None, metavar="PATH",
        help="Read the bearer token from a file"
    )
    parser.add_argument(
        "--http-timeout", type=float, default=DEFAULT_TIMEOUT, metavar="SECONDS",
        help=f"Timeout for each API request (default: {DEFAULT_TIMEOUT:.0f})"
    )
    parser.add_argument(
        "--poll-interval", type=float, default=DEFAULT_POLL_INTERVAL, metavar="SECONDS",
        help=f"Seconds between job polls while idle (default: {DEFAULT_POLL_INTERVAL})"
    )

    # Identity
    parser.add_argument(
        "--state-file", type=str,
        default=os.environ.get(_STATE_ENV, DEFAULT_STATE_FILE), metavar="PATH",
        help=f"Where the anchor id is kept (default: {DEFAULT_STATE_FILE}, "
             f"or {_STATE_ENV})"
    )
    parser.add_argument(
        "--show-id", action="store_true",
        help="Print this anchor's id and exit"
    )

    # Radio
    parser.add_argument(
        "--namespace", type=str, default=DEFAULT_NAMESPACE, metavar="HEX",
        help=f"Eddystone UID namespace of job tags (default: {DEFAULT_NAMESPACE})"
    )
    parser.add_argument(
        "--adapter", type=str, default=None, metavar="NAME",
        help="Bluetooth adapter to scan with (e.g. hci0 — Linux only)"
    )
    parser.add_argument(
        "--debug-scan", action="store_true",
        help=f"Run one {DEBUG_SCAN_SECONDS:.0f}s scan, list every device seen, "
             "and exit (no jobs are polled)"
    )

    # Output
    parser.add_argument(
        "--log", type=str, default=None, metavar="FILE",
        help="Append each finished job's matched tags to a CSV file"
    )
    parser.add_argument(
        "--gui", action="store_true",
        help="Serve an operator status page in the browser"
    )
    parser.add_argument(
        "--gui-port", type=int, default=5000, metavar="PORT",
        help="Port for GUI web server (default: 5000)"
    )

    # Verbosity
    verbosity = parser.add_mutually_exclusive_group()
    verbosity.add_argument(
        "-v", "--verbose", action="store_true",
        help="Verbose mode — log requests, payloads and state changes"
    )
    verbosity.add_argument(
        "-q", "--quiet", action="store_true",
        help="Quiet mode — warnings and errors only"
    )

    args = parser.parse_args()

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------
    if args.token and args.token_file:
        parser.error("Cannot use --token and --token-file together")

    if args.poll_interval <= 0:
        parser.error("--poll-interval must be greater than 0")

    if args.http_timeout <= 0:
        parser.error("--http-timeout must be greater than 0")

    if args.debug_scan and args.gui:
        parser.error("Cannot use --debug-scan with --gui")

    try:
        namespace = normalize_namespace(args.namespace)
    except ValueError as e:
        parser.error(str(e))

    _configure_logging(args.verbose, args.quiet)

    try:
        anchor_id = load_anchor_id(args.state_file)
    except OSError as e:
        parser.error(f"Cannot write state file: {e}")

    if args.show_id:
        print(anchor_id)
        sys.exit(0)

    token = _read_token(args, parser)
    if not token and not args.debug_scan:
        parser.error(f"A bearer token is required: use --token, --token-file "
                     f"or set {_TOKEN_ENV}")

    if not args.quiet:
        _print_header(args, anchor_id, namespace)

    try:
        sys.exit(asyncio.run(_run(args, token, anchor_id, namespace)))
    except KeyboardInterrupt:
        # Windows has no add_signal_handler; Ctrl+C lands here instead
        logger.info("Stopping...")


if __name__ == "__main__":
    main()
