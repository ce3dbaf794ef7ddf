from __future__ import annotations

import argparse
import logging
import sys

from brokertools.bootstrap import SseMode, StdioMode, TransportSelection, run
from brokertools.transports.sse import DEFAULT_BIND
from brokertools.utils.config_loader import load_local_env

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="brokertools",
        description="Serve Interactive Brokers quote/trade tools over MCP.",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Use verbose output (logged to stderr).")
    parser.add_argument("--config", default=None, help="Path to the YAML config file.")

    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("stdio", help="Run the server with stdio.")
    sse = sub.add_parser("sse", help="Run the server with SSE.")
    sse.add_argument("bind", nargs="?", default=DEFAULT_BIND, help=f"Bind address for the server (default {DEFAULT_BIND}).")
    return parser


def selection_from_args(args: argparse.Namespace) -> TransportSelection:
    if args.command == "stdio":
        return StdioMode()
    return SseMode(bind=args.bind)


def configure_logging(verbose: bool) -> None:
    # stdout carries the stdio transport, so logs always go to stderr.
    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format=LOG_FORMAT,
        handlers=[logging.StreamHandler(sys.stderr)],
    )
    if not verbose:
        logging.getLogger("ib_insync").setLevel(logging.ERROR)


def main(argv: list[str] | None = None) -> None:
    args = build_parser().parse_args(argv)
    configure_logging(args.verbose)
    load_local_env()
    raise SystemExit(run(selection_from_args(args), config_path=args.config, verbose=args.verbose))


if __name__ == "__main__":
    main()
