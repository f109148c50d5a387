"""Command line entry point for the duet gateway."""

from __future__ import annotations

import argparse
import dataclasses
import sys

from aiohttp import web

from .config import GatewayConfig, load_config_from_env
from .logging import configure_logging, get_logger
from .ws_transport import create_app


logger = get_logger(__name__)


def build_config(args: argparse.Namespace) -> GatewayConfig:
    """Environment config with command line overrides applied on top."""

    config = load_config_from_env()
    overrides = {}
    if args.uploads_dir is not None:
        overrides["uploads_dir"] = args.uploads_dir
    if args.public_base_url is not None:
        overrides["public_base_url"] = args.public_base_url.rstrip("/")
    if overrides:
        config = dataclasses.replace(config, **overrides)
    return config


def _run_serve(args: argparse.Namespace) -> int:
    config = build_config(args)
    configure_logging(json_format=config.log_json, level=args.log_level)
    app = create_app(config, db_path=args.db, ping_interval_s=args.ping_interval)
    logger.info("gateway_starting", host=args.host, port=args.port, durable=args.db is not None)
    web.run_app(app, host=args.host, port=args.port, print=None)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="duet", description="Two-party realtime messaging gateway")
    subparsers = parser.add_subparsers(dest="command", required=True)

    serve_parser = subparsers.add_parser("serve", help="Run the aiohttp gateway server")
    serve_parser.add_argument("--host", default="127.0.0.1", help="Host to bind")
    serve_parser.add_argument("--port", type=int, default=8080, help="Port to bind")
    serve_parser.add_argument(
        "--ping-interval",
        type=int,
        default=30,
        help="Seconds between heartbeat pings",
    )
    serve_parser.add_argument("--db", type=str, default=None, help="Path to SQLite database for durability")
    serve_parser.add_argument("--uploads-dir", type=str, default=None, help="Directory for uploaded media")
    serve_parser.add_argument("--public-base-url", type=str, default=None, help="Base URL used in media links")
    serve_parser.add_argument("--log-level", default="INFO", help="Root log level")
    return parser


def main(argv: list[str] | None = None) -> int:
    """Entry point for CLI commands."""

    if argv is None:
        argv = sys.argv[1:]

    args = build_parser().parse_args(argv)
    if args.command == "serve":
        return _run_serve(args)
    return 2


if __name__ == "__main__":  # pragma: no cover - convenience execution
    raise SystemExit(main())
