import argparse
import asyncio
import sys
from typing import List, Optional

import structlog
from pydantic import ValidationError

from .core.rules import FilterRules
from .core.server import ProxyServer
from .core.utils import configure_logging
from .errors import ConfigError
from .models import ProxySettings

logger = structlog.get_logger()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="proxy-lite",
        description="Forward HTTP proxy with CONNECT tunneling and domain filtering.",
    )
    parser.add_argument("--host", default="127.0.0.1", help="address to listen on")
    parser.add_argument("--port", type=int, default=8080, help="port to listen on")

    rules = parser.add_mutually_exclusive_group()
    rules.add_argument("--filter-file", metavar="PATH", help="TOML file with 'mode' and 'domains'")
    rules.add_argument("--deny", metavar="DOMAIN", action="append", help="block DOMAIN (repeatable)")
    rules.add_argument("--allow", metavar="DOMAIN", action="append", help="only permit DOMAIN (repeatable)")

    parser.add_argument("--connect-timeout", type=float, default=None, help="seconds to wait for tunnel origins")
    parser.add_argument("--request-timeout", type=float, default=None, help="seconds to wait for forwarded requests")
    parser.add_argument("--log-format", choices=["console", "json"], default="console")
    parser.add_argument("--log-level", default="INFO")
    return parser


def load_rules(args: argparse.Namespace) -> FilterRules:
    if args.filter_file:
        return FilterRules.from_file(args.filter_file)
    if args.allow:
        return FilterRules.allow(args.allow)
    return FilterRules.deny(args.deny or [])


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        settings = ProxySettings(
            host=args.host,
            port=args.port,
            connect_timeout=args.connect_timeout,
            request_timeout=args.request_timeout,
            log_format=args.log_format,
            log_level=args.log_level,
        )
    except ValidationError as e:
        print(f"Invalid settings: {e}", file=sys.stderr)
        return 2

    configure_logging(settings.log_format, settings.log_level)

    try:
        rules = load_rules(args)
    except ConfigError as e:
        logger.error("config_error", error=str(e))
        return 2

    server = ProxyServer(rules, settings)
    try:
        asyncio.run(server.serve_forever())
    except KeyboardInterrupt:
        logger.info("interrupted")
    except OSError as e:
        logger.error("proxy_start_failed", error=str(e))
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
