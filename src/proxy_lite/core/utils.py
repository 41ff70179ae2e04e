import logging
import sys
from typing import Iterable, List, Optional, Tuple

import structlog

# Message framing is recomputed whenever a body is re-sent.
FRAMING_HEADERS = frozenset({"content-length", "transfer-encoding"})


def configure_logging(log_format: str = "console", level: str = "INFO") -> None:
    """Route structlog through stdlib logging on stderr."""
    renderer = (
        structlog.processors.JSONRenderer()
        if log_format == "json"
        else structlog.dev.ConsoleRenderer(colors=False)
    )
    structlog.configure(
        processors=[
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.stdlib.add_log_level,
            structlog.processors.format_exc_info,
            renderer,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
    )
    logging.basicConfig(
        format="%(message)s",
        level=getattr(logging, level.upper(), logging.INFO),
        stream=sys.stderr,
        force=True,
    )


def get_header(headers: Iterable[Tuple[str, str]], name: str) -> Optional[str]:
    """First value of a header, matched case-insensitively."""
    name = name.lower()
    for key, value in headers:
        if key.lower() == name:
            return value
    return None


def without_framing(headers: Iterable[Tuple[str, str]]) -> List[Tuple[str, str]]:
    return [(k, v) for k, v in headers if k.lower() not in FRAMING_HEADERS]


def split_authority(authority: str, default_port: int) -> Tuple[str, int]:
    """Split ``host[:port]`` (bracketed IPv6 included) into host and port."""
    if authority.startswith("["):
        host, _, rest = authority[1:].partition("]")
        port = rest[1:] if rest.startswith(":") else ""
    else:
        host, _, port = authority.rpartition(":") if ":" in authority else (authority, "", "")
    if not port:
        return host, default_port
    if not port.isdigit() or not 0 < int(port) < 65536:
        raise ValueError(f"invalid port in '{authority}'")
    return host, int(port)
