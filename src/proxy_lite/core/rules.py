import tomllib
from pathlib import Path
from typing import FrozenSet, Iterable, Union

import structlog
from pydantic import ValidationError

from ..errors import ConfigError
from ..models import FilterConfig, FilterMode

logger = structlog.get_logger()


class FilterRules:
    """Allow-list or deny-list of bare hostnames.

    Built once at startup and shared read-only by every connection handler.
    """

    __slots__ = ("_mode", "_domains")

    def __init__(self, mode: FilterMode, domains: Iterable[str]):
        self._mode = FilterMode(mode)
        self._domains: FrozenSet[str] = frozenset(domains)

    @classmethod
    def deny(cls, domains: Iterable[str]) -> "FilterRules":
        return cls._validated(FilterMode.DENY, domains)

    @classmethod
    def allow(cls, domains: Iterable[str]) -> "FilterRules":
        return cls._validated(FilterMode.ALLOW, domains)

    @classmethod
    def _validated(cls, mode: FilterMode, domains: Iterable[str]) -> "FilterRules":
        """Apply the same hostname checks as a filter file."""
        try:
            config = FilterConfig(mode=mode, domains=list(domains))
        except ValidationError as e:
            raise ConfigError(f"Invalid filter domains: {e}") from e
        return cls.from_config(config)

    @classmethod
    def from_config(cls, config: FilterConfig) -> "FilterRules":
        return cls(config.mode, config.domains)

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> "FilterRules":
        """Load rules from a TOML document with ``mode`` and ``domains`` keys."""
        path = Path(path)
        if not path.is_file():
            raise ConfigError(f"Filter config file does not exist: {path}")
        try:
            content = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            raise ConfigError(f"Failed to read filter config file {path}: {e}") from e
        try:
            config = FilterConfig.model_validate(tomllib.loads(content))
        except (tomllib.TOMLDecodeError, ValidationError) as e:
            raise ConfigError(f"Failed to parse filter config file {path}: {e}") from e

        rules = cls.from_config(config)
        logger.info(
            "filter_loaded",
            path=str(path),
            mode=rules.mode.value,
            domains=len(rules.domains),
        )
        return rules

    @property
    def mode(self) -> FilterMode:
        return self._mode

    @property
    def domains(self) -> FrozenSet[str]:
        return self._domains

    def is_allowed(self, host: str) -> bool:
        domain = host.split(":", 1)[0]
        if self._mode is FilterMode.DENY:
            return domain not in self._domains
        return domain in self._domains

    def __repr__(self) -> str:
        return f"FilterRules(mode={self._mode.value}, domains={sorted(self._domains)})"
