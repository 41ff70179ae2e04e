from enum import Enum
from typing import List, Literal, Optional

from pydantic import BaseModel, Field, field_validator


class FilterMode(str, Enum):
    """Whether membership in the domain set denies or grants access."""

    DENY = "deny"
    ALLOW = "allow"


# Names used by older rule files.
_MODE_ALIASES = {
    "blacklist": FilterMode.DENY,
    "denylist": FilterMode.DENY,
    "whitelist": FilterMode.ALLOW,
    "allowlist": FilterMode.ALLOW,
}


class FilterConfig(BaseModel):
    """Filter rules document: a mode selector and a list of bare hostnames."""

    mode: FilterMode
    domains: List[str]

    model_config = {"extra": "ignore"}

    @field_validator("mode", mode="before")
    @classmethod
    def _normalize_mode(cls, value):
        if isinstance(value, str):
            key = value.strip().lower()
            return _MODE_ALIASES.get(key, key)
        return value

    @field_validator("domains")
    @classmethod
    def _bare_hostnames(cls, domains: List[str]) -> List[str]:
        cleaned = []
        for domain in domains:
            domain = domain.strip()
            if not domain:
                raise ValueError("domain entries must not be empty")
            if ":" in domain:
                raise ValueError(f"domain '{domain}' must not include a port")
            cleaned.append(domain)
        return cleaned


class ProxySettings(BaseModel):
    """Runtime settings for the listening proxy."""

    host: str = "127.0.0.1"
    port: int = Field(default=8080, ge=0, le=65535)
    # None keeps the operation unbounded.
    connect_timeout: Optional[float] = Field(default=None, gt=0)
    request_timeout: Optional[float] = Field(default=None, gt=0)
    log_format: Literal["console", "json"] = "console"
    log_level: str = "INFO"

    @field_validator("log_level")
    @classmethod
    def _upper_level(cls, value: str) -> str:
        return value.upper()
