"""Typed configuration models for the Burrow YAML configuration.

Brief:
  The YAML document is validated into a tree of pydantic models. Every
  section is optional and falls back to the defaults below, so an empty file
  gives a proxy listening on 0.0.0.0:53 that forwards to Cloudflare's DoH
  endpoint through a local SOCKS5 proxy.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, Field, ValidationError, validator

logger = logging.getLogger(__name__)


class ConfigError(ValueError):
    """Raised when the configuration cannot be validated."""


class _Section(BaseModel):
    """Base for every config model: unknown keys are errors, not ignored."""

    class Config:
        extra = "forbid"


class ListenConfig(_Section):
    """Brief: UDP listener address.

    Inputs:
      - host: Address to bind (default all interfaces).
      - port: UDP port (default 53).
    """

    host: str = "0.0.0.0"
    port: int = Field(default=53, ge=0, le=65535)


class DoHConfig(_Section):
    """Brief: Encrypted upstream settings.

    Inputs:
      - endpoints: DoH URLs; one is picked at random for every query.
      - proxy: Tunnel URL (socks5:// or socks5h://). null connects directly.
      - verify: Verify TLS certificates. Disabling is an explicit opt-in.
      - ca_file: Optional CA bundle used when verify is true.
    """

    endpoints: List[str] = Field(
        default_factory=lambda: ["https://1.1.1.1/dns-query"]
    )
    proxy: Optional[str] = "socks5h://127.0.0.1:1080"
    verify: bool = True
    ca_file: Optional[str] = None

    @validator("endpoints")
    def _check_endpoints(cls, value: List[str]) -> List[str]:
        for url in value:
            if not str(url).lower().startswith(("https://", "http://")):
                raise ValueError(f"DoH endpoint must be an http(s) URL: {url!r}")
        return value


class SecondaryConfig(_Section):
    """Brief: Plain UDP resolver used for names matching ``match``.

    Inputs:
      - host: Resolver address; null disables the override route.
      - port: Resolver port.
      - match: Name patterns routed to this resolver.
      - match_mode: 'substring', 'suffix' or 'exact'.
      - timeout_ms: Wait for the single reply datagram.
      - fallback_to_doh: Retry via DoH when the secondary lookup fails.
      - rate_limited: Send secondary lookups through the global admission gate.
    """

    host: Optional[str] = None
    port: int = Field(default=53, ge=1, le=65535)
    match: List[str] = Field(default_factory=list)
    match_mode: str = "substring"
    timeout_ms: int = Field(default=5000, ge=1)
    fallback_to_doh: bool = False
    rate_limited: bool = False

    @validator("match", pre=True)
    def _coerce_match(cls, value: Union[str, List[str], None]) -> List[str]:
        if value is None:
            return []
        if isinstance(value, str):
            return [value]
        return value

    @validator("match_mode")
    def _check_mode(cls, value: str) -> str:
        mode = str(value).strip().lower()
        if mode not in ("substring", "suffix", "exact"):
            raise ValueError("match_mode must be one of substring, suffix, exact")
        return mode


class UpstreamConfig(_Section):
    doh: DoHConfig = Field(default_factory=DoHConfig)
    secondary: SecondaryConfig = Field(default_factory=SecondaryConfig)


class RateLimitConfig(_Section):
    """Brief: Global admission gate for upstream calls.

    Inputs:
      - max_concurrent: Attempts allowed in flight at once.
      - min_spacing_ms: Minimum gap between successive attempt starts.
    """

    max_concurrent: int = Field(default=1, ge=1)
    min_spacing_ms: int = Field(default=100, ge=0)


class RetryConfig(_Section):
    """Brief: Attempt budget for DoH calls.

    Inputs:
      - max_attempts: Attempts before the query is abandoned.
      - per_attempt_timeout_ms: Timeout applied to each attempt.
      - backoff_ms: Fixed sleep between failed attempts.
    """

    max_attempts: int = Field(default=3, ge=1)
    per_attempt_timeout_ms: int = Field(default=5000, ge=1)
    backoff_ms: int = Field(default=500, ge=0)


class CacheConfig(_Section):
    """Brief: Resolution cache policy.

    Inputs:
      - negative_ttl: Seconds to cache responses without answers (0 = never).
      - single_flight: Coalesce concurrent identical upstream lookups.
    """

    negative_ttl: int = Field(default=0, ge=0)
    single_flight: bool = True


class StatisticsConfig(_Section):
    enabled: bool = False
    interval_seconds: int = Field(default=60, ge=1)
    reset_on_log: bool = False
    log_level: str = "info"


class LoggingConfig(_Section):
    level: str = "info"
    stderr: bool = True
    file: Optional[str] = None
    syslog: Union[bool, Dict[str, Any]] = False


class BurrowConfig(_Section):
    """Brief: Root of the validated configuration tree."""

    listen: ListenConfig = Field(default_factory=ListenConfig)
    upstream: UpstreamConfig = Field(default_factory=UpstreamConfig)
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    statistics: StatisticsConfig = Field(default_factory=StatisticsConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


def validate_config(
    cfg: Optional[Dict[str, Any]], config_path: Optional[str] = None
) -> BurrowConfig:
    """Brief: Validate a parsed configuration mapping.

    Inputs:
      - cfg: Mapping loaded from YAML (variables already expanded).
      - config_path: Optional path used in error messages.

    Outputs:
      - BurrowConfig instance.

    Raises:
      - ConfigError with a readable summary of every validation problem.

    Example:
      >>> validate_config({}).listen.port
      53
    """

    data = dict(cfg or {})
    data.pop("variables", None)
    try:
        return BurrowConfig(**data)
    except ValidationError as exc:
        where = f" in {config_path}" if config_path else ""
        lines = []
        for err in exc.errors():
            loc = ".".join(str(p) for p in err.get("loc", ()))
            lines.append(f"  - {loc or '<root>'}: {err.get('msg')}")
        raise ConfigError(
            f"Invalid configuration{where}:\n" + "\n".join(lines)
        ) from exc
