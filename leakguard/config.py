"""Config loading for LeakGuard.

Reads `.leakguard/config.yaml` (or `~/.leakguard/config.yaml`).
Raises SystemExit on parse errors, a missing `version` field or invalid values.
If no config file is found, returns default values (safe to run without config).

Config search order:
  1. `config_path` argument (if provided — for testing or explicit override)
  2. LEAKGUARD_CONFIG environment variable (if set)
  3. `.leakguard/config.yaml` (working directory — for development)
  4. `~/.leakguard/config.yaml` (home directory — for production deployments)

Environment variable overrides:
  ANTHROPIC_BASE_URL — overrides upstream.url
  LEAKGUARD_PORT — overrides proxy.port (takes precedence over config file value)
  LEAKGUARD_CONFIG — sets an explicit config file path to try first

Example::

    version: 1
    upstream:
      url: https://api.anthropic.com
      read_timeout_s: 90
    scanner:
      ruleset: ~/.leakguard/rules.toml
      strategy: structured
    proxy:
      port: 8000
      reject_on_leak: false
      on_rewrite_error: reject
"""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass, field
from typing import Any, NoReturn, Optional
from urllib.parse import urlsplit

import yaml

from leakguard.constants import (
    BODY_READ_TIMEOUT_S,
    DEBUG_SCAN_PATH,
    DEFAULT_UPSTREAM_URL,
    GRACEFUL_SHUTDOWN_S,
    UPSTREAM_CONNECT_TIMEOUT_S,
    UPSTREAM_READ_TIMEOUT_S,
    UPSTREAM_WRITE_TIMEOUT_S,
)
from leakguard.utils.logger import get_logger

logger = get_logger(__name__)

# ─── Version constants ────────────────────────────────────────────────────────

SUPPORTED_CONFIG_VERSION = 1
SUPPORTED_VERSIONS: frozenset[int] = frozenset({1})

# ─── Validation sets ─────────────────────────────────────────────────────────

# scanner.strategy: "structured" walks the message schema; "raw" scans the
# messages source text and replaces across the whole body.
VALID_STRATEGIES: frozenset[str] = frozenset({"structured", "raw"})

# proxy.on_rewrite_error: what to do when a redacted body cannot be serialized.
VALID_REWRITE_ERROR_POLICIES: frozenset[str] = frozenset({"reject", "forward"})

DEFAULT_CONFIG_PATHS = [
    ".leakguard/config.yaml",
    os.path.expanduser("~/.leakguard/config.yaml"),
]


def _config_error(message: str) -> NoReturn:
    print(f"CONFIG ERROR: {message}", file=sys.stderr)
    raise SystemExit(1)


# ─── Dataclasses ─────────────────────────────────────────────────────────────


@dataclass
class UpstreamConfig:
    """Upstream Messages API origin and httpx timeouts.

    url: Only scheme, host and port are used; request paths are appended verbatim.
    """

    url: str = DEFAULT_UPSTREAM_URL
    connect_timeout_s: float = UPSTREAM_CONNECT_TIMEOUT_S
    read_timeout_s: float = UPSTREAM_READ_TIMEOUT_S
    write_timeout_s: float = UPSTREAM_WRITE_TIMEOUT_S


@dataclass
class ScannerConfig:
    """Scanner subsystem configuration."""

    ruleset: Optional[str] = None     # custom rule file; None = built-in rules
    strategy: str = "structured"      # "structured" | "raw"


@dataclass
class ProxyConfig:
    """Proxy binding and request-policy configuration."""

    host: str = "127.0.0.1"
    port: int = 8000
    reject_on_leak: bool = False
    on_rewrite_error: str = "reject"  # "reject" (fail-closed) | "forward" (fail-open)
    debug_path: str = DEBUG_SCAN_PATH
    body_read_timeout_s: float = BODY_READ_TIMEOUT_S
    graceful_shutdown_s: int = GRACEFUL_SHUTDOWN_S


@dataclass
class Config:
    """Root configuration object populated from .leakguard/config.yaml.

    All fields have safe defaults — LeakGuard can start without any config file.
    """

    version: int = SUPPORTED_CONFIG_VERSION
    upstream: UpstreamConfig = field(default_factory=UpstreamConfig)
    scanner: ScannerConfig = field(default_factory=ScannerConfig)
    proxy: ProxyConfig = field(default_factory=ProxyConfig)
    path: Optional[str] = None  # Path to the loaded config file

    @classmethod
    def defaults(cls) -> "Config":
        """Return a fully-default Config (no file required)."""
        return cls()

    @classmethod
    def from_dict(cls, raw: dict, path: Optional[str] = None) -> "Config":
        """Construct Config from a parsed YAML dict.

        Merges user-supplied values onto defaults; unknown keys are silently ignored.

        Raises:
            SystemExit(1): On any value of the wrong type or outside its allowed set.
        """
        upstream_raw = _section(raw, "upstream")
        upstream = UpstreamConfig(
            url=_get(upstream_raw, "upstream.url", str, DEFAULT_UPSTREAM_URL),
            connect_timeout_s=_positive(upstream_raw, "upstream.connect_timeout_s", UPSTREAM_CONNECT_TIMEOUT_S),
            read_timeout_s=_positive(upstream_raw, "upstream.read_timeout_s", UPSTREAM_READ_TIMEOUT_S),
            write_timeout_s=_positive(upstream_raw, "upstream.write_timeout_s", UPSTREAM_WRITE_TIMEOUT_S),
        )

        scanner_raw = _section(raw, "scanner")
        strategy = _get(scanner_raw, "scanner.strategy", str, "structured")
        if strategy not in VALID_STRATEGIES:
            _config_error(
                f"Invalid scanner.strategy: '{strategy}'. "
                f"Supported values: {sorted(VALID_STRATEGIES)}."
            )
        scanner = ScannerConfig(
            ruleset=_get(scanner_raw, "scanner.ruleset", str, None),
            strategy=strategy,
        )

        proxy_raw = _section(raw, "proxy")
        on_rewrite_error = _get(proxy_raw, "proxy.on_rewrite_error", str, "reject")
        if on_rewrite_error not in VALID_REWRITE_ERROR_POLICIES:
            _config_error(
                f"Invalid proxy.on_rewrite_error: '{on_rewrite_error}'. "
                f"Supported values: {sorted(VALID_REWRITE_ERROR_POLICIES)}."
            )
        proxy = ProxyConfig(
            host=_get(proxy_raw, "proxy.host", str, "127.0.0.1"),
            port=_get(proxy_raw, "proxy.port", int, 8000),
            reject_on_leak=_get(proxy_raw, "proxy.reject_on_leak", bool, False),
            on_rewrite_error=on_rewrite_error,
            debug_path=_get(proxy_raw, "proxy.debug_path", str, DEBUG_SCAN_PATH),
            body_read_timeout_s=_positive(proxy_raw, "proxy.body_read_timeout_s", BODY_READ_TIMEOUT_S),
            graceful_shutdown_s=_get(proxy_raw, "proxy.graceful_shutdown_s", int, GRACEFUL_SHUTDOWN_S),
        )

        return cls(
            version=raw.get("version", SUPPORTED_CONFIG_VERSION),
            upstream=upstream,
            scanner=scanner,
            proxy=proxy,
            path=path,
        )


# ─── Field helpers ────────────────────────────────────────────────────────────


def _section(raw: dict, name: str) -> dict:
    value = raw.get(name)
    if value is None:
        return {}
    if not isinstance(value, dict):
        _config_error(f"'{name}' must be a mapping.")
    return value


def _get(section: dict, key: str, kind: type, default: Any) -> Any:
    value = section.get(key.rsplit(".", 1)[-1])
    if value is None:
        return default
    # bool is an int subclass; "port: true" is still a mistake
    if not isinstance(value, kind) or (kind is int and isinstance(value, bool)):
        _config_error(f"{key} must be of type {kind.__name__}, got {type(value).__name__}.")
    return value


def _positive(section: dict, key: str, default: float) -> float:
    value = section.get(key.rsplit(".", 1)[-1])
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
        _config_error(f"{key} must be a positive number, got {value!r}.")
    return float(value)


def upstream_origin(url: str) -> str:
    """Reduce an upstream URL to its origin (``scheme://host[:port]``).

    Raises:
        SystemExit(1): Scheme is not http/https, or the host is missing.
    """
    try:
        parts = urlsplit(url.strip())
        parts.port  # raises ValueError on a non-numeric port
    except ValueError as exc:
        _config_error(f"Invalid upstream URL '{url}': {exc}")
    if parts.scheme not in ("http", "https") or not parts.hostname:
        _config_error(
            f"Invalid upstream URL '{url}'. Expected http(s)://host[:port]."
        )
    if parts.path not in ("", "/") or parts.query:
        logger.warning("Upstream URL path and query are ignored", url=url)
    return f"{parts.scheme}://{parts.netloc}"


def validate_config(config: Config) -> None:
    """Check a fully assembled config. Run again after any late override.

    Raises:
        SystemExit(1): On an invalid port, debug path, shutdown window or upstream URL.
    """
    config.upstream.url = upstream_origin(config.upstream.url)

    if not 0 < config.proxy.port < 65536:
        _config_error(f"proxy.port must be between 1 and 65535, got {config.proxy.port}.")
    if not config.proxy.debug_path.startswith("/"):
        _config_error(f"proxy.debug_path must start with '/', got '{config.proxy.debug_path}'.")
    if config.proxy.graceful_shutdown_s < 0:
        _config_error("proxy.graceful_shutdown_s must not be negative.")

    if config.proxy.host == "0.0.0.0":
        logger.warning(
            "SECURITY WARNING: LeakGuard is configured to bind on 0.0.0.0 (all interfaces). "
            "Anyone who can reach the port can relay requests through your API key. "
            "Recommended: use proxy.host: '127.0.0.1' for local-only access."
        )


# ─── Config loading ───────────────────────────────────────────────────────────


def load_config(config_path: Optional[str] = None) -> Config:
    """Load and validate LeakGuard configuration.

    If no file is found at any of the search paths, returns default Config
    (not an error). If a file is found but invalid, writes the error to stderr
    and raises SystemExit(1).

    Environment overrides (``ANTHROPIC_BASE_URL``, ``LEAKGUARD_PORT``) are
    applied afterwards, regardless of whether a config file was found.

    Raises:
        SystemExit(1): On YAML parse error, missing or unsupported ``version``,
                       invalid field values, invalid upstream URL, or invalid
                       ``LEAKGUARD_PORT``.
    """
    search_paths: list[str] = []
    if config_path:
        search_paths.append(config_path)
    env_config = os.environ.get("LEAKGUARD_CONFIG")
    if env_config:
        search_paths.append(env_config)
    search_paths.extend(DEFAULT_CONFIG_PATHS)

    found_path: Optional[str] = None
    for candidate in search_paths:
        expanded = os.path.expanduser(candidate)
        if os.path.isfile(expanded):
            found_path = expanded
            break

    if found_path is None:
        logger.info("No config file found — using defaults", searched=search_paths)
        config = Config.defaults()
        _apply_env_overrides(config)
        validate_config(config)
        return config

    logger.info("Loading config", path=found_path)

    try:
        with open(found_path, encoding="utf-8") as fh:
            raw = yaml.safe_load(fh)
    except yaml.YAMLError as exc:
        _config_error(
            f"Failed to parse {found_path}: {exc}\n"
            "LeakGuard refuses to start with an invalid config. "
            "Check the YAML syntax and try again."
        )
    except OSError as exc:
        _config_error(f"Could not read {found_path}: {exc}")

    if not isinstance(raw, dict):
        if raw is None:
            _config_error(
                f"{found_path} is missing the required 'version' field.\n"
                "Add 'version: 1' to the top of your config file."
            )
        _config_error(
            f"{found_path} is not a valid YAML mapping.\n"
            "The config file must be a YAML dictionary at the top level."
        )

    version = raw.get("version")
    if version is None:
        _config_error(
            f"{found_path} is missing the required 'version' field.\n"
            "Add 'version: 1' to the top of your config file."
        )
    if version not in SUPPORTED_VERSIONS:
        _config_error(
            f"Unsupported config version: {version}. "
            f"Supported versions: {sorted(SUPPORTED_VERSIONS)}."
        )

    config = Config.from_dict(raw, path=found_path)
    _apply_env_overrides(config)
    validate_config(config)

    logger.info(
        "Config loaded",
        path=found_path,
        version=config.version,
        upstream=config.upstream.url,
        strategy=config.scanner.strategy,
        reject_on_leak=config.proxy.reject_on_leak,
    )
    return config


def _apply_env_overrides(config: Config) -> None:
    """Apply environment variable overrides to a Config object in-place.

    Handles:
      ANTHROPIC_BASE_URL — overrides config.upstream.url
      LEAKGUARD_PORT — overrides config.proxy.port (raises SystemExit(1) if invalid)
    """
    env_url = os.environ.get("ANTHROPIC_BASE_URL")
    if env_url:
        config.upstream.url = env_url

    env_port = os.environ.get("LEAKGUARD_PORT")
    if env_port is not None:
        try:
            config.proxy.port = int(env_port)
        except ValueError:
            _config_error(
                f"LEAKGUARD_PORT environment variable is not a valid integer: '{env_port}'"
            )
