"""Programmatic uvicorn entry point for LeakGuard.

Usage:
    leakguard                          # redact mode, built-in rules, 127.0.0.1:8000
    leakguard --reject                 # reject requests that carry secrets
    leakguard --rules rules.toml       # custom gitleaks-style rule set
    python -m leakguard.run --port 9000 --debug

Point the client at the proxy with ``ANTHROPIC_BASE_URL=http://127.0.0.1:8000``.
The proxy itself forwards to ``upstream.url`` (or the ``ANTHROPIC_BASE_URL`` it
was started with).

Environment:
    LOG_LEVEL, JSON_LOGS, DEBUG      logging (see leakguard.utils.logger)
    OTEL_EXPORTER_OTLP_ENDPOINT      enables OTLP/HTTP trace export
    OTEL_SERVICE_NAME                service name on exported spans
"""

from __future__ import annotations

import argparse
import os
from typing import Optional, Sequence

import uvicorn

from leakguard.config import load_config, validate_config
from leakguard.main import create_app
from leakguard.telemetry import configure_tracing
from leakguard.utils.logger import configure_logging, get_logger

# ─── Uvicorn hardened defaults ────────────────────────────────────────────────

# Maximum number of concurrent connections accepted by uvicorn.
# Must match httpx connection pool size (POOL_MAX_CONNECTIONS).
UVICORN_LIMIT_CONCURRENCY: int = 100

# OS-level TCP connection backlog queue size.
UVICORN_BACKLOG: int = 50

# HTTP keep-alive timeout in seconds.
UVICORN_TIMEOUT_KEEP_ALIVE: int = 5


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="leakguard",
        description="Credential-leak guarding proxy for the Anthropic Messages API.",
    )
    parser.add_argument(
        "--reject",
        action="store_true",
        help="reject requests with detected secrets instead of redacting them",
    )
    parser.add_argument(
        "--rules",
        metavar="PATH",
        help="custom rule set (TOML or YAML, gitleaks-compatible keys)",
    )
    parser.add_argument("--config", metavar="PATH", help="LeakGuard config file")
    parser.add_argument("--host", help="host to bind to (default from config: 127.0.0.1)")
    parser.add_argument("--port", type=int, help="port to listen on (default from config: 8000)")
    parser.add_argument("--debug", action="store_true", help="enable debug logging")
    return parser


def main(argv: Optional[Sequence[str]] = None) -> None:
    """Start the LeakGuard proxy server.

    Raises:
        SystemExit: Propagated from load_config() or validate_config() on config
            errors, flag overrides included.
    """
    args = build_parser().parse_args(argv)

    debug = args.debug or os.getenv("DEBUG", "false").lower() == "true"
    log_level = "DEBUG" if debug else os.getenv("LOG_LEVEL", "INFO")
    configure_logging(
        log_level=log_level,
        json_output=os.getenv("JSON_LOGS", "true").lower() == "true",
    )
    logger = get_logger("leakguard.run")

    config = load_config(args.config)
    if args.reject:
        config.proxy.reject_on_leak = True
    if args.rules:
        config.scanner.ruleset = args.rules
    if args.host:
        config.proxy.host = args.host
    if args.port is not None:
        config.proxy.port = args.port
    validate_config(config)

    shutdown_tracing = configure_tracing()
    logger.info(
        "proxy_server_starting",
        host=config.proxy.host,
        port=config.proxy.port,
        upstream=config.upstream.url,
        mode="reject" if config.proxy.reject_on_leak else "redact",
    )
    try:
        uvicorn.run(
            create_app(config),
            host=config.proxy.host,
            port=config.proxy.port,
            log_level=log_level.lower(),
            limit_concurrency=UVICORN_LIMIT_CONCURRENCY,
            backlog=UVICORN_BACKLOG,
            timeout_keep_alive=UVICORN_TIMEOUT_KEEP_ALIVE,
            timeout_graceful_shutdown=config.proxy.graceful_shutdown_s,
        )
    finally:
        shutdown_tracing()
        logger.info("proxy_server_stopped")


if __name__ == "__main__":
    main()
