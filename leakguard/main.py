"""LeakGuard FastAPI application factory + lifespan lifecycle.

This module implements:
  - create_app() — testable application factory
  - lifespan — @asynccontextmanager startup/shutdown sequence
  - app = create_app() — module-level instance for uvicorn

Startup sequence:
  1. load_config()            → app.state.config (skipped when one was injected)
  2. build_engine()           → built-in or custom rule set, compiled once
  3. SecretScanner / PayloadWalker → app.state.scanner / app.state.walker
  4. create_http_client()     → app.state.http_client
  5. RequestController        → app.state.controller

Shutdown: close the shared HTTP client.

The proxy is normally started through ``leakguard`` (see leakguard/run.py), which
also configures logging and tracing:
  uvicorn leakguard.main:app --host 127.0.0.1 --port 8000
"""

from __future__ import annotations

import os
import sys
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

import httpx
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

from leakguard import __version__
from leakguard.config import Config, load_config
from leakguard.proxy.engine import RequestController, create_http_client, router as engine_router
from leakguard.scanner.detector import SecretScanner
from leakguard.scanner.engine import RegexDetectionEngine
from leakguard.scanner.rules import DEFAULT_RULES, RulesetError, load_ruleset
from leakguard.scanner.walker import PayloadWalker
from leakguard.telemetry import get_tracer
from leakguard.utils.logger import get_logger

logger = get_logger(__name__)


def build_engine(config: Config) -> RegexDetectionEngine:
    """Compile the configured rule set.

    Raises:
        SystemExit(1): The custom rule set cannot be loaded.
    """
    if not config.scanner.ruleset:
        logger.info("Using built-in rule set", rules=len(DEFAULT_RULES))
        return RegexDetectionEngine(DEFAULT_RULES)

    try:
        rules = load_ruleset(config.scanner.ruleset)
    except RulesetError as exc:
        print(f"CONFIG ERROR: {exc}", file=sys.stderr)
        raise SystemExit(1)
    logger.info("Loaded custom rule set", path=config.scanner.ruleset, rules=len(rules))
    return RegexDetectionEngine(rules)


# ─── Lifespan ─────────────────────────────────────────────────────────────────


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan — startup and shutdown sequence."""
    logger.info("LeakGuard starting up...")

    # load_config() raises SystemExit on an invalid file; the process exits
    # before any request is accepted.
    config: Optional[Config] = getattr(app.state, "config", None)
    if config is None:
        config = load_config()
        app.state.config = config

    engine = build_engine(config)
    scanner = SecretScanner(engine, logger=get_logger("leakguard.scanner"))
    walker = PayloadWalker(scanner, logger=get_logger("leakguard.walker"))
    app.state.scanner = scanner
    app.state.walker = walker

    # Single shared client with connection pooling, NEVER per-request.
    http_client: httpx.AsyncClient = create_http_client(config)
    app.state.http_client = http_client

    app.state.controller = RequestController(
        config,
        walker,
        scanner,
        http_client,
        tracer=get_tracer(),
        logger=get_logger("leakguard.proxy"),
    )

    logger.info(
        "LeakGuard ready",
        upstream=config.upstream.url,
        strategy=config.scanner.strategy,
        reject_on_leak=config.proxy.reject_on_leak,
        on_rewrite_error=config.proxy.on_rewrite_error,
        debug_path=config.proxy.debug_path,
    )

    yield

    logger.info("LeakGuard shutting down...")
    try:
        await http_client.aclose()
        logger.info("HTTP proxy client closed")
    except Exception as exc:
        logger.warning("HTTP proxy client close error (non-fatal)", error=str(exc))
    logger.info("LeakGuard shutdown complete")


# ─── Application Factory ──────────────────────────────────────────────────────


def create_app(config: Optional[Config] = None) -> FastAPI:
    """Create and configure the LeakGuard FastAPI application.

    Call this function directly in tests to get an isolated app instance:
        app = create_app(Config())

    Args:
        config: Pre-built configuration. When None, the lifespan loads it
                from the config search path.
    """
    _debug = os.getenv("DEBUG", "false").lower() == "true"

    # Every path belongs to the proxy; the schema routes only exist in debug mode.
    application = FastAPI(
        title="LeakGuard",
        description="Credential-leak guard for the Anthropic Messages API",
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs" if _debug else None,
        redoc_url="/redoc" if _debug else None,
        openapi_url="/openapi.json" if _debug else None,
    )
    if config is not None:
        application.state.config = config

    # catch-all /{path:path}: debug scan path + proxied requests
    application.include_router(engine_router)

    @application.exception_handler(HTTPException)
    async def http_exception_handler(
        request: Request, exc: HTTPException
    ) -> JSONResponse:
        logger.warning(
            "HTTP exception",
            status_code=exc.status_code,
            detail=exc.detail,
            path=str(request.url.path),
        )
        return JSONResponse(
            status_code=exc.status_code,
            content={"type": "error", "error": {"type": "api_error", "message": str(exc.detail)}},
        )

    @application.exception_handler(Exception)
    async def unhandled_exception_handler(
        request: Request, exc: Exception
    ) -> JSONResponse:
        logger.error(
            "Unhandled exception",
            error_type=type(exc).__name__,
            path=str(request.url.path),
        )
        return JSONResponse(
            status_code=500,
            content={"type": "error", "error": {"type": "api_error", "message": "Internal server error"}},
        )

    return application


# ─── Module-Level App (for uvicorn) ───────────────────────────────────────────

app = create_app()
