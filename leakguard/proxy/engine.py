"""Async HTTP proxy handler for LeakGuard.

Every request that reaches the catch-all route is handled by a single
``RequestController`` built at lifespan startup. Its state machine:

  Received → BodyRead ─┬─ empty body ───────────────────────────→ Forward
                       └─ non-empty → Scanned ─┬─ Rejected (400)
                                               └─ Redacted / Passthrough → Forward
  Forward → ResponseRelayed (streamed, never buffered)

Key design properties:
  - Shared httpx.AsyncClient at app.state.http_client — never instantiated per-request
  - Scanning runs inside the ``check_leaks`` OpenTelemetry span
  - Requests without findings are forwarded as the original bytes
  - Upstream status, headers (repeats included) and raw body bytes are relayed
    as they arrive; the upstream response is closed when streaming ends

Failure mode separation:
  - Leak in reject mode / unserializable redacted body (fail-closed) → HTTP 400 with
    X-LeakGuard-Block: true; upstream NEVER called.
  - Body read failure or unexpected scanner exception → HTTP 500; upstream NEVER called.
  - httpx.TransportError (connect, timeout, protocol) → HTTP 502 (NO X-LeakGuard-Block).
  - httpx.InvalidURL → HTTP 500 (configuration error, logged at ERROR level).
  - Client disconnects while waiting for upstream → upstream call cancelled.
  - Upstream HTTP 4xx/5xx → passed through as-is (NOT converted to 502).
"""

from __future__ import annotations

import asyncio
from typing import Optional

import httpx
import structlog
from fastapi import APIRouter, Request, Response
from fastapi.responses import JSONResponse, StreamingResponse
from opentelemetry import trace
from starlette.background import BackgroundTask
from starlette.requests import ClientDisconnect

from leakguard.config import Config
from leakguard.constants import (
    CLIENT_CLOSED_REQUEST,
    POOL_KEEPALIVE_EXPIRY_S,
    POOL_MAX_CONNECTIONS,
    POOL_MAX_KEEPALIVE,
    REDACTION_SENTINEL,
)
from leakguard.models.responses import (
    REQUEST_ID_HEADER,
    build_internal_error_response,
    build_method_not_allowed_response,
    build_reject_response,
    build_upstream_unavailable_response,
)
from leakguard.models.scan import Action
from leakguard.proxy.headers import build_relay_headers, build_upstream_headers
from leakguard.scanner.detector import SecretScanner, preview, to_text
from leakguard.scanner.redaction import redact
from leakguard.scanner.walker import PayloadWalker, WalkOutcome
from leakguard.utils.logger import bind_request, get_logger, log_duration
from leakguard.utils.ulid import generate_ulid

# ─── Router ───────────────────────────────────────────────────────────────────

router = APIRouter(tags=["proxy"])

# ─── httpx.AsyncClient factory ────────────────────────────────────────────────


def create_http_client(config: Config) -> httpx.AsyncClient:
    """Create the shared httpx.AsyncClient with connection pooling configured.

    Created once at lifespan startup and stored in app.state.http_client.
    NEVER instantiated per-request.
    """
    return httpx.AsyncClient(
        limits=httpx.Limits(
            max_connections=POOL_MAX_CONNECTIONS,
            max_keepalive_connections=POOL_MAX_KEEPALIVE,
            keepalive_expiry=POOL_KEEPALIVE_EXPIRY_S,
        ),
        timeout=httpx.Timeout(
            connect=config.upstream.connect_timeout_s,
            read=config.upstream.read_timeout_s,
            write=config.upstream.write_timeout_s,
            pool=config.upstream.connect_timeout_s,
        ),
        # Bodies are relayed without decompression; only ask for an encoding
        # when the client itself did
        headers={"Accept-Encoding": "identity"},
        follow_redirects=False,  # pass 3xx through to the client; do not resolve
    )


# ─── Request controller ───────────────────────────────────────────────────────


class RequestController:
    """Per-request scan / decide / forward / relay state machine.

    All collaborators are injected; the controller itself holds no mutable state
    and is shared by every in-flight request.
    """

    def __init__(
        self,
        config: Config,
        walker: PayloadWalker,
        scanner: SecretScanner,
        http_client: httpx.AsyncClient,
        *,
        tracer: trace.Tracer,
        logger: Optional[structlog.stdlib.BoundLogger] = None,
        sentinel: str = REDACTION_SENTINEL,
    ) -> None:
        self._config = config
        self._walker = walker
        self._scanner = scanner
        self._http_client = http_client
        self._tracer = tracer
        self._logger = logger or get_logger("leakguard.proxy")
        self._sentinel = sentinel

    @property
    def debug_path(self) -> str:
        return self._config.proxy.debug_path

    # ── Body read ────────────────────────────────────────────────────────────

    async def _read_body(self, request: Request) -> Optional[bytes]:
        try:
            return await asyncio.wait_for(
                request.body(), timeout=self._config.proxy.body_read_timeout_s
            )
        except (TimeoutError, ClientDisconnect, OSError) as exc:
            self._logger.warning("body_read_failed", error_type=type(exc).__name__)
            return None

    # ── Scan ─────────────────────────────────────────────────────────────────

    def _check_leaks(self, body: bytes) -> WalkOutcome:
        with self._tracer.start_as_current_span(
            "check_leaks", attributes={"body.size": len(body)}
        ) as span:
            with log_duration("check_leaks", self._logger):
                if self._config.scanner.strategy == "raw":
                    outcome = self._walker.scan_raw(body, self._sentinel)
                else:
                    outcome = self._walker.scan_and_replace(body, self._sentinel)
            span.set_attribute("leaks.found", outcome.result.count)
            span.set_attribute("leaks.detected", bool(outcome.result))
        return outcome

    # ── Main entry point ─────────────────────────────────────────────────────

    async def handle(self, request: Request) -> Response:
        """Scan, decide and forward one proxied request."""
        request_id = generate_ulid()
        bind_request(request_id)
        log = self._logger
        log.info("request_received", method=request.method, path=request.url.path)

        body = await self._read_body(request)
        if body is None:
            return build_internal_error_response("Failed to read request body", request_id)

        # Empty bodies (GET, HEAD, bodyless POST) are forwarded without scanning
        if not body:
            return await self._forward(request, body, request_id, Action.ALLOW)

        try:
            outcome = self._check_leaks(body)
        except Exception as exc:
            # Fail closed: an unscanned body never reaches upstream
            log.error("scan_failed", error_type=type(exc).__name__)
            return build_internal_error_response("Failed to scan request body", request_id)

        result = outcome.result
        previews = [preview(f.secret) for f in result.findings]

        if outcome.error is not None and not result:
            # Nothing to redact, so the re-encoded body was never needed
            log.info("rewrite_not_needed", error=outcome.error)
        elif outcome.error is not None:
            if self._config.proxy.on_rewrite_error == "reject":
                log.warning(
                    "request_rejected",
                    action=Action.BLOCK.value,
                    reason="rewrite_failed",
                    error=outcome.error,
                    findings=result.count,
                )
                return build_reject_response(
                    request_id,
                    reason="rewrite_failed",
                    finding_count=result.count,
                    previews=previews,
                    message="Request rejected: redacted body could not be serialized",
                )
            log.warning(
                "rewrite_failed_forwarding_original",
                error=outcome.error,
                findings=result.count,
            )
            return await self._forward(request, body, request_id, Action.FAIL_OPEN)

        if result:
            log.warning("leaks_detected", count=result.count, rule_ids=result.rule_ids)
            if self._config.proxy.reject_on_leak:
                log.info(
                    "request_rejected",
                    action=Action.BLOCK.value,
                    reason="leak_detected",
                    findings=result.count,
                )
                return build_reject_response(
                    request_id,
                    reason="leak_detected",
                    finding_count=result.count,
                    previews=previews,
                )
            log.info(
                "secrets_redacted",
                count=result.count,
                unredacted=list(outcome.unredacted),
            )
            return await self._forward(request, outcome.body, request_id, Action.REDACT)

        return await self._forward(request, body, request_id, Action.ALLOW)

    # ── Forward + relay ──────────────────────────────────────────────────────

    def _upstream_url(self, request: Request) -> httpx.URL:
        """Configured origin + the client's raw path and raw query string."""
        scope = request.scope
        raw_path: bytes = scope.get("raw_path") or request.url.path.encode("utf-8")
        raw_path = raw_path.split(b"?", 1)[0]
        query: bytes = scope.get("query_string") or b""
        if query:
            raw_path = raw_path + b"?" + query
        return httpx.URL(self._config.upstream.url).copy_with(raw_path=raw_path)

    async def _send_while_connected(
        self, request: Request, upstream_request: httpx.Request
    ) -> Optional[httpx.Response]:
        """Send upstream unless the client disconnects first.

        Returns None when the client went away; the upstream call is cancelled.
        Transport errors from the send propagate.
        """
        send = asyncio.create_task(self._http_client.send(upstream_request, stream=True))
        watch = asyncio.create_task(_wait_for_disconnect(request))
        try:
            await asyncio.wait({send, watch}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            send.cancel()
            watch.cancel()
            raise
        watch.cancel()
        if send.done():
            return send.result()

        send.cancel()
        await asyncio.wait({send})
        if not send.cancelled() and send.exception() is None:
            await send.result().aclose()
        return None

    async def _forward(
        self,
        request: Request,
        body: bytes,
        request_id: str,
        action: Action,
    ) -> Response:
        log = self._logger
        try:
            upstream_url = self._upstream_url(request)
            upstream_request = self._http_client.build_request(
                method=request.method,
                url=upstream_url,
                headers=build_upstream_headers(request.headers.items()),
                content=body,
            )
            upstream_response = await self._send_while_connected(request, upstream_request)
        except httpx.InvalidURL as exc:
            # Misconfiguration, not a connectivity failure and not a leak block
            log.error("invalid_upstream_url", upstream=self._config.upstream.url, error=str(exc))
            return build_internal_error_response("Internal configuration error", request_id)
        except httpx.TransportError as exc:
            # CRITICAL: X-LeakGuard-Block MUST NOT be set on this response.
            log.warning(
                "upstream_unavailable",
                upstream=self._config.upstream.url,
                error_type=type(exc).__name__,
            )
            return build_upstream_unavailable_response(request_id, reason=type(exc).__name__)

        if upstream_response is None:
            log.info("client_disconnected", method=request.method, path=request.url.path)
            return Response(status_code=CLIENT_CLOSED_REQUEST)

        log.info(
            "request_proxied",
            action=action.value,
            method=request.method,
            path=request.url.path,
            status_code=upstream_response.status_code,
        )

        relay_headers = build_relay_headers(
            (name.decode("latin-1"), value.decode("latin-1"))
            for name, value in upstream_response.headers.raw
        )
        response = StreamingResponse(
            upstream_response.aiter_raw(),
            status_code=upstream_response.status_code,
            background=BackgroundTask(upstream_response.aclose),
        )
        response.raw_headers = [
            (name.encode("latin-1"), value.encode("latin-1")) for name, value in relay_headers
        ]
        return response

    # ── Debug scan ───────────────────────────────────────────────────────────

    async def handle_debug_scan(self, request: Request) -> Response:
        """Scan and redact an ad-hoc body. Never contacts upstream."""
        if request.method != "POST":
            return build_method_not_allowed_response()

        request_id = generate_ulid()
        bind_request(request_id)

        body = await self._read_body(request)
        if body is None:
            return build_internal_error_response("Failed to read request body", request_id)

        result = self._scanner.scan(body)
        redacted = redact(to_text(body), result.secrets, self._sentinel)
        self._logger.info("debug_scan", findings=result.count)

        response = JSONResponse(
            content={
                "redacted": redacted,
                "count": result.count,
                "findings": [
                    f"Secret {i}: {preview(finding.secret)}"
                    for i, finding in enumerate(result.findings, start=1)
                ],
            }
        )
        response.headers[REQUEST_ID_HEADER] = request_id
        return response


async def _wait_for_disconnect(request: Request) -> None:
    """Return once the client has disconnected. Call only after the body is read."""
    while True:
        message = await request.receive()
        if message["type"] == "http.disconnect":
            return


# ─── Proxy handler ────────────────────────────────────────────────────────────


async def proxy_handler(request: Request) -> Response:
    """Catch-all handler: the debug scan path, or a proxied Messages API call."""
    controller: RequestController = request.app.state.controller
    if request.url.path == controller.debug_path:
        return await controller.handle_debug_scan(request)
    return await controller.handle(request)


# No method list: every method, extension methods included, is proxied
router.add_route("/{path:path}", proxy_handler)
