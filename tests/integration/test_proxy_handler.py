"""Integration tests for the proxy request lifecycle (leakguard/proxy/engine.py).

Test strategy:
  - httpx.MockTransport: captures upstream-bound requests; returns controlled responses
  - starlette.testclient.TestClient: drives the lifespan and requests in-process
  - InMemorySpanExporter: captures the ``check_leaks`` span
  - structlog.testing.capture_logs: proves raw secrets never reach the logs

Covers:
  - Redact mode: secrets substituted before forwarding
  - Reject mode: HTTP 400 with previews; upstream never called
  - No findings: original bytes forwarded unchanged
  - Path, query, any method and repeated headers forwarded verbatim
  - Upstream status, headers and body relayed as-is
  - Failure separation: 502 transport errors, 500 config/scan/body-read errors,
    rewrite failures under both policies
  - Client disconnects while upstream is still answering
"""

from __future__ import annotations

import asyncio
import json
import time
from typing import Any, Optional

import httpx
import pytest
import structlog
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from starlette.requests import Request
from starlette.testclient import TestClient
from structlog.testing import capture_logs

from leakguard.config import Config
from leakguard.constants import CLIENT_CLOSED_REQUEST, REDACTION_SENTINEL
from leakguard.main import create_app
from leakguard.models.responses import BLOCK_HEADER, REQUEST_ID_HEADER
from leakguard.proxy.engine import RequestController
from leakguard.scanner.detector import SecretScanner
from leakguard.scanner.engine import RegexDetectionEngine
from leakguard.scanner.walker import PayloadWalker
from leakguard.telemetry import get_tracer

# ─── Helpers ──────────────────────────────────────────────────────────────────


class _MockUpstream:
    """Mock upstream that records received requests and returns a configurable response."""

    def __init__(
        self,
        *,
        status_code: int = 200,
        body: bytes = b'{"type":"message","content":[]}',
        headers: Optional[list[tuple[str, str]]] = None,
        raise_on_send: Optional[Exception] = None,
    ) -> None:
        self.received_requests: list[httpx.Request] = []
        self._status_code = status_code
        self._body = body
        self._headers = headers or [("content-type", "application/json")]
        self._raise_on_send = raise_on_send

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.received_requests.append(request)
        if self._raise_on_send is not None:
            raise self._raise_on_send
        return httpx.Response(self._status_code, content=self._body, headers=self._headers)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))

    @property
    def request_count(self) -> int:
        return len(self.received_requests)

    @property
    def last_body(self) -> bytes:
        return self.received_requests[-1].content


def _build_test_app(
    upstream: _MockUpstream,
    monkeypatch: pytest.MonkeyPatch,
    config: Optional[Config] = None,
    provider: Optional[TracerProvider] = None,
) -> Any:
    """Build a LeakGuard app wired to a mock upstream (and optionally a span provider)."""
    monkeypatch.setattr("leakguard.main.create_http_client", lambda cfg: upstream.client())
    if provider is not None:
        monkeypatch.setattr("leakguard.main.get_tracer", lambda: get_tracer(provider))
    return create_app(config or Config.defaults())


def _messages_body(text: str) -> bytes:
    return json.dumps(
        {
            "model": "claude-sonnet",
            "max_tokens": 64,
            "messages": [{"role": "user", "content": [{"type": "text", "text": text}]}],
        }
    ).encode()


def _post(client: TestClient, body: bytes, path: str = "/v1/messages", **kwargs: Any) -> httpx.Response:
    headers = [("content-type", "application/json"), ("x-api-key", "client-key")]
    headers.extend(kwargs.pop("headers", []))
    return client.post(path, content=body, headers=headers, **kwargs)


# ─── Redact mode ──────────────────────────────────────────────────────────────


class TestRedactMode:
    """Default mode: secrets are replaced and the request goes through."""

    def test_secret_redacted_before_forwarding(
        self, monkeypatch: pytest.MonkeyPatch, anthropic_key: str
    ) -> None:
        upstream = _MockUpstream()
        with TestClient(_build_test_app(upstream, monkeypatch)) as client:
            response = _post(client, _messages_body(f"my key is {anthropic_key}"))

        assert response.status_code == 200
        assert response.content == b'{"type":"message","content":[]}'
        assert upstream.request_count == 1
        forwarded = upstream.last_body
        assert anthropic_key.encode() not in forwarded
        doc = json.loads(forwarded)
        assert doc["messages"][0]["content"][0]["text"] == f"my key is {REDACTION_SENTINEL}"
        assert doc["model"] == "claude-sonnet"
        assert doc["max_tokens"] == 64

    def test_content_length_matches_rewritten_body(
        self, monkeypatch: pytest.MonkeyPatch, anthropic_key: str
    ) -> None:
        upstream = _MockUpstream()
        with TestClient(_build_test_app(upstream, monkeypatch)) as client:
            _post(client, _messages_body(anthropic_key))

        request = upstream.received_requests[0]
        assert int(request.headers["content-length"]) == len(request.content)

    def test_raw_strategy_preserves_formatting(
        self, monkeypatch: pytest.MonkeyPatch, anthropic_key: str
    ) -> None:
        config = Config.defaults()
        config.scanner.strategy = "raw"
        body = ('{ "messages" : [ {"role": "user", "content": "k=' + anthropic_key + '"} ] }').encode()
        upstream = _MockUpstream()
        with TestClient(_build_test_app(upstream, monkeypatch, config)) as client:
            _post(client, body)

        assert upstream.last_body == body.replace(anthropic_key.encode(), REDACTION_SENTINEL.encode())


# ─── Reject mode ──────────────────────────────────────────────────────────────


class TestRejectMode:
    """reject_on_leak: true → HTTP 400, upstream never contacted."""

    def test_rejected_with_previews(self, monkeypatch: pytest.MonkeyPatch, anthropic_key: str) -> None:
        config = Config.defaults()
        config.proxy.reject_on_leak = True
        upstream = _MockUpstream()
        with TestClient(_build_test_app(upstream, monkeypatch, config)) as client:
            response = _post(client, _messages_body(f"{anthropic_key} twice {anthropic_key}"))

        assert response.status_code == 400
        assert response.headers[BLOCK_HEADER] == "true"
        assert response.headers[REQUEST_ID_HEADER]
        body = response.json()
        assert body["error"]["type"] == "invalid_request_error"
        assert body["leakguard"]["reason"] == "leak_detected"
        assert body["leakguard"]["count"] == 2
        assert body["leakguard"]["findings"] == ["sk****AA", "sk****AA"]
        assert body["leakguard"]["request_id"] == response.headers[REQUEST_ID_HEADER]
        assert anthropic_key not in response.text
        assert upstream.request_count == 0

    def test_clean_request_still_forwarded(self, monkeypatch: pytest.MonkeyPatch) -> None:
        config = Config.defaults()
        config.proxy.reject_on_leak = True
        upstream = _MockUpstream()
        with TestClient(_build_test_app(upstream, monkeypatch, config)) as client:
            response = _post(client, _messages_body("hello"))
        assert response.status_code == 200
        assert upstream.request_count == 1

    def test_rejection_logged_as_block(self, monkeypatch: pytest.MonkeyPatch, anthropic_key: str) -> None:
        config = Config.defaults()
        config.proxy.reject_on_leak = True
        upstream = _MockUpstream()
        with capture_logs() as logs:
            with TestClient(_build_test_app(upstream, monkeypatch, config)) as client:
                _post(client, _messages_body(anthropic_key))

        rejected = [entry for entry in logs if entry["event"] == "request_rejected"]
        assert rejected[0]["action"] == "BLOCK"
        assert rejected[0]["reason"] == "leak_detected"


# ─── Passthrough fidelity ─────────────────────────────────────────────────────


class TestPassthrough:
    """Requests without findings reach upstream exactly as sent."""

    def test_original_bytes_forwarded(self, monkeypatch: pytest.MonkeyPatch) -> None:
        body = b'{ "model":"m",\n  "messages" : [ {"role":"user","content":"caf\\u00e9"} ] ,"max_tokens": 10 }'
        upstream = _MockUpstream()
        with TestClient(_build_test_app(upstream, monkeypatch)) as client:
            _post(client, body)
        assert upstream.last_body == body

    def test_empty_get_forwarded(self, monkeypatch: pytest.MonkeyPatch) -> None:
        upstream = _MockUpstream(body=b'{"data":[]}')
        with TestClient(_build_test_app(upstream, monkeypatch)) as client:
            response = client.get("/v1/models")
        assert response.status_code == 200
        assert response.json() == {"data": []}
        request = upstream.received_requests[0]
        assert request.method == "GET"
        assert request.content == b""

    @pytest.mark.parametrize("method", ["TRACE", "PROPFIND", "QUERY"])
    def test_any_method_forwarded(self, monkeypatch: pytest.MonkeyPatch, method: str) -> None:
        upstream = _MockUpstream()
        with TestClient(_build_test_app(upstream, monkeypatch)) as client:
            response = client.request(method, "/v1/files/abc")

        assert response.status_code == 200
        assert upstream.received_requests[0].method == method
        assert upstream.received_requests[0].url.path == "/v1/files/abc"

    def test_path_and_query_preserved(self, monkeypatch: pytest.MonkeyPatch) -> None:
        upstream = _MockUpstream()
        with TestClient(_build_test_app(upstream, monkeypatch)) as client:
            _post(client, _messages_body("hi"), path="/v1/messages/count_tokens?beta=true&q=a%20b")

        url = upstream.received_requests[0].url
        assert url.scheme == "https"
        assert url.host == "api.anthropic.com"
        assert url.raw_path == b"/v1/messages/count_tokens?beta=true&q=a%20b"

    def test_headers_forwarded(self, monkeypatch: pytest.MonkeyPatch) -> None:
        upstream = _MockUpstream()
        with TestClient(_build_test_app(upstream, monkeypatch)) as client:
            _post(
                client,
                _messages_body("hi"),
                headers=[
                    ("anthropic-beta", "tools-2024-04-04"),
                    ("anthropic-beta", "prompt-caching-2024-07-31"),
                    ("anthropic-version", "2023-06-01"),
                ],
            )

        request = upstream.received_requests[0]
        assert request.headers.get_list("anthropic-beta") == [
            "tools-2024-04-04",
            "prompt-caching-2024-07-31",
        ]
        assert request.headers["x-api-key"] == "client-key"
        assert request.headers["anthropic-version"] == "2023-06-01"
        assert request.headers["host"] == "api.anthropic.com"

    def test_upstream_response_relayed(self, monkeypatch: pytest.MonkeyPatch) -> None:
        upstream = _MockUpstream(
            status_code=429,
            body=b'{"type":"error","error":{"type":"rate_limit_error"}}',
            headers=[
                ("content-type", "application/json"),
                ("retry-after", "30"),
                ("set-cookie", "a=1"),
                ("set-cookie", "b=2"),
            ],
        )
        with TestClient(_build_test_app(upstream, monkeypatch)) as client:
            response = _post(client, _messages_body("hi"))

        assert response.status_code == 429
        assert response.headers["retry-after"] == "30"
        assert response.headers.get_list("set-cookie") == ["a=1", "b=2"]
        assert response.json()["error"]["type"] == "rate_limit_error"
        assert BLOCK_HEADER not in response.headers

    def test_event_stream_relayed(self, monkeypatch: pytest.MonkeyPatch) -> None:
        stream = b"event: message_start\ndata: {}\n\nevent: message_stop\ndata: {}\n\n"
        upstream = _MockUpstream(body=stream, headers=[("content-type", "text/event-stream")])
        with TestClient(_build_test_app(upstream, monkeypatch)) as client:
            response = _post(client, _messages_body("hi"))
        assert response.headers["content-type"] == "text/event-stream"
        assert response.content == stream


# ─── Failure modes ────────────────────────────────────────────────────────────


class TestFailureModes:
    def test_connect_error_is_502(self, monkeypatch: pytest.MonkeyPatch) -> None:
        upstream = _MockUpstream(raise_on_send=httpx.ConnectError("connection refused"))
        with TestClient(_build_test_app(upstream, monkeypatch)) as client:
            response = _post(client, _messages_body("hi"))

        assert response.status_code == 502
        assert BLOCK_HEADER not in response.headers
        assert response.json()["error"] == {
            "type": "api_error",
            "message": "Failed to contact upstream: ConnectError",
        }

    def test_read_timeout_is_502(self, monkeypatch: pytest.MonkeyPatch) -> None:
        upstream = _MockUpstream(raise_on_send=httpx.ReadTimeout("slow"))
        with TestClient(_build_test_app(upstream, monkeypatch)) as client:
            response = _post(client, _messages_body("hi"))
        assert response.status_code == 502
        assert response.json()["error"]["message"].endswith("ReadTimeout")

    def test_invalid_url_is_500(self, monkeypatch: pytest.MonkeyPatch) -> None:
        upstream = _MockUpstream(raise_on_send=httpx.InvalidURL("Bad URL"))
        with TestClient(_build_test_app(upstream, monkeypatch)) as client:
            response = _post(client, _messages_body("hi"))

        assert response.status_code == 500
        assert BLOCK_HEADER not in response.headers
        assert response.json()["error"]["message"] == "Internal configuration error"

    def test_scanner_exception_is_500(self, monkeypatch: pytest.MonkeyPatch) -> None:
        def _explode(self: PayloadWalker, body: bytes, sentinel: str = REDACTION_SENTINEL) -> None:
            raise RuntimeError("engine crashed")

        monkeypatch.setattr(PayloadWalker, "scan_and_replace", _explode)
        upstream = _MockUpstream()
        with TestClient(_build_test_app(upstream, monkeypatch)) as client:
            response = _post(client, _messages_body("hi"))

        assert response.status_code == 500
        assert response.json()["error"]["message"] == "Failed to scan request body"
        assert upstream.request_count == 0

    def test_upstream_error_status_passed_through(self, monkeypatch: pytest.MonkeyPatch) -> None:
        upstream = _MockUpstream(status_code=529, body=b'{"type":"error"}')
        with TestClient(_build_test_app(upstream, monkeypatch)) as client:
            response = _post(client, _messages_body("hi"))
        assert response.status_code == 529


class TestRewriteFailure:
    """A redacted body that cannot be serialized follows proxy.on_rewrite_error."""

    @staticmethod
    def _unserializable_body(anthropic_key: str) -> bytes:
        return ('{"messages": [{"role": "user", "content": "\\ud800 ' + anthropic_key + '"}]}').encode()

    def test_reject_policy(self, monkeypatch: pytest.MonkeyPatch, anthropic_key: str) -> None:
        upstream = _MockUpstream()
        with TestClient(_build_test_app(upstream, monkeypatch)) as client:
            response = _post(client, self._unserializable_body(anthropic_key))

        assert response.status_code == 400
        assert response.headers[BLOCK_HEADER] == "true"
        assert response.json()["leakguard"]["reason"] == "rewrite_failed"
        assert response.json()["leakguard"]["count"] == 1
        assert upstream.request_count == 0

    def test_forward_policy(self, monkeypatch: pytest.MonkeyPatch, anthropic_key: str) -> None:
        config = Config.defaults()
        config.proxy.on_rewrite_error = "forward"
        body = self._unserializable_body(anthropic_key)
        upstream = _MockUpstream()
        with TestClient(_build_test_app(upstream, monkeypatch, config)) as client:
            response = _post(client, body)

        assert response.status_code == 200
        assert upstream.last_body == body

    def test_clean_body_with_lone_surrogate_forwarded(self, monkeypatch: pytest.MonkeyPatch) -> None:
        # A truncated emoji: no findings, so the original bytes go through
        body = b'{"messages":[{"role":"user","content":[{"type":"text","text":"hi \\ud83d there"}]}]}'
        upstream = _MockUpstream()
        with capture_logs() as logs:
            with TestClient(_build_test_app(upstream, monkeypatch)) as client:
                response = _post(client, body)

        assert response.status_code == 200
        assert upstream.request_count == 1
        assert upstream.last_body == body
        proxied = [entry for entry in logs if entry["event"] == "request_proxied"]
        assert proxied[0]["action"] == "ALLOW"


# ─── Observability ────────────────────────────────────────────────────────────


class TestObservability:
    def test_check_leaks_span(self, monkeypatch: pytest.MonkeyPatch, anthropic_key: str) -> None:
        exporter = InMemorySpanExporter()
        provider = TracerProvider()
        provider.add_span_processor(SimpleSpanProcessor(exporter))
        body = _messages_body(anthropic_key)

        upstream = _MockUpstream()
        with TestClient(_build_test_app(upstream, monkeypatch, provider=provider)) as client:
            _post(client, body)
            _post(client, _messages_body("clean"))

        spans = [s for s in exporter.get_finished_spans() if s.name == "check_leaks"]
        assert len(spans) == 2
        assert spans[0].attributes["body.size"] == len(body)
        assert spans[0].attributes["leaks.found"] == 1
        assert spans[0].attributes["leaks.detected"] is True
        assert spans[1].attributes["leaks.found"] == 0
        assert spans[1].attributes["leaks.detected"] is False

    def test_logs_never_contain_secret(self, monkeypatch: pytest.MonkeyPatch, anthropic_key: str) -> None:
        upstream = _MockUpstream()
        with capture_logs() as logs:
            with TestClient(_build_test_app(upstream, monkeypatch)) as client:
                response = _post(client, _messages_body(anthropic_key))

        assert response.status_code == 200
        events = [entry["event"] for entry in logs]
        assert "leaks_detected" in events
        assert "secrets_redacted" in events
        proxied = [entry for entry in logs if entry["event"] == "request_proxied"]
        assert proxied[0]["action"] == "REDACT"
        assert all(anthropic_key not in repr(entry) for entry in logs)


# ─── Body read failures ───────────────────────────────────────────────────────


def _controller(client: httpx.AsyncClient, config: Config) -> RequestController:
    scanner = SecretScanner(RegexDetectionEngine())
    return RequestController(
        config,
        PayloadWalker(scanner),
        scanner,
        client,
        tracer=get_tracer(),
    )


def _request(receive: Any) -> Request:
    scope = {
        "type": "http",
        "method": "POST",
        "scheme": "http",
        "server": ("testserver", 80),
        "path": "/v1/messages",
        "raw_path": b"/v1/messages",
        "query_string": b"",
        "headers": [(b"content-type", b"application/json")],
    }
    return Request(scope, receive)


class TestBodyReadFailure:
    @pytest.mark.asyncio
    async def test_client_disconnect_is_500(self) -> None:
        async def receive() -> dict:
            return {"type": "http.disconnect"}

        upstream = _MockUpstream()
        response = await _controller(upstream.client(), Config.defaults()).handle(_request(receive))

        assert response.status_code == 500
        assert json.loads(response.body)["error"]["message"] == "Failed to read request body"
        assert response.headers[REQUEST_ID_HEADER]
        assert upstream.request_count == 0

    @pytest.mark.asyncio
    async def test_slow_body_times_out(self) -> None:
        async def receive() -> dict:
            await asyncio.sleep(10)
            return {"type": "http.request", "body": b"", "more_body": False}

        config = Config.defaults()
        config.proxy.body_read_timeout_s = 0.05
        upstream = _MockUpstream()
        response = await _controller(upstream.client(), config).handle(_request(receive))

        assert response.status_code == 500
        assert upstream.request_count == 0

    @pytest.mark.asyncio
    async def test_request_id_bound_to_log_context(self) -> None:
        async def receive() -> dict:
            return {"type": "http.disconnect"}

        upstream = _MockUpstream()
        response = await _controller(upstream.client(), Config.defaults()).handle(_request(receive))

        bound = structlog.contextvars.get_contextvars()
        assert bound["request_id"] == response.headers[REQUEST_ID_HEADER]


# ─── Client disconnects ───────────────────────────────────────────────────────


class _SlowUpstream:
    """Upstream that takes ``delay`` seconds to answer."""

    def __init__(self, delay: float) -> None:
        self.delay = delay
        self.finished = False

    async def handler(self, request: httpx.Request) -> httpx.Response:
        await asyncio.sleep(self.delay)
        self.finished = True
        return httpx.Response(200, content=b"{}")

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))


def _body_then(after_body: Any) -> Any:
    """ASGI receive: the whole body in one message, then ``after_body()``."""
    pending = [{"type": "http.request", "body": _messages_body("hello"), "more_body": False}]

    async def receive() -> dict:
        if pending:
            return pending.pop(0)
        return await after_body()

    return receive


class TestClientDisconnect:
    @pytest.mark.asyncio
    async def test_disconnect_cancels_upstream_call(self) -> None:
        async def hang_up() -> dict:
            await asyncio.sleep(0.05)
            return {"type": "http.disconnect"}

        upstream = _SlowUpstream(delay=5.0)
        controller = _controller(upstream.client(), Config.defaults())

        start = time.perf_counter()
        with capture_logs() as logs:
            response = await controller.handle(_request(_body_then(hang_up)))
        elapsed = time.perf_counter() - start

        assert response.status_code == CLIENT_CLOSED_REQUEST
        assert elapsed < 1.0
        assert upstream.finished is False
        assert "client_disconnected" in [entry["event"] for entry in logs]

    @pytest.mark.asyncio
    async def test_connected_client_gets_upstream_response(self) -> None:
        async def stay_connected() -> dict:
            await asyncio.Event().wait()
            return {"type": "http.disconnect"}

        upstream = _SlowUpstream(delay=0.05)
        controller = _controller(upstream.client(), Config.defaults())

        response = await controller.handle(_request(_body_then(stay_connected)))

        assert response.status_code == 200
        assert upstream.finished is True
