"""HTTP response builders for the proxy's own replies.

Provides factory functions for every response LeakGuard generates itself
(as opposed to relaying upstream):

  build_reject_response():
      HTTP 400 — request carried secrets (reject mode) or could not be safely
      rewritten (fail-closed). Carries ``X-LeakGuard-Block: true``.

  build_upstream_unavailable_response():
      HTTP 502 — upstream unreachable. MUST NOT carry ``X-LeakGuard-Block`` —
      a connectivity failure is not a leak block.

  build_internal_error_response():
      HTTP 500 — body read failure, scanner failure, or configuration error.

  build_method_not_allowed_response():
      HTTP 405 — wrong method on the debug scan path.

Bodies follow the Anthropic error envelope (``{"type": "error", "error": {...}}``)
so SDK clients surface the message instead of a parse failure.

Security invariant: raw secret values are NEVER placed in a response body —
only counts and previews.
"""

from __future__ import annotations

from typing import Optional, Sequence

from fastapi.responses import JSONResponse

BLOCK_HEADER = "X-LeakGuard-Block"
REQUEST_ID_HEADER = "X-LeakGuard-Request-ID"


def _error_body(error_type: str, message: str) -> dict:
    return {"type": "error", "error": {"type": error_type, "message": message}}


def build_reject_response(
    request_id: str,
    reason: str,
    finding_count: int,
    previews: Sequence[str] = (),
    message: str = "Request rejected: API key leak detected",
) -> JSONResponse:
    """Build the HTTP 400 reject response.

    Args:
        request_id:    ULID of the request (for log correlation).
        reason:        Machine-readable reason: ``"leak_detected"`` or ``"rewrite_failed"``.
        finding_count: Number of findings in the scan result.
        previews:      Truncated previews of the findings (never raw secrets).
        message:       Human-readable message placed in the error envelope.
    """
    body = _error_body("invalid_request_error", message)
    body["leakguard"] = {
        "blocked": True,
        "reason": reason,
        "request_id": request_id,
        "count": finding_count,
        "findings": list(previews),
    }
    response = JSONResponse(status_code=400, content=body)
    response.headers[BLOCK_HEADER] = "true"
    response.headers[REQUEST_ID_HEADER] = request_id
    return response


def build_upstream_unavailable_response(request_id: str, reason: str = "") -> JSONResponse:
    """Build the HTTP 502 response for upstream connectivity failures.

    ``reason`` is the exception class name (e.g. ``"ConnectError"``); it must
    not contain request content.
    """
    message = "Failed to contact upstream"
    if reason:
        message = f"{message}: {reason}"
    response = JSONResponse(status_code=502, content=_error_body("api_error", message))
    response.headers[REQUEST_ID_HEADER] = request_id
    return response


def build_internal_error_response(
    message: str,
    request_id: Optional[str] = None,
) -> JSONResponse:
    """Build an HTTP 500 response generated by the proxy itself."""
    response = JSONResponse(status_code=500, content=_error_body("api_error", message))
    if request_id:
        response.headers[REQUEST_ID_HEADER] = request_id
    return response


def build_method_not_allowed_response(allowed: str = "POST") -> JSONResponse:
    response = JSONResponse(
        status_code=405,
        content=_error_body("invalid_request_error", "Method not allowed"),
    )
    response.headers["Allow"] = allowed
    return response
