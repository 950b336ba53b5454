"""Structured content walker: scan and redact a Messages API request body.

``PayloadWalker.scan_and_replace()`` decodes the body into the message schema
(``leakguard.models.payload``), scans every text-bearing field in document
order, substitutes findings in place, and re-serializes:

  messages[i].content[j]            text block         → scanned + redacted
  messages[i].content[j].input      tool_use input     → serialized, scanned,
                                                         replaced + reparsed
  messages[i].content[j].content[k] tool_result text   → scanned + redacted
  system[k]                         system text        → scanned + redacted

Everything else (images, documents, thinking blocks, unknown fields) is
carried through untouched.

Raw mode (``scan_raw()``) is used when the body does not decode into the
schema or holds no scannable text. It scans the source text of the top-level
``messages`` array (or the whole body when there is none) and replaces every
found secret anywhere in the body. Bytes that are not valid UTF-8 round-trip
unchanged. Raw mode never reports an error.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from json.decoder import scanstring
from typing import Optional

import structlog

from leakguard.constants import REDACTION_SENTINEL
from leakguard.models.payload import (
    PayloadDecodeError,
    PayloadEncodeError,
    RequestPayload,
    TextBlock,
    ToolInput,
    ToolResultBlock,
    ToolUseBlock,
    decode_payload,
    encode_payload,
)
from leakguard.models.scan import ScanResult
from leakguard.scanner.detector import SecretScanner
from leakguard.scanner.redaction import redact
from leakguard.utils.logger import get_logger

_WHITESPACE = " \t\n\r"
_decoder = json.JSONDecoder()


@dataclass(frozen=True)
class WalkOutcome:
    """Result of one scan-and-replace pass.

    Fields:
        result:     Findings in walk order.
        body:       Bytes to forward. The original body when nothing changed
                    or when re-serialization failed.
        error:      Set when the rewritten payload could not be serialized.
        unredacted: Locations (``messages[0].content[1].input``) whose secrets
                    were reported but could not be substituted.
    """

    result: ScanResult
    body: bytes
    error: Optional[str] = None
    unredacted: tuple[str, ...] = ()


def _skip_ws(text: str, idx: int) -> int:
    while idx < len(text) and text[idx] in _WHITESPACE:
        idx += 1
    return idx


def extract_raw_field(text: str, name: str) -> Optional[str]:
    """Return the exact source text of a top-level array field.

    Walks the top-level object key by key without decoding it as a whole, so
    the returned slice is byte-for-byte what the client sent. Returns None
    when the text is not a well-formed object, the key is absent, or its
    value is not an array. With duplicate keys the last one wins.
    """
    idx = _skip_ws(text, 0)
    if idx >= len(text) or text[idx] != "{":
        return None
    idx = _skip_ws(text, idx + 1)
    if idx < len(text) and text[idx] == "}":
        return None

    found: Optional[str] = None
    try:
        while True:
            if idx >= len(text) or text[idx] != '"':
                return None
            key, idx = scanstring(text, idx + 1)
            idx = _skip_ws(text, idx)
            if idx >= len(text) or text[idx] != ":":
                return None
            start = _skip_ws(text, idx + 1)
            _, end = _decoder.raw_decode(text, start)
            if key == name:
                found = text[start:end] if text[start] == "[" else None
            idx = _skip_ws(text, end)
            if idx < len(text) and text[idx] == ",":
                idx = _skip_ws(text, idx + 1)
                continue
            if idx < len(text) and text[idx] == "}":
                return found if _skip_ws(text, idx + 1) == len(text) else None
            return None
    except (ValueError, RecursionError):
        return None


@dataclass
class _WalkState:
    sentinel: str
    result: ScanResult = field(default_factory=ScanResult)
    scanned_bytes: int = 0
    unredacted: list[str] = field(default_factory=list)


class PayloadWalker:
    """Scans and redacts request bodies through the detection facade."""

    def __init__(
        self,
        scanner: SecretScanner,
        *,
        logger: Optional[structlog.stdlib.BoundLogger] = None,
    ) -> None:
        self._scanner = scanner
        self._logger = logger or get_logger("leakguard.walker")

    # ─── Raw mode ─────────────────────────────────────────────────────────

    def scan_raw(self, body: bytes, sentinel: str = REDACTION_SENTINEL) -> WalkOutcome:
        """Scan the ``messages`` source text and redact findings across the whole body."""
        text = body.decode("utf-8", errors="surrogateescape")
        region = extract_raw_field(text, "messages")
        result = self._scanner.scan(text if region is None else region)

        self._logger.debug(
            "raw_scan_completed",
            scope="body" if region is None else "messages",
            findings=result.count,
        )
        if not result:
            return WalkOutcome(result=result, body=body)

        redacted = redact(text, result.secrets, sentinel)
        return WalkOutcome(
            result=result,
            body=redacted.encode("utf-8", errors="surrogateescape"),
        )

    # ─── Structured mode ──────────────────────────────────────────────────

    def scan_and_replace(self, body: bytes, sentinel: str = REDACTION_SENTINEL) -> WalkOutcome:
        """Scan every text field of the request payload and substitute findings."""
        try:
            payload = decode_payload(body)
        except PayloadDecodeError as exc:
            self._logger.debug("payload_decode_failed", reason=str(exc), fallback="raw")
            return self.scan_raw(body, sentinel)

        state = _WalkState(sentinel=sentinel)
        self._walk(payload, state)

        if state.scanned_bytes == 0:
            self._logger.debug("payload_has_no_text", fallback="raw")
            return self.scan_raw(body, sentinel)

        self._logger.debug(
            "payload_scanned",
            scanned_bytes=state.scanned_bytes,
            findings=state.result.count,
            unredacted=len(state.unredacted),
        )

        try:
            new_body = encode_payload(payload)
        except PayloadEncodeError as exc:
            self._logger.warning("payload_encode_failed", error=str(exc), findings=state.result.count)
            return WalkOutcome(
                result=state.result,
                body=body,
                error=str(exc),
                unredacted=tuple(state.unredacted),
            )

        return WalkOutcome(
            result=state.result,
            body=new_body,
            unredacted=tuple(state.unredacted),
        )

    def _walk(self, payload: RequestPayload, state: _WalkState) -> None:
        for i, message in enumerate(payload.messages):
            for j, block in enumerate(message.content):
                where = f"messages[{i}].content[{j}]"
                if isinstance(block, TextBlock):
                    block.text = self._scan_text(block.text, state)
                elif isinstance(block, ToolUseBlock):
                    self._scan_tool_input(block, where, state)
                elif isinstance(block, ToolResultBlock):
                    for item in block.content:
                        if isinstance(item, TextBlock):
                            item.text = self._scan_text(item.text, state)

        for entry in payload.system:
            entry.text = self._scan_text(entry.text, state)

    def _scan_text(self, text: str, state: _WalkState) -> str:
        if not text:
            return text
        state.scanned_bytes += len(text.encode("utf-8", errors="surrogatepass"))
        result = self._scanner.scan(text)
        if not result:
            return text
        state.result = state.result.merge(result)
        return redact(text, result.secrets, state.sentinel)

    def _scan_tool_input(self, block: ToolUseBlock, where: str, state: _WalkState) -> None:
        if block.input is None or block.input.value is None:
            return

        serialized = block.input.serialize()
        state.scanned_bytes += len(serialized.encode("utf-8", errors="surrogatepass"))
        result = self._scanner.scan(serialized)
        if not result:
            return
        state.result = state.result.merge(result)

        secrets = result.secrets
        rewrite = block.input.rewrite(lambda text: redact(text, secrets, state.sentinel))
        if rewrite.applied:
            block.input = ToolInput(rewrite.value)
            return

        location = f"{where}.input"
        state.unredacted.append(location)
        self._logger.warning(
            "tool_input_unredacted",
            location=location,
            error=rewrite.error,
            findings=result.count,
        )
