"""Messages API request schema used by the structured walker.

``decode_payload()`` turns a request body into a ``RequestPayload``: an ordered
list of ``Message`` objects (each with an ordered list of content blocks) and
an optional list of ``SystemEntry`` objects. ``encode_payload()`` turns it back
into bytes.

Content blocks form a closed tagged union mirroring the payload's own
``"type"`` discriminator:

  - ``TextBlock``       — ``{"type": "text", "text": ...}``
  - ``ToolUseBlock``    — ``{"type": "tool_use", "input": <any JSON>}``
  - ``ToolResultBlock`` — ``{"type": "tool_result", "content": str | [blocks]}``
  - ``OtherBlock``      — every other kind (image, document, thinking, ...),
                          carried through untouched.

Preservation rules:
  - Every decoded mapping keeps its original dict in ``raw``. Encoding copies
    that dict and overwrites only the keys the schema understands, so unknown
    fields survive in their original position.
  - String shorthands (``"content": "hi"``, ``"system": "..."``, string
    tool-result content) decode to a single text entry and encode back to a
    string.
  - Whitespace and key spacing are NOT preserved (compact re-encoding).
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Union


class PayloadDecodeError(ValueError):
    """Body is not a structurally valid Messages API request."""


class PayloadEncodeError(ValueError):
    """A (possibly rewritten) payload could not be serialized back to bytes."""


def _reject_constant(name: str) -> Any:
    # NaN / Infinity are accepted by Python's decoder but are not JSON
    raise PayloadDecodeError(f"non-standard JSON constant: {name}")


def dump_json(value: Any) -> str:
    """Compact JSON text with non-ASCII kept as-is and no NaN/Infinity."""
    return json.dumps(value, ensure_ascii=False, separators=(",", ":"), allow_nan=False)


# ─── Tool input ───────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class InputRewrite:
    """Outcome of rewriting a tool-use input through its serialized text.

    ``applied`` is True when the rewritten text re-parsed and ``value`` holds the
    new input. When False, ``error`` says why and the input must stay untouched.
    """

    applied: bool
    value: Any = None
    error: Optional[str] = None


@dataclass
class ToolInput:
    """Opaque, dynamically-typed ``tool_use.input`` value.

    The scan boundary is explicit: ``serialize()`` produces the text that is
    scanned, ``rewrite()`` substitutes in that text and re-parses it.
    """

    value: Any

    def serialize(self) -> str:
        return dump_json(self.value)

    def rewrite(self, replace: Callable[[str], str]) -> InputRewrite:
        """Apply ``replace`` to the serialized text and re-parse the result."""
        try:
            text = replace(self.serialize())
        except ValueError as exc:
            return InputRewrite(applied=False, error=f"serialize: {type(exc).__name__}")
        try:
            new_value = json.loads(text, parse_constant=_reject_constant)
        except ValueError as exc:
            return InputRewrite(applied=False, error=f"reparse: {type(exc).__name__}")
        return InputRewrite(applied=True, value=new_value)


# ─── Content blocks ───────────────────────────────────────────────────────────


@dataclass
class TextBlock:
    text: str
    raw: dict = field(default_factory=dict)

    def to_json(self) -> dict:
        out = dict(self.raw)
        # An absent or null text field stays as it was
        if self.text or self.raw.get("text") is not None:
            out["text"] = self.text
        return out


@dataclass
class ToolUseBlock:
    input: Optional[ToolInput]          # None when the key is absent
    raw: dict = field(default_factory=dict)

    def to_json(self) -> dict:
        out = dict(self.raw)
        if self.input is not None:
            out["input"] = self.input.value
        return out


@dataclass
class OtherBlock:
    raw: Any

    def to_json(self) -> Any:
        return self.raw


ToolResultItem = Union[TextBlock, OtherBlock]


@dataclass
class ToolResultBlock:
    content: list[ToolResultItem] = field(default_factory=list)
    shorthand: bool = False             # content was a bare string
    raw: dict = field(default_factory=dict)

    def to_json(self) -> dict:
        out = dict(self.raw)
        if "content" not in self.raw or self.raw["content"] is None:
            return out
        if self.shorthand:
            out["content"] = self.content[0].text if self.content else ""  # type: ignore[union-attr]
        else:
            out["content"] = [item.to_json() for item in self.content]
        return out


ContentBlock = Union[TextBlock, ToolUseBlock, ToolResultBlock, OtherBlock]


# ─── Messages and system ──────────────────────────────────────────────────────


@dataclass
class Message:
    role: Optional[str]
    content: list[ContentBlock] = field(default_factory=list)
    shorthand: bool = False             # content was a bare string
    raw: dict = field(default_factory=dict)

    def to_json(self) -> dict:
        out = dict(self.raw)
        if "content" not in self.raw or self.raw["content"] is None:
            return out
        if self.shorthand:
            out["content"] = self.content[0].text if self.content else ""  # type: ignore[union-attr]
        else:
            out["content"] = [block.to_json() for block in self.content]
        return out


@dataclass
class SystemEntry:
    text: str
    raw: dict = field(default_factory=dict)

    def to_json(self) -> dict:
        out = dict(self.raw)
        # An absent or null text field stays as it was
        if self.text or self.raw.get("text") is not None:
            out["text"] = self.text
        return out


@dataclass
class RequestPayload:
    messages: list[Message] = field(default_factory=list)
    system: list[SystemEntry] = field(default_factory=list)
    system_shorthand: bool = False
    raw: dict = field(default_factory=dict)

    def to_json(self) -> dict:
        out = dict(self.raw)
        if self.raw.get("messages") is not None:
            out["messages"] = [m.to_json() for m in self.messages]
        if self.raw.get("system") is not None:
            if self.system_shorthand:
                out["system"] = self.system[0].text if self.system else ""
            else:
                out["system"] = [entry.to_json() for entry in self.system]
        return out


# ─── Decoding ─────────────────────────────────────────────────────────────────


def _text_field(obj: dict, where: str) -> str:
    text = obj.get("text")
    if text is None:
        return ""
    if not isinstance(text, str):
        raise PayloadDecodeError(f"{where}.text must be a string")
    return text


def _block_type(obj: Any, where: str) -> str:
    if not isinstance(obj, dict):
        raise PayloadDecodeError(f"{where} must be an object")
    kind = obj.get("type")
    if not isinstance(kind, str):
        raise PayloadDecodeError(f"{where}.type must be a string")
    return kind


def _decode_tool_result_item(obj: Any, where: str) -> ToolResultItem:
    if _block_type(obj, where) == "text":
        return TextBlock(text=_text_field(obj, where), raw=obj)
    return OtherBlock(raw=obj)


def _decode_block(obj: Any, where: str) -> ContentBlock:
    kind = _block_type(obj, where)

    if kind == "text":
        return TextBlock(text=_text_field(obj, where), raw=obj)

    if kind == "tool_use":
        return ToolUseBlock(
            input=ToolInput(obj["input"]) if "input" in obj else None,
            raw=obj,
        )

    if kind == "tool_result":
        content = obj.get("content")
        if content is None:
            return ToolResultBlock(raw=obj)
        if isinstance(content, str):
            return ToolResultBlock(content=[TextBlock(text=content)], shorthand=True, raw=obj)
        if not isinstance(content, list):
            raise PayloadDecodeError(f"{where}.content must be a string or an array")
        return ToolResultBlock(
            content=[
                _decode_tool_result_item(item, f"{where}.content[{k}]")
                for k, item in enumerate(content)
            ],
            raw=obj,
        )

    return OtherBlock(raw=obj)


def _decode_message(obj: Any, where: str) -> Message:
    if not isinstance(obj, dict):
        raise PayloadDecodeError(f"{where} must be an object")

    role = obj.get("role")
    if role is not None and not isinstance(role, str):
        raise PayloadDecodeError(f"{where}.role must be a string")

    content = obj.get("content")
    if content is None:
        return Message(role=role, raw=obj)
    if isinstance(content, str):
        return Message(role=role, content=[TextBlock(text=content)], shorthand=True, raw=obj)
    if not isinstance(content, list):
        raise PayloadDecodeError(f"{where}.content must be a string or an array")
    return Message(
        role=role,
        content=[_decode_block(b, f"{where}.content[{j}]") for j, b in enumerate(content)],
        raw=obj,
    )


def _decode_system(system: Any) -> tuple[list[SystemEntry], bool]:
    if system is None:
        return [], False
    if isinstance(system, str):
        return [SystemEntry(text=system)], True
    if not isinstance(system, list):
        raise PayloadDecodeError("system must be a string or an array")
    entries: list[SystemEntry] = []
    for k, obj in enumerate(system):
        if not isinstance(obj, dict):
            raise PayloadDecodeError(f"system[{k}] must be an object")
        entries.append(SystemEntry(text=_text_field(obj, f"system[{k}]"), raw=obj))
    return entries, False


def decode_payload(body: bytes) -> RequestPayload:
    """Decode a request body into a ``RequestPayload``.

    Raises:
        PayloadDecodeError: body is not JSON, not an object, or any recognised
            field has the wrong shape.
    """
    try:
        doc = json.loads(body, parse_constant=_reject_constant)
    except PayloadDecodeError:
        raise
    except (ValueError, RecursionError) as exc:
        raise PayloadDecodeError(f"invalid JSON: {type(exc).__name__}") from exc

    if not isinstance(doc, dict):
        raise PayloadDecodeError("request body must be a JSON object")

    messages = doc.get("messages")
    if messages is None:
        messages = []
    elif not isinstance(messages, list):
        raise PayloadDecodeError("messages must be an array")

    system, system_shorthand = _decode_system(doc.get("system"))

    return RequestPayload(
        messages=[_decode_message(m, f"messages[{i}]") for i, m in enumerate(messages)],
        system=system,
        system_shorthand=system_shorthand,
        raw=doc,
    )


def encode_payload(payload: RequestPayload) -> bytes:
    """Serialize a payload to compact UTF-8 JSON.

    Raises:
        PayloadEncodeError: the payload holds a value JSON cannot represent as
            UTF-8 (e.g. a lone surrogate decoded from ``"\\ud800"``).
    """
    try:
        return dump_json(payload.to_json()).encode("utf-8")
    except (TypeError, ValueError) as exc:
        raise PayloadEncodeError(f"cannot serialize payload: {type(exc).__name__}") from exc
