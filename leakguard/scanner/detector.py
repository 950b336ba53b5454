"""Detection facade: text in, ordered findings out.

``SecretScanner`` wraps a ``DetectionEngine`` and is the single entry point
the walker, the raw fallback, and the debug endpoint use. It:

  - accepts ``bytes`` (invalid UTF-8 decoded with U+FFFD replacement) or
    ``str`` (lone surrogates normalised the same way) and never mutates input;
  - logs every finding as ``leak_detected`` with a truncated preview;
  - never logs, returns in a response, or raises with a raw secret value.
"""

from __future__ import annotations

from typing import Optional, Union

import structlog

from leakguard.constants import (
    PREVIEW_EDGE,
    PREVIEW_FULL_MASK,
    PREVIEW_INNER_MASK,
    PREVIEW_MIN_LENGTH,
)
from leakguard.models.scan import ScanResult
from leakguard.scanner.engine import DetectionEngine
from leakguard.utils.logger import get_logger


def preview(secret: str) -> str:
    """Return a log-safe preview of a secret.

    Works on code points, so multi-byte characters are never split.
    Secrets shorter than 8 characters are fully masked.

    Examples:
        >>> preview("short")
        '********'
        >>> preview("sk-ant-api03-abcdefXY")
        'sk****XY'
    """
    if len(secret) < PREVIEW_MIN_LENGTH:
        return PREVIEW_FULL_MASK
    return secret[:PREVIEW_EDGE] + PREVIEW_INNER_MASK + secret[-PREVIEW_EDGE:]


def to_text(content: Union[str, bytes]) -> str:
    """Decode or normalise ``content`` into well-formed text for the engine."""
    if isinstance(content, (bytes, bytearray, memoryview)):
        return bytes(content).decode("utf-8", errors="replace")
    # Lone surrogates (from "\ud800" escapes or surrogateescape decoding)
    # become U+FFFD, matching the bytes path
    return content.encode("utf-8", errors="surrogatepass").decode("utf-8", errors="replace")


class SecretScanner:
    """Facade over the detection engine."""

    def __init__(
        self,
        engine: DetectionEngine,
        *,
        logger: Optional[structlog.stdlib.BoundLogger] = None,
    ) -> None:
        self._engine = engine
        self._logger = logger or get_logger("leakguard.scanner")

    def scan(self, content: Union[str, bytes]) -> ScanResult:
        """Scan ``content`` and return findings in engine emission order."""
        text = to_text(content)
        if not text:
            return ScanResult()

        result = ScanResult.of(self._engine.detect(text))
        for finding in result.findings:
            self._logger.info(
                "leak_detected",
                rule_id=finding.rule_id,
                preview=preview(finding.secret),
            )
        return result
