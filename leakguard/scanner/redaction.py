"""Redaction policy: literal replace-all of detected secrets.

Substitution is exact and case-sensitive. Every occurrence of every distinct
secret is replaced, in first-seen order. Patterns are never re-applied to the
rewritten text, so a secret that only appears after an earlier substitution
is left alone.
"""

from __future__ import annotations

from typing import Iterable

from leakguard.constants import REDACTION_SENTINEL


def redact(text: str, secrets: Iterable[str], sentinel: str = REDACTION_SENTINEL) -> str:
    """Replace every occurrence of each secret in ``text`` with ``sentinel``.

    Empty secrets are ignored (replacing "" would splice the sentinel between
    every character).
    """
    for secret in dict.fromkeys(secrets):
        if secret:
            text = text.replace(secret, sentinel)
    return text
