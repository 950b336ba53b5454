"""ULID generation for LeakGuard request identifiers.

Every inbound request gets a ULID (Universally Unique Lexicographically
Sortable Identifier). It is bound into the request's structured log context
and returned on reject responses so an operator can find the matching log
lines.

Uses the `python-ulid` library — do NOT hand-roll ULID generation.
"""

from __future__ import annotations

from ulid import ULID


def generate_ulid() -> str:
    """Generate a new ULID as a 26-character uppercase string.

    Returns:
        str: Crockford Base32 ULID, e.g. ``"01KJ0JRVHYA7KX32VPN5ZSCTMV"``.
    """
    return str(ULID())
