"""Scan contracts: Finding, ScanResult and the request Action.

A ``Finding`` is one detected secret occurrence. It is produced only by a
detection engine, lives for the duration of one request, and is never
persisted or serialized. The raw ``secret`` is INTERNAL ONLY: anything that
leaves the process (logs, HTTP bodies) must use a preview instead.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable


class Action(str, Enum):
    """Decision taken by the request controller for a scanned body."""

    ALLOW = "ALLOW"            # no findings; original bytes forwarded
    REDACT = "REDACT"          # findings substituted; rewritten body forwarded
    BLOCK = "BLOCK"            # request rejected; upstream never contacted
    FAIL_OPEN = "FAIL_OPEN"    # rewrite failed; original body forwarded by policy


@dataclass(frozen=True)
class Finding:
    """A single detected secret and the rule that matched it.

    Fields:
        secret:  The matched secret value. Never empty. INTERNAL ONLY.
        rule_id: Identifier of the matching detection rule.
    """

    secret: str
    rule_id: str

    def __post_init__(self) -> None:
        if not self.secret:
            raise ValueError("Finding.secret must be non-empty")

    def __repr__(self) -> str:
        # Keep raw values out of tracebacks and debug output
        return f"Finding(rule_id={self.rule_id!r}, secret=<{len(self.secret)} chars>)"


@dataclass(frozen=True)
class ScanResult:
    """Ordered findings from one scan pass (engine emission order)."""

    findings: tuple[Finding, ...] = field(default_factory=tuple)

    @classmethod
    def of(cls, findings: Iterable[Finding]) -> "ScanResult":
        return cls(tuple(findings))

    @property
    def count(self) -> int:
        return len(self.findings)

    @property
    def secrets(self) -> list[str]:
        """Distinct secret values in first-seen order."""
        return list(dict.fromkeys(f.secret for f in self.findings))

    @property
    def rule_ids(self) -> list[str]:
        return [f.rule_id for f in self.findings]

    def merge(self, other: "ScanResult") -> "ScanResult":
        return ScanResult(self.findings + other.findings)

    def __bool__(self) -> bool:
        return bool(self.findings)

    def __len__(self) -> int:
        return len(self.findings)
