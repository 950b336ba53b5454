"""Detection engine: applies compiled rules to text.

``DetectionEngine`` is the narrow interface the facade depends on. The only
production implementation is ``RegexDetectionEngine``; tests substitute their
own engines to drive edge cases (e.g. secrets that straddle JSON syntax).

Emission order: rules in rule-set order, then matches in position order.
Overlapping matches from different rules are all reported.

IMPORT RULES:
  - ``import re2`` ONLY — patterns are compiled in ``leakguard.scanner.rules``.
"""

from __future__ import annotations

from typing import Optional, Protocol, Sequence

from leakguard.models.scan import Finding
from leakguard.scanner.rules import DEFAULT_RULES, Rule


class DetectionEngine(Protocol):
    def detect(self, text: str) -> list[Finding]:
        ...


class RegexDetectionEngine:
    """Gitleaks-style rule engine over google-re2 patterns.

    Stateless after construction and safe to share across requests.
    """

    def __init__(self, rules: Optional[Sequence[Rule]] = None) -> None:
        self._rules: tuple[Rule, ...] = tuple(DEFAULT_RULES if rules is None else rules)

    @property
    def rules(self) -> tuple[Rule, ...]:
        return self._rules

    def detect(self, text: str) -> list[Finding]:
        findings: list[Finding] = []
        lowered: Optional[str] = None

        for rule in self._rules:
            if rule.keywords:
                if lowered is None:
                    lowered = text.lower()
                if not any(keyword in lowered for keyword in rule.keywords):
                    continue

            for match in rule.pattern.finditer(text):
                secret = rule.secret_from(match)
                if not secret or rule.is_allowed(secret):
                    continue
                findings.append(Finding(secret=secret, rule_id=rule.rule_id))

        return findings
