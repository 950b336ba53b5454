"""Detection rules for the regex engine.

The default rules are pre-compiled at module load time using google-re2.
Custom rule sets are compiled once, at startup, by ``load_ruleset()``.
NO pattern compilation happens per-request.

Rule files use gitleaks-compatible keys, in TOML (``.toml``) or YAML::

    [extend]
    useDefault = true

    [[rules]]
    id = "internal-token"
    regex = '''itk_([a-z0-9]{32})'''
    secretGroup = 1
    entropy = 3.0
    keywords = ["itk_"]
    [rules.allowlist]
    regexes = ['''itk_0{32}''']
    stopwords = ["example"]

IMPORT RULES:
  - ``import re2`` ONLY. Backtracking engines are not used on request content.
"""

from __future__ import annotations

import math
import tomllib
from collections import Counter
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional, Union

import re2  # google-re2, NOT stdlib re
import yaml


class RulesetError(Exception):
    """A rule set could not be loaded or compiled. Fatal at startup."""


def shannon_entropy(data: str) -> float:
    """Shannon entropy of ``data`` in bits per character."""
    if not data:
        return 0.0
    length = len(data)
    return -sum(
        (count / length) * math.log2(count / length)
        for count in Counter(data).values()
    )


# ---------------------------------------------------------------------------
# Rule dataclass
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Rule:
    """A single compiled detection rule.

    Fields:
        rule_id:        Kebab-case identifier reported with each finding.
        pattern:        Pre-compiled re2 pattern object.
        description:    Human-readable description.
        secret_group:   Capture group holding the secret. None means the first
                        group when the pattern has groups, else the whole match.
        entropy:        Minimum Shannon entropy. Secrets at or below it are dropped.
        keywords:       Lowercase prefilter. The rule only runs when the
                        lowercased text contains at least one of them.
        allow_patterns: Pre-compiled re2 patterns; a secret matching any is dropped.
        stopwords:      Lowercase words; a secret containing any is dropped.
    """
    rule_id: str
    pattern: Any           # re2._Regexp, pre-compiled
    description: str = ""
    secret_group: Optional[int] = None
    entropy: Optional[float] = None
    keywords: tuple[str, ...] = ()
    allow_patterns: tuple[Any, ...] = ()
    stopwords: tuple[str, ...] = ()

    def secret_from(self, match: Any) -> str:
        """Extract the secret text from a pattern match ("" if the group did not participate)."""
        if self.secret_group is not None:
            group = self.secret_group
        elif self.pattern.groups:
            group = 1
        else:
            group = 0
        return match.group(group) or ""

    def is_allowed(self, secret: str) -> bool:
        """True when the secret is filtered out by entropy or the rule's allowlist."""
        if self.entropy is not None and shannon_entropy(secret) <= self.entropy:
            return True
        if self.stopwords:
            lowered = secret.lower()
            if any(word in lowered for word in self.stopwords):
                return True
        return any(allow.search(secret) for allow in self.allow_patterns)


def _rule(
    rule_id: str,
    pattern: str,
    description: str,
    *,
    keywords: tuple[str, ...] = (),
    secret_group: Optional[int] = None,
    entropy: Optional[float] = None,
    allow: tuple[str, ...] = (),
    stopwords: tuple[str, ...] = (),
) -> Rule:
    return Rule(
        rule_id=rule_id,
        pattern=re2.compile(pattern),
        description=description,
        secret_group=secret_group,
        entropy=entropy,
        keywords=tuple(k.lower() for k in keywords),
        allow_patterns=tuple(re2.compile(a) for a in allow),
        stopwords=tuple(w.lower() for w in stopwords),
    )


# ===========================================================================
# DEFAULT RULES
# COMPILED AT MODULE LOAD, never per-request
# Groups are non-capturing unless the rule extracts a sub-match.
# ===========================================================================

DEFAULT_RULES: list[Rule] = [
    # ─── Anthropic ────────────────────────────────────────────────────────
    _rule(
        "anthropic-api-key",
        r'sk-ant-api03-[a-zA-Z0-9_-]{93}',
        "Anthropic API key",
        keywords=("sk-ant-api03",),
    ),
    _rule(
        "anthropic-admin-api-key",
        r'sk-ant-admin01-[a-zA-Z0-9_-]{93}',
        "Anthropic admin API key",
        keywords=("sk-ant-admin01",),
    ),
    # ─── OpenAI ───────────────────────────────────────────────────────────
    _rule(
        "openai-api-key",
        r'sk-[a-zA-Z0-9]{20}T3BlbkFJ[a-zA-Z0-9]{20}',
        "OpenAI API key (classic)",
        keywords=("t3blbkfj",),
    ),
    _rule(
        "openai-project-key",
        r'sk-proj-[a-zA-Z0-9_-]{50,}',
        "OpenAI project API key",
        keywords=("sk-proj-",),
    ),
    # ─── AWS ──────────────────────────────────────────────────────────────
    _rule(
        "aws-access-token",
        r'\b(?:A3T[A-Z0-9]|AKIA|AGPA|AIDA|AROA|AIPA|ANPA|ANVA|ASIA)[A-Z0-9]{16}\b',
        "AWS access key ID",
        keywords=("a3t", "akia", "agpa", "aida", "aroa", "aipa", "anpa", "anva", "asia"),
    ),
    _rule(
        "aws-secret-access-key",
        r'(?i)aws.{0,20}secret.{0,20}[=:]\s*["\']?([a-zA-Z0-9/+]{40})\b',
        "AWS secret access key",
        keywords=("aws",),
        entropy=3.0,
    ),
    # ─── GitHub ───────────────────────────────────────────────────────────
    _rule(
        "github-pat",
        r'gh[pousr]_[a-zA-Z0-9]{36}',
        "GitHub access token",
        keywords=("ghp_", "gho_", "ghu_", "ghs_", "ghr_"),
    ),
    _rule(
        "github-fine-grained-pat",
        r'github_pat_[a-zA-Z0-9]{22}_[a-zA-Z0-9]{59}',
        "GitHub fine-grained personal access token",
        keywords=("github_pat_",),
    ),
    # ─── Slack ────────────────────────────────────────────────────────────
    _rule(
        "slack-bot-token",
        r'xoxb-[0-9]{10,13}-[0-9]{10,13}-[a-zA-Z0-9]{24,}',
        "Slack bot token",
        keywords=("xoxb",),
    ),
    _rule(
        "slack-app-token",
        r'(?i)xapp-[0-9]-[a-z0-9]{10,}-[0-9]{10,}-[a-z0-9]{64,}',
        "Slack app-level token",
        keywords=("xapp",),
    ),
    # ─── Stripe ───────────────────────────────────────────────────────────
    _rule(
        "stripe-access-token",
        r'(?:sk|rk)_live_[a-zA-Z0-9]{24,}',
        "Stripe live secret or restricted key",
        keywords=("sk_live_", "rk_live_"),
    ),
    # ─── Google ───────────────────────────────────────────────────────────
    _rule(
        "gcp-api-key",
        r'AIza[0-9A-Za-z_-]{35}',
        "Google API key",
        keywords=("aiza",),
    ),
    # ─── HuggingFace ──────────────────────────────────────────────────────
    _rule(
        "huggingface-access-token",
        r'\bhf_[a-zA-Z0-9]{34,}',
        "HuggingFace access token",
        keywords=("hf_",),
    ),
    # ─── SendGrid ─────────────────────────────────────────────────────────
    _rule(
        "sendgrid-api-token",
        r'SG\.[a-zA-Z0-9_-]{22}\.[a-zA-Z0-9_-]{43}',
        "SendGrid API key",
        keywords=("sg.",),
    ),
    # ─── npm / PyPI ───────────────────────────────────────────────────────
    _rule(
        "npm-access-token",
        r'\bnpm_[a-zA-Z0-9]{36}',
        "npm access token",
        keywords=("npm_",),
    ),
    _rule(
        "pypi-upload-token",
        r'pypi-AgEIcHlwaS5vcmc[a-zA-Z0-9_-]{50,}',
        "PyPI upload token",
        keywords=("pypi-ageichlwas5vcmc",),
    ),
    # ─── Twilio ───────────────────────────────────────────────────────────
    _rule(
        "twilio-api-key",
        r'\bSK[0-9a-fA-F]{32}\b',
        "Twilio API key",
        keywords=("sk",),
    ),
    # ─── PEM private keys ─────────────────────────────────────────────────
    _rule(
        "private-key",
        r'-----BEGIN (?:RSA |EC |DSA |OPENSSH |ENCRYPTED )?PRIVATE KEY-----',
        "PEM private key header",
        keywords=("private key",),
    ),
    # ─── Generic assignment (entropy-gated) ───────────────────────────────
    _rule(
        "generic-api-key",
        r'(?i)(?:api[_-]?key|secret|token|passwd|password|auth)[a-z0-9_.-]{0,20}["\']?\s*[:=]{1,2}\s*["\']?([a-z0-9_./+=-]{16,64})\b',
        "Generic API key or secret assignment",
        keywords=("key", "secret", "token", "passwd", "password", "auth"),
        secret_group=1,
        entropy=3.5,
        stopwords=("example", "placeholder", "changeme", "redacted", "xxxxxxxx"),
    ),
]


# ---------------------------------------------------------------------------
# Custom rule sets
# ---------------------------------------------------------------------------

def _str_list(value: Any, where: str) -> tuple[str, ...]:
    if value is None:
        return ()
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise RulesetError(f"{where} must be a list of strings")
    return tuple(value)


def _compile(pattern: str, where: str) -> Any:
    try:
        return re2.compile(pattern)
    except re2.error as exc:
        raise RulesetError(f"{where}: invalid regex: {exc}") from exc


def _parse_rule(entry: Any, where: str) -> Optional[Rule]:
    if not isinstance(entry, dict):
        raise RulesetError(f"{where} must be a table")

    rule_id = entry.get("id")
    if not isinstance(rule_id, str) or not rule_id:
        raise RulesetError(f"{where}: missing rule id")
    where = f"{where} ({rule_id})"

    regex = entry.get("regex")
    if regex is None:
        # Path-only rules match file names, which requests do not carry
        return None
    if not isinstance(regex, str):
        raise RulesetError(f"{where}: regex must be a string")
    pattern = _compile(regex, where)

    secret_group = entry.get("secretGroup")
    if secret_group is not None:
        if isinstance(secret_group, bool) or not isinstance(secret_group, int):
            raise RulesetError(f"{where}: secretGroup must be an integer")
        if secret_group < 0 or secret_group > pattern.groups:
            raise RulesetError(
                f"{where}: secretGroup {secret_group} out of range "
                f"(pattern has {pattern.groups} groups)"
            )
        if secret_group == 0:
            secret_group = None

    entropy = entry.get("entropy")
    if entropy is not None and (isinstance(entropy, bool) or not isinstance(entropy, (int, float))):
        raise RulesetError(f"{where}: entropy must be a number")

    description = entry.get("description", "")
    if not isinstance(description, str):
        raise RulesetError(f"{where}: description must be a string")

    allowlist = entry.get("allowlist") or {}
    if not isinstance(allowlist, dict):
        raise RulesetError(f"{where}: allowlist must be a table")

    return Rule(
        rule_id=rule_id,
        pattern=pattern,
        description=description,
        secret_group=secret_group,
        entropy=float(entropy) if entropy is not None else None,
        keywords=tuple(k.lower() for k in _str_list(entry.get("keywords"), f"{where}.keywords")),
        allow_patterns=tuple(
            _compile(a, f"{where}.allowlist")
            for a in _str_list(allowlist.get("regexes"), f"{where}.allowlist.regexes")
        ),
        stopwords=tuple(
            w.lower()
            for w in _str_list(allowlist.get("stopwords"), f"{where}.allowlist.stopwords")
        ),
    )


def build_ruleset(doc: Any, source: str = "<ruleset>") -> list[Rule]:
    """Compile a parsed rule document into an ordered rule list.

    Raises:
        RulesetError: wrong types, missing or duplicate ids, invalid regexes,
            or an empty final rule set.
    """
    if doc is None:
        doc = {}
    if not isinstance(doc, dict):
        raise RulesetError(f"{source}: top level must be a table")

    extend = doc.get("extend") or {}
    if not isinstance(extend, dict):
        raise RulesetError(f"{source}: extend must be a table")
    use_default = extend.get("useDefault", False)
    if not isinstance(use_default, bool):
        raise RulesetError(f"{source}: extend.useDefault must be a boolean")

    entries = doc.get("rules") or []
    if not isinstance(entries, list):
        raise RulesetError(f"{source}: rules must be an array")

    custom: dict[str, Rule] = {}
    for i, entry in enumerate(entries):
        rule = _parse_rule(entry, f"{source}: rules[{i}]")
        if rule is None:
            continue
        if rule.rule_id in custom:
            raise RulesetError(f"{source}: duplicate rule id {rule.rule_id!r}")
        custom[rule.rule_id] = rule

    if use_default:
        merged = {rule.rule_id: rule for rule in DEFAULT_RULES}
        merged.update(custom)
        rules = list(merged.values())
    else:
        rules = list(custom.values())

    if not rules:
        raise RulesetError(f"{source}: rule set is empty")
    return rules


def load_ruleset(path: Union[str, Path]) -> list[Rule]:
    """Load a custom rule set from a TOML (``.toml``) or YAML file.

    Raises:
        RulesetError: the file cannot be read or parsed, or fails validation.
    """
    path = Path(path).expanduser()
    try:
        if path.suffix.lower() == ".toml":
            with path.open("rb") as f:
                doc = tomllib.load(f)
        else:
            with path.open(encoding="utf-8") as f:
                doc = yaml.safe_load(f)
    except OSError as exc:
        raise RulesetError(f"cannot read rule set {path}: {exc}") from exc
    except (tomllib.TOMLDecodeError, yaml.YAMLError) as exc:
        raise RulesetError(f"cannot parse rule set {path}: {exc}") from exc
    return build_ruleset(doc, source=str(path))
