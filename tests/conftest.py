"""Root test configuration for LeakGuard.

Isolates every test from the developer's environment: no config file from the
working directory or home directory is picked up, and the environment
overrides (ANTHROPIC_BASE_URL, LEAKGUARD_PORT, LEAKGUARD_CONFIG) are cleared.

structlog logger caching is disabled so ``structlog.testing.capture_logs``
sees events from loggers created at import time.
"""

from __future__ import annotations

from typing import Callable

import pytest
import structlog

from leakguard.scanner.detector import SecretScanner
from leakguard.scanner.engine import RegexDetectionEngine
from leakguard.scanner.walker import PayloadWalker

# Matches the anthropic-api-key rule: sk-ant-api03- + 93 chars
ANTHROPIC_KEY = "sk-ant-api03-" + "A" * 93


@pytest.fixture(scope="session", autouse=True)
def uncached_loggers() -> None:
    structlog.configure(cache_logger_on_first_use=False)


@pytest.fixture(autouse=True)
def isolate_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    """Clear env overrides and default config search paths for every test."""
    for name in (
        "ANTHROPIC_BASE_URL",
        "LEAKGUARD_PORT",
        "LEAKGUARD_CONFIG",
        "OTEL_EXPORTER_OTLP_ENDPOINT",
        "OTEL_EXPORTER_OTLP_TRACES_ENDPOINT",
    ):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setattr("leakguard.config.DEFAULT_CONFIG_PATHS", [])


@pytest.fixture
def anthropic_key() -> str:
    return ANTHROPIC_KEY


@pytest.fixture
def make_key() -> Callable[[str], str]:
    """Factory for distinct Anthropic-format keys built from one fill character."""
    return lambda fill: "sk-ant-api03-" + fill * 93


@pytest.fixture
def scanner() -> SecretScanner:
    return SecretScanner(RegexDetectionEngine())


@pytest.fixture
def walker(scanner: SecretScanner) -> PayloadWalker:
    return PayloadWalker(scanner)
