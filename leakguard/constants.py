"""Shared constants for LeakGuard.

All sentinel values, default endpoints and numeric limits used across modules
are defined here. No magic numbers in other modules — import from here.
"""

# ─── Redaction ────────────────────────────────────────────────────────────────

# Fixed replacement token substituted for every redacted secret.
# Shared by the redact-mode forwarding path, the reject report and /scan.
# Assumed never to match a detection rule itself.
REDACTION_SENTINEL: str = "<REDACTED_KEY>"

# Log/report preview of a secret: secrets shorter than PREVIEW_MIN_LENGTH are
# fully masked; longer ones keep PREVIEW_EDGE chars on each side.
PREVIEW_MIN_LENGTH: int = 8
PREVIEW_EDGE: int = 2
PREVIEW_FULL_MASK: str = "*" * 8
PREVIEW_INNER_MASK: str = "*" * 4

# ─── Routing ──────────────────────────────────────────────────────────────────

# Default upstream origin (overridable via ANTHROPIC_BASE_URL).
DEFAULT_UPSTREAM_URL: str = "https://api.anthropic.com"

# Reserved path for the ad-hoc scan endpoint. Never proxied.
DEBUG_SCAN_PATH: str = "/scan"

# ─── Timeouts (seconds) ───────────────────────────────────────────────────────

# Upper bound on reading an inbound request body.
BODY_READ_TIMEOUT_S: float = 30.0

# Upstream httpx timeouts. Read is generous: Messages API calls can take a
# long time to produce the first byte.
UPSTREAM_CONNECT_TIMEOUT_S: float = 10.0
UPSTREAM_READ_TIMEOUT_S: float = 90.0
UPSTREAM_WRITE_TIMEOUT_S: float = 30.0

# Grace period for in-flight requests on shutdown.
GRACEFUL_SHUTDOWN_S: int = 10

# ─── Connection pool ──────────────────────────────────────────────────────────

POOL_MAX_CONNECTIONS: int = 100
POOL_MAX_KEEPALIVE: int = 20
POOL_KEEPALIVE_EXPIRY_S: float = 30.0

# ─── Logging ──────────────────────────────────────────────────────────────────

# A leak check slower than this is logged at WARNING instead of DEBUG.
SLOW_SCAN_MS: float = 50.0

# Status recorded when the client hangs up before upstream answers
# (nginx's "client closed request"). The client never sees it.
CLIENT_CLOSED_REQUEST: int = 499
