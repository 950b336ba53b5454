"""LeakGuard — credential-leak guard proxy for LLM API traffic.

Intercepts requests bound for the upstream Messages API, scans every outbound
body for leaked secrets, and either rejects the request or forwards a redacted
copy.
"""

__version__ = "0.1.0"
