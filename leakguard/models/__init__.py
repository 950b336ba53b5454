"""LeakGuard models package.

Shared data contracts used across the scan pipeline and proxy handler:

  - scan.py      — Finding, ScanResult, Action (detection and decision contracts)
  - payload.py   — RequestPayload and its content-block variants (Messages API schema)
  - responses.py — Builders for the proxy's own error responses (400 / 405 / 500 / 502)
"""
