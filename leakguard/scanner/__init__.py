"""LeakGuard scanner package.

Provides the secret-detection pipeline: the gitleaks-style rule set and
regex engine, the detection facade, the redaction policy, and the structured
payload walker that drives them over a Messages API request body.
"""
