"""LeakGuard proxy package: request controller, catch-all router and header rules."""
