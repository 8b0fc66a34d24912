"""
Common building blocks shared by the labeling pipeline and its entrypoint.

This package contains reusable, domain-agnostic code:

- configuration loading (environment variables)
- retry/backoff helpers
- logging configuration
- atomic JSON persistence helpers
- a small helper for OpenAI-compatible chat completion calls
"""
