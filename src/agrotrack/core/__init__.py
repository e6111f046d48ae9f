"""
Core request-handling components.

This package contains the layers every endpoint is wrapped in:
- Tiered cache (in-process + Redis)
- Fixed-window rate limiting
- CSRF token guard
- Soft-delete interception over the data-access handle
- API version routing
- Response/error envelopes, logging and metrics
"""
