"""
AgroTrack - farm-to-table storefront API core

The cross-cutting request-handling layer: rate limiting, CSRF protection,
tiered caching, soft deletes, API versioning and uniform response envelopes.
"""

__version__ = "1.0.0"
