"""Authentication gateway fronting an ERP system with Redis-backed caching and rate limiting."""

__version__ = "1.0.0"
