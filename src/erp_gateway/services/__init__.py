"""Domain services: caching, sessions, rate limiting and ERP lookups."""
