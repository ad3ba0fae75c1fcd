"""Company discovery: caching, quota, scheduling and resilience around a lookup provider."""

__version__ = "0.1.0"
