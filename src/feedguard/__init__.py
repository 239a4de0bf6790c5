"""FeedGuard: resilient access to rate-limited provider APIs."""

__version__ = "0.1.0"
