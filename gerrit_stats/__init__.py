"""Per-user contribution statistics for Gerrit code review."""

__version__ = "0.1.0"
