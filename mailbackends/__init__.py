"""Pluggable storage and validation backends for an SMTP receiving daemon: a worker gateway, processor chains, Redis and SQL storage."""

__version__ = "0.1.0"