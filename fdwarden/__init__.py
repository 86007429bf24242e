"""Awaitable non-blocking I/O on sockets, pipes and timers, driven by a poll based event loop."""

__version__ = "0.1.0"