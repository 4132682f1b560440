"""Shared hardware watchdog: daemon, client library, lock helper and tools."""

__version__ = "1.0.1"
__all__ = ["__version__"]