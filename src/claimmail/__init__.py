"""Mailbox synchronization core for the warranty-claims application."""

__version__ = "0.1.0"
