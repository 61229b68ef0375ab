"""Async session, realtime presence, chat and notification client for the GuestCode API."""

__version__ = "0.1.0"
