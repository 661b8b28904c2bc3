"""Verve Calendar — a personal calendar with Google Calendar sync."""

__version__ = "0.1.0"
