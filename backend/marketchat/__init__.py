"""Marketchat: realtime chat and presence backend for the marketplace."""

__version__ = "0.1.0"
