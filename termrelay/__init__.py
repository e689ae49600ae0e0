"""Relay interactive shell sessions as discrete, cleaned output records."""

__version__ = "0.1.0"
