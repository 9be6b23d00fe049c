"""Slack <-> Matrix puppet bridge core."""

__version__ = "0.3.0"
