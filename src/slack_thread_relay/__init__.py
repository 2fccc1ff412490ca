"""Relay job lifecycles into a single Slack thread per job."""

__version__ = "0.1.0"
