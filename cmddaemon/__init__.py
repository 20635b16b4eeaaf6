"""Supervise configured commands, restart them with back-off and serve an HTTP control API."""

__version__ = "0.5.6"