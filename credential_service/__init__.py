"""Invitation, password and session credential service."""

__version__ = "0.1.0"
