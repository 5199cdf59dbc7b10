"""Conversation and message synchronization for the school communication module."""

__version__ = "1.0.0"
