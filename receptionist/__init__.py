"""Conversation engine for a voice appointment receptionist."""

__version__ = "0.1.0"
