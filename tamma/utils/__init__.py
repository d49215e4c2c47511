"""Shared utilities: logging configuration, retry decorator, async subprocess."""
