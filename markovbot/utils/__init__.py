"""Shared helpers: logging setup and message text cleanup."""
