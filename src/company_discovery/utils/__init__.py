"""Shared utilities: logging and time."""
