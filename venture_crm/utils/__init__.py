"""Shared helpers for configuration flags and logging."""
