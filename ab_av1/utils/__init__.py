"""Shared helpers: logging and formatting."""
