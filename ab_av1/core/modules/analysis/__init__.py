"""Probe and quality analyzer adapters."""
