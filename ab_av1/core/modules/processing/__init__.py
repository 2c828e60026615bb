"""Sample cutter and encoder adapters."""
