"""Core search pipeline and command line surface."""
