"""CLI entry point for the ab-av1 package."""

import sys


def main():
    """Entry point for the ab-av1 command."""
    from ab_av1.core.main import main as run
    sys.exit(run())


if __name__ == "__main__":
    main()
