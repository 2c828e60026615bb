"""Process runner, temporary registry and interrupt handling."""
