"""Configuration management for ab-av1."""

import os
import sys
from pathlib import Path
from typing import Optional, Dict, Any

from .utils.logging import get_logger

logger = get_logger("config")

CACHE_SUBDIR = Path("ab-av1") / "sample-encode-cache"

_TRUE_VALUES = ('true', '1', 'yes', 'on')
_FALSE_VALUES = ('false', '0', 'no', 'off')


def load_env_file(env_path: Optional[Path] = None) -> Dict[str, str]:
    """Load environment variables from .env file."""
    if env_path is None:
        # Look for .env in current directory, then in package directory
        candidates = [
            Path.cwd() / ".env",
            Path(__file__).parent.parent / ".env",
        ]

        for candidate in candidates:
            if candidate.exists():
                env_path = candidate
                break

    env_vars = {}

    if env_path and env_path.exists():
        with open(env_path, 'r', encoding='utf-8') as f:
            for line in f:
                line = line.strip()
                if line and not line.startswith('#'):
                    if '=' in line:
                        key, value = line.split('=', 1)
                        env_vars[key.strip()] = value.strip().strip('"').strip("'")

    return env_vars


def parse_bool(value: str) -> bool:
    """Parse a boolean flag value the way the CLI and environment accept it."""
    lowered = value.strip().lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    raise ValueError(f"invalid boolean value '{value}'")


def _lookup_bool(lookup, name: str, default: bool) -> bool:
    value = lookup(name)
    if value is None:
        return default
    try:
        return parse_bool(value)
    except ValueError:
        logger.warn(f"Ignoring {name}={value!r}, expected true or false")
        return default


def get_config() -> Dict[str, Any]:
    """Get configuration from environment variables and .env file.

    Environment variables take precedence over the .env file.
    """
    env_vars = load_env_file()

    def lookup(name: str, default: Optional[str] = None) -> Optional[str]:
        return os.getenv(name, env_vars.get(name, default))

    temp_dir = lookup('AB_AV1_TEMP_DIR')
    config = {
        'cache': _lookup_bool(lookup, 'AB_AV1_CACHE', True),
        'temp_dir': Path(temp_dir) if temp_dir else None,
        'log_level': (lookup('AB_AV1_LOG_LEVEL', 'INFO') or 'INFO').upper(),
        'debug': (lookup('DEBUG', 'false') or 'false').lower() in _TRUE_VALUES,
    }

    return config


def user_cache_dir() -> Path:
    """Platform user cache root (XDG on linux, ~/Library/Caches on mac, LOCALAPPDATA on windows)."""
    if sys.platform == "win32":
        base = os.environ.get("LOCALAPPDATA")
        if base:
            return Path(base)
        return Path.home() / "AppData" / "Local"
    if sys.platform == "darwin":
        return Path.home() / "Library" / "Caches"
    xdg = os.environ.get("XDG_CACHE_HOME")
    if xdg:
        return Path(xdg)
    return Path.home() / ".cache"


def sample_encode_cache_dir() -> Path:
    """Directory holding sample-encode cache entries."""
    return user_cache_dir() / CACHE_SUBDIR
