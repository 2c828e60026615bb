"""
Temporary artifact registry.

Every file or directory produced during a run is registered here *before*
the process that writes it is spawned. On normal exit, on interrupt and on
any fatal error the registry is drained and the files deleted. Callers can
commit a path (remove it from the registry) to keep it, e.g. the final encode
output on success.
"""

import atexit
import os
import secrets
import string
import threading
from enum import Enum
from pathlib import Path
from typing import Dict, Optional, Union

from ....utils.logging import get_logger

logger = get_logger("temporary")

PathLike = Union[str, "os.PathLike[str]"]

_ALPHANUMERIC = string.ascii_letters + string.digits


class TempKind(Enum):
    # Always deleted at the end of the program
    NOT_KEEPABLE = "not_keepable"
    # Usually deleted but may be kept, e.g. with --keep
    KEEPABLE = "keepable"


_TEMPS: Dict[Path, TempKind] = {}
_LOCK = threading.Lock()
_PROCESS_SUBDIR = ".ab-av1-" + "".join(secrets.choice(_ALPHANUMERIC) for _ in range(12))
_KEEP_ON_EXIT = False


def add(path: PathLike, kind: TempKind = TempKind.KEEPABLE):
    """Register a path as temporary so it can be deleted later."""
    with _LOCK:
        _TEMPS[Path(path)] = kind


def unadd(path: PathLike) -> bool:
    """Remove a previously registered path so it won't be deleted.

    Returns True if the path was registered.
    """
    with _LOCK:
        return _TEMPS.pop(Path(path), None) is not None


# committing a temporary is the same operation
commit = unadd


def registered() -> Dict[Path, TempKind]:
    """Snapshot of the currently registered temporaries."""
    with _LOCK:
        return dict(_TEMPS)


def set_keep_on_exit(keep: bool):
    """Keep KEEPABLE temporaries when the interpreter exits (--keep)."""
    global _KEEP_ON_EXIT
    _KEEP_ON_EXIT = keep


def _remove(path: Path):
    try:
        if path.is_dir():
            # only ever remove our own dirs when they are empty
            path.rmdir()
        else:
            path.unlink()
        logger.cleanup(f"removed {path}")
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.debug(f"could not remove {path}: {e}")


def clean(keep_keepables: bool = False):
    """Delete registered temporaries.

    If ``keep_keepables`` is True, KEEPABLE entries are left on disk and stay
    registered. Safe to call any number of times.
    """
    with _LOCK:
        if keep_keepables:
            drained = [p for p, k in _TEMPS.items() if k == TempKind.NOT_KEEPABLE]
        else:
            drained = list(_TEMPS)
        for path in drained:
            del _TEMPS[path]

    # files first, dirs at the end
    drained.sort(key=lambda p: p.is_dir())
    for path in drained:
        _remove(path)


def clean_on_exit():
    """Drain the registry honouring --keep."""
    clean(keep_keepables=_KEEP_ON_EXIT)


def process_dir(parent: Optional[PathLike] = None) -> Path:
    """Return a temporary directory distinct per process/run.

    ``parent`` (--temp-dir) is used as the parent, else the current working dir.
    """
    base = Path(parent) if parent is not None else Path.cwd()
    temp_dir = base / _PROCESS_SUBDIR
    if not temp_dir.exists():
        add(temp_dir, TempKind.KEEPABLE)
        temp_dir.mkdir(parents=True, exist_ok=True)
    return temp_dir


# Register cleanup on exit
atexit.register(clean_on_exit)
