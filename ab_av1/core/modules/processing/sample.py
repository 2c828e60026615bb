"""
Sample cutter: stream-copies a short window of the input (no re-encode).
"""

import subprocess
from pathlib import Path
from typing import List, Optional

from ...errors import ProcessError
from ..system import temporary
from ..system.process import cmd_str, ensure_success, run_logged
from ..system.temporary import TempKind

# sample length in seconds
SAMPLE_SIZE_S = 20

UNKNOWN_TIMESTAMP_ERR = "Can't write packet with unknown timestamp"


def sample_name(input_path: Path, start_s: int, frames: int) -> str:
    """File name of a sample, unique per (input stem, start, length)."""
    # always mkv, it copies more reliably than e.g. mp4
    return f"{Path(input_path).stem}.sample{start_s}+{frames}f.mkv"


def _copy_cmd(input_path: Path, start_s: int, frames: int, dest: Path,
              genpts: bool = False) -> List[object]:
    cmd: List[object] = ["ffmpeg", "-y"]
    if genpts:
        cmd += ["-fflags", "+genpts"]
    # -ss before -i and -frames:v instead of -t
    cmd += [
        "-ss", start_s,
        "-i", input_path,
        "-frames:v", frames,
        "-c:v", "copy",
        "-an", "-sn",
        dest,
    ]
    return cmd


def copy(input_path: Path, start_s: int, frames: int,
         temp_dir: Optional[Path] = None) -> Path:
    """Create a sample from ``start_s`` lasting ``frames`` frames.

    An existing sample with the same name is reused as-is.
    """
    dest = temporary.process_dir(temp_dir) / sample_name(input_path, start_s, frames)
    if dest.exists():
        return dest
    temporary.add(dest, TempKind.KEEPABLE)

    cmd = _copy_cmd(input_path, start_s, frames, dest)
    result = _run(cmd)
    if result.returncode != 0 and UNKNOWN_TIMESTAMP_ERR in _stderr_text(result):
        # try +genpts workaround
        cmd = _copy_cmd(input_path, start_s, frames, dest, genpts=True)
        result = _run(cmd)

    ensure_success("ffmpeg copy", cmd, result)
    return dest


def _run(cmd: List[object]) -> subprocess.CompletedProcess:
    try:
        return run_logged(cmd, stdin=subprocess.DEVNULL, stdout=subprocess.DEVNULL,
                          stderr=subprocess.PIPE)
    except OSError as e:
        raise ProcessError("ffmpeg copy", None, cmd_str(cmd), str(e)) from e


def _stderr_text(result: subprocess.CompletedProcess) -> str:
    return (result.stderr or b"").decode("utf-8", errors="replace")
