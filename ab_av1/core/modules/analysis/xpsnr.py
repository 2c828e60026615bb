"""
XPSNR quality analyzer adapter, sharing the runner of the VMAF adapter.
"""

from pathlib import Path
from typing import Optional, Tuple

from ..encoder_config import PixelFormat
from .vmaf import ProgressCallback, analyzer_cmd, minimally_scale, run_scored

MIN_PREFIX = "minimum: "


def score_from_line(line: str) -> Optional[float]:
    """Parse the xpsnr summary line.

    E.g. "XPSNR  y: 33.6547  u: 41.8741  v: 42.2571  (minimum: 33.6547)"
    """
    if "XPSNR" not in line:
        return None
    idx = line.find(MIN_PREFIX)
    if idx < 0:
        return None
    tail = line[idx + len(MIN_PREFIX):]
    end = 0
    while end < len(tail) and (tail[end].isdigit() or tail[end] == "."):
        end += 1
    try:
        return float(tail[:end])
    except ValueError:
        return None


def ffmpeg_lavfi(pix_fmt: PixelFormat, ref_vfilter: Optional[str] = None,
                 scale: Optional[Tuple[int, int]] = None,
                 distorted_res: Optional[Tuple[int, int]] = None) -> str:
    """Filter graph comparing input 0 (distorted) with input 1 (reference)."""
    ref_vf = ""
    if ref_vfilter:
        ref_vf = ref_vfilter if ref_vfilter.endswith(",") else f"{ref_vfilter},"
    lavfi = (
        f"[0:v]format={pix_fmt},setpts=PTS-STARTPTS,settb=AVTB[dis];"
        f"[1:v]format={pix_fmt},{ref_vf}setpts=PTS-STARTPTS,settb=AVTB[ref];"
        f"[dis][ref]xpsnr=stats_file=-"
    )
    if scale is not None:
        w, h = minimally_scale(distorted_res, scale) if distorted_res else scale
        lavfi = lavfi.replace("[dis];", f",scale={w}:{h}:flags=bicubic[dis];")
        lavfi = lavfi.replace("[ref];", f",scale={w}:{h}:flags=bicubic[ref];")
    return lavfi


def run(reference: Path, distorted: Path, filter_complex: str,
        on_progress: Optional[ProgressCallback] = None) -> float:
    """Calculate the XPSNR of ``distorted`` against ``reference``."""
    cmd = analyzer_cmd(reference, distorted, filter_complex)
    return run_scored("ffmpeg xpsnr", cmd, score_from_line, on_progress)
