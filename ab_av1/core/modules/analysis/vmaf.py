"""
VMAF quality analyzer adapter.

Builds the ``libvmaf`` filter graph for a distorted/reference pair and runs
``ffmpeg -filter_complex ... -f null -``, passing progress to a callback and
returning the final "VMAF score: X" value.
"""

import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, List, Optional, Sequence, Tuple

import psutil

from ...errors import ParseError, PreconditionError, ProcessError
from ..encoder_config import PixelFormat
from ..system.process import Chunks, Progress, ProcessStream, cmd_str
from ....utils.logging import get_logger

logger = get_logger("vmaf")

VMAF_SCORE_PREFIX = "VMAF score: "
VMAF_4K_MODEL_ARG = "model=version=vmaf_4k_v0.6.1"

ProgressCallback = Callable[[Progress], None]

_SCALE_RE = re.compile(r"^(\d+)x(\d+)$")


class VmafModel(Enum):
    VMAF_1K = "vmaf_v0.6.1"
    VMAF_4K = "vmaf_4k_v0.6.1"
    CUSTOM = "custom"

    @classmethod
    def from_args(cls, args: Sequence[str]) -> Optional["VmafModel"]:
        """Model selected by --vmaf args, None when no model arg is given."""
        using_model = [a for a in args if "model" in a]
        if not using_model:
            return None
        if len(using_model) > 1:
            return cls.CUSTOM
        arg = using_model[0]
        if arg.endswith("version=vmaf_v0.6.1"):
            return cls.VMAF_1K
        if arg.endswith("version=vmaf_4k_v0.6.1"):
            return cls.VMAF_4K
        return cls.CUSTOM


@dataclass(frozen=True)
class VmafScale:
    """--vmaf-scale: ``none``, ``auto`` or ``WxH``."""
    mode: str = "auto"
    width: Optional[int] = None
    height: Optional[int] = None

    @classmethod
    def parse(cls, value: str) -> "VmafScale":
        text = value.strip().lower()
        if text in ("none", "auto"):
            return cls(mode=text)
        match = _SCALE_RE.match(text)
        if not match:
            raise PreconditionError(f"vmaf-scale must be 'none', 'auto' or WxH, not '{value}'")
        return cls(mode="custom", width=int(match.group(1)), height=int(match.group(2)))

    def __str__(self) -> str:
        if self.mode == "custom":
            return f"{self.width}x{self.height}"
        return self.mode


def available_parallelism() -> int:
    return psutil.cpu_count(logical=True) or 1


def minimally_scale(from_res: Tuple[int, int], target: Tuple[int, int]) -> Tuple[int, int]:
    """Scale to cover ``target`` keeping aspect, returning (w, -1) or (-1, h)."""
    w, h = from_res
    target_w, target_h = target
    w_factor = w / target_w
    h_factor = h / target_h
    if h_factor > w_factor:
        return -1, target_h
    return target_w, -1


def parse_vmaf_arg(arg: str) -> str:
    """Validate a --vmaf value like "n_threads=8" or "model=path=foo.json"."""
    arg = arg.strip()
    if not arg or "=" not in arg:
        raise PreconditionError(f"invalid --vmaf arg '{arg}', expected key=value")
    return arg


@dataclass
class VmafArgs:
    """User supplied libvmaf options."""
    vmaf_args: List[str] = field(default_factory=list)
    vmaf_scale: VmafScale = field(default_factory=VmafScale)

    def _vf_scale(self, model: VmafModel,
                  distorted_res: Optional[Tuple[int, int]]) -> Optional[Tuple[int, int]]:
        scale = self.vmaf_scale
        if scale.mode == "auto" and distorted_res is not None:
            w, h = distorted_res
            # upscale small resolutions to suit the model
            if model == VmafModel.VMAF_1K and w < 1728 and h < 972:
                return minimally_scale(distorted_res, (1920, 1080))
            if model == VmafModel.VMAF_4K and w < 3456 and h < 1944:
                return minimally_scale(distorted_res, (3840, 2160))
            return None
        if scale.mode == "custom":
            if distorted_res is not None:
                return minimally_scale(distorted_res, (scale.width, scale.height))
            return scale.width, scale.height
        return None

    def libvmaf_args(self, distorted_res: Optional[Tuple[int, int]]) -> Tuple[List[str], VmafModel]:
        args = [parse_vmaf_arg(a) for a in self.vmaf_args]
        if not any("n_threads" in a for a in args):
            args.append(f"n_threads={available_parallelism()}")

        model = VmafModel.from_args(args)
        if model is None and distorted_res is not None:
            w, h = distorted_res
            if w > 2560 and h > 1440:
                # use the 4k model for >2k resolutions
                args.append(VMAF_4K_MODEL_ARG)
                model = VmafModel.VMAF_4K
        return args, model or VmafModel.VMAF_1K

    def ffmpeg_lavfi(self, distorted_res: Optional[Tuple[int, int]],
                     pix_fmt: PixelFormat, ref_vfilter: Optional[str] = None) -> str:
        """Filter graph comparing input 0 (distorted) with input 1 (reference)."""
        args, model = self.libvmaf_args(distorted_res)
        ref_vf = ""
        if ref_vfilter:
            ref_vf = ref_vfilter if ref_vfilter.endswith(",") else f"{ref_vfilter},"

        lavfi = (
            f"[0:v]format={pix_fmt},setpts=PTS-STARTPTS,settb=AVTB[dis];"
            f"[1:v]format={pix_fmt},{ref_vf}setpts=PTS-STARTPTS,settb=AVTB[ref];"
            f"[dis][ref]libvmaf=shortest=true:ts_sync_mode=nearest:{':'.join(args)}"
        )

        scale = self._vf_scale(model, distorted_res)
        if scale is not None:
            w, h = scale
            lavfi = lavfi.replace("[dis];", f",scale={w}:{h}:flags=bicubic[dis];")
            lavfi = lavfi.replace("[ref];", f",scale={w}:{h}:flags=bicubic[ref];")
        return lavfi


def vmaf_score_from_line(line: str) -> Optional[float]:
    idx = line.find(VMAF_SCORE_PREFIX)
    if idx < 0:
        return None
    value = line[idx + len(VMAF_SCORE_PREFIX):].strip().split(None, 1)
    try:
        return float(value[0]) if value else None
    except ValueError:
        return None


def analyzer_cmd(reference: Path, distorted: Path, filter_complex: str) -> List[object]:
    return [
        "ffmpeg",
        "-i", distorted,
        "-i", reference,
        "-filter_complex", filter_complex,
        "-f", "null", "-",
    ]


def run_scored(name: str, cmd: List[object],
               score_from_line: Callable[[str], Optional[float]],
               on_progress: Optional[ProgressCallback] = None) -> float:
    """Run an analyzer to completion and return the score parsed from stderr."""
    try:
        stream = ProcessStream.spawn(cmd, name)
    except OSError as e:
        raise ProcessError(name, None, cmd_str(cmd), str(e)) from e

    with stream:
        for out in stream:
            if isinstance(out, Progress) and on_progress is not None:
                on_progress(out)
        chunks: Chunks = stream.chunks()
        score = chunks.rfind_line_map(score_from_line)

    if score is None:
        raise ParseError(f"could not parse {name} score\n----cmd-----\n{cmd_str(cmd)}\n"
                         f"---stderr---\n{chunks.text().strip()}\n------------")
    return score


def run(reference: Path, distorted: Path, filter_complex: str,
        on_progress: Optional[ProgressCallback] = None) -> float:
    """Calculate the VMAF score of ``distorted`` against ``reference``."""
    logger.debug(f"vmaf {Path(distorted).name} vs reference {Path(reference).name}")
    cmd = analyzer_cmd(reference, distorted, filter_complex)
    return run_scored("ffmpeg vmaf", cmd, vmaf_score_from_line, on_progress)
