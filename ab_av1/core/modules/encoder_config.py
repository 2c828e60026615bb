"""
Encoder configuration: user-facing encode arguments and their translation to
a concrete ffmpeg argument record.

- ``EncodeArgs`` holds what the user asked for (codec, preset, pixel format,
  keyframe interval, scene-change detection, --svt/--enc/--enc-input extras).
- ``EncodeArgs.to_encoder_args(crf, probe)`` validates reserved arguments,
  applies the keyframe interval policy and codec defaults and returns an
  ``FfmpegEncodeArgs`` used both for sample encodes and the final encode.
- ``FfmpegEncodeArgs.fingerprint()`` is the stable, semantic part of the
  sample-encode cache key.
"""

import json
import re
import shlex
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Dict, List, Optional, Tuple

from ..errors import PreconditionError, ProbeError
from ...utils.formatting import round_half_away, terse_float

if TYPE_CHECKING:
    from .analysis.ffprobe import Ffprobe

# inputs at least this long get a default keyframe interval
KEYINT_DEFAULT_INPUT_MIN = 3 * 60.0
KEYINT_DEFAULT = 10.0

SVT_AV1_APP = "SvtAv1EncApp"

ENCODER_ALIASES = {
    "svt-av1": "libsvtav1",
    "svtav1": "libsvtav1",
    "x264": "libx264",
    "x265": "libx265",
    "vp9": "libvpx-vp9",
    "aom": "libaom-av1",
    "rav1e": "librav1e",
}

# Reserved ffmpeg args with the flag to use instead
RESERVED_ARGS: Dict[str, Optional[str]] = {
    "-i": None,
    "-y": None,
    "-n": None,
    "-c:v": "--encoder",
    "-codec:v": "--encoder",
    "-vcodec": "--encoder",
    "-c:a": "--acodec",
    "-codec:a": "--acodec",
    "-acodec": "--acodec",
    "-pix_fmt": "--pix-format",
    "-crf": "--crf",
    "-preset": "--preset",
    "-vf": "--vfilter",
    "-filter:v": "--vfilter",
}

# svt-av1 params handled by dedicated flags
SVT_DENIED_ARGS: Dict[str, str] = {
    "crf": "--crf",
    "preset": "--preset",
    "keyint": "--keyint",
    "scd": "--scd",
    "input-depth": "--pix-format",
}

_FPS_ALIASES = {
    "ntsc": 30000.0 / 1001.0,
    "pal": 25.0,
    "film": 24.0,
    "ntsc_film": 24000.0 / 1001.0,
}

_DURATION_PART_RE = re.compile(r"(\d+(?:\.\d+)?)\s*(ms|msec|s|sec|secs|m|min|mins|h|hr|hrs)")
_DURATION_UNITS = {
    "ms": 0.001, "msec": 0.001,
    "s": 1.0, "sec": 1.0, "secs": 1.0,
    "m": 60.0, "min": 60.0, "mins": 60.0,
    "h": 3600.0, "hr": 3600.0, "hrs": 3600.0,
}


class PixelFormat(Enum):
    """Supported output pixel formats, ordered by fidelity."""
    YUV420P = "yuv420p"
    YUV420P10LE = "yuv420p10le"
    YUV422P10LE = "yuv422p10le"
    YUV444P = "yuv444p"
    YUV444P10LE = "yuv444p10le"

    @property
    def rank(self) -> int:
        return list(PixelFormat).index(self)

    def __lt__(self, other: "PixelFormat") -> bool:
        if not isinstance(other, PixelFormat):
            return NotImplemented
        return self.rank < other.rank

    def __gt__(self, other: "PixelFormat") -> bool:
        if not isinstance(other, PixelFormat):
            return NotImplemented
        return self.rank > other.rank

    @classmethod
    def parse(cls, value: Optional[str]) -> Optional["PixelFormat"]:
        if not value:
            return None
        try:
            return cls(value.strip().lower())
        except ValueError:
            return None

    def __str__(self) -> str:
        return self.value


def parse_duration(value: str) -> float:
    """Parse durations like "10s", "5min", "1m30s", "2h" into seconds."""
    text = value.strip().lower().replace(" ", "")
    if not text:
        raise ValueError("empty duration")
    pos = 0
    total = 0.0
    for match in _DURATION_PART_RE.finditer(text):
        if match.start() != pos:
            break
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()
    if pos != len(text):
        raise ValueError(f"invalid duration '{value}'")
    return total


@dataclass(frozen=True)
class KeyInterval:
    """Keyframe interval expressed either as frames or as a duration."""
    frames: Optional[int] = None
    seconds: Optional[float] = None

    @classmethod
    def parse(cls, value: str) -> "KeyInterval":
        text = value.strip()
        if text.isdigit():
            return cls(frames=int(text))
        return cls(seconds=parse_duration(text))

    def keyint_number(self, fps: Optional[float]) -> int:
        if self.frames is not None:
            return self.frames
        if fps is None:
            raise ProbeError("fps unknown, cannot convert keyint duration to frames")
        return round_half_away(self.seconds * fps)

    def __str__(self) -> str:
        if self.frames is not None:
            return str(self.frames)
        return f"{terse_float(self.seconds)}s"


class Encoder:
    """ffmpeg video encoder name with codec specific behaviour."""

    def __init__(self, name: str = "libsvtav1"):
        name = name.strip()
        if not name:
            raise PreconditionError("encoder must not be empty")
        self.name = ENCODER_ALIASES.get(name.lower(), name)

    def __eq__(self, other) -> bool:
        return isinstance(other, Encoder) and other.name == self.name

    def __hash__(self) -> int:
        return hash(self.name)

    def __repr__(self) -> str:
        return f"Encoder({self.name!r})"

    def __str__(self) -> str:
        return self.name

    @property
    def is_svt_app(self) -> bool:
        return self.name == SVT_AV1_APP

    @property
    def ffmpeg_vcodec(self) -> str:
        """ffmpeg codec used for a full encode."""
        return "libsvtav1" if self.is_svt_app else self.name

    @property
    def is_svtav1(self) -> bool:
        return self.name in ("libsvtav1", SVT_AV1_APP)

    @property
    def preset_arg(self) -> str:
        if self.name in ("libaom-av1", "libvpx-vp9"):
            return "-cpu-used"
        if self.name == "librav1e":
            return "-speed"
        return "-preset"

    @property
    def crf_arg(self) -> str:
        # crf-like args for encoders without crf
        name = self.name
        if name in ("librav1e", "libvvenc"):
            return "-qp"
        if name == "mpeg2video" or name.endswith("_vaapi"):
            return "-q"
        if name.endswith("_vulkan"):
            return "-qp"
        if name.endswith("_nvenc"):
            return "-cq"
        if name.endswith("_qsv"):
            return "-global_quality"
        return "-crf"

    def default_ffmpeg_args(self) -> List[Tuple[str, str]]:
        if self.name in ("libaom-av1", "libvpx-vp9"):
            # constant quality mode
            return [("-b:v", "0")]
        if self.name.endswith("_qsv"):
            return [("-look_ahead", "1"), ("-extbrc", "1"), ("-look_ahead_depth", "40")]
        return []

    def default_preset(self) -> Optional[str]:
        return "8" if self.is_svtav1 else None

    def default_pix_fmt(self) -> PixelFormat:
        if "av1" in self.name.lower():
            return PixelFormat.YUV420P10LE
        return PixelFormat.YUV420P

    def default_crf_increment(self) -> float:
        # x264/x265 take decimal crf
        return 0.1 if self.name in ("libx264", "libx265") else 1.0

    def default_min_crf(self) -> float:
        return 2.0 if self.name == "mpeg2video" else 10.0

    def default_max_crf(self) -> float:
        if self.name in ("libx264", "libx265"):
            return 46.0
        if self.name == "librav1e":
            return 255.0
        if self.name == "mpeg2video":
            return 30.0
        return 55.0

    def params_arg(self) -> Optional[str]:
        """x264-params/x265-params option for the x26x encoders."""
        if self.name == "libx264":
            return "-x264-params"
        if self.name == "libx265":
            return "-x265-params"
        return None


def parse_enc_arg(arg: str) -> str:
    """Normalise a --enc/--enc-input value, prefixing '-' when missing."""
    arg = arg.strip()
    if not arg.startswith("-"):
        arg = "-" + arg
    if arg.startswith("-svtav1-params"):
        raise PreconditionError("'svtav1-params' cannot be set here, use --svt")
    return arg


def parse_svt_arg(arg: str) -> str:
    """Validate a --svt value like "film-grain=30"."""
    arg = arg.strip().lstrip("-")
    for deny, flag in SVT_DENIED_ARGS.items():
        if arg.startswith(deny):
            raise PreconditionError(f"'{deny}' cannot be used here, use {flag} instead")
    return arg


def split_enc_args(args: List[str]) -> List[str]:
    """Expand "opt=value" extras into ['-opt', 'value'] pairs."""
    out: List[str] = []
    for arg in args:
        arg = parse_enc_arg(arg)
        if "=" in arg:
            opt, value = arg.split("=", 1)
            out.extend([opt, value])
        else:
            out.append(arg)
    return out


def check_reserved(args: List[str]):
    for arg in args:
        if arg in RESERVED_ARGS:
            flag = RESERVED_ARGS[arg]
            hint = f", use {flag} instead" if flag else ""
            raise PreconditionError(f"Encoder argument `{arg}` not allowed{hint}")


def try_parse_fps_vfilter(vfilter: Optional[str]) -> Optional[float]:
    """fps set by an ``fps=`` filter in a comma separated filter chain."""
    # avoid an import cycle with the probe module
    from .analysis.ffprobe import parse_frame_rate

    if not vfilter:
        return None
    for vf in vfilter.split(","):
        vf = vf.strip()
        if vf.startswith("fps="):
            value = vf[len("fps="):].strip()
            if value in _FPS_ALIASES:
                return _FPS_ALIASES[value]
            return parse_frame_rate(value)
    return None


@dataclass
class FfmpegEncodeArgs:
    """Concrete encoder invocation arguments."""
    input: Path
    vcodec: str
    crf: float
    vfilter: Optional[str] = None
    pix_fmt: Optional[PixelFormat] = None
    preset: Optional[str] = None
    output_args: List[str] = field(default_factory=list)
    input_args: List[str] = field(default_factory=list)
    video_only: bool = False
    keyint: Optional[int] = None
    scd: bool = False

    @property
    def encoder(self) -> Encoder:
        return Encoder(self.vcodec)

    def with_input(self, input_path: Path) -> "FfmpegEncodeArgs":
        return replace(self, input=Path(input_path))

    def fingerprint(self) -> bytes:
        """Stable serialisation of the sample-encode relevant arguments.

        The input is not part of it: samples are identified separately.
        """
        data = {
            "vcodec": self.vcodec,
            "vfilter": self.vfilter,
            "pix_fmt": self.pix_fmt.value if self.pix_fmt else None,
            "crf": float(self.crf).hex(),
            "preset": self.preset,
            "output_args": list(self.output_args),
            "input_args": list(self.input_args),
        }
        return json.dumps(data, sort_keys=True, separators=(",", ":")).encode("utf-8")


@dataclass
class EncodeArgs:
    """User supplied encoding arguments shared by every verb."""
    input: Path
    encoder: Encoder = field(default_factory=Encoder)
    vfilter: Optional[str] = None
    preset: Optional[str] = None
    pix_format: Optional[PixelFormat] = None
    keyint: Optional[KeyInterval] = None
    scd: Optional[bool] = None
    svt_args: List[str] = field(default_factory=list)
    enc_args: List[str] = field(default_factory=list)
    enc_input_args: List[str] = field(default_factory=list)

    def keyint_policy(self, probe: "Ffprobe") -> Tuple[Optional[int], bool]:
        """Resolve (keyint frames, defaulted) for the input.

        A user keyint uses the vfilter ``fps=`` if present, else the probed fps.
        Without one, inputs of 3 minutes or more default to 10 seconds.
        """
        filter_fps = try_parse_fps_vfilter(self.vfilter)
        if self.keyint is not None:
            fps = filter_fps if filter_fps is not None else probe.fps.get_or(None)
            return self.keyint.keyint_number(fps), False

        if not probe.duration.ok or probe.duration.value < KEYINT_DEFAULT_INPUT_MIN:
            return None, False
        fps = filter_fps if filter_fps is not None else probe.fps.get_or(None)
        if fps is None:
            # degrade gracefully, just don't set a keyint
            return None, False
        return KeyInterval(seconds=KEYINT_DEFAULT).keyint_number(fps), True

    def to_encoder_args(self, crf: float, probe: "Ffprobe") -> FfmpegEncodeArgs:
        encoder = self.encoder
        svt_args = [parse_svt_arg(a) for a in self.svt_args]
        args = split_enc_args(self.enc_args)
        input_args = split_enc_args(self.enc_input_args)
        check_reserved(args)
        check_reserved(input_args)

        keyint, keyint_defaulted = self.keyint_policy(probe)
        scd = self.scd if self.scd is not None else keyint_defaulted

        if encoder.is_svtav1:
            params = [f"scd={int(scd)}"] + svt_args
            args.extend(["-svtav1-params", ":".join(params)])
        elif svt_args:
            raise PreconditionError(f"--svt args are only supported by svt-av1, not {encoder}")

        if keyint is not None:
            params_arg = encoder.params_arg()
            if params_arg is not None:
                _insert_x26x_keyint(args, params_arg, keyint)
            elif "-g" not in args:
                args.extend(["-g", str(keyint)])

        for name, value in encoder.default_ffmpeg_args():
            if name not in args:
                args.extend([name, value])

        return FfmpegEncodeArgs(
            input=Path(self.input),
            vcodec=encoder.name,
            crf=crf,
            vfilter=self.vfilter,
            pix_fmt=self.pix_format or encoder.default_pix_fmt(),
            preset=self.preset if self.preset is not None else encoder.default_preset(),
            output_args=args,
            input_args=input_args,
            keyint=keyint,
            scd=scd,
        )

    def encode_hint(self, crf: float) -> str:
        """Command line to run the full encode at ``crf``."""
        hint = "ab-av1 encode"
        if self.encoder.name != "libsvtav1":
            hint += f" -e {self.encoder.name}"
        hint += f" -i {shlex.quote(str(self.input))} --crf {terse_float(crf)}"
        if self.preset is not None:
            hint += f" --preset {self.preset}"
        if self.keyint is not None:
            hint += f" --keyint {self.keyint}"
        if self.scd is not None:
            hint += f" --scd {str(self.scd).lower()}"
        if self.pix_format is not None:
            hint += f" --pix-format {self.pix_format}"
        if self.vfilter:
            hint += f" --vfilter {shlex.quote(self.vfilter)}"
        for arg in self.svt_args:
            hint += f" --svt {shlex.quote(arg)}"
        for arg in self.enc_input_args:
            hint += f" --enc-input {shlex.quote(arg)}"
        for arg in self.enc_args:
            hint += f" --enc {shlex.quote(arg)}"
        return hint


def _insert_x26x_keyint(args: List[str], params_arg: str, keyint: int):
    if "-g" in args:
        return
    if params_arg in args:
        idx = args.index(params_arg) + 1
        has_keyint = idx < len(args) and any(
            p.startswith("keyint=") for p in args[idx].split(":"))
        if idx < len(args) and not has_keyint:
            args[idx] = f"{args[idx]}:keyint={keyint}" if args[idx] else f"keyint={keyint}"
    else:
        args.extend([params_arg, f"keyint={keyint}"])
