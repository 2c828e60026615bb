"""
Probe adapter: one ffprobe invocation per input.

Each field of ``Ffprobe`` is independently fallible. A field that could not
be determined holds a ``Probed`` with an error reason; the failure only
surfaces (as ``ProbeError``) when a caller reads that field with ``get()``.
"""

import json
import math
import subprocess
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Generic, Optional, Tuple, TypeVar

from ...errors import ProbeError
from ..encoder_config import PixelFormat
from ..system.process import run_logged

T = TypeVar("T")

IMAGE_EXTENSIONS = ("jpg", "png", "bmp", "avif")


@dataclass(frozen=True)
class Probed(Generic[T]):
    """A probe field: either a value or the reason it is unavailable."""
    value: Optional[T] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def get(self) -> T:
        """Return the value or raise ``ProbeError``."""
        if self.error is not None:
            raise ProbeError(self.error)
        return self.value  # type: ignore[return-value]

    def get_or(self, default: T) -> T:
        return self.value if self.error is None else default  # type: ignore[return-value]

    @classmethod
    def failed(cls, reason: str) -> "Probed[T]":
        return cls(error=reason)


@dataclass(frozen=True)
class Ffprobe:
    """Probe result for an input file."""
    duration: Probed[float]
    fps: Probed[float]
    resolution: Probed[Tuple[int, int]]
    pix_fmt: Probed[str]
    has_audio: bool = True
    max_audio_channels: Optional[int] = None
    has_image_extension: bool = False
    streams: Tuple[Dict[str, Any], ...] = field(default=(), repr=False)

    def is_probably_an_image(self) -> bool:
        return self.has_image_extension or (self.duration.ok and self.duration.value == 0)

    def pixel_format(self) -> Optional[PixelFormat]:
        """Input pixel format if it is one of the known formats."""
        if not self.pix_fmt.ok:
            return None
        return PixelFormat.parse(self.pix_fmt.value)


def parse_frame_rate(rate: Optional[str]) -> Optional[float]:
    """Parse "x/y" or decimal frame rates, rejecting non-positive/non-finite."""
    if not rate:
        return None
    try:
        if "/" in rate:
            x, y = rate.split("/", 1)
            num, den = float(x), float(y)
            if not (math.isfinite(num) and math.isfinite(den)) or num <= 0 or den <= 0:
                return None
            return num / den
        value = float(rate)
    except ValueError:
        return None
    if not math.isfinite(value) or value <= 0:
        return None
    return value


def has_image_extension(path: Path) -> bool:
    return path.suffix.lower().lstrip(".") in IMAGE_EXTENSIONS


def _read_duration(data: Dict[str, Any]) -> Probed[float]:
    duration = data.get("format", {}).get("duration")
    if duration is None:
        return Probed(0.0)
    try:
        return Probed(float(duration))
    except (TypeError, ValueError):
        return Probed.failed(f"invalid ffprobe video duration '{duration}'")


def _video_stream(data: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    for stream in data.get("streams", []):
        if stream.get("codec_type") == "video":
            return stream
    return None


def _read_fps(data: Dict[str, Any]) -> Probed[float]:
    vstream = _video_stream(data)
    if vstream is None:
        return Probed.failed("no video stream found")
    fps = parse_frame_rate(vstream.get("avg_frame_rate")) or parse_frame_rate(vstream.get("r_frame_rate"))
    if fps is None:
        return Probed.failed("invalid ffprobe video frame rate")
    return Probed(fps)


def _read_resolution(data: Dict[str, Any]) -> Probed[Tuple[int, int]]:
    for stream in data.get("streams", []):
        if stream.get("codec_type") != "video":
            continue
        width, height = stream.get("width"), stream.get("height")
        if isinstance(width, int) and isinstance(height, int) and width > 0 and height > 0:
            return Probed((width, height))
    return Probed.failed("no video resolution found")


def _read_pix_fmt(data: Dict[str, Any]) -> Probed[str]:
    vstream = _video_stream(data)
    if vstream is None or not vstream.get("pix_fmt"):
        return Probed.failed("no video pixel format found")
    return Probed(vstream["pix_fmt"])


def from_json(data: Dict[str, Any], input_path: Path) -> Ffprobe:
    """Build a probe record from ``ffprobe -print_format json`` output."""
    streams = data.get("streams", [])
    audio = [s for s in streams if s.get("codec_type") == "audio"]
    channels = [s["channels"] for s in audio if isinstance(s.get("channels"), int)]
    return Ffprobe(
        duration=_read_duration(data),
        fps=_read_fps(data),
        resolution=_read_resolution(data),
        pix_fmt=_read_pix_fmt(data),
        has_audio=bool(audio),
        max_audio_channels=max(channels) if channels else None,
        has_image_extension=has_image_extension(input_path),
        streams=tuple(streams),
    )


def failed(input_path: Path, reason: str) -> Ffprobe:
    """Probe record where every fallible field carries ``reason``."""
    return Ffprobe(
        duration=Probed.failed(reason),
        fps=Probed.failed(reason),
        resolution=Probed.failed(reason),
        pix_fmt=Probed.failed(reason),
        # assume audio so encodes keep mapping it
        has_audio=True,
        has_image_extension=has_image_extension(input_path),
    )


@lru_cache(maxsize=64)
def probe(input_path: Path) -> Ffprobe:
    """ffprobe the given input. Never raises; failures are recorded per field."""
    input_path = Path(input_path)
    cmd = [
        "ffprobe", "-v", "error",
        "-print_format", "json",
        "-show_format", "-show_streams",
        input_path,
    ]
    try:
        result = run_logged(cmd, capture_output=True, text=True)
    except OSError as e:
        return failed(input_path, f"ffprobe: {e}")
    if result.returncode != 0:
        last_line = (result.stderr or "").strip().splitlines()[-1:] or ["unknown error"]
        return failed(input_path, f"ffprobe: {last_line[0]}")
    try:
        data = json.loads(result.stdout or "{}")
    except json.JSONDecodeError as e:
        return failed(input_path, f"ffprobe: invalid json output: {e}")
    return from_json(data, input_path)
