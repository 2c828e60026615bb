"""
Sample-encode pipeline.

Encodes and scores a few short samples of the input at a given CRF to
predict how a full encode would go, much quicker than a full encode and
score. For each sample: consult the cache, else cut -> encode -> score and
store the result. Aggregates mean score, encoded size percentage and
predicted full encode size/time.
"""

import math
import os
import time
from dataclasses import asdict, dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from ...errors import AbAv1Error
from ..analysis import ffprobe, vmaf, xpsnr
from ..analysis.ffprobe import Ffprobe
from ..analysis.vmaf import VmafArgs
from ..encoder_config import EncodeArgs, FfmpegEncodeArgs, PixelFormat
from ..processing import ffmpeg, sample as sample_cutter
from ..processing.sample import SAMPLE_SIZE_S
from ..system import temporary
from ..system.interrupt import check_cancelled
from ..system.process import Progress
from ....utils.formatting import round_half_away
from ....utils.logging import get_logger
from .cache import SampleEncodeCache, cache_key

logger = get_logger("sample_encode")

# encode the whole input once samples would cover this much of it
FULL_PASS_THRESHOLD = 0.85
MIN_SAMPLE_SIZE = 1024


class ScoreKind(Enum):
    VMAF = "VMAF"
    XPSNR = "XPSNR"

    def __str__(self) -> str:
        return self.value


@dataclass
class ScoreArgs:
    """How encoded samples are scored."""
    kind: ScoreKind = ScoreKind.VMAF
    vmaf: VmafArgs = field(default_factory=VmafArgs)

    def fingerprint(self) -> bytes:
        if self.kind == ScoreKind.XPSNR:
            return f"xpsnr;{self.vmaf.vmaf_scale}".encode("utf-8")
        return f"vmaf;{':'.join(self.vmaf.vmaf_args)};{self.vmaf.vmaf_scale}".encode("utf-8")


@dataclass
class SampleEncodeArgs:
    args: EncodeArgs
    crf: float
    samples: int = 3
    temp_dir: Optional[Path] = None
    # sample encode output extension
    extension: str = "mkv"
    keep: bool = False
    cache: bool = True
    score: ScoreArgs = field(default_factory=ScoreArgs)


@dataclass
class EncodeResult:
    """Result of encoding and scoring one sample."""
    score: float
    sample_size: int
    encoded_size: int
    encode_time: float
    # close to the 20s sample length but may deviate due to how samples are cut
    sample_duration: float
    from_cache: bool = False

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data.pop("from_cache")
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any], from_cache: bool = True) -> "EncodeResult":
        return cls(
            score=float(data["score"]),
            sample_size=int(data["sample_size"]),
            encoded_size=int(data["encoded_size"]),
            encode_time=float(data["encode_time"]),
            sample_duration=float(data["sample_duration"]),
            from_cache=from_cache,
        )


@dataclass
class SampleEncodeOutput:
    score: float
    score_kind: ScoreKind
    predicted_encode_size: int
    encode_percent: float
    predicted_encode_time: float
    from_cache: bool
    results: List[EncodeResult] = field(default_factory=list, repr=False)


@dataclass(frozen=True)
class SampleProgress:
    """Pipeline progress for a progress sink."""
    fraction: float
    message: str


ProgressCallback = Callable[[SampleProgress], None]


def sample_count(duration: float, samples: int) -> int:
    """Samples to take: at most one per 20s of input, at least 1."""
    return max(1, min(samples, int(duration // SAMPLE_SIZE_S)))


def sample_start(sample_idx: int, samples: int, duration: float) -> int:
    """Start second of the ``sample_idx`` (0-based) evenly spaced sample."""
    gap = max(0, int(duration) - SAMPLE_SIZE_S * samples) // (samples + 1)
    return gap * (sample_idx + 1) + SAMPLE_SIZE_S * sample_idx


def mean_score(results: List[EncodeResult]) -> float:
    if not results:
        return 0.0
    return sum(r.score for r in results) / len(results)


def encoded_percent_size(results: List[EncodeResult]) -> float:
    if not results:
        return 100.0
    encoded = sum(r.encoded_size for r in results)
    sample = sum(r.sample_size for r in results)
    return encoded * 100.0 / sample


def estimate_encode_time(results: List[EncodeResult], input_duration: float,
                         samples: int, full_pass: bool) -> float:
    """Extrapolate the full encode time, floored to whole seconds when >= 1s."""
    if not results:
        return 0.0
    if full_pass:
        return results[0].encode_time
    total = sum(r.encode_time for r in results)
    estimate = total * input_duration / (SAMPLE_SIZE_S * samples)
    return float(math.floor(estimate)) if estimate >= 1 else estimate


def estimate_encode_size(results: List[EncodeResult], input_duration: float,
                         input_size: int, full_pass: bool) -> int:
    """Smaller of the duration based and file percent based size estimates."""
    if not results:
        return 0
    if full_pass:
        return results[0].encoded_size
    sample_duration = sum(r.sample_duration for r in results)
    encoded = sum(r.encoded_size for r in results)
    by_duration = round_half_away(encoded * input_duration / sample_duration) if sample_duration else encoded
    by_percent = round_half_away(input_size * encoded_percent_size(results) / 100.0)
    return min(by_duration, by_percent)


class _Progress:
    """Maps encode/score progress of each sample onto [0, 1]."""

    def __init__(self, callback: Optional[ProgressCallback], samples: int, sample_duration: float):
        self.callback = callback
        self.samples = samples
        self.sample_duration = max(sample_duration, 1.0)

    def update(self, sample_idx: int, stage: int, time_s: float, message: str):
        if self.callback is None:
            return
        per_sample = self.sample_duration * 2
        position = sample_idx * per_sample + stage * self.sample_duration + min(time_s, self.sample_duration)
        self.callback(SampleProgress(min(1.0, position / (per_sample * self.samples)), message))


def _score_sample(args: SampleEncodeArgs, enc_args: FfmpegEncodeArgs, reference: Path,
                  distorted: Path, input_pix_fmt: Optional[PixelFormat],
                  on_progress: Callable[[Progress], None]) -> float:
    encoded_probe = ffprobe.probe(distorted)
    distorted_res = encoded_probe.resolution.get_or(None)
    pix_fmt = max(enc_args.pix_fmt or PixelFormat.YUV420P,
                  input_pix_fmt or PixelFormat.YUV444P10LE)
    score = args.score
    if score.kind == ScoreKind.XPSNR:
        custom = score.vmaf.vmaf_scale
        scale = (custom.width, custom.height) if custom.mode == "custom" else None
        lavfi = xpsnr.ffmpeg_lavfi(pix_fmt, enc_args.vfilter, scale, distorted_res)
        return xpsnr.run(reference, distorted, lavfi, on_progress)
    lavfi = score.vmaf.ffmpeg_lavfi(distorted_res, pix_fmt, enc_args.vfilter)
    return vmaf.run(reference, distorted, lavfi, on_progress)


def run(args: SampleEncodeArgs, probe: Ffprobe,
        on_progress: Optional[ProgressCallback] = None,
        cache: Optional[SampleEncodeCache] = None) -> SampleEncodeOutput:
    """Encode and score samples of ``args.args.input`` at ``args.crf``."""
    input_path = Path(args.args.input)
    input_size = os.path.getsize(input_path)
    # samples go next to the input unless --temp-dir is set
    temp_dir = args.temp_dir if args.temp_dir is not None else input_path.parent
    enc_args = args.args.to_encoder_args(args.crf, probe)
    duration = probe.duration.get()
    input_pix_fmt = probe.pixel_format()
    if cache is None:
        cache = SampleEncodeCache(enabled=args.cache)

    if probe.is_probably_an_image():
        samples, sample_duration, full_pass = 1, max(duration, 1.0), True
    else:
        samples = sample_count(duration, args.samples)
        if SAMPLE_SIZE_S * samples >= duration * FULL_PASS_THRESHOLD:
            # samples would cover most of the input, just encode the whole thing
            samples, sample_duration, full_pass = 1, duration, True
        else:
            sample_duration, full_pass = float(SAMPLE_SIZE_S), False

    frames = 0 if full_pass else round_half_away(SAMPLE_SIZE_S * probe.fps.get())
    progress = _Progress(on_progress, samples, sample_duration)
    enc_fingerprint = enc_args.fingerprint()
    score_fingerprint = args.score.fingerprint()
    input_ext = input_path.suffix.lstrip(".") or None

    results: List[EncodeResult] = []
    for sample_idx in range(samples):
        check_cancelled()
        label = "Full pass" if full_pass else f"Sample {sample_idx + 1}/{samples}"

        if full_pass:
            start_s = 0
            name = input_path.name
        else:
            start_s = sample_start(sample_idx, samples, duration)
            name = sample_cutter.sample_name(input_path, start_s, frames)

        key = cache_key(name, duration, input_ext, input_size, full_pass,
                        enc_fingerprint, score_fingerprint)
        cached = cache.get(key)
        if cached is not None:
            try:
                result = EncodeResult.from_dict(cached, from_cache=True)
            except (KeyError, TypeError, ValueError) as e:
                logger.warn(f"ignoring invalid sample-encode cache entry: {e}")
            else:
                progress.update(sample_idx, 1, sample_duration, f"{label} (cache)")
                logger.sample(f"- {label} ({100.0 * result.encoded_size / result.sample_size:.0f}%) "
                              f"{args.score.kind} {result.score:.2f} (cache)")
                results.append(result)
                continue

        if full_pass:
            sample_path, sample_size = input_path, input_size
        else:
            progress.update(sample_idx, 0, 0, f"{label} sampling")
            sample_path = sample_cutter.copy(input_path, start_s, frames, temp_dir)
            sample_size = os.path.getsize(sample_path)
            if sample_size <= MIN_SAMPLE_SIZE:
                # ffmpeg copy can "succeed" with an empty output
                raise AbAv1Error(f"ffmpeg copy failed: sample too small ({sample_size} bytes)")

        check_cancelled()
        started = time.monotonic()
        encoded_sample, stream = ffmpeg.encode_sample(enc_args.with_input(sample_path),
                                                      temp_dir, args.extension)
        with stream:
            for out in stream:
                if isinstance(out, Progress):
                    progress.update(sample_idx, 0, out.time, f"{label} enc {out.fps:g} fps")
        encode_time = time.monotonic() - started
        encoded_size = os.path.getsize(encoded_sample)

        check_cancelled()
        score = _score_sample(
            args, enc_args, sample_path, encoded_sample, input_pix_fmt,
            lambda p: progress.update(sample_idx, 1, p.time, f"{label} {args.score.kind} {p.fps:g} fps"),
        )
        encoded_duration = ffprobe.probe(encoded_sample).duration.get_or(0.0)

        result = EncodeResult(
            score=score,
            sample_size=sample_size,
            encoded_size=encoded_size,
            encode_time=encode_time,
            sample_duration=encoded_duration or sample_duration,
        )
        logger.sample(f"- {label} ({100.0 * encoded_size / sample_size:.0f}%) "
                      f"{args.score.kind} {score:.2f}")
        cache.put(key, result.to_dict())

        # early clean, copy samples are keepable and stay
        temporary.clean(keep_keepables=True)
        if not args.keep:
            temporary.unadd(encoded_sample)
            try:
                os.remove(encoded_sample)
            except FileNotFoundError:
                pass
        results.append(result)

    return SampleEncodeOutput(
        score=mean_score(results),
        score_kind=args.score.kind,
        predicted_encode_size=estimate_encode_size(results, duration, input_size, full_pass),
        encode_percent=encoded_percent_size(results),
        predicted_encode_time=estimate_encode_time(results, duration, samples, full_pass),
        from_cache=all(r.from_cache for r in results),
        results=results,
    )
