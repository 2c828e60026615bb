"""
CRF search.

Interpolated bracketed search for the highest CRF (smallest encode) whose
sample-encode score still exceeds the target, while the predicted encoded
size stays under the maximum percentage of the input.

The search runs on integer steps ``q`` where ``crf = q * crf_increment``;
the default increment is 1 (plain integer CRFs), or 0.1 for x264/x265.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Optional

from ...errors import AbAv1Error, PreconditionError
from ..analysis.ffprobe import Ffprobe
from ..encoder_config import EncodeArgs
from ..system.interrupt import check_cancelled
from ....utils.formatting import round_half_away, terse_float
from ....utils.logging import get_logger
from . import sample_encode
from .cache import SampleEncodeCache
from .sample_encode import (
    SampleEncodeArgs, SampleEncodeOutput, SampleProgress, ScoreArgs,
)

logger = get_logger("crf_search")

THOROUGH_TOLERANCE = 0.05


@dataclass
class CrfSearchArgs:
    args: EncodeArgs
    min_score: float = 95.0
    max_encoded_percent: float = 80.0
    min_crf: Optional[float] = None
    max_crf: Optional[float] = None
    crf_increment: Optional[float] = None
    thorough: bool = False
    samples: int = 3
    temp_dir: Optional[Path] = None
    extension: str = "mkv"
    keep: bool = False
    cache: bool = True
    score: ScoreArgs = field(default_factory=ScoreArgs)

    @property
    def crf_bounds(self):
        encoder = self.args.encoder
        min_crf = self.min_crf if self.min_crf is not None else encoder.default_min_crf()
        max_crf = self.max_crf if self.max_crf is not None else encoder.default_max_crf()
        return min_crf, max_crf

    @property
    def increment(self) -> float:
        if self.crf_increment is not None:
            return self.crf_increment
        return self.args.encoder.default_crf_increment()


@dataclass
class Sample:
    """A search sample record: q step and its sample-encode output."""
    q: int
    crf_increment: float
    enc: SampleEncodeOutput

    @property
    def crf(self) -> float:
        return q_to_crf(self.q, self.crf_increment)


class NoGoodCrf(AbAv1Error):
    """No CRF satisfies both the score and size constraints."""

    def __init__(self, last: Sample, min_score: float, max_encoded_percent: float):
        self.last = last
        self.min_score = min_score
        self.max_encoded_percent = max_encoded_percent
        enc = last.enc
        too_low = enc.score <= min_score
        too_large = enc.encode_percent > max_encoded_percent
        if too_low and too_large:
            reason = "score too low and encode too large"
        elif too_low:
            reason = "score too low"
        elif too_large:
            reason = "encode too large"
        else:
            reason = "unknown"
        kind = enc.score_kind
        super().__init__(
            f"Failed to find a suitable crf: {reason} "
            f"(target: {kind} >= {terse_float(min_score)}, "
            f"size <= {terse_float(max_encoded_percent)}%, "
            f"best: crf {terse_float(last.crf)}, {kind} {enc.score:.2f}, "
            f"size {enc.encode_percent:.0f}%)"
        )


SampleEncodeFn = Callable[[float, Callable[[SampleProgress], None]], SampleEncodeOutput]
ProgressCallback = Callable[[float, str], None]


def q_from_crf(crf: float, crf_increment: float) -> int:
    return round_half_away(crf / crf_increment)


def q_to_crf(q: int, crf_increment: float) -> float:
    crf = q * crf_increment
    # avoid float noise like 32.300000000000004
    return round(crf, 4)


def tolerance(run: int, thorough: bool = False) -> float:
    """Acceptable overshoot above the target score for iteration ``run``."""
    if thorough:
        return THOROUGH_TOLERANCE
    return (2 ** run) * 0.1


def guess_progress(run: int, sample_progress: float, thorough: bool = False) -> float:
    """Fraction of the whole search done, guessing it takes 4 (thorough 6) runs."""
    virtual_total = 6 if thorough else 4
    total = virtual_total if run < virtual_total + 1 else run
    return ((run - 1) + sample_progress) / total


def lerp_q(worse: Sample, better: Sample, min_score: float) -> int:
    """Interpolate the q step where the score crosses ``min_score``.

    ``worse`` has the higher q and the lower score. The result is strictly
    between the two so the bracket always shrinks.
    """
    score_span = better.enc.score - worse.enc.score
    if score_span > 0:
        factor = (min_score - worse.enc.score) / score_span
        raw = round_half_away(worse.q - (worse.q - better.q) * factor)
    else:
        raw = (worse.q + better.q) // 2
    return max(better.q + 1, min(raw, worse.q - 1))


def _default_sample_encode(args: CrfSearchArgs, probe: Ffprobe) -> SampleEncodeFn:
    cache = SampleEncodeCache(enabled=args.cache)

    def encode(crf: float, on_progress: Callable[[SampleProgress], None]) -> SampleEncodeOutput:
        sample_args = SampleEncodeArgs(
            args=args.args,
            crf=crf,
            samples=args.samples,
            temp_dir=args.temp_dir,
            extension=args.extension,
            keep=args.keep,
            cache=args.cache,
            score=args.score,
        )
        return sample_encode.run(sample_args, probe, on_progress, cache=cache)

    return encode


def run(args: CrfSearchArgs, probe: Ffprobe,
        sample_encode_fn: Optional[SampleEncodeFn] = None,
        on_progress: Optional[ProgressCallback] = None) -> Sample:
    """Search for the best CRF, raising ``NoGoodCrf`` if none qualifies."""
    min_crf, max_crf = args.crf_bounds
    increment = args.increment
    if increment <= 0:
        raise PreconditionError("crf increment must be positive")
    min_q = q_from_crf(min_crf, increment)
    max_q = q_from_crf(max_crf, increment)
    if min_q > max_q:
        raise PreconditionError(
            f"Invalid crf bounds: min {terse_float(min_crf)} > max {terse_float(max_crf)}")

    if sample_encode_fn is None:
        # surface reserved argument errors before anything is spawned
        args.args.to_encoder_args(q_to_crf(max_q, increment), probe)
        sample_encode_fn = _default_sample_encode(args, probe)

    min_score = args.min_score
    max_pct = args.max_encoded_percent
    kind = args.score.kind

    q = (min_q + max_q) // 2
    run_n = 1
    samples: List[Sample] = []

    while True:
        check_cancelled()
        crf = q_to_crf(q, increment)

        def sample_progress(p: SampleProgress, run_n=run_n, crf=crf):
            if on_progress is not None:
                on_progress(guess_progress(run_n, p.fraction, args.thorough),
                            f"crf {terse_float(crf)} {p.message}")

        enc = sample_encode_fn(crf, sample_progress)
        sample = Sample(q=q, crf_increment=increment, enc=enc)
        samples.append(sample)
        logger.crf_search(f"- crf {terse_float(crf)} {kind} {enc.score:.2f} "
                          f"({enc.encode_percent:.0f}%){' (cache)' if enc.from_cache else ''}")

        upper = min((s for s in samples if s.q > q), key=lambda s: s.q, default=None)
        lower = max((s for s in samples if s.q < q), key=lambda s: s.q, default=None)
        tol = tolerance(run_n, args.thorough)

        if enc.score > min_score:
            if enc.encode_percent < max_pct and enc.score < min_score + tol:
                return sample
            if upper is not None and upper.q == q + 1:
                return sample
            if upper is not None:
                q = lerp_q(upper, sample, min_score)
            elif q == max_q:
                return sample
            elif run_n == 1 and q + 1 < max_q:
                q = (q + max_q) // 2
            else:
                q = max_q
        else:
            if enc.encode_percent > max_pct or q == min_q:
                raise NoGoodCrf(sample, min_score, max_pct)
            if lower is not None and lower.q == q - 1:
                return lower
            if lower is not None:
                q = lerp_q(sample, lower, min_score)
            elif run_n == 1 and q > min_q + 1:
                q = (min_q + q) // 2
            else:
                q = min_q

        run_n += 1

