"""Unit tests for crf search helpers."""

import unittest
from pathlib import Path
from unittest.mock import MagicMock

from ab_av1.core.errors import PreconditionError
from ab_av1.core.modules.analysis import ffprobe
from ab_av1.core.modules.encoder_config import EncodeArgs, Encoder
from ab_av1.core.modules.optimization import crf_search
from ab_av1.core.modules.optimization.crf_search import (
    CrfSearchArgs, NoGoodCrf, Sample, guess_progress, lerp_q, tolerance,
)
from ab_av1.core.modules.optimization.sample_encode import (
    SampleEncodeOutput, SampleProgress, ScoreKind,
)

PROBE = ffprobe.failed(Path("input.mkv"), "not probed in tests")


def make_sample(q, score, percent=50.0, crf_increment=1.0, kind=ScoreKind.VMAF):
    enc = SampleEncodeOutput(score=score, score_kind=kind, predicted_encode_size=1000,
                             encode_percent=percent, predicted_encode_time=1.0,
                             from_cache=False)
    return Sample(q=q, crf_increment=crf_increment, enc=enc)


class TestTolerance(unittest.TestCase):
    """Test the per-run tolerance schedule."""

    def test_doubles_each_run(self):
        self.assertAlmostEqual(tolerance(1), 0.2)
        self.assertAlmostEqual(tolerance(2), 0.4)
        self.assertAlmostEqual(tolerance(3), 0.8)
        self.assertAlmostEqual(tolerance(4), 1.6)

    def test_thorough_is_constant(self):
        for run in range(1, 8):
            self.assertEqual(tolerance(run, thorough=True), 0.05)


class TestGuessProgress(unittest.TestCase):
    """Test the search progress estimate."""

    def test_first_runs_use_virtual_total_of_four(self):
        self.assertAlmostEqual(guess_progress(1, 0.0), 0.0)
        self.assertAlmostEqual(guess_progress(1, 0.5), 0.125)
        self.assertAlmostEqual(guess_progress(4, 1.0), 1.0)

    def test_later_runs_use_run_as_total(self):
        self.assertAlmostEqual(guess_progress(5, 0.0), 0.8)
        self.assertAlmostEqual(guess_progress(6, 0.5), 5.5 / 6)

    def test_thorough_uses_virtual_total_of_six(self):
        self.assertAlmostEqual(guess_progress(5, 0.0, thorough=True), 4 / 6)
        self.assertAlmostEqual(guess_progress(7, 0.0, thorough=True), 6 / 7)


class TestLerp(unittest.TestCase):
    """Test interpolation between a worse (higher crf) and better sample."""

    def test_interpolates_towards_target(self):
        worse = make_sample(32, 94.0)
        better = make_sample(21, 99.5)
        self.assertEqual(lerp_q(worse, better, 95.0), 30)

    def test_clamped_strictly_inside_bracket(self):
        worse = make_sample(30, 95.0)
        better = make_sample(21, 99.5)
        # target equals the worse score, raw result would be 30
        self.assertEqual(lerp_q(worse, better, 95.0), 29)

        worse = make_sample(40, 80.0)
        better = make_sample(20, 95.01)
        self.assertEqual(lerp_q(worse, better, 95.0), 21)

    def test_always_strictly_between(self):
        for worse_q in range(12, 56):
            for better_q in range(10, worse_q - 1):
                for target in (90.0, 95.0, 97.5):
                    worse = make_sample(worse_q, 89.0)
                    better = make_sample(better_q, 99.0)
                    q = lerp_q(worse, better, target)
                    self.assertTrue(better_q < q < worse_q, (worse_q, better_q, target, q))


class TestCrfSearchRun(unittest.TestCase):
    """Test crf search argument handling."""

    def test_invalid_bounds_fail_before_encoding(self):
        encode = MagicMock()
        args = CrfSearchArgs(args=EncodeArgs(input=Path("input.mkv")), min_crf=40, max_crf=30)

        with self.assertRaises(PreconditionError):
            crf_search.run(args, PROBE, sample_encode_fn=encode)
        encode.assert_not_called()

    def test_codec_default_bounds(self):
        args = CrfSearchArgs(args=EncodeArgs(input=Path("input.mkv"), encoder=Encoder("libx265")))
        self.assertEqual(args.crf_bounds, (10.0, 46.0))

        args = CrfSearchArgs(args=EncodeArgs(input=Path("input.mkv")), min_crf=20)
        self.assertEqual(args.crf_bounds, (20, 55.0))

    def test_crf_increment_searches_fractional_crfs(self):
        crfs = []

        def encode(crf, on_progress):
            crfs.append(crf)
            return make_sample(0, 95.1).enc

        args = CrfSearchArgs(args=EncodeArgs(input=Path("input.mkv")), min_crf=10, max_crf=55,
                             crf_increment=0.5)
        best = crf_search.run(args, PROBE, sample_encode_fn=encode)

        self.assertEqual(crfs, [32.5])
        self.assertEqual(best.crf, 32.5)
        self.assertEqual(best.q, 65)

    def test_x265_searches_decimal_crfs_by_default(self):
        crfs = []

        def encode(crf, on_progress):
            crfs.append(crf)
            return make_sample(0, 110 - 0.5 * crf, percent=crf).enc

        args = CrfSearchArgs(args=EncodeArgs(input=Path("input.mkv"), encoder=Encoder("libx265")))
        self.assertEqual(args.increment, 0.1)
        best = crf_search.run(args, PROBE, sample_encode_fn=encode)

        self.assertEqual(crfs, [28.0, 37.0, 30.0, 29.9])
        self.assertEqual(best.crf, 29.9)
        self.assertEqual(best.q, 299)

    def test_default_increment_per_codec(self):
        self.assertEqual(Encoder("libx264").default_crf_increment(), 0.1)
        self.assertEqual(Encoder("libsvtav1").default_crf_increment(), 1.0)
        args = CrfSearchArgs(args=EncodeArgs(input=Path("input.mkv"), encoder=Encoder("libx265")),
                             crf_increment=1.0)
        self.assertEqual(args.increment, 1.0)

    def test_progress_is_mapped_onto_search(self):
        progress = []

        def encode(crf, on_progress):
            on_progress(SampleProgress(0.5, "Sample 1/3"))
            return make_sample(0, 95.1).enc

        args = CrfSearchArgs(args=EncodeArgs(input=Path("input.mkv")))
        crf_search.run(args, PROBE, sample_encode_fn=encode,
                       on_progress=lambda f, msg: progress.append((f, msg)))

        self.assertEqual(len(progress), 1)
        self.assertAlmostEqual(progress[0][0], 0.125)
        self.assertIn("crf 32", progress[0][1])


class TestNoGoodCrf(unittest.TestCase):
    """Test the failure message names the violated constraint."""

    def test_score_too_low(self):
        err = NoGoodCrf(make_sample(10, 92.0, 20.0), 95.0, 80.0)
        self.assertEqual(
            str(err),
            "Failed to find a suitable crf: score too low "
            "(target: VMAF >= 95, size <= 80%, best: crf 10, VMAF 92.00, size 20%)",
        )

    def test_encode_too_large(self):
        err = NoGoodCrf(make_sample(32, 96.0, 90.0), 95.0, 80.0)
        self.assertIn("encode too large", str(err))
        self.assertNotIn("score too low", str(err))

    def test_xpsnr_kind_in_message(self):
        err = NoGoodCrf(make_sample(32, 30.0, 90.0, kind=ScoreKind.XPSNR), 40.0, 80.0)
        self.assertIn("score too low and encode too large", str(err))
        self.assertIn("XPSNR >= 40", str(err))

    def test_carries_last_sample(self):
        last = make_sample(32, 96.0, 90.0)
        err = NoGoodCrf(last, 95.0, 80.0)
        self.assertIs(err.last, last)
        self.assertEqual(err.last.crf, 32)


if __name__ == '__main__':
    unittest.main()
