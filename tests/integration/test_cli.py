"""
Integration tests for the ab-av1 command line.

Verbs are run through ``main()`` with the search pipeline patched so no
external tools are needed.
"""

import io
import json
import shutil
import tempfile
import unittest
from contextlib import redirect_stdout
from pathlib import Path
from unittest.mock import patch

from ab_av1.core import main as cli
from ab_av1.core.modules.analysis import ffprobe
from ab_av1.core.modules.optimization.crf_search import NoGoodCrf, Sample
from ab_av1.core.modules.optimization.sample_encode import SampleEncodeOutput, ScoreKind
from ab_av1.core.modules.system import interrupt, temporary


def make_sample(crf=32, score=95.3, percent=40.0):
    enc = SampleEncodeOutput(score=score, score_kind=ScoreKind.VMAF,
                             predicted_encode_size=50 * 1024 * 1024, encode_percent=percent,
                             predicted_encode_time=125.0, from_cache=False)
    return Sample(q=crf, crf_increment=1.0, enc=enc)


PROBE = ffprobe.from_json({"format": {"duration": "300"}, "streams": []}, Path("input.mkv"))


class TestParser(unittest.TestCase):
    """Test flag parsing and defaults."""

    def setUp(self):
        self.parser = cli.build_parser({"cache": True, "temp_dir": None,
                                        "log_level": "INFO", "debug": False})

    def test_crf_search_defaults(self):
        ns = self.parser.parse_args(["crf-search", "-i", "input.mkv"])
        args = cli.search_args_from(ns)

        self.assertEqual(args.min_score, 95.0)
        self.assertEqual(args.max_encoded_percent, 80.0)
        self.assertEqual(args.samples, 3)
        self.assertEqual(args.crf_bounds, (10.0, 55.0))
        self.assertEqual(args.score.kind, ScoreKind.VMAF)
        self.assertTrue(args.cache)
        self.assertEqual(args.args.encoder.name, "libsvtav1")
        self.assertEqual(args.increment, 1.0)

    def test_crf_search_flags(self):
        ns = self.parser.parse_args([
            "crf-search", "-i", "input.mkv", "-e", "x265", "--min-xpsnr", "40",
            "--max-encoded-percent", "60", "--min-crf", "15", "--max-crf", "40",
            "--keyint", "5s", "--scd", "true", "--pix-format", "yuv420p",
            "--svt", "tune=0", "--enc", "x265-params=aq-mode=2", "--vmaf", "n_threads=2",
            "--vmaf-scale", "1920x1080", "--cache", "false", "--thorough",
        ])
        args = cli.search_args_from(ns)

        self.assertEqual(args.args.encoder.name, "libx265")
        self.assertEqual(args.increment, 0.1)
        self.assertEqual(args.score.kind, ScoreKind.XPSNR)
        self.assertEqual(args.min_score, 40.0)
        self.assertEqual(args.crf_bounds, (15.0, 40.0))
        self.assertEqual(args.args.keyint.seconds, 5.0)
        self.assertTrue(args.args.scd)
        self.assertEqual(args.args.svt_args, ["tune=0"])
        self.assertEqual(args.score.vmaf.vmaf_args, ["n_threads=2"])
        self.assertEqual(str(args.score.vmaf.vmaf_scale), "1920x1080")
        self.assertFalse(args.cache)
        self.assertTrue(args.thorough)

    def test_min_vmaf_and_min_xpsnr_are_exclusive(self):
        with redirect_stderr_quiet():
            with self.assertRaises(SystemExit):
                self.parser.parse_args(["crf-search", "-i", "in.mkv", "--min-vmaf", "95",
                                        "--min-xpsnr", "40"])

    def test_invalid_bool_rejected(self):
        with redirect_stderr_quiet():
            with self.assertRaises(SystemExit):
                self.parser.parse_args(["crf-search", "-i", "in.mkv", "--cache", "maybe"])

    def test_bash_completions(self):
        script = cli.bash_completions(self.parser)
        self.assertIn("crf-search", script)
        self.assertIn("--min-vmaf", script)
        self.assertIn("complete -o default -F _ab_av1 ab-av1", script)

    def test_default_output(self):
        from ab_av1.core.modules.encoder_config import Encoder
        self.assertEqual(cli.default_output(Path("/v/movie.mp4"), Encoder("libsvtav1")),
                         Path("/v/movie.av1.mp4"))
        self.assertEqual(cli.default_output(Path("/v/movie.avi"), Encoder("libx265")),
                         Path("/v/movie.x265.mkv"))


def redirect_stderr_quiet():
    from contextlib import redirect_stderr
    return redirect_stderr(io.StringIO())


class TestMain(unittest.TestCase):
    """Test verbs end to end through main()."""

    def setUp(self):
        self.temp_dir = Path(tempfile.mkdtemp())
        self.input = self.temp_dir / "input.mkv"
        self.input.write_bytes(b"\0" * 1000)

    def tearDown(self):
        interrupt.reset_interrupt_manager()
        temporary.clean()
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def run_main(self, argv):
        out = io.StringIO()
        with redirect_stdout(out), redirect_stderr_quiet():
            code = cli.main(argv)
        return code, out.getvalue()

    @patch("ab_av1.core.main._probe_input", return_value=PROBE)
    @patch("ab_av1.core.modules.optimization.crf_search.run", return_value=make_sample())
    def test_crf_search_prints_result(self, _search, _probe):
        code, out = self.run_main(["crf-search", "-i", str(self.input)])

        self.assertEqual(code, 0)
        self.assertIn("crf 32 VMAF 95.30", out)
        self.assertIn("(40%)", out)

    @patch("ab_av1.core.main._probe_input", return_value=PROBE)
    @patch("ab_av1.core.modules.optimization.crf_search.run", return_value=make_sample())
    def test_crf_search_json_output(self, _search, _probe):
        code, out = self.run_main(["crf-search", "-i", str(self.input), "--stdout-format", "json"])

        self.assertEqual(code, 0)
        data = json.loads(out)
        self.assertEqual(data["crf"], 32)
        self.assertEqual(data["score_kind"], "VMAF")
        self.assertEqual(data["predicted_encode_percent"], 40.0)

    @patch("ab_av1.core.main._probe_input", return_value=PROBE)
    def test_no_good_crf_exits_with_error(self, _probe):
        err = NoGoodCrf(make_sample(score=90.0), 95.0, 80.0)
        with patch("ab_av1.core.modules.optimization.crf_search.run", side_effect=err):
            code, out = self.run_main(["crf-search", "-i", str(self.input)])

        self.assertEqual(code, 1)
        self.assertEqual(out, "")

    def test_missing_input_exits_with_error(self):
        code, _ = self.run_main(["crf-search", "-i", str(self.temp_dir / "missing.mkv")])
        self.assertEqual(code, 1)

    @patch("ab_av1.core.main._probe_input", return_value=PROBE)
    def test_interrupt_exits_130_and_cleans_up(self, _probe):
        leftover = self.temp_dir / "input.sample60+600f.mkv"
        leftover.write_bytes(b"data")

        def interrupted(*args, **kwargs):
            temporary.add(leftover)
            raise KeyboardInterrupt()

        with patch("ab_av1.core.modules.optimization.crf_search.run", side_effect=interrupted):
            code, _ = self.run_main(["crf-search", "-i", str(self.input)])

        self.assertEqual(code, 130)
        self.assertFalse(leftover.exists())

    @patch("ab_av1.core.main._probe_input", return_value=PROBE)
    def test_auto_encode_commits_output(self, _probe):
        output = self.temp_dir / "out.mkv"

        def fake_encode(args, out_path, has_audio, acodec=None, downmix=False):
            self.assertIn(Path(out_path), temporary.registered())
            Path(out_path).write_bytes(b"\0" * 400)
            return FakeStream()

        with patch("ab_av1.core.modules.optimization.crf_search.run", return_value=make_sample(crf=30)), \
             patch("ab_av1.core.modules.processing.ffmpeg.encode", side_effect=fake_encode) as encode:
            code, out = self.run_main(["auto-encode", "-i", str(self.input), "-o", str(output)])

        self.assertEqual(code, 0)
        self.assertEqual(encode.call_args[0][0].crf, 30)
        self.assertTrue(output.exists())
        self.assertEqual(out.strip(), str(output))

    @patch("ab_av1.core.main._probe_input", return_value=PROBE)
    def test_failed_encode_removes_output(self, _probe):
        from ab_av1.core.errors import ProcessError
        output = self.temp_dir / "out.mkv"

        def fake_encode(args, out_path, has_audio, acodec=None, downmix=False):
            Path(out_path).write_bytes(b"partial")
            raise ProcessError("ffmpeg encode", 1, "ffmpeg ...", "error")

        with patch("ab_av1.core.modules.processing.ffmpeg.encode", side_effect=fake_encode):
            code, _ = self.run_main(["encode", "-i", str(self.input), "--crf", "30",
                                     "-o", str(output)])

        self.assertEqual(code, 1)
        self.assertFalse(output.exists())


class FakeStream:
    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def __iter__(self):
        return iter(())


if __name__ == '__main__':
    unittest.main()
