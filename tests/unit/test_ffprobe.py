"""Unit tests for the probe adapter."""

import subprocess
import unittest
from pathlib import Path
from unittest.mock import patch

from ab_av1.core.errors import ProbeError
from ab_av1.core.modules.analysis import ffprobe
from ab_av1.core.modules.encoder_config import PixelFormat

FFPROBE_JSON = """{
    "streams": [
        {"codec_type": "video", "width": 1920, "height": 1080, "pix_fmt": "yuv420p10le",
         "avg_frame_rate": "24000/1001", "r_frame_rate": "24000/1001"},
        {"codec_type": "audio", "channels": 6},
        {"codec_type": "audio", "channels": 2}
    ],
    "format": {"duration": "1325.44"}
}"""


class TestFfprobe(unittest.TestCase):
    """Test probe parsing and per-field failures."""

    def setUp(self):
        ffprobe.probe.cache_clear()

    def test_parse_frame_rate(self):
        self.assertAlmostEqual(ffprobe.parse_frame_rate("30000/1001"), 29.97, places=2)
        self.assertEqual(ffprobe.parse_frame_rate("25"), 25.0)
        self.assertIsNone(ffprobe.parse_frame_rate("0/0"))
        self.assertIsNone(ffprobe.parse_frame_rate("abc"))
        self.assertIsNone(ffprobe.parse_frame_rate(None))

    def test_probe_parses_json(self):
        result = subprocess.CompletedProcess([], 0, stdout=FFPROBE_JSON, stderr="")
        with patch("ab_av1.core.modules.analysis.ffprobe.run_logged", return_value=result):
            probe = ffprobe.probe(Path("movie.mkv"))

        self.assertAlmostEqual(probe.duration.get(), 1325.44)
        self.assertAlmostEqual(probe.fps.get(), 24000 / 1001)
        self.assertEqual(probe.resolution.get(), (1920, 1080))
        self.assertEqual(probe.pixel_format(), PixelFormat.YUV420P10LE)
        self.assertTrue(probe.has_audio)
        self.assertEqual(probe.max_audio_channels, 6)
        self.assertFalse(probe.is_probably_an_image())

    def test_fields_fail_independently(self):
        data = {"format": {"duration": "60"},
                "streams": [{"codec_type": "video", "avg_frame_rate": "0/0", "width": 640, "height": 480}]}
        probe = ffprobe.from_json(data, Path("clip.mkv"))

        self.assertEqual(probe.duration.get(), 60.0)
        self.assertEqual(probe.resolution.get(), (640, 480))
        self.assertFalse(probe.fps.ok)
        with self.assertRaises(ProbeError):
            probe.fps.get()
        self.assertIsNone(probe.pixel_format())
        self.assertFalse(probe.has_audio)

    def test_failed_ffprobe_never_raises(self):
        result = subprocess.CompletedProcess([], 1, stdout="", stderr="movie.mkv: Invalid data found\n")
        with patch("ab_av1.core.modules.analysis.ffprobe.run_logged", return_value=result):
            probe = ffprobe.probe(Path("movie.mkv"))

        self.assertFalse(probe.duration.ok)
        self.assertIn("Invalid data found", probe.duration.error)
        self.assertTrue(probe.has_audio)

    def test_missing_ffprobe_binary(self):
        with patch("ab_av1.core.modules.analysis.ffprobe.run_logged", side_effect=FileNotFoundError("ffprobe")):
            probe = ffprobe.probe(Path("movie.mkv"))
        self.assertFalse(probe.fps.ok)

    def test_image_detection(self):
        probe = ffprobe.from_json({"format": {}, "streams": []}, Path("poster.png"))
        self.assertTrue(probe.is_probably_an_image())


if __name__ == '__main__':
    unittest.main()
