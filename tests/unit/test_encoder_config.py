"""Unit tests for encoder configuration and the keyframe interval policy."""

import unittest
from pathlib import Path

from ab_av1.core.errors import PreconditionError
from ab_av1.core.modules.analysis import ffprobe
from ab_av1.core.modules.encoder_config import (
    EncodeArgs, Encoder, KeyInterval, PixelFormat, parse_duration, try_parse_fps_vfilter,
)


def probe_for(duration, fps="30/1", width=1920, height=1080, pix_fmt="yuv420p"):
    data = {
        "format": {"duration": str(duration)},
        "streams": [{
            "codec_type": "video",
            "avg_frame_rate": fps,
            "r_frame_rate": fps,
            "width": width,
            "height": height,
            "pix_fmt": pix_fmt,
        }],
    }
    return ffprobe.from_json(data, Path("input.mkv"))


class TestKeyintPolicy(unittest.TestCase):
    """Test keyframe interval and scene change defaults."""

    def test_defaulted_keyint_uses_vfilter_fps(self):
        """300s input at 30fps with fps=film filter -> keyint 240, scd on."""
        args = EncodeArgs(input=Path("input.mkv"), vfilter="scale=320:-1,fps=film")
        enc = args.to_encoder_args(32, probe_for(300))

        self.assertEqual(enc.keyint, 240)
        self.assertTrue(enc.scd)
        self.assertIn("-svtav1-params", enc.output_args)
        params = enc.output_args[enc.output_args.index("-svtav1-params") + 1]
        self.assertEqual(params, "scd=1")
        self.assertEqual(enc.output_args[enc.output_args.index("-g") + 1], "240")

    def test_defaulted_keyint_uses_probed_fps(self):
        enc = EncodeArgs(input=Path("input.mkv")).to_encoder_args(32, probe_for(300))
        self.assertEqual(enc.keyint, 300)

    def test_short_input_has_no_keyint_and_scd_off(self):
        """Under 3 minutes no keyint is set and scd stays off."""
        enc = EncodeArgs(input=Path("input.mkv")).to_encoder_args(32, probe_for(179))

        self.assertIsNone(enc.keyint)
        self.assertFalse(enc.scd)
        self.assertNotIn("-g", enc.output_args)
        self.assertIn("scd=0", enc.output_args)

    def test_user_keyint_duration_is_not_defaulted(self):
        args = EncodeArgs(input=Path("input.mkv"), keyint=KeyInterval.parse("5s"))
        enc = args.to_encoder_args(32, probe_for(100))

        self.assertEqual(enc.keyint, 150)
        self.assertFalse(enc.scd)

    def test_explicit_scd_overrides_default(self):
        args = EncodeArgs(input=Path("input.mkv"), scd=False)
        enc = args.to_encoder_args(32, probe_for(600))

        self.assertEqual(enc.keyint, 300)
        self.assertFalse(enc.scd)
        self.assertIn("scd=0", enc.output_args)

    def test_unknown_fps_degrades_to_no_keyint(self):
        probe = ffprobe.from_json({"format": {"duration": "600"}, "streams": []}, Path("input.mkv"))
        enc = EncodeArgs(input=Path("input.mkv")).to_encoder_args(32, probe)
        self.assertIsNone(enc.keyint)

    def test_x265_keyint_goes_into_params(self):
        args = EncodeArgs(input=Path("input.mkv"), encoder=Encoder("libx265"))
        enc = args.to_encoder_args(28, probe_for(300, fps="24/1"))

        self.assertIn("-x265-params", enc.output_args)
        self.assertEqual(enc.output_args[enc.output_args.index("-x265-params") + 1], "keyint=240")
        self.assertNotIn("-g", enc.output_args)

    def test_x264_keyint_appended_to_existing_params(self):
        args = EncodeArgs(input=Path("input.mkv"), encoder=Encoder("libx264"),
                          enc_args=["x264-params=aq-mode=2"])
        enc = args.to_encoder_args(28, probe_for(300))
        self.assertEqual(enc.output_args[enc.output_args.index("-x264-params") + 1],
                         "aq-mode=2:keyint=300")


class TestEncoderArgs(unittest.TestCase):
    """Test reserved argument checks and codec defaults."""

    def test_reserved_args_are_rejected_with_hint(self):
        args = EncodeArgs(input=Path("input.mkv"), enc_args=["c:v=libx264"])
        with self.assertRaises(PreconditionError) as ctx:
            args.to_encoder_args(32, probe_for(60))
        self.assertEqual(str(ctx.exception), "Encoder argument `-c:v` not allowed, use --encoder instead")

    def test_reserved_input_args_are_rejected(self):
        args = EncodeArgs(input=Path("input.mkv"), enc_input_args=["i=other.mkv"])
        with self.assertRaises(PreconditionError):
            args.to_encoder_args(32, probe_for(60))

    def test_svt_denied_args(self):
        for arg in ("crf=20", "preset=4", "keyint=100", "scd=0", "input-depth=10"):
            with self.subTest(arg=arg):
                args = EncodeArgs(input=Path("input.mkv"), svt_args=[arg])
                with self.assertRaises(PreconditionError):
                    args.to_encoder_args(32, probe_for(60))

    def test_svtav1_params_via_enc_is_rejected(self):
        args = EncodeArgs(input=Path("input.mkv"), enc_args=["svtav1-params=tune=0"])
        with self.assertRaises(PreconditionError) as ctx:
            args.to_encoder_args(32, probe_for(60))
        self.assertIn("--svt", str(ctx.exception))

    def test_svt_args_are_joined_into_params(self):
        args = EncodeArgs(input=Path("input.mkv"), svt_args=["film-grain=8", "tune=0"])
        enc = args.to_encoder_args(32, probe_for(60))
        self.assertIn("scd=0:film-grain=8:tune=0", enc.output_args)

    def test_svt_args_rejected_for_other_codecs(self):
        args = EncodeArgs(input=Path("input.mkv"), encoder=Encoder("libx264"), svt_args=["tune=0"])
        with self.assertRaises(PreconditionError):
            args.to_encoder_args(32, probe_for(60))

    def test_codec_defaults(self):
        enc = EncodeArgs(input=Path("input.mkv")).to_encoder_args(32, probe_for(60))
        self.assertEqual(enc.preset, "8")
        self.assertEqual(enc.pix_fmt, PixelFormat.YUV420P10LE)

        aom = EncodeArgs(input=Path("input.mkv"), encoder=Encoder("libaom-av1"))
        enc = aom.to_encoder_args(32, probe_for(60))
        self.assertEqual(enc.output_args[-2:], ["-b:v", "0"])
        self.assertIsNone(enc.preset)

    def test_encoder_aliases_and_arg_names(self):
        self.assertEqual(Encoder("svt-av1").name, "libsvtav1")
        self.assertEqual(Encoder("x265").name, "libx265")
        self.assertEqual(Encoder("libaom-av1").preset_arg, "-cpu-used")
        self.assertEqual(Encoder("librav1e").crf_arg, "-qp")
        self.assertEqual(Encoder("hevc_nvenc").crf_arg, "-cq")
        self.assertEqual(Encoder("hevc_qsv").crf_arg, "-global_quality")
        self.assertEqual(Encoder("mpeg2video").default_min_crf(), 2.0)

    def test_fingerprint_is_stable_and_semantic(self):
        args = EncodeArgs(input=Path("input.mkv"))
        a = args.to_encoder_args(32, probe_for(60))
        b = args.to_encoder_args(32, probe_for(60)).with_input(Path("sample.mkv"))
        c = args.to_encoder_args(33, probe_for(60))

        self.assertEqual(a.fingerprint(), b.fingerprint())
        self.assertNotEqual(a.fingerprint(), c.fingerprint())

    def test_encode_hint(self):
        args = EncodeArgs(input=Path("my video.mkv"), encoder=Encoder("libx265"), preset="slow")
        self.assertEqual(args.encode_hint(24.5),
                         "ab-av1 encode -e libx265 -i 'my video.mkv' --crf 24.5 --preset slow")


class TestParsing(unittest.TestCase):
    """Test duration, fps filter and pixel format parsing."""

    def test_parse_duration(self):
        self.assertEqual(parse_duration("10s"), 10.0)
        self.assertEqual(parse_duration("1m30s"), 90.0)
        self.assertEqual(parse_duration("2h"), 7200.0)
        with self.assertRaises(ValueError):
            parse_duration("ten seconds")

    def test_key_interval_parse(self):
        self.assertEqual(KeyInterval.parse("240").keyint_number(None), 240)
        self.assertEqual(KeyInterval.parse("10s").keyint_number(23.976), 240)
        self.assertEqual(str(KeyInterval.parse("10s")), "10s")

    def test_fps_vfilter(self):
        self.assertEqual(try_parse_fps_vfilter("scale=320:-1,fps=film"), 24.0)
        self.assertEqual(try_parse_fps_vfilter("fps=30000/1001"), 30000 / 1001)
        self.assertIsNone(try_parse_fps_vfilter("scale=320:-1"))
        self.assertIsNone(try_parse_fps_vfilter(None))

    def test_pixel_format_ordering(self):
        self.assertEqual(max(PixelFormat.YUV420P, PixelFormat.YUV420P10LE), PixelFormat.YUV420P10LE)
        self.assertTrue(PixelFormat.YUV444P10LE > PixelFormat.YUV444P)
        self.assertIsNone(PixelFormat.parse("nv12"))


if __name__ == '__main__':
    unittest.main()
