"""
Test package for ab_av1.

Unit, regression and integration tests. External tools (ffmpeg, ffprobe,
SvtAv1EncApp) are patched at the adapter seams so the suite runs without them.
"""
