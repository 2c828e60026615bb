"""
Encoder adapter: ffmpeg sample encodes and full encodes.
"""

from dataclasses import replace
from pathlib import Path
from typing import List, Optional, Tuple

from ...errors import ProcessError
from ..encoder_config import FfmpegEncodeArgs
from ..system import temporary
from ..system.process import ProcessStream, cmd_str
from ..system.temporary import TempKind
from ....utils.formatting import terse_float
from ....utils.logging import get_logger

logger = get_logger("ffmpeg")


def pre_extension_name(vcodec: str) -> str:
    """Short codec name used in output file names, e.g. libsvtav1 -> av1."""
    suffix = vcodec[3:] if vcodec.startswith("lib") else ""
    if not suffix:
        return vcodec
    if suffix == "svtav1":
        return "av1"
    if suffix == "vpx-vp9":
        return "vp9"
    return suffix


def sample_encode_dest(args: FfmpegEncodeArgs, temp_dir: Optional[Path], dest_ext: str) -> Path:
    pre = pre_extension_name(args.vcodec)
    crf_str = terse_float(args.crf).replace(".", "_")
    stem = Path(args.input).stem
    if args.preset is not None:
        name = f"{stem}.{pre}.crf{crf_str}.{args.preset}.{dest_ext}"
    else:
        name = f"{stem}.{pre}.crf{crf_str}.{dest_ext}"
    return temporary.process_dir(temp_dir) / name


def sample_encode_cmd(args: FfmpegEncodeArgs, dest: Path) -> List[object]:
    encoder = args.encoder
    cmd: List[object] = ["ffmpeg", "-y"]
    cmd += args.input_args
    cmd += ["-i", args.input, "-c:v", args.vcodec]
    cmd += args.output_args
    cmd += [encoder.crf_arg, terse_float(args.crf)]
    if args.pix_fmt is not None:
        cmd += ["-pix_fmt", args.pix_fmt.value]
    if args.preset is not None:
        cmd += [encoder.preset_arg, args.preset]
    if args.vfilter:
        cmd += ["-vf", args.vfilter]
    cmd += ["-an", dest]
    return cmd


def encode_sample(args: FfmpegEncodeArgs, temp_dir: Optional[Path] = None,
                  dest_ext: str = "mkv") -> Tuple[Path, ProcessStream]:
    """Encode a sample (``args.input``) into the run temp dir."""
    if args.encoder.is_svt_app:
        from .svtav1 import encode_sample as svt_encode_sample
        return svt_encode_sample(args, temp_dir)

    dest = sample_encode_dest(args, temp_dir, dest_ext)
    temporary.add(dest, TempKind.KEEPABLE)
    cmd = sample_encode_cmd(args, dest)
    return dest, _spawn(cmd, "ffmpeg encode_sample")


def encode_cmd(args: FfmpegEncodeArgs, output: Path, has_audio: bool,
               audio_codec: Optional[str] = None,
               downmix_to_stereo: bool = False) -> List[object]:
    encoder = args.encoder
    oargs = set(args.output_args)
    output_ext = Path(output).suffix.lower().lstrip(".")

    add_faststart = output_ext == "mp4" and "-movflags" not in oargs
    matroska = output_ext in ("mkv", "webm")
    add_cues_to_front = matroska and "-cues_to_front" not in oargs

    if audio_codec is None:
        audio_codec = "libopus" if downmix_to_stereo and has_audio else "copy"
    set_ba_128k = audio_codec == "libopus" and "-b:a" not in oargs
    downmix_to_stereo = downmix_to_stereo and "-ac" not in oargs

    crf = terse_float(args.crf)
    metadata = f"AB_AV1_FFMPEG_ARGS=-c:v {args.vcodec} {encoder.crf_arg} {crf}"
    if args.preset is not None:
        metadata += f" {encoder.preset_arg} {args.preset}"

    cmd: List[object] = list(args.input_args)
    cmd += [
        "-y",
        "-i", args.input,
        "-map", "0:v:0" if args.video_only else "0",
        "-c:v", "copy",
        "-c:v:0", args.vcodec,
        "-metadata:s:v:0", metadata,
        "-c:a", audio_codec,
        "-c:s", "copy",
    ]
    cmd += args.output_args
    cmd += [encoder.crf_arg, crf]
    if args.pix_fmt is not None:
        cmd += ["-pix_fmt", args.pix_fmt.value]
    if args.preset is not None:
        cmd += [encoder.preset_arg, args.preset]
    if args.vfilter:
        cmd += ["-vf", args.vfilter]
    if matroska:
        # only audio, video and subtitles are supported by matroska
        cmd += ["-dn"]
    if downmix_to_stereo:
        cmd += ["-ac", "2"]
    if set_ba_128k:
        cmd += ["-b:a", "128k"]
    if add_faststart:
        cmd += ["-movflags", "+faststart"]
    if add_cues_to_front:
        cmd += ["-cues_to_front", "y"]
    cmd.append(output)
    return cmd


def encode(args: FfmpegEncodeArgs, output: Path, has_audio: bool,
           audio_codec: Optional[str] = None,
           downmix_to_stereo: bool = False) -> ProcessStream:
    """Full encode of ``args.input`` to ``output``."""
    if args.encoder.is_svt_app:
        logger.encoder(f"{args.vcodec} encodes samples only, using {args.encoder.ffmpeg_vcodec} for the full encode")
        args = replace(args, vcodec=args.encoder.ffmpeg_vcodec)
    cmd = encode_cmd(args, output, has_audio, audio_codec, downmix_to_stereo)
    return _spawn(cmd, "ffmpeg encode")


def _spawn(cmd: List[object], name: str) -> ProcessStream:
    try:
        return ProcessStream.spawn(cmd, name)
    except OSError as e:
        raise ProcessError(name, None, cmd_str(cmd), str(e)) from e
