"""
Sample encoding through the standalone SvtAv1EncApp.

ffmpeg decodes the sample to a yuv4mpeg stream on stdout which is piped into
SvtAv1EncApp. Both processes are merged into a single event stream; progress
comes from the ffmpeg decoder.
"""

import subprocess
from pathlib import Path
from typing import List, Optional, Tuple

from ...errors import PreconditionError, ProcessError
from ..encoder_config import FfmpegEncodeArgs
from ..system import temporary
from ..system.process import ProcessStream, cmd_str, kill_tree, merge, spawn
from ..system.temporary import TempKind
from ....utils.formatting import terse_float
from .ffmpeg import sample_encode_dest


def svt_app_args(args: FfmpegEncodeArgs) -> List[str]:
    """Translate ffmpeg-style output args to SvtAv1EncApp flags."""
    out: List[str] = []
    output_args = list(args.output_args)
    i = 0
    while i < len(output_args):
        arg = output_args[i]
        value = output_args[i + 1] if i + 1 < len(output_args) else None
        if arg == "-svtav1-params" and value is not None:
            for param in value.split(":"):
                if not param:
                    continue
                key, _, val = param.partition("=")
                out += [f"--{key}", val] if val else [f"--{key}"]
            i += 2
        elif arg == "-g" and value is not None:
            out += ["--keyint", value]
            i += 2
        else:
            raise PreconditionError(
                f"`{arg}` is not supported with SvtAv1EncApp, use --svt or the libsvtav1 encoder")
    return out


def decode_cmd(args: FfmpegEncodeArgs) -> List[object]:
    cmd: List[object] = ["ffmpeg"]
    cmd += args.input_args
    cmd += ["-i", args.input]
    if args.vfilter:
        cmd += ["-vf", args.vfilter]
    if args.pix_fmt is not None:
        cmd += ["-pix_fmt", args.pix_fmt.value]
    cmd += ["-strict", "-1", "-f", "yuv4mpegpipe", "-"]
    return cmd


def svt_cmd(args: FfmpegEncodeArgs, dest: Path) -> List[object]:
    cmd: List[object] = ["SvtAv1EncApp", "-i", "stdin", "--crf", terse_float(args.crf)]
    if args.preset is not None:
        cmd += ["--preset", args.preset]
    cmd += svt_app_args(args)
    cmd += ["-b", dest]
    return cmd


def encode_sample(args: FfmpegEncodeArgs,
                  temp_dir: Optional[Path] = None) -> Tuple[Path, ProcessStream]:
    """Encode a sample to ivf via ffmpeg | SvtAv1EncApp."""
    dest = sample_encode_dest(args, temp_dir, "ivf")
    svt = svt_cmd(args, dest)
    decode = decode_cmd(args)
    temporary.add(dest, TempKind.KEEPABLE)

    try:
        decoder = spawn(decode, stdout=subprocess.PIPE)
    except OSError as e:
        raise ProcessError("ffmpeg yuv4mpegpipe", None, cmd_str(decode), str(e)) from e
    try:
        encoder = spawn(svt, stdin=decoder.stdout)
    except OSError as e:
        kill_tree(decoder)
        decoder.wait()
        raise ProcessError("SvtAv1EncApp", None, cmd_str(svt), str(e)) from e
    # the encoder owns the read end now
    decoder.stdout.close()

    stream = merge(
        (decoder, "ffmpeg yuv4mpegpipe", decode),
        (encoder, "SvtAv1EncApp", svt),
    )
    return dest, stream
