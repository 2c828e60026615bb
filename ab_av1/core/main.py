"""
Command line surface for ab-av1.

Verbs:
- sample-encode: encode and score samples at one crf
- crf-search: search for the best crf hitting a score target
- auto-encode: crf-search then a full encode at the found crf
- encode: full encode at a given crf
- vmaf / xpsnr: score a distorted file against a reference
- print-completions: shell completions for the argparse tree
"""

import argparse
import json
import os
import sys
from pathlib import Path
from typing import Callable, Dict, List, Optional

from ..config import get_config, parse_bool
from ..utils.formatting import format_duration, format_size, terse_float
from ..utils.logging import (
    create_progress_bar, get_logger, set_debug_mode, set_log_level, set_quiet_mode,
)
from .errors import AbAv1Error, Cancelled, PreconditionError
from .modules.analysis import ffprobe, vmaf, xpsnr
from .modules.analysis.vmaf import VmafArgs, VmafScale, parse_vmaf_arg
from .modules.encoder_config import EncodeArgs, Encoder, KeyInterval, PixelFormat
from .modules.optimization import crf_search, sample_encode
from .modules.optimization.crf_search import CrfSearchArgs
from .modules.optimization.sample_encode import (
    SampleEncodeArgs, SampleEncodeOutput, ScoreArgs, ScoreKind,
)
from .modules.processing import ffmpeg
from .modules.system import temporary
from .modules.system.interrupt import get_interrupt_manager, reset_interrupt_manager
from .modules.system.process import Progress
from .modules.system.temporary import TempKind

logger = get_logger("main")

EXIT_ERROR = 1
EXIT_INTERRUPTED = 130

# progress bar resolution
BAR_TOTAL = 1000

OUTPUT_EXTENSIONS = ("mkv", "mp4", "webm")


def _bool_arg(value: str) -> bool:
    try:
        return parse_bool(value)
    except ValueError as e:
        raise argparse.ArgumentTypeError(str(e))


def _encoder_arg(value: str) -> Encoder:
    try:
        return Encoder(value)
    except PreconditionError as e:
        raise argparse.ArgumentTypeError(str(e))


def _vmaf_scale_arg(value: str) -> VmafScale:
    try:
        return VmafScale.parse(value)
    except PreconditionError as e:
        raise argparse.ArgumentTypeError(str(e))


def _vmaf_arg(value: str) -> str:
    try:
        return parse_vmaf_arg(value)
    except PreconditionError as e:
        raise argparse.ArgumentTypeError(str(e))


def _pix_format_arg(value: str) -> PixelFormat:
    pix_fmt = PixelFormat.parse(value)
    if pix_fmt is None:
        choices = ", ".join(p.value for p in PixelFormat)
        raise argparse.ArgumentTypeError(f"invalid pixel format '{value}', expected one of {choices}")
    return pix_fmt


def _add_common_args(parser: argparse.ArgumentParser):
    parser.add_argument("--debug", action="store_true", help="Enable debug output")
    parser.add_argument("--quiet", action="store_true", help="Only print warnings, errors and results")
    parser.add_argument("--stdout-format", choices=["human", "json"], default="human",
                        help="Result output format (default: human)")


def _add_encode_args(parser: argparse.ArgumentParser):
    parser.add_argument("-e", "--encoder", type=_encoder_arg, default=Encoder("libsvtav1"),
                        help="Encoder, e.g. libsvtav1, libx265, libaom-av1, SvtAv1EncApp (default: libsvtav1)")
    parser.add_argument("-i", "--input", type=Path, required=True, help="Input video file")
    parser.add_argument("--vfilter", help="Ffmpeg video filter applied to the input before encoding")
    parser.add_argument("--preset", help="Encoder preset, e.g. 8 for svt-av1, slow for x264")
    parser.add_argument("--pix-format", type=_pix_format_arg,
                        help="Output pixel format (default: yuv420p10le for av1, otherwise yuv420p)")
    parser.add_argument("--keyint", type=KeyInterval.parse,
                        help="Keyframe interval in frames or as a duration like 10s "
                             "(default: 10s for inputs of 3 minutes or more)")
    parser.add_argument("--scd", type=_bool_arg,
                        help="Scene change detection, defaults on when keyint is defaulted")
    parser.add_argument("--svt", action="append", default=[], metavar="KEY=VALUE",
                        help="Additional svt-av1 params, e.g. --svt film-grain=8")
    parser.add_argument("--enc", action="append", default=[], metavar="OPT=VALUE",
                        help="Additional ffmpeg encoder output args, e.g. --enc x265-params=lossless=1")
    parser.add_argument("--enc-input", action="append", default=[], metavar="OPT=VALUE",
                        help="Additional ffmpeg encoder input args, e.g. --enc-input hwaccel=none")


def _add_score_args(parser: argparse.ArgumentParser):
    parser.add_argument("--vmaf", action="append", default=[], type=_vmaf_arg, metavar="KEY=VALUE",
                        help="Additional libvmaf arg, e.g. --vmaf n_threads=8")
    parser.add_argument("--vmaf-scale", type=_vmaf_scale_arg, default=VmafScale(),
                        help="Video resolution scale used by scoring: none, auto or WxH (default: auto)")


def _add_sample_args(parser: argparse.ArgumentParser, config: Dict):
    parser.add_argument("--samples", type=int, default=3,
                        help="Number of 20s samples to encode and score (default: 3)")
    parser.add_argument("--temp-dir", type=Path, default=config["temp_dir"],
                        help="Directory for temporary files (default: next to the input)")
    parser.add_argument("--keep", action="store_true",
                        help="Keep temporary files after exiting")
    parser.add_argument("--cache", type=_bool_arg, default=config["cache"],
                        help="Use the sample-encode cache (default: true)")


def _add_search_args(parser: argparse.ArgumentParser):
    target = parser.add_mutually_exclusive_group()
    target.add_argument("--min-vmaf", type=float,
                        help="Desired min VMAF score (default: 95)")
    target.add_argument("--min-xpsnr", type=float,
                        help="Desired min XPSNR score, searching with XPSNR instead of VMAF")
    parser.add_argument("--max-encoded-percent", type=float, default=80.0,
                        help="Maximum desired encoded size percentage of the input size (default: 80)")
    parser.add_argument("--min-crf", type=float, help="Minimum crf (default: 10)")
    parser.add_argument("--max-crf", type=float, help="Maximum crf (default: 55, 46 for x264/x265)")
    parser.add_argument("--crf-increment", type=float, default=None,
                        help="Crf granularity of the search (default: 0.1 for x264/x265, otherwise 1)")
    parser.add_argument("--thorough", action="store_true",
                        help="Keep searching until a crf is found close to the target")


def _add_output_args(parser: argparse.ArgumentParser):
    parser.add_argument("-o", "--output", type=Path,
                        help="Output file (default: {input stem}.{codec}.{ext} next to the input)")
    parser.add_argument("--acodec", help="Audio codec (default: copy, libopus when downmixing)")
    parser.add_argument("--downmix-to-stereo", action="store_true",
                        help="Downmix audio to stereo")
    parser.add_argument("--video-only", action="store_true",
                        help="Only encode the video stream, dropping audio and subtitles")


def _add_reference_args(parser: argparse.ArgumentParser):
    parser.add_argument("--reference", type=Path, required=True, help="Original video file")
    parser.add_argument("--distorted", type=Path, required=True, help="Re-encoded video file")
    parser.add_argument("--reference-vfilter",
                        help="Ffmpeg video filter applied to the reference before scoring")
    parser.add_argument("--pix-format", type=_pix_format_arg,
                        help="Pixel format used to compare (default: highest of the two)")


def build_parser(config: Optional[Dict] = None) -> argparse.ArgumentParser:
    if config is None:
        config = get_config()

    parser = argparse.ArgumentParser(
        prog="ab-av1",
        description="Encode video by CRF, searching for the best CRF to hit a VMAF/XPSNR target.",
    )
    subparsers = parser.add_subparsers(dest="command", metavar="COMMAND")
    subparsers.required = True

    p = subparsers.add_parser("sample-encode", help="Encode and score short samples at a crf")
    _add_common_args(p)
    _add_encode_args(p)
    p.add_argument("--crf", type=float, required=True, help="Encoder crf")
    p.add_argument("--xpsnr", action="store_true", help="Score with XPSNR instead of VMAF")
    _add_score_args(p)
    _add_sample_args(p, config)
    p.set_defaults(func=run_sample_encode)

    p = subparsers.add_parser("crf-search", help="Search for the best crf hitting a score target")
    _add_common_args(p)
    _add_encode_args(p)
    _add_search_args(p)
    _add_score_args(p)
    _add_sample_args(p, config)
    p.set_defaults(func=run_crf_search)

    p = subparsers.add_parser("auto-encode", help="crf-search then encode at the found crf")
    _add_common_args(p)
    _add_encode_args(p)
    _add_search_args(p)
    _add_score_args(p)
    _add_sample_args(p, config)
    _add_output_args(p)
    p.set_defaults(func=run_auto_encode)

    p = subparsers.add_parser("encode", help="Encode the whole input at a crf")
    _add_common_args(p)
    _add_encode_args(p)
    p.add_argument("--crf", type=float, required=True, help="Encoder crf")
    _add_output_args(p)
    p.set_defaults(func=run_encode)

    p = subparsers.add_parser("vmaf", help="Full VMAF score of a distorted file against its reference")
    _add_common_args(p)
    _add_reference_args(p)
    _add_score_args(p)
    p.set_defaults(func=run_vmaf)

    p = subparsers.add_parser("xpsnr", help="Full XPSNR score of a distorted file against its reference")
    _add_common_args(p)
    _add_reference_args(p)
    p.add_argument("--vmaf-scale", type=_vmaf_scale_arg, default=VmafScale("none"),
                   help="Scale both videos before scoring: none or WxH (default: none)")
    p.set_defaults(func=run_xpsnr)

    p = subparsers.add_parser("print-completions", help="Print shell completions")
    p.add_argument("--shell", choices=["bash"], default="bash", help="Shell (default: bash)")
    p.set_defaults(func=lambda ns: run_print_completions(ns, parser))

    return parser


def encode_args_from(ns: argparse.Namespace) -> EncodeArgs:
    return EncodeArgs(
        input=ns.input,
        encoder=ns.encoder,
        vfilter=ns.vfilter,
        preset=ns.preset,
        pix_format=ns.pix_format,
        keyint=ns.keyint,
        scd=ns.scd,
        svt_args=list(ns.svt),
        enc_args=list(ns.enc),
        enc_input_args=list(ns.enc_input),
    )


def score_args_from(ns: argparse.Namespace, kind: ScoreKind = ScoreKind.VMAF) -> ScoreArgs:
    return ScoreArgs(kind=kind, vmaf=VmafArgs(vmaf_args=list(ns.vmaf), vmaf_scale=ns.vmaf_scale))


def _probe_input(path: Path) -> ffprobe.Ffprobe:
    if not Path(path).is_file():
        raise PreconditionError(f"Input file does not exist: {path}")
    return ffprobe.probe(Path(path))


def default_output(input_path: Path, encoder: Encoder) -> Path:
    ext = input_path.suffix.lower().lstrip(".")
    if ext not in OUTPUT_EXTENSIONS:
        ext = "mkv"
    pre = ffmpeg.pre_extension_name(encoder.ffmpeg_vcodec)
    return input_path.with_name(f"{input_path.stem}.{pre}.{ext}")


class _Bar:
    """Fraction based tqdm bar."""

    def __init__(self, desc: str):
        self.bar = create_progress_bar(total=BAR_TOTAL, desc=desc, unit="")

    def update(self, fraction: float, message: str = ""):
        self.bar.n = max(0, min(BAR_TOTAL, int(fraction * BAR_TOTAL)))
        if message:
            self.bar.set_postfix_str(message, refresh=False)
        self.bar.refresh()

    def close(self):
        self.bar.close()

    def __enter__(self) -> "_Bar":
        return self

    def __exit__(self, *exc):
        self.close()
        return False


def _emit(ns: argparse.Namespace, human: str, data: Dict):
    if ns.stdout_format == "json":
        print(json.dumps(data), flush=True)
    else:
        print(human, flush=True)


def _sample_result_data(enc: SampleEncodeOutput) -> Dict:
    return {
        "score": enc.score,
        "score_kind": str(enc.score_kind),
        "predicted_encode_size": enc.predicted_encode_size,
        "predicted_encode_percent": enc.encode_percent,
        "predicted_encode_seconds": enc.predicted_encode_time,
        "from_cache": enc.from_cache,
    }


def _sample_result_human(crf: float, enc: SampleEncodeOutput) -> str:
    return (f"crf {terse_float(crf)} {enc.score_kind} {enc.score:.2f} "
            f"predicted video stream size {format_size(enc.predicted_encode_size)} "
            f"({enc.encode_percent:.0f}%) taking {format_duration(enc.predicted_encode_time)}"
            f"{' (cache)' if enc.from_cache else ''}")


def run_sample_encode(ns: argparse.Namespace) -> int:
    args = SampleEncodeArgs(
        args=encode_args_from(ns),
        crf=ns.crf,
        samples=ns.samples,
        temp_dir=ns.temp_dir,
        keep=ns.keep,
        cache=ns.cache,
        score=score_args_from(ns, ScoreKind.XPSNR if ns.xpsnr else ScoreKind.VMAF),
    )
    probe = _probe_input(ns.input)
    with _Bar("sample-encode") as bar:
        out = sample_encode.run(args, probe, lambda p: bar.update(p.fraction, p.message))
    data = {"crf": ns.crf}
    data.update(_sample_result_data(out))
    _emit(ns, _sample_result_human(ns.crf, out), data)
    return 0


def search_args_from(ns: argparse.Namespace) -> CrfSearchArgs:
    if ns.min_xpsnr is not None:
        kind, min_score = ScoreKind.XPSNR, ns.min_xpsnr
    else:
        kind = ScoreKind.VMAF
        min_score = ns.min_vmaf if ns.min_vmaf is not None else 95.0
    return CrfSearchArgs(
        args=encode_args_from(ns),
        min_score=min_score,
        max_encoded_percent=ns.max_encoded_percent,
        min_crf=ns.min_crf,
        max_crf=ns.max_crf,
        crf_increment=ns.crf_increment,
        thorough=ns.thorough,
        samples=ns.samples,
        temp_dir=ns.temp_dir,
        keep=ns.keep,
        cache=ns.cache,
        score=score_args_from(ns, kind),
    )


def _search(args: CrfSearchArgs, probe: ffprobe.Ffprobe) -> crf_search.Sample:
    with _Bar("crf-search") as bar:
        return crf_search.run(args, probe, on_progress=bar.update)


def run_crf_search(ns: argparse.Namespace) -> int:
    args = search_args_from(ns)
    probe = _probe_input(ns.input)
    best = _search(args, probe)
    data = {"crf": best.crf}
    data.update(_sample_result_data(best.enc))
    _emit(ns, _sample_result_human(best.crf, best.enc), data)
    logger.info(f"Encode with: {args.args.encode_hint(best.crf)}")
    return 0


def _full_encode(ns: argparse.Namespace, enc_args: EncodeArgs, crf: float,
                 probe: ffprobe.Ffprobe) -> Path:
    output = ns.output or default_output(Path(ns.input), enc_args.encoder)
    ffmpeg_args = enc_args.to_encoder_args(crf, probe)
    ffmpeg_args.video_only = ns.video_only
    duration = probe.duration.get_or(0.0)

    # removed on failure or interrupt, committed once complete
    temporary.add(output, TempKind.NOT_KEEPABLE)
    stream = ffmpeg.encode(ffmpeg_args, output, probe.has_audio, ns.acodec, ns.downmix_to_stereo)
    with _Bar("encode") as bar, stream:
        for out in stream:
            if isinstance(out, Progress) and duration > 0:
                bar.update(out.time / duration, f"{out.fps:g} fps")
        bar.update(1.0)
    temporary.commit(output)

    output_size = os.path.getsize(output)
    input_size = os.path.getsize(ns.input)
    pct = output_size * 100.0 / input_size if input_size else 0.0
    logger.result(f"Encoded {output} {format_size(output_size)} ({pct:.0f}%)")
    return output


def run_encode(ns: argparse.Namespace) -> int:
    probe = _probe_input(ns.input)
    output = _full_encode(ns, encode_args_from(ns), ns.crf, probe)
    _emit(ns, str(output), {"output": str(output), "crf": ns.crf})
    return 0


def run_auto_encode(ns: argparse.Namespace) -> int:
    args = search_args_from(ns)
    probe = _probe_input(ns.input)
    best = _search(args, probe)
    logger.result(_sample_result_human(best.crf, best.enc))
    output = _full_encode(ns, args.args, best.crf, probe)
    data = {"output": str(output), "crf": best.crf}
    data.update(_sample_result_data(best.enc))
    _emit(ns, str(output), data)
    return 0


def _compare_pix_fmt(ns: argparse.Namespace, reference: ffprobe.Ffprobe,
                     distorted: ffprobe.Ffprobe) -> PixelFormat:
    if ns.pix_format is not None:
        return ns.pix_format
    return max(reference.pixel_format() or PixelFormat.YUV420P10LE,
               distorted.pixel_format() or PixelFormat.YUV420P10LE)


def _run_score(ns: argparse.Namespace, label: str, lavfi_fn: Callable, run_fn: Callable) -> int:
    reference = _probe_input(ns.reference)
    distorted = _probe_input(ns.distorted)
    pix_fmt = _compare_pix_fmt(ns, reference, distorted)
    lavfi = lavfi_fn(distorted.resolution.get_or(None), pix_fmt)
    duration = distorted.duration.get_or(0.0)

    def on_progress(p: Progress):
        if duration > 0:
            bar.update(p.time / duration, f"{p.fps:g} fps")

    with _Bar(label) as bar:
        score = run_fn(ns.reference, ns.distorted, lavfi, on_progress)
    _emit(ns, f"{score}", {"score": score, "score_kind": label.upper()})
    return 0


def run_vmaf(ns: argparse.Namespace) -> int:
    args = VmafArgs(vmaf_args=list(ns.vmaf), vmaf_scale=ns.vmaf_scale)
    return _run_score(
        ns, "vmaf",
        lambda res, pix_fmt: args.ffmpeg_lavfi(res, pix_fmt, ns.reference_vfilter),
        vmaf.run,
    )


def run_xpsnr(ns: argparse.Namespace) -> int:
    scale = ns.vmaf_scale
    if scale.mode == "auto":
        raise PreconditionError("xpsnr supports --vmaf-scale none or WxH, not auto")
    size = (scale.width, scale.height) if scale.mode == "custom" else None
    return _run_score(
        ns, "xpsnr",
        lambda res, pix_fmt: xpsnr.ffmpeg_lavfi(pix_fmt, ns.reference_vfilter, size, res),
        xpsnr.run,
    )


def _subcommands(parser: argparse.ArgumentParser) -> Dict[str, argparse.ArgumentParser]:
    for action in parser._actions:
        if isinstance(action, argparse._SubParsersAction):
            return dict(action.choices)
    return {}


def bash_completions(parser: argparse.ArgumentParser) -> str:
    """Bash completion script covering the verbs and their flags."""
    subcommands = _subcommands(parser)
    lines: List[str] = [
        "_ab_av1() {",
        "    local cur opts",
        '    cur="${COMP_WORDS[COMP_CWORD]}"',
        '    if [ "$COMP_CWORD" -eq 1 ]; then',
        f'        COMPREPLY=( $(compgen -W "{" ".join(subcommands)} --help" -- "$cur") )',
        "        return 0",
        "    fi",
        '    case "${COMP_WORDS[1]}" in',
    ]
    for name, sub in subcommands.items():
        opts = [o for action in sub._actions for o in action.option_strings]
        lines.append(f'        {name}) opts="{" ".join(opts)}" ;;')
    lines += [
        '        *) opts="" ;;',
        "    esac",
        '    if [[ "$cur" == -* ]]; then',
        '        COMPREPLY=( $(compgen -W "$opts" -- "$cur") )',
        "    fi",
        "}",
        "complete -o default -F _ab_av1 ab-av1",
    ]
    return "\n".join(lines)


def run_print_completions(ns: argparse.Namespace, parser: argparse.ArgumentParser) -> int:
    print(bash_completions(parser))
    return 0


def _configure_logging(ns: argparse.Namespace, config: Dict):
    set_log_level(config["log_level"])
    if config["debug"] or getattr(ns, "debug", False):
        set_debug_mode(True)
    if getattr(ns, "quiet", False):
        set_quiet_mode(True)


def main(argv: Optional[List[str]] = None) -> int:
    config = get_config()
    parser = build_parser(config)
    ns = parser.parse_args(argv)
    _configure_logging(ns, config)

    keep = getattr(ns, "keep", False)
    temporary.set_keep_on_exit(keep)
    manager = get_interrupt_manager()
    manager.register_cleanup_callback(lambda: temporary.clean(keep_keepables=keep))

    try:
        return ns.func(ns)
    except (Cancelled, KeyboardInterrupt):
        logger.warn("Interrupted, cleaning up")
        manager.run_cleanup_callbacks()
        return EXIT_INTERRUPTED
    except AbAv1Error as e:
        logger.error(str(e))
        manager.run_cleanup_callbacks()
        return EXIT_ERROR
    finally:
        temporary.clean(keep_keepables=keep)
        reset_interrupt_manager()


if __name__ == "__main__":
    sys.exit(main())
