#!/usr/bin/env python3

import argparse
import collections
import logging
import math
import os
import re
import shlex
import shutil
import subprocess
import sys
import threading
import time
from typing import Callable, Deque, Dict, Iterable, Iterator, List, Optional, TypedDict, cast

from rich.console import Console
from rich.progress import BarColumn, Progress, TaskProgressColumn, TextColumn, TimeRemainingColumn

DEFAULT_FORMAT = "mp4"
DEFAULT_QUALITY = "medium"
OUTPUT_SUFFIX = "_converted"

SUPPORTED_FORMATS = ("mp4", "mkv", "webm", "avi", "mov")

CRF_BY_QUALITY: Dict[str, int] = {
    "low": 28,
    "medium": 23,
    "high": 18,
    "lossless": 0,
}

CODEC_LIBRARIES: Dict[str, str] = {
    "h264": "libx264",
    "h265": "libx265",
    "vp9": "libvpx-vp9",
}

RESOLUTION_HEIGHTS: Dict[str, int] = {
    "2160p": 2160,
    "1440p": 1440,
    "1080p": 1080,
    "720p": 720,
    "480p": 480,
    "360p": 360,
}

DEFAULT_VIDEO_LIBRARY = CODEC_LIBRARIES["h264"]
WEBM_VIDEO_LIBRARY = CODEC_LIBRARIES["vp9"]
VP9_MARKER = "vpx"

FFMPEG_PROGRESS_FLAGS = ["-progress", "pipe:2", "-nostats"]
FFMPEG_AUDIO_FLAGS = ["-c:a", "aac", "-b:a", "128k"]

STDERR_TAIL_LINES = 20

_EXPLICIT_SIZE_RE = re.compile(r"^\d+x\d+$")
_OUT_TIME_RE = re.compile(r"out_time_us=(\d+)")

FFMPEG_INSTALL_HINT = (
    "Install it:\n"
    "  macOS:  brew install ffmpeg\n"
    "  Ubuntu: sudo apt install ffmpeg\n"
    "  Windows: https://ffmpeg.org/download.html"
)

VERBOSE_LEVEL = 0

ProgressCallback = Callable[[float], None]


class ConversionRequest(TypedDict, total=False):
    input: str
    output: str
    format: str
    quality: str
    resolution: str
    codec: str


class VConvertError(Exception):
    pass


class ValidationError(VConvertError, ValueError):
    kind = "invalid_request"


class InputNotFoundError(ValidationError):
    kind = "input_not_found"


class UnsupportedFormatError(ValidationError):
    kind = "unsupported_format"


class UnsupportedCodecError(ValidationError):
    kind = "unsupported_codec"


class UnsupportedQualityError(ValidationError):
    kind = "unsupported_quality"


class InvalidResolutionError(ValidationError):
    kind = "invalid_resolution"


class EncoderNotFoundError(VConvertError, RuntimeError):
    pass


class ProbeError(VConvertError, RuntimeError):
    pass


class ConversionError(VConvertError, RuntimeError):
    def __init__(
        self,
        message: str,
        returncode: Optional[int] = None,
        cmd: Optional[List[str]] = None,
        stderr_tail: Optional[List[str]] = None,
    ) -> None:
        super().__init__(message)
        self.returncode = returncode
        self.cmd = cmd or []
        self.stderr_tail = stderr_tail or []

    def __str__(self) -> str:
        text = super().__str__()
        if self.stderr_tail:
            text += "\n" + "\n".join(self.stderr_tail)
        return text


def _print_command(cmd: List[str]) -> None:
    if not VERBOSE_LEVEL:
        return
    cmdline = " ".join(shlex.quote(str(part)) for part in cmd)
    print(cmdline, file=sys.stderr)


def check_ffmpeg(ffmpeg: str = "ffmpeg") -> str:
    path = shutil.which(ffmpeg)
    if path is None:
        raise EncoderNotFoundError(f"{ffmpeg} not found in PATH. {FFMPEG_INSTALL_HINT}")
    return path


def is_valid_resolution(value: str) -> bool:
    return value in RESOLUTION_HEIGHTS or bool(_EXPLICIT_SIZE_RE.match(value))


def validate_request(request: ConversionRequest) -> None:
    """Raise the matching ValidationError subclass for the first bad field.

    Only the input path touches the filesystem; everything else is checked
    against the fixed tables above.
    """
    src = request.get("input") or ""
    if not src or not os.path.isfile(src):
        raise InputNotFoundError(f"input file does not exist: {src}")

    fmt = request.get("format")
    if fmt and fmt not in SUPPORTED_FORMATS:
        raise UnsupportedFormatError(
            f"unsupported format: {fmt} (supported: {', '.join(SUPPORTED_FORMATS)})"
        )

    codec = request.get("codec")
    if codec and codec not in CODEC_LIBRARIES:
        raise UnsupportedCodecError(
            f"unsupported codec: {codec} (supported: {', '.join(CODEC_LIBRARIES)})"
        )

    quality = request.get("quality")
    if quality and quality not in CRF_BY_QUALITY:
        raise UnsupportedQualityError(
            f"unsupported quality: {quality} (supported: {', '.join(CRF_BY_QUALITY)})"
        )

    resolution = request.get("resolution")
    if resolution and not is_valid_resolution(resolution):
        raise InvalidResolutionError(
            f"invalid resolution: {resolution} (examples: 1080p, 720p, 480p, or 1920x1080)"
        )


def _extension_after_last_dot(path: str) -> str:
    if "." not in path:
        return ""
    return path.rsplit(".", 1)[1]


def resolve_request(request: ConversionRequest) -> ConversionRequest:
    resolved = cast(ConversionRequest, dict(request))

    if resolved.get("output") and not resolved.get("format"):
        inferred = _extension_after_last_dot(resolved["output"])
        if inferred:
            resolved["format"] = inferred

    if not resolved.get("format"):
        resolved["format"] = DEFAULT_FORMAT

    if not resolved.get("output"):
        stem, _ = os.path.splitext(resolved.get("input") or "")
        resolved["output"] = f"{stem}{OUTPUT_SUFFIX}.{resolved['format']}"

    if not resolved.get("quality"):
        resolved["quality"] = DEFAULT_QUALITY

    return resolved


def select_video_library(request: ConversionRequest) -> str:
    codec = request.get("codec")
    if codec:
        return CODEC_LIBRARIES[codec]
    if request.get("format") == "webm":
        return WEBM_VIDEO_LIBRARY
    return DEFAULT_VIDEO_LIBRARY


def scale_filter(resolution: str) -> str:
    if resolution in RESOLUTION_HEIGHTS:
        return f"scale=-2:{RESOLUTION_HEIGHTS[resolution]}"
    if not _EXPLICIT_SIZE_RE.match(resolution):
        raise KeyError(resolution)
    width, height = resolution.split("x", 1)
    return f"scale={width}:{height}"


def build_ffmpeg_args(request: ConversionRequest) -> List[str]:
    args = ["-i", request["input"], "-y"] + FFMPEG_PROGRESS_FLAGS

    library = select_video_library(request)
    args += ["-c:v", library]

    crf = CRF_BY_QUALITY[request["quality"]]
    args += ["-crf", str(crf)]
    if VP9_MARKER in library:
        # constant-quality mode for libvpx needs an unconstrained bitrate
        args += ["-b:v", "0"]

    args += FFMPEG_AUDIO_FLAGS

    resolution = request.get("resolution")
    if resolution:
        args += ["-vf", scale_filter(resolution)]

    args.append(request["output"])
    return args


def _parse_duration_value(text: str) -> Optional[float]:
    s = text.strip()
    if not s or s.lower() in {"n/a", "nan"}:
        return None
    try:
        value = float(s)
    except ValueError:
        return None
    return value if math.isfinite(value) else None


def ffprobe_duration(path: str, ffprobe: str = "ffprobe") -> float:
    cmd = [
        ffprobe,
        "-v",
        "error",
        "-show_entries",
        "format=duration",
        "-of",
        "default=noprint_wrappers=1:nokey=1",
        path,
    ]
    _print_command(cmd)
    try:
        proc = subprocess.run(
            cmd,
            check=True,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
        )
    except OSError as exc:
        raise ProbeError(f"failed to run {ffprobe}: {exc}") from exc
    except subprocess.CalledProcessError as exc:
        err = (
            exc.stderr.decode("utf-8", "replace").strip()
            if getattr(exc, "stderr", None)
            else ""
        )
        raise ProbeError(
            f"{ffprobe} exited with code {exc.returncode}" + (f": {err}" if err else "")
        ) from exc

    stdout = proc.stdout.decode("utf-8", "replace")
    duration = _parse_duration_value(stdout)
    if duration is None:
        raise ProbeError(f"{ffprobe} did not report duration for {path}: {stdout.strip()!r}")
    return duration


def probe_duration(path: str, ffprobe: str = "ffprobe") -> Optional[float]:
    try:
        duration = ffprobe_duration(path, ffprobe)
    except ProbeError as exc:
        logging.warning("duration unknown, progress disabled: %s", exc)
        return None
    if duration <= 0:
        logging.warning("duration unknown, progress disabled: %s reported %s", path, duration)
        return None
    logging.info("duration: %.3fs", duration)
    return duration


def progress_percent(out_time_us: int, total_duration: float) -> float:
    percent = out_time_us / 1_000_000 / total_duration * 100
    return min(max(percent, 0.0), 100.0)


def stream_progress(
    lines: Iterable[str], total_duration: float, on_progress: ProgressCallback
) -> None:
    """Feed percentages parsed from ``out_time_us=`` lines to ``on_progress``.

    Values are clamped to [0, 100] and forwarded in read order, so a marker
    that goes backwards is reported as a decrease. ``total_duration`` must be
    positive; callers without a duration use :func:`drain_stream` instead.
    """
    for line in lines:
        m = _OUT_TIME_RE.search(line)
        if not m:
            continue
        on_progress(progress_percent(int(m.group(1)), total_duration))


def drain_stream(lines: Iterable[str]) -> None:
    for _ in lines:
        pass


def _tee_lines(stream: Iterable[str], tail: Deque[str]) -> Iterator[str]:
    # progress records are key=value; anything else is ffmpeg diagnostics
    for raw in stream:
        line = raw.rstrip("\r\n")
        if "=" not in line or " " in line.split("=", 1)[0]:
            if line.strip():
                tail.append(line)
        yield line


def _read_diagnostics(
    stream: Iterable[str],
    tail: Deque[str],
    total_duration: Optional[float],
    on_progress: Optional[ProgressCallback],
) -> None:
    lines = _tee_lines(stream, tail)
    if on_progress is not None and total_duration:
        try:
            stream_progress(lines, total_duration, on_progress)
        except Exception:
            logging.warning("progress callback failed; progress disabled", exc_info=True)
    # the pipe must reach EOF or ffmpeg blocks on a full stderr
    drain_stream(lines)


def convert(
    request: ConversionRequest,
    on_progress: Optional[ProgressCallback] = None,
    ffmpeg: str = "ffmpeg",
    ffprobe: str = "ffprobe",
) -> None:
    args = build_ffmpeg_args(request)
    total_duration = probe_duration(request["input"], ffprobe) if on_progress is not None else None

    cmd = [ffmpeg] + args
    _print_command(cmd)
    try:
        proc = subprocess.Popen(
            cmd,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.PIPE,
            text=True,
            errors="replace",
        )
    except OSError as exc:
        raise ConversionError(f"failed to start {ffmpeg}: {exc}", cmd=cmd) from exc

    tail: Deque[str] = collections.deque(maxlen=STDERR_TAIL_LINES)
    reader = threading.Thread(
        target=_read_diagnostics,
        args=(proc.stderr, tail, total_duration, on_progress),
        name="ffmpeg-stderr",
        daemon=True,
    )
    reader.start()
    try:
        returncode = proc.wait()
    except KeyboardInterrupt:
        proc.terminate()
        proc.wait()
        raise
    finally:
        reader.join()
        if proc.stderr is not None:
            proc.stderr.close()

    if returncode != 0:
        raise ConversionError(
            f"ffmpeg conversion failed (exit code {returncode})",
            returncode=returncode,
            cmd=cmd,
            stderr_tail=list(tail),
        )


def _format_size_mb(num_bytes: int) -> str:
    return f"{num_bytes / 1024 / 1024:.1f} MB"


def _format_elapsed(seconds: float) -> str:
    if seconds < 60:
        return f"{seconds:.3f}s"
    minutes, secs = divmod(seconds, 60)
    if minutes < 60:
        return f"{int(minutes)}m{secs:.3f}s"
    hours, minutes = divmod(minutes, 60)
    return f"{int(hours)}h{int(minutes)}m{secs:.3f}s"


def describe_request(request: ConversionRequest) -> List[str]:
    details = f"Format: {request['format']} | Quality: {request['quality']}"
    if request.get("resolution"):
        details += f" | Resolution: {request['resolution']}"
    if request.get("codec"):
        details += f" | Codec: {request['codec']}"
    return [f"Converting: {request['input']} → {request['output']}", details]


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog="vconvert",
        description="Convert a video file to a different format and/or quality using ffmpeg.",
        epilog=(
            "examples:\n"
            "  vconvert video.mov -o output.mp4\n"
            "  vconvert video.avi -f mkv -q high\n"
            "  vconvert video.mp4 -r 720p -q low\n"
            "  vconvert video.mov --codec h265 -q high -o compressed.mp4"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    ap.add_argument("input", help="Input video file.")
    ap.add_argument("-o", "--output", default="", help="Output file path.")
    ap.add_argument(
        "-f",
        "--format",
        default=os.getenv("VCONVERT_FORMAT", ""),
        help=f"Output format ({', '.join(SUPPORTED_FORMATS)}).",
    )
    ap.add_argument(
        "-q",
        "--quality",
        default=os.getenv("VCONVERT_QUALITY", ""),
        help="Quality preset: low, medium, high, lossless (default: medium).",
    )
    ap.add_argument(
        "-r",
        "--resolution",
        default=os.getenv("VCONVERT_RESOLUTION", ""),
        help="Target resolution (e.g. 1080p, 720p, 480p, or 1920x1080).",
    )
    ap.add_argument(
        "--codec",
        default=os.getenv("VCONVERT_CODEC", ""),
        help=f"Video codec ({', '.join(CODEC_LIBRARIES)}).",
    )
    ap.add_argument(
        "--ffmpeg",
        default=os.getenv("VCONVERT_FFMPEG", "ffmpeg"),
        help="ffmpeg executable.",
    )
    ap.add_argument(
        "--ffprobe",
        default=os.getenv("VCONVERT_FFPROBE", "ffprobe"),
        help="ffprobe executable.",
    )
    ap.add_argument(
        "--no-progress",
        action="store_true",
        help="Do not draw a progress bar.",
    )
    ap.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Increase verbosity (-v, -vv).",
    )
    return ap


def _request_from_args(args: argparse.Namespace) -> ConversionRequest:
    request = ConversionRequest(input=args.input)
    for key in ("output", "format", "quality", "resolution", "codec"):
        value = getattr(args, key)
        if value:
            request[key] = value  # type: ignore[literal-required]
    return request


def main(argv: Optional[List[str]] = None) -> None:
    args = build_parser().parse_args(argv)

    level = (
        logging.WARNING
        if args.verbose == 0
        else (logging.INFO if args.verbose == 1 else logging.DEBUG)
    )
    global VERBOSE_LEVEL
    VERBOSE_LEVEL = args.verbose
    logging.basicConfig(
        level=level, stream=sys.stderr, format="%(levelname)s: %(message)s"
    )

    try:
        check_ffmpeg(args.ffmpeg)
    except EncoderNotFoundError as exc:
        logging.error("%s", exc)
        sys.exit(1)

    request = resolve_request(_request_from_args(args))
    try:
        validate_request(request)
    except ValidationError as exc:
        logging.error("%s", exc)
        sys.exit(2)

    for line in describe_request(request):
        print(line)

    console = Console(stderr=True)
    start = time.monotonic()
    try:
        if args.no_progress:
            convert(request, ffmpeg=args.ffmpeg, ffprobe=args.ffprobe)
        else:
            with Progress(
                TextColumn("[progress.description]{task.description}"),
                BarColumn(bar_width=40),
                TaskProgressColumn(),
                TimeRemainingColumn(),
                console=console,
                transient=True,
            ) as progress:
                task = progress.add_task("Converting", total=100)
                convert(
                    request,
                    on_progress=lambda pct: progress.update(task, completed=pct),
                    ffmpeg=args.ffmpeg,
                    ffprobe=args.ffprobe,
                )
                progress.update(task, completed=100)
    except ConversionError as exc:
        logging.error("%s", exc)
        sys.exit(1)
    except KeyboardInterrupt:
        logging.error("interrupted")
        sys.exit(130)

    elapsed = _format_elapsed(time.monotonic() - start)
    size = ""
    try:
        size = f" ({_format_size_mb(os.path.getsize(request['output']))})"
    except OSError:
        pass
    print(f"\nDone in {elapsed} → {request['output']}{size}")


if __name__ == "__main__":
    main()
