#!/usr/bin/env python3

import argparse
import asyncio
import io
import json
import logging
import mimetypes
import os
import pathlib
import platform
import re
import shlex
import shutil
import stat
import subprocess
import sys
import tempfile
import threading
import time
from abc import ABC, abstractmethod
from datetime import datetime
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    List,
    NoReturn,
    Optional,
    Sequence,
    TextIO,
    Tuple,
    TypedDict,
    cast,
)
from urllib.parse import quote

import boto3
import filetype
from boto3.s3.transfer import TransferConfig
from botocore.config import Config as BotoConfig
from nanoid import generate as nanoid_generate
from rich.console import Console
from rich.prompt import Confirm, IntPrompt
from rich.table import Table

DEFAULT_PUBLIC_URL = "https://i.xevion.dev"
DRY_RUN_URL = "(dry-run)"
TEMP_PREFIX = "share-"

REQUEST_TIMEOUT = 30.0
DEFAULT_UPLOAD_TIMEOUT = 60.0
MULTIPART_THRESHOLD = 8 * 1024 * 1024

DEFAULT_CRF = 23
DEFAULT_GIF_FPS = 15
PROBE_DURATION = 8.0
PROBE_FALLBACK_DURATION = 30.0
PROBE_CRF_VALUES = [16, 18, 20, 22, 24, 26, 28, 30]
SIZE_TARGET_TIERS_MB = [1, 2, 3, 5, 8, 10, 15, 20, 30, 50, 75, 100]
SIZE_TARGET_MARGIN = 0.10

FFMPEG_INPUT_FLAGS = ["-fflags", "+genpts"]
EVEN_SCALE_FILTER = "scale=trunc(iw/2)*2:trunc(ih/2)*2"
AUDIO_BITRATE = "128k"

RANDOM_ID_SIZE = 8
RANDOM_SUFFIX_RE = re.compile(r"-[A-Za-z0-9_-]{8}\.[^.]+$")

REQUIRED_CREDENTIALS = (
    "R2_ENDPOINT",
    "R2_ACCESS_KEY_ID",
    "R2_SECRET_ACCESS_KEY",
    "R2_BUCKET",
)

VERBOSE_LEVEL = 0
TOOL_TIMEOUT: Optional[float] = None
UPLOAD_TIMEOUT = DEFAULT_UPLOAD_TIMEOUT

FORMAT_CHOICES = ("original", "png", "jpeg", "webp", "mp4", "webm", "gif")
RESOLUTION_CHOICES = ("original", "1080p", "720p", "480p", "50%", "25%")
FPS_CHOICES = ("original", "60", "30", "24", "15")
ENCODER_CHOICES = ("cpu", "nvenc", "av1")
IMAGE_QUALITY_CHOICES = ("high", "balanced", "small")

_FORMAT_ALIASES: Dict[str, str] = {
    "jpg": "jpeg",
    "orig": "original",
    "h264": "mp4",
    "vp9": "webm",
}

_RESOLUTION_ALIASES: Dict[str, str] = {
    "orig": "original",
    "1080": "1080p",
    "720": "720p",
    "480": "480p",
    "50": "50%",
    "25": "25%",
}

_FPS_ALIASES: Dict[str, str] = {"orig": "original"}

_ENCODER_ALIASES: Dict[str, str] = {
    "hardware": "nvenc",
    "hw": "nvenc",
    "gpu": "nvenc",
    "h264_nvenc": "nvenc",
    "software": "cpu",
    "x264": "cpu",
    "libx264": "cpu",
    "svt-av1": "av1",
    "svtav1": "av1",
    "libsvtav1": "av1",
}

_QUALITY_ALIASES: Dict[str, str] = {
    "best": "high",
    "default": "balanced",
    "medium": "balanced",
    "low": "small",
}

QUALITY_IMG: Dict[str, int] = {"high": 95, "balanced": 85, "small": 70}

SIZE_THRESHOLDS: Dict[str, int] = {
    "image": 10 * 1024 * 1024,
    "video": 50 * 1024 * 1024,
    "other": 100 * 1024 * 1024,
}

INCOMPATIBLE_VIDEO_CODECS = ("hevc", "h265", "av1")
MP4_FAMILY_MIMES = ("video/mp4", "video/quicktime", "video/x-m4v")
_MP4_FORMAT_NAMES = {"mov", "mp4", "m4a", "3gp", "3g2", "mj2"}

MIME_EXTENSIONS: Dict[str, str] = {
    "image/png": "png",
    "image/jpeg": "jpg",
    "image/gif": "gif",
    "image/webp": "webp",
    "image/bmp": "bmp",
    "image/tiff": "tiff",
    "image/heic": "heic",
    "image/heif": "heif",
    "image/avif": "avif",
    "video/mp4": "mp4",
    "video/webm": "webm",
    "video/quicktime": "mov",
    "video/x-matroska": "mkv",
    "text/plain": "txt",
    "application/json": "json",
    "application/pdf": "pdf",
}

EXTENSION_MIMES: Dict[str, str] = {
    "png": "image/png",
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "gif": "image/gif",
    "webp": "image/webp",
    "bmp": "image/bmp",
    "tiff": "image/tiff",
    "heic": "image/heic",
    "heif": "image/heif",
    "avif": "image/avif",
    "mp4": "video/mp4",
    "webm": "video/webm",
    "mov": "video/quicktime",
    "mkv": "video/x-matroska",
    "txt": "text/plain",
    "json": "application/json",
    "pdf": "application/pdf",
    "js": "application/javascript",
    "ts": "application/typescript",
    "rs": "text/x-rust",
    "py": "text/x-python",
    "md": "text/markdown",
    "html": "text/html",
    "css": "text/css",
}

FORMAT_MIMES: Dict[str, str] = {
    "png": "image/png",
    "jpeg": "image/jpeg",
    "webp": "image/webp",
    "gif": "image/gif",
    "mp4": "video/mp4",
    "webm": "video/webm",
}

_SCALE_FILTERS: Dict[str, str] = {
    "1080p": "scale=-2:1080",
    "720p": "scale=-2:720",
    "480p": "scale=-2:480",
    "50%": "scale=trunc(iw/4)*2:trunc(ih/4)*2",
    "25%": "scale=trunc(iw/8)*2:trunc(ih/8)*2",
}

_NAMED_RESOLUTION_HEIGHTS: Dict[str, int] = {"1080p": 1080, "720p": 720, "480p": 480}
_PERCENT_RESOLUTIONS = ("50%", "25%")

_FFMPEG_TIME_RE = re.compile(r"time=(\d+:\d+:\d+(?:\.\d+)?|\d+:\d+(?:\.\d+)?)")


class ShareError(RuntimeError):
    pass


class CredentialsError(ShareError):
    pass


class SourceError(ShareError):
    pass


class MediaCommandError(ShareError):
    pass


class UploadError(ShareError):
    pass


class ShareCancelled(ShareError):
    pass


class ToolResult(TypedDict):
    stdout: bytes
    stderr: bytes
    returncode: int


class UploadSource(TypedDict):
    buffer: bytes
    filename: Optional[str]
    mime_type: str


class VideoProbe(TypedDict):
    duration: Optional[float]
    codec: Optional[str]
    has_faststart: bool
    width: Optional[int]
    height: Optional[int]


class ImageProbe(TypedDict):
    width: Optional[int]
    height: Optional[int]


FixFunc = Callable[[bytes], Awaitable[bytes]]
ProgressFunc = Callable[[int], None]


class MediaIssue(TypedDict):
    id: str
    description: str
    severity: str
    fix: FixFunc
    mime_type: Optional[str]


class _SourceConfigRequired(TypedDict):
    type: str


class SourceConfig(_SourceConfigRequired, total=False):
    path: str


class CliArgs(TypedDict, total=False):
    dry_run: bool
    format: str
    resolution: str
    fps: str
    encoder: str
    crf: int
    remove_audio: bool
    image_quality: str
    random_filename: bool
    normalize_filename: bool
    auto_fix: bool
    gif_fps: int
    gif_width: int
    probe: bool
    no_probe: bool
    target_size: int


class ShareConfig(TypedDict):
    source: SourceConfig
    dry_run: bool
    format: str
    resolution: str
    fps: str
    remove_audio: bool
    encoder: str
    crf: int
    gif_fps: int
    gif_width: Optional[int]
    image_quality: str
    random_filename: bool
    normalize_filename: bool
    auto_fix: bool


class VideoEncodeSettings(TypedDict):
    format: str
    resolution: str
    fps: str
    remove_audio: bool
    encoder: str
    crf: int


class GifSettings(TypedDict):
    fps: int
    width: Optional[int]


class QualityProbeResult(TypedDict):
    crf: int
    sample_size: int
    sample_duration: float
    encode_time: float
    estimated_full_size: int
    estimated_full_time: float


class Credentials(TypedDict):
    endpoint: str
    access_key_id: str
    secret_access_key: str
    bucket: str


class UploadResult(TypedDict):
    url: str
    key: str
    size: int


class PipelineResult(TypedDict):
    url: str
    key: str
    original_size: int
    processed_size: int
    processing_time: float
    mime_type: str


Option = Tuple[Any, str, Optional[str]]


def _detect_wsl() -> bool:
    try:
        with open("/proc/version", "r", encoding="utf-8") as fh:
            return "microsoft" in fh.read().lower()
    except OSError:
        return False


IS_WINDOWS = platform.system() == "Windows"
IS_MACOS = platform.system() == "Darwin"
IS_WSL = _detect_wsl()


def parse_size(s: str) -> int:
    s = s.strip().lower().replace("ib", "").replace("b", "")
    mult = 1
    if s.endswith("k"):
        mult = 1024
        s = s[:-1]
    elif s.endswith("m"):
        mult = 1024**2
        s = s[:-1]
    elif s.endswith("g"):
        mult = 1024**3
        s = s[:-1]
    elif s.endswith("t"):
        mult = 1024**4
        s = s[:-1]
    return int(float(s) * mult)


def format_bytes(num_bytes: float) -> str:
    if num_bytes <= 0:
        return "0 B"
    units = ["B", "KB", "MB", "GB"]
    value = float(num_bytes)
    unit = units[0]
    for unit in units:
        if value < 1024 or unit == units[-1]:
            break
        value /= 1024
    return f"{value:.1f} {unit}"


def format_seconds(seconds: float) -> str:
    total = int(round(seconds))
    if total < 60:
        return f"{total}s"
    return f"{total // 60}m {total % 60}s"


def _parse_duration_value(value: Any) -> Optional[float]:
    if value is None:
        return None
    if isinstance(value, (int, float)):
        return float(value) if value >= 0 else None
    if isinstance(value, str):
        s = value.strip()
        if not s or s.lower() in {"n/a", "nan"}:
            return None
        try:
            return float(s)
        except ValueError:
            if ":" in s:
                parts = s.split(":")
                try:
                    total = 0.0
                    for part in parts:
                        total = total * 60 + float(part)
                    return total
                except ValueError:
                    return None
    return None


def _parse_int(value: Any) -> Optional[int]:
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        return None
    return parsed if parsed > 0 else None


def is_image_mime(mime: str) -> bool:
    return mime.startswith("image/")


def is_video_mime(mime: str) -> bool:
    return mime.startswith("video/")


def get_extension_for_mime(mime: str) -> str:
    return MIME_EXTENSIONS.get(mime, "bin")


def get_mime_for_format(fmt: str) -> Optional[str]:
    return FORMAT_MIMES.get(fmt)


def get_default_image_format(mime: str) -> str:
    if mime == "image/jpeg":
        return "jpeg"
    if mime == "image/webp":
        return "webp"
    if mime == "image/gif":
        return "gif"
    return "png"


def encode_url_path(path: str) -> str:
    return "/".join(quote(segment, safe="") for segment in path.split("/"))


def random_id(size: int = RANDOM_ID_SIZE) -> str:
    return cast(str, nanoid_generate(size=size))


def has_random_suffix(filename: str) -> bool:
    return RANDOM_SUFFIX_RE.search(filename) is not None


def normalize_filename(filename: str) -> str:
    text = filename.lower()
    text = re.sub(r"\s+", "-", text)
    text = re.sub(r"[^a-z0-9\-_.]", "", text)
    text = re.sub(r"-+", "-", text)
    return text.strip("-")


def sanitize_base(stem: str) -> str:
    base = os.path.basename(stem).replace("\\", "_")
    while base.startswith("."):
        base = base[1:]
    return base or "file"


def _guess_mime_type(path: pathlib.PurePath) -> str:
    mime, _ = mimetypes.guess_type(path.name)
    if mime:
        return mime
    return "application/octet-stream"


def detect_mime_type(data: bytes, filename: Optional[str] = None) -> str:
    kind = filetype.guess(data) if data else None
    if kind is not None:
        return cast(str, kind.mime)
    if filename:
        path = pathlib.PurePath(filename)
        ext = path.suffix.lstrip(".").lower()
        if ext in EXTENSION_MIMES:
            return EXTENSION_MIMES[ext]
        return _guess_mime_type(path)
    return "application/octet-stream"


def _print_command(cmd: Sequence[str]) -> None:
    if not VERBOSE_LEVEL:
        return
    logging.info("+ %s", " ".join(shlex.quote(str(part)) for part in cmd))


def _stderr_tail(stderr: bytes, lines: int = 3) -> str:
    text = stderr.decode("utf-8", "replace").strip()
    return "\n".join(text.splitlines()[-lines:])


def has_command(name: str) -> bool:
    return shutil.which(name) is not None


async def _drain_stream(
    stream: Optional[asyncio.StreamReader],
    chunks: List[bytes],
    callback: Optional[Callable[[str], None]],
) -> None:
    if stream is None:
        return
    while True:
        chunk = await stream.read(4096)
        if not chunk:
            break
        chunks.append(chunk)
        if callback is not None:
            callback(chunk.decode("utf-8", "replace"))


async def _feed_stdin(proc: "asyncio.subprocess.Process", stdin: Optional[bytes]) -> None:
    if proc.stdin is None:
        return
    try:
        if stdin:
            proc.stdin.write(stdin)
            await proc.stdin.drain()
    except (BrokenPipeError, ConnectionResetError):
        # The tool exited without reading all of its input.
        pass
    proc.stdin.close()


async def _communicate(
    proc: "asyncio.subprocess.Process",
    stdin: Optional[bytes],
    on_stderr: Optional[Callable[[str], None]],
    capture: bool = True,
) -> Tuple[bytes, bytes]:
    if not capture:
        await _feed_stdin(proc, stdin)
        await proc.wait()
        return b"", b""
    if on_stderr is None:
        stdout, stderr = await proc.communicate(stdin)
        return stdout or b"", stderr or b""
    await _feed_stdin(proc, stdin)
    out: List[bytes] = []
    err: List[bytes] = []
    await asyncio.gather(
        _drain_stream(proc.stdout, out, None),
        _drain_stream(proc.stderr, err, on_stderr),
    )
    await proc.wait()
    return b"".join(out), b"".join(err)


async def run_tool(
    cmd: Sequence[str],
    *,
    stdin: Optional[bytes] = None,
    on_stderr: Optional[Callable[[str], None]] = None,
    timeout: Optional[float] = None,
    capture: bool = True,
) -> ToolResult:
    """Run an external tool and capture its output.

    This is the only place the module spawns media/clipboard processes; the
    non-zero exit code is returned, not raised. ``timeout`` defaults to the
    process-wide ``TOOL_TIMEOUT`` (no limit when unset).

    With ``capture=False`` stdout and stderr go to the null device and only the
    exit of the tool itself is awaited, so a tool that leaves a background
    child holding its output open (xclip serving the selection) returns.
    """

    argv = [str(part) for part in cmd]
    _print_command(argv)
    limit = TOOL_TIMEOUT if timeout is None else timeout
    started = time.monotonic()
    output = asyncio.subprocess.PIPE if capture else asyncio.subprocess.DEVNULL
    try:
        proc = await asyncio.create_subprocess_exec(
            *argv,
            stdin=(
                asyncio.subprocess.PIPE
                if stdin is not None
                else asyncio.subprocess.DEVNULL
            ),
            stdout=output,
            stderr=output,
        )
    except OSError as exc:
        raise MediaCommandError(f"failed to start {argv[0]}: {exc}") from exc

    try:
        stdout, stderr = await asyncio.wait_for(
            _communicate(proc, stdin, on_stderr, capture), limit
        )
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        logging.info(
            "%s killed after %.2fs", argv[0], time.monotonic() - started
        )
        raise MediaCommandError(f"{argv[0]} timed out after {limit:g}s") from None

    returncode = proc.returncode if proc.returncode is not None else -1
    logging.info(
        "%s exited %d in %.2fs", argv[0], returncode, time.monotonic() - started
    )
    return {"stdout": stdout, "stderr": stderr, "returncode": returncode}


async def run_media_command(
    cmd: Sequence[str], *, on_stderr: Optional[Callable[[str], None]] = None
) -> ToolResult:
    result = await run_tool(cmd, on_stderr=on_stderr)
    if result["returncode"] != 0:
        name = pathlib.PurePath(str(cmd[0])).name
        tail = _stderr_tail(result["stderr"])
        raise MediaCommandError(
            f"{name} failed (exit {result['returncode']})" + (f": {tail}" if tail else "")
        )
    return result


async def run_ffmpeg_with_progress(
    cmd: Sequence[str], duration: float, on_progress: ProgressFunc
) -> None:
    tail = ""
    last = -1

    def _on_stderr(text: str) -> None:
        nonlocal tail, last
        tail = (tail + text)[-2048:]
        matches = _FFMPEG_TIME_RE.findall(tail)
        if not matches or duration <= 0:
            return
        seconds = _parse_duration_value(matches[-1]) or 0.0
        percent = min(99, int(seconds / duration * 100))
        if percent != last:
            last = percent
            on_progress(percent)

    await run_media_command(cmd, on_stderr=_on_stderr)
    on_progress(100)


def temp_path(tag: str, ext: str = "") -> str:
    suffix = f".{ext}" if ext else ""
    name = f"{TEMP_PREFIX}{tag}-{random_id()}{suffix}"
    return os.path.join(tempfile.gettempdir(), name)


def write_temp_file(data: bytes, ext: str = "") -> str:
    path = temp_path("input", ext)
    with open(path, "wb") as fh:
        fh.write(data)
    return path


def read_file_bytes(path: str) -> bytes:
    with open(path, "rb") as fh:
        return fh.read()


def cleanup_temp_files(*paths: Optional[str]) -> None:
    for pth in paths:
        if not pth:
            continue
        try:
            if os.path.exists(pth):
                os.remove(pth)
        except FileNotFoundError:
            pass
        except OSError as exc:
            logging.warning("failed to remove temp file %s: %s", pth, exc)


def _imagemagick_command(tool: str) -> List[str]:
    if has_command("magick"):
        return ["magick"] if tool == "convert" else ["magick", tool]
    return [tool]


def _is_attached_picture_stream(stream: Dict[str, Any]) -> bool:
    disposition = stream.get("disposition")
    return isinstance(disposition, dict) and disposition.get("attached_pic") == 1


def _has_faststart(fmt: Dict[str, Any]) -> bool:
    names = {n.strip() for n in str(fmt.get("format_name") or "").split(",")}
    if not names & _MP4_FORMAT_NAMES:
        return True
    tags = fmt.get("tags")
    if not isinstance(tags, dict):
        return False
    major = str(tags.get("major_brand") or "").strip().lower()
    compatible = str(tags.get("compatible_brands") or "").lower()
    return major == "isom" or "isom" in compatible


def parse_video_probe(data: Dict[str, Any]) -> VideoProbe:
    fmt = data.get("format")
    if not isinstance(fmt, dict):
        fmt = {}
    video: Optional[Dict[str, Any]] = None
    for stream in data.get("streams") or []:
        if not isinstance(stream, dict):
            continue
        if stream.get("codec_type") != "video" or _is_attached_picture_stream(stream):
            continue
        video = stream
        break

    codec = None
    if video is not None and video.get("codec_name"):
        codec = str(video["codec_name"]).lower()
    return {
        "duration": _parse_duration_value(fmt.get("duration")),
        "codec": codec,
        "has_faststart": _has_faststart(fmt),
        "width": _parse_int(video.get("width")) if video else None,
        "height": _parse_int(video.get("height")) if video else None,
    }


async def probe_video(data: bytes) -> Optional[VideoProbe]:
    if not has_command("ffprobe"):
        return None
    path = write_temp_file(data)
    try:
        result = await run_tool(
            [
                "ffprobe",
                "-v",
                "error",
                "-show_format",
                "-show_streams",
                "-of",
                "json",
                path,
            ]
        )
        if result["returncode"] != 0:
            logging.info("ffprobe failed: %s", _stderr_tail(result["stderr"]))
            return None
        payload = json.loads(result["stdout"].decode("utf-8", "replace") or "{}")
        if not isinstance(payload, dict):
            return None
        return parse_video_probe(payload)
    except (MediaCommandError, ValueError) as exc:
        logging.info("video probe failed: %s", exc)
        return None
    finally:
        cleanup_temp_files(path)


async def probe_image(data: bytes) -> Optional[ImageProbe]:
    if not (has_command("magick") or has_command("identify")):
        return None
    path = write_temp_file(data)
    try:
        result = await run_tool(
            [*_imagemagick_command("identify"), "-format", "%w %h", f"{path}[0]"]
        )
        if result["returncode"] != 0:
            logging.info("identify failed: %s", _stderr_tail(result["stderr"]))
            return None
        parts = result["stdout"].decode("utf-8", "replace").split()
        if len(parts) < 2:
            return None
        return {"width": _parse_int(parts[0]), "height": _parse_int(parts[1])}
    except MediaCommandError as exc:
        logging.info("image probe failed: %s", exc)
        return None
    finally:
        cleanup_temp_files(path)


async def _run_image_convert(data: bytes, ext: str, options: Sequence[str]) -> bytes:
    input_path = write_temp_file(data)
    output_path = temp_path("convert", ext)
    try:
        await run_media_command(
            [*_imagemagick_command("convert"), input_path, *options, output_path]
        )
        return read_file_bytes(output_path)
    finally:
        cleanup_temp_files(input_path, output_path)


async def convert_to_jpeg(data: bytes, quality: int = 90) -> bytes:
    return await _run_image_convert(data, "jpg", ["-quality", str(quality)])


async def convert_to_webp(data: bytes, quality: int = 85) -> bytes:
    return await _run_image_convert(data, "webp", ["-quality", str(quality)])


async def convert_to_png(data: bytes) -> bytes:
    return await _run_image_convert(data, "png", [])


async def convert(
    data: bytes, fmt: str, quality: str, scale: Optional[str] = None
) -> bytes:
    options: List[str] = []
    if scale:
        options += ["-resize", scale]
    options += ["-quality", str(QUALITY_IMG[quality])]
    ext = "jpg" if fmt == "jpeg" else fmt
    return await _run_image_convert(data, ext, options)


def image_scale_for(resolution: str, height: Optional[int]) -> Optional[str]:
    if resolution in _PERCENT_RESOLUTIONS:
        return resolution
    target = _NAMED_RESOLUTION_HEIGHTS.get(resolution)
    if target is None:
        return None
    if height is None:
        # ImageMagick's ">" geometry flag only ever shrinks.
        return f"x{target}>"
    return f"x{target}" if height > target else None


def image_needs_processing(config: ShareConfig) -> bool:
    return (
        config["format"] != "original"
        or config["resolution"] != "original"
        or config["image_quality"] != "balanced"
    )


async def process_image(
    data: bytes, mime_type: str, config: ShareConfig
) -> Tuple[bytes, str]:
    if not image_needs_processing(config):
        return data, mime_type

    scale: Optional[str] = None
    if config["resolution"] != "original":
        probe = await probe_image(data)
        scale = image_scale_for(config["resolution"], probe["height"] if probe else None)

    target = (
        get_default_image_format(mime_type)
        if config["format"] == "original"
        else config["format"]
    )
    result = await convert(data, target, config["image_quality"], scale)
    return result, get_mime_for_format(target) or mime_type


def get_scale_filter(resolution: str) -> Optional[str]:
    return _SCALE_FILTERS.get(resolution)


def output_container(fmt: str) -> str:
    return "webm" if fmt == "webm" else "mp4"


def build_encode_command(
    input_path: str, output_path: str, settings: VideoEncodeSettings, encoder: str
) -> List[str]:
    is_webm = output_container(settings["format"]) == "webm"
    crf = int(settings["crf"])
    cmd = ["ffmpeg", "-y", "-i", input_path]

    if is_webm:
        cmd += ["-c:v", "libvpx-vp9", "-crf", str(crf), "-b:v", "0"]
    elif encoder == "av1":
        cmd += ["-c:v", "libsvtav1", "-crf", str(crf), "-preset", "6"]
    elif encoder == "nvenc":
        # NVENC has no CRF; constant QP one step above is roughly equivalent.
        cmd += ["-c:v", "h264_nvenc", "-qp", str(crf + 1), "-preset", "p4"]
    else:
        cmd += ["-c:v", "libx264", "-crf", str(crf), "-preset", "medium"]
    if not is_webm:
        cmd += ["-pix_fmt", "yuv420p"]

    if settings["fps"] != "original":
        cmd += ["-r", str(settings["fps"])]

    cmd += ["-vf", get_scale_filter(settings["resolution"]) or EVEN_SCALE_FILTER]

    if settings["remove_audio"]:
        cmd.append("-an")
    elif is_webm:
        cmd += ["-c:a", "libopus", "-b:a", AUDIO_BITRATE]
    else:
        cmd += ["-c:a", "aac", "-b:a", AUDIO_BITRATE]

    if not is_webm:
        cmd += ["-movflags", "+faststart"]
    cmd.append(output_path)
    return cmd


async def encode_with_encoder(
    data: bytes,
    settings: VideoEncodeSettings,
    encoder: str,
    duration: Optional[float] = None,
    on_progress: Optional[ProgressFunc] = None,
) -> bytes:
    input_path = write_temp_file(data)
    output_path = temp_path("reencode", output_container(settings["format"]))
    try:
        cmd = build_encode_command(input_path, output_path, settings, encoder)
        if on_progress is not None and duration and duration > 0:
            await run_ffmpeg_with_progress(cmd, duration, on_progress)
        else:
            await run_media_command(cmd)
        return read_file_bytes(output_path)
    finally:
        cleanup_temp_files(input_path, output_path)


async def encode(
    data: bytes,
    settings: VideoEncodeSettings,
    duration: Optional[float] = None,
    on_progress: Optional[ProgressFunc] = None,
) -> bytes:
    encoder = _ENCODER_ALIASES.get(settings["encoder"], settings["encoder"])
    if encoder in ("nvenc", "av1"):
        try:
            return await encode_with_encoder(
                data, settings, encoder, duration, on_progress
            )
        except Exception as exc:
            logging.warning("%s encode failed (%s); retrying with cpu", encoder, exc)
    return await encode_with_encoder(data, settings, "cpu", duration, on_progress)


async def remux(data: bytes, container: str = "mp4") -> bytes:
    input_path = write_temp_file(data)
    output_path = temp_path("remux", container)
    try:
        cmd = ["ffmpeg", "-y", *FFMPEG_INPUT_FLAGS, "-i", input_path, "-c", "copy"]
        if container == "mp4":
            cmd += ["-movflags", "+faststart"]
        cmd.append(output_path)
        await run_media_command(cmd)
        return read_file_bytes(output_path)
    finally:
        cleanup_temp_files(input_path, output_path)


async def add_faststart(data: bytes) -> bytes:
    input_path = write_temp_file(data)
    output_path = temp_path("faststart", "mp4")
    try:
        await run_media_command(
            [
                "ffmpeg",
                "-y",
                "-i",
                input_path,
                "-c",
                "copy",
                "-movflags",
                "+faststart",
                output_path,
            ]
        )
        return read_file_bytes(output_path)
    finally:
        cleanup_temp_files(input_path, output_path)


def _gif_filters(settings: GifSettings) -> str:
    scale = (
        f"scale={settings['width']}:-1:flags=lanczos"
        if settings["width"]
        else "scale=iw:ih:flags=lanczos"
    )
    return f"fps={settings['fps']},{scale}"


async def convert_to_gif(data: bytes, settings: GifSettings) -> bytes:
    input_path = write_temp_file(data)
    palette_path = temp_path("palette", "png")
    output_path = temp_path("gif", "gif")
    filters = _gif_filters(settings)
    try:
        await run_media_command(
            ["ffmpeg", "-y", "-i", input_path, "-vf", f"{filters},palettegen", palette_path]
        )
        await run_media_command(
            [
                "ffmpeg",
                "-y",
                "-i",
                input_path,
                "-i",
                palette_path,
                "-lavfi",
                f"{filters}[x];[x][1:v]paletteuse",
                output_path,
            ]
        )
        return read_file_bytes(output_path)
    finally:
        cleanup_temp_files(input_path, palette_path, output_path)


def _is_incompatible_codec(codec: Optional[str]) -> bool:
    return bool(codec) and codec in INCOMPATIBLE_VIDEO_CODECS


def video_needs_reencode(config: ShareConfig) -> bool:
    return (
        config["format"] != "original"
        or config["resolution"] != "original"
        or config["fps"] != "original"
        or config["remove_audio"]
        or config["crf"] != DEFAULT_CRF
    )


def encode_settings_from_config(config: ShareConfig) -> VideoEncodeSettings:
    return {
        "format": config["format"],
        "resolution": config["resolution"],
        "fps": config["fps"],
        "remove_audio": config["remove_audio"],
        "encoder": config["encoder"],
        "crf": config["crf"],
    }


async def process_video(
    data: bytes,
    mime_type: str,
    config: ShareConfig,
    on_progress: Optional[ProgressFunc] = None,
) -> Tuple[bytes, str]:
    if config["format"] == "gif":
        gif = await convert_to_gif(
            data, {"fps": config["gif_fps"], "width": config["gif_width"]}
        )
        return gif, "image/gif"

    probe = await probe_video(data)
    if (
        not video_needs_reencode(config)
        and probe is not None
        and probe["has_faststart"]
        and probe["duration"] is not None
        and not _is_incompatible_codec(probe["codec"])
    ):
        return data, "video/mp4" if mime_type in MP4_FAMILY_MIMES else mime_type

    duration = probe["duration"] if probe else None
    result = await encode(data, encode_settings_from_config(config), duration, on_progress)
    return result, "video/webm" if config["format"] == "webm" else "video/mp4"


async def detect_available_encoders() -> List[str]:
    available = ["cpu"]
    if not has_command("ffmpeg"):
        return available
    try:
        result = await run_tool(["ffmpeg", "-hide_banner", "-encoders"])
    except MediaCommandError as exc:
        logging.info("encoder detection failed: %s", exc)
        return available
    listing = result["stdout"].decode("utf-8", "replace")
    if "h264_nvenc" in listing:
        available.append("nvenc")
    if "libsvtav1" in listing or "libaom-av1" in listing:
        available.append("av1")
    return available


# Quality probing: estimate the full-asset output size for each candidate CRF
# from a short sample instead of encoding the whole file eight times.


async def extract_sample_to_path(
    data: bytes, duration: float, total_duration: float
) -> Tuple[str, float]:
    """Cut ``duration`` seconds from the middle of the video into a scratch MP4.

    The sample is re-encoded with libx264 so every probe encode starts from a
    decodable H.264 stream regardless of the source codec. Returns the sample
    path and its actual duration; the caller owns (and must delete) the file.
    """

    actual = min(duration, total_duration)
    start = max(0.0, total_duration / 2 - actual / 2)
    input_path = write_temp_file(data)
    output_path = temp_path("sample", "mp4")
    try:
        await run_media_command(
            [
                "ffmpeg",
                "-y",
                "-ss",
                f"{start:.3f}",
                "-i",
                input_path,
                "-t",
                f"{actual:.3f}",
                "-vf",
                EVEN_SCALE_FILTER,
                "-c:v",
                "libx264",
                "-crf",
                str(DEFAULT_CRF),
                "-preset",
                "ultrafast",
                "-an",
                "-movflags",
                "+faststart",
                output_path,
            ]
        )
    except Exception:
        cleanup_temp_files(output_path)
        raise
    finally:
        cleanup_temp_files(input_path)
    return output_path, actual


def build_probe_command(
    sample_path: str,
    output_path: str,
    crf: int,
    settings: VideoEncodeSettings,
    encoder: str,
) -> List[str]:
    cmd = ["ffmpeg", "-y", "-i", sample_path]
    if encoder == "nvenc":
        cmd += ["-c:v", "h264_nvenc", "-qp", str(crf + 1), "-preset", "p1"]
    else:
        cmd += ["-c:v", "libx264", "-crf", str(crf), "-preset", "ultrafast"]
    scale = get_scale_filter(settings["resolution"])
    if scale:
        cmd += ["-vf", scale]
    if settings["fps"] != "original":
        cmd += ["-r", str(settings["fps"])]
    cmd += ["-an", "-movflags", "+faststart", output_path]
    return cmd


def estimate_from_sample(
    crf: int,
    sample_size: int,
    sample_duration: float,
    full_duration: float,
    encode_time: float,
) -> QualityProbeResult:
    # Linear extrapolation; assumes the sample is as complex as the whole asset.
    ratio = full_duration / sample_duration
    return {
        "crf": crf,
        "sample_size": sample_size,
        "sample_duration": sample_duration,
        "encode_time": encode_time,
        "estimated_full_size": int(round(sample_size * ratio)),
        "estimated_full_time": encode_time * ratio,
    }


async def probe_quality_from_path(
    sample_path: str,
    sample_duration: float,
    full_duration: float,
    crf: int,
    settings: VideoEncodeSettings,
    encoder: str = "cpu",
) -> QualityProbeResult:
    output_path = temp_path("probe", "mp4")
    started = time.monotonic()
    try:
        await run_media_command(
            build_probe_command(sample_path, output_path, crf, settings, encoder)
        )
        size = os.path.getsize(output_path)
    finally:
        cleanup_temp_files(output_path)
    encode_time = time.monotonic() - started
    return estimate_from_sample(crf, size, sample_duration, full_duration, encode_time)


async def run_adaptive_probe(
    data: bytes,
    settings: VideoEncodeSettings,
    on_progress: Optional[Callable[[int, int], None]] = None,
    crf_values: Sequence[int] = PROBE_CRF_VALUES,
) -> List[QualityProbeResult]:
    """Probe every CRF in ``crf_values`` concurrently against one shared sample.

    A candidate whose encode fails is logged and left out, so the returned
    list can be shorter than ``crf_values``. Results are sorted by CRF.
    """

    probe = await probe_video(data)
    full_duration = (
        probe["duration"]
        if probe is not None and probe["duration"]
        else PROBE_FALLBACK_DURATION
    )
    sample_duration = min(PROBE_DURATION, full_duration / 3)
    encoder = "nvenc" if "nvenc" in await detect_available_encoders() else "cpu"
    logging.info(
        "quality probe: %.1fs sample of %.1fs using %s",
        sample_duration,
        full_duration,
        encoder,
    )

    sample_path, actual_duration = await extract_sample_to_path(
        data, sample_duration, full_duration
    )
    total = len(crf_values)
    completed = 0

    async def _probe(crf: int) -> QualityProbeResult:
        nonlocal completed
        try:
            return await probe_quality_from_path(
                sample_path, actual_duration, full_duration, crf, settings, encoder
            )
        finally:
            completed += 1
            if on_progress is not None:
                on_progress(completed, total)

    try:
        outcomes = await asyncio.gather(
            *(_probe(crf) for crf in crf_values), return_exceptions=True
        )
    finally:
        cleanup_temp_files(sample_path)

    results: List[QualityProbeResult] = []
    for crf, outcome in zip(crf_values, outcomes):
        if isinstance(outcome, Exception):
            logging.warning("quality probe at CRF %d failed: %s", crf, outcome)
            continue
        if isinstance(outcome, BaseException):
            raise outcome
        results.append(outcome)
    return sorted(results, key=lambda r: r["crf"])


def generate_size_targets(results: Sequence[QualityProbeResult]) -> List[int]:
    if not results:
        return []
    sizes = [r["estimated_full_size"] for r in results]
    lo, hi = min(sizes), max(sizes)
    targets = [
        mb * 1024 * 1024
        for mb in SIZE_TARGET_TIERS_MB
        if lo * (1 - SIZE_TARGET_MARGIN) <= mb * 1024 * 1024 <= hi * (1 + SIZE_TARGET_MARGIN)
    ]
    if len(targets) < 2:
        return sorted({lo, hi})
    return targets


def select_crf_for_target(
    target_size: int, results: Sequence[QualityProbeResult]
) -> int:
    if not results:
        raise ValueError("no quality probe results to select from")
    ordered = sorted(results, key=lambda r: r["crf"])
    for result in ordered:
        if result["estimated_full_size"] <= target_size:
            return result["crf"]
    return ordered[-1]["crf"]


def pick_balanced_crf(results: Sequence[QualityProbeResult]) -> int:
    ordered = sorted(results, key=lambda r: r["crf"])
    return ordered[len(ordered) // 2]["crf"]


def _container_for_remux(mime_type: str) -> str:
    if mime_type == "video/webm":
        return "webm"
    if mime_type == "video/x-matroska":
        return "mkv"
    return "mp4"


async def _reencode_compatible(data: bytes) -> bytes:
    settings: VideoEncodeSettings = {
        "format": "mp4",
        "resolution": "original",
        "fps": "original",
        "remove_audio": False,
        "encoder": "cpu",
        "crf": DEFAULT_CRF,
    }
    return await encode(data, settings)


def detect_video_issues(
    probe: Optional[VideoProbe], mime_type: str = "video/mp4"
) -> List[MediaIssue]:
    if probe is None:
        return []

    issues: List[MediaIssue] = []
    if probe["duration"] is None:
        container = _container_for_remux(mime_type)

        async def _remux(data: bytes) -> bytes:
            return await remux(data, container)

        issues.append(
            {
                "id": "missing-duration",
                "description": "Missing duration metadata",
                "severity": "error",
                "fix": _remux,
                "mime_type": "video/mp4" if container == "mp4" else mime_type,
            }
        )
    elif not probe["has_faststart"]:
        issues.append(
            {
                "id": "missing-streaming-flag",
                "description": "Not optimized for streaming",
                "severity": "warning",
                "fix": add_faststart,
                "mime_type": "video/mp4",
            }
        )

    if _is_incompatible_codec(probe["codec"]):
        issues.append(
            {
                "id": "incompatible-codec",
                "description": f"Codec '{probe['codec']}' has limited browser support",
                "severity": "warning",
                "fix": _reencode_compatible,
                "mime_type": "video/mp4",
            }
        )
    return issues


def detect_image_issues(mime_type: str) -> List[MediaIssue]:
    if mime_type in ("image/heic", "image/heif"):
        return [
            {
                "id": "heic-compat",
                "description": "HEIC not supported in browsers",
                "severity": "error",
                "fix": convert_to_jpeg,
                "mime_type": "image/jpeg",
            }
        ]
    if mime_type == "image/avif":
        return [
            {
                "id": "avif-compat",
                "description": "AVIF has limited browser support",
                "severity": "warning",
                "fix": convert_to_webp,
                "mime_type": "image/webp",
            }
        ]
    if mime_type == "image/bmp":
        return [
            {
                "id": "bmp-compat",
                "description": "BMP is inefficient for web",
                "severity": "warning",
                "fix": convert_to_png,
                "mime_type": "image/png",
            }
        ]
    return []


async def detect_issues(data: bytes, mime_type: str) -> List[MediaIssue]:
    if is_video_mime(mime_type):
        return detect_video_issues(await probe_video(data), mime_type)
    if is_image_mime(mime_type):
        return detect_image_issues(mime_type)
    return []


def read_from_file(path: str) -> UploadSource:
    p = pathlib.Path(path).expanduser()
    if not p.is_file():
        raise SourceError(f"File not found: {path}")
    try:
        data = p.read_bytes()
    except OSError as exc:
        raise SourceError(f"Failed to read {path}: {exc}") from exc
    return {"buffer": data, "filename": p.name, "mime_type": detect_mime_type(data, p.name)}


def has_stdin_data() -> bool:
    try:
        if sys.stdin is None or sys.stdin.isatty():
            return False
        mode = os.fstat(sys.stdin.fileno()).st_mode
    except (OSError, ValueError):
        return False
    return stat.S_ISFIFO(mode) or stat.S_ISSOCK(mode)


def read_from_stdin() -> UploadSource:
    data = sys.stdin.buffer.read()
    if not data:
        raise SourceError("No data received from stdin")
    return {"buffer": data, "filename": None, "mime_type": detect_mime_type(data)}


def _source_from_clipboard_text(text: str) -> UploadSource:
    stripped = text.strip()
    if not stripped:
        raise SourceError("Clipboard is empty or contains unsupported data")
    if stripped.startswith("/") and os.path.isfile(stripped):
        return read_from_file(stripped)
    return {"buffer": text.encode("utf-8"), "filename": None, "mime_type": "text/plain"}


async def _xclip_output(target: Optional[str] = None) -> bytes:
    cmd = ["xclip", "-selection", "clipboard"]
    if target:
        cmd += ["-t", target]
    cmd.append("-o")
    result = await run_tool(cmd)
    if result["returncode"] != 0:
        return b""
    return result["stdout"]


async def read_from_clipboard() -> UploadSource:
    if IS_WSL or IS_WINDOWS:
        result = await run_tool(
            ["powershell.exe", "-NoProfile", "-Command", "Get-Clipboard -Raw"]
        )
        text = result["stdout"].decode("utf-8", "replace").replace("\r\n", "\n")
        if result["returncode"] != 0 or not text.strip():
            raise SourceError("Clipboard is empty")
        return _source_from_clipboard_text(text)

    if IS_MACOS:
        result = await run_tool(["pbpaste"])
        return _source_from_clipboard_text(result["stdout"].decode("utf-8", "replace"))

    if not has_command("xclip"):
        raise SourceError("xclip is required to read the clipboard")

    targets = (await _xclip_output("TARGETS")).decode("utf-8", "replace").split()
    if "text/uri-list" in targets or "x-special/gnome-copied-files" in targets:
        uris = (await _xclip_output("text/uri-list")).decode("utf-8", "replace")
        first = uris.strip().splitlines()[0] if uris.strip() else ""
        file_path = re.sub(r"^file://", "", first).strip()
        if file_path and os.path.isfile(file_path):
            return read_from_file(file_path)

    image_target = next((t for t in targets if t.startswith("image/")), None)
    if image_target:
        data = await _xclip_output(image_target)
        if data:
            return {
                "buffer": data,
                "filename": f"paste.{get_extension_for_mime(image_target)}",
                "mime_type": image_target,
            }

    text = (await _xclip_output()).decode("utf-8", "replace")
    return _source_from_clipboard_text(text)


async def copy_to_clipboard(text: str) -> bool:
    if IS_WSL or IS_WINDOWS:
        cmd = ["clip.exe"]
    elif IS_MACOS:
        cmd = ["pbcopy"]
    else:
        cmd = ["xclip", "-selection", "clipboard"]
    try:
        result = await run_tool(cmd, stdin=text.encode("utf-8"), capture=False)
    except MediaCommandError as exc:
        logging.warning("failed to copy to clipboard: %s", exc)
        return False
    if result["returncode"] != 0:
        logging.warning("%s exited %d while copying to clipboard", cmd[0], result["returncode"])
        return False
    return True


def resolve_source_config(path: Optional[str]) -> SourceConfig:
    if path:
        return {"type": "file", "path": path}
    if has_stdin_data():
        return {"type": "stdin"}
    return {"type": "clipboard"}


async def read_source(source: SourceConfig) -> UploadSource:
    kind = source["type"]
    if kind == "file":
        path = source.get("path")
        if not path:
            raise SourceError("File path required for file source")
        return read_from_file(path)
    if kind == "stdin":
        return read_from_stdin()
    if kind == "clipboard":
        return await read_from_clipboard()
    raise SourceError(f"Unknown source type: {kind}")


def _extension_for(mime_type: str, filename: Optional[str]) -> str:
    if mime_type in MIME_EXTENSIONS:
        return MIME_EXTENSIONS[mime_type]
    if filename:
        ext = pathlib.PurePath(filename).suffix.lstrip(".")
        if ext:
            return ext.lower()
    return "bin"


def generate_filename(
    original: Optional[str], mime_type: str, config: ShareConfig
) -> str:
    ext = _extension_for(mime_type, original)
    if config["random_filename"] or not original:
        return f"{random_id()}.{ext}"

    base = sanitize_base(pathlib.PurePath(original).stem)
    if config["normalize_filename"]:
        base = normalize_filename(base) or "file"
    candidate = f"{base}.{ext}"
    if has_random_suffix(candidate):
        return candidate
    return f"{base}-{random_id()}.{ext}"


_CREDENTIALS: Optional[Credentials] = None
_CREDENTIALS_LOCK = threading.Lock()


def _fetch_doppler_secrets() -> Dict[str, Any]:
    if not has_command("doppler"):
        return {}
    cmd = ["doppler", "secrets", "download", "--format", "json", "--no-file"]
    _print_command(cmd)
    try:
        proc = subprocess.run(
            cmd,
            check=True,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            timeout=REQUEST_TIMEOUT,
        )
    except (subprocess.CalledProcessError, subprocess.TimeoutExpired, OSError) as exc:
        raise CredentialsError(f"Failed to fetch Doppler secrets: {exc}") from exc
    try:
        data = json.loads(proc.stdout.decode("utf-8", "replace") or "{}")
    except ValueError as exc:
        raise CredentialsError(f"Failed to parse Doppler secrets: {exc}") from exc
    return data if isinstance(data, dict) else {}


def _load_credentials() -> Credentials:
    values = {key: os.environ.get(key, "").strip() for key in REQUIRED_CREDENTIALS}
    if not all(values.values()):
        secrets = _fetch_doppler_secrets()
        for key in REQUIRED_CREDENTIALS:
            if not values[key]:
                values[key] = str(secrets.get(key) or "").strip()
    missing = [key for key in REQUIRED_CREDENTIALS if not values[key]]
    if missing:
        raise CredentialsError(f"Missing R2 credentials: {', '.join(missing)}")
    return {
        "endpoint": values["R2_ENDPOINT"],
        "access_key_id": values["R2_ACCESS_KEY_ID"],
        "secret_access_key": values["R2_SECRET_ACCESS_KEY"],
        "bucket": values["R2_BUCKET"],
    }


def get_credentials() -> Credentials:
    global _CREDENTIALS
    with _CREDENTIALS_LOCK:
        if _CREDENTIALS is None:
            _CREDENTIALS = _load_credentials()
        return _CREDENTIALS


def build_object_key(filename: str, now: Optional[datetime] = None) -> str:
    when = now or datetime.now()
    return f"{when:%Y}/{when:%m}/{filename}"


def public_url(key: str) -> str:
    base = os.environ.get("SHARE_PUBLIC_URL", DEFAULT_PUBLIC_URL).rstrip("/")
    return f"{base}/{encode_url_path(key)}"


def _make_s3_client(credentials: Credentials) -> Any:
    return boto3.client(
        "s3",
        endpoint_url=credentials["endpoint"],
        aws_access_key_id=credentials["access_key_id"],
        aws_secret_access_key=credentials["secret_access_key"],
        region_name="auto",
        config=BotoConfig(
            connect_timeout=REQUEST_TIMEOUT,
            read_timeout=REQUEST_TIMEOUT,
            retries={"total_max_attempts": 1},
        ),
    )


def _run_in_daemon_thread(func: Callable[[], Any]) -> "asyncio.Future[Any]":
    loop = asyncio.get_running_loop()
    future: "asyncio.Future[Any]" = loop.create_future()

    def _resolve(result: Any, error: Optional[BaseException]) -> None:
        if future.done():
            return
        if error is not None:
            future.set_exception(error)
        else:
            future.set_result(result)

    def _deliver(result: Any, error: Optional[BaseException]) -> None:
        if not loop.is_closed():
            loop.call_soon_threadsafe(_resolve, result, error)

    def _target() -> None:
        try:
            result = func()
        except Exception as exc:
            _deliver(None, exc)
        else:
            _deliver(result, None)

    # A daemon thread lets a timed-out transfer be abandoned without blocking exit.
    threading.Thread(target=_target, name="share-upload", daemon=True).start()
    return future


async def upload_to_r2(
    data: bytes,
    filename: str,
    mime_type: str,
    on_progress: Optional[Callable[[int, int], None]] = None,
    *,
    timeout: Optional[float] = None,
) -> UploadResult:
    credentials = get_credentials()
    key = build_object_key(filename)
    limit = UPLOAD_TIMEOUT if timeout is None else timeout
    total = len(data)
    loop = asyncio.get_running_loop()
    lock = threading.Lock()
    loaded = 0

    def _callback(chunk: int) -> None:
        nonlocal loaded
        with lock:
            loaded += chunk
            current = loaded
        if on_progress is not None and not loop.is_closed():
            loop.call_soon_threadsafe(on_progress, current, total)

    def _transfer() -> None:
        client = _make_s3_client(credentials)
        client.upload_fileobj(
            io.BytesIO(data),
            credentials["bucket"],
            key,
            ExtraArgs={"ContentType": mime_type},
            Callback=_callback,
            Config=TransferConfig(multipart_threshold=MULTIPART_THRESHOLD),
        )

    logging.info("uploading %s (%d bytes, %s)", key, total, mime_type)
    started = time.monotonic()
    try:
        await asyncio.wait_for(_run_in_daemon_thread(_transfer), limit)
    except asyncio.TimeoutError:
        raise UploadError(f"Upload timeout after {limit:g}s") from None
    except ShareError:
        raise
    except Exception as exc:
        raise UploadError(f"Upload failed: {exc}") from exc
    logging.info("uploaded %s in %.2fs", key, time.monotonic() - started)
    return {"url": public_url(key), "key": key, "size": total}


class UI(ABC):
    interactive = False

    @abstractmethod
    def intro(self) -> None:
        ...

    @abstractmethod
    def show_source_info(self, mime_type: str, size: int) -> None:
        ...

    @abstractmethod
    def show_issues(self, issues: Sequence[MediaIssue]) -> None:
        ...

    @abstractmethod
    def show_probe_results(self, results: Sequence[QualityProbeResult]) -> None:
        ...

    @abstractmethod
    def show_dry_run_summary(self, config: ShareConfig, result: PipelineResult) -> None:
        ...

    @abstractmethod
    def show_result(self, result: PipelineResult) -> None:
        ...

    @abstractmethod
    def error(self, message: str) -> None:
        ...

    @abstractmethod
    def warn(self, message: str) -> None:
        ...

    @abstractmethod
    def info(self, message: str) -> None:
        ...

    @abstractmethod
    def spinner_start(self, message: str) -> None:
        ...

    @abstractmethod
    def spinner_update(self, message: str) -> None:
        ...

    @abstractmethod
    def spinner_stop(self, message: str) -> None:
        ...

    def close(self) -> None:
        pass

    def shutdown(self) -> None:
        self.close()

    def cancel(self, message: str = "Cancelled.") -> NoReturn:
        raise ShareCancelled(message)

    @abstractmethod
    def select(self, message: str, options: Sequence[Option], default: Any = None) -> Any:
        ...

    @abstractmethod
    def confirm(self, message: str, default: bool = True) -> bool:
        ...

    def on_processing_start(self) -> None:
        pass

    def on_processing_progress(self, percent: int) -> None:
        pass

    def on_processing_complete(self, size: int, seconds: float) -> None:
        pass

    def on_upload_start(self, filename: str) -> None:
        pass

    def on_upload_progress(self, loaded: int, total: int) -> None:
        pass

    def on_upload_complete(self, seconds: float) -> None:
        pass


def _dry_run_lines(config: ShareConfig, result: PipelineResult) -> List[str]:
    lines = [
        f"Filename: {result['key']}",
        f"Size: {format_bytes(result['processed_size'])}",
        f"MIME: {result['mime_type']}",
        f"Format: {config['format']}",
        f"Resolution: {config['resolution']}",
    ]
    if config["fps"] != "original":
        lines.append(f"FPS: {config['fps']}")
    if config["remove_audio"]:
        lines.append("Audio: removed")
    if config["encoder"] != "cpu":
        lines.append(f"Encoder: {config['encoder']}")
    if config["crf"] != DEFAULT_CRF:
        lines.append(f"CRF: {config['crf']}")
    return lines


class PlainUI(UI):
    def __init__(self, out: Optional[Any] = None, err: Optional[Any] = None) -> None:
        self.out = out
        self.err = err

    def _emit(self, message: str) -> None:
        print(message, file=self.err or sys.stderr)

    def intro(self) -> None:
        self._emit("share (non-interactive mode)")

    def show_source_info(self, mime_type: str, size: int) -> None:
        self._emit(f"Source: {mime_type} ({format_bytes(size)})")

    def show_issues(self, issues: Sequence[MediaIssue]) -> None:
        for issue in issues:
            prefix = "ERROR" if issue["severity"] == "error" else "WARN"
            self._emit(f"[{prefix}] {issue['description']}")

    def show_probe_results(self, results: Sequence[QualityProbeResult]) -> None:
        self._emit("Quality probe results:")
        self._emit("  CRF        Size   Encode")
        for r in results:
            size = format_bytes(r["estimated_full_size"]).rjust(10)
            self._emit(
                f"   {r['crf']:>2}  {size}   ~{format_seconds(r['estimated_full_time'])}"
            )

    def show_dry_run_summary(self, config: ShareConfig, result: PipelineResult) -> None:
        out = self.out or sys.stdout
        print("--- DRY RUN ---", file=out)
        for line in _dry_run_lines(config, result):
            print(line, file=out)

    def show_result(self, result: PipelineResult) -> None:
        print(result["url"], file=self.out or sys.stdout)

    def error(self, message: str) -> None:
        self._emit(f"Error: {message}")

    def warn(self, message: str) -> None:
        self._emit(f"Warning: {message}")

    def info(self, message: str) -> None:
        self._emit(message)

    def select(self, message: str, options: Sequence[Option], default: Any = None) -> Any:
        values = [opt[0] for opt in options]
        return default if default in values else values[0]

    def confirm(self, message: str, default: bool = True) -> bool:
        return default

    def spinner_start(self, message: str) -> None:
        self._emit(message)

    def spinner_update(self, message: str) -> None:
        pass

    def spinner_stop(self, message: str) -> None:
        self._emit(message)

    def on_processing_progress(self, percent: int) -> None:
        if percent % 20 == 0:
            self._emit(f"Processing... {percent}%")

    def on_processing_complete(self, size: int, seconds: float) -> None:
        self._emit(f"Processed: {format_bytes(size)} in {seconds:.1f}s")

    def on_upload_start(self, filename: str) -> None:
        self._emit(f"Uploading {filename}...")

    def on_upload_complete(self, seconds: float) -> None:
        self._emit(f"Uploaded in {seconds:.1f}s")


class RichUI(UI):
    interactive = True

    def __init__(
        self, console: Optional[Console] = None, input_stream: Optional[TextIO] = None
    ) -> None:
        self.console = console or Console()
        self.input_stream = input_stream
        self._status: Any = None

    def intro(self) -> None:
        self.console.print("[black on cyan] share [/black on cyan]")

    def show_source_info(self, mime_type: str, size: int) -> None:
        label = (mime_type.split("/")[-1] or "file").upper()
        self.console.print(f"[cyan]{label}[/cyan] [dim]({format_bytes(size)})[/dim]")

    def show_issues(self, issues: Sequence[MediaIssue]) -> None:
        for issue in issues:
            color = "red" if issue["severity"] == "error" else "yellow"
            self.console.print(f"[{color}]![/{color}] {issue['description']}")

    def show_probe_results(self, results: Sequence[QualityProbeResult]) -> None:
        table = Table(title="Quality probe")
        table.add_column("CRF", justify="right")
        table.add_column("Est. size", justify="right")
        table.add_column("Est. encode", justify="right")
        for r in results:
            table.add_row(
                str(r["crf"]),
                format_bytes(r["estimated_full_size"]),
                format_seconds(r["estimated_full_time"]),
            )
        self.console.print(table)

    def show_dry_run_summary(self, config: ShareConfig, result: PipelineResult) -> None:
        self.console.print("[yellow]Dry-run mode - skipping upload[/yellow]")
        self.console.print("[cyan]Configuration:[/cyan]")
        for line in _dry_run_lines(config, result):
            self.console.print(f"  {line}", highlight=False)
        self.console.print("[green]Done! (dry-run)[/green]")

    def show_result(self, result: PipelineResult) -> None:
        self.console.print(f"[cyan]{result['url']}[/cyan]", highlight=False)
        self.console.print("[dim]Copied to clipboard[/dim]")
        self.console.print("[green]Done![/green]")

    def error(self, message: str) -> None:
        self.console.print(f"[red]Error:[/red] {message}", highlight=False)

    def warn(self, message: str) -> None:
        self.console.print(f"[yellow]Warning:[/yellow] {message}", highlight=False)

    def info(self, message: str) -> None:
        self.console.print(message, highlight=False)

    def spinner_start(self, message: str) -> None:
        self.close()
        self._status = self.console.status(message)
        self._status.start()

    def spinner_update(self, message: str) -> None:
        if self._status is not None:
            self._status.update(message)

    def spinner_stop(self, message: str) -> None:
        self.close()
        self.console.print(f"[green]✓[/green] {message}", highlight=False)

    def close(self) -> None:
        if self._status is not None:
            self._status.stop()
            self._status = None

    def shutdown(self) -> None:
        self.close()
        if self.input_stream is not None:
            self.input_stream.close()
            self.input_stream = None

    def select(self, message: str, options: Sequence[Option], default: Any = None) -> Any:
        table = Table(show_header=False, box=None, padding=(0, 1))
        for idx, (_value, label, hint) in enumerate(options, 1):
            table.add_row(f"[cyan]{idx}[/cyan]", label, f"[dim]{hint}[/dim]" if hint else "")
        self.console.print(f"[bold]{message}[/bold]")
        self.console.print(table)
        default_index = next(
            (idx for idx, opt in enumerate(options, 1) if opt[0] == default), 1
        )
        try:
            choice = IntPrompt.ask(
                "Choice",
                console=self.console,
                choices=[str(i) for i in range(1, len(options) + 1)],
                default=default_index,
                show_choices=False,
                stream=self.input_stream,
            )
        except (KeyboardInterrupt, EOFError):
            self.cancel()
        return options[int(choice) - 1][0]

    def confirm(self, message: str, default: bool = True) -> bool:
        try:
            answer = Confirm.ask(
                message,
                console=self.console,
                default=default,
                stream=self.input_stream,
            )
        except (KeyboardInterrupt, EOFError):
            self.cancel()
        return bool(answer)

    def on_processing_start(self) -> None:
        self.spinner_start("Processing...")

    def on_processing_progress(self, percent: int) -> None:
        self.spinner_update(f"Processing... {percent}%")

    def on_processing_complete(self, size: int, seconds: float) -> None:
        self.spinner_stop(f"Processed [dim]({format_bytes(size)}, {seconds:.1f}s)[/dim]")

    def on_upload_start(self, filename: str) -> None:
        self.spinner_start(f"Uploading [dim]{filename}[/dim]...")

    def on_upload_progress(self, loaded: int, total: int) -> None:
        percent = int(loaded / total * 100) if total else 100
        self.spinner_update(f"Uploading... {percent}%")

    def on_upload_complete(self, seconds: float) -> None:
        self.spinner_stop(f"Uploaded [dim]({seconds:.1f}s)[/dim]")


def build_config_from_cli(
    cli_args: CliArgs, source: SourceConfig, issues: Sequence[MediaIssue]
) -> ShareConfig:
    crf = cli_args.get("crf")
    auto_fix = cli_args.get("auto_fix")
    return {
        "source": source,
        "dry_run": bool(cli_args.get("dry_run", False)),
        "format": cli_args.get("format") or "original",
        "resolution": cli_args.get("resolution") or "original",
        "fps": cli_args.get("fps") or "original",
        "remove_audio": bool(cli_args.get("remove_audio", False)),
        "encoder": cli_args.get("encoder") or "cpu",
        "crf": crf if crf is not None else DEFAULT_CRF,
        "gif_fps": cli_args.get("gif_fps") or DEFAULT_GIF_FPS,
        "gif_width": cli_args.get("gif_width"),
        "image_quality": cli_args.get("image_quality") or "balanced",
        "random_filename": bool(cli_args.get("random_filename", False)),
        "normalize_filename": bool(cli_args.get("normalize_filename", False)),
        "auto_fix": auto_fix if auto_fix is not None else bool(issues),
    }


def get_format_options(mime_type: str) -> List[Option]:
    options: List[Option] = [
        ("original", "Keep original", get_extension_for_mime(mime_type).upper())
    ]
    if is_image_mime(mime_type):
        if mime_type != "image/png":
            options.append(("png", "PNG", "lossless"))
        if mime_type != "image/jpeg":
            options.append(("jpeg", "JPEG", "smaller, lossy"))
        if mime_type != "image/webp":
            options.append(("webp", "WebP", "modern, efficient"))
    elif is_video_mime(mime_type):
        if mime_type != "video/mp4":
            options.append(("mp4", "MP4 (H.264)", "universal"))
        if mime_type != "video/webm":
            options.append(("webm", "WebM", "web-optimized"))
        options.append(("gif", "GIF", "animated, large files"))
    return options


def get_resolution_options(mime_type: str) -> List[Option]:
    options: List[Option] = [("original", "Keep original", None)]
    if is_image_mime(mime_type) or is_video_mime(mime_type):
        options += [
            ("1080p", "1080p", None),
            ("720p", "720p", None),
            ("480p", "480p", None),
            ("50%", "50% scale", None),
            ("25%", "25% scale", None),
        ]
    return options


def _should_probe(cli_args: CliArgs) -> bool:
    if cli_args.get("probe"):
        return True
    return cli_args.get("crf") is None and not cli_args.get("no_probe")


async def build_config_interactively(
    cli_args: CliArgs,
    source: SourceConfig,
    upload_source: UploadSource,
    issues: Sequence[MediaIssue],
    ui: UI,
) -> ShareConfig:
    mime_type = upload_source["mime_type"]
    is_image = is_image_mime(mime_type)
    is_video = is_video_mime(mime_type)
    config = build_config_from_cli(cli_args, source, issues)

    if not is_image and not is_video:
        return prompt_toggle_options(config, cli_args, issues, ui)

    format_options = get_format_options(mime_type)
    if len(format_options) > 1 and "format" not in cli_args:
        config["format"] = ui.select("Format", format_options, config["format"])

    if config["format"] == "gif":
        prompt_gif_options(config, cli_args, ui)

    if config["format"] != "gif" and "resolution" not in cli_args:
        resolution_options = get_resolution_options(mime_type)
        if len(resolution_options) > 1:
            config["resolution"] = ui.select(
                "Resolution", resolution_options, config["resolution"]
            )

    if is_video and config["format"] != "gif":
        config = await prompt_video_options(config, cli_args, upload_source, ui)

    if is_image and "image_quality" not in cli_args:
        config["image_quality"] = ui.select(
            "Quality",
            [
                ("high", "High quality", "larger file"),
                ("balanced", "Balanced", None),
                ("small", "Smaller file", "lower quality"),
            ],
            config["image_quality"],
        )

    return prompt_toggle_options(config, cli_args, issues, ui)


def prompt_gif_options(config: ShareConfig, cli_args: CliArgs, ui: UI) -> ShareConfig:
    if "gif_fps" not in cli_args:
        config["gif_fps"] = ui.select(
            "GIF frame rate",
            [
                (15, "15 fps", "smaller file"),
                (10, "10 fps", "smallest"),
                (24, "24 fps", "smoother, larger"),
            ],
            config["gif_fps"],
        )
    if "gif_width" not in cli_args:
        config["gif_width"] = ui.select(
            "GIF width",
            [
                (None, "Original", None),
                (640, "640px", None),
                (480, "480px", None),
                (320, "320px", "smallest"),
            ],
            config["gif_width"],
        )
    return config


async def prompt_video_options(
    config: ShareConfig, cli_args: CliArgs, upload_source: UploadSource, ui: UI
) -> ShareConfig:
    if "fps" not in cli_args:
        config["fps"] = ui.select(
            "Frame rate",
            [
                ("original", "Keep original", None),
                ("30", "30 fps", "recommended for UI"),
                ("24", "24 fps", "cinematic"),
                ("15", "15 fps", "smallest size"),
            ],
            config["fps"],
        )

    if "remove_audio" not in cli_args:
        config["remove_audio"] = ui.confirm("Remove audio track?", default=True)

    if "encoder" not in cli_args:
        available = await detect_available_encoders()
        options: List[Option] = [("cpu", "CPU (H.264)", "universal compatibility")]
        if "nvenc" in available:
            options.insert(0, ("nvenc", "NVENC (GPU)", "10-50x faster"))
        if "av1" in available:
            options.append(("av1", "AV1", "30-50% smaller, slow encode"))
        if len(options) > 1:
            config["encoder"] = ui.select("Encoder", options, config["encoder"])

    if _should_probe(cli_args):
        config = await run_quality_probe(
            config, upload_source["buffer"], ui, cli_args.get("target_size")
        )
    return config


async def _collect_probe_results(
    config: ShareConfig, data: bytes, ui: UI
) -> List[QualityProbeResult]:
    ui.spinner_start("Analyzing quality options...")

    def _progress(current: int, total: int) -> None:
        ui.spinner_update(f"Analyzing quality options... ({current}/{total})")

    try:
        results = await run_adaptive_probe(
            data, encode_settings_from_config(config), _progress
        )
    except ShareError as exc:
        ui.spinner_stop("Analysis failed, using defaults")
        ui.warn(str(exc))
        return []
    ui.spinner_stop("Analysis complete")
    if results:
        ui.show_probe_results(results)
    return results


async def run_quality_probe(
    config: ShareConfig, data: bytes, ui: UI, target_size: Optional[int] = None
) -> ShareConfig:
    results = await _collect_probe_results(config, data, ui)
    if not results:
        return config

    if target_size is not None:
        config["crf"] = select_crf_for_target(target_size, results)
        return config

    options: List[Option] = [
        (t, f"Under {format_bytes(t)}", f"CRF {select_crf_for_target(t, results)}")
        for t in generate_size_targets(results)
    ]
    options.append(("manual", "Pick CRF manually", None))
    selection = ui.select("Target size", options)

    if selection == "manual":
        crf_options: List[Option] = [
            (r["crf"], f"CRF {r['crf']}", f"~{format_bytes(r['estimated_full_size'])}")
            for r in results
        ]
        config["crf"] = ui.select("Quality (CRF)", crf_options, config["crf"])
    else:
        config["crf"] = select_crf_for_target(int(selection), results)
    return config


async def run_non_interactive_probe(
    config: ShareConfig, data: bytes, ui: UI, target_size: Optional[int] = None
) -> ShareConfig:
    results = await _collect_probe_results(config, data, ui)
    if not results:
        return config
    if target_size is not None:
        config["crf"] = select_crf_for_target(target_size, results)
        ui.info(f"Selected CRF {config['crf']} (target {format_bytes(target_size)})")
    else:
        config["crf"] = pick_balanced_crf(results)
        ui.info(f"Selected CRF {config['crf']} (balanced quality)")
    return config


def prompt_toggle_options(
    config: ShareConfig, cli_args: CliArgs, issues: Sequence[MediaIssue], ui: UI
) -> ShareConfig:
    if "auto_fix" not in cli_args and issues:
        config["auto_fix"] = ui.confirm(
            f"Auto-fix {len(issues)} issue(s)?", default=config["auto_fix"]
        )
    if "random_filename" not in cli_args:
        config["random_filename"] = ui.confirm(
            "Random filename?", default=config["random_filename"]
        )
    if "normalize_filename" not in cli_args and not config["random_filename"]:
        config["normalize_filename"] = ui.confirm(
            "Normalize filename (lowercase, no spaces)?",
            default=config["normalize_filename"],
        )
    return config


async def apply_fixes(
    data: bytes, mime_type: str, issues: Sequence[MediaIssue]
) -> Tuple[bytes, str]:
    for issue in issues:
        logging.info("applying fix for %s", issue["id"])
        data = await issue["fix"](data)
        if issue["mime_type"]:
            mime_type = issue["mime_type"]
    return data, mime_type


def needs_processing(config: ShareConfig, mime_type: str) -> bool:
    if is_video_mime(mime_type):
        return video_needs_reencode(config)
    if is_image_mime(mime_type):
        return image_needs_processing(config)
    return False


async def process_media(
    data: bytes,
    mime_type: str,
    config: ShareConfig,
    on_progress: Optional[ProgressFunc] = None,
) -> Tuple[bytes, str]:
    if not needs_processing(config, mime_type):
        return data, mime_type
    if is_video_mime(mime_type):
        return await process_video(data, mime_type, config, on_progress)
    if is_image_mime(mime_type):
        return await process_image(data, mime_type, config)
    return data, mime_type


async def run_pipeline(
    config: ShareConfig,
    source: UploadSource,
    issues: Sequence[MediaIssue],
    ui: UI,
) -> PipelineResult:
    data = source["buffer"]
    mime_type = source["mime_type"]

    if config["auto_fix"] and issues:
        ui.spinner_start("Applying fixes...")
        data, mime_type = await apply_fixes(data, mime_type, issues)
        ui.spinner_stop(f"Applied {len(issues)} fix(es)")

    ui.on_processing_start()
    started = time.monotonic()
    data, mime_type = await process_media(
        data, mime_type, config, ui.on_processing_progress
    )
    processing_time = time.monotonic() - started
    ui.on_processing_complete(len(data), processing_time)

    filename = generate_filename(source["filename"], mime_type, config)

    if config["dry_run"]:
        return {
            "url": DRY_RUN_URL,
            "key": filename,
            "original_size": len(source["buffer"]),
            "processed_size": len(data),
            "processing_time": processing_time,
            "mime_type": mime_type,
        }

    ui.on_upload_start(filename)
    upload_started = time.monotonic()
    uploaded = await upload_to_r2(data, filename, mime_type, ui.on_upload_progress)
    ui.on_upload_complete(time.monotonic() - upload_started)

    if not await copy_to_clipboard(uploaded["url"]):
        ui.warn("Could not copy the URL to the clipboard")

    return {
        "url": uploaded["url"],
        "key": uploaded["key"],
        "original_size": len(source["buffer"]),
        "processed_size": uploaded["size"],
        "processing_time": processing_time,
        "mime_type": mime_type,
    }


def _size_threshold(mime_type: str) -> int:
    if is_image_mime(mime_type):
        return SIZE_THRESHOLDS["image"]
    if is_video_mime(mime_type):
        return SIZE_THRESHOLDS["video"]
    return SIZE_THRESHOLDS["other"]


def _choice_type(
    choices: Sequence[str], aliases: Dict[str, str]
) -> Callable[[str], str]:
    def _parse(value: str) -> str:
        key = value.strip().lower()
        key = aliases.get(key, key)
        if key not in choices:
            raise argparse.ArgumentTypeError(
                f"invalid choice: {value!r} (choose from {', '.join(choices)})"
            )
        return key

    return _parse


def _env_float(name: str, default: Optional[float]) -> Optional[float]:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        logging.warning("ignoring invalid %s=%r", name, raw)
        return default


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog="share",
        description="Upload a file, stdin, or the clipboard to R2 and copy the URL to the clipboard. Media is checked for compatibility issues and can be converted before upload.",
    )
    ap.add_argument("file", nargs="?", help="File to upload (default: stdin or clipboard).")
    ap.add_argument(
        "--dry-run",
        action="store_true",
        help="Process locally and print the result without uploading.",
    )
    ap.add_argument(
        "--format",
        type=_choice_type(FORMAT_CHOICES, _FORMAT_ALIASES),
        help=f"Output format. Choices: {', '.join(FORMAT_CHOICES)}.",
    )
    ap.add_argument(
        "--resolution",
        type=_choice_type(RESOLUTION_CHOICES, _RESOLUTION_ALIASES),
        help=f"Output resolution. Choices: {', '.join(RESOLUTION_CHOICES)}.",
    )
    ap.add_argument(
        "--fps",
        type=_choice_type(FPS_CHOICES, _FPS_ALIASES),
        help=f"Video frame rate. Choices: {', '.join(FPS_CHOICES)}.",
    )
    ap.add_argument(
        "--encoder",
        type=_choice_type(ENCODER_CHOICES, _ENCODER_ALIASES),
        help="Video encoder: cpu, nvenc (hardware), av1.",
    )
    ap.add_argument(
        "--crf",
        type=int,
        help="Video quality (0-51, lower is better). Skips quality probing.",
    )
    ap.add_argument(
        "--probe",
        dest="probe",
        action="store_true",
        default=None,
        help="Force quality probing across several CRF values.",
    )
    ap.add_argument(
        "--no-probe",
        dest="no_probe",
        action="store_true",
        default=None,
        help="Skip quality probing and use the default CRF.",
    )
    ap.add_argument(
        "--target-size",
        type=parse_size,
        default=None,
        help="Pick the probed CRF that fits this size (e.g., 8M, 1.5G).",
    )
    ap.add_argument(
        "--remove-audio",
        dest="remove_audio",
        action="store_const",
        const=True,
        default=None,
        help="Remove the audio track.",
    )
    ap.add_argument(
        "--keep-audio",
        dest="remove_audio",
        action="store_const",
        const=False,
        help="Keep the audio track.",
    )
    ap.add_argument(
        "--quality",
        dest="image_quality",
        type=_choice_type(IMAGE_QUALITY_CHOICES, _QUALITY_ALIASES),
        help="Image quality: high, balanced, small.",
    )
    ap.add_argument(
        "--random-filename",
        action="store_const",
        const=True,
        default=None,
        help="Use a random filename.",
    )
    ap.add_argument(
        "--normalize-filename",
        action="store_const",
        const=True,
        default=None,
        help="Lowercase the filename and replace spaces.",
    )
    ap.add_argument(
        "--auto-fix",
        dest="auto_fix",
        action="store_const",
        const=True,
        default=None,
        help="Apply fixes for detected issues.",
    )
    ap.add_argument(
        "--no-auto-fix",
        dest="auto_fix",
        action="store_const",
        const=False,
        help="Do not apply fixes for detected issues.",
    )
    ap.add_argument("--gif-fps", type=int, help="GIF frame rate (e.g., 10, 15, 24).")
    ap.add_argument("--gif-width", type=int, help="GIF width in pixels.")
    ap.add_argument(
        "--tool-timeout",
        type=float,
        default=_env_float("SHARE_TOOL_TIMEOUT", None),
        help="Kill any external tool that runs longer than this many seconds.",
    )
    ap.add_argument(
        "--upload-timeout",
        type=float,
        default=_env_float("SHARE_UPLOAD_TIMEOUT", DEFAULT_UPLOAD_TIMEOUT),
        help="Abandon the upload after this many seconds.",
    )
    ap.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Increase verbosity (-v, -vv).",
    )
    return ap


_CLI_KEYS = (
    "dry_run",
    "format",
    "resolution",
    "fps",
    "encoder",
    "crf",
    "remove_audio",
    "image_quality",
    "random_filename",
    "normalize_filename",
    "auto_fix",
    "gif_fps",
    "gif_width",
    "probe",
    "no_probe",
    "target_size",
)


def cli_args_from_namespace(args: argparse.Namespace) -> CliArgs:
    values: Dict[str, Any] = {}
    for key in _CLI_KEYS:
        value = getattr(args, key, None)
        if value is not None:
            values[key] = value
    return cast(CliArgs, values)


def _validate_args(args: argparse.Namespace) -> Optional[str]:
    if args.crf is not None and not 0 <= args.crf <= 51:
        return "--crf must be between 0 and 51"
    if args.gif_fps is not None and args.gif_fps <= 0:
        return "--gif-fps must be positive"
    if args.gif_width is not None and args.gif_width <= 0:
        return "--gif-width must be positive"
    if args.target_size is not None and args.target_size <= 0:
        return "--target-size must be positive"
    if args.probe and args.no_probe:
        return "--probe and --no-probe are mutually exclusive"
    return None


def choose_ui(source: SourceConfig) -> UI:
    if not sys.stdout.isatty():
        return PlainUI()
    if source["type"] != "stdin":
        return RichUI()
    # stdin carries the upload, so prompts have to read the terminal directly.
    try:
        tty = open("/dev/tty", "r", encoding="utf-8")
    except OSError:
        logging.info("no controlling terminal; prompts disabled")
        return PlainUI()
    return RichUI(input_stream=tty)


async def run_share(
    args: argparse.Namespace, ui: UI, source_config: Optional[SourceConfig] = None
) -> None:
    cli_args = cli_args_from_namespace(args)
    if source_config is None:
        source_config = resolve_source_config(args.file)

    if not args.dry_run:
        get_credentials()

    ui.intro()
    ui.spinner_start("Reading source...")
    try:
        upload_source = await read_source(source_config)
    except ShareError:
        ui.spinner_stop("Failed to read source")
        raise
    ui.spinner_stop(f"Source: {source_config['type']}")

    data = upload_source["buffer"]
    mime_type = upload_source["mime_type"]
    ui.show_source_info(mime_type, len(data))
    if len(data) > _size_threshold(mime_type):
        ui.warn(
            f"File is large ({format_bytes(len(data))}). Consider reducing quality/resolution."
        )

    issues = await detect_issues(data, mime_type)
    if issues:
        ui.show_issues(issues)

    if ui.interactive:
        config = await build_config_interactively(
            cli_args, source_config, upload_source, issues, ui
        )
    else:
        config = build_config_from_cli(cli_args, source_config, issues)
        if (
            cli_args.get("probe")
            and cli_args.get("crf") is None
            and is_video_mime(mime_type)
            and config["format"] != "gif"
        ):
            config = await run_non_interactive_probe(
                config, data, ui, cli_args.get("target_size")
            )

    result = await run_pipeline(config, upload_source, issues, ui)
    if config["dry_run"]:
        ui.show_dry_run_summary(config, result)
    else:
        ui.show_result(result)


def main(argv: Optional[Sequence[str]] = None) -> None:
    args = build_parser().parse_args(argv)

    level = (
        logging.WARNING
        if args.verbose == 0
        else (logging.INFO if args.verbose == 1 else logging.DEBUG)
    )
    global VERBOSE_LEVEL, TOOL_TIMEOUT, UPLOAD_TIMEOUT
    VERBOSE_LEVEL = args.verbose
    logging.basicConfig(
        level=level, stream=sys.stderr, format="%(levelname)s: %(message)s"
    )

    problem = _validate_args(args)
    if problem:
        logging.error(problem)
        sys.exit(2)
    TOOL_TIMEOUT = args.tool_timeout
    UPLOAD_TIMEOUT = args.upload_timeout

    try:
        source_config = resolve_source_config(args.file)
    except SourceError as exc:
        logging.error(str(exc))
        sys.exit(1)
    ui = choose_ui(source_config)
    try:
        asyncio.run(run_share(args, ui, source_config))
    except (ShareCancelled, KeyboardInterrupt) as exc:
        ui.close()
        ui.error(str(exc) or "Cancelled.")
        sys.exit(1)
    except Exception as exc:
        ui.close()
        if VERBOSE_LEVEL > 1:
            logging.exception("share failed")
        ui.error(str(exc) or exc.__class__.__name__)
        sys.exit(1)
    finally:
        ui.shutdown()


if __name__ == "__main__":
    main()
