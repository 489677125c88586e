"""Build ffmpeg invocations for publishing stored video to RTMP."""

from __future__ import annotations

import os
import shlex
from typing import List, Optional, Sequence, Tuple

from .models import EncoderSettings, EncoderSpec

AUDIO_BITRATE = "128k"


def parse_resolution(resolution: str, orientation: str = "horizontal") -> Tuple[int, int]:
    try:
        width, height = (int(part) for part in resolution.lower().split("x", 1))
    except ValueError as exc:
        raise ValueError(f"Invalid resolution {resolution!r}") from exc
    if orientation == "vertical" and width > height:
        width, height = height, width
    return width, height


def write_concat_list(sources: Sequence[str], path: str) -> str:
    """Write an ffmpeg concat demuxer list so a playlist plays in order."""
    os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
    with open(path, "w", encoding="utf-8") as handle:
        for source in sources:
            escaped = source.replace("'", "'\\''")
            handle.write(f"file '{escaped}'\n")
    return path


def build_command(spec: EncoderSpec, ffmpeg_path: str = "ffmpeg", playlist_file: Optional[str] = None) -> List[str]:
    if not spec.inputs:
        raise ValueError("Encoder spec has no inputs")
    settings: EncoderSettings = spec.settings

    input_args: List[str] = []
    if settings.loop_video:
        input_args.extend(["-stream_loop", "-1"])
    input_args.append("-re")
    if len(spec.inputs) > 1:
        if not playlist_file:
            raise ValueError("A playlist file is required for multiple inputs")
        write_concat_list(spec.inputs, playlist_file)
        input_args.extend(["-f", "concat", "-safe", "0", "-i", playlist_file])
    else:
        input_args.extend(["-i", spec.inputs[0]])

    width, height = parse_resolution(settings.resolution, settings.orientation)
    video_filter = (
        f"scale={width}:{height}:force_original_aspect_ratio=decrease,"
        f"pad={width}:{height}:(ow-iw)/2:(oh-ih)/2"
    )
    video_bitrate = f"{settings.bitrate}k"

    return [
        ffmpeg_path,
        "-hide_banner",
        "-loglevel",
        "info",
        *input_args,
        "-c:v",
        "libx264",
        "-preset",
        "veryfast",
        "-b:v",
        video_bitrate,
        "-maxrate",
        video_bitrate,
        "-bufsize",
        f"{settings.bitrate * 2}k",
        "-pix_fmt",
        "yuv420p",
        "-r",
        str(settings.fps),
        "-g",
        str(settings.fps * 2),
        "-vf",
        video_filter,
        "-c:a",
        "aac",
        "-ar",
        "44100",
        "-b:a",
        AUDIO_BITRATE,
        "-f",
        "flv",
        spec.output_url,
    ]


def redact_command(args: Sequence[str]) -> str:
    """Render a command for logs without the publish key."""
    rendered = list(args)
    if rendered:
        target = rendered[-1]
        if target.startswith("rtmp") and "/" in target:
            base, _, _key = target.rpartition("/")
            rendered[-1] = f"{base}/****"
    return shlex.join(rendered)
