"""
Merge engine: lossless remux of video, audio, subtitles, chapters and
attachments into one Matroska container.

ffmpeg-python cannot express inputs that are only referenced through
-map_chapters or repeated -attach options, so the command line is
assembled by hand here.
"""

import logging
import os
import re
import tempfile
from typing import List, Optional

from ..models import Chapter, MergeConfig, ProgressEvent
from .progress import ProgressCallback, ProgressTracker
from .runner import ProcessRunner
from .util import remove_file

logger = logging.getLogger("media_worker")

IMAGE_MIME_TYPES = {
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".webp": "image/webp",
    ".gif": "image/gif",
}
FFMETADATA_SPECIAL = re.compile(r"([=;#\\\n])")


def image_mime_type(path: str) -> str:
    return IMAGE_MIME_TYPES.get(os.path.splitext(path)[1].lower(), "image/jpeg")


def font_mime_type(path: str) -> str:
    if path.lower().endswith(".otf"):
        return "application/vnd.ms-opentype"
    return "application/x-truetype-font"


def escape_metadata(value: str) -> str:
    return FFMETADATA_SPECIAL.sub(r"\\\1", value)


def render_chapters_metadata(chapters: List[Chapter]) -> str:
    """FFMETADATA1 document with one millisecond-timebase block per chapter"""
    lines = [";FFMETADATA1"]
    for chapter in chapters:
        title = escape_metadata(chapter.title or "Chapter")
        lines += [
            "",
            "[CHAPTER]",
            "TIMEBASE=1/1000",
            f"START={int(round(chapter.start * 1000))}",
            f"END={int(round(chapter.end * 1000))}",
            f"title={title}",
        ]
    return "\n".join(lines) + "\n"


def write_chapters_file(chapters: List[Chapter]) -> str:
    fd, path = tempfile.mkstemp(prefix="chapters-", suffix=".txt")
    with os.fdopen(fd, "w", encoding="utf-8") as f:
        f.write(render_chapters_metadata(chapters))
    return path


def build_merge_args(config: MergeConfig, chapters_path: Optional[str] = None) -> List[str]:
    """
    Build the remux command line.

    Input order is fixed: video, chapters sidecar, original audio
    containers, external audio files, subtitle files. Each group keeps its
    own input offset because earlier groups may be absent.
    """
    args = ["-y", "-i", config.video_path]
    next_input = 1

    chapters_input = None
    if chapters_path:
        chapters_input = next_input
        args += ["-i", chapters_path]
        next_input += 1

    # One input per distinct original container, in first-seen order
    original_inputs = {}
    for track in config.original_audio:
        if track.path not in original_inputs:
            original_inputs[track.path] = next_input
            args += ["-i", track.path]
            next_input += 1

    external_start = next_input
    for track in config.external_audio:
        args += ["-i", track.path]
        next_input += 1

    subtitles_start = next_input
    for sub in config.subtitles:
        args += ["-i", sub.path]
        next_input += 1

    args += ["-map", "0:v"]
    if chapters_input is not None:
        args += ["-map_chapters", str(chapters_input)]
    for track in config.original_audio:
        args += ["-map", f"{original_inputs[track.path]}:a:{track.index}"]
    for i in range(len(config.external_audio)):
        args += ["-map", f"{external_start + i}:a:0"]
    for i in range(len(config.subtitles)):
        args += ["-map", f"{subtitles_start + i}:s:0"]

    args += ["-c:v", "copy", "-c:a", "copy", "-c:s", config.subtitle_codec]

    audio_tracks = list(config.original_audio) + list(config.external_audio)
    for i, track in enumerate(audio_tracks):
        args += [f"-metadata:s:a:{i}", f"language={track.language or 'und'}"]
        if track.title:
            args += [f"-metadata:s:a:{i}", f"title={track.title}"]

    attachment = 0
    for i, sub in enumerate(config.subtitles):
        args += [f"-metadata:s:s:{i}", f"language={sub.language or 'und'}"]
        if sub.title:
            args += [f"-metadata:s:s:{i}", f"title={sub.title}"]
        for font in sub.fonts:
            args += ["-attach", font, f"-metadata:s:t:{attachment}", f"mimetype={font_mime_type(font)}"]
            attachment += 1

    for i in range(len(audio_tracks)):
        args += [f"-disposition:a:{i}", "default" if i == config.default_audio_index else "0"]
    for i in range(len(config.subtitles)):
        args += [f"-disposition:s:{i}", "default" if i == config.default_subtitle_index else "0"]

    if config.poster_path:
        args += [
            "-attach", config.poster_path,
            f"-metadata:s:t:{attachment}", f"mimetype={image_mime_type(config.poster_path)}",
            f"-metadata:s:t:{attachment}", "filename=cover",
        ]

    args.append(config.output_path)
    return args


async def merge(runner: ProcessRunner, config: MergeConfig,
                on_progress: Optional[ProgressCallback] = None) -> None:
    """Assemble the final container; the chapters sidecar is always removed"""
    chapters_path = write_chapters_file(config.chapters) if config.chapters else None
    try:
        args = build_merge_args(config, chapters_path)
        logger.info(f"Merging {config.video_path} -> {config.output_path} "
                    f"({len(config.original_audio) + len(config.external_audio)} audio, "
                    f"{len(config.subtitles)} subtitles, {len(config.chapters)} chapters)")

        handler = None
        if config.total_duration:
            handler = ProgressTracker(config.total_duration, "merge").line_handler(on_progress)
        await runner.run("ffmpeg", args, handler)
    finally:
        remove_file(chapters_path)

    if on_progress:
        on_progress(ProgressEvent(
            percent=100,
            current_time=config.total_duration or 0,
            total_duration=config.total_duration or 0,
            eta_seconds=0,
            stage="merge",
        ))
    logger.info(f"Merge finished: {config.output_path}")
