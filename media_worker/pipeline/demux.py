"""
Demux engine: lossless extraction of video, audio, subtitle, chapter and
attachment streams from one container.
"""

import json
import logging
import os
from dataclasses import asdict
from typing import List, Optional

import ffmpeg

from ..errors import MediaWorkerError
from ..logging_setup import log_exception
from ..models import (
    DemuxedAudio,
    DemuxedSubtitle,
    DemuxedVideo,
    DemuxMetadata,
    DemuxOptions,
    DemuxResult,
    ProbeResult,
    StreamInfo,
)
from .probe import get_bit_depth, probe
from .runner import ProcessRunner
from .transcode import needs_audio_transcode
from .util import ensure_dir, safe_name

logger = logging.getLogger("media_worker")

FONT_EXTENSIONS = (".ttf", ".otf", ".ttc", ".woff", ".woff2")
METADATA_FILE = "metadata.json"


def subtitle_extension(codec: Optional[str]) -> str:
    codec = (codec or "").lower()
    if codec in ("subrip", "srt"):
        return "srt"
    if codec == "webvtt":
        return "vtt"
    if codec == "ssa":
        return "ssa"
    return "ass"


def audio_extension(codec: Optional[str]) -> str:
    codec = (codec or "").lower()
    if codec == "aac":
        return "m4a"
    if codec == "mp3":
        return "mp3"
    return "mka"


def is_font_attachment(stream: StreamInfo) -> bool:
    return bool(stream.filename) and stream.filename.lower().endswith(FONT_EXTENSIONS)


def build_extract_args(input_path: str, selector: str, output_path: str) -> List[str]:
    """Copy one stream (e.g. 'a:1') into its own file"""
    return (
        ffmpeg
        .input(input_path)[selector]
        .output(output_path, c="copy")
        .overwrite_output()
        .get_args()
    )


def build_attachment_args(input_path: str, fonts_dir: str, streams) -> List[str]:
    """
    Build the -dump_attachment arguments for every font attachment.

    Attachments are addressed by their ordinal among attachment streams
    only (``t:N``), not by absolute stream index. The options must come
    before ``-i``, so this list is assembled by hand.
    """
    args = ["-y"]
    ordinal = 0
    for stream in streams:
        if stream.codec_type != "attachment":
            continue
        if is_font_attachment(stream):
            target = os.path.join(fonts_dir, os.path.basename(stream.filename))
            args += [f"-dump_attachment:t:{ordinal}", target]
        ordinal += 1
    args += ["-i", input_path]
    return args


async def _extract_stream(runner: ProcessRunner, input_path: str, selector: str, output_path: str) -> None:
    await runner.run("ffmpeg", build_extract_args(input_path, selector, output_path))


async def extract_attachments(runner: ProcessRunner, input_path: str, output_dir: str,
                              info: ProbeResult) -> Optional[str]:
    """Dump font attachments into <output_dir>/fonts; failures are not fatal"""
    fonts = [s for s in info.attachment_streams if is_font_attachment(s)]
    if not fonts:
        return None

    fonts_dir = ensure_dir(os.path.join(output_dir, "fonts"))
    try:
        await runner.run("ffmpeg", build_attachment_args(input_path, fonts_dir, info.streams))
    except MediaWorkerError as e:
        # ffmpeg complains about the missing output even after dumping
        logger.warning(f"Attachment extraction for {input_path} reported: {e}")

    if any(os.path.exists(os.path.join(fonts_dir, os.path.basename(s.filename))) for s in fonts):
        return fonts_dir
    logger.warning(f"No fonts extracted from {input_path}")
    return None


def _wanted(index: int, selection: Optional[List[int]]) -> bool:
    return selection is None or index in selection


async def demux(runner: ProcessRunner, input_path: str, output_dir: str,
                options: Optional[DemuxOptions] = None) -> DemuxResult:
    """
    Split a container into independent streams without re-encoding.

    Errors never escape: a failed demux returns success=False with the
    error message.
    """
    options = options or DemuxOptions()
    result = DemuxResult(success=False, source=input_path, output_dir=output_dir)

    try:
        ensure_dir(output_dir)
        info = await probe(runner, input_path)
        logger.info(f"Demuxing {input_path} into {output_dir} "
                    f"(skip_video={options.skip_video}, audio_mode={options.audio_extract_mode})")

        result.video = await _demux_video(runner, input_path, output_dir, info, options)
        result.audio_tracks = await _demux_audio(runner, input_path, output_dir, info, options)
        if options.extract_subs:
            result.subtitles = await _demux_subtitles(runner, input_path, output_dir, info, options)
        if options.extract_fonts:
            result.fonts_dir = await extract_attachments(runner, input_path, output_dir, info)

        result.metadata = DemuxMetadata(
            container=info.format_name,
            total_duration=info.duration,
            total_size=info.size,
            chapters=list(info.chapters) if options.extract_chapters else [],
            tags=dict(info.tags),
            ffprobe_raw=info.raw,
        )
        write_metadata(output_dir, result.metadata)

        result.success = True
        logger.info(f"Demux of {input_path} finished: {len(result.audio_tracks)} audio, "
                    f"{len(result.subtitles)} subtitle tracks")
    except Exception as e:
        result.error = str(e)
        log_exception(logger, f"Demux failed for {input_path}: {e}")

    return result


async def _demux_video(runner, input_path, output_dir, info, options) -> Optional[DemuxedVideo]:
    if not info.video_streams:
        return None
    stream = info.video_streams[0]
    video = DemuxedVideo(
        path=None,
        codec=stream.codec_name,
        width=stream.width,
        height=stream.height,
        bit_depth=get_bit_depth(stream.pix_fmt),
        frame_rate=stream.frame_rate,
        source_file=input_path,
        index=0,
    )
    if not options.skip_video:
        video.path = os.path.join(output_dir, "video.mkv")
        await _extract_stream(runner, input_path, "v:0", video.path)
    return video


async def _demux_audio(runner, input_path, output_dir, info, options) -> List[DemuxedAudio]:
    tracks = []
    for i, stream in enumerate(info.audio_streams):
        if not _wanted(i, options.audio_indices):
            continue
        language = stream.language or "und"
        needs_transcode = needs_audio_transcode(stream.codec_name, stream.bit_rate)
        track = DemuxedAudio(
            path=None,
            index=i,
            codec=stream.codec_name,
            language=language,
            title=stream.title,
            channels=stream.channels,
            sample_rate=stream.sample_rate,
            bitrate=stream.bit_rate,
            is_default=stream.is_default,
            needs_transcode=needs_transcode,
        )
        if options.audio_extract_mode == "smart" and needs_transcode:
            # Left in the source; the transcode stage reads it from there
            track.source_file = input_path
        else:
            filename = f"audio_{i}_{safe_name(language)}.{audio_extension(stream.codec_name)}"
            track.path = os.path.join(output_dir, filename)
            await _extract_stream(runner, input_path, f"a:{i}", track.path)
        tracks.append(track)
    return tracks


async def _demux_subtitles(runner, input_path, output_dir, info, options) -> List[DemuxedSubtitle]:
    subtitles = []
    for i, stream in enumerate(info.subtitle_streams):
        if not _wanted(i, options.subtitle_indices):
            continue
        language = stream.language or "und"
        ext = subtitle_extension(stream.codec_name)
        path = os.path.join(output_dir, f"subs_{i}_{safe_name(language)}.{ext}")
        try:
            await _extract_stream(runner, input_path, f"s:{i}", path)
        except MediaWorkerError as e:
            logger.warning(f"Skipping subtitle track {i} of {input_path}: {e}")
            continue
        subtitles.append(DemuxedSubtitle(
            path=path,
            index=i,
            codec=stream.codec_name,
            language=language,
            title=stream.title,
            format=ext,
            is_default=stream.is_default,
        ))
    return subtitles


def write_metadata(output_dir: str, metadata: DemuxMetadata) -> str:
    """Write the metadata sidecar once; returns its path"""
    path = os.path.join(output_dir, METADATA_FILE)
    with open(path, "w", encoding="utf-8") as f:
        json.dump(asdict(metadata), f, indent=2, ensure_ascii=False)
    return path
