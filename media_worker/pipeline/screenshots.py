"""
Screenshot and thumbnail sprite generation.

Frame grabs run through the screenshot pool so several episodes can be
processed at once without flooding storage with ffmpeg processes.
"""

import math
import os
import logging
from typing import Any, Dict, List, Optional

import ffmpeg
from PIL import Image

from ..errors import MediaWorkerError
from ..models import ScreenshotOptions, ScreenshotResult, SpriteOptions, SpriteResult
from ..pool import WorkerPool
from .runner import ProcessRunner
from .util import ensure_dir, file_size, format_timecode, remove_file

logger = logging.getLogger("media_worker")

SPRITE_FILE = "sprite.jpg"
SPRITE_VTT_FILE = "sprite.vtt"
END_FRACTION = 0.95


def jpeg_qscale(quality: int) -> int:
    """Map a 0-100 quality to ffmpeg's inverted JPEG qscale"""
    return math.floor((100 - quality) / 3.33 + 0.5)


def screenshot_times(duration: float, count: int, skip_start_percent: float = 10.0) -> List[float]:
    """Evenly spaced grab times between the skipped intro and the last 5%"""
    start = duration * (skip_start_percent / 100)
    end = duration * END_FRACTION
    interval = (end - start) / (count + 1)
    return [start + interval * i for i in range(1, count + 1)]


def build_frame_args(input_path: str, output_path: str, time_seconds: float,
                     width: Optional[int], quality: int, fmt: str) -> List[str]:
    stream = ffmpeg.input(input_path, ss=time_seconds).video
    if width:
        stream = stream.filter("scale", width, -1)

    # image encoders do not take 10-bit frames
    output_kwargs: Dict[str, Any] = {"frames:v": 1, "pix_fmt": "rgb24"}
    if fmt == "webp":
        output_kwargs.update({"c:v": "libwebp", "quality": quality})
    elif fmt == "jpg":
        output_kwargs["q:v"] = jpeg_qscale(quality)
    return ffmpeg.output(stream, output_path, **output_kwargs).overwrite_output().get_args()


def validate_image_file(path: str) -> bool:
    """Check that a generated image exists and decodes"""
    if not os.path.exists(path):
        return False
    try:
        with Image.open(path) as img:
            img.verify()
        return True
    except (OSError, SyntaxError) as e:
        logger.warning(f"Invalid image {path}: {e}")
        return False


def get_image_info(path: str) -> Dict[str, Any]:
    """Get image dimensions and size"""
    try:
        with Image.open(path) as img:
            return {
                'width': img.width,
                'height': img.height,
                'format': img.format,
                'size_bytes': os.path.getsize(path)
            }
    except OSError as e:
        logger.warning(f"Error getting image info for {path}: {e}")
        return {}


async def extract_frame(runner: ProcessRunner, input_path: str, output_path: str, time_seconds: float,
                        width: Optional[int] = None, quality: int = 80, fmt: str = "webp") -> None:
    await runner.run("ffmpeg", build_frame_args(input_path, output_path, time_seconds, width, quality, fmt))


async def generate_screenshots(runner: ProcessRunner, pool: WorkerPool, input_path: str,
                               output_dir: str, duration: float,
                               options: Optional[ScreenshotOptions] = None) -> ScreenshotResult:
    """
    Grab a thumbnail and a full-size screenshot at evenly spaced times.

    Failed or undecodable frames are dropped with a warning; if nothing
    could be produced the first error is raised.
    """
    options = options or ScreenshotOptions()
    screenshots_dir = ensure_dir(os.path.join(output_dir, "screenshots"))
    times = screenshot_times(duration, options.count, options.skip_start_percent)
    ext = options.format

    logger.info(f"Generating {len(times)} screenshots for {input_path}")

    async def grab(job):
        number, time_seconds = job
        thumb = os.path.join(screenshots_dir, f"thumb_{number:02d}.{ext}")
        full = os.path.join(screenshots_dir, f"screenshot_{number:02d}.{ext}")
        await extract_frame(runner, input_path, thumb, time_seconds,
                            options.thumbnail_width, options.thumbnail_quality, ext)
        await extract_frame(runner, input_path, full, time_seconds,
                            options.full_width, options.full_quality, ext)
        return thumb, full

    outcomes = await pool.run_all(list(enumerate(times, start=1)), grab)

    result = ScreenshotResult()
    errors = []
    for outcome in outcomes:
        if isinstance(outcome, MediaWorkerError):
            logger.warning(f"Screenshot failed for {input_path}: {outcome}")
            errors.append(outcome)
            continue
        if isinstance(outcome, BaseException):
            raise outcome
        thumb, full = outcome
        if validate_image_file(thumb) and validate_image_file(full):
            result.thumbnails.append(thumb)
            result.full_size.append(full)
        else:
            remove_file(thumb)
            remove_file(full)

    if errors and not result.thumbnails:
        raise errors[0]

    result.thumbnails.sort()
    result.full_size.sort()
    logger.info(f"Generated {len(result.thumbnails)} screenshots in {screenshots_dir}")
    return result


def render_sprite_vtt(sprite_name: str, duration: float, frame_count: int,
                      width: int, height: int, columns: int) -> str:
    """WebVTT mapping time ranges to sprite sheet cells"""
    lines = ["WEBVTT", ""]
    interval = duration / frame_count
    for i in range(frame_count):
        x = (i % columns) * width
        y = (i // columns) * height
        lines.append(f"{format_timecode(i * interval)} --> {format_timecode((i + 1) * interval)}")
        lines.append(f"{sprite_name}#xywh={x},{y},{width},{height}")
        lines.append("")
    return "\n".join(lines)


def build_sprite_args(input_path: str, sprite_path: str, duration: float, options: SpriteOptions) -> List[str]:
    rows = math.ceil(options.frame_count / options.columns)
    stream = (
        ffmpeg
        .input(input_path)
        .video
        .filter("fps", options.frame_count / duration)
        .filter("scale", options.thumb_width, options.thumb_height)
        .filter("tile", f"{options.columns}x{rows}")
    )
    return (
        ffmpeg
        .output(stream, sprite_path, **{"frames:v": 1, "q:v": jpeg_qscale(options.quality)})
        .overwrite_output()
        .get_args()
    )


async def generate_thumbnail_sprite(runner: ProcessRunner, input_path: str, output_dir: str,
                                    duration: float, options: Optional[SpriteOptions] = None) -> SpriteResult:
    """Build one tiled sprite sheet plus its WebVTT index for timeline previews"""
    options = options or SpriteOptions()
    if duration <= 0:
        raise ValueError(f"Cannot build a sprite for non-positive duration {duration}")

    thumbnails_dir = ensure_dir(os.path.join(output_dir, "thumbnails"))
    sprite_path = os.path.join(thumbnails_dir, SPRITE_FILE)
    vtt_path = os.path.join(thumbnails_dir, SPRITE_VTT_FILE)

    logger.info(f"Generating sprite sheet ({options.frame_count} frames) for {input_path}")
    await runner.run("ffmpeg", build_sprite_args(input_path, sprite_path, duration, options))

    vtt = render_sprite_vtt(SPRITE_FILE, duration, options.frame_count,
                            options.thumb_width, options.thumb_height, options.columns)
    with open(vtt_path, "w", encoding="utf-8") as f:
        f.write(vtt)

    info = get_image_info(sprite_path)
    if info:
        logger.info(f"Sprite sheet {sprite_path}: {info['width']}x{info['height']}, {info['size_bytes']} bytes")
    return SpriteResult(sprite_path, vtt_path, file_size(sprite_path))
