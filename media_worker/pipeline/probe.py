"""
Media prober built on ffprobe's JSON output.
"""

import json
import logging
import re
from typing import Any, Callable, Dict, List, Optional, Tuple

from ..errors import ProbeParseError
from ..models import Chapter, ProbeResult, StreamInfo
from .runner import ProcessRunner

logger = logging.getLogger("media_worker")

PROBE_ARGS = ["-v", "error", "-show_format", "-show_streams", "-show_chapters", "-of", "json"]

_LEADING_INT = re.compile(r"\s*(-?\d+)")


def _positive_int(value: Any) -> Optional[int]:
    """Parse a leading integer the way ffprobe tags are written; None unless > 0"""
    if value is None:
        return None
    match = _LEADING_INT.match(str(value))
    if not match:
        return None
    number = int(match.group(1))
    return number if number > 0 else None


def _tag(tags: Dict[str, Any], name: str) -> Optional[str]:
    for key, value in tags.items():
        if key.lower() == name.lower():
            return value
    return None


# Ordered bitrate strategies; first positive value wins

def _bitrate_field(stream: Dict[str, Any]) -> List[Any]:
    return [stream.get("bit_rate")]


def _bitrate_bps_tag(stream: Dict[str, Any]) -> List[Any]:
    return [(stream.get("tags") or {}).get("BPS")]


def _bitrate_bps_language_tag(stream: Dict[str, Any]) -> List[Any]:
    tags = stream.get("tags") or {}
    language = _tag(tags, "language") or "eng"
    keys = [f"BPS-{language}"]
    if language != "eng":
        keys.append("BPS-eng")
    return [tags.get(k) for k in keys]


def _bitrate_any_bps_tag(stream: Dict[str, Any]) -> List[Any]:
    tags = stream.get("tags") or {}
    return [value for key, value in tags.items() if "bps" in key.lower()]


BITRATE_STRATEGIES: List[Tuple[str, Callable[[Dict[str, Any]], List[Any]]]] = [
    ("bit_rate", _bitrate_field),
    ("BPS", _bitrate_bps_tag),
    ("BPS-<lang>", _bitrate_bps_language_tag),
    ("*BPS*", _bitrate_any_bps_tag),
]


def extract_bitrate(stream: Dict[str, Any]) -> Optional[int]:
    """Bitrate of a raw ffprobe stream dict in bits/second, or None"""
    for _, strategy in BITRATE_STRATEGIES:
        for candidate in strategy(stream):
            value = _positive_int(candidate)
            if value:
                return value
    return None


def get_bit_depth(pix_fmt: Optional[str]) -> int:
    """Infer bit depth from a pixel format name"""
    if not pix_fmt:
        return 8
    if "12" in pix_fmt:
        return 12
    if "10" in pix_fmt:
        return 10
    return 8


def _to_float(value: Any, default: float = 0.0) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def _to_int(value: Any) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _parse_stream(raw: Dict[str, Any]) -> StreamInfo:
    tags = raw.get("tags") or {}
    disposition = raw.get("disposition") or {}
    return StreamInfo(
        index=int(raw.get("index", 0)),
        codec_type=raw.get("codec_type", "unknown"),
        codec_name=raw.get("codec_name"),
        width=_to_int(raw.get("width")),
        height=_to_int(raw.get("height")),
        channels=_to_int(raw.get("channels")),
        sample_rate=_to_int(raw.get("sample_rate")),
        bit_rate=extract_bitrate(raw),
        pix_fmt=raw.get("pix_fmt"),
        frame_rate=raw.get("r_frame_rate"),
        language=_tag(tags, "language"),
        title=_tag(tags, "title"),
        filename=_tag(tags, "filename"),
        mimetype=_tag(tags, "mimetype"),
        is_default=disposition.get("default") == 1,
        tags=dict(tags),
    )


def _parse_chapter(raw: Dict[str, Any]) -> Chapter:
    title = (raw.get("tags") or {}).get("title") or "Chapter"
    return Chapter(
        start=_to_float(raw.get("start_time")),
        end=_to_float(raw.get("end_time")),
        title=title,
    )


def parse_probe_output(path: str, output: str) -> ProbeResult:
    """Parse ffprobe JSON into a ProbeResult; raises ProbeParseError"""
    try:
        data = json.loads(output)
    except json.JSONDecodeError as e:
        raise ProbeParseError(path, str(e)) from e
    if not isinstance(data, dict):
        raise ProbeParseError(path, "expected a JSON object")

    fmt = data.get("format") or {}
    if not isinstance(fmt, dict):
        raise ProbeParseError(path, "expected 'format' to be a JSON object")
    try:
        streams = tuple(_parse_stream(s) for s in data.get("streams") or [])
        chapters = tuple(_parse_chapter(c) for c in data.get("chapters") or [])
        return ProbeResult(
            path=path,
            format_name=fmt.get("format_name", "unknown"),
            duration=_to_float(fmt.get("duration")),
            size=_to_int(fmt.get("size")) or 0,
            bit_rate=_positive_int(fmt.get("bit_rate")),
            streams=streams,
            chapters=chapters,
            tags=dict(fmt.get("tags") or {}),
            raw=data,
        )
    except (AttributeError, TypeError, ValueError) as e:
        raise ProbeParseError(path, f"unexpected structure: {e}") from e


async def probe(runner: ProcessRunner, path: str) -> ProbeResult:
    """Run ffprobe on a file; every call probes afresh"""
    output = await runner.run("ffprobe", PROBE_ARGS + [path])
    result = parse_probe_output(path, output.stdout)
    logger.debug(f"Probed {path}: {result.format_name}, {len(result.streams)} streams, {result.duration:.2f}s")
    return result


async def get_duration(runner: ProcessRunner, path: str) -> float:
    result = await probe(runner, path)
    return result.duration
