"""
Time shifting for text subtitle files (ASS/SSA and SRT).

Events that end at or before zero after shifting are dropped; WebVTT and
other formats are copied unchanged.
"""

import logging
import os
import re
import shutil
from dataclasses import dataclass
from typing import List, Tuple

from .util import ensure_dir

logger = logging.getLogger("media_worker")

ASS_TIME = re.compile(r"^(\d+):(\d{2}):(\d{2})\.(\d{2})$")
ASS_DIALOGUE = re.compile(r"^(Dialogue:\s*)(\d+),([^,]+),([^,]+),(.*)$")
SRT_TIME = re.compile(r"^(\d{2}):(\d{2}):(\d{2}),(\d{3})$")
SRT_TIMING_LINE = re.compile(r"^(\d{2}:\d{2}:\d{2},\d{3})\s*-->\s*(\d{2}:\d{2}:\d{2},\d{3})(.*)$")
BLOCK_SEPARATOR = re.compile(r"\r?\n\r?\n")
LINE_SEPARATOR = re.compile(r"\r?\n")


@dataclass
class ShiftResult:
    total_events: int = 0
    removed_events: int = 0


def parse_ass_time(value: str) -> int:
    match = ASS_TIME.match(value.strip())
    if not match:
        return 0
    h, m, s, cs = (int(g) for g in match.groups())
    return h * 3600000 + m * 60000 + s * 1000 + cs * 10


def format_ass_time(ms: int) -> str:
    ms = max(ms, 0)
    total_seconds, rest = divmod(ms, 1000)
    hours, rest_seconds = divmod(total_seconds, 3600)
    minutes, seconds = divmod(rest_seconds, 60)
    return f"{hours}:{minutes:02d}:{seconds:02d}.{rest // 10:02d}"


def parse_srt_time(value: str) -> int:
    match = SRT_TIME.match(value.strip())
    if not match:
        return 0
    h, m, s, ms = (int(g) for g in match.groups())
    return h * 3600000 + m * 60000 + s * 1000 + ms


def format_srt_time(ms: int) -> str:
    ms = max(ms, 0)
    total_seconds, millis = divmod(ms, 1000)
    hours, rest_seconds = divmod(total_seconds, 3600)
    minutes, seconds = divmod(rest_seconds, 60)
    return f"{hours:02d}:{minutes:02d}:{seconds:02d},{millis:03d}"


def shift_ass_content(content: str, offset_ms: int) -> Tuple[str, ShiftResult]:
    result = ShiftResult()
    lines: List[str] = []
    for line in LINE_SEPARATOR.split(content):
        match = ASS_DIALOGUE.match(line)
        if not match:
            lines.append(line)
            continue
        result.total_events += 1
        prefix, layer, start, end, rest = match.groups()
        start_ms = parse_ass_time(start) + offset_ms
        end_ms = parse_ass_time(end) + offset_ms
        if end_ms <= 0:
            result.removed_events += 1
            continue
        lines.append(f"{prefix}{layer},{format_ass_time(start_ms)},{format_ass_time(end_ms)},{rest}")
    return "\n".join(lines), result


def shift_srt_content(content: str, offset_ms: int) -> Tuple[str, ShiftResult]:
    result = ShiftResult()
    blocks: List[str] = []
    number = 1
    for block in BLOCK_SEPARATOR.split(content.strip()):
        lines = LINE_SEPARATOR.split(block)
        if len(lines) < 2:
            continue
        timing = next((i for i, line in enumerate(lines) if " --> " in line), None)
        if timing is None:
            blocks.append(block)
            continue
        result.total_events += 1
        match = SRT_TIMING_LINE.match(lines[timing])
        if not match:
            blocks.append(block)
            continue
        start, end, rest = match.groups()
        start_ms = parse_srt_time(start) + offset_ms
        end_ms = parse_srt_time(end) + offset_ms
        if end_ms <= 0:
            result.removed_events += 1
            continue
        lines[timing] = f"{format_srt_time(start_ms)} --> {format_srt_time(end_ms)}{rest}"
        if timing > 0:
            lines[0] = str(number)
        else:
            lines.insert(0, str(number))
        blocks.append("\n".join(lines))
        number += 1
    return "\n\n".join(blocks) + "\n", result


def shift_subtitle_file(input_path: str, output_path: str, offset_ms: int) -> ShiftResult:
    """
    Write input_path to output_path with every cue moved by offset_ms.

    A zero offset, WebVTT and unknown formats are plain copies.
    """
    ensure_dir(os.path.dirname(output_path) or ".")
    ext = os.path.splitext(input_path)[1].lower()

    if offset_ms == 0 or ext not in (".ass", ".ssa", ".srt"):
        if offset_ms != 0:
            logger.warning(f"Cannot shift {ext or 'unknown'} subtitles, copying {input_path} unchanged")
        shutil.copyfile(input_path, output_path)
        return ShiftResult()

    with open(input_path, "r", encoding="utf-8-sig", errors="replace") as f:
        content = f.read()

    if ext == ".srt":
        shifted, result = shift_srt_content(content, offset_ms)
    else:
        shifted, result = shift_ass_content(content, offset_ms)

    with open(output_path, "w", encoding="utf-8") as f:
        f.write(shifted)

    logger.info(f"Shifted {input_path} by {offset_ms}ms: {result.total_events} events, "
                f"{result.removed_events} removed")
    return result
