import os
import re
import shutil
from pathlib import Path
from typing import Optional


UNSAFE_CHARS = re.compile(r'[\\/:*?"<>|\s]+')


def ensure_dir(path: str) -> str:
    """Create a directory (and parents) if missing"""
    Path(path).mkdir(parents=True, exist_ok=True)
    return path


def file_size(path: str) -> int:
    """Size of a file in bytes, 0 when it cannot be read"""
    try:
        return os.path.getsize(path)
    except OSError:
        return 0


def safe_name(value: Optional[str], default: str = "und") -> str:
    """Make a tag value usable inside a file name"""
    cleaned = UNSAFE_CHARS.sub("_", (value or "").strip()).strip("_")
    return cleaned or default


def remove_file(path: Optional[str]) -> bool:
    """Delete a file if it exists; returns True when something was removed"""
    if path and os.path.isfile(path):
        os.remove(path)
        return True
    return False


def remove_tree(path: Optional[str]) -> None:
    if path and os.path.isdir(path):
        shutil.rmtree(path, ignore_errors=True)


def format_timecode(seconds: float) -> str:
    """Format seconds as HH:MM:SS.mmm"""
    total_ms = int(round(max(seconds, 0) * 1000))
    hours, rest = divmod(total_ms, 3600 * 1000)
    minutes, rest = divmod(rest, 60 * 1000)
    secs, millis = divmod(rest, 1000)
    return f"{hours:02d}:{minutes:02d}:{secs:02d}.{millis:03d}"
