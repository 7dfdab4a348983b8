"""
Pytest fixtures for media worker tests
"""

import json
import os
import tempfile
from typing import Callable, Dict, List, Optional, Tuple

import pytest

from media_worker.adapters.base import LibraryStore
from media_worker.models import LibraryEpisode
from media_worker.pipeline.runner import ProcessOutput


def _output_path(args: List[str]) -> Optional[str]:
    """Output file of an ffmpeg argument list (ffmpeg-python puts -y last)"""
    if not args:
        return None
    if args[-1] == "-y":
        return args[-2]
    if len(args) >= 2 and args[-2] == "-i":
        return None
    return args[-1]


class FakeRunner:
    """Records every invocation and plays back scripted output"""

    def __init__(self, probes: Optional[Dict[str, dict]] = None):
        self.calls: List[Tuple[str, List[str]]] = []
        self.probes = probes or {}
        self.lines: List[str] = []
        self.fail_when: Optional[Callable[[str, List[str]], Optional[Exception]]] = None
        self.write_output: Optional[Callable[[str], None]] = None
        self.stdout: Dict[str, str] = {}

    async def run(self, binary, args, on_line=None):
        args = [str(a) for a in args]
        self.calls.append((binary, args))

        if self.fail_when:
            error = self.fail_when(binary, args)
            if error:
                raise error

        if binary == "ffprobe":
            return ProcessOutput(0, json.dumps(self.probes[args[-1]]), "")

        for line in self.lines:
            if on_line:
                on_line(line)

        if binary == "ffmpeg":
            for i, arg in enumerate(args):
                if arg.startswith("-dump_attachment"):
                    self._touch(args[i + 1])
            output = _output_path(args)
            if output and not os.path.exists(output):
                self._touch(output)

        return ProcessOutput(0, self.stdout.get(binary, ""), "")

    def _touch(self, path: str) -> None:
        if not os.path.isdir(os.path.dirname(path) or "."):
            return
        if self.write_output:
            self.write_output(path)
        else:
            with open(path, "wb") as f:
                f.write(b"fake media")

    @property
    def ffmpeg_calls(self) -> List[List[str]]:
        return [args for binary, args in self.calls if binary == "ffmpeg"]


class FakeStore(LibraryStore):
    """In-memory library store"""

    def __init__(self, episodes=None):
        self.episodes = list(episodes or [])
        self.rows: Dict[str, Dict[str, dict]] = {"audio": {}, "subtitle": {}, "font": {}}
        self.fail_deletes = set()
        self.fail_creates = set()
        self.deleted: List[str] = []
        self._next = 0

    def _create(self, table: str, row: dict) -> str:
        if table in self.fail_creates:
            raise RuntimeError(f"insert into {table} failed")
        self._next += 1
        row_id = f"{table}-{self._next}"
        self.rows[table][row_id] = row
        return row_id

    def _delete(self, table: str, row_id: str) -> None:
        if row_id in self.fail_deletes:
            raise RuntimeError(f"delete of {row_id} failed")
        del self.rows[table][row_id]
        self.deleted.append(row_id)

    async def list_episodes(self, anime_id):
        return list(self.episodes)

    async def create_audio_track(self, episode_id, track, path, transcoded):
        return self._create("audio", {"episode_id": episode_id, "path": path, "transcoded": transcoded})

    async def create_subtitle_track(self, episode_id, track, path):
        return self._create("subtitle", {"episode_id": episode_id, "path": path})

    async def create_subtitle_font(self, subtitle_track_id, font_name, path):
        return self._create("font", {"subtitle_id": subtitle_track_id, "name": font_name, "path": path})

    async def delete_audio_track(self, track_id):
        self._delete("audio", track_id)

    async def delete_subtitle_track(self, track_id):
        self._delete("subtitle", track_id)

    async def delete_subtitle_font(self, font_id):
        self._delete("font", font_id)


def make_probe(streams, duration=1440.0, chapters=None, format_name="matroska,webm", size=1000000):
    """Build an ffprobe JSON payload"""
    for i, stream in enumerate(streams):
        stream.setdefault("index", i)
    return {
        "format": {
            "format_name": format_name,
            "duration": str(duration),
            "size": str(size),
            "tags": {"title": "Test"},
        },
        "streams": streams,
        "chapters": chapters or [],
    }


@pytest.fixture
def temp_dir():
    """Create a temporary directory for test files"""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield tmpdir


@pytest.fixture
def fake_runner():
    return FakeRunner()


@pytest.fixture
def fake_store():
    return FakeStore()


@pytest.fixture
def episode_factory(temp_dir):
    def build(number: int, episode_id: Optional[str] = None) -> LibraryEpisode:
        directory = os.path.join(temp_dir, "library", f"ep{number:02d}")
        os.makedirs(directory, exist_ok=True)
        return LibraryEpisode(id=episode_id or f"ep-{number}", number=number, directory=directory)
    return build
