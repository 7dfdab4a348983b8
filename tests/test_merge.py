"""
Tests for the merge engine
"""

import asyncio
import os

import pytest

from media_worker.errors import ProcessError
from media_worker.models import Chapter, MergeAudioTrack, MergeConfig, MergeSubtitleTrack
from media_worker.pipeline.merge import (
    build_merge_args,
    escape_metadata,
    font_mime_type,
    image_mime_type,
    merge,
    render_chapters_metadata,
)
from tests.conftest import FakeRunner


def inputs(args):
    return [args[i + 1] for i, arg in enumerate(args) if arg == "-i"]


def values(args, flag):
    return [args[i + 1] for i, arg in enumerate(args) if arg == flag]


@pytest.fixture
def full_config():
    return MergeConfig(
        video_path="video.mkv",
        output_path="final.mkv",
        original_audio=[
            MergeAudioTrack("source.mkv", index=0, language="jpn"),
            MergeAudioTrack("source.mkv", index=2, language="eng", title="Commentary"),
        ],
        external_audio=[MergeAudioTrack("dub.m4a", language="rus", title="Studio Dub")],
        subtitles=[
            MergeSubtitleTrack("full.ass", language="rus", title="Full", fonts=["/f/Main.ttf", "/f/Sign.otf"]),
            MergeSubtitleTrack("signs.ass", language="rus"),
        ],
        poster_path="poster.png",
        default_audio_index=2,
        default_subtitle_index=1,
    )


class TestMimeTypes:

    def test_fonts(self):
        assert font_mime_type("A.otf") == "application/vnd.ms-opentype"
        assert font_mime_type("A.TTF") == "application/x-truetype-font"

    def test_images(self):
        assert image_mime_type("cover.PNG") == "image/png"
        assert image_mime_type("cover.webp") == "image/webp"
        assert image_mime_type("cover.bmp") == "image/jpeg"


class TestChaptersMetadata:

    def test_millisecond_timebase(self):
        text = render_chapters_metadata([Chapter(0.0, 90.5, "Opening"), Chapter(90.5, 1420.0)])

        assert text.startswith(";FFMETADATA1\n")
        assert "TIMEBASE=1/1000\nSTART=0\nEND=90500\ntitle=Opening" in text
        assert "START=90500\nEND=1420000\ntitle=Chapter" in text
        assert text.count("[CHAPTER]") == 2

    def test_special_characters_escaped(self):
        assert escape_metadata("Part 1; a=b #2") == r"Part 1\; a\=b \#2"


class TestBuildMergeArgs:

    def test_input_order_and_maps(self, full_config):
        args = build_merge_args(full_config, "chapters.txt")

        assert inputs(args) == ["video.mkv", "chapters.txt", "source.mkv", "dub.m4a", "full.ass", "signs.ass"]
        assert values(args, "-map") == ["0:v", "2:a:0", "2:a:2", "3:a:0", "4:s:0", "5:s:0"]
        assert values(args, "-map_chapters") == ["1"]
        assert args[-1] == "final.mkv"
        assert args[0] == "-y"

    def test_offsets_without_chapters(self, full_config):
        args = build_merge_args(full_config)

        assert "-map_chapters" not in args
        assert values(args, "-map") == ["0:v", "1:a:0", "1:a:2", "2:a:0", "3:s:0", "4:s:0"]

    def test_distinct_original_containers(self):
        config = MergeConfig("v.mkv", "o.mkv", original_audio=[
            MergeAudioTrack("a.mkv", 1), MergeAudioTrack("b.mkv", 0), MergeAudioTrack("a.mkv", 0),
        ])

        args = build_merge_args(config)

        assert inputs(args) == ["v.mkv", "a.mkv", "b.mkv"]
        assert values(args, "-map") == ["0:v", "1:a:1", "2:a:0", "1:a:0"]

    def test_codecs(self, full_config):
        args = build_merge_args(full_config)
        assert values(args, "-c:v") == ["copy"]
        assert values(args, "-c:a") == ["copy"]
        assert values(args, "-c:s") == ["ass"]

    def test_track_metadata(self, full_config):
        args = build_merge_args(full_config)

        assert values(args, "-metadata:s:a:0") == ["language=jpn"]
        assert values(args, "-metadata:s:a:1") == ["language=eng", "title=Commentary"]
        assert values(args, "-metadata:s:a:2") == ["language=rus", "title=Studio Dub"]
        assert values(args, "-metadata:s:s:0") == ["language=rus", "title=Full"]
        assert values(args, "-metadata:s:s:1") == ["language=rus"]

    def test_dispositions(self, full_config):
        args = build_merge_args(full_config)

        assert values(args, "-disposition:a:0") == ["0"]
        assert values(args, "-disposition:a:1") == ["0"]
        assert values(args, "-disposition:a:2") == ["default"]
        assert values(args, "-disposition:s:0") == ["0"]
        assert values(args, "-disposition:s:1") == ["default"]

    def test_fonts_then_poster_attachments(self, full_config):
        args = build_merge_args(full_config)

        assert values(args, "-attach") == ["/f/Main.ttf", "/f/Sign.otf", "poster.png"]
        assert values(args, "-metadata:s:t:0") == ["mimetype=application/x-truetype-font"]
        assert values(args, "-metadata:s:t:1") == ["mimetype=application/vnd.ms-opentype"]
        assert values(args, "-metadata:s:t:2") == ["mimetype=image/png", "filename=cover"]


class TestMerge:

    def test_chapters_file_written_then_removed(self):
        runner = FakeRunner()
        seen = {}

        def capture(binary, args):
            path = values(args, "-i")[1]
            with open(path, encoding="utf-8") as f:
                seen["path"] = path
                seen["text"] = f.read()
            return None

        runner.fail_when = capture
        config = MergeConfig("video.mkv", "/nonexistent-dir/final.mkv", chapters=[Chapter(0, 60, "A")])

        asyncio.run(merge(runner, config))

        assert "title=A" in seen["text"]
        assert not os.path.exists(seen["path"])

    def test_chapters_file_removed_on_failure(self):
        runner = FakeRunner()
        seen = {}

        def fail(binary, args):
            seen["path"] = values(args, "-i")[1]
            return ProcessError("ffmpeg", 1, "Invalid data found")

        runner.fail_when = fail
        config = MergeConfig("video.mkv", "final.mkv", chapters=[Chapter(0, 60)])

        with pytest.raises(ProcessError):
            asyncio.run(merge(runner, config))

        assert not os.path.exists(seen["path"])

    def test_progress_ends_at_100(self, temp_dir):
        runner = FakeRunner()
        runner.lines = ["size=1024kB time=00:05:00.00 bitrate=1000kbits/s"]
        events = []
        config = MergeConfig("video.mkv", os.path.join(temp_dir, "final.mkv"), total_duration=600.0)

        asyncio.run(merge(runner, config, events.append))

        assert [e.percent for e in events] == [pytest.approx(50.0), 100]
        assert all(e.stage == "merge" for e in events)
