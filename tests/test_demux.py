"""
Tests for the demux engine
"""

import asyncio
import json
import os

import pytest

from media_worker.errors import ProcessError, SpawnError
from media_worker.models import DemuxOptions, StreamInfo
from media_worker.pipeline.demux import (
    METADATA_FILE,
    audio_extension,
    build_attachment_args,
    build_extract_args,
    demux,
    subtitle_extension,
)
from tests.conftest import FakeRunner, make_probe


def sample_probe():
    return make_probe([
        {"codec_type": "video", "codec_name": "hevc", "width": 1920, "height": 1080,
         "pix_fmt": "yuv420p10le", "r_frame_rate": "24000/1001"},
        {"codec_type": "audio", "codec_name": "mp3", "bit_rate": "320000", "channels": 2,
         "tags": {"language": "jpn"}},
        {"codec_type": "audio", "codec_name": "flac", "channels": 6, "tags": {"language": "rus", "title": "5.1"}},
        {"codec_type": "subtitle", "codec_name": "ass", "tags": {"language": "rus"}},
        {"codec_type": "subtitle", "codec_name": "subrip", "tags": {"language": "eng"}},
        {"codec_type": "attachment", "tags": {"filename": "Main.ttf"}},
        {"codec_type": "attachment", "tags": {"filename": "cover.jpg"}},
        {"codec_type": "attachment", "tags": {"filename": "Sign.otf"}},
    ], duration=1420.0, chapters=[{"start_time": "0", "end_time": "90", "tags": {"title": "OP"}}])


@pytest.fixture
def source(temp_dir):
    return os.path.join(temp_dir, "episode.mkv")


@pytest.fixture
def runner(source):
    return FakeRunner({source: sample_probe()})


class TestExtensions:

    @pytest.mark.parametrize("codec,ext", [
        ("ass", "ass"), ("ssa", "ssa"), ("subrip", "srt"), ("webvtt", "vtt"), (None, "ass"),
    ])
    def test_subtitle_extension(self, codec, ext):
        assert subtitle_extension(codec) == ext

    @pytest.mark.parametrize("codec,ext", [("aac", "m4a"), ("mp3", "mp3"), ("flac", "mka"), ("opus", "mka")])
    def test_audio_extension(self, codec, ext):
        assert audio_extension(codec) == ext


class TestArgs:

    def test_extract_uses_type_relative_selector(self):
        args = build_extract_args("in.mkv", "a:1", "out.mka")
        assert args == ["-i", "in.mkv", "-map", "0:a:1", "-c", "copy", "out.mka", "-y"]

    def test_attachment_ordinals_skip_other_stream_types(self):
        streams = [
            StreamInfo(index=0, codec_type="video"),
            StreamInfo(index=1, codec_type="attachment", filename="A.ttf"),
            StreamInfo(index=2, codec_type="attachment", filename="poster.png"),
            StreamInfo(index=3, codec_type="audio"),
            StreamInfo(index=4, codec_type="attachment", filename="B.OTF"),
        ]

        args = build_attachment_args("in.mkv", "/fonts", streams)

        assert args == [
            "-y",
            "-dump_attachment:t:0", "/fonts/A.ttf",
            "-dump_attachment:t:2", "/fonts/B.OTF",
            "-i", "in.mkv",
        ]


class TestDemux:

    def test_smart_mode_keeps_lossless_in_source(self, runner, source, temp_dir):
        out = os.path.join(temp_dir, "out")

        result = asyncio.run(demux(runner, source, out, DemuxOptions(audio_extract_mode="smart")))

        assert result.success is True
        mp3, flac = result.audio_tracks
        assert mp3.path == os.path.join(out, "audio_0_jpn.mp3")
        assert mp3.needs_transcode is False
        assert os.path.exists(mp3.path)
        assert flac.path is None
        assert flac.source_file == source
        assert flac.needs_transcode is True
        assert flac.title == "5.1"
        extract_maps = [args[args.index("-map") + 1] for args in runner.ffmpeg_calls if "-map" in args]
        assert "0:a:0" in extract_maps
        assert "0:a:1" not in extract_maps

    def test_all_mode_extracts_every_track(self, runner, source, temp_dir):
        out = os.path.join(temp_dir, "out")

        result = asyncio.run(demux(runner, source, out))

        assert [os.path.basename(a.path) for a in result.audio_tracks] == ["audio_0_jpn.mp3", "audio_1_rus.mka"]
        assert result.video.path == os.path.join(out, "video.mkv")
        assert result.video.bit_depth == 10
        assert [os.path.basename(s.path) for s in result.subtitles] == ["subs_0_rus.ass", "subs_1_eng.srt"]

    def test_skip_video_references_source(self, runner, source, temp_dir):
        result = asyncio.run(demux(runner, source, os.path.join(temp_dir, "out"), DemuxOptions(skip_video=True)))

        assert result.video.path is None
        assert result.video.source_file == source
        assert result.video.codec == "hevc"
        assert not any("0:v:0" in args for args in runner.ffmpeg_calls)

    def test_fonts_dumped_by_attachment_ordinal(self, runner, source, temp_dir):
        out = os.path.join(temp_dir, "out")

        result = asyncio.run(demux(runner, source, out))

        assert result.fonts_dir == os.path.join(out, "fonts")
        assert sorted(os.listdir(result.fonts_dir)) == ["Main.ttf", "Sign.otf"]
        dump = next(args for args in runner.ffmpeg_calls if any(a.startswith("-dump_attachment") for a in args))
        assert "-dump_attachment:t:0" in dump
        assert "-dump_attachment:t:2" in dump
        assert "-dump_attachment:t:1" not in dump

    def test_attachment_exit_code_is_not_fatal(self, runner, source, temp_dir):
        def complain(binary, args):
            if any(a.startswith("-dump_attachment") for a in args):
                for i, arg in enumerate(args):
                    if arg.startswith("-dump_attachment"):
                        with open(args[i + 1], "wb") as f:
                            f.write(b"font")
                return ProcessError("ffmpeg", 1, "At least one output file must be specified")
            return None

        runner.fail_when = complain

        result = asyncio.run(demux(runner, source, os.path.join(temp_dir, "out")))

        assert result.success is True
        assert result.fonts_dir is not None

    def test_failed_subtitle_is_skipped(self, runner, source, temp_dir):
        def fail_second_subtitle(binary, args):
            if "0:s:1" in args:
                return ProcessError("ffmpeg", 1, "Subtitle codec not supported")
            return None

        runner.fail_when = fail_second_subtitle

        result = asyncio.run(demux(runner, source, os.path.join(temp_dir, "out")))

        assert result.success is True
        assert [s.index for s in result.subtitles] == [0]

    def test_index_selection(self, runner, source, temp_dir):
        options = DemuxOptions(skip_video=True, audio_indices=[1], subtitle_indices=[], extract_fonts=False)

        result = asyncio.run(demux(runner, source, os.path.join(temp_dir, "out"), options))

        assert [a.index for a in result.audio_tracks] == [1]
        assert result.subtitles == []
        assert result.fonts_dir is None

    def test_metadata_sidecar(self, runner, source, temp_dir):
        out = os.path.join(temp_dir, "out")

        asyncio.run(demux(runner, source, out))

        with open(os.path.join(out, METADATA_FILE), encoding="utf-8") as f:
            metadata = json.load(f)
        assert metadata["container"] == "matroska,webm"
        assert metadata["total_duration"] == 1420.0
        assert metadata["chapters"] == [{"start": 0.0, "end": 90.0, "title": "OP"}]
        assert metadata["tags"] == {"title": "Test"}
        assert "streams" in metadata["ffprobe_raw"]

    def test_errors_become_failed_result(self, runner, source, temp_dir):
        runner.fail_when = lambda binary, args: SpawnError("ffprobe", "No such file or directory")

        result = asyncio.run(demux(runner, source, os.path.join(temp_dir, "out")))

        assert result.success is False
        assert "Failed to start ffprobe" in result.error
