"""
Tests for the ffprobe wrapper
"""

import asyncio
import json

import pytest

from media_worker.errors import ProbeParseError
from media_worker.pipeline.probe import (
    PROBE_ARGS,
    extract_bitrate,
    get_bit_depth,
    get_duration,
    parse_probe_output,
    probe,
)
from tests.conftest import FakeRunner, make_probe


class TestExtractBitrate:
    """Bitrate fallback chain"""

    def test_bit_rate_field_wins(self):
        stream = {"bit_rate": "192000", "tags": {"BPS": "320000", "BPS-eng": "128000"}}
        assert extract_bitrate(stream) == 192000

    def test_bps_tag_beats_language_tag(self):
        stream = {"tags": {"BPS-eng": "128000", "BPS": "320000"}}
        assert extract_bitrate(stream) == 320000

    def test_language_tag_beats_generic(self):
        stream = {"tags": {"language": "jpn", "NUMBER_OF_BPS_X": "64000", "BPS-jpn": "96000"}}
        assert extract_bitrate(stream) == 96000

    def test_language_defaults_to_eng(self):
        stream = {"tags": {"BPS-eng": "128000"}}
        assert extract_bitrate(stream) == 128000

    def test_generic_bps_tag_last(self):
        stream = {"tags": {"title": "Commentary", "bps_custom": "64000"}}
        assert extract_bitrate(stream) == 64000

    def test_zero_and_negative_values_skipped(self):
        stream = {"bit_rate": "0", "tags": {"BPS": "-5", "BPS-eng": "128000"}}
        assert extract_bitrate(stream) == 128000

    def test_unparseable_values_skipped(self):
        stream = {"bit_rate": "N/A", "tags": {"BPS": "256000"}}
        assert extract_bitrate(stream) == 256000

    def test_nothing_found(self):
        assert extract_bitrate({"tags": {"title": "x"}}) is None
        assert extract_bitrate({}) is None


class TestGetBitDepth:

    @pytest.mark.parametrize("pix_fmt,expected", [
        ("yuv420p", 8),
        ("yuv420p10le", 10),
        ("p010le", 10),
        ("yuv420p12le", 12),
        (None, 8),
        ("", 8),
    ])
    def test_depths(self, pix_fmt, expected):
        assert get_bit_depth(pix_fmt) == expected


class TestParseProbeOutput:
    """Structured parsing of ffprobe JSON"""

    def test_streams_and_chapters(self):
        payload = make_probe([
            {"codec_type": "video", "codec_name": "h264", "width": 1920, "height": 1080,
             "pix_fmt": "yuv420p10le", "r_frame_rate": "24000/1001"},
            {"codec_type": "audio", "codec_name": "aac", "channels": 2, "sample_rate": "48000",
             "tags": {"language": "jpn", "BPS": "192000"}, "disposition": {"default": 1}},
            {"codec_type": "subtitle", "codec_name": "ass", "tags": {"language": "eng", "title": "Full"}},
            {"codec_type": "attachment", "tags": {"filename": "Font.ttf", "mimetype": "font/ttf"}},
        ], duration=1420.5, chapters=[
            {"start_time": "0.000000", "end_time": "90.5", "tags": {"title": "Opening"}},
            {"start_time": "90.5", "end_time": "1420.5"},
        ])

        result = parse_probe_output("/media/ep1.mkv", json.dumps(payload))

        assert result.format_name == "matroska,webm"
        assert result.duration == 1420.5
        assert len(result.streams) == 4
        audio = result.audio_streams[0]
        assert audio.bit_rate == 192000
        assert audio.language == "jpn"
        assert audio.sample_rate == 48000
        assert audio.is_default is True
        assert result.subtitle_streams[0].title == "Full"
        assert result.attachment_streams[0].filename == "Font.ttf"
        assert result.chapters[0].title == "Opening"
        assert result.chapters[1].title == "Chapter"
        assert result.chapters[1].end == 1420.5

    def test_invalid_json(self):
        with pytest.raises(ProbeParseError) as exc_info:
            parse_probe_output("/media/bad.mkv", "not json")
        assert exc_info.value.kind == "probe_parse"
        assert "/media/bad.mkv" in str(exc_info.value)

    def test_non_object(self):
        with pytest.raises(ProbeParseError):
            parse_probe_output("/media/bad.mkv", "[1, 2]")

    @pytest.mark.parametrize("fmt", ["matroska", [1, 2], 42])
    def test_format_not_an_object(self, fmt):
        with pytest.raises(ProbeParseError):
            parse_probe_output("/media/bad.mkv", json.dumps({"format": fmt, "streams": []}))

    def test_malformed_format_tags(self):
        with pytest.raises(ProbeParseError):
            parse_probe_output("/media/bad.mkv", json.dumps({"format": {"tags": "oops"}, "streams": []}))

    def test_missing_duration_defaults_to_zero(self):
        result = parse_probe_output("/x.mkv", json.dumps({"format": {}, "streams": []}))
        assert result.duration == 0.0
        assert result.streams == ()


class TestProbe:

    def test_probe_runs_ffprobe_every_time(self):
        runner = FakeRunner({"/media/ep1.mkv": make_probe([], duration=100.0)})

        async def scenario():
            first = await probe(runner, "/media/ep1.mkv")
            second = await get_duration(runner, "/media/ep1.mkv")
            return first, second

        first, duration = asyncio.run(scenario())

        assert first.duration == 100.0
        assert duration == 100.0
        assert runner.calls == [
            ("ffprobe", PROBE_ARGS + ["/media/ep1.mkv"]),
            ("ffprobe", PROBE_ARGS + ["/media/ep1.mkv"]),
        ]
