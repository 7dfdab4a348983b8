"""
Tests for donor file discovery and episode matching
"""

import os

import pytest

from media_worker.errors import MatchAmbiguity
from media_worker.models import DonorFile, LibraryEpisode
from media_worker.tracks.matcher import (
    EPISODE_PATTERNS,
    EpisodeIndex,
    all_files_matched,
    basename,
    create_donor_file,
    detect_content_type,
    extract_episode_number,
    get_file_type,
    match_donor_files,
    match_stats,
    scan_donor_folder,
    update_match,
)


def donor(name, number):
    return DonorFile(path=f"/donor/{name}", name=name, episode_number=number,
                     file_type="audio", content_type="unknown")


def episode(number, episode_id=None):
    return LibraryEpisode(id=episode_id or f"ep-{number}", number=number, directory=f"/library/{number}")


def touch(path):
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, "wb") as f:
        f.write(b"x")


class TestExtractEpisodeNumber:
    """Ordered filename patterns"""

    @pytest.mark.parametrize("name,expected", [
        ("Show - 2.sezon.05.serija.iz.12.mkv", 5),
        ("Show.1.sezon.02.speshl.iz.03.mkv", 2),
        ("[Group][Show][07][1080p].mkv", 7),
        ("[Group] Show [12].mkv", 12),
        ("[Group] Show [OVA02].mkv", 2),
        ("[Group] Show [SP03].mkv", 3),
        ("Show.S01E03.1080p.mkv", 3),
        ("[SubsPlease] Show - 12 [1080p].mkv", 12),
        ("Show_ep09_final.mka", 9),
        ("Show Episode 7.mkv", 7),
        ("Show 24.mkv", 24),
        ("Шоу серия 5.mkv", 5),
    ])
    def test_patterns(self, name, expected):
        assert extract_episode_number(name) == expected

    def test_no_match(self):
        assert extract_episode_number("Random Movie.mkv") is None

    def test_localized_pattern_beats_generic(self):
        # The generic dot-separated pattern would pick up the season here
        assert extract_episode_number("Show.02.sezon.11.serija.iz.24.mkv") == 11

    def test_uses_file_name_only(self):
        assert extract_episode_number("/media/Season 01/Show - 04 [720p].mkv") == 4

    def test_patterns_are_named_and_ordered(self):
        names = [name for name, _ in EPISODE_PATTERNS]
        assert names[0] == "sezon-serija"
        assert names.index("between-brackets") < names.index("in-brackets") < names.index("separated")
        assert len(set(names)) == len(names)


class TestClassification:

    def test_content_type(self):
        assert detect_content_type("Show - 2.sezon.05.serija.iz.12.mkv") == "series"
        assert detect_content_type("Show.1.sezon.02.speshl.iz.03.mkv") == "special"
        assert detect_content_type("[Group] Show [OVA02].mkv") == "special"
        assert detect_content_type("[Group][Show][07].mkv") == "unknown"

    def test_file_type(self):
        assert get_file_type("a.MKV") == "video"
        assert get_file_type("a.flac") == "audio"
        assert get_file_type("a.ass") == "subtitle"
        assert get_file_type("a.nfo") is None

    def test_basename_handles_windows_paths(self):
        assert basename(r"C:\donor\Show - 01.mka") == "Show - 01.mka"

    def test_create_donor_file(self):
        created = create_donor_file("/donor/Dub/Show - 03.mka", "Dub")
        assert created.episode_number == 3
        assert created.file_type == "audio"
        assert created.dub_group == "Dub"
        assert create_donor_file("/donor/readme.txt") is None


class TestScanDonorFolder:

    def test_dub_group_from_first_subfolder(self, temp_dir):
        touch(os.path.join(temp_dir, "Show - 01 [1080p].mkv"))
        touch(os.path.join(temp_dir, "RusDub", "Show - 01.mka"))
        touch(os.path.join(temp_dir, "RusDub", "extra", "Show - 02.mka"))
        touch(os.path.join(temp_dir, "notes.txt"))

        donors = scan_donor_folder(temp_dir)

        by_name = {d.name: d for d in donors}
        assert set(by_name) == {"Show - 01 [1080p].mkv", "Show - 01.mka", "Show - 02.mka"}
        assert by_name["Show - 01 [1080p].mkv"].dub_group is None
        assert by_name["Show - 01.mka"].dub_group == "RusDub"
        assert by_name["Show - 02.mka"].dub_group == "RusDub"

    def test_content_filter(self, temp_dir):
        touch(os.path.join(temp_dir, "Show.1.sezon.01.serija.iz.12.mkv"))
        touch(os.path.join(temp_dir, "Show.1.sezon.01.speshl.iz.02.mkv"))
        touch(os.path.join(temp_dir, "[Group][Show][03].mkv"))

        series = {d.name for d in scan_donor_folder(temp_dir, "series")}
        specials = {d.name for d in scan_donor_folder(temp_dir, "special")}

        assert series == {"Show.1.sezon.01.serija.iz.12.mkv", "[Group][Show][03].mkv"}
        assert specials == {"Show.1.sezon.01.speshl.iz.02.mkv", "[Group][Show][03].mkv"}


class TestMatching:

    def test_auto_and_unmatched(self):
        matches = match_donor_files(
            [donor("a - 01.mka", 1), donor("a - 03.mka", 3), donor("a.mka", None)],
            [episode(1), episode(2)],
        )

        assert [m.confidence for m in matches] == ["auto", "unmatched", "unmatched"]
        assert matches[0].episode.id == "ep-1"
        assert matches[1].reason == "No library episode numbered 3"
        assert matches[2].reason == "no episode number in file name"
        assert all_files_matched(matches) is False

    def test_duplicate_episode_numbers_are_unmatched(self):
        matches = match_donor_files([donor("a - 02.mka", 2)], [episode(2, "x"), episode(2, "y")])

        assert matches[0].episode is None
        assert matches[0].confidence == "unmatched"
        assert "2 library episodes numbered 2" in matches[0].reason

    def test_index_lookup_raises(self):
        index = EpisodeIndex([episode(1)])
        assert index.lookup(1).id == "ep-1"
        with pytest.raises(MatchAmbiguity) as exc_info:
            index.lookup(9)
        assert exc_info.value.candidates == 0

    def test_manual_override_and_clear(self):
        matches = match_donor_files([donor("a.mka", None), donor("a - 01.mka", 1)], [episode(1), episode(5)])

        matches = update_match(matches, "/donor/a.mka", episode(5))
        assert matches[0].confidence == "manual"
        assert matches[0].episode.number == 5
        assert all_files_matched(matches) is True

        matches = update_match(matches, "/donor/a - 01.mka", None)
        assert matches[1].confidence == "unmatched"
        assert matches[1].episode is None

    def test_stats(self):
        matches = match_donor_files([donor("a - 01.mka", 1), donor("b.mka", None)], [episode(1)])
        matches = update_match(matches, "/donor/b.mka", episode(1))

        assert match_stats(matches) == {"total": 2, "matched": 2, "unmatched": 0, "auto": 1, "manual": 1}
