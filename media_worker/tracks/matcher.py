"""
Donor file discovery and episode matching.

Episode numbers are pulled from file names by an ordered list of named
patterns; the first one that matches wins. Localized release idioms come
first because the generic bracket and dash patterns would otherwise
shadow them on ambiguous names.
"""

import logging
import os
import re
from collections import Counter
from typing import Dict, Iterable, List, Optional, Pattern, Tuple

from ..errors import MatchAmbiguity
from ..models import DonorFile, EpisodeMatch, LibraryEpisode

logger = logging.getLogger("media_worker")

VIDEO_EXTENSIONS = {".mkv", ".mp4", ".avi", ".webm", ".m4v", ".mov"}
AUDIO_EXTENSIONS = {".mp3", ".aac", ".flac", ".opus", ".m4a", ".wav", ".ogg", ".ac3", ".dts", ".mka"}
SUBTITLE_EXTENSIONS = {".ass", ".ssa", ".srt", ".vtt", ".sub"}

EPISODE_PATTERNS: List[Tuple[str, Pattern]] = [
    ("sezon-serija", re.compile(r"\d+\.sezon\.(\d{1,2})\.serija\.iz\.\d+", re.IGNORECASE)),
    ("sezon-speshl", re.compile(r"\d+\.sezon\.(\d{1,2})\.speshl\.iz\.\d+", re.IGNORECASE)),
    ("between-brackets", re.compile(r"\](\d{2,3})\[")),
    ("in-brackets", re.compile(r"\[(\d{2,3})\]")),
    ("ova-bracket", re.compile(r"\[OVA(\d{1,2})\]", re.IGNORECASE)),
    ("sp-bracket", re.compile(r"\[SP(\d{1,2})\]", re.IGNORECASE)),
    ("season-episode", re.compile(r"s\d{1,2}e(\d{1,3})", re.IGNORECASE)),
    ("dash-before-bracket", re.compile(r"\s-\s(\d{2,3})\s*\[")),
    ("ep-prefix", re.compile(r"[eе]p?(\d{1,3})", re.IGNORECASE)),
    ("separated", re.compile(r"[-_.](\d{2,3})[-_.]")),
    ("episode-word", re.compile(r"episode\s*(\d{1,3})", re.IGNORECASE)),
    ("trailing-number", re.compile(r"\s(\d{2,3})$")),
    ("seriya-word", re.compile(r"серия\s*(\d{1,3})", re.IGNORECASE)),
]

SERIES_KEYWORDS = re.compile(r"serija|serii|серия|episode|эпизод", re.IGNORECASE)
SPECIAL_KEYWORDS = re.compile(r"speshl|special|спешл|ova|овa|спецвыпуск|oad|ona|\bsp\d", re.IGNORECASE)


def basename(path: str) -> str:
    """File name for both / and \\ separated paths"""
    return re.split(r"[/\\]", path)[-1] or path


def extension(path: str) -> str:
    name = basename(path)
    dot = name.rfind(".")
    return name[dot:] if dot > 0 else ""


def extract_episode_number(file_name: str) -> Optional[int]:
    """Episode number from a file name, or None; pure and deterministic"""
    name = basename(file_name)
    ext = extension(name)
    stem = name[:-len(ext)] if ext else name
    for _, pattern in EPISODE_PATTERNS:
        match = pattern.search(stem)
        if match:
            return int(match.group(1))
    return None


def detect_content_type(file_name: str) -> str:
    if SERIES_KEYWORDS.search(file_name):
        return "series"
    if SPECIAL_KEYWORDS.search(file_name):
        return "special"
    return "unknown"


def get_file_type(file_name: str) -> Optional[str]:
    ext = extension(file_name).lower()
    if ext in VIDEO_EXTENSIONS:
        return "video"
    if ext in AUDIO_EXTENSIONS:
        return "audio"
    if ext in SUBTITLE_EXTENSIONS:
        return "subtitle"
    return None


def create_donor_file(path: str, dub_group: Optional[str] = None) -> Optional[DonorFile]:
    file_type = get_file_type(path)
    if not file_type:
        return None
    name = basename(path)
    return DonorFile(
        path=path,
        name=name,
        episode_number=extract_episode_number(name),
        file_type=file_type,
        content_type=detect_content_type(name),
        dub_group=dub_group,
    )


def _excluded(donor: DonorFile, content_filter: Optional[str]) -> bool:
    if content_filter == "series":
        return donor.content_type == "special"
    if content_filter == "special":
        return donor.content_type == "series"
    return False


def scan_donor_folder(folder: str, content_filter: Optional[str] = None) -> List[DonorFile]:
    """
    Collect media files under a donor folder.

    Files in a subfolder get that subfolder's name as their dub group.
    With content_filter='series' specials are skipped, and vice versa.
    """
    donors = []
    for root, dirs, files in os.walk(folder):
        dirs.sort()
        relative = os.path.relpath(root, folder)
        dub_group = None if relative == "." else relative.split(os.sep)[0]
        for file_name in sorted(files):
            donor = create_donor_file(os.path.join(root, file_name), dub_group)
            if donor is None:
                continue
            if _excluded(donor, content_filter):
                logger.debug(f"Skipping {donor.name}: {donor.content_type} does not fit {content_filter}")
                continue
            donors.append(donor)
    logger.info(f"Scanned donor folder {folder}: {len(donors)} media files")
    return donors


class EpisodeIndex:
    """Episode-number lookup over the library"""

    def __init__(self, episodes: Iterable[LibraryEpisode]):
        self._by_number: Dict[int, List[LibraryEpisode]] = {}
        for episode in episodes:
            self._by_number.setdefault(episode.number, []).append(episode)

    def lookup(self, number: int) -> LibraryEpisode:
        candidates = self._by_number.get(number, [])
        if len(candidates) != 1:
            raise MatchAmbiguity(number, len(candidates))
        return candidates[0]


def match_donor_files(donors: Iterable[DonorFile], episodes: Iterable[LibraryEpisode]) -> List[EpisodeMatch]:
    """Automatic matching by episode number"""
    index = EpisodeIndex(episodes)
    matches = []
    for donor in donors:
        if donor.episode_number is None:
            matches.append(EpisodeMatch(donor, None, "unmatched", "no episode number in file name"))
            continue
        try:
            episode = index.lookup(donor.episode_number)
        except MatchAmbiguity as e:
            matches.append(EpisodeMatch(donor, None, "unmatched", str(e)))
            continue
        matches.append(EpisodeMatch(donor, episode, "auto"))
    return matches


def update_match(matches: List[EpisodeMatch], donor_path: str,
                 episode: Optional[LibraryEpisode]) -> List[EpisodeMatch]:
    """Manual override for one donor file; None clears it back to unmatched"""
    updated = []
    for match in matches:
        if match.donor.path == donor_path:
            match = EpisodeMatch(match.donor, episode, "manual" if episode else "unmatched",
                                 None if episode else "cleared manually")
        updated.append(match)
    return updated


def all_files_matched(matches: Iterable[EpisodeMatch]) -> bool:
    return all(m.episode is not None for m in matches)


def match_stats(matches: List[EpisodeMatch]) -> Dict[str, int]:
    counts = Counter(m.confidence for m in matches)
    matched = sum(1 for m in matches if m.episode is not None)
    return {
        "total": len(matches),
        "matched": matched,
        "unmatched": len(matches) - matched,
        "auto": counts.get("auto", 0),
        "manual": counts.get("manual", 0),
    }
