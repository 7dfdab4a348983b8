"""
Add-tracks session: scan a donor folder, match its files to library
episodes and merge the selected audio/subtitle tracks into the episodes.

Every persisted row is appended to a rollback ledger as soon as it is
created, so cancelling the session can undo exactly what this session
added and nothing else.
"""

import asyncio
import itertools
import logging
import os
import shutil
import tempfile
from typing import Callable, Dict, Iterable, List, Optional

from ..adapters.base import LibraryStore
from ..logging_setup import log_exception
from ..models import (
    AddedRecord,
    AudioTranscodeOptions,
    DemuxOptions,
    DonorFile,
    EpisodeMatch,
    FileProgress,
    FontRef,
    LibraryEpisode,
    ProcessSummary,
    ProgressEvent,
    RollbackReport,
    SelectedTrack,
    TrackInfo,
)
from ..pipeline.demux import FONT_EXTENSIONS, demux, subtitle_extension
from ..pipeline.probe import probe
from ..pipeline.runner import ProcessRunner
from ..pipeline.subtitles import shift_subtitle_file
from ..pipeline.transcode import needs_audio_transcode, suggest_audio_bitrate, transcode_audio
from ..pipeline.util import ensure_dir, remove_file, remove_tree, safe_name
from ..pool import WorkerPool
from .ledger import RollbackLedger, rollback
from .matcher import match_donor_files, match_stats, scan_donor_folder, update_match

logger = logging.getLogger("media_worker")

TrackCallback = Callable[[FileProgress], None]

EXTENSION_CODECS = {".mp3": "mp3", ".aac": "aac", ".m4a": "aac", ".flac": "flac", ".opus": "opus",
                    ".ogg": "vorbis", ".ac3": "ac3", ".dts": "dts", ".wav": "pcm_s16le"}


def _unique_path(directory: str, stem: str, ext: str) -> str:
    candidate = os.path.join(directory, f"{stem}{ext}")
    suffix = 2
    while os.path.exists(candidate):
        candidate = os.path.join(directory, f"{stem}_{suffix}{ext}")
        suffix += 1
    return candidate


def find_sibling_fonts(subtitle_path: str) -> List[FontRef]:
    """Fonts shipped in a 'fonts' folder next to an external subtitle file"""
    fonts = []
    folder = os.path.dirname(subtitle_path)
    for entry in sorted(os.listdir(folder or ".")):
        font_dir = os.path.join(folder, entry)
        if entry.lower() != "fonts" or not os.path.isdir(font_dir):
            continue
        for name in sorted(os.listdir(font_dir)):
            if name.lower().endswith(FONT_EXTENSIONS):
                fonts.append(FontRef(name, os.path.join(font_dir, name)))
    return fonts


class AddTracksSession:
    """One add-tracks job with its own ledger and cancellation flag"""

    def __init__(self, runner: ProcessRunner, store: LibraryStore, pool: WorkerPool,
                 episodes: Iterable[LibraryEpisode], content_filter: Optional[str] = None,
                 work_dir: Optional[str] = None):
        self.runner = runner
        self.store = store
        self.pool = pool
        self.episodes = list(episodes)
        self.content_filter = content_filter
        self.work_dir = work_dir
        self.donors: List[DonorFile] = []
        self.matches: List[EpisodeMatch] = []
        self.ledger = RollbackLedger()
        self.cancelled = False
        self.processing = False
        self.progress: Dict[str, FileProgress] = {}
        self.summary: Optional[ProcessSummary] = None
        # donor path -> episode chosen by hand, None when cleared by hand
        self._manual: Dict[str, Optional[LibraryEpisode]] = {}
        self._tracks: Dict[str, List[TrackInfo]] = {}
        self._sequence = itertools.count(1)

    # Scanning and matching

    def scan_donor(self, folder: str) -> List[DonorFile]:
        self.donors = scan_donor_folder(folder, self.content_filter)
        return self.donors

    def match(self) -> List[EpisodeMatch]:
        """Automatic matching; manual overrides and manual clears made earlier are kept"""
        matches = match_donor_files(self.donors, self.episodes)
        for donor_path, episode in self._manual.items():
            matches = update_match(matches, donor_path, episode)
        self.matches = matches
        stats = match_stats(self.matches)
        logger.info(f"Matched donor files: {stats['auto']} auto, {stats['manual']} manual, "
                    f"{stats['unmatched']} unmatched")
        return self.matches

    def update_match(self, donor_path: str, episode: Optional[LibraryEpisode]) -> List[EpisodeMatch]:
        self._manual[donor_path] = episode
        self.matches = update_match(self.matches, donor_path, episode)
        return self.matches

    def stats(self):
        return match_stats(self.matches)

    def find_donor(self, donor_path: str) -> DonorFile:
        for donor in self.donors:
            if donor.path == donor_path:
                return donor
        raise KeyError(f"Unknown donor file: {donor_path}")

    def find_episode(self, episode_id: str) -> LibraryEpisode:
        for episode in self.episodes:
            if episode.id == episode_id:
                return episode
        raise KeyError(f"Unknown episode: {episode_id}")

    async def select_track(self, donor_path: str, kind: str, stream_index: int,
                           episode_id: Optional[str] = None, sync_offset_ms: int = 0) -> SelectedTrack:
        """
        Resolve a track choice into a SelectedTrack.

        Without an episode id the donor's current match is used. Raises
        KeyError for an unknown donor, episode or track, or an unmatched donor.
        """
        donor = self.find_donor(donor_path)
        if episode_id is not None:
            episode = self.find_episode(episode_id)
        else:
            episode = next((m.episode for m in self.matches if m.donor.path == donor_path), None)
            if episode is None:
                raise KeyError(f"Donor file is not matched to an episode: {donor_path}")
        track = next((t for t in await self.analyze(donor)
                      if t.kind == kind and t.stream_index == stream_index), None)
        if track is None:
            raise KeyError(f"No {kind} track {stream_index} in {donor_path}")
        return SelectedTrack(f"{donor.name}:{kind}:{stream_index}", donor.path, episode, track, sync_offset_ms)

    async def analyze(self, donor: DonorFile) -> List[TrackInfo]:
        """List the tracks a donor file can contribute"""
        if donor.path not in self._tracks:
            self._tracks[donor.path] = await self._analyze(donor)
        return self._tracks[donor.path]

    async def _analyze(self, donor: DonorFile) -> List[TrackInfo]:
        if donor.file_type == "subtitle":
            ext = os.path.splitext(donor.path)[1].lstrip(".").lower()
            return [TrackInfo(kind="subtitle", stream_index=-1, format=ext, file_path=donor.path,
                              is_external=True, dub_group=donor.dub_group,
                              fonts=find_sibling_fonts(donor.path))]

        info = await probe(self.runner, donor.path)
        if donor.file_type == "audio":
            stream = info.audio_streams[0] if info.audio_streams else None
            return [TrackInfo(
                kind="audio",
                stream_index=-1,
                language=(stream.language if stream else None) or "und",
                title=stream.title if stream else None,
                codec=stream.codec_name if stream else None,
                channels=stream.channels if stream else None,
                bitrate=stream.bit_rate if stream else None,
                file_path=donor.path,
                is_external=True,
                dub_group=donor.dub_group,
            )]

        tracks = []
        for i, stream in enumerate(info.audio_streams):
            tracks.append(TrackInfo(kind="audio", stream_index=i, language=stream.language or "und",
                                    title=stream.title, codec=stream.codec_name, channels=stream.channels,
                                    bitrate=stream.bit_rate, dub_group=donor.dub_group))
        for i, stream in enumerate(info.subtitle_streams):
            tracks.append(TrackInfo(kind="subtitle", stream_index=i, language=stream.language or "und",
                                    title=stream.title, codec=stream.codec_name,
                                    format=subtitle_extension(stream.codec_name), dub_group=donor.dub_group))
        return tracks

    # Processing

    async def process(self, selection: List[SelectedTrack],
                      on_progress: Optional[TrackCallback] = None) -> ProcessSummary:
        """
        Add every selected track to its episode.

        Audio goes first, then subtitles. Tracks not yet started when the
        session is cancelled end up as error('cancelled'); anything added
        after cancellation is rolled back before returning, and tracks that
        had finished are reported as rolled_back.
        """
        if self.processing:
            raise RuntimeError("Add-tracks session is already processing")
        states = {s.id: FileProgress(s.id, os.path.basename(s.track.file_path or s.donor_path), s.track.kind)
                  for s in selection}
        self.progress = states
        self.summary = None
        self.processing = True

        def notify(state: FileProgress) -> None:
            if on_progress:
                on_progress(state)

        async def run_one(selected: SelectedTrack) -> None:
            await self._process_one(selected, states[selected.id], notify)

        audio = [s for s in selection if s.track.kind == "audio"]
        subtitles = [s for s in selection if s.track.kind == "subtitle"]
        logger.info(f"Processing {len(audio)} audio and {len(subtitles)} subtitle tracks")

        try:
            for group in (audio, subtitles):
                await self.pool.run_all(group, run_one)
        finally:
            if self.cancelled:
                await self._rollback()
                for state in states.values():
                    if state.phase == "done":
                        state.phase = "rolled_back"
            self.processing = False

        summary = ProcessSummary(cancelled=self.cancelled, tracks=list(states.values()))
        summary.completed = sum(1 for s in summary.tracks if s.phase == "done")
        summary.failed = sum(1 for s in summary.tracks if s.phase == "error")
        summary.rolled_back = sum(1 for s in summary.tracks if s.phase == "rolled_back")
        self.summary = summary
        return summary

    async def _process_one(self, selected: SelectedTrack, state: FileProgress,
                           notify: TrackCallback) -> None:
        if self.cancelled:
            state.phase = "error"
            state.error = "cancelled"
            notify(state)
            return
        try:
            if selected.track.kind == "audio":
                await self._process_audio(selected, state, notify)
            else:
                await self._process_subtitle(selected, state, notify)
            state.phase = "done"
            state.percent = 100
        except Exception as e:
            state.phase = "error"
            state.error = str(e)
            log_exception(logger, f"Failed to add {selected.track.kind} track from {selected.donor_path}: {e}")
        notify(state)

    async def _process_audio(self, selected: SelectedTrack, state: FileProgress,
                             notify: TrackCallback) -> None:
        track = selected.track
        episode_dir = ensure_dir(selected.episode.directory)
        origin = "ext" if track.is_external else "donor"
        stem = f"audio_{origin}_{next(self._sequence)}_{safe_name(track.language)}"
        source = track.file_path if track.is_external else selected.donor_path

        codec = track.codec
        if not codec and track.file_path:
            codec = EXTENSION_CODECS.get(os.path.splitext(track.file_path)[1].lower())
        transcode = selected.sync_offset_ms != 0 or needs_audio_transcode(codec, track.bitrate)

        dest = None
        # Until the row exists the file is not in the ledger, so any failure removes it here
        try:
            if transcode:
                dest = _unique_path(episode_dir, stem, ".m4a")
                state.phase = "transcode"
                notify(state)

                def on_audio_progress(event: ProgressEvent) -> None:
                    state.percent = event.percent
                    notify(state)

                options = AudioTranscodeOptions(
                    bitrate=suggest_audio_bitrate(track.bitrate),
                    sync_offset_ms=selected.sync_offset_ms,
                    stream_index=None if track.is_external else track.stream_index,
                )
                await transcode_audio(self.runner, source, dest, options, on_audio_progress)
            else:
                state.phase = "copy"
                notify(state)
                if track.is_external:
                    dest = _unique_path(episode_dir, stem, os.path.splitext(source)[1].lower())
                    await asyncio.to_thread(shutil.copyfile, source, dest)
                else:
                    dest = await self._extract_embedded(selected, episode_dir, stem)

            record_id = await self.store.create_audio_track(selected.episode.id, track, dest, transcode)
        except Exception:
            remove_file(dest)
            raise
        self.ledger.append(AddedRecord("audio", record_id, dest))

    def _scratch_dir(self, prefix: str) -> str:
        root = ensure_dir(self.work_dir) if self.work_dir else None
        return tempfile.mkdtemp(prefix=prefix, dir=root)

    async def _extract_embedded(self, selected: SelectedTrack, episode_dir: str, stem: str) -> str:
        """Copy one embedded audio stream out of the donor container"""
        scratch = self._scratch_dir("donor-audio-")
        try:
            options = DemuxOptions(skip_video=True, extract_subs=False, extract_chapters=False,
                                   extract_fonts=False, audio_indices=[selected.track.stream_index])
            result = await demux(self.runner, selected.donor_path, scratch, options)
            if not result.success:
                raise RuntimeError(f"Demux failed: {result.error}")
            extracted = next((a for a in result.audio_tracks
                              if a.index == selected.track.stream_index and a.path), None)
            if extracted is None:
                raise RuntimeError(f"Audio stream {selected.track.stream_index} not found in {selected.donor_path}")
            dest = _unique_path(episode_dir, stem, os.path.splitext(extracted.path)[1])
            try:
                await asyncio.to_thread(shutil.move, extracted.path, dest)
            except Exception:
                remove_file(dest)
                raise
            return dest
        finally:
            remove_tree(scratch)

    async def _process_subtitle(self, selected: SelectedTrack, state: FileProgress,
                                notify: TrackCallback) -> None:
        track = selected.track
        episode_dir = ensure_dir(selected.episode.directory)
        origin = "ext" if track.is_external else "donor"
        stem = f"subs_{origin}_{next(self._sequence)}_{safe_name(track.language)}"
        # Shifting cues is the mirror of delaying audio
        offset = -selected.sync_offset_ms
        fonts = list(track.fonts)

        state.phase = "copy"
        notify(state)

        if track.is_external:
            dest = _unique_path(episode_dir, stem, os.path.splitext(track.file_path)[1].lower())
            await self._shift_into(track.file_path, dest, offset)
        else:
            scratch = self._scratch_dir("donor-subs-")
            try:
                options = DemuxOptions(skip_video=True, extract_chapters=False, audio_indices=[],
                                       subtitle_indices=[track.stream_index])
                result = await demux(self.runner, selected.donor_path, scratch, options)
                if not result.success:
                    raise RuntimeError(f"Demux failed: {result.error}")
                extracted = next((s for s in result.subtitles if s.index == track.stream_index), None)
                if extracted is None:
                    raise RuntimeError(f"Subtitle stream {track.stream_index} not found in {selected.donor_path}")
                dest = _unique_path(episode_dir, stem, f".{extracted.format}")
                await self._shift_into(extracted.path, dest, offset)
                if result.fonts_dir and not fonts:
                    fonts = [FontRef(name, os.path.join(result.fonts_dir, name))
                             for name in sorted(os.listdir(result.fonts_dir))]
                await self._store_subtitle(selected, dest, fonts, episode_dir)
            finally:
                remove_tree(scratch)
            return

        await self._store_subtitle(selected, dest, fonts, episode_dir)

    async def _shift_into(self, source: str, dest: str, offset_ms: int) -> None:
        try:
            await asyncio.to_thread(shift_subtitle_file, source, dest, offset_ms)
        except Exception:
            remove_file(dest)
            raise

    async def _store_subtitle(self, selected: SelectedTrack, dest: str, fonts: List[FontRef],
                              episode_dir: str) -> None:
        try:
            record_id = await self.store.create_subtitle_track(selected.episode.id, selected.track, dest)
        except Exception:
            remove_file(dest)
            raise
        self.ledger.append(AddedRecord("subtitle", record_id, dest))

        if fonts:
            fonts_dir = ensure_dir(os.path.join(episode_dir, "fonts"))
            for font in fonts:
                await self._store_font(record_id, font, fonts_dir)

    async def _store_font(self, subtitle_id: str, font: FontRef, fonts_dir: str) -> None:
        """Copy a font next to the episode; a failure here does not fail the track"""
        target = os.path.join(fonts_dir, os.path.basename(font.path))
        copied = False
        try:
            if not os.path.exists(target):
                copied = True
                await asyncio.to_thread(shutil.copyfile, font.path, target)
            font_id = await self.store.create_subtitle_font(subtitle_id, font.name, target)
        except Exception as e:
            logger.warning(f"Could not add font {font.name}: {e}")
            if copied:
                remove_file(target)
            return
        # Fonts already present belong to someone else; only our copy is undone
        self.ledger.append(AddedRecord("font", font_id, target if copied else None))

    # Cancellation

    def request_cancel(self) -> None:
        """Stop starting new tracks; running steps finish on their own"""
        if not self.cancelled:
            logger.info("Add-tracks session cancellation requested")
        self.cancelled = True

    async def cancel(self) -> RollbackReport:
        """Cancel and undo everything this session has added so far"""
        self.request_cancel()
        return await self._rollback()

    async def _rollback(self) -> RollbackReport:
        return await rollback(self.ledger, self.store)
