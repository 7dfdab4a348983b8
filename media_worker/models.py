"""
Domain models for the media worker.

Defines the core data structures shared between the process runner,
the media engines, the worker pools and the track-merge pipeline.
"""

from dataclasses import dataclass, field
from typing import Optional, Dict, Any, List, Tuple


# Probe results are immutable once returned

@dataclass(frozen=True)
class StreamInfo:
    """One stream as reported by ffprobe"""
    index: int
    codec_type: str
    codec_name: Optional[str] = None
    width: Optional[int] = None
    height: Optional[int] = None
    channels: Optional[int] = None
    sample_rate: Optional[int] = None
    bit_rate: Optional[int] = None
    pix_fmt: Optional[str] = None
    frame_rate: Optional[str] = None
    language: Optional[str] = None
    title: Optional[str] = None
    filename: Optional[str] = None
    mimetype: Optional[str] = None
    is_default: bool = False
    tags: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class Chapter:
    """A chapter marker, times in seconds"""
    start: float
    end: float
    title: str = "Chapter"


@dataclass(frozen=True)
class ProbeResult:
    """Structured analysis of one media file"""
    path: str
    format_name: str
    duration: float
    size: int
    bit_rate: Optional[int]
    streams: Tuple[StreamInfo, ...]
    chapters: Tuple[Chapter, ...]
    tags: Dict[str, str] = field(default_factory=dict)
    raw: Dict[str, Any] = field(default_factory=dict)

    def streams_of(self, codec_type: str) -> List[StreamInfo]:
        return [s for s in self.streams if s.codec_type == codec_type]

    @property
    def video_streams(self) -> List[StreamInfo]:
        return self.streams_of("video")

    @property
    def audio_streams(self) -> List[StreamInfo]:
        return self.streams_of("audio")

    @property
    def subtitle_streams(self) -> List[StreamInfo]:
        return self.streams_of("subtitle")

    @property
    def attachment_streams(self) -> List[StreamInfo]:
        return self.streams_of("attachment")


@dataclass
class ProgressEvent:
    """Progress of one running job"""
    percent: float
    current_time: float
    total_duration: float
    eta_seconds: float
    stage: str
    speed: Optional[float] = None
    fps: Optional[float] = None
    frame: Optional[int] = None


@dataclass
class JobResult:
    """Terminal result of a job run through the service facade"""
    success: bool
    data: Any = None
    error: Optional[str] = None
    error_kind: Optional[str] = None


# Transcode options

@dataclass
class TranscodeOptions:
    """Options for a plain video transcode"""
    codec: str = "AV1"
    use_gpu: bool = True
    rate_control: str = "CQ"  # CQ, CRF, VBR, CONSTQP
    quality: int = 24
    preset: str = "p5"
    max_bitrate: Optional[float] = None  # Mbps


@dataclass
class VideoProfile:
    """Encoding profile for profile-driven and sample encodes"""
    name: str = "default"
    codec: str = "AV1"
    use_gpu: bool = True
    rate_control: str = "VBR"
    quality: int = 24
    max_bitrate: Optional[float] = None  # Mbps
    preset: str = "p5"
    tune: str = "HQ"
    multipass: str = "DISABLED"
    spatial_aq: bool = True
    temporal_aq: bool = True
    aq_strength: int = 8
    lookahead: int = 0
    lookahead_level: Optional[int] = None
    b_ref_mode: str = "DISABLED"
    gop_size: int = 240
    force_10bit: bool = False
    deband: bool = True

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'VideoProfile':
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        return cls(**known)


@dataclass
class AudioTranscodeOptions:
    """Options for the two-phase constant bitrate audio encode"""
    bitrate: int = 256  # kbps
    sample_rate: int = 48000
    channels: int = 2
    codec: str = "aac"
    sync_offset_ms: int = 0
    stream_index: Optional[int] = None


@dataclass
class AudioVBROptions:
    """Options for the single pass audio encode"""
    target_bitrate: int = 256  # kbps
    sample_rate: Optional[int] = None
    channels: Optional[int] = None
    codec: str = "aac"
    sync_offset_ms: int = 0
    stream_index: Optional[int] = None


@dataclass
class SampleResult:
    """Output of a calibration sample encode"""
    output_path: str
    encoding_time_seconds: float
    output_size_bytes: int


# Demux

@dataclass
class DemuxOptions:
    """Policy knobs for stream extraction"""
    skip_video: bool = False
    audio_extract_mode: str = "all"  # all, smart
    extract_subs: bool = True
    extract_chapters: bool = True
    extract_fonts: bool = True
    audio_indices: Optional[List[int]] = None
    subtitle_indices: Optional[List[int]] = None


@dataclass
class DemuxedVideo:
    """Video stream, extracted or left in its source container"""
    path: Optional[str]
    codec: Optional[str]
    width: Optional[int]
    height: Optional[int]
    bit_depth: int
    frame_rate: Optional[str] = None
    source_file: Optional[str] = None
    index: int = 0


@dataclass
class DemuxedAudio:
    """Audio stream; path is None when it stays in the source container"""
    path: Optional[str]
    index: int
    codec: Optional[str]
    language: str
    title: Optional[str]
    channels: Optional[int]
    sample_rate: Optional[int]
    bitrate: Optional[int]
    is_default: bool = False
    source_file: Optional[str] = None
    needs_transcode: bool = False


@dataclass
class DemuxedSubtitle:
    """Extracted subtitle stream"""
    path: str
    index: int
    codec: Optional[str]
    language: str
    title: Optional[str]
    format: str
    is_default: bool = False


@dataclass
class DemuxMetadata:
    """Snapshot written to the metadata sidecar"""
    container: str
    total_duration: float
    total_size: int
    chapters: List[Chapter] = field(default_factory=list)
    tags: Dict[str, str] = field(default_factory=dict)
    ffprobe_raw: Dict[str, Any] = field(default_factory=dict)


@dataclass
class DemuxResult:
    """Outcome of a demux job"""
    success: bool
    source: str
    output_dir: str
    video: Optional[DemuxedVideo] = None
    audio_tracks: List[DemuxedAudio] = field(default_factory=list)
    subtitles: List[DemuxedSubtitle] = field(default_factory=list)
    fonts_dir: Optional[str] = None
    metadata: Optional[DemuxMetadata] = None
    error: Optional[str] = None


# Merge

@dataclass
class MergeAudioTrack:
    """Audio stream to place in the merged container"""
    path: str
    index: int = 0  # type-relative audio index inside path
    language: str = "und"
    title: Optional[str] = None


@dataclass
class MergeSubtitleTrack:
    """Subtitle file plus the fonts it needs"""
    path: str
    language: str = "und"
    title: Optional[str] = None
    fonts: List[str] = field(default_factory=list)


@dataclass
class MergeConfig:
    """Everything a remux needs; consumed once"""
    video_path: str
    output_path: str
    original_audio: List[MergeAudioTrack] = field(default_factory=list)
    external_audio: List[MergeAudioTrack] = field(default_factory=list)
    subtitles: List[MergeSubtitleTrack] = field(default_factory=list)
    chapters: List[Chapter] = field(default_factory=list)
    poster_path: Optional[str] = None
    default_audio_index: int = 0
    default_subtitle_index: int = 0
    subtitle_codec: str = "ass"
    total_duration: Optional[float] = None


# Screenshots

@dataclass
class ScreenshotOptions:
    count: int = 10
    skip_start_percent: float = 10.0
    thumbnail_width: int = 320
    thumbnail_quality: int = 90
    full_width: int = 1280
    full_quality: int = 95
    format: str = "webp"  # webp, jpg


@dataclass
class ScreenshotResult:
    thumbnails: List[str] = field(default_factory=list)
    full_size: List[str] = field(default_factory=list)


@dataclass
class SpriteOptions:
    frame_count: int = 100
    thumb_width: int = 160
    thumb_height: int = 90
    columns: int = 10
    quality: int = 75


@dataclass
class SpriteResult:
    sprite_path: str
    vtt_path: str
    sprite_size_bytes: int


# Donor tracks

@dataclass(frozen=True)
class LibraryEpisode:
    """An episode already present in the library"""
    id: str
    number: int
    directory: str
    name: Optional[str] = None


@dataclass(frozen=True)
class DonorFile:
    """A media file found while scanning a donor folder"""
    path: str
    name: str
    episode_number: Optional[int]
    file_type: str  # video, audio, subtitle
    content_type: str  # series, special, unknown
    dub_group: Optional[str] = None


@dataclass
class EpisodeMatch:
    """Correlation of a donor file with a library episode"""
    donor: DonorFile
    episode: Optional[LibraryEpisode]
    confidence: str  # auto, manual, unmatched
    reason: Optional[str] = None


@dataclass
class FontRef:
    name: str
    path: str


@dataclass
class TrackInfo:
    """An audio or subtitle track offered by a donor"""
    kind: str  # audio, subtitle
    stream_index: int  # type-relative; -1 for standalone files
    language: str = "und"
    title: Optional[str] = None
    codec: Optional[str] = None
    channels: Optional[int] = None
    bitrate: Optional[int] = None
    format: Optional[str] = None
    file_path: Optional[str] = None
    is_external: bool = False
    dub_group: Optional[str] = None
    fonts: List[FontRef] = field(default_factory=list)


@dataclass
class SelectedTrack:
    """A track the caller chose to add to an episode"""
    id: str
    donor_path: str
    episode: LibraryEpisode
    track: TrackInfo
    sync_offset_ms: int = 0


@dataclass
class FileProgress:
    """Per-track state: waiting -> transcode|copy -> done, or error; done becomes rolled_back on cancel"""
    id: str
    name: str
    kind: str
    phase: str = "waiting"
    percent: float = 0.0
    error: Optional[str] = None


@dataclass(frozen=True)
class AddedRecord:
    """Rollback ledger entry: one persisted row plus at most one file"""
    type: str  # audio, subtitle, font
    database_id: str
    file_path: Optional[str] = None


@dataclass
class RollbackReport:
    removed: int = 0
    failures: List[str] = field(default_factory=list)


@dataclass
class ProcessSummary:
    completed: int = 0
    failed: int = 0
    rolled_back: int = 0
    cancelled: bool = False
    tracks: List[FileProgress] = field(default_factory=list)
