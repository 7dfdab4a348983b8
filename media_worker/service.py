"""
Media service facade.

Owns the process runner, hardware info, worker pools and library store,
and exposes every media operation to the host application. Engine errors
never escape a progress stream: each job ends with a JobResult.
"""

import asyncio
import logging
import os
import uuid
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional, Set

from .adapters.base import LibraryStore
from .adapters.postgres_adapter import PostgresLibraryStore
from .config import MAX_TRACK_CONCURRENT, WorkerConfig
from .errors import MediaWorkerError
from .hardware import HardwareInfo
from .logging_setup import log_exception
from .models import (
    AudioTranscodeOptions,
    AudioVBROptions,
    DemuxOptions,
    DemuxResult,
    JobResult,
    LibraryEpisode,
    MergeConfig,
    ScreenshotOptions,
    SpriteOptions,
    TranscodeOptions,
    VideoProfile,
)
from .pipeline import demux as demux_engine
from .pipeline import merge as merge_engine
from .pipeline import screenshots, transcode
from .pipeline.probe import probe
from .pipeline.progress import ProgressCallback, ProgressStream
from .pipeline.runner import ProcessRunner
from .pool import WorkerPool
from .tracks.pipeline import AddTracksSession

logger = logging.getLogger("media_worker")

Job = Callable[[ProgressCallback], Awaitable[Any]]


class MediaService:
    """Entry point for every media operation"""
    
    def __init__(self, config: Optional[WorkerConfig] = None, runner: Optional[ProcessRunner] = None,
                 store: Optional[LibraryStore] = None, hardware: Optional[HardwareInfo] = None):
        self.config = config or WorkerConfig.from_env()
        self.runner = runner or ProcessRunner({
            "ffmpeg": self.config.FFMPEG_PATH,
            "ffprobe": self.config.FFPROBE_PATH,
        })
        self.hardware = hardware or HardwareInfo(self.runner)
        self.store = store
        
        cpus = self.hardware.cpu_count()
        self.video_pool = WorkerPool("video", self.config.VIDEO_MAX_CONCURRENT)
        self.audio_pool = WorkerPool("audio", min(self.config.AUDIO_MAX_CONCURRENT, cpus), max_limit=cpus)
        self.screenshot_pool = WorkerPool("screenshots", self.config.SCREENSHOT_MAX_CONCURRENT)
        self.track_pool = WorkerPool("tracks", self.config.TRACK_MAX_CONCURRENT, max_limit=MAX_TRACK_CONCURRENT)
        
        self.sessions: Dict[str, AddTracksSession] = {}
        self._tasks: Set[asyncio.Task] = set()
    
    async def initialize(self) -> None:
        """Connect the library store and look up the GPU"""
        try:
            if self.store is None and self.config.STORE_TYPE == "postgres":
                store_config = self.config.STORE_CONFIG
                self.store = PostgresLibraryStore(
                    database_url=store_config["database_url"],
                    pool_size=store_config.get("connection_pool_size", 5),
                    timeout=store_config.get("connection_timeout", 10)
                )
            if self.store is not None:
                await self.store.connect()
            
            gpu = await self.hardware.detect_gpu()
            logger.info(f"Media service initialized (cpus={self.hardware.cpu_count()}, gpu={gpu or 'none'})")
        except Exception as e:
            log_exception(logger, f"Failed to initialize media service: {e}")
            raise
    
    async def shutdown(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        if self.store is not None:
            await self.store.close()
        logger.info("Media service stopped")
    
    # Job plumbing
    
    def _start(self, name: str, pool: Optional[WorkerPool], job: Job) -> ProgressStream:
        """Run a job in the background, streaming its progress"""
        stream = ProgressStream()
        
        async def run() -> None:
            try:
                if pool is None:
                    data = await job(stream.emit)
                else:
                    data = await pool.submit(lambda: job(stream.emit))
                stream.close(JobResult(success=True, data=data))
            except asyncio.CancelledError:
                stream.close(JobResult(success=False, error="cancelled", error_kind="cancelled"))
                raise
            except MediaWorkerError as e:
                logger.error(f"{name} failed: {e}")
                stream.close(JobResult(success=False, error=str(e), error_kind=e.kind))
            except Exception as e:
                log_exception(logger, f"{name} failed: {e}")
                stream.close(JobResult(success=False, error=str(e), error_kind="error"))
        
        task = asyncio.ensure_future(run())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return stream
    
    async def _call(self, name: str, pool: Optional[WorkerPool], job: Callable[[], Awaitable[Any]]) -> JobResult:
        """Run a job without a progress stream, folding errors into the result"""
        try:
            data = await (pool.submit(job) if pool else job())
            return JobResult(success=True, data=data)
        except MediaWorkerError as e:
            logger.error(f"{name} failed: {e}")
            return JobResult(success=False, error=str(e), error_kind=e.kind)
        except Exception as e:
            log_exception(logger, f"{name} failed: {e}")
            return JobResult(success=False, error=str(e), error_kind="error")
    
    # Media operations
    
    async def probe(self, path: str) -> JobResult:
        return await self._call("Probe", None, lambda: probe(self.runner, path))
    
    def transcode_video(self, input_path: str, output_path: str,
                        options: Optional[TranscodeOptions] = None) -> ProgressStream:
        return self._start("Video transcode", self.video_pool, lambda emit: transcode.transcode_video(
            self.runner, input_path, output_path, options, emit))
    
    def transcode_with_profile(self, input_path: str, output_path: str, profile: VideoProfile,
                               source_bit_depth: int = 8) -> ProgressStream:
        return self._start("Profile transcode", self.video_pool, lambda emit: transcode.transcode_with_profile(
            self.runner, input_path, output_path, profile, source_bit_depth, emit))
    
    def transcode_audio(self, input_path: str, output_path: str,
                        options: Optional[AudioTranscodeOptions] = None) -> ProgressStream:
        return self._start("Audio transcode", self.audio_pool, lambda emit: transcode.transcode_audio(
            self.runner, input_path, output_path, options, emit))
    
    def transcode_audio_vbr(self, input_path: str, output_path: str,
                            options: Optional[AudioVBROptions] = None) -> ProgressStream:
        return self._start("Audio VBR transcode", self.audio_pool, lambda emit: transcode.transcode_audio_vbr(
            self.runner, input_path, output_path, options, emit))
    
    async def encode_sample(self, input_path: str, output_path: str, profile: VideoProfile,
                            start: float = 0, duration: float = transcode.DEFAULT_SAMPLE_DURATION,
                            source_bit_depth: int = 8) -> JobResult:
        return await self._call("Sample encode", self.video_pool, lambda: transcode.encode_sample(
            self.runner, input_path, output_path, profile, start, duration, source_bit_depth))
    
    async def demux(self, input_path: str, output_dir: str,
                    options: Optional[DemuxOptions] = None) -> DemuxResult:
        return await demux_engine.demux(self.runner, input_path, output_dir, options)
    
    def merge(self, config: MergeConfig) -> ProgressStream:
        return self._start("Merge", None, lambda emit: merge_engine.merge(self.runner, config, emit))
    
    async def generate_screenshots(self, input_path: str, output_dir: str, duration: float,
                                   options: Optional[ScreenshotOptions] = None) -> JobResult:
        return await self._call("Screenshots", None, lambda: screenshots.generate_screenshots(
            self.runner, self.screenshot_pool, input_path, output_dir, duration, options))
    
    async def generate_thumbnail_sprite(self, input_path: str, output_dir: str, duration: float,
                                        options: Optional[SpriteOptions] = None) -> JobResult:
        return await self._call("Sprite", self.screenshot_pool, lambda: screenshots.generate_thumbnail_sprite(
            self.runner, input_path, output_dir, duration, options))
    
    # Concurrency limits
    
    def get_concurrency_limits(self) -> Dict[str, Any]:
        return {
            "cpu_count": self.hardware.cpu_count(),
            "video": self.video_pool.snapshot(),
            "audio": self.audio_pool.snapshot(),
            "screenshots": self.screenshot_pool.snapshot(),
            "tracks": self.track_pool.snapshot(),
        }
    
    def set_video_max_concurrent(self, value: int) -> int:
        return self.video_pool.set_max_concurrent(value)
    
    def set_audio_max_concurrent(self, value: int) -> int:
        return self.audio_pool.set_max_concurrent(value)
    
    def set_track_max_concurrent(self, value: int) -> int:
        return self.track_pool.set_max_concurrent(value)
    
    # Add tracks
    
    async def open_add_tracks(self, anime_id: Optional[str] = None,
                              episodes: Optional[Iterable[LibraryEpisode]] = None,
                              content_filter: Optional[str] = None) -> str:
        """Start an add-tracks session; returns its id"""
        if self.store is None:
            raise RuntimeError("Add tracks requires a library store")
        if episodes is None:
            if anime_id is None:
                raise ValueError("Either anime_id or episodes is required")
            episodes = await self.store.list_episodes(anime_id)
        session_id = uuid.uuid4().hex
        self.sessions[session_id] = AddTracksSession(
            self.runner, self.store, self.track_pool, episodes, content_filter,
            work_dir=os.path.join(self.config.DATA_DIR, "scratch"))
        logger.info(f"Opened add-tracks session {session_id}")
        return session_id
    
    def get_session(self, session_id: str) -> AddTracksSession:
        try:
            return self.sessions[session_id]
        except KeyError:
            raise KeyError(f"Unknown add-tracks session: {session_id}")
    
    def close_session(self, session_id: str) -> None:
        self.sessions.pop(session_id, None)
