"""
Postgres implementation of the library store.

Writes the rows the track-merge pipeline adds (audio tracks, subtitle
tracks and their fonts) and reads the episode list used for matching.
"""

import os
import uuid
import logging
from typing import List, Optional

from psycopg.rows import dict_row
from psycopg_pool import AsyncConnectionPool

from .base import LibraryStore
from ..logging_setup import log_exception
from ..models import LibraryEpisode, TrackInfo

logger = logging.getLogger("media_worker")


def _new_id() -> str:
    return uuid.uuid4().hex


class PostgresLibraryStore(LibraryStore):
    """Postgres implementation of the library store"""
    
    def __init__(self, database_url: str, pool_size: int = 5, timeout: int = 10):
        self.database_url = database_url
        self.pool_size = pool_size
        self.timeout = timeout
        self.pool: Optional[AsyncConnectionPool] = None
    
    async def connect(self) -> None:
        """Initialize connection pool"""
        try:
            self.pool = AsyncConnectionPool(
                self.database_url,
                min_size=1,
                max_size=self.pool_size,
                kwargs={
                    "connect_timeout": self.timeout,
                    "application_name": "media_worker"
                },
                open=False
            )
            await self.pool.open()
            logger.info("Postgres library store connection pool initialized")
        except Exception as e:
            log_exception(logger, f"Failed to connect to Postgres library store: {e}")
            raise
    
    async def ping(self) -> bool:
        async with self.pool.connection() as conn:
            async with conn.cursor() as cur:
                await cur.execute("SELECT 1")
                await cur.fetchone()
        return True
    
    async def list_episodes(self, anime_id: str) -> List[LibraryEpisode]:
        """Episodes of one title ordered by number"""
        async with self.pool.connection() as conn:
            async with conn.cursor(row_factory=dict_row) as cur:
                await cur.execute("""
                    SELECT "id", "number", "name", "sourcePath", "transcodedPath"
                    FROM "Episode"
                    WHERE "animeId" = %s
                    ORDER BY "number"
                """, (anime_id,))
                rows = await cur.fetchall()
        
        return [
            LibraryEpisode(
                id=row["id"],
                number=row["number"],
                directory=os.path.dirname(row["transcodedPath"] or row["sourcePath"] or ""),
                name=row["name"]
            )
            for row in rows
        ]
    
    async def create_audio_track(self, episode_id: str, track: TrackInfo, path: str,
                                 transcoded: bool) -> str:
        track_id = _new_id()
        async with self.pool.connection() as conn:
            async with conn.cursor() as cur:
                await cur.execute("""
                    INSERT INTO "AudioTrack" (
                        "id", "episodeId", "streamIndex", "language", "title", "dubGroup",
                        "codec", "channels", "bitrate", "isDefault", "extractedPath",
                        "transcodedPath", "transcodeStatus", "updatedAt"
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, false, %s, %s, 'COMPLETED', NOW())
                """, (
                    track_id,
                    episode_id,
                    track.stream_index,
                    track.language or "und",
                    track.title,
                    track.dub_group,
                    "aac" if transcoded else (track.codec or "unknown"),
                    str(track.channels or 2),
                    track.bitrate,
                    None if transcoded else path,
                    path if transcoded else None
                ))
            await conn.commit()
        logger.info(f"Created audio track {track_id} for episode {episode_id}")
        return track_id
    
    async def create_subtitle_track(self, episode_id: str, track: TrackInfo, path: str) -> str:
        track_id = _new_id()
        async with self.pool.connection() as conn:
            async with conn.cursor() as cur:
                await cur.execute("""
                    INSERT INTO "SubtitleTrack" (
                        "id", "episodeId", "streamIndex", "language", "title",
                        "dubGroup", "format", "filePath", "isDefault"
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, false)
                """, (
                    track_id,
                    episode_id,
                    track.stream_index,
                    track.language or "und",
                    track.title,
                    track.dub_group,
                    track.format or os.path.splitext(path)[1].lstrip(".") or "ass",
                    path
                ))
            await conn.commit()
        logger.info(f"Created subtitle track {track_id} for episode {episode_id}")
        return track_id
    
    async def create_subtitle_font(self, subtitle_track_id: str, font_name: str, path: str) -> str:
        font_id = _new_id()
        async with self.pool.connection() as conn:
            async with conn.cursor() as cur:
                await cur.execute("""
                    INSERT INTO "SubtitleFont" ("id", "subtitleTrackId", "fontName", "filePath")
                    VALUES (%s, %s, %s, %s)
                """, (font_id, subtitle_track_id, font_name, path))
            await conn.commit()
        return font_id
    
    async def _delete(self, table: str, row_id: str) -> None:
        async with self.pool.connection() as conn:
            async with conn.cursor() as cur:
                await cur.execute(f'DELETE FROM "{table}" WHERE "id" = %s', (row_id,))
            await conn.commit()
        logger.info(f"Deleted {table} {row_id}")
    
    async def delete_audio_track(self, track_id: str) -> None:
        await self._delete("AudioTrack", track_id)
    
    async def delete_subtitle_track(self, track_id: str) -> None:
        await self._delete("SubtitleTrack", track_id)
    
    async def delete_subtitle_font(self, font_id: str) -> None:
        await self._delete("SubtitleFont", font_id)
    
    async def close(self) -> None:
        """Close connection pool"""
        if self.pool:
            await self.pool.close()
            logger.info("Postgres library store connection pool closed")
