"""
Abstract base class for the library store.

Defines the persistence interface the track-merge pipeline relies on,
so the Postgres implementation can be swapped for another backend or a
fake in tests.
"""

from abc import ABC, abstractmethod
from typing import List, Optional

from ..models import LibraryEpisode, TrackInfo


class LibraryStore(ABC):
    """Abstract base class for library store adapters"""
    
    async def connect(self) -> None:
        """Open connections; no-op by default"""
    
    async def close(self) -> None:
        """Release connections; no-op by default"""
    
    async def ping(self) -> bool:
        """Whether the backend is reachable"""
        return True
    
    @abstractmethod
    async def list_episodes(self, anime_id: str) -> List[LibraryEpisode]:
        """
        Get the episodes of one title.
        
        Args:
            anime_id: ID of the title
            
        Returns:
            Episodes ordered by number
        """
        pass
    
    @abstractmethod
    async def create_audio_track(self, episode_id: str, track: TrackInfo, path: str,
                                 transcoded: bool) -> str:
        """
        Persist an added audio track.
        
        Args:
            episode_id: Episode the track belongs to
            track: Source track description
            path: Final file path of the track
            transcoded: Whether the file was re-encoded
            
        Returns:
            ID of the new row
        """
        pass
    
    @abstractmethod
    async def create_subtitle_track(self, episode_id: str, track: TrackInfo, path: str) -> str:
        """
        Persist an added subtitle track.
        
        Returns:
            ID of the new row
        """
        pass
    
    @abstractmethod
    async def create_subtitle_font(self, subtitle_track_id: str, font_name: str, path: str) -> str:
        """
        Persist a font used by a subtitle track.
        
        Returns:
            ID of the new row
        """
        pass
    
    @abstractmethod
    async def delete_audio_track(self, track_id: str) -> None:
        pass
    
    @abstractmethod
    async def delete_subtitle_track(self, track_id: str) -> None:
        pass
    
    @abstractmethod
    async def delete_subtitle_font(self, font_id: str) -> None:
        pass
