"""
Configuration management for the media worker.

Centralizes all configuration loading from environment variables
and provides type-safe access to configuration values.
"""

import os
from typing import Dict, Any, List
from dataclasses import dataclass

VALID_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
MAX_TRACK_CONCURRENT = 16


def _cpu_count() -> int:
    return os.cpu_count() or 1


@dataclass
class WorkerConfig:
    """Configuration for the media worker"""
    
    # External binaries
    FFMPEG_PATH: str = "ffmpeg"
    FFPROBE_PATH: str = "ffprobe"
    
    # Pool caps
    VIDEO_MAX_CONCURRENT: int = 2
    AUDIO_MAX_CONCURRENT: int = None
    TRACK_MAX_CONCURRENT: int = None
    SCREENSHOT_MAX_CONCURRENT: int = 4
    
    # Library store settings
    STORE_TYPE: str = "postgres"  # postgres, none
    STORE_CONFIG: Dict[str, Any] = None
    
    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_DIR: str = "/app/data/media_worker"
    
    # HTTP control server
    ENABLE_HTTP_SERVER: bool = False
    HTTP_PORT: int = 8000
    
    # Root for scratch space used while adding tracks
    DATA_DIR: str = "/app/data"
    
    def __post_init__(self):
        if self.AUDIO_MAX_CONCURRENT is None:
            self.AUDIO_MAX_CONCURRENT = _cpu_count()
        if self.TRACK_MAX_CONCURRENT is None:
            self.TRACK_MAX_CONCURRENT = min(_cpu_count(), MAX_TRACK_CONCURRENT)
        if self.STORE_CONFIG is None:
            self.STORE_CONFIG = {}
    
    @classmethod
    def from_env(cls) -> 'WorkerConfig':
        """Load configuration from environment variables"""
        config = cls()
        
        config.FFMPEG_PATH = os.getenv("FFMPEG_PATH", "ffmpeg")
        config.FFPROBE_PATH = os.getenv("FFPROBE_PATH", "ffprobe")
        
        cpus = _cpu_count()
        config.VIDEO_MAX_CONCURRENT = int(os.getenv("VIDEO_MAX_CONCURRENT", "2"))
        config.AUDIO_MAX_CONCURRENT = int(os.getenv("AUDIO_MAX_CONCURRENT", str(cpus)))
        config.TRACK_MAX_CONCURRENT = int(
            os.getenv("TRACK_MAX_CONCURRENT", str(min(cpus, MAX_TRACK_CONCURRENT)))
        )
        config.SCREENSHOT_MAX_CONCURRENT = int(os.getenv("SCREENSHOT_MAX_CONCURRENT", "4"))
        
        config.STORE_TYPE = os.getenv("STORE_TYPE", "postgres")
        config.STORE_CONFIG = cls._parse_store_config()
        
        config.LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
        config.LOG_DIR = os.getenv("LOG_DIR", "/app/data/media_worker")
        
        config.ENABLE_HTTP_SERVER = os.getenv("WORKER_HTTP", "false").lower() == "true"
        config.HTTP_PORT = int(os.getenv("WORKER_HTTP_PORT", "8000"))
        
        config.DATA_DIR = os.getenv("DATA_DIR", "/app/data")
        
        return config
    
    @classmethod
    def _parse_store_config(cls) -> Dict[str, Any]:
        """Parse library store specific configuration"""
        store_type = os.getenv("STORE_TYPE", "postgres")
        
        if store_type == "postgres":
            return {
                "database_url": os.getenv("DATABASE_URL"),
                "connection_pool_size": int(os.getenv("POSTGRES_POOL_SIZE", "5")),
                "connection_timeout": int(os.getenv("POSTGRES_TIMEOUT", "10"))
            }
        else:
            return {}
    
    def validate(self) -> None:
        """Validate configuration and raise errors for bad or missing values"""
        problems: List[str] = []
        
        if self.STORE_TYPE not in ("postgres", "none"):
            problems.append(f"STORE_TYPE={self.STORE_TYPE}")
        elif self.STORE_TYPE == "postgres" and not self.STORE_CONFIG.get("database_url"):
            problems.append("DATABASE_URL")
        
        for name in ("VIDEO_MAX_CONCURRENT", "AUDIO_MAX_CONCURRENT",
                     "TRACK_MAX_CONCURRENT", "SCREENSHOT_MAX_CONCURRENT"):
            if getattr(self, name) < 1:
                problems.append(name)
        
        if self.AUDIO_MAX_CONCURRENT > _cpu_count():
            problems.append("AUDIO_MAX_CONCURRENT")
        
        if self.TRACK_MAX_CONCURRENT > MAX_TRACK_CONCURRENT:
            problems.append("TRACK_MAX_CONCURRENT")
        
        if self.LOG_LEVEL.upper() not in VALID_LOG_LEVELS:
            problems.append(f"LOG_LEVEL={self.LOG_LEVEL}")
        
        if problems:
            raise ValueError(f"Missing or invalid environment variables: {', '.join(problems)}")
