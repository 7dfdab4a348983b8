"""
Library store adapters.

This module provides the abstract store interface used by the
track-merge pipeline and its Postgres implementation.
"""

from .base import LibraryStore
from .postgres_adapter import PostgresLibraryStore

__all__ = [
    'LibraryStore',
    'PostgresLibraryStore'
]
