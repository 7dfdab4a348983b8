"""
Donor matching and the add-tracks merge pipeline.
"""

from .ledger import RollbackLedger, rollback
from .matcher import extract_episode_number, match_donor_files, scan_donor_folder
from .pipeline import AddTracksSession

__all__ = [
    'AddTracksSession',
    'RollbackLedger',
    'extract_episode_number',
    'match_donor_files',
    'rollback',
    'scan_donor_folder'
]
