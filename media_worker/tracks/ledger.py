"""
Rollback ledger for the track-merge pipeline.

Each committed side effect (a database row plus at most one file) is
appended once. On cancellation the ledger is drained and every entry is
undone newest first; a failed undo is logged and the rollback carries on.
"""

import logging
from typing import List

from ..adapters.base import LibraryStore
from ..errors import RollbackPartialFailure
from ..models import AddedRecord, RollbackReport
from ..pipeline.util import remove_file

logger = logging.getLogger("media_worker")


class RollbackLedger:
    """Append/drain transaction log shared by every step of one job"""

    def __init__(self):
        self._records: List[AddedRecord] = []

    def append(self, record: AddedRecord) -> None:
        self._records.append(record)
        logger.debug(f"Ledger: recorded {record.type} {record.database_id}")

    def drain_all(self) -> List[AddedRecord]:
        records, self._records = self._records, []
        return records

    def __len__(self) -> int:
        return len(self._records)

    @property
    def records(self) -> List[AddedRecord]:
        return list(self._records)


async def _delete_row(store: LibraryStore, record: AddedRecord) -> None:
    if record.type == "audio":
        await store.delete_audio_track(record.database_id)
    elif record.type == "subtitle":
        await store.delete_subtitle_track(record.database_id)
    elif record.type == "font":
        await store.delete_subtitle_font(record.database_id)
    else:
        raise ValueError(f"Unknown record type: {record.type}")


async def rollback(ledger: RollbackLedger, store: LibraryStore) -> RollbackReport:
    """Undo every entry accumulated so far; never raises for a single entry"""
    report = RollbackReport()
    records = ledger.drain_all()
    if not records:
        return report

    logger.info(f"Rolling back {len(records)} added records")
    for record in reversed(records):
        undone = True
        try:
            await _delete_row(store, record)
        except Exception as e:
            failure = RollbackPartialFailure(record, f"row: {e}")
            logger.warning(str(failure))
            report.failures.append(str(failure))
            undone = False
        try:
            remove_file(record.file_path)
        except OSError as e:
            failure = RollbackPartialFailure(record, f"file {record.file_path}: {e}")
            logger.warning(str(failure))
            report.failures.append(str(failure))
            undone = False
        if undone:
            report.removed += 1

    logger.info(f"Rollback finished: {report.removed} removed, {len(report.failures)} failures")
    return report
