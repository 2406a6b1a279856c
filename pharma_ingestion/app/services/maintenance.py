from __future__ import annotations

import logging
import math
from typing import List, Optional

from pharma_ingestion.app.models.ingestion import LogPage
from pharma_ingestion.app.services.sinks.base import RecordStore

logger = logging.getLogger(__name__)

# Only these record families are checked for orphaned logs
CLEANUP_FILE_TYPES = ("BATCH", "FORMULA")


class RecordMaintenance:
    """Deletes stored records together with their processing logs so the files can be ingested again."""

    def __init__(self, store: RecordStore):
        self.store = store

    def delete_batch_registry(self, record_id: str) -> bool:
        record = self.store.get_batch_registry(record_id)
        if record is None:
            return False
        self.store.delete_batch_registry(record_id)
        removed = self.store.delete_logs_for(record.content_hash, record.file_name)
        logger.info(f"Deleted batch registry {record_id} ({record.file_name}) and {removed} log(s)")
        return True

    def delete_formula(self, record_id: str) -> bool:
        record = self.store.get_formula(record_id)
        if record is None:
            return False
        self.store.delete_formula(record_id)
        # Formulas split out of one file carry "<hash>_<n>"; the log is keyed by the bare hash
        digest = record.content_hash.split("_", 1)[0]
        removed = self.store.delete_logs_for(digest, record.file_name)
        logger.info(f"Deleted formula {record_id} ({record.file_name}) and {removed} log(s)")
        return True

    def delete_requisition(self, record_id: str) -> bool:
        record = self.store.get_requisition(record_id)
        if record is None:
            return False
        self.store.delete_requisition(record_id)
        removed = self.store.delete_logs_for(record.content_hash, record.file_name)
        logger.info(f"Deleted requisition {record_id} ({record.file_name}) and {removed} log(s)")
        return True

    def cleanup_orphaned_logs(self) -> int:
        """Drop SUCCESS/DUPLICATE logs whose batch registry or formula no longer exists."""
        orphaned: List[str] = []
        for log in self.store.all_logs():
            if log.status not in ("SUCCESS", "DUPLICATE") or log.file_type not in CLEANUP_FILE_TYPES:
                continue
            if log.file_type == "BATCH":
                exists = self.store.batch_registry_exists(log.content_hash, log.file_name)
            else:
                exists = self.store.formula_exists(log.content_hash, log.file_name)
            if not exists:
                orphaned.append(log.id)

        deleted = self.store.delete_logs_by_ids(orphaned) if orphaned else 0
        logger.info(f"Cleaned up {deleted} orphaned processing log(s)")
        return deleted

    def delete_all_logs(self) -> int:
        deleted = self.store.delete_all_logs()
        logger.info(f"Deleted all {deleted} processing log(s)")
        return deleted

    def list_processing_logs(
        self,
        page: int = 1,
        limit: int = 50,
        status: Optional[str] = None,
        file_type: Optional[str] = None,
    ) -> LogPage:
        page = max(page, 1)
        limit = max(limit, 1)
        logs, total = self.store.list_logs((page - 1) * limit, limit, status=status, file_type=file_type)
        return LogPage(logs=logs, total=total, page=page, limit=limit, total_pages=math.ceil(total / limit))
