from __future__ import annotations

from pharma_ingestion.app.core.settings import Settings
from pharma_ingestion.app.services.sinks.base import RecordStore
from pharma_ingestion.app.services.sinks.json_store import JsonRecordStore
from pharma_ingestion.app.services.sinks.mongo_store import MongoRecordStore


def create_store(settings: Settings) -> RecordStore:
    if settings.store_backend == "mongo":
        return MongoRecordStore(settings.mongo_uri, settings.mongo_db)
    settings.ensure_out_dirs()
    return JsonRecordStore(settings.out_dir)
