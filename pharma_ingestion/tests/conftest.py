from __future__ import annotations

from pathlib import Path

import pytest

from pharma_ingestion.app.core.settings import Settings
from pharma_ingestion.app.services.pipeline import IngestionPipeline
from pharma_ingestion.app.services.sinks.json_store import JsonRecordStore


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        store_backend="json",
        source_dir=tmp_path / "xml",
        out_dir=tmp_path / "out",
        run_id="test-run",
    )


@pytest.fixture
def store(settings: Settings) -> JsonRecordStore:
    settings.ensure_out_dirs()
    return JsonRecordStore(settings.out_dir)


@pytest.fixture
def pipeline(settings: Settings, store: JsonRecordStore):
    p = IngestionPipeline(settings, store=store)
    yield p
    p.close()
