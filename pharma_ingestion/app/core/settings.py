from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict

StoreBackend = Literal["mongo", "json"]

# Mongo caps a single document at 16MB; keep headroom for the structured data.
MAX_RAW_CONTENT_BYTES = 14 * 1024 * 1024


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # Backends
    store_backend: StoreBackend = "mongo"

    # Paths
    # defaulted to relative paths from this file if not set in env
    source_dir: Path = Path(__file__).resolve().parents[2] / "data" / "xml"
    out_dir: Path = Path(__file__).resolve().parents[2] / "data" / "out"

    # Mongo
    mongo_uri: str = "mongodb://localhost:27017"
    mongo_db: str = "pharma_ingestion"

    # Run metadata
    run_id: str = ""

    # Ingestion
    max_raw_content_bytes: int = MAX_RAW_CONTENT_BYTES
    quantity_tolerance: float = 0.001

    # Type detection thresholds (hit counts per indicator list)
    detection_min_hits: int = 2
    detection_requisition_min_hits: int = 4

    # Reconciliation
    orphan_high_risk_threshold: int = 5
    mfc_correction_min_batches: int = 10
    formula_cleanup_min_formulas: int = 5
    max_orphan_recommendations: int = 5

    # Reports
    validation_min_batches: int = 3
    logs_page_limit: int = 50

    def ensure_out_dirs(self) -> None:
        # Only create directories if using the JSON backend
        if self.store_backend == "json":
            self.out_dir.mkdir(parents=True, exist_ok=True)
            (self.out_dir / "store").mkdir(parents=True, exist_ok=True)


def get_settings() -> Settings:
    return Settings()
