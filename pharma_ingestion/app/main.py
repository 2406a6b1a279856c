from __future__ import annotations

import argparse
import json
import logging
import os
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, Optional

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel

from pharma_ingestion.app.core.settings import Settings, get_settings
from pharma_ingestion.app.services.maintenance import RecordMaintenance
from pharma_ingestion.app.services.pipeline import IngestionPipeline
from pharma_ingestion.app.services.reconciliation import ReconciliationEngine
from pharma_ingestion.app.services.reports import (
    MATERIAL_TYPES,
    SECTIONS,
    duplicate_batches_report,
    missing_materials_report,
    validate_section,
)
from pharma_ingestion.app.services.sinks.base import RecordStore
from pharma_ingestion.app.services.sinks.factory import create_store

logger = logging.getLogger(__name__)

app = FastAPI(title="Pharma Ingestion Service", version="0.1.0")


class IngestFileRequest(BaseModel):
    file_path: str


@contextmanager
def open_store(settings: Settings) -> Iterator[RecordStore]:
    store = create_store(settings)
    try:
        yield store
    finally:
        store.close()


@app.get("/health")
def health() -> Dict[str, Any]:
    return {"status": "ok"}


@app.post("/ingest")
def ingest() -> Dict[str, Any]:
    pipeline = IngestionPipeline(get_settings())
    try:
        return pipeline.run_ingestion().model_dump(mode="json")
    except Exception as e:
        raise HTTPException(status_code=500, detail=str(e))
    finally:
        pipeline.close()


@app.post("/ingest/file")
def ingest_file(req: IngestFileRequest) -> Dict[str, Any]:
    pipeline = IngestionPipeline(get_settings())
    try:
        return pipeline.ingest_path(req.file_path).model_dump(mode="json")
    except Exception as e:
        raise HTTPException(status_code=500, detail=str(e))
    finally:
        pipeline.close()


@app.get("/reconciliation")
def reconciliation() -> Dict[str, Any]:
    settings = get_settings()
    try:
        with open_store(settings) as store:
            report = ReconciliationEngine(store, settings).reconcile()
    except Exception as e:
        logger.exception("Reconciliation failed")
        raise HTTPException(status_code=500, detail=str(e))
    return report.model_dump(mode="json")


@app.get("/logs")
def logs(page: int = 1, limit: Optional[int] = None, status: Optional[str] = None, file_type: Optional[str] = None) -> Dict[str, Any]:
    settings = get_settings()
    with open_store(settings) as store:
        result = RecordMaintenance(store).list_processing_logs(
            page, limit or settings.logs_page_limit, status=status, file_type=file_type
        )
    return result.model_dump(mode="json")


@app.post("/logs/cleanup")
def cleanup_logs(delete_all: bool = False) -> Dict[str, Any]:
    with open_store(get_settings()) as store:
        maintenance = RecordMaintenance(store)
        deleted = maintenance.delete_all_logs() if delete_all else maintenance.cleanup_orphaned_logs()
    return {"deleted_count": deleted}


def _delete(kind: str, record_id: str) -> Dict[str, Any]:
    with open_store(get_settings()) as store:
        maintenance = RecordMaintenance(store)
        deleters = {
            "batch": maintenance.delete_batch_registry,
            "formula": maintenance.delete_formula,
            "requisition": maintenance.delete_requisition,
        }
        found = deleters[kind](record_id)
    if not found:
        raise HTTPException(status_code=404, detail=f"{kind.capitalize()} {record_id} not found")
    return {"deleted": True, "id": record_id}


@app.delete("/batches/{record_id}")
def delete_batch(record_id: str) -> Dict[str, Any]:
    return _delete("batch", record_id)


@app.delete("/formulas/{record_id}")
def delete_formula(record_id: str) -> Dict[str, Any]:
    return _delete("formula", record_id)


@app.delete("/requisitions/{record_id}")
def delete_requisition(record_id: str) -> Dict[str, Any]:
    return _delete("requisition", record_id)


@app.get("/reports/sections/{section}")
def section_report(section: str, min_batches: Optional[int] = None) -> Dict[str, Any]:
    if section not in SECTIONS:
        raise HTTPException(status_code=400, detail=f"Invalid section. Must be one of: {', '.join(SECTIONS)}")
    settings = get_settings()
    with open_store(settings) as store:
        report = validate_section(store, section, min_batches or settings.validation_min_batches)
    return report.model_dump(mode="json")


@app.get("/reports/missing-materials")
def missing_materials(min_batches: Optional[int] = None, material_type: Optional[str] = None) -> Dict[str, Any]:
    if material_type is not None and material_type not in MATERIAL_TYPES:
        raise HTTPException(status_code=400, detail=f"Invalid material type. Must be one of: {', '.join(MATERIAL_TYPES)}")
    settings = get_settings()
    with open_store(settings) as store:
        report = missing_materials_report(store, min_batches or settings.validation_min_batches, material_type)
    return report.model_dump(mode="json")


@app.get("/reports/duplicate-batches")
def duplicate_batches() -> Dict[str, Any]:
    with open_store(get_settings()) as store:
        return duplicate_batches_report(store).model_dump(mode="json")


def cli() -> None:
    parser = argparse.ArgumentParser(description="Pharma Ingestion CLI")
    parser.add_argument("command", choices=["ingest", "reconcile", "cleanup-logs", "serve"])
    parser.add_argument("file", nargs="?", help="Single XML file to ingest (default: whole source folder)")
    parser.add_argument("--store-backend", choices=["json", "mongo"], default=os.getenv("STORE_BACKEND", "mongo"))
    parser.add_argument("--source-dir", default=os.getenv("SOURCE_DIR"))
    parser.add_argument("--out-dir", default=os.getenv("OUT_DIR"))
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--port", type=int, default=8000)
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(levelname)s - %(message)s")

    if args.command == "serve":
        # The HTTP handlers read their settings from the environment
        import uvicorn

        uvicorn.run(app, host=args.host, port=args.port)
        return

    settings = Settings()
    settings.store_backend = args.store_backend
    if args.source_dir:
        settings.source_dir = Path(args.source_dir)
    if args.out_dir:
        settings.out_dir = Path(args.out_dir)

    if args.command == "ingest":
        pipeline = IngestionPipeline(settings)
        try:
            result = pipeline.ingest_path(args.file) if args.file else pipeline.run_ingestion()
            print(json.dumps(result.model_dump(mode="json"), ensure_ascii=False, indent=2))
        finally:
            pipeline.close()
    elif args.command == "reconcile":
        with open_store(settings) as store:
            report = ReconciliationEngine(store, settings).reconcile()
        print(json.dumps(report.model_dump(mode="json"), ensure_ascii=False, indent=2))
    else:
        with open_store(settings) as store:
            deleted = RecordMaintenance(store).cleanup_orphaned_logs()
        print(json.dumps({"deleted_count": deleted}))


if __name__ == "__main__":
    cli()
