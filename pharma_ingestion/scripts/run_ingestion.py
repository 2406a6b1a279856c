import argparse
import json
import logging
import sys
from pathlib import Path

from dotenv import load_dotenv

# Ensure we can import from pharma_ingestion
BASE_DIR = Path(__file__).resolve().parent.parent.parent
sys.path.append(str(BASE_DIR))

from pharma_ingestion.app.core.settings import Settings
from pharma_ingestion.app.services.pipeline import IngestionPipeline
from pharma_ingestion.app.services.reconciliation import ReconciliationEngine

logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)

ENV_PATH = Path(__file__).resolve().parent.parent / ".env"


def load_env():
    if ENV_PATH.exists():
        load_dotenv(ENV_PATH)
        logger.info(f"Loaded .env from {ENV_PATH}")


def main():
    parser = argparse.ArgumentParser(description="Ingest a folder of XML exports, then reconcile")
    parser.add_argument("source_dir", nargs="?", help="Folder with *.xml files (default: SOURCE_DIR)")
    parser.add_argument("--skip-reconcile", action="store_true")
    args = parser.parse_args()

    load_env()
    settings = Settings()
    if args.source_dir:
        settings.source_dir = Path(args.source_dir).resolve()

    pipeline = IngestionPipeline(settings)
    try:
        status = pipeline.run_ingestion()
        for r in status.results:
            if r.status == "ERROR":
                logger.error(f"{r.file_name}: {r.message}")
        print(f"Files: {status.total_files}  processed: {status.processed}  "
              f"successful: {status.successful}  duplicates: {status.duplicates}  errors: {status.errors}")

        if not args.skip_reconcile:
            report = ReconciliationEngine(pipeline.store, settings).reconcile()
            print(json.dumps({
                "batch_reconciliation": report.batch_reconciliation.model_dump(),
                "overall_stats": report.overall_stats.model_dump(),
                "recommendations": [r.model_dump() for r in report.recommendations],
            }, ensure_ascii=False, indent=2))
    finally:
        pipeline.close()


if __name__ == "__main__":
    main()
