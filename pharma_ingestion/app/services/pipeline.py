from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional, Set, Tuple

from pharma_ingestion.app.core.errors import IngestionError, ParseFailure
from pharma_ingestion.app.core.settings import Settings
from pharma_ingestion.app.models.documents import RawDocument
from pharma_ingestion.app.models.ingestion import (
    DuplicateFormula,
    DuplicateItem,
    FileType,
    FormulaLevelStats,
    IngestionResult,
    IngestionStatus,
    ItemLevelStats,
    ProcessingLogEntry,
    SuccessfulFormula,
)
from pharma_ingestion.app.models.records import FormulaMaster, StoredRecord
from pharma_ingestion.app.services.canonical.content_hash import content_hash
from pharma_ingestion.app.services.canonical.detector import TypeDetector, file_type_name
from pharma_ingestion.app.services.merge import merge_formula
from pharma_ingestion.app.services.parsers.batch_parser import BatchRegistryParser
from pharma_ingestion.app.services.parsers.coa_parser import COAParser
from pharma_ingestion.app.services.parsers.formula_parser import FormulaParser
from pharma_ingestion.app.services.parsers.requisition_parser import RequisitionParser
from pharma_ingestion.app.services.requirements import validate_batches
from pharma_ingestion.app.services.scanner import read_raw_document, scan_source_folder
from pharma_ingestion.app.services.sinks.base import RecordStore
from pharma_ingestion.app.services.sinks.factory import create_store

logger = logging.getLogger(__name__)

# Types deduplicated at whole-file granularity before anything else.
# A formula file may hold several formulas with independent duplicate status.
FILE_LEVEL_DEDUP_TYPES = ("BATCH", "COA", "REQUISITION")

UNKNOWN_TYPE_MESSAGE = "Could not determine XML file type from content"


def now_iso(dt: datetime) -> str:
    return dt.replace(microsecond=0).isoformat() + "Z"


@dataclass
class StoreOutcome:
    duplicate: bool
    message: str
    business_key: Optional[str] = None
    record_id: Optional[str] = None
    existing_file_name: Optional[str] = None
    item_stats: Optional[ItemLevelStats] = None
    formula_stats: Optional[FormulaLevelStats] = None
    warnings: List[str] = field(default_factory=list)


class IngestionPipeline:
    def __init__(self, settings: Settings, store: Optional[RecordStore] = None):
        self.settings = settings
        self.run_id = settings.run_id or str(uuid.uuid4())
        self.store = store or create_store(settings)
        self.detector = TypeDetector.from_settings(settings)

        self.batch_parser = BatchRegistryParser()
        self.formula_parser = FormulaParser()
        self.coa_parser = COAParser()
        self.requisition_parser = RequisitionParser()

    def close(self) -> None:
        self.store.close()

    def _log(
        self,
        doc: RawDocument,
        digest: str,
        file_type: FileType,
        status: str,
        message: str,
        outcome: Optional[StoreOutcome] = None,
        error_message: Optional[str] = None,
    ) -> None:
        entry = ProcessingLogEntry(
            content_hash=digest,
            file_name=doc.file_name,
            file_type=file_type,
            status=status,  # type: ignore
            message=message,
            business_key=outcome.business_key if outcome else None,
            record_id=outcome.record_id if outcome else None,
            error_message=error_message,
            item_stats=outcome.item_stats if outcome else None,
            formula_stats=outcome.formula_stats if outcome else None,
            file_size=doc.file_size_bytes,
            run_id=self.run_id,
        )
        self.store.upsert_log(entry)

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def run_ingestion(self) -> IngestionStatus:
        docs = scan_source_folder(self.settings.source_dir)
        status = IngestionStatus(run_id=self.run_id, total_files=len(docs))
        for doc in docs:
            status.record(self.process_file(doc))
        status.finished_at = datetime.utcnow()
        logger.info(
            f"Ingestion run {self.run_id} finished: {status.processed} processed, "
            f"{status.successful} successful, {status.duplicates} duplicates, {status.errors} errors"
        )
        return status

    def ingest_path(self, file_path: str) -> IngestionResult:
        try:
            doc = read_raw_document(file_path)
        except OSError as e:
            logger.error(f"Failed to read file {file_path}: {e}")
            return IngestionResult(file_name=file_path, status="ERROR", message=f"Failed to read file: {e}")
        return self.process_file(doc)

    def process_file(self, doc: RawDocument) -> IngestionResult:
        """Hash, detect, parse, deduplicate and persist one file. Never raises."""
        file_type: FileType = "UNKNOWN"
        digest = ""
        try:
            digest = content_hash(doc.content)
            existing_log = self.store.find_log(digest)
            file_type = self.detector.detect(doc.content)
            logger.info(f"Processing {doc.file_name} (detected {file_type})")

            if existing_log and existing_log.status != "ERROR" and file_type in FILE_LEVEL_DEDUP_TYPES:
                message = f"File already processed on {now_iso(existing_log.processed_at)}"
                logger.info(f"Skipped {doc.file_name}: {message}")
                return IngestionResult(
                    file_name=doc.file_name,
                    file_type=existing_log.file_type,
                    status="DUPLICATE",
                    message=message,
                    business_key=existing_log.business_key,
                    record_id=existing_log.record_id,
                    existing_file_name=existing_log.file_name,
                )

            if file_type == "UNKNOWN":
                logger.warning(f"{doc.file_name}: {UNKNOWN_TYPE_MESSAGE} (scores={self.detector.scores(doc.content)})")
                self._log(doc, digest, "UNKNOWN", "ERROR", UNKNOWN_TYPE_MESSAGE, error_message=UNKNOWN_TYPE_MESSAGE)
                return IngestionResult(file_name=doc.file_name, file_type="UNKNOWN", status="ERROR", message=UNKNOWN_TYPE_MESSAGE)

            outcome = self._dispatch(file_type, doc, digest)
            status = "DUPLICATE" if outcome.duplicate else "SUCCESS"
            self._log(doc, digest, file_type, status, outcome.message, outcome)
            logger.info(f"{doc.file_name}: {status} - {outcome.message}")
            return IngestionResult(
                file_name=doc.file_name,
                file_type=file_type,
                status=status,  # type: ignore
                message=outcome.message,
                business_key=outcome.business_key,
                record_id=outcome.record_id,
                existing_file_name=outcome.existing_file_name,
                item_stats=outcome.item_stats,
                formula_stats=outcome.formula_stats,
                warnings=outcome.warnings,
            )
        except Exception as e:
            message = str(e) or e.__class__.__name__
            logger.exception(f"Failed to process {doc.file_name}")
            if digest:
                try:
                    self._log(doc, digest, file_type, "ERROR", message, error_message=message)
                except Exception:
                    logger.exception(f"Could not record error log for {doc.file_name}")
            return IngestionResult(file_name=doc.file_name, file_type=file_type, status="ERROR", message=message)

    def _dispatch(self, file_type: FileType, doc: RawDocument, digest: str) -> StoreOutcome:
        if file_type == "BATCH":
            return self._store_batch(doc, digest)
        if file_type == "FORMULA":
            return self._store_formulas(doc, digest)
        if file_type == "COA":
            return self._store_coa(doc, digest)
        if file_type == "REQUISITION":
            return self._store_requisition(doc, digest)
        raise IngestionError(f"No store routine for file type {file_type}")

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _attach_raw(self, record: StoredRecord, content: str, warnings: List[str]) -> None:
        limit = self.settings.max_raw_content_bytes
        if len(content.encode("utf-8")) > limit:
            message = f"Raw XML content not stored (file exceeds {limit // (1024 * 1024)}MB limit)"
            record.raw_xml_content = None
            record.parsing_errors.append(message)
            record.parsing_status = "partial"
            warnings.append(message)
        else:
            record.raw_xml_content = content

    def _success_message(self, file_type: str) -> str:
        return f"Successfully processed {file_type_name(file_type)} file"

    # ------------------------------------------------------------------
    # Batch Creation
    # ------------------------------------------------------------------

    def _store_batch(self, doc: RawDocument, digest: str) -> StoreOutcome:
        parsed = self.batch_parser.parse(doc.content, doc.file_name)
        if not parsed.success or parsed.data is None:
            raise ParseFailure.from_errors("Batch Creation", parsed.errors)
        registry = parsed.data
        business_key = f"BATCH-{doc.file_name}"
        total = len(registry.batches)

        existing = self.store.find_batch_registry_by_hash(digest)
        if existing:
            stats = ItemLevelStats(
                total_items=total,
                duplicate_items=total,
                duplicate_details=[
                    DuplicateItem(key=f"{b.batch_number}/{b.item_code}", existing_file_name=existing.file_name)
                    for b in registry.batches
                ],
            )
            return StoreOutcome(
                duplicate=True,
                message=f"All {total} items are duplicates (already in database)",
                business_key=business_key,
                record_id=existing.id,
                existing_file_name=existing.file_name,
                item_stats=stats,
            )

        new_items = []
        duplicates: List[DuplicateItem] = []
        seen: Set[Tuple[str, str]] = set()
        for item in registry.batches:
            key = (item.batch_number, item.item_code)
            label = f"{item.batch_number}/{item.item_code}"
            if key in seen:
                duplicates.append(DuplicateItem(key=label, existing_file_name=doc.file_name))
                continue
            seen.add(key)
            owner = self.store.find_batch_item_owner(*key)
            if owner is not None:
                duplicates.append(DuplicateItem(key=label, existing_file_name=owner))
            else:
                new_items.append(item)

        stats = ItemLevelStats(
            total_items=total,
            new_items=len(new_items),
            duplicate_items=len(duplicates),
            duplicate_details=duplicates,
        )
        if not new_items:
            return StoreOutcome(
                duplicate=True,
                message=f"All {total} items are duplicates (already in database)",
                business_key=business_key,
                existing_file_name=duplicates[0].existing_file_name if duplicates else None,
                item_stats=stats,
            )

        for position, item in enumerate(new_items, start=1):
            item.sr_no = position
        registry.batches = new_items
        registry.total_batches = len(new_items)
        registry.export_count = sum(1 for b in new_items if b.type == "Export")
        registry.import_count = registry.total_batches - registry.export_count
        registry.content_hash = digest
        registry.file_size = doc.file_size_bytes

        warnings = list(parsed.warnings)
        self._attach_raw(registry, doc.content, warnings)
        record_id = self.store.insert_batch_registry(registry)

        if duplicates:
            message = f"Stored {len(new_items)} new items ({len(duplicates)} duplicates skipped)"
        else:
            message = self._success_message("BATCH")
        return StoreOutcome(
            duplicate=False,
            message=message,
            business_key=business_key,
            record_id=record_id,
            item_stats=stats,
            warnings=warnings,
        )

    # ------------------------------------------------------------------
    # Formula Master
    # ------------------------------------------------------------------

    def _find_existing_formula(self, formula: FormulaMaster) -> Optional[FormulaMaster]:
        mfc = formula.master_card_no
        if mfc:
            return self.store.find_formula_by_mfc(mfc)
        details = formula.master_formula_details
        return self.store.find_formula_by_product_revision(details.product_code, details.revision_no)

    def _store_formulas(self, doc: RawDocument, digest: str) -> StoreOutcome:
        parsed = self.formula_parser.parse(doc.content, doc.file_name)
        if not parsed.success or not parsed.data:
            raise ParseFailure.from_errors("Formula Master", parsed.errors)
        formulas = parsed.data
        multi = len(formulas) > 1
        stats = FormulaLevelStats(total_formulas=len(formulas))
        warnings = list(parsed.warnings)
        first_key: Optional[str] = None
        record_id: Optional[str] = None

        for idx, formula in enumerate(formulas):
            details = formula.master_formula_details
            key = f"FORMULA-{details.product_code}-REV{details.revision_no or '0'}"
            first_key = first_key or key
            mfc = formula.master_card_no

            existing = self._find_existing_formula(formula)
            if existing is not None:
                updated, summary = merge_formula(existing, formula)
                if summary.merged:
                    self.store.replace_formula(updated)
                    stats.merged_formulas += 1
                    stats.successful_details.append(SuccessfulFormula(
                        business_key=key,
                        product_code=details.product_code,
                        action="merged",
                        record_id=updated.id,
                        added_item_codes=summary.added_codes,
                    ))
                    record_id = record_id or updated.id
                    logger.info(f"Merged {len(summary.added_codes)} new item code(s) into formula {key}")
                else:
                    reason = (
                        f"MFC {mfc} already exists (no new items)" if mfc
                        else f"Product {details.product_code} revision {details.revision_no or '0'} already exists (no new items)"
                    )
                    stats.duplicate_formulas += 1
                    stats.duplicate_details.append(DuplicateFormula(
                        business_key=key,
                        product_code=details.product_code,
                        reason=reason,
                        existing_file_name=existing.file_name,
                    ))
                continue

            formula.file_name = doc.file_name
            formula.file_size = doc.file_size_bytes
            formula.content_hash = f"{digest}_{idx}" if multi else digest
            if multi:
                formula.raw_xml_content = None
            else:
                self._attach_raw(formula, doc.content, warnings)
            new_id = self.store.insert_formula(formula)
            stats.new_formulas += 1
            stats.successful_details.append(SuccessfulFormula(
                business_key=key, product_code=details.product_code, action="created", record_id=new_id,
            ))
            record_id = record_id or new_id

        stored = stats.new_formulas + stats.merged_formulas
        if stored == 0:
            return StoreOutcome(
                duplicate=True,
                message=f"All {stats.total_formulas} formula(s) already exist in database",
                business_key=first_key,
                existing_file_name=stats.duplicate_details[0].existing_file_name if stats.duplicate_details else None,
                formula_stats=stats,
                warnings=warnings,
            )
        if stats.duplicate_formulas or stats.merged_formulas or multi:
            message = (
                f"Stored {stored} new formula(s) ({stats.duplicate_formulas} duplicate(s) skipped, "
                f"{stats.total_formulas} total found)"
            )
            if stats.merged_formulas:
                message += f"; {stats.merged_formulas} merged into existing formula(s)"
        else:
            message = self._success_message("FORMULA")
        return StoreOutcome(
            duplicate=False,
            message=message,
            business_key=first_key,
            record_id=record_id,
            formula_stats=stats,
            warnings=warnings,
        )

    # ------------------------------------------------------------------
    # Certificate of Analysis
    # ------------------------------------------------------------------

    def _store_coa(self, doc: RawDocument, digest: str) -> StoreOutcome:
        parsed = self.coa_parser.parse(doc.content, doc.file_name)
        if not parsed.success or parsed.data is None:
            raise ParseFailure.from_errors("Certificate of Analysis", parsed.errors)
        coa = parsed.data
        key = f"{coa.batch_number}-{coa.stage}"

        existing = self.store.find_coa(coa.batch_number, coa.stage)
        if existing and existing.content_hash == digest:
            return StoreOutcome(
                duplicate=True,
                message=f"COA already processed: {key}",
                business_key=key,
                record_id=existing.id,
                existing_file_name=existing.file_name,
            )

        warnings = list(parsed.warnings)
        coa.content_hash = digest
        coa.file_size = doc.file_size_bytes
        self._attach_raw(coa, doc.content, warnings)
        if existing:
            # Same (batch, stage) with new content supersedes the stored certificate
            coa.id = existing.id
            coa.uploaded_at = existing.uploaded_at
            coa.updated_at = datetime.utcnow()
            self.store.replace_coa(coa)
            message = f"Updated COA {key} (previously from {existing.file_name})"
            record_id = existing.id
        else:
            record_id = self.store.insert_coa(coa)
            message = self._success_message("COA")
        return StoreOutcome(duplicate=False, message=message, business_key=key, record_id=record_id, warnings=warnings)

    # ------------------------------------------------------------------
    # Material Requisition
    # ------------------------------------------------------------------

    def _store_requisition(self, doc: RawDocument, digest: str) -> StoreOutcome:
        parsed = self.requisition_parser.parse(doc.content, doc.file_name)
        if not parsed.success or parsed.data is None:
            raise ParseFailure.from_errors("Material Requisition", parsed.errors)
        record = parsed.data
        business_key = f"REQ-{record.location_code}-{record.make}"
        all_ids = [m.mat_req_dtl_id for b in record.batches for m in b.materials]
        total = len(all_ids)
        if total == 0:
            raise IngestionError("Requisition contains no materials")

        existing = self.store.find_requisition_by_hash(digest)
        if existing:
            return StoreOutcome(
                duplicate=True,
                message=f"All {total} materials are duplicates",
                business_key=business_key,
                record_id=existing.id,
                existing_file_name=existing.file_name,
                item_stats=ItemLevelStats(total_items=total, duplicate_items=total),
            )

        # One grouped lookup for the whole file
        stored_ids = self.store.existing_material_ids(all_ids)
        duplicates: List[DuplicateItem] = []
        seen: Set[str] = set()
        for batch in record.batches:
            fresh = []
            for material in batch.materials:
                dtl_id = material.mat_req_dtl_id
                if dtl_id in stored_ids:
                    duplicates.append(DuplicateItem(key=dtl_id, existing_file_name=stored_ids[dtl_id]))
                elif dtl_id in seen:
                    duplicates.append(DuplicateItem(key=dtl_id, existing_file_name=doc.file_name))
                else:
                    seen.add(dtl_id)
                    fresh.append(material)
            batch.materials = fresh

        new_count = len(seen)
        stats = ItemLevelStats(
            total_items=total,
            new_items=new_count,
            duplicate_items=len(duplicates),
            duplicate_details=duplicates,
        )
        if new_count == 0:
            return StoreOutcome(
                duplicate=True,
                message=f"All {total} materials are duplicates",
                business_key=business_key,
                existing_file_name=duplicates[0].existing_file_name if duplicates else None,
                item_stats=stats,
            )

        record.batches = [b for b in record.batches if b.materials]
        matched, mismatched = validate_batches(
            record.batches, self.store.find_formula_by_mfc, self.settings.quantity_tolerance
        )
        record.total_batches = len(record.batches)
        record.total_materials = new_count
        record.validated_count = matched + mismatched
        record.mismatch_count = mismatched
        record.content_hash = digest
        record.file_size = doc.file_size_bytes

        warnings = list(parsed.warnings)
        self._attach_raw(record, doc.content, warnings)
        record_id = self.store.insert_requisition(record)

        if duplicates:
            message = f"Stored {new_count} new materials ({len(duplicates)} duplicates skipped)"
        else:
            message = self._success_message("REQUISITION")
        return StoreOutcome(
            duplicate=False,
            message=message,
            business_key=business_key,
            record_id=record_id,
            item_stats=stats,
            warnings=warnings,
        )
