from __future__ import annotations

import json
import os
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from pharma_ingestion.app.models.ingestion import ProcessingLogEntry
from pharma_ingestion.app.models.records import BatchRegistry, COARecord, FormulaMaster, RequisitionRecord
from pharma_ingestion.app.services.sinks.base import RecordStore

Doc = Dict[str, Any]


def jsonencoder(o: Any) -> Any:
    if isinstance(o, datetime):
        return o.isoformat()
    return str(o)


class JsonCollection:
    """A whole collection kept as one JSON array on disk, re-read on every call."""

    def __init__(self, path: Path):
        self.path = path

    def load(self) -> List[Doc]:
        if not self.path.exists():
            return []
        return json.loads(self.path.read_text("utf-8") or "[]")

    def save(self, docs: List[Doc]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(".tmp")
        tmp.write_text(json.dumps(docs, ensure_ascii=False, default=jsonencoder), encoding="utf-8")
        os.replace(tmp, self.path)

    def find_one(self, pred: Callable[[Doc], bool]) -> Optional[Doc]:
        return next((d for d in self.load() if pred(d)), None)

    def find(self, pred: Optional[Callable[[Doc], bool]] = None) -> List[Doc]:
        docs = self.load()
        return [d for d in docs if pred(d)] if pred else docs

    def insert(self, doc: Doc) -> None:
        docs = self.load()
        docs.append(doc)
        self.save(docs)

    def replace(self, pred: Callable[[Doc], bool], doc: Doc, upsert: bool = False) -> bool:
        docs = self.load()
        for i, d in enumerate(docs):
            if pred(d):
                docs[i] = doc
                self.save(docs)
                return True
        if upsert:
            docs.append(doc)
            self.save(docs)
        return False

    def delete(self, pred: Callable[[Doc], bool]) -> int:
        docs = self.load()
        kept = [d for d in docs if not pred(d)]
        removed = len(docs) - len(kept)
        if removed:
            self.save(kept)
        return removed


def _without_raw(doc: Doc) -> Doc:
    return {k: v for k, v in doc.items() if k != "raw_xml_content"}


class JsonRecordStore(RecordStore):
    def __init__(self, out_dir: Path):
        base = out_dir / "store"
        self.logs = JsonCollection(base / "processing_logs.json")
        self.batches = JsonCollection(base / "batch_registries.json")
        self.formulas = JsonCollection(base / "formulas.json")
        self.coa = JsonCollection(base / "coa_records.json")
        self.requisitions = JsonCollection(base / "requisitions.json")

    # processing_logs
    def find_log(self, content_hash: str) -> Optional[ProcessingLogEntry]:
        doc = self.logs.find_one(lambda d: d.get("content_hash") == content_hash)
        return ProcessingLogEntry.model_validate(doc) if doc else None

    def upsert_log(self, entry: ProcessingLogEntry) -> None:
        existing = self.find_log(entry.content_hash)
        if existing:
            entry.id = existing.id
        self.logs.replace(lambda d: d.get("content_hash") == entry.content_hash, entry.model_dump(mode="json"), upsert=True)

    def list_logs(
        self,
        skip: int = 0,
        limit: int = 50,
        status: Optional[str] = None,
        file_type: Optional[str] = None,
    ) -> Tuple[List[ProcessingLogEntry], int]:
        def wanted(d: Doc) -> bool:
            return (not status or d.get("status") == status) and (not file_type or d.get("file_type") == file_type)
        docs = sorted(self.logs.find(wanted), key=lambda d: d.get("processed_at") or "", reverse=True)
        return [ProcessingLogEntry.model_validate(d) for d in docs[skip:skip + limit]], len(docs)

    def all_logs(self) -> List[ProcessingLogEntry]:
        return [ProcessingLogEntry.model_validate(d) for d in self.logs.load()]

    def delete_all_logs(self) -> int:
        return self.logs.delete(lambda d: True)

    def delete_logs_for(self, content_hash: str, file_name: str) -> int:
        return self.logs.delete(lambda d: d.get("content_hash") == content_hash or d.get("file_name") == file_name)

    def delete_logs_by_ids(self, ids: Sequence[str]) -> int:
        wanted = set(ids)
        if not wanted:
            return 0
        return self.logs.delete(lambda d: d.get("id") in wanted)

    # batch_registries
    def find_batch_registry_by_hash(self, content_hash: str) -> Optional[BatchRegistry]:
        doc = self.batches.find_one(lambda d: d.get("content_hash") == content_hash)
        return BatchRegistry.model_validate(_without_raw(doc)) if doc else None

    def find_batch_item_owner(self, batch_number: str, item_code: str) -> Optional[str]:
        def holds(d: Doc) -> bool:
            return any(b.get("batch_number") == batch_number and b.get("item_code") == item_code for b in d.get("batches", []))
        doc = self.batches.find_one(holds)
        return doc.get("file_name") if doc else None

    def insert_batch_registry(self, record: BatchRegistry) -> str:
        self.batches.insert(record.model_dump(mode="json"))
        return record.id

    def get_batch_registry(self, record_id: str) -> Optional[BatchRegistry]:
        doc = self.batches.find_one(lambda d: d.get("id") == record_id)
        return BatchRegistry.model_validate(doc) if doc else None

    def list_batch_registries(self) -> List[BatchRegistry]:
        return [BatchRegistry.model_validate(_without_raw(d)) for d in self.batches.load()]

    def delete_batch_registry(self, record_id: str) -> bool:
        return self.batches.delete(lambda d: d.get("id") == record_id) > 0

    def batch_registry_exists(self, content_hash: str, file_name: str) -> bool:
        return self.batches.find_one(lambda d: d.get("content_hash") == content_hash or d.get("file_name") == file_name) is not None

    # formulas
    def find_formula_by_mfc(self, master_card_no: str) -> Optional[FormulaMaster]:
        doc = self.formulas.find_one(lambda d: d.get("master_formula_details", {}).get("master_card_no") == master_card_no)
        return FormulaMaster.model_validate(doc) if doc else None

    def find_formula_by_product_revision(self, product_code: str, revision_no: Optional[str]) -> Optional[FormulaMaster]:
        def same(d: Doc) -> bool:
            details = d.get("master_formula_details", {})
            return details.get("product_code") == product_code and details.get("revision_no") == revision_no
        doc = self.formulas.find_one(same)
        return FormulaMaster.model_validate(doc) if doc else None

    def insert_formula(self, record: FormulaMaster) -> str:
        self.formulas.insert(record.model_dump(mode="json"))
        return record.id

    def replace_formula(self, record: FormulaMaster) -> None:
        self.formulas.replace(lambda d: d.get("id") == record.id, record.model_dump(mode="json"))

    def get_formula(self, record_id: str) -> Optional[FormulaMaster]:
        doc = self.formulas.find_one(lambda d: d.get("id") == record_id)
        return FormulaMaster.model_validate(doc) if doc else None

    def list_formulas(self) -> List[FormulaMaster]:
        return [FormulaMaster.model_validate(_without_raw(d)) for d in self.formulas.load()]

    def delete_formula(self, record_id: str) -> bool:
        return self.formulas.delete(lambda d: d.get("id") == record_id) > 0

    def formula_exists(self, content_hash: str, file_name: str) -> bool:
        def matches(d: Doc) -> bool:
            h = d.get("content_hash") or ""
            return h == content_hash or h.startswith(f"{content_hash}_") or d.get("file_name") == file_name
        return self.formulas.find_one(matches) is not None

    # coa_records
    def find_coa(self, batch_number: str, stage: str) -> Optional[COARecord]:
        doc = self.coa.find_one(lambda d: d.get("batch_number") == batch_number and d.get("stage") == stage)
        return COARecord.model_validate(doc) if doc else None

    def insert_coa(self, record: COARecord) -> str:
        self.coa.insert(record.model_dump(mode="json"))
        return record.id

    def replace_coa(self, record: COARecord) -> None:
        self.coa.replace(lambda d: d.get("id") == record.id, record.model_dump(mode="json"))

    def list_coas(self) -> List[COARecord]:
        return [COARecord.model_validate(_without_raw(d)) for d in self.coa.load()]

    # requisitions
    def find_requisition_by_hash(self, content_hash: str) -> Optional[RequisitionRecord]:
        doc = self.requisitions.find_one(lambda d: d.get("content_hash") == content_hash)
        return RequisitionRecord.model_validate(_without_raw(doc)) if doc else None

    def existing_material_ids(self, mat_req_dtl_ids: Sequence[str]) -> Dict[str, str]:
        wanted = set(mat_req_dtl_ids)
        found: Dict[str, str] = {}
        if not wanted:
            return found
        for doc in self.requisitions.load():
            for batch in doc.get("batches", []):
                for mat in batch.get("materials", []):
                    dtl_id = mat.get("mat_req_dtl_id")
                    if dtl_id in wanted and dtl_id not in found:
                        found[dtl_id] = doc.get("file_name", "")
        return found

    def insert_requisition(self, record: RequisitionRecord) -> str:
        self.requisitions.insert(record.model_dump(mode="json"))
        return record.id

    def get_requisition(self, record_id: str) -> Optional[RequisitionRecord]:
        doc = self.requisitions.find_one(lambda d: d.get("id") == record_id)
        return RequisitionRecord.model_validate(doc) if doc else None

    def list_requisitions(self) -> List[RequisitionRecord]:
        return [RequisitionRecord.model_validate(_without_raw(d)) for d in self.requisitions.load()]

    def delete_requisition(self, record_id: str) -> bool:
        return self.requisitions.delete(lambda d: d.get("id") == record_id) > 0
