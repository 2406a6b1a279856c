from __future__ import annotations
import re
from typing import Dict, List, Optional, Sequence, Tuple

from pharma_ingestion.app.models.ingestion import ProcessingLogEntry
from pharma_ingestion.app.models.records import BatchRegistry, COARecord, FormulaMaster, RequisitionRecord
from pharma_ingestion.app.services.sinks.base import RecordStore

try:
    from pymongo import ASCENDING, DESCENDING, MongoClient
except ImportError:
    MongoClient = None


class MongoRecordStore(RecordStore):
    def __init__(self, mongo_uri: str, db_name: str):
        if MongoClient is None:
            raise RuntimeError("pymongo is not installed; install pymongo to use store_backend=mongo")
        self.client = MongoClient(mongo_uri)
        self.db = self.client[db_name]
        self.col_logs = self.db["processing_logs"]
        self.col_batches = self.db["batch_registries"]
        self.col_formulas = self.db["formulas"]
        self.col_coa = self.db["coa_records"]
        self.col_requisitions = self.db["requisitions"]
        self._ensure_indexes()

    def _ensure_indexes(self) -> None:
        self.col_logs.create_index([("content_hash", ASCENDING)], unique=True)
        self.col_logs.create_index([("processed_at", DESCENDING)])
        self.col_batches.create_index([("batches.batch_number", ASCENDING), ("batches.item_code", ASCENDING)])
        self.col_formulas.create_index([("master_formula_details.master_card_no", ASCENDING)])
        self.col_coa.create_index([("batch_number", ASCENDING), ("stage", ASCENDING)], unique=True)
        self.col_requisitions.create_index([("batches.materials.mat_req_dtl_id", ASCENDING)])

    def close(self) -> None:
        self.client.close()

    # processing_logs
    def find_log(self, content_hash: str) -> Optional[ProcessingLogEntry]:
        doc = self.col_logs.find_one({"content_hash": content_hash})
        return ProcessingLogEntry.model_validate(doc) if doc else None

    def upsert_log(self, entry: ProcessingLogEntry) -> None:
        existing = self.col_logs.find_one({"content_hash": entry.content_hash}, {"id": 1})
        if existing and existing.get("id"):
            # Keep the first id so references to the entry survive reprocessing
            entry.id = existing["id"]
        self.col_logs.replace_one({"content_hash": entry.content_hash}, entry.model_dump(mode="json"), upsert=True)

    def list_logs(
        self,
        skip: int = 0,
        limit: int = 50,
        status: Optional[str] = None,
        file_type: Optional[str] = None,
    ) -> Tuple[List[ProcessingLogEntry], int]:
        query: Dict[str, str] = {}
        if status:
            query["status"] = status
        if file_type:
            query["file_type"] = file_type
        total = self.col_logs.count_documents(query)
        cursor = self.col_logs.find(query).sort("processed_at", DESCENDING).skip(skip).limit(limit)
        return [ProcessingLogEntry.model_validate(d) for d in cursor], total

    def all_logs(self) -> List[ProcessingLogEntry]:
        return [ProcessingLogEntry.model_validate(d) for d in self.col_logs.find({})]

    def delete_all_logs(self) -> int:
        return self.col_logs.delete_many({}).deleted_count

    def delete_logs_for(self, content_hash: str, file_name: str) -> int:
        res = self.col_logs.delete_many({"$or": [{"content_hash": content_hash}, {"file_name": file_name}]})
        return res.deleted_count

    def delete_logs_by_ids(self, ids: Sequence[str]) -> int:
        if not ids:
            return 0
        return self.col_logs.delete_many({"id": {"$in": list(ids)}}).deleted_count

    # batch_registries
    def find_batch_registry_by_hash(self, content_hash: str) -> Optional[BatchRegistry]:
        doc = self.col_batches.find_one({"content_hash": content_hash}, {"raw_xml_content": 0})
        return BatchRegistry.model_validate(doc) if doc else None

    def find_batch_item_owner(self, batch_number: str, item_code: str) -> Optional[str]:
        doc = self.col_batches.find_one(
            {"batches": {"$elemMatch": {"batch_number": batch_number, "item_code": item_code}}},
            {"file_name": 1},
        )
        return doc.get("file_name") if doc else None

    def insert_batch_registry(self, record: BatchRegistry) -> str:
        self.col_batches.insert_one(record.model_dump(mode="json"))
        return record.id

    def get_batch_registry(self, record_id: str) -> Optional[BatchRegistry]:
        doc = self.col_batches.find_one({"id": record_id})
        return BatchRegistry.model_validate(doc) if doc else None

    def list_batch_registries(self) -> List[BatchRegistry]:
        return [BatchRegistry.model_validate(d) for d in self.col_batches.find({}, {"raw_xml_content": 0})]

    def delete_batch_registry(self, record_id: str) -> bool:
        return self.col_batches.delete_one({"id": record_id}).deleted_count > 0

    def batch_registry_exists(self, content_hash: str, file_name: str) -> bool:
        query = {"$or": [{"content_hash": content_hash}, {"file_name": file_name}]}
        return self.col_batches.count_documents(query, limit=1) > 0

    # formulas
    def find_formula_by_mfc(self, master_card_no: str) -> Optional[FormulaMaster]:
        doc = self.col_formulas.find_one({"master_formula_details.master_card_no": master_card_no})
        return FormulaMaster.model_validate(doc) if doc else None

    def find_formula_by_product_revision(self, product_code: str, revision_no: Optional[str]) -> Optional[FormulaMaster]:
        doc = self.col_formulas.find_one({
            "master_formula_details.product_code": product_code,
            "master_formula_details.revision_no": revision_no,
        })
        return FormulaMaster.model_validate(doc) if doc else None

    def insert_formula(self, record: FormulaMaster) -> str:
        self.col_formulas.insert_one(record.model_dump(mode="json"))
        return record.id

    def replace_formula(self, record: FormulaMaster) -> None:
        self.col_formulas.replace_one({"id": record.id}, record.model_dump(mode="json"))

    def get_formula(self, record_id: str) -> Optional[FormulaMaster]:
        doc = self.col_formulas.find_one({"id": record_id})
        return FormulaMaster.model_validate(doc) if doc else None

    def list_formulas(self) -> List[FormulaMaster]:
        return [FormulaMaster.model_validate(d) for d in self.col_formulas.find({}, {"raw_xml_content": 0})]

    def delete_formula(self, record_id: str) -> bool:
        return self.col_formulas.delete_one({"id": record_id}).deleted_count > 0

    def formula_exists(self, content_hash: str, file_name: str) -> bool:
        query = {"$or": [
            {"content_hash": content_hash},
            {"content_hash": {"$regex": f"^{re.escape(content_hash)}_"}},
            {"file_name": file_name},
        ]}
        return self.col_formulas.count_documents(query, limit=1) > 0

    # coa_records
    def find_coa(self, batch_number: str, stage: str) -> Optional[COARecord]:
        doc = self.col_coa.find_one({"batch_number": batch_number, "stage": stage})
        return COARecord.model_validate(doc) if doc else None

    def insert_coa(self, record: COARecord) -> str:
        self.col_coa.insert_one(record.model_dump(mode="json"))
        return record.id

    def replace_coa(self, record: COARecord) -> None:
        self.col_coa.replace_one({"id": record.id}, record.model_dump(mode="json"))

    def list_coas(self) -> List[COARecord]:
        return [COARecord.model_validate(d) for d in self.col_coa.find({}, {"raw_xml_content": 0})]

    # requisitions
    def find_requisition_by_hash(self, content_hash: str) -> Optional[RequisitionRecord]:
        doc = self.col_requisitions.find_one({"content_hash": content_hash}, {"raw_xml_content": 0})
        return RequisitionRecord.model_validate(doc) if doc else None

    def existing_material_ids(self, mat_req_dtl_ids: Sequence[str]) -> Dict[str, str]:
        ids = list(dict.fromkeys(mat_req_dtl_ids))
        if not ids:
            return {}
        pipeline = [
            {"$match": {"batches.materials.mat_req_dtl_id": {"$in": ids}}},
            {"$project": {"file_name": 1, "batches.materials.mat_req_dtl_id": 1}},
            {"$unwind": "$batches"},
            {"$unwind": "$batches.materials"},
            {"$match": {"batches.materials.mat_req_dtl_id": {"$in": ids}}},
            {"$group": {"_id": "$batches.materials.mat_req_dtl_id", "file_name": {"$first": "$file_name"}}},
        ]
        return {row["_id"]: row.get("file_name", "") for row in self.col_requisitions.aggregate(pipeline)}

    def insert_requisition(self, record: RequisitionRecord) -> str:
        self.col_requisitions.insert_one(record.model_dump(mode="json"))
        return record.id

    def get_requisition(self, record_id: str) -> Optional[RequisitionRecord]:
        doc = self.col_requisitions.find_one({"id": record_id})
        return RequisitionRecord.model_validate(doc) if doc else None

    def list_requisitions(self) -> List[RequisitionRecord]:
        return [RequisitionRecord.model_validate(d) for d in self.col_requisitions.find({}, {"raw_xml_content": 0})]

    def delete_requisition(self, record_id: str) -> bool:
        return self.col_requisitions.delete_one({"id": record_id}).deleted_count > 0
