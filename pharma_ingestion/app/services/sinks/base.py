from __future__ import annotations
from typing import Dict, List, Optional, Sequence, Tuple

from pharma_ingestion.app.models.ingestion import ProcessingLogEntry
from pharma_ingestion.app.models.records import BatchRegistry, COARecord, FormulaMaster, RequisitionRecord

COLLECTIONS = ("processing_logs", "batch_registries", "formulas", "coa_records", "requisitions")


class RecordStore:
    """Persistence collaborator for the ingestion core.

    Cross-references are resolved by the callers through repeated lookups;
    backends only need secondary-field finds, `$or`-style matches and one
    grouping query over requisition materials.
    """

    def close(self) -> None:
        pass

    # processing_logs
    def find_log(self, content_hash: str) -> Optional[ProcessingLogEntry]:
        raise NotImplementedError

    def upsert_log(self, entry: ProcessingLogEntry) -> None:
        raise NotImplementedError

    def list_logs(
        self,
        skip: int = 0,
        limit: int = 50,
        status: Optional[str] = None,
        file_type: Optional[str] = None,
    ) -> Tuple[List[ProcessingLogEntry], int]:
        """Newest first, with the total count matching the filters."""
        raise NotImplementedError

    def all_logs(self) -> List[ProcessingLogEntry]:
        raise NotImplementedError

    def delete_all_logs(self) -> int:
        raise NotImplementedError

    def delete_logs_for(self, content_hash: str, file_name: str) -> int:
        raise NotImplementedError

    def delete_logs_by_ids(self, ids: Sequence[str]) -> int:
        raise NotImplementedError

    # batch_registries
    def find_batch_registry_by_hash(self, content_hash: str) -> Optional[BatchRegistry]:
        raise NotImplementedError

    def find_batch_item_owner(self, batch_number: str, item_code: str) -> Optional[str]:
        """File name of the registry already holding this batch item, if any."""
        raise NotImplementedError

    def insert_batch_registry(self, record: BatchRegistry) -> str:
        raise NotImplementedError

    def get_batch_registry(self, record_id: str) -> Optional[BatchRegistry]:
        raise NotImplementedError

    def list_batch_registries(self) -> List[BatchRegistry]:
        raise NotImplementedError

    def delete_batch_registry(self, record_id: str) -> bool:
        raise NotImplementedError

    def batch_registry_exists(self, content_hash: str, file_name: str) -> bool:
        raise NotImplementedError

    # formulas
    def find_formula_by_mfc(self, master_card_no: str) -> Optional[FormulaMaster]:
        raise NotImplementedError

    def find_formula_by_product_revision(self, product_code: str, revision_no: Optional[str]) -> Optional[FormulaMaster]:
        raise NotImplementedError

    def insert_formula(self, record: FormulaMaster) -> str:
        raise NotImplementedError

    def replace_formula(self, record: FormulaMaster) -> None:
        raise NotImplementedError

    def get_formula(self, record_id: str) -> Optional[FormulaMaster]:
        raise NotImplementedError

    def list_formulas(self) -> List[FormulaMaster]:
        raise NotImplementedError

    def delete_formula(self, record_id: str) -> bool:
        raise NotImplementedError

    def formula_exists(self, content_hash: str, file_name: str) -> bool:
        """True if a formula came from this file; multi-formula files store `<hash>_<n>`."""
        raise NotImplementedError

    # coa_records
    def find_coa(self, batch_number: str, stage: str) -> Optional[COARecord]:
        raise NotImplementedError

    def insert_coa(self, record: COARecord) -> str:
        raise NotImplementedError

    def replace_coa(self, record: COARecord) -> None:
        raise NotImplementedError

    def list_coas(self) -> List[COARecord]:
        raise NotImplementedError

    # requisitions
    def find_requisition_by_hash(self, content_hash: str) -> Optional[RequisitionRecord]:
        raise NotImplementedError

    def existing_material_ids(self, mat_req_dtl_ids: Sequence[str]) -> Dict[str, str]:
        """Single grouped lookup: already stored mat_req_dtl_id -> owning file name."""
        raise NotImplementedError

    def insert_requisition(self, record: RequisitionRecord) -> str:
        raise NotImplementedError

    def get_requisition(self, record_id: str) -> Optional[RequisitionRecord]:
        raise NotImplementedError

    def list_requisitions(self) -> List[RequisitionRecord]:
        raise NotImplementedError

    def delete_requisition(self, record_id: str) -> bool:
        raise NotImplementedError
