from __future__ import annotations

from datetime import datetime
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, Field

from pharma_ingestion.app.models.records import MaterialCategory

ReconciliationStatus = Literal["fully_reconciled", "partially_reconciled", "not_reconciled", "no_batches"]
Severity = Literal["critical", "warning", "info"]
Priority = Literal["high", "medium", "low"]
RecommendationType = Literal["mfc_correction", "urgent_review", "requisition_gap", "formula_cleanup"]


class BatchIssue(BaseModel):
    type: Literal["mfc_mismatch"] = "mfc_mismatch"
    description: str
    severity: Severity = "critical"


class BatchValidationResult(BaseModel):
    batch_number: str
    item_code: str
    item_name: str
    mfg_date: str
    expiry_date: str
    batch_size: str
    department: str
    type: str
    mfg_lic_no: str
    is_valid: bool = True
    mfc_match: bool = True
    requisition_linked: bool = False
    mismatches: List[BatchIssue] = Field(default_factory=list)


class FormulaBatchStats(BaseModel):
    total_batches: int = 0
    reconciled_batches: int = 0
    mismatched_batches: int = 0


class MismatchSummary(BaseModel):
    mfc_mismatches: int = 0
    missing_requisition_batches: int = 0


class FormulaReconciliationResult(BaseModel):
    formula_id: str
    master_card_no: str
    product_code: str
    product_name: str
    revision_no: str
    manufacturer: str
    manufacturing_license_no: str
    stats: FormulaBatchStats = Field(default_factory=FormulaBatchStats)
    mismatch_summary: MismatchSummary = Field(default_factory=MismatchSummary)
    reconciliation_status: ReconciliationStatus = "no_batches"
    linked_product_codes: List[str] = Field(default_factory=list)
    batch_details: List[BatchValidationResult] = Field(default_factory=list)
    compliance_notes: List[str] = Field(default_factory=list)


class OrphanBatchRef(BaseModel):
    batch_number: str
    mfg_date: str
    batch_size: str


class OrphanBatchResult(BaseModel):
    item_code: str
    item_name: str
    batch_count: int
    batches: List[OrphanBatchRef] = Field(default_factory=list)
    compliance_risk: Literal["high", "medium"] = "medium"
    reason: str = "Formula Master record not found for this product code"


class LicenseMismatch(BaseModel):
    formula_id: str
    master_card_no: str
    batch_number: str
    item_code: str
    batch_mfg_lic_no: str
    formula_mfg_lic_no: str
    description: str
    severity: Severity = "critical"


class Recommendation(BaseModel):
    type: RecommendationType
    priority: Priority
    description: str
    formula_id: Optional[str] = None
    master_card_no: Optional[str] = None
    item_code: Optional[str] = None


class DataSources(BaseModel):
    formula_master_count: int = 0
    total_batch_records: int = 0
    unique_product_codes: int = 0
    requisition_count: int = 0


class BatchReconciliation(BaseModel):
    total_batches_in_system: int = 0
    batches_matched_to_formula: int = 0
    batches_not_matched_to_formula: int = 0
    all_batches_accounted_for: bool = True
    reconciled_batch_count: int = 0
    mismatched_batch_count: int = 0
    reconciliation_percentage: int = 100


class OverallStats(BaseModel):
    fully_reconciled_formulas: int = 0
    partially_reconciled_formulas: int = 0
    not_reconciled_formulas: int = 0
    formulas_with_no_batches: int = 0
    total_orphan_batches: int = 0
    total_mismatches: int = 0
    compliance_score: int = 100


class ReconciliationReport(BaseModel):
    report_id: str
    generated_at: datetime = Field(default_factory=datetime.utcnow)
    data_sources: DataSources = Field(default_factory=DataSources)
    batch_reconciliation: BatchReconciliation = Field(default_factory=BatchReconciliation)
    formula_results: List[FormulaReconciliationResult] = Field(default_factory=list)
    orphan_batches: List[OrphanBatchResult] = Field(default_factory=list)
    license_mismatches: List[LicenseMismatch] = Field(default_factory=list)
    overall_stats: OverallStats = Field(default_factory=OverallStats)
    recommendations: List[Recommendation] = Field(default_factory=list)


# -------------------------------------------------------------------------
# Supplemental reports
# -------------------------------------------------------------------------

Section = Literal["Bulk", "Finish", "RM", "PPM", "PM"]


class SectionBatchStatus(BaseModel):
    batch_number: str
    item_code: str
    has_data: bool
    issue: Optional[str] = None


class SectionFormulaResult(BaseModel):
    formula_id: str
    master_card_no: str
    product_code: str
    product_name: str
    total_batches: int
    batches_with_data: int
    batches_missing_data: int
    batches: List[SectionBatchStatus] = Field(default_factory=list)


class SectionValidationReport(BaseModel):
    section: Section
    min_batches: int
    formulas_checked: int = 0
    total_batches: int = 0
    batches_with_data: int = 0
    batches_missing_data: int = 0
    results: List[SectionFormulaResult] = Field(default_factory=list)


class DuplicateBatchNumber(BaseModel):
    batch_number: str
    occurrences: int
    item_codes: List[str] = Field(default_factory=list)
    file_names: List[str] = Field(default_factory=list)


class DuplicateBatchGroup(BaseModel):
    master_card_no: str
    product_name: str
    product_codes: List[str] = Field(default_factory=list)
    total_batches: int = 0
    duplicate_batch_numbers: List[DuplicateBatchNumber] = Field(default_factory=list)


class DuplicateBatchReport(BaseModel):
    total_mfcs_with_duplicates: int = 0
    total_duplicate_batch_numbers: int = 0
    groups: List[DuplicateBatchGroup] = Field(default_factory=list)


class MissingMaterial(BaseModel):
    material_code: str
    material_name: str
    material_type: MaterialCategory
    master_card_no: str
    product_name: str
    batch_number: str
    message: str


class MissingMaterialSummary(BaseModel):
    material_code: str
    material_name: str
    material_type: MaterialCategory
    missing_in_batches: int = 0
    batches: List[str] = Field(default_factory=list)


class MissingMaterialsReport(BaseModel):
    min_batches: int
    material_type: Optional[MaterialCategory] = None
    total_mfcs: int = 0
    total_batches: int = 0
    total_materials_in_mfc: int = 0
    total_missing_materials: int = 0
    missing_by_type: Dict[str, int] = Field(default_factory=lambda: {"RM": 0, "PPM": 0, "PM": 0})
    missing_materials: List[MissingMaterial] = Field(default_factory=list)
    material_code_summary: List[MissingMaterialSummary] = Field(default_factory=list)
