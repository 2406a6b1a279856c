from __future__ import annotations

import uuid
from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

# -------------------------------------------------------------------------
# Common Types
# -------------------------------------------------------------------------

NA = "N/A"

ParsingStatus = Literal["success", "partial", "failed"]
BatchType = Literal["Export", "Import"]
COAStage = Literal["BULK", "FINISH"]
MaterialCategory = Literal["RM", "PPM", "PM"]
ValidationStatus = Literal["matched", "mismatch", "pending"]


def new_id() -> str:
    return uuid.uuid4().hex


class CompanyInfo(BaseModel):
    company_name: str = NA
    company_address: str = NA


class StoredRecord(BaseModel):
    """Fields shared by every ingested file record."""
    id: str = Field(default_factory=new_id)
    file_name: str
    file_size: int = 0
    content_hash: str
    raw_xml_content: Optional[str] = None
    parsing_status: ParsingStatus = "success"
    parsing_errors: List[str] = Field(default_factory=list)
    uploaded_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(extra="ignore")


# -------------------------------------------------------------------------
# Batch Creation registry
# -------------------------------------------------------------------------

class BatchItem(BaseModel):
    sr_no: int = 0
    batch_number: str = NA
    item_code: str = NA
    item_name: str = NA
    item_detail: str = NA
    mfg_date: str = NA
    expiry_date: str = NA
    batch_size: str = NA
    unit: str = NA
    batch_uom: str = NA
    type: BatchType = "Export"
    mfg_lic_no: str = NA
    department: str = NA
    pack: str = NA
    year: str = NA
    make: str = NA
    location_id: str = NA
    mrp_value: Optional[str] = None
    conversion_ratio: str = NA
    batch_completion_date: Optional[str] = None


class BatchRegistry(StoredRecord):
    """
    MongoDB collection: batch_registries
    """
    company_name: str = NA
    company_address: str = NA
    batches: List[BatchItem] = Field(default_factory=list)
    total_batches: int = 0
    export_count: int = 0
    import_count: int = 0


# -------------------------------------------------------------------------
# Formula Master
# -------------------------------------------------------------------------

class MasterFormulaDetails(BaseModel):
    master_card_no: str = NA
    product_code: str = NA
    product_name: str = NA
    generic_name: str = NA
    specification: str = NA
    manufacturing_license_no: str = NA
    manufacturing_location: str = NA
    reason_for_change: Optional[str] = None
    revision_no: Optional[str] = None
    manufacturer: str = NA
    shelf_life: str = NA
    effective_batch_no: Optional[str] = None
    date: Optional[str] = None


class FormulaBatchInfo(BaseModel):
    batch_size: str = NA
    label_claim: str = NA
    marketed_by: Optional[str] = None
    volume: Optional[str] = None
    dosage_form: Optional[str] = None


class CompositionItem(BaseModel):
    ingredient: str
    strength: str
    unit: str = ""
    form: str = NA


class MaterialItem(BaseModel):
    sr_no: str = NA
    material_code: str = NA
    material_name: str = NA
    material_type: str = NA
    sub_material_type: str = NA
    potency_correction: str = NA
    required_quantity: str = NA
    overages: str = NA
    quantity_per_unit: str = NA
    required_quantity_standard_batch: str = NA
    synonyms: Optional[str] = None
    equivalent_factor: Optional[str] = None


class FillingDetail(BaseModel):
    product_code: str = NA
    product_name: str = NA
    pack_size: str = NA
    actual_qty: str = NA
    pm_required_qty: Optional[str] = None
    unit: str = NA


class FillingProduct(BaseModel):
    product_code: str = NA
    product_name: str = NA
    pack_size: str = NA
    actual_qty: str = NA
    unit: str = NA


class ProcessMaterial(BaseModel):
    sr_no: str = NA
    material_code: str = NA
    material_name: str = NA
    material_type: str = NA
    req_as_per_std_batch_size: str = NA
    req_qty: str = NA
    unit: str = NA


class FormulaProcess(BaseModel):
    process_no: str = NA
    process_name: str = NA
    materials: List[ProcessMaterial] = Field(default_factory=list)
    filling_products: List[FillingProduct] = Field(default_factory=list)


class PackingMaterial(BaseModel):
    sr_no: str = NA
    material_code: str = NA
    material_name: str = NA
    material_type: str = NA
    req_as_per_std_batch_size: str = NA
    unit: str = NA


class FormulaSummary(BaseModel):
    total_materials: int = 0
    total_filling_details: int = 0
    total_processes: int = 0
    actual_filling_qty: str = NA
    filling_uom: str = NA
    non_active: str = NA


class FormulaMaster(StoredRecord):
    """
    MongoDB collection: formulas
    """
    unique_identifier: str = ""
    company_info: CompanyInfo = Field(default_factory=CompanyInfo)
    master_formula_details: MasterFormulaDetails = Field(default_factory=MasterFormulaDetails)
    batch_info: FormulaBatchInfo = Field(default_factory=FormulaBatchInfo)
    composition: List[CompositionItem] = Field(default_factory=list)
    materials: List[MaterialItem] = Field(default_factory=list)
    filling_details: List[FillingDetail] = Field(default_factory=list)
    processes: List[FormulaProcess] = Field(default_factory=list)
    packing_materials: List[PackingMaterial] = Field(default_factory=list)
    summary: FormulaSummary = Field(default_factory=FormulaSummary)

    @property
    def master_card_no(self) -> Optional[str]:
        mfc = (self.master_formula_details.master_card_no or "").strip()
        return mfc if mfc and mfc != NA else None

    def linked_product_codes(self) -> List[str]:
        """Main product code plus every filling code, first occurrence order."""
        codes: List[str] = []
        main = self.master_formula_details.product_code
        if main and main != NA:
            codes.append(main)
        for code in self.filling_codes():
            if code not in codes:
                codes.append(code)
        return codes

    def filling_codes(self) -> List[str]:
        codes: List[str] = []
        for fd in self.filling_details:
            if is_present(fd.product_code) and fd.product_code not in codes:
                codes.append(fd.product_code)
        for proc in self.processes:
            for fp in proc.filling_products:
                if is_present(fp.product_code) and fp.product_code not in codes:
                    codes.append(fp.product_code)
        return codes


def is_present(value: Optional[str]) -> bool:
    return bool(value and value.strip() and value.strip() != NA)


# -------------------------------------------------------------------------
# Certificate of Analysis
# -------------------------------------------------------------------------

class TestParameter(BaseModel):
    sr_no: str = NA
    test_name: str = NA
    specification: str = NA
    result: str = NA
    complies: bool = True


class AssayResult(BaseModel):
    sr_no: str = NA
    ingredient: str = NA
    specification: str = NA
    result: str = NA
    min_limit: Optional[float] = None
    max_limit: Optional[float] = None
    result_value: Optional[float] = None
    within_limits: Optional[bool] = None


class IdentificationTest(BaseModel):
    sr_no: str = NA
    ingredient: str = NA
    method: str = NA
    specification: str = NA
    result: str = NA
    complies: bool = True


class RelatedSubstance(BaseModel):
    sr_no: str = NA
    name: str = NA
    limit: str = NA
    result: str = NA
    complies: bool = True


class CriticalParameter(BaseModel):
    sr_no: str = NA
    parameter: str = NA
    specification: str = NA
    result: str = NA
    complies: bool = True


class QASignature(BaseModel):
    analysed_by: str = NA
    checked_by: str = NA
    approved_by: str = NA
    release_date: str = NA


class StageData(BaseModel):
    batch_size: str = NA
    description: str = NA
    test_parameters: List[TestParameter] = Field(default_factory=list)
    assay_results: List[AssayResult] = Field(default_factory=list)
    identification_tests: List[IdentificationTest] = Field(default_factory=list)
    related_substances: List[RelatedSubstance] = Field(default_factory=list)
    remarks: str = NA


class BulkStageData(StageData):
    pass


class FinishStageData(StageData):
    release_quantity: str = NA
    critical_parameters: List[CriticalParameter] = Field(default_factory=list)
    qa_signature: QASignature = Field(default_factory=QASignature)


class COARecord(StoredRecord):
    """
    MongoDB collection: coa_records
    Unique on (batch_number, stage).
    """
    batch_number: str
    stage: COAStage
    company_info: CompanyInfo = Field(default_factory=CompanyInfo)
    product_code: str = NA
    product_name: str = NA
    generic_name: str = NA
    ar_number: str = NA
    test_number: str = NA
    mfg_date: str = NA
    expiry_date: str = NA
    mfg_lic_no: str = NA
    overall_complies: bool = True
    bulk_data: Optional[BulkStageData] = None
    finish_data: Optional[FinishStageData] = None


# -------------------------------------------------------------------------
# Material Requisition
# -------------------------------------------------------------------------

class RequisitionMaterial(BaseModel):
    mat_req_dtl_id: str
    sr_no: str = NA
    material_code: str = NA
    material_name: str = NA
    material_type: str = NA
    category: MaterialCategory = "PM"
    process_name: str = NA
    stage: str = NA
    required_quantity: float = 0.0
    quantity_to_issue: float = 0.0
    uom: str = "NOS"
    mat_req_id: str = NA
    material_id: str = NA
    bin_code: str = NA
    grn_no: str = NA
    ar_no: str = NA
    challan_no: str = NA
    challan_date: str = NA
    expiry_date: str = NA
    mfg_date: str = NA
    overage_percent: float = 0.0
    vendor_code: str = NA
    artwork_no: str = NA
    label_claim: str = NA
    validation_status: Optional[ValidationStatus] = None
    master_formula_qty: Optional[float] = None
    variance_percent: Optional[float] = None


class RequisitionBatch(BaseModel):
    batch_number: str
    mat_req_id: str
    location_code: str = NA
    make: str = NA
    mat_req_no: str = NA
    mfc_no: str = NA
    batch_size: float = 0.0
    batch_uom: str = "LTR"
    item_code: str = NA
    item_name: str = NA
    item_detail: str = NA
    pack: str = NA
    unit: str = NA
    formula_master_id: str = NA
    mat_req_date: str = NA
    remarks: str = NA
    year: str = NA
    department: str = NA
    mfg_date: str = NA
    expiry_date: str = NA
    materials: List[RequisitionMaterial] = Field(default_factory=list)

    def materials_by_category(self, category: str) -> List[RequisitionMaterial]:
        return [m for m in self.materials if m.category == category]


class RequisitionRecord(StoredRecord):
    """
    MongoDB collection: requisitions
    mat_req_dtl_id is unique across every stored requisition.
    """
    unique_identifier: str = ""
    location_code: str = NA
    make: str = NA
    batches: List[RequisitionBatch] = Field(default_factory=list)
    total_batches: int = 0
    total_materials: int = 0
    validated_count: int = 0
    mismatch_count: int = 0
