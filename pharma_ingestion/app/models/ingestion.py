from __future__ import annotations

from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from pharma_ingestion.app.models.records import new_id

FileType = Literal["BATCH", "FORMULA", "COA", "REQUISITION", "UNKNOWN"]
LogStatus = Literal["SUCCESS", "DUPLICATE", "ERROR"]

FILE_TYPE_NAMES = {
    "BATCH": "Batch Creation",
    "FORMULA": "Formula Master",
    "COA": "Certificate of Analysis",
    "REQUISITION": "Material Requisition",
    "UNKNOWN": "Unknown",
}


class DuplicateItem(BaseModel):
    key: str
    existing_file_name: Optional[str] = None


class ItemLevelStats(BaseModel):
    total_items: int = 0
    new_items: int = 0
    duplicate_items: int = 0
    duplicate_details: List[DuplicateItem] = Field(default_factory=list)


class DuplicateFormula(BaseModel):
    business_key: str
    product_code: str
    reason: str
    existing_file_name: Optional[str] = None


class SuccessfulFormula(BaseModel):
    business_key: str
    product_code: str
    action: Literal["created", "merged"]
    record_id: str
    added_item_codes: List[str] = Field(default_factory=list)


class FormulaLevelStats(BaseModel):
    total_formulas: int = 0
    new_formulas: int = 0
    merged_formulas: int = 0
    duplicate_formulas: int = 0
    duplicate_details: List[DuplicateFormula] = Field(default_factory=list)
    successful_details: List[SuccessfulFormula] = Field(default_factory=list)


class ProcessingLogEntry(BaseModel):
    """
    MongoDB collection: processing_logs
    Upserted by content_hash.
    """
    id: str = Field(default_factory=new_id)
    content_hash: str
    file_name: str
    file_type: FileType = "UNKNOWN"
    status: LogStatus
    message: str = ""
    business_key: Optional[str] = None
    record_id: Optional[str] = None
    error_message: Optional[str] = None
    item_stats: Optional[ItemLevelStats] = None
    formula_stats: Optional[FormulaLevelStats] = None
    file_size: int = 0
    run_id: Optional[str] = None
    processed_at: datetime = Field(default_factory=datetime.utcnow)

    model_config = ConfigDict(extra="ignore")


class IngestionResult(BaseModel):
    file_name: str
    file_type: FileType = "UNKNOWN"
    status: LogStatus
    message: str
    business_key: Optional[str] = None
    record_id: Optional[str] = None
    existing_file_name: Optional[str] = None
    item_stats: Optional[ItemLevelStats] = None
    formula_stats: Optional[FormulaLevelStats] = None
    warnings: List[str] = Field(default_factory=list)


class IngestionStatus(BaseModel):
    run_id: str = ""
    total_files: int = 0
    processed: int = 0
    successful: int = 0
    duplicates: int = 0
    errors: int = 0
    results: List[IngestionResult] = Field(default_factory=list)
    started_at: datetime = Field(default_factory=datetime.utcnow)
    finished_at: Optional[datetime] = None

    def record(self, result: IngestionResult) -> None:
        self.processed += 1
        if result.status == "SUCCESS":
            self.successful += 1
        elif result.status == "DUPLICATE":
            self.duplicates += 1
        else:
            self.errors += 1
        self.results.append(result)


class LogPage(BaseModel):
    logs: List[ProcessingLogEntry] = Field(default_factory=list)
    total: int = 0
    page: int = 1
    limit: int = 50
    total_pages: int = 0
