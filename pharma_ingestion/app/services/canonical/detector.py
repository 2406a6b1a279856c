from __future__ import annotations

from typing import Dict, List, Optional

from pharma_ingestion.app.core.settings import Settings
from pharma_ingestion.app.models.ingestion import FILE_TYPE_NAMES, FileType

BATCH_INDICATORS: List[str] = [
    "BATCHCRREGI",
    "<G_MATCODE>",
    "<BATCHNO>",
    "<MFCDT>",
    "<EXPDT>",
    "<BATCHSIZE>",
    "<CONVRAT>",
    "<LIST_G_MATCODE>",
]

FORMULA_INDICATORS: List[str] = [
    "FORMULAMAST",
    "<MCADNO>",
    "<ITMCODE>",
    "<GENERICNM>",
    "<BATCHSIZE1>",
    "<G_ITMCODE1>",
    "<LIST_G_PROCESS>",
    "<MATDETAIL>",
    "<SPECIFICATION>",
]

REQUISITION_INDICATORS: List[str] = [
    "<MATREQ>",
    "<LIST_G_BATCHSIZEBC>",
    "<G_BATCHSIZEBC>",
    "<MATREQNO>",
    "<MATREQDTLID>",
    "<MATREQRMK>",
    "<MATTYPE1>",
]

COA_INDICATORS: List[str] = [
    "FGANLCERT",
    "FGANLCERTQA",
    "<FGARNO>",
    "<PROTEST1>",
    "<LIMITS1>",
    "<FGTESTNO>",
    "<ITMNAME>",
    "<LIST_G_SRNO1>",
]

REQUISITION_ROOT = "<MATREQ>"
BATCH_MARKERS = ("BATCHCRREGI", "BATCH_CREATION")
FORMULA_MARKERS = ("FORMULAMAST", "FORMULA_MASTER")


def count_hits(upper_content: str, indicators: List[str]) -> int:
    return sum(1 for ind in indicators if ind in upper_content)


class TypeDetector:
    """Classifies XML content by voting over characteristic tag substrings.

    Only the content is inspected; file names from the legacy exporter are
    not reliable.
    """

    def __init__(self, min_hits: int = 2, requisition_min_hits: int = 4):
        self.min_hits = min_hits
        self.requisition_min_hits = requisition_min_hits

    @classmethod
    def from_settings(cls, settings: Settings) -> "TypeDetector":
        return cls(settings.detection_min_hits, settings.detection_requisition_min_hits)

    def scores(self, content: str) -> Dict[str, int]:
        upper = content.upper()
        return {
            "BATCH": count_hits(upper, BATCH_INDICATORS),
            "FORMULA": count_hits(upper, FORMULA_INDICATORS),
            "REQUISITION": count_hits(upper, REQUISITION_INDICATORS),
            "COA": count_hits(upper, COA_INDICATORS),
        }

    def detect(self, content: str) -> FileType:
        upper = content.upper()
        # <MATREQ> is definitive; requisitions share several formula tags
        if REQUISITION_ROOT in upper:
            return "REQUISITION"

        batch = count_hits(upper, BATCH_INDICATORS)
        formula = count_hits(upper, FORMULA_INDICATORS)
        requisition = count_hits(upper, REQUISITION_INDICATORS)
        coa = count_hits(upper, COA_INDICATORS)

        if requisition >= self.requisition_min_hits and requisition > batch:
            return "REQUISITION"
        if batch >= self.min_hits and batch > formula:
            return "BATCH"
        if formula >= self.min_hits and formula > batch:
            return "FORMULA"
        if coa >= self.min_hits and coa > batch and coa > formula:
            return "COA"

        if any(m in upper for m in BATCH_MARKERS):
            return "BATCH"
        if any(m in upper for m in FORMULA_MARKERS):
            return "FORMULA"
        return "UNKNOWN"


def detect_file_type(content: str, detector: Optional[TypeDetector] = None) -> FileType:
    return (detector or TypeDetector()).detect(content)


def file_type_name(file_type: str) -> str:
    return FILE_TYPE_NAMES.get(file_type, "Unknown")
