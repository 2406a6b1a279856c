from __future__ import annotations

import re
from typing import List, Optional, Tuple

from pharma_ingestion.app.models.documents import ParseResult
from pharma_ingestion.app.models.records import (
    NA,
    AssayResult,
    BulkStageData,
    COARecord,
    COAStage,
    CompanyInfo,
    CriticalParameter,
    FinishStageData,
    IdentificationTest,
    QASignature,
    RelatedSubstance,
    StageData,
    TestParameter,
)
from pharma_ingestion.app.services.canonical.content_hash import content_hash
from pharma_ingestion.app.services.canonical.xml_tree import TagNode, deep_text, find_all, find_first, has_tag, text
from pharma_ingestion.app.services.parsers.base import SchemaParser, parsing_status

STAGE_UNKNOWN_WARNING = "COA stage could not be determined from file; defaulting to BULK"

FINISH_MARKERS = ("RELESEQTY", "ACTUALBATCHSIZE", "BATCH1")
BULK_MARKERS = ("BATBATCHSIZE",)

NON_COMPLIANT_MARKERS = ("NOT COMPL", "NON COMPL", "NON-COMPL", "FAIL", "DOES NOT")
IDENTIFICATION_METHODS = ("HPLC", "TLC", "IR", "UV", "GC")
CRITICAL_PATTERNS = [
    re.compile(p) for p in (
        r"STERIL", r"\bPH\b", r"UNIFORMITY", r"VOLUME", r"PARTICULATE",
        r"ENDOTOXIN", r"CAPPING", r"LEAK", r"CLARITY",
    )
]

_NUMBER_RE = re.compile(r"\d+(?:\.\d+)?")
_ASSAY_PREFIX_RE = re.compile(r"^\s*assay\s*(?:of|for)?\s*[:\-\(]*", re.IGNORECASE)
_IDENT_PREFIX_RE = re.compile(r"^\s*identi(?:fication|ty)\s*(?:of|for)?\s*[:\-\(]*", re.IGNORECASE)


def determine_stage(root: TagNode, file_name: str = "") -> Tuple[COAStage, Optional[str]]:
    """BULK or FINISH from the file name marker, then document structure."""
    name = (file_name or "").upper()
    if "FINISH" in name:
        return "FINISH", None
    if "BULK" in name:
        return "BULK", None
    if any(has_tag(root, m) for m in BULK_MARKERS):
        return "BULK", None
    if any(has_tag(root, m) for m in FINISH_MARKERS) or root.tag.endswith("QA"):
        return "FINISH", None
    return "BULK", STAGE_UNKNOWN_WARNING


def complies(result: str) -> bool:
    upper = (result or "").upper()
    return not any(marker in upper for marker in NON_COMPLIANT_MARKERS)


def parse_limits(limits: str) -> Tuple[Optional[float], Optional[float]]:
    numbers = [float(n) for n in _NUMBER_RE.findall(limits or "")]
    if len(numbers) < 2:
        return None, None
    low, high = numbers[0], numbers[1]
    return min(low, high), max(low, high)


def first_number(value: str) -> Optional[float]:
    m = _NUMBER_RE.search(value or "")
    return float(m.group(0)) if m else None


def detect_method(*values: str) -> str:
    joined = " ".join(v.upper() for v in values if v)
    for method in IDENTIFICATION_METHODS:
        if re.search(rf"\b{method}\b", joined):
            return method
    return NA


def _strip_prefix(pattern: re.Pattern, name: str) -> str:
    stripped = pattern.sub("", name).strip(" )")
    return stripped or name


def _is_critical(name_upper: str) -> bool:
    return any(p.search(name_upper) for p in CRITICAL_PATTERNS)


def classify_tests(rows: List[TagNode], stage: COAStage, data: StageData) -> None:
    for position, row in enumerate(rows, start=1):
        sr_no = text(row, ["SRNO", "SRNO1", "SR_NO"], default=str(position))
        name = text(row, ["PROTEST1", "PROTEST", "TESTNAME", "TEST"])
        limits = text(row, ["LIMITS1", "LIMITS", "SPECIFICATION"])
        result = text(row, ["RESULT", "RESULT1", "OBSERVATION"])
        upper = name.upper()

        if "DESCRIPTION" in upper:
            data.description = result if result != NA else limits
        elif "ASSAY" in upper:
            low, high = parse_limits(limits)
            value = first_number(result)
            within = None
            if low is not None and high is not None and value is not None:
                within = low <= value <= high
            data.assay_results.append(AssayResult(
                sr_no=sr_no,
                ingredient=_strip_prefix(_ASSAY_PREFIX_RE, name),
                specification=limits,
                result=result,
                min_limit=low,
                max_limit=high,
                result_value=value,
                within_limits=within,
            ))
        elif "IDENTIFICATION" in upper or "IDENTITY" in upper:
            data.identification_tests.append(IdentificationTest(
                sr_no=sr_no,
                ingredient=_strip_prefix(_IDENT_PREFIX_RE, name),
                method=detect_method(name, limits),
                specification=limits,
                result=result,
                complies=complies(result),
            ))
        elif "RELATED" in upper or "IMPURIT" in upper:
            data.related_substances.append(RelatedSubstance(
                sr_no=sr_no, name=name, limit=limits, result=result, complies=complies(result),
            ))
        elif stage == "FINISH" and isinstance(data, FinishStageData) and _is_critical(upper):
            data.critical_parameters.append(CriticalParameter(
                sr_no=sr_no, parameter=name, specification=limits, result=result, complies=complies(result),
            ))
        else:
            data.test_parameters.append(TestParameter(
                sr_no=sr_no, test_name=name, specification=limits, result=result, complies=complies(result),
            ))


def overall_complies(data: StageData) -> bool:
    checks = [t.complies for t in data.test_parameters]
    checks += [t.complies for t in data.identification_tests]
    checks += [t.complies for t in data.related_substances]
    checks += [a.within_limits is not False for a in data.assay_results]
    if isinstance(data, FinishStageData):
        checks += [c.complies for c in data.critical_parameters]
    return all(checks)


class COAParser(SchemaParser[COARecord]):
    file_type = "COA"

    def extract(self, root: TagNode, result: ParseResult[COARecord], file_name: str, content: str) -> Optional[COARecord]:
        batch_number = deep_text(root, ["BATCHNO", "BATCH", "BATCH1", "BATCHNUMBER"])
        if batch_number == NA:
            result.errors.append("Batch number not found in COA")
            return None

        stage, stage_warning = determine_stage(root, file_name)
        if stage_warning:
            result.warnings.append(stage_warning)

        rows = find_all(root, "G_SRNO1")
        if not rows:
            result.warnings.append("No test results found in COA")

        batch_size = deep_text(root, ["BATBATCHSIZE", "BATCHSIZE"])
        remarks = deep_text(root, ["REMARKS", "REMARK", "RMK"])
        data: StageData
        if stage == "FINISH":
            data = FinishStageData(
                batch_size=batch_size,
                release_quantity=deep_text(root, ["RELESEQTY", "ACTUALBATCHSIZE"]),
                remarks=remarks,
                qa_signature=QASignature(
                    analysed_by=deep_text(root, ["ANALYSEDBY", "ANALYZEDBY"]),
                    checked_by=deep_text(root, ["CHECKEDBY"]),
                    approved_by=deep_text(root, ["APPROVEDBY"]),
                    release_date=deep_text(root, ["RELDT", "RELEASEDT", "RELEASEDATE"]),
                ),
            )
        else:
            data = BulkStageData(batch_size=batch_size, remarks=remarks)
        classify_tests(rows, stage, data)

        product_name = deep_text(root, ["ITMNAME", "ITMNAME1", "PRODUCTNAME"])
        if product_name == NA:
            result.warnings.append("Product name not found in COA")

        company = find_first(root, "G_CMPNM")
        return COARecord(
            file_name=file_name,
            file_size=len(content.encode("utf-8")),
            content_hash=content_hash(content),
            parsing_status=parsing_status(result.warnings),
            parsing_errors=list(result.warnings),
            batch_number=batch_number,
            stage=stage,
            company_info=CompanyInfo(
                company_name=text(company, ["CMPNM"]) if company else deep_text(root, ["CMPNM"]),
                company_address=text(company, ["CMPADD1", "CMPADD"]) if company else deep_text(root, ["CMPADD1", "CMPADD"]),
            ),
            product_code=deep_text(root, ["ITMCODE", "FGITMCODE", "PRODUCTCODE"]),
            product_name=product_name,
            generic_name=deep_text(root, ["GENERICNM", "GENERICNAME"]),
            ar_number=deep_text(root, ["FGARNO", "ARNO"]),
            test_number=deep_text(root, ["FGTESTNO", "TESTNO"]),
            mfg_date=deep_text(root, ["MFGDT", "MFCDT"]),
            expiry_date=deep_text(root, ["EXPDT", "EXPDATE"]),
            mfg_lic_no=deep_text(root, ["MFGLICNO"]),
            overall_complies=overall_complies(data),
            bulk_data=data if isinstance(data, BulkStageData) else None,
            finish_data=data if isinstance(data, FinishStageData) else None,
        )


def parse_coa(content: str, file_name: str = "") -> ParseResult[COARecord]:
    return COAParser().parse(content, file_name)
