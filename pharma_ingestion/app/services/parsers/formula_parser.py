from __future__ import annotations

import re
import uuid
from typing import List, Optional, Set, Tuple

from pharma_ingestion.app.models.documents import ParseResult
from pharma_ingestion.app.models.records import (
    NA,
    CompanyInfo,
    CompositionItem,
    FillingDetail,
    FillingProduct,
    FormulaBatchInfo,
    FormulaMaster,
    FormulaProcess,
    FormulaSummary,
    MasterFormulaDetails,
    MaterialItem,
    PackingMaterial,
    ProcessMaterial,
)
from pharma_ingestion.app.services.canonical.content_hash import content_hash
from pharma_ingestion.app.services.canonical.xml_tree import (
    TagNode,
    children,
    deep_text,
    find_all,
    find_first,
    find_outermost,
    optional_text,
    text,
)
from pharma_ingestion.app.services.parsers.base import SchemaParser, parsing_status

# Label claims are free text; this split is best-effort and lossy.
COMPOSITION_RE = re.compile(r"([A-Za-z\s\(\)\.]+)[\.]*\s*([\d\.]+)\s*(MG|GM|G|ML|MCG|IU)?", re.IGNORECASE)

RAW_MATERIAL_SUBTYPES = {"active", "inactive"}
PACKING_TYPES = {"PM", "PPM"}


def extract_company(company: Optional[TagNode], block: TagNode) -> CompanyInfo:
    if company is not None:
        return CompanyInfo(
            company_name=text(company, ["CMPNM", "COMPANYNAME"]),
            company_address=text(company, ["CMPADD1", "CMPADD", "COMPANYADDRESS"]),
        )
    return CompanyInfo(
        company_name=deep_text(block, ["CMPNM", "COMPANYNAME"]),
        company_address=deep_text(block, ["CMPADD1", "CMPADD", "COMPANYADDRESS"]),
    )


def extract_master_details(block: TagNode) -> MasterFormulaDetails:
    return MasterFormulaDetails(
        master_card_no=deep_text(block, ["MCADNO", "MASTERCARDNO", "MASTER_CARD_NO"]),
        product_code=deep_text(block, ["ITMCODE", "PRODUCTCODE", "PRODUCT_CODE", "ITEMCODE"]),
        product_name=deep_text(block, ["ITMNAME1", "ITMDETAIL1", "PRODUCTNAME", "PRODUCT_NAME", "ITEMNAME"]),
        generic_name=deep_text(block, ["GENERICNM", "GENERICNAME", "GENERIC_NAME"]),
        specification=deep_text(block, ["SPEC1", "SPECIFICATION", "SPEC"]),
        manufacturing_license_no=deep_text(block, ["MFGLICNO", "MFG_LICENSE_NO", "MANUFACTURINGLICENSENO"]),
        manufacturing_location=deep_text(block, ["LOCCODE1", "LOCATION", "MFG_LOCATION"]),
        reason_for_change=optional_text(block, ["REVRMK", "REASON_FOR_CHANGE"]),
        revision_no=optional_text(block, ["REVNO", "REVISION_NO", "REVISIONNO"]),
        manufacturer=deep_text(block, ["MAKE", "MANUFACTURER"]),
        shelf_life=deep_text(block, ["LIVEMONTH", "SHELF_LIFE", "SHELFLIFE"]),
        effective_batch_no=optional_text(block, ["EFFBATCH", "EFFBATCH1", "EFFECTIVE_BATCH_NO"]),
        date=optional_text(block, ["PERMRENDATE", "DATE", "EFFECTIVE_DATE"]),
    )


def extract_batch_info(block: TagNode) -> FormulaBatchInfo:
    size = deep_text(block, ["BATCHSIZE1", "BATCH_SIZE", "BATCHSIZE", "STD_BATCH_SIZE"])
    uom = deep_text(block, ["BATCHUOM1", "BATCH_UOM", "BATCHUOM"], default="")
    return FormulaBatchInfo(
        batch_size=f"{size} {uom}".strip(),
        label_claim=deep_text(block, ["LABELCLAIM", "LABEL_CLAIM", "LBLCLAIM1"]),
        marketed_by=optional_text(block, ["MKTBY", "MARKETED_BY"]),
        volume=optional_text(block, ["PACK1", "VOLUME", "VOL"]),
        dosage_form=optional_text(block, ["PACKC", "FORM"]),
    )


def extract_composition(label_claim: str, form: Optional[str]) -> List[CompositionItem]:
    items: List[CompositionItem] = []
    if not label_claim or label_claim == NA:
        return items
    for line in re.split(r"[;\n]", label_claim):
        m = COMPOSITION_RE.search(line)
        if not m:
            continue
        ingredient = m.group(1).strip()
        if not ingredient:
            continue
        items.append(CompositionItem(
            ingredient=ingredient,
            strength=m.group(2),
            unit=(m.group(3) or "").upper(),
            form=form or NA,
        ))
    return items


def _material_kind(row: TagNode) -> str:
    mat_type = text(row, ["MATTYPE"], default="").upper()
    sub_type = text(row, ["SUBMATTYPE"], default="").lower()
    if mat_type == "RM" or sub_type in RAW_MATERIAL_SUBTYPES:
        return "RM"
    if mat_type in PACKING_TYPES:
        return mat_type
    return "OTHER"


def extract_materials(block: TagNode) -> List[MaterialItem]:
    materials: List[MaterialItem] = []
    seen: Set[Tuple[str, str]] = set()
    for row in find_all(block, "G_2"):
        code = text(row, ["MATCODE", "MATERIAL_CODE", "MATERIALCODE"], default="")
        name = text(row, ["MATDETAIL", "MATERIAL_NAME", "MATERIALNAME"], default="")
        if not (code or name) or _material_kind(row) != "RM":
            continue
        sr_no = text(row, ["SRNO", "SR_NO"], default=str(len(materials) + 1))
        key = (code, sr_no)
        if key in seen:
            continue
        seen.add(key)
        materials.append(MaterialItem(
            sr_no=sr_no,
            material_code=code or NA,
            material_name=name or NA,
            material_type=text(row, ["MATTYPE"]),
            sub_material_type=text(row, ["SUBMATTYPE"]),
            potency_correction=text(row, ["POTENCOR", "POTENCY_CORRECTION"], default="N"),
            required_quantity=text(row, ["REQQTY", "CF_REQQTY", "REQUIRED_QTY"]),
            overages=text(row, ["OVG_P", "OVERAGES"]),
            quantity_per_unit=text(row, ["PERUNIT", "QTY_PER_UNIT"]),
            required_quantity_standard_batch=text(row, ["BATCHQTY", "STD_BATCH_QTY"]),
            synonyms=optional_text(row, ["SYNONYMS"]),
            equivalent_factor=optional_text(row, ["EQFACT"]),
        ))
    return materials


def extract_packing_materials(block: TagNode) -> List[PackingMaterial]:
    packing: List[PackingMaterial] = []
    seen: Set[Tuple[str, str]] = set()
    for row in find_all(block, "G_2"):
        kind = _material_kind(row)
        if kind not in PACKING_TYPES:
            continue
        code = text(row, ["MATCODE", "MATERIAL_CODE"])
        sr_no = text(row, ["SRNO", "SR_NO"], default=str(len(packing) + 1))
        if (code, sr_no) in seen:
            continue
        seen.add((code, sr_no))
        packing.append(PackingMaterial(
            sr_no=sr_no,
            material_code=code,
            material_name=text(row, ["MATDETAIL", "MATERIAL_NAME"]),
            material_type=kind,
            req_as_per_std_batch_size=text(row, ["BATCHQTY", "REQQTY", "CF_REQQTY"]),
            unit=text(row, ["UOM", "CUOM", "UNIT"]),
        ))
    return packing


def _filling_rows(process: TagNode) -> List[TagNode]:
    return [
        row for row in find_all(process, "G_ITMCODE1")
        if text(row, ["ITMCODE1", "ITEM_CODE"], default="") or text(row, ["ITMDETAIL", "ITEM_NAME"], default="")
    ]


def _is_filling_process(process: TagNode) -> bool:
    return "filling" in text(process, ["PROCESS", "PROCESSNAME"], default="").lower()


def extract_filling_details(block: TagNode) -> List[FillingDetail]:
    details: List[FillingDetail] = []
    for process in find_all(block, "G_PROCESS"):
        if not _is_filling_process(process):
            continue
        for row in _filling_rows(process):
            details.append(FillingDetail(
                product_code=text(row, ["ITMCODE1", "ITEM_CODE"]),
                product_name=text(row, ["ITMDETAIL", "ITEM_NAME"]),
                pack_size=text(row, ["ITMPACK", "PACKING_SIZE", "PACK_SIZE"]),
                actual_qty=text(row, ["ACTFILLING1", "ACTFILLING2", "FILLING_QTY"]),
                pm_required_qty=optional_text(row, ["CF_CONVERSION", "SUM_PMREQQTY"]),
                unit=text(row, ["UNIT", "CONTAINER_TYPE"]),
            ))
    return details


def extract_processes(block: TagNode) -> List[FormulaProcess]:
    processes: List[FormulaProcess] = []
    for position, process in enumerate(find_all(block, "G_PROCESS"), start=1):
        materials = [
            ProcessMaterial(
                sr_no=text(row, ["SRNO", "SR_NO"]),
                material_code=text(row, ["MATCODE", "MATERIAL_CODE"]),
                material_name=text(row, ["MATDETAIL", "MATERIAL_NAME"]),
                material_type=text(row, ["MATTYPE"]),
                req_as_per_std_batch_size=text(row, ["BATCHQTY", "STD_BATCH_QTY"]),
                req_qty=text(row, ["REQQTY", "CF_REQQTY"]),
                unit=text(row, ["UOM", "CUOM", "UNIT"]),
            )
            for row in find_all(process, "G_2")
        ]
        filling_products = [
            FillingProduct(
                product_code=text(row, ["ITMCODE1", "ITEM_CODE"]),
                product_name=text(row, ["ITMDETAIL", "ITEM_NAME"]),
                pack_size=text(row, ["ITMPACK", "PACK_SIZE"]),
                actual_qty=text(row, ["ACTFILLING1", "ACTFILLING2"]),
                unit=text(row, ["UNIT"]),
            )
            for row in _filling_rows(process)
        ]
        processes.append(FormulaProcess(
            process_no=text(process, ["PRCNO", "PROCESSNO", "PROCESS_NO"], default=str(position)),
            process_name=text(process, ["PROCESS", "PROCESSNAME"]),
            materials=materials,
            filling_products=filling_products,
        ))
    return processes


def extract_summary(block: TagNode) -> FormulaSummary:
    return FormulaSummary(
        actual_filling_qty=deep_text(block, ["ACTFILLING3", "TOTAL_UNITS"]),
        filling_uom=deep_text(block, ["CF_UOM", "TOTAL_FILLING_QTY"]),
        non_active=deep_text(block, ["NONACTIVE"]),
    )


def make_unique_identifier(details: MasterFormulaDetails) -> str:
    return f"{details.product_code}_{details.revision_no or '0'}_{uuid.uuid4().hex[:8]}"


def build_formula(company: Optional[TagNode], block: TagNode, warnings: List[str], label: str = "") -> FormulaMaster:
    details = extract_master_details(block)
    batch_info = extract_batch_info(block)
    composition = extract_composition(batch_info.label_claim, batch_info.dosage_form)
    materials = extract_materials(block)
    filling_details = extract_filling_details(block)
    processes = extract_processes(block)

    prefix = f"{label}: " if label else ""
    local: List[str] = []
    if details.product_code == NA:
        local.append(f"{prefix}Product code not found in XML")
    if details.product_name == NA:
        local.append(f"{prefix}Product name not found in XML")
    if not materials:
        local.append(f"{prefix}No materials found in XML")
    if batch_info.label_claim != NA and not composition:
        local.append(f"{prefix}Label claim could not be parsed into composition")
    warnings.extend(local)

    summary = extract_summary(block)
    summary.total_materials = len(materials)
    summary.total_filling_details = len(filling_details)
    summary.total_processes = len(processes)

    return FormulaMaster(
        unique_identifier=make_unique_identifier(details),
        file_name="",
        content_hash="",
        parsing_status=parsing_status(local),
        parsing_errors=local,
        company_info=extract_company(company, block),
        master_formula_details=details,
        batch_info=batch_info,
        composition=composition,
        materials=materials,
        filling_details=filling_details,
        processes=processes,
        packing_materials=extract_packing_materials(block),
        summary=summary,
    )


class FormulaParser(SchemaParser[List[FormulaMaster]]):
    """Yields one FormulaMaster per G_1 block; a file without G_1 is one formula."""

    file_type = "FORMULA"

    def extract(self, root: TagNode, result: ParseResult[List[FormulaMaster]], file_name: str, content: str) -> Optional[List[FormulaMaster]]:
        # A G_1 nested inside another belongs to the outer formula
        blocks = find_outermost(root, "G_1") or [root]
        company = find_first(root, "G_CMPNM")

        digest = content_hash(content)
        size = len(content.encode("utf-8"))
        formulas: List[FormulaMaster] = []
        for idx, block in enumerate(blocks, start=1):
            label = f"Formula {idx}" if len(blocks) > 1 else ""
            formula = build_formula(company, block, result.warnings, label)
            formula.file_name = file_name
            formula.file_size = size
            formula.content_hash = digest
            formulas.append(formula)

        if not formulas:
            result.errors.append("No formula records found in XML")
            return None
        return formulas


def parse_formulas(content: str, file_name: str = "") -> ParseResult[List[FormulaMaster]]:
    return FormulaParser().parse(content, file_name)


def parse_formula(content: str, file_name: str = "") -> ParseResult[FormulaMaster]:
    multi = parse_formulas(content, file_name)
    first = multi.data[0] if multi.success and multi.data else None
    return ParseResult(success=multi.success, data=first, errors=multi.errors, warnings=multi.warnings)
