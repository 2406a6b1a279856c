from __future__ import annotations

import logging
import uuid
from typing import List, Optional

from pharma_ingestion.app.models.documents import ParseResult
from pharma_ingestion.app.models.records import (
    NA,
    MaterialCategory,
    RequisitionBatch,
    RequisitionMaterial,
    RequisitionRecord,
)
from pharma_ingestion.app.services.canonical.content_hash import content_hash
from pharma_ingestion.app.services.canonical.healing import heal, needs_healing
from pharma_ingestion.app.services.canonical.xml_tree import TagNode, children, text
from pharma_ingestion.app.services.parsers.base import SchemaParser, parse_number, parsing_status

logger = logging.getLogger(__name__)

ROOT_TAG = "MATREQ"


def material_category(mat_type: str, process_name: str = "") -> MaterialCategory:
    """Anything under a filling process is primary packaging, whatever its declared type."""
    if "FILLING" in (process_name or "").upper():
        return "PPM"
    declared = (mat_type or "").strip().upper()
    if declared in ("RM", "PPM"):
        return declared
    return "PM"


def _nested_text(node: TagNode, path: List[str], aliases: List[str]) -> str:
    current: Optional[TagNode] = node
    for tag in path:
        found = children(current, tag)
        current = found[0] if found else None
        if current is None:
            return ""
    return text(current, aliases, default="")


def parse_stage_row(row: TagNode, batch: RequisitionBatch, process_name: str, mat_req_dtl_id: str) -> RequisitionMaterial:
    mat_type = text(row, ["MATTYPE1"], default="PM")
    formast = ["LIST_G_FORMASTID1", "G_FORMASTID1"]
    overage = text(row, ["OVG_P"], default="") or _nested_text(row, formast, ["OVG_P"]) or "0"
    label_claim = _nested_text(row, formast, ["LCCLAIM"]) or text(row, ["LABEL_CLAIM", "LABELCLAIM"])
    return RequisitionMaterial(
        mat_req_dtl_id=mat_req_dtl_id,
        sr_no=text(row, ["SRNO"], default="0"),
        material_code=text(row, ["MATCODE"]),
        material_name=text(row, ["MATNAME", "MATDETAIL"]),
        material_type=mat_type,
        category=material_category(mat_type, process_name),
        process_name=process_name or NA,
        stage=text(row, ["STAGE"]),
        required_quantity=parse_number(text(row, ["REQQTY", "CF_REQQTY"], default="")),
        quantity_to_issue=parse_number(text(row, ["QTY", "CF_QTY"], default="")),
        uom=text(row, ["CUOM", "PUOM1"], default="NOS"),
        mat_req_id=text(row, ["MATREQID1"], default=batch.mat_req_id),
        material_id=text(row, ["MATID"]),
        bin_code=text(row, ["BINCODE"]),
        grn_no=text(row, ["GRNO"]),
        ar_no=text(row, ["ARNO"]),
        challan_no=text(row, ["CHLNO"]),
        challan_date=text(row, ["CHLDT"]),
        expiry_date=text(row, ["EXPDT1"]),
        mfg_date=text(row, ["MFGDT1"]),
        overage_percent=parse_number(overage),
        vendor_code=text(row, ["MKMATCODE", "VNDCODE", "VENDORCODE"]),
        artwork_no=text(row, ["ARTWORKNO", "ARTWORK_NO"]),
        label_claim=label_claim,
        validation_status="pending",
    )


def parse_batch(node: TagNode, batch_number: str, mat_req_id: str, warnings: List[str]) -> RequisitionBatch:
    batch = RequisitionBatch(
        batch_number=batch_number,
        mat_req_id=mat_req_id,
        location_code=text(node, ["LOCCODE"]),
        make=text(node, ["MAKE"]),
        mat_req_no=text(node, ["MATREQNO"]),
        mfc_no=text(node, ["MCADNO"]).strip(),
        batch_size=parse_number(text(node, ["BATCHSIZEBC"], default="0")),
        batch_uom=text(node, ["BATCHUOM"], default="LTR"),
        item_code=text(node, ["ITMCODE"]),
        item_name=text(node, ["ITMNAME1"]),
        item_detail=text(node, ["ITMDETAIL"]),
        pack=text(node, ["PACK1"]),
        unit=text(node, ["UNIT"]),
        formula_master_id=text(node, ["FORMASTID"]),
        mat_req_date=text(node, ["MATREQDT"]),
        remarks=text(node, ["MATREQRMK"]),
        year=text(node, ["YEAR"]),
        department=text(node, ["DEPARTMENT"]),
        mfg_date=text(node, ["MFGDT"]),
        expiry_date=text(node, ["EXPDT"]),
    )
    processes = [p for lst in children(node, "LIST_G_PRCNO") for p in children(lst, "G_PRCNO")]
    for prc in processes:
        process_name = text(prc, ["PROCESS"], default="")
        for stage_list in children(prc, "LIST_G_STAGE"):
            for row in children(stage_list, "G_STAGE"):
                dtl_id = text(row, ["MATREQDTLID"], default="")
                if not dtl_id:
                    warnings.append(f"Skipping material with missing MATREQDTLID in batch {batch_number}")
                    continue
                batch.materials.append(parse_stage_row(row, batch, process_name, dtl_id))
    return batch


class RequisitionParser(SchemaParser[RequisitionRecord]):
    """Material requisition parser; truncated exports are healed before parsing."""

    file_type = "REQUISITION"

    def prepare(self, content: str, result: ParseResult[RequisitionRecord]) -> str:
        if needs_healing(content, ROOT_TAG):
            result.warnings.append("XML content was truncated; missing closing tags were reconstructed")
            return heal(content, ROOT_TAG)
        return content

    def extract(self, root: TagNode, result: ParseResult[RequisitionRecord], file_name: str, content: str) -> Optional[RequisitionRecord]:
        if root.tag != ROOT_TAG:
            result.errors.append("No MATREQ root element found")
            return None

        batch_nodes = [n for lst in children(root, "LIST_G_BATCHSIZEBC") for n in children(lst, "G_BATCHSIZEBC")]
        if not batch_nodes:
            result.errors.append("No batch data found in MATREQ")
            return None

        batches: List[RequisitionBatch] = []
        for idx, node in enumerate(batch_nodes, start=1):
            batch_number = text(node, ["BATCH"], default="")
            mat_req_id = text(node, ["MATREQID"], default="")
            if not batch_number or not mat_req_id:
                logger.warning(f"[{idx}/{len(batch_nodes)}] skipped requisition batch without number or ID")
                result.warnings.append("Skipping batch with missing number or ID")
                continue
            batch = parse_batch(node, batch_number, mat_req_id, result.warnings)
            logger.debug(
                f"Requisition batch {batch_number}: RM={len(batch.materials_by_category('RM'))} "
                f"PPM={len(batch.materials_by_category('PPM'))} PM={len(batch.materials_by_category('PM'))}"
            )
            batches.append(batch)

        if not batches:
            result.errors.append("No valid batches found in requisition")
            return None

        location_code = next((b.location_code for b in batches if b.location_code != NA), NA)
        make = next((b.make for b in batches if b.make != NA), NA)
        return RequisitionRecord(
            unique_identifier=f"REQ-{location_code}-{make}-{uuid.uuid4().hex[:8]}",
            file_name=file_name,
            file_size=len(content.encode("utf-8")),
            content_hash=content_hash(content),
            parsing_status=parsing_status(result.warnings),
            parsing_errors=list(result.warnings),
            location_code=location_code,
            make=make,
            batches=batches,
            total_batches=len(batches),
            total_materials=sum(len(b.materials) for b in batches),
        )


def parse_requisition(content: str, file_name: str = "") -> ParseResult[RequisitionRecord]:
    return RequisitionParser().parse(content, file_name)
