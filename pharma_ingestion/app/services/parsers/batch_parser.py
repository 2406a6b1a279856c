from __future__ import annotations

from typing import Optional

from pharma_ingestion.app.models.documents import ParseResult
from pharma_ingestion.app.models.records import NA, BatchItem, BatchRegistry
from pharma_ingestion.app.services.canonical.content_hash import content_hash
from pharma_ingestion.app.services.canonical.xml_tree import TagNode, deep_text, find_all, find_first, optional_text, text
from pharma_ingestion.app.services.parsers.base import SchemaParser, parsing_status

NO_BATCHES_ERROR = "No batch records found in XML (LIST_G_MATCODE/G_MATCODE not found)"


def parse_sr_no(node: TagNode, position: int) -> int:
    raw = text(node, ["SRNO", "SR_NO"], default="")
    try:
        return int(raw) or position
    except ValueError:
        return position


def parse_batch_item(node: TagNode, position: int) -> BatchItem:
    mrp = optional_text(node, ["MRP", "MRPVALUE"])
    return BatchItem(
        sr_no=parse_sr_no(node, position),
        batch_number=text(node, ["BATCH", "BATCHNO", "BATCHNUMBER"]),
        item_code=text(node, ["ITMCODE", "ITEMCODE", "PRODUCTCODE"]),
        item_name=text(node, ["ITMNAME", "ITEMNAME", "PRODUCTNAME"]),
        item_detail=text(node, ["ITMDETAIL", "ITEMDETAIL"]),
        mfg_date=text(node, ["MFGDT", "MFCDT", "MFGDATE"]),
        expiry_date=text(node, ["EXPDT", "EXPDATE", "EXPIRYDATE"]),
        batch_size=text(node, ["BATCHSIZE"]),
        unit=text(node, ["UNIT"]),
        batch_uom=text(node, ["BATCHUOM"]),
        type="Import" if mrp else "Export",
        mfg_lic_no=text(node, ["MFGLICNO", "MFGLIC"]),
        department=text(node, ["DEPARTMENT", "DEPT"]),
        pack=text(node, ["PACK"]),
        year=text(node, ["YEAR"]),
        make=text(node, ["MAKE1", "MAKE"]),
        location_id=text(node, ["LOCID", "LOCCODE"]),
        mrp_value=mrp,
        conversion_ratio=text(node, ["CF_CONVIRSON", "CF_CONVERSION", "CONVRAT"]),
        batch_completion_date=optional_text(node, ["BATCHCOMPDT"]),
    )


class BatchRegistryParser(SchemaParser[BatchRegistry]):
    file_type = "BATCH"

    def extract(self, root: TagNode, result: ParseResult[BatchRegistry], file_name: str, content: str) -> Optional[BatchRegistry]:
        nodes = find_all(root, "G_MATCODE")
        if not nodes:
            result.errors.append(NO_BATCHES_ERROR)
            return None

        company = find_first(root, "G_CMPNM")
        company_name = text(company, ["CMPNM"]) if company else deep_text(root, ["CMPNM"])
        company_address = text(company, ["CMPADD1", "CMPADD"]) if company else deep_text(root, ["CMPADD1", "CMPADD"])
        if company_name == NA:
            result.warnings.append("Company name not found")

        items = []
        for position, node in enumerate(nodes, start=1):
            item = parse_batch_item(node, position)
            if item.batch_number == NA:
                result.warnings.append(f"Batch record {position} has no batch number")
            if item.item_code == NA:
                result.warnings.append(f"Batch record {position} has no item code")
            items.append(item)

        export_count = sum(1 for b in items if b.type == "Export")
        return BatchRegistry(
            file_name=file_name,
            file_size=len(content.encode("utf-8")),
            content_hash=content_hash(content),
            parsing_status=parsing_status(result.warnings),
            parsing_errors=list(result.warnings),
            company_name=company_name,
            company_address=company_address,
            batches=items,
            total_batches=len(items),
            export_count=export_count,
            import_count=len(items) - export_count,
        )


def parse_batch_registry(content: str, file_name: str = "") -> ParseResult[BatchRegistry]:
    return BatchRegistryParser().parse(content, file_name)
