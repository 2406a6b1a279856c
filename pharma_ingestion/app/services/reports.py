from __future__ import annotations

import logging
from collections import OrderedDict
from typing import Dict, List, Optional, Set, Tuple

from pharma_ingestion.app.models.records import NA, BatchItem, FormulaMaster, MaterialCategory, is_present
from pharma_ingestion.app.models.reconciliation import (
    DuplicateBatchGroup,
    DuplicateBatchNumber,
    DuplicateBatchReport,
    MissingMaterial,
    MissingMaterialsReport,
    MissingMaterialSummary,
    SectionBatchStatus,
    SectionFormulaResult,
    SectionValidationReport,
)
from pharma_ingestion.app.services.sinks.base import RecordStore

logger = logging.getLogger(__name__)

SECTIONS = ("Bulk", "Finish", "RM", "PPM", "PM")

MATERIAL_TYPES = ("RM", "PPM", "PM")

SECTION_ISSUES = {
    "Bulk": "With batch {batch}, Bulk data was not available.",
    "Finish": "With batch {batch}, Finished Product data was missing.",
    "RM": "With batch {batch}, RM data was not found in the requisition.",
    "PPM": "With batch {batch}, PPM details were missing.",
    "PM": "With batch {batch}, PM data was not present.",
}


def _batches_by_item_code(store: RecordStore) -> Dict[str, List[Tuple[BatchItem, str]]]:
    grouped: Dict[str, List[Tuple[BatchItem, str]]] = {}
    for registry in store.list_batch_registries():
        for b in registry.batches:
            grouped.setdefault(b.item_code, []).append((b, registry.file_name))
    return grouped


def _section_batch_numbers(store: RecordStore, section: str) -> Set[str]:
    """Batch numbers that have data for the section."""
    if section in ("Bulk", "Finish"):
        stage = "BULK" if section == "Bulk" else "FINISH"
        return {c.batch_number for c in store.list_coas() if c.stage == stage}
    numbers: Set[str] = set()
    for req in store.list_requisitions():
        for b in req.batches:
            if b.materials_by_category(section):
                numbers.add(b.batch_number)
    return numbers


def validate_section(store: RecordStore, section: str, min_batches: int = 3) -> SectionValidationReport:
    """Per formula with at least `min_batches` linked batches, report which batches lack data for a section."""
    if section not in SECTIONS:
        raise ValueError(f"Invalid section. Must be one of: {', '.join(SECTIONS)}")

    batches_by_code = _batches_by_item_code(store)
    with_data = _section_batch_numbers(store, section)
    report = SectionValidationReport(section=section, min_batches=min_batches)  # type: ignore

    for formula in store.list_formulas():
        details = formula.master_formula_details
        linked = [b for code in formula.linked_product_codes() for b, _ in batches_by_code.get(code, [])]
        if len(linked) < min_batches:
            continue

        statuses = []
        for b in linked:
            has_data = b.batch_number in with_data
            statuses.append(SectionBatchStatus(
                batch_number=b.batch_number,
                item_code=b.item_code,
                has_data=has_data,
                issue=None if has_data else SECTION_ISSUES[section].format(batch=b.batch_number),
            ))
        present = sum(1 for s in statuses if s.has_data)
        report.results.append(SectionFormulaResult(
            formula_id=formula.id,
            master_card_no=details.master_card_no or NA,
            product_code=details.product_code,
            product_name=details.product_name,
            total_batches=len(statuses),
            batches_with_data=present,
            batches_missing_data=len(statuses) - present,
            batches=statuses,
        ))

    report.formulas_checked = len(report.results)
    report.total_batches = sum(r.total_batches for r in report.results)
    report.batches_with_data = sum(r.batches_with_data for r in report.results)
    report.batches_missing_data = report.total_batches - report.batches_with_data
    logger.info(
        f"Validated {section} data for {report.total_batches} batches across {report.formulas_checked} MFCs"
    )
    return report


def formula_material_codes(formula: FormulaMaster) -> List[Tuple[str, str, MaterialCategory]]:
    """(code, name, type) for every material the formula declares, first occurrence wins."""
    found: "OrderedDict[Tuple[str, str], Tuple[str, str, MaterialCategory]]" = OrderedDict()

    def add(code: str, name: str, kind: MaterialCategory) -> None:
        if is_present(code) and (code, kind) not in found:
            found[(code, kind)] = (code, name if is_present(name) else "", kind)

    for m in formula.materials:
        add(m.material_code, m.material_name, "RM")
    for p in formula.packing_materials:
        add(p.material_code, p.material_name, "PPM" if p.material_type == "PPM" else "PM")
    for proc in formula.processes:
        for pm in proc.materials:
            kind = pm.material_type.upper() if pm.material_type.upper() in ("PM", "PPM") else "RM"
            add(pm.material_code, pm.material_name, kind)  # type: ignore[arg-type]
    return list(found.values())


def missing_materials_report(
    store: RecordStore,
    min_batches: int = 3,
    material_type: Optional[str] = None,
) -> MissingMaterialsReport:
    """Formula materials absent from the requisition of each linked batch.

    Only formulas with at least `min_batches` linked batches are checked. A
    batch with no requisition at all reports every material as missing.
    """
    if material_type is not None and material_type not in MATERIAL_TYPES:
        raise ValueError(f"Invalid material type. Must be one of: {', '.join(MATERIAL_TYPES)}")

    batches_by_code = _batches_by_item_code(store)
    requisitioned: Dict[str, Set[str]] = {}
    for req in store.list_requisitions():
        for b in req.batches:
            codes = requisitioned.setdefault(b.batch_number, set())
            codes.update(m.material_code for m in b.materials)

    report = MissingMaterialsReport(min_batches=min_batches, material_type=material_type)  # type: ignore
    by_code: "OrderedDict[Tuple[str, str], MissingMaterialSummary]" = OrderedDict()

    for formula in store.list_formulas():
        details = formula.master_formula_details
        linked = [b for code in formula.linked_product_codes() for b, _ in batches_by_code.get(code, [])]
        if len(linked) < min_batches:
            continue

        batch_numbers = list(dict.fromkeys(b.batch_number for b in linked))
        materials = formula_material_codes(formula)
        report.total_mfcs += 1
        report.total_batches += len(batch_numbers)
        report.total_materials_in_mfc += len(materials)

        for batch_number in batch_numbers:
            present = requisitioned.get(batch_number, set())
            for code, name, kind in materials:
                if (material_type and kind != material_type) or code in present:
                    continue
                report.missing_materials.append(MissingMaterial(
                    material_code=code,
                    material_name=name,
                    material_type=kind,
                    master_card_no=details.master_card_no or NA,
                    product_name=details.product_name,
                    batch_number=batch_number,
                    message=f"Material {code} ({name}) was not found in {kind} requisition for batch {batch_number}",
                ))
                report.missing_by_type[kind] += 1
                summary = by_code.setdefault((code, kind), MissingMaterialSummary(
                    material_code=code, material_name=name, material_type=kind,
                ))
                if batch_number not in summary.batches:
                    summary.batches.append(batch_number)
                    summary.missing_in_batches += 1

    report.total_missing_materials = len(report.missing_materials)
    report.material_code_summary = sorted(by_code.values(), key=lambda s: -s.missing_in_batches)
    logger.info(
        f"Found {report.total_missing_materials} missing material entries across "
        f"{report.total_batches} batches in {report.total_mfcs} MFCs"
    )
    return report


def duplicate_batches_report(store: RecordStore) -> DuplicateBatchReport:
    """Batch numbers that occur more than once among the product codes of one MFC."""
    mfc_codes: "OrderedDict[str, Tuple[str, List[str]]]" = OrderedDict()
    for formula in store.list_formulas():
        details = formula.master_formula_details
        mfc = formula.master_card_no or "Unknown"
        name, codes = mfc_codes.setdefault(mfc, (details.product_name, []))
        for code in formula.linked_product_codes():
            if code not in codes:
                codes.append(code)

    batches_by_code = _batches_by_item_code(store)
    groups: List[DuplicateBatchGroup] = []
    for mfc, (name, codes) in mfc_codes.items():
        occurrences: "OrderedDict[str, List[Tuple[BatchItem, str]]]" = OrderedDict()
        total = 0
        for code in codes:
            for b, file_name in batches_by_code.get(code, []):
                occurrences.setdefault(b.batch_number, []).append((b, file_name))
                total += 1

        dups = [
            DuplicateBatchNumber(
                batch_number=number,
                occurrences=len(entries),
                item_codes=sorted({b.item_code for b, _ in entries}),
                file_names=sorted({f for _, f in entries}),
            )
            for number, entries in occurrences.items()
            if len(entries) > 1
        ]
        if not dups:
            continue
        dups.sort(key=lambda d: -d.occurrences)
        groups.append(DuplicateBatchGroup(
            master_card_no=mfc,
            product_name=name,
            product_codes=codes,
            total_batches=total,
            duplicate_batch_numbers=dups,
        ))

    groups.sort(key=lambda g: -len(g.duplicate_batch_numbers))
    return DuplicateBatchReport(
        total_mfcs_with_duplicates=len(groups),
        total_duplicate_batch_numbers=sum(len(g.duplicate_batch_numbers) for g in groups),
        groups=groups,
    )
