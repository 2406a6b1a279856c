from __future__ import annotations

import logging
from typing import Callable, Dict, Iterable, Optional, Tuple

from pharma_ingestion.app.models.records import NA, FormulaMaster, RequisitionBatch, RequisitionMaterial
from pharma_ingestion.app.services.parsers.base import extract_number

logger = logging.getLogger(__name__)

FormulaLookup = Callable[[str], Optional[FormulaMaster]]


def _first_number(values: Iterable[str]) -> Optional[float]:
    for value in values:
        number = extract_number(value)
        if number is not None:
            return number
    return None


def formula_requirement(formula: FormulaMaster, material_code: str) -> Optional[float]:
    """Declared quantity for a material: RM list, then packing list, then process materials."""
    if not material_code or material_code == NA:
        return None
    for m in formula.materials:
        if m.material_code == material_code:
            qty = _first_number([m.required_quantity_standard_batch, m.required_quantity])
            if qty is not None:
                return qty
    for p in formula.packing_materials:
        if p.material_code == material_code:
            qty = _first_number([p.req_as_per_std_batch_size])
            if qty is not None:
                return qty
    for proc in formula.processes:
        for pm in proc.materials:
            if pm.material_code == material_code:
                qty = _first_number([pm.req_as_per_std_batch_size, pm.req_qty])
                if qty is not None:
                    return qty
    return None


def validate_material(material: RequisitionMaterial, formula: Optional[FormulaMaster], tolerance: float) -> RequisitionMaterial:
    if formula is None:
        return material
    qty = formula_requirement(formula, material.material_code)
    if qty is None:
        return material

    material.master_formula_qty = qty
    diff = abs(material.quantity_to_issue - qty)
    if diff <= tolerance:
        material.validation_status = "matched"
        material.variance_percent = None
    else:
        material.validation_status = "mismatch"
        material.variance_percent = round(diff / qty * 100, 4) if qty else None
    return material


def validate_batches(batches: Iterable[RequisitionBatch], lookup: FormulaLookup, tolerance: float) -> Tuple[int, int]:
    """Tag every material of every batch against its formula; returns (matched, mismatched)."""
    cache: Dict[str, Optional[FormulaMaster]] = {}
    matched = mismatched = 0
    for batch in batches:
        mfc = (batch.mfc_no or "").strip()
        formula: Optional[FormulaMaster] = None
        if mfc and mfc != NA:
            if mfc not in cache:
                cache[mfc] = lookup(mfc)
                if cache[mfc] is None:
                    logger.info(f"No formula on file for MFC {mfc}; batch {batch.batch_number} stays pending")
            formula = cache[mfc]
        for material in batch.materials:
            validate_material(material, formula, tolerance)
            if material.validation_status == "matched":
                matched += 1
            elif material.validation_status == "mismatch":
                mismatched += 1
    return matched, mismatched
