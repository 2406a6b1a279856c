from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional, Set, Tuple

from pharma_ingestion.app.models.records import FormulaMaster, FormulaProcess, is_present


@dataclass
class MergeSummary:
    existing_codes: List[str] = field(default_factory=list)
    new_filling_detail_codes: List[str] = field(default_factory=list)
    new_process_product_codes: List[str] = field(default_factory=list)
    processes_extended: int = 0
    processes_added: int = 0

    @property
    def merged(self) -> bool:
        return bool(self.new_filling_detail_codes or self.new_process_product_codes)

    @property
    def added_codes(self) -> List[str]:
        codes = list(self.new_filling_detail_codes)
        codes += [c for c in self.new_process_product_codes if c not in codes]
        return codes


def _find_process(processes: List[FormulaProcess], incoming: FormulaProcess) -> Optional[FormulaProcess]:
    name = incoming.process_name.strip().upper()
    for proc in processes:
        if proc.process_name.strip().upper() == name:
            return proc
    for proc in processes:
        if proc.process_no == incoming.process_no:
            return proc
    return None


def merge_formula(existing: FormulaMaster, incoming: FormulaMaster) -> Tuple[FormulaMaster, MergeSummary]:
    """Fold item codes that `existing` lacks into a copy of it.

    Only new filling details and new process filling products are added.
    Entries whose product code is already present are left as they are even
    when the incoming file describes them differently.
    """
    summary = MergeSummary(existing_codes=existing.filling_codes())
    known: Set[str] = set(summary.existing_codes)
    updated = existing.model_copy(deep=True)

    for fd in incoming.filling_details:
        code = fd.product_code
        if not is_present(code) or code in known or code in summary.new_filling_detail_codes:
            continue
        updated.filling_details.append(fd.model_copy(deep=True))
        summary.new_filling_detail_codes.append(code)

    added_in_processes: Set[str] = set()
    for proc in incoming.processes:
        fresh = []
        for fp in proc.filling_products:
            code = fp.product_code
            if not is_present(code) or code in known or code in added_in_processes:
                continue
            added_in_processes.add(code)
            fresh.append(fp.model_copy(deep=True))
        if not fresh:
            continue

        target = _find_process(updated.processes, proc)
        if target is not None:
            target.filling_products.extend(fresh)
            summary.processes_extended += 1
        else:
            updated.processes.append(FormulaProcess(
                process_no=proc.process_no,
                process_name=proc.process_name,
                filling_products=fresh,
            ))
            summary.processes_added += 1
        summary.new_process_product_codes.extend(fp.product_code for fp in fresh)

    if summary.merged:
        updated.summary.total_filling_details = len(updated.filling_details)
        updated.summary.total_processes = len(updated.processes)
        updated.updated_at = datetime.utcnow()
    return updated, summary
