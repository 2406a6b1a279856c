from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional, Set

from pharma_ingestion.app.core.settings import Settings
from pharma_ingestion.app.models.reconciliation import (
    BatchIssue,
    BatchReconciliation,
    BatchValidationResult,
    DataSources,
    FormulaBatchStats,
    FormulaReconciliationResult,
    LicenseMismatch,
    MismatchSummary,
    OrphanBatchRef,
    OrphanBatchResult,
    OverallStats,
    ReconciliationReport,
    Recommendation,
)
from pharma_ingestion.app.models.records import NA, BatchItem, FormulaMaster, RequisitionRecord
from pharma_ingestion.app.services.sinks.base import RecordStore

logger = logging.getLogger(__name__)

PRIORITY_ORDER = {"high": 0, "medium": 1, "low": 2}


def normalize_license(value: Optional[str]) -> str:
    return re.sub(r"\s+", "", value or "").upper()


def license_mismatch(batch_lic: Optional[str], formula_lic: Optional[str]) -> bool:
    """Only compared when both sides carry a license number."""
    b = normalize_license(batch_lic)
    f = normalize_license(formula_lic)
    if not b or not f or b == NA or f == NA:
        return False
    return b != f


def build_product_code_index(formulas: List[FormulaMaster]) -> Dict[str, FormulaMaster]:
    """productCode -> formula.

    A main product code always claims its entry, even over a filling code
    registered by an earlier formula; filling codes keep the first owner.
    """
    index: Dict[str, FormulaMaster] = {}
    for f in formulas:
        main = f.master_formula_details.product_code
        if main and main != NA:
            index[main] = f
        for code in f.filling_codes():
            if code not in index:
                index[code] = f
    return index


def requisition_batch_numbers(requisitions: List[RequisitionRecord]) -> Set[str]:
    numbers: Set[str] = set()
    for req in requisitions:
        for b in req.batches:
            if b.materials:
                numbers.add(b.batch_number)
    return numbers


def classify_status(total: int, reconciled: int, mismatched: int) -> str:
    if total == 0:
        return "no_batches"
    if mismatched == 0:
        return "fully_reconciled"
    if reconciled > 0:
        return "partially_reconciled"
    return "not_reconciled"


@dataclass
class _FormulaOutcome:
    result: FormulaReconciliationResult
    mismatches: List[LicenseMismatch]


class ReconciliationEngine:
    """Cross-references stored formulas, batch registries and requisitions.

    Stateless: every call re-reads the store and builds a fresh report.
    """

    def __init__(self, store: RecordStore, settings: Settings):
        self.store = store
        self.settings = settings

    def reconcile(self) -> ReconciliationReport:
        started = time.monotonic()
        formulas = self.store.list_formulas()
        registries = self.store.list_batch_registries()
        requisitions = self.store.list_requisitions()

        all_batches: List[BatchItem] = [b for r in registries for b in r.batches]
        index = build_product_code_index(formulas)
        linked_batches = requisition_batch_numbers(requisitions)

        by_formula: Dict[str, List[BatchItem]] = {}
        orphans: Dict[str, List[BatchItem]] = {}
        for batch in all_batches:
            owner = index.get(batch.item_code)
            if owner is not None:
                by_formula.setdefault(owner.id, []).append(batch)
            else:
                orphans.setdefault(batch.item_code, []).append(batch)

        outcomes = [
            self._reconcile_formula(f, by_formula.get(f.id, []), linked_batches)
            for f in formulas
        ]
        formula_results = [o.result for o in outcomes]
        license_mismatches = [m for o in outcomes for m in o.mismatches]

        orphan_results = self._orphan_results(orphans)
        overall = self._overall_stats(formula_results, orphan_results)
        batch_recon = self._batch_reconciliation(formula_results, orphan_results, len(all_batches))

        report = ReconciliationReport(
            report_id=f"RECON-{int(time.time() * 1000)}",
            generated_at=datetime.utcnow(),
            data_sources=DataSources(
                formula_master_count=len(formulas),
                total_batch_records=len(all_batches),
                unique_product_codes=len(index),
                requisition_count=len(requisitions),
            ),
            batch_reconciliation=batch_recon,
            # sorted() is stable, so ties keep store order
            formula_results=sorted(formula_results, key=lambda r: -r.stats.total_batches),
            orphan_batches=orphan_results,
            license_mismatches=license_mismatches,
            overall_stats=overall,
            recommendations=self._recommendations(formula_results, orphan_results, overall, bool(requisitions)),
        )
        elapsed = (time.monotonic() - started) * 1000
        logger.info(
            f"Reconciliation completed in {elapsed:.0f}ms: {len(formulas)} formulas and "
            f"{len(all_batches)} batches analyzed"
        )
        return report

    def _reconcile_formula(
        self, formula: FormulaMaster, batches: List[BatchItem], linked_batches: Set[str]
    ) -> _FormulaOutcome:
        details = formula.master_formula_details
        mfc = details.master_card_no or NA
        formula_lic = details.manufacturing_license_no or NA

        batch_details: List[BatchValidationResult] = []
        mismatches: List[LicenseMismatch] = []
        reconciled = mismatched = missing_req = 0

        for batch in batches:
            result = BatchValidationResult(
                batch_number=batch.batch_number,
                item_code=batch.item_code,
                item_name=batch.item_name,
                mfg_date=batch.mfg_date,
                expiry_date=batch.expiry_date,
                batch_size=batch.batch_size,
                department=batch.department,
                type=batch.type,
                mfg_lic_no=batch.mfg_lic_no,
                requisition_linked=batch.batch_number in linked_batches,
            )
            if not result.requisition_linked:
                missing_req += 1

            if license_mismatch(batch.mfg_lic_no, formula_lic):
                description = f"Batch Mfg License ({batch.mfg_lic_no}) ≠ Formula Mfg License ({formula_lic})"
                result.mfc_match = False
                result.is_valid = False
                result.mismatches.append(BatchIssue(description=description))
                mismatches.append(LicenseMismatch(
                    formula_id=formula.id,
                    master_card_no=mfc,
                    batch_number=batch.batch_number,
                    item_code=batch.item_code,
                    batch_mfg_lic_no=batch.mfg_lic_no,
                    formula_mfg_lic_no=formula_lic,
                    description=description,
                ))

            if result.mismatches:
                mismatched += 1
            else:
                reconciled += 1
            batch_details.append(result)

        total = len(batches)
        notes: List[str] = []
        if total == 0:
            notes.append("No batch records found for this formula")
        if mismatches:
            notes.append(f"{len(mismatches)} batch(es) have manufacturing license mismatch - CRITICAL")
        if total > 0 and reconciled == total:
            notes.append("All batches are fully compliant with Formula Master")

        result = FormulaReconciliationResult(
            formula_id=formula.id,
            master_card_no=mfc,
            product_code=details.product_code or NA,
            product_name=details.product_name or NA,
            revision_no=details.revision_no or "0",
            manufacturer=details.manufacturer or NA,
            manufacturing_license_no=formula_lic,
            stats=FormulaBatchStats(total_batches=total, reconciled_batches=reconciled, mismatched_batches=mismatched),
            mismatch_summary=MismatchSummary(mfc_mismatches=len(mismatches), missing_requisition_batches=missing_req),
            reconciliation_status=classify_status(total, reconciled, mismatched),  # type: ignore
            linked_product_codes=formula.linked_product_codes(),
            batch_details=batch_details,
            compliance_notes=notes,
        )
        return _FormulaOutcome(result=result, mismatches=mismatches)

    def _orphan_results(self, orphans: Dict[str, List[BatchItem]]) -> List[OrphanBatchResult]:
        threshold = self.settings.orphan_high_risk_threshold
        results = [
            OrphanBatchResult(
                item_code=code,
                item_name=batches[0].item_name if batches else NA,
                batch_count=len(batches),
                batches=[
                    OrphanBatchRef(batch_number=b.batch_number, mfg_date=b.mfg_date, batch_size=b.batch_size)
                    for b in batches
                ],
                compliance_risk="high" if len(batches) > threshold else "medium",
            )
            for code, batches in orphans.items()
        ]
        results.sort(key=lambda o: -o.batch_count)
        return results

    @staticmethod
    def _overall_stats(results: List[FormulaReconciliationResult], orphans: List[OrphanBatchResult]) -> OverallStats:
        def count(status: str) -> int:
            return sum(1 for r in results if r.reconciliation_status == status)

        fully = count("fully_reconciled")
        partially = count("partially_reconciled")
        with_batches = sum(1 for r in results if r.stats.total_batches > 0)
        score = round((fully + 0.5 * partially) / with_batches * 100) if with_batches else 100
        return OverallStats(
            fully_reconciled_formulas=fully,
            partially_reconciled_formulas=partially,
            not_reconciled_formulas=count("not_reconciled"),
            formulas_with_no_batches=count("no_batches"),
            total_orphan_batches=sum(o.batch_count for o in orphans),
            total_mismatches=sum(r.stats.mismatched_batches for r in results),
            compliance_score=score,
        )

    @staticmethod
    def _batch_reconciliation(
        results: List[FormulaReconciliationResult], orphans: List[OrphanBatchResult], total: int
    ) -> BatchReconciliation:
        matched = sum(r.stats.total_batches for r in results)
        reconciled = sum(r.stats.reconciled_batches for r in results)
        unmatched = sum(o.batch_count for o in orphans)
        return BatchReconciliation(
            total_batches_in_system=total,
            batches_matched_to_formula=matched,
            batches_not_matched_to_formula=unmatched,
            all_batches_accounted_for=(matched + unmatched) == total,
            reconciled_batch_count=reconciled,
            mismatched_batch_count=sum(r.stats.mismatched_batches for r in results),
            reconciliation_percentage=round(reconciled / total * 100) if total else 100,
        )

    def _recommendations(
        self,
        results: List[FormulaReconciliationResult],
        orphans: List[OrphanBatchResult],
        overall: OverallStats,
        has_requisitions: bool,
    ) -> List[Recommendation]:
        s = self.settings
        recs: List[Recommendation] = []

        for r in results:
            if r.stats.total_batches > s.mfc_correction_min_batches and r.mismatch_summary.mfc_mismatches > 0:
                recs.append(Recommendation(
                    type="mfc_correction",
                    priority="high",
                    formula_id=r.formula_id,
                    master_card_no=r.master_card_no,
                    description=(
                        f"Formula {r.master_card_no} has {r.stats.total_batches} batches but "
                        f"{r.mismatch_summary.mfc_mismatches} MFC mismatches - urgent correction needed"
                    ),
                ))

        risky = [o for o in orphans if o.batch_count > s.orphan_high_risk_threshold]
        for o in risky[:s.max_orphan_recommendations]:
            recs.append(Recommendation(
                type="urgent_review",
                priority="high",
                item_code=o.item_code,
                description=(
                    f"Product {o.item_code} ({o.item_name}) has {o.batch_count} batches but "
                    f"NO Formula Master - requires immediate review"
                ),
            ))

        # Without any requisition on file every batch would be flagged
        if has_requisitions:
            for r in results:
                gap = r.mismatch_summary.missing_requisition_batches
                if r.stats.total_batches > 0 and gap > 0:
                    recs.append(Recommendation(
                        type="requisition_gap",
                        priority="medium",
                        formula_id=r.formula_id,
                        master_card_no=r.master_card_no,
                        description=(
                            f"Formula {r.master_card_no} has {gap} of {r.stats.total_batches} "
                            f"batch(es) without requisition materials - verify material issue"
                        ),
                    ))

        if overall.formulas_with_no_batches > s.formula_cleanup_min_formulas:
            recs.append(Recommendation(
                type="formula_cleanup",
                priority="low",
                description=(
                    f"{overall.formulas_with_no_batches} formulas have no linked batches - "
                    f"review for obsolescence"
                ),
            ))

        recs.sort(key=lambda r: PRIORITY_ORDER[r.priority])
        return recs
