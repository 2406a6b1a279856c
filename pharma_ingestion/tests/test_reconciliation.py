from __future__ import annotations

from typing import Sequence, Tuple

import pytest

from pharma_ingestion.app.models.records import (
    BatchItem,
    BatchRegistry,
    FillingDetail,
    FormulaMaster,
    MasterFormulaDetails,
    RequisitionBatch,
    RequisitionMaterial,
    RequisitionRecord,
)
from pharma_ingestion.app.services.reconciliation import (
    ReconciliationEngine,
    build_product_code_index,
    classify_status,
    license_mismatch,
    normalize_license,
)
from pharma_ingestion.tests.xml_samples import batch_row, batch_xml, doc, formula_xml, requisition_xml


def make_formula(mfc: str, code: str, lic: str = "ML-01", fillings: Sequence[str] = ()) -> FormulaMaster:
    return FormulaMaster(
        file_name=f"{mfc}.xml",
        content_hash=f"hash-{mfc}",
        master_formula_details=MasterFormulaDetails(
            master_card_no=mfc,
            product_code=code,
            product_name=f"Product {code}",
            manufacturing_license_no=lic,
        ),
        filling_details=[FillingDetail(product_code=c) for c in fillings],
    )


def make_registry(rows: Sequence[Tuple[str, str, str]], file_name: str = "batches.xml") -> BatchRegistry:
    items = [BatchItem(sr_no=i, batch_number=b, item_code=c, mfg_lic_no=lic) for i, (b, c, lic) in enumerate(rows, start=1)]
    return BatchRegistry(file_name=file_name, content_hash=f"hash-{file_name}", batches=items, total_batches=len(items))


def make_requisition(*batch_numbers: str) -> RequisitionRecord:
    return RequisitionRecord(
        file_name="req.xml",
        content_hash="hash-req",
        batches=[
            RequisitionBatch(batch_number=b, mat_req_id=f"M-{b}", materials=[RequisitionMaterial(mat_req_dtl_id=f"D-{b}")])
            for b in batch_numbers
        ],
    )


@pytest.fixture
def engine(store, settings):
    return ReconciliationEngine(store, settings)


class TestHelpers:
    def test_license_normalization(self):
        assert normalize_license(" ml 01\t") == "ML01"
        assert not license_mismatch("ml 01", "ML01")
        assert not license_mismatch("MH / 123  ", "mh/123")
        assert license_mismatch("ML-99", "ML-01")

    def test_license_missing_on_either_side_is_not_a_mismatch(self):
        assert not license_mismatch("N/A", "ML-01")
        assert not license_mismatch("ML-01", None)
        assert not license_mismatch("", "ML-01")

    def test_main_code_overrides_filling_code_of_earlier_formula(self):
        first = make_formula("MFC-1", "P1", fillings=("P2", "X"))
        second = make_formula("MFC-2", "P2", fillings=("X",))
        index = build_product_code_index([first, second])
        assert index["P2"] is second
        assert index["X"] is first
        assert index["P1"] is first

    def test_classify_status(self):
        assert classify_status(0, 0, 0) == "no_batches"
        assert classify_status(3, 3, 0) == "fully_reconciled"
        assert classify_status(3, 2, 1) == "partially_reconciled"
        assert classify_status(2, 0, 2) == "not_reconciled"


class TestReconciliationEngine:
    def seed(self, store):
        store.insert_formula(make_formula("MFC-100", "P1", lic="ML-01", fillings=("P1-60",)))
        store.insert_formula(make_formula("MFC-200", "P2", lic="ml 02"))
        store.insert_formula(make_formula("MFC-300", "P3"))
        store.insert_batch_registry(make_registry([
            ("B1", "P1", "ML-01"),
            ("B2", "P1-60", "ml-01"),
            ("B3", "P2", "ML02"),
            ("B4", "P2", "ML-99"),
            ("B5", "X9", "ML-01"),
            ("B6", "P2", "N/A"),
        ]))

    def test_every_batch_accounted_for(self, engine, store):
        self.seed(store)
        report = engine.reconcile()
        recon = report.batch_reconciliation
        assert recon.total_batches_in_system == 6
        assert recon.batches_matched_to_formula == 5
        assert recon.batches_not_matched_to_formula == 1
        assert recon.all_batches_accounted_for
        assert recon.reconciled_batch_count == 4
        assert recon.mismatched_batch_count == 1
        assert recon.reconciliation_percentage == 67
        assert report.report_id.startswith("RECON-")
        assert report.data_sources.formula_master_count == 3
        assert report.data_sources.unique_product_codes == 4
        for r in report.formula_results:
            assert r.stats.total_batches == r.stats.reconciled_batches + r.stats.mismatched_batches

    def test_orphan_never_attached_to_a_formula(self, engine, store):
        self.seed(store)
        report = engine.reconcile()
        assert [o.item_code for o in report.orphan_batches] == ["X9"]
        attached = [b.batch_number for r in report.formula_results for b in r.batch_details]
        assert "B5" not in attached

    def test_formula_statuses_and_ordering(self, engine, store):
        self.seed(store)
        results = engine.reconcile().formula_results
        assert [r.master_card_no for r in results] == ["MFC-200", "MFC-100", "MFC-300"]
        by_mfc = {r.master_card_no: r for r in results}

        assert by_mfc["MFC-100"].reconciliation_status == "fully_reconciled"
        assert by_mfc["MFC-100"].compliance_notes == ["All batches are fully compliant with Formula Master"]
        assert by_mfc["MFC-200"].reconciliation_status == "partially_reconciled"
        assert by_mfc["MFC-200"].stats.mismatched_batches == 1
        assert by_mfc["MFC-200"].compliance_notes == ["1 batch(es) have manufacturing license mismatch - CRITICAL"]
        assert by_mfc["MFC-300"].reconciliation_status == "no_batches"
        assert by_mfc["MFC-300"].compliance_notes == ["No batch records found for this formula"]

    def test_license_mismatch_details(self, engine, store):
        self.seed(store)
        report = engine.reconcile()
        assert len(report.license_mismatches) == 1
        mismatch = report.license_mismatches[0]
        assert mismatch.batch_number == "B4"
        assert mismatch.description == "Batch Mfg License (ML-99) ≠ Formula Mfg License (ml 02)"
        b4 = [b for r in report.formula_results for b in r.batch_details if b.batch_number == "B4"][0]
        assert not b4.is_valid
        assert not b4.mfc_match
        assert b4.mismatches[0].severity == "critical"

    def test_overall_stats(self, engine, store):
        self.seed(store)
        overall = engine.reconcile().overall_stats
        assert overall.fully_reconciled_formulas == 1
        assert overall.partially_reconciled_formulas == 1
        assert overall.formulas_with_no_batches == 1
        assert overall.total_orphan_batches == 1
        assert overall.total_mismatches == 1
        assert overall.compliance_score == 75

    def test_not_reconciled_formula_scores_zero(self, engine, store):
        store.insert_formula(make_formula("MFC-100", "P1", lic="ML-01"))
        store.insert_batch_registry(make_registry([("B1", "P1", "ML-02")]))
        report = engine.reconcile()
        assert report.formula_results[0].reconciliation_status == "not_reconciled"
        assert report.overall_stats.compliance_score == 0
        assert report.batch_reconciliation.reconciliation_percentage == 0

    def test_empty_store(self, engine):
        report = engine.reconcile()
        assert report.formula_results == []
        assert report.batch_reconciliation.reconciliation_percentage == 100
        assert report.batch_reconciliation.all_batches_accounted_for
        assert report.overall_stats.compliance_score == 100
        assert report.recommendations == []

    def test_orphans_grouped_and_risk_rated(self, engine, store):
        rows = [(f"A{i}", "X1", "ML-01") for i in range(6)] + [(f"C{i}", "X2", "ML-01") for i in range(5)]
        store.insert_batch_registry(make_registry(rows))
        orphans = engine.reconcile().orphan_batches
        assert [(o.item_code, o.batch_count, o.compliance_risk) for o in orphans] == [
            ("X1", 6, "high"),
            ("X2", 5, "medium"),
        ]
        assert orphans[0].reason == "Formula Master record not found for this product code"

    def test_requisition_link_flags(self, engine, store):
        self.seed(store)
        store.insert_requisition(make_requisition("B1"))
        report = engine.reconcile()
        by_mfc = {r.master_card_no: r for r in report.formula_results}
        linked = {b.batch_number: b.requisition_linked for b in by_mfc["MFC-100"].batch_details}
        assert linked == {"B1": True, "B2": False}
        assert by_mfc["MFC-100"].mismatch_summary.missing_requisition_batches == 1

    def test_recommendations_sorted_by_priority(self, engine, store):
        store.insert_formula(make_formula("MFC-100", "P1", lic="ML-01"))
        for n in range(6):
            store.insert_formula(make_formula(f"MFC-9{n}", f"Z{n}"))
        rows = [(f"B{i}", "P1", "ML-01") for i in range(10)] + [("B10", "P1", "ML-77")]
        rows += [(f"O{i}", "X1", "ML-01") for i in range(6)]
        store.insert_batch_registry(make_registry(rows))
        store.insert_requisition(make_requisition("B0"))

        recs = engine.reconcile().recommendations

        assert [(r.type, r.priority) for r in recs] == [
            ("mfc_correction", "high"),
            ("urgent_review", "high"),
            ("requisition_gap", "medium"),
            ("formula_cleanup", "low"),
        ]
        assert recs[0].master_card_no == "MFC-100"
        assert recs[1].item_code == "X1"
        assert recs[2].description == (
            "Formula MFC-100 has 10 of 11 batch(es) without requisition materials - verify material issue"
        )

    def test_no_requisition_gap_without_requisitions(self, engine, store):
        self.seed(store)
        assert not [r for r in engine.reconcile().recommendations if r.type == "requisition_gap"]


class TestEndToEnd:
    def test_single_matching_batch(self, pipeline, store, settings):
        pipeline.process_file(doc("formula.xml", formula_xml()))
        pipeline.process_file(doc("batches.xml", batch_xml([batch_row("B001", "P1", lic="ML-01")])))

        result = ReconciliationEngine(store, settings).reconcile().formula_results[0]

        assert result.reconciliation_status == "fully_reconciled"
        assert (result.stats.reconciled_batches, result.stats.mismatched_batches) == (1, 0)

    def test_ingested_files_reconcile(self, pipeline, store, settings):
        pipeline.process_file(doc("formula.xml", formula_xml()))
        pipeline.process_file(doc("batches.xml", batch_xml([batch_row("B001", "P1"), batch_row("B002", "P1-60")])))
        pipeline.process_file(doc("req.xml", requisition_xml()))

        report = ReconciliationEngine(store, settings).reconcile()

        result = report.formula_results[0]
        assert result.master_card_no == "MFC-100"
        assert result.reconciliation_status == "fully_reconciled"
        assert result.linked_product_codes == ["P1", "P1-60"]
        linked = {b.batch_number: b.requisition_linked for b in result.batch_details}
        assert linked == {"B001": True, "B002": False}
        assert report.batch_reconciliation.reconciliation_percentage == 100
        assert report.data_sources.requisition_count == 1
