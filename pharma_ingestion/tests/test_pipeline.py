from __future__ import annotations

from pharma_ingestion.app.services.canonical.content_hash import content_hash
from pharma_ingestion.tests.xml_samples import (
    batch_row,
    batch_xml,
    coa_xml,
    doc,
    formula_block,
    formula_xml,
    requisition_batch,
    requisition_xml,
)


class TestBatchIngestion:
    def test_first_ingest_stores_registry_and_log(self, pipeline, store):
        content = batch_xml([batch_row("B001", "P1"), batch_row("B002", "P1")])
        result = pipeline.process_file(doc("batches.xml", content))

        assert result.status == "SUCCESS"
        assert result.file_type == "BATCH"
        assert result.business_key == "BATCH-batches.xml"
        assert result.message == "Successfully processed Batch Creation file"
        registries = store.list_batch_registries()
        assert len(registries) == 1
        assert registries[0].total_batches == 2
        log = store.find_log(content_hash(content))
        assert log.status == "SUCCESS"
        assert log.record_id == result.record_id
        assert log.run_id == "test-run"

    def test_export_import_counts_then_duplicate(self, pipeline, store):
        content = batch_xml([
            batch_row("B001", "P1"),
            batch_row("B002", "P2"),
            batch_row("B003", "P3", mrp="99.50"),
        ])
        first = pipeline.process_file(doc("batches.xml", content))
        registry = store.get_batch_registry(first.record_id)
        assert first.status == "SUCCESS"
        assert (registry.total_batches, registry.export_count, registry.import_count) == (3, 2, 1)

        second = pipeline.process_file(doc("batches.xml", content))
        assert second.status == "DUPLICATE"
        assert len(store.list_batch_registries()) == 1

    def test_same_content_is_skipped_by_log(self, pipeline, store):
        content = batch_xml([batch_row("B001", "P1")])
        pipeline.process_file(doc("a.xml", content))
        again = pipeline.process_file(doc("a-copy.xml", content.replace("\n", "\r\n")))

        assert again.status == "DUPLICATE"
        assert again.message.startswith("File already processed on ")
        assert again.business_key == "BATCH-a.xml"
        assert len(store.list_batch_registries()) == 1
        assert len(store.all_logs()) == 1

    def test_superset_file_stores_only_new_items(self, pipeline, store):
        pipeline.process_file(doc("a.xml", batch_xml([batch_row("B001", "P1"), batch_row("B002", "P1")])))
        result = pipeline.process_file(doc("b.xml", batch_xml([
            batch_row("B001", "P1"),
            batch_row("B002", "P1"),
            batch_row("B003", "P1", mrp="12"),
        ])))

        assert result.status == "SUCCESS"
        assert result.message == "Stored 1 new items (2 duplicates skipped)"
        stats = result.item_stats
        assert (stats.total_items, stats.new_items, stats.duplicate_items) == (3, 1, 2)
        assert {d.existing_file_name for d in stats.duplicate_details} == {"a.xml"}

        stored = [r for r in store.list_batch_registries() if r.file_name == "b.xml"][0]
        assert [(b.sr_no, b.batch_number) for b in stored.batches] == [(1, "B003")]
        assert (stored.export_count, stored.import_count) == (0, 1)

    def test_all_items_known_is_duplicate(self, pipeline, store):
        pipeline.process_file(doc("a.xml", batch_xml([batch_row("B001", "P1")])))
        result = pipeline.process_file(doc("b.xml", batch_xml([batch_row("B001", "P1")], company="Other Co")))

        assert result.status == "DUPLICATE"
        assert result.message == "All 1 items are duplicates (already in database)"
        assert result.existing_file_name == "a.xml"
        assert len(store.list_batch_registries()) == 1
        assert store.find_log(content_hash(batch_xml([batch_row("B001", "P1")], company="Other Co"))).status == "DUPLICATE"

    def test_repeated_item_inside_one_file_counted_once(self, pipeline, store):
        result = pipeline.process_file(doc("a.xml", batch_xml([batch_row("B001", "P1"), batch_row("B001", "P1")])))
        assert result.item_stats.new_items == 1
        assert result.item_stats.duplicate_items == 1
        assert store.list_batch_registries()[0].total_batches == 1

    def test_error_log_allows_reprocessing(self, pipeline, store):
        content = "<BATCHCRREGI><BATCHNO>1</BATCHNO><EXPDT>x</EXPDT></BATCHCRREGI>"
        first = pipeline.process_file(doc("bad.xml", content))
        assert first.status == "ERROR"
        assert "No batch records found" in first.message
        second = pipeline.process_file(doc("bad.xml", content))
        assert second.status == "ERROR"
        assert len(store.all_logs()) == 1


class TestFormulaIngestion:
    def test_new_formula_created(self, pipeline, store):
        result = pipeline.process_file(doc("f1.xml", formula_xml()))
        assert result.status == "SUCCESS"
        assert result.business_key == "FORMULA-P1-REV1"
        assert result.formula_stats.new_formulas == 1
        formulas = store.list_formulas()
        assert len(formulas) == 1
        assert formulas[0].content_hash == content_hash(formula_xml())

    def test_same_file_twice_is_duplicate_formula(self, pipeline, store):
        pipeline.process_file(doc("f1.xml", formula_xml()))
        result = pipeline.process_file(doc("f1.xml", formula_xml()))
        assert result.status == "DUPLICATE"
        assert result.message == "All 1 formula(s) already exist in database"
        detail = result.formula_stats.duplicate_details[0]
        assert detail.reason == "MFC MFC-100 already exists (no new items)"
        assert detail.existing_file_name == "f1.xml"
        assert len(store.list_formulas()) == 1

    def test_new_item_code_is_merged_into_existing(self, pipeline, store):
        pipeline.process_file(doc("f1.xml", formula_xml(formula_block(filling_codes=("P1-60",)))))
        result = pipeline.process_file(doc("f2.xml", formula_xml(formula_block(filling_codes=("P1-60", "P1-100")))))

        assert result.status == "SUCCESS"
        stats = result.formula_stats
        assert stats.merged_formulas == 1
        assert stats.successful_details[0].action == "merged"
        assert stats.successful_details[0].added_item_codes == ["P1-100"]
        formulas = store.list_formulas()
        assert len(formulas) == 1
        assert [fd.product_code for fd in formulas[0].filling_details] == ["P1-60", "P1-100"]
        assert formulas[0].file_name == "f1.xml"

    def test_identity_falls_back_to_product_and_revision(self, pipeline, store):
        pipeline.process_file(doc("f1.xml", formula_xml(formula_block(mfc=None, rev="2"))))
        same = pipeline.process_file(doc("f2.xml", formula_xml(formula_block(mfc=None, rev="2")) + "\n<!-- re-export -->"))
        other_rev = pipeline.process_file(doc("f3.xml", formula_xml(formula_block(mfc=None, rev="3"))))
        assert same.status == "DUPLICATE"
        assert other_rev.status == "SUCCESS"
        assert len(store.list_formulas()) == 2

    def test_multi_formula_file(self, pipeline, store):
        pipeline.process_file(doc("f1.xml", formula_xml()))
        content = formula_xml(
            formula_block(mfc="MFC-100"),
            formula_block(mfc="MFC-200", code="P2", filling_codes=("P2-60",)),
            formula_block(mfc="MFC-300", code="P3", filling_codes=("P3-60",)),
        )
        result = pipeline.process_file(doc("multi.xml", content))

        assert result.status == "SUCCESS"
        stats = result.formula_stats
        assert (stats.total_formulas, stats.new_formulas, stats.duplicate_formulas) == (3, 2, 1)
        assert result.message == "Stored 2 new formula(s) (1 duplicate(s) skipped, 3 total found)"
        digest = content_hash(content)
        hashes = sorted(f.content_hash for f in store.list_formulas() if f.file_name == "multi.xml")
        assert hashes == [f"{digest}_1", f"{digest}_2"]
        assert all(f.raw_xml_content is None for f in store.list_formulas() if f.file_name == "multi.xml")


class TestCOAIngestion:
    def test_same_certificate_is_duplicate(self, pipeline, store):
        pipeline.process_file(doc("coa.xml", coa_xml()))
        result = pipeline.process_file(doc("coa-again.xml", coa_xml().replace("\n", "\r\n")))
        assert result.status == "DUPLICATE"
        assert result.business_key == "B001-BULK"
        assert len(store.list_coas()) == 1

    def test_same_certificate_without_log_is_duplicate_by_record(self, pipeline, store):
        pipeline.process_file(doc("coa.xml", coa_xml()))
        store.delete_all_logs()
        result = pipeline.process_file(doc("coa.xml", coa_xml()))
        assert result.status == "DUPLICATE"
        assert result.message == "COA already processed: B001-BULK"
        assert result.existing_file_name == "coa.xml"
        assert len(store.list_coas()) == 1

    def test_new_content_updates_in_place(self, pipeline, store):
        first = pipeline.process_file(doc("coa.xml", coa_xml()))
        second = pipeline.process_file(doc("coa-v2.xml", coa_xml(assay_result="100.4 %")))

        assert second.status == "SUCCESS"
        assert second.record_id == first.record_id
        assert second.message == "Updated COA B001-BULK (previously from coa.xml)"
        coas = store.list_coas()
        assert len(coas) == 1
        assert coas[0].file_name == "coa-v2.xml"
        assert coas[0].bulk_data.assay_results[0].result_value == 100.4
        assert coas[0].updated_at is not None

    def test_bulk_and_finish_are_separate_records(self, pipeline, store):
        pipeline.process_file(doc("coa_bulk.xml", coa_xml()))
        skipped = pipeline.process_file(doc("COA_FINISH_B001.xml", coa_xml() + "\n"))
        # trailing whitespace does not change the hash
        assert skipped.status == "DUPLICATE"
        assert len(store.list_coas()) == 1
        pipeline.process_file(doc("COA_FINISH_B001_v2.xml", coa_xml(assay_result="101.0 %")))
        assert sorted(c.stage for c in store.list_coas()) == ["BULK", "FINISH"]


class TestRequisitionIngestion:
    def test_materials_validated_against_formula(self, pipeline, store):
        pipeline.process_file(doc("f1.xml", formula_xml()))
        content = requisition_xml(requisition_batch("B001", "MR1", [
            ("D1", "RM1", "RM", "2.5"),
            ("D2", "PM1", "PM", "900"),
            ("D3", "ZZ9", "PM", "5"),
        ]))
        result = pipeline.process_file(doc("req.xml", content))

        assert result.status == "SUCCESS"
        assert result.business_key == "REQ-L1-ACME"
        req = store.list_requisitions()[0]
        statuses = {m.mat_req_dtl_id: m.validation_status for m in req.batches[0].materials}
        assert statuses == {"D1": "matched", "D2": "mismatch", "D3": "pending"}
        assert req.validated_count == 2
        assert req.mismatch_count == 1

    def test_material_level_dedup_across_files(self, pipeline, store):
        pipeline.process_file(doc("r1.xml", requisition_xml(
            requisition_batch("B001", "MR1", [("D1", "RM1", "RM", "1"), ("D2", "RM2", "RM", "2")]),
        )))
        result = pipeline.process_file(doc("r2.xml", requisition_xml(
            requisition_batch("B001", "MR1", [("D1", "RM1", "RM", "1"), ("D2", "RM2", "RM", "2")]),
            requisition_batch("B002", "MR2", [("D3", "RM1", "RM", "1")]),
        )))

        assert result.status == "SUCCESS"
        assert result.message == "Stored 1 new materials (2 duplicates skipped)"
        assert {d.existing_file_name for d in result.item_stats.duplicate_details} == {"r1.xml"}
        stored = [r for r in store.list_requisitions() if r.file_name == "r2.xml"][0]
        assert [b.batch_number for b in stored.batches] == ["B002"]
        assert stored.total_materials == 1

    def test_all_materials_known_is_duplicate(self, pipeline, store):
        batch = requisition_batch("B001", "MR1", [("D1", "RM1", "RM", "1")])
        pipeline.process_file(doc("r1.xml", requisition_xml(batch)))
        result = pipeline.process_file(doc("r2.xml", requisition_xml(batch).replace("<MAKE>ACME</MAKE>", "<MAKE>ACME2</MAKE>")))
        assert result.status == "DUPLICATE"
        assert result.message == "All 1 materials are duplicates"
        assert len(store.list_requisitions()) == 1


class TestOrchestration:
    def test_unknown_content_is_logged_as_error(self, pipeline, store):
        result = pipeline.process_file(doc("note.xml", "<note><to>Tove</to></note>"))
        assert result.status == "ERROR"
        assert result.file_type == "UNKNOWN"
        assert result.message == "Could not determine XML file type from content"
        log = store.all_logs()[0]
        assert log.status == "ERROR"
        assert log.error_message == result.message

    def test_raw_content_over_limit_not_stored(self, settings, store):
        from pharma_ingestion.app.services.pipeline import IngestionPipeline

        settings.max_raw_content_bytes = 100
        pipeline = IngestionPipeline(settings, store=store)
        result = pipeline.process_file(doc("a.xml", batch_xml([batch_row("B001", "P1")])))
        assert result.status == "SUCCESS"
        assert any("Raw XML content not stored" in w for w in result.warnings)
        registry = store.get_batch_registry(result.record_id)
        assert registry.raw_xml_content is None
        assert registry.parsing_status == "partial"
        assert registry.total_batches == 1

    def test_run_ingestion_over_folder(self, pipeline, settings):
        src = settings.source_dir
        src.mkdir(parents=True)
        (src / "01_formula.xml").write_text(formula_xml(), encoding="utf-8")
        (src / "02_batches.XML").write_text(batch_xml([batch_row("B001", "P1")]), encoding="utf-8")
        (src / "03_copy.xml").write_text(batch_xml([batch_row("B001", "P1")]), encoding="utf-8")
        (src / "04_junk.xml").write_text("<a>", encoding="utf-8")
        (src / "notes.txt").write_text("ignored", encoding="utf-8")
        (src / "nested").mkdir()
        (src / "nested" / "inner.xml").write_text(coa_xml(), encoding="utf-8")

        status = pipeline.run_ingestion()

        assert status.total_files == 4
        assert status.processed == 4
        assert (status.successful, status.duplicates, status.errors) == (2, 1, 1)
        assert [r.file_name for r in status.results] == ["01_formula.xml", "02_batches.XML", "03_copy.xml", "04_junk.xml"]
        assert status.finished_at is not None

    def test_ingest_path_missing_file(self, pipeline, tmp_path):
        result = pipeline.ingest_path(str(tmp_path / "missing.xml"))
        assert result.status == "ERROR"
