from __future__ import annotations

import time

from pharma_ingestion.app.services.canonical.content_hash import content_hash
from pharma_ingestion.app.services.parsers.base import extract_number, parse_number
from pharma_ingestion.app.services.parsers.batch_parser import NO_BATCHES_ERROR, parse_batch_registry
from pharma_ingestion.app.services.parsers.coa_parser import (
    STAGE_UNKNOWN_WARNING,
    complies,
    parse_coa,
    parse_limits,
)
from pharma_ingestion.app.services.parsers.formula_parser import extract_composition, parse_formula, parse_formulas
from pharma_ingestion.app.services.parsers.requisition_parser import material_category, parse_requisition
from pharma_ingestion.tests.xml_samples import (
    batch_row,
    batch_xml,
    coa_xml,
    formula_block,
    formula_xml,
    requisition_batch,
    requisition_xml,
)


class TestNumbers:
    def test_parse_number(self):
        assert parse_number("1,250.5") == 1250.5
        assert parse_number("abc") == 0.0
        assert parse_number(None) == 0.0

    def test_extract_number(self):
        assert extract_number("12.5 KG") == 12.5
        assert extract_number("N/A") is None
        assert extract_number("none") is None


class TestBatchParser:
    def test_parses_items_and_counts(self):
        content = batch_xml([
            batch_row("B001", "P1"),
            batch_row("B002", "P1-60", mrp="45.00"),
            batch_row("B003", "P2"),
        ])
        result = parse_batch_registry(content, "batches.xml")
        assert result.success
        registry = result.data
        assert registry.company_name == "Acme Pharma Ltd"
        assert registry.company_address == "Plot 7, Industrial Area"
        assert registry.total_batches == 3
        assert registry.export_count == 2
        assert registry.import_count == 1
        assert [b.sr_no for b in registry.batches] == [1, 2, 3]
        assert registry.batches[1].type == "Import"
        assert registry.batches[1].mrp_value == "45.00"
        assert registry.batches[0].mfg_lic_no == "ML-01"
        assert registry.content_hash == content_hash(content)
        assert registry.parsing_status == "success"

    def test_missing_fields_become_sentinel_with_warning(self):
        content = "<BATCHCRREGI><LIST_G_MATCODE><G_MATCODE><ITMCODE>P1</ITMCODE></G_MATCODE></LIST_G_MATCODE></BATCHCRREGI>"
        result = parse_batch_registry(content)
        assert result.success
        item = result.data.batches[0]
        assert item.batch_number == "N/A"
        assert item.expiry_date == "N/A"
        assert any("no batch number" in w for w in result.warnings)
        assert result.data.parsing_status == "partial"

    def test_sr_no_read_from_row_with_position_fallback(self):
        content = (
            "<BATCHCRREGI><LIST_G_MATCODE>"
            "<G_MATCODE><SRNO>7</SRNO><BATCHNO>B1</BATCHNO><ITMCODE>P1</ITMCODE></G_MATCODE>"
            "<G_MATCODE><SRNO>x</SRNO><BATCHNO>B2</BATCHNO><ITMCODE>P1</ITMCODE></G_MATCODE>"
            "<G_MATCODE><BATCHNO>B3</BATCHNO><ITMCODE>P1</ITMCODE></G_MATCODE>"
            "</LIST_G_MATCODE></BATCHCRREGI>"
        )
        result = parse_batch_registry(content)
        assert [b.sr_no for b in result.data.batches] == [7, 2, 3]

    def test_no_batch_list_is_error(self):
        result = parse_batch_registry("<BATCHCRREGI><CMPNM>X</CMPNM></BATCHCRREGI>")
        assert not result.success
        assert result.data is None
        assert result.errors == [NO_BATCHES_ERROR]

    def test_malformed_xml_is_error(self):
        result = parse_batch_registry("<BATCHCRREGI><LIST_G_MATCODE>")
        assert not result.success
        assert result.errors[0].startswith("Invalid XML")


class TestFormulaParser:
    def test_master_details_and_sections(self):
        result = parse_formula(formula_xml(), "formula.xml")
        assert result.success
        f = result.data
        d = f.master_formula_details
        assert d.master_card_no == "MFC-100"
        assert d.product_code == "P1"
        assert d.product_name == "Paracetamol Syrup"
        assert d.generic_name == "Paracetamol"
        assert d.revision_no == "1"
        assert d.manufacturing_license_no == "ML-01"
        assert f.company_info.company_name == "Acme Pharma Ltd"
        assert f.batch_info.batch_size == "100 LTR"
        assert [m.material_code for m in f.materials] == ["RM1"]
        assert [p.material_code for p in f.packing_materials] == ["PM1"]
        assert [fd.product_code for fd in f.filling_details] == ["P1-60"]
        assert f.processes[0].process_name == "Filling and Sealing"
        assert [fp.product_code for fp in f.processes[0].filling_products] == ["P1-60"]
        assert f.summary.total_materials == 1
        assert f.linked_product_codes() == ["P1", "P1-60"]
        assert f.unique_identifier.startswith("P1_1_")

    def test_composition_from_label_claim(self):
        items = extract_composition("Paracetamol 125 MG; Chlorpheniramine Maleate 2 MG", "Syrup")
        assert [(i.ingredient, i.strength, i.unit) for i in items] == [
            ("Paracetamol", "125", "MG"),
            ("Chlorpheniramine Maleate", "2", "MG"),
        ]
        assert items[0].form == "Syrup"

    def test_non_filling_process_keeps_products_but_no_filling_details(self):
        content = formula_xml(formula_block(process="Manufacturing", filling_codes=("P1-100",)))
        f = parse_formula(content).data
        assert f.filling_details == []
        assert [fp.product_code for fp in f.processes[0].filling_products] == ["P1-100"]
        assert "P1-100" in f.linked_product_codes()

    def test_one_formula_per_block(self):
        content = formula_xml(
            formula_block(mfc="MFC-100", code="P1"),
            formula_block(mfc="MFC-200", code="P2", filling_codes=("P2-60",)),
        )
        result = parse_formulas(content, "multi.xml")
        assert result.success
        assert [f.master_formula_details.master_card_no for f in result.data] == ["MFC-100", "MFC-200"]
        assert all(f.file_name == "multi.xml" for f in result.data)

    def test_nested_block_belongs_to_outer_formula(self):
        inner = formula_block(mfc="MFC-INNER", code="P9")
        outer = formula_block(mfc="MFC-100", code="P1").replace("</G_1>", f"<LIST_G_1>{inner}</LIST_G_1></G_1>")
        content = formula_xml(outer, formula_block(mfc="MFC-200", code="P2"))
        result = parse_formulas(content)
        assert [f.master_formula_details.master_card_no for f in result.data] == ["MFC-100", "MFC-200"]

    def test_company_header_after_blocks(self):
        content = (
            "<FORMULAMAST><LIST_G_1>" + formula_block(mfc="MFC-100") + formula_block(mfc="MFC-200") + "</LIST_G_1>"
            "<G_CMPNM><CMPNM>Late Header Ltd</CMPNM></G_CMPNM></FORMULAMAST>"
        )
        result = parse_formulas(content)
        assert [f.company_info.company_name for f in result.data] == ["Late Header Ltd", "Late Header Ltd"]

    def test_parse_time_grows_linearly_with_block_count(self):
        def best_of_three(n):
            content = formula_xml(*[formula_block(mfc=f"MFC-{i}", code=f"P{i}") for i in range(n)])
            timings = []
            for _ in range(3):
                start = time.perf_counter()
                assert len(parse_formulas(content).data) == n
                timings.append(time.perf_counter() - start)
            return min(timings)

        small, large = best_of_three(50), best_of_three(400)
        # 8x the blocks; quadratic growth would be about 64x
        assert large < small * 30

    def test_missing_product_code_is_warning_only(self):
        content = "<FORMULAMAST><G_1><MCADNO>MFC-9</MCADNO><GENERICNM>X</GENERICNM></G_1></FORMULAMAST>"
        result = parse_formula(content)
        assert result.success
        assert result.data.master_formula_details.product_code == "N/A"
        assert "Product code not found in XML" in result.warnings
        assert "No materials found in XML" in result.warnings
        assert result.data.parsing_status == "partial"

    def test_blank_revision_is_none(self):
        content = formula_xml(formula_block(rev=""))
        assert parse_formula(content).data.master_formula_details.revision_no is None


class TestCOAParser:
    def test_bulk_certificate(self):
        result = parse_coa(coa_xml(), "coa_b001.xml")
        assert result.success
        coa = result.data
        assert coa.batch_number == "B001"
        assert coa.stage == "BULK"
        assert coa.product_code == "P1"
        assert coa.product_name == "Paracetamol Syrup"
        assert coa.ar_number == "AR-2024-001"
        data = coa.bulk_data
        assert coa.finish_data is None
        assert data.batch_size == "100 LTR"
        assert data.description == "Clear orange liquid"
        assay = data.assay_results[0]
        assert assay.ingredient == "Paracetamol"
        assert (assay.min_limit, assay.max_limit, assay.result_value) == (95.0, 105.0, 99.2)
        assert assay.within_limits is True
        ident = data.identification_tests[0]
        assert ident.method == "HPLC"
        assert ident.ingredient == "Paracetamol"
        assert [t.test_name for t in data.test_parameters] == ["pH"]
        assert coa.overall_complies is True

    def test_finish_stage_from_file_name(self):
        coa = parse_coa(coa_xml(), "COA_FINISH_B001.xml").data
        assert coa.stage == "FINISH"
        assert coa.bulk_data is None
        assert [c.parameter for c in coa.finish_data.critical_parameters] == ["pH"]

    def test_out_of_limit_assay_fails_overall(self):
        coa = parse_coa(coa_xml(assay_result="91.0 %")).data
        assert coa.bulk_data.assay_results[0].within_limits is False
        assert coa.overall_complies is False

    def test_stage_defaults_to_bulk_with_warning(self):
        content = "<FGANLCERT><BATCH>B9</BATCH><ITMNAME>X</ITMNAME></FGANLCERT>"
        result = parse_coa(content)
        assert result.success
        assert result.data.stage == "BULK"
        assert STAGE_UNKNOWN_WARNING in result.warnings
        assert "No test results found in COA" in result.warnings

    def test_missing_batch_number_is_error(self):
        result = parse_coa("<FGANLCERT><ITMNAME>X</ITMNAME></FGANLCERT>")
        assert not result.success
        assert result.errors == ["Batch number not found in COA"]

    def test_helpers(self):
        assert parse_limits("NLT 98.0% and NMT 102.0%") == (98.0, 102.0)
        assert parse_limits("Complies") == (None, None)
        assert complies("Complies")
        assert not complies("Does not comply")


class TestRequisitionParser:
    def test_batches_and_categories(self):
        content = requisition_xml(
            requisition_batch("B001", "MR1", [("D1", "RM1", "RM", "2.5"), ("D2", "PM1", "PM", "1,000")]),
            requisition_batch("B002", "MR2", [("D3", "BTL", "", "100")], process="Filling"),
        )
        result = parse_requisition(content, "req.xml")
        assert result.success
        req = result.data
        assert req.location_code == "L1"
        assert req.make == "ACME"
        assert req.unique_identifier.startswith("REQ-L1-ACME-")
        assert req.total_batches == 2
        assert req.total_materials == 3
        b1 = req.batches[0]
        assert b1.mfc_no == "MFC-100"
        assert b1.batch_size == 1000.0
        assert [m.category for m in b1.materials] == ["RM", "PM"]
        assert b1.materials[1].quantity_to_issue == 1000.0
        assert b1.materials[0].validation_status == "pending"
        assert req.batches[1].materials[0].category == "PPM"
        assert req.parsing_status == "success"

    def test_category_rules(self):
        assert material_category("RM", "Manufacturing") == "RM"
        assert material_category("RM", "Aseptic Filling") == "PPM"
        assert material_category("PPM") == "PPM"
        assert material_category("", "Bottle FILLING line") == "PPM"
        assert material_category("PM", "Packing") == "PM"

    def test_truncated_file_is_healed(self):
        full = requisition_xml(requisition_batch("B001", "MR1", [("D1", "RM1", "RM", "2.5"), ("D2", "PM1", "PM", "4")]))
        cut = full[: full.rindex("<REQQTY>")]
        result = parse_requisition(cut)
        assert result.success
        assert "XML content was truncated; missing closing tags were reconstructed" in result.warnings
        materials = result.data.batches[0].materials
        assert [m.mat_req_dtl_id for m in materials] == ["D1", "D2"]
        assert materials[1].quantity_to_issue == 4.0
        assert materials[1].required_quantity == 0.0

    def test_skips_rows_without_detail_id(self):
        content = requisition_xml(requisition_batch("B001", "MR1", [("", "RM1", "RM", "1"), ("D2", "RM2", "RM", "2")]))
        result = parse_requisition(content)
        assert result.success
        assert [m.mat_req_dtl_id for m in result.data.batches[0].materials] == ["D2"]
        assert "Skipping material with missing MATREQDTLID in batch B001" in result.warnings

    def test_skips_batches_without_identity(self):
        content = requisition_xml(
            requisition_batch("", "MR0", [("D0", "RM1", "RM", "1")]),
            requisition_batch("B001", "MR1", [("D1", "RM1", "RM", "1")]),
        )
        result = parse_requisition(content)
        assert [b.batch_number for b in result.data.batches] == ["B001"]
        assert "Skipping batch with missing number or ID" in result.warnings

    def test_no_valid_batches_is_error(self):
        content = requisition_xml(requisition_batch("", "MR0", [("D0", "RM1", "RM", "1")]))
        result = parse_requisition(content)
        assert not result.success
        assert "No valid batches found in requisition" in result.errors

    def test_wrong_root_is_error(self):
        result = parse_requisition("<OTHER><LIST_G_BATCHSIZEBC/></OTHER>")
        assert not result.success
        assert "No MATREQ root element found" in result.errors

    def test_missing_batch_list_is_error(self):
        result = parse_requisition("<MATREQ><X>1</X></MATREQ>")
        assert not result.success
        assert result.errors == ["No batch data found in MATREQ"]
