from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from pharma_ingestion.app.main import app
from pharma_ingestion.tests.xml_samples import batch_row, batch_xml, formula_xml, requisition_xml


@pytest.fixture
def source_dir(tmp_path, monkeypatch):
    src = tmp_path / "xml"
    src.mkdir()
    monkeypatch.setenv("STORE_BACKEND", "json")
    monkeypatch.setenv("SOURCE_DIR", str(src))
    monkeypatch.setenv("OUT_DIR", str(tmp_path / "out"))
    monkeypatch.setenv("RUN_ID", "api-run")
    return src


@pytest.fixture
def client(source_dir):
    return TestClient(app)


@pytest.fixture
def ingested(client, source_dir):
    (source_dir / "formula.xml").write_text(formula_xml(), encoding="utf-8")
    (source_dir / "batches.xml").write_text(
        batch_xml([batch_row("B001", "P1"), batch_row("B002", "P1-60"), batch_row("B003", "X9")]),
        encoding="utf-8",
    )
    (source_dir / "req.xml").write_text(requisition_xml(), encoding="utf-8")
    return client.post("/ingest").json()


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}


def test_ingest_folder(ingested):
    assert ingested["run_id"] == "api-run"
    assert ingested["total_files"] == 3
    assert ingested["successful"] == 3
    assert [r["file_type"] for r in ingested["results"]] == ["BATCH", "FORMULA", "REQUISITION"]


def test_ingest_single_file(client, source_dir):
    path = source_dir / "batches.xml"
    path.write_text(batch_xml([batch_row("B001", "P1")]), encoding="utf-8")

    first = client.post("/ingest/file", json={"file_path": str(path)}).json()
    second = client.post("/ingest/file", json={"file_path": str(path)}).json()

    assert first["status"] == "SUCCESS"
    assert second["status"] == "DUPLICATE"
    missing = client.post("/ingest/file", json={"file_path": str(source_dir / "none.xml")}).json()
    assert missing["status"] == "ERROR"


def test_reconciliation_report(client, ingested):
    resp = client.get("/reconciliation")
    assert resp.status_code == 200
    report = resp.json()
    assert report["batch_reconciliation"]["total_batches_in_system"] == 3
    assert report["batch_reconciliation"]["batches_not_matched_to_formula"] == 1
    assert report["orphan_batches"][0]["item_code"] == "X9"
    assert report["formula_results"][0]["reconciliation_status"] == "fully_reconciled"


def test_logs_and_cleanup(client, ingested):
    page = client.get("/logs", params={"limit": 2}).json()
    assert page["total"] == 3
    assert page["total_pages"] == 2
    assert len(page["logs"]) == 2

    only_formulas = client.get("/logs", params={"file_type": "FORMULA"}).json()
    assert only_formulas["total"] == 1

    assert client.post("/logs/cleanup").json() == {"deleted_count": 0}
    assert client.post("/logs/cleanup", params={"delete_all": True}).json() == {"deleted_count": 3}
    assert client.get("/logs").json()["total"] == 0


def test_delete_records(client, ingested):
    batch_id = ingested["results"][0]["record_id"]
    resp = client.delete(f"/batches/{batch_id}")
    assert resp.json() == {"deleted": True, "id": batch_id}
    assert client.delete(f"/batches/{batch_id}").status_code == 404
    assert client.delete("/formulas/unknown").status_code == 404
    assert client.delete("/requisitions/unknown").status_code == 404


def test_section_report(client, ingested):
    resp = client.get("/reports/sections/RM", params={"min_batches": 2})
    assert resp.status_code == 200
    body = resp.json()
    assert body["section"] == "RM"
    assert body["formulas_checked"] == 1
    assert body["batches_with_data"] == 1

    assert client.get("/reports/sections/QC").status_code == 400


def test_duplicate_batch_report(client, ingested):
    body = client.get("/reports/duplicate-batches").json()
    assert body["groups"] == []


def test_missing_materials_report(client, ingested):
    body = client.get("/reports/missing-materials", params={"min_batches": 2}).json()
    assert body["total_mfcs"] == 1
    assert [(m["batch_number"], m["material_code"]) for m in body["missing_materials"]] == [
        ("B001", "PM1"),
        ("B002", "RM1"),
        ("B002", "PM1"),
    ]

    only_rm = client.get("/reports/missing-materials", params={"min_batches": 2, "material_type": "RM"}).json()
    assert only_rm["total_missing_materials"] == 1
    assert client.get("/reports/missing-materials", params={"material_type": "QC"}).status_code == 400
