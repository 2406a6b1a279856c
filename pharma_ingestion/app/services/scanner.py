from __future__ import annotations

import logging
from pathlib import Path
from typing import List

from pharma_ingestion.app.models.documents import RawDocument

logger = logging.getLogger(__name__)


def decode_content(raw: bytes) -> str:
    try:
        return raw.decode("utf-8-sig")
    except UnicodeDecodeError:
        # Older exports are written in the Windows code page
        return raw.decode("cp1252", errors="replace")


def read_raw_document(file_path: str) -> RawDocument:
    p = Path(file_path)
    raw = p.read_bytes()
    return RawDocument(
        file_name=p.name,
        content=decode_content(raw),
        file_size_bytes=len(raw),
        file_path=str(p),
    )


def list_xml_files(source_dir: Path) -> List[Path]:
    """Non-recursive listing of *.xml files (any case), sorted by name."""
    if not source_dir.is_dir():
        logger.warning(f"Source folder does not exist: {source_dir}")
        return []
    return sorted(
        (p for p in source_dir.iterdir() if p.is_file() and p.suffix.lower() == ".xml"),
        key=lambda p: p.name,
    )


def scan_source_folder(source_dir: Path) -> List[RawDocument]:
    docs: List[RawDocument] = []
    for p in list_xml_files(source_dir):
        try:
            docs.append(read_raw_document(str(p)))
        except OSError as e:
            logger.warning(f"Skipping unreadable file {p}: {e}")
    logger.info(f"Found {len(docs)} XML file(s) in {source_dir}")
    return docs
