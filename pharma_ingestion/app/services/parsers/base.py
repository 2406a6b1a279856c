from __future__ import annotations

import re
from abc import ABC, abstractmethod
from typing import Generic, List, Optional, TypeVar

from pharma_ingestion.app.models.documents import ParseResult
from pharma_ingestion.app.models.records import NA, ParsingStatus
from pharma_ingestion.app.services.canonical.xml_tree import TagNode, XmlParseError, parse_xml

T = TypeVar("T")

_NON_NUMERIC_RE = re.compile(r"[^0-9.\-]")


def parse_number(value: Optional[str]) -> float:
    """Parse a legacy numeric field; thousands separators allowed, garbage is 0."""
    if value is None:
        return 0.0
    try:
        return float(str(value).replace(",", "").strip())
    except ValueError:
        return 0.0


def extract_number(value: Optional[str]) -> Optional[float]:
    """Best-effort number from free text such as '12.5 KG'; None when nothing usable."""
    if value is None or value == NA:
        return None
    cleaned = _NON_NUMERIC_RE.sub("", str(value))
    if not cleaned:
        return None
    try:
        return float(cleaned)
    except ValueError:
        return None


def parsing_status(warnings: List[str]) -> ParsingStatus:
    return "partial" if warnings else "success"


class SchemaParser(ABC, Generic[T]):
    """Template for the four legacy schema parsers.

    `parse` never raises for bad input: XML syntax problems and missing
    mandatory containers end up in `errors` with `success=False`.
    """

    file_type: str = "UNKNOWN"

    def prepare(self, content: str, result: ParseResult[T]) -> str:
        return content

    def parse(self, content: str, file_name: str = "") -> ParseResult[T]:
        result: ParseResult[T] = ParseResult(success=False)
        try:
            root = parse_xml(self.prepare(content, result))
        except XmlParseError as e:
            result.errors.append(str(e))
            return result

        data = self.extract(root, result, file_name, content)
        if data is None or result.errors:
            result.success = False
            result.data = None
        else:
            result.success = True
            result.data = data
        return result

    @abstractmethod
    def extract(self, root: TagNode, result: ParseResult[T], file_name: str, content: str) -> Optional[T]:
        pass
