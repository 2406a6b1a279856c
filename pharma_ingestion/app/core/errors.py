from __future__ import annotations

from typing import List, Optional


class IngestionError(RuntimeError):
    """A file could not be stored; caught at the per-file boundary."""

    def __init__(self, message: str, errors: Optional[List[str]] = None):
        super().__init__(message)
        self.errors = errors or [message]


class ParseFailure(IngestionError):
    @classmethod
    def from_errors(cls, file_type: str, errors: List[str]) -> "ParseFailure":
        detail = "; ".join(errors) if errors else "unknown parse error"
        return cls(f"Failed to parse {file_type} XML: {detail}", errors)
