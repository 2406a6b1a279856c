from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Generic, List, Optional, TypeVar

T = TypeVar("T")


@dataclass
class RawDocument:
    file_name: str
    content: str
    file_size_bytes: int = 0
    file_path: Optional[str] = None

    def __post_init__(self) -> None:
        if not self.file_size_bytes:
            self.file_size_bytes = len(self.content.encode("utf-8"))


@dataclass
class ParseResult(Generic[T]):
    success: bool
    data: Optional[T] = None
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @classmethod
    def failed(cls, *errors: str, warnings: Optional[List[str]] = None) -> "ParseResult[Any]":
        return cls(success=False, data=None, errors=list(errors), warnings=list(warnings or []))
