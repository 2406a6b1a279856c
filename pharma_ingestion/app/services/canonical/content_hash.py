from __future__ import annotations
import hashlib


def sha256_bytes(b: bytes) -> str:
    return hashlib.sha256(b).hexdigest()


def normalize_content(content: str) -> str:
    return content.replace("\r\n", "\n").replace("\r", "\n").strip()


def content_hash(content: str) -> str:
    """SHA-256 hex digest of content with line endings and outer whitespace normalized."""
    return sha256_bytes(normalize_content(content).encode("utf-8"))
