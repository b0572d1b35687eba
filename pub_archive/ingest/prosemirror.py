from __future__ import annotations

from collections.abc import Iterator
from typing import Any

from pub_archive.ingest.models import AttachmentRecord


def _walk(node: Any) -> Iterator[dict[str, Any]]:
    if not isinstance(node, dict):
        return
    yield node
    for child in node.get("content") or []:
        yield from _walk(child)


def _children(doc: Any) -> list[Any]:
    if not isinstance(doc, dict):
        return []
    content = doc.get("content")
    return content if isinstance(content, list) else []


def extract_text(doc: Any) -> str:
    """Depth-first concatenation of every text node, whitespace-joined."""
    parts: list[str] = []
    for child in _children(doc):
        for node in _walk(child):
            text = node.get("text")
            if isinstance(text, str) and text:
                parts.append(text)
    return " ".join(parts).strip()


def extract_files(doc: Any) -> list[AttachmentRecord]:
    files: list[AttachmentRecord] = []
    for child in _children(doc):
        for node in _walk(child):
            if node.get("type") != "file":
                continue
            attrs = node.get("attrs") or {}
            url = attrs.get("url")
            if not isinstance(url, str) or not url:
                continue
            file_size = attrs.get("fileSize")
            files.append(
                AttachmentRecord(
                    url=url,
                    filename=attrs.get("fileName"),
                    file_size=int(file_size) if isinstance(file_size, (int, float)) else None,
                    type="application/pdf" if url.lower().endswith(".pdf") else "application/octet-stream",
                )
            )
    return files


def word_count(text: str | None) -> int:
    if not text:
        return 0
    return len(text.split())
