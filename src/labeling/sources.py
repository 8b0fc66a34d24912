"""
Document Sources
================

Turns files on disk into `Document` objects. PDF text is read with PyMuPDF
(no OCR: scanned PDFs without a text layer produce empty content) and
``.txt`` files are read as UTF-8. Content is always stripped.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Iterator

import fitz  # PyMuPDF
import structlog

from .models import Document

log = structlog.get_logger(__name__)

SUPPORTED_SUFFIXES = (".pdf", ".txt")


def read_pdf_text(path: Path) -> str:
    """Return the text of every page of a PDF, pages separated by newlines."""
    with fitz.open(path) as pdf:
        return "\n".join(page.get_text() for page in pdf)


def read_document(path: str | os.PathLike) -> Document:
    """
    Read a single supported file.

    Raises:
        ValueError: for unsupported file types.
        OSError, RuntimeError: if the file cannot be read or parsed.
    """
    file_path = Path(path)
    suffix = file_path.suffix.lower()
    if suffix == ".pdf":
        content = read_pdf_text(file_path)
    elif suffix == ".txt":
        content = file_path.read_text(encoding="utf-8", errors="replace")
    else:
        raise ValueError(f"Unsupported document type: {file_path.name}")
    return Document(id=file_path.name, content=content.strip())


def iter_documents(folder: str | os.PathLike) -> Iterator[Document]:
    """
    Yield the supported documents of ``folder`` in filename order.

    Files that cannot be read are logged and skipped.
    """
    folder_path = Path(folder)
    files = sorted(
        p
        for p in folder_path.iterdir()
        if p.is_file() and p.suffix.lower() in SUPPORTED_SUFFIXES
    )
    log.info("Found documents", folder=str(folder_path), document_count=len(files))
    for file_path in files:
        try:
            document = read_document(file_path)
        except (OSError, RuntimeError, ValueError) as e:
            log.warning("Failed to read document", path=str(file_path), error=str(e))
            continue
        yield document
