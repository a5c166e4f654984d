# Minimal playbook document loader. No embeddings, no vector DB.
# Supports .md, .txt, .pdf. Single place for "file/bytes → text".

import io
import logging
from pathlib import Path

from playbook.core.config import ALLOWED_EXTENSIONS

logger = logging.getLogger(__name__)

SUPPORTED_EXTENSIONS = ALLOWED_EXTENSIONS


def bytes_to_text(raw: bytes, filename: str) -> str:
    """
    Convert raw file bytes to text by extension. Markdown and plain text are
    decoded as UTF-8; PDFs go through pypdf.
    """
    ext = Path(filename).suffix.lower() if filename else ""
    if ext == ".pdf":
        return _read_pdf(raw)
    return raw.decode("utf-8", errors="replace")


def _read_pdf(raw: bytes) -> str:
    from pypdf import PdfReader
    reader = PdfReader(io.BytesIO(raw))
    return "\n".join(page.extract_text() or "" for page in reader.pages)


def title_from_text(text: str, fallback: str) -> str:
    """First markdown heading (or first non-empty line) as the document title."""
    for line in (text or "").splitlines():
        line = line.strip()
        if not line:
            continue
        if line.startswith("#"):
            return line.lstrip("#").strip() or fallback
        return line[:120]
    return fallback


def list_document_files(directory: Path) -> list[Path]:
    """Supported files directly under directory, sorted by name. Missing directory → []."""
    if not directory.is_dir():
        logger.warning("[loader] playbook directory not found: %s", directory)
        return []
    return sorted(
        p for p in directory.iterdir()
        if p.is_file() and p.suffix.lower() in SUPPORTED_EXTENSIONS
    )


def read_document_file(path: Path) -> str:
    """Read one document file as text. Raises OSError on read failure."""
    return bytes_to_text(path.read_bytes(), path.name)
