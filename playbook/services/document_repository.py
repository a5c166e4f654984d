"""
Document repository: the backing store behind the document cache.

Responsibility: list active playbook documents and fetch one by id. Two
implementations: an in-memory repository (tests, seeding) and a directory
repository that reads .md/.txt/.pdf files from PLAYBOOK_DIR.
"""

import asyncio
import logging
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Protocol

from playbook.core.errors import DocumentStoreError
from playbook.ingest.loader import list_document_files, read_document_file, title_from_text
from playbook.services.text_processing import clean_text

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Document:
    """A knowledge-base document as stored by the repository."""

    id: str
    title: str
    content: str
    updated_at: datetime
    is_active: bool = True


class DocumentRepository(Protocol):
    async def list_active(self) -> list[Document]: ...

    async def find_by_id(self, document_id: str) -> Document | None: ...


class InMemoryDocumentRepository:
    """Dict-backed repository. Counts list_active calls so cache loads can be observed."""

    def __init__(self, documents: list[Document] | None = None) -> None:
        self._documents: dict[str, Document] = {d.id: d for d in documents or []}
        self.list_calls = 0
        self.find_calls = 0

    async def list_active(self) -> list[Document]:
        self.list_calls += 1
        return [d for d in self._documents.values() if d.is_active]

    async def find_by_id(self, document_id: str) -> Document | None:
        self.find_calls += 1
        return self._documents.get(document_id)

    def upsert(self, document: Document) -> None:
        self._documents[document.id] = document

    def deactivate(self, document_id: str) -> None:
        doc = self._documents.get(document_id)
        if doc is not None:
            self._documents[document_id] = replace(doc, is_active=False)

    def remove(self, document_id: str) -> None:
        self._documents.pop(document_id, None)


class DirectoryDocumentRepository:
    """
    Reads playbook documents from a directory. Document id is the file stem,
    title is the first heading, updated_at is the file mtime. Every file present
    is active; deleting a file deactivates the document.
    """

    def __init__(self, directory: str | Path) -> None:
        self.directory = Path(directory)

    def _load(self, path: Path) -> Document:
        text = clean_text(read_document_file(path))
        mtime = datetime.fromtimestamp(path.stat().st_mtime, tz=timezone.utc)
        return Document(
            id=path.stem,
            title=title_from_text(text, path.stem),
            content=text,
            updated_at=mtime,
        )

    def _list_sync(self) -> list[Document]:
        docs: list[Document] = []
        for path in list_document_files(self.directory):
            try:
                docs.append(self._load(path))
            except Exception as e:
                logger.warning("[repository:list_active] failed to read %s: %s", path.name, e)
        logger.info("[repository:list_active] OUT documents=%d dir=%s", len(docs), self.directory)
        return docs

    def _find_sync(self, document_id: str) -> Document | None:
        for path in list_document_files(self.directory):
            if path.stem == document_id:
                return self._load(path)
        return None

    async def list_active(self) -> list[Document]:
        try:
            return await asyncio.to_thread(self._list_sync)
        except OSError as e:
            raise DocumentStoreError(f"Failed to list documents in {self.directory}: {e}") from e

    async def find_by_id(self, document_id: str) -> Document | None:
        try:
            return await asyncio.to_thread(self._find_sync, document_id)
        except OSError as e:
            raise DocumentStoreError(f"Failed to read document {document_id!r}: {e}") from e
