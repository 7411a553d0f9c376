"""
Document sources: enumerate a corpus and read raw document text.

Paths are always relative POSIX paths (``folder/Note.md``) so exclusion
prefixes and link resolution behave the same on every platform.
"""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Protocol, runtime_checkable

import aiofiles

from gapscan.config import settings

logger = logging.getLogger(__name__)


@runtime_checkable
class DocumentSource(Protocol):
    """What the link-graph builder needs from a corpus."""

    def list_documents(self) -> List[str]:
        ...

    async def read_text(self, path: str) -> str:
        ...


class FileSystemDocumentSource:
    """Markdown (or other text) files under a vault root directory."""

    def __init__(
        self,
        root: Optional[str] = None,
        extensions: Optional[Iterable[str]] = None,
    ) -> None:
        self.root = Path(root or settings.VAULT_DIR)
        exts = extensions if extensions is not None else settings.get_document_extensions()
        self.extensions = tuple(e.lower() for e in exts)

    def list_documents(self) -> List[str]:
        if not self.root.is_dir():
            logger.warning("Vault directory %s does not exist", self.root)
            return []
        paths = [
            p.relative_to(self.root).as_posix()
            for p in self.root.rglob("*")
            if p.is_file() and p.suffix.lower() in self.extensions
        ]
        paths.sort()
        return paths

    async def read_text(self, path: str) -> str:
        async with aiofiles.open(self.root / path, "r", encoding="utf-8") as fh:
            return await fh.read()


class InMemoryDocumentSource:
    """``{path: text}`` mapping, used by tests and by callers that already hold the text."""

    def __init__(self, documents: Optional[Dict[str, str]] = None) -> None:
        self._documents: Dict[str, str] = dict(documents or {})

    def add(self, path: str, text: str) -> None:
        self._documents[path] = text

    def list_documents(self) -> List[str]:
        return list(self._documents.keys())

    async def read_text(self, path: str) -> str:
        try:
            return self._documents[path]
        except KeyError:
            raise FileNotFoundError(path) from None
