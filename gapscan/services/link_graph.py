"""
Link graph over a corpus of markdown documents.

Parses ``[[target]]`` / ``[[target|alias]]`` references and inline
``#tags``, resolves every reference against the set of existing documents,
and keeps three indexes:

* ``notes``            document path → NoteLinks (deduplicated outgoing refs, tags)
* ``incoming_links``   resolved target path → set of referencing paths
* ``undefined_links``  raw reference text → UndefinedReference

A reference resolves when its raw text, its text without ``.md``, or its
basename matches either a document path without extension or a bare document
filename anywhere in the corpus (excluded folders included).

The built graph is cached until :meth:`LinkGraphBuilder.clear_cache` or a
change of exclusion folders.
"""
from __future__ import annotations

import asyncio
import logging
import posixpath
import re
from collections import Counter
from typing import Dict, Iterable, List, Optional, Set

from gapscan.config import settings
from gapscan.models.domain import LinkGraph, NoteLinks, UndefinedReference
from gapscan.services.document_source import DocumentSource
from gapscan.utils.helpers import is_excluded, normalize_folders, strip_extension

logger = logging.getLogger(__name__)

WIKI_LINK_RE = re.compile(r"\[\[([^\]|]+)(?:\|[^\]]+)?\]\]")
TAG_RE = re.compile(r"(?:^|\s)#([a-zA-Z0-9_\-/]+)")

# Link targets with these suffixes are attachments, not notes
EXCLUDED_EXTENSIONS = (
    ".png", ".jpg", ".jpeg", ".gif", ".svg", ".webp", ".bmp", ".ico",
    ".pdf", ".doc", ".docx", ".xls", ".xlsx", ".ppt", ".pptx",
    ".mp3", ".wav", ".ogg", ".m4a", ".flac",
    ".mp4", ".mov", ".avi", ".mkv", ".webm",
    ".zip", ".rar", ".7z", ".tar", ".gz",
    ".css", ".js", ".json", ".xml", ".html", ".htm",
)


def is_excluded_file_type(link: str) -> bool:
    return link.lower().endswith(EXCLUDED_EXTENSIONS)


def extract_tags(content: str) -> List[str]:
    """Inline ``#tags`` in first-seen order, deduplicated."""
    tags: List[str] = []
    for match in TAG_RE.finditer(content):
        tag = match.group(1)
        if tag and tag not in tags:
            tags.append(tag)
    return tags


def normalize_link_target(link: str) -> str:
    """Last path segment of a reference (``a/b/Note`` → ``Note``)."""
    return link.rsplit("/", 1)[-1] or link


class LinkGraphBuilder:
    """Builds and caches the :class:`LinkGraph` for a :class:`DocumentSource`."""

    def __init__(
        self,
        document_source: DocumentSource,
        exclude_folders: Iterable[str] = (),
        batch_size: Optional[int] = None,
    ) -> None:
        self.document_source = document_source
        self.exclude_folders: List[str] = normalize_folders(exclude_folders)
        self.batch_size = batch_size or settings.READ_BATCH_SIZE
        self._graph: Optional[LinkGraph] = None
        self._identifiers: Dict[str, str] = {}
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Cache control
    # ------------------------------------------------------------------

    def set_exclude_folders(self, folders: Iterable[str]) -> None:
        normalized = normalize_folders(folders)
        if normalized != self.exclude_folders:
            self.exclude_folders = normalized
            self.clear_cache()

    def clear_cache(self) -> None:
        self._graph = None
        self._identifiers = {}

    @property
    def graph(self) -> Optional[LinkGraph]:
        return self._graph

    # ------------------------------------------------------------------
    # Build
    # ------------------------------------------------------------------

    async def build_graph(self) -> LinkGraph:
        if self._graph is not None:
            return self._graph
        async with self._lock:
            if self._graph is None:
                self._graph = await self._build()
        return self._graph

    async def _build(self) -> LinkGraph:
        paths = self.document_source.list_documents()

        identifiers: Dict[str, str] = {}
        for path in paths:
            stem = posixpath.splitext(path)[0]
            identifiers.setdefault(stem, path)
            identifiers.setdefault(posixpath.splitext(posixpath.basename(path))[0], path)

        scanned = [p for p in paths if not is_excluded(p, self.exclude_folders)]
        texts: Dict[str, str] = {}
        for start in range(0, len(scanned), self.batch_size):
            batch = scanned[start:start + self.batch_size]
            results = await asyncio.gather(
                *(self.document_source.read_text(p) for p in batch),
                return_exceptions=True,
            )
            for path, result in zip(batch, results):
                if isinstance(result, BaseException):
                    logger.warning("Skipping unreadable document %s: %s", path, result)
                    continue
                texts[path] = result

        notes: Dict[str, NoteLinks] = {}
        incoming: Dict[str, Set[str]] = {}
        undefined: Dict[str, UndefinedReference] = {}

        for path in scanned:
            content = texts.get(path)
            if content is None:
                continue
            occurrences = self._extract_link_occurrences(content)
            outgoing = list(dict.fromkeys(occurrences))
            notes[path] = NoteLinks(path=path, outgoing_links=outgoing, tags=extract_tags(content))

            for link in occurrences:
                target = self._resolve(link, identifiers)
                if target is not None:
                    incoming.setdefault(target, set()).add(path)
                    continue
                ref = undefined.get(link)
                if ref is None:
                    undefined[link] = UndefinedReference(link_text=link, sources=[path], count=1)
                else:
                    ref.count += 1
                    if path not in ref.sources:
                        ref.sources.append(path)

        self._identifiers = identifiers
        logger.info(
            "Link graph built: %d document(s) scanned, %d resolved target(s), %d undefined reference(s)",
            len(notes),
            len(incoming),
            len(undefined),
        )
        return LinkGraph(notes=notes, incoming_links=incoming, undefined_links=undefined)

    def _extract_link_occurrences(self, content: str) -> List[str]:
        """Every reference occurrence in order, attachments and excluded folders dropped."""
        links: List[str] = []
        for match in WIKI_LINK_RE.finditer(content):
            link = match.group(1).strip()
            if not link:
                continue
            if is_excluded_file_type(link) or is_excluded(link, self.exclude_folders):
                continue
            links.append(link)
        return links

    @staticmethod
    def _resolve(link: str, identifiers: Dict[str, str]) -> Optional[str]:
        for candidate in (link, strip_extension(link), normalize_link_target(link)):
            target = identifiers.get(candidate)
            if target is not None:
                return target
        return None

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_undefined_references(self) -> List[UndefinedReference]:
        graph = await self.build_graph()
        return list(graph.undefined_links.values())

    def get_link_frequency(self, name: str) -> int:
        if self._graph is None:
            return 0
        ref = self._graph.undefined_links.get(name)
        if ref is not None:
            return ref.count
        return len(self._incoming_for(name))

    def get_notes_mentioning(self, name: str) -> List[str]:
        if self._graph is None:
            return []
        ref = self._graph.undefined_links.get(name)
        if ref is not None:
            return list(ref.sources)
        return sorted(self._incoming_for(name))

    def get_co_occurring_concepts(self, name: str, min_co_occurrence: int = 2) -> List[str]:
        """
        Other references that share documents with *name*.

        Counts, per other reference, the documents whose outgoing list
        contains both; returns names with at least *min_co_occurrence*
        shared documents, most frequent first.
        """
        if self._graph is None:
            return []
        counts: Counter = Counter()
        for note in self._graph.notes.values():
            if name not in note.outgoing_links:
                continue
            for other in note.outgoing_links:
                if other != name:
                    counts[other] += 1
        ranked = sorted(counts.items(), key=lambda item: -item[1])
        return [link for link, count in ranked if count >= min_co_occurrence]

    def _incoming_for(self, name: str) -> Set[str]:
        if self._graph is None:
            return set()
        direct = self._graph.incoming_links.get(name)
        if direct is not None:
            return direct
        target = self._resolve(name, self._identifiers)
        if target is None:
            return set()
        return self._graph.incoming_links.get(target, set())
