"""
Undefined concept finder: references that are mentioned often but have no
document of their own.
"""
from __future__ import annotations

import logging
import re
from typing import Iterable, List

from gapscan.models.domain import UndefinedConcept, UndefinedReference
from gapscan.services.link_graph import LinkGraphBuilder
from gapscan.utils.helpers import is_excluded

logger = logging.getLogger(__name__)

# Template, private, daily-note and index/meta names are never gaps
SYSTEM_LINK_PATTERNS = (
    re.compile(r"^Template", re.IGNORECASE),
    re.compile(r"^_"),
    re.compile(r"^\d{4}-\d{2}-\d{2}$"),
    re.compile(r"^MOC$", re.IGNORECASE),
    re.compile(r"^Index$", re.IGNORECASE),
    re.compile(r"^README$", re.IGNORECASE),
    re.compile(r"^TODO$", re.IGNORECASE),
    re.compile(r"^CHANGELOG$", re.IGNORECASE),
)


def is_system_link(name: str) -> bool:
    return any(p.search(name) for p in SYSTEM_LINK_PATTERNS)


class UndefinedConceptFinder:
    CO_OCCURRENCE_THRESHOLD: int = 2

    def __init__(self, link_graph_builder: LinkGraphBuilder) -> None:
        self.link_graph = link_graph_builder

    async def find(
        self,
        min_mentions: int = 2,
        max_concepts: int = 50,
        exclude_folders: Iterable[str] = (),
        analyze_co_occurrence: bool = True,
    ) -> List[UndefinedConcept]:
        folders = list(exclude_folders)
        references = await self.link_graph.get_undefined_references()

        concepts: List[UndefinedConcept] = []
        for ref in references:
            if not self._keep(ref, min_mentions, folders):
                continue
            related: List[str] = []
            if analyze_co_occurrence:
                related = self.link_graph.get_co_occurring_concepts(
                    ref.link_text, self.CO_OCCURRENCE_THRESHOLD
                )
            concepts.append(
                UndefinedConcept(
                    name=ref.link_text,
                    mention_count=ref.count,
                    mentioned_in=list(ref.sources),
                    related_concepts=related,
                )
            )

        concepts.sort(key=lambda c: -c.mention_count)
        logger.info(
            "Undefined concepts: %d of %d reference(s) kept (min_mentions=%d)",
            len(concepts),
            len(references),
            min_mentions,
        )
        return concepts[:max_concepts]

    @staticmethod
    def _keep(ref: UndefinedReference, min_mentions: int, folders: List[str]) -> bool:
        if ref.count < min_mentions:
            return False
        if folders:
            remaining = [s for s in ref.sources if not is_excluded(s, folders)]
            if len(remaining) < min_mentions:
                return False
        return not is_system_link(ref.link_text)
