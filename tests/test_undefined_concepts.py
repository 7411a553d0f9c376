"""Tests for UndefinedConceptFinder."""
import pytest

from gapscan.services.document_source import InMemoryDocumentSource
from gapscan.services.link_graph import LinkGraphBuilder
from gapscan.services.undefined_concepts import UndefinedConceptFinder, is_system_link


def _finder(docs, **kwargs) -> UndefinedConceptFinder:
    return UndefinedConceptFinder(LinkGraphBuilder(InMemoryDocumentSource(docs), **kwargs))


@pytest.mark.asyncio
async def test_scenario_b_foo_reported(foo_builder):
    concepts = await UndefinedConceptFinder(foo_builder).find(min_mentions=2)
    assert len(concepts) == 1
    foo = concepts[0]
    assert foo.name == "Foo"
    assert foo.mention_count == 3
    assert foo.mentioned_in == ["A.md", "B.md"]
    assert foo.suggested_content is None


@pytest.mark.asyncio
async def test_scenario_c_high_threshold_excludes_foo(foo_builder):
    assert await UndefinedConceptFinder(foo_builder).find(min_mentions=4) == []


@pytest.mark.asyncio
async def test_lowering_min_mentions_never_shrinks_result():
    docs = {
        "1.md": "[[Alpha]] [[Alpha]] [[Beta]] [[Gamma]] [[Gamma]] [[Gamma]]",
        "2.md": "[[Alpha]] [[Gamma]] [[Delta]]",
    }
    finder = _finder(docs)
    previous = set()
    for min_mentions in (5, 4, 3, 2, 1):
        names = {c.name for c in await finder.find(min_mentions=min_mentions)}
        assert previous <= names
        previous = names
    assert previous == {"Alpha", "Beta", "Gamma", "Delta"}


@pytest.mark.asyncio
async def test_sorted_by_mentions_and_truncated():
    docs = {
        "1.md": "[[Few]] [[Few]] [[Many]] [[Many]] [[Many]] [[Most]] [[Most]] [[Most]] [[Most]]",
    }
    finder = _finder(docs)
    concepts = await finder.find(min_mentions=2)
    assert [c.name for c in concepts] == ["Most", "Many", "Few"]

    concepts = await finder.find(min_mentions=2, max_concepts=2)
    assert [c.name for c in concepts] == ["Most", "Many"]


@pytest.mark.asyncio
async def test_system_links_are_ignored():
    docs = {
        "1.md": "[[Template Daily]] [[_private]] [[2024-01-15]] [[MOC]] [[index]] [[Real Topic]]",
        "2.md": "[[Template Daily]] [[_private]] [[2024-01-15]] [[MOC]] [[index]] [[Real Topic]]",
    }
    concepts = await _finder(docs).find(min_mentions=2)
    assert [c.name for c in concepts] == ["Real Topic"]


@pytest.mark.parametrize(
    "name, expected",
    [
        ("Templates", True),
        ("template-weekly", True),
        ("_hidden", True),
        ("2023-12-31", True),
        ("readme", True),
        ("TODO", True),
        ("Changelog", True),
        ("Index of things", False),
        ("2023-12-31 notes", False),
        ("Machine Learning", False),
    ],
)
def test_is_system_link(name, expected):
    assert is_system_link(name) is expected


@pytest.mark.asyncio
async def test_exclusion_requires_enough_remaining_sources():
    docs = {
        "drafts/1.md": "[[Idea]]",
        "drafts/2.md": "[[Idea]]",
        "final.md": "[[Idea]]",
    }
    finder = _finder(docs)
    # counted across every source; only one remains outside drafts/
    assert await finder.find(min_mentions=2, exclude_folders=["drafts"]) == []
    kept = await finder.find(min_mentions=1, exclude_folders=["drafts"])
    assert [c.name for c in kept] == ["Idea"]


@pytest.mark.asyncio
async def test_related_concepts_from_co_occurrence():
    docs = {
        "1.md": "[[Foo]] [[Bar]]",
        "2.md": "[[Foo]] [[Bar]]",
        "3.md": "[[Foo]] [[Solo]]",
    }
    finder = _finder(docs)
    concepts = {c.name: c for c in await finder.find(min_mentions=1)}
    assert concepts["Foo"].related_concepts == ["Bar"]
    assert concepts["Solo"].related_concepts == []

    plain = {c.name: c for c in await finder.find(min_mentions=1, analyze_co_occurrence=False)}
    assert plain["Foo"].related_concepts == []
