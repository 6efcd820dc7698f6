"""Tests for source organization, reorganization and search."""
import json
from datetime import datetime, timezone

import pytest
import pytest_asyncio

from app.models.schemas import (
    ClusteringMethod,
    CreateThemeChange,
    DeleteThemeChange,
    ManualOverrides,
    MergeThemesChange,
    MethodologyGroup,
    MethodologyType,
    MoveSourceChange,
    OrganizationConfidence,
    RelevanceToPresent,
    ReorganizeChanges,
    SearchFilters,
    StrengthsWeaknesses,
    SuggestionType,
    ThemeCluster,
    TimelineGroup,
    TimelineYearRange,
)
from app.services.source_organizer import (
    SourceOrganizer,
    detect_source_methodology,
    relevance_for,
    search_organized_sources,
    time_period,
)
from tests.conftest import TODAY, FakeStore, StubEmbedder, StubLLM, make_source

QUESTION = "How does sleep affect students?"

CLUSTER_REPLY = json.dumps(
    {
        "clusters": [
            {
                "name": "Sleep and Learning",
                "description": "Sleep habits and academic outcomes",
                "source_indices": [0, 1, 3, 99, 1, True],
                "keywords": ["sleep", "grades"],
                "relevance_score": 130,
            },
            {"name": "Nobody", "source_indices": [42]},
            {
                "name": "Interventions and Stimulants",
                "source_indices": [2, 4],
                "relevance_score": "high",
            },
        ]
    }
)


def _organizer(reply=None, store=None, embedder=None):
    return SourceOrganizer(
        embedder=embedder or StubEmbedder(),
        llm=StubLLM(reply=reply),
        store=store,
        today=TODAY,
    )


def _theme(theme_id, sources):
    now = datetime.now(timezone.utc)
    return ThemeCluster(
        id=theme_id,
        name=theme_id.title(),
        description="",
        sources=sources,
        relevance_score=70,
        created_at=now,
        updated_at=now,
    )


def _ids(sources):
    return [s.id for s in sources]


@pytest_asyncio.fixture
async def organized(sample_sources):
    return await _organizer(CLUSTER_REPLY).organize_sources(sample_sources, QUESTION)


# ---------------------------------------------------------------------------
# organize_sources
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_ai_clusters_are_validated(organized):
    themes = organized.themes
    assert [t.id for t in themes] == ["theme-0", "theme-1"]
    assert _ids(themes[0].sources) == ["s1", "s2", "s4"]
    assert themes[0].relevance_score == 100
    assert themes[0].keywords == ["sleep", "grades"]
    assert _ids(themes[1].sources) == ["s3", "s5"]
    assert themes[1].relevance_score == 70
    assert organized.metadata.clustering_method == ClusteringMethod.AI_SIMILARITY
    assert organized.metadata.confidence == OrganizationConfidence.HIGH
    assert organized.metadata.total_sources == 5
    assert organized.metadata.embedding_fallbacks == 0
    assert organized.metadata.suggestions == []


@pytest.mark.asyncio
async def test_prompt_lists_titles_and_pairs(sample_sources):
    organizer = _organizer(CLUSTER_REPLY)
    await organizer.organize_sources(sample_sources, QUESTION)
    prompt = organizer._llm.prompts[0]
    assert "0: Sleep quality and academic performance in college students" in prompt
    assert QUESTION in prompt
    assert " & " in prompt.split("Most similar source pairs")[1]


@pytest.mark.asyncio
async def test_similarity_fallback_partitions_sources(sample_sources):
    organizer = _organizer(embedder=StubEmbedder(as_fallback=True))
    organization = await organizer.organize_sources(sample_sources, QUESTION)

    assert organization.metadata.clustering_method == ClusteringMethod.SIMILARITY_THRESHOLD
    assert organization.metadata.embedding_fallbacks == 5
    members = [s.id for t in organization.themes for s in t.sources]
    assert sorted(members) == ["s1", "s2", "s3", "s4", "s5"]
    assert [t.name for t in organization.themes] == [
        f"Research Cluster {i + 1}" for i in range(len(organization.themes))
    ]


@pytest.mark.asyncio
async def test_unparseable_reply_uses_similarity_clusters(sample_sources):
    organization = await _organizer("I cannot cluster these.").organize_sources(sample_sources, QUESTION)
    assert organization.metadata.clustering_method == ClusteringMethod.SIMILARITY_THRESHOLD


def test_similarity_threshold_is_strict(sample_sources):
    matrix = [
        [1.0, 0.31, 0.3],
        [0.31, 1.0, 0.3],
        [0.3, 0.3, 1.0],
    ]
    clusters = _organizer().similarity_clusters(sample_sources[:3], matrix)
    assert [c.source_indices for c in clusters] == [[0, 1], [2]]
    assert [c.name for c in clusters] == ["Research Cluster 1", "Research Cluster 2"]
    assert all(c.relevance_score == 75 for c in clusters)


@pytest.mark.asyncio
@pytest.mark.parametrize("count", [0, 1])
async def test_minimal_organization_below_two_sources(sample_sources, count):
    store = FakeStore()
    organizer = _organizer(CLUSTER_REPLY, store=store)
    organization = await organizer.organize_sources(sample_sources[:count], QUESTION, project_id="p1")

    assert [t.id for t in organization.themes] == ["minimal-theme"]
    assert len(organization.themes[0].sources) == count
    assert organization.metadata.clustering_method == ClusteringMethod.MANUAL
    assert organization.metadata.confidence == OrganizationConfidence.LOW
    assert len(organization.methodologies) == count
    assert len(organization.timeline) == count
    assert organizer._llm.prompts == []
    assert store.tasks == []


@pytest.mark.asyncio
async def test_unexpected_error_returns_fallback_organization(sample_sources, monkeypatch):
    organizer = _organizer(CLUSTER_REPLY)

    async def boom(*args, **kwargs):
        raise ValueError("embedding matrix corrupted")

    monkeypatch.setattr(organizer, "_organize", boom)
    organization = await organizer.organize_sources(sample_sources, QUESTION)

    assert organization.metadata.clustering_method == ClusteringMethod.MANUAL
    assert organization.metadata.confidence == OrganizationConfidence.LOW
    assert all(t.id.startswith("fallback-theme-") for t in organization.themes)
    assert sorted(s.id for t in organization.themes for s in t.sources) == ["s1", "s2", "s3", "s4", "s5"]
    assert organization.methodologies[0].id == "fallback-methodology"
    assert organization.timeline[0].year_range.start == 2017
    assert organization.timeline[0].year_range.end == 2023


@pytest.mark.asyncio
async def test_organization_is_persisted(sample_sources):
    store = FakeStore()
    organization = await _organizer(CLUSTER_REPLY, store=store).organize_sources(
        sample_sources, QUESTION, project_id="p1"
    )
    await store.wait_idle()
    assert store.organizations["p1"] == organization


@pytest.mark.asyncio
async def test_manual_overrides_mark_hybrid(sample_sources):
    organizer = _organizer(CLUSTER_REPLY)
    organization = await organizer.organize_sources(
        sample_sources, QUESTION, manual_overrides=ManualOverrides(timeline=[])
    )
    assert organization.timeline == []
    assert len(organization.themes) == 2
    assert organization.metadata.clustering_method == ClusteringMethod.HYBRID


@pytest.mark.asyncio
async def test_empty_overrides_change_nothing(sample_sources):
    organization = await _organizer(CLUSTER_REPLY).organize_sources(
        sample_sources, QUESTION, manual_overrides=ManualOverrides()
    )
    assert organization.metadata.clustering_method == ClusteringMethod.AI_SIMILARITY


# ---------------------------------------------------------------------------
# Methodologies and timeline
# ---------------------------------------------------------------------------

def test_methodology_groups_in_first_seen_order(sample_sources):
    groups = _organizer().detect_methodologies(sample_sources)
    assert [g.methodology_type for g in groups] == [
        MethodologyType.SURVEY,
        MethodologyType.EXPERIMENTAL,
        MethodologyType.OTHER,
    ]
    assert _ids(groups[0].sources) == ["s1", "s2", "s4"]
    assert groups[0].id == "methodology-survey"
    assert groups[0].name == "Survey Research"
    assert _ids(groups[2].sources) == ["s5"]


def test_methodology_ties_keep_table_order():
    tie = make_source("t", "A survey and questionnaire about a controlled trial")
    assert detect_source_methodology(tie) == (MethodologyType.EXPERIMENTAL, 2)


def test_multi_word_phrases_weigh_more():
    source = make_source("c", "A cross-sectional snapshot survey")
    assert detect_source_methodology(source) == (MethodologyType.CROSS_SECTIONAL, 2)
    assert detect_source_methodology(make_source("n", "Notes on widgets")) == (MethodologyType.OTHER, 0)


def test_timeline_buckets(sample_sources):
    timeline = _organizer().create_timeline(sample_sources)
    assert [g.period for g in timeline] == ["2014-2018", "2019-2021", "2022-2024"]
    assert [_ids(g.sources) for g in timeline] == [["s4"], ["s1", "s2"], ["s3", "s5"]]
    assert [g.relevance_to_present for g in timeline] == [
        RelevanceToPresent.MODERATE,
        RelevanceToPresent.HIGH,
        RelevanceToPresent.HIGH,
    ]
    middle = timeline[1]
    assert middle.id == "timeline-2019-2021"
    assert middle.trends[0] == "2 studies published in this period"
    assert middle.trends[-1] == "Average 2020 publication year"


def test_time_periods_are_relative_to_current_year():
    assert time_period(2030, 2024).label == "2022-2024"
    assert time_period(2014, 2024).label == "2014-2018"
    oldest = time_period(2013, 2024)
    assert oldest.label == "Before 2014"
    assert relevance_for(oldest, 2024) == RelevanceToPresent.LOW


def test_metadata_suggestions(sample_sources):
    organizer = _organizer()
    themes = [_theme(f"t{i}", []) for i in range(6)] + [_theme("big", sample_sources[:4])]
    other = MethodologyGroup(
        id="methodology-other",
        methodology_type=MethodologyType.OTHER,
        name="Other",
        description="",
        sources=sample_sources,
        strengths_weaknesses=StrengthsWeaknesses(),
    )
    old = TimelineGroup(
        id="timeline-old",
        period="2014-2018",
        year_range=TimelineYearRange(start=2014, end=2018),
        sources=sample_sources,
        evolution_notes="",
        relevance_to_present=RelevanceToPresent.MODERATE,
    )
    metadata = organizer.generate_metadata(
        sample_sources, themes, [other], [old], ClusteringMethod.SIMILARITY_THRESHOLD
    )
    assert [(s.type, s.confidence) for s in metadata.suggestions] == [
        (SuggestionType.MERGE_THEMES, 75),
        (SuggestionType.SPLIT_THEME, 80),
        (SuggestionType.ADD_METHODOLOGY, 70),
        (SuggestionType.UPDATE_TIMELINE, 70),
    ]
    assert "2022-2024" in metadata.suggestions[-1].action


def test_metadata_confidence_by_collection_size(sample_sources):
    organizer = _organizer()
    levels = [
        organizer.generate_metadata(sample_sources[:n], [], [], [], ClusteringMethod.MANUAL).confidence
        for n in (5, 3, 2)
    ]
    assert levels == [
        OrganizationConfidence.HIGH,
        OrganizationConfidence.MODERATE,
        OrganizationConfidence.LOW,
    ]


# ---------------------------------------------------------------------------
# reorganize_sources
# ---------------------------------------------------------------------------

def test_move_source_between_themes(organized):
    changes = ReorganizeChanges(
        move_source=MoveSourceChange(source_id="s4", from_theme="theme-0", to_theme="theme-1")
    )
    updated = _organizer().reorganize_sources(organized, changes)

    assert _ids(updated.themes[0].sources) == ["s1", "s2"]
    assert _ids(updated.themes[1].sources) == ["s3", "s5", "s4"]
    assert updated.metadata.clustering_method == ClusteringMethod.HYBRID
    assert _ids(organized.themes[0].sources) == ["s1", "s2", "s4"]


def test_create_theme_skips_unknown_sources(organized):
    changes = ReorganizeChanges(
        create_theme=CreateThemeChange(name="Mine", source_ids=["s1", "s5", "nope", "s1"])
    )
    updated = _organizer().reorganize_sources(organized, changes)
    created = updated.themes[-1]

    assert created.id == "user-theme-1"
    assert created.is_user_defined
    assert created.relevance_score == 80
    assert _ids(created.sources) == ["s1", "s5"]


def test_merge_themes_keeps_position(organized):
    changes = ReorganizeChanges(
        create_theme=CreateThemeChange(name="Extra", source_ids=["s2"]),
        merge_themes=MergeThemesChange(theme_ids=["theme-0", "theme-1"], new_name="Everything"),
    )
    updated = _organizer().reorganize_sources(organized, changes)

    assert [t.id for t in updated.themes] == ["merged-theme-1", "user-theme-1"]
    merged = updated.themes[0]
    assert merged.name == "Everything"
    assert _ids(merged.sources) == ["s1", "s2", "s4", "s3", "s5"]
    assert merged.relevance_score == 100
    assert merged.description == "Merged from: Sleep and Learning, Interventions and Stimulants"


def test_merge_needs_two_known_themes(organized):
    changes = ReorganizeChanges(
        merge_themes=MergeThemesChange(theme_ids=["theme-0", "ghost"], new_name="Nope")
    )
    updated = _organizer().reorganize_sources(organized, changes)
    assert [t.id for t in updated.themes] == ["theme-0", "theme-1"]


def test_move_then_delete(organized):
    changes = ReorganizeChanges(
        move_source=MoveSourceChange(source_id="s3", from_theme="theme-1", to_theme="theme-0"),
        delete_theme=DeleteThemeChange(theme_id="theme-1"),
    )
    updated = _organizer().reorganize_sources(organized, changes)
    assert [t.id for t in updated.themes] == ["theme-0"]
    assert _ids(updated.themes[0].sources) == ["s1", "s2", "s4", "s3"]


def test_unknown_ids_are_skipped(organized):
    changes = ReorganizeChanges(
        move_source=MoveSourceChange(source_id="s9", from_theme="theme-0", to_theme="theme-1"),
        delete_theme=DeleteThemeChange(theme_id="ghost"),
    )
    updated = _organizer().reorganize_sources(organized, changes)
    assert [_ids(t.sources) for t in updated.themes] == [["s1", "s2", "s4"], ["s3", "s5"]]


# ---------------------------------------------------------------------------
# search_organized_sources
# ---------------------------------------------------------------------------

def test_search_by_text(organized):
    assert _ids(search_organized_sources(organized, "CAFFEINE")) == ["s5"]
    assert _ids(search_organized_sources(organized, "researcher")) == ["s1", "s2", "s4", "s3", "s5"]
    assert _ids(search_organized_sources(organized, "predicts lower")) == ["s1"]


def test_search_by_theme_and_methodology(organized):
    assert _ids(search_organized_sources(organized, filters=SearchFilters(themes=["theme-1"]))) == ["s3", "s5"]
    assert _ids(
        search_organized_sources(organized, filters=SearchFilters(methodologies=["survey"]))
    ) == ["s1", "s2", "s4"]
    assert _ids(
        search_organized_sources(
            organized, filters=SearchFilters(methodologies=["methodology-experimental"])
        )
    ) == ["s3"]


def test_search_year_bounds_are_inclusive(organized):
    filters = SearchFilters(min_year=2021, max_year=2022)
    assert _ids(search_organized_sources(organized, filters=filters)) == ["s1", "s3"]


def test_search_deduplicates_overlapping_themes(organized):
    changes = ReorganizeChanges(create_theme=CreateThemeChange(name="Dup", source_ids=["s1", "s3"]))
    updated = _organizer().reorganize_sources(organized, changes)
    assert _ids(search_organized_sources(updated)) == ["s1", "s2", "s4", "s3", "s5"]
