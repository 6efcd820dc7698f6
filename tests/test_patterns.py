"""Tests for the pattern extractors."""
from app.models.schemas import CoverageLevel
from app.services import patterns
from app.services.patterns import (
    analyze_contexts,
    analyze_methodologies,
    analyze_population_coverage,
    analyze_temporal_coverage,
    analyze_variables,
    coverage_for,
    extract_themes,
    synthesize_sources,
)
from tests.conftest import make_source


def _plain(source_id="x1", title="Quantum widget calibration", year=2021):
    return make_source(source_id, title, year=year)


def test_extract_themes_finds_sleep(sample_sources):
    themes = extract_themes(sample_sources)
    assert "Sleep and Health" in themes
    assert "Mental Health" in themes


def test_extract_themes_is_deterministic(sample_sources):
    assert extract_themes(sample_sources) == extract_themes(list(sample_sources))


def test_extract_themes_without_match_returns_general_bucket():
    assert extract_themes([_plain()]) == [patterns.GENERAL_THEME]


def test_coverage_thresholds():
    assert coverage_for(5) == CoverageLevel.EXTENSIVE
    assert coverage_for(3) == CoverageLevel.EXTENSIVE
    assert coverage_for(2) == CoverageLevel.MODERATE
    assert coverage_for(1) == CoverageLevel.LIMITED
    assert coverage_for(0) == CoverageLevel.LIMITED


def test_population_coverage_counts_sources(sample_sources):
    populations = analyze_population_coverage(sample_sources)
    assert [p.demographic for p in populations] == ["College Students (18-22)"]
    assert populations[0].source_count == 5
    assert populations[0].coverage == CoverageLevel.EXTENSIVE
    assert populations[0].age_ranges == ["18-22"]


def test_population_coverage_limited_group():
    sources = [
        make_source("a", "Screen habits of adolescents"),
        _plain("b"),
    ]
    populations = analyze_population_coverage(sources)
    assert populations[0].demographic == "Adolescents (13-18)"
    assert populations[0].coverage == CoverageLevel.LIMITED


def test_population_coverage_never_materializes_missing(sample_sources):
    populations = analyze_population_coverage(sample_sources)
    assert all(p.coverage != CoverageLevel.MISSING for p in populations)


def test_population_coverage_general_bucket():
    populations = analyze_population_coverage([_plain("a"), _plain("b")])
    assert len(populations) == 1
    assert populations[0].demographic == patterns.GENERAL_POPULATION
    assert populations[0].coverage == CoverageLevel.MODERATE


def test_methodologies_follow_table_order(sample_sources):
    methodologies = analyze_methodologies(sample_sources)
    assert [m.approach for m in methodologies] == [
        "Randomized Controlled Trial",
        "Survey/Questionnaire",
        "Cross-sectional Study",
        "Experimental Design",
    ]
    survey = methodologies[1]
    assert survey.source_ids == ["s1", "s2", "s4"]
    assert survey.frequency == 5


def test_methodologies_read_declared_study_type():
    source = make_source("a", "Quantum widget calibration", study_type="longitudinal")
    approaches = [m.approach for m in analyze_methodologies([source])]
    assert approaches == ["Longitudinal Study"]


def test_methodologies_general_bucket():
    methodologies = analyze_methodologies([_plain("a"), _plain("b")])
    assert len(methodologies) == 1
    assert methodologies[0].approach == patterns.GENERAL_METHODOLOGY
    assert methodologies[0].frequency == 0
    assert methodologies[0].source_ids == ["a", "b"]


def test_source_ids_reference_input(sample_sources):
    ids = {s.id for s in sample_sources}
    synthesis = synthesize_sources(sample_sources, 2024)
    for group in synthesis.methodologies + synthesis.contexts + synthesis.variables:
        assert set(group.source_ids) <= ids


def test_temporal_coverage_recent_collection(sample_sources):
    temporal = analyze_temporal_coverage(sample_sources, current_year=2024)
    assert temporal.year_range.min == 2017
    assert temporal.year_range.max == 2023
    assert list(temporal.distribution) == ["2017", "2019", "2021", "2022", "2023"]
    assert temporal.gaps == ["No research from before 2015 - missing historical context"]
    assert temporal.outdated_areas == []


def test_temporal_coverage_old_collection():
    sources = [_plain("a", year=2010), _plain("b", year=2012)]
    temporal = analyze_temporal_coverage(sources, current_year=2024)
    assert temporal.gaps == ["No recent research (post-2020) - may not reflect current trends"]
    assert temporal.outdated_areas == ["All research is over 5 years old - findings may be outdated"]


def test_temporal_coverage_empty_collection():
    temporal = analyze_temporal_coverage([], current_year=2024)
    assert temporal.year_range.min == temporal.year_range.max == 2024
    assert temporal.distribution == {}


def test_contexts_detect_settings(sample_sources):
    contexts = {c.setting: c for c in analyze_contexts(sample_sources)}
    assert "s1" in contexts["Educational Settings"].source_ids
    assert contexts["Online/Virtual Environments"].source_ids == ["s2"]


def test_contexts_general_bucket():
    contexts = analyze_contexts([_plain()])
    assert [c.setting for c in contexts] == [patterns.GENERAL_CONTEXT]


def test_variables_interact_within_one_source(sample_sources):
    variables = {v.variable: v for v in analyze_variables(sample_sources)}
    sleep = variables["sleep"]
    assert sleep.interactions == ["stress", "anxiety", "performance", "technology use"]
    assert sleep.unexplored_combinations == ["attention"]
    assert sleep.source_ids == ["s1", "s2", "s3", "s4"]


def test_variables_cap_unexplored_combinations(sample_sources):
    attention = next(v for v in analyze_variables(sample_sources) if v.variable == "attention")
    assert attention.interactions == []
    assert attention.unexplored_combinations == ["sleep", "stress", "anxiety"]


def test_variables_general_bucket():
    variables = analyze_variables([_plain()])
    assert [v.variable for v in variables] == [patterns.GENERAL_VARIABLE]
