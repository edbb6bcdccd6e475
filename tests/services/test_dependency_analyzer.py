"""Tests for version classification, risk scoring and install ordering."""

import random

import pytest

from update_center.config import RiskConfig
from update_center.db.models import RiskLevel, UpdateLevel
from update_center.services.dependency_analyzer import (
    DependencyAnalyzer,
    get_update_level,
    risk_band,
    score_risk,
    topological_order,
)
from update_center.services.package_inventory import PackageCandidate
from tests.helpers import FakeInventory


class TestGetUpdateLevel:
    """Tests for dotted version comparison."""

    @pytest.mark.parametrize(
        "from_version,to_version,expected",
        [
            ("1.2.3", "1.2.4", UpdateLevel.patch),
            ("1.2.3", "1.3.0", UpdateLevel.minor),
            ("1.2.3", "2.0.0", UpdateLevel.major),
            ("1.2.3.4", "1.2.3.5", UpdateLevel.patch),
            ("1.2", "1.2.1", UpdateLevel.patch),
        ],
    )
    def test_first_differing_component_decides(self, from_version, to_version, expected):
        assert get_update_level(from_version, to_version) == expected

    def test_identical_versions_are_not_an_update(self):
        assert get_update_level("1.2.3", "1.2.3") is None

    def test_missing_components_are_zero(self):
        """1.2 and 1.2.0 are the same version."""
        assert get_update_level("1.2", "1.2.0") is None

    def test_numeric_components_compare_as_numbers(self):
        """Leading zeros do not make 1.02 different from 1.2."""
        assert get_update_level("1.02.0", "1.2.0") is None
        assert get_update_level("1.9.0", "1.10.0") == UpdateLevel.minor

    def test_non_numeric_components_compare_as_text(self):
        assert get_update_level("1.0.0-beta", "1.0.0-rc1") == UpdateLevel.patch

    def test_missing_from_version_counts_as_zero(self):
        assert get_update_level(None, "1.0.0") == UpdateLevel.major


class TestRiskScoring:
    """Tests for weighted risk scores and bands."""

    def test_patch_without_dependencies_is_low(self):
        assert risk_band(score_risk(UpdateLevel.patch, 0, False)) == RiskLevel.low

    def test_major_with_customizations_is_high(self):
        score = score_risk(UpdateLevel.major, 0, True)
        assert score == 50
        assert risk_band(score) == RiskLevel.high

    def test_dependencies_add_weight(self):
        assert score_risk(UpdateLevel.minor, 3, False) == 45

    def test_critical_band(self):
        assert risk_band(score_risk(UpdateLevel.major, 2, True)) == RiskLevel.critical

    def test_custom_thresholds(self):
        config = RiskConfig(medium_threshold=5, high_threshold=6, critical_threshold=7)
        assert risk_band(5, config) == RiskLevel.medium
        assert risk_band(100, config) == RiskLevel.critical

    def test_thresholds_must_be_ordered(self):
        with pytest.raises(ValueError):
            RiskConfig(medium_threshold=50, high_threshold=40)


class TestTopologicalOrder:
    """Tests for dependency-respecting ordering."""

    def test_dependencies_come_first(self):
        order, conflicts = topological_order(
            ["c", "b", "a"], {"c": ["b"], "b": ["a"], "a": []}
        )
        assert order == ["a", "b", "c"]
        assert conflicts == []

    def test_independent_packages_keep_input_order(self):
        order, _ = topological_order(["x", "y", "z"], {})
        assert order == ["x", "y", "z"]

    def test_out_of_set_dependencies_are_ignored(self):
        order, conflicts = topological_order(["a"], {"a": ["elsewhere"]})
        assert order == ["a"]
        assert conflicts == []

    def test_cycle_reports_conflict_and_returns_total_order(self):
        order, conflicts = topological_order(
            ["a", "b", "c"], {"a": ["b"], "b": ["c"], "c": ["a"]}
        )
        assert sorted(order) == ["a", "b", "c"]
        assert conflicts
        assert "Circular dependency detected involving" in conflicts[0]

    def test_self_dependency_is_a_cycle(self):
        order, conflicts = topological_order(["a"], {"a": ["a"]})
        assert order == ["a"]
        assert conflicts == ["Circular dependency detected involving a"]

    def test_random_acyclic_graphs_respect_every_edge(self):
        rng = random.Random(7)
        for _ in range(50):
            ids = [f"p{i}" for i in range(8)]
            # Edges only point to lower indices, so the graph is acyclic
            dependency_map = {
                pid: [ids[j] for j in range(i) if rng.random() < 0.3]
                for i, pid in enumerate(ids)
            }
            shuffled = ids[:]
            rng.shuffle(shuffled)
            order, conflicts = topological_order(shuffled, dependency_map)
            assert conflicts == []
            assert sorted(order) == sorted(ids)
            position = {pid: i for i, pid in enumerate(order)}
            for pid, deps in dependency_map.items():
                for dep in deps:
                    assert position[dep] < position[pid]


class TestDependencyAnalyzer:
    """Tests for the analyzer over an inventory."""

    @pytest.fixture
    def analyzer(self, inventory):
        return DependencyAnalyzer(inventory)

    def test_orders_and_maps_dependencies(self, analyzer):
        analysis = analyzer.analyze_dependencies(["pkg-dash", "pkg-reports", "pkg-core"])
        assert analysis.order == ["pkg-core", "pkg-reports", "pkg-dash"]
        assert analysis.dependency_map["pkg-dash"] == ["pkg-reports"]
        assert analysis.warnings == []
        assert analysis.conflicts == []

    def test_warns_about_dependencies_outside_the_set(self, analyzer):
        analysis = analyzer.analyze_dependencies(["pkg-reports"])
        assert analysis.warnings == [
            "Reports depends on Core Platform which is not in this batch. "
            "Ensure it is already up to date."
        ]

    def test_duplicates_are_ignored(self, analyzer):
        analysis = analyzer.analyze_dependencies(["pkg-core", "pkg-core"])
        assert analysis.order == ["pkg-core"]

    def test_cycle_does_not_abort(self):
        inv = FakeInventory()
        inv.add_package("a", "A", "1.0", depends_on=["b"])
        inv.add_package("b", "B", "1.0", depends_on=["a"])
        analysis = DependencyAnalyzer(inv).analyze_dependencies(["a", "b"])
        assert sorted(analysis.order) == ["a", "b"]
        assert len(analysis.conflicts) == 1

    def test_assess_risk_uses_inventory_facts(self, inventory):
        inventory.customized.add("pkg-reports")
        analyzer = DependencyAnalyzer(inventory)
        # minor 15 + 1 dependency 10 + customizations 20
        assert analyzer.assess_risk("pkg-reports", UpdateLevel.minor) == RiskLevel.high

    def test_summary_groups_and_skips_identical_versions(self, analyzer):
        candidates = [
            PackageCandidate("v1", "pkg-core", "Core Platform", "1.4.2", "2.0.0", "Acme"),
            PackageCandidate("v2", "pkg-dash", "Dashboards", "1.0.0", "1.0.1", ""),
            PackageCandidate("v3", "pkg-reports", "Reports", "3.1.0", "3.1.0", "Acme"),
        ]
        summary = analyzer.summarize_updates(candidates).to_dict()
        assert summary["total"] == 2
        assert summary["by_level"] == {"major": 1, "minor": 0, "patch": 1}
        assert summary["by_vendor"] == {"Acme": 1, "Unknown": 1}
        assert sum(summary["risk_breakdown"].values()) == 2
        assert [p["candidate_id"] for p in summary["packages"]] == ["v1", "v2"]
