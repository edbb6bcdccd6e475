"""Pre-flight analysis of a candidate package set.

Computes three things before anything is submitted to the installer:

- update level (major/minor/patch) from dotted version strings
- an advisory risk band from update level, dependency count and local
  customizations
- a dependency-respecting install order, with warnings for prerequisites
  outside the candidate set and conflicts for dependency cycles

A dependency cycle never aborts the analysis: the cycle is reported and
the order degrades to best effort.
"""

import logging
from dataclasses import dataclass, field
from typing import Any

from update_center.config import RiskConfig
from update_center.db.models import RiskLevel, UpdateLevel
from update_center.services.package_inventory import PackageCandidate, PackageInventory

logger = logging.getLogger(__name__)

_LEVEL_BY_INDEX = (UpdateLevel.major, UpdateLevel.minor)


def _component_key(component: str) -> tuple[int, int | str]:
    # Numeric components compare as integers, anything else as strings
    stripped = component.strip()
    if stripped.isdigit():
        return (0, int(stripped))
    return (1, stripped)


def get_update_level(from_version: str | None, to_version: str | None) -> UpdateLevel | None:
    """Classify the change between two dotted version strings.

    Components are compared left to right with missing components treated
    as 0. The first differing component decides the level.

    Example:
        >>> get_update_level("1.2.3", "1.2.4")
        <UpdateLevel.patch: 'patch'>
        >>> get_update_level("1.2.3", "2.0.0")
        <UpdateLevel.major: 'major'>
        >>> get_update_level("1.2", "1.2.0") is None
        True

    Returns:
        The update level, or None when the versions are identical.
    """
    source = (from_version or "0").split(".")
    target = (to_version or "0").split(".")
    width = max(len(source), len(target))
    source += ["0"] * (width - len(source))
    target += ["0"] * (width - len(target))

    for index, (old, new) in enumerate(zip(source, target)):
        if _component_key(old) != _component_key(new):
            if index < len(_LEVEL_BY_INDEX):
                return _LEVEL_BY_INDEX[index]
            return UpdateLevel.patch
    return None


def score_risk(
    update_level: UpdateLevel,
    dependency_count: int,
    has_customizations: bool,
    config: RiskConfig | None = None,
) -> int:
    """Compute the weighted risk score for one package update."""
    config = config or RiskConfig()
    level_weights = {
        UpdateLevel.major: config.major_weight,
        UpdateLevel.minor: config.minor_weight,
        UpdateLevel.patch: config.patch_weight,
    }
    score = level_weights.get(update_level, 0)
    score += dependency_count * config.per_dependency_weight
    if has_customizations:
        score += config.customization_weight
    return score


def risk_band(score: int, config: RiskConfig | None = None) -> RiskLevel:
    """Map a risk score onto its band."""
    config = config or RiskConfig()
    if score >= config.critical_threshold:
        return RiskLevel.critical
    if score >= config.high_threshold:
        return RiskLevel.high
    if score >= config.medium_threshold:
        return RiskLevel.medium
    return RiskLevel.low


def topological_order(
    package_ids: list[str], dependency_map: dict[str, list[str]]
) -> tuple[list[str], list[str]]:
    """Order packages so each follows its in-set dependencies.

    Depth-first with three-color marking. Reaching a node that is still
    being visited records a cycle conflict and backs off without
    re-entering it, so a cycle yields a best-effort total order.

    Args:
        package_ids: Candidate package identifiers (input order is kept
            among independent packages).
        dependency_map: Package id -> ids it depends on.

    Returns:
        Tuple of (order, conflicts).
    """
    in_set = set(package_ids)
    visiting: set[str] = set()
    visited: set[str] = set()
    order: list[str] = []
    conflicts: list[str] = []

    def visit(package_id: str) -> None:
        if package_id in visiting:
            conflicts.append(f"Circular dependency detected involving {package_id}")
            return
        if package_id in visited:
            return
        visiting.add(package_id)
        for dependency in dependency_map.get(package_id, []):
            if dependency in in_set:
                visit(dependency)
        visiting.discard(package_id)
        visited.add(package_id)
        order.append(package_id)

    for package_id in package_ids:
        visit(package_id)
    return order, conflicts


@dataclass
class DependencyAnalysis:
    """Result of analyzing a candidate set.

    Attributes:
        order: Package ids in install order.
        warnings: Dependencies on packages outside the candidate set.
        conflicts: Circular dependencies found among the candidates.
        dependency_map: Package id -> every id it depends on.
    """

    order: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    conflicts: list[str] = field(default_factory=list)
    dependency_map: dict[str, list[str]] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "order": list(self.order),
            "warnings": list(self.warnings),
            "conflicts": list(self.conflicts),
            "dependency_map": {k: list(v) for k, v in self.dependency_map.items()},
        }


@dataclass
class UpdateSummary:
    """Available updates grouped for dashboards."""

    total: int = 0
    by_level: dict[str, int] = field(
        default_factory=lambda: {level.value: 0 for level in UpdateLevel}
    )
    by_vendor: dict[str, int] = field(default_factory=dict)
    risk_breakdown: dict[str, int] = field(
        default_factory=lambda: {level.value: 0 for level in RiskLevel}
    )
    packages: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "by_level": dict(self.by_level),
            "by_vendor": dict(self.by_vendor),
            "risk_breakdown": dict(self.risk_breakdown),
            "packages": list(self.packages),
        }


class DependencyAnalyzer:
    """Classifies, scores and orders candidate packages.

    Attributes:
        inventory: Source of dependency and customization facts.
        risk_config: Weights and bands for risk scoring.
    """

    def __init__(
        self, inventory: PackageInventory, risk_config: RiskConfig | None = None
    ) -> None:
        self.inventory = inventory
        self.risk_config = risk_config or RiskConfig()

    def analyze_dependencies(self, package_ids: list[str]) -> DependencyAnalysis:
        """Compute install order, outside-set warnings and cycle conflicts.

        Args:
            package_ids: Candidate package identifiers. Duplicates are ignored.

        Returns:
            DependencyAnalysis for the candidate set.
        """
        unique_ids = list(dict.fromkeys(package_ids))
        dependency_map = {
            package_id: self.inventory.dependencies(package_id)
            for package_id in unique_ids
        }
        order, conflicts = topological_order(unique_ids, dependency_map)

        in_set = set(unique_ids)
        warnings = []
        for package_id in unique_ids:
            for dependency in dependency_map[package_id]:
                if dependency not in in_set:
                    warnings.append(
                        f"{self.inventory.display_name(package_id)} depends on "
                        f"{self.inventory.display_name(dependency)} which is not "
                        "in this batch. Ensure it is already up to date."
                    )

        if conflicts:
            logger.warning(
                "Dependency analysis found %d cycle(s) among %d package(s)",
                len(conflicts),
                len(unique_ids),
            )
        return DependencyAnalysis(
            order=order,
            warnings=warnings,
            conflicts=conflicts,
            dependency_map=dependency_map,
        )

    def assess_risk(self, package_id: str, update_level: UpdateLevel) -> RiskLevel:
        """Advisory risk band for updating one package."""
        score = score_risk(
            update_level,
            len(self.inventory.dependencies(package_id)),
            self.inventory.has_customizations(package_id),
            self.risk_config,
        )
        return risk_band(score, self.risk_config)

    def summarize_updates(self, candidates: list[PackageCandidate]) -> UpdateSummary:
        """Group available updates by level, risk band and vendor.

        Candidates whose versions are identical are not updates and are
        left out.
        """
        summary = UpdateSummary()
        for candidate in candidates:
            level = get_update_level(candidate.from_version, candidate.to_version)
            if level is None:
                continue
            risk = self.assess_risk(candidate.package_id, level)
            vendor = candidate.vendor or "Unknown"

            summary.total += 1
            summary.by_level[level.value] += 1
            summary.by_vendor[vendor] = summary.by_vendor.get(vendor, 0) + 1
            summary.risk_breakdown[risk.value] += 1
            summary.packages.append(
                {
                    "candidate_id": candidate.candidate_id,
                    "package_id": candidate.package_id,
                    "package_name": candidate.package_name,
                    "from_version": candidate.from_version,
                    "to_version": candidate.to_version,
                    "update_level": level.value,
                    "risk_level": risk.value,
                    "vendor": vendor,
                }
            )
        return summary
