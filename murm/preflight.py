"""Pre-flight checks run before any lock or worktree is allocated.

Per feature: the spec must exist (blocking) and should have the required
sections; stories are counted; an implementation plan, when present, is
scraped for the files it intends to touch.

Across the batch: file overlaps, slug mentions between specs and a rough
time estimate. File extraction is best-effort text scraping of markdown,
so overlap and dependency findings are advisory and never block a run.

Copyright (c) 2025 Martin Bechard [martin.bechard@DevConsult.ca]
"""

import re
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from murm.errors import FeatureLimitExceeded
from murm.log import verbose_log

SPEC_FILE_NAME = "FEATURE_SPEC.md"
PLAN_FILE_NAME = "IMPLEMENTATION_PLAN.md"
STORY_PREFIX = "story-"

# Each required section is satisfied by any one of its markers
REQUIRED_SPEC_SECTIONS = {
    "intent": ("## 1. Feature Intent", "# Feature Intent"),
    "scope": ("## 2. Scope", "# Scope"),
    "behaviour": ("## 3. Behaviour", "Behaviour Overview"),
}

FILES_SECTION_MARKERS = ("files to create", "files to modify")

# Scope heuristic, in minutes. Not calibrated against real runs.
SCOPE_BASE_MINUTES = 10
SCOPE_MINUTES_PER_STORY = 5
SCOPE_MINUTES_PER_FILE = 2

TABLE_CELL_PATTERN = re.compile(r"\|\s*`?([^|`]+)`?\s*\|")
BULLET_PATH_PATTERN = re.compile(r"^[\s*-]+\s*`?([^\s`]+\.[a-z]+)`?", re.IGNORECASE)


@dataclass
class FeatureValidation:
    slug: str
    valid: bool = True
    spec_exists: bool = False
    spec_complete: bool = False
    stories_exist: bool = False
    story_count: int = 0
    plan_exists: bool = False
    files_to_modify: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


@dataclass
class FileOverlap:
    file: str
    features: list[str]


@dataclass
class Dependency:
    feature: str
    depends_on: str


@dataclass
class ScopeEstimate:
    slug: str
    story_count: int
    file_count: int
    estimated_minutes: int


@dataclass
class BatchValidation:
    features: list[FeatureValidation]
    file_overlaps: list[FileOverlap] = field(default_factory=list)
    dependencies: list[Dependency] = field(default_factory=list)
    scope_estimates: list[ScopeEstimate] = field(default_factory=list)
    recommendations: list[str] = field(default_factory=list)

    @property
    def invalid_features(self) -> list[FeatureValidation]:
        return [fv for fv in self.features if not fv.valid]

    @property
    def valid(self) -> bool:
        return not self.invalid_features

    @property
    def total_estimated_minutes(self) -> int:
        return sum(s.estimated_minutes for s in self.scope_estimates)

    @property
    def parallel_estimated_minutes(self) -> int:
        return max((s.estimated_minutes for s in self.scope_estimates), default=0)

    @property
    def has_advisories(self) -> bool:
        return bool(self.file_overlaps or self.dependencies)


@dataclass
class DiskSpaceCheck:
    available_mb: int
    required_mb: int
    sufficient: bool


def feature_dir(slug: str, features_dir: str, root: Path = Path(".")) -> Path:
    return Path(root) / features_dir / f"feature_{slug}"


def is_spec_complete(spec_content: str) -> bool:
    return all(
        any(marker in spec_content for marker in markers)
        for markers in REQUIRED_SPEC_SECTIONS.values()
    )


def extract_files_to_modify(plan_content: str) -> list[str]:
    """Pull file paths from the plan's "Files to Create/Modify" section.

    Reads the first cell of table rows and the path of bullet lines, and
    stops at the next level-2 heading. Returns paths in first-seen order,
    without duplicates. Paths written any other way are missed.
    """
    files: list[str] = []
    in_files_section = False

    for line in plan_content.splitlines():
        if any(marker in line.lower() for marker in FILES_SECTION_MARKERS):
            in_files_section = True
            continue

        if not in_files_section:
            continue
        if line.startswith("## "):
            break

        table_match = TABLE_CELL_PATTERN.search(line)
        if table_match:
            cell = table_match.group(1).strip()
            if (
                cell
                and ("/" in cell or "." in cell)
                and "---" not in cell
                and "path" not in cell.lower()
            ):
                files.append(cell)

        bullet_match = BULLET_PATH_PATTERN.match(line)
        if bullet_match:
            files.append(bullet_match.group(1).strip())

    return list(dict.fromkeys(files))


def validate_feature_spec(slug: str, features_dir: str, root: Path = Path(".")) -> FeatureValidation:
    feat_dir = feature_dir(slug, features_dir, root)
    spec_path = feat_dir / SPEC_FILE_NAME
    plan_path = feat_dir / PLAN_FILE_NAME
    result = FeatureValidation(slug=slug)

    if not spec_path.is_file():
        result.errors.append(f"Missing {SPEC_FILE_NAME}")
        result.valid = False
    else:
        result.spec_exists = True
        if is_spec_complete(spec_path.read_text(encoding="utf-8", errors="replace")):
            result.spec_complete = True
        else:
            result.warnings.append("Spec may be incomplete (missing required sections)")

    if feat_dir.is_dir():
        stories = [
            p for p in feat_dir.iterdir()
            if p.name.startswith(STORY_PREFIX) and p.name.endswith(".md")
        ]
        result.story_count = len(stories)
        result.stories_exist = bool(stories)
        if not stories:
            result.warnings.append("No user stories found (story-*.md)")

    if plan_path.is_file():
        result.plan_exists = True
        result.files_to_modify = extract_files_to_modify(
            plan_path.read_text(encoding="utf-8", errors="replace")
        )

    verbose_log(
        f"{slug}: spec={result.spec_exists} complete={result.spec_complete} "
        f"stories={result.story_count} files={len(result.files_to_modify)}",
        "PREFLIGHT",
    )
    return result


def detect_file_overlap(validations: list[FeatureValidation]) -> list[FileOverlap]:
    """Report every file claimed by two or more features."""
    file_to_features: dict[str, list[str]] = {}
    for fv in validations:
        for path in fv.files_to_modify:
            file_to_features.setdefault(path, []).append(fv.slug)
    return [
        FileOverlap(file=path, features=slugs)
        for path, slugs in file_to_features.items()
        if len(slugs) > 1
    ]


def detect_dependencies(
    validations: list[FeatureValidation], features_dir: str, root: Path = Path(".")
) -> list[Dependency]:
    """Record an edge A -> B whenever A's spec mentions B's slug (case-insensitive)."""
    slugs = [fv.slug for fv in validations]
    dependencies = []
    for fv in validations:
        if not fv.spec_exists:
            continue
        spec_path = feature_dir(fv.slug, features_dir, root) / SPEC_FILE_NAME
        try:
            content = spec_path.read_text(encoding="utf-8", errors="replace").lower()
        except OSError:
            continue
        for other in slugs:
            if other != fv.slug and other.lower() in content:
                dependencies.append(Dependency(feature=fv.slug, depends_on=other))
    return dependencies


def estimate_minutes(
    story_count: int,
    file_count: int,
    base: int = SCOPE_BASE_MINUTES,
    per_story: int = SCOPE_MINUTES_PER_STORY,
    per_file: int = SCOPE_MINUTES_PER_FILE,
) -> int:
    return base + story_count * per_story + file_count * per_file


def estimate_scope(validations: list[FeatureValidation], **coefficients) -> list[ScopeEstimate]:
    return [
        ScopeEstimate(
            slug=fv.slug,
            story_count=fv.story_count,
            file_count=len(fv.files_to_modify),
            estimated_minutes=estimate_minutes(
                fv.story_count, len(fv.files_to_modify), **coefficients
            ),
        )
        for fv in validations
    ]


def build_recommendations(
    slugs: list[str], overlaps: list[FileOverlap], dependencies: list[Dependency]
) -> list[str]:
    recommendations = []
    if overlaps:
        overlapping = list(dict.fromkeys(s for o in overlaps for s in o.features))
        if any(slug not in overlapping for slug in slugs):
            recommendations.append(
                f"Consider running {', '.join(overlapping)} sequentially due to file overlap"
            )
    if dependencies:
        edges = ", ".join(f"{d.feature} → {d.depends_on}" for d in dependencies)
        recommendations.append(f"Dependency detected: {edges}")
    return recommendations


def validate_batch(slugs: list[str], features_dir: str, root: Path = Path(".")) -> BatchValidation:
    validations = [validate_feature_spec(slug, features_dir, root) for slug in slugs]
    overlaps = detect_file_overlap(validations)
    dependencies = detect_dependencies(validations, features_dir, root)
    return BatchValidation(
        features=validations,
        file_overlaps=overlaps,
        dependencies=dependencies,
        scope_estimates=estimate_scope(validations),
        recommendations=build_recommendations(slugs, overlaps, dependencies),
    )


def remediation_hints(validation: BatchValidation) -> list[str]:
    hints = []
    for fv in validation.invalid_features:
        if not fv.spec_exists:
            hints.append(f'/implement-feature "{fv.slug}" --pause-after=alex')
        elif not fv.stories_exist:
            hints.append(f'/implement-feature "{fv.slug}" --pause-after=cass')
    return hints


def format_preflight_results(results: BatchValidation) -> str:
    lines = ["", "Pre-flight Validation", "=====================", ""]

    for fv in results.features:
        icon = "✓" if fv.valid else "✗"
        status = []
        if fv.spec_complete:
            status.append("Spec complete")
        if fv.stories_exist:
            status.append(f"{fv.story_count} stories")
        if fv.plan_exists:
            status.append("Plan exists")
        lines.append(f"{icon} {fv.slug}: {', '.join(status) if status else 'Not ready'}")
        lines.extend(f"    ✗ {err}" for err in fv.errors)
        lines.extend(f"    ⚠ {warning}" for warning in fv.warnings)

    if results.file_overlaps:
        lines += ["", "Conflict Analysis", "=================", "", "⚠ File overlap detected:"]
        for overlap in results.file_overlaps:
            lines.append(f"  • {overlap.file}: {', '.join(overlap.features)} both modify")

    if results.dependencies:
        lines += ["", "⚠ Dependencies detected:"]
        for dep in results.dependencies:
            lines.append(f"  • {dep.feature} depends on {dep.depends_on}")

    lines += [
        "",
        "Scope Estimation",
        "================",
        "",
        "  Feature         | Stories | Files | Est. Time",
        "  ----------------|---------|-------|----------",
    ]
    for scope in results.scope_estimates:
        lines.append(
            f"  {scope.slug:<15} |{scope.story_count:>7} |{scope.file_count:>5} "
            f"| ~{scope.estimated_minutes} min"
        )
    lines += [
        "",
        f"Total estimated: ~{results.total_estimated_minutes} min "
        f"(parallel: ~{results.parallel_estimated_minutes} min)",
    ]

    if results.recommendations:
        lines += ["", "Recommendations", "==============="]
        lines.extend(f"  • {rec}" for rec in results.recommendations)

    return "\n".join(lines) + "\n"


def check_feature_limit(slugs: list[str], max_features: int) -> None:
    if len(slugs) > max_features:
        raise FeatureLimitExceeded(len(slugs), max_features)


def check_disk_space(min_disk_space_mb: int, path: Optional[Path] = None) -> DiskSpaceCheck:
    """Compare free space on path's filesystem with the configured minimum.

    If the filesystem cannot be queried the check passes with
    available_mb=-1.
    """
    try:
        usage = shutil.disk_usage(str(path or Path(".")))
    except OSError as e:
        verbose_log(f"Could not check disk space: {e}", "PREFLIGHT")
        return DiskSpaceCheck(available_mb=-1, required_mb=min_disk_space_mb, sufficient=True)
    available_mb = usage.free // (1024 * 1024)
    return DiskSpaceCheck(
        available_mb=available_mb,
        required_mb=min_disk_space_mb,
        sufficient=available_mb >= min_disk_space_mb,
    )
