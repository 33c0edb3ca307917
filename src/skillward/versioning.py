from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable

import yaml

from .registry import TrustTier, validate_trust_tier

logger = logging.getLogger(__name__)

_FRONTMATTER_RE = re.compile(r"^---\r?\n(.*?)\r?\n---", re.DOTALL)
_HEADING_RE = re.compile(r"^#{2,3}\s+(.+)")
_ANY_HEADING_RE = re.compile(r"^#{1,3}\s+")
_DEPS_HEADING_RE = re.compile(r"^#{1,3}\s+(dependencies|requirements|requires)", re.IGNORECASE)
_DEP_ITEM_RE = re.compile(r"^[-*]\s+(\S+)")
_CHANGELOG_HEADING_RE = re.compile(r"^#{1,3}\s+change[\s-]?log", re.IGNORECASE)
_SEMVER_PREFIX_RE = re.compile(r"^\s*v?(\d+)\.(\d+)\.(\d+)")


class ChangeType(str, Enum):
    MAJOR = "major"
    MINOR = "minor"
    PATCH = "patch"
    UNKNOWN = "unknown"


def parse_frontmatter(content: str) -> dict[str, Any]:
    m = _FRONTMATTER_RE.match(content)
    if not m:
        return {}
    try:
        data = yaml.safe_load(m.group(1))
    except yaml.YAMLError:
        return {}
    return data if isinstance(data, dict) else {}


def frontmatter_semver(frontmatter: dict[str, Any]) -> str | None:
    """Return ``x.y.z`` from a ``version``/``semver`` field (a leading ``v`` is dropped)."""
    raw = frontmatter.get("version", frontmatter.get("semver"))
    if raw is None:
        return None
    m = _SEMVER_PREFIX_RE.match(str(raw))
    if not m:
        return None
    return ".".join(m.groups())


def _semver_parts(value: str) -> tuple[int, int, int] | None:
    m = _SEMVER_PREFIX_RE.match(value)
    if not m:
        return None
    return int(m.group(1)), int(m.group(2)), int(m.group(3))


def _classify_by_semver(old: str, new: str) -> ChangeType | None:
    old_parts = _semver_parts(old)
    new_parts = _semver_parts(new)
    if old_parts is None or new_parts is None:
        return None
    # Downgrades classify the same as upgrades.
    if new_parts[0] != old_parts[0]:
        return ChangeType.MAJOR
    if new_parts[1] != old_parts[1]:
        return ChangeType.MINOR
    return ChangeType.PATCH


def extract_headings(content: str) -> dict[str, str]:
    """Map lowercased H2/H3 heading text to its original spelling."""
    headings: dict[str, str] = {}
    for line in content.split("\n"):
        m = _HEADING_RE.match(line)
        if m:
            title = m.group(1).strip()
            headings.setdefault(title.lower(), title)
    return headings


def extract_dependencies(content: str, frontmatter: dict[str, Any] | None = None) -> set[str]:
    fm = parse_frontmatter(content) if frontmatter is None else frontmatter
    deps: set[str] = set()

    raw = fm.get("dependencies", fm.get("requires"))
    if isinstance(raw, (list, tuple)):
        items = [str(d) for d in raw]
    elif raw:
        items = str(raw).replace("[", "").replace("]", "").split(",")
    else:
        items = []
    for item in items:
        if item.strip():
            deps.add(item.strip().lower())

    in_section = False
    for line in content.split("\n"):
        if _DEPS_HEADING_RE.match(line):
            in_section = True
            continue
        if _ANY_HEADING_RE.match(line):
            in_section = False
            continue
        if in_section:
            m = _DEP_ITEM_RE.match(line)
            if m:
                deps.add(m.group(1).strip().lower())
    return deps


def classify_change(
    old_content: str,
    new_content: str,
    old_risk_score: int | None = None,
    new_risk_score: int | None = None,
) -> ChangeType:
    try:
        old_fm = parse_frontmatter(old_content)
        new_fm = parse_frontmatter(new_content)

        old_semver = frontmatter_semver(old_fm)
        new_semver = frontmatter_semver(new_fm)
        if old_semver and new_semver and old_semver != new_semver:
            by_semver = _classify_by_semver(old_semver, new_semver)
            if by_semver is not None:
                return by_semver

        old_headings = set(extract_headings(old_content))
        new_headings = set(extract_headings(new_content))
        if old_headings - new_headings:
            return ChangeType.MAJOR

        if old_risk_score is not None and new_risk_score is not None and new_risk_score - old_risk_score > 20:
            return ChangeType.MAJOR

        old_deps = extract_dependencies(old_content, old_fm)
        new_deps = extract_dependencies(new_content, new_fm)
        if old_deps - new_deps:
            return ChangeType.MAJOR

        if new_headings - old_headings or new_deps - old_deps:
            return ChangeType.MINOR
        return ChangeType.PATCH
    except Exception as e:  # noqa: BLE001
        logger.warning("Could not classify change: %s", e)
        return ChangeType.UNKNOWN


@dataclass(frozen=True)
class SectionDiff:
    added: tuple[str, ...]
    removed: tuple[str, ...]
    modified: tuple[str, ...]


def _section_bodies(content: str) -> dict[str, str]:
    bodies: dict[str, str] = {}
    current: str | None = None
    buf: list[str] = []
    for line in content.split("\n"):
        m = _HEADING_RE.match(line)
        if m:
            if current is not None:
                bodies[current] = "\n".join(buf).strip()
            current = m.group(1).strip().lower()
            buf = []
        elif current is not None:
            buf.append(line)
    if current is not None:
        bodies[current] = "\n".join(buf).strip()
    return bodies


def diff_sections(old_content: str, new_content: str) -> SectionDiff:
    old_headings = extract_headings(old_content)
    new_headings = extract_headings(new_content)
    old_bodies = _section_bodies(old_content)
    new_bodies = _section_bodies(new_content)
    return SectionDiff(
        added=tuple(title for key, title in new_headings.items() if key not in old_headings),
        removed=tuple(title for key, title in old_headings.items() if key not in new_headings),
        modified=tuple(key for key, body in old_bodies.items() if key in new_bodies and new_bodies[key] != body),
    )


def extract_changelog(content: str) -> str | None:
    fm = parse_frontmatter(content)
    value = fm.get("changelog")
    if value is not None and str(value).strip():
        return str(value).strip().strip("\"'")

    lines: list[str] = []
    in_section = False
    for line in content.split("\n"):
        if _CHANGELOG_HEADING_RE.match(line):
            in_section = True
            continue
        if in_section and _ANY_HEADING_RE.match(line):
            break
        if in_section and line.strip():
            lines.append(line.strip())
    return " ".join(lines[:5]) if lines else None


# Update risk policy.
RISK_LEVELS = ((20, "low"), (40, "medium"), (60, "high"))
RISK_LEVEL_MAX = "critical"
RECOMMENDATIONS = ((20, "auto-update"), (50, "review-then-update"))
RECOMMENDATION_MAX = "manual-review-required"


@dataclass(frozen=True)
class RiskInputs:
    change_type: ChangeType
    risk_increased: bool
    has_local_modifications: bool
    trust: TrustTier
    has_changelog: bool


@dataclass(frozen=True)
class OverrideRule:
    name: str
    change_type: ChangeType
    has_local_modifications: bool
    risk_increased: bool
    level: str
    recommendation: str

    def matches(self, inputs: RiskInputs) -> bool:
        return (
            inputs.change_type == self.change_type
            and inputs.has_local_modifications == self.has_local_modifications
            and inputs.risk_increased == self.risk_increased
        )


@dataclass(frozen=True)
class ScoreFactor:
    name: str
    weight: int
    applies: Callable[[RiskInputs], bool]


OVERRIDE_RULES = (
    OverrideRule(
        name="major-local-risk",
        change_type=ChangeType.MAJOR,
        has_local_modifications=True,
        risk_increased=True,
        level="critical",
        recommendation="manual-review-required",
    ),
)

SCORE_FACTORS = (
    ScoreFactor("major-change", 30, lambda i: i.change_type == ChangeType.MAJOR),
    ScoreFactor("risk-increase", 20, lambda i: i.risk_increased),
    ScoreFactor("local-modifications", 20, lambda i: i.has_local_modifications),
    ScoreFactor("verified-source", -20, lambda i: i.trust == TrustTier.VERIFIED),
    ScoreFactor("changelog-present", -10, lambda i: i.has_changelog),
)


@dataclass(frozen=True)
class UpdateRisk:
    level: str
    score: int
    recommendation: str
    rule: str
    factors: tuple[str, ...] = ()


def _bucket(score: int, table: tuple[tuple[int, str], ...], fallback: str) -> str:
    for upper, label in table:
        if score <= upper:
            return label
    return fallback


def compute_update_risk(
    change_type: ChangeType | str,
    *,
    risk_score_delta: int | None = None,
    has_local_modifications: bool = False,
    trust: TrustTier | str = TrustTier.COMMUNITY,
    has_changelog: bool = False,
) -> UpdateRisk:
    inputs = RiskInputs(
        change_type=ChangeType(change_type),
        risk_increased=risk_score_delta is not None and risk_score_delta > 0,
        has_local_modifications=has_local_modifications,
        trust=validate_trust_tier(trust),
        has_changelog=has_changelog,
    )
    applied = tuple(f for f in SCORE_FACTORS if f.applies(inputs))
    score = sum(f.weight for f in applied)
    factor_names = tuple(f.name for f in applied)

    for rule in OVERRIDE_RULES:
        if rule.matches(inputs):
            return UpdateRisk(
                level=rule.level,
                score=score,
                recommendation=rule.recommendation,
                rule=rule.name,
                factors=factor_names,
            )

    return UpdateRisk(
        level=_bucket(score, RISK_LEVELS, RISK_LEVEL_MAX),
        score=score,
        recommendation=_bucket(score, RECOMMENDATIONS, RECOMMENDATION_MAX),
        rule="score",
        factors=factor_names,
    )


@dataclass(frozen=True)
class SkillDiffReport:
    skill_id: str
    change_type: ChangeType
    sections: SectionDiff
    risk_score_delta: int | None
    changelog: str | None
    risk: UpdateRisk

    def to_json(self) -> dict[str, Any]:
        return {
            "skill": self.skill_id,
            "changeType": self.change_type.value,
            "sectionsAdded": list(self.sections.added),
            "sectionsRemoved": list(self.sections.removed),
            "sectionsModified": list(self.sections.modified),
            "riskScoreDelta": self.risk_score_delta,
            "changelog": self.changelog,
            "riskLevel": self.risk.level,
            "recommendation": self.risk.recommendation,
        }


def diff_skill(
    skill_id: str,
    old_content: str,
    new_content: str,
    *,
    old_risk_score: int | None = None,
    new_risk_score: int | None = None,
    has_local_modifications: bool = False,
    trust: TrustTier | str = TrustTier.COMMUNITY,
) -> SkillDiffReport:
    change_type = classify_change(old_content, new_content, old_risk_score, new_risk_score)
    delta = new_risk_score - old_risk_score if old_risk_score is not None and new_risk_score is not None else None
    changelog = extract_changelog(new_content)
    risk = compute_update_risk(
        change_type,
        risk_score_delta=delta,
        has_local_modifications=has_local_modifications,
        trust=trust,
        has_changelog=changelog is not None,
    )
    return SkillDiffReport(
        skill_id=skill_id,
        change_type=change_type,
        sections=diff_sections(old_content, new_content),
        risk_score_delta=delta,
        changelog=changelog,
        risk=risk,
    )


def format_skill_diff(report: SkillDiffReport) -> str:
    lines = [f"=== Skill Diff: {report.skill_id} ===", ""]
    lines.append(f"Change type: {report.change_type.value.upper()}")
    lines.append(f"Risk: {report.risk.level} (score {report.risk.score})")
    lines.append(f"Recommendation: {report.risk.recommendation}")
    if report.risk_score_delta is not None:
        prefix = "+" if report.risk_score_delta > 0 else ""
        lines.append(f"Risk score delta: {prefix}{report.risk_score_delta}")
    for title, marker, items in (
        ("Sections added:", "+", report.sections.added),
        ("Sections removed:", "-", report.sections.removed),
        ("Sections modified:", "~", report.sections.modified),
    ):
        if items:
            lines.append("")
            lines.append(title)
            lines.extend(f"  {marker} {s}" for s in items)
    if report.changelog:
        lines.append("")
        lines.append(f"Changelog: {report.changelog}")
    return "\n".join(lines)
