from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path, PurePath
from typing import Any

from .client import IdentifierFormatError, NotFoundError
from .history import VersionHistory
from .versioning import parse_frontmatter

SEMVER_RE = re.compile(r"\d+\.\d+\.\d+")

CURRENT = "current"
OUTDATED = "outdated"
AHEAD = "ahead"
NO_REGISTRY_DATA = "no_registry_data"
MISSING_VERSION = "missing_version"


@dataclass(frozen=True)
class PackSkillEntry:
    name: str
    bundled_version: str | None
    registry_version: str | None
    skill_id: str | None
    status: str

    def to_json(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "bundledVersion": self.bundled_version,
            "registryVersion": self.registry_version,
            "skillId": self.skill_id,
            "status": self.status,
        }


@dataclass(frozen=True)
class PackAuditReport:
    pack_path: Path
    skill_count: int
    drift_count: int
    no_registry_data_count: int
    skills: tuple[PackSkillEntry, ...]

    def to_json(self) -> dict[str, Any]:
        return {
            "packPath": str(self.pack_path),
            "skillCount": self.skill_count,
            "driftCount": self.drift_count,
            "noRegistryDataCount": self.no_registry_data_count,
            "skills": [s.to_json() for s in self.skills],
        }


def strict_semver(value: Any) -> tuple[int, int, int] | None:
    if not isinstance(value, str) or not SEMVER_RE.fullmatch(value):
        return None
    major, minor, patch = value.split(".")
    return int(major), int(minor), int(patch)


def _classify(bundled: tuple[int, int, int], registry: tuple[int, int, int]) -> str:
    if bundled == registry:
        return CURRENT
    return OUTDATED if bundled < registry else AHEAD


def audit_pack(pack_path: str | Path, history: VersionHistory) -> PackAuditReport:
    if ".." in PurePath(str(pack_path)).parts:
        raise IdentifierFormatError(f"Pack path must not contain '..' segments: {pack_path}")

    root = Path(pack_path).expanduser().resolve()
    skills_dir = root / "skills" if (root / "skills").is_dir() else root
    if not skills_dir.is_dir():
        raise NotFoundError(
            f"No skills directory found at {skills_dir}",
            tips=("Pass the pack root (containing skills/) or a directory of skill folders",),
        )

    entries: list[PackSkillEntry] = []
    for child in sorted(p for p in skills_dir.iterdir() if p.is_dir()):
        skill_md = child / "SKILL.md"
        if not skill_md.is_file():
            continue
        fm = parse_frontmatter(skill_md.read_text(encoding="utf-8"))
        raw_name = fm.get("name")
        name = raw_name.strip() if isinstance(raw_name, str) and raw_name.strip() else child.name
        bundled = strict_semver(fm.get("version"))
        bundled_version = fm["version"] if bundled is not None else None

        if bundled is None:
            entries.append(PackSkillEntry(name, None, None, None, MISSING_VERSION))
            continue

        record = history.latest_semver_for_name(name)
        registry = strict_semver(record.semver) if record is not None else None
        if record is None or registry is None:
            entries.append(PackSkillEntry(name, bundled_version, None, None, NO_REGISTRY_DATA))
            continue

        entries.append(
            PackSkillEntry(name, bundled_version, record.semver, record.skill_id, _classify(bundled, registry))
        )

    return PackAuditReport(
        pack_path=root,
        skill_count=len(entries),
        drift_count=sum(1 for e in entries if e.status in (OUTDATED, AHEAD)),
        no_registry_data_count=sum(1 for e in entries if e.status == NO_REGISTRY_DATA),
        skills=tuple(entries),
    )
