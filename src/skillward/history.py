from __future__ import annotations

import json
import logging
import sqlite3
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterable

from .versioning import ChangeType

logger = logging.getLogger(__name__)

ADVISORY_SEVERITIES = ("critical", "high", "medium", "low")

EMPTY_ADVISORY_MESSAGE = (
    "No advisories have been published yet. "
    "Advisories appear here once they are recorded for tracked skills."
)

SCHEMA = """
CREATE TABLE IF NOT EXISTS skill_versions (
  id           INTEGER PRIMARY KEY AUTOINCREMENT,
  skill_id     TEXT    NOT NULL,
  content_hash TEXT    NOT NULL,
  recorded_at  INTEGER NOT NULL,
  semver       TEXT,
  change_type  TEXT CHECK(change_type IN ('major', 'minor', 'patch', 'unknown')),
  metadata     TEXT
);

CREATE UNIQUE INDEX IF NOT EXISTS idx_skill_versions_skill_hash
  ON skill_versions(skill_id, content_hash);

CREATE INDEX IF NOT EXISTS idx_skill_versions_skill_recorded
  ON skill_versions(skill_id, recorded_at DESC);

CREATE TABLE IF NOT EXISTS skill_advisories (
  id                TEXT PRIMARY KEY,
  skill_id          TEXT NOT NULL,
  severity          TEXT NOT NULL CHECK(severity IN ('low', 'medium', 'high', 'critical')),
  title             TEXT NOT NULL,
  description       TEXT NOT NULL,
  affected_versions TEXT,
  patched_versions  TEXT,
  published_at      TEXT NOT NULL,
  withdrawn_at      TEXT
);

CREATE INDEX IF NOT EXISTS idx_skill_advisories_skill_id
  ON skill_advisories(skill_id);
"""


def _utc_iso() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


class HistoryDatabase:
    """SQLite file holding version records and advisories."""

    def __init__(self, path: Path | str) -> None:
        self.path = path
        if str(path) != ":memory:":
            Path(path).parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(str(path))
        self.conn.row_factory = sqlite3.Row
        if str(path) != ":memory:":
            self.conn.execute("PRAGMA journal_mode=WAL")
        self.conn.executescript(SCHEMA)
        self.conn.commit()

    def close(self) -> None:
        self.conn.close()

    def __enter__(self) -> "HistoryDatabase":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


@dataclass(frozen=True)
class VersionRecord:
    id: int
    skill_id: str
    content_hash: str
    recorded_at: int
    semver: str | None
    change_type: ChangeType | None
    metadata: dict[str, Any] | None


def _row_to_version(row: sqlite3.Row) -> VersionRecord:
    metadata = None
    if row["metadata"]:
        try:
            metadata = json.loads(row["metadata"])
        except json.JSONDecodeError:
            logger.warning("Ignoring unreadable metadata on version record %s", row["id"])
    return VersionRecord(
        id=row["id"],
        skill_id=row["skill_id"],
        content_hash=row["content_hash"],
        recorded_at=row["recorded_at"],
        semver=row["semver"],
        change_type=ChangeType(row["change_type"]) if row["change_type"] else None,
        metadata=metadata,
    )


@dataclass(frozen=True)
class SkillUpdateInfo:
    skill_id: str
    installed_hash: str
    latest_hash: str
    installed_semver: str | None
    latest_semver: str | None
    age_days: int
    pinned: bool
    update_available: bool


@dataclass(frozen=True)
class UpdateCheckReport:
    updates_available: int
    skills: tuple[SkillUpdateInfo, ...]


_VERSION_COLUMNS = "id, skill_id, content_hash, recorded_at, semver, change_type, metadata"


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


class VersionHistory:
    """
    Append-only record of content hashes per skill.

    Ordering for "latest" queries is ``recorded_at`` descending, ties broken
    by insertion order.
    """

    def __init__(self, db: HistoryDatabase, *, clock: Callable[[], float] = time.time) -> None:
        self.db = db
        self.clock = clock

    def record_version(
        self,
        skill_id: str,
        content_hash: str,
        *,
        semver: str | None = None,
        change_type: ChangeType | str | None = None,
        metadata: dict[str, Any] | None = None,
        keep: int = 50,
    ) -> bool:
        """Insert a record; returns False when this hash is already recorded for the skill."""
        conn = self.db.conn
        cur = conn.execute(
            "INSERT OR IGNORE INTO skill_versions (skill_id, content_hash, recorded_at, semver, change_type, metadata) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            (
                skill_id,
                content_hash,
                int(self.clock()),
                semver,
                ChangeType(change_type).value if change_type is not None else None,
                json.dumps(metadata, sort_keys=True) if metadata is not None else None,
            ),
        )
        inserted = cur.rowcount > 0
        conn.execute(
            "DELETE FROM skill_versions WHERE skill_id = ? AND id NOT IN ("
            "SELECT id FROM skill_versions WHERE skill_id = ? ORDER BY recorded_at DESC, id DESC LIMIT ?)",
            (skill_id, skill_id, keep),
        )
        conn.commit()
        return inserted

    def latest(self, skill_id: str) -> VersionRecord | None:
        row = self.db.conn.execute(
            f"SELECT {_VERSION_COLUMNS} FROM skill_versions WHERE skill_id = ? "
            "ORDER BY recorded_at DESC, id DESC LIMIT 1",
            (skill_id,),
        ).fetchone()
        return _row_to_version(row) if row else None

    def history(self, skill_id: str, limit: int = 20) -> list[VersionRecord]:
        rows = self.db.conn.execute(
            f"SELECT {_VERSION_COLUMNS} FROM skill_versions WHERE skill_id = ? "
            "ORDER BY recorded_at DESC, id DESC LIMIT ?",
            (skill_id, limit),
        ).fetchall()
        return [_row_to_version(r) for r in rows]

    def by_hash(self, skill_id: str, content_hash: str) -> VersionRecord | None:
        row = self.db.conn.execute(
            f"SELECT {_VERSION_COLUMNS} FROM skill_versions WHERE skill_id = ? AND content_hash = ? LIMIT 1",
            (skill_id, content_hash),
        ).fetchone()
        return _row_to_version(row) if row else None

    def tracked_skill_ids(self) -> list[str]:
        rows = self.db.conn.execute("SELECT DISTINCT skill_id FROM skill_versions ORDER BY skill_id").fetchall()
        return [r["skill_id"] for r in rows]

    def latest_semver_for_name(self, name: str) -> VersionRecord | None:
        """Most recent record with a semver whose id is ``name`` or ends in ``/name``."""
        row = self.db.conn.execute(
            f"SELECT {_VERSION_COLUMNS} FROM skill_versions "
            "WHERE (skill_id = ? OR skill_id LIKE ? ESCAPE '\\') AND semver IS NOT NULL "
            "ORDER BY recorded_at DESC, id DESC LIMIT 1",
            (name, "%/" + _escape_like(name)),
        ).fetchone()
        return _row_to_version(row) if row else None

    def check_updates(self, skill_ids: Iterable[str] | None = None, *, depth: int = 50) -> UpdateCheckReport:
        ids = list(skill_ids) if skill_ids else self.tracked_skill_ids()
        now = int(self.clock())
        infos: list[SkillUpdateInfo] = []
        for skill_id in ids:
            records = self.history(skill_id, depth)
            if not records:
                continue
            latest, oldest = records[0], records[-1]
            infos.append(
                SkillUpdateInfo(
                    skill_id=skill_id,
                    installed_hash=oldest.content_hash[:8],
                    latest_hash=latest.content_hash[:8],
                    installed_semver=oldest.semver,
                    latest_semver=latest.semver,
                    age_days=max(0, (now - latest.recorded_at) // 86400),
                    pinned=False,
                    update_available=oldest.content_hash != latest.content_hash,
                )
            )
        return UpdateCheckReport(
            updates_available=sum(1 for i in infos if i.update_available),
            skills=tuple(infos),
        )


@dataclass(frozen=True)
class Advisory:
    id: str
    skill_id: str
    severity: str
    title: str
    description: str
    published_at: str
    affected_versions: str | None = None
    patched_versions: str | None = None
    withdrawn_at: str | None = None


@dataclass(frozen=True)
class AdvisoryEntry:
    skill_id: str
    severity: str
    title: str
    id: str
    fix_available: bool


@dataclass(frozen=True)
class AdvisoryReport:
    advisories_available: bool
    message: str | None = None
    summary: dict[str, int] = field(default_factory=dict)
    advisories: tuple[AdvisoryEntry, ...] = ()

    def to_json(self) -> dict[str, Any]:
        if not self.advisories_available:
            return {"advisoriesAvailable": False, "message": self.message}
        return {
            "advisoriesAvailable": True,
            "summary": dict(self.summary),
            "advisories": [
                {
                    "skillId": a.skill_id,
                    "severity": a.severity,
                    "title": a.title,
                    "id": a.id,
                    "fixAvailable": a.fix_available,
                }
                for a in self.advisories
            ],
        }


_ADVISORY_COLUMNS = (
    "id, skill_id, severity, title, description, affected_versions, patched_versions, published_at, withdrawn_at"
)


def _row_to_advisory(row: sqlite3.Row) -> Advisory:
    return Advisory(
        id=row["id"],
        skill_id=row["skill_id"],
        severity=row["severity"],
        title=row["title"],
        description=row["description"],
        published_at=row["published_at"],
        affected_versions=row["affected_versions"],
        patched_versions=row["patched_versions"],
        withdrawn_at=row["withdrawn_at"],
    )


class AdvisoryStore:
    def __init__(self, db: HistoryDatabase, *, now: Callable[[], str] = _utc_iso) -> None:
        self.db = db
        self.now = now

    def upsert(self, advisory: Advisory) -> None:
        if advisory.severity not in ADVISORY_SEVERITIES:
            raise ValueError(f"Unknown advisory severity: {advisory.severity!r}")
        self.db.conn.execute(
            f"INSERT OR REPLACE INTO skill_advisories ({_ADVISORY_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                advisory.id,
                advisory.skill_id,
                advisory.severity,
                advisory.title,
                advisory.description,
                advisory.affected_versions,
                advisory.patched_versions,
                advisory.published_at,
                advisory.withdrawn_at,
            ),
        )
        self.db.conn.commit()

    def withdraw(self, advisory_id: str) -> bool:
        cur = self.db.conn.execute(
            "UPDATE skill_advisories SET withdrawn_at = ? WHERE id = ? AND withdrawn_at IS NULL",
            (self.now(), advisory_id),
        )
        self.db.conn.commit()
        return cur.rowcount > 0

    def get(self, advisory_id: str) -> Advisory | None:
        row = self.db.conn.execute(
            f"SELECT {_ADVISORY_COLUMNS} FROM skill_advisories WHERE id = ?", (advisory_id,)
        ).fetchone()
        return _row_to_advisory(row) if row else None

    def for_skill(self, skill_id: str) -> list[Advisory]:
        rows = self.db.conn.execute(
            f"SELECT {_ADVISORY_COLUMNS} FROM skill_advisories "
            "WHERE skill_id = ? AND withdrawn_at IS NULL ORDER BY published_at DESC, id",
            (skill_id,),
        ).fetchall()
        return [_row_to_advisory(r) for r in rows]

    def active(self, severity: str | None = None) -> list[Advisory]:
        if severity is None:
            rows = self.db.conn.execute(
                f"SELECT {_ADVISORY_COLUMNS} FROM skill_advisories "
                "WHERE withdrawn_at IS NULL ORDER BY published_at DESC, id"
            ).fetchall()
        else:
            rows = self.db.conn.execute(
                f"SELECT {_ADVISORY_COLUMNS} FROM skill_advisories "
                "WHERE withdrawn_at IS NULL AND severity = ? ORDER BY published_at DESC, id",
                (severity,),
            ).fetchall()
        return [_row_to_advisory(r) for r in rows]

    def is_empty(self) -> bool:
        return self.db.conn.execute("SELECT 1 FROM skill_advisories LIMIT 1").fetchone() is None

    def summarize(self, skill_ids: Iterable[str] | None = None) -> AdvisoryReport:
        if self.is_empty():
            return AdvisoryReport(advisories_available=False, message=EMPTY_ADVISORY_MESSAGE)

        ids = list(skill_ids) if skill_ids else None
        if ids:
            advisories = [a for skill_id in ids for a in self.for_skill(skill_id)]
        else:
            advisories = self.active()

        summary = {s: 0 for s in ADVISORY_SEVERITIES}
        for a in advisories:
            summary[a.severity] += 1
        summary["total"] = len(advisories)
        return AdvisoryReport(
            advisories_available=True,
            summary=summary,
            advisories=tuple(
                AdvisoryEntry(
                    skill_id=a.skill_id,
                    severity=a.severity,
                    title=a.title,
                    id=a.id,
                    fix_available=bool(a.patched_versions),
                )
                for a in advisories
            ),
        )
