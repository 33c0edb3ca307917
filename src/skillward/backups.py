from __future__ import annotations

import json
import logging
import re
import shutil
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable

from .client import BackupError, NotFoundError

logger = logging.getLogger(__name__)

ORIGINAL_DIRNAME = ".original"
ORIGINAL_CONTENT_FILENAME = "SKILL.md"
ORIGINAL_METADATA_FILENAME = "metadata.json"
TIMESTAMP_FORMAT = "%Y%m%dT%H%M%S%fZ"

_REASON_RE = re.compile(r"[^a-z0-9-]+")
_BACKUP_NAME_RE = re.compile(r"^(\d{8}T\d{12}Z)_([a-z0-9-]+)$")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class BackupInfo:
    name: str
    path: Path
    timestamp: datetime
    reason: str


@dataclass(frozen=True)
class OriginalSnapshot:
    content: str
    metadata: dict[str, Any]


def _parse_backup_name(path: Path) -> BackupInfo | None:
    m = _BACKUP_NAME_RE.match(path.name)
    if not m or not path.is_dir():
        return None
    try:
        ts = datetime.strptime(m.group(1), TIMESTAMP_FORMAT).replace(tzinfo=timezone.utc)
    except ValueError:
        return None
    return BackupInfo(name=path.name, path=path, timestamp=ts, reason=m.group(2))


class BackupStore:
    """
    Snapshots of installed skill directories under ``<backups_dir>/<name>/``.

    Timestamped snapshots are named ``{timestamp}_{reason}`` and pruned oldest
    first. The ``.original`` snapshot holds the content fetched at first
    install and is never pruned.
    """

    def __init__(self, backups_dir: Path, *, clock: Callable[[], datetime] = _utcnow) -> None:
        self.backups_dir = backups_dir
        self.clock = clock

    def skill_dir(self, name: str) -> Path:
        if not name or "/" in name or "\\" in name or name in (".", ".."):
            raise BackupError(f"Invalid skill name for backup: {name!r}")
        return self.backups_dir / name

    def create_backup(self, name: str, install_path: Path, reason: str) -> BackupInfo:
        tag = _REASON_RE.sub("-", reason.strip().lower()).strip("-") or "manual"
        if not install_path.is_dir():
            raise BackupError(f"Cannot back up {name}: {install_path} is not a directory")
        root = self.skill_dir(name)
        when = self.clock()
        # Names must stay unique and ordered even when the clock does not advance.
        while any(root.glob(f"{when.strftime(TIMESTAMP_FORMAT)}_*")):
            when += timedelta(microseconds=1)
        dest = root / f"{when.strftime(TIMESTAMP_FORMAT)}_{tag}"
        try:
            root.mkdir(parents=True, exist_ok=True)
            shutil.copytree(install_path, dest)
        except OSError as e:
            shutil.rmtree(dest, ignore_errors=True)
            raise BackupError(f"Failed to back up {name} to {dest}: {e}") from e
        logger.debug("Backed up %s to %s", name, dest)
        return BackupInfo(name=dest.name, path=dest, timestamp=when, reason=tag)

    def original_dir(self, name: str) -> Path:
        return self.skill_dir(name) / ORIGINAL_DIRNAME

    def store_original(self, name: str, content: str, metadata: dict[str, Any], *, replace: bool = False) -> bool:
        dest = self.original_dir(name)
        if (dest / ORIGINAL_CONTENT_FILENAME).exists() and not replace:
            return False
        try:
            dest.mkdir(parents=True, exist_ok=True)
            for filename, text in (
                (ORIGINAL_CONTENT_FILENAME, content),
                (ORIGINAL_METADATA_FILENAME, json.dumps(metadata, indent=2, sort_keys=True) + "\n"),
            ):
                tmp = dest / (filename + ".tmp")
                tmp.write_text(text, encoding="utf-8")
                tmp.replace(dest / filename)
        except OSError as e:
            raise BackupError(f"Failed to store original content for {name}: {e}") from e
        return True

    def discard_original(self, name: str) -> None:
        shutil.rmtree(self.original_dir(name), ignore_errors=True)

    def load_original(self, name: str) -> OriginalSnapshot | None:
        dest = self.original_dir(name)
        content_path = dest / ORIGINAL_CONTENT_FILENAME
        if not content_path.is_file():
            return None
        content = content_path.read_text(encoding="utf-8")
        metadata: dict[str, Any] = {}
        meta_path = dest / ORIGINAL_METADATA_FILENAME
        if meta_path.is_file():
            try:
                raw = json.loads(meta_path.read_text(encoding="utf-8"))
            except json.JSONDecodeError:
                logger.warning("Ignoring unreadable original metadata for %s", name)
            else:
                if isinstance(raw, dict):
                    metadata = raw
        return OriginalSnapshot(content=content, metadata=metadata)

    def list_backups(self, name: str) -> list[BackupInfo]:
        root = self.skill_dir(name)
        if not root.is_dir():
            return []
        infos = [info for p in root.iterdir() if (info := _parse_backup_name(p)) is not None]
        infos.sort(key=lambda b: b.name, reverse=True)
        return infos

    def cleanup_old_backups(self, name: str, keep: int = 3) -> list[str]:
        removed: list[str] = []
        for info in self.list_backups(name)[max(keep, 0) :]:
            shutil.rmtree(info.path, ignore_errors=True)
            removed.append(info.name)
        if removed:
            logger.debug("Pruned %d old backup(s) for %s", len(removed), name)
        return removed

    def restore_backup(self, name: str, backup_name: str, install_path: Path) -> BackupInfo | None:
        match = next((b for b in self.list_backups(name) if b.name == backup_name), None)
        if match is None:
            raise NotFoundError(
                f"Backup {backup_name!r} not found for {name}",
                tips=(f"List available backups with: skillward backups {name}",),
            )

        pre_restore = None
        if install_path.is_dir():
            pre_restore = self.create_backup(name, install_path, "pre-restore")

        staging = install_path.with_name(install_path.name + ".restore-tmp")
        try:
            shutil.rmtree(staging, ignore_errors=True)
            shutil.copytree(match.path, staging)
            if install_path.exists():
                shutil.rmtree(install_path)
            staging.rename(install_path)
        except OSError as e:
            shutil.rmtree(staging, ignore_errors=True)
            raise BackupError(f"Failed to restore {backup_name} for {name}: {e}") from e
        return pre_restore
