from __future__ import annotations

import json
import logging
import os
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Callable, Iterator

from .client import LockTimeoutError, ManifestError
from .config import DEFAULT_LOCK_RETRY_INTERVAL_S, DEFAULT_LOCK_TIMEOUT_S

logger = logging.getLogger(__name__)

MANIFEST_SCHEMA_VERSION = "1.0.0"
LOCK_SUFFIX = ".lock"


@dataclass(frozen=True)
class ManifestEntry:
    id: str
    name: str
    version: str
    source: str
    install_path: str
    installed_at: str
    last_updated: str
    original_content_hash: str | None = None

    def to_json(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "version": self.version,
            "source": self.source,
            "installPath": self.install_path,
            "installedAt": self.installed_at,
            "lastUpdated": self.last_updated,
        }
        if self.original_content_hash is not None:
            out["originalContentHash"] = self.original_content_hash
        return out

    @classmethod
    def from_json(cls, name: str, obj: Any) -> "ManifestEntry":
        if not isinstance(obj, dict):
            raise ManifestError(f"Manifest entry for {name!r} is not an object")

        def _s(key: str, default: str = "") -> str:
            value = obj.get(key)
            return value if isinstance(value, str) else default

        original_hash = obj.get("originalContentHash")
        return cls(
            id=_s("id", name),
            name=_s("name", name),
            version=_s("version", "1.0.0"),
            source=_s("source"),
            install_path=_s("installPath"),
            installed_at=_s("installedAt"),
            last_updated=_s("lastUpdated"),
            original_content_hash=original_hash if isinstance(original_hash, str) else None,
        )


@dataclass
class Manifest:
    version: str = MANIFEST_SCHEMA_VERSION
    installed_skills: dict[str, ManifestEntry] = field(default_factory=dict)
    extra: dict[str, Any] = field(default_factory=dict)

    def to_json(self) -> dict[str, Any]:
        return {
            **self.extra,
            "version": self.version,
            "installedSkills": {k: self.installed_skills[k].to_json() for k in sorted(self.installed_skills)},
        }

    @classmethod
    def from_json(cls, obj: Any) -> "Manifest":
        if not isinstance(obj, dict):
            raise ManifestError("Manifest root is not a JSON object")
        skills_raw = obj.get("installedSkills") or {}
        if not isinstance(skills_raw, dict):
            raise ManifestError("Manifest 'installedSkills' is not an object")
        version = obj.get("version")
        return cls(
            version=version if isinstance(version, str) else MANIFEST_SCHEMA_VERSION,
            installed_skills={name: ManifestEntry.from_json(name, v) for name, v in skills_raw.items()},
            extra={k: v for k, v in obj.items() if k not in ("version", "installedSkills")},
        )


class ManifestStore:
    """
    Durable record of installed skills, guarded by a sibling ``.lock`` file.

    The lock is an exclusively-created file holding the owner's pid. A lock
    older than ``lock_timeout_s`` is treated as abandoned and reclaimed.
    Releasing only removes the lock file this store created.
    """

    def __init__(
        self,
        path: Path,
        *,
        lock_timeout_s: float = DEFAULT_LOCK_TIMEOUT_S,
        retry_interval_s: float = DEFAULT_LOCK_RETRY_INTERVAL_S,
        max_wait_s: float | None = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.path = path
        self.lock_path = path.with_name(path.name + LOCK_SUFFIX)
        self.lock_timeout_s = lock_timeout_s
        self.retry_interval_s = retry_interval_s
        # A waiter must be able to outlast a crashed holder's lock.
        self.max_wait_s = max_wait_s if max_wait_s is not None else lock_timeout_s * 2
        self.clock = clock
        self.sleep = sleep
        self._owned: tuple[int, int] | None = None

    def load(self) -> Manifest:
        try:
            text = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return Manifest()
        try:
            raw = json.loads(text)
        except json.JSONDecodeError as e:
            raise ManifestError(f"Manifest at {self.path} is not valid JSON: {e}") from e
        return Manifest.from_json(raw)

    def save(self, manifest: Manifest) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_name(f"{self.path.name}.{os.getpid()}.tmp")
        tmp.write_text(json.dumps(manifest.to_json(), indent=2, sort_keys=True) + "\n", encoding="utf-8")
        tmp.replace(self.path)

    def _lock_stat(self) -> os.stat_result | None:
        try:
            return self.lock_path.stat()
        except FileNotFoundError:
            return None

    def _reclaim_stale_lock(self, seen: os.stat_result) -> bool:
        """
        Move the lock aside and delete it only if it is still the file that was
        judged stale. A lock another waiter created in the meantime is linked
        back into place.
        """
        tomb = self.lock_path.with_name(f"{self.lock_path.name}.{os.getpid()}.{threading.get_ident()}.stale")
        try:
            os.rename(self.lock_path, tomb)
        except FileNotFoundError:
            return False
        try:
            if _same_file(tomb.stat(), seen):
                return True
            try:
                os.link(tomb, self.lock_path)
            except FileExistsError:
                logger.warning("Manifest lock %s was replaced while being reclaimed", self.lock_path)
            return False
        finally:
            tomb.unlink(missing_ok=True)

    def acquire_lock(self) -> None:
        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        started = self.clock()
        while True:
            try:
                fd = os.open(self.lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
            except FileExistsError:
                st = self._lock_stat()
                if st is None:
                    continue
                age = self.clock() - st.st_mtime
                if age > self.lock_timeout_s:
                    if self._reclaim_stale_lock(st):
                        logger.warning("Removed stale manifest lock %s (age %.1fs)", self.lock_path, age)
                        continue
                if self.clock() - started >= self.max_wait_s:
                    raise LockTimeoutError(
                        f"Timed out after {self.max_wait_s:.1f}s waiting for manifest lock {self.lock_path}"
                    )
                self.sleep(self.retry_interval_s)
                continue
            owned = os.fstat(fd)
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(str(os.getpid()))
            self._owned = (owned.st_dev, owned.st_ino)
            return

    def release_lock(self) -> None:
        owned, self._owned = self._owned, None
        if owned is None:
            return
        st = self._lock_stat()
        if st is None or (st.st_dev, st.st_ino) != owned:
            logger.warning("Manifest lock %s is no longer ours; leaving it in place", self.lock_path)
            return
        try:
            holder = self.lock_path.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return
        if holder != str(os.getpid()):
            logger.warning("Manifest lock %s is held by pid %s; leaving it in place", self.lock_path, holder)
            return
        self.lock_path.unlink(missing_ok=True)

    @contextmanager
    def locked(self) -> Iterator[None]:
        self.acquire_lock()
        try:
            yield
        finally:
            self.release_lock()

    def update_safely(self, fn: Callable[[Manifest], Manifest | None]) -> Manifest:
        """
        Serialized read-modify-write: ``fn`` receives the current manifest and
        may mutate it in place or return a replacement.
        """
        with self.locked():
            manifest = self.load()
            updated = fn(manifest)
            result = updated if updated is not None else manifest
            self.save(result)
            return result

    def get(self, name: str) -> ManifestEntry | None:
        return self.load().installed_skills.get(name)


def touch_entry(entry: ManifestEntry, *, when: str, **changes: Any) -> ManifestEntry:
    return replace(entry, last_updated=when, **changes)


def _same_file(a: os.stat_result, b: os.stat_result) -> bool:
    return (a.st_dev, a.st_ino, a.st_mtime_ns) == (b.st_dev, b.st_ino, b.st_mtime_ns)
