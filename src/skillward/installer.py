from __future__ import annotations

import logging
import shutil
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable

from .backups import BackupInfo, BackupStore
from .client import AlreadyInstalledError, NotFoundError, SkillwardError
from .config import Config
from .fetcher import PRIMARY_FILENAME, SourceFetcher
from .history import VersionHistory
from .manifest import Manifest, ManifestEntry, ManifestStore, touch_entry
from .merge import (
    DiffResult,
    MergeConflict,
    ModificationResult,
    compute_diff,
    detect_modifications,
    hash_content,
    three_way_merge,
)
from .optimize import Optimized, optimize_skill
from .registry import RegistryLookup, TrustTier
from .security import SecurityGate
from .sources import (
    DirectSource,
    RegistryKey,
    SourceRef,
    parse_skill_identifier,
    parse_source_url,
    validate_skill_name,
)
from .validation import ensure_valid
from .versioning import SkillDiffReport, classify_change, diff_skill, frontmatter_semver, parse_frontmatter

logger = logging.getLogger(__name__)

INSTALLED = "installed"
UPDATED = "updated"
ACTION_REQUIRED = "action_required"
CANCELLED = "cancelled"
CONFLICT = "conflict"

CONFLICT_ACTIONS = ("overwrite", "merge", "cancel")
DEFAULT_SKILL_VERSION = "1.0.0"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _write_text_atomic(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(path.name + ".tmp")
    tmp.write_text(text, encoding="utf-8")
    tmp.replace(path)


@dataclass(frozen=True)
class InstallResult:
    status: str
    skill_id: str
    skill_name: str
    install_path: Path
    source: str
    trust: TrustTier
    version: str | None = None
    files: tuple[str, ...] = ()
    warnings: tuple[str, ...] = ()
    tips: tuple[str, ...] = ()
    requires_action: tuple[str, ...] = ()
    modification: ModificationResult | None = None
    diff: DiffResult | None = None
    conflicts: tuple[MergeConflict, ...] = ()
    backup: str | None = None
    optimization: Optimized | None = None
    subagent_path: Path | None = None

    @property
    def success(self) -> bool:
        return self.status in (INSTALLED, UPDATED)


@dataclass(frozen=True)
class InstalledSkill:
    entry: ManifestEntry
    modified: bool | None


@dataclass(frozen=True)
class UninstallResult:
    name: str
    removed_path: Path
    backup: str | None


@dataclass(frozen=True)
class RestoreResult:
    name: str
    restored: str
    pre_restore_backup: str | None


@dataclass(frozen=True)
class _Resolved:
    skill_id: str
    source: SourceRef
    trust: TrustTier


class SkillInstaller:
    def __init__(
        self,
        *,
        config: Config,
        manifest_store: ManifestStore,
        lookup: RegistryLookup,
        fetcher: SourceFetcher,
        gate: SecurityGate,
        backups: BackupStore,
        history: VersionHistory | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.config = config
        self.manifest_store = manifest_store
        self.lookup = lookup
        self.fetcher = fetcher
        self.gate = gate
        self.backups = backups
        self.history = history
        self.clock = clock

    def skill_path(self, name: str) -> Path:
        return self.config.skills_path / validate_skill_name(name)

    def _resolve(self, identifier: str) -> _Resolved:
        parsed = parse_skill_identifier(identifier)
        if isinstance(parsed, DirectSource):
            ref = parsed.source
            skill_id = "/".join(p for p in (ref.owner, ref.repo, ref.path) if p)
            return _Resolved(skill_id=skill_id, source=ref, trust=TrustTier.UNVERIFIED)
        info = self.lookup.resolve(parsed)
        return _Resolved(skill_id=parsed.key, source=parse_source_url(info.source_url), trust=info.trust)

    def _resolve_entry(self, entry: ManifestEntry) -> _Resolved:
        # Registry installs keep their trust tier; direct installs need the recorded branch.
        if isinstance(parse_skill_identifier(entry.id), RegistryKey) or not entry.source:
            return self._resolve(entry.id)
        return _Resolved(skill_id=entry.id, source=parse_source_url(entry.source), trust=TrustTier.UNVERIFIED)

    def install(
        self,
        identifier: str,
        *,
        force: bool = False,
        skip_scan: bool = False,
        skip_optimize: bool = False,
        conflict_action: str | None = None,
    ) -> InstallResult:
        if conflict_action is not None and conflict_action not in CONFLICT_ACTIONS:
            raise SkillwardError(f"Unknown conflict action {conflict_action!r}. Use one of: {', '.join(CONFLICT_ACTIONS)}")

        resolved = self._resolve(identifier)
        name = validate_skill_name(resolved.source.skill_name)
        install_dir = self.skill_path(name)
        existing = self.manifest_store.load().installed_skills.get(name)
        reinstall = existing is not None or install_dir.exists()
        if reinstall and not (force or conflict_action):
            raise AlreadyInstalledError(
                f"Skill {name!r} is already installed at {install_dir}. Use --force to reinstall."
            )

        bundle = self.fetcher.fetch_bundle(resolved.source)
        ensure_valid(bundle.primary)
        self.gate.check_primary(resolved.skill_id, bundle.primary, bypass=skip_scan)
        aux = self.gate.filter_auxiliary(resolved.skill_id, bundle.auxiliary, bypass=skip_scan)
        warnings = list(aux.warnings)
        if skip_scan:
            warnings.append("Security scan was skipped")

        def result(status: str, **kwargs) -> InstallResult:
            return InstallResult(
                status=status,
                skill_id=resolved.skill_id,
                skill_name=name,
                install_path=install_dir,
                source=resolved.source.url,
                trust=resolved.trust,
                warnings=tuple(warnings),
                **kwargs,
            )

        primary_path = install_dir / PRIMARY_FILENAME
        modification = None
        if existing is not None and existing.original_content_hash:
            modification = detect_modifications(primary_path, existing.original_content_hash)

        merged_content: str | None = None
        backup: BackupInfo | None = None
        if modification is not None and modification.modified:
            local = primary_path.read_text(encoding="utf-8") if primary_path.is_file() else ""
            if conflict_action is None:
                return result(
                    ACTION_REQUIRED,
                    requires_action=CONFLICT_ACTIONS,
                    modification=modification,
                    diff=compute_diff(local, bundle.primary),
                    tips=(
                        f"{name} has local modifications.",
                        "Re-run with --on-conflict overwrite (backup first), merge (three-way), or cancel.",
                    ),
                )
            if conflict_action == "cancel":
                return result(CANCELLED, modification=modification)

            backup = self._backup(name, install_dir, f"pre-{conflict_action}")
            if conflict_action == "merge":
                original = self.backups.load_original(name)
                merge = three_way_merge(original.content if original else "", local, bundle.primary)
                if not merge.success:
                    _write_text_atomic(primary_path, merge.merged)
                    return result(
                        CONFLICT,
                        modification=modification,
                        conflicts=merge.conflicts or (),
                        backup=backup.name if backup else None,
                        tips=(
                            f"Resolve the conflict markers in {primary_path}.",
                            f"Restore the previous version with: skillward restore {name} {backup.name}"
                            if backup
                            else "No backup was needed; the install directory was missing.",
                        ),
                    )
                merged_content = merge.merged
        elif reinstall and install_dir.exists():
            backup = self._backup(name, install_dir, "pre-update")

        optimization = None
        primary = bundle.primary
        sub_files: tuple = ()
        if merged_content is not None:
            primary = merged_content
        elif self.config.optimize and not skip_optimize:
            outcome = optimize_skill(name, bundle.primary)
            if isinstance(outcome, Optimized):
                optimization = outcome
                primary = outcome.content
                sub_files = outcome.sub_files

        files = {PRIMARY_FILENAME: primary, **aux.kept}
        for sub in sub_files:
            files[sub.filename] = sub.content
        self._write_install_dir(install_dir, files)

        subagent_path = None
        if optimization is not None and optimization.subagent is not None:
            subagent_path = self.config.agents_path / optimization.subagent.filename
            try:
                _write_text_atomic(subagent_path, optimization.subagent.content)
            except OSError as e:
                warnings.append(f"Could not write companion subagent {subagent_path}: {e}")
                subagent_path = None

        now = _iso(self.clock())
        semver = frontmatter_semver(parse_frontmatter(bundle.primary))
        version = semver or DEFAULT_SKILL_VERSION
        # The merge base is set on a fresh install and kept across updates.
        self.backups.store_original(
            name,
            bundle.primary,
            {"id": resolved.skill_id, "source": resolved.source.url, "installedAt": now, "version": version},
            replace=not reinstall,
        )
        # A merged file still carries local edits, so it must not count as pristine.
        baseline_hash = hash_content(bundle.primary if merged_content is not None else primary)

        def apply(manifest: Manifest) -> None:
            prior = manifest.installed_skills.get(name)
            manifest.installed_skills[name] = ManifestEntry(
                id=resolved.skill_id,
                name=name,
                version=version,
                source=resolved.source.url,
                install_path=str(install_dir),
                installed_at=prior.installed_at if prior and prior.installed_at else now,
                last_updated=now,
                original_content_hash=baseline_hash,
            )

        self.manifest_store.update_safely(apply)
        self.backups.cleanup_old_backups(name, keep=self.config.backup_keep)
        self._record_version(resolved.skill_id, name, bundle.primary, semver, previous=existing)

        status = UPDATED if reinstall else INSTALLED
        return result(
            status,
            version=version,
            files=tuple(sorted(files)),
            modification=modification,
            backup=backup.name if backup else None,
            optimization=optimization,
            subagent_path=subagent_path,
            tips=self._tips(name, install_dir, optimization, subagent_path),
        )

    def _backup(self, name: str, install_dir: Path, reason: str) -> BackupInfo | None:
        if not install_dir.is_dir():
            return None
        return self.backups.create_backup(name, install_dir, reason)

    def _write_install_dir(self, install_dir: Path, files: dict[str, str]) -> None:
        parent = install_dir.parent
        parent.mkdir(parents=True, exist_ok=True)
        staging = parent / f".{install_dir.name}.staging"
        previous = parent / f".{install_dir.name}.previous"
        shutil.rmtree(staging, ignore_errors=True)
        shutil.rmtree(previous, ignore_errors=True)

        staging.mkdir()
        for filename, content in files.items():
            (staging / filename).write_text(content, encoding="utf-8")

        had_existing = install_dir.exists()
        if had_existing:
            install_dir.rename(previous)
        try:
            staging.rename(install_dir)
        except OSError:
            if had_existing and previous.exists():
                previous.rename(install_dir)
            shutil.rmtree(staging, ignore_errors=True)
            raise
        shutil.rmtree(previous, ignore_errors=True)

    def _record_version(
        self, skill_id: str, name: str, content: str, semver: str | None, *, previous: ManifestEntry | None
    ) -> None:
        if self.history is None:
            return
        change_type = None
        if previous is not None:
            original = self.backups.load_original(name)
            if original is not None and original.content != content:
                change_type = classify_change(original.content, content)
        try:
            self.history.record_version(
                skill_id,
                hash_content(content),
                semver=semver,
                change_type=change_type,
                metadata={"name": name},
            )
        except sqlite3.Error as e:
            logger.warning("Could not record version history for %s: %s", skill_id, e)

    def _tips(self, name: str, install_dir: Path, optimization: Optimized | None, subagent_path: Path | None) -> tuple[str, ...]:
        tips = [
            f'Skill "{name}" installed to {install_dir}',
            f'Use it by asking Claude to "use the {name} skill"',
        ]
        if optimization is not None:
            stats = optimization.stats
            if optimization.sub_files:
                tips.append(
                    f"Optimized: {stats.original_lines} -> {stats.optimized_lines} lines "
                    f"(~{stats.token_reduction_percent}% fewer tokens), "
                    f"{len(optimization.sub_files)} sub-file(s) loaded on demand"
                )
            if subagent_path is not None:
                tips.append(f"Companion subagent written to {subagent_path}")
            if optimization.claude_md_snippet:
                tips.append("Add this to your CLAUDE.md to enable delegation:\n" + optimization.claude_md_snippet)
        return tuple(tips)

    def uninstall(self, name: str) -> UninstallResult:
        install_dir = self.skill_path(name)
        entry = self.manifest_store.load().installed_skills.get(name)
        if entry is None and not install_dir.exists():
            raise NotFoundError(f"Skill {name!r} is not installed", tips=("List installed skills with: skillward list",))

        backup = self._backup(name, install_dir, "pre-uninstall")
        if install_dir.exists():
            shutil.rmtree(install_dir)
        subagent = self.config.agents_path / f"{name}-specialist.md"
        if subagent.is_file():
            subagent.unlink()
        self.backups.discard_original(name)

        def apply(manifest: Manifest) -> None:
            manifest.installed_skills.pop(name, None)

        self.manifest_store.update_safely(apply)
        return UninstallResult(name=name, removed_path=install_dir, backup=backup.name if backup else None)

    def list_installed(self) -> list[InstalledSkill]:
        out: list[InstalledSkill] = []
        manifest = self.manifest_store.load()
        for name in sorted(manifest.installed_skills):
            entry = manifest.installed_skills[name]
            modified = None
            if entry.original_content_hash:
                primary = Path(entry.install_path or self.skill_path(name)) / PRIMARY_FILENAME
                modified = detect_modifications(primary, entry.original_content_hash).modified
            out.append(InstalledSkill(entry=entry, modified=modified))
        return out

    def restore(self, name: str, backup_name: str) -> RestoreResult:
        install_dir = self.skill_path(name)
        pre = self.backups.restore_backup(name, backup_name, install_dir)

        def apply(manifest: Manifest) -> None:
            entry = manifest.installed_skills.get(name)
            if entry is not None:
                manifest.installed_skills[name] = touch_entry(entry, when=_iso(self.clock()))

        self.manifest_store.update_safely(apply)
        return RestoreResult(name=name, restored=backup_name, pre_restore_backup=pre.name if pre else None)

    def diff_installed(self, name: str) -> SkillDiffReport:
        entry = self.manifest_store.load().installed_skills.get(name)
        if entry is None:
            raise NotFoundError(f"Skill {name!r} is not installed", tips=("List installed skills with: skillward list",))
        primary_path = self.skill_path(name) / PRIMARY_FILENAME
        local = primary_path.read_text(encoding="utf-8") if primary_path.is_file() else ""
        resolved = self._resolve_entry(entry)
        upstream = self.fetcher.fetch(resolved.source, PRIMARY_FILENAME)
        modified = False
        if entry.original_content_hash:
            modified = detect_modifications(primary_path, entry.original_content_hash).modified
        return diff_skill(
            entry.id,
            local,
            upstream,
            has_local_modifications=modified,
            trust=resolved.trust,
        )
