from __future__ import annotations

import argparse
import json
import logging
import sys
import textwrap
from dataclasses import asdict, replace
from pathlib import Path
from typing import Any

from ._version import __version__
from .backups import BackupStore
from .client import RegistryClient, RegistryHTTPError, SkillwardError
from .config import Config, apply_env_overrides, config_path, load_config, save_config
from .fetcher import SourceFetcher
from .history import AdvisoryStore, HistoryDatabase, VersionHistory
from .installer import ACTION_REQUIRED, CONFLICT, InstallResult, SkillInstaller
from .manifest import ManifestStore
from .pack_audit import audit_pack
from .registry import RegistryCache, RegistryLookup
from .security import PatternScanner, SecurityGate
from .versioning import diff_skill, format_skill_diff


def _print_table(rows: list[list[str]]) -> None:
    if not rows:
        return
    widths = [0] * len(rows[0])
    for r in rows:
        for i, c in enumerate(r):
            widths[i] = max(widths[i], len(c))
    for r in rows:
        line = "  ".join(c.ljust(widths[i]) for i, c in enumerate(r))
        print(line.rstrip())


def _print_json(obj: Any) -> None:
    print(json.dumps(obj, indent=2, sort_keys=True, default=str))


class _CliFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        return f"{record.levelname.lower()}: {record.getMessage()}"


def _configure_logging(verbose: bool) -> None:
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(_CliFormatter())
    logging.basicConfig(level=logging.DEBUG if verbose else logging.WARNING, handlers=[handler])


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="skillward",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        description="Install, update and audit AI assistant skills from GitHub.",
        epilog=textwrap.dedent(
            """\
            Environment variables:
              SKILLWARD_CONFIG_PATH, SKILLWARD_REGISTRY_URL, SKILLWARD_TIMEOUT_S,
              SKILLWARD_OFFLINE, SKILLWARD_SKILLS_DIR, SKILLWARD_STATE_DIR
            """
        ),
    )

    def _add_runtime_overrides(parser: argparse.ArgumentParser, *, top_level: bool = False) -> None:
        # Subcommand copies must not clobber values given before the subcommand.
        default = None if top_level else argparse.SUPPRESS
        parser.add_argument("--registry-url", default=default, help="Registry lookup service base URL")
        parser.add_argument("--timeout-s", type=float, default=default, help="HTTP timeout in seconds")
        parser.add_argument(
            "--offline", action="store_true", default=default, help="Resolve registry keys from the local cache only"
        )
        parser.add_argument("--skills-dir", default=default, help="Install root (default: ~/.claude/skills)")
        parser.add_argument("--state-dir", default=default, help="Directory for the manifest, cache and history database")
        parser.add_argument("-v", "--verbose", action="store_true", default=default, help="Debug logging")

    _add_runtime_overrides(p, top_level=True)
    p.add_argument("--version", action="version", version=f"skillward {__version__}")

    sub = p.add_subparsers(dest="cmd", required=True)

    # config
    cfg = sub.add_parser("config", help="Manage local config")
    cfg_sub = cfg.add_subparsers(dest="subcmd", required=True)
    cfg_sub.add_parser("path", help="Print config path")
    cfg_sub.add_parser("show", help="Show effective config")

    cfg_set = cfg_sub.add_parser("set", help="Set config fields")
    cfg_set.add_argument("--registry-url")
    cfg_set.add_argument("--timeout-s", type=float)
    cfg_set.add_argument("--offline", dest="offline", action="store_true", default=None)
    cfg_set.add_argument("--online", dest="offline", action="store_false")
    cfg_set.add_argument("--skills-dir")
    cfg_set.add_argument("--agents-dir")
    cfg_set.add_argument("--state-dir")
    cfg_set.add_argument("--lock-timeout-s", type=float)
    cfg_set.add_argument("--backup-keep", type=int)
    cfg_set.add_argument("--optimize", dest="optimize", action="store_true", default=None)
    cfg_set.add_argument("--no-optimize", dest="optimize", action="store_false")

    install = sub.add_parser("install", aliases=["i"], help="Install or update a skill")
    _add_runtime_overrides(install)
    install.add_argument("skill", help="author/name, owner/repo/path or a GitHub URL")
    install.add_argument("--force", action="store_true", help="Reinstall an already installed skill")
    install.add_argument("--skip-scan", action="store_true", help="Bypass the security scan (logged)")
    install.add_argument("--no-optimize", action="store_true", help="Install content as fetched")
    install.add_argument(
        "--on-conflict",
        choices=["overwrite", "merge", "cancel"],
        help="What to do when the installed copy has local modifications",
    )
    install.add_argument("--json", action="store_true", help="Output JSON")

    uninstall = sub.add_parser("uninstall", aliases=["remove", "rm"], help="Remove an installed skill")
    _add_runtime_overrides(uninstall)
    uninstall.add_argument("name", help="Installed skill name")
    uninstall.add_argument("--json", action="store_true", help="Output JSON")

    ls = sub.add_parser("list", aliases=["ls"], help="List installed skills")
    _add_runtime_overrides(ls)
    ls.add_argument("--json", action="store_true", help="Output JSON")

    backups = sub.add_parser("backups", help="List backups of an installed skill")
    _add_runtime_overrides(backups)
    backups.add_argument("name", help="Installed skill name")
    backups.add_argument("--json", action="store_true", help="Output JSON")

    restore = sub.add_parser("restore", help="Restore a skill from a backup")
    _add_runtime_overrides(restore)
    restore.add_argument("name", help="Installed skill name")
    restore.add_argument("backup", help="Backup name as shown by `skillward backups`")
    restore.add_argument("--json", action="store_true", help="Output JSON")

    updates = sub.add_parser("updates", help="Check tracked skills for newer recorded versions")
    _add_runtime_overrides(updates)
    updates.add_argument("skill_ids", nargs="*", help="Skill ids to check (default: all tracked)")
    updates.add_argument("--json", action="store_true", help="Output JSON")

    diff = sub.add_parser("diff", help="Section-level diff and update recommendation")
    _add_runtime_overrides(diff)
    diff.add_argument("name", nargs="?", help="Installed skill name (compares against upstream)")
    diff.add_argument("--old", help="Compare two local files instead: old SKILL.md")
    diff.add_argument("--new", help="Compare two local files instead: new SKILL.md")
    diff.add_argument("--old-risk", type=int, help="Risk score of the old version (0-100)")
    diff.add_argument("--new-risk", type=int, help="Risk score of the new version (0-100)")
    diff.add_argument("--json", action="store_true", help="Output JSON")

    advisories = sub.add_parser("advisories", help="Summarize active security advisories")
    _add_runtime_overrides(advisories)
    advisories.add_argument("skill_ids", nargs="*", help="Skill ids to check (default: all)")
    advisories.add_argument("--json", action="store_true", help="Output JSON")

    pack = sub.add_parser("pack-audit", help="Compare a skill pack's versions against recorded history")
    _add_runtime_overrides(pack)
    pack.add_argument("path", help="Pack root (containing skills/) or a directory of skill folders")
    pack.add_argument("--json", action="store_true", help="Output JSON")

    return p


def _merge_cfg(base: Config, args: argparse.Namespace) -> Config:
    # Env overrides config; CLI overrides both.
    cfg = apply_env_overrides(base)
    changes: dict[str, Any] = {}
    if getattr(args, "registry_url", None):
        changes["registry_url"] = args.registry_url
    if getattr(args, "timeout_s", None) is not None:
        changes["timeout_s"] = args.timeout_s
    if getattr(args, "offline", None):
        changes["offline"] = True
    if getattr(args, "skills_dir", None):
        changes["skills_dir"] = args.skills_dir
    if getattr(args, "state_dir", None):
        changes["state_dir"] = args.state_dir
    return replace(cfg, **changes) if changes else cfg


class _Runtime:
    """Wires the installer's collaborators from config and owns their cleanup."""

    def __init__(self, cfg: Config) -> None:
        self.cfg = cfg
        self.registry = RegistryClient(registry_url=cfg.registry_url, timeout_s=cfg.timeout_s, offline=cfg.offline)
        self.fetcher = SourceFetcher(timeout_s=cfg.timeout_s)
        self.db = HistoryDatabase(cfg.history_db_path)
        self.history = VersionHistory(self.db)
        self.advisories = AdvisoryStore(self.db)
        self.manifest = ManifestStore(
            cfg.manifest_path,
            lock_timeout_s=cfg.lock_timeout_s,
            retry_interval_s=cfg.lock_retry_interval_s,
        )
        self.backups = BackupStore(cfg.backups_path)
        self.installer = SkillInstaller(
            config=cfg,
            manifest_store=self.manifest,
            lookup=RegistryLookup(service=self.registry, cache=RegistryCache(cfg.registry_cache_path)),
            fetcher=self.fetcher,
            gate=SecurityGate(PatternScanner()),
            backups=self.backups,
            history=self.history,
        )

    def close(self) -> None:
        self.registry.close()
        self.fetcher.close()
        self.db.close()


def _runtime(args: argparse.Namespace) -> _Runtime:
    return _Runtime(_merge_cfg(load_config(), args))


def cmd_config(args: argparse.Namespace) -> int:
    if args.subcmd == "path":
        print(str(config_path()))
        return 0

    if args.subcmd == "show":
        cfg = _merge_cfg(load_config(), args)
        d = asdict(cfg)
        d["effective_paths"] = {
            "skills": str(cfg.skills_path),
            "agents": str(cfg.agents_path),
            "manifest": str(cfg.manifest_path),
            "history": str(cfg.history_db_path),
            "backups": str(cfg.backups_path),
        }
        _print_json(d)
        return 0

    if args.subcmd == "set":
        cfg = load_config()
        changes = {
            k: getattr(args, k)
            for k in (
                "registry_url",
                "timeout_s",
                "offline",
                "skills_dir",
                "agents_dir",
                "state_dir",
                "lock_timeout_s",
                "backup_keep",
                "optimize",
            )
            if getattr(args, k, None) is not None
        }
        path = save_config(replace(cfg, **changes))
        print(f"Saved: {path}")
        return 0

    raise AssertionError("unreachable")


def _install_payload(result: InstallResult) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "status": result.status,
        "skill_id": result.skill_id,
        "skill_name": result.skill_name,
        "install_path": str(result.install_path),
        "source": result.source,
        "trust": result.trust.value,
        "version": result.version,
        "files": list(result.files),
        "warnings": list(result.warnings),
        "tips": list(result.tips),
        "backup": result.backup,
    }
    if result.requires_action:
        payload["requires_action"] = list(result.requires_action)
    if result.modification is not None:
        payload["modification"] = asdict(result.modification)
    if result.diff is not None:
        payload["diff"] = {
            "additions": len(result.diff.additions),
            "deletions": len(result.diff.deletions),
            "unchanged": result.diff.unchanged,
        }
    if result.conflicts:
        payload["conflicts"] = [asdict(c) for c in result.conflicts]
    if result.optimization is not None:
        payload["optimization"] = {
            "sub_files": [f.filename for f in result.optimization.sub_files],
            "subagent": str(result.subagent_path) if result.subagent_path else None,
            **asdict(result.optimization.stats),
        }
    return payload


def cmd_install(args: argparse.Namespace) -> int:
    rt = _runtime(args)
    try:
        result = rt.installer.install(
            args.skill,
            force=args.force,
            skip_scan=args.skip_scan,
            skip_optimize=args.no_optimize,
            conflict_action=args.on_conflict,
        )
    finally:
        rt.close()

    exit_code = 0
    if result.status == ACTION_REQUIRED:
        exit_code = 2
    elif result.status == CONFLICT:
        exit_code = 1

    if args.json:
        _print_json(_install_payload(result))
        return exit_code

    print(f"{result.status}: {result.skill_name} ({result.skill_id})")
    print(f"path: {result.install_path}")
    print(f"source: {result.source}")
    if result.backup:
        print(f"backup: {result.backup}")
    if result.diff is not None:
        print(
            f"local vs upstream: +{len(result.diff.additions)} -{len(result.diff.deletions)} "
            f"({result.diff.unchanged} unchanged)"
        )
    for c in result.conflicts:
        print(f"conflict at line {c.line_number}: local={c.local!r} upstream={c.upstream!r}")
    for warning in result.warnings:
        print(f"warning: {warning}")
    for tip in result.tips:
        print(tip)
    return exit_code


def cmd_uninstall(args: argparse.Namespace) -> int:
    rt = _runtime(args)
    try:
        result = rt.installer.uninstall(args.name)
    finally:
        rt.close()
    if args.json:
        _print_json({"removed": result.name, "path": str(result.removed_path), "backup": result.backup})
        return 0
    print(f"removed: {result.name}")
    if result.backup:
        print(f"backup: {result.backup}")
    return 0


def cmd_list(args: argparse.Namespace) -> int:
    rt = _runtime(args)
    try:
        skills = rt.installer.list_installed()
    finally:
        rt.close()
    if args.json:
        _print_json([{**s.entry.to_json(), "modified": s.modified} for s in skills])
        return 0
    if not skills:
        print("No skills installed.")
        return 0
    rows = [["NAME", "VERSION", "MODIFIED", "UPDATED", "SOURCE"]]
    for s in skills:
        modified = "?" if s.modified is None else ("yes" if s.modified else "no")
        rows.append([s.entry.name, s.entry.version, modified, s.entry.last_updated, s.entry.source])
    _print_table(rows)
    return 0


def cmd_backups(args: argparse.Namespace) -> int:
    rt = _runtime(args)
    try:
        infos = rt.backups.list_backups(args.name)
        has_original = rt.backups.load_original(args.name) is not None
    finally:
        rt.close()
    if args.json:
        _print_json(
            {
                "original": has_original,
                "backups": [{"name": b.name, "reason": b.reason, "timestamp": b.timestamp.isoformat()} for b in infos],
            }
        )
        return 0
    if not infos:
        print(f"No backups for {args.name}.")
    else:
        rows = [["NAME", "REASON", "TIMESTAMP"]]
        rows.extend([b.name, b.reason, b.timestamp.strftime("%Y-%m-%d %H:%M:%S")] for b in infos)
        _print_table(rows)
    print(f"original baseline: {'present' if has_original else 'missing'}")
    return 0


def cmd_restore(args: argparse.Namespace) -> int:
    rt = _runtime(args)
    try:
        result = rt.installer.restore(args.name, args.backup)
    finally:
        rt.close()
    if args.json:
        _print_json(asdict(result))
        return 0
    print(f"restored: {result.name} from {result.restored}")
    if result.pre_restore_backup:
        print(f"previous state saved as: {result.pre_restore_backup}")
    return 0


def cmd_updates(args: argparse.Namespace) -> int:
    rt = _runtime(args)
    try:
        report = rt.history.check_updates(args.skill_ids or None)
    finally:
        rt.close()
    if args.json:
        _print_json({"updates_available": report.updates_available, "skills": [asdict(s) for s in report.skills]})
        return 0
    if not report.skills:
        print("No tracked skills.")
        return 0
    rows = [["SKILL", "INSTALLED", "LATEST", "AGE_DAYS", "UPDATE"]]
    for s in report.skills:
        rows.append(
            [s.skill_id, s.installed_hash, s.latest_hash, str(s.age_days), "yes" if s.update_available else "no"]
        )
    _print_table(rows)
    print(f"updates available: {report.updates_available}")
    return 0


def _read_skill_file(path: str) -> str:
    try:
        return Path(path).expanduser().read_text(encoding="utf-8")
    except OSError as e:
        raise SkillwardError(f"Cannot read {path}: {e.strerror or e}") from e


def cmd_diff(args: argparse.Namespace) -> int:
    if args.old or args.new:
        if not (args.old and args.new):
            raise SkillwardError("--old and --new must be given together.")
        report = diff_skill(
            args.name or Path(args.new).parent.name,
            _read_skill_file(args.old),
            _read_skill_file(args.new),
            old_risk_score=args.old_risk,
            new_risk_score=args.new_risk,
        )
    else:
        if not args.name:
            raise SkillwardError("Give an installed skill name, or --old and --new files.")
        rt = _runtime(args)
        try:
            report = rt.installer.diff_installed(args.name)
        finally:
            rt.close()

    if args.json:
        _print_json(report.to_json())
        return 0
    print(format_skill_diff(report))
    return 0


def cmd_advisories(args: argparse.Namespace) -> int:
    rt = _runtime(args)
    try:
        report = rt.advisories.summarize(args.skill_ids or None)
    finally:
        rt.close()
    if args.json:
        _print_json(report.to_json())
        return 0
    if not report.advisories_available:
        print(report.message)
        return 0
    summary = report.summary
    print(
        f"total: {summary['total']} (critical {summary['critical']}, high {summary['high']}, "
        f"medium {summary['medium']}, low {summary['low']})"
    )
    if report.advisories:
        rows = [["SKILL", "SEVERITY", "ID", "FIX", "TITLE"]]
        for a in report.advisories:
            rows.append([a.skill_id, a.severity, a.id, "yes" if a.fix_available else "no", a.title])
        _print_table(rows)
    return 0


def cmd_pack_audit(args: argparse.Namespace) -> int:
    rt = _runtime(args)
    try:
        report = audit_pack(args.path, rt.history)
    finally:
        rt.close()
    if args.json:
        _print_json(report.to_json())
        return 0
    print(f"pack: {report.pack_path}")
    rows = [["NAME", "BUNDLED", "REGISTRY", "STATUS"]]
    for s in report.skills:
        rows.append([s.name, s.bundled_version or "-", s.registry_version or "-", s.status])
    _print_table(rows)
    print(f"skills: {report.skill_count}  drift: {report.drift_count}  no registry data: {report.no_registry_data_count}")
    return 0


def _format_http_error(err: RegistryHTTPError) -> str:
    body = err.body.strip()
    if len(body) > 500:
        body = body[:500] + "..."
    return f"HTTP {err.status_code}" + (f": {body}" if body else "")


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    _configure_logging(bool(getattr(args, "verbose", False)))
    try:
        if args.cmd == "config":
            return cmd_config(args)
        if args.cmd in ("install", "i"):
            return cmd_install(args)
        if args.cmd in ("uninstall", "remove", "rm"):
            return cmd_uninstall(args)
        if args.cmd in ("list", "ls"):
            return cmd_list(args)
        if args.cmd == "backups":
            return cmd_backups(args)
        if args.cmd == "restore":
            return cmd_restore(args)
        if args.cmd == "updates":
            return cmd_updates(args)
        if args.cmd == "diff":
            return cmd_diff(args)
        if args.cmd == "advisories":
            return cmd_advisories(args)
        if args.cmd == "pack-audit":
            return cmd_pack_audit(args)
        raise AssertionError("unreachable")
    except RegistryHTTPError as e:
        print(f"error: {_format_http_error(e)}", file=sys.stderr)
        return 1
    except SkillwardError as e:
        print(f"error: {e}", file=sys.stderr)
        tips = getattr(e, "tips", ())
        for tip in tips:
            print(f"  - {tip}", file=sys.stderr)
        return 1


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
