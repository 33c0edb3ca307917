from __future__ import annotations

import hashlib
from dataclasses import dataclass
from pathlib import Path

LOCAL_MARKER = "<<<<<<< LOCAL"
SEPARATOR_MARKER = "======="
UPSTREAM_MARKER = ">>>>>>> UPSTREAM"


@dataclass(frozen=True)
class ModificationResult:
    modified: bool
    current_hash: str
    original_hash: str


@dataclass(frozen=True)
class DiffLine:
    line_number: int
    text: str


@dataclass(frozen=True)
class DiffResult:
    additions: tuple[DiffLine, ...]
    deletions: tuple[DiffLine, ...]
    unchanged: int


@dataclass(frozen=True)
class MergeConflict:
    line_number: int
    local: str
    upstream: str
    base: str


@dataclass(frozen=True)
class MergeResult:
    success: bool
    merged: str
    conflicts: tuple[MergeConflict, ...] | None = None


def hash_content(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def detect_modifications(install_path: Path, original_hash: str) -> ModificationResult:
    """
    Compare the installed primary file against the hash recorded at install time.

    A missing file counts as modified, with an empty current hash.
    """
    try:
        current = install_path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return ModificationResult(modified=True, current_hash="", original_hash=original_hash)
    current_hash = hash_content(current)
    return ModificationResult(modified=current_hash != original_hash, current_hash=current_hash, original_hash=original_hash)


def compute_diff(base: str, target: str) -> DiffResult:
    base_lines = base.split("\n")
    target_lines = target.split("\n")
    additions: list[DiffLine] = []
    deletions: list[DiffLine] = []
    unchanged = 0

    for i in range(max(len(base_lines), len(target_lines))):
        in_base = i < len(base_lines)
        in_target = i < len(target_lines)
        if in_base and in_target:
            if base_lines[i] == target_lines[i]:
                unchanged += 1
            else:
                deletions.append(DiffLine(i + 1, base_lines[i]))
                additions.append(DiffLine(i + 1, target_lines[i]))
        elif in_target:
            additions.append(DiffLine(i + 1, target_lines[i]))
        else:
            deletions.append(DiffLine(i + 1, base_lines[i]))

    return DiffResult(additions=tuple(additions), deletions=tuple(deletions), unchanged=unchanged)


def _conflict_block(local: str | None, upstream: str | None) -> list[str]:
    block = [LOCAL_MARKER]
    if local is not None:
        block.append(local)
    block.append(SEPARATOR_MARKER)
    if upstream is not None:
        block.append(upstream)
    block.append(UPSTREAM_MARKER)
    return block


def three_way_merge(base: str, local: str, upstream: str) -> MergeResult:
    """
    Merge ``local`` and ``upstream`` against their common ``base`` line by line.

    Lines are compared by position, not aligned by content, so asymmetric
    insertions shift every later line and tend to surface as conflicts.
    """
    if base == "":
        if local == "" and upstream == "":
            return MergeResult(success=True, merged="")
        if local == "":
            return MergeResult(success=True, merged=upstream)
        if upstream == "":
            return MergeResult(success=True, merged=local)
        conflict = MergeConflict(line_number=1, local=local, upstream=upstream, base="")
        merged = "\n".join(_conflict_block(local, upstream))
        return MergeResult(success=False, merged=merged, conflicts=(conflict,))

    base_lines = base.split("\n")
    local_lines = local.split("\n")
    upstream_lines = upstream.split("\n")

    merged_lines: list[str] = []
    conflicts: list[MergeConflict] = []

    for i in range(max(len(base_lines), len(local_lines), len(upstream_lines))):
        in_base = i < len(base_lines)
        in_local = i < len(local_lines)
        in_upstream = i < len(upstream_lines)
        base_line = base_lines[i] if in_base else ""
        local_line = local_lines[i] if in_local else ""
        upstream_line = upstream_lines[i] if in_upstream else ""

        local_changed = local_line != base_line or in_local != in_base
        upstream_changed = upstream_line != base_line or in_upstream != in_base

        if not local_changed and not upstream_changed:
            if in_base:
                merged_lines.append(base_line)
        elif local_changed and not upstream_changed:
            if in_local:
                merged_lines.append(local_line)
        elif upstream_changed and not local_changed:
            if in_upstream:
                merged_lines.append(upstream_line)
        elif local_line == upstream_line:
            if in_local:
                merged_lines.append(local_line)
        else:
            conflicts.append(MergeConflict(line_number=i + 1, local=local_line, upstream=upstream_line, base=base_line))
            merged_lines.extend(_conflict_block(local_line if in_local else None, upstream_line if in_upstream else None))

    return MergeResult(
        success=not conflicts,
        merged="\n".join(merged_lines),
        conflicts=tuple(conflicts) if conflicts else None,
    )
