from __future__ import annotations

import re
from dataclasses import dataclass
from posixpath import basename
from urllib.parse import urlsplit

from .client import IdentifierFormatError

ALLOWED_HOSTS = ("github.com", "www.github.com")
DEFAULT_BRANCH = "main"
FALLBACK_BRANCH = "master"

_SKILL_NAME_RE = re.compile(r"[A-Za-z0-9][A-Za-z0-9._-]*")
_SEGMENT_RE = re.compile(r"[^\s/\\?#]+")


@dataclass(frozen=True)
class SourceRef:
    """A fetchable location: one GitHub repository, a path inside it and a branch."""

    owner: str
    repo: str
    path: str
    branch: str = DEFAULT_BRANCH

    @property
    def skill_name(self) -> str:
        return basename(self.path.rstrip("/")) if self.path else self.repo

    @property
    def source_label(self) -> str:
        return f"github:{self.owner}/{self.repo}"

    @property
    def repo_url(self) -> str:
        return f"https://github.com/{self.owner}/{self.repo}"

    @property
    def url(self) -> str:
        """Canonical URL that ``parse_source_url`` maps back to this reference."""
        if not self.path and self.branch == DEFAULT_BRANCH:
            return self.repo_url
        return f"{self.repo_url}/tree/{self.branch}/{self.path}".rstrip("/")

    def file_path(self, filename: str) -> str:
        base = self.path.strip("/")
        return f"{base}/{filename}" if base else filename


@dataclass(frozen=True)
class DirectSource:
    source: SourceRef

    @property
    def skill_name(self) -> str:
        return self.source.skill_name


@dataclass(frozen=True)
class RegistryKey:
    author: str
    name: str

    @property
    def key(self) -> str:
        return f"{self.author}/{self.name}"


SkillIdentifier = DirectSource | RegistryKey


def _check_segments(raw: str, parts: list[str]) -> None:
    for part in parts:
        if not part or part in (".", "..") or not _SEGMENT_RE.fullmatch(part):
            raise IdentifierFormatError(
                f"Invalid skill ID format: {raw!r}. Use author/skill-name, owner/repo/path or a GitHub URL."
            )


def validate_skill_name(name: str) -> str:
    if not _SKILL_NAME_RE.fullmatch(name) or name in (".", ".."):
        raise IdentifierFormatError(f"Invalid skill name: {name!r}")
    return name


def parse_source_url(url: str) -> SourceRef:
    raw = url.strip()
    try:
        parts = urlsplit(raw)
    except ValueError as e:
        raise IdentifierFormatError(f"Invalid repository URL: {url!r}") from e

    host = (parts.hostname or "").lower()
    if host not in ALLOWED_HOSTS:
        raise IdentifierFormatError(
            f"Invalid repository host: {parts.hostname or '<none>'}. "
            f"Only GitHub repositories are supported ({', '.join(ALLOWED_HOSTS)})"
        )
    if parts.scheme not in ("https", "http"):
        raise IdentifierFormatError(f"Unsupported URL scheme in {url!r}")

    segments = [s for s in parts.path.split("/") if s]
    if len(segments) < 2:
        raise IdentifierFormatError(f"Repository URL must include owner and repo: {url!r}")
    _check_segments(raw, segments)

    owner, repo = segments[0], segments[1]
    if repo.endswith(".git"):
        repo = repo[: -len(".git")]

    if len(segments) == 2:
        return SourceRef(owner=owner, repo=repo, path="", branch=DEFAULT_BRANCH)

    if segments[2] in ("tree", "blob") and len(segments) >= 4:
        path = "/".join(segments[4:])
        if segments[2] == "blob" and path.endswith("/SKILL.md"):
            path = path[: -len("/SKILL.md")]
        elif path == "SKILL.md":
            path = ""
        return SourceRef(owner=owner, repo=repo, path=path, branch=segments[3])

    return SourceRef(owner=owner, repo=repo, path="/".join(segments[2:]), branch=DEFAULT_BRANCH)


def parse_skill_identifier(value: str) -> SkillIdentifier:
    raw = value.strip()
    if raw.startswith(("https://", "http://")):
        return DirectSource(source=parse_source_url(raw))

    if "/" not in raw:
        raise IdentifierFormatError(f"Invalid skill ID format: {value!r}. Use owner/repo or GitHub URL.")

    parts = raw.split("/")
    _check_segments(raw, parts)

    # Two segments are ambiguous (registry author/name vs. repo root); defer to a lookup.
    if len(parts) == 2:
        return RegistryKey(author=parts[0], name=parts[1])

    return DirectSource(source=SourceRef(owner=parts[0], repo=parts[1], path="/".join(parts[2:])))
