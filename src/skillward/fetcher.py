from __future__ import annotations

import logging
from dataclasses import dataclass, field

import httpx

from .client import FetchError, NotFoundError
from .config import DEFAULT_TIMEOUT_S
from .sources import DEFAULT_BRANCH, FALLBACK_BRANCH, SourceRef

logger = logging.getLogger(__name__)

RAW_BASE_URL = "https://raw.githubusercontent.com"
PRIMARY_FILENAME = "SKILL.md"
AUXILIARY_FILENAMES = ("README.md", "examples.md", "config.json")


@dataclass(frozen=True)
class FetchedSkill:
    source: SourceRef
    primary: str
    auxiliary: dict[str, str] = field(default_factory=dict)


def raw_url(owner: str, repo: str, branch: str, file_path: str) -> str:
    return f"{RAW_BASE_URL}/{owner}/{repo}/{branch}/{file_path.lstrip('/')}"


class SourceFetcher:
    def __init__(self, *, timeout_s: float = DEFAULT_TIMEOUT_S, http: httpx.Client | None = None) -> None:
        self._http = http or httpx.Client(timeout=timeout_s, follow_redirects=True)

    def close(self) -> None:
        self._http.close()

    def __enter__(self) -> "SourceFetcher":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def _get(self, url: str) -> httpx.Response:
        try:
            return self._http.get(url)
        except httpx.HTTPError as e:
            raise FetchError(f"Request failed for {url}: {e}") from e

    def fetch(self, ref: SourceRef, filename: str) -> str:
        file_path = ref.file_path(filename)
        resp = self._get(raw_url(ref.owner, ref.repo, ref.branch, file_path))
        if resp.is_success:
            return resp.text

        # Repositories use either default branch name; one retry covers both.
        if ref.branch == DEFAULT_BRANCH:
            logger.debug("Fetching %s from %s failed (%s), retrying on %s", file_path, ref.branch, resp.status_code, FALLBACK_BRANCH)
            fallback = self._get(raw_url(ref.owner, ref.repo, FALLBACK_BRANCH, file_path))
            if fallback.is_success:
                return fallback.text

        raise FetchError(f"Failed to fetch {file_path}: {resp.status_code}", status_code=resp.status_code)

    def fetch_bundle(self, ref: SourceRef) -> FetchedSkill:
        try:
            primary = self.fetch(ref, PRIMARY_FILENAME)
        except FetchError as e:
            location = ref.path or "repository root"
            raise NotFoundError(
                f"Could not find {PRIMARY_FILENAME} at {location}. "
                f"Skills must have a {PRIMARY_FILENAME} file to be installable. Repository: {ref.repo_url}",
                tips=(
                    f"This skill may be browse-only (no {PRIMARY_FILENAME} at the expected location)",
                    f"Verify the repository exists: {ref.repo_url}",
                    f"Check whether {PRIMARY_FILENAME} lives in a subdirectory and pass the full path",
                ),
            ) from e

        auxiliary: dict[str, str] = {}
        for filename in AUXILIARY_FILENAMES:
            try:
                auxiliary[filename] = self.fetch(ref, filename)
            except FetchError:
                logger.debug("Optional file %s not available for %s", filename, ref.repo_url)
        return FetchedSkill(source=ref, primary=primary, auxiliary=auxiliary)
