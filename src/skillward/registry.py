from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Protocol

from .client import DiscoveryOnlyError, SkillwardError
from .sources import RegistryKey

logger = logging.getLogger(__name__)

DISCOVERY_ONLY_TIPS = (
    'Use a full GitHub URL instead, e.g. "https://github.com/owner/repo/tree/main/skills/name"',
    "Search the registry for installable skills",
    "Many indexed skills are metadata-only and cannot be installed directly",
)


class TrustTier(str, Enum):
    VERIFIED = "verified"
    COMMUNITY = "community"
    EXPERIMENTAL = "experimental"
    UNVERIFIED = "unverified"


def validate_trust_tier(value: Any) -> TrustTier:
    if isinstance(value, TrustTier):
        return value
    if isinstance(value, str):
        try:
            return TrustTier(value.strip().lower())
        except ValueError:
            pass
    return TrustTier.UNVERIFIED


@dataclass(frozen=True)
class RegistrySkillInfo:
    source_url: str
    display_name: str
    trust: TrustTier


class LookupService(Protocol):
    def is_offline(self) -> bool:
        ...

    def get_skill(self, key: str) -> dict[str, Any]:
        ...


def _source_url_of(record: dict[str, Any]) -> str | None:
    for key in ("repo_url", "repoUrl", "source_url"):
        value = record.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


class RegistryCache:
    """Local fallback for registry lookups, keyed by ``author/name``."""

    def __init__(self, path: Path) -> None:
        self.path = path

    def _load(self) -> dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("Ignoring unreadable registry cache %s: %s", self.path, e)
            return {}
        skills = raw.get("skills") if isinstance(raw, dict) else None
        return skills if isinstance(skills, dict) else {}

    def get(self, key: str) -> RegistrySkillInfo | None:
        record = self._load().get(key)
        if not isinstance(record, dict):
            return None
        source_url = _source_url_of(record)
        if source_url is None:
            return None
        name = record.get("name")
        return RegistrySkillInfo(
            source_url=source_url,
            display_name=name if isinstance(name, str) and name else key.split("/", 1)[-1],
            trust=validate_trust_tier(record.get("trust_tier")),
        )

    def put(self, key: str, info: RegistrySkillInfo) -> None:
        skills = self._load()
        skills[key] = {
            "repo_url": info.source_url,
            "name": info.display_name,
            "trust_tier": info.trust.value,
        }
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp.write_text(json.dumps({"skills": skills}, indent=2, sort_keys=True) + "\n", encoding="utf-8")
        tmp.replace(self.path)


class RegistryLookup:
    def __init__(self, *, service: LookupService, cache: RegistryCache | None = None) -> None:
        self.service = service
        self.cache = cache

    def resolve(self, ref: RegistryKey) -> RegistrySkillInfo:
        key = ref.key
        if not self.service.is_offline():
            try:
                record = self.service.get_skill(key)
            except SkillwardError as e:
                logger.warning("Registry lookup for %s failed, using local cache: %s", key, e)
            else:
                source_url = _source_url_of(record)
                if source_url is None:
                    # The service knows the skill but has nothing to install; the cache cannot do better.
                    raise DiscoveryOnlyError(_discovery_only_message(key), tips=DISCOVERY_ONLY_TIPS)
                name = record.get("name")
                info = RegistrySkillInfo(
                    source_url=source_url,
                    display_name=name if isinstance(name, str) and name else ref.name,
                    trust=validate_trust_tier(record.get("trust_tier")),
                )
                if self.cache is not None:
                    try:
                        self.cache.put(key, info)
                    except OSError as e:
                        logger.warning("Could not update registry cache: %s", e)
                return info

        if self.cache is not None:
            cached = self.cache.get(key)
            if cached is not None:
                return cached

        raise DiscoveryOnlyError(_discovery_only_message(key), tips=DISCOVERY_ONLY_TIPS)


def _discovery_only_message(key: str) -> str:
    return (
        f'Skill "{key}" is indexed for discovery only. '
        "No installation source available (repo_url is missing). "
        "This may be placeholder/seed data or a metadata-only entry."
    )
