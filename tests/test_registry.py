import json
import tempfile
import unittest
from pathlib import Path
from typing import Any

from skillward.client import DiscoveryOnlyError, RegistryHTTPError, SkillwardError
from skillward.registry import RegistryCache, RegistryLookup, RegistrySkillInfo, TrustTier, validate_trust_tier
from skillward.sources import RegistryKey


class _FakeService:
    def __init__(self, record: dict[str, Any] | None = None, *, error: Exception | None = None, offline: bool = False):
        self.record = record
        self.error = error
        self.offline = offline
        self.calls: list[str] = []

    def is_offline(self) -> bool:
        return self.offline

    def get_skill(self, key: str) -> dict[str, Any]:
        self.calls.append(key)
        if self.error is not None:
            raise self.error
        assert self.record is not None
        return self.record


class TestTrustTier(unittest.TestCase):
    def test_known_values_are_case_insensitive(self) -> None:
        self.assertEqual(validate_trust_tier("Verified"), TrustTier.VERIFIED)
        self.assertEqual(validate_trust_tier("community"), TrustTier.COMMUNITY)

    def test_unknown_values_map_to_unverified(self) -> None:
        self.assertEqual(validate_trust_tier("gold"), TrustTier.UNVERIFIED)
        self.assertEqual(validate_trust_tier(None), TrustTier.UNVERIFIED)


class TestRegistryLookup(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.cache = RegistryCache(Path(self._tmp.name) / "state" / "registry-cache.json")

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def test_remote_record_is_returned_and_cached(self) -> None:
        service = _FakeService({"name": "PDF Tools", "repo_url": "https://github.com/acme/pdf", "trust_tier": "verified"})
        info = RegistryLookup(service=service, cache=self.cache).resolve(RegistryKey("acme", "pdf"))

        self.assertEqual(info.source_url, "https://github.com/acme/pdf")
        self.assertEqual(info.display_name, "PDF Tools")
        self.assertEqual(info.trust, TrustTier.VERIFIED)
        self.assertEqual(self.cache.get("acme/pdf"), info)

        raw = json.loads(self.cache.path.read_text(encoding="utf-8"))
        self.assertEqual(raw["skills"]["acme/pdf"]["repo_url"], "https://github.com/acme/pdf")

    def test_record_without_source_is_discovery_only_even_with_cache(self) -> None:
        self.cache.put("acme/pdf", RegistrySkillInfo("https://github.com/acme/pdf", "pdf", TrustTier.COMMUNITY))
        service = _FakeService({"name": "pdf"})

        with self.assertRaises(DiscoveryOnlyError) as ctx:
            RegistryLookup(service=service, cache=self.cache).resolve(RegistryKey("acme", "pdf"))

        self.assertIn("acme/pdf", str(ctx.exception))
        self.assertTrue(ctx.exception.tips)

    def test_http_error_falls_back_to_cache(self) -> None:
        cached = RegistrySkillInfo("https://github.com/acme/pdf", "pdf", TrustTier.COMMUNITY)
        self.cache.put("acme/pdf", cached)
        service = _FakeService(error=RegistryHTTPError(503, "unavailable"))

        with self.assertLogs("skillward.registry", level="WARNING"):
            info = RegistryLookup(service=service, cache=self.cache).resolve(RegistryKey("acme", "pdf"))

        self.assertEqual(info, cached)

    def test_offline_uses_cache_without_calling_service(self) -> None:
        cached = RegistrySkillInfo("https://github.com/acme/pdf", "pdf", TrustTier.EXPERIMENTAL)
        self.cache.put("acme/pdf", cached)
        service = _FakeService({"repo_url": "https://github.com/other/pdf"}, offline=True)

        info = RegistryLookup(service=service, cache=self.cache).resolve(RegistryKey("acme", "pdf"))

        self.assertEqual(info, cached)
        self.assertEqual(service.calls, [])

    def test_nothing_found_is_discovery_only(self) -> None:
        service = _FakeService(error=SkillwardError("Request failed: timeout"))

        with self.assertLogs("skillward.registry", level="WARNING"):
            with self.assertRaises(DiscoveryOnlyError):
                RegistryLookup(service=service, cache=self.cache).resolve(RegistryKey("acme", "pdf"))

    def test_unreadable_cache_is_ignored(self) -> None:
        self.cache.path.parent.mkdir(parents=True)
        self.cache.path.write_text("{not json", encoding="utf-8")

        with self.assertLogs("skillward.registry", level="WARNING"):
            self.assertIsNone(self.cache.get("acme/pdf"))


if __name__ == "__main__":
    unittest.main()
