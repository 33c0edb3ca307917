from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any
from urllib.parse import quote

import httpx

from .config import DEFAULT_REGISTRY_URL, DEFAULT_TIMEOUT_S


class SkillwardError(RuntimeError):
    pass


class IdentifierFormatError(SkillwardError):
    pass


class NotFoundError(SkillwardError):
    def __init__(self, message: str, *, tips: tuple[str, ...] = ()) -> None:
        super().__init__(message)
        self.tips = tips


class DiscoveryOnlyError(NotFoundError):
    pass


class ContentValidationError(SkillwardError):
    def __init__(self, violations: list[str]) -> None:
        super().__init__("Invalid SKILL.md: " + ", ".join(violations))
        self.violations = tuple(violations)


class SecurityGateError(SkillwardError):
    def __init__(self, message: str, *, report: Any, severities: dict[str, int]) -> None:
        super().__init__(message)
        self.report = report
        self.severities = severities


class FetchError(SkillwardError):
    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class LockTimeoutError(SkillwardError):
    pass


class ManifestError(SkillwardError):
    pass


class BackupError(SkillwardError):
    pass


class AlreadyInstalledError(SkillwardError):
    pass


@dataclass(frozen=True)
class RegistryHTTPError(SkillwardError):
    status_code: int
    body: str = field(default="")

    def __str__(self) -> str:  # pragma: no cover
        return f"HTTP {self.status_code}: {self.body}"


def _unwrap_success_envelope(obj: Any) -> Any:
    if not isinstance(obj, dict):
        return obj
    if obj.get("success") is True and "data" in obj:
        return obj["data"]
    if obj.get("success") is False and "error" in obj:
        raise SkillwardError(f"API error: {obj.get('error')}")
    return obj


class RegistryClient:
    """
    Thin client for the remote skill lookup service.

    Only the lookup endpoint is used: GET {registry_url}/skills/{author}/{name}.
    """

    def __init__(
        self,
        *,
        registry_url: str = DEFAULT_REGISTRY_URL,
        timeout_s: float = DEFAULT_TIMEOUT_S,
        offline: bool = False,
        default_headers: dict[str, str] | None = None,
        http: httpx.Client | None = None,
    ) -> None:
        self.registry_url = registry_url.rstrip("/")
        self.timeout_s = timeout_s
        self.offline = offline
        self._default_headers = {"accept": "application/json", **(default_headers or {})}
        self._http = http or httpx.Client(timeout=timeout_s, follow_redirects=True)

    def close(self) -> None:
        self._http.close()

    def __enter__(self) -> "RegistryClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def is_offline(self) -> bool:
        return self.offline

    def request(self, *, method: str, path: str, params: dict[str, Any] | None = None) -> httpx.Response:
        if path.startswith(("http://", "https://")):
            url = path
        else:
            if not path.startswith("/"):
                path = "/" + path
            url = f"{self.registry_url}{path}"

        try:
            resp = self._http.request(method.upper(), url, params=params, headers=self._default_headers)
        except httpx.HTTPError as e:
            raise SkillwardError(f"Request failed: {e}") from e

        if resp.status_code >= 400:
            raise RegistryHTTPError(resp.status_code, resp.text)
        return resp

    def get_skill(self, key: str) -> dict[str, Any]:
        author, _, name = key.partition("/")
        path = f"/skills/{quote(author, safe='')}/{quote(name, safe='')}"
        resp = self.request(method="GET", path=path)
        try:
            payload = resp.json()
        except ValueError as e:
            raise SkillwardError(f"Registry returned invalid JSON for {key}") from e
        data = _unwrap_success_envelope(payload)
        if isinstance(data, dict) and isinstance(data.get("skill"), dict):
            data = data["skill"]
        if not isinstance(data, dict):
            raise SkillwardError(f"Registry returned an unexpected payload for {key}")
        return data
