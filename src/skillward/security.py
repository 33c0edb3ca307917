from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Protocol

from .client import SecurityGateError

logger = logging.getLogger(__name__)

SEVERITIES = ("critical", "high", "medium", "low", "info")
BLOCKING_SEVERITIES = frozenset({"critical", "high"})


@dataclass(frozen=True)
class ScanFinding:
    severity: str
    message: str
    rule: str = ""


@dataclass(frozen=True)
class ScanReport:
    passed: bool
    findings: tuple[ScanFinding, ...] = ()

    def severity_counts(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        for finding in self.findings:
            counts[finding.severity] = counts.get(finding.severity, 0) + 1
        return counts

    @property
    def blocking(self) -> tuple[ScanFinding, ...]:
        return tuple(f for f in self.findings if f.severity in BLOCKING_SEVERITIES)


class Scanner(Protocol):
    def scan(self, identifier: str, content: str) -> ScanReport:
        ...


@dataclass(frozen=True)
class _Rule:
    name: str
    severity: str
    pattern: re.Pattern[str]
    message: str


_DEFAULT_RULES = (
    _Rule(
        "remote-script-pipe",
        "critical",
        re.compile(r"\b(?:curl|wget)\b[^\n|]*\|\s*(?:sudo\s+)?(?:ba|z)?sh\b", re.IGNORECASE),
        "Downloads a remote script and pipes it into a shell",
    ),
    _Rule(
        "destructive-rm",
        "critical",
        re.compile(r"\brm\s+-(?:[a-z]*r[a-z]*f|[a-z]*f[a-z]*r)[a-z]*\s+(?:/|~|\$HOME)(?:\s|$)", re.IGNORECASE),
        "Recursively deletes a root or home directory",
    ),
    _Rule(
        "prompt-injection",
        "high",
        re.compile(
            r"\b(?:ignore|disregard|forget)\s+(?:all\s+|any\s+)?(?:previous|prior|above)\s+(?:instructions|rules|prompts)\b",
            re.IGNORECASE,
        ),
        "Attempts to override earlier instructions",
    ),
    _Rule(
        "credential-exfiltration",
        "high",
        re.compile(
            r"(?:~/\.ssh/id_[a-z0-9]+|~/\.aws/credentials|\.env\b)[^\n]*\b(?:curl|wget|nc|scp)\b"
            r"|\b(?:curl|wget|nc|scp)\b[^\n]*(?:~/\.ssh/id_[a-z0-9]+|~/\.aws/credentials)",
            re.IGNORECASE,
        ),
        "Sends local credentials to a remote host",
    ),
    _Rule(
        "base64-exec",
        "medium",
        re.compile(r"base64\s+(?:-d|--decode)[^\n]*\|\s*(?:ba|z)?sh\b", re.IGNORECASE),
        "Executes base64-decoded content",
    ),
    _Rule(
        "sudo",
        "low",
        re.compile(r"\bsudo\s+\S+"),
        "Requests elevated privileges",
    ),
)


class PatternScanner:
    """Line-oriented regex scanner; a report fails when any critical or high rule matches."""

    def __init__(self, rules: tuple[_Rule, ...] = _DEFAULT_RULES) -> None:
        self.rules = rules

    def scan(self, identifier: str, content: str) -> ScanReport:
        findings: list[ScanFinding] = []
        for rule in self.rules:
            for m in rule.pattern.finditer(content):
                line_no = content.count("\n", 0, m.start()) + 1
                findings.append(ScanFinding(severity=rule.severity, message=f"{rule.message} (line {line_no})", rule=rule.name))
        passed = not any(f.severity in BLOCKING_SEVERITIES for f in findings)
        return ScanReport(passed=passed, findings=tuple(findings))


@dataclass(frozen=True)
class AuxiliaryScanResult:
    kept: dict[str, str] = field(default_factory=dict)
    dropped: tuple[str, ...] = ()
    warnings: tuple[str, ...] = ()


def _format_severities(counts: dict[str, int]) -> str:
    return ", ".join(f"{counts[s]} {s}" for s in SEVERITIES if counts.get(s))


class SecurityGate:
    def __init__(self, scanner: Scanner) -> None:
        self.scanner = scanner

    def check_primary(self, identifier: str, content: str, *, bypass: bool = False) -> ScanReport | None:
        if bypass:
            logger.warning("Security scan skipped for %s (explicit bypass)", identifier)
            return None

        report = self.scanner.scan(identifier, content)
        if report.blocking:
            counts = report.severity_counts()
            raise SecurityGateError(
                f"Security scan failed for {identifier}: {len(report.findings)} finding(s) ({_format_severities(counts)}). "
                "Review the findings or re-run with --skip-scan if you trust this source.",
                report=report,
                severities=counts,
            )
        if not report.passed:
            logger.warning("Security scan for %s reported %d non-blocking finding(s)", identifier, len(report.findings))
        return report

    def filter_auxiliary(self, identifier: str, files: dict[str, str], *, bypass: bool = False) -> AuxiliaryScanResult:
        if bypass:
            return AuxiliaryScanResult(kept=dict(files))

        kept: dict[str, str] = {}
        dropped: list[str] = []
        warnings: list[str] = []
        for filename in sorted(files):
            report = self.scanner.scan(f"{identifier}/{filename}", files[filename])
            if report.passed:
                kept[filename] = files[filename]
                continue
            dropped.append(filename)
            msg = f"Dropped {filename}: security scan failed ({_format_severities(report.severity_counts()) or 'no details'})"
            warnings.append(msg)
            logger.warning("%s", msg)
        return AuxiliaryScanResult(kept=kept, dropped=tuple(dropped), warnings=tuple(warnings))
