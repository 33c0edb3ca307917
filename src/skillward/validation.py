from __future__ import annotations

from .client import ContentValidationError

MIN_CONTENT_LENGTH = 100


def validate_skill_md(content: str) -> list[str]:
    errors: list[str] = []
    if "# " not in content:
        errors.append("Missing title (# heading)")
    if len(content) < MIN_CONTENT_LENGTH:
        errors.append(f"SKILL.md is too short (minimum {MIN_CONTENT_LENGTH} characters)")
    return errors


def ensure_valid(content: str) -> None:
    errors = validate_skill_md(content)
    if errors:
        raise ContentValidationError(errors)
