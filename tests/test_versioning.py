import unittest
from unittest.mock import patch

from skillward.registry import TrustTier
from skillward.versioning import (
    ChangeType,
    classify_change,
    compute_update_risk,
    diff_sections,
    diff_skill,
    extract_changelog,
    extract_dependencies,
    format_skill_diff,
    frontmatter_semver,
    parse_frontmatter,
)


def _doc(version: str | None = None, headings: tuple[str, ...] = ("Usage",), deps: str | None = None, body: str = "text") -> str:
    fm = []
    if version is not None:
        fm.append(f"version: {version}")
    if deps is not None:
        fm.append(f"dependencies: {deps}")
    head = "---\n" + "\n".join(fm) + "\n---\n" if fm else ""
    return head + "# Skill\n\n" + "".join(f"## {h}\n{body}\n" for h in headings)


class TestFrontmatter(unittest.TestCase):
    def test_parse(self) -> None:
        self.assertEqual(parse_frontmatter("---\nname: pdf\nversion: 1.2.3\n---\n# x"), {"name": "pdf", "version": "1.2.3"})

    def test_invalid_or_missing_yields_empty(self) -> None:
        self.assertEqual(parse_frontmatter("# no frontmatter"), {})
        self.assertEqual(parse_frontmatter("---\nname: [unclosed\n---\n"), {})
        self.assertEqual(parse_frontmatter("---\n- a list\n---\n"), {})

    def test_semver(self) -> None:
        self.assertEqual(frontmatter_semver({"version": "v2.0.1"}), "2.0.1")
        self.assertEqual(frontmatter_semver({"semver": "1.4.0-beta"}), "1.4.0")
        self.assertIsNone(frontmatter_semver({"version": "latest"}))
        self.assertIsNone(frontmatter_semver({}))

    def test_dependencies_from_frontmatter_and_section(self) -> None:
        content = "---\ndependencies: [Git, jq]\n---\n# S\n\n## Requirements\n- poppler\n- node\n## Usage\n- not-a-dep\n"
        self.assertEqual(extract_dependencies(content), {"git", "jq", "poppler", "node"})


class TestClassifyChange(unittest.TestCase):
    def test_author_semver_wins(self) -> None:
        self.assertEqual(classify_change(_doc("1.2.0"), _doc("2.0.0")), ChangeType.MAJOR)
        self.assertEqual(classify_change(_doc("1.2.0"), _doc("1.3.0")), ChangeType.MINOR)
        # A removed heading would be major, but the declared version says patch.
        self.assertEqual(
            classify_change(_doc("1.2.0", ("Usage", "Extra")), _doc("1.2.1", ("Usage",))),
            ChangeType.PATCH,
        )

    def test_removed_heading_is_major(self) -> None:
        self.assertEqual(classify_change(_doc(headings=("Usage", "Extra")), _doc(headings=("Usage",))), ChangeType.MAJOR)

    def test_heading_case_is_ignored(self) -> None:
        self.assertEqual(classify_change(_doc(headings=("Usage",)), _doc(headings=("USAGE",))), ChangeType.PATCH)

    def test_risk_jump_is_major(self) -> None:
        self.assertEqual(classify_change(_doc(), _doc(body="changed"), 10, 31), ChangeType.MAJOR)
        self.assertEqual(classify_change(_doc(), _doc(body="changed"), 10, 30), ChangeType.PATCH)

    def test_dependency_changes(self) -> None:
        self.assertEqual(classify_change(_doc(deps="[git, jq]"), _doc(deps="[git]")), ChangeType.MAJOR)
        self.assertEqual(classify_change(_doc(deps="[git]"), _doc(deps="[git, jq]")), ChangeType.MINOR)

    def test_added_heading_is_minor(self) -> None:
        self.assertEqual(classify_change(_doc(headings=("Usage",)), _doc(headings=("Usage", "Tips"))), ChangeType.MINOR)

    def test_body_edit_is_patch(self) -> None:
        self.assertEqual(classify_change(_doc(), _doc(body="reworded")), ChangeType.PATCH)

    def test_failure_is_unknown(self) -> None:
        with patch("skillward.versioning.extract_headings", side_effect=RuntimeError("boom")):
            with self.assertLogs("skillward.versioning", level="WARNING"):
                self.assertEqual(classify_change(_doc(), _doc()), ChangeType.UNKNOWN)


class TestSections(unittest.TestCase):
    def test_diff_sections(self) -> None:
        old = "# S\n## Setup\nold\n## Legacy\nx\n"
        new = "# S\n## Setup\nnew\n## Tips\ny\n"
        diff = diff_sections(old, new)
        self.assertEqual(diff.added, ("Tips",))
        self.assertEqual(diff.removed, ("Legacy",))
        self.assertEqual(diff.modified, ("setup",))

    def test_changelog_from_frontmatter(self) -> None:
        self.assertEqual(extract_changelog('---\nchangelog: "Fixed table parsing"\n---\n# S'), "Fixed table parsing")

    def test_changelog_from_section(self) -> None:
        content = "# S\n## Changelog\n- added OCR\n\n- fixed tables\n## Usage\nignored\n"
        self.assertEqual(extract_changelog(content), "- added OCR - fixed tables")

    def test_no_changelog(self) -> None:
        self.assertIsNone(extract_changelog("# S\n## Usage\ntext\n"))


class TestUpdateRisk(unittest.TestCase):
    def test_override_row(self) -> None:
        risk = compute_update_risk(ChangeType.MAJOR, risk_score_delta=5, has_local_modifications=True)
        self.assertEqual((risk.level, risk.recommendation, risk.rule), ("critical", "manual-review-required", "major-local-risk"))
        self.assertEqual(risk.score, 70)

    def test_scored_rows(self) -> None:
        cases = [
            (dict(change_type=ChangeType.PATCH), 0, "low", "auto-update"),
            (dict(change_type=ChangeType.MAJOR), 30, "medium", "review-then-update"),
            (dict(change_type=ChangeType.MAJOR, risk_score_delta=1), 50, "high", "review-then-update"),
            (dict(change_type=ChangeType.MINOR, risk_score_delta=3, has_local_modifications=True), 40, "medium", "review-then-update"),
            (dict(change_type="major", trust="verified", has_changelog=True), 0, "low", "auto-update"),
            (dict(change_type=ChangeType.PATCH, trust=TrustTier.VERIFIED), -20, "low", "auto-update"),
        ]
        for kwargs, score, level, recommendation in cases:
            with self.subTest(kwargs=kwargs):
                change_type = kwargs.pop("change_type")
                risk = compute_update_risk(change_type, **kwargs)
                self.assertEqual((risk.score, risk.level, risk.recommendation), (score, level, recommendation))
                self.assertEqual(risk.rule, "score")

    def test_risk_decrease_is_not_an_increase(self) -> None:
        risk = compute_update_risk(ChangeType.MAJOR, risk_score_delta=-10, has_local_modifications=True)
        self.assertEqual(risk.rule, "score")
        self.assertEqual(risk.score, 50)
        self.assertEqual(risk.recommendation, "review-then-update")


class TestDiffSkill(unittest.TestCase):
    def test_report(self) -> None:
        old = _doc("1.0.0", ("Usage", "Legacy"))
        new = _doc("2.0.0", ("Usage", "Tips")) + "## Changelog\n- dropped legacy mode\n"

        report = diff_skill("acme/pdf", old, new, old_risk_score=10, new_risk_score=15, has_local_modifications=True)

        self.assertEqual(report.change_type, ChangeType.MAJOR)
        self.assertEqual(report.risk_score_delta, 5)
        self.assertEqual(report.risk.rule, "major-local-risk")
        payload = report.to_json()
        self.assertEqual(payload["sectionsAdded"], ["Tips", "Changelog"])
        self.assertEqual(payload["sectionsRemoved"], ["Legacy"])
        self.assertEqual(payload["changelog"], "- dropped legacy mode")
        self.assertEqual(payload["recommendation"], "manual-review-required")

        text = format_skill_diff(report)
        self.assertIn("=== Skill Diff: acme/pdf ===", text)
        self.assertIn("Change type: MAJOR", text)
        self.assertIn("Risk score delta: +5", text)
        self.assertIn("  - Legacy", text)


if __name__ == "__main__":
    unittest.main()
