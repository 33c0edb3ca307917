import unittest
from unittest.mock import patch

from skillward.optimize import (
    Optimized,
    Unchanged,
    analyze_skill,
    detect_tools,
    optimize_skill,
    slugify,
)

FRONTMATTER = "---\nname: big\ndescription: Handles big documents\n---\n"


def _section(title: str, n: int) -> str:
    return f"## {title}\n" + "".join(f"step {i} of {title.lower()}\n" for i in range(n))


def _big_skill(*titles: str, lines: int = 150) -> str:
    return FRONTMATTER + "# Big\n\nIntro paragraph.\n\n" + "".join(_section(t, lines) for t in titles) + "## Notes\nShort.\n"


TOOLY = (
    "# Tooly\n\n"
    "Read the file before changing it. Edit the config in place.\n"
    "Use grep to find usages.\n\n"
    "```bash\nmake test\n```\n"
)


class TestAnalysis(unittest.TestCase):
    def test_slugify(self) -> None:
        self.assertEqual(slugify("API Reference & Examples!"), "api-reference-examples")
        self.assertEqual(slugify("!!!"), "section")

    def test_detect_tools_in_declaration_order(self) -> None:
        self.assertEqual(detect_tools(TOOLY), ("Read", "Edit", "Bash", "Grep"))

    def test_headings_inside_code_fences_are_not_sections(self) -> None:
        content = "# T\n\n## Real\ntext\n```md\n## Not a section\n```\n"
        analysis = analyze_skill(content)
        self.assertEqual([s.heading for s in analysis.sections], ["Real"])


class TestDecomposition(unittest.TestCase):
    def test_large_sections_become_sub_files(self) -> None:
        content = _big_skill("Setup", "Usage")
        result = optimize_skill("big", content)

        self.assertIsInstance(result, Optimized)
        self.assertEqual([f.filename for f in result.sub_files], ["setup.md", "usage.md"])
        self.assertTrue(result.content.startswith(FRONTMATTER))
        self.assertIn("## Notes\nShort.", result.content)
        self.assertIn("## Additional Resources", result.content)
        self.assertIn("- [Setup](setup.md)", result.content)
        self.assertNotIn("step 3 of setup", result.content)
        self.assertTrue(result.sub_files[0].content.startswith("# Setup\n\nstep 0 of setup"))
        self.assertIsNone(result.subagent)
        self.assertEqual(result.stats.original_lines, len(content.split("\n")))
        self.assertLess(result.stats.optimized_lines, result.stats.original_lines)
        self.assertGreater(result.stats.token_reduction_percent, 50)

    def test_reserved_and_duplicate_names_are_disambiguated(self) -> None:
        result = optimize_skill("big", _big_skill("Examples", "Usage", "Usage"))

        self.assertIsInstance(result, Optimized)
        self.assertEqual([f.filename for f in result.sub_files], ["examples-section.md", "usage.md", "usage-2.md"])

    def test_single_long_section_is_left_alone(self) -> None:
        content = _big_skill("Setup", lines=320)
        result = optimize_skill("big", content)

        self.assertIsInstance(result, Unchanged)
        self.assertEqual(result.content, content)

    def test_short_content_is_unchanged(self) -> None:
        result = optimize_skill("small", "# Small\n\nNothing much.\n")
        self.assertEqual(result, Unchanged("# Small\n\nNothing much.\n", "nothing to optimize"))


class TestSubagent(unittest.TestCase):
    def test_tool_heavy_skill_gets_specialist(self) -> None:
        result = optimize_skill("tooly", TOOLY)

        self.assertIsInstance(result, Optimized)
        self.assertEqual(result.content, TOOLY)
        self.assertEqual(result.sub_files, ())
        self.assertEqual(result.subagent.filename, "tooly-specialist.md")
        self.assertIn("name: tooly-specialist\n", result.subagent.content)
        self.assertIn("tools: Read, Edit, Bash, Grep\n", result.subagent.content)
        self.assertIn("model: sonnet\n", result.subagent.content)
        self.assertIn("description: Specialist for the tooly skill.", result.subagent.content)
        self.assertIn('Task("tooly-specialist"', result.claude_md_snippet)

    def test_frontmatter_description_is_used(self) -> None:
        result = optimize_skill("tooly", "---\ndescription: Edits configs\n---\n" + TOOLY)
        self.assertIn("description: Edits configs\n", result.subagent.content)


class TestFailureIsContained(unittest.TestCase):
    def test_internal_error_yields_unchanged(self) -> None:
        with patch("skillward.optimize.analyze_skill", side_effect=RuntimeError("boom")):
            with self.assertLogs("skillward.optimize", level="WARNING"):
                result = optimize_skill("big", TOOLY)

        self.assertIsInstance(result, Unchanged)
        self.assertEqual(result.content, TOOLY)
        self.assertIn("boom", result.reason)


if __name__ == "__main__":
    unittest.main()
