from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field

from .versioning import parse_frontmatter

logger = logging.getLogger(__name__)

DECOMPOSE_MIN_LINES = 300
SECTION_MIN_LINES = 40
MIN_SECTIONS_TO_EXTRACT = 2
SUBAGENT_MIN_TOOLS = 3
SUBAGENT_MODEL = "sonnet"

_FRONTMATTER_BLOCK_RE = re.compile(r"^---\r?\n.*?\r?\n---[ \t]*(?:\r?\n|$)", re.DOTALL)
_H2_RE = re.compile(r"^##\s+(.+?)\s*#*\s*$")
_SLUG_RE = re.compile(r"[^a-z0-9]+")
_RESERVED_SLUGS = frozenset({"skill", "readme", "examples", "config"})

TOOL_PATTERNS: dict[str, tuple[str, ...]] = {
    "Read": (r"\bread (?:the |a )?files?\b", r"\bopen (?:the )?file\b", r"\binspect\b"),
    "Write": (r"\bwrite (?:a |the |new )?files?\b", r"\bcreate (?:a |the |new )?file\b", r"\bgenerate (?:a |the )?file\b"),
    "Edit": (r"\bedit\b", r"\bmodify\b", r"\brefactor\b", r"\bupdate (?:the |a )?(?:file|code)\b"),
    "Bash": (r"```(?:bash|sh|shell)\b", r"\brun (?:the )?(?:command|script|tests?)\b", r"\bnpm\b", r"\bgit \w+"),
    "Grep": (r"\bgrep\b", r"\bsearch (?:the )?(?:code|codebase|files)\b", r"\bfind usages\b"),
    "Glob": (r"\bglob\b", r"\bfile patterns?\b", r"\*\*/\*"),
    "WebFetch": (r"\bfetch (?:the )?(?:url|page|docs?)\b", r"https?://"),
    "WebSearch": (r"\bweb search\b", r"\bsearch the web\b", r"\blook up online\b"),
}

TOOL_GUIDELINES = {
    "Read": "Use to examine files before modifications",
    "Write": "Use for creating new files only",
    "Edit": "Use for modifying existing files",
    "Bash": "Use for command execution, prefer non-destructive commands",
    "Grep": "Use for searching file contents",
    "Glob": "Use for finding files by pattern",
    "WebFetch": "Use for fetching web content",
    "WebSearch": "Use for searching the web",
}


@dataclass(frozen=True)
class GeneratedFile:
    filename: str
    content: str


@dataclass(frozen=True)
class OptimizationStats:
    original_lines: int
    optimized_lines: int
    token_reduction_percent: int


@dataclass(frozen=True)
class Optimized:
    content: str
    sub_files: tuple[GeneratedFile, ...] = ()
    subagent: GeneratedFile | None = None
    claude_md_snippet: str | None = None
    tools: tuple[str, ...] = ()
    stats: OptimizationStats = field(default_factory=lambda: OptimizationStats(0, 0, 0))


@dataclass(frozen=True)
class Unchanged:
    content: str
    reason: str


OptimizationResult = Optimized | Unchanged


@dataclass(frozen=True)
class _Section:
    heading: str
    lines: tuple[str, ...]


@dataclass(frozen=True)
class SkillAnalysis:
    line_count: int
    sections: tuple[_Section, ...]
    tools: tuple[str, ...]


def slugify(text: str) -> str:
    return _SLUG_RE.sub("-", text.lower()).strip("-") or "section"


def estimate_tokens(text: str) -> int:
    return (len(text) + 3) // 4


def detect_tools(content: str) -> tuple[str, ...]:
    found = []
    for tool, patterns in TOOL_PATTERNS.items():
        if any(re.search(p, content, re.IGNORECASE) for p in patterns):
            found.append(tool)
    return tuple(found)


def _split(content: str) -> tuple[str, list[str], list[_Section]]:
    m = _FRONTMATTER_BLOCK_RE.match(content)
    frontmatter = m.group(0) if m else ""
    body = content[len(frontmatter) :]

    intro: list[str] = []
    sections: list[_Section] = []
    heading: str | None = None
    buf: list[str] = []
    in_fence = False
    for line in body.split("\n"):
        if line.lstrip().startswith("```"):
            in_fence = not in_fence
        h2 = None if in_fence else _H2_RE.match(line)
        if h2:
            if heading is not None:
                sections.append(_Section(heading, tuple(buf)))
            heading = h2.group(1)
            buf = [line]
        elif heading is None:
            intro.append(line)
        else:
            buf.append(line)
    if heading is not None:
        sections.append(_Section(heading, tuple(buf)))
    return frontmatter, intro, sections


def analyze_skill(content: str) -> SkillAnalysis:
    _, _, sections = _split(content)
    return SkillAnalysis(line_count=len(content.split("\n")), sections=tuple(sections), tools=detect_tools(content))


def _unique_filename(heading: str, taken: set[str]) -> str:
    slug = slugify(heading)
    if slug in _RESERVED_SLUGS:
        slug = f"{slug}-section"
    candidate = slug
    n = 2
    while candidate in taken:
        candidate = f"{slug}-{n}"
        n += 1
    taken.add(candidate)
    return f"{candidate}.md"


def _decompose(content: str) -> tuple[str, tuple[GeneratedFile, ...]] | None:
    frontmatter, intro, sections = _split(content)
    long_sections = [s for s in sections if len(s.lines) >= SECTION_MIN_LINES]
    if len(long_sections) < MIN_SECTIONS_TO_EXTRACT:
        return None

    taken: set[str] = set()
    sub_files: list[GeneratedFile] = []
    kept: list[str] = list(intro)
    links: list[str] = []
    for section in sections:
        if section not in long_sections:
            kept.extend(section.lines)
            continue
        filename = _unique_filename(section.heading, taken)
        body = "\n".join(section.lines[1:]).strip("\n")
        sub_files.append(GeneratedFile(filename, f"# {section.heading}\n\n{body}\n"))
        links.append(f"- [{section.heading}]({filename})")

    main_body = "\n".join(kept).rstrip("\n")
    resources = "## Additional Resources\n\nLoad these files on demand when the task needs them:\n\n" + "\n".join(links)
    return f"{frontmatter}{main_body}\n\n{resources}\n", tuple(sub_files)


def render_subagent(skill_name: str, description: str, tools: tuple[str, ...]) -> str:
    guidelines = "\n".join(f"- **{t}**: {TOOL_GUIDELINES[t]}" for t in tools if t in TOOL_GUIDELINES)
    return (
        "---\n"
        f"name: {skill_name}-specialist\n"
        f"description: {description}\n"
        f"skills: {skill_name}\n"
        f"tools: {', '.join(tools)}\n"
        f"model: {SUBAGENT_MODEL}\n"
        "---\n\n"
        "## Operating Protocol\n\n"
        f"1. Execute the {skill_name} skill for the delegated task\n"
        "2. Process all intermediate results internally\n"
        "3. Return ONLY a structured summary to the orchestrator\n\n"
        "## Output Format\n\n"
        "- **Task:** [what was requested]\n"
        "- **Actions:** [what you did]\n"
        "- **Results:** [key outcomes, max 3-5 bullet points]\n"
        "- **Artifacts:** [file paths or outputs created]\n\n"
        "## Tool Usage Guidelines\n\n"
        f"{guidelines or '- Use tools minimally and efficiently'}\n"
    )


def render_claude_md_snippet(skill_name: str) -> str:
    return (
        f"### Subagent Delegation: {skill_name}\n\n"
        f"When tasks match {skill_name} triggers, delegate to the {skill_name}-specialist\n"
        "subagent instead of executing directly.\n\n"
        "```\n"
        f'Task("{skill_name}-specialist", "<task description>", "{skill_name}-specialist")\n'
        "```\n"
    )


def _optimize(skill_name: str, content: str) -> OptimizationResult:
    analysis = analyze_skill(content)

    decomposed = _decompose(content) if analysis.line_count > DECOMPOSE_MIN_LINES else None
    main, sub_files = decomposed if decomposed is not None else (content, ())

    subagent = None
    snippet = None
    if len(analysis.tools) >= SUBAGENT_MIN_TOOLS:
        fm = parse_frontmatter(content)
        raw_desc = fm.get("description")
        description = str(raw_desc).strip() if raw_desc else f"Specialist for the {skill_name} skill."
        subagent = GeneratedFile(f"{skill_name}-specialist.md", render_subagent(skill_name, description, analysis.tools))
        snippet = render_claude_md_snippet(skill_name)

    if decomposed is None and subagent is None:
        return Unchanged(content, "nothing to optimize")

    original_tokens = estimate_tokens(content)
    reduction = 0
    if original_tokens:
        reduction = max(0, round((1 - estimate_tokens(main) / original_tokens) * 100))
    return Optimized(
        content=main,
        sub_files=sub_files,
        subagent=subagent,
        claude_md_snippet=snippet,
        tools=analysis.tools,
        stats=OptimizationStats(
            original_lines=analysis.line_count,
            optimized_lines=len(main.split("\n")),
            token_reduction_percent=reduction,
        ),
    )


def optimize_skill(skill_name: str, content: str) -> OptimizationResult:
    """
    Decompose oversized content and generate a companion subagent.

    Never raises: any failure yields ``Unchanged`` with the original content.
    """
    try:
        return _optimize(skill_name, content)
    except Exception as e:  # noqa: BLE001 - optimization must not block installation
        logger.warning("Optimization failed for %s, using original content: %s", skill_name, e)
        return Unchanged(content, f"optimization failed: {e}")
