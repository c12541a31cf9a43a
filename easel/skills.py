"""Structure skills: dynamic slash commands loaded from the notes library.

Every markdown file in ``<notes_dir>/Structures`` becomes a command. The
file "Problem Set.md" is invoked as ``/problem_set``; its ``## Purpose``
section supplies the one-line description shown in /help. Running a skill
starts a normal turn whose system prompt carries the file's instructions
for that turn only.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

STRUCTURES_DIRNAME = "Structures"
DEFAULT_DESCRIPTION = "Generate this structure"
MAX_DESCRIPTION = 80

_PURPOSE_RE = re.compile(r"## Purpose\s*\n(.*?)(?=\n## |\Z)", re.DOTALL)


@dataclass
class Skill:
    slug: str  # "problem_set"
    name: str  # "Problem Set", the filename without .md
    description: str
    content: str


def slugify(filename: str) -> str:
    """Command slug for a structure file: "Problem Set.md" -> "problem_set"."""
    stem = re.sub(r"\.md$", "", filename, flags=re.IGNORECASE)
    return re.sub(r"\s+", "_", stem.lower())


def extract_purpose(content: str) -> str:
    """First sentence of the ``## Purpose`` section, at most 80 chars."""
    match = _PURPOSE_RE.search(content)
    if not match:
        return DEFAULT_DESCRIPTION
    sentence = re.split(r"\.\s", match.group(1).strip())[0]
    if len(sentence) > MAX_DESCRIPTION:
        return sentence[: MAX_DESCRIPTION - 3] + "..."
    return sentence


def load_skills(notes_dir: str | Path) -> list[Skill]:
    """Load one Skill per .md file in the Structures directory, by filename.

    A missing directory yields []. Unreadable files are skipped.
    """
    directory = Path(notes_dir).expanduser() / STRUCTURES_DIRNAME
    if not directory.is_dir():
        return []

    skills = []
    for path in sorted(directory.glob("*.md")):
        try:
            content = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            logger.warning("Skipping unreadable structure %s: %s", path, e)
            continue
        skills.append(
            Skill(
                slug=slugify(path.name),
                name=path.stem,
                description=extract_purpose(content),
                content=content,
            )
        )
    logger.info("Loaded %d skills from %s", len(skills), directory)
    return skills


def build_skill_prompt(skill: Skill, args: str) -> str:
    """System prompt overlay for one turn of ``skill``."""
    lines = [
        "",
        "",
        "---",
        f"## Active Skill: {skill.name}",
        "",
        f'The user wants to create a "{skill.name}" structure in their notes library. '
        "Use the file tools (list_files, search_notes, read_file) to gather what you need.",
        "",
        "Here are the instructions for this structure:",
        "",
        skill.content,
        "",
    ]
    if args:
        lines.append(f'The user provided this context: "{args}"')
        lines.append(
            "Use this information to pre-fill what you can, "
            "but ask clarifying questions for anything ambiguous."
        )
    else:
        lines.append(
            "The user didn't provide additional context. "
            "Ask what information you need to create this structure."
        )
    lines.append("")
    lines.append(
        "Remember: Guide the student through creating this structure. "
        "Ask questions to gather needed information rather than making assumptions."
    )
    return "\n".join(lines) + "\n"
