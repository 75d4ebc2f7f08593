"""Deterministic markdown rendering and parsing for StoryStructure.

The canonical template::

    # Title

    As a <role>
    I want <capability>
    So that <benefit>

    ## User-Visible Behavior

    - [UVB-001] ...

    ## Acceptance Criteria (Outcome)
    ## Acceptance Criteria (System)
    ## Implementation Notes      (### State ownership, ### Data flow, ...)
    ## UI Mapping / ## Open Questions / ## Edge Cases / ## Non-Goals  (only when non-empty)
"""

import re
from typing import Dict, Iterable, List, Optional

from refinery.domain.schema import PATH_ID_PREFIXES, StoryItem, StoryStructure

# Heading -> patch path, in render order.
_REQUIRED_SECTIONS = (
    ("User-Visible Behavior", "userVisibleBehavior"),
    ("Acceptance Criteria (Outcome)", "outcomeAcceptanceCriteria"),
    ("Acceptance Criteria (System)", "systemAcceptanceCriteria"),
)
_OPTIONAL_SECTIONS = (
    ("UI Mapping", "uiMapping"),
    ("Open Questions", "openQuestions"),
    ("Edge Cases", "edgeCases"),
    ("Non-Goals", "nonGoals"),
)
_NOTE_SUBSECTIONS = (
    ("State ownership", "implementationNotes.stateOwnership"),
    ("Data flow", "implementationNotes.dataFlow"),
    ("API contracts", "implementationNotes.apiContracts"),
    ("Loading states", "implementationNotes.loadingStates"),
    ("Performance", "implementationNotes.performanceNotes"),
    ("Security", "implementationNotes.securityNotes"),
    ("Telemetry", "implementationNotes.telemetryNotes"),
)
_NOTES_HEADING = "Implementation Notes"

_SECTION_BY_HEADING: Dict[str, str] = {
    heading.lower(): path for heading, path in _REQUIRED_SECTIONS + _OPTIONAL_SECTIONS
}
_NOTE_BY_HEADING: Dict[str, str] = {heading.lower(): path for heading, path in _NOTE_SUBSECTIONS}

_PATH_BY_NAME: Dict[str, str] = {
    **_SECTION_BY_HEADING,
    **_NOTE_BY_HEADING,
    **{path.lower(): path for path in PATH_ID_PREFIXES},
    **{path.split(".", 1)[1].lower(): path for path in PATH_ID_PREFIXES if "." in path},
    "as a": "story.asA",
    "i want": "story.iWant",
    "so that": "story.soThat",
    "outcome acceptance criteria": "outcomeAcceptanceCriteria",
    "system acceptance criteria": "systemAcceptanceCriteria",
}

_BULLET = re.compile(r"^\s*[-*]\s+(?:\[(?P<id>[A-Za-z0-9_-]+)\]\s*)?(?P<text>.*)$")
_STORY_LINES = (
    ("as_a", re.compile(r"^\**as an?\**\s+(?P<text>.*)$", re.IGNORECASE)),
    ("i_want", re.compile(r"^\**i want\**\s+(?P<text>.*)$", re.IGNORECASE)),
    ("so_that", re.compile(r"^\**so that\**\s+(?P<text>.*)$", re.IGNORECASE)),
)


def section_path(name: str) -> Optional[str]:
    """Map a section heading or patch path (any case, optional '#'s) to its patch path."""
    key = name.strip().lstrip("#").strip().rstrip(":").lower()
    return _PATH_BY_NAME.get(key)


class StoryRenderer:
    """Renders a story structure to canonical markdown and parses it back.

    Rendering is a pure function: the same structure always produces the same text.
    ``parse_markdown(to_markdown(s)) == s`` holds for structures whose texts are single-line.
    """

    def to_markdown(self, story: StoryStructure) -> str:
        lines: List[str] = [
            f"# {story.title.replace('#', '').strip()}",
            "",
            f"As a {self._inline(story.as_a)}",
            f"I want {self._inline(story.i_want)}",
            f"So that {self._inline(story.so_that)}",
            "",
        ]

        for heading, path in _REQUIRED_SECTIONS:
            lines.extend([f"## {heading}", ""])
            lines.extend(self._render_items(story.collection(path)))
            lines.append("")

        lines.extend([f"## {_NOTES_HEADING}", ""])
        for heading, path in _NOTE_SUBSECTIONS:
            items = story.collection(path)
            if items:
                lines.extend([f"### {heading}", ""])
                lines.extend(self._render_items(items))
                lines.append("")

        for heading, path in _OPTIONAL_SECTIONS:
            items = story.collection(path)
            if items:
                lines.extend([f"## {heading}", ""])
                lines.extend(self._render_items(items))
                lines.append("")

        return re.sub(r"\n{3,}", "\n\n", "\n".join(lines)).rstrip()

    def to_excerpt(self, story: StoryStructure, paths: Iterable[str]) -> str:
        """Render the story lines plus only the sections at ``paths``, labelled by patch path."""
        lines: List[str] = [
            f"# {story.title.replace('#', '').strip()}",
            "",
            f"As a {self._inline(story.as_a)}",
            f"I want {self._inline(story.i_want)}",
            f"So that {self._inline(story.so_that)}",
        ]
        for path in paths:
            lines.extend(["", f"## {path}", ""])
            items = story.collection(path)
            lines.extend(self._render_items(items) if items else ["(empty)"])
        return "\n".join(lines)

    def parse_markdown(self, text: str) -> StoryStructure:
        """Parse canonical (or loosely canonical) markdown into a structure.

        Unknown headings and free prose are ignored. Bullets without an ``[ID]`` get a
        generated identifier ``<prefix><NNN>`` unique within their collection.
        """
        story = StoryStructure()
        collections: Dict[str, List[StoryItem]] = {}
        section: Optional[str] = None
        in_notes = False

        for raw_line in text.splitlines():
            line = raw_line.strip()
            if not line:
                continue

            if line.startswith("### "):
                if in_notes:
                    section = _NOTE_BY_HEADING.get(line[4:].strip().lower())
                continue
            if line.startswith("## "):
                heading = line[3:].strip().lower()
                in_notes = heading == _NOTES_HEADING.lower()
                section = _SECTION_BY_HEADING.get(heading)
                continue
            if line.startswith("# "):
                if not story.title:
                    story.title = line[2:].strip()
                section = None
                in_notes = False
                continue

            if section is None and not in_notes:
                for attr, pattern in _STORY_LINES:
                    match = pattern.match(line)
                    if match and not getattr(story, attr):
                        setattr(story, attr, match.group("text").strip())
                        break
                continue

            if section is None:
                continue
            bullet = _BULLET.match(line)
            if bullet is None or not bullet.group("text").strip():
                continue
            collections.setdefault(section, []).append(
                StoryItem(id=bullet.group("id") or "", text=bullet.group("text").strip())
            )

        for path, items in collections.items():
            story.set_collection(path, self._assign_missing_ids(path, items))
        return story

    @staticmethod
    def _assign_missing_ids(path: str, items: List[StoryItem]) -> List[StoryItem]:
        prefix = PATH_ID_PREFIXES[path]
        taken = {item.id for item in items if item.id}
        counter = 0
        for item in items:
            if item.id:
                continue
            counter += 1
            while f"{prefix}{counter:03d}" in taken:
                counter += 1
            item.id = f"{prefix}{counter:03d}"
            taken.add(item.id)
        return items

    def _render_items(self, items: List[StoryItem]) -> List[str]:
        return [f"- [{item.id}] {self._inline(item.text)}" for item in items]

    @staticmethod
    def _inline(text: str) -> str:
        """Collapse line breaks so every item stays on one bullet line."""
        return " ".join(text.split())
