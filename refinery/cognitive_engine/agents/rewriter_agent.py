"""Story Rewriter - repairs judge-flagged sections without changing meaning."""

import re
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Set

from refinery.cognitive_engine.agents.judge_agent import DOCUMENT_LOCATION
from refinery.cognitive_engine.context_builder import format_system_context
from refinery.cognitive_engine.story_renderer import StoryRenderer
from refinery.cognitive_engine.story_state import structure_of
from refinery.config import settings
from refinery.domain.errors import RewriteFailure
from refinery.domain.interfaces import ILLMProvider
from refinery.domain.schema import (
    PATCH_PATHS,
    PATH_ID_PREFIXES,
    StoryDocument,
    StoryStructure,
    SystemContext,
    Violation,
    is_story_line_path,
)
from refinery.utils.logger import get_logger

logger = get_logger(__name__)

_FENCE = re.compile(r"^```[a-zA-Z]*\s*\n([\s\S]*?)\n```\s*$")


@dataclass
class RewriteOutcome:
    """Rewritten content plus the sections that actually changed."""

    content: str
    structure: StoryStructure
    touched_locations: List[str] = field(default_factory=list)


class StoryRewriter:
    """Rewriter that fixes violations at their cited locations only."""

    DEFAULT_SYSTEM_PROMPT = """You are a Story Rewriter. You repair the specific problems a reviewer found in a user story.

Rules:
- Fix ONLY the sections named in the violations. Copy every other section exactly.
- Preserve every testable condition. Reword, move wording or split items, but never drop a requirement.
- Keep each item's [ID]. New items in a section use that section's id prefix.
- Do not introduce components, states, events or terms absent from the system context.
- Keep the canonical markdown template: "# Title", the As a / I want / So that lines, then the
  "## ..." sections with "- [ID] text" bullets.

Output only the full story markdown. No commentary, no code fence."""

    def __init__(
        self,
        llm_provider: ILLMProvider,
        renderer: Optional[StoryRenderer] = None,
        max_text_length: Optional[int] = None,
    ):
        """Initialize rewriter.

        Args:
            llm_provider: Oracle used to produce the rewritten story.
            renderer: Renderer used to parse and re-render the story.
            max_text_length: Longest item text a repaired section may carry.
        """
        self.llm_provider = llm_provider
        self.renderer = renderer or StoryRenderer()
        self.max_text_length = settings.max_item_text_length if max_text_length is None else max_text_length

    async def rewrite(
        self,
        document: StoryDocument,
        violations: Sequence[Violation],
        system_context: Optional[SystemContext] = None,
    ) -> RewriteOutcome:
        """Rewrite the document to fix ``violations``.

        Args:
            document: Document whose current content is repaired.
            violations: Judge violations; their locations bound what may change.
            system_context: Supporting facts the rewrite must stay within.

        Returns:
            The merged outcome. Sections not named by a violation are restored from the input.

        Raises:
            RewriteFailure: Empty or unparsable output, or a repaired section lost an item.
            OracleTransportError: The oracle could not be reached.
        """
        locations = {violation.location for violation in violations}
        violation_list = "\n".join(f"- [{v.location}] {v.description}" for v in violations) or "(none listed)"

        messages = [
            {"role": "system", "content": self.DEFAULT_SYSTEM_PROMPT},
            {
                "role": "user",
                "content": f"""## System context
{format_system_context(system_context)}

## Violations to fix
{violation_list}

## Current story
{document.current_content}

Rewrite the story to fix the violations. Output only the full story markdown.""",
            },
        ]

        logger.info("rewriter.rewrite.start", version=document.version, locations=sorted(locations))
        raw = await self.llm_provider.chat_completion(messages=messages, temperature=0.2)
        content = self._strip_fence(raw or "")
        if not content:
            raise RewriteFailure("Empty response from rewriter")

        rewritten = self.renderer.parse_markdown(content)
        if not rewritten.title and not rewritten.as_a and not rewritten.item_ids():
            raise RewriteFailure("Rewriter output is not a story in the canonical template")

        before = structure_of(document)
        merged = self.merge(before, rewritten, locations, self.max_text_length)
        touched = [path for path in PATCH_PATHS if before.collection(path) != merged.collection(path)]
        if merged.title != before.title:
            touched.insert(0, "title")

        logger.info("rewriter.rewrite.complete", version=document.version, touched=touched)
        return RewriteOutcome(
            content=self.renderer.to_markdown(merged),
            structure=merged,
            touched_locations=touched,
        )

    @staticmethod
    def merge(
        before: StoryStructure,
        rewritten: StoryStructure,
        locations: Set[str],
        max_text_length: Optional[int] = None,
    ) -> StoryStructure:
        """Take repaired sections from ``rewritten`` and everything else from ``before``.

        Raises:
            RewriteFailure: A repaired section dropped an item id, emptied a story line,
                introduced an id with the wrong prefix, repeated an id, or carried item text
                longer than ``max_text_length``.
        """
        if max_text_length is None:
            max_text_length = settings.max_item_text_length
        whole_document = DOCUMENT_LOCATION in locations
        repaired = PATCH_PATHS if whole_document else [path for path in PATCH_PATHS if path in locations]

        merged = before.clone()
        if whole_document and rewritten.title:
            merged.title = rewritten.title

        for path in repaired:
            old_items = before.collection(path)
            new_items = [item.model_copy(deep=True) for item in rewritten.collection(path)]
            too_long = [item.id for item in new_items if len(item.text) > max_text_length]
            if too_long:
                raise RewriteFailure(
                    f"Rewrite made {', '.join(too_long)} longer than {max_text_length} characters"
                )

            if is_story_line_path(path):
                if old_items[0].text and not new_items[0].text:
                    raise RewriteFailure(f"Rewrite emptied {path}")
                merged.set_collection(path, new_items)
                continue

            new_ids = {item.id for item in new_items}
            if len(new_ids) != len(new_items):
                raise RewriteFailure(f"Rewrite repeated an item id in {path}")
            lost = [item.id for item in old_items if item.id not in new_ids]
            if lost:
                raise RewriteFailure(f"Rewrite dropped {', '.join(lost)} from {path}")
            prefix = PATH_ID_PREFIXES[path]
            misplaced = [item.id for item in new_items if not item.id.startswith(prefix)]
            if misplaced:
                raise RewriteFailure(f"Rewrite put {', '.join(misplaced)} under {path}")
            merged.set_collection(path, new_items)

        if _repeated_ids(merged) > _repeated_ids(before):
            raise RewriteFailure("Rewrite reused an item id that already exists in another section")
        return merged

    @staticmethod
    def _strip_fence(text: str) -> str:
        stripped = text.strip()
        match = _FENCE.match(stripped)
        return match.group(1).strip() if match else stripped


def _repeated_ids(structure: StoryStructure) -> int:
    ids = [item.id for path in PATCH_PATHS if not is_story_line_path(path) for item in structure.collection(path)]
    return len(ids) - len(set(ids))
