"""Story document construction and version derivation."""

from typing import Any

from refinery.cognitive_engine.story_renderer import StoryRenderer
from refinery.domain.errors import ValidationError
from refinery.domain.schema import StoryDocument, StoryStructure
from refinery.utils.logger import get_logger

logger = get_logger(__name__)

_renderer = StoryRenderer()


def create_document(content: str) -> StoryDocument:
    """Create a new story document from raw markdown.

    Args:
        content: Story text, ideally in the canonical template.

    Returns:
        Version 0 document with ``structured_view`` parsed from ``content``.

    Raises:
        ValidationError: If ``content`` is empty or whitespace-only.
    """
    if not isinstance(content, str) or not content.strip():
        raise ValidationError("Story document content must be a non-empty string")

    structure = _renderer.parse_markdown(content)
    if not structure.title and not structure.as_a and not structure.item_ids():
        logger.warning(
            "story.parse.unstructured",
            length=len(content),
            hint="content is not in the canonical template; sections will be rebuilt from patches",
        )

    return StoryDocument(
        original_content=content,
        current_content=content,
        structured_view=structure,
    )


def structure_of(document: StoryDocument) -> StoryStructure:
    """Return a mutable copy of the document's structured view, parsing if absent."""
    if document.structured_view is not None:
        return document.structured_view.clone()
    return _renderer.parse_markdown(document.current_content)


def next_version(document: StoryDocument, structure: StoryStructure, **updates: Any) -> StoryDocument:
    """Derive the next document version with content re-rendered from ``structure``.

    ``current_content`` and ``structured_view`` always change together so the view stays
    consistent with the text.
    """
    return document.model_copy(
        update={
            "current_content": _renderer.to_markdown(structure),
            "structured_view": structure,
            "version": document.version + 1,
            **updates,
        }
    )
