"""Ordered, all-or-nothing application of validated patches."""

from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Sequence

from refinery.cognitive_engine.patch_validator import PatchValidator
from refinery.domain.errors import PatchConflict, PatchError, UnresolvedMatch
from refinery.domain.schema import (
    AddPatch,
    ChangeApplied,
    RawPatch,
    RemovePatch,
    ReplacePatch,
    StoryItem,
    StoryStructure,
    ValidPatch,
)
from refinery.utils.logger import get_logger

logger = get_logger(__name__)


@dataclass
class BatchOutcome:
    """Result of applying one advisor's batch.

    When ``errors`` is non-empty the batch was discarded and ``structure`` is the
    unchanged input.
    """

    structure: StoryStructure
    applied: List[ValidPatch] = field(default_factory=list)
    changes: List[ChangeApplied] = field(default_factory=list)
    errors: List[PatchError] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


class PatchApplicator:
    """Applies patches strictly in the order the advisor returned them."""

    def __init__(self, validator: Optional[PatchValidator] = None):
        self.validator = validator or PatchValidator()

    def apply(self, structure: StoryStructure, valid_patches: Sequence[ValidPatch]) -> StoryStructure:
        """Apply validated patches to a copy of ``structure``.

        Raises:
            PatchConflict: ``add`` would duplicate an identifier in its collection.
            UnresolvedMatch: a ``replace``/``remove`` target no longer exists.
        """
        working = structure.clone()
        for index, patch in enumerate(valid_patches):
            self._apply_one(working, patch, index)
        return working

    def apply_batch(
        self,
        structure: StoryStructure,
        raw_patches: Iterable[RawPatch],
        advisor_scope: Iterable[str],
        advisor_id: str,
    ) -> BatchOutcome:
        """Validate and apply a whole batch atomically.

        Each patch is validated against the progressively patched working copy, so a later
        patch may replace an item an earlier one added. Every patch is checked so the audit
        trail lists all refusals, but one refusal discards the whole batch.
        """
        scope = list(advisor_scope)
        working = structure.clone()
        applied: List[ValidPatch] = []
        errors: List[PatchError] = []

        for index, raw_patch in enumerate(raw_patches):
            try:
                patch = self.validator.validate(raw_patch, scope, working, advisor_id, patch_index=index)
                if not errors:
                    self._apply_one(working, patch, index)
                    applied.append(patch)
            except PatchError as e:
                e.advisor_id = e.advisor_id or advisor_id
                errors.append(e)
                logger.info(
                    "patch.refused",
                    advisor_id=advisor_id,
                    patch_index=index,
                    error_type=type(e).__name__,
                    error=e.message,
                )

        if errors:
            return BatchOutcome(structure=structure, errors=errors)

        return BatchOutcome(
            structure=working,
            applied=applied,
            changes=[self.describe_change(patch) for patch in applied],
        )

    @staticmethod
    def describe_change(patch: ValidPatch) -> ChangeApplied:
        """Describe an applied patch as an audit change record."""
        reasoning = patch.metadata.reasoning
        if isinstance(patch, AddPatch):
            description = f"Added {patch.item.id}: {patch.item.text}"
        elif isinstance(patch, ReplacePatch):
            description = f"Replaced {patch.match.id} with {patch.item.id}: {patch.item.text}"
        else:
            description = f"Removed {patch.match.id}"
        if reasoning:
            description = f"{description} ({reasoning})"
        return ChangeApplied(category=patch.op, description=description, location=patch.path)

    @staticmethod
    def _apply_one(working: StoryStructure, patch: ValidPatch, index: int) -> None:
        items: List[StoryItem] = list(working.collection(patch.path))
        context = {"advisor_id": patch.metadata.advisor_id, "path": patch.path, "patch_index": index}

        if isinstance(patch, AddPatch):
            if any(item.id == patch.item.id for item in items):
                raise PatchConflict(f"Duplicate id {patch.item.id!r} in {patch.path}", **context)
            items.append(patch.item.model_copy(deep=True))
        else:
            positions = [i for i, item in enumerate(items) if item.id == patch.match.id]
            if len(positions) != 1:
                raise UnresolvedMatch(
                    f"match.id {patch.match.id!r} resolved to {len(positions)} elements at {patch.path}",
                    **context,
                )
            position = positions[0]
            if isinstance(patch, ReplacePatch):
                new_id = patch.item.id
                if new_id != patch.match.id and any(item.id == new_id for item in items):
                    raise PatchConflict(f"Duplicate id {new_id!r} in {patch.path}", **context)
                items[position] = patch.item.model_copy(deep=True)
            elif isinstance(patch, RemovePatch):
                del items[position]

        working.set_collection(patch.path, items)
