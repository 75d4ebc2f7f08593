"""Patch validation: scope, shape, match, identifier, and identity rules."""

import re
from typing import Any, Dict, Iterable, Optional

from pydantic import TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from refinery.config import settings
from refinery.domain.errors import (
    IdentifierViolation,
    IdentityMismatch,
    MalformedPatch,
    ScopeViolation,
    UnresolvedMatch,
)
from refinery.domain.schema import (
    PATH_ID_PREFIXES,
    STORY_LINE_IDS,
    RawPatch,
    StoryStructure,
    ValidPatch,
    is_story_line_path,
)

_ID_CHARSET = re.compile(r"^[A-Za-z0-9_-]+$")
_KNOWN_FIELDS = {"op", "path", "match", "item", "metadata"}
_OPS = ("add", "replace", "remove")

_valid_patch_adapter: TypeAdapter = TypeAdapter(ValidPatch)


class PatchValidator:
    """Validator turning untrusted ``RawPatch`` payloads into closed patch variants.

    Rules are checked in a fixed order and the first failure wins:

    1. ``path`` is in the advisor's scope (``ScopeViolation``)
    2. field presence and content match the operation (``MalformedPatch``)
    3. ``match`` resolves to exactly one element at ``path`` (``UnresolvedMatch``)
    4. ``item.id`` satisfies the path's identifier rule (``IdentifierViolation``)
    5. ``metadata.advisorId`` is the invoking advisor (``IdentityMismatch``)

    The validator never mutates the structure it reads.
    """

    def __init__(
        self,
        max_text_length: Optional[int] = None,
        max_reasoning_length: Optional[int] = None,
    ):
        self.max_text_length = settings.max_item_text_length if max_text_length is None else max_text_length
        self.max_reasoning_length = (
            settings.max_reasoning_length if max_reasoning_length is None else max_reasoning_length
        )

    def validate(
        self,
        raw_patch: RawPatch,
        advisor_scope: Iterable[str],
        structure: StoryStructure,
        advisor_id: str,
        patch_index: Optional[int] = None,
    ) -> ValidPatch:
        """Validate one patch against the advisor scope and the current structure.

        Args:
            raw_patch: Untrusted patch from the advisor.
            advisor_scope: Paths the advisor may edit.
            structure: Structure the patch would apply to.
            advisor_id: Identity of the invoking advisor.
            patch_index: Position in the batch, for error reporting.

        Returns:
            ``AddPatch``, ``ReplacePatch`` or ``RemovePatch``.

        Raises:
            PatchError: The subclass for the first failing rule.
        """
        extras = raw_patch.model_extra or {}
        path = raw_patch.path if isinstance(raw_patch.path, str) else None
        context = {"advisor_id": advisor_id, "path": path, "patch_index": patch_index}

        if "invalid_entry" in extras:
            raise MalformedPatch("Patch entry is not an object", **context)

        # 1. Scope
        if path is None or path not in set(advisor_scope):
            raise ScopeViolation(
                f"Path {raw_patch.path!r} is outside the scope of advisor {advisor_id!r}",
                **context,
            )

        # 2. Shape
        decoded = self._check_shape(raw_patch, extras, context)
        op = raw_patch.op

        # 3. Match
        if op in ("replace", "remove"):
            match_id = raw_patch.match["id"]
            found = sum(1 for item in structure.collection(path) if item.id == match_id)
            if found != 1:
                raise UnresolvedMatch(
                    f"match.id {match_id!r} resolved to {found} elements at {path}", **context
                )

        # 4. Identifier
        if op in ("add", "replace"):
            self._check_identifier(path, raw_patch.item["id"], context)

        # 5. Identity
        claimed = raw_patch.metadata["advisorId"]
        if claimed != advisor_id:
            raise IdentityMismatch(
                f"metadata.advisorId {claimed!r} does not match advisor {advisor_id!r}", **context
            )

        return decoded

    def _check_shape(self, raw_patch: RawPatch, extras: Dict[str, Any], context: Dict[str, Any]) -> ValidPatch:
        op = raw_patch.op
        path = context["path"]

        if op not in _OPS:
            raise MalformedPatch(f"Unknown op {op!r}", **context)
        if extras:
            raise MalformedPatch(f"Unexpected fields: {', '.join(sorted(extras))}", **context)

        has_match = raw_patch.match is not None
        has_item = raw_patch.item is not None
        if op == "add" and has_match:
            raise MalformedPatch("add must not carry match", **context)
        if op == "add" and not has_item:
            raise MalformedPatch("add requires item", **context)
        if op == "replace" and not (has_match and has_item):
            raise MalformedPatch("replace requires both match and item", **context)
        if op == "remove" and not has_match:
            raise MalformedPatch("remove requires match", **context)
        if op == "remove" and has_item:
            raise MalformedPatch("remove must not carry item", **context)
        if is_story_line_path(path) and op != "replace":
            raise MalformedPatch(f"{path} is a story line and supports replace only", **context)

        if has_match:
            match = raw_patch.match
            if not isinstance(match, dict) or set(match) != {"id"}:
                raise MalformedPatch("match must be an object with only an id selector", **context)
            if not isinstance(match["id"], str) or not match["id"].strip():
                raise MalformedPatch("match.id must be a non-empty string", **context)

        if has_item:
            item = raw_patch.item
            if not isinstance(item, dict):
                raise MalformedPatch("item must be an object", **context)
            if not isinstance(item.get("id"), str) or not item["id"].strip():
                raise MalformedPatch("item.id must be a non-empty string", **context)
            text = item.get("text")
            if not isinstance(text, str) or not text.strip():
                raise MalformedPatch("item.text must be a non-empty string", **context)
            if len(text) > self.max_text_length:
                raise MalformedPatch(
                    f"item.text is {len(text)} characters (max {self.max_text_length})", **context
                )

        metadata = raw_patch.metadata
        if not isinstance(metadata, dict):
            raise MalformedPatch("metadata is required", **context)
        unknown = set(metadata) - {"advisorId", "reasoning"}
        if unknown:
            raise MalformedPatch(f"Unexpected metadata fields: {', '.join(sorted(unknown))}", **context)
        if not isinstance(metadata.get("advisorId"), str) or not metadata["advisorId"]:
            raise MalformedPatch("metadata.advisorId is required", **context)
        reasoning = metadata.get("reasoning")
        if reasoning is not None:
            if not isinstance(reasoning, str):
                raise MalformedPatch("metadata.reasoning must be a string", **context)
            if len(reasoning) > self.max_reasoning_length:
                raise MalformedPatch(
                    f"metadata.reasoning is {len(reasoning)} characters "
                    f"(max {self.max_reasoning_length})",
                    **context,
                )

        # Typed fields of item and metadata (e.g. tags, sourceAdvisor) are part of the shape.
        try:
            return _valid_patch_adapter.validate_python(
                raw_patch.model_dump(include=_KNOWN_FIELDS, exclude_none=True)
            )
        except PydanticValidationError as e:
            raise MalformedPatch(f"Patch does not decode: {e.errors()[0]['msg']}", **context) from e

    @staticmethod
    def _check_identifier(path: str, item_id: str, context: Dict[str, Any]) -> None:
        if is_story_line_path(path):
            if item_id != STORY_LINE_IDS[path]:
                raise IdentifierViolation(
                    f"item.id for {path} must be {STORY_LINE_IDS[path]!r}, got {item_id!r}", **context
                )
            return
        if not _ID_CHARSET.match(item_id):
            raise IdentifierViolation(
                f"item.id {item_id!r} may only contain letters, digits, '_' and '-'", **context
            )
        prefix = PATH_ID_PREFIXES[path]
        if not item_id.startswith(prefix):
            raise IdentifierViolation(
                f"item.id {item_id!r} must start with {prefix!r} for {path}", **context
            )
