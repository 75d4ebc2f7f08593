"""Tests for patch validation rules."""

import pytest

from refinery.cognitive_engine.patch_validator import PatchValidator
from refinery.domain.errors import (
    IdentifierViolation,
    IdentityMismatch,
    MalformedPatch,
    ScopeViolation,
    UnresolvedMatch,
)
from refinery.domain.schema import AddPatch, PatchBatch, RawPatch, RemovePatch, ReplacePatch

SCOPE = ["outcomeAcceptanceCriteria", "systemAcceptanceCriteria", "story.asA"]
ADVISOR = "validation"


@pytest.fixture
def validator() -> PatchValidator:
    """Validator with default limits."""
    return PatchValidator(max_text_length=500, max_reasoning_length=240)


@pytest.fixture
def structure(sample_document):
    """Structure of the sample story."""
    return sample_document.structured_view


def _raw(payload) -> RawPatch:
    return RawPatch.model_validate(payload)


class TestAcceptedPatches:
    """Tests for patches that pass every rule."""

    def test_add(self, validator, structure, make_patch):
        """Test a well-formed add decodes to AddPatch."""
        patch = validator.validate(
            _raw(make_patch("add", "outcomeAcceptanceCriteria", ADVISOR, "AC-OUT-010", "Email must contain @")),
            SCOPE,
            structure,
            ADVISOR,
        )
        assert isinstance(patch, AddPatch)
        assert patch.item.id == "AC-OUT-010"
        assert patch.metadata.advisor_id == ADVISOR

    def test_replace(self, validator, structure, make_patch):
        """Test a replace resolving exactly one element decodes to ReplacePatch."""
        patch = validator.validate(
            _raw(make_patch("replace", "systemAcceptanceCriteria", ADVISOR, "AC-SYS-001", "Tokens expire", "AC-SYS-001")),
            SCOPE,
            structure,
            ADVISOR,
        )
        assert isinstance(patch, ReplacePatch)
        assert patch.match.id == "AC-SYS-001"

    def test_remove(self, validator, structure, make_patch):
        """Test a remove decodes to RemovePatch."""
        patch = validator.validate(
            _raw(make_patch("remove", "outcomeAcceptanceCriteria", ADVISOR, match_id="AC-OUT-002")),
            SCOPE,
            structure,
            ADVISOR,
        )
        assert isinstance(patch, RemovePatch)

    def test_story_line_replace(self, validator, structure, make_patch):
        """Test story lines accept replace with their fixed identifier."""
        patch = validator.validate(
            _raw(make_patch("replace", "story.asA", ADVISOR, "STORY-AS-A", "returning shopper", "STORY-AS-A")),
            SCOPE,
            structure,
            ADVISOR,
        )
        assert patch.item.text == "returning shopper"

    def test_wire_shape_is_preserved(self, validator, structure, make_patch):
        """Test to_wire reproduces the camelCase advisor payload."""
        payload = make_patch("add", "outcomeAcceptanceCriteria", ADVISOR, "AC-OUT-010", "Email must contain @", reasoning="format")
        patch = validator.validate(_raw(payload), SCOPE, structure, ADVISOR)
        assert patch.to_wire() == payload

    def test_structure_is_not_mutated(self, validator, structure, make_patch):
        """Test validation never changes the structure it reads."""
        before = structure.model_dump()
        validator.validate(
            _raw(make_patch("remove", "outcomeAcceptanceCriteria", ADVISOR, match_id="AC-OUT-002")),
            SCOPE,
            structure,
            ADVISOR,
        )
        assert structure.model_dump() == before


class TestScope:
    """Tests for the scope rule."""

    def test_path_outside_scope(self, validator, structure, make_patch):
        """Test a patch to userVisibleBehavior from a validation advisor is refused."""
        with pytest.raises(ScopeViolation) as exc_info:
            validator.validate(
                _raw(make_patch("add", "userVisibleBehavior", ADVISOR, "UVB-009", "New behavior")),
                SCOPE,
                structure,
                ADVISOR,
                patch_index=3,
            )
        assert exc_info.value.path == "userVisibleBehavior"
        assert exc_info.value.patch_index == 3
        assert "ScopeViolation: patch[3] at userVisibleBehavior" in exc_info.value.describe()

    def test_unknown_path(self, validator, structure, make_patch):
        """Test a path that is not a patch path is a scope violation."""
        with pytest.raises(ScopeViolation):
            validator.validate(
                _raw(make_patch("add", "sideEffects", ADVISOR, "X-1", "x")), SCOPE, structure, ADVISOR
            )

    def test_scope_checked_before_shape(self, validator, structure):
        """Test an out-of-scope patch with a broken shape reports the scope violation."""
        with pytest.raises(ScopeViolation):
            validator.validate(_raw({"op": "explode", "path": "nonGoals"}), SCOPE, structure, ADVISOR)


class TestShape:
    """Tests for the shape rule."""

    def test_add_with_match(self, validator, structure, make_patch):
        """Test add carrying match is malformed, even when match would resolve."""
        payload = make_patch("add", "outcomeAcceptanceCriteria", ADVISOR, "AC-OUT-001", "dup", "AC-OUT-001")
        with pytest.raises(MalformedPatch):
            validator.validate(_raw(payload), SCOPE, structure, ADVISOR)

    def test_remove_with_item(self, validator, structure, make_patch):
        """Test remove carrying item is malformed."""
        payload = make_patch("remove", "outcomeAcceptanceCriteria", ADVISOR, "AC-OUT-002", "x", "AC-OUT-002")
        with pytest.raises(MalformedPatch):
            validator.validate(_raw(payload), SCOPE, structure, ADVISOR)

    def test_replace_without_item(self, validator, structure, make_patch):
        """Test replace requires both match and item."""
        payload = make_patch("replace", "outcomeAcceptanceCriteria", ADVISOR, match_id="AC-OUT-002")
        with pytest.raises(MalformedPatch):
            validator.validate(_raw(payload), SCOPE, structure, ADVISOR)

    def test_unknown_op(self, validator, structure, make_patch):
        """Test an unknown op is malformed."""
        payload = make_patch("move", "outcomeAcceptanceCriteria", ADVISOR, "AC-OUT-010", "x")
        with pytest.raises(MalformedPatch):
            validator.validate(_raw(payload), SCOPE, structure, ADVISOR)

    def test_unexpected_fields(self, validator, structure, make_patch):
        """Test fields outside the patch shape are refused."""
        payload = make_patch("add", "outcomeAcceptanceCriteria", ADVISOR, "AC-OUT-010", "x")
        payload["priority"] = "high"
        with pytest.raises(MalformedPatch):
            validator.validate(_raw(payload), SCOPE, structure, ADVISOR)

    def test_text_too_long(self, validator, structure, make_patch):
        """Test item text over the limit is malformed."""
        payload = make_patch("add", "outcomeAcceptanceCriteria", ADVISOR, "AC-OUT-010", "x" * 501)
        with pytest.raises(MalformedPatch):
            validator.validate(_raw(payload), SCOPE, structure, ADVISOR)

    def test_zero_limits_are_kept(self, structure, make_patch):
        """Test explicit zero limits are honoured rather than replaced by the defaults."""
        validator = PatchValidator(max_text_length=0, max_reasoning_length=0)
        assert validator.max_text_length == 0
        assert validator.max_reasoning_length == 0

        payload = make_patch("add", "outcomeAcceptanceCriteria", ADVISOR, "AC-OUT-010", "x")
        with pytest.raises(MalformedPatch):
            validator.validate(_raw(payload), SCOPE, structure, ADVISOR)

    def test_reasoning_too_long(self, validator, structure, make_patch):
        """Test reasoning over the limit is malformed."""
        payload = make_patch("add", "outcomeAcceptanceCriteria", ADVISOR, "AC-OUT-010", "x", reasoning="r" * 241)
        with pytest.raises(MalformedPatch):
            validator.validate(_raw(payload), SCOPE, structure, ADVISOR)

    def test_empty_text(self, validator, structure, make_patch):
        """Test whitespace-only item text is malformed."""
        payload = make_patch("add", "outcomeAcceptanceCriteria", ADVISOR, "AC-OUT-010")
        payload["item"]["text"] = "   "
        with pytest.raises(MalformedPatch):
            validator.validate(_raw(payload), SCOPE, structure, ADVISOR)

    def test_missing_metadata(self, validator, structure, make_patch):
        """Test metadata is required."""
        payload = make_patch("add", "outcomeAcceptanceCriteria", ADVISOR, "AC-OUT-010", "x")
        del payload["metadata"]
        with pytest.raises(MalformedPatch):
            validator.validate(_raw(payload), SCOPE, structure, ADVISOR)

    def test_text_equals_selector_not_supported(self, validator, structure, make_patch):
        """Test match selectors other than id are refused."""
        payload = make_patch("remove", "outcomeAcceptanceCriteria", ADVISOR, match_id="AC-OUT-002")
        payload["match"]["textEquals"] = "Reset link expires after 30 minutes"
        with pytest.raises(MalformedPatch):
            validator.validate(_raw(payload), SCOPE, structure, ADVISOR)

    def test_story_line_add(self, validator, structure, make_patch):
        """Test story lines support replace only."""
        payload = make_patch("add", "story.asA", ADVISOR, "STORY-AS-A", "admin")
        with pytest.raises(MalformedPatch):
            validator.validate(_raw(payload), SCOPE, structure, ADVISOR)

    def test_ill_typed_item_checked_before_identity(self, validator, structure, make_patch):
        """Test a wrongly typed item field is malformed even when the advisor id is also wrong."""
        payload = make_patch("add", "outcomeAcceptanceCriteria", "someone-else", "AC-OUT-010", "x")
        payload["item"]["tags"] = "not-a-list"
        with pytest.raises(MalformedPatch):
            validator.validate(_raw(payload), SCOPE, structure, ADVISOR)

    def test_ill_typed_item_checked_before_match(self, validator, structure, make_patch):
        """Test a wrongly typed item field is malformed even when the match does not resolve."""
        payload = make_patch("replace", "outcomeAcceptanceCriteria", ADVISOR, "AC-OUT-999", "x", match_id="AC-OUT-999")
        payload["item"]["sourceAdvisor"] = 42
        with pytest.raises(MalformedPatch):
            validator.validate(_raw(payload), SCOPE, structure, ADVISOR)

    def test_non_object_entry(self, validator, structure):
        """Test a non-object batch entry is refused as malformed."""
        batch = PatchBatch.model_validate({"patches": ["add an email check please"]})
        with pytest.raises(MalformedPatch):
            validator.validate(batch.patches[0], SCOPE, structure, ADVISOR)


class TestMatch:
    """Tests for the match rule."""

    def test_match_not_found(self, validator, structure, make_patch):
        """Test a replace targeting a missing id is unresolved."""
        payload = make_patch("replace", "outcomeAcceptanceCriteria", ADVISOR, "AC-OUT-099", "x", "AC-OUT-099")
        with pytest.raises(UnresolvedMatch):
            validator.validate(_raw(payload), SCOPE, structure, ADVISOR)

    def test_match_in_other_collection(self, validator, structure, make_patch):
        """Test match resolves only within the patch path."""
        payload = make_patch("remove", "systemAcceptanceCriteria", ADVISOR, match_id="AC-OUT-001")
        with pytest.raises(UnresolvedMatch):
            validator.validate(_raw(payload), SCOPE, structure, ADVISOR)


class TestIdentifier:
    """Tests for the identifier rule."""

    def test_wrong_prefix(self, validator, structure, make_patch):
        """Test AC-SYS ids cannot be added to outcome criteria."""
        payload = make_patch("add", "outcomeAcceptanceCriteria", ADVISOR, "AC-SYS-010", "x")
        with pytest.raises(IdentifierViolation):
            validator.validate(_raw(payload), SCOPE, structure, ADVISOR)

    def test_bad_characters(self, validator, structure, make_patch):
        """Test ids are restricted to letters, digits, '_' and '-'."""
        payload = make_patch("add", "outcomeAcceptanceCriteria", ADVISOR, "AC-OUT 010", "x")
        with pytest.raises(IdentifierViolation):
            validator.validate(_raw(payload), SCOPE, structure, ADVISOR)

    def test_story_line_fixed_id(self, validator, structure, make_patch):
        """Test story line replacements keep the fixed identifier."""
        payload = make_patch("replace", "story.asA", ADVISOR, "STORY-ROLE", "admin", "STORY-AS-A")
        with pytest.raises(IdentifierViolation):
            validator.validate(_raw(payload), SCOPE, structure, ADVISOR)


class TestIdentity:
    """Tests for the identity rule."""

    def test_advisor_id_mismatch(self, validator, structure, make_patch):
        """Test patches must be attributed to the invoking advisor."""
        payload = make_patch("add", "outcomeAcceptanceCriteria", "accessibility", "AC-OUT-010", "x")
        with pytest.raises(IdentityMismatch):
            validator.validate(_raw(payload), SCOPE, structure, ADVISOR)

    def test_identifier_checked_before_identity(self, validator, structure, make_patch):
        """Test the first failing rule wins when several rules fail."""
        payload = make_patch("add", "outcomeAcceptanceCriteria", "accessibility", "UVB-010", "x")
        with pytest.raises(IdentifierViolation):
            validator.validate(_raw(payload), SCOPE, structure, ADVISOR)
