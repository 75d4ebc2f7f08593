"""Story Refinery schema - canonical data models.

Wire-facing records (patches, items) keep the camelCase field names advisors emit and are
dumped with ``by_alias=True`` so existing advisor definitions interoperate unchanged.
"""

import copy
from datetime import datetime, timezone
from typing import Annotated, Any, Dict, List, Literal, Optional, Set, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Patch paths
# ---------------------------------------------------------------------------

# Story lines are scalar fields addressed as single-element collections with a fixed id.
STORY_LINE_IDS: Dict[str, str] = {
    "story.asA": "STORY-AS-A",
    "story.iWant": "STORY-I-WANT",
    "story.soThat": "STORY-SO-THAT",
}

# Required identifier prefix per patch path.
PATH_ID_PREFIXES: Dict[str, str] = {
    **STORY_LINE_IDS,
    "userVisibleBehavior": "UVB-",
    "outcomeAcceptanceCriteria": "AC-OUT-",
    "systemAcceptanceCriteria": "AC-SYS-",
    "implementationNotes.stateOwnership": "IMPL-STATE-",
    "implementationNotes.dataFlow": "IMPL-FLOW-",
    "implementationNotes.apiContracts": "IMPL-API-",
    "implementationNotes.loadingStates": "IMPL-LOAD-",
    "implementationNotes.performanceNotes": "IMPL-PERF-",
    "implementationNotes.securityNotes": "IMPL-SEC-",
    "implementationNotes.telemetryNotes": "IMPL-TEL-",
    "uiMapping": "UI-MAP-",
    "openQuestions": "QUESTION-",
    "edgeCases": "EDGE-",
    "nonGoals": "NON-GOAL-",
}

PATCH_PATHS = tuple(PATH_ID_PREFIXES)

# Wire path -> attribute on StoryStructure / ImplementationNotes.
_STORY_LINE_ATTRS = {"story.asA": "as_a", "story.iWant": "i_want", "story.soThat": "so_that"}
_COLLECTION_ATTRS = {
    "userVisibleBehavior": "user_visible_behavior",
    "outcomeAcceptanceCriteria": "outcome_acceptance_criteria",
    "systemAcceptanceCriteria": "system_acceptance_criteria",
    "uiMapping": "ui_mapping",
    "openQuestions": "open_questions",
    "edgeCases": "edge_cases",
    "nonGoals": "non_goals",
}
NOTE_ATTRS = {
    "stateOwnership": "state_ownership",
    "dataFlow": "data_flow",
    "apiContracts": "api_contracts",
    "loadingStates": "loading_states",
    "performanceNotes": "performance_notes",
    "securityNotes": "security_notes",
    "telemetryNotes": "telemetry_notes",
}


def is_story_line_path(path: str) -> bool:
    """Return True for the scalar As a / I want / So that paths."""
    return path in STORY_LINE_IDS


# ---------------------------------------------------------------------------
# Structured story
# ---------------------------------------------------------------------------


class StoryItem(BaseModel):
    """List entry with a stable identifier (acceptance criterion, behavior bullet, note)."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    id: str = Field(description="Stable identifier, e.g. AC-OUT-001")
    text: str = Field(description="Display text")
    tags: Optional[List[str]] = Field(None, description="Optional categorization tags")
    source_advisor: Optional[str] = Field(
        None, alias="sourceAdvisor", description="Advisor that created this item"
    )


class ImplementationNotes(BaseModel):
    """Implementation notes grouped by concern."""

    model_config = ConfigDict(populate_by_name=True)

    state_ownership: List[StoryItem] = Field(default_factory=list, alias="stateOwnership")
    data_flow: List[StoryItem] = Field(default_factory=list, alias="dataFlow")
    api_contracts: List[StoryItem] = Field(default_factory=list, alias="apiContracts")
    loading_states: List[StoryItem] = Field(default_factory=list, alias="loadingStates")
    performance_notes: List[StoryItem] = Field(default_factory=list, alias="performanceNotes")
    security_notes: List[StoryItem] = Field(default_factory=list, alias="securityNotes")
    telemetry_notes: List[StoryItem] = Field(default_factory=list, alias="telemetryNotes")


class StoryStructure(BaseModel):
    """Section-addressable view of a story document."""

    model_config = ConfigDict(populate_by_name=True)

    title: str = ""
    as_a: str = Field("", alias="asA")
    i_want: str = Field("", alias="iWant")
    so_that: str = Field("", alias="soThat")
    user_visible_behavior: List[StoryItem] = Field(default_factory=list, alias="userVisibleBehavior")
    outcome_acceptance_criteria: List[StoryItem] = Field(
        default_factory=list, alias="outcomeAcceptanceCriteria"
    )
    system_acceptance_criteria: List[StoryItem] = Field(
        default_factory=list, alias="systemAcceptanceCriteria"
    )
    implementation_notes: ImplementationNotes = Field(
        default_factory=ImplementationNotes, alias="implementationNotes"
    )
    ui_mapping: List[StoryItem] = Field(default_factory=list, alias="uiMapping")
    open_questions: List[StoryItem] = Field(default_factory=list, alias="openQuestions")
    edge_cases: List[StoryItem] = Field(default_factory=list, alias="edgeCases")
    non_goals: List[StoryItem] = Field(default_factory=list, alias="nonGoals")

    def collection(self, path: str) -> List[StoryItem]:
        """Return the items stored at ``path``.

        Collection paths return the live list. Story-line paths return a one-element
        snapshot carrying the line's fixed identifier.

        Raises:
            KeyError: If ``path`` is not a known patch path.
        """
        if path in _STORY_LINE_ATTRS:
            return [StoryItem(id=STORY_LINE_IDS[path], text=getattr(self, _STORY_LINE_ATTRS[path]))]
        if path in _COLLECTION_ATTRS:
            return getattr(self, _COLLECTION_ATTRS[path])
        if path.startswith("implementationNotes."):
            key = path.split(".", 1)[1]
            if key in NOTE_ATTRS:
                return getattr(self.implementation_notes, NOTE_ATTRS[key])
        raise KeyError(path)

    def set_collection(self, path: str, items: List[StoryItem]) -> None:
        """Replace the items stored at ``path``."""
        if path in _STORY_LINE_ATTRS:
            setattr(self, _STORY_LINE_ATTRS[path], items[0].text if items else "")
        elif path in _COLLECTION_ATTRS:
            setattr(self, _COLLECTION_ATTRS[path], items)
        elif path.startswith("implementationNotes.") and path.split(".", 1)[1] in NOTE_ATTRS:
            setattr(self.implementation_notes, NOTE_ATTRS[path.split(".", 1)[1]], items)
        else:
            raise KeyError(path)

    def item_ids(self) -> Set[str]:
        """Identifiers of every collection item (story lines excluded)."""
        ids: Set[str] = set()
        for path in PATCH_PATHS:
            if is_story_line_path(path):
                continue
            ids.update(item.id for item in self.collection(path))
        return ids

    def clone(self) -> "StoryStructure":
        """Deep copy, safe to mutate."""
        return copy.deepcopy(self)


# ---------------------------------------------------------------------------
# Patches
# ---------------------------------------------------------------------------


class RawPatch(BaseModel):
    """Untrusted patch payload as returned by an advisor. Nothing is assumed present."""

    model_config = ConfigDict(extra="allow")

    op: Any = None
    path: Any = None
    match: Any = None
    item: Any = None
    metadata: Any = None


class PatchMatch(BaseModel):
    """Selector for the element a replace/remove targets."""

    model_config = ConfigDict(extra="forbid")

    id: str


class PatchMetadata(BaseModel):
    """Advisor attribution carried by every patch."""

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    advisor_id: str = Field(alias="advisorId")
    reasoning: Optional[str] = None


class AddPatch(BaseModel):
    """Append ``item`` to the collection at ``path``."""

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    op: Literal["add"] = "add"
    path: str
    item: StoryItem
    metadata: PatchMetadata

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class ReplacePatch(BaseModel):
    """Substitute the matched element with ``item``, keeping its position."""

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    op: Literal["replace"] = "replace"
    path: str
    match: PatchMatch
    item: StoryItem
    metadata: PatchMetadata

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class RemovePatch(BaseModel):
    """Delete the matched element."""

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    op: Literal["remove"] = "remove"
    path: str
    match: PatchMatch
    metadata: PatchMetadata

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


ValidPatch = Annotated[Union[AddPatch, ReplacePatch, RemovePatch], Field(discriminator="op")]


class PatchBatch(BaseModel):
    """Advisor output: zero or more patches, or an explicit abstention."""

    model_config = ConfigDict(populate_by_name=True)

    patches: List[RawPatch] = Field(default_factory=list)
    applicable: bool = Field(True, description="False when the advisor's scope gate failed")
    not_applicable_reason: Optional[str] = Field(None, alias="notApplicableReason")

    @field_validator("patches", mode="before")
    @classmethod
    def _wrap_non_objects(cls, value: Any) -> Any:
        """Keep non-object entries so the validator can refuse them individually."""
        if value is None:
            return []
        if not isinstance(value, list):
            return [{"op": None, "invalid_entry": value}]
        return [entry if isinstance(entry, dict) else {"op": None, "invalid_entry": entry} for entry in value]

    @classmethod
    def abstain(cls, reason: str) -> "PatchBatch":
        """Empty batch for an advisor whose topic does not apply."""
        return cls(patches=[], applicable=False, not_applicable_reason=reason)


class ChangeApplied(BaseModel):
    """One change made during an iteration."""

    category: str = Field(min_length=1)
    description: str = Field(min_length=1)
    location: Optional[str] = None


# ---------------------------------------------------------------------------
# Judge / evaluator records
# ---------------------------------------------------------------------------

JUDGE_DIMENSIONS = ("section_separation", "correctness", "testability", "completeness")

Recommendation = Literal["approve", "rewrite", "reject"]


class Violation(BaseModel):
    """A judge-detected problem with the section it was found in."""

    description: str
    location: str = Field(description="Patch path or section the rewriter should repair")


class JudgeDimensionScore(BaseModel):
    """Score for one judge dimension."""

    score: int = Field(ge=1, le=5)
    reasoning: str = ""
    violations: List[Violation] = Field(default_factory=list)


class JudgeResult(BaseModel):
    """Scoring output for one document version."""

    dimensions: Dict[str, JudgeDimensionScore]
    overall_score: int = Field(ge=1, le=5)
    recommendation: Recommendation
    relationship_updates: List[Any] = Field(
        default_factory=list, description="Opaque relationship payload, forwarded unchanged"
    )
    needs_system_context_update: bool = False

    def violations(self) -> List[Violation]:
        """All violations across dimensions, in dimension order."""
        found: List[Violation] = []
        for name in JUDGE_DIMENSIONS:
            if name in self.dimensions:
                found.extend(self.dimensions[name].violations)
        return found

    def violations_at(self, location: str) -> List[Violation]:
        return [v for v in self.violations() if v.location == location]


class EvaluationIssue(BaseModel):
    """Issue found while verifying an iteration."""

    severity: Literal["blocking", "warning", "info"]
    category: str
    description: str
    suggestion: Optional[str] = None


class EvaluationResult(BaseModel):
    """Pass/fail verdict for one iteration."""

    passed: bool
    score: float = Field(ge=0.0, le=1.0)
    reasoning: str = ""
    issues: List[EvaluationIssue] = Field(default_factory=list)

    @property
    def blocking_issues(self) -> List[EvaluationIssue]:
        return [issue for issue in self.issues if issue.severity == "blocking"]


# ---------------------------------------------------------------------------
# Supporting facts
# ---------------------------------------------------------------------------


class SystemComponent(BaseModel):
    """Known component of the product (e.g. COMP-LOGIN-FORM)."""

    id: str
    product_name: str
    description: str = ""
    technical_name: Optional[str] = None


class ContractEntry(BaseModel):
    """Known state model, event, or data flow contract."""

    id: str
    name: str = ""
    description: str = ""


class SystemContext(BaseModel):
    """Read-only facts used to keep advisors, judge, and rewriter from hallucinating."""

    components: List[SystemComponent] = Field(default_factory=list)
    state_models: List[ContractEntry] = Field(default_factory=list)
    events: List[ContractEntry] = Field(default_factory=list)
    data_flows: List[ContractEntry] = Field(default_factory=list)
    product_vocabulary: Dict[str, str] = Field(
        default_factory=dict, description="Technical term -> product term"
    )
    reference_documents: List[str] = Field(default_factory=list)

    def is_empty(self) -> bool:
        return not any(
            [
                self.components,
                self.state_models,
                self.events,
                self.data_flows,
                self.product_vocabulary,
                self.reference_documents,
            ]
        )


class ProductContext(BaseModel):
    """Background about the product the story belongs to."""

    product_name: str
    product_type: str = Field(description="web, mobile-native, mobile-web, desktop, api")
    client_info: str = ""
    target_audience: str = ""
    key_features: List[str] = Field(default_factory=list)
    business_context: str = ""
    specific_requirements: Optional[str] = None
    i18n_requirements: Optional[str] = None


# ---------------------------------------------------------------------------
# Document model
# ---------------------------------------------------------------------------


class IterationResult(BaseModel):
    """Audit record of one advisor reaching a success-path terminal state."""

    advisor_id: str
    input_content: str
    output_content: str
    changes_applied: List[ChangeApplied] = Field(default_factory=list)
    timestamp: datetime = Field(default_factory=_utcnow)
    judge_result: Optional[JudgeResult] = None
    evaluation: Optional[EvaluationResult] = None
    state: Literal["applied", "rejected"] = "applied"
    attempts: int = Field(1, ge=1)
    rewrite_applied: bool = False
    patch_errors: List[str] = Field(default_factory=list)
    patches: List[Dict[str, Any]] = Field(default_factory=list, description="Applied patches, wire shape")


class FailedIteration(BaseModel):
    """Advisor that exhausted its retries or was rejected by the judge."""

    advisor_id: str
    reason: str
    error_type: str
    attempts: int = Field(ge=1)
    timestamp: datetime = Field(default_factory=_utcnow)


class StoryDocument(BaseModel):
    """The artifact under enhancement.

    Instances are frozen; the orchestrator derives each new version with ``model_copy``.
    """

    model_config = ConfigDict(frozen=True)

    original_content: str
    current_content: str
    structured_view: Optional[StoryStructure] = None
    applied_iteration_ids: List[str] = Field(default_factory=list)
    iteration_history: List[IterationResult] = Field(default_factory=list)
    failed_iterations: List[FailedIteration] = Field(default_factory=list)
    version: int = 0

    def is_applied(self, advisor_id: str) -> bool:
        return advisor_id in self.applied_iteration_ids

    def failed_advisor_ids(self) -> List[str]:
        return [failed.advisor_id for failed in self.failed_iterations]

    def item_ids(self) -> Set[str]:
        """Identifiers of every item in the structured view (empty when there is none)."""
        return self.structured_view.item_ids() if self.structured_view else set()
