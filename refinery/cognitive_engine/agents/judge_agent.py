"""Story Judge - scores a document on fixed dimensions and flags located violations.

The oracle only supplies raw scores and violations. Normalization, the overall score and
the recommendation are computed here, so the same dimension scores always produce the
same verdict.
"""

import math
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from refinery.cognitive_engine.context_builder import format_system_context
from refinery.cognitive_engine.story_renderer import section_path
from refinery.config import settings
from refinery.domain.errors import OracleResponseError
from refinery.domain.interfaces import ILLMProvider
from refinery.domain.schema import (
    JUDGE_DIMENSIONS,
    PATCH_PATHS,
    JudgeDimensionScore,
    JudgeResult,
    StoryDocument,
    SystemContext,
    Violation,
)
from refinery.utils.logger import get_logger

logger = get_logger(__name__)

# Location for violations that cannot be pinned to one section.
DOCUMENT_LOCATION = "document"


class JudgeRubric(BaseModel):
    """Raw judge answer as returned by the oracle; normalized by ``StoryJudge``."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    section_separation: Any = Field(None, alias="sectionSeparation")
    correctness: Any = None
    testability: Any = None
    completeness: Any = None
    new_relationships: List[Any] = Field(default_factory=list, alias="newRelationships")
    needs_system_context_update: Any = Field(False, alias="needsSystemContextUpdate")


def normalize_location(raw: Any) -> str:
    """Map a section name or path to a patch path, or ``DOCUMENT_LOCATION``."""
    if not isinstance(raw, str) or not raw.strip():
        return DOCUMENT_LOCATION
    return section_path(raw) or DOCUMENT_LOCATION


def normalize_violation(raw: Any) -> Violation:
    """Coerce a string or loosely shaped object into a located ``Violation``."""
    if isinstance(raw, dict):
        description = (
            raw.get("description")
            or raw.get("quote")
            or raw.get("issue")
            or raw.get("suggestedRewrite")
            or str(raw)
        )
        location = raw.get("location") or raw.get("section") or raw.get("path")
        return Violation(description=str(description), location=normalize_location(location))
    return Violation(description=str(raw), location=DOCUMENT_LOCATION)


def clamp_score(raw: Any) -> int:
    """Round a numeric score and clamp it to 1..5.

    Raises:
        OracleResponseError: If the score is missing or not numeric.
    """
    if isinstance(raw, bool):
        raise OracleResponseError(f"Judge score is not numeric: {raw!r}")
    try:
        value = float(raw)
    except (TypeError, ValueError) as e:
        raise OracleResponseError(f"Judge score is not numeric: {raw!r}") from e
    if math.isnan(value):
        raise OracleResponseError("Judge score is NaN")
    return max(1, min(5, int(round(value))))


def normalize_dimension(name: str, raw: Any) -> JudgeDimensionScore:
    """Normalize one raw dimension (object or bare score)."""
    if raw is None:
        raise OracleResponseError(f"Judge response is missing dimension {name!r}")
    if not isinstance(raw, dict):
        return JudgeDimensionScore(score=clamp_score(raw))

    violations = raw.get("violations") or []
    if not isinstance(violations, list):
        violations = [violations]
    return JudgeDimensionScore(
        score=clamp_score(raw.get("score")),
        reasoning=str(raw.get("reasoning") or ""),
        violations=[normalize_violation(v) for v in violations],
    )


def derive_recommendation(overall_score: int, dimensions: Dict[str, JudgeDimensionScore], reject_floor: int) -> str:
    """``reject`` below the floor, ``rewrite`` when any violation exists, else ``approve``."""
    if overall_score < reject_floor:
        return "reject"
    if any(dimension.violations for dimension in dimensions.values()):
        return "rewrite"
    return "approve"


class StoryJudge:
    """Judge scoring section separation, correctness, testability and completeness."""

    DEFAULT_SYSTEM_PROMPT = """You are a Story Judge. You score a user story on four independent dimensions.

CRITICAL: You MUST respond with a JSON object starting with {{ and ending with }}.

Dimensions (score each 1-5, 5 is best):
- sectionSeparation: product language in the story lines, User-Visible Behavior and Outcome criteria;
  technical detail only in System criteria and Implementation Notes.
- correctness: every component, state, event and term is supported by the system context. Flag
  anything invented.
- testability: every acceptance criterion is binary (pass/fail) and observable.
- completeness: the story covers what its title and "I want" line promise.

Score every dimension on its own. A problem in one dimension never hides problems in another.

Every violation MUST cite a location, which is one of these section paths:
{paths}

Response shape:
{{
  "sectionSeparation": {{"score": 4, "reasoning": "...", "violations": [{{"description": "...", "location": "userVisibleBehavior"}}]}},
  "correctness": {{"score": 5, "reasoning": "...", "violations": []}},
  "testability": {{"score": 3, "reasoning": "...", "violations": []}},
  "completeness": {{"score": 4, "reasoning": "...", "violations": []}},
  "newRelationships": [],
  "needsSystemContextUpdate": false
}}"""

    def __init__(self, llm_provider: ILLMProvider, reject_floor: Optional[int] = None):
        """Initialize judge.

        Args:
            llm_provider: Oracle used for scoring.
            reject_floor: Overall scores below this are rejected
                (defaults to ``settings.judge_reject_floor``).
        """
        self.llm_provider = llm_provider
        self.reject_floor = settings.judge_reject_floor if reject_floor is None else reject_floor

    async def score(self, document: StoryDocument, system_context: Optional[SystemContext] = None) -> JudgeResult:
        """Score the document's current content.

        Raises:
            OracleTransportError: The oracle could not be reached.
            OracleResponseError: The rubric could not be parsed or normalized.
        """
        messages = [
            {
                "role": "system",
                "content": self.DEFAULT_SYSTEM_PROMPT.format(paths=", ".join(PATCH_PATHS)),
            },
            {
                "role": "user",
                "content": f"""## System context
{format_system_context(system_context)}

## Story to evaluate
{document.current_content}

Evaluate and respond with a single JSON object.""",
            },
        ]

        rubric = await self.llm_provider.structured_completion(
            messages=messages,
            response_model=JudgeRubric,
            temperature=0.0,
        )
        result = self.normalize(rubric)

        logger.info(
            "judge.score.complete",
            version=document.version,
            overall_score=result.overall_score,
            recommendation=result.recommendation,
            violations=len(result.violations()),
        )
        return result

    def normalize(self, rubric: JudgeRubric) -> JudgeResult:
        """Turn a raw rubric into a ``JudgeResult``.

        ``overall_score`` is the minimum dimension score.
        """
        dimensions = {
            name: normalize_dimension(name, getattr(rubric, name))
            for name in JUDGE_DIMENSIONS
        }
        overall = min(dimension.score for dimension in dimensions.values())

        needs_update = rubric.needs_system_context_update
        return JudgeResult(
            dimensions=dimensions,
            overall_score=overall,
            recommendation=derive_recommendation(overall, dimensions, self.reject_floor),
            relationship_updates=list(rubric.new_relationships),
            needs_system_context_update=needs_update is True or str(needs_update).lower() == "true",
        )
