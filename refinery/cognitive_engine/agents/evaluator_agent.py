"""Evaluator - pass/fail gate verifying an iteration genuinely improved the story."""

import math
from typing import Any, Iterable, List

from pydantic import BaseModel, ConfigDict, Field

from refinery.domain.errors import OracleResponseError
from refinery.domain.interfaces import ILLMProvider
from refinery.domain.schema import EvaluationIssue, EvaluationResult, StoryDocument
from refinery.utils.logger import get_logger

logger = get_logger(__name__)

_SEVERITIES = ("blocking", "warning", "info")


class EvaluatorVerdict(BaseModel):
    """Raw evaluator answer as returned by the oracle."""

    model_config = ConfigDict(extra="ignore")

    passed: Any = None
    score: Any = None
    reasoning: str = ""
    issues: List[Any] = Field(default_factory=list)


class Evaluator:
    """Verifies enhancement, coherence, relevance and non-destructiveness of one iteration."""

    DEFAULT_SYSTEM_PROMPT = """You are an Evaluator. You compare a user story before and after one advisor's changes.

CRITICAL: You MUST respond with a JSON object starting with { and ending with }.

Check:
1. enhancement: the new version adds or clarifies something attributable to the advisor's purpose.
2. coherence: no contradiction was introduced relative to the previous version.
3. relevance: the changes map to the advisor's purpose.
4. non-destructive: no previous testable condition silently disappeared.

Report each problem as an issue with severity "blocking" (the change must not be kept),
"warning" or "info", and category one of enhancement, coherence, relevance, non-destructive.

Response shape:
{"passed": true, "score": 0.85, "reasoning": "...", "issues": [{"severity": "warning", "category": "relevance", "description": "...", "suggestion": "..."}]}"""

    def __init__(self, llm_provider: ILLMProvider):
        """Initialize evaluator with LLM provider.

        Args:
            llm_provider: Oracle used for the qualitative checks.
        """
        self.llm_provider = llm_provider

    async def verify(
        self,
        before: StoryDocument,
        after: StoryDocument,
        advisor_id: str,
        advisor_purpose: str,
        expected_removals: Iterable[str] = (),
    ) -> EvaluationResult:
        """Gate one iteration.

        Args:
            before: Input document of the iteration.
            after: Candidate output document.
            advisor_id: Advisor that produced ``after``.
            advisor_purpose: The advisor's declared purpose.
            expected_removals: Item ids the advisor removed explicitly with ``remove`` patches.

        Returns:
            ``passed`` is True only when no blocking issue is present.

        Raises:
            OracleTransportError: The oracle could not be reached.
        """
        if before.current_content.strip() == after.current_content.strip():
            return self._fail(
                "enhancement",
                f"{advisor_id} produced no change to the story",
                reasoning="Output is identical to input",
            )

        vanished = sorted(before.item_ids() - after.item_ids() - set(expected_removals))
        if vanished:
            return self._fail(
                "non-destructive",
                f"Items disappeared without an explicit remove: {', '.join(vanished)}",
                reasoning="Testable content was lost",
            )

        messages = [
            {"role": "system", "content": self.DEFAULT_SYSTEM_PROMPT},
            {
                "role": "user",
                "content": f"""## Advisor
{advisor_id}: {advisor_purpose}

## Before
{before.current_content}

## After
{after.current_content}

Evaluate the change and respond with a single JSON object.""",
            },
        ]

        try:
            verdict = await self.llm_provider.structured_completion(
                messages=messages,
                response_model=EvaluatorVerdict,
                temperature=0.0,
            )
        except OracleResponseError as e:
            logger.warning("evaluator.verify.unparseable", advisor_id=advisor_id, error=str(e))
            return self._fail("evaluation", f"Evaluator response could not be parsed: {e}")

        result = self.normalize(verdict)
        logger.info(
            "evaluator.verify.complete",
            advisor_id=advisor_id,
            passed=result.passed,
            score=result.score,
            blocking=len(result.blocking_issues),
        )
        return result

    @staticmethod
    def normalize(verdict: EvaluatorVerdict) -> EvaluationResult:
        """Derive ``passed`` from blocking issues and clamp ``score`` to [0, 1]."""
        issues: List[EvaluationIssue] = []
        for raw in verdict.issues:
            if isinstance(raw, dict):
                severity = str(raw.get("severity", "warning")).lower()
                issues.append(
                    EvaluationIssue(
                        severity=severity if severity in _SEVERITIES else "warning",
                        category=str(raw.get("category") or "general"),
                        description=str(raw.get("description") or ""),
                        suggestion=raw.get("suggestion") if isinstance(raw.get("suggestion"), str) else None,
                    )
                )
            else:
                issues.append(EvaluationIssue(severity="warning", category="general", description=str(raw)))

        rejected = verdict.passed is False or str(verdict.passed).lower() == "false"
        if rejected and not any(issue.severity == "blocking" for issue in issues):
            issues.append(
                EvaluationIssue(
                    severity="blocking",
                    category="evaluation",
                    description=verdict.reasoning or "Evaluator rejected the change",
                )
            )

        try:
            score = float(verdict.score)
        except (TypeError, ValueError):
            score = 0.0
        score = 0.0 if math.isnan(score) else max(0.0, min(1.0, score))

        return EvaluationResult(
            passed=not any(issue.severity == "blocking" for issue in issues),
            score=score,
            reasoning=verdict.reasoning,
            issues=issues,
        )

    @staticmethod
    def _fail(category: str, description: str, reasoning: str = "") -> EvaluationResult:
        return EvaluationResult(
            passed=False,
            score=0.0,
            reasoning=reasoning or description,
            issues=[EvaluationIssue(severity="blocking", category=category, description=description)],
        )
