"""Orchestrator - drives each advisor through an explicit, bounded state machine.

Per advisor::

    PENDING -> RUNNING -> APPLIED | REJECTED | FAILED
       |          |  ^
       v          v  |
    SKIPPED  RETRY_SCHEDULED

Every retry starts again from the same input document. The document only moves forward
on APPLIED (new content) or REJECTED (no-op audit record); FAILED leaves it at its last
known-good version and adds a ``FailedIteration``. SKIPPED means the advisor was already
applied to the document, which is returned untouched.
"""

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Sequence, Tuple, Union

from refinery.cognitive_engine.advisor_registry import AdvisorDefinition, AdvisorRegistry
from refinery.cognitive_engine.agents.advisor_runner import AdvisorRunner
from refinery.cognitive_engine.agents.evaluator_agent import Evaluator
from refinery.cognitive_engine.agents.judge_agent import StoryJudge
from refinery.cognitive_engine.agents.rewriter_agent import StoryRewriter
from refinery.cognitive_engine.context_builder import ContextBuilder
from refinery.cognitive_engine.patch_applicator import PatchApplicator
from refinery.cognitive_engine.story_state import create_document, next_version, structure_of
from refinery.config import settings
from refinery.domain.errors import EvaluationFailed, JudgeReject, RefineryError
from refinery.domain.schema import (
    ChangeApplied,
    FailedIteration,
    IterationResult,
    ProductContext,
    RemovePatch,
    ReplacePatch,
    StoryDocument,
    StoryStructure,
    SystemContext,
)
from refinery.utils.logger import get_logger
from refinery.utils.tracing import get_tracer

logger = get_logger(__name__)
tracer = get_tracer(__name__)


class IterationState(str, Enum):
    """Lifecycle state of one advisor within a pipeline run."""

    PENDING = "pending"
    RUNNING = "running"
    APPLIED = "applied"
    REJECTED = "rejected"
    RETRY_SCHEDULED = "retry_scheduled"
    FAILED = "failed"
    SKIPPED = "skipped"


_TRANSITIONS: Dict[IterationState, Tuple[IterationState, ...]] = {
    IterationState.PENDING: (IterationState.RUNNING, IterationState.SKIPPED),
    IterationState.RUNNING: (
        IterationState.APPLIED,
        IterationState.REJECTED,
        IterationState.RETRY_SCHEDULED,
        IterationState.FAILED,
    ),
    IterationState.RETRY_SCHEDULED: (IterationState.RUNNING,),
    IterationState.APPLIED: (),
    IterationState.REJECTED: (),
    IterationState.FAILED: (),
    IterationState.SKIPPED: (),
}

TERMINAL_STATES = (
    IterationState.APPLIED,
    IterationState.REJECTED,
    IterationState.FAILED,
    IterationState.SKIPPED,
)


@dataclass
class AdvisorRun:
    """State, attempt counter and transition log for one advisor."""

    advisor_id: str
    state: IterationState = IterationState.PENDING
    attempts: int = 0
    transitions: List[Tuple[str, str, str]] = field(default_factory=list)
    last_error: Optional[str] = None
    error_type: Optional[str] = None

    def transition(self, new_state: IterationState, reason: str = "") -> None:
        """Move to ``new_state``.

        Raises:
            RuntimeError: If the transition is not allowed from the current state.
        """
        if new_state not in _TRANSITIONS[self.state]:
            raise RuntimeError(f"Illegal transition {self.state.value} -> {new_state.value} for {self.advisor_id}")
        self.transitions.append((self.state.value, new_state.value, reason))
        if new_state == IterationState.RUNNING:
            self.attempts += 1
        self.state = new_state

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES


@dataclass
class PipelineResult:
    """Outcome of one pipeline run over one document."""

    document: StoryDocument
    applied: List[str] = field(default_factory=list)
    rejected: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    cancelled: bool = False
    runs: Dict[str, AdvisorRun] = field(default_factory=dict)
    summary: str = ""

    @property
    def success(self) -> bool:
        """True when no advisor failed and the run was not cancelled."""
        return not self.failed and not self.cancelled


@dataclass
class _AttemptOutcome:
    state: IterationState
    record: IterationResult
    structure: Optional[StoryStructure] = None


class Orchestrator:
    """Drives the per-advisor pipeline for one document.

    One instance per pipeline run: advisors are applied strictly in sequence and each
    sees the previous advisor's output.
    """

    def __init__(
        self,
        registry: AdvisorRegistry,
        runner: AdvisorRunner,
        judge: StoryJudge,
        rewriter: StoryRewriter,
        evaluator: Evaluator,
        context_builder: Optional[ContextBuilder] = None,
        applicator: Optional[PatchApplicator] = None,
        retry_bound: Optional[int] = None,
    ):
        """Initialize orchestrator.

        Args:
            registry: Advisor definitions.
            runner: Invokes advisors.
            judge: Scores candidate documents.
            rewriter: Repairs judge violations.
            evaluator: Gates each iteration.
            context_builder: Prompt context builder (defaults to one using registry names).
            applicator: Patch applicator.
            retry_bound: Additional attempts after the first (defaults to ``settings.retry_bound``).
        """
        self.registry = registry
        self.runner = runner
        self.judge = judge
        self.rewriter = rewriter
        self.evaluator = evaluator
        self.context_builder = context_builder or ContextBuilder(name_lookup=registry.name_of)
        self.applicator = applicator or PatchApplicator()
        self.retry_bound = settings.retry_bound if retry_bound is None else retry_bound
        if self.retry_bound < 0:
            raise ValueError("retry_bound must be >= 0")

    @property
    def max_attempts(self) -> int:
        return self.retry_bound + 1

    async def run(
        self,
        document: Union[StoryDocument, str],
        advisor_ids: Optional[Sequence[str]] = None,
        product_context: Optional[ProductContext] = None,
        system_context: Optional[SystemContext] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> PipelineResult:
        """Run advisors over the document in order.

        Args:
            document: Document, or raw story text to create one from.
            advisor_ids: Advisors in the order to run them (defaults to every advisor
                applicable to the product type, in workflow order).
            product_context: Product background.
            system_context: Read-only supporting facts.
            cancel_event: When set, the run stops before the next advisor starts.

        Returns:
            The final document and per-advisor outcomes.

        Raises:
            ValidationError: ``document`` is empty text.
            ConfigurationError: An advisor id is unknown.
        """
        if isinstance(document, str):
            document = create_document(document)

        product_type = product_context.product_type if product_context else None
        if advisor_ids is None:
            advisors = self.registry.applicable_for(product_type)
        else:
            advisors = self.registry.resolve(advisor_ids)

        result = PipelineResult(document=document)
        logger.info(
            "orchestrator.run.start",
            advisors=[advisor.id for advisor in advisors],
            product_type=product_type,
            retry_bound=self.retry_bound,
        )

        for advisor in advisors:
            if cancel_event is not None and cancel_event.is_set():
                result.cancelled = True
                logger.info("orchestrator.run.cancelled", before_advisor=advisor.id)
                break

            document, run = await self.run_advisor(document, advisor, product_context, system_context)
            if run.state == IterationState.SKIPPED:
                result.skipped.append(advisor.id)
                continue

            result.runs[advisor.id] = run
            if run.state == IterationState.APPLIED:
                result.applied.append(advisor.id)
            elif run.state == IterationState.REJECTED:
                result.rejected.append(advisor.id)
            else:
                result.failed.append(advisor.id)

        result.document = document
        result.summary = self.context_builder.conclusion_summary(document)
        logger.info(
            "orchestrator.run.complete",
            applied=result.applied,
            rejected=result.rejected,
            failed=result.failed,
            skipped=result.skipped,
            cancelled=result.cancelled,
            version=document.version,
        )
        return result

    async def run_advisor(
        self,
        document: StoryDocument,
        advisor: AdvisorDefinition,
        product_context: Optional[ProductContext] = None,
        system_context: Optional[SystemContext] = None,
    ) -> Tuple[StoryDocument, AdvisorRun]:
        """Drive one advisor to a terminal state.

        Returns:
            The next document version (unchanged content when rejected or failed) and the
            advisor's run record. An advisor already applied to ``document`` is SKIPPED
            and the same document is returned.
        """
        run = AdvisorRun(advisor_id=advisor.id)
        if document.is_applied(advisor.id):
            run.transition(IterationState.SKIPPED, "already_applied")
            logger.info("orchestrator.advisor.skipped", advisor_id=advisor.id, reason="already_applied")
            return document, run

        with tracer.start_as_current_span("advisor_iteration") as span:
            span.set_attribute("advisor.id", advisor.id)
            outcome: Optional[_AttemptOutcome] = None

            while not run.is_terminal:
                run.transition(IterationState.RUNNING, "retry" if run.attempts else "start")
                with tracer.start_as_current_span("advisor_attempt") as attempt_span:
                    attempt_span.set_attribute("advisor.id", advisor.id)
                    attempt_span.set_attribute("attempt", run.attempts)
                    try:
                        outcome = await self._attempt(document, advisor, run.attempts, product_context, system_context)
                        run.transition(outcome.state, outcome.record.patch_errors[0] if outcome.record.patch_errors else "")
                    except JudgeReject as e:
                        self._record_error(run, e)
                        run.transition(IterationState.FAILED, str(e))
                    except Exception as e:
                        self._record_error(run, e)
                        if run.attempts >= self.max_attempts:
                            run.transition(IterationState.FAILED, f"retry bound reached: {e}")
                        else:
                            run.transition(IterationState.RETRY_SCHEDULED, str(e))
                            logger.info(
                                "orchestrator.advisor.retry_scheduled",
                                advisor_id=advisor.id,
                                attempt=run.attempts,
                                error_type=run.error_type,
                                error=run.last_error,
                            )
                    attempt_span.set_attribute("state", run.state.value)

            span.set_attribute("attempts", run.attempts)
            span.set_attribute("state", run.state.value)

        if run.state == IterationState.FAILED:
            logger.warning(
                "orchestrator.advisor.failed",
                advisor_id=advisor.id,
                attempts=run.attempts,
                error_type=run.error_type,
                error=run.last_error,
            )
            failed = FailedIteration(
                advisor_id=advisor.id,
                reason=run.last_error or "unknown failure",
                error_type=run.error_type or "UnknownError",
                attempts=run.attempts,
            )
            return document.model_copy(update={"failed_iterations": [*document.failed_iterations, failed]}), run

        updates = {
            "applied_iteration_ids": [*document.applied_iteration_ids, advisor.id],
            "iteration_history": [*document.iteration_history, outcome.record],
        }
        if run.state == IterationState.APPLIED:
            logger.info(
                "orchestrator.advisor.applied",
                advisor_id=advisor.id,
                attempts=run.attempts,
                changes=len(outcome.record.changes_applied),
                rewrite_applied=outcome.record.rewrite_applied,
            )
            return next_version(document, outcome.structure, **updates), run

        logger.info(
            "orchestrator.advisor.rejected",
            advisor_id=advisor.id,
            attempts=run.attempts,
            patch_errors=outcome.record.patch_errors,
        )
        return document.model_copy(update=updates), run

    async def _attempt(
        self,
        document: StoryDocument,
        advisor: AdvisorDefinition,
        attempt: int,
        product_context: Optional[ProductContext],
        system_context: Optional[SystemContext],
    ) -> _AttemptOutcome:
        """One pass of run -> validate/apply -> judge -> (rewrite) -> evaluate.

        Raises:
            JudgeReject: Overall judge score below the floor.
            EvaluationFailed: The evaluator found blocking issues.
            OracleError, RewriteFailure: Retryable single-attempt failures.
        """
        logger.info("orchestrator.advisor.attempt", advisor_id=advisor.id, attempt=attempt, version=document.version)
        context = self.context_builder.build(document, product_context, system_context)
        batch = await self.runner.run(advisor, document, context)

        if not batch.applicable or not batch.patches:
            reason = batch.not_applicable_reason if not batch.applicable else "advisor proposed no patches"
            return _AttemptOutcome(
                state=IterationState.REJECTED,
                record=self._noop_record(document, advisor.id, attempt, [f"Not applied: {reason}"]),
            )

        outcome = self.applicator.apply_batch(structure_of(document), batch.patches, advisor.scope, advisor.id)
        if not outcome.ok:
            return _AttemptOutcome(
                state=IterationState.REJECTED,
                record=self._noop_record(document, advisor.id, attempt, [e.describe() for e in outcome.errors]),
            )

        structure = outcome.structure
        changes = list(outcome.changes)
        candidate = next_version(document, structure)

        judge_result = await self.judge.score(candidate, system_context)
        if judge_result.recommendation == "reject":
            raise JudgeReject(
                f"Judge overall score {judge_result.overall_score} is below the floor",
                overall_score=judge_result.overall_score,
            )

        rewrite_applied = False
        if judge_result.recommendation == "rewrite":
            rewrite = await self.rewriter.rewrite(candidate, judge_result.violations(), system_context)
            structure = rewrite.structure
            candidate = next_version(document, structure)
            rewrite_applied = True
            changes.append(
                ChangeApplied(
                    category="rewrite",
                    description=f"Rewrote {len(judge_result.violations())} judge violation(s)",
                    location=", ".join(rewrite.touched_locations) or None,
                )
            )

        removed = [p.match.id for p in outcome.applied if isinstance(p, RemovePatch)]
        removed += [
            p.match.id for p in outcome.applied if isinstance(p, ReplacePatch) and p.item.id != p.match.id
        ]
        evaluation = await self.evaluator.verify(
            document, candidate, advisor.id, advisor.description, expected_removals=removed
        )
        if not evaluation.passed:
            reasons = "; ".join(issue.description for issue in evaluation.blocking_issues)
            raise EvaluationFailed(f"Evaluation failed: {reasons}", evaluation=evaluation)

        record = IterationResult(
            advisor_id=advisor.id,
            input_content=document.current_content,
            output_content=candidate.current_content,
            changes_applied=changes,
            judge_result=judge_result,
            evaluation=evaluation,
            state="applied",
            attempts=attempt,
            rewrite_applied=rewrite_applied,
            patches=[patch.to_wire() for patch in outcome.applied],
        )
        return _AttemptOutcome(state=IterationState.APPLIED, record=record, structure=structure)

    @staticmethod
    def _noop_record(document: StoryDocument, advisor_id: str, attempt: int, notes: List[str]) -> IterationResult:
        return IterationResult(
            advisor_id=advisor_id,
            input_content=document.current_content,
            output_content=document.current_content,
            changes_applied=[],
            state="rejected",
            attempts=attempt,
            patch_errors=notes,
        )

    @staticmethod
    def _record_error(run: AdvisorRun, error: Exception) -> None:
        run.last_error = str(error)
        run.error_type = type(error).__name__
        if isinstance(error, RefineryError):
            logger.info(
                "orchestrator.advisor.attempt_failed",
                advisor_id=run.advisor_id,
                attempt=run.attempts,
                error_type=run.error_type,
                error=run.last_error,
            )
        else:
            logger.exception(
                "orchestrator.advisor.attempt_error",
                advisor_id=run.advisor_id,
                attempt=run.attempts,
                error_type=run.error_type,
            )
