"""Prompt context assembly for advisors, judge, and rewriter.

Every call builds a fresh, immutable ``AdvisorContext``; nothing here holds state between
calls or touches the document.
"""

from typing import Callable, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict

from refinery.config import settings
from refinery.domain.schema import ProductContext, StoryDocument, SystemContext

NameLookup = Callable[[str], str]


def format_system_context(system_context: Optional[SystemContext]) -> str:
    """Render supporting facts as a compact digest, one fact family per line."""
    if system_context is None or system_context.is_empty():
        return "(no system context)"

    parts: List[str] = []
    if system_context.components:
        parts.append(
            "Components: "
            + ", ".join(f"{c.id} ({c.product_name})" for c in system_context.components)
        )
    if system_context.state_models:
        parts.append("State models: " + ", ".join(s.id for s in system_context.state_models))
    if system_context.events:
        parts.append("Events: " + ", ".join(e.id for e in system_context.events))
    if system_context.data_flows:
        parts.append("Data flows: " + ", ".join(d.id for d in system_context.data_flows))
    if system_context.product_vocabulary:
        parts.append(
            "Vocabulary: "
            + ", ".join(f"{term}→{product}" for term, product in system_context.product_vocabulary.items())
        )
    if system_context.reference_documents:
        parts.append(f"Reference documents: {len(system_context.reference_documents)} item(s)")
    return "\n".join(parts)


class AdvisorContext(BaseModel):
    """Immutable prompt context passed by value to one oracle call."""

    model_config = ConfigDict(frozen=True)

    product_text: str = ""
    story_focus: str = ""
    applied_enhancements: Tuple[str, ...] = ()
    carrying_statement: str = ""
    system_digest: str = "(no system context)"
    product_type: Optional[str] = None

    def to_prompt(self) -> str:
        """Render the context preamble placed before the story excerpt."""
        parts: List[str] = []
        if self.product_text:
            parts.extend([self.product_text, ""])
        if self.story_focus:
            parts.extend([f"**Story Focus:** {self.story_focus}", ""])
        if self.applied_enhancements:
            parts.append("**Applied Enhancements:**")
            parts.extend(self.applied_enhancements)
            parts.append("")
        if self.carrying_statement:
            parts.extend([self.carrying_statement, ""])
        parts.extend(["## System context", self.system_digest])
        return "\n".join(parts)


class ContextBuilder:
    """Builds ``AdvisorContext`` values from a document snapshot and supporting facts."""

    def __init__(self, name_lookup: Optional[NameLookup] = None, max_detailed_iterations: Optional[int] = None):
        """Initialize builder.

        Args:
            name_lookup: Maps advisor ids to display names (defaults to the id itself).
            max_detailed_iterations: How many recent advisors are listed individually.
        """
        self._name_of = name_lookup or (lambda advisor_id: advisor_id)
        self.max_detailed_iterations = (
            settings.max_detailed_iterations if max_detailed_iterations is None else max_detailed_iterations
        )

    def build(
        self,
        document: StoryDocument,
        product_context: Optional[ProductContext] = None,
        system_context: Optional[SystemContext] = None,
    ) -> AdvisorContext:
        applied = self._applied_ids(document)
        title = document.structured_view.title if document.structured_view else ""

        product_text = ""
        if product_context is not None:
            product_text = "\n".join(
                [
                    f"We are working on a user story for {product_context.product_name} "
                    f"in a {product_context.product_type} application.",
                    f"Target audience: {product_context.target_audience or 'unspecified'}.",
                    f"Business context: {product_context.business_context or 'unspecified'}",
                ]
            )
            if product_context.specific_requirements:
                product_text += f"\nSpecific requirements: {product_context.specific_requirements}"
            if product_context.i18n_requirements:
                product_text += f"\nInternationalization: {product_context.i18n_requirements}"

        shown = applied[max(len(applied) - self.max_detailed_iterations, 0):]
        enhancements = [f"- **{self._name_of(advisor_id)}**" for advisor_id in shown]
        if len(applied) > len(shown):
            enhancements.append(f"- ... and {len(applied) - len(shown)} more iteration(s)")

        return AdvisorContext(
            product_text=product_text,
            story_focus=title,
            applied_enhancements=tuple(enhancements),
            carrying_statement=self._carrying_statement(applied, title),
            system_digest=format_system_context(system_context),
            product_type=product_context.product_type if product_context else None,
        )

    def conclusion_summary(self, document: StoryDocument) -> str:
        """Summarize applied and failed advisors, or return "" when there are neither."""
        parts: List[str] = []
        applied = self._applied_ids(document)
        if applied:
            names = ", ".join(self._name_of(advisor_id) for advisor_id in applied)
            parts.append(f"Applied {len(applied)} {self._plural(len(applied))} ({names})")
        failed = document.failed_advisor_ids()
        if failed:
            names = ", ".join(self._name_of(advisor_id) for advisor_id in failed)
            parts.append(f"Skipped {len(failed)} failed {self._plural(len(failed))} ({names})")
        if not parts:
            return ""
        return "Summary: " + ". ".join(parts)

    def _carrying_statement(self, applied: List[str], title: str) -> str:
        if not applied:
            return ""
        names = ", ".join(self._name_of(advisor_id) for advisor_id in applied)
        return (
            f"As a reminder, our user story about {title or 'this user story'} has been enhanced "
            f"with {names}. We have applied {len(applied)} {self._plural(len(applied))} so far."
        )

    @staticmethod
    def _applied_ids(document: StoryDocument) -> List[str]:
        """Advisors whose iteration actually changed the document (rejected no-ops excluded)."""
        return [record.advisor_id for record in document.iteration_history if record.state == "applied"]

    @staticmethod
    def _plural(count: int) -> str:
        return "iteration" if count == 1 else "iterations"
