"""Advisor Runner - invokes one scoped advisor and collects its patch batch."""

from typing import Optional

from refinery.cognitive_engine.advisor_registry import AdvisorDefinition
from refinery.cognitive_engine.context_builder import AdvisorContext
from refinery.cognitive_engine.story_renderer import StoryRenderer
from refinery.cognitive_engine.story_state import structure_of
from refinery.domain.interfaces import ILLMProvider
from refinery.domain.schema import PATH_ID_PREFIXES, PatchBatch, StoryDocument
from refinery.utils.logger import get_logger

logger = get_logger(__name__)


class AdvisorRunner:
    """Runs advisors against the sections they are allowed to see."""

    DEFAULT_SYSTEM_PROMPT = """You are a story advisor. You review ONE aspect of a user story and propose small, scoped patches.

CRITICAL: You MUST respond with a JSON object starting with { and ending with }.

Rules:
1. Only patch the paths listed under ALLOWED PATHS. Patches to any other path are rejected.
2. Each patch is one of:
   - {"op": "add", "path": ..., "item": {"id": ..., "text": ...}, "metadata": {"advisorId": ..., "reasoning": ...}}
   - {"op": "replace", "path": ..., "match": {"id": ...}, "item": {"id": ..., "text": ...}, "metadata": {...}}
   - {"op": "remove", "path": ..., "match": {"id": ...}, "metadata": {...}}
3. "add" must not carry "match"; "remove" must not carry "item".
4. Every item.id starts with the prefix listed for its path and uses only letters, digits, '-' and '_'.
   New ids must not collide with ids already shown in the story.
5. item.text is at most 500 characters; metadata.reasoning is at most 240 characters.
6. metadata.advisorId is exactly your advisor id.
7. If your topic does not apply to this story, return {"applicable": false, "notApplicableReason": "...", "patches": []}.
   Never invent content the story and context do not support.

Return: {"applicable": true, "patches": [ ... ]}"""

    def __init__(self, llm_provider: ILLMProvider, renderer: Optional[StoryRenderer] = None):
        """Initialize runner with LLM provider.

        Args:
            llm_provider: Oracle used to generate patches.
            renderer: Renderer used for the scoped story excerpt.
        """
        self.llm_provider = llm_provider
        self.renderer = renderer or StoryRenderer()

    async def run(
        self,
        advisor: AdvisorDefinition,
        document: StoryDocument,
        context: AdvisorContext,
    ) -> PatchBatch:
        """Invoke one advisor and return its (untrusted) patch batch.

        Args:
            advisor: Advisor definition (id, topic prompt, scope).
            document: Current document snapshot.
            context: Prompt context for this call.

        Returns:
            The advisor's batch. Empty and marked not applicable when the advisor
            abstains, whether by product type or by its own judgment.

        Raises:
            OracleTransportError: The oracle could not be reached.
            OracleResponseError: The oracle answer is not a patch batch.
        """
        if not advisor.is_applicable(context.product_type):
            logger.info(
                "advisor_runner.not_applicable",
                advisor_id=advisor.id,
                product_type=context.product_type,
            )
            return PatchBatch.abstain(
                f"{advisor.name} does not apply to {context.product_type} products"
            )

        excerpt = self.renderer.to_excerpt(structure_of(document), advisor.scope)
        allowed = "\n".join(f"- {path} (ids start with {PATH_ID_PREFIXES[path]})" for path in advisor.scope)

        messages = [
            {
                "role": "system",
                "content": f"{self.DEFAULT_SYSTEM_PROMPT}\n\n# YOUR TOPIC: {advisor.name}\n{advisor.prompt}",
            },
            {
                "role": "user",
                "content": f"""{context.to_prompt()}

## ALLOWED PATHS
{allowed}

## Story sections in scope
{excerpt}

Your advisor id is "{advisor.id}". Propose patches for: {advisor.description}.""",
            },
        ]

        logger.info("advisor_runner.run.start", advisor_id=advisor.id, version=document.version)
        batch = await self.llm_provider.structured_completion(
            messages=messages,
            response_model=PatchBatch,
        )

        if not batch.applicable:
            logger.info(
                "advisor_runner.abstained",
                advisor_id=advisor.id,
                reason=batch.not_applicable_reason,
                discarded_patches=len(batch.patches),
            )
            return PatchBatch.abstain(batch.not_applicable_reason or "Advisor reported not applicable")

        logger.info("advisor_runner.run.complete", advisor_id=advisor.id, patches=len(batch.patches))
        return batch
