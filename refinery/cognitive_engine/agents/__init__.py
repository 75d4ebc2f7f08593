"""Oracle-backed agents of the refinement pipeline."""

from refinery.cognitive_engine.agents.advisor_runner import AdvisorRunner
from refinery.cognitive_engine.agents.evaluator_agent import Evaluator
from refinery.cognitive_engine.agents.judge_agent import StoryJudge
from refinery.cognitive_engine.agents.rewriter_agent import RewriteOutcome, StoryRewriter

__all__ = [
    "AdvisorRunner",
    "Evaluator",
    "RewriteOutcome",
    "StoryJudge",
    "StoryRewriter",
]
