"""Shared pytest fixtures and configuration."""

import itertools
import re
import sys
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest

# Add the repository root to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from refinery.cognitive_engine.advisor_registry import AdvisorRegistry
from refinery.cognitive_engine.agents.evaluator_agent import EvaluatorVerdict
from refinery.cognitive_engine.agents.judge_agent import JudgeRubric
from refinery.cognitive_engine.story_state import create_document
from refinery.domain.schema import (
    ContractEntry,
    PatchBatch,
    ProductContext,
    StoryDocument,
    SystemComponent,
    SystemContext,
    is_story_line_path,
)

SAMPLE_STORY = """# Password reset

As a registered shopper
I want to reset my password from the sign-in page
So that I can regain access to my account

## User-Visible Behavior

- [UVB-001] A "Forgot password?" link is shown below the password field

## Acceptance Criteria (Outcome)

- [AC-OUT-001] Shopper receives a reset email after submitting a registered address
- [AC-OUT-002] Reset link expires after 30 minutes

## Acceptance Criteria (System)

- [AC-SYS-001] Reset tokens are single-use

## Implementation Notes

### Security

- [IMPL-SEC-001] Tokens are stored hashed"""

_ADVISOR_ID = re.compile(r'Your advisor id is "([^"]+)"')
_ALLOWED_PATH = re.compile(r"^- (\S+) \(ids start with (\S+)\)$", re.MULTILINE)


def _user_text(messages: List[Dict[str, str]]) -> str:
    return "\n".join(m["content"] for m in messages if m.get("role") == "user")


def advisor_id_in(messages: List[Dict[str, str]]) -> Optional[str]:
    """Advisor id named in an advisor prompt, or None for judge/evaluator prompts."""
    match = _ADVISOR_ID.search(_user_text(messages))
    return match.group(1) if match else None


def allowed_paths_in(messages: List[Dict[str, str]]) -> List[tuple]:
    """(path, prefix) pairs listed under ALLOWED PATHS in an advisor prompt."""
    return _ALLOWED_PATH.findall(_user_text(messages))


def build_patch(
    op: str,
    path: str,
    advisor_id: str,
    item_id: Optional[str] = None,
    text: Optional[str] = None,
    match_id: Optional[str] = None,
    reasoning: Optional[str] = None,
) -> Dict[str, Any]:
    """Build a wire-shaped patch dict."""
    patch: Dict[str, Any] = {"op": op, "path": path, "metadata": {"advisorId": advisor_id}}
    if reasoning is not None:
        patch["metadata"]["reasoning"] = reasoning
    if match_id is not None:
        patch["match"] = {"id": match_id}
    if item_id is not None:
        patch["item"] = {"id": item_id, "text": text or f"Text for {item_id}"}
    return patch


def build_rubric(
    scores: Optional[Dict[str, int]] = None,
    violations: Optional[Dict[str, List[Any]]] = None,
    **extra: Any,
) -> JudgeRubric:
    """Build a raw judge rubric; dimensions default to 5 with no violations."""
    scores = scores or {}
    violations = violations or {}
    payload: Dict[str, Any] = {}
    for name, alias in (
        ("section_separation", "sectionSeparation"),
        ("correctness", "correctness"),
        ("testability", "testability"),
        ("completeness", "completeness"),
    ):
        payload[alias] = {
            "score": scores.get(name, 5),
            "reasoning": f"{name} reviewed",
            "violations": violations.get(name, []),
        }
    payload.update(extra)
    return JudgeRubric.model_validate(payload)


def _resolve(value: Any, messages: List[Dict[str, str]]) -> Any:
    if isinstance(value, list):
        value = value.pop(0) if len(value) > 1 else value[0]
    if callable(value) and not isinstance(value, type):
        value = value(messages)
    if isinstance(value, BaseException):
        raise value
    return value


@pytest.fixture
def sample_story_text() -> str:
    """Canonical story markdown."""
    return SAMPLE_STORY


@pytest.fixture
def sample_document() -> StoryDocument:
    """Version 0 document built from the canonical story."""
    return create_document(SAMPLE_STORY)


@pytest.fixture
def sample_product_context() -> ProductContext:
    """Web shop product context."""
    return ProductContext(
        product_name="Acme Shop",
        product_type="web",
        target_audience="Online shoppers",
        business_context="Reduce support tickets for locked-out accounts",
    )


@pytest.fixture
def sample_system_context() -> SystemContext:
    """Supporting facts for the password reset story."""
    return SystemContext(
        components=[
            SystemComponent(id="COMP-LOGIN-FORM", product_name="Sign-in form"),
            SystemComponent(id="COMP-RESET-MAIL", product_name="Reset email"),
        ],
        state_models=[ContractEntry(id="STATE-RESET-TOKEN", name="Reset token")],
        events=[ContractEntry(id="EVT-RESET-REQUESTED", name="Reset requested")],
        product_vocabulary={"credential": "password"},
    )


@pytest.fixture
def registry() -> AdvisorRegistry:
    """Registry with the built-in advisors."""
    return AdvisorRegistry()


@pytest.fixture
def make_patch() -> Callable[..., Dict[str, Any]]:
    """Factory for wire-shaped patches."""
    return build_patch


@pytest.fixture
def make_rubric() -> Callable[..., JudgeRubric]:
    """Factory for raw judge rubrics."""
    return build_rubric


@pytest.fixture
def advisor_of() -> Callable[[List[Dict[str, str]]], Optional[str]]:
    """Extracts the invoking advisor id from advisor prompt messages."""
    return advisor_id_in


@pytest.fixture
def mock_llm_provider() -> MagicMock:
    """Create a mock oracle.

    ``structured_completion`` dispatches on the response model name through
    ``provider.responses``. A response may be a value, an exception (raised), a callable
    taking the messages, or a list consumed one entry per call (the last entry repeats).

    By default every advisor adds one new item to the first collection in its scope,
    the judge approves, and the evaluator passes.
    """
    provider = MagicMock()
    counter = itertools.count(901)

    def default_batch(messages: List[Dict[str, str]]) -> PatchBatch:
        advisor_id = advisor_id_in(messages)
        for path, prefix in allowed_paths_in(messages):
            if not is_story_line_path(path):
                item_id = f"{prefix}{next(counter)}"
                return PatchBatch(
                    patches=[build_patch("add", path, advisor_id, item_id, f"{advisor_id} detail {item_id}")]
                )
        return PatchBatch.abstain("nothing to add")

    provider.responses = {
        "PatchBatch": default_batch,
        "JudgeRubric": lambda messages: build_rubric(),
        "EvaluatorVerdict": lambda messages: EvaluatorVerdict(
            passed=True, score=0.9, reasoning="Adds a testable detail", issues=[]
        ),
    }

    async def mock_structured_completion(messages, response_model, model=None, temperature=None):
        """Mock structured completion that returns the scripted response for the model."""
        model_name = response_model.__name__
        if model_name not in provider.responses:
            raise AssertionError(f"Unexpected response model {model_name}")
        return _resolve(provider.responses[model_name], messages)

    provider.structured_completion = AsyncMock(side_effect=mock_structured_completion)
    provider.chat_completion = AsyncMock(return_value=SAMPLE_STORY)
    return provider
