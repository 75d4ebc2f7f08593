"""Dependency Injection container."""

import importlib
from typing import Optional

from refinery.adapters.llm.litellm_adapter import LiteLLMAdapter
from refinery.cognitive_engine.advisor_registry import AdvisorRegistry
from refinery.cognitive_engine.agents import AdvisorRunner, Evaluator, StoryJudge, StoryRewriter
from refinery.cognitive_engine.orchestrator import Orchestrator
from refinery.config import settings
from refinery.domain.errors import ConfigurationError
from refinery.domain.interfaces import ILLMProvider


def _load_adapter_class(adapter_path: str) -> type:
    """Load an adapter class from a module path.

    Args:
        adapter_path: Import path in the form "module.path:ClassName".

    Returns:
        Adapter class object.

    Raises:
        ConfigurationError: If the path is malformed or the class does not exist.
    """
    module_path, _, class_name = adapter_path.partition(":")
    if not module_path or not class_name:
        raise ConfigurationError(
            f"Invalid adapter path '{adapter_path}'. Expected 'module.path:ClassName'."
        )
    try:
        module = importlib.import_module(module_path)
    except ImportError as exc:
        raise ConfigurationError(f"Adapter module '{module_path}' cannot be imported: {exc}") from exc
    try:
        return getattr(module, class_name)
    except AttributeError as exc:
        raise ConfigurationError(
            f"Adapter class '{class_name}' not found in module '{module_path}'."
        ) from exc


class DIContainer:
    """Simple dependency injection container.

    The oracle provider and advisor registry are shared; every ``create_orchestrator``
    call builds a fresh orchestrator so document runs share no state.
    """

    def __init__(self, llm_provider: Optional[ILLMProvider] = None, registry: Optional[AdvisorRegistry] = None):
        """Initialize container, optionally with pre-built collaborators (used by tests)."""
        self._llm_provider = llm_provider
        self._advisor_registry = registry

    def get_llm_provider(self) -> ILLMProvider:
        """Get the oracle adapter configured by ``settings.llm_provider_path``."""
        if self._llm_provider is None:
            adapter_cls = _load_adapter_class(settings.llm_provider_path.strip())
            self._llm_provider = adapter_cls()
        return self._llm_provider

    def get_advisor_registry(self) -> AdvisorRegistry:
        """Get advisor registry (built-in advisors)."""
        if self._advisor_registry is None:
            self._advisor_registry = AdvisorRegistry()
        return self._advisor_registry

    def create_orchestrator(self, retry_bound: Optional[int] = None) -> Orchestrator:
        """Build a new orchestrator for one pipeline run.

        Args:
            retry_bound: Override for ``settings.retry_bound``.
        """
        return Orchestrator(
            registry=self.get_advisor_registry(),
            runner=AdvisorRunner(self._provider_for("advisor")),
            judge=StoryJudge(self._provider_for("judge")),
            rewriter=StoryRewriter(self._provider_for("rewriter")),
            evaluator=Evaluator(self._provider_for("evaluator")),
            retry_bound=retry_bound,
        )

    def _provider_for(self, agent_type: str) -> ILLMProvider:
        """Provider labelled for one agent; injected providers are shared unchanged."""
        llm_provider = self.get_llm_provider()
        if isinstance(llm_provider, LiteLLMAdapter):
            return llm_provider.with_context(agent_type)
        return llm_provider


# Global container instance
_container: Optional[DIContainer] = None


def get_container() -> DIContainer:
    """Get global DI container instance.

    Returns:
        DIContainer instance.
    """
    global _container
    if _container is None:
        _container = DIContainer()
    return _container
