"""Port interfaces using Python Protocol for structural subtyping."""

from typing import Dict, List, Optional, Protocol, Type, TypeVar

from pydantic import BaseModel

ModelT = TypeVar("ModelT", bound=BaseModel)


class ILLMProvider(Protocol):
    """Port for the reasoning oracle.

    Implementations raise ``OracleTransportError`` for network failures and timeouts and
    ``OracleResponseError`` when a structured answer cannot be parsed.
    """

    async def chat_completion(
        self,
        messages: List[Dict[str, str]],
        model: Optional[str] = None,
        temperature: Optional[float] = None,
    ) -> str:
        """Generate a free-text completion."""
        ...

    async def structured_completion(
        self,
        messages: List[Dict[str, str]],
        response_model: Type[ModelT],
        model: Optional[str] = None,
        temperature: Optional[float] = None,
    ) -> ModelT:
        """Generate a completion parsed into ``response_model``.

        Args:
            messages: List of message dicts with 'role' and 'content' keys.
            response_model: Pydantic model class for structured output.
            model: Model name (overrides default).
            temperature: Sampling temperature.

        Returns:
            Instance of response_model with parsed structured data.
        """
        ...
