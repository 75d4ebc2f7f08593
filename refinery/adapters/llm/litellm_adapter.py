"""LiteLLM adapter implementing ILLMProvider for the reasoning oracle."""

import asyncio
import time
from typing import Any, Dict, List, Optional, Type

from litellm import completion
from pydantic import BaseModel, ValidationError

from refinery.config import settings
from refinery.domain.errors import OracleResponseError, OracleTransportError
from refinery.domain.interfaces import ModelT
from refinery.utils.json_utils import extract_json
from refinery.utils.logger import get_logger

logger = get_logger(__name__)


class LiteLLMAdapter:
    """LiteLLM adapter for oracle calls.

    Every failure to obtain a response (connection errors, provider errors, timeouts) is
    surfaced as ``OracleTransportError`` so the orchestrator can count it against the
    advisor's retry bound. Unparseable structured answers raise ``OracleResponseError``.
    """

    def __init__(
        self,
        model: Optional[str] = None,
        agent_type: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
        max_attempts: Optional[int] = None,
        retry_delay: float = 1.0,
    ):
        """Initialize adapter with model configuration.

        Args:
            model: Model name (defaults to ``settings.litellm_model``).
            agent_type: Caller label used in log events (e.g. 'judge', 'advisor').
            timeout_seconds: Per-call timeout (defaults to ``settings.llm_timeout_seconds``).
            max_attempts: Calls per request before giving up (defaults to
                ``settings.llm_max_attempts``).
            retry_delay: Base delay for exponential backoff between attempts.
        """
        self.model = model or settings.litellm_model
        self.agent_type = agent_type
        self.timeout_seconds = settings.llm_timeout_seconds if timeout_seconds is None else timeout_seconds
        self.max_attempts = settings.llm_max_attempts if max_attempts is None else max_attempts
        self.retry_delay = retry_delay
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")

    def with_context(self, agent_type: Optional[str] = None) -> "LiteLLMAdapter":
        """Create a new adapter instance labelled for another caller."""
        return LiteLLMAdapter(
            model=self.model,
            agent_type=agent_type or self.agent_type,
            timeout_seconds=self.timeout_seconds,
            max_attempts=self.max_attempts,
            retry_delay=self.retry_delay,
        )

    async def _complete(self, completion_kwargs: Dict[str, Any]) -> str:
        """Run one blocking completion in the executor, bounded by the timeout."""
        last_error: Optional[BaseException] = None

        for attempt in range(self.max_attempts):
            start_time = time.time()
            try:
                loop = asyncio.get_running_loop()
                response = await asyncio.wait_for(
                    loop.run_in_executor(None, lambda: completion(**completion_kwargs)),
                    timeout=self.timeout_seconds,
                )
                latency_ms = (time.time() - start_time) * 1000

                usage = getattr(response, "usage", None)
                logger.debug(
                    "llm.completion.complete",
                    model=completion_kwargs["model"],
                    agent_type=self.agent_type,
                    latency_ms=round(latency_ms, 1),
                    input_tokens=getattr(usage, "prompt_tokens", 0) if usage else 0,
                    output_tokens=getattr(usage, "completion_tokens", 0) if usage else 0,
                )

                if hasattr(response, "choices") and len(response.choices) > 0:
                    return response.choices[0].message.content or ""
                return ""

            except asyncio.TimeoutError as e:
                last_error = e
                logger.warning(
                    "llm.completion.timeout",
                    model=completion_kwargs["model"],
                    agent_type=self.agent_type,
                    timeout_seconds=self.timeout_seconds,
                    attempt=attempt + 1,
                )
            except Exception as e:
                last_error = e
                logger.warning(
                    "llm.completion.error",
                    model=completion_kwargs["model"],
                    agent_type=self.agent_type,
                    error=str(e),
                    attempt=attempt + 1,
                )

            if attempt < self.max_attempts - 1:
                await asyncio.sleep(self.retry_delay * (2 ** attempt))

        if isinstance(last_error, asyncio.TimeoutError):
            raise OracleTransportError(
                f"Oracle call timed out after {self.timeout_seconds}s"
            ) from last_error
        raise OracleTransportError(f"Oracle call failed: {last_error}") from last_error

    def _base_kwargs(
        self,
        messages: List[Dict[str, str]],
        model: Optional[str],
        temperature: Optional[float],
    ) -> Dict[str, Any]:
        model_name = model or self.model
        kwargs: Dict[str, Any] = {
            "model": model_name,
            "messages": messages,
            "temperature": settings.llm_temperature if temperature is None else temperature,
            "timeout": self.timeout_seconds,
        }
        # Most providers read keys and endpoints from env vars; Ollama needs a base URL.
        if model_name.startswith("ollama/"):
            kwargs["api_base"] = settings.ollama_base_url
        return kwargs

    async def chat_completion(
        self,
        messages: List[Dict[str, str]],
        model: Optional[str] = None,
        temperature: Optional[float] = None,
    ) -> str:
        """Generate a chat completion.

        Raises:
            OracleTransportError: If the call fails or times out on every attempt.
        """
        return await self._complete(self._base_kwargs(messages, model, temperature))

    async def structured_completion(
        self,
        messages: List[Dict[str, str]],
        response_model: Type[ModelT],
        model: Optional[str] = None,
        temperature: Optional[float] = None,
    ) -> ModelT:
        """Generate a completion parsed into ``response_model``.

        Raises:
            OracleTransportError: If the call fails or times out.
            OracleResponseError: If no JSON object matching the model can be extracted.
        """
        kwargs = self._base_kwargs(self._with_format_instruction(messages, response_model), model, temperature)
        model_name = kwargs["model"].lower()
        if model_name.startswith("ollama/"):
            kwargs["format"] = "json"
        elif "gpt-4" in model_name or "gpt-3.5" in model_name or model_name.startswith("o1"):
            kwargs["response_format"] = {"type": "json_object"}

        content = await self._complete(kwargs)
        if not content.strip():
            raise OracleResponseError(f"Empty response for {response_model.__name__}")

        parsed = extract_json(content)
        # Some models wrap the object in a single-element array.
        if isinstance(parsed, list) and parsed and isinstance(parsed[0], dict):
            parsed = parsed[0]
        if not isinstance(parsed, dict):
            raise OracleResponseError(
                f"No JSON object in response for {response_model.__name__}: {content[:200]}"
            )
        if "properties" in parsed and parsed.get("type") == "object":
            raise OracleResponseError("Oracle returned a JSON schema instead of data")

        try:
            return response_model.model_validate(parsed)
        except ValidationError as e:
            logger.warning(
                "llm.structured_completion.invalid",
                response_model=response_model.__name__,
                agent_type=self.agent_type,
                error=str(e)[:500],
            )
            raise OracleResponseError(
                f"Response does not match {response_model.__name__}: {e}"
            ) from e

    @staticmethod
    def _with_format_instruction(
        messages: List[Dict[str, str]],
        response_model: Type[BaseModel],
    ) -> List[Dict[str, str]]:
        """Append a JSON output reminder naming the model's fields to the last user message."""
        properties = response_model.model_json_schema(by_alias=True).get("properties", {})
        field_list = ", ".join(f'"{name}"' for name in properties)
        reminder = (
            f"\n\nRespond with a single JSON object containing these fields: {field_list}. "
            "Return actual data values, not a schema definition."
        )
        enhanced = [dict(message) for message in messages]
        if enhanced and enhanced[-1].get("role") == "user":
            enhanced[-1]["content"] += reminder
        else:
            enhanced.append({"role": "user", "content": reminder.strip()})
        return enhanced
