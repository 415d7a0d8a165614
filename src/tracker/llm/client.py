"""LiteLLM client wrapper with retry, timeout, JSON mode and API key validation.

Every generative call (extraction, scoring, questions, progress analysis,
summaries, assistant tool loop) goes through an ``LLMClient`` instance that is
passed in explicitly. LiteLLM's built-in retry handles transient errors;
anything that still fails surfaces as ``BackendError``.
"""

from __future__ import annotations

import json
import os
from typing import Any

import litellm

from tracker.errors import BackendError
from tracker.log import get_logger

# Disable LiteLLM verbose logging unless explicitly enabled
litellm.suppress_debug_info = True
litellm.set_verbose = False  # type: ignore[assignment]

logger = get_logger(__name__)


# ------------------------------------------------------------------
# Provider → env var mapping for API key validation
# ------------------------------------------------------------------

_PROVIDER_ENV: dict[str, str | None] = {
    "openai": "OPENAI_API_KEY",
    "anthropic": "ANTHROPIC_API_KEY",
    "azure": "AZURE_API_KEY",
    "cohere": "COHERE_API_KEY",
    "google": "GOOGLE_API_KEY",
    "mistral": "MISTRAL_API_KEY",
    "groq": "GROQ_API_KEY",
    "together_ai": "TOGETHERAI_API_KEY",
    "ollama": None,  # Local, no key required
    "ollama_chat": None,
}


def validate_api_key(model: str) -> None:
    """Check that the required API key env var is set for *model*.

    Args:
        model: LiteLLM model string in 'provider/model' format.

    Raises:
        EnvironmentError: If the required key is missing from environment.
    """
    provider = model.split("/")[0].lower() if "/" in model else "openai"
    env_var = _PROVIDER_ENV.get(provider)

    if env_var is None:
        return  # No key required (e.g. ollama)

    if not os.getenv(env_var):
        raise EnvironmentError(
            f"API key not found for provider '{provider}'. "
            f"Set the {env_var} environment variable."
        )


class LLMClient:
    """Thin stateful wrapper around ``litellm.completion``.

    Args:
        model: LiteLLM model string (provider/model format).
        timeout: Per-call timeout in seconds.
        num_retries: Retries on transient errors (exponential backoff).
        temperature: Sampling temperature.
    """

    def __init__(
        self,
        model: str,
        timeout: float = 60.0,
        num_retries: int = 3,
        temperature: float = 0.3,
    ) -> None:
        self.model = model
        self.timeout = timeout
        self.num_retries = num_retries
        self.temperature = temperature

    def _call(self, messages: list[dict], **kwargs: Any) -> Any:
        try:
            response = litellm.completion(
                model=self.model,
                messages=messages,
                temperature=self.temperature,
                timeout=self.timeout,
                num_retries=self.num_retries,
                **kwargs,
            )
        except Exception as exc:  # litellm raises provider-specific types
            logger.error("Completion call to %s failed: %s", self.model, exc)
            raise BackendError(f"Generative backend call failed: {exc}") from exc
        try:
            return response.choices[0].message
        except (AttributeError, IndexError) as exc:
            raise BackendError("Generative backend returned no choices") from exc

    def complete(
        self,
        messages: list[dict],
        *,
        json_mode: bool = False,
        max_tokens: int = 2048,
    ) -> str:
        """Call the model and return the text of the first choice.

        Args:
            messages: OpenAI-style message list.
            json_mode: Request ``{"type": "json_object"}`` output.
            max_tokens: Maximum output tokens.

        Raises:
            BackendError: On persistent API failure after retries.
        """
        kwargs: dict[str, Any] = {"max_tokens": max_tokens}
        if json_mode:
            kwargs["response_format"] = {"type": "json_object"}
        message = self._call(messages, **kwargs)
        return message.content or ""

    def complete_json(self, messages: list[dict], *, max_tokens: int = 2048) -> dict:
        """JSON-mode completion parsed into a dict.

        Raises:
            BackendError: On call failure or when no JSON object can be parsed.
        """
        raw = self.complete(messages, json_mode=True, max_tokens=max_tokens)
        return parse_json_object(raw)

    def chat(self, messages: list[dict], tools: list[dict]) -> Any:
        """Call the model with tool definitions and return the raw message.

        The returned object exposes ``content`` and ``tool_calls`` (LiteLLM's
        OpenAI-compatible message type).
        """
        return self._call(messages, tools=tools, tool_choice="auto")


def parse_json_object(raw: str) -> dict:
    """Parse the first JSON object in *raw*, tolerating surrounding prose or fences.

    Raises:
        BackendError: If no JSON object can be decoded.
    """
    try:
        start = raw.index("{")
        end = raw.rindex("}") + 1
        data = json.loads(raw[start:end])
    except (ValueError, json.JSONDecodeError, TypeError) as exc:
        raise BackendError(f"Backend response is not a JSON object: {raw[:200]!r}") from exc
    if not isinstance(data, dict):
        raise BackendError("Backend response is not a JSON object")
    return data
