"""Reasoning-function clients used for fact extraction.

The extractor depends only on the LLMClient Protocol, so any provider can
be plugged in. GroqLLMClient is the default implementation.
"""

import os
from typing import Any, Protocol

from groq import AsyncGroq

DEFAULT_LLM_MODEL = "llama-3.3-70b-versatile"


class LLMClient(Protocol):
    """Protocol for LLM access from the memory system."""

    async def complete(self, prompt: str, system: str | None = None) -> str:
        """Complete a prompt and return the text response."""
        ...


class GroqLLMClient:
    """LLMClient implementation that wraps AsyncGroq.

    Example:
        from groq import AsyncGroq
        from recollect.llm_client import GroqLLMClient

        groq = AsyncGroq(api_key="...")
        llm = GroqLLMClient(groq, model="llama-3.3-70b-versatile")
        text = await llm.complete("Extract facts from ...")
    """

    def __init__(
        self,
        client: AsyncGroq | None = None,
        model: str = DEFAULT_LLM_MODEL,
        temperature: float | None = 0.1,
    ) -> None:
        """Initialize the Groq LLM client wrapper.

        Args:
            client: The AsyncGroq client instance to wrap. Built from
                GROQ_API_KEY if None.
            model: The model to use for completions.
            temperature: Sampling temperature; low for consistent extraction.
                None leaves the provider default.
        """
        self._client = client or AsyncGroq(api_key=os.getenv("GROQ_API_KEY"))
        self._model = model
        self._temperature = temperature

    async def complete(self, prompt: str, system: str | None = None) -> str:
        """Complete a prompt and return the text response.

        Args:
            prompt: The user prompt to complete.
            system: Optional system prompt to set context.

        Returns:
            The LLM's text response.
        """
        messages: list[dict[str, Any]] = []

        if system:
            messages.append({"role": "system", "content": system})

        messages.append({"role": "user", "content": prompt})

        kwargs: dict[str, Any] = {"model": self._model, "messages": messages}
        if self._temperature is not None:
            kwargs["temperature"] = self._temperature

        response = await self._client.chat.completions.create(**kwargs)

        return response.choices[0].message.content or ""

    @property
    def model(self) -> str:
        """Return the model being used."""
        return self._model
