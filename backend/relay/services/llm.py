import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Protocol

import httpx
from openai import AsyncOpenAI, OpenAIError

from relay.config import Settings
from relay.errors import GenerationError

logger = logging.getLogger(__name__)


class TokenSource(Protocol):
    name: str

    def stream(
        self, messages: list[dict[str, str]], grammar: dict | None = None,
    ) -> AsyncIterator[str]:
        """lazily yield text fragments; raises GenerationError on backend failure"""
        ...

    async def close(self) -> None: ...


class OpenAITokenSource:
    """streams chat completions from an OpenAI-compatible API"""

    name = "openai"

    def __init__(
        self,
        client: AsyncOpenAI,
        model: str,
        temperature: float = 0.7,
        max_tokens: int = 1024,
    ):
        self.client = client
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens

    async def stream(
        self, messages: list[dict[str, str]], grammar: dict | None = None,
    ) -> AsyncIterator[str]:
        kwargs: dict = {
            "model": self.model,
            "messages": messages,
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
            "stream": True,
        }
        if grammar is not None:
            kwargs["response_format"] = {
                "type": "json_schema",
                "json_schema": {"name": "generated_action", "schema": grammar, "strict": True},
            }

        try:
            response = await self.client.chat.completions.create(**kwargs)
            # the response is closed even when the consumer stops reading early
            async with response:
                async for chunk in response:
                    if not chunk.choices:
                        continue
                    token = chunk.choices[0].delta.content
                    if token:
                        yield token
        except (OpenAIError, httpx.HTTPError) as e:
            raise GenerationError(f"openai stream failed: {e}") from e

    async def close(self) -> None:
        await self.client.close()


class SharedBackend:
    """one token source shared by every session.

    a session checks out a slot for exactly one generation and releases it
    afterwards; `slots` bounds how many generations run at once.
    """

    def __init__(self, source: TokenSource, slots: int = 1):
        if slots < 1:
            raise ValueError("backend needs at least one slot")
        self.source = source
        self.slots = slots
        self._semaphore = asyncio.Semaphore(slots)

    @property
    def name(self) -> str:
        return self.source.name

    @asynccontextmanager
    async def checkout(self) -> AsyncIterator[TokenSource]:
        async with self._semaphore:
            yield self.source

    async def close(self) -> None:
        await self.source.close()


def build_token_source(settings: Settings) -> TokenSource:
    if settings.llm_backend == "openai":
        if not settings.openai_api_key:
            raise RuntimeError("OPENAI_API_KEY is not set")
        client = AsyncOpenAI(
            api_key=settings.openai_api_key,
            base_url=settings.openai_base_url,
            timeout=settings.llm_timeout,
        )
        return OpenAITokenSource(
            client,
            model=settings.llm_model,
            temperature=settings.temperature,
            max_tokens=settings.max_tokens,
        )
    if settings.llm_backend == "llamacpp":
        from relay.services.llamacpp import LlamaCppTokenSource
        return LlamaCppTokenSource(
            settings.llamacpp_url,
            temperature=settings.temperature,
            max_tokens=settings.max_tokens,
            timeout=settings.llm_timeout,
        )
    raise ValueError(f"unknown llm backend: {settings.llm_backend}")
