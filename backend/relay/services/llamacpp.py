"""Token source for a local llama.cpp server.

Talks to llama-server's OpenAI-compatible /v1/chat/completions endpoint:
- free text is streamed over SSE ("data: {...}" lines, "data: [DONE]")
- grammar-constrained requests use response_format json_object + schema,
  which llama-server does not stream, so the whole reply arrives as one fragment
"""

import json
import logging
from typing import Any, AsyncIterator

import httpx

from relay.errors import GenerationError

logger = logging.getLogger(__name__)


class LlamaCppTokenSource:
    name = "llamacpp"

    def __init__(
        self,
        endpoint: str,
        temperature: float = 0.7,
        max_tokens: int = 1024,
        timeout: float = 60.0,
        client: httpx.AsyncClient | None = None,
    ):
        if not endpoint:
            raise ValueError("llama.cpp endpoint is required")
        self.endpoint = endpoint.rstrip("/")
        self.temperature = temperature
        self.max_tokens = max_tokens
        # read timeout is the longest allowed gap between two tokens
        self.timeout = httpx.Timeout(connect=10.0, read=timeout, write=30.0, pool=10.0)
        self.client = client or httpx.AsyncClient(timeout=self.timeout)

    def _payload(self, messages: list[dict[str, str]], stream: bool) -> dict[str, Any]:
        return {
            "messages": messages,
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
            "stream": stream,
        }

    async def stream(
        self, messages: list[dict[str, str]], grammar: dict | None = None,
    ) -> AsyncIterator[str]:
        try:
            if grammar is not None:
                content = await self._complete(messages, grammar)
                if content:
                    yield content
                return

            async for token in self._stream_sse(messages):
                yield token
        except httpx.TimeoutException as e:
            raise GenerationError(f"llama.cpp stalled: {e}") from e
        except httpx.HTTPError as e:
            raise GenerationError(f"could not reach llama.cpp at {self.endpoint}: {e}") from e

    async def _stream_sse(self, messages: list[dict[str, str]]) -> AsyncIterator[str]:
        async with self.client.stream(
            "POST",
            f"{self.endpoint}/v1/chat/completions",
            json=self._payload(messages, stream=True),
            timeout=self.timeout,
        ) as response:
            if response.status_code != 200:
                body = (await response.aread()).decode(errors="replace")[:500]
                logger.warning("llama.cpp streaming returned %s: %s", response.status_code, body)
                raise GenerationError(f"llama.cpp server error ({response.status_code})")

            async for line in response.aiter_lines():
                if not line.startswith("data: "):
                    continue
                data_str = line[6:]
                if data_str.strip() == "[DONE]":
                    break
                try:
                    chunk = json.loads(data_str)
                except json.JSONDecodeError:
                    logger.warning("unparseable SSE chunk: %s", data_str[:100])
                    continue
                if not isinstance(chunk, dict):
                    logger.warning("unexpected SSE chunk: %s", data_str[:100])
                    continue

                choices = chunk.get("choices")
                if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
                    continue
                delta = choices[0].get("delta")
                token = delta.get("content") if isinstance(delta, dict) else None
                if token and isinstance(token, str):
                    yield token
                if choices[0].get("finish_reason"):
                    break

    async def _complete(self, messages: list[dict[str, str]], grammar: dict) -> str:
        payload = self._payload(messages, stream=False)
        payload["response_format"] = {"type": "json_object", "schema": grammar}

        response = await self.client.post(
            f"{self.endpoint}/v1/chat/completions", json=payload, timeout=self.timeout,
        )
        if response.status_code != 200:
            logger.warning("llama.cpp returned %s: %s", response.status_code, response.text[:500])
            raise GenerationError(f"llama.cpp server error ({response.status_code})")

        try:
            data = response.json()
        except ValueError as e:
            raise GenerationError(f"llama.cpp returned invalid JSON: {response.text[:200]!r}") from e

        choices = data.get("choices") if isinstance(data, dict) else None
        if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
            raise GenerationError("empty response from llama.cpp")
        message = choices[0].get("message")
        content = message.get("content") if isinstance(message, dict) else None
        return content if isinstance(content, str) else ""

    async def close(self) -> None:
        await self.client.aclose()
