"""Streaming model client — incremental completions via LiteLLM.

``ModelStreamClient.open_stream`` yields ``TextFragment`` items in emission
order and, on natural completion only, one final ``FinalUsage``. Any backend
failure (including connect/read timeouts) surfaces as ``ModelStreamError``.
Closing the iterator early releases the remote connection.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from dataclasses import dataclass
from functools import lru_cache
from typing import Any

from litellm import acompletion

from agentdesk.core.config import Settings, get_settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TextFragment:
    """One incremental piece of model output."""
    text: str


@dataclass(frozen=True)
class FinalUsage:
    """Token usage reported by the backend once the stream has finished."""
    total_tokens: int
    prompt_tokens: int = 0
    completion_tokens: int = 0
    time_to_first_token_ms: int | None = None
    duration_ms: int | None = None


StreamItem = TextFragment | FinalUsage


class ModelStreamError(Exception):
    """The model backend failed or timed out before the stream completed."""


@dataclass(frozen=True)
class ModelStreamClient:
    """Immutable, explicitly configured client for one model backend."""

    model: str
    temperature: float
    max_tokens: int
    connect_timeout: float
    read_timeout: float
    api_key: str | None = None

    @classmethod
    def from_settings(cls, settings: Settings) -> ModelStreamClient:
        return cls(
            model=settings.llm_model,
            temperature=settings.llm_temperature,
            max_tokens=settings.llm_max_tokens,
            connect_timeout=settings.llm_connect_timeout,
            read_timeout=settings.llm_read_timeout,
            api_key=settings.llm_api_key,
        )

    def build_messages(self, system_prompt: str, user_message: str) -> list[dict]:
        return [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": user_message},
        ]

    async def _connect(self, messages: list[dict]) -> Any:
        kwargs: dict = {
            "model": self.model,
            "messages": messages,
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
            "stream": True,
            "stream_options": {"include_usage": True},
            "timeout": self.read_timeout,
        }
        if self.api_key:
            kwargs["api_key"] = self.api_key
        return await asyncio.wait_for(acompletion(**kwargs), timeout=self.connect_timeout)

    async def open_stream(self, system_prompt: str, user_message: str) -> AsyncIterator[StreamItem]:
        """Stream one completion. Single-pass; not restartable."""
        messages = self.build_messages(system_prompt, user_message)
        started = time.monotonic()
        try:
            response = await self._connect(messages)
        except asyncio.TimeoutError as exc:
            raise ModelStreamError(
                f"Model connection timed out after {self.connect_timeout}s"
            ) from exc
        except Exception as exc:
            raise ModelStreamError(f"Model request failed: {exc}") from exc

        chunks = response.__aiter__()
        prompt_tokens = 0
        completion_tokens = 0
        total_tokens = 0
        ttft_ms: int | None = None
        try:
            while True:
                try:
                    chunk = await asyncio.wait_for(chunks.__anext__(), timeout=self.read_timeout)
                except StopAsyncIteration:
                    break
                except asyncio.TimeoutError as exc:
                    raise ModelStreamError(
                        f"No data from model for {self.read_timeout}s"
                    ) from exc
                except Exception as exc:
                    raise ModelStreamError(f"Model stream failed: {exc}") from exc

                delta = chunk.choices[0].delta if chunk.choices else None
                if delta and delta.content:
                    if ttft_ms is None:
                        ttft_ms = int((time.monotonic() - started) * 1000)
                    yield TextFragment(delta.content)

                # Usage arrives on the last chunk when include_usage is honoured
                usage = getattr(chunk, "usage", None)
                if usage:
                    prompt_tokens = usage.prompt_tokens or 0
                    completion_tokens = usage.completion_tokens or 0
                    total_tokens = (
                        getattr(usage, "total_tokens", None) or prompt_tokens + completion_tokens
                    )
        finally:
            await _close_quietly(response)

        yield FinalUsage(
            total_tokens=total_tokens,
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            time_to_first_token_ms=ttft_ms,
            duration_ms=int((time.monotonic() - started) * 1000),
        )


async def _close_quietly(response: Any) -> None:
    """Release the backend connection; never raises."""
    close = getattr(response, "aclose", None)
    if close is None:
        return
    try:
        await close()
    except Exception:
        logger.debug("Ignoring error while closing model stream", exc_info=True)


@lru_cache
def get_model_client() -> ModelStreamClient:
    """FastAPI dependency: the process-wide, immutable model client."""
    return ModelStreamClient.from_settings(get_settings())
