"""Model gateway client for embeddings and chat completions.

Talks to any OpenAI-compatible HTTP endpoint (LM Studio, OpenRouter, vLLM...)
with httpx. Transport errors are retried with exponential backoff; anything
else surfaces as UpstreamGatewayError so callers can decide between retrying
a batch and skipping a record.
"""
from __future__ import annotations

import logging
from functools import lru_cache
from typing import Any

import httpx
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from be.config import GatewaySettings, settings

logger = logging.getLogger(__name__)


class UpstreamGatewayError(Exception):
    """Raised when an embedding or completion call fails."""
    pass


class ModelGateway:
    """Thin async client for the embedding and completion endpoints."""

    def __init__(
        self,
        config: GatewaySettings | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.config = config or settings.gateway
        headers = {"Content-Type": "application/json"}
        if self.config.api_key:
            headers["Authorization"] = f"Bearer {self.config.api_key}"

        self._client = httpx.AsyncClient(
            base_url=self.config.base_url.rstrip("/"),
            headers=headers,
            timeout=self.config.timeout_seconds,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _post(self, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        """POST a JSON payload, retrying only on transport-level failures."""
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.config.max_retries),
                wait=wait_exponential(multiplier=1, min=2, max=10),
                retry=retry_if_exception_type(httpx.TransportError),
                reraise=True,
            ):
                with attempt:
                    response = await self._client.post(path, json=payload)
        except httpx.TransportError as e:
            logger.error(f"Gateway unreachable at {self.config.base_url}{path}: {e}")
            raise UpstreamGatewayError(
                f"Model gateway unreachable at {self.config.base_url}: {e}"
            ) from e

        if response.is_error:
            raise UpstreamGatewayError(
                f"Model gateway error {response.status_code} on {path}: {response.text[:500]}"
            )

        try:
            return response.json()
        except ValueError as e:
            raise UpstreamGatewayError(f"Model gateway returned invalid JSON on {path}") from e

    async def embed(self, texts: list[str]) -> list[list[float]]:
        """Compute embeddings for a batch of texts.

        Args:
            texts: Texts to embed

        Returns:
            One vector per input, in input order. An empty list marks a
            per-item failure (e.g. blank input).

        Raises:
            UpstreamGatewayError: If the batch call fails
        """
        if not texts:
            return []

        sanitized = [t.strip() if isinstance(t, str) else "" for t in texts]
        if all(not t for t in sanitized):
            logger.warning("All texts are empty after sanitizing, skipping embedding call")
            return [[] for _ in texts]

        data = await self._post(
            "/embeddings",
            {"model": self.config.embedding_model, "input": sanitized},
        )

        try:
            items = data["data"]
            if all("index" in item for item in items):
                items = sorted(items, key=lambda item: item["index"])
            vectors = [list(item.get("embedding") or []) for item in items]
        except (KeyError, TypeError) as e:
            raise UpstreamGatewayError(f"Unexpected embedding response shape: {e}") from e

        # Short responses mark the missing tail as failed items
        if len(vectors) < len(texts):
            logger.warning(f"Gateway returned {len(vectors)} embeddings for {len(texts)} inputs")
            vectors.extend([] for _ in range(len(texts) - len(vectors)))

        # Blank inputs never count as embedded
        return [vec if text else [] for vec, text in zip(vectors, sanitized)]

    async def complete(self, prompt: str, system_prompt: str | None = None) -> str:
        """Run a chat completion and return the assistant message text.

        Raises:
            UpstreamGatewayError: If the call fails or returns no content
        """
        messages = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": prompt})

        data = await self._post(
            "/chat/completions",
            {
                "model": self.config.llm_model,
                "messages": messages,
                "temperature": self.config.temperature,
            },
        )

        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as e:
            raise UpstreamGatewayError(f"Unexpected completion response shape: {e}") from e

        if not content:
            raise UpstreamGatewayError("Model gateway returned an empty completion")
        return content.strip()

    def info(self) -> dict[str, str]:
        """Connection details for status endpoints."""
        return {
            "provider": "hosted" if self.config.api_key else "local",
            "host": self.config.base_url,
            "llm_model": self.config.llm_model,
            "embedding_model": self.config.embedding_model,
        }


@lru_cache(maxsize=1)
def get_gateway() -> ModelGateway:
    """Process-wide gateway instance."""
    return ModelGateway()
