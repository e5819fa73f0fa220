"""Reply generation collaborator."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

import httpx
from loguru import logger

from ..config import GenerationConfig
from ..exceptions import GenerationError
from ..memory.context_assembler import GenerationContext

ANTHROPIC_VERSION = "2023-06-01"


@dataclass
class GenerationResult:
    text: str
    tokens_in: int | None = None
    tokens_out: int | None = None
    model: str | None = None


class ReplyGenerator(Protocol):
    """Turns an assembled context into reply text."""

    async def generate(self, context: GenerationContext) -> GenerationResult:
        """Generate a reply. Raises GenerationError on failure."""
        ...


def normalize_messages(messages: list[dict]) -> list[dict]:
    """Merge consecutive same-role turns and drop leading assistant turns.

    The messages API requires strictly alternating roles starting with user.
    """
    normalized: list[dict] = []
    for msg in messages:
        role, content = msg["role"], msg["content"]
        if not normalized and role != "user":
            continue
        if normalized and normalized[-1]["role"] == role:
            normalized[-1] = {"role": role, "content": f"{normalized[-1]['content']}\n{content}"}
        else:
            normalized.append({"role": role, "content": content})
    return normalized


class AnthropicReplyGenerator:
    """Generates replies through the Anthropic messages API over httpx."""

    def __init__(self, config: GenerationConfig, client: httpx.AsyncClient | None = None):
        """
        Args:
            config: Endpoint, key, model and limits
            client: Optional shared client; one is created per call otherwise
        """
        self.config = config
        self._client = client

    def _payload(self, context: GenerationContext) -> dict:
        system = context.system_content()
        if context.is_new_user:
            system += "\n\nThis is the very first message they have ever sent you."
        return {
            "model": self.config.model,
            "max_tokens": self.config.max_tokens,
            "system": system,
            "messages": normalize_messages(context.messages()),
        }

    async def _post(self, client: httpx.AsyncClient, payload: dict) -> httpx.Response:
        response = await client.post(
            f"{self.config.base_url.rstrip('/')}/v1/messages",
            json=payload,
            headers={
                "x-api-key": self.config.api_key,
                "anthropic-version": ANTHROPIC_VERSION,
                "content-type": "application/json",
            },
            timeout=self.config.timeout,
        )
        response.raise_for_status()
        return response

    async def generate(self, context: GenerationContext) -> GenerationResult:
        payload = self._payload(context)
        try:
            if self._client is not None:
                response = await self._post(self._client, payload)
            else:
                async with httpx.AsyncClient() as client:
                    response = await self._post(client, payload)
            data = response.json()
        except httpx.HTTPStatusError as e:
            raise GenerationError(
                f"Generation request failed with HTTP {e.response.status_code}"
            ) from e
        except (httpx.HTTPError, ValueError) as e:
            raise GenerationError(f"Generation request failed: {e}") from e

        text = "".join(
            block.get("text", "") for block in data.get("content", []) if block.get("type") == "text"
        ).strip()
        if not text:
            raise GenerationError("Generation returned no text")

        usage = data.get("usage", {})
        result = GenerationResult(
            text=text,
            tokens_in=usage.get("input_tokens"),
            tokens_out=usage.get("output_tokens"),
            model=data.get("model", self.config.model),
        )
        logger.debug(
            f"Reply generated: model={result.model}, "
            f"tokens_in={result.tokens_in}, tokens_out={result.tokens_out}"
        )
        return result
