"""SMS delivery collaborator."""

from __future__ import annotations

from typing import Protocol

import httpx
from loguru import logger

from ..config import DeliveryConfig
from ..exceptions import DeliveryError
from ..models import Persona


class DeliveryClient(Protocol):
    """Sends a persona's reply to a phone number."""

    async def send(self, persona: Persona, to_number: str, content: str) -> None:
        """Send a message. Raises DeliveryError on failure."""
        ...


class SendBlueClient:
    """Delivers messages through the SendBlue REST API over httpx."""

    def __init__(self, config: DeliveryConfig, client: httpx.AsyncClient | None = None):
        self.config = config
        self._client = client

    async def _post(self, client: httpx.AsyncClient, payload: dict) -> None:
        response = await client.post(
            f"{self.config.base_url.rstrip('/')}/api/send-message",
            json=payload,
            headers={
                "sb-api-key-id": self.config.api_key,
                "sb-api-secret-key": self.config.api_secret,
            },
            timeout=self.config.timeout,
        )
        response.raise_for_status()

    async def send(self, persona: Persona, to_number: str, content: str) -> None:
        payload = {"number": to_number, "content": content}
        if persona.phone_number:
            payload["from_number"] = persona.phone_number
        if self.config.status_callback:
            payload["status_callback"] = self.config.status_callback

        try:
            if self._client is not None:
                await self._post(self._client, payload)
            else:
                async with httpx.AsyncClient() as client:
                    await self._post(client, payload)
        except httpx.HTTPStatusError as e:
            raise DeliveryError(
                f"Delivery failed with HTTP {e.response.status_code}",
                status_code=e.response.status_code,
            ) from e
        except httpx.HTTPError as e:
            raise DeliveryError(f"Delivery failed: {e}") from e

        logger.debug(f"Message sent from persona {persona.slug} to {to_number}")
