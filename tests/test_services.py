"""Tests for the HTTP generation and delivery clients."""

import json

import httpx
import pytest

from persona_sms.config import DeliveryConfig, GenerationConfig
from persona_sms.exceptions import DeliveryError, GenerationError
from persona_sms.memory.context_assembler import GenerationContext
from persona_sms.memory.models import HotMemory
from persona_sms.models import Persona, UserStatus
from persona_sms.services.delivery import SendBlueClient
from persona_sms.services.generation import AnthropicReplyGenerator, normalize_messages


def context(**kwargs):
    defaults = dict(
        system_prompt="You are Mia.",
        hot_memory=HotMemory.empty(),
        user_message="how are you?",
        user_status=UserStatus.FREE,
        recent_messages=[
            {"role": "assistant", "content": "welcome!"},
            {"role": "user", "content": "hi"},
        ],
    )
    defaults.update(kwargs)
    return GenerationContext(**defaults)


def client_for(handler):
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


class TestNormalizeMessages:
    def test_drops_leading_assistant_and_merges(self):
        messages = [
            {"role": "assistant", "content": "a"},
            {"role": "user", "content": "b"},
            {"role": "user", "content": "c"},
            {"role": "assistant", "content": "d"},
        ]
        assert normalize_messages(messages) == [
            {"role": "user", "content": "b\nc"},
            {"role": "assistant", "content": "d"},
        ]


class TestAnthropicReplyGenerator:
    async def test_posts_context_and_parses_reply(self):
        seen = {}

        def handler(request):
            seen["url"] = str(request.url)
            seen["headers"] = request.headers
            seen["body"] = json.loads(request.content)
            return httpx.Response(
                200,
                json={
                    "model": "claude-test",
                    "content": [{"type": "text", "text": "doing great, you?"}],
                    "usage": {"input_tokens": 42, "output_tokens": 5},
                },
            )

        config = GenerationConfig(api_key="sk-test", model="claude-test", max_tokens=200)
        generator = AnthropicReplyGenerator(config, client=client_for(handler))
        result = await generator.generate(context(is_new_user=True))

        assert result.text == "doing great, you?"
        assert (result.tokens_in, result.tokens_out, result.model) == (42, 5, "claude-test")
        assert seen["url"].endswith("/v1/messages")
        assert seen["headers"]["x-api-key"] == "sk-test"
        body = seen["body"]
        assert body["max_tokens"] == 200
        assert body["system"].startswith("You are Mia.")
        assert "first message" in body["system"]
        assert body["messages"] == [{"role": "user", "content": "hi\nhow are you?"}]

    async def test_http_error_raises(self):
        generator = AnthropicReplyGenerator(
            GenerationConfig(), client=client_for(lambda r: httpx.Response(529, json={}))
        )
        with pytest.raises(GenerationError):
            await generator.generate(context())

    async def test_empty_reply_raises(self):
        generator = AnthropicReplyGenerator(
            GenerationConfig(), client=client_for(lambda r: httpx.Response(200, json={"content": []}))
        )
        with pytest.raises(GenerationError):
            await generator.generate(context())


class TestSendBlueClient:
    persona = Persona(name="Mia", slug="mia", phone_number="+15550000001", personality_prompt="x")

    async def test_sends_message(self):
        seen = {}

        def handler(request):
            seen["headers"] = request.headers
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"status": "QUEUED"})

        config = DeliveryConfig(api_key="key", api_secret="secret", status_callback="https://cb")
        await SendBlueClient(config, client=client_for(handler)).send(self.persona, "+15551234567", "hey")

        assert seen["headers"]["sb-api-key-id"] == "key"
        assert seen["headers"]["sb-api-secret-key"] == "secret"
        assert seen["body"] == {
            "number": "+15551234567",
            "content": "hey",
            "from_number": "+15550000001",
            "status_callback": "https://cb",
        }

    async def test_failure_raises_with_status(self):
        client = client_for(lambda r: httpx.Response(401, json={"error": "bad key"}))
        with pytest.raises(DeliveryError) as exc_info:
            await SendBlueClient(DeliveryConfig(), client=client).send(self.persona, "+1555", "hey")
        assert exc_info.value.status_code == 401
