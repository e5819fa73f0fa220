"""
persona_sms test fixtures

Temporary SQLite stores, a seeded persona and mocked collaborators.
"""

import os
import tempfile
from unittest.mock import AsyncMock

import pytest

from persona_sms.config import AppConfig, ContextConfig, WorkerConfig
from persona_sms.conversation_log import ConversationLog
from persona_sms.memory.context_assembler import ContextAssembler
from persona_sms.memory.store import MemoryStore
from persona_sms.memory.token_counter import TokenCounter
from persona_sms.models import Persona, User
from persona_sms.router import MessageRouter
from persona_sms.services.generation import GenerationResult
from persona_sms.storage.sqlite_store import SQLiteStore

PERSONA_NUMBER = "+15550000001"
USER_NUMBER = "+15551234567"


@pytest.fixture
async def store():
    with tempfile.TemporaryDirectory() as tmpdir:
        s = SQLiteStore(db_path=os.path.join(tmpdir, "test.db"))
        await s.initialize()
        yield s
        await s.close()


@pytest.fixture
async def persona(store):
    return await store.upsert_persona(
        Persona(
            name="Mia",
            slug="mia",
            phone_number=PERSONA_NUMBER,
            personality_prompt="You are Mia, warm and a little sarcastic.",
            max_free_messages=5,
        )
    )


@pytest.fixture
async def user(store, persona):
    return await store.create_user(User(phone_number=USER_NUMBER, persona_id=persona.id))


@pytest.fixture
def memory(store):
    return MemoryStore(store)


@pytest.fixture
def config():
    return AppConfig(
        context=ContextConfig(token_model=None),
        workers=WorkerConfig(worker_count=2, stop_timeout=5.0),
    )


@pytest.fixture
def generator():
    mock = AsyncMock()
    mock.generate.return_value = GenerationResult(
        text="hey you, how was the interview?", tokens_in=120, tokens_out=9, model="test-model"
    )
    return mock


@pytest.fixture
def delivery():
    mock = AsyncMock()
    mock.send.return_value = None
    return mock


@pytest.fixture
def assembler(store, config):
    return ContextAssembler(
        TokenCounter(model=None),
        config.context,
        memory_store=MemoryStore(store),
        conversation_log=ConversationLog(store),
    )


@pytest.fixture
def router(config, store, assembler, generator, delivery, persona):
    return MessageRouter(config, store, assembler, generator, delivery)
