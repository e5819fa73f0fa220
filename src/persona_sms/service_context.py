"""
Service Context - owns the long-lived components of a running server.

Composes storage, the worker pool, the collaborators and the handlers built
on top of them, and drives their startup and shutdown.
"""

from __future__ import annotations

from datetime import timedelta

from loguru import logger

from .billing import BillingHandler
from .config import AppConfig, PersonaSeed
from .locks import UserLocks
from .maintenance import MaintenanceRunner
from .memory.context_assembler import ContextAssembler
from .memory.store import MemoryStore
from .memory.token_counter import TokenCounter
from .conversation_log import ConversationLog
from .models import Persona
from .router import MessageRouter
from .services.delivery import DeliveryClient, SendBlueClient
from .services.generation import AnthropicReplyGenerator, ReplyGenerator
from .storage.sqlite_store import SQLiteStore
from .worker_pool import WorkerPool


class ServiceContext:
    """Wires every component from one AppConfig."""

    def __init__(
        self,
        config: AppConfig,
        generator: ReplyGenerator | None = None,
        delivery: DeliveryClient | None = None,
        store: SQLiteStore | None = None,
    ):
        """
        Args:
            config: Application configuration
            generator: Reply generator (defaults to the Anthropic HTTP client)
            delivery: Delivery client (defaults to the SendBlue HTTP client)
            store: Storage backend (defaults to SQLite at the configured path)
        """
        self.config = config
        self.store = store or SQLiteStore(config.storage.sqlite_db_path)
        self.generator = generator or AnthropicReplyGenerator(config.generation)
        self.delivery = delivery or SendBlueClient(config.delivery)

        self.pool = WorkerPool(config.workers)
        self.locks = UserLocks()
        self.assembler = ContextAssembler(
            TokenCounter(config.context.token_model),
            config.context,
            memory_store=MemoryStore(self.store),
            conversation_log=ConversationLog(self.store),
        )
        self.router = MessageRouter(
            config,
            self.store,
            self.assembler,
            self.generator,
            self.delivery,
            pool=self.pool,
            locks=self.locks,
        )
        self.billing = BillingHandler(self.store)
        self.maintenance = MaintenanceRunner(
            self.store, delivery_retention=timedelta(days=config.maintenance.delivery_retention_days)
        )

    async def initialize(self) -> None:
        await self.store.initialize()
        await self.seed_personas(self.config.personas)
        await self.pool.start()
        logger.info("Service context initialized")

    async def close(self) -> None:
        await self.pool.stop()
        await self.store.close()
        logger.info("Service context closed")

    async def seed_personas(self, seeds: list[PersonaSeed]) -> list[Persona]:
        """Upsert operator-defined personas by slug."""
        personas = []
        for seed in seeds:
            persona = await self.store.upsert_persona(Persona(**seed.model_dump()))
            personas.append(persona)
            logger.info(f"Persona seeded: {persona.slug} ({persona.phone_number})")
        return personas
