"""SQLite storage backend.

Persists personas, users, the conversation log, analytics events, delivery
idempotency keys, usage tallies and the three memory tiers using aiosqlite.

All writes go through a single connection guarded by a write lock, so a
``transaction()`` block commits or rolls back as one unit without picking up
writes from other tasks.
"""

from __future__ import annotations

import asyncio
import json
from contextlib import asynccontextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, AsyncIterator

import aiosqlite
from loguru import logger

from ..exceptions import StatusConsistencyError, StorageError
from ..models import (
    ConversationTurn,
    ConversionEvent,
    Persona,
    SubscriptionStatus,
    User,
    UserStatus,
    is_status_consistent,
)

_in_transaction: ContextVar[bool] = ContextVar("persona_sms_in_transaction", default=False)

USER_UPDATABLE_COLUMNS = frozenset(
    {
        "status",
        "free_messages",
        "converted_at",
        "churned_at",
        "churn_reason",
        "stripe_customer_id",
        "stripe_subscription_id",
        "subscription_status",
        "subscription_started_at",
        "subscription_current_period_end",
        "subscription_canceled_at",
        "last_message_at",
        "last_message_from",
        "memory_initialized",
    }
)

PERSONA_COUNTERS = frozenset({"total_users", "total_conversations"})


def _iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _db_value(value: Any) -> Any:
    if isinstance(value, datetime):
        return _iso(value)
    if hasattr(value, "value"):  # Enum
        return value.value
    if isinstance(value, bool):
        return int(value)
    return value


class SQLiteStore:
    """SQLite storage backend.

    Uses WAL mode for concurrent reads. Counter updates are single atomic
    UPDATE statements.
    """

    def __init__(self, db_path: str = "./data/persona_sms.db"):
        """Initialize SQLite store.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path
        self._db: aiosqlite.Connection | None = None
        self._write_lock = asyncio.Lock()
        logger.info(f"SQLiteStore initialized with db_path: {db_path}")

    async def initialize(self) -> None:
        """Create database tables and indexes if they don't exist."""
        db_dir = Path(self.db_path).parent
        db_dir.mkdir(parents=True, exist_ok=True)

        try:
            self._db = await aiosqlite.connect(self.db_path)
            self._db.row_factory = aiosqlite.Row

            await self._db.execute("PRAGMA journal_mode=WAL")
            await self._db.execute("PRAGMA foreign_keys=ON")

            await self._create_tables()
            await self._create_indexes()
            await self._db.commit()
        except aiosqlite.Error as e:
            raise StorageError(f"Failed to initialize database: {e}", path=self.db_path) from e

        logger.info("SQLite database initialized successfully")

    async def _create_tables(self) -> None:
        await self._db.execute("""
            CREATE TABLE IF NOT EXISTS personas (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                slug TEXT NOT NULL UNIQUE,
                phone_number TEXT UNIQUE,
                tagline TEXT,
                personality_prompt TEXT NOT NULL,
                active INTEGER DEFAULT 1,
                max_free_messages INTEGER DEFAULT 50,
                total_users INTEGER DEFAULT 0,
                total_conversations INTEGER DEFAULT 0,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)

        await self._db.execute("""
            CREATE TABLE IF NOT EXISTS users (
                id TEXT PRIMARY KEY,
                phone_number TEXT NOT NULL,
                persona_id TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'free',
                free_messages INTEGER DEFAULT 0,
                converted_at TEXT,
                churned_at TEXT,
                churn_reason TEXT,
                stripe_customer_id TEXT,
                stripe_subscription_id TEXT,
                subscription_status TEXT NOT NULL DEFAULT 'none',
                subscription_started_at TEXT,
                subscription_current_period_end TEXT,
                subscription_canceled_at TEXT,
                messages_this_month INTEGER DEFAULT 0,
                messages_total INTEGER DEFAULT 0,
                last_message_at TEXT,
                last_message_from TEXT,
                memory_initialized INTEGER DEFAULT 0,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                UNIQUE (phone_number, persona_id),
                FOREIGN KEY (persona_id) REFERENCES personas(id)
            )
        """)

        await self._db.execute("""
            CREATE TABLE IF NOT EXISTS conversations (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id TEXT NOT NULL,
                persona_id TEXT NOT NULL,
                role TEXT NOT NULL,
                content TEXT NOT NULL,
                tokens_in INTEGER,
                tokens_out INTEGER,
                model_used TEXT,
                processed_for_memory INTEGER DEFAULT 0,
                created_at TEXT NOT NULL,
                FOREIGN KEY (user_id) REFERENCES users(id)
            )
        """)

        await self._db.execute("""
            CREATE TABLE IF NOT EXISTS conversion_events (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                persona_id TEXT NOT NULL,
                event_type TEXT NOT NULL,
                metadata TEXT,
                created_at TEXT NOT NULL
            )
        """)

        await self._db.execute("""
            CREATE TABLE IF NOT EXISTS blocked_numbers (
                phone_number TEXT PRIMARY KEY,
                reason TEXT,
                blocked_at TEXT NOT NULL,
                blocked_by TEXT
            )
        """)

        await self._db.execute("""
            CREATE TABLE IF NOT EXISTS processed_deliveries (
                delivery_key TEXT PRIMARY KEY,
                user_id TEXT,
                processed_at TEXT NOT NULL
            )
        """)

        await self._db.execute("""
            CREATE TABLE IF NOT EXISTS usage_logs (
                user_id TEXT NOT NULL,
                persona_id TEXT NOT NULL,
                date TEXT NOT NULL,
                messages_sent INTEGER DEFAULT 0,
                messages_received INTEGER DEFAULT 0,
                tokens_in INTEGER DEFAULT 0,
                tokens_out INTEGER DEFAULT 0,
                PRIMARY KEY (user_id, persona_id, date)
            )
        """)

        # Hot tier: one JSON document per part, per (persona, user)
        await self._db.execute("""
            CREATE TABLE IF NOT EXISTS hot_memories (
                persona_id TEXT NOT NULL,
                user_id TEXT NOT NULL,
                core TEXT NOT NULL,
                relationship TEXT NOT NULL,
                threads TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                PRIMARY KEY (persona_id, user_id)
            )
        """)

        # Warm tier
        await self._db.execute("""
            CREATE TABLE IF NOT EXISTS person_memories (
                persona_id TEXT NOT NULL,
                user_id TEXT NOT NULL,
                slug TEXT NOT NULL,
                name TEXT NOT NULL,
                relationship_to_user TEXT,
                key_facts TEXT NOT NULL,
                sentiment TEXT NOT NULL,
                first_mentioned TEXT NOT NULL,
                last_mentioned TEXT NOT NULL,
                mention_count INTEGER DEFAULT 1,
                PRIMARY KEY (persona_id, user_id, slug)
            )
        """)

        # Cold tier, partitioned by calendar month
        await self._db.execute("""
            CREATE TABLE IF NOT EXISTS conversation_summaries (
                id TEXT PRIMARY KEY,
                persona_id TEXT NOT NULL,
                user_id TEXT NOT NULL,
                month TEXT NOT NULL,
                date TEXT NOT NULL,
                summary TEXT NOT NULL,
                topics TEXT NOT NULL,
                people TEXT NOT NULL,
                vibe TEXT,
                emotion TEXT,
                memorable_quote TEXT,
                created_at TEXT NOT NULL
            )
        """)

        logger.debug("All tables created successfully")

    async def _create_indexes(self) -> None:
        await self._db.execute("""
            CREATE INDEX IF NOT EXISTS idx_conversations_user
            ON conversations(user_id, id)
        """)

        await self._db.execute("""
            CREATE INDEX IF NOT EXISTS idx_events_user
            ON conversion_events(user_id)
        """)

        await self._db.execute("""
            CREATE INDEX IF NOT EXISTS idx_users_customer
            ON users(stripe_customer_id)
        """)

        await self._db.execute("""
            CREATE INDEX IF NOT EXISTS idx_users_subscription
            ON users(stripe_subscription_id)
        """)

        await self._db.execute("""
            CREATE INDEX IF NOT EXISTS idx_summaries_month
            ON conversation_summaries(persona_id, user_id, month)
        """)

        await self._db.execute("""
            CREATE INDEX IF NOT EXISTS idx_deliveries_processed
            ON processed_deliveries(processed_at)
        """)

        logger.debug("All indexes created successfully")

    async def close(self) -> None:
        """Close database connection."""
        if self._db:
            await self._db.close()
            self._db = None
            logger.info("SQLite database connection closed")

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    def _conn(self) -> aiosqlite.Connection:
        if not self._db:
            raise RuntimeError("Database not initialized. Call initialize() first.")
        return self._db

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        """Run several writes as one atomic unit.

        Nested use inside the same task joins the outer transaction.
        """
        if _in_transaction.get():
            yield
            return

        db = self._conn()
        async with self._write_lock:
            token = _in_transaction.set(True)
            try:
                yield
                await db.commit()
            except BaseException:
                await db.rollback()
                raise
            finally:
                _in_transaction.reset(token)

    @asynccontextmanager
    async def _write(self) -> AsyncIterator[aiosqlite.Connection]:
        db = self._conn()
        try:
            async with self.transaction():
                yield db
        except aiosqlite.Error as e:
            raise StorageError(f"Database write failed: {e}", path=self.db_path) from e

    async def _fetchone(self, sql: str, params: tuple = ()) -> dict | None:
        async with self._conn().execute(sql, params) as cursor:
            row = await cursor.fetchone()
        return dict(row) if row is not None else None

    async def _fetchall(self, sql: str, params: tuple = ()) -> list[dict]:
        async with self._conn().execute(sql, params) as cursor:
            rows = await cursor.fetchall()
        return [dict(r) for r in rows]

    # ------------------------------------------------------------------
    # Personas
    # ------------------------------------------------------------------

    async def upsert_persona(self, persona: Persona) -> Persona:
        """Insert a persona, or update the operator fields of an existing slug."""
        async with self._write() as db:
            await db.execute(
                """
                INSERT INTO personas (
                    id, name, slug, phone_number, tagline, personality_prompt,
                    active, max_free_messages, total_users, total_conversations,
                    created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(slug) DO UPDATE SET
                    name = excluded.name,
                    phone_number = excluded.phone_number,
                    tagline = excluded.tagline,
                    personality_prompt = excluded.personality_prompt,
                    active = excluded.active,
                    max_free_messages = excluded.max_free_messages,
                    updated_at = excluded.updated_at
                """,
                (
                    persona.id,
                    persona.name,
                    persona.slug,
                    persona.phone_number,
                    persona.tagline,
                    persona.personality_prompt,
                    int(persona.active),
                    persona.max_free_messages,
                    persona.total_users,
                    persona.total_conversations,
                    _iso(persona.created_at),
                    _iso(persona.updated_at),
                ),
            )
        stored = await self._fetchone("SELECT * FROM personas WHERE slug = ?", (persona.slug,))
        logger.debug(f"Persona upserted: {persona.slug}")
        return Persona.model_validate(stored)

    async def get_persona(self, persona_id: str) -> Persona | None:
        row = await self._fetchone("SELECT * FROM personas WHERE id = ?", (persona_id,))
        return Persona.model_validate(row) if row else None

    async def get_persona_by_number(self, phone_number: str) -> Persona | None:
        """Active persona answering on ``phone_number``."""
        row = await self._fetchone(
            "SELECT * FROM personas WHERE phone_number = ? AND active = 1",
            (phone_number,),
        )
        return Persona.model_validate(row) if row else None

    async def list_personas(self) -> list[Persona]:
        rows = await self._fetchall("SELECT * FROM personas ORDER BY created_at")
        return [Persona.model_validate(r) for r in rows]

    async def increment_persona_stat(self, persona_id: str, stat: str) -> None:
        if stat not in PERSONA_COUNTERS:
            raise ValueError(f"Unknown persona counter: {stat!r}")
        async with self._write() as db:
            await db.execute(
                f"UPDATE personas SET {stat} = {stat} + 1, updated_at = ? WHERE id = ?",
                (_now(), persona_id),
            )

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    async def get_user(self, user_id: str) -> User | None:
        row = await self._fetchone("SELECT * FROM users WHERE id = ?", (user_id,))
        return User.model_validate(row) if row else None

    async def get_user_by_phone(self, phone_number: str, persona_id: str) -> User | None:
        row = await self._fetchone(
            "SELECT * FROM users WHERE phone_number = ? AND persona_id = ?",
            (phone_number, persona_id),
        )
        return User.model_validate(row) if row else None

    async def get_user_by_billing_ids(
        self,
        customer_id: str | None = None,
        subscription_id: str | None = None,
    ) -> User | None:
        """Resolve a user from billing identifiers, subscription id first."""
        if subscription_id:
            row = await self._fetchone(
                "SELECT * FROM users WHERE stripe_subscription_id = ?", (subscription_id,)
            )
            if row:
                return User.model_validate(row)
        if customer_id:
            row = await self._fetchone(
                "SELECT * FROM users WHERE stripe_customer_id = ?", (customer_id,)
            )
            if row:
                return User.model_validate(row)
        return None

    async def create_user(self, user: User) -> User:
        async with self._write() as db:
            await db.execute(
                """
                INSERT INTO users (
                    id, phone_number, persona_id, status, free_messages,
                    subscription_status, memory_initialized, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    user.id,
                    user.phone_number,
                    user.persona_id,
                    user.status.value,
                    user.free_messages,
                    user.subscription_status.value,
                    int(user.memory_initialized),
                    _iso(user.created_at),
                    _iso(user.updated_at),
                ),
            )
        logger.debug(f"User inserted: {user.id}")
        return user

    async def update_user(self, user_id: str, **fields: Any) -> None:
        """Update user columns.

        Raises:
            StatusConsistencyError: If the resulting status and
                subscription_status would be inconsistent
        """
        unknown = set(fields) - USER_UPDATABLE_COLUMNS
        if unknown:
            raise ValueError(f"Cannot update user columns: {sorted(unknown)}")
        if not fields:
            return

        async with self._write() as db:
            if "status" in fields or "subscription_status" in fields:
                current = await self._fetchone(
                    "SELECT status, subscription_status FROM users WHERE id = ?", (user_id,)
                )
                if current is None:
                    raise StorageError(f"User not found: {user_id}", path=self.db_path)
                status = UserStatus.parse(fields.get("status", current["status"]))
                subscription = SubscriptionStatus(
                    _db_value(fields.get("subscription_status", current["subscription_status"]))
                )
                if not is_status_consistent(status, subscription):
                    raise StatusConsistencyError(status.value, subscription.value)

            assignments = ", ".join(f"{name} = ?" for name in fields)
            params = [_db_value(v) for v in fields.values()]
            await db.execute(
                f"UPDATE users SET {assignments}, updated_at = ? WHERE id = ?",
                (*params, _now(), user_id),
            )
        logger.debug(f"User updated: {user_id} ({', '.join(fields)})")

    async def increment_free_messages(self, user_id: str) -> int:
        """Atomically add one free message; returns the new count."""
        async with self._write() as db:
            await db.execute(
                "UPDATE users SET free_messages = free_messages + 1, updated_at = ? WHERE id = ?",
                (_now(), user_id),
            )
            row = await self._fetchone("SELECT free_messages FROM users WHERE id = ?", (user_id,))
        return row["free_messages"] if row else 0

    async def record_user_message(self, user_id: str, sender: str, at: datetime) -> None:
        """Bump message totals and last-message bookkeeping.

        ``messages_this_month`` restarts at 1 on the first message of a new
        calendar month.
        """
        stamp = _iso(at)
        month = stamp[:7]
        inbound = 1 if sender == "user" else 0
        async with self._write() as db:
            await db.execute(
                """
                UPDATE users SET
                    messages_total = messages_total + ?,
                    messages_this_month = CASE
                        WHEN substr(COALESCE(last_message_at, ''), 1, 7) = ?
                        THEN messages_this_month + ?
                        ELSE ?
                    END,
                    last_message_at = ?,
                    last_message_from = ?,
                    updated_at = ?
                WHERE id = ?
                """,
                (inbound, month, inbound, inbound, stamp, sender, _now(), user_id),
            )

    async def list_users(self, limit: int = 50) -> list[dict]:
        """Most recently created users joined with their persona name."""
        return await self._fetchall(
            """
            SELECT u.id, u.phone_number, u.status, u.free_messages,
                   u.subscription_status, p.name AS persona_name
            FROM users u
            JOIN personas p ON u.persona_id = p.id
            ORDER BY u.created_at DESC
            LIMIT ?
            """,
            (limit,),
        )

    async def list_users_with_period_ended(self, now: datetime) -> list[User]:
        """Active users whose paid period ended before ``now``."""
        rows = await self._fetchall(
            """
            SELECT * FROM users
            WHERE status = 'active'
              AND subscription_current_period_end IS NOT NULL
              AND subscription_current_period_end < ?
            """,
            (_iso(now),),
        )
        return [User.model_validate(r) for r in rows]

    # ------------------------------------------------------------------
    # Blocked numbers
    # ------------------------------------------------------------------

    async def is_blocked(self, phone_number: str) -> bool:
        row = await self._fetchone(
            "SELECT 1 FROM blocked_numbers WHERE phone_number = ?", (phone_number,)
        )
        return row is not None

    async def block_number(
        self, phone_number: str, reason: str | None = None, blocked_by: str | None = None
    ) -> None:
        async with self._write() as db:
            await db.execute(
                """
                INSERT OR REPLACE INTO blocked_numbers (phone_number, reason, blocked_at, blocked_by)
                VALUES (?, ?, ?, ?)
                """,
                (phone_number, reason, _now(), blocked_by),
            )
        logger.info(f"Number blocked: {phone_number}")

    async def unblock_number(self, phone_number: str) -> bool:
        async with self._write() as db:
            cursor = await db.execute(
                "DELETE FROM blocked_numbers WHERE phone_number = ?", (phone_number,)
            )
            return cursor.rowcount > 0

    # ------------------------------------------------------------------
    # Delivery idempotency
    # ------------------------------------------------------------------

    async def claim_delivery(
        self, delivery_key: str, user_id: str | None = None, at: datetime | None = None
    ) -> bool:
        """Record a delivery key; False if it was already claimed."""
        async with self._write() as db:
            cursor = await db.execute(
                """
                INSERT OR IGNORE INTO processed_deliveries (delivery_key, user_id, processed_at)
                VALUES (?, ?, ?)
                """,
                (delivery_key, user_id, _iso(at) if at else _now()),
            )
            return cursor.rowcount > 0

    async def prune_deliveries(self, before: datetime) -> int:
        """Forget delivery keys claimed before ``before``; returns the count removed."""
        async with self._write() as db:
            cursor = await db.execute(
                "DELETE FROM processed_deliveries WHERE processed_at < ?", (_iso(before),)
            )
            return cursor.rowcount

    # ------------------------------------------------------------------
    # Conversion events
    # ------------------------------------------------------------------

    async def insert_event(self, event: ConversionEvent) -> str:
        async with self._write() as db:
            await db.execute(
                """
                INSERT INTO conversion_events (id, user_id, persona_id, event_type, metadata, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    event.id,
                    event.user_id,
                    event.persona_id,
                    event.event_type.value,
                    json.dumps(event.metadata) if event.metadata else None,
                    _iso(event.created_at),
                ),
            )
        logger.debug(f"Event recorded: {event.event_type.value} for user {event.user_id}")
        return event.id

    async def list_events(self, user_id: str) -> list[ConversionEvent]:
        rows = await self._fetchall(
            "SELECT * FROM conversion_events WHERE user_id = ? ORDER BY created_at, rowid",
            (user_id,),
        )
        for row in rows:
            row["metadata"] = json.loads(row["metadata"]) if row["metadata"] else None
        return [ConversionEvent.model_validate(r) for r in rows]

    # ------------------------------------------------------------------
    # Conversation log
    # ------------------------------------------------------------------

    async def insert_turn(self, turn: ConversationTurn) -> int:
        async with self._write() as db:
            cursor = await db.execute(
                """
                INSERT INTO conversations (
                    user_id, persona_id, role, content, tokens_in, tokens_out,
                    model_used, processed_for_memory, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    turn.user_id,
                    turn.persona_id,
                    turn.role.value,
                    turn.content,
                    turn.tokens_in,
                    turn.tokens_out,
                    turn.model_used,
                    int(turn.processed_for_memory),
                    _iso(turn.created_at),
                ),
            )
            return cursor.lastrowid

    async def get_recent_turns(
        self, user_id: str, limit: int, before_id: int | None = None
    ) -> list[ConversationTurn]:
        """Last ``limit`` turns, oldest first."""
        if limit <= 0:
            return []
        if before_id is None:
            rows = await self._fetchall(
                "SELECT * FROM conversations WHERE user_id = ? ORDER BY id DESC LIMIT ?",
                (user_id, limit),
            )
        else:
            rows = await self._fetchall(
                """
                SELECT * FROM conversations WHERE user_id = ? AND id < ?
                ORDER BY id DESC LIMIT ?
                """,
                (user_id, before_id, limit),
            )
        return [ConversationTurn.model_validate(r) for r in reversed(rows)]

    async def get_unprocessed_turns(self, user_id: str, limit: int = 100) -> list[ConversationTurn]:
        rows = await self._fetchall(
            """
            SELECT * FROM conversations
            WHERE user_id = ? AND processed_for_memory = 0
            ORDER BY id LIMIT ?
            """,
            (user_id, limit),
        )
        return [ConversationTurn.model_validate(r) for r in rows]

    async def mark_turns_processed(self, turn_ids: list[int]) -> int:
        if not turn_ids:
            return 0
        placeholders = ", ".join("?" for _ in turn_ids)
        async with self._write() as db:
            cursor = await db.execute(
                f"UPDATE conversations SET processed_for_memory = 1 WHERE id IN ({placeholders})",
                tuple(turn_ids),
            )
            return cursor.rowcount

    # ------------------------------------------------------------------
    # Usage
    # ------------------------------------------------------------------

    async def record_usage(
        self,
        user_id: str,
        persona_id: str,
        date: str,
        messages_sent: int = 0,
        messages_received: int = 0,
        tokens_in: int = 0,
        tokens_out: int = 0,
    ) -> None:
        async with self._write() as db:
            await db.execute(
                """
                INSERT INTO usage_logs (
                    user_id, persona_id, date, messages_sent, messages_received,
                    tokens_in, tokens_out
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(user_id, persona_id, date) DO UPDATE SET
                    messages_sent = messages_sent + excluded.messages_sent,
                    messages_received = messages_received + excluded.messages_received,
                    tokens_in = tokens_in + excluded.tokens_in,
                    tokens_out = tokens_out + excluded.tokens_out
                """,
                (user_id, persona_id, date, messages_sent, messages_received, tokens_in, tokens_out),
            )

    async def get_usage(self, user_id: str, persona_id: str, date: str) -> dict | None:
        return await self._fetchone(
            "SELECT * FROM usage_logs WHERE user_id = ? AND persona_id = ? AND date = ?",
            (user_id, persona_id, date),
        )

    # ------------------------------------------------------------------
    # Hot tier
    # ------------------------------------------------------------------

    async def get_hot_memory(self, persona_id: str, user_id: str) -> dict | None:
        row = await self._fetchone(
            "SELECT core, relationship, threads FROM hot_memories WHERE persona_id = ? AND user_id = ?",
            (persona_id, user_id),
        )
        if row is None:
            return None
        return {
            "core": json.loads(row["core"]),
            "relationship": json.loads(row["relationship"]),
            "threads": json.loads(row["threads"]),
        }

    async def put_hot_memory(
        self,
        persona_id: str,
        user_id: str,
        document: dict,
        only_if_absent: bool = False,
    ) -> bool:
        """Store the hot memory document.

        Args:
            only_if_absent: Leave an existing document untouched

        Returns:
            True if a row was written
        """
        verb = "INSERT OR IGNORE" if only_if_absent else "INSERT OR REPLACE"
        async with self._write() as db:
            cursor = await db.execute(
                f"""
                {verb} INTO hot_memories (persona_id, user_id, core, relationship, threads, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    persona_id,
                    user_id,
                    json.dumps(document["core"]),
                    json.dumps(document["relationship"]),
                    json.dumps(document["threads"]),
                    _now(),
                ),
            )
            return cursor.rowcount > 0

    # ------------------------------------------------------------------
    # Warm tier
    # ------------------------------------------------------------------

    async def get_people(self, persona_id: str, user_id: str) -> list[dict]:
        rows = await self._fetchall(
            "SELECT * FROM person_memories WHERE persona_id = ? AND user_id = ? ORDER BY slug",
            (persona_id, user_id),
        )
        for row in rows:
            row["key_facts"] = json.loads(row["key_facts"])
        return rows

    async def get_person(self, persona_id: str, user_id: str, slug: str) -> dict | None:
        row = await self._fetchone(
            "SELECT * FROM person_memories WHERE persona_id = ? AND user_id = ? AND slug = ?",
            (persona_id, user_id, slug),
        )
        if row:
            row["key_facts"] = json.loads(row["key_facts"])
        return row

    async def put_person(self, persona_id: str, user_id: str, person: dict) -> None:
        async with self._write() as db:
            await db.execute(
                """
                INSERT OR REPLACE INTO person_memories (
                    persona_id, user_id, slug, name, relationship_to_user, key_facts,
                    sentiment, first_mentioned, last_mentioned, mention_count
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    persona_id,
                    user_id,
                    person["slug"],
                    person["name"],
                    person["relationship_to_user"],
                    json.dumps(person["key_facts"]),
                    person["sentiment"],
                    person["first_mentioned"],
                    person["last_mentioned"],
                    person["mention_count"],
                ),
            )

    # ------------------------------------------------------------------
    # Cold tier
    # ------------------------------------------------------------------

    async def insert_summary(self, persona_id: str, user_id: str, summary: dict) -> str:
        async with self._write() as db:
            await db.execute(
                """
                INSERT INTO conversation_summaries (
                    id, persona_id, user_id, month, date, summary, topics, people,
                    vibe, emotion, memorable_quote, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    summary["id"],
                    persona_id,
                    user_id,
                    summary["month"],
                    summary["date"],
                    summary["summary"],
                    json.dumps(summary["topics"]),
                    json.dumps(summary["people"]),
                    summary["vibe"],
                    summary["emotion"],
                    summary["memorable_quote"],
                    _now(),
                ),
            )
        return summary["id"]

    async def get_summaries(self, persona_id: str, user_id: str, months: list[str]) -> list[dict]:
        """Summaries whose month is in ``months``, newest first."""
        if not months:
            return []
        placeholders = ", ".join("?" for _ in months)
        rows = await self._fetchall(
            f"""
            SELECT * FROM conversation_summaries
            WHERE persona_id = ? AND user_id = ? AND month IN ({placeholders})
            ORDER BY date DESC
            """,
            (persona_id, user_id, *months),
        )
        for row in rows:
            row["topics"] = json.loads(row["topics"])
            row["people"] = json.loads(row["people"])
        return rows
