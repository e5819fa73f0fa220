"""Scheduled maintenance entry point.

The hosting platform calls ``MaintenanceRunner.run`` on a fixed cadence.
Jobs are plain async callables registered by name; they work through the
lifecycle and memory store interfaces like any other caller.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable

from loguru import logger

from .lifecycle import LifecycleService, SubscriptionLapsed
from .memory.store import MemoryStore
from .storage.sqlite_store import SQLiteStore


@dataclass
class MaintenanceContext:
    store: SQLiteStore
    memory: MemoryStore
    lifecycle: LifecycleService
    now: datetime


MaintenanceJob = Callable[[MaintenanceContext], Awaitable[int]]


@dataclass
class MaintenanceReport:
    started_at: datetime
    results: dict[str, int] = field(default_factory=dict)
    failures: dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failures


async def subscription_expiry_sweep(ctx: MaintenanceContext) -> int:
    """Pause active users whose paid period has ended without renewal.

    Returns:
        int: Number of users moved to paused
    """
    paused = 0
    for user in await ctx.store.list_users_with_period_ended(ctx.now):
        outcome = await ctx.lifecycle.apply(
            user,
            SubscriptionLapsed(),
            max_free_messages=0,
            delivery_key=f"expiry:{user.id}:{user.subscription_current_period_end.isoformat()}",
            now=ctx.now,
        )
        if outcome is not None and outcome.result.changed:
            paused += 1
    return paused


def delivery_key_pruner(retention: timedelta) -> MaintenanceJob:
    """Build a job that forgets delivery keys older than ``retention``."""

    async def prune_delivery_keys(ctx: MaintenanceContext) -> int:
        return await ctx.store.prune_deliveries(ctx.now - retention)

    return prune_delivery_keys


class MaintenanceRunner:
    """Runs registered maintenance jobs; one failing job does not stop the rest."""

    def __init__(self, store: SQLiteStore, delivery_retention: timedelta = timedelta(days=7)):
        self.store = store
        self.memory = MemoryStore(store)
        self.lifecycle = LifecycleService(store)
        self._jobs: dict[str, MaintenanceJob] = {}
        self.register("subscription_expiry_sweep", subscription_expiry_sweep)
        self.register("prune_delivery_keys", delivery_key_pruner(delivery_retention))

    def register(self, name: str, job: MaintenanceJob) -> None:
        self._jobs[name] = job

    @property
    def jobs(self) -> list[str]:
        return list(self._jobs)

    async def run(self, now: datetime | None = None) -> MaintenanceReport:
        now = now or datetime.now(timezone.utc)
        report = MaintenanceReport(started_at=now)
        ctx = MaintenanceContext(
            store=self.store, memory=self.memory, lifecycle=self.lifecycle, now=now
        )

        for name, job in self._jobs.items():
            try:
                report.results[name] = await job(ctx)
                logger.info(f"Maintenance job {name} finished: {report.results[name]}")
            except Exception as e:
                report.failures[name] = str(e)
                logger.exception(f"Maintenance job {name} failed")

        return report
