"""Tests for the scheduled maintenance runner."""

from datetime import datetime, timedelta, timezone

from persona_sms.maintenance import MaintenanceRunner
from persona_sms.models import SubscriptionStatus, User, UserStatus

NOW = datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc)


async def make_active(store, persona, phone, period_end):
    user = await store.create_user(User(phone_number=phone, persona_id=persona.id))
    await store.update_user(
        user.id,
        status=UserStatus.ACTIVE,
        subscription_status=SubscriptionStatus.ACTIVE,
        subscription_current_period_end=period_end,
    )
    return user


async def test_expiry_sweep_pauses_lapsed_users(store, persona):
    expired = await make_active(store, persona, "+15550001111", NOW - timedelta(days=2))
    current = await make_active(store, persona, "+15550002222", NOW + timedelta(days=20))

    runner = MaintenanceRunner(store)
    report = await runner.run(now=NOW)

    assert report.ok
    assert report.results["subscription_expiry_sweep"] == 1
    assert (await store.get_user(expired.id)).status == UserStatus.PAUSED
    assert (await store.get_user(expired.id)).subscription_status == SubscriptionStatus.PAST_DUE
    assert (await store.get_user(current.id)).status == UserStatus.ACTIVE

    report = await runner.run(now=NOW)
    assert report.results["subscription_expiry_sweep"] == 0


async def test_failing_job_does_not_stop_others(store):
    runner = MaintenanceRunner(store)
    calls = []

    async def broken(ctx):
        raise RuntimeError("consolidation backend offline")

    async def counting(ctx):
        calls.append(ctx.now)
        return 3

    runner.register("consolidation", broken)
    runner.register("counting", counting)
    report = await runner.run(now=NOW)

    assert not report.ok
    assert "consolidation" in report.failures
    assert report.results["counting"] == 3
    assert calls == [NOW]
    assert runner.jobs == [
        "subscription_expiry_sweep",
        "prune_delivery_keys",
        "consolidation",
        "counting",
    ]


async def test_stale_delivery_keys_pruned(store):
    await store.claim_delivery("sms:old", at=NOW - timedelta(days=10))
    await store.claim_delivery("sms:recent", at=NOW - timedelta(days=1))

    report = await MaintenanceRunner(store, delivery_retention=timedelta(days=7)).run(now=NOW)

    assert report.results["prune_delivery_keys"] == 1
    assert await store.claim_delivery("sms:old")
    assert not await store.claim_delivery("sms:recent")


async def test_period_end_with_offset_compared_in_utc(store, persona):
    # 13:00+03:00 is 10:00 UTC, before NOW even though it reads later
    moscow = timezone(timedelta(hours=3))
    expired = await make_active(
        store, persona, "+15550003333", datetime(2026, 3, 15, 13, 0, tzinfo=moscow)
    )

    report = await MaintenanceRunner(store).run(now=NOW)

    assert report.results["subscription_expiry_sweep"] == 1
    assert (await store.get_user(expired.id)).status == UserStatus.PAUSED
