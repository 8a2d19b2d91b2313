import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import delete, inspect, select, update

from core.db import utcnow
from core.errors import PersistenceError, ValidationError
from models.db_models import Run as DBRun, Subscription as DBSubscription
from models.schemas import RunCreate, SubscriptionCriteria, SubscriptionUpdate
from conftest import PHONE


CRITERIA = SubscriptionCriteria(institution_key="guelph", course_key="CIS*2750", section_key="0101", term_key="F26")


async def age_runs(store, seconds, *run_ids):
    """Push run timestamps into the past."""
    async with store.engine.begin() as conn:
        await conn.execute(
            update(DBRun).where(DBRun.id.in_(run_ids)).values(timestamp=utcnow() - timedelta(seconds=seconds))
        )


async def run_ids(store):
    async with store.engine.connect() as conn:
        return set((await conn.execute(select(DBRun.id))).scalars().all())


@pytest.mark.asyncio
async def test_create_returns_unverified_subscription_with_key(store):
    sub = await store.create(CRITERIA, f"  {PHONE} ")

    assert sub.id is not None
    assert len(sub.access_key) == 8
    assert sub.contact == PHONE
    assert sub.enabled is True
    assert sub.verified is False
    assert sub.last_run_id is None
    assert await store.get(access_key=sub.access_key) == sub


@pytest.mark.asyncio
@pytest.mark.parametrize("field", ["institution_key", "course_key", "term_key"])
async def test_create_requires_course_fields(store, field):
    criteria = CRITERIA.model_copy(update={field: "   "})
    with pytest.raises(ValidationError) as exc_info:
        await store.create(criteria, PHONE)
    assert field in str(exc_info.value)


@pytest.mark.asyncio
async def test_create_requires_contact(store):
    with pytest.raises(ValidationError):
        await store.create(CRITERIA, "")


@pytest.mark.asyncio
async def test_concurrent_creates_get_distinct_keys(store):
    subs = await asyncio.gather(*(store.create(CRITERIA, PHONE) for _ in range(10)))
    assert len({s.access_key for s in subs}) == 10


@pytest.mark.asyncio
async def test_create_retries_on_key_collision(store, monkeypatch):
    first = await store.create(CRITERIA, PHONE)
    keys = iter([first.access_key, first.access_key, "fresh001"])
    monkeypatch.setattr("services.subscription_store.generate_access_key", lambda length: next(keys))

    sub = await store.create(CRITERIA, PHONE)
    assert sub.access_key == "fresh001"


@pytest.mark.asyncio
async def test_create_gives_up_after_max_attempts(store, monkeypatch):
    first = await store.create(CRITERIA, PHONE)
    monkeypatch.setattr("services.subscription_store.generate_access_key", lambda length: first.access_key)
    store.max_key_attempts = 3
    with pytest.raises(PersistenceError):
        await store.create(CRITERIA, PHONE)


@pytest.mark.asyncio
async def test_update_only_touches_given_fields(make_subscription, store):
    sub = await make_subscription(section_key="0101")
    updated = await store.update(SubscriptionUpdate(section_key="0102"), access_key=sub.access_key)

    assert updated.section_key == "0102"
    assert updated.course_key == sub.course_key
    assert updated.contact == sub.contact
    assert updated.verified is True


@pytest.mark.asyncio
async def test_update_clears_last_run_pointer(make_subscription, store):
    sub = await make_subscription()
    await store.create_run(RunCreate(notification_sent=True), sub.id)
    assert (await store.get(subscription_id=sub.id)).last_run_id is not None

    updated = await store.update(SubscriptionUpdate(enabled=True), subscription_id=sub.id)
    assert updated.last_run_id is None


@pytest.mark.asyncio
async def test_contact_change_clears_verified(make_subscription, store):
    sub = await make_subscription()

    same = await store.update(SubscriptionUpdate(contact=PHONE), subscription_id=sub.id)
    assert same.verified is True

    changed = await store.update(SubscriptionUpdate(contact="+15195550199"), subscription_id=sub.id)
    assert changed.verified is False


@pytest.mark.asyncio
async def test_update_validation_and_missing(store):
    with pytest.raises(ValidationError):
        await store.update(SubscriptionUpdate(enabled=False))
    with pytest.raises(ValidationError):
        await store.update(SubscriptionUpdate(course_key=""), subscription_id=1)
    with pytest.raises(ValidationError):
        await store.update(SubscriptionUpdate(enabled=None), subscription_id=1)

    assert await store.update(SubscriptionUpdate(enabled=False), access_key="nope") is None
    assert await store.get(subscription_id=9999) is None


@pytest.mark.asyncio
async def test_create_run_moves_pointer(make_subscription, store):
    sub = await make_subscription()
    run = await store.create_run(RunCreate(notification_sent=False, source_data={"sections": []}), sub.id)

    assert run.subscription_id == sub.id
    assert run.source_data == {"sections": []}
    stored = await store.get(subscription_id=sub.id)
    assert stored.last_run_id == run.id
    # bookkeeping write is not an edit
    assert stored.updated_at == sub.updated_at


@pytest.mark.asyncio
async def test_create_run_validation(make_subscription, store):
    sub = await make_subscription()
    with pytest.raises(ValidationError):
        await store.create_run(RunCreate(notification_sent=True))
    with pytest.raises(ValidationError):
        await store.create_run(RunCreate(), sub.id)


@pytest.mark.asyncio
async def test_create_run_for_unknown_subscription_leaves_nothing(store):
    with pytest.raises(PersistenceError):
        await store.create_run(RunCreate(notification_sent=False), 4242)
    assert await run_ids(store) == set()


@pytest.mark.asyncio
async def test_failed_pointer_move_rolls_back_insert(make_subscription, store, monkeypatch):
    sub = await make_subscription()
    previous = await store.create_run(RunCreate(notification_sent=True), sub.id)

    async def broken_pointer(session, subscription_id, run_id):
        raise PersistenceError("pointer update failed")

    monkeypatch.setattr(store, "_move_pointer", broken_pointer)
    with pytest.raises(PersistenceError):
        await store.create_run(RunCreate(notification_sent=False), sub.id)

    assert await run_ids(store) == {previous.id}
    assert (await store.get(subscription_id=sub.id)).last_run_id == previous.id


@pytest.mark.asyncio
async def test_list_due_filters_and_joins_last_run(make_subscription, store):
    due = await make_subscription()
    await make_subscription(verified=False)
    await make_subscription(enabled=False)
    fresh = await make_subscription()
    await store.create_run(RunCreate(notification_sent=True), fresh.id)

    result = await store.list_due(ttl_seconds=300)

    assert [a.subscription.id for a in result] == [due.id]
    assert result[0].last_run is None
    assert result[0].notification_sent is False


@pytest.mark.asyncio
async def test_list_due_orders_never_checked_then_oldest(make_subscription, store):
    newer = await make_subscription()
    older = await make_subscription()
    never = await make_subscription()
    newer_run = await store.create_run(RunCreate(notification_sent=True), newer.id)
    older_run = await store.create_run(RunCreate(notification_sent=False), older.id)
    await age_runs(store, 600, newer_run.id)
    await age_runs(store, 900, older_run.id)

    result = await store.list_due(ttl_seconds=300)

    assert [a.subscription.id for a in result] == [never.id, older.id, newer.id]
    assert result[2].last_run.id == newer_run.id
    assert result[2].notification_sent is True

    limited = await store.list_due(ttl_seconds=300, limit=2)
    assert [a.subscription.id for a in limited] == [never.id, older.id]


@pytest.mark.asyncio
async def test_prune_keeps_runs_still_pointed_at(make_subscription, store):
    sub = await make_subscription()
    old = await store.create_run(RunCreate(notification_sent=False), sub.id)
    latest = await store.create_run(RunCreate(notification_sent=True), sub.id)
    recent_other = await make_subscription()
    recent = await store.create_run(RunCreate(notification_sent=False), recent_other.id)
    await age_runs(store, 7200, old.id, latest.id)

    await store.prune_runs()

    assert await run_ids(store) == {latest.id, recent.id}


@pytest.mark.asyncio
async def test_prune_disabled_with_zero_retention(make_subscription, store):
    sub = await make_subscription()
    old = await store.create_run(RunCreate(notification_sent=False), sub.id)
    await store.create_run(RunCreate(notification_sent=False), sub.id)
    await age_runs(store, 7200, old.id)

    store.run_retention_sec = 0
    await store.prune_runs()
    assert old.id in await run_ids(store)


@pytest.mark.asyncio
async def test_list_runs_newest_first(make_subscription, store):
    sub = await make_subscription()
    other = await make_subscription()
    first = await store.create_run(RunCreate(notification_sent=False), sub.id)
    second = await store.create_run(RunCreate(notification_sent=True, error=None), sub.id)
    await store.create_run(RunCreate(notification_sent=False), other.id)

    by_key = await store.list_runs(access_key=sub.access_key)
    assert [r.id for r in by_key] == [second.id, first.id]
    assert [r.id for r in await store.list_runs(subscription_id=sub.id, limit=1)] == [second.id]
    assert await store.list_runs(access_key="missing") == []
    assert (await store.get_run(first.id)).notification_sent is False
    assert await store.get_run(9999) is None


@pytest.mark.asyncio
async def test_closed_store_refuses_work():
    from services.subscription_store import SubscriptionStore

    closed = SubscriptionStore("sqlite+aiosqlite:///:memory:")
    with pytest.raises(PersistenceError):
        await closed.get(subscription_id=1)


@pytest.mark.asyncio
async def test_deleting_subscription_cascades_to_runs(make_subscription, store):
    sub = await make_subscription()
    keep = await make_subscription()
    await store.create_run(RunCreate(notification_sent=False), sub.id)
    kept = await store.create_run(RunCreate(notification_sent=False), keep.id)

    async with store.engine.begin() as conn:
        await conn.execute(delete(DBSubscription).where(DBSubscription.id == sub.id))

    assert await run_ids(store) == {kept.id}
    # the foreign key does the work, the mappers carry no relationships
    assert not inspect(DBSubscription).relationships
    assert not inspect(DBRun).relationships
