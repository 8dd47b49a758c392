import asyncio
from decimal import Decimal

import pytest

from copytrade.core.exceptions import NotFound, ValidationError
from copytrade.models.strategy import RunningStrategy
from copytrade.models.wallet import WalletTransaction
from copytrade.services.running_strategy_registry import RunningStrategyRegistry


@pytest.fixture
def registry(store):
    return RunningStrategyRegistry(store)


async def deployed(store, registry, user, strategy, admin_status=None):
    await store.insert(WalletTransaction(
        user_id=user.id,
        strategy_id=strategy.id,
        amount=Decimal("150"),
        status="in-process",
        platform="MT5",
        mt_account_id="5012345",
        mt_account_password="old-pass",
        mt_account_server="Broker-Live",
    ))
    instance = await registry.ensure(user.id, strategy.id, plan="Pro", capital=Decimal("1000"))
    if admin_status:
        instance = await registry.set_admin_status(instance.id, admin_status)
    return instance


async def test_ensure_is_idempotent(store, registry, make_user):
    user = await make_user(store)

    first = await registry.ensure(user.id, "strat_1", plan="Pro")
    second = await registry.ensure(user.id, "strat_1", plan="Expert")

    assert first.id == second.id
    assert second.plan == "Pro"
    assert first.status == "in-process"
    assert first.admin_status == "in-process"


async def test_concurrent_ensure_creates_one_instance(store, registry, make_user):
    user = await make_user(store)

    results = await asyncio.gather(*[registry.ensure(user.id, "strat_1") for _ in range(5)])

    assert len({r.id for r in results}) == 1
    assert len(await store.list(RunningStrategy, {"user_id": user.id})) == 1
    assert registry._pair_locks == {}


async def test_two_registries_share_the_unique_key(store, make_user):
    user = await make_user(store)

    a, b = await asyncio.gather(
        RunningStrategyRegistry(store).ensure(user.id, "strat_1"),
        RunningStrategyRegistry(store).ensure(user.id, "strat_1"),
    )

    assert a.id == b.id


async def test_remove_deletes_the_pair(store, registry, make_user):
    user = await make_user(store)
    await registry.ensure(user.id, "strat_1")
    await registry.ensure(user.id, "strat_2")

    assert await registry.remove(user.id, "strat_1") == 1
    assert await registry.remove(user.id, "strat_1") == 0
    assert [r.strategy_id for r in await store.list(RunningStrategy, {"user_id": user.id})] == ["strat_2"]


async def test_set_admin_status_leaves_lifecycle_status(store, registry, make_user, make_strategy):
    user = await make_user(store)
    strategy = await make_strategy(store)
    instance = await deployed(store, registry, user, strategy)

    updated = await registry.set_admin_status(instance.id, "wrong-account-password")

    assert updated.admin_status == "wrong-account-password"
    assert updated.status == "in-process"


async def test_set_admin_status_rejects_unknown_value(store, registry, make_user):
    user = await make_user(store)
    instance = await registry.ensure(user.id, "strat_1")

    with pytest.raises(ValidationError):
        await registry.set_admin_status(instance.id, "paused")


async def test_user_cannot_move_account_while_running(store, registry, make_user, make_strategy):
    user = await make_user(store)
    strategy = await make_strategy(store)
    instance = await deployed(store, registry, user, strategy, admin_status="running")

    with pytest.raises(ValidationError):
        await registry.apply_modification(
            instance.id, {"mt_account_server": "Other-Broker"}, requested_by=user.id
        )


async def test_password_change_while_running_resets_verification(store, registry, make_user, make_strategy):
    user = await make_user(store)
    strategy = await make_strategy(store)
    instance = await deployed(store, registry, user, strategy, admin_status="running")

    view = await registry.apply_modification(
        instance.id,
        {"mt_account_password": "new-pass", "mt_account_server": "Broker-Live"},
        requested_by=user.id,
    )

    assert view.admin_status == "in-process"
    latest = await registry.latest_transaction(user.id, strategy.id)
    assert latest.mt_account_password == "new-pass"
    mods = await registry.list_modifications(instance.id)
    assert len(mods) == 1
    assert mods[0].new_update_json == {"mt_account_password": "new-pass", "mt_account_server": "Broker-Live"}


async def test_admin_details_edit_keeps_admin_status(store, registry, make_user, make_strategy):
    user = await make_user(store)
    strategy = await make_strategy(store)
    instance = await deployed(store, registry, user, strategy, admin_status="wrong-account-server-name")

    view = await registry.apply_modification(instance.id, {"mt_account_server": "Broker-Live2"})

    assert view.admin_status == "wrong-account-server-name"
    assert view.mt_account_server == "Broker-Live2"


async def test_modification_of_someone_elses_strategy(store, registry, make_user, make_strategy):
    owner = await make_user(store)
    other = await make_user(store)
    strategy = await make_strategy(store)
    instance = await deployed(store, registry, owner, strategy)

    with pytest.raises(NotFound):
        await registry.apply_modification(instance.id, {"mt_account_password": "x"}, requested_by=other.id)


async def test_views_carry_latest_credentials(store, registry, make_user, make_strategy):
    user = await make_user(store, name="Meera")
    strategy = await make_strategy(store, name="Nifty Momentum")
    await deployed(store, registry, user, strategy)
    stopped = await registry.ensure(user.id, "strat_old")
    await store.compare_and_set(RunningStrategy, stopped.id, {"status": "stopped"})

    views = await registry.list_for_user(user.id)

    assert len(views) == 1
    assert views[0].strategy_name == "Nifty Momentum"
    assert views[0].user_name == "Meera"
    assert views[0].mt_account_id == "5012345"
    assert [v.id for v in await registry.list_admin()] == [views[0].id]


async def test_remove_during_outage_hides_instance(store, down_store, make_user):
    user = await make_user(store)
    await RunningStrategyRegistry(store).ensure(user.id, "strat_1")

    await RunningStrategyRegistry(down_store).remove(user.id, "strat_1")

    assert await RunningStrategyRegistry(store).find(user.id, "strat_1") is None


async def test_repurchase_after_outage_removal_applies_the_tombstone(store, down_store, make_user):
    user = await make_user(store)
    old = await RunningStrategyRegistry(store).ensure(user.id, "strat_1")
    await RunningStrategyRegistry(down_store).remove(user.id, "strat_1")
    assert await store.relational.get(RunningStrategy, old.id) is not None

    fresh = await RunningStrategyRegistry(store).ensure(user.id, "strat_1", plan="Expert")

    assert fresh.id != old.id
    assert fresh.plan == "Expert"
    assert await store.relational.get(RunningStrategy, old.id) is None
    assert await store.tombstones() == []
    assert [r.id for r in await store.list(RunningStrategy, {"user_id": user.id})] == [fresh.id]
