import asyncio
from decimal import Decimal

import pytest

from copytrade.core.exceptions import BackendUnavailable, InvalidTransition, NotFound, ValidationError
from copytrade.models.strategy import RunningStrategy
from copytrade.models.user import User
from copytrade.models.wallet import ProofSubmission, TransactionCreate, WalletTransaction
from copytrade.services.running_strategy_registry import RunningStrategyRegistry
from copytrade.services.transaction_lifecycle import check_transition, normalize_status
from copytrade.services.wallet_ledger import WalletLedger


def purchase(strategy_id=None, amount="150") -> TransactionCreate:
    return TransactionCreate(
        amount=Decimal(amount),
        transaction_type="charge",
        strategy_id=strategy_id,
        plan_level="Pro" if strategy_id else None,
        platform="MT5",
        mt_account_id="5012345",
        mt_account_password="s3cret",
        mt_account_server="Broker-Live",
        terms_accepted=True,
    )


PROOF = ProofSubmission(payment_method="UPI", external_transaction_id="UTR1234567")


class FlakyLedger(WalletLedger):
    """Fails the first `failures` credits"""

    def __init__(self, store, failures=1):
        super().__init__(store)
        self.failures = failures

    async def credit(self, user_id, amount):
        if self.failures:
            self.failures -= 1
            raise BackendUnavailable("database went away")
        return await super().credit(user_id, amount)


class BrokenLedger(WalletLedger):
    async def credit(self, user_id, amount):
        raise RuntimeError("driver blew up")


async def test_create_starts_pending(store, lifecycle, make_user):
    user = await make_user(store)

    tx = await lifecycle.create(user.id, purchase())

    assert tx.status == "pending"
    assert tx.amount == Decimal("150")
    assert tx.id.startswith("trans_")


async def test_create_for_unknown_user_fails(lifecycle):
    with pytest.raises(NotFound):
        await lifecycle.create("user_nobody", purchase())


async def test_proof_then_approve_credits_wallet(store, lifecycle, make_user, make_strategy, notifier):
    user = await make_user(store)
    strategy = await make_strategy(store)
    tx = await lifecycle.create(user.id, purchase(strategy.id))

    proof = await lifecycle.attach_proof(tx.id, user.id, PROOF)
    assert proof.applied
    assert proof.transaction.status == "in-process"
    assert proof.transaction.external_transaction_id == "UTR1234567"
    running = await store.list(RunningStrategy, {"user_id": user.id, "strategy_id": strategy.id})
    assert [r.status for r in running] == ["in-process"]

    result = await lifecycle.approve(tx.id, "admin_1")

    assert result.applied
    assert result.transaction.status == "completed"
    assert result.transaction.credited_amount == Decimal("150")
    assert result.transaction.admin_id == "admin_1"
    assert not result.credit_pending
    assert (await store.get(User, user.id)).wallet_balance == Decimal("150")
    assert notifier.sent[-1][0] == user.email


async def test_double_approve_credits_once(store, lifecycle, make_user):
    user = await make_user(store)
    tx = await lifecycle.create(user.id, purchase())

    first = await lifecycle.approve(tx.id, "admin_1")
    second = await lifecycle.approve(tx.id, "admin_2")

    assert first.applied and not second.applied
    assert second.transaction.status == "completed"
    assert second.transaction.admin_id == "admin_1"
    assert (await store.get(User, user.id)).wallet_balance == Decimal("150")


async def test_concurrent_approvals_credit_once(store, lifecycle, make_user):
    user = await make_user(store)
    tx = await lifecycle.create(user.id, purchase())

    results = await asyncio.gather(*[lifecycle.approve(tx.id, f"admin_{i}") for i in range(5)])

    assert sum(r.applied for r in results) == 1
    assert (await store.get(User, user.id)).wallet_balance == Decimal("150")


async def test_approve_with_explicit_amount(store, lifecycle, make_user):
    user = await make_user(store)
    tx = await lifecycle.create(user.id, purchase(amount="150"))

    result = await lifecycle.approve(tx.id, "admin_1", Decimal("120"))

    assert result.transaction.credited_amount == Decimal("120")
    assert (await store.get(User, user.id)).wallet_balance == Decimal("120")


async def test_reject_after_proof_removes_running_strategy(store, lifecycle, make_user, make_strategy):
    user = await make_user(store)
    strategy = await make_strategy(store)
    tx = await lifecycle.create(user.id, purchase(strategy.id))
    await lifecycle.attach_proof(tx.id, user.id, PROOF)

    result = await lifecycle.reject(tx.id, "admin_1", "Blurry receipt")

    assert result.applied
    assert result.transaction.status == "failed"
    assert result.transaction.rejection_reason == "Blurry receipt"
    assert await store.list(RunningStrategy, {"user_id": user.id, "strategy_id": strategy.id}) == []
    assert (await store.get(User, user.id)).wallet_balance == Decimal("0")


async def test_pending_can_fail_directly(store, lifecycle, make_user):
    user = await make_user(store)
    tx = await lifecycle.create(user.id, purchase())

    result = await lifecycle.reject(tx.id, "admin_1")

    assert result.applied
    assert result.transaction.status == "failed"


async def test_reject_after_approve_is_noop(store, lifecycle, make_user, make_strategy):
    user = await make_user(store)
    strategy = await make_strategy(store)
    tx = await lifecycle.create(user.id, purchase(strategy.id))
    await lifecycle.attach_proof(tx.id, user.id, PROOF)
    await lifecycle.approve(tx.id, "admin_1")

    result = await lifecycle.reject(tx.id, "admin_2", "changed my mind")

    assert not result.applied
    assert result.transaction.status == "completed"
    assert result.transaction.rejection_reason is None
    assert (await store.get(User, user.id)).wallet_balance == Decimal("150")
    assert len(await store.list(RunningStrategy, {"user_id": user.id})) == 1


async def test_approve_after_reject_is_noop(store, lifecycle, make_user):
    user = await make_user(store)
    tx = await lifecycle.create(user.id, purchase())
    await lifecycle.reject(tx.id, "admin_1")

    result = await lifecycle.approve(tx.id, "admin_2")

    assert not result.applied
    assert result.transaction.status == "failed"
    assert (await store.get(User, user.id)).wallet_balance == Decimal("0")


async def test_repeat_reject_is_idempotent(store, lifecycle, make_user):
    user = await make_user(store)
    tx = await lifecycle.create(user.id, purchase("strat_1"))

    await lifecycle.reject(tx.id, "admin_1", "first")
    again = await lifecycle.reject(tx.id, "admin_2", "second")

    assert not again.applied
    assert again.transaction.rejection_reason == "first"


async def test_proof_on_terminal_transaction_is_ignored(store, lifecycle, make_user):
    user = await make_user(store)
    tx = await lifecycle.create(user.id, purchase())
    await lifecycle.reject(tx.id, "admin_1")

    result = await lifecycle.attach_proof(tx.id, user.id, PROOF)

    assert not result.applied
    assert result.transaction.status == "failed"


async def test_proof_from_another_user_is_not_found(store, lifecycle, make_user):
    owner = await make_user(store)
    stranger = await make_user(store)
    tx = await lifecycle.create(owner.id, purchase())

    with pytest.raises(NotFound):
        await lifecycle.attach_proof(tx.id, stranger.id, PROOF)


async def test_status_only_moves_forward(store, lifecycle, make_user):
    user = await make_user(store)
    tx = await lifecycle.create(user.id, purchase())
    seen = [tx.status]

    seen.append((await lifecycle.attach_proof(tx.id, user.id, PROOF)).transaction.status)
    seen.append((await lifecycle.approve(tx.id, "admin_1")).transaction.status)
    seen.append((await lifecycle.attach_proof(tx.id, user.id, PROOF)).transaction.status)
    seen.append((await lifecycle.reject(tx.id, "admin_1")).transaction.status)

    assert seen == ["pending", "in-process", "completed", "completed", "completed"]


async def test_send_message_keeps_status(store, lifecycle, make_user, notifier):
    user = await make_user(store)
    tx = await lifecycle.create(user.id, purchase())

    result = await lifecycle.send_message(tx.id, "admin_1", "  Please upload the bank receipt  ")

    assert result.applied
    assert result.transaction.status == "pending"
    assert result.transaction.admin_message == "Please upload the bank receipt"
    assert result.transaction.admin_message_status == "pending"
    assert result.transaction.admin_id == "admin_1"
    assert notifier.sent[-1][0] == user.email


async def test_send_message_rejects_empty_text(store, lifecycle, make_user):
    user = await make_user(store)
    tx = await lifecycle.create(user.id, purchase())

    with pytest.raises(ValidationError):
        await lifecycle.send_message(tx.id, "admin_1", "   ")


async def test_send_message_on_terminal_is_noop(store, lifecycle, make_user):
    user = await make_user(store)
    tx = await lifecycle.create(user.id, purchase())
    await lifecycle.approve(tx.id, "admin_1")

    result = await lifecycle.send_message(tx.id, "admin_2", "late note")

    assert not result.applied
    assert result.transaction.admin_message is None


async def test_unknown_transaction(lifecycle):
    with pytest.raises(NotFound):
        await lifecycle.approve("trans_missing", "admin_1")


@pytest.mark.parametrize("raw, expected", [
    ("approved", "completed"),
    ("Completed", "completed"),
    ("rejected", "failed"),
    ("in_process", "in-process"),
])
def test_normalize_status(raw, expected):
    assert normalize_status(raw) == expected


def test_normalize_status_rejects_unknown():
    with pytest.raises(ValidationError):
        normalize_status("refunded")


async def test_decide_dispatches_on_normalized_status(store, lifecycle, make_user):
    user = await make_user(store)
    approved = await lifecycle.create(user.id, purchase())
    rejected = await lifecycle.create(user.id, purchase())

    assert (await lifecycle.decide(approved.id, "admin_1", "approved")).transaction.status == "completed"
    assert (await lifecycle.decide(rejected.id, "admin_1", "rejected", reason="dup")).transaction.status == "failed"
    with pytest.raises(ValidationError):
        await lifecycle.decide(rejected.id, "admin_1", "pending")


async def test_balance_equals_sum_of_credits(store, lifecycle, make_user):
    user = await make_user(store)
    amounts = ["150", "99.50", "20"]
    txs = [await lifecycle.create(user.id, purchase(amount=a)) for a in amounts]

    for tx in txs:
        await lifecycle.approve(tx.id, "admin_1")
    await lifecycle.approve(txs[0].id, "admin_1")

    completed = await store.list(WalletTransaction, {"user_id": user.id, "status": "completed"})
    assert sum(t.credited_amount for t in completed) == Decimal("269.50")
    assert (await store.get(User, user.id)).wallet_balance == Decimal("269.50")


async def test_failed_credit_is_flagged_and_retried(store, lifecycle_factory, make_user):
    user = await make_user(store)
    lifecycle = lifecycle_factory(store, FlakyLedger(store, failures=1))
    tx = await lifecycle.create(user.id, purchase())

    result = await lifecycle.approve(tx.id, "admin_1")

    assert result.applied
    assert result.transaction.status == "completed"
    assert result.credit_pending
    assert (await store.get(User, user.id)).wallet_balance == Decimal("0")

    retried = await lifecycle.retry_pending_credits()

    assert [r.applied for r in retried] == [True]
    assert not (await store.get(WalletTransaction, tx.id)).credit_pending
    assert (await store.get(User, user.id)).wallet_balance == Decimal("150")
    assert await lifecycle.retry_pending_credits() == []


async def test_full_flow_while_relational_store_is_down(down_store, down_lifecycle, json_store, make_user):
    user = await make_user(down_store)
    tx = await down_lifecycle.create(user.id, purchase("strat_1"))

    await down_lifecycle.attach_proof(tx.id, user.id, PROOF)
    result = await down_lifecycle.approve(tx.id, "admin_1")

    assert result.applied
    assert result.transaction.status == "completed"
    assert (await down_store.get(User, user.id)).wallet_balance == Decimal("150")
    doc = await json_store.read()
    assert [row["status"] for row in doc["wallet_transactions"]] == ["completed"]
    assert ("wallet_transactions", tx.id) in down_store.degraded


async def test_records_written_during_outage_are_visible_after_recovery(
    store, down_store, down_lifecycle, lifecycle, make_user
):
    user = await make_user(down_store)
    tx = await down_lifecycle.create(user.id, purchase())
    await down_lifecycle.attach_proof(tx.id, user.id, PROOF)

    result = await lifecycle.approve(tx.id, "admin_1")

    assert result.applied
    assert (await store.get(User, user.id)).wallet_balance == Decimal("150")
    assert (await store.relational.get(WalletTransaction, tx.id))["status"] == "completed"


async def test_list_for_review_hydrates_user_and_strategy(store, lifecycle, make_user, make_strategy):
    user = await make_user(store, name="Ravi")
    strategy = await make_strategy(store, name="Trend Rider")
    await lifecycle.create(user.id, purchase(strategy.id))
    done = await lifecycle.create(user.id, purchase())
    await lifecycle.approve(done.id, "admin_1")

    rows = await lifecycle.list_for_review(["pending", "in-process"])

    assert len(rows) == 1
    assert rows[0]["user"] == {"id": user.id, "name": "Ravi", "email": user.email}
    assert rows[0]["strategy"] == {"id": strategy.id, "name": "Trend Rider"}


@pytest.mark.parametrize("current, target", [
    ("completed", "failed"),
    ("failed", "completed"),
    ("completed", "in-process"),
    ("in-process", "pending"),
])
def test_transition_table_rejects_backward_moves(current, target):
    with pytest.raises(InvalidTransition):
        check_transition(current, target)


async def test_repeat_reject_leaves_newer_purchase_running(store, lifecycle, make_user, make_strategy):
    user = await make_user(store)
    strategy = await make_strategy(store)
    first = await lifecycle.create(user.id, purchase(strategy.id))
    await lifecycle.attach_proof(first.id, user.id, PROOF)
    await lifecycle.reject(first.id, "admin_1", "wrong amount")

    second = await lifecycle.create(user.id, purchase(strategy.id))
    await lifecycle.attach_proof(second.id, user.id, PROOF)
    again = await lifecycle.reject(first.id, "admin_1", "wrong amount")

    assert not again.applied
    running = await store.list(RunningStrategy, {"user_id": user.id, "strategy_id": strategy.id})
    assert [r.status for r in running] == ["in-process"]


async def test_unexpected_ledger_error_keeps_credit_pending(store, lifecycle, lifecycle_factory, make_user):
    user = await make_user(store)
    broken = lifecycle_factory(store, BrokenLedger(store))
    tx = await broken.create(user.id, purchase())

    result = await broken.approve(tx.id, "admin_1")

    assert result.applied
    assert result.transaction.status == "completed"
    assert result.credit_pending
    assert (await store.get(User, user.id)).wallet_balance == Decimal("0")

    await lifecycle.retry_pending_credits()
    assert (await store.get(User, user.id)).wallet_balance == Decimal("150")


async def test_repurchase_after_outage_removal_deploys_again(store, down_store, lifecycle, make_user, make_strategy):
    user = await make_user(store)
    strategy = await make_strategy(store)
    first = await lifecycle.create(user.id, purchase(strategy.id))
    await lifecycle.attach_proof(first.id, user.id, PROOF)
    await RunningStrategyRegistry(down_store).remove(user.id, strategy.id)

    second = await lifecycle.create(user.id, purchase(strategy.id))
    proof = await lifecycle.attach_proof(second.id, user.id, PROOF)

    assert proof.applied
    assert proof.transaction.status == "in-process"
    running = await store.list(RunningStrategy, {"user_id": user.id, "strategy_id": strategy.id})
    assert len(running) == 1
