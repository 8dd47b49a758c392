"""
Admin dashboard figures computed over the merged record store.
"""

from decimal import Decimal

from copytrade.models.strategy import Strategy
from copytrade.models.user import User, UserRole
from copytrade.models.wallet import TransactionStatus, WalletTransaction
from copytrade.services.record_store import RecordStore


async def dashboard_summary(store: RecordStore) -> dict:
    """User, payment, revenue and strategy counts.

    Revenue is the sum of credited amounts of completed payments (the stored
    amount where no credit amount was recorded).
    """
    users = await store.list(User)
    transactions = await store.list(WalletTransaction)
    strategies = await store.list(Strategy)

    admins = sum(1 for u in users if u.role == UserRole.ADMIN.value)
    verified = sum(1 for u in users if u.email_verified)

    by_status = {status.value: 0 for status in TransactionStatus}
    revenue = Decimal("0")
    for t in transactions:
        by_status[t.status] = by_status.get(t.status, 0) + 1
        if t.status == TransactionStatus.COMPLETED.value:
            revenue += t.credited_amount if t.credited_amount is not None else t.amount

    return {
        "users": {
            "total": len(users),
            "active": verified,
            "inactive": len(users) - verified,
            "disabled": sum(1 for u in users if not u.enabled),
            "admin": admins,
            "regular": len(users) - admins,
        },
        "payments": {
            "total": len(transactions),
            "pending": by_status[TransactionStatus.PENDING.value],
            "in_process": by_status[TransactionStatus.IN_PROCESS.value],
            "approved": by_status[TransactionStatus.COMPLETED.value],
            "rejected": by_status[TransactionStatus.FAILED.value],
        },
        "revenue": {"total": revenue},
        "strategies": {"total": len(strategies)},
    }
