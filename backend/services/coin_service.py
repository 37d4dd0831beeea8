"""
Coin Ledger Service — append-only coin ledger with a cached balance.

Invariant:
    SUM(coin_ledger.amount WHERE user_id = u) == users.coins_balance

Every mutation writes its ledger row and its balance delta inside the
caller's transaction; the caller commits or rolls back both together.
Debits use a single conditional UPDATE (balance >= amount) so two
concurrent debits can never both pass the balance check.
"""
import logging
from datetime import datetime, timedelta

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from db_models import CoinLedgerEntry, Order, User
from domain.enums import CoinSource
from domain.errors import InsufficientBalanceError, NotFoundError, ValidationError
from services.cache_service import mark_order_changed

logger = logging.getLogger(__name__)


def _check_amount(amount: int) -> int:
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise ValidationError("Coin amount must be a positive integer", field="amount")
    return amount


async def get_balance(db: AsyncSession, user_id: int) -> int:
    res = await db.execute(select(User.coins_balance).where(User.id == user_id))
    balance = res.scalar_one_or_none()
    if balance is None:
        raise NotFoundError("User", str(user_id))
    return balance


async def get_ledger(db: AsyncSession, user_id: int, limit: int = 20) -> list[CoinLedgerEntry]:
    res = await db.execute(
        select(CoinLedgerEntry)
        .where(CoinLedgerEntry.user_id == user_id)
        .order_by(CoinLedgerEntry.created_at.desc(), CoinLedgerEntry.id.desc())
        .limit(limit)
    )
    return res.scalars().all()


async def credit(
    db: AsyncSession,
    *,
    user_id: int,
    amount: int,
    source: CoinSource,
    reference_id: str | None = None,
    expires_at: datetime | None = None,
) -> int:
    """
    Credit coins. Returns the new balance.

    Credits expire after settings.coin_credit_expiry_days unless an explicit
    expiry is given.
    """
    _check_amount(amount)

    res = await db.execute(
        update(User)
        .where(User.id == user_id)
        .values(coins_balance=User.coins_balance + amount)
    )
    if res.rowcount == 0:
        raise NotFoundError("User", str(user_id))

    if expires_at is None:
        expires_at = datetime.utcnow() + timedelta(days=settings.coin_credit_expiry_days)

    db.add(
        CoinLedgerEntry(
            user_id=user_id,
            amount=amount,
            source=CoinSource(source).value,
            reference_id=reference_id,
            expires_at=expires_at,
        )
    )
    await db.flush()

    balance = await get_balance(db, user_id)
    logger.info(f"Coins credited: user={user_id} +{amount} ({CoinSource(source).value}) balance={balance}")
    return balance


async def debit(
    db: AsyncSession,
    *,
    user_id: int,
    amount: int,
    source: CoinSource,
    reference_id: str | None = None,
) -> int:
    """
    Debit coins. Returns the new balance.

    The balance check and the decrement are one statement; when it matches
    no row nothing has been written and InsufficientBalanceError is raised.
    """
    _check_amount(amount)

    res = await db.execute(
        update(User)
        .where(User.id == user_id, User.coins_balance >= amount)
        .values(coins_balance=User.coins_balance - amount)
    )
    if res.rowcount == 0:
        available = await get_balance(db, user_id)  # raises NotFoundError for unknown users
        logger.warning(f"Coin debit rejected: user={user_id} needs {amount}, has {available}")
        raise InsufficientBalanceError(required=amount, available=available)

    db.add(
        CoinLedgerEntry(
            user_id=user_id,
            amount=-amount,
            source=CoinSource(source).value,
            reference_id=reference_id,
        )
    )
    await db.flush()

    balance = await get_balance(db, user_id)
    logger.info(f"Coins debited: user={user_id} -{amount} ({CoinSource(source).value}) balance={balance}")
    return balance


async def debit_for_order(db: AsyncSession, *, order_id: int, user_id: int, amount: int) -> dict:
    """
    Debit the coins used on an order, at most once.

    The coins_debited flag is claimed with a conditional UPDATE in the same
    transaction as the debit. A redelivered job finds the flag set and is a
    no-op; a failed debit rolls the flag back with everything else.
    """
    claimed = await db.execute(
        update(Order)
        .where(Order.id == order_id, Order.coins_debited.is_(False))
        .values(coins_debited=True)
    )
    if claimed.rowcount == 0:
        exists = await db.execute(select(Order.id).where(Order.id == order_id))
        if exists.scalar_one_or_none() is None:
            raise NotFoundError("Order", str(order_id))
        logger.info(f"Coins already debited for order {order_id}")
        return {"success": True, "alreadyDebited": True, "orderId": order_id}

    mark_order_changed(db, order_id)
    balance = await debit(
        db,
        user_id=user_id,
        amount=amount,
        source=CoinSource.ORDER_PAYMENT,
        reference_id=str(order_id),
    )
    return {"success": True, "alreadyDebited": False, "orderId": order_id, "amount": amount, "balance": balance}


async def has_entry(db: AsyncSession, *, reference_id: str, source: CoinSource, user_id: int | None = None) -> bool:
    stmt = select(CoinLedgerEntry.id).where(
        CoinLedgerEntry.reference_id == reference_id,
        CoinLedgerEntry.source == CoinSource(source).value,
    )
    if user_id is not None:
        stmt = stmt.where(CoinLedgerEntry.user_id == user_id)
    res = await db.execute(stmt.limit(1))
    return res.scalar_one_or_none() is not None


async def reconcile_balance(db: AsyncSession, user_id: int) -> dict:
    """Compare the cached balance with the ledger sum (report only, no repair)."""
    cached = await get_balance(db, user_id)
    res = await db.execute(
        select(func.coalesce(func.sum(CoinLedgerEntry.amount), 0)).where(CoinLedgerEntry.user_id == user_id)
    )
    ledger_sum = int(res.scalar_one())
    drift = cached - ledger_sum
    if drift:
        logger.error(f"Coin balance drift for user {user_id}: cached={cached} ledger={ledger_sum}")
    return {"userId": user_id, "cachedBalance": cached, "ledgerBalance": ledger_sum, "drift": drift, "consistent": drift == 0}
