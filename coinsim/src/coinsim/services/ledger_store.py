"""
ledger_store
============

Persistent ledger state using SQLAlchemy's async engine.  The store owns
the four ledger tables and exposes row-level helpers that always run
inside a caller-supplied session, so that the executor and the order
engine can compose several writes into one SQL transaction:

.. code-block:: python

    async with store.user_lock(user_id):
        async with store.transaction() as session:
            wallet = await store.get_wallet(session, user_id)
            ...

Tables:
  - wallets(id, user_id UNIQUE, balance, currency, created_at, updated_at)
  - positions(id, user_id, symbol, coin_id, amount, average_cost, ...),
    UNIQUE(user_id, coin_id)
  - transactions(id, user_id, type, symbol, coin_id, amount,
    price_per_unit, total_value, fee, created_at, seq), UNIQUE(user_id, seq)
  - orders(id, user_id, position_id, symbol, coin_id, order_type,
    trigger_price, amount, status, created_at, executed_at, seq),
    UNIQUE(user_id, seq)

``seq`` numbers each user's transactions and orders in insertion order;
history, replay and trigger evaluation sort on it rather than on
timestamps, which can tie.

Every update is a compare-and-set against the value the caller read
(``balance``, ``amount`` or ``status``).  If another process changed the
row in between, no row matches and :class:`ConflictError` is raised,
which rolls the surrounding transaction back.  Within one process the
per-user ``asyncio.Lock`` returned by :meth:`LedgerStore.user_lock`
serialises mutating operations so conflicts only happen across
processes.

Schema migrations for PostgreSQL live in ``alembic/``; ``init_db`` is
enough for SQLite and tests.
"""

from __future__ import annotations

import asyncio
import datetime as dt
import logging
import weakref
from contextlib import asynccontextmanager
from decimal import Decimal
from typing import Any, AsyncIterator, Dict, List, Optional

from sqlalchemy import (
    Column,
    DateTime,
    Index,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    UniqueConstraint,
    delete,
    func,
    insert,
    select,
    update,
)
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.pool import StaticPool
from sqlalchemy.types import TypeDecorator

from ..accounting import Holding
from ..exceptions import ConflictError
from ..models import Order, OrderStatus, Position, Transaction, TradeType, Wallet, order_state

logger = logging.getLogger(__name__)


class ExactDecimal(TypeDecorator):
    """Database-agnostic fixed-scale decimal.

    PostgreSQL gets a native ``NUMERIC(precision, scale)``; other
    dialects store the quantized decimal as text so values never pass
    through binary floating point.
    """

    impl = String
    cache_ok = True

    def __init__(self, scale: int, precision: int = 20) -> None:
        super().__init__()
        self.scale = scale
        self.precision = precision
        self._quantum = Decimal(1).scaleb(-scale)

    def load_dialect_impl(self, dialect: Any) -> Any:
        if dialect.name == "postgresql":
            return dialect.type_descriptor(Numeric(precision=self.precision, scale=self.scale))
        return dialect.type_descriptor(String(self.precision + 2))

    def process_bind_param(self, value: Any, dialect: Any) -> Any:
        if value is None:
            return None
        value = Decimal(value).quantize(self._quantum)
        if dialect.name == "postgresql":
            return value
        return str(value)

    def process_result_value(self, value: Any, dialect: Any) -> Optional[Decimal]:
        if value is None:
            return None
        return Decimal(value).quantize(self._quantum)


def Money() -> ExactDecimal:
    return ExactDecimal(scale=2)


def CoinAmount() -> ExactDecimal:
    return ExactDecimal(scale=8)


def UnitPrice() -> ExactDecimal:
    return ExactDecimal(scale=8)


metadata = MetaData()

wallets_table = Table(
    "wallets",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("user_id", String(128), nullable=False, unique=True),
    Column("balance", Money(), nullable=False),
    Column("currency", String(8), nullable=False, default="USD"),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
)

positions_table = Table(
    "positions",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("user_id", String(128), nullable=False),
    Column("symbol", String(32), nullable=False),
    Column("coin_id", String(128), nullable=False),
    Column("amount", CoinAmount(), nullable=False),
    Column("average_cost", UnitPrice(), nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
    UniqueConstraint("user_id", "coin_id", name="uq_positions_user_coin"),
)

transactions_table = Table(
    "transactions",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("user_id", String(128), nullable=False),
    Column("type", String(4), nullable=False),
    Column("symbol", String(32), nullable=False),
    Column("coin_id", String(128), nullable=False),
    Column("amount", CoinAmount(), nullable=False),
    Column("price_per_unit", UnitPrice(), nullable=False),
    Column("total_value", Money(), nullable=False),
    Column("fee", Money(), nullable=False, default=Decimal("0")),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("seq", Integer, nullable=False),
    Index("ix_transactions_user_created", "user_id", "created_at"),
    UniqueConstraint("user_id", "seq", name="uq_transactions_user_seq"),
)

# position_id is a plain reference: orders outlive the position they sell from.
orders_table = Table(
    "orders",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("user_id", String(128), nullable=False),
    Column("position_id", String(36), nullable=False),
    Column("symbol", String(32), nullable=False),
    Column("coin_id", String(128), nullable=False),
    Column("order_type", String(16), nullable=False),
    Column("trigger_price", UnitPrice(), nullable=False),
    Column("amount", CoinAmount(), nullable=False),
    Column("status", String(16), nullable=False, default=OrderStatus.PENDING.value),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("executed_at", DateTime(timezone=True), nullable=True),
    Column("seq", Integer, nullable=False),
    Index("ix_orders_user_status", "user_id", "status"),
    UniqueConstraint("user_id", "seq", name="uq_orders_user_seq"),
)


def utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


def _utc(value: Optional[dt.datetime]) -> Optional[dt.datetime]:
    # SQLite hands back naive datetimes.
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=dt.timezone.utc)
    return value


def _wallet(row: Any) -> Wallet:
    return Wallet(
        id=row.id,
        user_id=row.user_id,
        balance=row.balance,
        currency=row.currency,
        created_at=_utc(row.created_at),
        updated_at=_utc(row.updated_at),
    )


def _position(row: Any) -> Position:
    return Position(
        id=row.id,
        user_id=row.user_id,
        symbol=row.symbol,
        coin_id=row.coin_id,
        amount=row.amount,
        average_cost=row.average_cost,
        created_at=_utc(row.created_at),
        updated_at=_utc(row.updated_at),
    )


def _transaction(row: Any) -> Transaction:
    return Transaction(
        id=row.id,
        user_id=row.user_id,
        type=TradeType(row.type),
        symbol=row.symbol,
        coin_id=row.coin_id,
        amount=row.amount,
        price_per_unit=row.price_per_unit,
        total_value=row.total_value,
        fee=row.fee,
        created_at=_utc(row.created_at),
    )


def _order(row: Any) -> Order:
    return Order(
        id=row.id,
        user_id=row.user_id,
        position_id=row.position_id,
        symbol=row.symbol,
        coin_id=row.coin_id,
        order_type=row.order_type,
        trigger_price=row.trigger_price,
        amount=row.amount,
        created_at=_utc(row.created_at),
        state=order_state(row.status, _utc(row.executed_at)),
    )


class LedgerStore:
    """Persistent ledger backed by any SQLAlchemy async database."""

    def __init__(self, engine: AsyncEngine) -> None:
        self.engine = engine
        # Entries vanish once no coroutine holds or waits on the lock.
        self._user_locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = (
            weakref.WeakValueDictionary()
        )
        # SQLite allows one writer at a time; queue transactions instead of
        # failing with "database is locked".
        self._single_writer: Optional[asyncio.Lock] = (
            asyncio.Lock() if engine.dialect.name == "sqlite" else None
        )

    @classmethod
    def from_uri(cls, uri: str) -> "LedgerStore":
        """Create a store from a SQLAlchemy async database URI."""
        if uri.startswith("sqlite") and ":memory:" in uri:
            engine = create_async_engine(
                uri,
                echo=False,
                poolclass=StaticPool,
                connect_args={"check_same_thread": False},
            )
        else:
            engine = create_async_engine(uri, echo=False, pool_pre_ping=True)
        return cls(engine)

    async def init_db(self) -> None:
        """Create tables if they do not exist."""
        async with self.engine.begin() as conn:
            await conn.run_sync(metadata.create_all)

    async def dispose(self) -> None:
        await self.engine.dispose()

    def user_lock(self, user_id: str) -> asyncio.Lock:
        """Return the lock serialising mutating operations of ``user_id``.

        The store keeps only a weak reference, so callers must hold on to
        the returned lock for as long as they use it (``async with`` does).
        """
        lock = self._user_locks.get(user_id)
        if lock is None:
            lock = asyncio.Lock()
            self._user_locks[user_id] = lock
        return lock

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[AsyncSession]:
        """Yield a session inside one SQL transaction.

        The transaction commits when the block exits normally and rolls
        back on any exception.
        """
        if self._single_writer is None:
            async with AsyncSession(self.engine, expire_on_commit=False) as session:
                async with session.begin():
                    yield session
            return
        async with self._single_writer:
            async with AsyncSession(self.engine, expire_on_commit=False) as session:
                async with session.begin():
                    yield session

    # ------------------------------------------------------------------
    # Wallets
    # ------------------------------------------------------------------

    async def get_wallet(self, session: AsyncSession, user_id: str) -> Optional[Wallet]:
        result = await session.execute(
            select(wallets_table).where(wallets_table.c.user_id == user_id)
        )
        row = result.fetchone()
        return _wallet(row) if row is not None else None

    async def insert_wallet(self, session: AsyncSession, wallet: Wallet) -> None:
        try:
            await session.execute(insert(wallets_table).values(**wallet.model_dump()))
        except IntegrityError as exc:
            raise ConflictError(
                f"Wallet already exists for user {wallet.user_id}", {"user_id": wallet.user_id}
            ) from exc

    async def update_balance(
        self, session: AsyncSession, wallet: Wallet, new_balance: Decimal, now: dt.datetime
    ) -> Wallet:
        result = await session.execute(
            update(wallets_table)
            .where(wallets_table.c.id == wallet.id)
            .where(wallets_table.c.balance == wallet.balance)
            .values(balance=new_balance, updated_at=now)
        )
        if result.rowcount != 1:
            raise ConflictError(
                f"Wallet of user {wallet.user_id} changed concurrently",
                {"user_id": wallet.user_id, "expected_balance": str(wallet.balance)},
            )
        return wallet.model_copy(update={"balance": new_balance, "updated_at": now})

    # ------------------------------------------------------------------
    # Positions
    # ------------------------------------------------------------------

    async def get_position_for_coin(
        self, session: AsyncSession, user_id: str, coin_id: str
    ) -> Optional[Position]:
        result = await session.execute(
            select(positions_table).where(
                positions_table.c.user_id == user_id, positions_table.c.coin_id == coin_id
            )
        )
        row = result.fetchone()
        return _position(row) if row is not None else None

    async def get_position(
        self, session: AsyncSession, user_id: str, position_id: str
    ) -> Optional[Position]:
        """Return the position only if it belongs to ``user_id``."""
        result = await session.execute(
            select(positions_table).where(
                positions_table.c.id == position_id, positions_table.c.user_id == user_id
            )
        )
        row = result.fetchone()
        return _position(row) if row is not None else None

    async def list_positions(self, session: AsyncSession, user_id: str) -> List[Position]:
        result = await session.execute(
            select(positions_table)
            .where(positions_table.c.user_id == user_id)
            .order_by(positions_table.c.created_at, positions_table.c.id)
        )
        return [_position(row) for row in result.fetchall()]

    async def insert_position(self, session: AsyncSession, position: Position) -> None:
        try:
            await session.execute(insert(positions_table).values(**position.model_dump()))
        except IntegrityError as exc:
            raise ConflictError(
                f"Position in {position.coin_id} already exists for user {position.user_id}",
                {"user_id": position.user_id, "coin_id": position.coin_id},
            ) from exc

    async def update_position(
        self, session: AsyncSession, position: Position, holding: Holding, now: dt.datetime
    ) -> Position:
        result = await session.execute(
            update(positions_table)
            .where(positions_table.c.id == position.id)
            .where(positions_table.c.amount == position.amount)
            .values(amount=holding.amount, average_cost=holding.average_cost, updated_at=now)
        )
        if result.rowcount != 1:
            raise ConflictError(
                f"Position {position.id} changed concurrently",
                {"position_id": position.id, "expected_amount": str(position.amount)},
            )
        return position.model_copy(
            update={"amount": holding.amount, "average_cost": holding.average_cost, "updated_at": now}
        )

    async def delete_position(self, session: AsyncSession, position: Position) -> None:
        result = await session.execute(
            delete(positions_table)
            .where(positions_table.c.id == position.id)
            .where(positions_table.c.amount == position.amount)
        )
        if result.rowcount != 1:
            raise ConflictError(
                f"Position {position.id} changed concurrently",
                {"position_id": position.id, "expected_amount": str(position.amount)},
            )

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    async def _next_seq(self, session: AsyncSession, table: Table, user_id: str) -> int:
        """Next per-user insertion number for ``table``.

        Timestamps can tie, so ``seq`` is what orders a user's rows.  Two
        processes picking the same number collide on the unique
        constraint and the loser gets :class:`ConflictError`.
        """
        result = await session.execute(
            select(func.coalesce(func.max(table.c.seq), 0)).where(table.c.user_id == user_id)
        )
        return int(result.scalar_one()) + 1

    async def _insert_sequenced(
        self, session: AsyncSession, table: Table, values: Dict[str, Any]
    ) -> None:
        values["seq"] = await self._next_seq(session, table, values["user_id"])
        try:
            await session.execute(insert(table).values(**values))
        except IntegrityError as exc:
            raise ConflictError(
                f"Concurrent insert into {table.name} for user {values['user_id']}",
                {"user_id": values["user_id"], "seq": values["seq"]},
            ) from exc

    async def insert_transaction(self, session: AsyncSession, transaction: Transaction) -> None:
        values = transaction.model_dump()
        values["type"] = transaction.type.value
        await self._insert_sequenced(session, transactions_table, values)

    async def list_transactions(
        self,
        session: AsyncSession,
        user_id: str,
        limit: Optional[int] = None,
        newest_first: bool = True,
    ) -> List[Transaction]:
        stmt = select(transactions_table).where(transactions_table.c.user_id == user_id)
        if newest_first:
            stmt = stmt.order_by(transactions_table.c.seq.desc())
        else:
            stmt = stmt.order_by(transactions_table.c.seq)
        if limit is not None:
            stmt = stmt.limit(limit)
        result = await session.execute(stmt)
        return [_transaction(row) for row in result.fetchall()]

    # ------------------------------------------------------------------
    # Orders
    # ------------------------------------------------------------------

    async def insert_order(self, session: AsyncSession, order: Order) -> None:
        await self._insert_sequenced(
            session,
            orders_table,
            dict(
                id=order.id,
                user_id=order.user_id,
                position_id=order.position_id,
                symbol=order.symbol,
                coin_id=order.coin_id,
                order_type=order.order_type.value,
                trigger_price=order.trigger_price,
                amount=order.amount,
                status=order.status.value,
                created_at=order.created_at,
                executed_at=order.executed_at,
            ),
        )

    async def get_order(self, session: AsyncSession, order_id: str) -> Optional[Order]:
        result = await session.execute(select(orders_table).where(orders_table.c.id == order_id))
        row = result.fetchone()
        return _order(row) if row is not None else None

    async def list_orders(
        self, session: AsyncSession, user_id: str, status: Optional[OrderStatus] = None
    ) -> List[Order]:
        """Return the user's orders in the order they were placed."""
        stmt = select(orders_table).where(orders_table.c.user_id == user_id)
        if status is not None:
            stmt = stmt.where(orders_table.c.status == status.value)
        stmt = stmt.order_by(orders_table.c.seq)
        result = await session.execute(stmt)
        return [_order(row) for row in result.fetchall()]

    async def transition_order(self, session: AsyncSession, order: Order) -> None:
        """Persist ``order``'s new terminal state if the row is still PENDING."""
        result = await session.execute(
            update(orders_table)
            .where(orders_table.c.id == order.id)
            .where(orders_table.c.status == OrderStatus.PENDING.value)
            .values(status=order.status.value, executed_at=order.executed_at)
        )
        if result.rowcount != 1:
            raise ConflictError(
                f"Order {order.id} is no longer pending",
                {"order_id": order.id, "status": order.status.value},
            )

    async def list_users_with_pending_orders(self, session: AsyncSession) -> List[str]:
        result = await session.execute(
            select(orders_table.c.user_id)
            .where(orders_table.c.status == OrderStatus.PENDING.value)
            .distinct()
            .order_by(orders_table.c.user_id)
        )
        return [row[0] for row in result.fetchall()]
