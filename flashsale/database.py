"""PostgreSQL-backed storage of sales, items, checkout attempts and purchases."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterator, Sequence
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import TypeVar

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    Table,
    Text,
    create_engine,
    exists,
    func,
    select,
    text,
)
from sqlalchemy.engine import Connection, Engine, make_url
from sqlalchemy.exc import ArgumentError, DBAPIError, NoResultFound, SQLAlchemyError

from flashsale.config import Config
from flashsale.models import FlashSale, ItemRef, SaleSummary

logger = logging.getLogger(__name__)

T = TypeVar("T")

_CONNECT_ATTEMPTS = 5
_OPERATION_ATTEMPTS = 3
_BASE_RETRY_DELAY = 0.1

_TRANSIENT_SQLSTATES = frozenset(
    {"08000", "08003", "08006", "08001", "08004", "08007", "40001", "40P01", "XX000"}
)
_CONNECTION_TROUBLE_WORDS = ("reset", "closed", "broken", "refused", "timeout")

metadata = MetaData()

flash_sales = Table(
    "flash_sales",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("start_time", DateTime(timezone=True), nullable=False),
    Column("items_sold", Integer, nullable=False, server_default=text("0")),
)

items = Table(
    "items",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", Text, nullable=False),
    Column("image", Text, nullable=False),
    Column("sale_id", Integer, ForeignKey("flash_sales.id")),
    Column("sold", Boolean, nullable=False, server_default=text("FALSE")),
    Column("owner_id", Text),
)

checkout_attempts = Table(
    "checkout_attempts",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Text, nullable=False),
    Column("item_id", Integer, nullable=False),
    Column("code", Text, nullable=False, unique=True),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("sale_id", Integer, ForeignKey("flash_sales.id")),
)

purchases = Table(
    "purchases",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Text, nullable=False),
    Column("item_id", Integer, nullable=False),
    Column("code", Text, ForeignKey("checkout_attempts.code"), nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("sale_id", Integer, ForeignKey("flash_sales.id")),
)

Index("idx_checkout_attempts_code", checkout_attempts.c.code)
Index(
    "idx_checkout_attempts_user_id_sale_id",
    checkout_attempts.c.user_id,
    checkout_attempts.c.sale_id,
)
Index("idx_purchases_user_id_sale_id", purchases.c.user_id, purchases.c.sale_id)


class DatabaseError(Exception):
    """A database operation failed."""


def _as_utc(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _sqlstate(exc: BaseException) -> str | None:
    if isinstance(exc, DBAPIError) and exc.orig is not None:
        orig = exc.orig
        return getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)
    return getattr(exc, "pgcode", None) or getattr(exc, "sqlstate", None)


def is_transient_error(exc: BaseException | None) -> bool:
    """Tell whether a failed database operation is worth retrying."""
    if exc is None:
        return False
    current: BaseException | None = exc
    while current is not None:
        if isinstance(current, TimeoutError):
            return True
        if _sqlstate(current) in _TRANSIENT_SQLSTATES:
            return True
        if isinstance(current, NoResultFound):
            return False
        current = current.__cause__
    message = str(exc)
    if "connection" in message:
        return any(word in message for word in _CONNECTION_TROUBLE_WORDS)
    return False


def current_sale_start(now: datetime | None = None) -> datetime:
    """Return the start of the hourly sale containing ``now`` (UTC)."""
    moment = _as_utc(now or _now())
    return moment.replace(minute=0, second=0, microsecond=0)


class Database:
    """Queries and transactions of the flash sale store."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def execute_with_retry(
        self, operation: Callable[[], T], timeout: float | None = None
    ) -> T:
        """Run ``operation``, retrying transient failures with backoff."""
        deadline = None if timeout is None else time.monotonic() + timeout
        last_error: BaseException | None = None
        for attempt in range(_OPERATION_ATTEMPTS):
            if deadline is not None and time.monotonic() >= deadline:
                raise TimeoutError("context deadline exceeded")
            try:
                return operation()
            except Exception as exc:
                if not is_transient_error(exc):
                    raise
                last_error = exc
                delay = _BASE_RETRY_DELAY * (1 << attempt)
                logger.warning(
                    "Transient database error, retrying in %.1fs: %s", delay, exc
                )
                if deadline is not None and time.monotonic() + delay >= deadline:
                    raise TimeoutError("context deadline exceeded") from exc
                time.sleep(delay)
        raise DatabaseError(
            f"operation failed after {_OPERATION_ATTEMPTS} retries: {last_error}"
        ) from last_error

    def init_db(self) -> None:
        """Create the tables and indexes that do not exist yet."""
        try:
            metadata.create_all(self.engine, checkfirst=True)
        except SQLAlchemyError as exc:
            raise DatabaseError(f"failed to initialize schema: {exc}") from exc

    def get_current_sale(self, now: datetime | None = None) -> FlashSale:
        """Return the sale of the current hour, creating it if needed."""
        start = current_sale_start(now)
        query = select(
            flash_sales.c.id, flash_sales.c.start_time, flash_sales.c.items_sold
        ).where(flash_sales.c.start_time == start)
        try:
            with self.engine.begin() as conn:
                row = conn.execute(query).first()
                if row is not None:
                    return FlashSale(row.id, _as_utc(row.start_time), row.items_sold)
                try:
                    result = conn.execute(
                        flash_sales.insert().values(start_time=start, items_sold=0)
                    )
                except SQLAlchemyError as exc:
                    raise DatabaseError(f"failed to create new sale: {exc}") from exc
                return FlashSale(result.inserted_primary_key[0], start, 0)
        except DatabaseError:
            raise
        except SQLAlchemyError as exc:
            raise DatabaseError(f"failed to query current sale: {exc}") from exc

    def get_items_for_sale(self, sale_id: int) -> int:
        """Count the items that belong to a sale."""
        query = select(func.count()).select_from(items).where(items.c.sale_id == sale_id)
        try:
            with self.engine.connect() as conn:
                return conn.execute(query).scalar_one()
        except SQLAlchemyError as exc:
            raise DatabaseError(
                f"failed to check if items exist for sale: {exc}"
            ) from exc

    def get_user_total_items(self, user_id: str, sale_id: int) -> int:
        """Count the purchases a user has made in a sale."""
        query = (
            select(func.count())
            .select_from(purchases)
            .where(purchases.c.user_id == user_id, purchases.c.sale_id == sale_id)
        )
        try:
            with self.engine.connect() as conn:
                return conn.execute(query).scalar_one()
        except SQLAlchemyError as exc:
            raise DatabaseError(f"failed to count user purchases: {exc}") from exc

    def store_checkout_attempt(
        self, user_id: str, item_id: int, code: str, sale_id: int, status: str
    ) -> None:
        """Record that a checkout code was issued; ``status`` is informational."""
        statement = checkout_attempts.insert().values(
            user_id=user_id,
            item_id=item_id,
            code=code,
            created_at=_now(),
            sale_id=sale_id,
        )
        try:
            with self.engine.begin() as conn:
                conn.execute(statement)
        except SQLAlchemyError as exc:
            raise DatabaseError(f"failed to store checkout attempt: {exc}") from exc

    def get_all_items(self) -> list[ItemRef]:
        """Return every item with the sale it belongs to."""
        try:
            with self.engine.connect() as conn:
                rows = conn.execute(select(items.c.id, items.c.sale_id)).all()
        except SQLAlchemyError as exc:
            raise DatabaseError(f"failed to query items: {exc}") from exc
        return [ItemRef(row.id, row.sale_id) for row in rows]

    def get_sale_id_by_item_id(self, item_id: int) -> int | None:
        """Return the sale an item belongs to, or None for an unknown item."""
        query = select(items.c.sale_id).where(items.c.id == item_id)
        try:
            with self.engine.connect() as conn:
                row = conn.execute(query).first()
        except SQLAlchemyError as exc:
            raise DatabaseError(f"failed to get sale ID for item: {exc}") from exc
        return None if row is None else row.sale_id

    def get_active_sales(self, limit: int) -> list[SaleSummary]:
        """Return sales with fewer than ``limit`` items sold, newest first."""
        query = (
            select(flash_sales.c.id, flash_sales.c.start_time)
            .where(flash_sales.c.items_sold < limit)
            .order_by(flash_sales.c.start_time.desc())
        )
        try:
            with self.engine.connect() as conn:
                rows = conn.execute(query).all()
        except SQLAlchemyError as exc:
            raise DatabaseError(f"failed to query sales: {exc}") from exc
        return [SaleSummary(row.id, _as_utc(row.start_time)) for row in rows]

    @contextmanager
    def transaction(self) -> Iterator[Connection]:
        """Open a read-committed transaction; commit on success, else roll back."""
        try:
            conn = self.engine.connect()
        except SQLAlchemyError as exc:
            raise DatabaseError(f"failed to begin transaction: {exc}") from exc
        with conn:
            if self.engine.dialect.name == "postgresql":
                conn = conn.execution_options(isolation_level="READ COMMITTED")
            with conn.begin():
                yield conn

    def check_code_used(self, tx: Connection, code: str) -> int | None:
        """Return the id of the purchase made with ``code``, or None if unused."""
        query = select(purchases.c.id).where(purchases.c.code == code)
        try:
            row = tx.execute(query).first()
        except SQLAlchemyError as exc:
            raise DatabaseError(f"failed to check if code has been used: {exc}") from exc
        return None if row is None else row.id

    def get_sale_items_sold(self, tx: Connection, sale_id: int) -> int:
        """Return how many items of a sale have been sold."""
        query = select(flash_sales.c.items_sold).where(flash_sales.c.id == sale_id)
        try:
            return tx.execute(query).scalar_one()
        except SQLAlchemyError as exc:
            raise DatabaseError(f"failed to check sale status: {exc}") from exc

    def check_item_available(self, tx: Connection, item_id: int, sale_id: int) -> bool:
        """Tell whether an unsold item with this id belongs to the sale."""
        query = select(
            exists().where(
                items.c.id == item_id,
                items.c.sale_id == sale_id,
                items.c.sold.is_(False),
            )
        )
        try:
            return bool(tx.execute(query).scalar_one())
        except SQLAlchemyError as exc:
            raise DatabaseError(f"failed to check if item exists: {exc}") from exc

    def mark_item_as_sold(
        self, tx: Connection, item_id: int, sale_id: int, user_id: str
    ) -> int:
        """Mark an unsold item as sold to ``user_id``; return rows changed."""
        statement = (
            items.update()
            .where(
                items.c.id == item_id,
                items.c.sale_id == sale_id,
                items.c.sold.is_(False),
            )
            .values(sold=True, owner_id=user_id)
        )
        try:
            return tx.execute(statement).rowcount
        except SQLAlchemyError as exc:
            raise DatabaseError(f"failed to mark item as sold: {exc}") from exc

    def record_purchase(
        self, tx: Connection, user_id: str, item_id: int, code: str, sale_id: int
    ) -> None:
        """Insert a purchase made with a checkout code."""
        statement = purchases.insert().values(
            user_id=user_id,
            item_id=item_id,
            code=code,
            created_at=_now(),
            sale_id=sale_id,
        )
        try:
            tx.execute(statement)
        except SQLAlchemyError as exc:
            raise DatabaseError(f"failed to record purchase: {exc}") from exc

    def update_sale_counter(self, tx: Connection, sale_id: int) -> None:
        """Add one to the sold counter of a sale."""
        statement = (
            flash_sales.update()
            .where(flash_sales.c.id == sale_id)
            .values(items_sold=flash_sales.c.items_sold + 1)
        )
        try:
            tx.execute(statement)
        except SQLAlchemyError as exc:
            raise DatabaseError(f"failed to update sale: {exc}") from exc

    def generate_items(
        self, sale_id: int, item_names: Sequence[str], item_images: Sequence[str]
    ) -> None:
        """Insert the named items into a sale in one transaction."""
        rows = [
            {"name": name, "image": image, "sale_id": sale_id, "sold": False}
            for name, image in zip(item_names, item_images, strict=True)
        ]
        try:
            conn = self.engine.connect()
        except SQLAlchemyError as exc:
            raise DatabaseError(f"failed to begin transaction: {exc}") from exc
        with conn:
            transaction = conn.begin()
            try:
                if rows:
                    conn.execute(items.insert(), rows)
            except SQLAlchemyError as exc:
                transaction.rollback()
                raise DatabaseError(f"failed to insert item: {exc}") from exc
            try:
                transaction.commit()
            except SQLAlchemyError as exc:
                raise DatabaseError(f"failed to commit transaction: {exc}") from exc

    def close(self) -> None:
        """Release every pooled connection."""
        self.engine.dispose()


def _engine_url(postgres_url: str) -> str:
    if postgres_url.startswith("postgres://"):
        return "postgresql://" + postgres_url[len("postgres://") :]
    return postgres_url


def connect_database(config: Config) -> Database:
    """Connect to PostgreSQL, retrying the first contact with backoff."""
    try:
        url = make_url(_engine_url(config.postgres_url))
    except ArgumentError as exc:
        raise DatabaseError(f"failed to parse database URL: {exc}") from exc

    pool_size = max(config.db_max_idle_conns, 1)
    engine = create_engine(
        url,
        pool_size=pool_size,
        max_overflow=max(config.db_max_open_conns - pool_size, 0),
        pool_recycle=int(config.db_conn_max_lifetime.total_seconds()),
        pool_pre_ping=True,
    )

    last_error: BaseException | None = None
    for attempt in range(_CONNECT_ATTEMPTS):
        try:
            with engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except (SQLAlchemyError, OSError) as exc:
            last_error = exc
            delay = 1 << attempt
            logger.warning(
                "Failed to connect to database, retrying in %ds: %s", delay, exc
            )
            time.sleep(delay)
            continue
        logger.info("Successfully connected to database")
        return Database(engine)

    engine.dispose()
    raise DatabaseError(
        f"failed to connect to database after {_CONNECT_ATTEMPTS} retries: {last_error}"
    ) from last_error