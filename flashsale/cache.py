"""Redis-backed storage of item availability and checkout codes."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterable
from datetime import timedelta
from typing import Any, TypeVar

import redis

from flashsale.config import Config
from flashsale.models import ItemRef

logger = logging.getLogger(__name__)

T = TypeVar("T")

_CONNECT_ATTEMPTS = 5
_OPERATION_ATTEMPTS = 3
_BASE_RETRY_DELAY = 0.1

_TRANSIENT_MESSAGES = frozenset(
    {
        "redis: connection pool timeout",
        "redis: connection closed",
        "redis: client is closed",
        "i/o timeout",
        "connection refused",
        "connection reset by peer",
    }
)


class CacheError(Exception):
    """A Redis operation failed."""


class CodeNotFoundError(CacheError):
    """The checkout code is unknown or has expired."""

    def __init__(self) -> None:
        super().__init__("code not found or expired")


def is_transient_redis_error(exc: BaseException | None) -> bool:
    """Tell whether a failed Redis operation is worth retrying."""
    if exc is None:
        return False
    current: BaseException | None = exc
    while current is not None:
        if isinstance(current, (TimeoutError, redis.exceptions.TimeoutError)):
            return True
        current = current.__cause__
    if isinstance(exc, (ConnectionError, redis.exceptions.ConnectionError)):
        return True
    return str(exc) in _TRANSIENT_MESSAGES


def _expiry(expiration: timedelta | None) -> timedelta | None:
    return expiration if expiration else None


def _item_key(sale_id: int, item_id: int) -> str:
    return f"item:{sale_id}:{item_id}"


def _code_key(code: str) -> str:
    return f"code:{code}"


class RedisStore:
    """Keys for available items and pending checkout codes."""

    def __init__(self, client: Any) -> None:
        self.client = client

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
                if not is_transient_redis_error(exc):
                    raise
                last_error = exc
                delay = _BASE_RETRY_DELAY * (1 << attempt)
                logger.warning(
                    "Transient Redis error, retrying in %.1fs: %s", delay, exc
                )
                if deadline is not None and time.monotonic() + delay >= deadline:
                    raise TimeoutError("context deadline exceeded") from exc
                time.sleep(delay)
        raise CacheError(
            f"redis operation failed after {_OPERATION_ATTEMPTS} retries: {last_error}"
        ) from last_error

    def store_item(
        self, sale_id: int, item_id: int, expiration: timedelta | None
    ) -> None:
        """Mark an item of a sale as available."""
        try:
            self.client.set(_item_key(sale_id, item_id), "1", ex=_expiry(expiration))
        except redis.RedisError as exc:
            raise CacheError(f"failed to store item in Redis: {exc}") from exc

    def item_exists(self, sale_id: int, item_id: int) -> bool:
        """Tell whether an item of a sale is marked available."""
        try:
            count = self.client.exists(_item_key(sale_id, item_id))
        except redis.RedisError as exc:
            raise CacheError(f"failed to check if item exists in Redis: {exc}") from exc
        return count == 1

    def store_code(self, code: str, data: str, expiration: timedelta | None) -> None:
        """Save the data behind a checkout code."""
        try:
            self.client.set(_code_key(code), data, ex=_expiry(expiration))
        except redis.RedisError as exc:
            raise CacheError(f"failed to store code in Redis: {exc}") from exc

    def get_code(self, code: str) -> str:
        """Return the data behind a checkout code."""
        try:
            data = self.client.get(_code_key(code))
        except redis.RedisError as exc:
            raise CacheError(f"failed to get code from Redis: {exc}") from exc
        if data is None:
            raise CodeNotFoundError()
        return data.decode("utf-8") if isinstance(data, bytes) else str(data)

    def delete_code(self, code: str) -> None:
        """Forget a checkout code."""
        try:
            self.client.delete(_code_key(code))
        except redis.RedisError as exc:
            raise CacheError(f"failed to delete code from Redis: {exc}") from exc

    def populate_items_cache(
        self, items: Iterable[ItemRef], expiration: timedelta | None
    ) -> int:
        """Mark every given item available; return how many were stored."""
        logger.info("Populating Redis cache with existing items...")
        stored = 0
        for item in items:
            try:
                self.client.set(
                    _item_key(item.sale_id, item.id), "1", ex=_expiry(expiration)
                )
            except redis.RedisError as exc:
                logger.warning("Failed to store item in Redis: %s", exc)
            else:
                stored += 1
        logger.info("Successfully populated Redis cache with %d items", stored)
        return stored

    def ping(self) -> bool:
        """Check that the server answers."""
        return bool(self.client.ping())

    def close(self) -> None:
        """Close the underlying client."""
        try:
            self.client.close()
        except redis.RedisError as exc:
            raise CacheError(f"failed to close Redis: {exc}") from exc


def connect_redis(config: Config) -> RedisStore:
    """Connect to Redis, retrying the first ping with exponential backoff."""
    host, _, port = config.redis_addr.rpartition(":")
    client = redis.Redis(
        host=host or "localhost",
        port=int(port),
        db=0,
        max_connections=config.redis_pool_size,
        socket_connect_timeout=config.redis_dial_timeout.total_seconds(),
        socket_timeout=config.redis_read_timeout.total_seconds(),
        decode_responses=True,
    )
    last_error: BaseException | None = None
    for attempt in range(_CONNECT_ATTEMPTS):
        try:
            client.ping()
        except (redis.RedisError, OSError) as exc:
            last_error = exc
            delay = 1 << attempt
            logger.warning("Failed to ping Redis, retrying in %ds: %s", delay, exc)
            time.sleep(delay)
            continue
        logger.info("Successfully connected to Redis")
        return RedisStore(client)
    raise CacheError(
        f"failed to ping Redis after {_CONNECT_ATTEMPTS} retries: {last_error}"
    ) from last_error