"""Request handlers for checkout, purchase and health checks."""

from __future__ import annotations

import logging
import re
import time
from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum
from http import HTTPStatus
from typing import Any

from flashsale.cache import CacheError, CodeNotFoundError, RedisStore
from flashsale.codes import generate_unique_code
from flashsale.database import Database
from flashsale.models import CODE_EXPIRATION, FLASH_SALE_SIZE, MAX_ITEMS_PER_USER

logger = logging.getLogger(__name__)

_REQUEST_TIMEOUT = 5.0
_INT_PATTERN = re.compile(r"[+-]?[0-9]+")
_INT_MIN = -(1 << 63)
_INT_MAX = (1 << 63) - 1

JSON_CONTENT_TYPE = "application/json"
TEXT_CONTENT_TYPE = "text/plain; charset=utf-8"


@dataclass(frozen=True)
class Reply:
    """An HTTP answer: status, body and its content type.

    ``body`` is a mapping for JSON answers and the message text for errors.
    """

    status: int
    body: Any
    content_type: str = JSON_CONTENT_TYPE


def _json(payload: Mapping[str, str], status: int = HTTPStatus.OK) -> Reply:
    return Reply(int(status), dict(payload), JSON_CONTENT_TYPE)


def _error(status: int, message: str) -> Reply:
    return Reply(int(status), message, TEXT_CONTENT_TYPE)


def _parse_int(text: str) -> int | None:
    if not _INT_PATTERN.fullmatch(text):
        return None
    value = int(text)
    if not _INT_MIN <= value <= _INT_MAX:
        return None
    return value


class Rejection(Enum):
    """Business rules that turn a purchase down, with the answer they give."""

    CODE_USED = (HTTPStatus.CONFLICT, "Code has already been used")
    SALE_LIMIT = (HTTPStatus.GONE, "Sale has reached the limit")
    USER_LIMIT = (
        HTTPStatus.TOO_MANY_REQUESTS,
        f"User has reached the maximum of {MAX_ITEMS_PER_USER} items per sale",
    )
    ITEM_UNAVAILABLE = (HTTPStatus.NOT_FOUND, "Item does not exist or is already sold")

    @property
    def status(self) -> int:
        return int(self.value[0])

    @property
    def message(self) -> str:
        return self.value[1]


class PurchaseRejected(Exception):
    """A purchase broke one of the sale's rules."""

    def __init__(self, reason: Rejection, detail: str | None = None) -> None:
        super().__init__(detail or reason.message)
        self.reason = reason


class _Deadline:
    def __init__(self, seconds: float) -> None:
        self._end = time.monotonic() + seconds

    def remaining(self) -> float:
        return max(self._end - time.monotonic(), 0.0)


class Handler:
    """Answers the checkout, purchase and health requests."""

    def __init__(self, db: Database, cache: RedisStore) -> None:
        self.db = db
        self.cache = cache

    def _record_failed_attempt(
        self, user_id: str, item_id: int, code: str, status: str
    ) -> None:
        try:
            self.db.store_checkout_attempt(user_id, item_id, code, 0, status)
        except Exception as exc:
            logger.debug("Could not record failed checkout attempt: %s", exc)

    def checkout(self, params: Mapping[str, str]) -> Reply:
        """Issue a one-time code reserving the right to buy an item."""
        user_id = params.get("user_id") or ""
        item_text = params.get("id") or ""
        deadline = _Deadline(_REQUEST_TIMEOUT)

        try:
            code = generate_unique_code()
        except OSError as exc:
            logger.error("Failed to generate code after retries: %s", exc)
            return _error(HTTPStatus.INTERNAL_SERVER_ERROR, "Failed to generate code")

        if not user_id or not item_text:
            self._record_failed_attempt(user_id, 0, code, "error_missing_params")
            return _error(HTTPStatus.BAD_REQUEST, "Missing user_id or id parameter")

        item_id = _parse_int(item_text)
        if item_id is None:
            self._record_failed_attempt(user_id, 0, code, "error_invalid_item_id")
            return _error(HTTPStatus.BAD_REQUEST, "Invalid item ID")

        try:
            sale_id = self.db.get_sale_id_by_item_id(item_id)
        except Exception as exc:
            self._record_failed_attempt(user_id, item_id, code, "error_query_item")
            logger.error("Failed to get sale ID for item: %s", exc)
            return _error(HTTPStatus.INTERNAL_SERVER_ERROR, "Failed to query item")

        if sale_id is None:
            self._record_failed_attempt(user_id, item_id, code, "error_item_not_found")
            return _error(HTTPStatus.NOT_FOUND, "Item not found")

        try:
            available = self.cache.execute_with_retry(
                lambda: self.cache.item_exists(sale_id, item_id), deadline.remaining()
            )
        except Exception as exc:
            self._record_failed_attempt(user_id, item_id, code, "error_check_item")
            logger.error("Failed to check if item exists in Redis: %s", exc)
            return _error(
                HTTPStatus.INTERNAL_SERVER_ERROR, "Failed to check item availability"
            )

        if not available:
            self._record_failed_attempt(
                user_id, item_id, code, "error_item_not_available"
            )
            return _error(HTTPStatus.NOT_FOUND, "Item not available")

        def check_unsold() -> bool:
            with self.db.transaction() as tx:
                return self.db.check_item_available(tx, item_id, sale_id)

        try:
            unsold = self.db.execute_with_retry(check_unsold, deadline.remaining())
        except Exception as exc:
            self._record_failed_attempt(
                user_id, item_id, code, "error_check_item_available"
            )
            logger.error("Failed to check if item is available: %s", exc)
            return _error(
                HTTPStatus.INTERNAL_SERVER_ERROR, "Failed to check if item is available"
            )

        if not unsold:
            self._record_failed_attempt(
                user_id, item_id, code, "error_item_already_sold"
            )
            return _error(HTTPStatus.CONFLICT, "Item is already sold")

        try:
            self.db.execute_with_retry(
                lambda: self.db.store_checkout_attempt(
                    user_id, item_id, code, sale_id, "success"
                ),
                deadline.remaining(),
            )
        except Exception as exc:
            logger.error("Failed to store checkout attempt after retries: %s", exc)
            return _error(
                HTTPStatus.INTERNAL_SERVER_ERROR, "Failed to store checkout attempt"
            )

        try:
            self.cache.execute_with_retry(
                lambda: self.cache.store_code(
                    code, f"{user_id}:{item_id}:{sale_id}", CODE_EXPIRATION
                ),
                deadline.remaining(),
            )
        except Exception as exc:
            logger.error("Failed to store code in Redis after retries: %s", exc)
            return _error(HTTPStatus.INTERNAL_SERVER_ERROR, "Failed to store code")

        return _json({"code": code})

    def _complete_purchase(
        self, code: str, user_id: str, item_id: int, sale_id: int
    ) -> None:
        with self.db.transaction() as tx:
            if self.db.check_code_used(tx, code) is not None:
                raise PurchaseRejected(Rejection.CODE_USED, "code has already been used")
            if self.db.get_sale_items_sold(tx, sale_id) >= FLASH_SALE_SIZE:
                raise PurchaseRejected(Rejection.SALE_LIMIT, "sale has reached the limit")
            if self.db.get_user_total_items(user_id, sale_id) >= MAX_ITEMS_PER_USER:
                raise PurchaseRejected(
                    Rejection.USER_LIMIT,
                    f"user has reached the maximum of {MAX_ITEMS_PER_USER} items per sale",
                )
            if not self.db.check_item_available(tx, item_id, sale_id):
                raise PurchaseRejected(
                    Rejection.ITEM_UNAVAILABLE, "item does not exist or is already sold"
                )
            if self.db.mark_item_as_sold(tx, item_id, sale_id, user_id) == 0:
                raise PurchaseRejected(Rejection.ITEM_UNAVAILABLE, "item was already sold")
            self.db.record_purchase(tx, user_id, item_id, code, sale_id)
            self.db.update_sale_counter(tx, sale_id)

    def purchase(self, params: Mapping[str, str]) -> Reply:
        """Redeem a checkout code and buy the item it reserves."""
        code = params.get("code") or ""
        if not code:
            return _error(HTTPStatus.BAD_REQUEST, "Missing code parameter")

        deadline = _Deadline(_REQUEST_TIMEOUT)

        try:
            code_data = self.cache.execute_with_retry(
                lambda: self.cache.get_code(code), deadline.remaining()
            )
        except CodeNotFoundError:
            return _error(HTTPStatus.BAD_REQUEST, "Invalid or expired code")
        except Exception as exc:
            logger.error("Failed to get code from Redis after retries: %s", exc)
            return _error(HTTPStatus.INTERNAL_SERVER_ERROR, "Failed to verify code")

        parts = code_data.split(":", 2)
        if len(parts) != 3:
            logger.error("Failed to parse code data: %s", code_data)
            return _error(HTTPStatus.INTERNAL_SERVER_ERROR, "Failed to parse code data")

        user_id, item_text, sale_text = parts
        item_id = _parse_int(item_text)
        if item_id is None:
            return _error(
                HTTPStatus.INTERNAL_SERVER_ERROR, "Invalid item ID in code data"
            )
        sale_id = _parse_int(sale_text)
        if sale_id is None:
            return _error(
                HTTPStatus.INTERNAL_SERVER_ERROR, "Invalid sale ID in code data"
            )

        try:
            self.db.execute_with_retry(
                lambda: self._complete_purchase(code, user_id, item_id, sale_id),
                deadline.remaining(),
            )
        except PurchaseRejected as rejected:
            if rejected.reason is Rejection.ITEM_UNAVAILABLE:
                logger.info(
                    "Item with ID %d for sale %d does not exist or is already sold",
                    item_id,
                    sale_id,
                )
            return _error(rejected.reason.status, rejected.reason.message)
        except Exception as exc:
            logger.error("Failed to process purchase after retries: %s", exc)
            return _error(
                HTTPStatus.INTERNAL_SERVER_ERROR, "Failed to process purchase"
            )

        try:
            self.cache.execute_with_retry(
                lambda: self.cache.delete_code(code), deadline.remaining()
            )
        except Exception as exc:
            logger.error("Failed to delete code from Redis after retries: %s", exc)

        return _json({"message": "Purchase successful"})

    def health(self) -> Reply:
        """Report whether the database and Redis answer."""
        deadline = _Deadline(_REQUEST_TIMEOUT)
        status = {"status": "ok", "database": "ok", "redis": "ok"}

        try:
            self.db.execute_with_retry(
                lambda: self.db.get_active_sales(1), deadline.remaining()
            )
        except Exception as exc:
            status["database"] = "error"
            status["status"] = "error"
            logger.error("Health check: Database error: %s", exc)

        try:
            if not self.cache.execute_with_retry(self.cache.ping, deadline.remaining()):
                raise CacheError("ping was not answered")
        except Exception as exc:
            status["redis"] = "error"
            status["status"] = "error"
            logger.error("Health check: Redis error: %s", exc)

        if status["status"] != "ok":
            return _json(status, HTTPStatus.SERVICE_UNAVAILABLE)
        return _json(status)