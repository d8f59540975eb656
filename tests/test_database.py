from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import create_engine
from sqlalchemy.exc import NoResultFound, OperationalError

from flashsale import database as database_module
from flashsale.database import (
    Database,
    DatabaseError,
    current_sale_start,
    is_transient_error,
)
from flashsale.models import ItemRef


class _DriverError(Exception):
    def __init__(self, message, pgcode):
        super().__init__(message)
        self.pgcode = pgcode


@pytest.fixture
def db(tmp_path):
    engine = create_engine(f"sqlite:///{tmp_path / 'store.db'}")
    store = Database(engine)
    store.init_db()
    yield store
    store.close()


@pytest.fixture
def no_sleep(monkeypatch):
    delays = []
    monkeypatch.setattr(database_module.time, "sleep", delays.append)
    return delays


NOON = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def _sale_with_items(db, count=3):
    sale = db.get_current_sale(NOON)
    db.generate_items(
        sale.id, [f"Item {n}" for n in range(count)], [f"img{n}" for n in range(count)]
    )
    return sale


def test_current_sale_start_truncates_to_hour():
    moment = datetime(2024, 5, 1, 13, 47, 12, 999, tzinfo=timezone.utc)
    assert current_sale_start(moment) == datetime(2024, 5, 1, 13, tzinfo=timezone.utc)


def test_current_sale_start_treats_naive_as_utc_and_converts_zones():
    naive = datetime(2024, 5, 1, 13, 5)
    assert current_sale_start(naive) == datetime(2024, 5, 1, 13, tzinfo=timezone.utc)
    shifted = datetime(2024, 5, 1, 15, 5, tzinfo=timezone(timedelta(hours=2)))
    assert current_sale_start(shifted) == datetime(2024, 5, 1, 13, tzinfo=timezone.utc)


def test_init_db_is_idempotent(db):
    db.init_db()
    assert db.get_all_items() == []


def test_get_current_sale_creates_once(db):
    first = db.get_current_sale(NOON + timedelta(minutes=20))
    second = db.get_current_sale(NOON + timedelta(minutes=40))
    assert first.id == second.id
    assert second.start_time == NOON
    assert second.items_sold == 0
    later = db.get_current_sale(NOON + timedelta(hours=1, minutes=1))
    assert later.id != first.id


def test_generate_items_and_counts(db):
    sale = _sale_with_items(db, count=4)
    assert db.get_items_for_sale(sale.id) == 4
    all_items = db.get_all_items()
    assert len(all_items) == 4
    assert {item.sale_id for item in all_items} == {sale.id}
    assert db.get_sale_id_by_item_id(all_items[0].id) == sale.id


def test_generate_items_rejects_mismatched_lists(db):
    sale = db.get_current_sale(NOON)
    with pytest.raises(ValueError):
        db.generate_items(sale.id, ["a", "b"], ["only"])
    assert db.get_items_for_sale(sale.id) == 0


def test_unknown_item_has_no_sale(db):
    assert db.get_sale_id_by_item_id(424242) is None


def test_full_purchase_flow(db):
    sale = _sale_with_items(db)
    item = db.get_all_items()[0]
    db.store_checkout_attempt("alice", item.id, "code-1", sale.id, "success")

    with db.transaction() as tx:
        assert db.check_code_used(tx, "code-1") is None
        assert db.get_sale_items_sold(tx, sale.id) == 0
        assert db.check_item_available(tx, item.id, sale.id) is True
        assert db.mark_item_as_sold(tx, item.id, sale.id, "alice") == 1
        assert db.mark_item_as_sold(tx, item.id, sale.id, "bob") == 0
        db.record_purchase(tx, "alice", item.id, "code-1", sale.id)
        db.update_sale_counter(tx, sale.id)

    assert db.get_user_total_items("alice", sale.id) == 1
    assert db.get_user_total_items("bob", sale.id) == 0
    with db.transaction() as tx:
        assert db.check_code_used(tx, "code-1") is not None
        assert db.check_code_used(tx, "code-1") > 0
        assert db.get_sale_items_sold(tx, sale.id) == 1
        assert db.check_item_available(tx, item.id, sale.id) is False


def test_transaction_rolls_back_on_error(db):
    sale = _sale_with_items(db)
    item = db.get_all_items()[0]
    with pytest.raises(RuntimeError):
        with db.transaction() as tx:
            db.mark_item_as_sold(tx, item.id, sale.id, "alice")
            raise RuntimeError("abort")
    with db.transaction() as tx:
        assert db.check_item_available(tx, item.id, sale.id) is True


def test_item_not_available_in_other_sale(db):
    sale = _sale_with_items(db)
    item = db.get_all_items()[0]
    with db.transaction() as tx:
        assert db.check_item_available(tx, item.id, sale.id + 1) is False


def test_get_sale_items_sold_for_missing_sale(db):
    with pytest.raises(DatabaseError, match="failed to check sale status"):
        with db.transaction() as tx:
            db.get_sale_items_sold(tx, 999)


def test_duplicate_checkout_code_rejected(db):
    sale = db.get_current_sale(NOON)
    db.store_checkout_attempt("alice", 1, "dup", sale.id, "success")
    with pytest.raises(DatabaseError, match="failed to store checkout attempt"):
        db.store_checkout_attempt("bob", 2, "dup", sale.id, "success")


def test_get_active_sales_filters_and_orders(db):
    older = db.get_current_sale(NOON)
    newer = db.get_current_sale(NOON + timedelta(hours=1))
    with db.transaction() as tx:
        db.update_sale_counter(tx, older.id)
    active = db.get_active_sales(1)
    assert [sale.id for sale in active] == [newer.id]
    both = db.get_active_sales(5)
    assert [sale.id for sale in both] == [newer.id, older.id]
    assert both[0].start_time == NOON + timedelta(hours=1)


def test_is_transient_error_cases():
    assert is_transient_error(None) is False
    assert is_transient_error(TimeoutError()) is True
    assert is_transient_error(ValueError("connection reset by peer")) is True
    assert is_transient_error(ValueError("connection established")) is False
    assert is_transient_error(ValueError("reset")) is False
    assert is_transient_error(NoResultFound()) is False


@pytest.mark.parametrize(
    ("pgcode", "expected"),
    [("40001", True), ("40P01", True), ("08006", True), ("23505", False)],
)
def test_is_transient_error_sqlstate(pgcode, expected):
    error = OperationalError("SELECT 1", {}, _DriverError("failure", pgcode))
    assert is_transient_error(error) is expected


def test_is_transient_error_follows_cause():
    inner = OperationalError("SELECT 1", {}, _DriverError("failure", "40001"))
    outer = DatabaseError("failed")
    outer.__cause__ = inner
    assert is_transient_error(outer) is True


def test_execute_with_retry_returns_value(db):
    assert db.execute_with_retry(lambda: 7) == 7


def test_execute_with_retry_retries_transient(db, no_sleep):
    calls = []

    def operation():
        calls.append(1)
        if len(calls) < 3:
            raise TimeoutError("slow")
        return "done"

    assert db.execute_with_retry(operation) == "done"
    assert len(calls) == 3
    assert no_sleep == [0.1, 0.2]


def test_execute_with_retry_raises_non_transient_at_once(db, no_sleep):
    calls = []

    def operation():
        calls.append(1)
        raise ValueError("bad input")

    with pytest.raises(ValueError, match="bad input"):
        db.execute_with_retry(operation)
    assert len(calls) == 1
    assert no_sleep == []


def test_execute_with_retry_gives_up(db, no_sleep):
    def operation():
        raise TimeoutError("slow")

    with pytest.raises(DatabaseError, match="operation failed after 3 retries"):
        db.execute_with_retry(operation)
    assert len(no_sleep) == 3


def test_execute_with_retry_expired_deadline(db):
    calls = []
    with pytest.raises(TimeoutError):
        db.execute_with_retry(lambda: calls.append(1), timeout=0)
    assert calls == []


def test_item_refs_are_models(db):
    sale = _sale_with_items(db, count=1)
    (item,) = db.get_all_items()
    assert item == ItemRef(item.id, sale.id)