import json
from datetime import datetime, timezone

import pytest

from flashsale.models import FlashSale, ItemRef, SaleSummary


def test_to_dict_formats_utc_time_with_z():
    sale = FlashSale(id=4, start_time=datetime(2024, 5, 1, 12, tzinfo=timezone.utc), items_sold=9)
    assert sale.to_dict() == {
        "id": 4,
        "start_time": "2024-05-01T12:00:00Z",
        "items_sold": 9,
    }


def test_to_dict_is_json_serialisable():
    sale = FlashSale(id=1, start_time=datetime(2024, 1, 2, 3, tzinfo=timezone.utc))
    decoded = json.loads(json.dumps(sale.to_dict()))
    assert decoded["items_sold"] == 0
    assert decoded["id"] == 1


def test_to_dict_keeps_time_round_trip():
    moment = datetime(2023, 11, 5, 8, 0, 0, tzinfo=timezone.utc)
    stamp = FlashSale(id=2, start_time=moment).to_dict()["start_time"]
    assert datetime.fromisoformat(stamp.replace("Z", "+00:00")) == moment


def test_item_ref_is_hashable_and_frozen():
    refs = {ItemRef(1, 2), ItemRef(1, 2), ItemRef(2, 2)}
    assert len(refs) == 2
    with pytest.raises(AttributeError):
        ItemRef(1, 2).id = 5  # type: ignore[misc]


def test_sale_summary_equality():
    moment = datetime(2024, 1, 1, tzinfo=timezone.utc)
    assert SaleSummary(3, moment) == SaleSummary(3, moment)
    assert SaleSummary(3, moment).start_time == moment