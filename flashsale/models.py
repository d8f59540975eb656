"""Domain records and limits of the flash sale."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta

FLASH_SALE_SIZE = 10000
MAX_ITEMS_PER_USER = 10
CODE_EXPIRATION = timedelta(hours=1)


def _format_time(moment: datetime) -> str:
    stamp = moment.isoformat()
    if stamp.endswith("+00:00"):
        stamp = stamp[: -len("+00:00")] + "Z"
    return stamp


@dataclass
class FlashSale:
    """One hourly sale and how many of its items have been sold."""

    id: int
    start_time: datetime
    items_sold: int = 0

    def to_dict(self) -> dict[str, object]:
        """Return the sale as a JSON-ready mapping."""
        return {
            "id": self.id,
            "start_time": _format_time(self.start_time),
            "items_sold": self.items_sold,
        }


@dataclass(frozen=True)
class ItemRef:
    """An item identifier together with the sale it belongs to."""

    id: int
    sale_id: int


@dataclass(frozen=True)
class SaleSummary:
    """A sale identifier and its start time."""

    id: int
    start_time: datetime