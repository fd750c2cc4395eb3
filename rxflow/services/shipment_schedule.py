# rxflow/services/shipment_schedule.py
"""
Scheduling arithmetic for refills and multi-shipment packages.

Compounded medication has a beyond-use date (BUD). A package longer than the
BUD ships in several parts, each with its own queue entry.
"""
import math
from datetime import datetime

from rxflow.utils.datetime_utils import add_months

DEFAULT_BUD_DAYS = 90
DEFAULT_INTERVAL_DAYS = 30

VIAL_TO_INTERVAL_DAYS = {
    1: 30,
    3: 90,
    6: 180,
}


def refill_interval_days(vial_count: int | None) -> int:
    """Days one shipment of `vial_count` vials lasts."""
    return VIAL_TO_INTERVAL_DAYS.get(vial_count or 0, DEFAULT_INTERVAL_DAYS)


def shipments_needed(package_months: int | None, bud_days: int | None = None) -> int:
    """
    Number of shipments a package is split into. Always at least one.
    """
    if not package_months or package_months <= 0:
        return 1
    bud = bud_days if bud_days and bud_days > 0 else DEFAULT_BUD_DAYS
    return max(1, math.ceil(package_months * 30 / bud))


def months_between_shipments(bud_days: int | None = None) -> int:
    bud = bud_days if bud_days and bud_days > 0 else DEFAULT_BUD_DAYS
    return max(1, bud // 30)


def shipment_dates(
    start: datetime,
    count: int,
    bud_days: int | None = None,
) -> list[datetime]:
    """
    Ship dates for a series: same day of month as `start`, spaced by the BUD
    in months, clamped to the last day of shorter months.
    """
    step = months_between_shipments(bud_days)
    return [add_months(start, step * index) for index in range(count)]
