"""Datetime helpers.

Sync bookkeeping is done in UTC calendar days. Timestamps are stored in the
database as naive UTC.
"""

from __future__ import annotations

import os
from datetime import datetime

import pendulum

DEFAULT_TZ = "UTC"


def timezone_name() -> str:
    return os.environ.get("TIMEZONE", DEFAULT_TZ)


def utc_now() -> pendulum.DateTime:
    return pendulum.now("UTC")


def as_utc(value: datetime) -> pendulum.DateTime:
    """Interpret ``value`` as UTC; naive values are assumed to already be UTC."""
    if value.tzinfo is None:
        return pendulum.instance(value, tz="UTC")
    return pendulum.instance(value).in_timezone("UTC")


def to_db(value: datetime) -> datetime:
    return as_utc(value).naive()


def day_bounds(as_of: datetime) -> tuple[pendulum.DateTime, pendulum.DateTime]:
    moment = as_utc(as_of)
    return moment.start_of("day"), moment.end_of("day")


def month_bounds(as_of: datetime) -> tuple[pendulum.DateTime, pendulum.DateTime]:
    moment = as_utc(as_of)
    return moment.start_of("month"), moment.end_of("month")
