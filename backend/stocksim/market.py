"""Simulated market hours.

Trading days use the 0 = Sunday ... 6 = Saturday numbering the market
settings row is stored with.
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass
from datetime import datetime, timedelta

import pytz
from sqlalchemy import select
from sqlalchemy.orm import Session

from .models import MarketSettings

logger = logging.getLogger(__name__)

MARKET_DEFAULT_TIMEZONE = os.environ.get("MARKET_DEFAULT_TIMEZONE", "America/New_York")
DEFAULT_OPEN_TIME = "09:30"
DEFAULT_CLOSE_TIME = "16:00"
DEFAULT_TRADING_DAYS = [1, 2, 3, 4, 5]

VALID_CLOCK_TIME = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")


@dataclass
class MarketStatus:
    is_open: bool
    reason: str  # OVERRIDE or SCHEDULE
    timezone: str
    local_time: datetime
    next_event: str | None = None
    next_event_at: datetime | None = None
    time_until: str | None = None


def is_valid_clock_time(value: str | None) -> bool:
    return bool(value) and bool(VALID_CLOCK_TIME.match(str(value)))


def is_valid_timezone(name: str | None) -> bool:
    if not name:
        return False
    try:
        pytz.timezone(name)
    except pytz.UnknownTimeZoneError:
        return False
    return True


def get_market_settings(db: Session, for_update: bool = False) -> MarketSettings:
    stmt = select(MarketSettings).order_by(MarketSettings.id.asc()).limit(1)
    if for_update:
        stmt = stmt.with_for_update()
    settings = db.execute(stmt).scalar_one_or_none()
    if settings is not None:
        return settings

    settings = MarketSettings(
        market_open_time=DEFAULT_OPEN_TIME,
        market_close_time=DEFAULT_CLOSE_TIME,
        timezone=MARKET_DEFAULT_TIMEZONE if is_valid_timezone(MARKET_DEFAULT_TIMEZONE) else "America/New_York",
        trading_days=list(DEFAULT_TRADING_DAYS),
        is_market_open_override=None,
    )
    db.add(settings)
    db.flush()
    return settings


def _market_timezone(settings: MarketSettings):
    try:
        return pytz.timezone(str(settings.timezone))
    except pytz.UnknownTimeZoneError:
        logger.warning("Unknown market timezone %s, falling back to UTC", settings.timezone)
        return pytz.utc


def _weekday_sunday_first(moment: datetime) -> int:
    # datetime.weekday() is Monday = 0; stored trading days are Sunday = 0.
    return (moment.weekday() + 1) % 7


def _at_clock(tz, day: datetime, clock: str) -> datetime:
    hour, minute = (int(part) for part in clock.split(":"))
    naive = datetime(day.year, day.month, day.day, hour, minute)
    return tz.localize(naive)


def format_time_until(delta: timedelta) -> str:
    total_minutes = max(0, int(delta.total_seconds() // 60))
    days, remainder = divmod(total_minutes, 24 * 60)
    hours, minutes = divmod(remainder, 60)
    if days:
        return f"{days}d {hours}h"
    if hours:
        return f"{hours}h {minutes}m"
    return f"{minutes}m"


def _is_trading_day(settings: MarketSettings, local: datetime) -> bool:
    trading_days = {int(day) for day in (settings.trading_days or [])}
    return _weekday_sunday_first(local) in trading_days


def _next_open(settings: MarketSettings, tz, local: datetime) -> datetime | None:
    for offset in range(0, 8):
        day = local + timedelta(days=offset)
        if not _is_trading_day(settings, day):
            continue
        opens_at = _at_clock(tz, day, str(settings.market_open_time))
        if opens_at > local:
            return opens_at
    return None


def market_status(settings: MarketSettings, now: datetime | None = None) -> MarketStatus:
    tz = _market_timezone(settings)
    current = now or datetime.now(pytz.utc)
    if current.tzinfo is None:
        current = pytz.utc.localize(current)
    local = current.astimezone(tz)

    override = settings.is_market_open_override
    if override is not None:
        return MarketStatus(
            is_open=bool(override),
            reason="OVERRIDE",
            timezone=str(settings.timezone),
            local_time=local,
        )

    clock_now = local.strftime("%H:%M")
    is_open = (
        _is_trading_day(settings, local)
        and str(settings.market_open_time) <= clock_now <= str(settings.market_close_time)
    )

    if is_open:
        next_event = "Market closes"
        next_event_at = _at_clock(tz, local, str(settings.market_close_time)) + timedelta(minutes=1)
    else:
        next_event = "Market opens"
        next_event_at = _next_open(settings, tz, local)

    return MarketStatus(
        is_open=is_open,
        reason="SCHEDULE",
        timezone=str(settings.timezone),
        local_time=local,
        next_event=next_event if next_event_at else None,
        next_event_at=next_event_at,
        time_until=format_time_until(next_event_at - local) if next_event_at else None,
    )


def is_market_open(db: Session, now: datetime | None = None) -> bool:
    return market_status(get_market_settings(db), now=now).is_open
