import os
from decimal import Decimal
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from .models import GameSetting

STARTING_BALANCE_KEY = "starting_balance"
DAILY_TRADING_LIMIT_KEY = "daily_trading_limit"

DEFAULT_STARTING_BALANCE = Decimal(os.environ.get("DEFAULT_STARTING_BALANCE", "100000"))
DEFAULT_DAILY_TRADING_LIMIT = int(os.environ.get("DEFAULT_DAILY_TRADING_LIMIT", "10"))

GAME_SETTING_DEFAULTS: dict[str, Any] = {
    STARTING_BALANCE_KEY: float(DEFAULT_STARTING_BALANCE),
    DAILY_TRADING_LIMIT_KEY: DEFAULT_DAILY_TRADING_LIMIT,
}


def get_game_settings(db: Session) -> dict[str, Any]:
    values = dict(GAME_SETTING_DEFAULTS)
    for row in db.execute(select(GameSetting)).scalars().all():
        values[str(row.setting_key)] = row.setting_value
    return values


def set_game_setting(db: Session, key: str, value: Any, updated_by: int | None) -> GameSetting:
    row = db.execute(
        select(GameSetting).where(GameSetting.setting_key == key).with_for_update()
    ).scalar_one_or_none()
    if row is None:
        row = GameSetting(setting_key=key, setting_value=value, updated_by=updated_by)
        db.add(row)
    else:
        row.setting_value = value
        row.updated_by = updated_by
    return row


def get_starting_balance(db: Session) -> Decimal:
    raw = get_game_settings(db).get(STARTING_BALANCE_KEY)
    try:
        value = Decimal(str(raw))
    except (ArithmeticError, ValueError):
        return DEFAULT_STARTING_BALANCE
    return value if value > 0 else DEFAULT_STARTING_BALANCE


def get_daily_trading_limit(db: Session) -> int:
    raw = get_game_settings(db).get(DAILY_TRADING_LIMIT_KEY)
    try:
        value = int(raw)
    except (TypeError, ValueError):
        return DEFAULT_DAILY_TRADING_LIMIT
    return max(1, value)
