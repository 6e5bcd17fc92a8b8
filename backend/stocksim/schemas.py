from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from .auth import PASSWORD_MIN_LENGTH


class UserOut(BaseModel):
    id: int
    email: str
    username: str | None = None
    display_name: str | None = None
    cash_balance: float
    is_admin: bool = False
    created_at: datetime | None = None


class AuthRegisterIn(BaseModel):
    email: str = Field(min_length=3, max_length=254)
    password: str = Field(min_length=PASSWORD_MIN_LENGTH, max_length=128)
    username: str | None = Field(default=None, max_length=50)
    display_name: str | None = Field(default=None, max_length=100)


class AuthLoginIn(BaseModel):
    email: str = Field(min_length=3, max_length=254)
    password: str = Field(min_length=1, max_length=128)


class AuthSessionOut(BaseModel):
    access_token: str
    token_type: str = "bearer"
    expires_at: datetime
    user: UserOut


class AuthLogoutOut(BaseModel):
    ok: bool = True


class AuthPasswordUpdateIn(BaseModel):
    current_password: str = Field(min_length=1, max_length=128)
    new_password: str = Field(min_length=PASSWORD_MIN_LENGTH, max_length=128)


class AuthPasswordUpdateOut(BaseModel):
    ok: bool = True


class PasswordResetRequestIn(BaseModel):
    email: str = Field(min_length=1, max_length=254)


class PasswordResetConfirmIn(BaseModel):
    token: str = Field(min_length=1, max_length=256)
    new_password: str = Field(min_length=PASSWORD_MIN_LENGTH, max_length=128)


class OkOut(BaseModel):
    ok: bool = True


class UserProfileOut(BaseModel):
    id: int
    email: str
    username: str | None = None
    display_name: str | None = None
    cash_balance: float
    created_at: datetime
    last_sign_in_at: datetime | None = None


class UserProfileUpdateIn(BaseModel):
    username: str | None = Field(default=None, max_length=50)
    display_name: str | None = Field(default=None, max_length=100)


class StockSearchResultOut(BaseModel):
    symbol: str
    name: str
    type: str | None = None
    region: str | None = None
    currency: str | None = None


class StockQuoteOut(BaseModel):
    symbol: str
    name: str
    price: float
    change: float
    change_percent: float
    source: str


class MarketStatusOut(BaseModel):
    is_open: bool
    reason: str
    timezone: str
    local_time: datetime
    next_event: str | None = None
    next_event_at: datetime | None = None
    time_until: str | None = None


class OrderIn(BaseModel):
    symbol: str = Field(min_length=1, max_length=12)
    shares: int = Field(gt=0)
    name: str | None = Field(default=None, max_length=255)


class QueuedOrderOut(BaseModel):
    id: int
    symbol: str
    name: str
    order_type: str
    shares: float
    order_price: float | None = None
    status: str
    created_at: datetime
    executed_at: datetime | None = None
    execution_price: float | None = None
    cancelled_at: datetime | None = None
    cancel_reason: str | None = None


class OrderOut(BaseModel):
    status: Literal["EXECUTED", "QUEUED"]
    symbol: str
    name: str
    order_type: str
    shares: float
    price: float
    total: float
    price_source: str
    new_cash_balance: float
    order: QueuedOrderOut | None = None
    message: str


class PositionOut(BaseModel):
    id: int
    symbol: str
    name: str
    shares: float
    purchase_price: float
    price: float
    change: float
    change_percent: float
    total_value: float
    gain_loss: float
    gain_loss_percent: float
    added_at: datetime
    updated_at: datetime


class PortfolioOut(BaseModel):
    cash_balance: float
    positions_value: float
    total_value: float
    total_gain_loss: float
    total_gain_loss_percent: float
    positions: list[PositionOut]


class PortfolioRefreshOut(BaseModel):
    updated: int
    total: int
    errors: list[str]


class PortfolioSnapshotOut(BaseModel):
    snapshot_date: datetime
    total_value: float
    cash_balance: float
    positions_value: float


class LeaderboardEntryOut(BaseModel):
    rank: int
    user_id: int
    username: str | None = None
    display_name: str | None = None
    total_value: float
    total_gain_loss: float
    total_gain_loss_percent: float
    updated_at: datetime


class AdminLeaderboardEntryOut(LeaderboardEntryOut):
    email: str


class MonthlyPerformanceOut(BaseModel):
    month: str
    start_value: float
    end_value: float
    return_percent: float


class LeaderboardHoldingOut(BaseModel):
    symbol: str
    name: str
    shares: float
    price: float
    total_value: float
    change_percent: float


class LeaderboardDetailsOut(BaseModel):
    user_id: int
    username: str | None = None
    display_name: str | None = None
    rank: int | None = None
    total_value: float
    total_gain_loss: float
    total_gain_loss_percent: float
    holdings: list[LeaderboardHoldingOut]
    monthly_performance: list[MonthlyPerformanceOut]


class AdminUserOut(BaseModel):
    id: int
    email: str
    username: str | None = None
    display_name: str | None = None
    cash_balance: float
    total_value: float
    is_admin: bool
    created_at: datetime
    last_sign_in_at: datetime | None = None


class AdminBalanceAdjustIn(BaseModel):
    model_config = ConfigDict(allow_inf_nan=False)

    adjustment: float
    reason: str | None = Field(default=None, max_length=255)


class AdminBalanceAdjustOut(BaseModel):
    user_id: int
    old_balance: float
    adjustment: float
    new_balance: float


class AdminPortfolioResetOut(BaseModel):
    user_id: int
    positions_removed: int
    orders_cancelled: int
    new_balance: float


class MarketSettingsOut(BaseModel):
    market_open_time: str
    market_close_time: str
    timezone: str
    trading_days: list[int]
    is_market_open_override: bool | None = None
    updated_at: datetime | None = None
    status: MarketStatusOut


class MarketSettingsUpdateIn(BaseModel):
    market_open_time: str | None = None
    market_close_time: str | None = None
    timezone: str | None = None
    trading_days: list[int] | None = None
    # open, closed, or clear (follow the schedule)
    override: Literal["open", "closed", "clear"] | None = None


class GameSettingsOut(BaseModel):
    starting_balance: float
    daily_trading_limit: int


class GameSettingsUpdateIn(BaseModel):
    model_config = ConfigDict(allow_inf_nan=False)

    starting_balance: float | None = None
    daily_trading_limit: int | None = None


class ArtificialPriceOut(BaseModel):
    id: int
    symbol: str
    name: str
    artificial_price: float
    is_active: bool
    created_at: datetime
    updated_at: datetime


class ArtificialPriceIn(BaseModel):
    model_config = ConfigDict(allow_inf_nan=False)

    symbol: str = Field(min_length=1, max_length=12)
    name: str = Field(min_length=1, max_length=255)
    artificial_price: float
    is_active: bool = True


class ExecuteOrdersOut(BaseModel):
    market_open: bool
    processed: int
    executed: int
    cancelled: int


class AdminRoleIn(BaseModel):
    user_id: int


class AdminRoleOut(BaseModel):
    user_id: int
    email: str
    role: str
    permissions: str
    created_at: datetime


class AdminActivityOut(BaseModel):
    id: int
    action: str
    admin_id: int
    admin_email: str | None = None
    target_user_id: int | None = None
    target_email: str | None = None
    details: dict[str, Any] | None = None
    created_at: datetime
