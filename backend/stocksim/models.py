from __future__ import annotations
from datetime import datetime
from typing import Any
from sqlalchemy import JSON, String, Integer, Numeric, DateTime, ForeignKey, UniqueConstraint, Boolean
from sqlalchemy.orm import Mapped, mapped_column, relationship
from .db import Base

NUM = Numeric(18, 6)

ORDER_PENDING = "PENDING"
ORDER_EXECUTED = "EXECUTED"
ORDER_CANCELLED = "CANCELLED"


class User(Base):
    __tablename__ = "users"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    email: Mapped[str] = mapped_column(String(254), unique=True, index=True)
    username: Mapped[str | None] = mapped_column(String(50), unique=True, index=True, nullable=True)
    display_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    cash_balance: Mapped[float] = mapped_column(NUM, default=0)
    password_hash: Mapped[str | None] = mapped_column(String(512), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    last_sign_in_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    positions: Mapped[list["Position"]] = relationship(back_populates="user")
    sessions: Mapped[list["UserSession"]] = relationship(back_populates="user")
    queued_orders: Mapped[list["QueuedOrder"]] = relationship(back_populates="user")


class UserSession(Base):
    __tablename__ = "user_sessions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), index=True)
    token_hash: Mapped[str] = mapped_column(String(128), unique=True, index=True)
    expires_at: Mapped[datetime] = mapped_column(DateTime, index=True)
    revoked_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, index=True)

    user: Mapped["User"] = relationship(back_populates="sessions")


class PasswordResetToken(Base):
    __tablename__ = "password_reset_tokens"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), index=True)
    token_hash: Mapped[str] = mapped_column(String(128), unique=True, index=True)
    expires_at: Mapped[datetime] = mapped_column(DateTime, index=True)
    used_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)


class AdminRole(Base):
    __tablename__ = "admin_roles"
    __table_args__ = (UniqueConstraint("user_id", name="uq_admin_role_user"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), index=True)
    role: Mapped[str] = mapped_column(String(32), default="admin")
    permissions: Mapped[str] = mapped_column(String(255), default="all")
    created_by: Mapped[int | None] = mapped_column(ForeignKey("users.id"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)


class Position(Base):
    __tablename__ = "portfolios"
    __table_args__ = (UniqueConstraint("user_id", "symbol", name="uq_user_symbol"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), index=True)
    symbol: Mapped[str] = mapped_column(String(16), index=True)
    name: Mapped[str] = mapped_column(String(255))

    shares: Mapped[float] = mapped_column(NUM, default=0)
    purchase_price: Mapped[float] = mapped_column(NUM, default=0)  # weighted average cost basis
    price: Mapped[float] = mapped_column(NUM, default=0)  # last refreshed price
    change: Mapped[float] = mapped_column(NUM, default=0)
    change_percent: Mapped[float] = mapped_column(NUM, default=0)
    total_value: Mapped[float] = mapped_column(NUM, default=0)

    added_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    user: Mapped["User"] = relationship(back_populates="positions")


class QueuedOrder(Base):
    __tablename__ = "queued_orders"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), index=True)
    symbol: Mapped[str] = mapped_column(String(16), index=True)
    name: Mapped[str] = mapped_column(String(255))
    order_type: Mapped[str] = mapped_column(String(8))  # BUY, SELL
    shares: Mapped[float] = mapped_column(NUM, default=0)
    order_price: Mapped[float | None] = mapped_column(NUM, nullable=True)
    status: Mapped[str] = mapped_column(String(16), default=ORDER_PENDING, index=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, index=True)
    executed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True, index=True)
    execution_price: Mapped[float | None] = mapped_column(NUM, nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    cancel_reason: Mapped[str | None] = mapped_column(String(255), nullable=True)
    position_id: Mapped[int | None] = mapped_column(Integer, nullable=True)

    user: Mapped["User"] = relationship(back_populates="queued_orders")


class Transaction(Base):
    __tablename__ = "transactions"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), index=True)
    symbol: Mapped[str] = mapped_column(String(16), index=True)

    type: Mapped[str] = mapped_column(String(16))  # BUY, SELL
    shares: Mapped[float] = mapped_column(NUM, default=0)
    unit_price: Mapped[float] = mapped_column(NUM, default=0)
    amount: Mapped[float] = mapped_column(NUM, default=0)  # cash delta (+ credit, - debit)
    source: Mapped[str] = mapped_column(String(16), default="MARKET")  # MARKET, QUEUED

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, index=True)


class MarketSettings(Base):
    __tablename__ = "market_settings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    market_open_time: Mapped[str] = mapped_column(String(5), default="09:30")
    market_close_time: Mapped[str] = mapped_column(String(5), default="16:00")
    timezone: Mapped[str] = mapped_column(String(64), default="America/New_York")
    trading_days: Mapped[list[int]] = mapped_column(JSON, default=lambda: [1, 2, 3, 4, 5])
    is_market_open_override: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    updated_by: Mapped[int | None] = mapped_column(ForeignKey("users.id"), nullable=True)


class GameSetting(Base):
    __tablename__ = "game_settings"
    __table_args__ = (UniqueConstraint("setting_key", name="uq_game_setting_key"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    setting_key: Mapped[str] = mapped_column(String(64), index=True)
    setting_value: Mapped[Any] = mapped_column(JSON)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    updated_by: Mapped[int | None] = mapped_column(ForeignKey("users.id"), nullable=True)


class ArtificialStockPrice(Base):
    __tablename__ = "artificial_stock_prices"
    __table_args__ = (UniqueConstraint("symbol", name="uq_artificial_symbol"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    symbol: Mapped[str] = mapped_column(String(16), index=True)
    name: Mapped[str] = mapped_column(String(255))
    artificial_price: Mapped[float] = mapped_column(NUM, default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, index=True)
    created_by: Mapped[int | None] = mapped_column(ForeignKey("users.id"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class LeaderboardEntry(Base):
    __tablename__ = "leaderboard"
    __table_args__ = (UniqueConstraint("user_id", name="uq_leaderboard_user"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), index=True)
    rank: Mapped[int] = mapped_column(Integer, index=True)
    total_value: Mapped[float] = mapped_column(NUM, default=0)
    total_gain_loss: Mapped[float] = mapped_column(NUM, default=0)
    total_gain_loss_percent: Mapped[float] = mapped_column(NUM, default=0)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)


class PortfolioSnapshot(Base):
    __tablename__ = "portfolio_history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), index=True)
    snapshot_date: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, index=True)
    total_value: Mapped[float] = mapped_column(NUM, default=0)
    cash_balance: Mapped[float] = mapped_column(NUM, default=0)
    positions_value: Mapped[float] = mapped_column(NUM, default=0)


class AdminActivityLog(Base):
    __tablename__ = "admin_activity_log"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    admin_id: Mapped[int] = mapped_column(ForeignKey("users.id"), index=True)
    action: Mapped[str] = mapped_column(String(64), index=True)
    target_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id"), nullable=True, index=True)
    details: Mapped[Any] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, index=True)
