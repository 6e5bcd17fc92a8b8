import logging
import os
import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal

from fastapi import Depends, FastAPI, Header, HTTPException, Query, status
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import and_, delete, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .auth import (
    generate_reset_token,
    generate_session_token,
    hash_password,
    hash_reset_token,
    hash_session_token,
    normalize_email,
    reset_expiry_from_now,
    session_expiry_from_now,
    verify_password,
)
from .db import SessionLocal, get_db
from .game_settings import (
    DAILY_TRADING_LIMIT_KEY,
    STARTING_BALANCE_KEY,
    get_daily_trading_limit,
    get_starting_balance,
    set_game_setting,
)
from .leaderboard import monthly_performance, ranked_entries, update_leaderboard
from .market import get_market_settings, is_valid_clock_time, is_valid_timezone, market_status
from .models import (
    ORDER_CANCELLED,
    ORDER_EXECUTED,
    ORDER_PENDING,
    AdminActivityLog,
    AdminRole,
    ArtificialStockPrice,
    LeaderboardEntry,
    PasswordResetToken,
    Position,
    QueuedOrder,
    User,
    UserSession,
)
from .orders import (
    BUY,
    SELL,
    OrderRejected,
    OrderResult,
    cancel_order,
    cancel_pending_orders_for_user,
    execute_pending_orders,
    place_order,
)
from .portfolio import portfolio_history, refresh_portfolio_prices, value_portfolio
from .pricing import to_decimal
from .quotes import (
    PriceService,
    QuoteError,
    QuoteNotFoundError,
    QuoteRateLimitError,
    QuoteUnavailableError,
    get_price_service,
    normalize_symbol,
)
from .schemas import (
    AdminActivityOut,
    AdminBalanceAdjustIn,
    AdminBalanceAdjustOut,
    AdminLeaderboardEntryOut,
    AdminPortfolioResetOut,
    AdminRoleIn,
    AdminRoleOut,
    AdminUserOut,
    ArtificialPriceIn,
    ArtificialPriceOut,
    AuthLoginIn,
    AuthLogoutOut,
    AuthPasswordUpdateIn,
    AuthPasswordUpdateOut,
    AuthRegisterIn,
    AuthSessionOut,
    ExecuteOrdersOut,
    GameSettingsOut,
    GameSettingsUpdateIn,
    LeaderboardDetailsOut,
    LeaderboardEntryOut,
    LeaderboardHoldingOut,
    MarketSettingsOut,
    MarketSettingsUpdateIn,
    MarketStatusOut,
    MonthlyPerformanceOut,
    OkOut,
    OrderIn,
    OrderOut,
    PasswordResetConfirmIn,
    PasswordResetRequestIn,
    PortfolioOut,
    PortfolioRefreshOut,
    PortfolioSnapshotOut,
    PositionOut,
    QueuedOrderOut,
    StockQuoteOut,
    StockSearchResultOut,
    UserOut,
    UserProfileOut,
    UserProfileUpdateIn,
)
from .seed import DEFAULT_ADMIN_EMAILS, init_db, seed

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").strip().upper() or "INFO"
logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="StockSim")
ALLOWED_ORIGINS = [
    origin.strip()
    for origin in os.environ.get("ALLOWED_ORIGINS", "http://localhost:3000,http://localhost:3001").split(",")
    if origin.strip()
]
app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/")
def root():
    return {"ok": True, "service": "StockSim API", "docs": "/docs", "health": "/healthz"}


@app.get("/healthz")
def healthz():
    return {"ok": True}


VALID_USERNAME = re.compile(r"^[a-z0-9][a-z0-9_-]{0,49}$")
DASHBOARD_EXECUTED_WINDOW = timedelta(hours=24)

ACTION_UPDATE_MARKET_SETTINGS = "UPDATE_MARKET_SETTINGS"
ACTION_UPDATE_GAME_SETTINGS = "UPDATE_GAME_SETTINGS"
ACTION_ADJUST_USER_BALANCE = "ADJUST_USER_BALANCE"
ACTION_RESET_USER_PORTFOLIO = "RESET_USER_PORTFOLIO"
ACTION_SET_ARTIFICIAL_PRICE = "SET_ARTIFICIAL_PRICE"
ACTION_DEACTIVATE_ARTIFICIAL_PRICE = "DEACTIVATE_ARTIFICIAL_PRICE"
ACTION_EXECUTE_QUEUED_ORDERS = "EXECUTE_QUEUED_ORDERS"
ACTION_GRANT_ADMIN_ROLE = "GRANT_ADMIN_ROLE"
ACTION_REVOKE_ADMIN_ROLE = "REVOKE_ADMIN_ROLE"


@dataclass
class AuthContext:
    user: User
    session: UserSession


@app.on_event("startup")
def on_startup():
    init_db()
    db = SessionLocal()
    try:
        seed(db)
    finally:
        db.close()


def normalize_username(raw_username: str | None) -> str | None:
    username = (raw_username or "").strip().lower()
    if not username:
        return None
    if not VALID_USERNAME.match(username):
        raise HTTPException(
            status_code=400,
            detail=(
                "Invalid username. Use lowercase letters, numbers, underscore, or hyphen "
                "(max 50 chars)."
            ),
        )
    return username


def normalize_optional_profile_field(value: str | None) -> str | None:
    normalized = (value or "").strip()
    return normalized or None


def require_symbol(raw_symbol: str) -> str:
    symbol = normalize_symbol(raw_symbol)
    if not symbol:
        raise HTTPException(400, "Invalid symbol.")
    return symbol


def quote_error_to_http(error: QuoteError) -> HTTPException:
    if isinstance(error, QuoteRateLimitError):
        return HTTPException(429, "Quote provider rate limit reached. Try again in a minute.")
    if isinstance(error, (QuoteNotFoundError, QuoteUnavailableError)):
        return HTTPException(404, str(error))
    return HTTPException(502, f"Quote provider error: {error}")


def auth_exception(detail: str = "Authentication required.") -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def get_bearer_token(
    authorization: str | None = Header(default=None, alias="Authorization"),
) -> str:
    if not authorization:
        raise auth_exception()
    scheme, _, token = authorization.partition(" ")
    if scheme.strip().lower() != "bearer" or not token.strip():
        raise auth_exception("Invalid authorization header.")
    return token.strip()


def get_user_by_id_or_raise(
    db: Session,
    user_id: int,
    for_update: bool = False,
) -> User:
    stmt = select(User).where(User.id == user_id)
    if for_update:
        stmt = stmt.with_for_update()
    user = db.execute(stmt).scalar_one_or_none()
    if not user:
        raise HTTPException(status_code=404, detail=f"User {user_id} not found.")
    return user


def get_auth_context(
    bearer_token: str = Depends(get_bearer_token),
    db: Session = Depends(get_db),
) -> AuthContext:
    session = db.execute(
        select(UserSession).where(
            UserSession.token_hash == hash_session_token(bearer_token),
            UserSession.revoked_at.is_(None),
            UserSession.expires_at > datetime.utcnow(),
        )
    ).scalar_one_or_none()
    if not session:
        raise auth_exception("Session is invalid or expired.")
    user = db.execute(select(User).where(User.id == session.user_id)).scalar_one_or_none()
    if not user:
        raise auth_exception("User not found.")
    return AuthContext(user=user, session=session)


def user_is_admin(db: Session, user: User) -> bool:
    if str(user.email).strip().lower() in DEFAULT_ADMIN_EMAILS:
        return True
    role = db.execute(select(AdminRole.id).where(AdminRole.user_id == user.id)).scalar_one_or_none()
    return role is not None


def get_admin_context(
    auth: AuthContext = Depends(get_auth_context),
    db: Session = Depends(get_db),
) -> AuthContext:
    if not user_is_admin(db, auth.user):
        raise HTTPException(status_code=403, detail="Admin access required.")
    return auth


def user_to_out(db: Session, user: User) -> UserOut:
    return UserOut(
        id=int(user.id),
        email=str(user.email),
        username=user.username,
        display_name=user.display_name,
        cash_balance=float(user.cash_balance),
        is_admin=user_is_admin(db, user),
        created_at=user.created_at,
    )


def user_profile_to_out(user: User) -> UserProfileOut:
    return UserProfileOut(
        id=int(user.id),
        email=str(user.email),
        username=user.username,
        display_name=user.display_name,
        cash_balance=float(user.cash_balance),
        created_at=user.created_at,
        last_sign_in_at=user.last_sign_in_at,
    )


def create_auth_session_out(db: Session, user: User) -> AuthSessionOut:
    token = generate_session_token()
    expires_at = session_expiry_from_now()
    db.add(
        UserSession(
            user_id=user.id,
            token_hash=hash_session_token(token),
            expires_at=expires_at,
        )
    )
    return AuthSessionOut(
        access_token=token,
        expires_at=expires_at,
        user=user_to_out(db, user),
    )


def ensure_username_available(db: Session, username: str, user_id: int | None = None) -> None:
    stmt = select(User.id).where(User.username == username)
    if user_id is not None:
        stmt = stmt.where(User.id != user_id)
    if db.execute(stmt).scalar_one_or_none() is not None:
        raise HTTPException(400, f"Username '{username}' is already taken.")


def log_admin_action(
    db: Session,
    admin: User,
    action: str,
    target_user_id: int | None = None,
    details: dict | None = None,
) -> None:
    db.add(
        AdminActivityLog(
            admin_id=admin.id,
            action=action,
            target_user_id=target_user_id,
            details=details or {},
        )
    )
    logger.info("Admin %s: %s target=%s details=%s", admin.email, action, target_user_id, details)


def queued_order_to_out(order: QueuedOrder) -> QueuedOrderOut:
    return QueuedOrderOut(
        id=int(order.id),
        symbol=str(order.symbol),
        name=str(order.name),
        order_type=str(order.order_type),
        shares=float(order.shares),
        order_price=float(order.order_price) if order.order_price is not None else None,
        status=str(order.status),
        created_at=order.created_at,
        executed_at=order.executed_at,
        execution_price=float(order.execution_price) if order.execution_price is not None else None,
        cancelled_at=order.cancelled_at,
        cancel_reason=order.cancel_reason,
    )


def order_result_to_out(result: OrderResult) -> OrderOut:
    verb = "buy" if result.order_type == BUY else "sell"
    shares = f"{float(result.shares):.0f}"
    if result.order is not None:
        message = (
            f"Market is closed. Your order to {verb} {shares} shares of {result.symbol} "
            "has been queued and will execute when the market opens."
        )
    else:
        past = "Bought" if result.order_type == BUY else "Sold"
        message = f"{past} {shares} shares of {result.symbol} at ${float(result.price):.2f}"
    return OrderOut(
        status=result.status,
        symbol=result.symbol,
        name=result.name,
        order_type=result.order_type,
        shares=float(result.shares),
        price=float(result.price),
        total=float(result.total),
        price_source=result.price_source,
        new_cash_balance=float(result.cash_balance),
        order=queued_order_to_out(result.order) if result.order is not None else None,
        message=message,
    )


def market_status_to_out(db: Session) -> MarketStatusOut:
    current = market_status(get_market_settings(db))
    return MarketStatusOut(
        is_open=current.is_open,
        reason=current.reason,
        timezone=current.timezone,
        local_time=current.local_time,
        next_event=current.next_event,
        next_event_at=current.next_event_at,
        time_until=current.time_until,
    )


@app.post("/auth/register", response_model=AuthSessionOut)
def register(payload: AuthRegisterIn, db: Session = Depends(get_db)):
    email = normalize_email(payload.email)
    if not email:
        raise HTTPException(400, "A valid email address is required.")
    existing = db.execute(select(User.id).where(User.email == email)).scalar_one_or_none()
    if existing is not None:
        raise HTTPException(400, f"An account for '{email}' already exists.")

    username = normalize_username(payload.username)
    if username:
        ensure_username_available(db, username)

    user = User(
        email=email,
        username=username,
        display_name=normalize_optional_profile_field(payload.display_name),
        cash_balance=float(get_starting_balance(db)),
        password_hash=hash_password(payload.password),
        last_sign_in_at=datetime.utcnow(),
    )
    db.add(user)
    try:
        db.flush()
        out = create_auth_session_out(db=db, user=user)
        db.commit()
    except IntegrityError as e:
        db.rollback()
        raise HTTPException(400, "Email or username is already registered.") from e
    logger.info("Registered user %s", email)
    return out


@app.post("/auth/login", response_model=AuthSessionOut)
def login(payload: AuthLoginIn, db: Session = Depends(get_db)):
    email = normalize_email(payload.email)
    user = db.execute(select(User).where(User.email == email)).scalar_one_or_none() if email else None
    if not user or not verify_password(payload.password, user.password_hash):
        raise auth_exception("Invalid email or password.")

    user.last_sign_in_at = datetime.utcnow()
    out = create_auth_session_out(db=db, user=user)
    db.commit()
    return out


@app.post("/auth/logout", response_model=AuthLogoutOut)
def logout(
    auth: AuthContext = Depends(get_auth_context),
    db: Session = Depends(get_db),
):
    auth.session.revoked_at = datetime.utcnow()
    db.commit()
    return AuthLogoutOut(ok=True)


@app.get("/auth/me", response_model=UserOut)
def auth_me(
    auth: AuthContext = Depends(get_auth_context),
    db: Session = Depends(get_db),
):
    return user_to_out(db, auth.user)


@app.post("/auth/password", response_model=AuthPasswordUpdateOut)
def auth_update_password(
    payload: AuthPasswordUpdateIn,
    auth: AuthContext = Depends(get_auth_context),
    db: Session = Depends(get_db),
):
    user = get_user_by_id_or_raise(
        db=db,
        user_id=auth.user.id,
        for_update=True,
    )
    if not verify_password(payload.current_password, user.password_hash):
        raise HTTPException(400, "Current password is incorrect.")
    if payload.current_password == payload.new_password:
        raise HTTPException(400, "New password must be different from current password.")

    user.password_hash = hash_password(payload.new_password)
    db.commit()
    return AuthPasswordUpdateOut(ok=True)


@app.post("/auth/password-reset/request", response_model=OkOut)
def auth_password_reset_request(payload: PasswordResetRequestIn, db: Session = Depends(get_db)):
    email = normalize_email(payload.email)
    user = db.execute(select(User).where(User.email == email)).scalar_one_or_none() if email else None
    if user:
        token = generate_reset_token()
        expires_at = reset_expiry_from_now()
        db.add(
            PasswordResetToken(
                user_id=user.id,
                token_hash=hash_reset_token(token),
                expires_at=expires_at,
            )
        )
        db.commit()
        # No mail transport; operators relay the token from the log.
        logger.info("Password reset token for %s: %s (expires %s)", email, token, expires_at.isoformat())
    return OkOut(ok=True)


@app.post("/auth/password-reset/confirm", response_model=OkOut)
def auth_password_reset_confirm(payload: PasswordResetConfirmIn, db: Session = Depends(get_db)):
    now = datetime.utcnow()
    reset = db.execute(
        select(PasswordResetToken)
        .where(PasswordResetToken.token_hash == hash_reset_token(payload.token.strip()))
        .with_for_update()
    ).scalar_one_or_none()
    if not reset or reset.used_at is not None or reset.expires_at <= now:
        raise HTTPException(400, "Reset token is invalid or expired.")

    user = get_user_by_id_or_raise(db=db, user_id=int(reset.user_id), for_update=True)
    user.password_hash = hash_password(payload.new_password)
    reset.used_at = now
    db.execute(
        update(UserSession)
        .where(UserSession.user_id == user.id, UserSession.revoked_at.is_(None))
        .values(revoked_at=now)
    )
    db.commit()
    return OkOut(ok=True)


@app.get("/users/me/profile", response_model=UserProfileOut)
def users_me_profile(auth: AuthContext = Depends(get_auth_context)):
    return user_profile_to_out(auth.user)


@app.patch("/users/me/profile", response_model=UserProfileOut)
def users_me_profile_update(
    payload: UserProfileUpdateIn,
    auth: AuthContext = Depends(get_auth_context),
    db: Session = Depends(get_db),
):
    user = get_user_by_id_or_raise(
        db=db,
        user_id=auth.user.id,
        for_update=True,
    )
    if "username" in payload.model_fields_set:
        username = normalize_username(payload.username)
        if username:
            ensure_username_available(db, username, user_id=user.id)
        user.username = username
    if "display_name" in payload.model_fields_set:
        user.display_name = normalize_optional_profile_field(payload.display_name)

    try:
        db.commit()
    except IntegrityError as e:
        db.rollback()
        raise HTTPException(400, "Username is already taken.") from e
    return user_profile_to_out(user)


@app.get("/stocks/search", response_model=list[StockSearchResultOut])
def stocks_search(
    q: str = Query(..., min_length=1, max_length=64),
    limit: int = Query(default=10, ge=1, le=25),
    _auth: AuthContext = Depends(get_auth_context),
    db: Session = Depends(get_db),
    prices: PriceService = Depends(get_price_service),
):
    try:
        matches = prices.search(db, q, limit=limit)
    except QuoteError as e:
        raise quote_error_to_http(e) from e
    return [
        StockSearchResultOut(
            symbol=match.symbol,
            name=match.name,
            type=match.type,
            region=match.region,
            currency=match.currency,
        )
        for match in matches
    ]


@app.get("/stocks/{symbol}/quote", response_model=StockQuoteOut)
def stocks_quote(
    symbol: str,
    _auth: AuthContext = Depends(get_auth_context),
    db: Session = Depends(get_db),
    prices: PriceService = Depends(get_price_service),
):
    try:
        quote = prices.resolve(db, require_symbol(symbol))
    except QuoteError as e:
        raise quote_error_to_http(e) from e
    return StockQuoteOut(
        symbol=quote.symbol,
        name=quote.name,
        price=float(quote.price),
        change=float(quote.change),
        change_percent=float(quote.change_percent),
        source=quote.source,
    )


@app.get("/market/status", response_model=MarketStatusOut)
def get_market_status(db: Session = Depends(get_db)):
    out = market_status_to_out(db)
    db.commit()
    return out


def submit_order(
    order_type: str,
    payload: OrderIn,
    auth: AuthContext,
    db: Session,
    prices: PriceService,
) -> OrderOut:
    symbol = require_symbol(payload.symbol)
    try:
        result = place_order(
            db=db,
            user_id=auth.user.id,
            order_type=order_type,
            symbol=symbol,
            shares=payload.shares,
            prices=prices,
            name=normalize_optional_profile_field(payload.name),
        )
    except OrderRejected as e:
        raise HTTPException(400, str(e)) from e
    except QuoteError as e:
        raise quote_error_to_http(e) from e

    out = order_result_to_out(result)
    db.commit()
    return out


@app.post("/orders/buy", response_model=OrderOut)
def orders_buy(
    payload: OrderIn,
    auth: AuthContext = Depends(get_auth_context),
    db: Session = Depends(get_db),
    prices: PriceService = Depends(get_price_service),
):
    return submit_order(BUY, payload, auth, db, prices)


@app.post("/orders/sell", response_model=OrderOut)
def orders_sell(
    payload: OrderIn,
    auth: AuthContext = Depends(get_auth_context),
    db: Session = Depends(get_db),
    prices: PriceService = Depends(get_price_service),
):
    return submit_order(SELL, payload, auth, db, prices)


@app.get("/orders", response_model=list[QueuedOrderOut])
def orders_list(
    order_status: str | None = Query(default=None, alias="status"),
    dashboard: bool = Query(default=False),
    auth: AuthContext = Depends(get_auth_context),
    db: Session = Depends(get_db),
):
    stmt = select(QueuedOrder).where(QueuedOrder.user_id == auth.user.id)
    if dashboard:
        stmt = stmt.where(
            or_(
                QueuedOrder.status == ORDER_PENDING,
                and_(
                    QueuedOrder.status == ORDER_EXECUTED,
                    QueuedOrder.executed_at >= datetime.utcnow() - DASHBOARD_EXECUTED_WINDOW,
                ),
            )
        )
    elif order_status:
        normalized_status = order_status.strip().upper()
        if normalized_status not in {ORDER_PENDING, ORDER_EXECUTED, ORDER_CANCELLED}:
            raise HTTPException(400, "status must be PENDING, EXECUTED, or CANCELLED.")
        stmt = stmt.where(QueuedOrder.status == normalized_status)

    orders = db.execute(stmt.order_by(QueuedOrder.created_at.desc(), QueuedOrder.id.desc())).scalars().all()
    return [queued_order_to_out(order) for order in orders]


@app.post("/orders/{order_id}/cancel", response_model=QueuedOrderOut)
def orders_cancel(
    order_id: int,
    auth: AuthContext = Depends(get_auth_context),
    db: Session = Depends(get_db),
):
    order = db.execute(
        select(QueuedOrder)
        .where(QueuedOrder.id == order_id, QueuedOrder.user_id == auth.user.id)
        .with_for_update()
    ).scalar_one_or_none()
    if not order:
        raise HTTPException(404, "Order not found.")
    try:
        cancel_order(db, order, "Cancelled by user")
    except OrderRejected as e:
        raise HTTPException(400, str(e)) from e
    db.commit()
    return queued_order_to_out(order)


@app.get("/portfolio", response_model=PortfolioOut)
def portfolio(
    auth: AuthContext = Depends(get_auth_context),
    db: Session = Depends(get_db),
):
    valuation = value_portfolio(db, auth.user)
    return PortfolioOut(
        cash_balance=float(valuation.cash_balance),
        positions_value=float(valuation.positions_value),
        total_value=float(valuation.total_value),
        total_gain_loss=float(valuation.total_gain_loss),
        total_gain_loss_percent=float(valuation.total_gain_loss_percent),
        positions=[
            PositionOut(
                id=int(value.position.id),
                symbol=str(value.position.symbol),
                name=str(value.position.name),
                shares=float(value.shares),
                purchase_price=float(value.cost_basis),
                price=float(value.price),
                change=float(value.position.change),
                change_percent=float(value.position.change_percent),
                total_value=float(value.market_value),
                gain_loss=float(value.gain_loss),
                gain_loss_percent=float(value.gain_loss_percent),
                added_at=value.position.added_at,
                updated_at=value.position.updated_at,
            )
            for value in valuation.positions
        ],
    )


@app.post("/portfolio/refresh", response_model=PortfolioRefreshOut)
def portfolio_refresh(
    auth: AuthContext = Depends(get_auth_context),
    db: Session = Depends(get_db),
    prices: PriceService = Depends(get_price_service),
):
    user = get_user_by_id_or_raise(db=db, user_id=auth.user.id, for_update=True)
    result = refresh_portfolio_prices(db, user, prices)
    db.commit()
    return PortfolioRefreshOut(updated=result.updated, total=result.total, errors=result.errors)


@app.get("/portfolio/history", response_model=list[PortfolioSnapshotOut])
def portfolio_history_route(
    days: int = Query(default=30, ge=1, le=3650),
    auth: AuthContext = Depends(get_auth_context),
    db: Session = Depends(get_db),
):
    return [
        PortfolioSnapshotOut(
            snapshot_date=snapshot.snapshot_date,
            total_value=float(snapshot.total_value),
            cash_balance=float(snapshot.cash_balance),
            positions_value=float(snapshot.positions_value),
        )
        for snapshot in portfolio_history(db, auth.user.id, days=days)
    ]


def leaderboard_entry_to_out(entry: LeaderboardEntry, user: User) -> LeaderboardEntryOut:
    return LeaderboardEntryOut(
        rank=int(entry.rank),
        user_id=int(user.id),
        username=user.username,
        display_name=user.display_name,
        total_value=float(entry.total_value),
        total_gain_loss=float(entry.total_gain_loss),
        total_gain_loss_percent=float(entry.total_gain_loss_percent),
        updated_at=entry.updated_at,
    )


@app.get("/leaderboard", response_model=list[LeaderboardEntryOut])
def leaderboard(
    limit: int = Query(default=10, ge=1, le=100),
    db: Session = Depends(get_db),
):
    update_leaderboard(db)
    db.commit()
    return [leaderboard_entry_to_out(entry, user) for entry, user in ranked_entries(db, limit)]


@app.get("/leaderboard/{user_id}", response_model=LeaderboardDetailsOut)
def leaderboard_details(
    user_id: int,
    _auth: AuthContext = Depends(get_auth_context),
    db: Session = Depends(get_db),
):
    user = get_user_by_id_or_raise(db=db, user_id=user_id)
    valuation = value_portfolio(db, user)
    entry = db.execute(select(LeaderboardEntry).where(LeaderboardEntry.user_id == user.id)).scalar_one_or_none()
    return LeaderboardDetailsOut(
        user_id=int(user.id),
        username=user.username,
        display_name=user.display_name,
        rank=int(entry.rank) if entry else None,
        total_value=float(valuation.total_value),
        total_gain_loss=float(valuation.total_gain_loss),
        total_gain_loss_percent=float(valuation.total_gain_loss_percent),
        holdings=[
            LeaderboardHoldingOut(
                symbol=str(value.position.symbol),
                name=str(value.position.name),
                shares=float(value.shares),
                price=float(value.price),
                total_value=float(value.market_value),
                change_percent=float(value.gain_loss_percent),
            )
            for value in valuation.positions
        ],
        monthly_performance=[
            MonthlyPerformanceOut(
                month=month.month,
                start_value=float(month.start_value),
                end_value=float(month.end_value),
                return_percent=float(month.return_percent),
            )
            for month in monthly_performance(db, user.id)
        ],
    )


@app.get("/admin/users", response_model=list[AdminUserOut])
def admin_users(
    _admin: AuthContext = Depends(get_admin_context),
    db: Session = Depends(get_db),
):
    starting_balance = get_starting_balance(db)
    users = db.execute(select(User).order_by(User.created_at.desc(), User.id.desc())).scalars().all()
    out: list[AdminUserOut] = []
    for user in users:
        valuation = value_portfolio(db, user, starting_balance=starting_balance)
        out.append(
            AdminUserOut(
                id=int(user.id),
                email=str(user.email),
                username=user.username,
                display_name=user.display_name,
                cash_balance=float(user.cash_balance),
                total_value=float(valuation.total_value),
                is_admin=user_is_admin(db, user),
                created_at=user.created_at,
                last_sign_in_at=user.last_sign_in_at,
            )
        )
    return out


@app.post("/admin/users/{user_id}/balance", response_model=AdminBalanceAdjustOut)
def admin_adjust_balance(
    user_id: int,
    payload: AdminBalanceAdjustIn,
    admin: AuthContext = Depends(get_admin_context),
    db: Session = Depends(get_db),
):
    adjustment = Decimal(str(payload.adjustment))
    if adjustment == 0:
        raise HTTPException(400, "adjustment must be non-zero")

    user = get_user_by_id_or_raise(db=db, user_id=user_id, for_update=True)
    old_balance = to_decimal(user.cash_balance)
    new_balance = old_balance + adjustment
    if new_balance < 0:
        raise HTTPException(
            400,
            f"Adjustment would make the balance negative ({float(new_balance):.2f}).",
        )

    user.cash_balance = float(new_balance)
    log_admin_action(
        db,
        admin.user,
        ACTION_ADJUST_USER_BALANCE,
        target_user_id=user.id,
        details={
            "old_balance": float(old_balance),
            "adjustment": float(adjustment),
            "new_balance": float(new_balance),
            "reason": normalize_optional_profile_field(payload.reason),
        },
    )
    db.commit()
    return AdminBalanceAdjustOut(
        user_id=int(user.id),
        old_balance=float(old_balance),
        adjustment=float(adjustment),
        new_balance=float(new_balance),
    )


@app.post("/admin/users/{user_id}/reset", response_model=AdminPortfolioResetOut)
def admin_reset_portfolio(
    user_id: int,
    admin: AuthContext = Depends(get_admin_context),
    db: Session = Depends(get_db),
):
    user = get_user_by_id_or_raise(db=db, user_id=user_id, for_update=True)
    starting_balance = get_starting_balance(db)
    removed = db.execute(delete(Position).where(Position.user_id == user.id)).rowcount or 0
    cancelled = cancel_pending_orders_for_user(db, user.id, "Portfolio reset by admin")
    old_balance = to_decimal(user.cash_balance)
    user.cash_balance = float(starting_balance)

    log_admin_action(
        db,
        admin.user,
        ACTION_RESET_USER_PORTFOLIO,
        target_user_id=user.id,
        details={
            "old_balance": float(old_balance),
            "new_balance": float(starting_balance),
            "positions_removed": int(removed),
            "orders_cancelled": cancelled,
        },
    )
    db.commit()
    return AdminPortfolioResetOut(
        user_id=int(user.id),
        positions_removed=int(removed),
        orders_cancelled=cancelled,
        new_balance=float(starting_balance),
    )


def market_settings_to_out(db: Session) -> MarketSettingsOut:
    settings = get_market_settings(db)
    return MarketSettingsOut(
        market_open_time=str(settings.market_open_time),
        market_close_time=str(settings.market_close_time),
        timezone=str(settings.timezone),
        trading_days=[int(day) for day in (settings.trading_days or [])],
        is_market_open_override=settings.is_market_open_override,
        updated_at=settings.updated_at,
        status=market_status_to_out(db),
    )


@app.get("/admin/market-settings", response_model=MarketSettingsOut)
def admin_market_settings(
    _admin: AuthContext = Depends(get_admin_context),
    db: Session = Depends(get_db),
):
    out = market_settings_to_out(db)
    db.commit()
    return out


@app.patch("/admin/market-settings", response_model=MarketSettingsOut)
def admin_update_market_settings(
    payload: MarketSettingsUpdateIn,
    admin: AuthContext = Depends(get_admin_context),
    db: Session = Depends(get_db),
):
    settings = get_market_settings(db, for_update=True)
    changes: dict[str, object] = {}

    open_time = str(settings.market_open_time)
    close_time = str(settings.market_close_time)
    if payload.market_open_time is not None:
        if not is_valid_clock_time(payload.market_open_time):
            raise HTTPException(400, "market_open_time must be HH:MM (24-hour).")
        open_time = payload.market_open_time
    if payload.market_close_time is not None:
        if not is_valid_clock_time(payload.market_close_time):
            raise HTTPException(400, "market_close_time must be HH:MM (24-hour).")
        close_time = payload.market_close_time
    if open_time >= close_time:
        raise HTTPException(400, "Market open time must be before close time.")
    if open_time != settings.market_open_time:
        changes["market_open_time"] = open_time
        settings.market_open_time = open_time
    if close_time != settings.market_close_time:
        changes["market_close_time"] = close_time
        settings.market_close_time = close_time

    if payload.timezone is not None:
        timezone_name = payload.timezone.strip()
        if not is_valid_timezone(timezone_name):
            raise HTTPException(400, f"Unknown timezone '{payload.timezone}'.")
        changes["timezone"] = timezone_name
        settings.timezone = timezone_name

    if payload.trading_days is not None:
        if any(day < 0 or day > 6 for day in payload.trading_days):
            raise HTTPException(400, "trading_days must be weekday numbers 0 (Sunday) to 6 (Saturday).")
        trading_days = sorted(set(payload.trading_days))
        changes["trading_days"] = trading_days
        settings.trading_days = trading_days

    if payload.override is not None:
        override = {"open": True, "closed": False, "clear": None}[payload.override]
        changes["is_market_open_override"] = override
        settings.is_market_open_override = override

    settings.updated_by = admin.user.id
    settings.updated_at = datetime.utcnow()
    log_admin_action(db, admin.user, ACTION_UPDATE_MARKET_SETTINGS, details=changes)
    db.flush()
    out = market_settings_to_out(db)
    db.commit()
    return out


def game_settings_to_out(db: Session) -> GameSettingsOut:
    return GameSettingsOut(
        starting_balance=float(get_starting_balance(db)),
        daily_trading_limit=get_daily_trading_limit(db),
    )


@app.get("/admin/game-settings", response_model=GameSettingsOut)
def admin_game_settings(
    _admin: AuthContext = Depends(get_admin_context),
    db: Session = Depends(get_db),
):
    return game_settings_to_out(db)


@app.patch("/admin/game-settings", response_model=GameSettingsOut)
def admin_update_game_settings(
    payload: GameSettingsUpdateIn,
    admin: AuthContext = Depends(get_admin_context),
    db: Session = Depends(get_db),
):
    changes: dict[str, object] = {}
    if payload.starting_balance is not None:
        if payload.starting_balance <= 0:
            raise HTTPException(400, "starting_balance must be > 0")
        changes[STARTING_BALANCE_KEY] = float(payload.starting_balance)
    if payload.daily_trading_limit is not None:
        if payload.daily_trading_limit < 1:
            raise HTTPException(400, "daily_trading_limit must be >= 1")
        changes[DAILY_TRADING_LIMIT_KEY] = int(payload.daily_trading_limit)
    if not changes:
        raise HTTPException(400, "No settings to update.")

    for key, value in changes.items():
        set_game_setting(db, key, value, updated_by=admin.user.id)
    log_admin_action(db, admin.user, ACTION_UPDATE_GAME_SETTINGS, details=changes)
    db.flush()
    out = game_settings_to_out(db)
    db.commit()
    return out


def artificial_price_to_out(row: ArtificialStockPrice) -> ArtificialPriceOut:
    return ArtificialPriceOut(
        id=int(row.id),
        symbol=str(row.symbol),
        name=str(row.name),
        artificial_price=float(row.artificial_price),
        is_active=bool(row.is_active),
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


@app.get("/admin/artificial-prices", response_model=list[ArtificialPriceOut])
def admin_artificial_prices(
    _admin: AuthContext = Depends(get_admin_context),
    db: Session = Depends(get_db),
):
    rows = db.execute(select(ArtificialStockPrice).order_by(ArtificialStockPrice.symbol.asc())).scalars().all()
    return [artificial_price_to_out(row) for row in rows]


@app.put("/admin/artificial-prices", response_model=ArtificialPriceOut)
def admin_set_artificial_price(
    payload: ArtificialPriceIn,
    admin: AuthContext = Depends(get_admin_context),
    db: Session = Depends(get_db),
    prices: PriceService = Depends(get_price_service),
):
    symbol = require_symbol(payload.symbol)
    price = Decimal(str(payload.artificial_price))
    if price <= 0:
        raise HTTPException(400, "artificial_price must be > 0")
    name = payload.name.strip()
    if not name:
        raise HTTPException(400, "name is required")

    row = db.execute(
        select(ArtificialStockPrice).where(ArtificialStockPrice.symbol == symbol).with_for_update()
    ).scalar_one_or_none()
    old_price = float(row.artificial_price) if row else None
    if not row:
        row = ArtificialStockPrice(symbol=symbol, created_by=admin.user.id)
        db.add(row)
    row.name = name
    row.artificial_price = float(price)
    row.is_active = payload.is_active
    row.updated_at = datetime.utcnow()

    log_admin_action(
        db,
        admin.user,
        ACTION_SET_ARTIFICIAL_PRICE,
        details={
            "symbol": symbol,
            "old_price": old_price,
            "new_price": float(price),
            "is_active": payload.is_active,
        },
    )
    db.commit()
    prices.cache.invalidate(symbol)
    return artificial_price_to_out(row)


@app.delete("/admin/artificial-prices/{symbol}", response_model=ArtificialPriceOut)
def admin_deactivate_artificial_price(
    symbol: str,
    admin: AuthContext = Depends(get_admin_context),
    db: Session = Depends(get_db),
    prices: PriceService = Depends(get_price_service),
):
    normalized_symbol = require_symbol(symbol)
    row = db.execute(
        select(ArtificialStockPrice)
        .where(ArtificialStockPrice.symbol == normalized_symbol)
        .with_for_update()
    ).scalar_one_or_none()
    if not row:
        raise HTTPException(404, f"No artificial price for {normalized_symbol}.")

    row.is_active = False
    row.updated_at = datetime.utcnow()
    log_admin_action(
        db,
        admin.user,
        ACTION_DEACTIVATE_ARTIFICIAL_PRICE,
        details={"symbol": normalized_symbol, "price": float(row.artificial_price)},
    )
    db.commit()
    prices.cache.invalidate(normalized_symbol)
    return artificial_price_to_out(row)


@app.post("/admin/orders/execute", response_model=ExecuteOrdersOut)
def admin_execute_orders(
    admin: AuthContext = Depends(get_admin_context),
    db: Session = Depends(get_db),
    prices: PriceService = Depends(get_price_service),
):
    summary = execute_pending_orders(db, prices)
    log_admin_action(
        db,
        admin.user,
        ACTION_EXECUTE_QUEUED_ORDERS,
        details={
            "market_open": summary.market_open,
            "processed": summary.processed,
            "executed": summary.executed,
            "cancelled": summary.cancelled,
        },
    )
    db.commit()
    return ExecuteOrdersOut(
        market_open=summary.market_open,
        processed=summary.processed,
        executed=summary.executed,
        cancelled=summary.cancelled,
    )


@app.get("/admin/roles", response_model=list[AdminRoleOut])
def admin_roles(
    _admin: AuthContext = Depends(get_admin_context),
    db: Session = Depends(get_db),
):
    rows = db.execute(
        select(AdminRole, User).join(User, User.id == AdminRole.user_id).order_by(AdminRole.created_at.asc())
    ).all()
    return [
        AdminRoleOut(
            user_id=int(user.id),
            email=str(user.email),
            role=str(role.role),
            permissions=str(role.permissions),
            created_at=role.created_at,
        )
        for role, user in rows
    ]


@app.post("/admin/roles", response_model=AdminRoleOut)
def admin_grant_role(
    payload: AdminRoleIn,
    admin: AuthContext = Depends(get_admin_context),
    db: Session = Depends(get_db),
):
    user = get_user_by_id_or_raise(db=db, user_id=payload.user_id)
    existing = db.execute(select(AdminRole).where(AdminRole.user_id == user.id)).scalar_one_or_none()
    if existing:
        raise HTTPException(400, f"{user.email} is already an admin.")

    role = AdminRole(user_id=user.id, role="admin", permissions="all", created_by=admin.user.id)
    db.add(role)
    log_admin_action(db, admin.user, ACTION_GRANT_ADMIN_ROLE, target_user_id=user.id, details={"role": "admin"})
    db.commit()
    return AdminRoleOut(
        user_id=int(user.id),
        email=str(user.email),
        role=str(role.role),
        permissions=str(role.permissions),
        created_at=role.created_at,
    )


@app.delete("/admin/roles/{user_id}", response_model=OkOut)
def admin_revoke_role(
    user_id: int,
    admin: AuthContext = Depends(get_admin_context),
    db: Session = Depends(get_db),
):
    if user_id == admin.user.id:
        raise HTTPException(400, "You cannot revoke your own admin role.")
    role = db.execute(select(AdminRole).where(AdminRole.user_id == user_id)).scalar_one_or_none()
    if not role:
        raise HTTPException(404, f"User {user_id} has no admin role.")

    db.delete(role)
    log_admin_action(db, admin.user, ACTION_REVOKE_ADMIN_ROLE, target_user_id=user_id, details={"role": str(role.role)})
    db.commit()
    return OkOut(ok=True)


@app.get("/admin/activity", response_model=list[AdminActivityOut])
def admin_activity(
    limit: int = Query(default=50, ge=1, le=500),
    _admin: AuthContext = Depends(get_admin_context),
    db: Session = Depends(get_db),
):
    rows = db.execute(
        select(AdminActivityLog).order_by(AdminActivityLog.created_at.desc(), AdminActivityLog.id.desc()).limit(limit)
    ).scalars().all()
    user_ids = {int(row.admin_id) for row in rows} | {int(row.target_user_id) for row in rows if row.target_user_id}
    emails = {
        int(user_id): str(email)
        for user_id, email in db.execute(select(User.id, User.email).where(User.id.in_(sorted(user_ids)))).all()
    } if user_ids else {}
    return [
        AdminActivityOut(
            id=int(row.id),
            action=str(row.action),
            admin_id=int(row.admin_id),
            admin_email=emails.get(int(row.admin_id)),
            target_user_id=row.target_user_id,
            target_email=emails.get(int(row.target_user_id)) if row.target_user_id else None,
            details=row.details,
            created_at=row.created_at,
        )
        for row in rows
    ]


@app.get("/admin/leaderboard", response_model=list[AdminLeaderboardEntryOut])
def admin_leaderboard(
    limit: int = Query(default=20, ge=1, le=500),
    _admin: AuthContext = Depends(get_admin_context),
    db: Session = Depends(get_db),
):
    update_leaderboard(db)
    db.commit()
    return [
        AdminLeaderboardEntryOut(
            **leaderboard_entry_to_out(entry, user).model_dump(),
            email=str(user.email),
        )
        for entry, user in ranked_entries(db, limit)
    ]
