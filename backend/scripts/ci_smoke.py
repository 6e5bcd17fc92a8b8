import os
import sys
from pathlib import Path


def main() -> int:
    # Ensure `import stocksim.*` works when running from repo root in CI.
    backend_dir = Path(__file__).resolve().parents[1]
    sys.path.insert(0, str(backend_dir))

    database_url = os.environ.get("DATABASE_URL", "").strip()
    if not database_url:
        raise RuntimeError("DATABASE_URL is required for CI smoke test")

    from stocksim.db import SessionLocal, redact_database_url
    from stocksim.seed import init_db, seed
    from stocksim.models import GameSetting, MarketSettings

    print("CI smoke DATABASE_URL:", redact_database_url(database_url))

    # 1) Create tables.
    init_db()

    # 2) Seed twice: a fresh database and a restart must both succeed without duplicating rows.
    db = SessionLocal()
    try:
        seed(db)
        seed(db)

        from sqlalchemy import func, select

        market_rows = int(db.execute(select(func.count()).select_from(MarketSettings)).scalar_one())
        game_setting_rows = int(db.execute(select(func.count()).select_from(GameSetting)).scalar_one())
    finally:
        db.close()

    if market_rows != 1:
        raise RuntimeError(f"Expected exactly 1 market settings row, found {market_rows}")
    if game_setting_rows < 2:
        raise RuntimeError("Expected the starting_balance and daily_trading_limit game settings")

    print(
        "OK create_all + seed",
        {
            "market_settings": market_rows,
            "game_settings": game_setting_rows,
        },
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
