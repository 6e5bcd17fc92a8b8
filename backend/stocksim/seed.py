import logging
import os
import time

from sqlalchemy import select, text
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from .db import Base, engine
from .game_settings import GAME_SETTING_DEFAULTS
from .market import get_market_settings
from .models import AdminRole, GameSetting, User

logger = logging.getLogger(__name__)

DB_READY_ATTEMPTS = int(os.environ.get("DB_READY_ATTEMPTS", "30"))
DEFAULT_ADMIN_EMAILS = {
    email.strip().lower()
    for email in (os.environ.get("DEFAULT_ADMIN_EMAILS") or "").split(",")
    if email.strip()
}


def init_db():
    # Wait for the database to accept connections
    for attempt in range(DB_READY_ATTEMPTS):
        try:
            with engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            break
        except OperationalError:
            logger.info("Database not ready (attempt %s/%s)", attempt + 1, DB_READY_ATTEMPTS)
            time.sleep(1)
    else:
        raise RuntimeError(f"Database not ready after {DB_READY_ATTEMPTS} seconds")

    Base.metadata.create_all(bind=engine)


def seed(db: Session):
    get_market_settings(db)

    existing_keys = {
        str(key) for key in db.execute(select(GameSetting.setting_key)).scalars().all()
    }
    for key, value in GAME_SETTING_DEFAULTS.items():
        if key not in existing_keys:
            db.add(GameSetting(setting_key=key, setting_value=value))

    if DEFAULT_ADMIN_EMAILS:
        admins = db.execute(select(User).where(User.email.in_(sorted(DEFAULT_ADMIN_EMAILS)))).scalars().all()
        granted = {
            int(user_id) for user_id in db.execute(select(AdminRole.user_id)).scalars().all()
        }
        for user in admins:
            if int(user.id) in granted:
                continue
            db.add(AdminRole(user_id=user.id, role="admin", permissions="all"))
            logger.info("Granted admin role to %s", user.email)

    db.commit()
