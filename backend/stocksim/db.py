import os

from sqlalchemy import create_engine
from sqlalchemy.orm import DeclarativeBase, sessionmaker

DEFAULT_DATABASE_URL = "sqlite:///./stocksim.db"


def normalize_database_url(value: str) -> str:
    """
    Map hosted Postgres URLs onto the psycopg v3 driver.

    `postgres://` and bare `postgresql://` would otherwise select psycopg2.
    SQLite URLs (local play and the test suite) are returned untouched.
    """

    url = value.strip()
    for prefix in ("postgres://", "postgresql://"):
        if url.startswith(prefix):
            return "postgresql+psycopg://" + url[len(prefix) :]
    return url


def redact_database_url(url: str) -> str:
    """Hide the password part of a connection URL before it is printed."""
    if "://" not in url or "@" not in url:
        return url
    scheme, rest = url.split("://", 1)
    creds, host = rest.rsplit("@", 1)
    if ":" not in creds:
        return url
    user, _password = creds.split(":", 1)
    return f"{scheme}://{user}:***@{host}"


DATABASE_URL = normalize_database_url(os.environ.get("DATABASE_URL") or DEFAULT_DATABASE_URL)
DB_ECHO = os.environ.get("DB_ECHO", "").strip().lower() in {"1", "true", "yes"}


def build_engine(url: str):
    kwargs: dict[str, object] = {"pool_pre_ping": True, "echo": DB_ECHO}
    if url.startswith("sqlite"):
        # TestClient and the worker touch the same file from different threads.
        kwargs["connect_args"] = {"check_same_thread": False}
    return create_engine(url, **kwargs)


engine = build_engine(DATABASE_URL)
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)


class Base(DeclarativeBase):
    pass


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
