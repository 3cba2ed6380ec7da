from datetime import datetime, timezone

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker
from sqlalchemy.orm import declarative_base

def get_engine(database_url: str, echo: bool = False):
    return create_async_engine(database_url, echo=echo, future=True)

Base = declarative_base()

def get_session(engine):
    return async_sessionmaker(
        bind=engine,
        expire_on_commit=False
    )

def upsert_for(session, table):
    """
    Dialect-specific INSERT that supports ON CONFLICT DO UPDATE.
    Postgres in production, SQLite in tests.
    """
    if session.bind.dialect.name == "sqlite":
        return sqlite.insert(table)
    return postgresql.insert(table)

def as_utc(dt: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes even for timezone=True columns
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)
