"""Database bootstrap helpers shared by the gateway and its scripts."""

from sqlalchemy import JSON, create_engine
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, sessionmaker
from sqlalchemy.pool import StaticPool

from bgpay.common.config import settings

# JSONB on Postgres, plain JSON elsewhere (SQLite in tests).
JSONType = JSON().with_variant(JSONB(), "postgresql")


def build_engine(dsn: str) -> Engine:
    """Engine for `dsn`. In-memory SQLite shares one connection across threads."""

    if dsn.startswith("sqlite"):
        options = {"connect_args": {"check_same_thread": False}}
        if ":memory:" in dsn or dsn.endswith("://"):
            options["poolclass"] = StaticPool
        return create_engine(dsn, **options)
    return create_engine(dsn, pool_pre_ping=True)


def make_session_factory(bind: Engine) -> sessionmaker:
    # `expire_on_commit=False` keeps ORM objects readable after the session closes.
    return sessionmaker(bind=bind, autoflush=False, autocommit=False, expire_on_commit=False)


# Single engine per process.
engine = build_engine(settings.postgres_dsn)
SessionLocal = make_session_factory(engine)


class Base(DeclarativeBase):
    """Declarative base for SQLAlchemy models."""
