"""Database configuration and session management."""

from __future__ import annotations

import os
from datetime import datetime, timezone
from typing import Any, Optional

from dotenv import load_dotenv
from sqlalchemy import DateTime, MetaData, create_engine, func
from sqlalchemy.types import TypeDecorator
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker

# Load environment variables
load_dotenv()


class TZDateTime(TypeDecorator):
    """Timezone-aware datetime stored as UTC.

    SQLite drops tzinfo on the way back; values are re-tagged as UTC so
    comparisons against ``datetime.now(timezone.utc)`` work on every backend.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: Optional[datetime], dialect: Any) -> Optional[datetime]:
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        value = value.astimezone(timezone.utc)
        if dialect.name == "sqlite":
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value: Optional[datetime], dialect: Any) -> Optional[datetime]:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    """Shared base for all models."""

    metadata = MetaData()

    created_at: Mapped[datetime] = mapped_column(
        TZDateTime(), default=utcnow, server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        TZDateTime(),
        default=utcnow,
        server_default=func.now(),
        onupdate=utcnow,
        nullable=False
    )

# Configuration
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///spacecms.db")

# Detect engine type to configure optimized settings
is_postgres = DATABASE_URL.startswith("postgresql")

connect_args = {}
engine_kwargs = {
    "echo": False,
    "future": True,
}

if is_postgres:
    # Production PostgreSQL Settings
    engine_kwargs.update({
        "pool_size": int(os.getenv("DB_POOL_SIZE", "10")),
        "max_overflow": int(os.getenv("DB_MAX_OVERFLOW", "20")),
        "pool_recycle": int(os.getenv("DB_POOL_RECYCLE", "3600")),
        "pool_pre_ping": True,
    })

    ssl_mode = os.getenv("DB_SSL_MODE", "prefer") # 'require' for strict RDS
    if ssl_mode:
        connect_args["sslmode"] = ssl_mode
        engine_kwargs["connect_args"] = connect_args
else:
    # SQLite Settings for Dev
    connect_args["check_same_thread"] = False
    engine_kwargs["connect_args"] = connect_args

engine = create_engine(DATABASE_URL, **engine_kwargs)
SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
