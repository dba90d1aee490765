# outreach/db.py

from functools import lru_cache

import psycopg2
from .config import settings

from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base


def get_conn():
    """
    Raw psycopg2 connection for the upsert-heavy store.
    """
    if not settings.DATABASE_URL:
        raise RuntimeError("DATABASE_URL is not configured.")
    return psycopg2.connect(settings.DATABASE_URL)

# ──────────────────────────────────────────────────────────────────────────────────────────
#                  SQLAlchemy ORM setup (table definitions + create_all)
# ──────────────────────────────────────────────────────────────────────────────────────────

# Declarative base for all ORM models
Base = declarative_base()


@lru_cache(maxsize=1)
def get_engine():
    # built on first use so importing models never needs a live database
    return create_engine(
        settings.DATABASE_URL,
        pool_pre_ping=True,
        pool_size=10,
        max_overflow=20
    )

