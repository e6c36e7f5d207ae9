from datetime import datetime, timezone
from sqlalchemy import create_engine, Column, String, Text, DateTime
from sqlalchemy.orm import sessionmaker, declarative_base

Base = declarative_base()

# ---------------------------------------------------------
# 1. CONNECTION
# ---------------------------------------------------------
def normalize_database_url(url: str) -> str:
    # Bare postgres URLs default to psycopg2; the installed driver is psycopg v3
    if url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql+psycopg://", 1)
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+psycopg://", 1)
    return url


def make_engine(url: str):
    return create_engine(normalize_database_url(url), pool_pre_ping=True)


def make_session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)

# ---------------------------------------------------------
# 2. CACHE TABLE
# ---------------------------------------------------------
def _utcnow():
    return datetime.now(timezone.utc)


class CacheEntryModel(Base):
    __tablename__ = "subscription_cache"

    key = Column(String, primary_key=True)
    # JSON-encoded subscription-state record
    value = Column(Text, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False)

# ---------------------------------------------------------
# 3. HELPERS
# ---------------------------------------------------------
def init_db(engine):
    Base.metadata.create_all(bind=engine)
