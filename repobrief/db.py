# repobrief/db.py

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base
from sqlalchemy.pool import StaticPool

Base = declarative_base()


def make_engine(database_url: str):
    if database_url is None:
        raise RuntimeError("DATABASE_URL is not set. Check your .env file.")

    # In-memory SQLite must share one connection across threads (tests, local runs)
    if database_url.startswith("sqlite") and ":memory:" in database_url:
        return create_engine(
            database_url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )

    return create_engine(database_url)


def make_session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False)


def init_db(engine):
    """Create every table from the ORM models. The models are the only schema source."""
    # Registers the tables on Base.metadata
    from repobrief import models  # noqa: F401

    if engine.dialect.name == "postgresql":
        with engine.begin() as conn:
            conn.exec_driver_sql("CREATE EXTENSION IF NOT EXISTS vector")

    Base.metadata.create_all(bind=engine)
