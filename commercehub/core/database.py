from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, declarative_base
from .config import settings


def build_engine(url: str, echo: bool = False, **kwargs) -> Engine:
    """
    Warehouse engine. PostgreSQL in production; SQLite for local runs and tests
    gets thread sharing and, for file databases, WAL so readers are not blocked
    while a rollup swap or backfill page commits.
    """
    is_sqlite = url.startswith("sqlite")
    connect_args = {"check_same_thread": False} if is_sqlite else {}

    new_engine = create_engine(
        url,
        connect_args=connect_args,
        pool_pre_ping=not is_sqlite,
        echo=echo,
        **kwargs,
    )

    if is_sqlite and ":memory:" not in url:
        @event.listens_for(new_engine, "connect")
        def set_sqlite_pragma(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.close()

    return new_engine


engine = build_engine(settings.DATABASE_URL, echo=settings.DEBUG)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Base class for warehouse, audit and rollup tables
Base = declarative_base()


# Dependency for FastAPI
def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def dispose_engine():
    """Drain pooled connections on shutdown"""
    engine.dispose()
