from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, declarative_base

from config import settings
from logger import get_logger

logger = get_logger("ChemQuest.db")

Base = declarative_base()
SessionLocal = sessionmaker(autoflush=False, autocommit=False, expire_on_commit=False)

engine: Engine | None = None


def _set_sqlite_pragmas(dbapi_connection, connection_record):
    # Light concurrency for the threadpool handlers and stream pollers
    cur = dbapi_connection.cursor()
    cur.execute("PRAGMA journal_mode=WAL;")
    cur.execute("PRAGMA synchronous=NORMAL;")
    cur.execute("PRAGMA busy_timeout=5000;")
    cur.close()


def configure(url: str) -> Engine:
    """(Re)bind the global engine and session factory to a database URL."""
    global engine
    if engine is not None:
        engine.dispose()

    connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
    engine = create_engine(url, connect_args=connect_args)
    if url.startswith("sqlite"):
        event.listen(engine, "connect", _set_sqlite_pragmas)

    SessionLocal.configure(bind=engine)
    logger.debug(f"Database bound: {engine.url.render_as_string(hide_password=True)}")
    return engine


def init_db() -> None:
    """Create all tables that don't exist yet."""
    import tables  # noqa: F401  (registers the mappers on Base)

    Base.metadata.create_all(bind=engine)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


configure(settings.database_url)
