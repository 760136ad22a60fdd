from collections.abc import Generator

from sqlalchemy import create_engine, event
from sqlalchemy.orm import Session, sessionmaker

from gastozap.core.config import get_settings


def build_session_factory(database_url: str) -> sessionmaker | None:
    """Engine + session factory for *database_url*; ``None`` when unset."""
    if not database_url:
        return None

    connect_args: dict[str, object] = {}
    if database_url.startswith("sqlite"):
        # Ledger writes run in worker threads.
        connect_args = {"check_same_thread": False, "timeout": 30}

    engine = create_engine(database_url, pool_pre_ping=True, connect_args=connect_args)

    if database_url.startswith("sqlite"):
        @event.listens_for(engine, "connect")
        def _set_sqlite_pragmas(dbapi_connection, _connection_record) -> None:  # type: ignore[no-untyped-def]
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA busy_timeout=30000")
            cursor.close()

    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


SessionLocal = build_session_factory(get_settings().database_url)


def get_db() -> Generator[Session, None, None]:
    if SessionLocal is None:
        raise RuntimeError("DATABASE_URL is not configured")
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
