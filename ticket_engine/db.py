from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, sessionmaker

from .config import get_settings


class Base(DeclarativeBase):
    pass


def make_engine(url: str, echo: bool = False) -> Engine:
    is_sqlite = url.startswith("sqlite")
    eng = create_engine(
        url,
        echo=echo,
        connect_args={"check_same_thread": False, "timeout": 15} if is_sqlite else {},
        pool_pre_ping=not is_sqlite,
    )

    if is_sqlite:
        # Writers must serialize: take the write lock when the transaction
        # starts, not on first write, or concurrent read-then-write
        # transactions fail with "database is locked".
        @event.listens_for(eng, "connect")
        def _sqlite_connect(dbapi_connection, connection_record):
            dbapi_connection.isolation_level = None
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA busy_timeout=15000;")
            cursor.execute("PRAGMA foreign_keys=ON;")
            cursor.close()

        @event.listens_for(eng, "begin")
        def _sqlite_begin(conn):
            conn.exec_driver_sql("BEGIN IMMEDIATE")

    return eng


def make_sessionmaker(eng: Engine) -> sessionmaker:
    return sessionmaker(bind=eng, autoflush=False, expire_on_commit=False)


_settings = get_settings()
engine = make_engine(_settings.DATABASE_URL, echo=_settings.DB_ECHO)
SessionLocal = make_sessionmaker(engine)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def execute_guarded(db, stmt) -> int:
    """Run a conditional UPDATE and return how many rows its guard matched.

    The identity map is left alone; callers refresh what they keep using.
    """
    result = db.execute(stmt, execution_options={"synchronize_session": False})
    return result.rowcount


def expire_cached(db, model, pk) -> None:
    obj = db.identity_map.get(db.identity_key(model, pk))
    if obj is not None:
        db.expire(obj)
