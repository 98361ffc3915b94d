from sqlalchemy import create_engine, event
from sqlalchemy.engine import make_url
from sqlalchemy.orm import sessionmaker, declarative_base

from loan_ledger.core import config

# seconds SQLite waits on a locked database before giving up
SQLITE_BUSY_TIMEOUT = max(config.LOCK_TIMEOUT_MS / 1000, 1)


def build_engine(url: str, **kwargs):
    """
    Engine factory shared by the app and the test-suite.

    PostgreSQL: every connection carries a bounded lock_timeout, so a
    transaction waiting on a loan row fails instead of blocking forever.

    SQLite: transactions start with BEGIN IMMEDIATE so the write lock is
    taken up-front (same effect as row locking on a single-writer engine),
    and foreign keys are switched on for the cascade rules.
    """
    backend = make_url(url).get_backend_name()

    if backend == "sqlite":
        engine = create_engine(
            url,
            echo=False,
            connect_args={"check_same_thread": False, "timeout": SQLITE_BUSY_TIMEOUT},
            future=True,
            **kwargs,
        )

        @event.listens_for(engine, "connect")
        def _sqlite_connect(dbapi_connection, connection_record):
            # hand transaction control to the "begin" hook below
            dbapi_connection.isolation_level = None
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        @event.listens_for(engine, "begin")
        def _sqlite_begin(conn):
            conn.exec_driver_sql("BEGIN IMMEDIATE")

        return engine

    connect_args = {}
    if backend == "postgresql":
        connect_args["options"] = f"-c lock_timeout={config.LOCK_TIMEOUT_MS}"

    return create_engine(
        url,
        echo=False,
        pool_pre_ping=True,  # drops dead connections automatically
        pool_size=config.DB_POOL_SIZE,
        max_overflow=config.DB_MAX_OVERFLOW,
        connect_args=connect_args,
        future=True,
        **kwargs,
    )


# ---------------------
# SQLAlchemy engine / session / Base
# ---------------------
engine = build_engine(config.DATABASE_URL)

SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    bind=engine,
)

Base = declarative_base()


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
