from sqlalchemy import create_engine, event
from sqlalchemy.orm import scoped_session, sessionmaker
from sqlalchemy.pool import StaticPool
from decouple import config

from db.base import Base


def database_url() -> str:
    url = config("DATABASE_URL", default=None)
    if url:
        return url
    return "postgresql://{user}:{password}@{host}:{port}/{db_name}".format(
        host=config("DB_HOST", default="localhost"),
        port=config("DB_PORT", default="5432"),
        db_name=config("POSTGRES_DB", default="sweeper"),
        user=config("DB_USER", default="sweeper"),
        password=config("DB_PASS", default=""),
    )


def make_engine(url: str = None):
    url = url or database_url()
    if url.startswith("sqlite"):
        return _sqlite_engine(url)
    return create_engine(
        url,
        pool_pre_ping=True,
        pool_size=10,
        max_overflow=20,
        pool_timeout=30,
        pool_recycle=3600
    )


def _sqlite_engine(url: str):
    """SQLite engine that emits its own BEGIN so SAVEPOINTs nest correctly"""
    if url in ("sqlite://", "sqlite:///:memory:"):
        # One shared connection, otherwise every thread sees an empty database
        engine = create_engine(url, poolclass=StaticPool, connect_args={"check_same_thread": False})
    else:
        engine = create_engine(url)

    @event.listens_for(engine, "connect")
    def _disable_pysqlite_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin(conn):
        conn.exec_driver_sql("BEGIN")

    return engine


def make_session_factory(engine) -> scoped_session:
    """Thread-local sessions: observer, sweep workers and timers each get their own"""
    return scoped_session(
        sessionmaker(
            autoflush=False,
            autocommit=False,
            expire_on_commit=False,
            bind=engine
        )
    )


def init_db(engine):
    # Import models so they register on Base.metadata
    import db.wallet  # noqa: F401
    import db.ledger  # noqa: F401
    import db.incidents  # noqa: F401
    Base.metadata.create_all(engine)
