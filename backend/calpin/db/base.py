import logging

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import scoped_session, sessionmaker

logger = logging.getLogger(__name__)


def make_engine(url: str) -> Engine:
    """Create the SQLAlchemy engine for the primary store.

    SQLite connections open their transactions with BEGIN IMMEDIATE so that two
    writers on the same file serialize instead of deadlocking on lock upgrade.
    """
    if not url.startswith("sqlite"):
        return create_engine(url, pool_pre_ping=True)

    engine = create_engine(
        url,
        connect_args={"check_same_thread": False, "timeout": 30},
    )

    @event.listens_for(engine, "connect")
    def _disable_pysqlite_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    return engine


def make_session_factory(engine: Engine) -> scoped_session:
    return scoped_session(sessionmaker(autocommit=False, autoflush=False, bind=engine))


def init_db(engine: Engine) -> None:
    """Initialize the database by creating all tables."""
    # Import Base to ensure models are registered with SQLAlchemy
    from ..models.sql_models import Base

    logger.info("Creating database tables...")
    Base.metadata.create_all(bind=engine)


def ping(engine: Engine) -> bool:
    """Return True when the database answers a trivial query."""
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except SQLAlchemyError as e:
        logger.warning("Database ping failed: %s", e)
        return False
