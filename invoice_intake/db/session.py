"""Engine and session factory construction."""

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from invoice_intake.db.models import Base
from invoice_intake.utils.config import DatabaseConfig
from invoice_intake.utils.logger import get_logger

logger = get_logger(__name__)

SessionFactory = sessionmaker[Session]


def build_engine(config: DatabaseConfig) -> Engine:
    """Create an engine for the configured database URL.

    SQLite connections are shared across the worker threads, so the
    same-thread check is disabled and a busy timeout is set.
    """
    kwargs: dict = {"echo": config.echo}
    if config.url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False, "timeout": 30}
    else:
        kwargs["pool_pre_ping"] = config.pool_pre_ping
    engine = create_engine(config.url, **kwargs)

    if config.url.startswith("sqlite"):

        @event.listens_for(engine, "connect")
        def _sqlite_pragmas(dbapi_connection, _record) -> None:
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.close()

    logger.info("Database engine created for %s", engine.url.render_as_string(hide_password=True))
    return engine


def build_session_factory(engine: Engine) -> SessionFactory:
    """Session factory whose objects stay readable after commit."""
    return sessionmaker(bind=engine, expire_on_commit=False)


def init_db(engine: Engine) -> None:
    """Create any missing tables."""
    Base.metadata.create_all(engine)
