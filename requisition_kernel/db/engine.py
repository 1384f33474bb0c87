"""
Module: requisition_kernel.db.engine
Responsibility: SQLAlchemy engine initialization, session factory management,
    and transactional scope utilities, owned by one explicitly constructed
    ``Database`` object.  There is no module-level connection state: the
    backend builds a ``Database``, passes it by reference, and closes it.
Architecture position: Kernel > DB.  May import from db/base.py and
    db/models.py.  MUST NOT import from services/, domain/, or outer layers.

Invariants enforced:
    - PostgreSQL runs at READ COMMITTED with explicit row locks
      (SELECT ... FOR UPDATE) where stronger isolation is needed.
    - SQLite (tests, single-user installs) shares one connection for
      in-memory URLs so every session sees the same database.

Failure modes:
    - RuntimeError if a session is requested after close().
    - Connection pool exhaustion if pool_size + max_overflow is exceeded.

Audit relevance:
    Every action runs inside session_scope(), which commits on success and
    rolls back on any exception, so an aborted action leaves no partial
    writes.
"""

from contextlib import contextmanager
from typing import Generator

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from requisition_kernel.db.base import Base
from requisition_kernel.logging_config import get_logger

logger = get_logger("db.engine")


class Database:
    """
    Engine plus session factory with an explicit init/close lifecycle.

    Contract:
        Construct once per process (or per test), hand the instance to the
        backend, call ``close()`` on shutdown.

    Guarantees:
        - ``session_scope()`` commits on normal exit and rolls back on
          exception, re-raising the exception.
        - ``close()`` is idempotent.
    """

    def __init__(
        self,
        database_url: str,
        echo: bool = False,
        pool_size: int = 10,
        max_overflow: int = 5,
        pool_pre_ping: bool = True,
        pool_recycle: int = 1800,
    ):
        """
        Initialize the SQLAlchemy engine from a database URL.

        Args:
            database_url: ``postgresql+psycopg2://...`` in production,
                ``sqlite://`` (in-memory) or ``sqlite:///path`` otherwise.
            echo: If True, log all SQL statements.
            pool_size: Number of connections to keep in the pool (PostgreSQL).
            max_overflow: Max connections beyond pool_size (PostgreSQL).
            pool_pre_ping: If True, test connections before use.
            pool_recycle: Seconds after which a connection is recycled.
        """
        self.database_url = database_url
        self._engine: Engine | None = _build_engine(
            database_url,
            echo=echo,
            pool_size=pool_size,
            max_overflow=max_overflow,
            pool_pre_ping=pool_pre_ping,
            pool_recycle=pool_recycle,
        )
        self._session_factory: sessionmaker[Session] | None = sessionmaker(
            bind=self._engine, expire_on_commit=False
        )

        logger.info(
            "engine_initialized",
            extra={
                "dialect": self._engine.dialect.name,
                "echo": echo,
            },
        )

    @property
    def engine(self) -> Engine:
        if self._engine is None:
            raise RuntimeError("Database is closed.")
        return self._engine

    @property
    def dialect_name(self) -> str:
        return self.engine.dialect.name

    def get_session(self) -> Session:
        """
        Get a new session instance.

        Raises:
            RuntimeError: If the database has been closed.
        """
        if self._session_factory is None:
            raise RuntimeError("Database is closed.")
        return self._session_factory()

    @contextmanager
    def session_scope(self) -> Generator[Session, None, None]:
        """
        Provide a transactional scope around a series of operations.

        Usage:
            with database.session_scope() as session:
                store = DocumentStore(session)
                ...
                # Commits on successful exit, rolls back on exception
        """
        session = self.get_session()
        logger.debug("transaction_started")
        try:
            yield session
            session.commit()
            logger.debug("transaction_committed")
        except Exception:
            session.rollback()
            logger.debug("transaction_rolled_back")
            raise
        finally:
            session.close()

    def create_tables(self) -> None:
        """Create the documents table (idempotent)."""
        # Import so Base.metadata knows every table.
        import requisition_kernel.db.models  # noqa: F401

        Base.metadata.create_all(self.engine)
        logger.info("tables_created", extra={"tables": sorted(Base.metadata.tables)})

    def drop_tables(self) -> None:
        """Drop all tables. Use with caution - primarily for testing."""
        Base.metadata.drop_all(self.engine)

    def close(self) -> None:
        """Dispose the engine and release pooled connections."""
        if self._engine is not None:
            self._engine.dispose()
            logger.info("engine_disposed")
        self._engine = None
        self._session_factory = None

    @property
    def is_closed(self) -> bool:
        return self._engine is None

    def __enter__(self) -> "Database":
        return self

    def __exit__(self, *exc) -> None:
        self.close()


def _build_engine(
    database_url: str,
    *,
    echo: bool,
    pool_size: int,
    max_overflow: int,
    pool_pre_ping: bool,
    pool_recycle: int,
) -> Engine:
    if database_url.startswith("sqlite"):
        kwargs: dict = {"connect_args": {"check_same_thread": False}}
        if database_url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
        return create_engine(database_url, echo=echo, **kwargs)

    return create_engine(
        database_url,
        echo=echo,
        pool_size=pool_size,
        max_overflow=max_overflow,
        pool_pre_ping=pool_pre_ping,
        pool_recycle=pool_recycle,
        isolation_level="READ COMMITTED",
    )
