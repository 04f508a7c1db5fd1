from contextlib import contextmanager

from sqlalchemy import create_engine, event, text
from sqlalchemy.orm import declarative_base, sessionmaker

Base = declarative_base()


class Store:
    """Store client: one engine and session factory per application.

    PostgreSQL engines run every transaction at SERIALIZABLE isolation.
    SQLite has no such level, so each transaction takes the write lock up
    front with BEGIN IMMEDIATE and concurrent writers queue on the busy timeout.
    """

    def __init__(self, database_url: str, timeout: float = 30.0):
        self.url = database_url
        if database_url.startswith("sqlite"):
            self.engine = create_engine(
                database_url,
                connect_args={"check_same_thread": False, "timeout": timeout},
            )
            _begin_immediate(self.engine)
        else:
            self.engine = create_engine(
                database_url, isolation_level="SERIALIZABLE", pool_pre_ping=True
            )
        # loaded objects stay readable after commit; request handlers commit early
        # so their read transaction does not hold the sqlite write lock
        self.SessionLocal = sessionmaker(
            bind=self.engine, autoflush=False, autocommit=False, expire_on_commit=False
        )

    def create_all(self):
        # models register their tables on Base when imported
        from course_selection import models  # noqa: F401

        Base.metadata.create_all(self.engine)

    def ping(self):
        with self.engine.connect() as conn:
            conn.execute(text("SELECT 1"))

    @contextmanager
    def transaction(self):
        """Session scope that commits on success and rolls back on any error."""
        db = self.SessionLocal()
        try:
            yield db
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def dispose(self):
        self.engine.dispose()


def _begin_immediate(engine):
    # hand transaction control to SQLAlchemy instead of the sqlite3 module
    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")
