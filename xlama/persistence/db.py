from __future__ import annotations

from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Iterator

from sqlalchemy import create_engine, event
from sqlalchemy.engine import URL, Engine, make_url
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from xlama.configuration.config import settings
from xlama.logging.logger import get_logger

log = get_logger(__name__)

Base = declarative_base()

SessionFactory = Callable[[], Session]


def _resolve_db_url(raw: str) -> str:
    """Accept either a SQLAlchemy URL or a plain SQLite file path (parent dirs are created)."""
    if "://" in raw:
        return raw
    db_file = Path(raw).expanduser().resolve()
    db_file.parent.mkdir(parents=True, exist_ok=True)
    return str(URL.create("sqlite", database=db_file.as_posix()))


def build_engine(raw_url: str) -> Engine:
    url = make_url(_resolve_db_url(raw_url))
    connect_args: dict = {}
    if url.drivername.startswith("sqlite"):
        connect_args["check_same_thread"] = False

    built = create_engine(url, connect_args=connect_args, pool_pre_ping=True)

    if url.drivername.startswith("sqlite") and (url.database or "") not in ("", ":memory:"):

        @event.listens_for(built, "connect")
        def _sqlite_pragmas(dbapi_connection, _) -> None:
            cursor = dbapi_connection.cursor()
            try:
                cursor.execute("PRAGMA journal_mode=WAL;")
                cursor.execute("PRAGMA synchronous=NORMAL;")
            except Exception as exc:
                log.warning("[DB][SQLITE] Unable to apply pragmas: %s", exc)
            finally:
                cursor.close()

    return built


def build_session_factory(bound_engine: Engine) -> sessionmaker:
    return sessionmaker(bind=bound_engine, autocommit=False, autoflush=False, expire_on_commit=False, class_=Session)


engine = build_engine(settings.DATABASE_URL)
SessionLocal = build_session_factory(engine)


@contextmanager
def session_scope(factory: SessionFactory) -> Iterator[Session]:
    """Yield a DB session, committing on success and rolling back on error."""
    session = factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def init_db(bound_engine: Engine = engine) -> None:
    """Create tables if they do not exist yet."""
    # Table classes must be registered on Base.metadata before create_all
    import xlama.persistence.models  # noqa: F401

    Base.metadata.create_all(bind=bound_engine)
