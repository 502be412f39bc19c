from __future__ import annotations

from contextlib import contextmanager
from typing import Any, Dict, Generator, Iterator

from sqlalchemy import create_engine
from sqlalchemy.engine import make_url
from sqlalchemy.orm import Session, sessionmaker

from listingcore.app.core.settings import Settings, settings


def engine_options(database_url: str, cfg: Settings = settings) -> Dict[str, Any]:
    """Keyword arguments for ``create_engine``; server-side timeouts only apply to PostgreSQL."""
    options: Dict[str, Any] = {"future": True, "echo": False, "pool_pre_ping": True}
    if make_url(database_url).get_backend_name() == "postgresql":
        options["pool_timeout"] = cfg.db_pool_timeout
        options["connect_args"] = {
            "connect_timeout": cfg.db_connect_timeout,
            "options": f"-c statement_timeout={cfg.db_statement_timeout_ms}",
        }
    return options


ENGINE = create_engine(settings.database_url, **engine_options(settings.database_url))

SessionLocal = sessionmaker(bind=ENGINE, class_=Session, autoflush=False, autocommit=False, expire_on_commit=False)


def make_session_factory(engine) -> sessionmaker:
    return sessionmaker(bind=engine, class_=Session, autoflush=False, autocommit=False, expire_on_commit=False)


@contextmanager
def session_scope(factory: sessionmaker = SessionLocal) -> Iterator[Session]:
    session = factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def get_session() -> Generator[Session, None, None]:
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
