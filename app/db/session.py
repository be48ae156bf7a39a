from collections.abc import Iterator
from functools import lru_cache

from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from app.core.config import Settings, get_settings


class Base(DeclarativeBase):
    pass


def build_engine(settings: Settings) -> Engine:
    connect_args: dict[str, object] = {}
    if settings.DATABASE_URL.startswith("postgresql"):
        connect_args["connect_timeout"] = settings.EXTERNAL_CALL_TIMEOUT_SECONDS
    elif settings.DATABASE_URL.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    return create_engine(
        settings.DATABASE_URL,
        pool_pre_ping=True,
        connect_args=connect_args,
    )


def make_session_factory(settings: Settings) -> sessionmaker[Session]:
    return sessionmaker(bind=build_engine(settings), autocommit=False, autoflush=False)


@lru_cache
def _default_session_factory() -> sessionmaker[Session]:
    return make_session_factory(get_settings())


def get_db() -> Iterator[Session]:
    db = _default_session_factory()()
    try:
        yield db
    finally:
        db.close()
