from functools import lru_cache

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base
from sqlalchemy.pool import StaticPool
from mgnrega_pulse.core.config import settings, to_driver_url

Base = declarative_base()


def make_engine(url: str):
    url = to_driver_url(url)
    if url.startswith("sqlite"):
        # pool sizing is for server databases only; an in-memory database
        # must keep one shared connection or every thread sees an empty one
        in_memory = ":memory:" in url or url.rstrip("/").endswith(":")
        return create_engine(
            url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool if in_memory else None,
            future=True,
        )
    return create_engine(
        url,
        pool_size=20,
        max_overflow=40,
        pool_pre_ping=True,
        future=True,
    )


def make_session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine, future=True)


@lru_cache
def get_engine():
    return make_engine(settings.DATABASE_URL)


def init_db(engine) -> None:
    # register the models on Base.metadata before creating tables
    from mgnrega_pulse.models import dataset  # noqa: F401
    Base.metadata.create_all(bind=engine)
