from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool


DEFAULT_SQLITE_URL = "sqlite:///./snapshots.sqlite3"


def make_engine(db_url: str = DEFAULT_SQLITE_URL):
    if db_url.startswith("sqlite:"):
        # In-memory databases live in a single connection shared by all sessions
        pool_args = {"poolclass": StaticPool} if ":memory:" in db_url or db_url == "sqlite://" else {}
        return create_engine(
            db_url, connect_args={"check_same_thread": False}, **pool_args
        )
    return create_engine(db_url)


def make_session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
