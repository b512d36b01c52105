from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from laptop_ledger.db.base import Base


def create_ledger_engine(db_url: str) -> Engine:
    if not db_url:
        raise RuntimeError("Missing database URL: set LAPTOP_LEDGER_DB_URL.")

    kwargs = {"pool_pre_ping": True, "future": True}
    if db_url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
        if ":memory:" in db_url or db_url in ("sqlite://", "sqlite+pysqlite://"):
            # Every session has to see the same in-memory database.
            kwargs["poolclass"] = StaticPool
    return create_engine(db_url, **kwargs)


def create_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(
        bind=engine,
        autoflush=False,
        autocommit=False,
        expire_on_commit=False,
        future=True,
    )


def init_schema(engine: Engine) -> None:
    # Imported for its side effect of registering the tables on Base.metadata.
    from laptop_ledger.models import ledger_models  # noqa: F401

    Base.metadata.create_all(engine)
