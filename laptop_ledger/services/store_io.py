from __future__ import annotations

import asyncio
from contextlib import contextmanager
from typing import Any, Callable, Iterator, TypeVar

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from laptop_ledger.services.errors import StoreUnavailable

T = TypeVar("T")


@contextmanager
def session_scope(session_factory: sessionmaker) -> Iterator[Session]:
    db = session_factory()
    try:
        yield db
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise StoreUnavailable(f"store_error: {exc}") from exc
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


async def call_store(fn: Callable[..., T], *args: Any, timeout: float | None = None, **kwargs: Any) -> T:
    """Run a blocking store call in a worker thread, bounded by ``timeout`` seconds."""
    call = asyncio.to_thread(fn, *args, **kwargs)
    try:
        if timeout is None:
            return await call
        return await asyncio.wait_for(call, timeout=timeout)
    except asyncio.TimeoutError as exc:
        name = getattr(fn, "__qualname__", repr(fn))
        raise StoreUnavailable(f"{name} timed out after {timeout}s") from exc
