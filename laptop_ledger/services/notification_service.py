from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime
from typing import Any

from sqlalchemy.orm import sessionmaker

from laptop_ledger.models.ledger_models import NotificationQueue
from laptop_ledger.services.store_io import call_store, session_scope

NOTIFY_LOGGER = logging.getLogger("laptop_ledger.notify")

NOTIFICATION_TYPES = {
    "loan_registered",
    "return_registered",
    "classroom_batch_registered",
    "return_anomaly",
}


class NotificationDispatcher:
    """Queues "something happened" signals for the push service. Never fails the caller."""

    def __init__(self, session_factory: sessionmaker | None = None):
        self.session_factory = session_factory
        self._pending: set[asyncio.Task] = set()

    def _enqueue(self, kind: str, payload: dict[str, Any]) -> None:
        if self.session_factory is None:
            return
        with session_scope(self.session_factory) as db:
            db.add(
                NotificationQueue(
                    NotificationType=kind,
                    Payload=json.dumps(payload, ensure_ascii=True, default=str)[:2000],
                    CreatedAt=datetime.now(),
                )
            )

    async def _deliver(self, kind: str, payload: dict[str, Any]) -> None:
        try:
            await call_store(self._enqueue, kind, payload)
        except Exception as exc:
            NOTIFY_LOGGER.warning("Notification dropped kind=%s error=%s", kind, exc)

    def notify(self, kind: str, payload: dict[str, Any]) -> None:
        if kind not in NOTIFICATION_TYPES:
            NOTIFY_LOGGER.warning("Unknown notification kind=%s", kind)
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            try:
                self._enqueue(kind, payload)
            except Exception as exc:
                NOTIFY_LOGGER.warning("Notification dropped kind=%s error=%s", kind, exc)
            return
        task = loop.create_task(self._deliver(kind, payload))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def drain(self) -> None:
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
