"""Scan session state machine: Idle -> Accumulating -> Finalizing -> Idle.

The scanner emits bursts of duplicate decodes for one physical code, so the
controller deduplicates within a session and, after a cancel or a completed
flow, ignores the last code for a short debounce window.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, AsyncIterator, Callable, Optional, Protocol

from laptop_ledger.schemas.records import ItemRecord
from laptop_ledger.services.errors import LedgerError, ScanSessionError
from laptop_ledger.services.identity_resolver import IdentityResolver
from laptop_ledger.services.reconciler import Reconciler

SCAN_LOGGER = logging.getLogger("laptop_ledger.scan")

SCAN_MODES = ("single_loan", "single_return", "classroom_batch")


class ScanState(str, Enum):
    IDLE = "idle"
    ACCUMULATING = "accumulating"
    FINALIZING = "finalizing"


class ScanSource(Protocol):
    def events(self) -> AsyncIterator[Any]: ...

    async def close(self) -> None: ...


@dataclass
class ScanFeedback:
    accepted: bool
    ref: Optional[str]
    state: ScanState
    reason: Optional[str] = None
    preview: Optional[ItemRecord] = None
    started_session: bool = False


def _payload_of(event: Any) -> str:
    if isinstance(event, dict):
        event = event.get("payload")
    else:
        event = getattr(event, "payload", event)
    return str(event or "").strip()


class ScanSessionController:
    def __init__(
        self,
        resolver: IdentityResolver,
        reconciler: Reconciler,
        mode: str = "single_loan",
        debounce_seconds: float = 1.4,
        session_timeout_seconds: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        if mode not in SCAN_MODES:
            raise ValueError(f"Unknown scan mode {mode!r}")
        self.resolver = resolver
        self.reconciler = reconciler
        self.mode = mode
        self.debounce_seconds = debounce_seconds
        self.session_timeout_seconds = session_timeout_seconds
        self.clock = clock

        self.state = ScanState.IDLE
        self.refs: list[str] = []
        self.resolved: dict[str, ItemRecord] = {}
        self._started_at: float | None = None
        self._cooldown_ref: str | None = None
        self._cooldown_until = 0.0
        self._last_ref: str | None = None

    @property
    def is_open(self) -> bool:
        return self.state is not ScanState.IDLE

    def start(self, mode: str | None = None) -> None:
        if self.state is not ScanState.IDLE:
            raise ScanSessionError(f"Scan session already {self.state.value}")
        if mode is not None:
            if mode not in SCAN_MODES:
                raise ValueError(f"Unknown scan mode {mode!r}")
            self.mode = mode
        self.refs = []
        self.resolved = {}
        self._started_at = self.clock()
        self.state = ScanState.ACCUMULATING
        SCAN_LOGGER.info("Scan session started mode=%s", self.mode)

    def _arm_cooldown(self, ref: str | None) -> None:
        self._cooldown_ref = ref
        self._cooldown_until = self.clock() + self.debounce_seconds if ref else 0.0

    def _reset(self) -> None:
        self.state = ScanState.IDLE
        self.refs = []
        self.resolved = {}
        self._started_at = None

    def cancel(self) -> None:
        """Discard everything scanned so far. Safe to call from any state."""
        last = self.refs[-1] if self.refs else self._last_ref
        if self.state is not ScanState.IDLE:
            SCAN_LOGGER.info("Scan session cancelled mode=%s refs=%s", self.mode, len(self.refs))
        self._reset()
        self._arm_cooldown(last)

    def timed_out(self) -> bool:
        if self._started_at is None or self.state is ScanState.IDLE:
            return False
        return self.clock() - self._started_at > self.session_timeout_seconds

    def remaining_seconds(self) -> float | None:
        if self._started_at is None or self.state is ScanState.IDLE:
            return None
        return max(self.session_timeout_seconds - (self.clock() - self._started_at), 0.0)

    def _expire_if_needed(self) -> bool:
        if self.timed_out():
            SCAN_LOGGER.warning(
                "Scan session timed out mode=%s refs=%s after=%ss",
                self.mode,
                len(self.refs),
                self.session_timeout_seconds,
            )
            self.cancel()
            return True
        return False

    def _in_cooldown(self, ref: str) -> bool:
        return ref == self._cooldown_ref and self.clock() < self._cooldown_until

    async def handle_scan(self, payload: Any) -> ScanFeedback:
        ref = _payload_of(payload)
        self._expire_if_needed()
        if not ref:
            return ScanFeedback(False, None, self.state, reason="blank")
        if self.state is ScanState.FINALIZING:
            return ScanFeedback(False, ref, self.state, reason="finalizing")

        started = False
        if self.state is ScanState.IDLE:
            if self._in_cooldown(ref):
                return ScanFeedback(False, ref, self.state, reason="cooldown")
            self.start()
            started = True

        if ref in self.refs:
            return ScanFeedback(False, ref, self.state, reason="duplicate")
        if self.mode != "classroom_batch" and self.refs:
            return ScanFeedback(False, ref, self.state, reason="session_full")

        self.refs.append(ref)
        self._last_ref = ref
        preview = None
        if self.mode == "classroom_batch":
            try:
                preview = await self.resolver.resolve(ref)
            except LedgerError as exc:
                SCAN_LOGGER.info("Preview lookup failed ref=%s error=%s", ref, exc)
            if preview is not None:
                self.resolved[ref] = preview
        return ScanFeedback(True, ref, self.state, preview=preview, started_session=started)

    async def confirm(self, **params: Any) -> Any:
        """Hand the accumulated refs to the reconciler and return its outcome.

        ``single_loan`` takes ``borrower_key`` plus the optional loan fields,
        ``single_return`` takes ``returned_by``, and ``classroom_batch`` takes
        ``classroom_label`` and ``batch_mode`` ("loan" or "return").
        """
        self._expire_if_needed()
        if self.state is not ScanState.ACCUMULATING:
            raise ScanSessionError("No open scan session to confirm")
        if not self.refs:
            raise ScanSessionError("Nothing has been scanned yet")

        refs = list(self.refs)
        self.state = ScanState.FINALIZING
        SCAN_LOGGER.info("Scan session finalizing mode=%s refs=%s", self.mode, len(refs))
        try:
            if self.mode == "single_loan":
                return await self.reconciler.register_loan(refs[0], **params)
            if self.mode == "single_return":
                return await self.reconciler.register_return(refs[0], **params)
            batch_mode = params.pop("batch_mode", "loan")
            return await self.reconciler.register_classroom_batch(refs, mode=batch_mode, **params)
        finally:
            self._reset()
            self._arm_cooldown(refs[-1])

    async def pump(
        self,
        source: ScanSource,
        on_feedback: Callable[[ScanFeedback], Any] | None = None,
        until: Callable[[ScanFeedback], bool] | None = None,
    ) -> None:
        """Feed decoded scans from ``source`` until ``until`` says stop or the session times out.

        The source is closed on every exit path. A stream error cancels the
        open session and is re-raised.
        """
        iterator = source.events().__aiter__()
        try:
            while True:
                if self._expire_if_needed():
                    break
                remaining = self.remaining_seconds()
                try:
                    if remaining is None:
                        event = await iterator.__anext__()
                    else:
                        event = await asyncio.wait_for(iterator.__anext__(), timeout=remaining)
                except StopAsyncIteration:
                    break
                except asyncio.TimeoutError:
                    if not self._expire_if_needed():
                        self.cancel()
                    break
                feedback = await self.handle_scan(event)
                if on_feedback is not None:
                    on_feedback(feedback)
                if until is not None and until(feedback):
                    break
        except asyncio.CancelledError:
            self.cancel()
            raise
        except Exception as exc:
            SCAN_LOGGER.error("Scan stream failed mode=%s error=%s", self.mode, exc)
            self.cancel()
            raise
        finally:
            await source.close()
