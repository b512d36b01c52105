import asyncio
import unittest

from laptop_ledger.services.errors import ItemNotRegistered, ScanSessionError
from laptop_ledger.services.scan_session import ScanSessionController, ScanState
from laptop_ledger.tests.helpers import FakeClock, FakeScanSource, LedgerTestEnvironment


class ScanSessionTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.env = LedgerTestEnvironment()
        self.laptops = self.env.seed_laptops(3)
        self.clock = FakeClock()

    async def asyncTearDown(self):
        await self.env.services.notifier.drain()

    def tearDown(self):
        self.env.close()

    def controller(self, mode="single_loan", **kwargs):
        kwargs.setdefault("clock", self.clock)
        return self.env.services.scan_session(mode, **kwargs)

    async def test_controller_takes_debounce_and_timeout_from_settings(self):
        env = LedgerTestEnvironment(scan_debounce_seconds=2.5, scan_session_timeout_seconds=12.0)
        try:
            session = env.services.scan_session("classroom_batch", clock=self.clock)
            self.assertIsInstance(session, ScanSessionController)
            self.assertEqual(session.debounce_seconds, 2.5)
            self.assertEqual(session.session_timeout_seconds, 12.0)

            await session.handle_scan("QR-001")
            session.cancel()
            self.clock.advance(2.0)
            self.assertEqual((await session.handle_scan("QR-001")).reason, "cooldown")
            self.clock.advance(1.0)
            self.assertTrue((await session.handle_scan("QR-001")).accepted)
            self.clock.advance(13.0)
            # Past the configured timeout: the session expires instead of reporting a duplicate.
            self.assertEqual((await session.handle_scan("QR-001")).reason, "cooldown")
            self.assertEqual(session.state, ScanState.IDLE)
        finally:
            env.close()

    async def test_first_scan_opens_session_and_duplicates_are_ignored(self):
        session = self.controller("classroom_batch")
        first = await session.handle_scan({"payload": " QR-001 "})
        self.assertTrue(first.accepted)
        self.assertTrue(first.started_session)
        self.assertEqual(first.preview.id, self.laptops[0].id)
        self.assertEqual(session.state, ScanState.ACCUMULATING)

        burst = await session.handle_scan("QR-001")
        self.assertFalse(burst.accepted)
        self.assertEqual(burst.reason, "duplicate")

        unknown = await session.handle_scan("NOT-REGISTERED")
        self.assertTrue(unknown.accepted)
        self.assertIsNone(unknown.preview)
        self.assertEqual(session.refs, ["QR-001", "NOT-REGISTERED"])

    async def test_single_mode_accepts_only_one_ref(self):
        session = self.controller("single_return")
        await session.handle_scan("QR-001")
        second = await session.handle_scan("QR-002")
        self.assertEqual(second.reason, "session_full")
        self.assertEqual(session.refs, ["QR-001"])

    async def test_cancel_then_same_code_within_debounce_is_ignored(self):
        session = self.controller()
        await session.handle_scan("QR-001")
        session.cancel()
        self.assertEqual(session.state, ScanState.IDLE)
        self.assertEqual(session.refs, [])

        self.clock.advance(0.5)
        echo = await session.handle_scan("QR-001")
        self.assertFalse(echo.accepted)
        self.assertEqual(echo.reason, "cooldown")
        self.assertEqual(session.state, ScanState.IDLE)

        other = await session.handle_scan("QR-002")
        self.assertTrue(other.accepted)
        self.assertTrue(other.started_session)

    async def test_same_code_after_debounce_reopens(self):
        session = self.controller()
        await session.handle_scan("QR-001")
        session.cancel()
        self.clock.advance(1.5)
        again = await session.handle_scan("QR-001")
        self.assertTrue(again.accepted)

    async def test_confirm_hands_refs_to_reconciler_and_arms_cooldown(self):
        session = self.controller()
        await session.handle_scan("QR-002")
        outcome = await session.confirm(borrower_key="ana@example.org", destination="Library")

        self.assertEqual(outcome.item.status, "loaned")
        self.assertEqual(outcome.item.currentHolder, "ana@example.org")
        self.assertEqual(session.state, ScanState.IDLE)
        echo = await session.handle_scan("QR-002")
        self.assertEqual(echo.reason, "cooldown")

    async def test_failed_confirm_still_returns_to_idle(self):
        session = self.controller()
        await session.handle_scan("NOT-REGISTERED")
        with self.assertRaises(ItemNotRegistered):
            await session.confirm(borrower_key="ana@example.org")
        self.assertEqual(session.state, ScanState.IDLE)

    async def test_classroom_batch_confirm(self):
        session = self.controller("classroom_batch")
        for code in ("QR-001", "QR-002", "QR-002", "NOPE"):
            await session.handle_scan(code)
        outcome = await session.confirm(classroom_label="201", batch_mode="loan")
        self.assertEqual(len(outcome.succeeded), 2)
        self.assertEqual(outcome.failed, ["NOPE"])

    async def test_confirm_without_scans_is_rejected(self):
        session = self.controller()
        with self.assertRaises(ScanSessionError):
            await session.confirm(borrower_key="ana@example.org")
        session.start()
        with self.assertRaises(ScanSessionError):
            await session.confirm(borrower_key="ana@example.org")

    async def test_hard_timeout_cancels_on_next_interaction(self):
        session = self.controller("classroom_batch", session_timeout_seconds=10)
        await session.handle_scan("QR-001")
        self.clock.advance(11)
        feedback = await session.handle_scan("QR-002")
        self.assertTrue(feedback.started_session)
        self.assertEqual(session.refs, ["QR-002"])

    async def test_pump_closes_source_when_stream_is_exhausted(self):
        session = self.controller("classroom_batch")
        source = FakeScanSource(["QR-001", "QR-001", "QR-003"])
        seen = []
        await session.pump(source, on_feedback=seen.append)
        self.assertTrue(source.closed)
        self.assertEqual(session.refs, ["QR-001", "QR-003"])
        self.assertEqual([feedback.accepted for feedback in seen], [True, False, True])

    async def test_pump_stream_error_cancels_and_releases_source(self):
        session = self.controller()
        source = FakeScanSource(["QR-001"], error=RuntimeError("camera lost"))
        with self.assertRaises(RuntimeError):
            await session.pump(source)
        self.assertTrue(source.closed)
        self.assertEqual(session.state, ScanState.IDLE)

    async def test_pump_stops_when_until_is_satisfied(self):
        session = self.controller()
        source = FakeScanSource(["QR-001", "QR-002"], hang=True)
        await session.pump(source, until=lambda feedback: feedback.accepted)
        self.assertTrue(source.closed)
        self.assertEqual(session.refs, ["QR-001"])

    async def test_pump_hard_timeout_on_silent_stream(self):
        session = ScanSessionController(
            self.env.resolver, self.env.reconciler, "single_loan", session_timeout_seconds=0.05
        )
        source = FakeScanSource(["QR-001"], hang=True)
        await asyncio.wait_for(session.pump(source), timeout=5)
        self.assertTrue(source.closed)
        self.assertEqual(session.state, ScanState.IDLE)

    async def test_pump_task_cancellation_releases_source(self):
        session = self.controller()
        source = FakeScanSource([], hang=True)
        task = asyncio.create_task(session.pump(source))
        await asyncio.sleep(0.01)
        task.cancel()
        with self.assertRaises(asyncio.CancelledError):
            await task
        self.assertTrue(source.closed)


if __name__ == "__main__":
    unittest.main()
