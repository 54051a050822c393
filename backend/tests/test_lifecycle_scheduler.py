from __future__ import annotations

import tempfile
import unittest
from datetime import datetime
from unittest.mock import AsyncMock, patch
from zoneinfo import ZoneInfo

from liveactivity.errors import PayloadError, StoreUnavailable
from liveactivity.services.payloads import Transition
from liveactivity.services.push_gateway import DeliveryOutcome
from liveactivity.services.scheduler import (
    ActivityLifecycleScheduler,
    LifecycleState,
    ScheduleWindow,
)
from liveactivity.services.token_store import TokenKind

from tests.helpers import FakeGateway, make_store, new_token

SEOUL = ZoneInfo("Asia/Seoul")


class ReregisteringGateway(FakeGateway):
    """Device registers a new token while the old one is being sent to."""

    def __init__(self, store, **kwargs):
        super().__init__(**kwargs)
        self.store = store

    async def _deliver(self, token, payload):
        await self.store.register(new_token(token.kind, "fresh", token.device_id, token.activity_id))
        return await super()._deliver(token, payload)


class LifecycleSchedulerTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.tmp = tempfile.TemporaryDirectory()
        self.store = make_store(self.tmp.name)
        await self.store.init()
        self.gateway = FakeGateway()
        self.scheduler = ActivityLifecycleScheduler(self.store, self.gateway, ScheduleWindow())

    async def asyncTearDown(self) -> None:
        self.scheduler.stop()
        await self.store.close()
        self.tmp.cleanup()

    async def _register_activities(self, count: int = 3) -> None:
        for i in range(1, count + 1):
            await self.store.register(
                new_token(TokenKind.ACTIVITY_TOKEN, f"activity-{i}", f"device-{i}", f"act-{i}")
            )

    async def test_failed_delivery_does_not_block_other_tokens(self) -> None:
        await self._register_activities()
        self.gateway.outcomes["activity-2"] = DeliveryOutcome.TRANSIENT_FAILURE

        summary = await self.scheduler.trigger_transition(Transition.END)

        self.assertEqual(sorted(self.gateway.sent_tokens()), ["activity-1", "activity-2", "activity-3"])
        self.assertEqual(summary.attempted, 3)
        self.assertEqual(summary.delivered, 2)
        self.assertEqual(summary.transient_failures, 1)
        self.assertEqual(summary.invalid_removed, 0)
        # Transient failures keep their token for the next tick
        self.assertEqual(len(await self.store.list_by_kind(TokenKind.ACTIVITY_TOKEN)), 3)

    async def test_transport_exception_counts_as_transient(self) -> None:
        await self._register_activities()
        self.gateway.outcomes["activity-2"] = ConnectionResetError("reset by peer")

        summary = await self.scheduler.trigger_transition(Transition.END)

        self.assertEqual((summary.attempted, summary.delivered, summary.transient_failures), (3, 2, 1))

    async def test_invalid_tokens_are_removed(self) -> None:
        await self._register_activities()
        self.gateway.outcomes["activity-3"] = DeliveryOutcome.INVALID_TOKEN

        summary = await self.scheduler.trigger_transition(Transition.UPDATE)

        self.assertEqual(summary.invalid_removed, 1)
        remaining = [t.token for t in await self.store.list_by_kind(TokenKind.ACTIVITY_TOKEN)]
        self.assertEqual(remaining, ["activity-1", "activity-2"])

    async def test_end_twice_fans_out_both_times(self) -> None:
        await self._register_activities(2)

        first = await self.scheduler.trigger_transition(Transition.END)
        second = await self.scheduler.trigger_transition(Transition.END)

        self.assertEqual((first.attempted, second.attempted), (2, 2))
        self.assertEqual(len(self.gateway.sent), 4)
        self.assertEqual(self.scheduler.state, LifecycleState.IDLE)

    async def test_start_goes_to_push_to_start_tokens(self) -> None:
        await self.store.register(new_token(TokenKind.PUSH_TO_START, "pts-1", "device-1"))
        await self._register_activities(1)

        summary = await self.scheduler.trigger_transition(Transition.START)

        self.assertEqual(self.gateway.sent_tokens(), ["pts-1"])
        self.assertEqual(summary.delivered, 1)
        self.assertEqual(self.scheduler.state, LifecycleState.ACTIVE)
        payload = self.gateway.sent[0][1]
        self.assertEqual(payload.data, {"type": "start_live_activity"})

    async def test_update_keeps_state_and_sends_wake_marker(self) -> None:
        await self._register_activities(1)
        await self.scheduler.trigger_transition(Transition.START)

        await self.scheduler.trigger_transition(Transition.UPDATE)

        self.assertEqual(self.scheduler.state, LifecycleState.ACTIVE)
        payload = self.gateway.sent[-1][1]
        self.assertEqual(payload.message_type, "wake_live_activity")
        self.assertTrue(payload.is_silent)

    async def test_apns_token_is_fallback_for_uncovered_devices(self) -> None:
        await self.store.register(new_token(TokenKind.PUSH_TO_START, "pts-1", "device-1"))
        await self.store.register(new_token(TokenKind.APNS_TOKEN, "raw-1", "device-1"))
        await self.store.register(new_token(TokenKind.APNS_TOKEN, "raw-2", "device-2"))

        summary = await self.scheduler.trigger_transition(Transition.START)

        self.assertEqual(sorted(self.gateway.sent_tokens()), ["pts-1", "raw-2"])
        self.assertEqual(summary.attempted, 2)

    async def test_no_tokens_is_an_empty_summary(self) -> None:
        summary = await self.scheduler.trigger_transition(Transition.END)

        self.assertEqual((summary.attempted, summary.delivered), (0, 0))
        self.assertIsNotNone(summary.finished_at)

    async def test_wake_tick_is_gated_by_window(self) -> None:
        await self._register_activities(1)

        skipped = await self.scheduler._run_wake(datetime(2026, 10, 17, 8, 5, tzinfo=SEOUL))
        self.assertIsNone(skipped)
        self.assertEqual(self.gateway.sent, [])

        summary = await self.scheduler._run_wake(datetime(2026, 10, 20, 8, 5, tzinfo=SEOUL))
        self.assertEqual(summary.source, "wake")
        self.assertEqual(summary.delivered, 1)

    async def test_cron_cycle_skips_when_store_unavailable(self) -> None:
        with patch.object(self.store, "list_by_kind", AsyncMock(side_effect=StoreUnavailable("down"))):
            self.assertIsNone(await self.scheduler._run_stop())

            with self.assertRaises(StoreUnavailable):
                await self.scheduler.trigger_transition(Transition.END, source="http")

        self.assertEqual(self.gateway.sent, [])

    async def test_cron_cycle_survives_gateway_payload_error(self) -> None:
        await self._register_activities(1)
        self.gateway.outcomes["activity-1"] = PayloadError("BadPayload")

        self.assertIsNone(await self.scheduler._run_stop())

    async def test_token_reregistered_during_fan_out_survives_pruning(self) -> None:
        await self._register_activities(1)
        gateway = ReregisteringGateway(self.store, outcomes={"activity-1": DeliveryOutcome.INVALID_TOKEN})
        scheduler = ActivityLifecycleScheduler(self.store, gateway, ScheduleWindow())

        summary = await scheduler.trigger_transition(Transition.UPDATE)

        self.assertEqual(summary.invalid_removed, 0)
        remaining = [t.token for t in await self.store.list_by_kind(TokenKind.ACTIVITY_TOKEN)]
        self.assertEqual(remaining, ["fresh"])

    async def test_failed_pruning_is_not_fatal(self) -> None:
        await self._register_activities(1)
        self.gateway.outcomes["activity-1"] = DeliveryOutcome.INVALID_TOKEN

        with patch.object(self.store, "remove", AsyncMock(side_effect=StoreUnavailable("down"))):
            summary = await self.scheduler.trigger_transition(Transition.END)

        self.assertEqual(summary.invalid_removed, 0)
        self.assertEqual(summary.attempted, 1)

    async def test_start_registers_cron_jobs(self) -> None:
        self.scheduler.start()

        self.assertTrue(self.scheduler.running)
        self.assertEqual(
            sorted(self.scheduler.next_run_times()),
            ["live_activity_start", "live_activity_stop", "live_activity_wake"],
        )

        self.scheduler.stop()
        self.assertFalse(self.scheduler.running)

    async def test_status_reports_state_and_last_fan_out(self) -> None:
        await self.scheduler.trigger_transition(Transition.START)

        status = self.scheduler.status(datetime(2026, 10, 20, 9, 0, tzinfo=SEOUL))

        self.assertEqual(status["state"], "active")
        self.assertIn("start", status["lastFanOuts"])
        self.assertTrue(status["window"]["wakeWouldFire"])


if __name__ == "__main__":
    unittest.main()
