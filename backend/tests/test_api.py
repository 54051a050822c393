from __future__ import annotations

import tempfile
import unittest
from unittest.mock import AsyncMock, patch

from fastapi.testclient import TestClient

from liveactivity.errors import StoreUnavailable
from liveactivity.main import create_app
from liveactivity.services.push_gateway import DeliveryOutcome
from liveactivity.services.scheduler import ScheduleWindow

from tests.helpers import FakeGateway, make_store

PREFIX = "/api/live-activity"


def registration(kind: str, token: str, device_id: str, **extra) -> dict:
    body = {
        "type": kind,
        "token": token,
        "bundleId": "com.helgisoft.yangcheonlife",
        "deviceId": device_id,
        "timestamp": 1760000000,
    }
    body.update(extra)
    return body


class ApiTestCase(unittest.TestCase):
    control_api_key = ""

    def setUp(self) -> None:
        self.tmp = tempfile.TemporaryDirectory()
        self.store = make_store(self.tmp.name)
        self.gateway = FakeGateway()
        app = create_app(
            token_store=self.store,
            gateway=self.gateway,
            window=ScheduleWindow(),
            start_scheduler=False,
            control_api_key=self.control_api_key,
        )
        self.client = TestClient(app)
        self.client.__enter__()

    def tearDown(self) -> None:
        self.client.__exit__(None, None, None)
        self.tmp.cleanup()

    def _register_activity(self, token: str, device_id: str, activity_id: str):
        response = self.client.post(
            f"{PREFIX}/activity-token",
            json=registration("activity_token", token, device_id, activityId=activity_id),
        )
        self.assertEqual(response.status_code, 200, response.text)
        return response


class LiveActivityApiTests(ApiTestCase):
    def test_health(self) -> None:
        response = self.client.get("/health")
        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertTrue(body["success"])
        self.assertEqual(body["data"]["status"], "OK")
        self.assertEqual(body["data"]["service"], "yangcheonlife-liveactivity")

    def test_activity_token_without_activity_id_is_rejected(self) -> None:
        response = self.client.post(
            f"{PREFIX}/activity-token",
            json={"type": "activity_token", "token": "x", "deviceId": "d1", "bundleId": "b", "timestamp": 123},
        )

        self.assertEqual(response.status_code, 400)
        body = response.json()
        self.assertFalse(body["success"])
        self.assertEqual(body["error"], "Validation failed")
        self.assertTrue(body["details"])

    def test_out_of_range_grade_is_rejected(self) -> None:
        response = self.client.post(
            f"{PREFIX}/push-to-start",
            json=registration("push_to_start", "x", "d1", grade=4),
        )
        self.assertEqual(response.status_code, 400)
        self.assertIn("grade", [d["field"] for d in response.json()["details"]])

    def test_type_must_match_endpoint(self) -> None:
        response = self.client.post(f"{PREFIX}/apns-token", json=registration("push_to_start", "x", "d1"))
        self.assertEqual(response.status_code, 400)

    def test_reregistration_keeps_one_record(self) -> None:
        first = self.client.post(f"{PREFIX}/push-to-start", json=registration("push_to_start", "old", "d1", grade=2, classNumber=5))
        second = self.client.post(f"{PREFIX}/push-to-start", json=registration("push_to_start", "new", "d1", grade=2, classNumber=5))

        self.assertEqual(first.status_code, 200)
        self.assertTrue(second.json()["success"])
        self.assertEqual(second.json()["data"]["classNumber"], 5)

        stats = self.client.get(f"{PREFIX}/stats").json()["data"]
        self.assertEqual(stats["countsByKind"]["push_to_start"], 1)

        tokens = self.client.get(f"{PREFIX}/tokens").json()["data"]
        self.assertEqual([t["token"] for t in tokens["pushToStartTokens"]], ["new"])
        self.assertEqual(tokens["totalDevices"], 1)

    def test_end_twice_succeeds_both_times(self) -> None:
        self._register_activity("t1", "d1", "a1")
        self._register_activity("t2", "d2", "a2")

        for _ in range(2):
            response = self.client.post(f"{PREFIX}/end", json={"action": "end"})
            self.assertEqual(response.status_code, 200)
            data = response.json()["data"]
            self.assertEqual(data["attempted"], 2)
            self.assertEqual(data["delivered"], 2)

    def test_partial_failure_is_reported_as_data(self) -> None:
        self._register_activity("t1", "d1", "a1")
        self._register_activity("t2", "d2", "a2")
        self._register_activity("t3", "d3", "a3")
        self.gateway.outcomes["t2"] = DeliveryOutcome.TRANSIENT_FAILURE

        response = self.client.post(f"{PREFIX}/end", json={"action": "end", "data": {"alertBody": "bye"}})

        self.assertEqual(response.status_code, 200)
        data = response.json()["data"]
        self.assertEqual((data["attempted"], data["delivered"], data["transientFailures"]), (3, 2, 1))
        self.assertEqual(len(data["results"]), 3)

    def test_invalid_token_disappears_from_listing(self) -> None:
        self._register_activity("t1", "d1", "a1")
        self._register_activity("t2", "d2", "a2")
        self.gateway.outcomes["t1"] = DeliveryOutcome.INVALID_TOKEN

        response = self.client.post(f"{PREFIX}/update", json={"action": "update"})
        self.assertEqual(response.json()["data"]["invalidRemoved"], 1)

        tokens = self.client.get(f"{PREFIX}/tokens").json()["data"]
        self.assertEqual([t["token"] for t in tokens["activityTokens"]], ["t2"])

    def test_start_reaches_push_to_start_tokens(self) -> None:
        self.client.post(f"{PREFIX}/push-to-start", json=registration("push_to_start", "p1", "d1"))

        response = self.client.post(f"{PREFIX}/start", json={"action": "start"})

        self.assertEqual(response.json()["data"]["delivered"], 1)
        self.assertEqual(self.gateway.sent_tokens(), ["p1"])

    def test_action_must_match_endpoint(self) -> None:
        response = self.client.post(f"{PREFIX}/start", json={"action": "end"})
        self.assertEqual(response.status_code, 400)

    def test_unknown_action_is_rejected(self) -> None:
        response = self.client.post(f"{PREFIX}/start", json={"action": "pause"})
        self.assertEqual(response.status_code, 400)

    def test_store_outage_is_500_for_http_triggers(self) -> None:
        with patch.object(self.store, "list_by_kind", AsyncMock(side_effect=StoreUnavailable("db down"))):
            response = self.client.post(f"{PREFIX}/end", json={"action": "end"})

        self.assertEqual(response.status_code, 500)
        self.assertFalse(response.json()["success"])

    def test_remove_device(self) -> None:
        self._register_activity("t1", "d1", "a1")
        self.client.post(f"{PREFIX}/apns-token", json=registration("apns_token", "raw", "d1"))

        response = self.client.delete(f"{PREFIX}/devices/d1")

        self.assertEqual(response.json()["data"]["removed"], 2)
        self.assertEqual(self.client.get(f"{PREFIX}/stats").json()["data"]["total"], 0)

    def test_schedule_status(self) -> None:
        response = self.client.get(f"{PREFIX}/schedule-status")

        self.assertEqual(response.status_code, 200)
        data = response.json()["data"]
        self.assertEqual(data["state"], "idle")
        self.assertIn("isWeekday", data["window"])

    def test_unknown_route_uses_error_envelope(self) -> None:
        response = self.client.get("/api/nowhere")

        self.assertEqual(response.status_code, 404)
        self.assertFalse(response.json()["success"])


class ControlApiKeyTests(ApiTestCase):
    control_api_key = "s3cret"

    def test_control_requires_key(self) -> None:
        response = self.client.post(f"{PREFIX}/update", json={"action": "update"}, headers={})
        self.assertEqual(response.status_code, 401)

        response = self.client.post(
            f"{PREFIX}/update", json={"action": "update"}, headers={"X-API-Key": "s3cret"}
        )
        self.assertEqual(response.status_code, 200)

    def test_registration_does_not_need_key(self) -> None:
        response = self.client.post(f"{PREFIX}/apns-token", json=registration("apns_token", "raw", "d1"))
        self.assertEqual(response.status_code, 200)


if __name__ == "__main__":
    unittest.main()
