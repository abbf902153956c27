"""
API Tests

The JSON routes over the reservation core, driven through Flask's test client.
"""

import unittest
from datetime import timedelta

from app import create_app, shutdown_app
from config import TestingConfig
from tests.support import FakeClock, T


def iso(value):
    return value.isoformat()


class ApiTestCase(unittest.TestCase):
    def setUp(self):
        self.clock = FakeClock(T - timedelta(hours=1))
        overrides = {
            key: getattr(TestingConfig, key)
            for key in dir(TestingConfig) if key.isupper()
        }
        self.app = create_app(overrides, clock=self.clock)
        self.client = self.app.test_client()

    def tearDown(self):
        shutdown_app(self.app)

    def register_user(self, email="asha@example.com", phone="9000000001", plate="KA01AB1234"):
        response = self.client.post("/api/users", json={
            "name": "Asha",
            "email": email,
            "phone": phone,
            "vehicle": {"plate_number": plate, "model": "Swift", "color": "red"},
        })
        self.assertEqual(response.status_code, 201, response.get_json())
        return response.get_json()

    def add_slot(self, number, level="G"):
        response = self.client.post("/api/admin/slots", json={"slot_number": number, "level": level})
        self.assertEqual(response.status_code, 201, response.get_json())
        return response.get_json()

    def reserve(self, user_id, plate, start, end, slot_id=None):
        body = {
            "user_id": user_id,
            "vehicle_plate": plate,
            "start_time": iso(start),
            "end_time": iso(end),
        }
        if slot_id is not None:
            body["slot_id"] = slot_id
        return self.client.post("/api/reservations", json=body)


class TestUsers(ApiTestCase):
    def test_register_user_with_vehicle(self):
        user = self.register_user(plate="ka 01 ab 1234")
        self.assertEqual(user["email"], "asha@example.com")
        self.assertEqual(user["vehicles"][0]["plate_number"], "KA01AB1234")

    def test_duplicate_email_is_a_conflict(self):
        self.register_user()
        response = self.client.post("/api/users", json={
            "name": "Asha Again",
            "email": "asha@example.com",
            "phone": "9000000002",
            "vehicle": {"plate_number": "KA09ZZ0001", "model": "i20"},
        })
        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.get_json()["error"], "duplicate_key")

    def test_missing_fields(self):
        response = self.client.post("/api/users", json={"name": "No Email"})
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.get_json()["error"], "validation_error")

    def test_body_must_be_an_object(self):
        response = self.client.post("/api/users", json=["Asha", "asha@example.com"])
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.get_json()["error"], "validation_error")
        self.assertEqual(response.get_json()["details"]["field"], "body")

    def test_vehicle_must_be_an_object(self):
        response = self.client.post("/api/users", json={
            "name": "Asha",
            "email": "asha@example.com",
            "phone": "9000000001",
            "vehicle": "KA01AB1234",
        })
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.get_json()["details"]["field"], "vehicle")


class TestReservationFlow(ApiTestCase):
    def setUp(self):
        super().setUp()
        self.user = self.register_user()
        self.slot = self.add_slot("1")

    def test_full_stay(self):
        response = self.reserve(self.user["id"], "KA01AB1234", T, T + timedelta(hours=2))
        self.assertEqual(response.status_code, 201)
        reservation = response.get_json()
        self.assertEqual(reservation["status"], "confirmed")
        self.assertEqual(reservation["slot_id"], self.slot["id"])

        self.clock.set(T)
        response = self.client.post(f"/api/reservations/{reservation['id']}/check-in")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.get_json()["status"], "active")

        slots = self.client.get("/api/slots").get_json()["slots"]
        self.assertTrue(slots[0]["is_occupied"])

        self.clock.advance(minutes=90)
        response = self.client.post(f"/api/reservations/{reservation['id']}/check-out")
        body = response.get_json()
        self.assertEqual(response.status_code, 200)
        self.assertEqual(body["reservation"]["status"], "completed")
        self.assertEqual(body["payment"]["amount"], "200.00")
        self.assertEqual(body["payment"]["duration_hours"], 2)
        self.assertIsNone(body["warning"])

        history = self.client.get(f"/api/users/{self.user['id']}/reservations").get_json()
        self.assertEqual(history["reservations"][0]["duration_formatted"], "1h 30m")
        self.assertEqual(history["reservations"][0]["payment"]["amount"], "200.00")

        stats = self.client.get("/api/admin/stats").get_json()
        self.assertEqual(stats["total_bookings"], 1)
        self.assertEqual(stats["total_income"], "200.00")
        self.assertEqual(stats["reservations_by_status"]["completed"], 1)
        self.assertEqual(stats["occupied_slots"], 0)

    def test_overlap_is_a_conflict(self):
        self.reserve(self.user["id"], "KA01AB1234", T, T + timedelta(hours=2))
        response = self.reserve(
            self.user["id"], "KA02CD5678", T + timedelta(hours=1), T + timedelta(hours=3),
            slot_id=self.slot["id"],
        )
        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.get_json()["error"], "no_available_slot")

    def test_invalid_window(self):
        response = self.reserve(self.user["id"], "KA01AB1234", T, T)
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.get_json()["error"], "invalid_time_window")

    def test_bad_timestamp(self):
        response = self.client.post("/api/reservations", json={
            "user_id": self.user["id"],
            "vehicle_plate": "KA01AB1234",
            "start_time": "tomorrow morning",
            "end_time": iso(T),
        })
        self.assertEqual(response.status_code, 400)

    def test_utc_suffix_is_accepted(self):
        response = self.reserve(self.user["id"], "KA01AB1234", T, T + timedelta(hours=1))
        self.assertEqual(response.status_code, 201)
        response = self.client.post("/api/reservations", json={
            "user_id": self.user["id"],
            "vehicle_plate": "KA01AB1234",
            "start_time": iso(T + timedelta(hours=1)) + "Z",
            "end_time": iso(T + timedelta(hours=2)) + "Z",
        })
        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.get_json()["start_time"], iso(T + timedelta(hours=1)))

    def test_unknown_user(self):
        response = self.reserve(999, "KA01AB1234", T, T + timedelta(hours=1))
        self.assertEqual(response.status_code, 404)

    def test_unknown_reservation(self):
        self.assertEqual(self.client.get("/api/reservations/999").status_code, 404)
        response = self.client.post("/api/reservations/999/check-in")
        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.get_json()["error"], "reservation_not_found")

    def test_cancel_is_idempotent(self):
        reservation = self.reserve(self.user["id"], "KA01AB1234", T, T + timedelta(hours=1)).get_json()
        url = f"/api/reservations/{reservation['id']}/cancel"

        first = self.client.post(url, json={"actor_id": self.user["id"]})
        second = self.client.post(url, json={"actor_id": self.user["id"]})
        self.assertEqual(first.status_code, 200)
        self.assertEqual(second.status_code, 200)
        self.assertEqual(second.get_json(), first.get_json())

    def test_cancel_requires_actor(self):
        reservation = self.reserve(self.user["id"], "KA01AB1234", T, T + timedelta(hours=1)).get_json()
        response = self.client.post(f"/api/reservations/{reservation['id']}/cancel", json={})
        self.assertEqual(response.status_code, 400)

    def test_check_in_outside_window(self):
        reservation = self.reserve(self.user["id"], "KA01AB1234", T, T + timedelta(hours=1)).get_json()
        response = self.client.post(f"/api/reservations/{reservation['id']}/check-in")
        self.assertEqual(response.status_code, 422)
        self.assertEqual(response.get_json()["error"], "check_in_window_violation")

    def test_check_out_before_check_in(self):
        reservation = self.reserve(self.user["id"], "KA01AB1234", T, T + timedelta(hours=1)).get_json()
        response = self.client.post(f"/api/reservations/{reservation['id']}/check-out")
        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.get_json()["error"], "invalid_state_transition")

    def test_pending_hold_then_confirm(self):
        response = self.client.post("/api/reservations", json={
            "user_id": self.user["id"],
            "vehicle_plate": "KA01AB1234",
            "start_time": iso(T),
            "end_time": iso(T + timedelta(hours=1)),
            "confirm": False,
        })
        hold = response.get_json()
        self.assertEqual(hold["status"], "pending")

        response = self.client.post(f"/api/reservations/{hold['id']}/confirm")
        self.assertEqual(response.get_json()["status"], "confirmed")

    def test_available_slots(self):
        second = self.add_slot("2")
        self.reserve(self.user["id"], "KA01AB1234", T, T + timedelta(hours=2))

        response = self.client.get(
            "/api/slots/available",
            query_string={"start": iso(T), "end": iso(T + timedelta(hours=1))},
        )
        self.assertEqual([slot["id"] for slot in response.get_json()["slots"]], [second["id"]])

    def test_expire_stale(self):
        reservation = self.reserve(self.user["id"], "KA01AB1234", T, T + timedelta(hours=1)).get_json()
        self.clock.set(T + timedelta(hours=2))

        body = self.client.post("/api/admin/expire-stale").get_json()
        self.assertEqual(body, {"expired": [reservation["id"]], "count": 1})
        body = self.client.post("/api/admin/expire-stale").get_json()
        self.assertEqual(body["count"], 0)

    def test_reconcile(self):
        body = self.client.post("/api/admin/slots/reconcile").get_json()
        self.assertEqual(body, {"corrected": []})

    def test_reservation_body_must_be_an_object(self):
        for body in ([1, 2], "reserve", 42):
            response = self.client.post("/api/reservations", json=body)
            self.assertEqual(response.status_code, 400, body)
            self.assertEqual(response.get_json()["error"], "validation_error")

        response = self.client.post("/api/reservations/1/cancel", json=["actor"])
        self.assertEqual(response.status_code, 400)

    def test_confirm_flag_must_be_boolean(self):
        response = self.client.post("/api/reservations", json={
            "user_id": self.user["id"],
            "vehicle_plate": "KA01AB1234",
            "start_time": iso(T),
            "end_time": iso(T + timedelta(hours=1)),
            "confirm": "false",
        })
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.get_json()["details"]["field"], "confirm")
        self.assertEqual(self.client.get(f"/api/users/{self.user['id']}/reservations")
                         .get_json()["reservations"], [])


class TestAdminAndBilling(ApiTestCase):
    def test_duplicate_slot_number(self):
        self.add_slot("5")
        response = self.client.post("/api/admin/slots", json={"slot_number": "005", "level": "B1"})
        self.assertEqual(response.status_code, 409)

    def test_slot_requires_level(self):
        response = self.client.post("/api/admin/slots", json={"slot_number": "7"})
        self.assertEqual(response.status_code, 400)

    def test_quote_by_hours(self):
        body = self.client.get("/api/billing/quote", query_string={"hours": 3}).get_json()
        self.assertEqual(body, {"hours": 3, "amount": "300.00"})

    def test_quote_by_window(self):
        body = self.client.get("/api/billing/quote", query_string={
            "start": iso(T), "end": iso(T + timedelta(minutes=150)),
        }).get_json()
        self.assertEqual(body, {"hours": 3, "amount": "300.00"})

    def test_quote_requires_hours(self):
        response = self.client.get("/api/billing/quote")
        self.assertEqual(response.status_code, 400)

    def test_empty_stats(self):
        stats = self.client.get("/api/admin/stats").get_json()
        self.assertEqual(stats["total_bookings"], 0)
        self.assertEqual(stats["occupancy_rate"], 0.0)
        self.assertEqual(stats["total_income"], "0.00")

    def test_hourly_rate_from_config(self):
        app = create_app({"DATABASE_URL": "sqlite://", "HOURLY_RATE": 120}, clock=self.clock)
        try:
            body = app.test_client().get("/api/billing/quote", query_string={"hours": 2}).get_json()
        finally:
            app.extensions["parkit_engine"].dispose()
        self.assertEqual(body["amount"], "240.00")


class TestShutdown(unittest.TestCase):
    def test_shutdown_drains_notification_workers(self):
        overrides = {
            key: getattr(TestingConfig, key)
            for key in dir(TestingConfig) if key.isupper()
        }
        overrides["NOTIFICATION_WORKERS"] = 2
        app = create_app(overrides, clock=FakeClock(T - timedelta(hours=1)))
        executor = app.extensions["parkit_executor"]
        self.assertIsNotNone(executor)

        shutdown_app(app)
        self.assertNotIn("parkit_executor", app.extensions)
        with self.assertRaises(RuntimeError):
            executor.submit(print)

        # A second call, as from the exit hook, is harmless
        shutdown_app(app)


if __name__ == "__main__":
    unittest.main()
