from __future__ import annotations

import os
from pathlib import Path
import sys
import unittest
from unittest.mock import patch

from fastapi.testclient import TestClient

ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT))

from app.main import create_app


_ENV = {"REDIS_URL": "", "SUPABASE_URL": ""}


class TestActionEndpoints(unittest.TestCase):
    def _client(self) -> TestClient:
        return TestClient(create_app())

    def test_requires_user_id(self) -> None:
        with patch.dict(os.environ, _ENV):
            with self._client() as client:
                res = client.post("/v1/actions/goal", json={"title": "Glow"})
        self.assertEqual(res.status_code, 400)
        self.assertEqual(res.json()["detail"], "Missing X-User-ID")

    def test_invalid_payload_lists_fields(self) -> None:
        with patch.dict(os.environ, _ENV):
            with self._client() as client:
                res = client.post("/v1/cabinet-action", headers={"X-User-ID": "u1"}, json={"action": "add"})
        self.assertEqual(res.status_code, 400)
        self.assertEqual(res.json()["detail"], {"error": "Invalid payload", "details": ["product_name"]})

    def test_cabinet_then_routine_update_and_completed_keys(self) -> None:
        headers = {"X-User-ID": "uid_act_1"}
        with patch.dict(os.environ, _ENV):
            with self._client() as client:
                res = client.post(
                    "/v1/cabinet-action",
                    headers=headers,
                    json={
                        "action": "add",
                        "product_name": "Gentle Cleanser",
                        "product_brand": "CeraVe",
                        "reason": "dry skin",
                        "action_key": "cabinet:cerave:gentle-cleanser",
                    },
                )
                self.assertEqual(res.status_code, 200)
                self.assertTrue(res.json()["product_id"])

                res = client.post(
                    "/v1/actions/routine-update",
                    headers=headers,
                    json={"type": "evening", "changes": ["Double cleanse"], "action_key": "routine:evening"},
                )
                self.assertEqual(res.status_code, 200)
                self.assertTrue(res.json()["routine_id"])

                res = client.get("/v1/actions/completed", headers=headers)
                self.assertEqual(
                    res.json()["completed_actions"],
                    ["cabinet:cerave:gentle-cleanser", "routine:evening"],
                )

                res = client.get("/v1/actions/completed", headers={"X-User-ID": "someone_else"})
                self.assertEqual(res.json()["completed_actions"], [])

    def test_mark_completed_directly(self) -> None:
        headers = {"X-User-ID": "uid_act_2"}
        with patch.dict(os.environ, _ENV):
            with self._client() as client:
                res = client.post("/v1/actions/completed", headers=headers, json={"key": "goal:glow"})
                self.assertEqual(res.json(), {"added": True, "completed_actions": ["goal:glow"]})
                res = client.post("/v1/actions/completed", headers=headers, json={"key": "goal:glow"})
                self.assertFalse(res.json()["added"])
                res = client.post("/v1/actions/completed", headers=headers, json={})
                self.assertEqual(res.status_code, 400)

    def test_invalid_action_key_rejected_before_write(self) -> None:
        headers = {"X-User-ID": "uid_act_5"}
        with patch.dict(os.environ, _ENV):
            app = create_app()
            with TestClient(app) as client:
                res = client.post(
                    "/v1/actions/goal",
                    headers=headers,
                    json={"title": "Clear skin", "action_key": "x" * 600},
                )
                self.assertEqual(res.status_code, 400)
                res = client.post(
                    "/v1/actions/appointment",
                    headers=headers,
                    json={"treatment_type": "facial", "date": "2026-11-02", "action_key": 42},
                )
                self.assertEqual(res.status_code, 400)

                db = app.state.database
                self.assertEqual(client.portal.call(db.select, "goals"), [])
                self.assertEqual(client.portal.call(db.select, "appointments"), [])
                res = client.get("/v1/actions/completed", headers=headers)
                self.assertEqual(res.json()["completed_actions"], [])

    def test_action_error_maps_to_status(self) -> None:
        headers = {"X-User-ID": "uid_act_3"}
        with patch.dict(os.environ, _ENV):
            with self._client() as client:
                res = client.post("/v1/actions/routine-complete", headers=headers, json={"type": "morning"})
                self.assertEqual(res.status_code, 404)
                self.assertEqual(res.json()["error"], "No active morning routine found")

                res = client.post(
                    "/v1/actions/cabinet",
                    headers=headers,
                    json={"action": "remove", "product_name": "Ghost", "product_brand": "Nobody"},
                )
                self.assertEqual(res.status_code, 404)
                self.assertEqual(res.json()["error"], "Product not found in cabinet")

    def test_card_actions(self) -> None:
        headers = {"X-User-ID": "uid_act_4"}
        with patch.dict(os.environ, _ENV):
            with self._client() as client:
                res = client.post(
                    "/v1/actions/cabinet",
                    headers=headers,
                    json={"action": "add", "product_name": "Toleriane", "product_brand": "La Roche-Posay"},
                )
                self.assertEqual(res.json()["message"], "Added Toleriane by La Roche-Posay in your collection.")

                res = client.post(
                    "/v1/actions/appointment",
                    headers=headers,
                    json={"treatment_type": "HydraFacial", "date": "2026-11-02", "time": "10:00"},
                )
                self.assertEqual(res.json()["appointment"]["status"], "scheduled")

                res = client.post(
                    "/v1/actions/checkin",
                    headers=headers,
                    json={"notes": "calmer", "photo_urls": ["https://blob/1.jpg"]},
                )
                self.assertEqual(res.json()["photos"], 1)

                res = client.post("/v1/actions/goal", headers=headers, json={"title": "Even tone"})
                self.assertEqual(res.json()["goal"]["title"], "Even tone")


class TestRoutineEndpoints(unittest.TestCase):
    def test_approve_deny_and_replace_steps(self) -> None:
        headers = {"X-User-ID": "uid_rt_1"}
        routine_data = {
            "title": "Barrier reset",
            "weeklySchedule": {
                "tuesday": {
                    "evening": {"steps": [{"product_name": "Balm", "product_brand": "Aquaphor"}]},
                }
            },
        }
        with patch.dict(os.environ, _ENV):
            with TestClient(create_app()) as client:
                res = client.post(
                    "/v1/routines/approve",
                    headers=headers,
                    json={"suggestionId": "sugg_rt_1", "routineData": routine_data, "action_key": "weekly:sugg_rt_1"},
                )
                self.assertEqual(res.status_code, 200)
                routine_ids = res.json()["routine_ids"]
                self.assertEqual(len(routine_ids), 1)

                res = client.post("/v1/routines/deny", headers=headers, json={})
                self.assertEqual(res.status_code, 400)
                res = client.post(
                    "/v1/routines/deny",
                    headers=headers,
                    json={"suggestionId": "sugg_rt_2", "action_key": "weekly:sugg_rt_2"},
                )
                self.assertEqual(res.json(), {"success": True})

                res = client.put(
                    f"/v1/routines/{routine_ids[0]}/steps",
                    headers=headers,
                    json={"steps": [{"product_id": "p1"}, {"product_id": "p2", "instructions": "thin layer"}]},
                )
                self.assertEqual(res.json(), {"success": True, "steps": 2})

                res = client.get("/v1/actions/completed", headers=headers)
                self.assertEqual(res.json()["completed_actions"], ["weekly:sugg_rt_1", "weekly:sugg_rt_2"])

                res = client.put(
                    f"/v1/routines/{routine_ids[0]}/steps",
                    headers={"X-User-ID": "intruder"},
                    json={"steps": []},
                )
                self.assertEqual(res.status_code, 404)
