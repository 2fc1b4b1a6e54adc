import os
import sys
import datetime
import unittest
from fastapi.testclient import TestClient

sys.path.append(os.path.dirname(os.path.dirname(__file__)))
from config import YamlConfig
from rest_api import WorkoutAPI


class APITestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.db_path = "test_workout.db"
        self.yaml_path = "test_settings.yaml"
        for path in (self.db_path, self.yaml_path):
            if os.path.exists(path):
                os.remove(path)
        self.api = WorkoutAPI(
            db_path=self.db_path, yaml_path=self.yaml_path, rest_timer=False
        )

    def tearDown(self) -> None:
        for path in (self.db_path, self.yaml_path):
            if os.path.exists(path):
                os.remove(path)

    def test_presets_seeded_on_startup(self) -> None:
        with TestClient(self.api.app) as client:
            response = client.get("/templates")
            self.assertEqual(response.status_code, 200)
            ids = [t["id"] for t in response.json()]
            self.assertEqual(ids[0], "tpl_wide")
            self.assertEqual(len(ids), 5)

            response = client.post("/templates/defaults")
            self.assertEqual(response.json(), {"first_id": "tpl_wide"})
            self.assertEqual(len(client.get("/templates").json()), 5)

            health = client.get("/health").json()
            self.assertEqual(health["status"], "ok")
            self.assertEqual(health["schema_version"], "2")

    def test_full_workflow(self) -> None:
        with TestClient(self.api.app) as client:
            response = client.post(
                "/templates",
                params={"name": "Rows", "sets": 3, "target_total": 20, "rest_sec": 60},
            )
            self.assertEqual(response.status_code, 200)
            template = response.json()
            self.assertEqual(template["sets"], 3)

            response = client.post("/sessions", params={"template_id": template["id"]})
            self.assertEqual(response.status_code, 200)
            session_id = response.json()["id"]

            state = client.post(
                "/workout/attach", params={"session_id": session_id}
            ).json()
            self.assertEqual(state["state"], "awaiting_set_input")
            self.assertEqual(state["suggested_reps"], 7)

            state = client.post("/workout/sets", params={"reps": 8}).json()
            self.assertEqual(state["state"], "resting")
            self.assertEqual(state["seconds_left"], 60)

            state = client.post("/workout/rest/adjust").json()
            self.assertEqual(state["seconds_left"], 75)
            state = client.post("/workout/rest/adjust", params={"delta": -30}).json()
            self.assertEqual(state["seconds_left"], 45)

            client.post("/workout/rest/skip")
            state = client.post("/workout/sets", params={"reps": 3}).json()
            self.assertEqual(state["state"], "resting")
            state = client.post("/workout/undo").json()
            self.assertEqual(state["state"], "awaiting_set_input")
            self.assertEqual(state["reps_by_set"], [8])
            self.assertEqual(state["suggested_reps"], 3)

            state = client.post("/workout/sets", params={"reps": 7}).json()
            self.assertEqual(state["total_reps"], 15)
            client.post("/workout/rest/skip")

            state = client.post("/workout/sets", params={"reps": 6}).json()
            self.assertEqual(state["reps_by_set"], [8, 7, 6])
            self.assertEqual(state["state"], "completed")
            self.assertTrue(state["is_achieved"])

            stored = client.get(f"/sessions/{session_id}").json()
            self.assertEqual(stored["total_reps"], 21)
            self.assertEqual(stored["status"], "completed")
            self.assertIsNotNone(stored["ended_at"])

            last = client.get(f"/templates/{template['id']}/last_session").json()
            self.assertEqual(last["id"], session_id)

            weeks = client.get("/stats/weekly").json()
            self.assertEqual(weeks[0]["session_count"], 1)
            self.assertEqual(
                client.get("/stats/weekly", params={"weeks": 0}).json(), []
            )
            self.assertEqual(weeks[0]["achieved_count"], 1)

            series = client.get(f"/stats/templates/{template['id']}/series").json()
            self.assertEqual(series[0]["max_reps"], 8)

            days = client.get("/stats/calendar").json()["days"]
            self.assertEqual(len(days), 1)
            on_day = client.get("/stats/calendar", params={"day": days[0]}).json()
            self.assertEqual(on_day["sessions"][0]["id"], session_id)

            listed = client.get("/sessions", params={"limit": 1}).json()
            self.assertEqual([s["id"] for s in listed], [session_id])

    def test_session_overrides_and_update(self) -> None:
        with TestClient(self.api.app) as client:
            response = client.post(
                "/sessions", params={"template_id": "tpl_dips", "sets": 2, "rest_sec": 30}
            )
            session = response.json()
            self.assertEqual(session["template_snapshot"]["sets"], 2)
            self.assertEqual(session["template_snapshot"]["rest_sec"], 30)
            self.assertEqual(session["template_snapshot"]["target_total"], 20)

            response = client.put(
                f"/sessions/{session['id']}", json={"reps_by_set": [4, 4]}
            )
            self.assertEqual(response.status_code, 200)
            self.assertEqual(response.json()["reps_by_set"], [4, 4])
            self.assertEqual(response.json()["total_reps"], 0)

            client.post("/workout/attach", params={"session_id": session["id"]})
            self.assertEqual(client.get("/workout").json()["state"], "completed")
            response = client.delete(f"/sessions/{session['id']}")
            self.assertEqual(response.status_code, 200)
            self.assertIsNone(client.get("/workout").json()["session_id"])
            self.assertEqual(
                client.get(f"/sessions/{session['id']}").status_code, 404
            )

    def test_template_update_and_delete(self) -> None:
        with TestClient(self.api.app) as client:
            response = client.put("/templates/tpl_curl", params={"target_total": 50})
            self.assertEqual(response.status_code, 200)
            self.assertEqual(response.json()["target_total"], 50)
            self.assertEqual(response.json()["sets"], 4)

            response = client.post("/templates", params={"name": "Defaults"})
            self.assertEqual(response.json()["sets"], 7)
            self.assertEqual(response.json()["rest_sec"], 90)

            self.assertEqual(client.delete("/templates/tpl_curl").status_code, 200)
            self.assertEqual(client.get("/templates/tpl_curl").status_code, 404)

    def test_error_mapping(self) -> None:
        with TestClient(self.api.app) as client:
            self.assertEqual(client.get("/templates/tpl_missing").status_code, 404)
            self.assertEqual(
                client.put("/templates/tpl_missing", params={"sets": 3}).status_code,
                404,
            )
            self.assertEqual(
                client.get("/templates/tpl_missing/last_session").status_code, 404
            )
            self.assertEqual(
                client.post("/sessions", params={"template_id": "tpl_missing"}).status_code,
                404,
            )
            self.assertEqual(
                client.post("/workout/attach", params={"session_id": "ses_x"}).status_code,
                404,
            )

            response = client.post("/templates", params={"name": "Bad", "sets": 0})
            self.assertEqual(response.status_code, 400)
            response = client.post(
                "/sessions", params={"template_id": "tpl_wide", "rest_sec": 5}
            )
            self.assertEqual(response.status_code, 400)
            response = client.get("/sessions", params={"limit": -1})
            self.assertEqual(response.status_code, 400)
            response = client.get("/stats/calendar", params={"day": "not-a-day"})
            self.assertEqual(response.status_code, 400)

            self.assertEqual(client.post("/workout/sets", params={"reps": 3}).status_code, 409)
            self.assertEqual(client.post("/workout/rest/skip").status_code, 409)

            session_id = client.post(
                "/sessions", params={"template_id": "tpl_v_raise"}
            ).json()["id"]
            client.post("/workout/attach", params={"session_id": session_id})
            self.assertEqual(client.post("/workout/rest/skip").status_code, 409)
            response = client.post("/workout/sets", params={"reps": -2})
            self.assertEqual(response.status_code, 400)
            client.post("/workout/finish")
            self.assertEqual(client.post("/workout/undo").status_code, 409)


class APIKeyTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.db_path = "test_keys.db"
        self.yaml_path = "test_keys.yaml"
        for path in (self.db_path, self.yaml_path):
            if os.path.exists(path):
                os.remove(path)
        YamlConfig(self.yaml_path).update(api_token="letmein")
        self.api = WorkoutAPI(
            db_path=self.db_path, yaml_path=self.yaml_path, rest_timer=False
        )

    def tearDown(self) -> None:
        for path in (self.db_path, self.yaml_path):
            if os.path.exists(path):
                os.remove(path)

    def test_api_key_required(self) -> None:
        with TestClient(self.api.app) as client:
            self.assertEqual(client.get("/templates").status_code, 401)
            response = client.get("/templates", headers={"X-API-Key": "wrong"})
            self.assertEqual(response.status_code, 401)
            response = client.get("/templates", headers={"X-API-Key": "letmein"})
            self.assertEqual(response.status_code, 200)


if __name__ == "__main__":
    unittest.main()
