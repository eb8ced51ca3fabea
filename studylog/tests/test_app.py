import tempfile
import unittest
from pathlib import Path

from fastapi.testclient import TestClient

from studylog.app import create_app
from studylog.client_cache import ClientCache
from studylog.db import PERSONAL_TABLES, InMemoryBackendClient
from studylog.dependencies import (
    get_client_cache,
    get_identity_client,
    reset_dependencies,
)
from studylog.identity import InMemoryIdentityClient
from studylog.setup_flow import USER_DATABASE_SQL

PROJECT_URL = "https://abc.example.com"


class StudyLogApiTests(unittest.TestCase):
    def setUp(self):
        self.identity_client = InMemoryIdentityClient()
        self.backends = {}
        self.cache = ClientCache(factory=self._open)

        self.app = create_app()
        self.app.dependency_overrides[get_identity_client] = lambda: self.identity_client
        self.app.dependency_overrides[get_client_cache] = lambda: self.cache
        self.client = TestClient(self.app)

        self.identity_client.add_user("u1@example.com", "secret", user_id="u1")
        self.headers = self._sign_in("u1@example.com", "secret")

    def _open(self, url, key):
        return self.backends.setdefault(url, InMemoryBackendClient(tables=()))

    def _sign_in(self, email, password):
        response = self.client.post(
            "/api/auth/sign-in", json={"email": email, "password": password}
        )
        self.assertEqual(response.status_code, 200)
        return {"Authorization": f"Bearer {response.json()['access_token']}"}

    def _connect(self):
        self.backends[PROJECT_URL] = InMemoryBackendClient()
        response = self.client.post(
            "/api/setup/test",
            json={"url": "abc.example.com", "key": "anon"},
            headers=self.headers,
        )
        self.assertEqual(response.json()["step"], "done")

    def _create_note(self, **fields):
        body = {"title": "Top sellers", "question": "Top 3 products by revenue"}
        body.update(fields)
        response = self.client.post("/api/notes", json=body, headers=self.headers)
        self.assertEqual(response.status_code, 201)
        return response.json()

    def test_health(self):
        response = self.client.get("/api/health")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["status"], "ok")

    def test_requires_bearer_token(self):
        self.assertEqual(self.client.get("/api/connection").status_code, 401)
        response = self.client.get(
            "/api/connection", headers={"Authorization": "Bearer not-a-token"}
        )
        self.assertEqual(response.status_code, 401)

    def test_sign_up_and_me(self):
        response = self.client.post(
            "/api/auth/sign-up", json={"email": "new@example.com", "password": "pw"}
        )
        self.assertEqual(response.status_code, 201)
        payload = response.json()
        self.assertFalse(payload["confirmation_required"])
        token = payload["session"]["access_token"]

        me = self.client.get("/api/auth/me", headers={"Authorization": f"Bearer {token}"})
        self.assertEqual(me.json()["email"], "new@example.com")

    def test_bad_credentials(self):
        response = self.client.post(
            "/api/auth/sign-in", json={"email": "u1@example.com", "password": "wrong"}
        )
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["kind"], "configuration")

    def test_oauth_url(self):
        response = self.client.get(
            "/api/auth/oauth/google", params={"redirect_to": "https://app.example.com"}
        )
        self.assertEqual(response.status_code, 200)
        self.assertIn("provider=google", response.json()["url"])
        self.assertEqual(self.client.get("/api/auth/oauth/myspace").status_code, 400)

    def test_new_user_needs_setup(self):
        response = self.client.get("/api/connection", headers=self.headers)
        self.assertEqual(response.json(), {"status": "needs_setup", "message": None, "settings": None})

        response = self.client.get("/api/notes", headers=self.headers)
        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()["detail"], {"status": "needs_setup"})

    def test_setup_flow_with_table_creation(self):
        response = self.client.post(
            "/api/setup/test",
            json={"url": "abc.example.com/", "key": "anon"},
            headers=self.headers,
        )
        payload = response.json()
        self.assertEqual(payload["step"], "create_tables")
        self.assertEqual(payload["url"], PROJECT_URL)
        self.assertEqual(payload["sql"], USER_DATABASE_SQL)

        confirm = self.client.post(
            "/api/setup/confirm",
            json={"url": PROJECT_URL, "key": "anon"},
            headers=self.headers,
        )
        self.assertEqual(confirm.json()["step"], "create_tables")
        self.assertIsNotNone(confirm.json()["error"])

        self.backends[PROJECT_URL].create_tables(*PERSONAL_TABLES)
        confirm = self.client.post(
            "/api/setup/confirm",
            json={"url": PROJECT_URL, "key": "anon"},
            headers=self.headers,
        )
        self.assertEqual(confirm.json()["step"], "done")

        status = self.client.get("/api/connection", headers=self.headers).json()
        self.assertEqual(status["status"], "connected")
        self.assertEqual(status["settings"]["supabase_url"], PROJECT_URL)
        self.assertNotIn("supabase_anon_key", status["settings"])

    def test_setup_requires_both_fields(self):
        response = self.client.post(
            "/api/setup/test", json={"url": "", "key": "anon"}, headers=self.headers
        )
        self.assertEqual(response.json()["step"], "input")
        self.assertEqual(response.json()["error_kind"], "configuration")

    def test_setup_refuses_server_database_urls(self):
        # Use the service's own client cache rather than the in-memory one.
        reset_dependencies()
        self.addCleanup(reset_dependencies)
        del self.app.dependency_overrides[get_client_cache]

        with tempfile.TemporaryDirectory() as tmp:
            target = Path(tmp) / "notes.db"
            for path in ("/api/setup/test", "/api/setup/confirm"):
                response = self.client.post(
                    path,
                    json={"url": f"sqlite:///{target}", "key": "x"},
                    headers=self.headers,
                )
                self.assertEqual(response.status_code, 200)
                payload = response.json()
                self.assertEqual(payload["step"], "input")
                self.assertEqual(payload["error_kind"], "configuration")
                self.assertFalse(target.exists())

        status = self.client.get("/api/connection", headers=self.headers).json()
        self.assertEqual(status["status"], "needs_setup")

    def test_notes_crud(self):
        self._connect()
        note = self._create_note(standard_answer="SELECT ...", key_points="GROUP BY")
        self.assertEqual(note["user_id"], "u1")
        self.assertEqual(note["key_points"], "GROUP BY")

        listed = self.client.get("/api/notes", headers=self.headers).json()["notes"]
        self.assertEqual([n["id"] for n in listed], [note["id"]])

        response = self.client.patch(
            f"/api/notes/{note['id']}", json={"title": "Top 5 sellers"}, headers=self.headers
        )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["title"], "Top 5 sellers")
        self.assertEqual(response.json()["question"], note["question"])

        found = self.client.get("/api/notes", params={"q": "top 5"}, headers=self.headers)
        self.assertEqual(len(found.json()["notes"]), 1)

        response = self.client.delete(f"/api/notes/{note['id']}", headers=self.headers)
        self.assertEqual(response.status_code, 204)
        response = self.client.get(f"/api/notes/{note['id']}", headers=self.headers)
        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json()["kind"], "not_found")

    def test_attempts_are_numbered_per_note(self):
        self._connect()
        note = self._create_note()
        url = f"/api/notes/{note['id']}/attempts"

        wrong = self.client.post(
            url,
            json={
                "answer_content": "SELECT *",
                "is_correct": False,
                "error_content": "no ORDER BY",
            },
            headers=self.headers,
        ).json()
        right = self.client.post(
            url,
            json={"answer_content": "SELECT ... ORDER BY 2 DESC", "correction": "ignored"},
            headers=self.headers,
        ).json()
        self.assertEqual((wrong["attempt_number"], right["attempt_number"]), (1, 2))
        self.assertEqual(wrong["error_content"], "no ORDER BY")
        self.assertTrue(right["is_correct"])
        self.assertIsNone(right["correction"])

        self.client.delete(f"/api/attempts/{wrong['id']}", headers=self.headers)
        third = self.client.post(
            url, json={"answer_content": "again"}, headers=self.headers
        ).json()
        self.assertEqual(third["attempt_number"], 3)

        detail = self.client.get(f"/api/notes/{note['id']}", headers=self.headers).json()
        self.assertEqual([a["attempt_number"] for a in detail["attempts"]], [2, 3])

        patched = self.client.patch(
            f"/api/attempts/{third['id']}",
            json={"is_correct": False, "error_content": "typo"},
            headers=self.headers,
        ).json()
        self.assertFalse(patched["is_correct"])
        self.assertEqual(patched["attempt_number"], 3)

    def test_attempt_for_missing_note(self):
        self._connect()
        response = self.client.post(
            "/api/notes/missing/attempts", json={"answer_content": "x"}, headers=self.headers
        )
        self.assertEqual(response.status_code, 404)

    def test_summary(self):
        self._connect()
        note = self._create_note()
        self._create_note(title="Joins", question="LEFT JOIN")
        for body in (
            {"answer_content": "a", "is_correct": False},
            {"answer_content": "b"},
        ):
            self.client.post(
                f"/api/notes/{note['id']}/attempts", json=body, headers=self.headers
            )

        summary = self.client.get("/api/notes/summary", headers=self.headers).json()
        self.assertEqual(summary["note_count"], 2)
        self.assertEqual(summary["pending_corrections"], 1)
        by_id = {s["note_id"]: s for s in summary["summaries"]}
        self.assertEqual(by_id[note["id"]]["total_attempts"], 2)
        self.assertEqual(by_id[note["id"]]["latest_attempt"]["attempt_number"], 2)

    def test_summary_search_keeps_overall_counters(self):
        self._connect()
        note = self._create_note()
        joins = self._create_note(title="Joins", question="LEFT JOIN")
        self.client.post(
            f"/api/notes/{note['id']}/attempts",
            json={"answer_content": "a", "is_correct": False},
            headers=self.headers,
        )

        summary = self.client.get(
            "/api/notes/summary", params={"q": "joins"}, headers=self.headers
        ).json()
        self.assertEqual(summary["note_count"], 2)
        self.assertEqual(summary["pending_corrections"], 1)
        self.assertEqual([n["id"] for n in summary["notes"]], [joins["id"]])
        self.assertEqual([s["note_id"] for s in summary["summaries"]], [joins["id"]])

    def test_missing_tables_after_connect_is_conflict(self):
        self._connect()
        self.backends[PROJECT_URL].tables.clear()
        response = self.client.get("/api/notes", headers=self.headers)
        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()["kind"], "schema")

    def test_sign_out_drops_cached_client(self):
        self._connect()
        self.client.get("/api/notes", headers=self.headers)
        self.assertIn((PROJECT_URL, "anon"), self.cache)

        response = self.client.post("/api/auth/sign-out", headers=self.headers)
        self.assertEqual(response.status_code, 200)
        self.assertNotIn((PROJECT_URL, "anon"), self.cache)
        self.assertEqual(self.client.get("/api/notes", headers=self.headers).status_code, 401)


if __name__ == "__main__":
    unittest.main()
