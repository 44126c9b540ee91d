import tempfile
import unittest
from pathlib import Path
from types import SimpleNamespace

from fastapi.testclient import TestClient

from noteforge.answer_generator import AnswerGenerator
from noteforge.api_server import create_app
from noteforge.ask_service import AskService
from noteforge.confidence import FALLBACK_TEXTS
from noteforge.metrics import MetricsCollector
from noteforge.note_store import SqliteNoteStore

from library_support import FakeChatModel, build_book, reply

ENDPOINT = "/api/v1/ai/query"


class _Throttled(Exception):
    def __init__(self):
        super().__init__("slow down")
        self.status_code = 429
        self.response = SimpleNamespace(status_code=429, headers={"retry-after": "12"})


class TestAskApi(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.store = SqliteNoteStore(Path(self.tmp.name) / "library.sqlite")
        self.owner = "writer-1"
        self.book_id, _ = build_book(
            self.store,
            self.owner,
            "The Salt Road",
            [("Chapter 1", ["Mara grew up in Keld."]), ("Chapter 2", ["Tobin left with the caravan."])],
        )
        self.empty_book = self.store.add_book(self.owner, "Blank pages")
        self.series_id = self.store.add_series(self.owner, "Cycle")

    def tearDown(self):
        self.store.close()
        self.tmp.cleanup()

    def _client(self, model: FakeChatModel, timeout_s=5.0) -> TestClient:
        generator = AnswerGenerator(model.runnable, model_name="configured-model", timeout_s=timeout_s)
        service = AskService(
            repository=self.store,
            generator=generator,
            metrics=MetricsCollector(log_path=None),
        )
        return TestClient(create_app(service))

    def _post(self, client, body, owner="writer-1", **headers):
        if owner is not None:
            headers["X-Owner-Id"] = owner
        return client.post(ENDPOINT, json=body, headers=headers)

    def test_answer_response_shape(self):
        with self._client(FakeChatModel(reply("Tobin left.", low_confidence=False))) as client:
            resp = self._post(client, {"query_text": "What happened in chapter 2?", "scope": {"book_id": self.book_id}})
        self.assertEqual(resp.status_code, 200)
        body = resp.json()
        self.assertEqual(body["answer"], {"text": "Tobin left.", "low_confidence": False})
        self.assertEqual(body["usage"]["model"], "fake-model")
        self.assertIsInstance(body["usage"]["latency_ms"], int)

    def test_empty_scope_returns_localized_fallback(self):
        model = FakeChatModel()
        with self._client(model) as client:
            resp = self._post(
                client,
                {"query_text": "Anything?", "scope": {"book_id": self.empty_book}},
                **{"Accept-Language": "pl"},
            )
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["answer"], {"text": FALLBACK_TEXTS["pl"], "low_confidence": True})
        self.assertEqual(model.calls, 0)

    def test_provider_timeout_returns_internal_error_envelope(self):
        with self._client(FakeChatModel(delay_s=1.0), timeout_s=0.05) as client:
            resp = self._post(client, {"query_text": "What happened?", "scope": {"book_id": self.book_id}})
        self.assertEqual(resp.status_code, 500)
        body = resp.json()
        self.assertNotIn("answer", body)
        self.assertEqual(body["error"]["code"], "INTERNAL_ERROR")
        self.assertTrue(body["error"]["details"]["retryable"])

    def test_scope_with_both_or_neither_target_is_rejected(self):
        model = FakeChatModel()
        with self._client(model) as client:
            both = self._post(
                client,
                {"query_text": "q", "scope": {"book_id": self.book_id, "series_id": self.series_id}},
            )
            neither = self._post(client, {"query_text": "q", "scope": {}})
        for resp in (both, neither):
            self.assertEqual(resp.status_code, 400)
            self.assertEqual(resp.json()["error"]["code"], "VALIDATION_ERROR")
            self.assertTrue(resp.json()["error"]["details"])
        self.assertEqual(model.calls, 0)

    def test_malformed_json_is_a_validation_error(self):
        with self._client(FakeChatModel()) as client:
            resp = client.post(
                ENDPOINT,
                content=b"{not json",
                headers={"X-Owner-Id": self.owner, "Content-Type": "application/json"},
            )
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.json()["error"]["code"], "VALIDATION_ERROR")

    def test_missing_owner_is_not_allowed(self):
        with self._client(FakeChatModel()) as client:
            resp = self._post(client, {"query_text": "q", "scope": {"book_id": self.book_id}}, owner=None)
        self.assertEqual(resp.status_code, 401)
        self.assertEqual(resp.json()["error"]["code"], "NOT_ALLOWED")

    def test_foreign_book_is_not_found(self):
        with self._client(FakeChatModel()) as client:
            resp = self._post(client, {"query_text": "q", "scope": {"book_id": self.book_id}}, owner="intruder")
        self.assertEqual(resp.status_code, 404)
        self.assertEqual(resp.json()["error"]["code"], "NOT_FOUND")

    def test_rate_limit_sets_retry_after(self):
        with self._client(FakeChatModel(error=_Throttled())) as client:
            resp = self._post(client, {"query_text": "q", "scope": {"book_id": self.book_id}})
        self.assertEqual(resp.status_code, 429)
        self.assertEqual(resp.json()["error"]["code"], "RATE_LIMITED")
        self.assertEqual(resp.headers.get("retry-after"), "12")

    def test_metrics_and_health(self):
        with self._client(FakeChatModel()) as client:
            self._post(client, {"query_text": "q", "scope": {"book_id": self.book_id}})
            metrics = client.get("/metrics").json()
            health = client.get("/health").json()
            traced = client.get("/health", headers={"X-Request-Id": "req-42"})
        self.assertEqual(metrics["throughput"]["total_requests"], 1)
        self.assertEqual(health, {"status": "ok", "retrieval_mode": "simple"})
        self.assertEqual(traced.headers["x-request-id"], "req-42")


if __name__ == "__main__":
    unittest.main()
