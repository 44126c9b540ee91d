import tempfile
import unittest
from pathlib import Path
from types import SimpleNamespace

from noteforge.answer_generator import AnswerGenerator
from noteforge.ask_service import AskService, validate_ask_query
from noteforge.confidence import FALLBACK_TEXTS, FALLBACK_TEXT
from noteforge.errors import InternalError, InvalidRequestError, NotFoundError, RateLimitedError
from noteforge.metrics import MetricsCollector
from noteforge.models import EmbeddingStatus
from noteforge.note_store import SqliteNoteStore
from noteforge.query_log import QueryLogEmitter, SqliteQueryLog
from noteforge.similarity import SimilarityRanker

from library_support import (
    CountingRepository,
    FailingSink,
    FakeChatModel,
    KeywordEmbeddings,
    build_book,
    reply,
)


class _RateLimited(Exception):
    def __init__(self):
        super().__init__("too many requests")
        self.status_code = 429
        self.response = SimpleNamespace(status_code=429, headers={"retry-after": "12"})


class _AuthRejected(Exception):
    def __init__(self, status_code=401):
        super().__init__("invalid api key")
        self.status_code = status_code
        self.response = SimpleNamespace(status_code=status_code, headers={})


class AskServiceTestCase(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        db_path = Path(self.tmp.name) / "library.sqlite"
        self.store = SqliteNoteStore(db_path)
        self.query_log = SqliteQueryLog(db_path)
        self.emitter = QueryLogEmitter(self.query_log)
        self.metrics = MetricsCollector(log_path=None)
        self.owner = "writer-1"
        self.book_id, self.note_ids = build_book(
            self.store,
            self.owner,
            "The Salt Road",
            [
                ("Chapter 1", ["Mara grew up in the harbour town of Keld."]),
                ("Chapter 2", ["Tobin left with the salt caravan.", "The caravan master Oren owes a debt."]),
            ],
        )
        self.empty_book = self.store.add_book(self.owner, "Blank pages")

    def tearDown(self):
        self.emitter.close(wait=True)
        self.query_log.close()
        self.store.close()
        self.tmp.cleanup()

    def _service(self, model: FakeChatModel, **kwargs) -> AskService:
        kwargs.setdefault("repository", self.store)
        kwargs.setdefault("query_log", self.emitter)
        kwargs.setdefault("metrics", self.metrics)
        generator = AnswerGenerator(model.runnable, model_name="configured-model", timeout_s=kwargs.pop("timeout_s", 5.0))
        return AskService(generator=generator, **kwargs)

    def _query(self, text="What happened in chapter 2?", **scope):
        return {"query_text": text, "scope": scope or {"book_id": self.book_id}}


class TestAskServiceSimpleMode(AskServiceTestCase):
    def test_book_with_notes_is_answered_from_all_notes(self):
        model = FakeChatModel(reply("Tobin left with the caravan.", low_confidence=False))
        result = self._service(model).answer(self._query(), self.owner)

        self.assertEqual(model.calls, 1)
        self.assertFalse(result.answer.low_confidence)
        self.assertEqual(result.answer.text, "Tobin left with the caravan.")
        self.assertEqual(result.usage.model, "fake-model")
        self.assertGreaterEqual(result.usage.latency_ms, 0)
        for content in ("harbour town of Keld", "salt caravan", "owes a debt"):
            self.assertIn(content, model.prompts[0])
        self.assertNotIn("citations", result.to_response())

    def test_empty_book_returns_fallback_without_calling_the_model(self):
        model = FakeChatModel()
        result = self._service(model).answer(self._query(book_id=self.empty_book), self.owner)

        self.assertEqual(model.calls, 0)
        self.assertTrue(result.answer.low_confidence)
        self.assertEqual(result.answer.text, FALLBACK_TEXT)
        self.assertEqual(result.usage.model, "configured-model")
        self.assertEqual(set(result.to_response()), {"answer", "usage"})

    def test_fallback_follows_locale(self):
        result = self._service(FakeChatModel()).answer(
            self._query(book_id=self.empty_book), self.owner, locale="pl-PL,pl;q=0.9"
        )
        self.assertEqual(result.answer.text, FALLBACK_TEXTS["pl"])

    def test_model_low_confidence_passes_through_unchanged(self):
        for flag in (False, True):
            model = FakeChatModel(reply("Answer.", low_confidence=flag))
            result = self._service(model).answer(self._query(), self.owner)
            self.assertIs(result.answer.low_confidence, flag)

    def test_invalid_requests_fail_before_any_repository_call(self):
        repo = CountingRepository(self.store)
        model = FakeChatModel()
        service = self._service(model, repository=repo)
        invalid = [
            {"query_text": "q", "scope": {"book_id": self.book_id, "series_id": self.book_id}},
            {"query_text": "q", "scope": {}},
            {"query_text": "   ", "scope": {"book_id": self.book_id}},
            {"query_text": "x" * 501, "scope": {"book_id": self.book_id}},
            {"query_text": "q", "scope": {"book_id": "not-a-uuid"}},
            {"query_text": "q", "scope": {"book_id": self.book_id}, "unexpected": True},
        ]
        for payload in invalid:
            with self.assertRaises(InvalidRequestError):
                service.answer(payload, self.owner)
        with self.assertRaises(InvalidRequestError):
            service.answer(self._query(), "")
        self.assertEqual(repo.calls, [])
        self.assertEqual(model.calls, 0)
        self.emitter.flush()
        self.assertEqual(self.query_log.list_searches(self.owner), [])

    def test_validation_error_carries_field_details(self):
        with self.assertRaises(InvalidRequestError) as ctx:
            validate_ask_query({"query_text": "", "scope": {"book_id": self.book_id}})
        self.assertEqual(ctx.exception.details[0]["loc"], ["query_text"])

    def test_other_owner_gets_not_found(self):
        model = FakeChatModel()
        with self.assertRaises(NotFoundError):
            self._service(model).answer(self._query(), "intruder")
        self.assertEqual(model.calls, 0)

    def test_search_is_logged_and_failures_link_to_it(self):
        model = FakeChatModel(error=TimeoutError("read timed out"))
        service = self._service(model)
        service.answer(self._query(book_id=self.empty_book), self.owner)
        with self.assertRaises(InternalError):
            service.answer(self._query(), self.owner)
        self.emitter.flush()

        searches = self.query_log.list_searches(self.owner)
        self.assertEqual([s["query_text"] for s in searches], ["What happened in chapter 2?"] * 2)
        errors = self.query_log.list_errors(self.owner)
        self.assertEqual(len(errors), 1)
        self.assertEqual(errors[0]["source"], "llm")
        self.assertIn(errors[0]["search_log_id"], {s["id"] for s in searches})

    def test_failing_query_log_never_changes_the_answer(self):
        emitter = QueryLogEmitter(FailingSink())
        try:
            model = FakeChatModel(reply("Still answered.", low_confidence=False))
            result = self._service(model, query_log=emitter).answer(self._query(), self.owner)
            emitter.flush()
        finally:
            emitter.close()
        self.assertEqual(result.answer.text, "Still answered.")

    def test_provider_timeout_maps_to_retryable_internal_error(self):
        model = FakeChatModel(delay_s=1.0)
        with self.assertRaises(InternalError) as ctx:
            self._service(model, timeout_s=0.05).answer(self._query(), self.owner)
        self.assertEqual(ctx.exception.code, "INTERNAL_ERROR")
        self.assertEqual(ctx.exception.details, {"retryable": True})

    def test_provider_rate_limit_maps_to_rate_limited(self):
        with self.assertRaises(RateLimitedError) as ctx:
            self._service(FakeChatModel(error=_RateLimited())).answer(self._query(), self.owner)
        self.assertEqual(ctx.exception.status_code, 429)
        self.assertEqual(ctx.exception.retry_after_s, 12.0)

    def test_provider_auth_failure_is_not_retryable(self):
        for status in (401, 403):
            with self.assertRaises(InternalError) as ctx:
                self._service(FakeChatModel(error=_AuthRejected(status))).answer(self._query(), self.owner)
            self.assertEqual(ctx.exception.code, "INTERNAL_ERROR")
            self.assertEqual(ctx.exception.status_code, 500)
            self.assertEqual(ctx.exception.details, {"retryable": False})

    def test_malformed_model_output_maps_to_internal_error(self):
        with self.assertRaises(InternalError) as ctx:
            self._service(FakeChatModel("not json at all")).answer(self._query(), self.owner)
        self.assertTrue(ctx.exception.details["retryable"])

    def test_metrics_record_successes_fallbacks_and_errors(self):
        self._service(FakeChatModel()).answer(self._query(), self.owner)
        self._service(FakeChatModel()).answer(self._query(book_id=self.empty_book), self.owner)
        with self.assertRaises(NotFoundError):
            self._service(FakeChatModel()).answer(self._query(), "intruder")
        summary = self.metrics.get_summary()
        self.assertEqual(summary["throughput"]["total_requests"], 3)
        self.assertEqual(summary["answers"]["generated"], 1)
        self.assertEqual(summary["answers"]["low_confidence"], 1)
        self.assertEqual(summary["errors"]["by_code"], {"NOT_FOUND": 1})

    def test_series_scope_covers_both_books(self):
        series_id = self.store.add_series(self.owner, "Cycle")
        build_book(self.store, self.owner, "Book A", [("One", ["Alpha note."])], series_id=series_id, series_order=1)
        build_book(self.store, self.owner, "Book B", [("Two", ["Beta note."])], series_id=series_id, series_order=2)
        model = FakeChatModel()
        self._service(model).answer(self._query(series_id=series_id), self.owner)
        self.assertIn("Alpha note.", model.prompts[0])
        self.assertIn("Beta note.", model.prompts[0])
        self.assertNotIn("harbour town of Keld", model.prompts[0])


class TestAskServiceRagMode(AskServiceTestCase):
    def setUp(self):
        super().setUp()
        self.embeddings = KeywordEmbeddings(
            {"caravan": (1.0, 0.0, 0.0), "harbour": (0.0, 1.0, 0.0)},
        )
        for note_id, content in zip(self.note_ids, (
            "Mara grew up in the harbour town of Keld.",
            "Tobin left with the salt caravan.",
            "The caravan master Oren owes a debt.",
        )):
            self.store.add_note_chunk(self.owner, note_id, content, self.embeddings.embed_documents([content])[0])

    def _rag_service(self, model):
        return self._service(model, retrieval_mode="rag", ranker=SimilarityRanker(self.embeddings))

    def test_rag_answer_includes_citations_and_retrieved_count(self):
        model = FakeChatModel(reply("Tobin left with the caravan [Source 1].", low_confidence=False))
        result = self._rag_service(model).answer(
            {**self._query("Who left with the caravan?"), "retrieval": {"match_threshold": 0.5, "match_count": 5}},
            self.owner,
        )
        self.assertEqual(model.calls, 1)
        self.assertEqual(result.usage.retrieved_chunks, 2)
        self.assertEqual([c.note_id for c in result.citations], self.note_ids[1:])
        self.assertTrue(all(c.similarity >= 0.5 for c in result.citations))
        self.assertIn("[Source 1]", model.prompts[0])
        self.assertNotIn("harbour town", model.prompts[0])

    def test_rag_with_nothing_above_threshold_falls_back(self):
        model = FakeChatModel()
        result = self._rag_service(model).answer(self._query("What about the desert wind?"), self.owner)
        self.assertEqual(model.calls, 0)
        self.assertTrue(result.answer.low_confidence)
        self.assertEqual(result.citations, [])
        self.assertEqual(result.usage.retrieved_chunks, 0)
        self.assertEqual(result.to_response()["citations"], [])

    def test_rag_ignores_notes_whose_embeddings_are_not_ready(self):
        chapter = self.store.add_chapter(self.owner, self.book_id, "Chapter 3")
        pending = self.store.add_note(self.owner, chapter, "A caravan of ghosts.", embedding_status=EmbeddingStatus.PENDING)
        self.store.add_note_chunk(self.owner, pending, "A caravan of ghosts.", (1.0, 0.0, 0.0), mark_completed=False)
        model = FakeChatModel()
        result = self._rag_service(model).answer(self._query("caravan"), self.owner)
        self.assertNotIn(pending, [c.note_id for c in result.citations])

    def test_rag_mode_requires_a_ranker(self):
        with self.assertRaises(ValueError):
            self._service(FakeChatModel(), retrieval_mode="rag")


if __name__ == "__main__":
    unittest.main()
