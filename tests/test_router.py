"""Tests for routing staging extractions into destination tables."""

import threading

import pytest

from shelf.buckets import BUCKETS, lookup_route
from shelf.errors import UnknownBucketError
from shelf.projects import ProjectDetector, ProjectDirectory
from shelf.router import (
    DedupResult, ExtractionRouter, LegacyRouter, RouterStats,
    check_hash_duplicate, check_prefix_duplicate, is_garbage,
)
from shelf.scheduler import CycleGuard
from shelf.types import DESTINATION_TABLES

from conftest import InterleavingStore


def total_destination_rows(store):
    return sum(store.count(t) for t in DESTINATION_TABLES)


class TestBuckets:

    def test_twenty_buckets_over_nine_tables(self):
        assert len(BUCKETS) == 20
        assert {r.table for r in BUCKETS.values()} == set(DESTINATION_TABLES)

    def test_bug_buckets_split_by_status(self):
        assert lookup_route("Bugs Open").status == "open"
        assert lookup_route("Bugs Fixed").status == "fixed"

    def test_unknown_bucket(self):
        with pytest.raises(UnknownBucketError, match="Unknown bucket: bugs open"):
            lookup_route("bugs open")


class TestProcessBatch:

    def test_routes_each_bucket_to_its_table(self, store, seed):
        seed.staging("Todos", "Add retry to uploader", priority="high", project_id="p1")
        seed.staging("Bugs Fixed", "Crash on empty cart", session_id="s1")
        seed.staging("Work Log", "Shipped v2 of the importer")
        seed.staging("How-To Guide", "How to rotate keys")
        seed.staging("API Patterns", "Always paginate list endpoints")
        seed.staging("Quirks & Gotchas", "x" * 800)
        seed.staging("Snippets", "print('hi')", title="Greeting")

        stats = ExtractionRouter(store).process_batch()

        assert stats.processed == 7
        assert stats.by_table == {
            "todos": 1, "bugs": 1, "journal": 1, "docs": 1,
            "conventions": 1, "knowledge": 1, "snippets": 1,
        }
        todo = store.select("todos")[0]
        assert todo["title"] == "Add retry to uploader"
        assert todo["description"] == "Add retry to uploader"
        assert todo["priority"] == "high"
        assert todo["status"] == "unassigned"
        assert todo["project_id"] == "p1"
        bug = store.select("bugs")[0]
        assert bug["severity"] == "medium"
        assert bug["status"] == "fixed"
        assert bug["source_session_id"] == "s1"
        assert store.select("journal")[0]["entry_type"] == "worklog"
        assert store.select("docs")[0]["doc_type"] == "how-to_guide"
        convention = store.select("conventions")[0]
        assert convention["name"] == "Always paginate list endpoints"
        assert convention["convention_type"] == "api_patterns"
        assert convention["status"] == "active"
        knowledge = store.select("knowledge")[0]
        assert len(knowledge["summary"]) == 500
        assert len(knowledge["title"]) == 200
        assert knowledge["knowledge_type"] == "quirks_&_gotchas"
        snippet = store.select("snippets")[0]
        assert snippet["context"] == "Greeting"
        assert snippet["content"] == "print('hi')"

    def test_staging_rows_marked_processed(self, store, seed):
        row = seed.staging("Decisions", "Use SQLite locally", metadata={"hash": "h1", "model": "x"})

        ExtractionRouter(store).process_batch()

        staged = store.get("extractions", row["id"])
        assert staged["status"] == "processed"
        decision = store.select("decisions")[0]
        assert decision["context"] == "Use SQLite locally"
        assert decision["metadata"] == {
            "hash": "h1", "model": "x", "source": "extractor", "staging_id": row["id"],
        }

    def test_second_run_writes_nothing(self, store, seed):
        seed.staging("Todos", "One", metadata={"hash": "a"})
        seed.staging("Lessons", "Two", metadata={"hash": "b"})
        router = ExtractionRouter(store)

        router.process_batch()
        before = total_destination_rows(store)
        stats = router.process_batch()

        assert stats == RouterStats()
        assert total_destination_rows(store) == before == 2
        assert store.count("extractions", {"status": "pending"}) == 0

    def test_batch_limit_takes_oldest_first(self, store, seed):
        first = seed.staging("Todos", "first")
        seed.staging("Todos", "second")

        stats = ExtractionRouter(store).process_batch(limit=1)

        assert stats.processed == 1
        assert store.get("extractions", first["id"])["status"] == "processed"
        assert store.count("extractions", {"status": "pending"}) == 1


class TestHashDedup:

    def test_existing_hash_is_duplicate(self, store, seed):
        seed.add("bugs", title="Old", status="open", metadata={"hash": "H"})
        row = seed.staging("Bugs Open", "Same thing again", hash="H")

        stats = ExtractionRouter(store).process_batch()

        assert stats.duplicates == 1
        assert store.get("extractions", row["id"])["status"] == "duplicate"
        assert store.count("bugs") == 1

    def test_hash_in_metadata_is_used(self, store, seed):
        seed.add("bugs", title="Old", status="open", metadata={"hash": "H"})
        seed.staging("Bugs Fixed", "Again", metadata={"hash": "H"})

        assert ExtractionRouter(store).process_batch().duplicates == 1

    def test_duplicate_within_same_batch(self, store, seed):
        seed.staging("Todos", "Same", hash="H")
        seed.staging("Todos", "Same", hash="H")

        stats = ExtractionRouter(store).process_batch()

        assert (stats.processed, stats.duplicates) == (1, 1)

    def test_window_bounds_the_scan(self, store, seed):
        seed.add("todos", title="old", metadata={"hash": "H"})
        for i in range(3):
            seed.add("todos", title=f"newer {i}", metadata={"hash": f"n{i}"})

        assert check_hash_duplicate(store, "todos", "H", window=3) == DedupResult(False)
        assert check_hash_duplicate(store, "todos", "H", window=4) == DedupResult(True)

    def test_check_reports_errors_without_raising(self, failing_store):
        failing_store.fail["select"] = {"todos"}
        result = check_hash_duplicate(failing_store, "todos", "H")
        assert result.is_duplicate is False
        assert "simulated select failure" in result.error

    def test_failed_check_files_anyway(self, store, failing_store, seed):
        seed.add("todos", title="Old", metadata={"hash": "H"})
        seed.staging("Todos", "New", hash="H")
        failing_store.fail["select"] = {"todos"}

        stats = ExtractionRouter(failing_store).process_batch()

        assert stats.processed == 1
        assert store.count("todos") == 2

    def test_no_hash_no_prefix_check_by_default(self, store, seed):
        seed.add("todos", title="Add retry", status="unassigned")
        seed.staging("Todos", "Add retry")

        assert ExtractionRouter(store).process_batch().processed == 1


class TestErrors:

    def test_unknown_bucket(self, store, seed):
        row = seed.staging("Nonexistent", "something", metadata={"model": "m"})

        stats = ExtractionRouter(store).process_batch()

        assert stats.errors == 1
        staged = store.get("extractions", row["id"])
        assert staged["status"] == "error"
        meta = staged["metadata"]
        assert meta["error_stage"] == "bucket_lookup"
        assert meta["error"] == "Unknown bucket: Nonexistent"
        assert meta["error_table"] is None
        assert meta["model"] == "m"
        assert len(meta["errors"]) == 1
        assert total_destination_rows(store) == 0

    def test_insert_failure_appends_audit_entry(self, store, failing_store, seed):
        prior = {"error": "earlier", "error_stage": "dedupe", "error_table": "todos",
                 "error_at": "2026-01-01T00:00:00"}
        row = seed.staging("Todos", "Add retry", metadata={"errors": [prior], "model": "m"})
        failing_store.fail["insert"] = {"todos"}

        stats = ExtractionRouter(failing_store).process_batch()

        assert stats.errors == 1
        meta = store.get("extractions", row["id"])["metadata"]
        assert meta["errors"][0] == prior
        assert meta["errors"][1]["error_stage"] == "insert"
        assert meta["errors"][1]["error_table"] == "todos"
        assert "simulated insert failure" in meta["error"]
        assert meta["error_stage"] == "insert"
        assert meta["model"] == "m"

    def test_unexpected_exception_marks_processing_stage(self, store, seed, monkeypatch):
        row = seed.staging("Todos", "boom")
        router = ExtractionRouter(store)

        def explode(extraction, route):
            raise RuntimeError("builder exploded")

        monkeypatch.setattr(router, "build_payload", explode)
        stats = router.process_batch()

        assert stats.errors == 1
        meta = store.get("extractions", row["id"])["metadata"]
        assert meta["error_stage"] == "processing"
        assert meta["error"] == "builder exploded"

    def test_batch_continues_after_failure(self, store, seed):
        seed.staging("Nonexistent", "bad")
        seed.staging("Todos", "good")

        stats = ExtractionRouter(store).process_batch()

        assert (stats.errors, stats.processed) == (1, 1)

    def test_fetch_failure_returns_empty_stats(self, failing_store):
        failing_store.fail["select"] = {"extractions"}
        assert ExtractionRouter(failing_store).process_batch() == RouterStats()


class TestReentrancy:

    def test_busy_guard_skips(self, store, seed):
        seed.staging("Todos", "waiting")
        guard = CycleGuard("router")
        router = ExtractionRouter(store, guard=guard)
        token = guard.acquire()

        stats = router.process_batch()

        assert stats.skipped is True
        assert stats.to_dict() == {"skipped": True}
        assert store.count("extractions", {"status": "pending"}) == 1
        guard.release(token)
        assert router.process_batch().processed == 1

    def test_stale_guard_is_taken_over(self, store, seed):
        now = [0.0]
        guard = CycleGuard("router", stale_after=60, clock=lambda: now[0])
        guard.acquire()
        now[0] = 61.0
        seed.staging("Todos", "waiting")

        assert ExtractionRouter(store, guard=guard).process_batch().processed == 1

    def test_concurrent_cycles_route_each_row_once(self, store, seed):
        for i in range(10):
            seed.staging("Todos", f"item {i}")
        router = ExtractionRouter(store)
        results = []

        def run():
            results.append(router.process_batch())

        threads = [threading.Thread(target=run) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert store.count("todos") == 10
        assert sum(r.processed for r in results) == 10

    def test_row_marked_by_another_process_is_not_counted(self, store, seed):
        row = seed.staging("Todos", "claimed elsewhere", metadata={"hash": "h1"})
        racing = InterleavingStore(store, "extractions", lambda: store.update(
            "extractions", {"id": row["id"]}, {"status": "processed"},
        ))

        stats = ExtractionRouter(racing).process_batch()

        assert (stats.processed, stats.duplicates, stats.errors) == (0, 0, 0)
        assert stats.by_table == {}
        assert store.get("extractions", row["id"])["status"] == "processed"


class TestLegacyRouter:

    def test_prefix_duplicate_by_title(self, store, seed):
        seed.add("todos", title="Add retry to the uploader client", project_id="p1")
        row = seed.staging("Todos", "add retry to the uploader client", project_id="p1")

        stats = LegacyRouter(store).process_batch()

        assert stats.duplicates == 1
        assert store.get("extractions", row["id"])["status"] == "duplicate"

    def test_prefix_scoped_to_project(self, store, seed):
        seed.add("todos", title="Add retry to the uploader client", project_id="p2")
        seed.staging("Todos", "Add retry to the uploader client", project_id="p1")

        assert LegacyRouter(store).process_batch().processed == 1

    def test_hash_takes_precedence_over_prefix(self, store, seed):
        seed.add("todos", title="Add retry to the uploader client", metadata={"hash": "old"})
        seed.staging("Todos", "Add retry to the uploader client", hash="new")

        assert LegacyRouter(store).process_batch().processed == 1

    def test_garbage_rejected(self, store, seed):
        short = seed.staging("Todos", "tiny")
        noise = seed.staging("Todos", "| col | col | col |")

        stats = LegacyRouter(store).process_batch()

        assert stats.errors == 2
        for row in (short, noise):
            meta = store.get("extractions", row["id"])["metadata"]
            assert meta["error_stage"] == "garbage_filter"
        assert store.count("todos") == 0

    def test_ansi_escapes_stripped(self, store, seed):
        seed.staging("Lessons", "\x1b[32mAlways pin dependency versions\x1b[0m")

        LegacyRouter(store).process_batch()

        assert store.select("lessons")[0]["description"] == "Always pin dependency versions"

    def test_project_detected_from_content(self, store, seed):
        seed.add("clients", id="c1", name="Acme")
        seed.add("projects", id="web", name="Storefront", client_id="c1")
        seed.add("project_paths", project_id="web", path="/var/www/storefront")
        seed.staging("Bugs Open", "Checkout fails in /var/www/storefront/cart.py")

        router = LegacyRouter(store, detector=ProjectDetector(ProjectDirectory(store)))
        router.process_batch()

        bug = store.select("bugs")[0]
        assert bug["project_id"] == "web"
        assert bug["client_id"] == "c1"
        assert bug["metadata"]["detection"]["confidence"] == 1.0

    def test_prefix_check_on_content_for_journal(self, store, seed):
        seed.add("journal", content="Deployed the importer to production today", title="x")
        assert check_prefix_duplicate(
            store, "journal", {"content": "deployed the importer to production today!"},
        ) == DedupResult(False)
        assert check_prefix_duplicate(
            store, "journal", {"content": "Deployed the importer"},
        ) == DedupResult(True)

    def test_prefix_literal_wildcards(self, store, seed):
        seed.add("todos", title="Rename foo_bar")
        assert check_prefix_duplicate(store, "todos", {"title": "Rename foo%"}) == DedupResult(False)

    @pytest.mark.parametrize("text,expected", [
        ("short", True),
        ("x" * 5001, True),
        ("GET /api/items 200 in 3ms", True),
        ("Remember to rotate the keys monthly", False),
    ])
    def test_is_garbage(self, text, expected):
        assert is_garbage(text) is expected
