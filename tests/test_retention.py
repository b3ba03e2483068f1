"""Tests for storage retention and the purge approval gate."""

from datetime import datetime, timezone

import pytest

from shelf.errors import PurgeError, StoreError
from shelf.retention import RetentionManager

from conftest import InterleavingStore, ago

NOW = datetime(2026, 6, 1, tzinfo=timezone.utc)


@pytest.fixture
def manager(store):
    return RetentionManager(store, clock=lambda: NOW)


def add_aged(seed, table, days, **fields):
    return seed.add(table, created_at=ago(days=days, now=NOW), **fields)


@pytest.fixture
def stale_sessions(seed):
    """Three sessions past the 30 day window and one recent one."""
    old = [add_aged(seed, "sessions", 40 + i, status="archived") for i in range(3)]
    add_aged(seed, "sessions", 2, status="active")
    return old


class TestScan:

    def test_counts_total_and_stale(self, manager, stale_sessions, seed):
        add_aged(seed, "schemas", 900, name="users")

        report = manager.scan()

        sessions = report.tables["sessions"]
        assert (sessions.total, sessions.stale, sessions.retention_days) == (4, 3, 30)
        assert report.tables["schemas"].stale == 0
        assert report.tables["schemas"].retention_days is None
        assert report.total_rows == 5
        assert report.total_stale == 3
        assert report.recommendations == [{
            "table": "sessions",
            "action": "flag_for_purge",
            "count": 3,
            "reason": "3 records older than 30 days",
            "requires_approval": True,
        }]

    def test_scan_never_writes(self, store, manager, stale_sessions):
        manager.scan()
        assert store.count("sessions") == 4
        assert store.count("purge_requests") == 0

    def test_exempt_tables_stay_exempt(self, store):
        manager = RetentionManager(store, {"schemas": 10, "sessions": 7})
        assert manager.retention == {"schemas": None, "sessions": 7}

    def test_scan_reports_pending(self, manager, stale_sessions):
        manager.flag_for_purge(["sessions"])
        assert manager.scan().flagged == 1


class TestFlag:

    def test_flag_captures_stale_ids(self, store, manager, stale_sessions):
        flagged = manager.flag_for_purge(["sessions"], reason="cleanup")

        assert len(flagged) == 1
        assert flagged[0]["table"] == "sessions"
        assert flagged[0]["count"] == 3
        assert flagged[0]["status"] == "pending_approval"
        request = store.get("purge_requests", flagged[0]["request_id"])
        assert sorted(request["record_ids"]) == sorted(s["id"] for s in stale_sessions)
        assert request["status"] == "pending"
        assert request["reason"] == "cleanup"
        assert request["flagged_by"] == "shelf"
        assert request["cutoff_date"] == "2026-05-02T00:00:00"
        assert store.count("sessions") == 4

    def test_default_reason(self, store, manager, stale_sessions):
        flagged = manager.flag_for_purge(["sessions"])
        request = store.get("purge_requests", flagged[0]["request_id"])
        assert request["reason"] == "Records older than 30 days"

    def test_exempt_and_empty_tables_skipped(self, manager, seed):
        add_aged(seed, "schemas", 900, name="users")
        add_aged(seed, "knowledge", 5, title="fresh")
        assert manager.flag_for_purge(["schemas", "knowledge"]) == []

    def test_disabled_table_is_not_flagged(self, store, seed):
        manager = RetentionManager(store, {"todos": None}, clock=lambda: NOW)
        add_aged(seed, "todos", 40, title="old")

        assert manager.scan().tables["todos"].stale == 0
        assert manager.flag_for_purge(["todos"]) == []
        assert store.count("purge_requests") == 0

    def test_unmapped_table_uses_fallback_window(self, store, seed):
        manager = RetentionManager(store, {"todos": None}, clock=lambda: NOW)
        add_aged(seed, "messages", 40, body="old")
        add_aged(seed, "messages", 20, body="recent")

        flagged = manager.flag_for_purge(["messages"])

        assert [f["count"] for f in flagged] == [1]

    def test_id_capture_is_capped(self, store, manager, stale_sessions, monkeypatch):
        monkeypatch.setattr("shelf.retention.MAX_FLAGGED_IDS", 2)

        flagged = manager.flag_for_purge(["sessions"])

        request = store.get("purge_requests", flagged[0]["request_id"])
        assert len(request["record_ids"]) == 2
        assert request["record_count"] == 3

    def test_pending_filtered_by_project(self, manager, stale_sessions):
        manager.flag_for_purge(["sessions"], project_id="p1")
        assert len(manager.pending()) == 1
        assert len(manager.pending("p1")) == 1
        assert manager.pending("p2") == []


class TestReview:

    def _flag(self, manager):
        return manager.flag_for_purge(["sessions"])[0]["request_id"]

    def test_approve_requires_dev_id(self, store, manager, stale_sessions):
        request_id = self._flag(manager)

        with pytest.raises(PurgeError, match="dev_id is required - must know who is approving"):
            manager.review(request_id, "")

        assert store.get("purge_requests", request_id)["status"] == "pending"
        assert store.count("sessions") == 4

    def test_request_id_required(self, manager):
        with pytest.raises(PurgeError, match="request_id is required"):
            manager.review("", "dev1")

    def test_unknown_request(self, manager):
        with pytest.raises(PurgeError, match="Purge request not found"):
            manager.review("nope", "dev1")

    def test_approve_deletes_exactly_captured_ids(self, store, manager, stale_sessions, seed):
        request_id = self._flag(manager)
        late = add_aged(seed, "sessions", 60, status="archived")

        result = manager.review(request_id, "dev1")

        assert result == {
            "message": "Purge approved and executed",
            "request_id": request_id,
            "table": "sessions",
            "deleted": 3,
            "approved_by": "dev1",
        }
        remaining = {row["id"] for row in store.select("sessions")}
        assert late["id"] in remaining
        assert not remaining & {s["id"] for s in stale_sessions}
        request = store.get("purge_requests", request_id)
        assert request["status"] == "approved"
        assert request["reviewed_by"] == "dev1"
        assert request["executed_at"] == "2026-06-01T00:00:00"

    def test_second_approval_refused(self, store, manager, stale_sessions):
        request_id = self._flag(manager)
        manager.review(request_id, "dev1")

        with pytest.raises(PurgeError, match="Request already approved"):
            manager.review(request_id, "dev2")

        assert store.get("purge_requests", request_id)["reviewed_by"] == "dev1"

    def test_reject_deletes_nothing(self, store, manager, stale_sessions):
        request_id = self._flag(manager)

        result = manager.review(request_id, "dev1", approve=False)

        assert result == {"message": "Purge request rejected", "request_id": request_id}
        assert store.count("sessions") == 4
        assert store.get("purge_requests", request_id)["status"] == "rejected"
        with pytest.raises(PurgeError, match="Request already rejected"):
            manager.review(request_id, "dev1")

    def test_history(self, manager, stale_sessions, seed):
        add_aged(seed, "knowledge", 120, title="stale")
        flagged = manager.flag_for_purge(["sessions", "knowledge"])
        manager.review(flagged[0]["request_id"], "dev1")
        manager.review(flagged[1]["request_id"], "dev1", approve=False)

        assert {r.status for r in manager.history()} == {"approved", "rejected"}
        assert manager.pending() == []


class TestConcurrentReview:

    def _flag(self, store):
        return RetentionManager(store, clock=lambda: NOW).flag_for_purge(["sessions"])[0]["request_id"]

    def test_approval_losing_to_rejection_deletes_nothing(self, store, stale_sessions):
        request_id = self._flag(store)
        other = RetentionManager(store, clock=lambda: NOW)
        racing = InterleavingStore(
            store, "purge_requests", lambda: other.review(request_id, "bob", approve=False),
        )

        with pytest.raises(PurgeError, match="Request already rejected"):
            RetentionManager(racing, clock=lambda: NOW).review(request_id, "alice")

        assert store.count("sessions") == 4
        request = store.get("purge_requests", request_id)
        assert request["status"] == "rejected"
        assert request["reviewed_by"] == "bob"
        assert ("delete", "sessions") not in racing.calls

    def test_rejection_losing_to_approval_is_refused(self, store, stale_sessions):
        request_id = self._flag(store)
        other = RetentionManager(store, clock=lambda: NOW)
        racing = InterleavingStore(
            store, "purge_requests", lambda: other.review(request_id, "alice"),
        )

        with pytest.raises(PurgeError, match="Request already approved"):
            RetentionManager(racing, clock=lambda: NOW).review(request_id, "bob", approve=False)

        request = store.get("purge_requests", request_id)
        assert request["status"] == "approved"
        assert request["reviewed_by"] == "alice"
        assert store.count("sessions") == 1

    def test_failed_delete_returns_request_to_pending(self, store, failing_store, stale_sessions):
        request_id = self._flag(store)
        failing_store.fail["delete"] = {"sessions"}

        with pytest.raises(StoreError):
            RetentionManager(failing_store, clock=lambda: NOW).review(request_id, "alice")

        request = store.get("purge_requests", request_id)
        assert request["status"] == "pending"
        assert request["reviewed_by"] is None
        assert store.count("sessions") == 4


class TestBulkReview:

    def test_mixed_outcomes(self, store, manager, stale_sessions, seed):
        add_aged(seed, "knowledge", 120, title="stale")
        ids = [f["request_id"] for f in manager.flag_for_purge(["sessions", "knowledge"])]

        results = manager.bulk_review([*ids, "missing"], "dev1")

        assert [r["status"] for r in results] == ["approved", "approved", "skipped"]
        assert [r.get("deleted") for r in results[:2]] == [3, 1]
        assert results[2]["reason"] == "Purge request not found"

    def test_store_error_does_not_stop_batch(self, store, failing_store, seed):
        add_aged(seed, "sessions", 40)
        add_aged(seed, "knowledge", 120, title="stale")
        manager = RetentionManager(failing_store, clock=lambda: NOW)
        ids = [f["request_id"] for f in manager.flag_for_purge(["sessions", "knowledge"])]
        failing_store.fail["delete"] = {"sessions"}

        results = manager.bulk_review(ids, "dev1")

        assert [r["status"] for r in results] == ["error", "approved"]
        assert store.get("purge_requests", ids[0])["status"] == "pending"

    def test_bulk_reject(self, store, manager, stale_sessions):
        ids = [f["request_id"] for f in manager.flag_for_purge(["sessions"])]
        assert manager.bulk_review(ids, "dev1", approve=False) == [
            {"request_id": ids[0], "status": "rejected"},
        ]

    def test_requires_ids_and_dev(self, manager):
        with pytest.raises(PurgeError, match="request_ids are required"):
            manager.bulk_review([], "dev1")
        with pytest.raises(PurgeError, match="dev_id is required"):
            manager.bulk_review(["x"], "")


def test_oldest(manager, stale_sessions):
    rows = manager.oldest("sessions", limit=2)
    assert [r["id"] for r in rows] == [stale_sessions[2]["id"], stale_sessions[1]["id"]]
    assert set(rows[0]) == {"id", "created_at"}
