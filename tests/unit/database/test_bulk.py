"""Unit tests — BulkOperationEngine.

Coverage:
  - Batching and progress accounting
  - Abort-and-rollback vs continue-on-error (savepoints)
  - Related-data inserts with inferred and explicit key mappings
  - Foreign-key pre-checks
  - Cascade delete of direct children
  - Progress snapshots via queue and polling
  - Generated statements still pass scope validation
"""

from __future__ import annotations

import queue

import pytest

from sqlite_gateway.database.bulk import (
    NO_ROWS_AFFECTED,
    BulkOperationEngine,
    BulkOptions,
    BulkProgress,
    ForeignKeyMapping,
    RelatedTable,
    UpdateEntry,
)
from sqlite_gateway.database.executor import Executor
from sqlite_gateway.database.pool import ConnectionPool
from sqlite_gateway.exceptions import BulkOperationAborted, QueryValidationError
from sqlite_gateway.security.models import PermissionScope as S
from sqlite_gateway.security.validator import QueryValidator

pytestmark = pytest.mark.unit

WRITER = frozenset({S.READ, S.LIST, S.CREATE, S.UPDATE, S.DELETE})


@pytest.fixture
def bulk(pool: ConnectionPool, validator: QueryValidator) -> BulkOperationEngine:
    return BulkOperationEngine(pool, validator)


def _rows(executor: Executor, sql: str, params=()) -> list[dict]:
    return executor.execute(sql, list(params)).rows


class TestOptions:
    def test_defaults(self) -> None:
        options = BulkOptions()
        assert options.batch_size == 1000
        assert not options.continue_on_error
        assert not options.validate_foreign_keys
        assert not options.insert_related_data
        assert not options.cascade_delete

    def test_batch_size_must_be_positive(self) -> None:
        with pytest.raises(QueryValidationError):
            BulkOptions(batch_size=0)


class TestProgress:
    def test_estimate(self) -> None:
        progress = BulkProgress(total_records=10, total_batches=1, started_at=100.0)
        for _ in range(4):
            progress.record_success()
        progress.update_estimate(now=102.0)
        assert progress.estimated_time_remaining_ms == 3000.0

    def test_no_estimate_before_first_record(self) -> None:
        progress = BulkProgress(total_records=10, total_batches=1, started_at=100.0)
        progress.update_estimate(now=105.0)
        assert progress.estimated_time_remaining_ms is None

    def test_snapshot_is_independent(self) -> None:
        progress = BulkProgress(total_records=2, total_batches=1)
        snapshot = progress.snapshot()
        progress.record_failure(0, {"a": 1}, "boom")
        assert snapshot.failed_records == 0
        assert snapshot.errors == []


class TestBulkInsert:
    def test_batches(self, schema: Executor, bulk: BulkOperationEngine) -> None:
        records = [{"name": f"user{i}"} for i in range(5)]
        result = bulk.bulk_insert("users", records, WRITER, options=BulkOptions(batch_size=2))

        assert result.success
        assert result.progress.total_batches == 3
        assert result.progress.current_batch == 3
        assert result.progress.processed_records == 5
        assert result.progress.successful_records == 5
        assert result.progress.estimated_time_remaining_ms == 0.0
        assert result.summary == {
            "total_records": 5,
            "successful_records": 5,
            "failed_records": 0,
            "affected_tables": ["users"],
            "related_records_inserted": 0,
        }
        assert _rows(schema, "SELECT count(*) AS n FROM users") == [{"n": 5}]

    def test_empty_job(self, schema: Executor, bulk: BulkOperationEngine) -> None:
        result = bulk.bulk_insert("users", [], WRITER)
        assert result.success
        assert result.progress.total_records == 0
        assert result.progress.total_batches == 0

    def test_abort_rolls_back_whole_job(self, schema: Executor, bulk: BulkOperationEngine) -> None:
        records = [{"name": "A"}, {"name": None}, {"name": "C"}]
        with pytest.raises(BulkOperationAborted) as exc_info:
            bulk.bulk_insert("users", records, WRITER)

        progress = exc_info.value.progress
        assert progress.processed_records == 2
        assert progress.successful_records == 1
        assert progress.failed_records == 1
        assert progress.errors[0]["record_index"] == 1
        assert progress.errors[0]["error"] == "NOT NULL constraint failed: users.name"
        assert exc_info.value.context["progress"]["failed_records"] == 1
        assert _rows(schema, "SELECT count(*) AS n FROM users") == [{"n": 0}]

    def test_continue_on_error_keeps_good_records(
        self, schema: Executor, bulk: BulkOperationEngine
    ) -> None:
        records = [{"name": "A"}, {"name": None}, {"name": "C"}]
        result = bulk.bulk_insert(
            "users", records, WRITER, options=BulkOptions(continue_on_error=True)
        )

        assert result.success
        assert result.progress.successful_records == 2
        assert result.progress.failed_records == 1
        assert result.progress.processed_records == 3
        assert result.progress.errors[0]["record"] == {"name": None}
        names = _rows(schema, "SELECT name FROM users ORDER BY id")
        assert names == [{"name": "A"}, {"name": "C"}]

    def test_scopes_checked_on_generated_statements(
        self, schema: Executor, bulk: BulkOperationEngine
    ) -> None:
        with pytest.raises(BulkOperationAborted) as exc_info:
            bulk.bulk_insert("users", [{"name": "A"}], {S.READ, S.LIST})
        assert "Insufficient permissions. Missing: create" in exc_info.value.message
        assert _rows(schema, "SELECT count(*) AS n FROM users") == [{"n": 0}]


class TestRelatedData:
    def test_inferred_mapping_from_declared_foreign_keys(
        self, schema: Executor, bulk: BulkOperationEngine
    ) -> None:
        result = bulk.bulk_insert(
            "posts",
            [{"title": "First", "user_id": 1}],
            WRITER,
            related_data={"users": RelatedTable(records=[{"id": 1, "name": "John"}])},
            options=BulkOptions(insert_related_data=True),
        )

        assert result.success
        assert result.summary["related_records_inserted"] == 1
        assert result.summary["affected_tables"] == ["posts", "users"]
        john = _rows(schema, "SELECT id FROM users WHERE name = ?", ["John"])[0]["id"]
        assert _rows(schema, "SELECT user_id FROM posts") == [{"user_id": john}]

    def test_explicit_mapping_remaps_to_generated_ids(
        self, seeded: Executor, bulk: BulkOperationEngine
    ) -> None:
        related = RelatedTable(
            records=[{"name": "Carol", "external_id": 7}, {"name": "Dan", "external_id": 8}],
            foreign_key_mappings={"user_id": ForeignKeyMapping("users", "external_id")},
        )
        result = bulk.bulk_insert(
            "posts",
            [{"title": "By Carol", "user_id": 7}, {"title": "By Dan", "user_id": 8}],
            WRITER,
            related_data={"users": related},
            options=BulkOptions(insert_related_data=True),
        )

        assert result.success
        rows = _rows(
            seeded,
            "SELECT p.title, u.name FROM posts p JOIN users u ON u.id = p.user_id "
            "WHERE p.title LIKE ? ORDER BY p.id",
            ["By %"],
        )
        assert rows == [{"title": "By Carol", "name": "Carol"}, {"title": "By Dan", "name": "Dan"}]

    def test_related_data_ignored_unless_enabled(
        self, schema: Executor, bulk: BulkOperationEngine
    ) -> None:
        result = bulk.bulk_insert(
            "users",
            [{"name": "Main"}],
            WRITER,
            related_data={"comments": RelatedTable(records=[{"body": "x"}])},
        )
        assert result.summary["related_records_inserted"] == 0
        assert _rows(schema, "SELECT count(*) AS n FROM comments") == [{"n": 0}]

    def test_related_failure_not_counted_as_record(
        self, schema: Executor, bulk: BulkOperationEngine
    ) -> None:
        result = bulk.bulk_insert(
            "posts",
            [{"title": "Orphan"}],
            WRITER,
            related_data={"users": RelatedTable(records=[{"name": None}])},
            options=BulkOptions(insert_related_data=True, continue_on_error=True),
        )
        assert result.progress.failed_records == 0
        assert result.progress.successful_records == 1
        assert result.progress.errors[0]["record_index"] == -1
        assert result.summary["related_records_inserted"] == 0


class TestForeignKeyValidation:
    def test_missing_parent_reported(self, seeded: Executor, bulk: BulkOperationEngine) -> None:
        with pytest.raises(BulkOperationAborted) as exc_info:
            bulk.bulk_insert(
                "posts",
                [{"title": "x", "user_id": 999}],
                WRITER,
                options=BulkOptions(validate_foreign_keys=True),
            )
        assert exc_info.value.message.startswith("Foreign key violation")

    def test_existing_parent_passes(self, seeded: Executor, bulk: BulkOperationEngine) -> None:
        result = bulk.bulk_insert(
            "posts",
            [{"title": "x", "user_id": 2}, {"title": "y", "user_id": None}],
            WRITER,
            options=BulkOptions(validate_foreign_keys=True),
        )
        assert result.progress.successful_records == 2


class TestBulkUpdate:
    def test_updates_applied(self, seeded: Executor, bulk: BulkOperationEngine) -> None:
        result = bulk.bulk_update(
            "users",
            [
                UpdateEntry(data={"age": 31}, where={"id": 1}),
                {"data": {"city": "Chicago"}, "where": {"name": "Bob"}},
            ],
            WRITER,
        )
        assert result.success
        assert "related_records_inserted" not in result.summary
        rows = _rows(seeded, "SELECT age, city FROM users ORDER BY id")
        assert rows == [{"age": 31, "city": "New York"}, {"age": 22, "city": "Chicago"}]

    def test_missing_row_aborts_and_rolls_back(
        self, seeded: Executor, bulk: BulkOperationEngine
    ) -> None:
        with pytest.raises(BulkOperationAborted) as exc_info:
            bulk.bulk_update(
                "users",
                [
                    UpdateEntry(data={"age": 31}, where={"id": 1}),
                    UpdateEntry(data={"age": 40}, where={"id": 999}),
                ],
                WRITER,
            )
        assert exc_info.value.message == NO_ROWS_AFFECTED
        assert exc_info.value.progress.successful_records == 1
        assert exc_info.value.progress.errors[0]["record"] == {
            "data": {"age": 40},
            "where": {"id": 999},
        }
        assert _rows(seeded, "SELECT age FROM users WHERE id = 1") == [{"age": 30}]

    def test_missing_row_with_continue(self, seeded: Executor, bulk: BulkOperationEngine) -> None:
        result = bulk.bulk_update(
            "users",
            [
                UpdateEntry(data={"age": 31}, where={"id": 1}),
                UpdateEntry(data={"age": 40}, where={"id": 999}),
            ],
            WRITER,
            options=BulkOptions(continue_on_error=True),
        )
        assert result.success
        assert result.progress.failed_records == 1
        assert _rows(seeded, "SELECT age FROM users WHERE id = 1") == [{"age": 31}]


class TestBulkDelete:
    def test_cascade_removes_children(self, seeded: Executor, bulk: BulkOperationEngine) -> None:
        result = bulk.bulk_delete(
            "users", [{"id": 1}], WRITER, options=BulkOptions(cascade_delete=True)
        )
        assert result.success
        assert result.summary["affected_tables"] == ["comments", "posts", "users"]
        assert _rows(seeded, "SELECT id FROM users") == [{"id": 2}]
        assert _rows(seeded, "SELECT id FROM posts") == [{"id": 3}]
        assert _rows(seeded, "SELECT id FROM comments") == [{"id": 2}]

    def test_discovered_children_listed_without_matches(
        self, seeded: Executor, bulk: BulkOperationEngine
    ) -> None:
        seeded.execute("INSERT INTO users (id, name) VALUES (?, ?)", [3, "Loner"])
        result = bulk.bulk_delete(
            "users", [{"id": 3}], WRITER, options=BulkOptions(cascade_delete=True)
        )
        assert result.success
        assert result.summary["affected_tables"] == ["comments", "posts", "users"]
        assert _rows(seeded, "SELECT count(*) AS n FROM posts") == [{"n": 3}]

    def test_without_cascade_engine_refuses(
        self, seeded: Executor, bulk: BulkOperationEngine
    ) -> None:
        with pytest.raises(BulkOperationAborted, match="FOREIGN KEY constraint failed"):
            bulk.bulk_delete("users", [{"id": 1}], WRITER)
        assert _rows(seeded, "SELECT count(*) AS n FROM posts") == [{"n": 3}]

    def test_missing_row_fails(self, seeded: Executor, bulk: BulkOperationEngine) -> None:
        result = bulk.bulk_delete(
            "comments",
            [{"id": 1}, {"id": 42}],
            WRITER,
            options=BulkOptions(continue_on_error=True),
        )
        assert result.progress.successful_records == 1
        assert result.progress.errors[0]["error"] == NO_ROWS_AFFECTED

    def test_cascade_needs_delete_scope_on_children(
        self, seeded: Executor, bulk: BulkOperationEngine
    ) -> None:
        with pytest.raises(BulkOperationAborted, match="Missing: delete"):
            bulk.bulk_delete(
                "users",
                [{"id": 1}],
                {S.READ, S.LIST},
                options=BulkOptions(cascade_delete=True),
            )
        assert _rows(seeded, "SELECT count(*) AS n FROM posts") == [{"n": 3}]


class TestProgressPublishing:
    def test_queue_receives_snapshots(self, schema: Executor, bulk: BulkOperationEngine) -> None:
        progress_queue: queue.Queue = queue.Queue()
        result = bulk.bulk_insert(
            "users",
            [{"name": "A"}, {"name": "B"}, {"name": "C"}],
            WRITER,
            job_id="job-1",
            progress_queue=progress_queue,
        )

        snapshots = []
        while not progress_queue.empty():
            snapshots.append(progress_queue.get_nowait())
        processed = [s.processed_records for s in snapshots]
        assert processed[0] == 0
        assert processed[-1] == 3
        assert processed == sorted(processed)
        assert len({id(s) for s in snapshots}) == len(snapshots)
        assert result.job_id == "job-1"

    def test_full_queue_does_not_block(self, schema: Executor, bulk: BulkOperationEngine) -> None:
        result = bulk.bulk_insert(
            "users", [{"name": "A"}, {"name": "B"}], WRITER, progress_queue=queue.Queue(maxsize=1)
        )
        assert result.success

    def test_get_progress(self, schema: Executor, bulk: BulkOperationEngine) -> None:
        result = bulk.bulk_insert("users", [{"name": "A"}], WRITER)
        polled = bulk.get_progress(result.job_id)
        assert polled is not None
        assert polled.processed_records == 1
        assert bulk.get_progress("unknown") is None

    def test_result_dict(self, schema: Executor, bulk: BulkOperationEngine) -> None:
        data = bulk.bulk_insert("users", [{"name": "A"}], WRITER).to_dict()
        assert set(data) == {"success", "job_id", "progress", "execution_time_ms", "summary"}
        assert data["progress"]["started_at"].endswith("+00:00")
