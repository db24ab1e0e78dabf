"""
Unit tests for RestoreOrchestrator.

Run against an in-memory SQLite store with the full CRM registry.
"""

import json

import pytest

from crm_backup.core.exceptions import ConfigError, StoreError, VersionError
from crm_backup.restore.orchestrator import (
    DEFAULT_FATAL_ERROR_THRESHOLD,
    RestoreOrchestrator,
    RestoreRun,
    RestoreState,
)
from crm_backup.snapshot.builder import SnapshotBuilder
from crm_backup.snapshot.codec import encode_snapshot
from crm_backup.snapshot.models import Snapshot
from crm_backup.store.sqlite_store import SqliteDatabase


def make_snapshot(data, version="2.0", security=True):
    manifest = {
        "version": version,
        "createdAt": "2024-05-01T12:00:00+00:00",
        "createdBy": "admin",
        "totalRecords": {t: len(rows) for t, rows in data.items()},
    }
    if security:
        manifest["security"] = {"sensitiveDataFiltered": True, "entitiesFiltered": list(data)}
    return Snapshot.from_dict({"manifest": manifest, "data": data})


def snapshot_bytes(data, **kwargs) -> bytes:
    return json.dumps(make_snapshot(data, **kwargs).to_dict()).encode("utf-8")


def store_contents(db):
    return {name: repo.fetch_all() for name, repo in db.repositories().items()}


class SpyTransactionManager:
    """Counts begin() calls and hands out the store's own transactions."""

    def __init__(self, db):
        self.db = db
        self.begun = 0

    def begin(self):
        self.begun += 1
        return self.db.begin()


class CommitFailsTransaction:
    """Transaction whose commit is refused by the store."""

    def __init__(self, inner):
        self.inner = inner

    def __getattr__(self, name):
        return getattr(self.inner, name)

    @property
    def is_active(self):
        return self.inner.is_active

    def commit(self):
        raise StoreError("Commit failed: disk I/O error")


class CommitFailsManager:

    def __init__(self, db):
        self.db = db

    def begin(self):
        return CommitFailsTransaction(self.db.begin())


class RecordingRepository:
    """Delegating repository that logs which entity type each write targets."""

    def __init__(self, inner, log):
        self.inner = inner
        self.log = log

    def __getattr__(self, name):
        return getattr(self.inner, name)

    def insert(self, tx, record):
        self.log.append(record.entity_type)
        return self.inner.insert(tx, record)


@pytest.fixture
def orchestrator(sqlite_db, registry):
    return RestoreOrchestrator(sqlite_db.repositories(), sqlite_db, registry)


# ============================================================================
# Fatal threshold
# ============================================================================

class TestFatalThreshold:

    def test_too_many_errors_rolls_back_everything(self, sqlite_db, orchestrator, make_property):
        properties = []
        for i in range(1, 101):
            prop = make_property(i, id=i)
            if i <= 60:
                del prop["title"]
            properties.append(prop)

        report = orchestrator.restore_snapshot(make_snapshot({"properties": properties}))

        assert report.success is False
        assert report.rolled_back is True
        assert report.total_imported == 0
        assert report.summary == {"properties": 0}
        assert len(report.errors) == 60
        assert report.errors[0].startswith("properties[0]: ")
        assert "title" in report.errors[0]
        assert "60" in report.abort_reason
        assert sqlite_db.repository("properties").count() == 0

    def test_errors_at_threshold_still_commit(self, sqlite_db, orchestrator, make_property):
        properties = []
        for i in range(1, 101):
            prop = make_property(i, id=i)
            if i <= DEFAULT_FATAL_ERROR_THRESHOLD:
                del prop["title"]
            properties.append(prop)

        report = orchestrator.restore_snapshot(make_snapshot({"properties": properties}))

        assert report.success is True
        assert report.rolled_back is False
        assert len(report.errors) == 50
        assert report.total_imported == 50
        assert sqlite_db.repository("properties").count() == 50

    def test_zero_threshold_aborts_on_first_error(self, sqlite_db, registry, make_property):
        orchestrator = RestoreOrchestrator(
            sqlite_db.repositories(), sqlite_db, registry, fatal_error_threshold=0
        )
        bad = make_property(2, id=2)
        del bad["city"]

        report = orchestrator.restore_snapshot(
            make_snapshot({"properties": [make_property(1, id=1), bad]})
        )

        assert report.rolled_back is True
        assert sqlite_db.repository("properties").count() == 0

    def test_rollback_leaves_store_untouched(self, sqlite_db, orchestrator, seed, make_user, make_property):
        seed(sqlite_db, "users", [make_user(1), make_user(2)])
        seed(sqlite_db, "properties", [make_property(1)])
        before = store_contents(sqlite_db)

        bad_properties = []
        for i in range(10, 70):
            prop = make_property(i, id=i)
            del prop["price"]
            bad_properties.append(prop)
        snapshot = make_snapshot({
            "users": [make_user(n, id=n) for n in range(3, 8)],
            "properties": bad_properties,
            "siteContent": [{"id": 1, "section": "hero", "content": {"title": "Welcome"}}],
        })

        report = orchestrator.restore_snapshot(snapshot)

        assert report.rolled_back is True
        assert report.summary == {"users": 0, "properties": 0, "siteContent": 0}
        assert store_contents(sqlite_db) == before

    def test_negative_threshold_rejected(self, sqlite_db, registry):
        with pytest.raises(ConfigError):
            RestoreOrchestrator(sqlite_db.repositories(), sqlite_db, registry, fatal_error_threshold=-1)


# ============================================================================
# Validation happens before the transaction
# ============================================================================

class TestRejection:

    def test_unsupported_version_opens_no_transaction(self, sqlite_db, registry, seed, make_user):
        seed(sqlite_db, "users", [make_user(1)])
        before = store_contents(sqlite_db)
        spy = SpyTransactionManager(sqlite_db)
        orchestrator = RestoreOrchestrator(sqlite_db.repositories(), spy, registry)

        with pytest.raises(VersionError):
            orchestrator.restore_bytes(
                snapshot_bytes({"users": [make_user(2, id=2)]}, version="9.9")
            )

        assert spy.begun == 0
        assert store_contents(sqlite_db) == before

    def test_valid_restore_opens_exactly_one_transaction(self, sqlite_db, registry, make_user, make_property):
        spy = SpyTransactionManager(sqlite_db)
        orchestrator = RestoreOrchestrator(sqlite_db.repositories(), spy, registry)

        orchestrator.restore_snapshot(make_snapshot({
            "users": [make_user(1, id=1)],
            "properties": [make_property(1, id=1)],
        }))

        assert spy.begun == 1

    def test_missing_repository(self, sqlite_db, registry, make_user):
        repositories = dict(sqlite_db.repositories())
        del repositories["users"]
        orchestrator = RestoreOrchestrator(repositories, sqlite_db, registry)

        with pytest.raises(ConfigError, match="users"):
            orchestrator.restore_snapshot(make_snapshot({"users": [make_user(1)]}))


# ============================================================================
# Conflict policies
# ============================================================================

class TestConflicts:

    def test_existing_users_skipped_and_credentials_regenerated(self, sqlite_db, orchestrator, seed, make_user):
        seed(sqlite_db, "users", [
            make_user(1, id=1, email="original1@example.com"),
            make_user(2, id=2, email="original2@example.com"),
        ])
        incoming = []
        for n in range(1, 6):
            user = make_user(n, id=n)
            del user["password"]
            incoming.append(user)

        report = orchestrator.restore_snapshot(make_snapshot({"users": incoming}))

        assert report.success is True
        assert report.total_imported == 3
        assert report.summary == {"users": 3}
        assert report.skipped == {"users": 2}
        assert report.warnings == [
            "users record username='user1' already exists - skipped",
            "users record username='user2' already exists - skipped",
        ]
        assert len(report.credential_resets) == 3
        assert all("password" in notice for notice in report.credential_resets)

        stored = {r.get("username"): r for r in sqlite_db.repository("users").fetch_all()}
        assert stored["user1"].get("email") == "original1@example.com"
        assert stored["user1"].get("password") == "$2b$10$hash1"
        assert stored["user3"].get("password").startswith("temp-")
        assert stored["user5"].get("id") == 5

    def test_upsert_keeps_existing_identity(self, sqlite_db, orchestrator, seed):
        seed(sqlite_db, "siteContent", [{"id": 7, "section": "hero", "content": {"title": "Old"}}])

        report = orchestrator.restore_snapshot(make_snapshot({
            "siteContent": [{"id": 1, "section": "hero", "content": {"title": "New"}}],
        }))

        assert report.summary == {"siteContent": 1}
        assert report.warnings == []
        [stored] = sqlite_db.repository("siteContent").fetch_all()
        assert stored.get("id") == 7
        assert stored.get("content") == {"title": "New"}

    def test_append_always_inserts(self, sqlite_db, orchestrator, seed):
        [customer_id] = seed(sqlite_db, "customers", [{"id": 1, "firstName": "Eva", "lastName": "Roth"}])
        seed(sqlite_db, "customerInteractions", [{"id": 1, "customerId": customer_id, "type": "call"}])

        report = orchestrator.restore_snapshot(make_snapshot({
            "customerInteractions": [{"id": 1, "customerId": customer_id, "type": "call"}],
        }))

        assert report.summary == {"customerInteractions": 1}
        interactions = sqlite_db.repository("customerInteractions").fetch_all()
        assert [r.get("id") for r in interactions] == [1, 2]

    def test_skip_by_id(self, sqlite_db, orchestrator, seed, make_property):
        seed(sqlite_db, "properties", [make_property(1, id=1)])

        report = orchestrator.restore_snapshot(make_snapshot({
            "properties": [make_property(99, id=1), make_property(2, id=2)],
        }))

        assert report.summary == {"properties": 1}
        assert report.warnings == ["properties record id=1 already exists - skipped"]
        stored = sqlite_db.repository("properties").fetch_all()
        assert stored[0].get("title") == "Apartment 1"

    def test_unique_column_collision_skipped(self, sqlite_db, orchestrator, seed, make_property):
        seed(sqlite_db, "properties", [make_property(1, id=1)])
        seed(sqlite_db, "customers", [{"id": 1, "firstName": "Eva", "lastName": "Roth",
                                       "email": "eva@example.com"}])

        report = orchestrator.restore_snapshot(make_snapshot({
            "properties": [make_property(1, id=5)],
            "customers": [{"id": 2, "firstName": "Eva", "lastName": "Roth", "email": "eva@example.com"}],
        }))

        assert report.success is True
        assert report.errors == []
        assert report.skipped == {"properties": 1, "customers": 1}
        assert report.warnings == [
            "properties record id=5 already exists - skipped",
            "customers record id=2 already exists - skipped",
        ]
        assert sqlite_db.repository("properties").count() == 1
        assert sqlite_db.repository("customers").count() == 1

    def test_same_calendar_events_restored_twice(self, sqlite_db, orchestrator):
        event = {"id": 1, "externalId": "g-1", "title": "Viewing", "status": "confirmed",
                 "startTime": "2024-05-02T10:00:00+00:00", "endTime": "2024-05-02T11:00:00+00:00"}
        snapshot = make_snapshot({"calendarEvents": [event]})

        first = orchestrator.restore_snapshot(snapshot)
        second = orchestrator.restore_snapshot(snapshot)

        assert first.summary == {"calendarEvents": 1}
        assert second.errors == []
        assert second.skipped == {"calendarEvents": 1}
        assert second.warnings == [
            "calendarEvents record calendarConnectionId=None, externalId='g-1' already exists - skipped"
        ]
        assert sqlite_db.repository("calendarEvents").count() == 1


# ============================================================================
# Ordering, errors and warnings
# ============================================================================

class TestImport:

    def test_parents_imported_before_children(self, sqlite_db, registry, make_user, make_property):
        log = []
        repositories = {
            name: RecordingRepository(repo, log) for name, repo in sqlite_db.repositories().items()
        }
        orchestrator = RestoreOrchestrator(repositories, sqlite_db, registry)

        # Children listed first in the document
        report = orchestrator.restore_snapshot(make_snapshot({
            "leads": [{"id": 1, "customerId": 1, "propertyId": 1, "assignedTo": 1}],
            "customerSegmentMemberships": [{"id": 1, "customerId": 1, "segmentId": 1}],
            "customerSegments": [{"id": 1, "name": "VIP"}],
            "customers": [{"id": 1, "firstName": "Eva", "lastName": "Roth"}],
            "properties": [make_property(1, id=1)],
            "users": [make_user(1, id=1)],
        }))

        assert report.errors == []
        assert report.total_imported == 6
        for child, parents in {
            "leads": ["customers", "properties", "users"],
            "customerSegmentMemberships": ["customers", "customerSegments"],
        }.items():
            for parent in parents:
                assert log.index(parent) < log.index(child)

    def test_foreign_key_violation_is_a_record_error(self, orchestrator):
        report = orchestrator.restore_snapshot(make_snapshot({
            "leads": [{"id": 1, "customerId": 999}],
        }))

        assert report.success is True
        assert report.total_imported == 0
        assert len(report.errors) == 1
        assert report.errors[0].startswith("leads[0]: ")

    def test_unknown_entity_type_warned(self, sqlite_db, orchestrator, make_user):
        report = orchestrator.restore_snapshot(make_snapshot({
            "users": [make_user(1, id=1)],
            "widgets": [{"id": 1}, {"id": 2}],
        }))

        assert report.summary == {"users": 1}
        assert "Unknown entity type 'widgets' ignored (2 records)" in report.warnings

    def test_unfiltered_backup_warned(self, orchestrator, make_user):
        report = orchestrator.restore_snapshot(
            make_snapshot({"users": [make_user(1, id=1)]}, security=False)
        )

        assert report.success is True
        assert any("sensitive data" in w for w in report.warnings)

    def test_commit_failure_rolls_back(self, sqlite_db, registry, make_user):
        orchestrator = RestoreOrchestrator(
            sqlite_db.repositories(), CommitFailsManager(sqlite_db), registry
        )

        with pytest.raises(StoreError, match="Commit failed"):
            orchestrator.restore_snapshot(make_snapshot({"users": [make_user(1, id=1)]}))

        assert sqlite_db.repository("users").count() == 0

    def test_report_dict(self, orchestrator, make_user):
        report = orchestrator.restore_snapshot(make_snapshot({"users": [make_user(1, id=1)]}))
        result = report.to_dict()

        assert result["success"] is True
        assert result["totalImported"] == 1
        assert result["summary"] == {"users": 1}
        assert result["backupInfo"] == {
            "version": "2.0", "createdAt": "2024-05-01T12:00:00+00:00", "createdBy": "admin",
        }
        assert "abortReason" not in result
        assert "COMMITTED" in report.format_summary()


# ============================================================================
# Round trip
# ============================================================================

def test_backup_restore_round_trip(sqlite_db, registry, seed, make_user, make_property):
    seed(sqlite_db, "users", [make_user(1), make_user(2)])
    seed(sqlite_db, "properties", [make_property(1, metadata={"floors": 2}), make_property(2)])
    [customer_id] = seed(sqlite_db, "customers", [{
        "firstName": "Eva", "lastName": "Roth", "email": "eva@example.com",
        "tags": ["vip"],
    }])
    seed(sqlite_db, "leads", [{"customerId": customer_id, "propertyId": 1, "value": 450000.0}])
    seed(sqlite_db, "siteContent", [{"section": "hero", "content": {"title": "Welcome"}}])
    seed(sqlite_db, "customerInteractions", [{"customerId": customer_id, "type": "email"}])

    snapshot = SnapshotBuilder(sqlite_db.repositories(), registry, created_by="admin").build()
    payload = encode_snapshot(snapshot, encryption_key=b"round-trip-key")

    from crm_backup.restore.validation import SnapshotValidator

    with SqliteDatabase(":memory:") as target:
        orchestrator = RestoreOrchestrator(
            target.repositories(), target, registry,
            validator=SnapshotValidator(encryption_key=b"round-trip-key"),
        )
        first = orchestrator.restore_bytes(payload)

        assert first.success is True
        assert first.errors == []
        assert first.total_imported == 8
        assert len(first.credential_resets) == 2
        assert first.backup_info["createdBy"] == "admin"
        restored = target.repository("properties").fetch_all()
        assert restored[0].get("metadata") == {"floors": 2}
        assert restored[0].get("hasBalcony") is True
        [lead] = target.repository("leads").fetch_all()
        assert lead.get("value") == 450000.0

        second = orchestrator.restore_bytes(payload)

        assert second.success is True
        assert second.summary["users"] == 0
        assert second.summary["siteContent"] == 1
        assert second.summary["customerInteractions"] == 1
        assert target.repository("customerInteractions").count() == 2
        assert target.repository("users").count() == 2


# ============================================================================
# State machine
# ============================================================================

class TestRestoreRun:

    def test_happy_path_transitions(self):
        run = RestoreRun()
        for state in (RestoreState.VALIDATING, RestoreState.IMPORTING,
                      RestoreState.COMMITTING, RestoreState.DONE):
            run.transition(state)
        assert run.state == RestoreState.DONE

    def test_invalid_transition(self):
        run = RestoreRun()
        with pytest.raises(RuntimeError):
            run.transition(RestoreState.COMMITTING)

    def test_rolled_back_report_zeroes_counts(self):
        run = RestoreRun(imported={"users": 3}, skipped={"users": 1})
        for state in (RestoreState.VALIDATING, RestoreState.IMPORTING,
                      RestoreState.ABORTING, RestoreState.ROLLED_BACK):
            run.transition(state)
        report = run.to_report()
        assert report.rolled_back is True
        assert report.summary == {"users": 0}
        assert report.total_imported == 0
