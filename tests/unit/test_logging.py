"""
Unit tests for correlation-aware logging.
"""

import json
import logging
import threading

from crm_backup.core.logging import (
    CorrelationContext,
    CorrelationFilter,
    HumanReadableFormatter,
    StructuredFormatter,
    configure_logging,
)


def make_record(message="Importing", **fields):
    record = logging.LogRecord("crm_backup.test", logging.INFO, __file__, 1, message, None, None)
    for name, value in fields.items():
        setattr(record, name, value)
    return record


def test_contexts_nest_and_unwind():
    assert CorrelationContext.get_current() == {}
    with CorrelationContext(operation="restore", run_id="restore-1"):
        with CorrelationContext(entity_type="users"):
            assert CorrelationContext.get_current() == {
                "operation": "restore", "run_id": "restore-1", "entity_type": "users",
            }
        assert CorrelationContext.get_current() == {"operation": "restore", "run_id": "restore-1"}
    assert CorrelationContext.get_current() == {}


def test_contexts_are_not_shared_across_threads():
    seen = {}
    entered = threading.Event()
    release = threading.Event()

    def build():
        with CorrelationContext(operation="backup", run_id="backup-2"):
            entered.set()
            release.wait(5)
            seen["worker"] = CorrelationContext.get_current()

    with CorrelationContext(operation="restore", run_id="restore-1"):
        worker = threading.Thread(target=build)
        worker.start()
        entered.wait(5)
        seen["main"] = CorrelationContext.get_current()
        release.set()
        worker.join(5)

    assert seen["main"] == {"operation": "restore", "run_id": "restore-1"}
    assert seen["worker"] == {"operation": "backup", "run_id": "backup-2"}


def test_filter_tags_records():
    record = make_record()
    with CorrelationContext(operation="backup", run_id="backup-1"):
        assert CorrelationFilter().filter(record)
    assert record.run_id == "backup-1"
    assert record.operation == "backup"


def test_filter_keeps_explicit_fields():
    record = make_record(entity_type="leads")
    with CorrelationContext(entity_type="users"):
        CorrelationFilter().filter(record)
    assert record.entity_type == "leads"


def test_structured_formatter():
    record = make_record(run_id="restore-1", entity_type="users")
    entry = json.loads(StructuredFormatter(include_timestamp=False).format(record))
    assert entry == {
        "level": "INFO",
        "logger": "crm_backup.test",
        "message": "Importing",
        "run_id": "restore-1",
        "entity_type": "users",
    }


def test_human_readable_formatter():
    formatter = HumanReadableFormatter(include_timestamp=False)
    assert formatter.format(make_record()) == "[INFO] crm_backup.test - Importing"
    assert formatter.format(make_record(run_id="r-1")).endswith("Importing [run_id=r-1]")


def test_configure_logging_adds_one_handler(quiet_package_logger):
    configure_logging(level=logging.DEBUG)
    package_logger = configure_logging(level=logging.WARNING)
    assert len(package_logger.handlers) == 1
    assert package_logger.level == logging.WARNING
