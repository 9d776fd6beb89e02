"""Unit tests for the shared runtime layer: context loading, transactions and audit."""

from __future__ import annotations

import re
import threading
from dataclasses import replace
from datetime import UTC, datetime
from unittest.mock import Mock

import pytest

from garage_erp import constants, core_logic, data_manager


# ---------------------------------------------------------------------------
# Runtime/context management
# ---------------------------------------------------------------------------


def test_load_runtime_context_returns_context(monkeypatch, tmp_path):
    """load_runtime_context should assemble settings and workbook into a context."""

    config_path = tmp_path / "config.ini"
    parser = Mock(name="parser")
    parsed_settings = data_manager.ConfigSettings(
        data_file=tmp_path / "master.xlsx",
        shop_name="Garage",
        schema_version=constants.EXPECTED_SCHEMA_VERSION,
        default_actor_id="U-SYSTEM",
    )
    workbook = Mock(name="workbook")

    find_config_file = Mock(return_value=config_path)
    read_config = Mock(return_value=parser)
    parse_settings = Mock(return_value=parsed_settings)
    open_workbook = Mock(return_value=workbook)

    monkeypatch.setattr(data_manager, "find_config_file", find_config_file)
    monkeypatch.setattr(data_manager, "read_config", read_config)
    monkeypatch.setattr(data_manager, "parse_settings", parse_settings)
    monkeypatch.setattr(data_manager, "open_workbook", open_workbook)

    context = core_logic.load_runtime_context(config_path)

    assert context.settings is parsed_settings
    assert context.workbook is workbook
    find_config_file.assert_called_once_with(config_path)
    read_config.assert_called_once_with(config_path.resolve())
    parse_settings.assert_called_once_with(parser, base_path=config_path.resolve().parent)
    open_workbook.assert_called_once_with(parsed_settings.data_file)


def test_ensure_schema_version_rejects_mismatch(context):
    """Schema mismatches should surface a RuntimeError with clear messaging."""

    bad_settings = replace(context.settings, schema_version="0.9")
    bad_context = core_logic.RuntimeContext(settings=bad_settings, workbook=context.workbook)
    with pytest.raises(RuntimeError, match="expected"):
        core_logic.ensure_schema_version(bad_context)


def test_ensure_schema_version_accepts_expected(context):
    core_logic.ensure_schema_version(context)


def test_contexts_get_independent_caches_and_locks(settings, workbook):
    first = core_logic.RuntimeContext(settings=settings, workbook=workbook)
    second = core_logic.RuntimeContext(settings=settings, workbook=workbook)

    core_logic.get_cache_bucket(first, "jobs")["all"] = []

    assert "jobs" not in second._cache
    assert first._lock is not second._lock


def test_persist_and_refresh_context_round_trip(runtime_context):
    data_manager.append_audit_entry(
        runtime_context.workbook,
        data_manager.AuditLogRow(
            entry_id="AU1",
            timestamp="2024-03-01T09:00:00+00:00",
            user_id="U-1",
            user_role="admin",
            action="create",
            resource="job",
            resource_id="J1",
            success=True,
        ),
    )
    core_logic.persist_context(runtime_context)

    refreshed = core_logic.refresh_context(runtime_context)

    assert refreshed.workbook is not runtime_context.workbook
    assert [entry.entry_id for entry in data_manager.iter_audit_log(refreshed.workbook)] == ["AU1"]


def test_refresh_context_discards_unsaved_changes(runtime_context):
    data_manager.append_audit_entry(
        runtime_context.workbook,
        data_manager.AuditLogRow(
            entry_id="AU-unsaved",
            timestamp="2024-03-01T09:00:00+00:00",
            user_id="U-1",
            user_role="admin",
            action="create",
            resource="job",
            resource_id="J1",
            success=True,
        ),
    )

    refreshed = core_logic.refresh_context(runtime_context)

    assert list(data_manager.iter_audit_log(refreshed.workbook)) == []


# ---------------------------------------------------------------------------
# Identifiers and timestamps
# ---------------------------------------------------------------------------


def test_generate_id_embeds_timestamp_and_random_suffix():
    moment = datetime(2024, 3, 1, 9, 5, 7, tzinfo=UTC)

    first = core_logic.generate_id("B", when=moment)
    second = core_logic.generate_id("B", when=moment)

    assert re.fullmatch(r"B20240301090507-[0-9a-f]{8}", first)
    assert first != second


def test_generate_id_defaults_to_current_utc_time(set_fixed_datetime):
    set_fixed_datetime(datetime(2030, 1, 2, 3, 4, 5, tzinfo=UTC))

    assert core_logic.generate_id("J").startswith("J20300102030405-")


def test_resolve_timestamp_prefers_supplied_value(set_fixed_datetime):
    set_fixed_datetime(datetime(2030, 1, 1, tzinfo=UTC))
    supplied = datetime(2024, 1, 1, tzinfo=UTC)

    assert core_logic._resolve_timestamp(supplied) is supplied
    assert core_logic._resolve_timestamp(None) == datetime(2030, 1, 1, tzinfo=UTC)


# ---------------------------------------------------------------------------
# Cache helpers
# ---------------------------------------------------------------------------


def test_get_cache_bucket_reuses_bucket(context):
    bucket = core_logic.get_cache_bucket(context, "bills")
    bucket["sentinel"] = 1

    assert core_logic.get_cache_bucket(context, "bills") is bucket


def test_invalidate_cache_drops_named_or_all_buckets(context):
    core_logic.get_cache_bucket(context, "jobs")
    core_logic.get_cache_bucket(context, "bills")

    core_logic.invalidate_cache(context, "jobs", "unknown")
    assert set(context._cache) == {"bills"}

    core_logic.invalidate_cache(context)
    assert context._cache == {}


# ---------------------------------------------------------------------------
# Transactions
# ---------------------------------------------------------------------------


def _audit_ids(context):
    return [entry.entry_id for entry in data_manager.iter_audit_log(context.workbook)]


def test_transaction_rolls_back_on_exception(runtime_context):
    """Writes made before an exception should vanish from the workbook."""

    with pytest.raises(core_logic.ValidationError):
        with core_logic.transaction(runtime_context, "failing"):
            core_logic.record_audit_entry(runtime_context, action="create", resource="job", resource_id="J1")
            raise core_logic.ValidationError("boom")

    assert _audit_ids(runtime_context) == []


def test_transaction_commits_and_clears_cache(runtime_context):
    core_logic.get_cache_bucket(runtime_context, "jobs")["all"] = ["stale"]

    with core_logic.transaction(runtime_context, "ok") as inner:
        assert inner is runtime_context
        core_logic.record_audit_entry(runtime_context, action="create", resource="job", resource_id="J1")

    assert len(_audit_ids(runtime_context)) == 1
    assert runtime_context._cache == {}


def test_nested_transaction_failure_rolls_back_only_inner_block(runtime_context):
    with core_logic.transaction(runtime_context, "outer"):
        core_logic.record_audit_entry(runtime_context, action="outer", resource="job", resource_id="J1")
        with pytest.raises(core_logic.NotFoundError):
            with core_logic.transaction(runtime_context, "inner"):
                core_logic.record_audit_entry(runtime_context, action="inner", resource="job", resource_id="J2")
                raise core_logic.NotFoundError("missing")

    assert [entry.action for entry in data_manager.iter_audit_log(runtime_context.workbook)] == ["outer"]


def test_transaction_serializes_threads(runtime_context):
    """A second thread must wait until the first transaction finishes."""

    entered = threading.Event()
    release = threading.Event()
    order: list[str] = []

    def _first():
        with core_logic.transaction(runtime_context, "first"):
            entered.set()
            release.wait(timeout=5)
            order.append("first")

    def _second():
        entered.wait(timeout=5)
        with core_logic.transaction(runtime_context, "second"):
            order.append("second")

    threads = [threading.Thread(target=_first), threading.Thread(target=_second)]
    for thread in threads:
        thread.start()
    entered.wait(timeout=5)
    release.set()
    for thread in threads:
        thread.join(timeout=5)

    assert order == ["first", "second"]


# ---------------------------------------------------------------------------
# Post-commit tasks
# ---------------------------------------------------------------------------


def test_run_post_commit_tasks_collects_failures_and_continues():
    calls: list[str] = []

    def _ok():
        calls.append("ok")

    def _soft_failure():
        calls.append("soft")
        return "Account inactive"

    def _raises():
        calls.append("raises")
        raise RuntimeError("disk full")

    warnings = core_logic.run_post_commit_tasks(
        [
            core_logic.PostCommitTask("raises", _raises),
            core_logic.PostCommitTask("soft", _soft_failure),
            core_logic.PostCommitTask("ok", _ok),
        ]
    )

    assert calls == ["raises", "soft", "ok"]
    assert warnings == [
        core_logic.SideEffectWarning(task="raises", message="disk full"),
        core_logic.SideEffectWarning(task="soft", message="Account inactive"),
    ]


def test_run_post_commit_tasks_names_silent_exceptions():
    def _raises():
        raise KeyError()

    (warning,) = core_logic.run_post_commit_tasks([core_logic.PostCommitTask("lookup", _raises)])

    assert warning.message == "KeyError"


# ---------------------------------------------------------------------------
# Errors and audit trail
# ---------------------------------------------------------------------------


def test_validation_error_keeps_every_message():
    error = core_logic.ValidationError("Invalid bill", ["Vehicle number is required", "Total amount must be positive"])

    assert str(error) == "Invalid bill"
    assert error.errors == ["Vehicle number is required", "Total amount must be positive"]
    assert core_logic.ValidationError("single").errors == ["single"]


def test_error_taxonomy():
    assert issubclass(core_logic.InvalidStatusTransition, core_logic.ValidationError)
    assert issubclass(core_logic.AlreadyProcessedError, core_logic.ValidationError)
    for error_type in (
        core_logic.ValidationError,
        core_logic.NotFoundError,
        core_logic.ConcurrentModificationError,
        core_logic.PermissionDeniedError,
    ):
        assert issubclass(error_type, core_logic.BusinessRuleViolation)


def test_record_audit_entry_defaults_to_configured_actor(runtime_context, clock):
    moment = clock()

    entry_id = core_logic.record_audit_entry(
        runtime_context,
        action="approve_request",
        resource="approval_request",
        resource_id="AR1",
        new_data={"status": "approved"},
        timestamp=moment,
    )
    (entry,) = core_logic.list_audit_entries(runtime_context)

    assert entry.entry_id == entry_id
    assert entry.user_id == "U-SYSTEM"
    assert entry.timestamp == moment.isoformat()
    assert entry.new_data == {"status": "approved"}
    assert entry.success is True


def test_list_audit_entries_filters_and_sorts_newest_first(runtime_context, clock):
    first = core_logic.record_audit_entry(
        runtime_context, action="a", resource="bill", resource_id="B1", timestamp=clock()
    )
    core_logic.record_audit_entry(runtime_context, action="b", resource="job", resource_id="J1", timestamp=clock())
    third = core_logic.record_audit_entry(
        runtime_context, action="c", resource="bill", resource_id="B1", timestamp=clock()
    )

    entries = core_logic.list_audit_entries(runtime_context, resource="bill", resource_id="B1")

    assert [entry.entry_id for entry in entries] == [third, first]
