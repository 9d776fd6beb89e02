"""Runtime layer shared by the Garage ERP business modules.

This module owns the pieces every business operation relies on: the error
taxonomy, the :class:`RuntimeContext` that bundles settings with a live
workbook, the transaction context manager, post-commit task execution and
the audit trail. The job, billing, banking and approval modules consume the
Data Access Layer (DAL) exclusively through the helpers defined here.
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence
from uuid import uuid4

from openpyxl.workbook import Workbook

from . import data_manager, log
from .constants import EXPECTED_SCHEMA_VERSION


class BusinessRuleViolation(Exception):
    """Raised when a requested operation violates a domain constraint."""


class ValidationError(BusinessRuleViolation):
    """Raised when input fails a precondition; nothing has been written.

    ``errors`` keeps every individual message so callers can display the
    full list rather than only the first failure.
    """

    def __init__(self, message: str, errors: Optional[Sequence[str]] = None) -> None:
        super().__init__(message)
        self.errors: List[str] = list(errors) if errors else [message]


class InvalidStatusTransition(ValidationError):
    """Raised when a bill is asked to move to a status it cannot reach."""


class AlreadyProcessedError(ValidationError):
    """Raised when an approval request that is no longer pending is decided."""


class NotFoundError(BusinessRuleViolation):
    """Raised when a referenced job, bill, request, or account is unknown."""


class ConcurrentModificationError(BusinessRuleViolation):
    """Raised when a version-checked write matched no row."""


class PermissionDeniedError(BusinessRuleViolation):
    """Raised when a role may neither perform nor request an action."""


@dataclass(frozen=True)
class RuntimeContext:
    """Container for configuration and workbook references used by the BLL."""

    settings: data_manager.ConfigSettings
    workbook: Workbook
    _cache: Dict[str, Dict[str, Any]] = field(default_factory=dict, repr=False, compare=False)
    _lock: threading.RLock = field(default_factory=threading.RLock, repr=False, compare=False)


@dataclass(frozen=True)
class SideEffectWarning:
    """A best-effort step that failed after the primary write committed."""

    task: str
    message: str


@dataclass(frozen=True)
class PostCommitTask:
    """A named side effect executed after a transaction commits.

    ``action`` returns ``None`` on success or an error message on a soft
    failure; raising an exception is treated the same way.
    """

    name: str
    action: Callable[[], Optional[str]]


def _resolve_timestamp(candidate: Optional[datetime]) -> datetime:
    """Resolve optional timestamps into consistent, timezone-aware values.

    Args:
        candidate (datetime | None): Caller-provided timestamp, usually sourced
            from a command object.

    Returns:
        datetime: ``candidate`` as-is when provided, otherwise the current UTC
            datetime generated via :func:`datetime.now`.
    """

    return candidate if candidate is not None else datetime.now(UTC)


def timestamp_iso(moment: datetime) -> str:
    """Format ``moment`` the way timestamps are stored in the workbook."""

    return moment.isoformat()


def generate_id(prefix: str, *, when: Optional[datetime] = None) -> str:
    """Generate a sortable, collision-free identifier.

    Args:
        prefix (str): Designator for the collection, such as ``"B"`` for bills.
        when (datetime | None): Timestamp embedded in the identifier. When
            ``None`` the current UTC time is used.

    Returns:
        str: Identifier formed as ``{prefix}{YYYYMMDDHHMMSS}-{random hex}``.

    The timestamp keeps identifiers roughly chronological while the random
    suffix keeps two records created within the same instant apart.
    """

    when = _resolve_timestamp(when)
    return f"{prefix}{when.strftime('%Y%m%d%H%M%S')}-{uuid4().hex[:8]}"


def get_cache_bucket(context: RuntimeContext, name: str) -> Dict[str, Any]:
    """Return a mutable cache bucket dedicated to the supplied name.

    The business modules memoize derived collections (jobs by id, bills by
    job) per domain area. This helper retrieves or initializes the bucket
    associated with ``name``.

    Args:
        context (RuntimeContext): Runtime state carrying the shared cache
            dictionary.
        name (str): Logical bucket name to fetch or create.

    Returns:
        dict[str, Any]: Mutable mapping used to cache derived collections.
    """

    bucket = context._cache.get(name)
    if bucket is None:
        log.debug("Initializing cache bucket '%s'", name)
        bucket = {}
        context._cache[name] = bucket
    return bucket


def invalidate_cache(context: RuntimeContext, *names: str) -> None:
    """Evict cache buckets after mutating workbook state.

    With no ``names`` every bucket is dropped. Missing buckets are ignored.
    """

    if not names:
        if context._cache:
            log.debug("Invalidating all cache buckets")
        context._cache.clear()
        return

    log.debug("Invalidating cache buckets: %s", ", ".join(names))

    for name in names:
        context._cache.pop(name, None)


@contextmanager
def transaction(context: RuntimeContext, name: str = "transaction") -> Iterator[RuntimeContext]:
    """Run a unit of work atomically against the in-memory workbook.

    The context's re-entrant lock is held for the whole block so the
    "read, validate, write" sequence of one operation is isolated from other
    threads sharing the context. Every worksheet is snapshotted on entry; if
    the block raises, the snapshot is restored before the exception
    propagates. Caches are dropped on both paths.

    Args:
        context (RuntimeContext): Runtime context whose workbook is mutated.
        name (str): Label used in log messages.

    Yields:
        RuntimeContext: The same context, for convenience.
    """

    with context._lock:
        snapshot = data_manager.snapshot_workbook(context.workbook)
        log.debug("Transaction '%s' started", name)
        try:
            yield context
        except Exception:
            data_manager.restore_workbook(context.workbook, snapshot)
            invalidate_cache(context)
            log.warning("Transaction '%s' aborted; workbook changes rolled back", name)
            raise
        invalidate_cache(context)
        log.debug("Transaction '%s' committed", name)


def run_post_commit_tasks(tasks: Sequence[PostCommitTask]) -> List[SideEffectWarning]:
    """Execute best-effort side effects and collect their failures.

    Each task runs independently: a failure is logged and turned into a
    :class:`SideEffectWarning`, and the remaining tasks still run. Nothing
    raised here ever reaches the caller because the primary write has
    already been committed.
    """

    warnings: List[SideEffectWarning] = []
    for task in tasks:
        try:
            error = task.action()
        except Exception as exc:  # noqa: BLE001
            error = str(exc) or exc.__class__.__name__
        if error:
            log.warning("Post-commit task '%s' failed: %s", task.name, error)
            warnings.append(SideEffectWarning(task=task.name, message=error))
        else:
            log.debug("Post-commit task '%s' completed", task.name)
    return warnings


def record_audit_entry(
    context: RuntimeContext,
    *,
    action: str,
    resource: str,
    resource_id: str,
    user_id: Optional[str] = None,
    user_role: str = "system",
    new_data: Optional[Dict[str, Any]] = None,
    success: bool = True,
    error_message: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
    timestamp: Optional[datetime] = None,
) -> str:
    """Append an entry to the ``AuditLog`` sheet and return its identifier.

    When called inside :func:`transaction` the entry shares the fate of the
    surrounding unit of work.
    """

    moment = _resolve_timestamp(timestamp)
    entry = data_manager.AuditLogRow(
        entry_id=generate_id("AU", when=moment),
        timestamp=timestamp_iso(moment),
        user_id=user_id or context.settings.default_actor_id,
        user_role=user_role,
        action=action,
        resource=resource,
        resource_id=resource_id,
        success=success,
        new_data=new_data,
        error_message=error_message,
        metadata=metadata,
    )
    data_manager.append_audit_entry(context.workbook, entry)
    log.debug("Audit entry '%s': %s %s '%s'", entry.entry_id, action, resource, resource_id)
    return entry.entry_id


def list_audit_entries(
    context: RuntimeContext,
    *,
    resource: Optional[str] = None,
    resource_id: Optional[str] = None,
) -> List[data_manager.AuditLogRow]:
    """Return audit entries, newest first, optionally filtered by resource."""

    entries = [
        entry
        for entry in data_manager.iter_audit_log(context.workbook)
        if (resource is None or entry.resource == resource)
        and (resource_id is None or entry.resource_id == resource_id)
    ]
    entries.sort(key=lambda entry: entry.timestamp, reverse=True)
    return entries


def load_runtime_context(config_path: Optional[Path] = None) -> RuntimeContext:
    """Load configuration settings and a live workbook for the BLL.

    The helper resolves ``config.ini``, parses settings, and opens the Excel
    workbook that stores every collection. The resulting
    :class:`RuntimeContext` bundles the immutable settings with a mutable
    workbook handle, an empty cache store and a fresh lock.

    Args:
        config_path (Path | None): Optional override path for the configuration
            file. When omitted the data layer performs its upward search from
            the current working directory.

    Returns:
        RuntimeContext: Fully populated context ready for business operations.

    Raises:
        FileNotFoundError: If the configuration file or workbook cannot be
            located.
        KeyError: When mandatory configuration options are missing.
    """
    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    workbook = data_manager.open_workbook(settings.data_file)
    log.info("Loaded runtime context for workbook '%s'", settings.data_file)
    return RuntimeContext(settings=settings, workbook=workbook)


def ensure_schema_version(context: RuntimeContext) -> None:
    """Validate workbook compatibility before mutating state.

    Raises:
        RuntimeError: If the schema version declared in the configuration does
            not match ``EXPECTED_SCHEMA_VERSION``.
    """
    if context.settings.schema_version != EXPECTED_SCHEMA_VERSION:
        log.error(
            "Workbook schema mismatch: expected %s, found %s",
            EXPECTED_SCHEMA_VERSION,
            context.settings.schema_version,
        )
        raise RuntimeError(
            "Workbook schema mismatch: expected %s, found %s"
            % (EXPECTED_SCHEMA_VERSION, context.settings.schema_version)
        )

    log.debug("Schema version '%s' validated", context.settings.schema_version)


def persist_context(context: RuntimeContext) -> None:
    """Persist any in-memory workbook changes to disk.

    Saves always target :attr:`RuntimeContext.settings.data_file`. The lock is
    held so a save never observes a half-applied transaction.
    """
    with context._lock:
        data_manager.save_workbook(
            context.workbook,
            destination=context.settings.data_file,
        )
    log.info("Persisted workbook '%s'", context.settings.data_file)


def refresh_context(context: RuntimeContext) -> RuntimeContext:
    """Reload the workbook to discard unsaved modifications.

    Returns:
        RuntimeContext: Fresh context containing a newly opened workbook and
            an empty cache.

    Raises:
        FileNotFoundError: If the backing workbook cannot be reloaded.
    """
    workbook = data_manager.refresh_workbook(context.settings.data_file)
    log.info("Reloaded workbook '%s'", context.settings.data_file)
    return RuntimeContext(settings=context.settings, workbook=workbook)


__all__ = [
    "BusinessRuleViolation",
    "ValidationError",
    "InvalidStatusTransition",
    "AlreadyProcessedError",
    "NotFoundError",
    "ConcurrentModificationError",
    "PermissionDeniedError",
    "RuntimeContext",
    "SideEffectWarning",
    "PostCommitTask",
    "timestamp_iso",
    "generate_id",
    "get_cache_bucket",
    "invalidate_cache",
    "transaction",
    "run_post_commit_tasks",
    "record_audit_entry",
    "list_audit_entries",
    "load_runtime_context",
    "ensure_schema_version",
    "persist_context",
    "refresh_context",
]
