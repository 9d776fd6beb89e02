"""Job operations: work orders moving through the service pipeline.

A job tracks one vehicle from arrival (``todo``) to hand-over
(``delivered``) together with its part and service subtasks. Only one job
per vehicle number may be active (not delivered, not deleted) at a time.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence

from . import core_logic, data_manager, log
from .constants import LEGACY_JOB_STATUSES, JobStatus, SubTaskType
from .core_logic import NotFoundError, RuntimeContext, ValidationError


MIN_VEHICLE_NO_LENGTH = 3


@dataclass(frozen=True)
class SubTaskInput:
    """Caller-supplied description of a part or service line item."""

    task_type: SubTaskType
    parts_type: Optional[str] = None
    service_type: Optional[str] = None
    parts_brand: Optional[str] = None
    warranty_period: Optional[int] = None
    is_completed: bool = False
    subtask_id: Optional[str] = None


@dataclass(frozen=True)
class JobCommand:
    """User intent for opening a new job."""

    vehicle_no: str
    customer_name: str = ""
    customer_phone: str = ""
    damage_remarks: str = ""
    damage_photos: Sequence[str] = ()
    image: str = ""
    sub_tasks: Sequence[SubTaskInput] = ()
    is_company_vehicle: bool = False
    company_name: str = ""
    status: JobStatus = JobStatus.TODO
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class UpdateResult:
    """Matched and modified row counts of a job update."""

    matched: int
    modified: int


def _ensure_jobs_cache(context: RuntimeContext) -> Dict[str, Any]:
    bucket = core_logic.get_cache_bucket(context, "jobs")
    if "all" not in bucket:
        all_jobs = list(data_manager.iter_jobs(context.workbook))
        bucket["all"] = all_jobs
        bucket["by_id"] = {job.job_id: job for job in all_jobs}
        log.debug("Populated jobs cache with %d entries", len(all_jobs))
    return bucket


def get_job(context: RuntimeContext, job_id: str) -> data_manager.JobRow:
    """Resolve a job by identifier.

    Raises:
        NotFoundError: If ``job_id`` is absent from the workbook.
    """

    try:
        return _ensure_jobs_cache(context)["by_id"][job_id]
    except KeyError as exc:
        log.warning("Job lookup failed for id '%s'", job_id)
        raise NotFoundError(f"Job with ID {job_id} not found") from exc


def list_jobs(context: RuntimeContext, *, include_deleted: bool = False) -> List[data_manager.JobRow]:
    return [job for job in _ensure_jobs_cache(context)["all"] if include_deleted or not job.deleted]


def find_active_job(
    context: RuntimeContext, vehicle_no: str, *, exclude_job_id: Optional[str] = None
) -> Optional[data_manager.JobRow]:
    """Return the active job registered for ``vehicle_no``, if any."""

    for job in _ensure_jobs_cache(context)["all"]:
        if job.job_id == exclude_job_id or job.deleted:
            continue
        if job.vehicle_no == vehicle_no and job.status != JobStatus.DELIVERED.value:
            return job
    return None


def build_subtask(
    task: SubTaskInput,
    *,
    added_at: str,
    is_additional: bool = False,
    approval_status: Optional[str] = None,
    approved_by: Optional[str] = None,
    approved_at: Optional[str] = None,
) -> data_manager.SubTaskRecord:
    """Validate ``task`` and convert it into a stored subtask record.

    Raises:
        ValidationError: If the task type is neither ``parts`` nor ``service``.
    """

    try:
        task_type = SubTaskType(task.task_type)
    except ValueError as exc:
        raise ValidationError("Each subtask must have a valid taskType ('parts' or 'service').") from exc
    return data_manager.SubTaskRecord(
        subtask_id=task.subtask_id or core_logic.generate_id("ST"),
        task_type=task_type.value,
        parts_type=task.parts_type,
        service_type=task.service_type,
        parts_brand=task.parts_brand,
        is_completed=task.is_completed,
        is_additional=is_additional,
        warranty_period=task.warranty_period,
        approval_status=approval_status,
        approved_by=approved_by,
        approved_at=approved_at,
        added_at=added_at,
    )


def create_job(context: RuntimeContext, command: JobCommand) -> str:
    """Validate and insert a new job, returning its identifier.

    Only the vehicle number is mandatory; customer details are collected at
    billing time. The company name is kept only for company vehicles.

    Raises:
        ValidationError: If the vehicle number is missing, shorter than three
            characters, or already used by an active job, or if a subtask has
            an invalid type.
    """

    vehicle_no = command.vehicle_no.strip()
    if not vehicle_no:
        log.error("Job creation rejected: missing vehicle number")
        raise ValidationError("Vehicle number is required")
    if len(vehicle_no) < MIN_VEHICLE_NO_LENGTH:
        log.error("Job creation rejected: vehicle number '%s' too short", vehicle_no)
        raise ValidationError("Vehicle number too short")

    moment = core_logic._resolve_timestamp(command.timestamp)
    stamp = core_logic.timestamp_iso(moment)
    sub_tasks = [build_subtask(task, added_at=stamp) for task in command.sub_tasks]

    with core_logic.transaction(context, "create_job"):
        if find_active_job(context, vehicle_no) is not None:
            log.error("Job creation rejected: vehicle '%s' already has an active job", vehicle_no)
            raise ValidationError(
                f'A job with vehicle number "{vehicle_no}" already exists and is not yet delivered. '
                "Please wait until the existing job is delivered before creating a new one."
            )

        record = data_manager.JobRow(
            job_id=core_logic.generate_id("J", when=moment),
            vehicle_no=vehicle_no,
            status=JobStatus(command.status).value,
            created_at=stamp,
            updated_at=stamp,
            customer_name=command.customer_name.strip(),
            customer_phone=command.customer_phone.strip(),
            damage_remarks=command.damage_remarks.strip(),
            damage_photos=list(command.damage_photos),
            image=command.image.strip(),
            sub_tasks=sub_tasks,
            is_company_vehicle=command.is_company_vehicle,
            company_name=command.company_name.strip() if command.is_company_vehicle else "",
        )
        data_manager.append_job(context.workbook, record)

    log.info("Created job '%s' for vehicle '%s' (%d subtasks)", record.job_id, vehicle_no, len(sub_tasks))
    return record.job_id


def get_all_jobs_categorized_by_status(context: RuntimeContext) -> Dict[str, List[data_manager.JobRow]]:
    """Group non-deleted jobs into the four pipeline columns.

    Legacy statuses written by earlier releases and unknown statuses are
    placed in ``todo`` and reported at WARNING level.
    """

    categorized: Dict[str, List[data_manager.JobRow]] = {status.value: [] for status in JobStatus}
    for job in list_jobs(context):
        if job.status in categorized:
            categorized[job.status].append(job)
        elif job.status in LEGACY_JOB_STATUSES:
            log.warning("Migrating legacy status %s to todo for job %s", job.status, job.job_id)
            categorized[JobStatus.TODO.value].append(job)
        else:
            log.warning("Unknown job status: %s, defaulting to todo", job.status)
            categorized[JobStatus.TODO.value].append(job)
    return categorized


def _apply_job_update(
    context: RuntimeContext,
    job: data_manager.JobRow,
    field_values: Dict[str, Any],
    *,
    compare: Dict[str, Any],
) -> UpdateResult:
    """Write ``field_values`` and report whether any compared value changed."""

    modified = int(any(getattr(job, attr) != value for attr, value in compare.items()))
    matched = data_manager.update_job(context.workbook, job.job_id, field_values=field_values)
    return UpdateResult(matched=matched, modified=modified if matched else 0)


def update_job_status(
    context: RuntimeContext,
    job_id: str,
    new_status: JobStatus,
    *,
    changed_by: Optional[str] = None,
    timestamp: Optional[datetime] = None,
) -> UpdateResult:
    """Move a job to ``new_status``.

    Raises:
        NotFoundError: If the job does not exist.
        ValidationError: If ``new_status`` is not a pipeline status.
    """

    try:
        status = JobStatus(new_status)
    except ValueError as exc:
        raise ValidationError(f"Invalid job status: {new_status}") from exc

    stamp = core_logic.timestamp_iso(core_logic._resolve_timestamp(timestamp))
    with core_logic.transaction(context, "update_job_status"):
        job = get_job(context, job_id)
        field_values: Dict[str, Any] = {"Status": status.value, "UpdatedAt": stamp}
        if changed_by is not None:
            field_values["LastStatusChangeBy"] = changed_by
            field_values["LastStatusChangeAt"] = stamp
        result = _apply_job_update(context, job, field_values, compare={"status": status.value})

    log.info("Job '%s' status %s -> %s", job_id, job.status, status.value)
    return result


def update_subtask_completion(
    context: RuntimeContext, job_id: str, subtask_id: str, is_completed: bool
) -> None:
    """Toggle the completion flag of one subtask.

    Raises:
        NotFoundError: If the job or the subtask does not exist.
    """

    with core_logic.transaction(context, "update_subtask_completion"):
        job = get_job(context, job_id)
        if not any(task.subtask_id == subtask_id for task in job.sub_tasks):
            log.warning("Subtask '%s' not found in job '%s'", subtask_id, job_id)
            raise NotFoundError(f"Subtask with ID {subtask_id} not found in job {job_id}")
        sub_tasks = [
            replace(task, is_completed=is_completed) if task.subtask_id == subtask_id else task
            for task in job.sub_tasks
        ]
        data_manager.update_job(context.workbook, job_id, field_values={"SubTasks": _dump_subtasks(sub_tasks)})

    log.info("Subtask '%s' of job '%s' marked completed=%s", subtask_id, job_id, is_completed)


def update_vehicle_number(context: RuntimeContext, job_id: str, new_vehicle_no: str) -> UpdateResult:
    """Rename the vehicle of a job, keeping active vehicle numbers unique.

    Raises:
        NotFoundError: If the job does not exist.
        ValidationError: If the number is too short or already active.
    """

    vehicle_no = new_vehicle_no.strip()
    if len(vehicle_no) < MIN_VEHICLE_NO_LENGTH:
        raise ValidationError("Vehicle number too short")

    with core_logic.transaction(context, "update_vehicle_number"):
        job = get_job(context, job_id)
        if find_active_job(context, vehicle_no, exclude_job_id=job_id) is not None:
            log.error("Vehicle number '%s' already belongs to an active job", vehicle_no)
            raise ValidationError(f'A job with vehicle number "{vehicle_no}" already exists and is not yet delivered.')
        result = _apply_job_update(
            context,
            job,
            {"VehicleNo": vehicle_no},
            compare={"vehicle_no": vehicle_no},
        )

    log.info("Job '%s' vehicle number %s -> %s", job_id, job.vehicle_no, vehicle_no)
    return result


def update_customer_details(
    context: RuntimeContext,
    job_id: str,
    *,
    customer_name: Optional[str] = None,
    customer_phone: Optional[str] = None,
    damage_remarks: Optional[str] = None,
    damage_photos: Optional[Sequence[str]] = None,
    image: Optional[str] = None,
) -> UpdateResult:
    """Overwrite the customer-facing fields that were supplied."""

    field_values: Dict[str, Any] = {}
    compare: Dict[str, Any] = {}
    for attr, column, value in (
        ("customer_name", "CustomerName", customer_name),
        ("customer_phone", "CustomerPhone", customer_phone),
        ("damage_remarks", "DamageRemarks", damage_remarks),
        ("image", "Image", image),
    ):
        if value is not None:
            field_values[column] = value
            compare[attr] = value
    if damage_photos is not None:
        field_values["DamagePhotos"] = list(damage_photos)
        compare["damage_photos"] = list(damage_photos)

    with core_logic.transaction(context, "update_customer_details"):
        job = get_job(context, job_id)
        if not field_values:
            return UpdateResult(matched=1, modified=0)
        result = _apply_job_update(context, job, field_values, compare=compare)

    log.info("Updated customer details of job '%s' (%s)", job_id, ", ".join(sorted(compare)))
    return result


def append_damage_photos(
    context: RuntimeContext, job_id: str, photo_urls: Sequence[str], *, timestamp: Optional[datetime] = None
) -> UpdateResult:
    """Add photo references to a job without replacing existing ones."""

    if not photo_urls:
        return UpdateResult(matched=0, modified=0)

    stamp = core_logic.timestamp_iso(core_logic._resolve_timestamp(timestamp))
    with core_logic.transaction(context, "append_damage_photos"):
        job = get_job(context, job_id)
        photos = [*job.damage_photos, *photo_urls]
        matched = data_manager.update_job(
            context.workbook,
            job_id,
            field_values={"DamagePhotos": photos, "UpdatedAt": stamp},
        )

    log.info("Appended %d damage photos to job '%s'", len(photo_urls), job_id)
    return UpdateResult(matched=matched, modified=matched)


def add_subtasks_to_job(
    context: RuntimeContext,
    job_id: str,
    new_subtasks: Iterable[SubTaskInput],
    *,
    is_additional: bool = False,
    approval_status: Optional[str] = None,
    approved_by: Optional[str] = None,
    timestamp: Optional[datetime] = None,
) -> List[str]:
    """Append subtasks to a job and return their identifiers.

    Subtask edits are not version-checked; concurrent edits of the same job
    can race.

    Raises:
        NotFoundError: If the job does not exist.
        ValidationError: If a subtask has an invalid type.
    """

    stamp = core_logic.timestamp_iso(core_logic._resolve_timestamp(timestamp))
    records = [
        build_subtask(
            task,
            added_at=stamp,
            is_additional=is_additional,
            approval_status=approval_status,
            approved_by=approved_by,
            approved_at=stamp if approved_by else None,
        )
        for task in new_subtasks
    ]
    with core_logic.transaction(context, "add_subtasks_to_job"):
        job = get_job(context, job_id)
        data_manager.update_job(
            context.workbook,
            job_id,
            field_values={"SubTasks": _dump_subtasks([*job.sub_tasks, *records]), "UpdatedAt": stamp},
        )

    log.info("Added %d subtasks to job '%s'", len(records), job_id)
    return [record.subtask_id for record in records]


def remove_subtask_from_job(context: RuntimeContext, job_id: str, subtask_id: str) -> UpdateResult:
    """Remove a subtask; ``modified`` is 0 when the subtask was not present."""

    with core_logic.transaction(context, "remove_subtask_from_job"):
        job = get_job(context, job_id)
        remaining = [task for task in job.sub_tasks if task.subtask_id != subtask_id]
        modified = int(len(remaining) != len(job.sub_tasks))
        data_manager.update_job(context.workbook, job_id, field_values={"SubTasks": _dump_subtasks(remaining)})

    log.info("Removed subtask '%s' from job '%s' (modified=%d)", subtask_id, job_id, modified)
    return UpdateResult(matched=1, modified=modified)


def soft_delete_job(context: RuntimeContext, job_id: str, *, timestamp: Optional[datetime] = None) -> None:
    """Flag a job as deleted; it disappears from listings but stays on file."""

    stamp = core_logic.timestamp_iso(core_logic._resolve_timestamp(timestamp))
    with core_logic.transaction(context, "soft_delete_job"):
        get_job(context, job_id)
        data_manager.update_job(context.workbook, job_id, field_values={"Deleted": True, "UpdatedAt": stamp})
    log.info("Soft-deleted job '%s'", job_id)


def delete_job(context: RuntimeContext, job_id: str) -> int:
    """Remove a job row permanently; returns the number of deleted rows."""

    with core_logic.transaction(context, "delete_job"):
        deleted = data_manager.delete_job(context.workbook, job_id)
    if deleted:
        log.info("Deleted job '%s'", job_id)
    else:
        log.warning("Delete requested for unknown job '%s'", job_id)
    return deleted


def migrate_legacy_job_statuses(context: RuntimeContext, *, timestamp: Optional[datetime] = None) -> int:
    """Rewrite legacy job statuses to ``todo`` and return the migrated count."""

    stamp = core_logic.timestamp_iso(core_logic._resolve_timestamp(timestamp))
    migrated = 0
    with core_logic.transaction(context, "migrate_legacy_job_statuses"):
        for job in list_jobs(context, include_deleted=True):
            if job.status in LEGACY_JOB_STATUSES:
                migrated += data_manager.update_job(
                    context.workbook,
                    job.job_id,
                    field_values={"Status": JobStatus.TODO.value, "UpdatedAt": stamp},
                )
    log.info("Migrated %d jobs from legacy statuses to todo", migrated)
    return migrated


def _dump_subtasks(sub_tasks: Iterable[data_manager.SubTaskRecord]) -> List[Dict[str, Any]]:
    return [data_manager.serialize_subtask(task) for task in sub_tasks]


__all__ = [
    "SubTaskInput",
    "JobCommand",
    "UpdateResult",
    "get_job",
    "list_jobs",
    "find_active_job",
    "build_subtask",
    "create_job",
    "get_all_jobs_categorized_by_status",
    "update_job_status",
    "update_subtask_completion",
    "update_vehicle_number",
    "update_customer_details",
    "append_damage_photos",
    "add_subtasks_to_job",
    "remove_subtask_from_job",
    "soft_delete_job",
    "delete_job",
    "migrate_legacy_job_statuses",
]
