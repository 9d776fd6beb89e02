"""Approval workflow for staff-initiated changes.

Staff members cannot add parts or services, change a job's status or take
credit payments on their own; those actions are captured as approval
requests and applied when a privileged user approves them. Each request
carries a typed payload whose variant is fixed by the request type:

* ``part`` / ``service``: :class:`SubTaskPayload`
* ``status_change``: :class:`StatusChangePayload`
* ``payment`` / ``credit_payment``: :class:`PaymentPayload`

A request moves from ``pending`` to ``approved`` or ``rejected`` exactly
once. Approving a request and executing its payload form a single
transaction: if execution fails, the request stays pending.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional, Union

from . import billing, core_logic, data_manager, jobs, log, money
from .constants import (
    ApprovalDecision,
    ApprovalStatus,
    ApprovalType,
    JobStatus,
    PaymentMethod,
    SubTaskType,
)
from .core_logic import (
    AlreadyProcessedError,
    NotFoundError,
    PermissionDeniedError,
    RuntimeContext,
    ValidationError,
)
from .permissions import get_approval_permissions


@dataclass(frozen=True)
class SubTaskPayload:
    """A part or service to append to the job once approved."""

    task: jobs.SubTaskInput


@dataclass(frozen=True)
class StatusChangePayload:
    """A job status change to apply once approved."""

    new_status: JobStatus
    current_status: Optional[str] = None
    vehicle_no: Optional[str] = None


@dataclass(frozen=True)
class PaymentPayload:
    """A payment against a bill to record once approved."""

    bill_id: str
    payment_amount: Decimal
    payment_method: PaymentMethod = PaymentMethod.CASH
    notes: Optional[str] = None
    cheque_details: Optional[Mapping[str, Any]] = None


ApprovalPayload = Union[SubTaskPayload, StatusChangePayload, PaymentPayload]

PAYLOAD_TYPES: Mapping[ApprovalType, type] = {
    ApprovalType.PART: SubTaskPayload,
    ApprovalType.SERVICE: SubTaskPayload,
    ApprovalType.STATUS_CHANGE: StatusChangePayload,
    ApprovalType.PAYMENT: PaymentPayload,
    ApprovalType.CREDIT_PAYMENT: PaymentPayload,
}

_SUBTASK_TYPES: Mapping[ApprovalType, SubTaskType] = {
    ApprovalType.PART: SubTaskType.PARTS,
    ApprovalType.SERVICE: SubTaskType.SERVICE,
}


@dataclass(frozen=True)
class DecisionResult:
    """Outcome of :func:`decide_request`.

    ``reference_id`` identifies what an approval produced: the new subtask
    or credit payment. It is ``None`` for rejections and status changes.
    """

    request_id: str
    status: str
    reference_id: Optional[str] = None


@dataclass(frozen=True)
class RoutingResult:
    """Outcome of an approval-aware operation.

    Either the change was ``applied`` directly, or it ``requires_approval``
    and ``request_id`` names the pending request.
    """

    applied: bool
    requires_approval: bool
    message: str
    request_id: Optional[str] = None
    reference_id: Optional[str] = None


# ---------------------------------------------------------------------------
# Payload encoding
# ---------------------------------------------------------------------------


def serialize_payload(payload: ApprovalPayload) -> Dict[str, Any]:
    """Convert a payload into the JSON-ready mapping stored on the request."""

    if isinstance(payload, SubTaskPayload):
        task = payload.task
        return {
            "task_type": SubTaskType(task.task_type).value,
            "parts_type": task.parts_type,
            "service_type": task.service_type,
            "parts_brand": task.parts_brand,
            "warranty_period": task.warranty_period,
        }
    if isinstance(payload, StatusChangePayload):
        return {
            "new_status": JobStatus(payload.new_status).value,
            "current_status": payload.current_status,
            "vehicle_no": payload.vehicle_no,
        }
    if isinstance(payload, PaymentPayload):
        return {
            "bill_id": payload.bill_id,
            "payment_amount": str(money.round_money(payload.payment_amount)),
            "payment_method": PaymentMethod(payload.payment_method).value,
            "notes": payload.notes,
            "cheque_details": dict(payload.cheque_details) if payload.cheque_details else None,
        }
    raise TypeError(f"Unsupported approval payload: {type(payload).__name__}")


def deserialize_payload(request_type: ApprovalType, data: Mapping[str, Any]) -> ApprovalPayload:
    """Rebuild the payload variant that matches ``request_type``."""

    kind = ApprovalType(request_type)
    if kind in _SUBTASK_TYPES:
        warranty = data.get("warranty_period")
        return SubTaskPayload(
            task=jobs.SubTaskInput(
                task_type=SubTaskType(data["task_type"]),
                parts_type=data.get("parts_type"),
                service_type=data.get("service_type"),
                parts_brand=data.get("parts_brand"),
                warranty_period=int(warranty) if warranty is not None else None,
            )
        )
    if kind is ApprovalType.STATUS_CHANGE:
        return StatusChangePayload(
            new_status=JobStatus(data["new_status"]),
            current_status=data.get("current_status"),
            vehicle_no=data.get("vehicle_no"),
        )
    return PaymentPayload(
        bill_id=str(data["bill_id"]),
        payment_amount=money.round_money(data["payment_amount"]),
        payment_method=PaymentMethod(data.get("payment_method") or PaymentMethod.CASH.value),
        notes=data.get("notes"),
        cheque_details=data.get("cheque_details"),
    )


def _check_payload(context: RuntimeContext, kind: ApprovalType, job_id: str, payload: ApprovalPayload) -> None:
    """Validate ``payload`` against ``kind`` and the current workbook state."""

    expected = PAYLOAD_TYPES[kind]
    if not isinstance(payload, expected):
        raise ValidationError(
            f"Payload {type(payload).__name__} does not match request type '{kind.value}'"
        )
    if isinstance(payload, SubTaskPayload):
        if SubTaskType(payload.task.task_type) is not _SUBTASK_TYPES[kind]:
            raise ValidationError(
                f"A '{kind.value}' request must carry a '{_SUBTASK_TYPES[kind].value}' subtask"
            )
    elif isinstance(payload, PaymentPayload):
        bill = billing.require_bill(context, payload.bill_id)
        if bill.job_id != job_id:
            raise ValidationError(f"Bill {payload.bill_id} does not belong to job {job_id}")
        billing.ensure_payable(bill)
        billing.validate_payment_amount(payload.payment_amount, billing.current_remaining_balance(bill))


# ---------------------------------------------------------------------------
# Requests and decisions
# ---------------------------------------------------------------------------


def get_approval_request(context: RuntimeContext, request_id: str) -> data_manager.ApprovalRequestRow:
    """Resolve a request by identifier.

    Raises:
        NotFoundError: If the request does not exist.
    """

    for request in data_manager.iter_approval_requests(context.workbook):
        if request.request_id == request_id:
            return request
    log.warning("Approval request lookup failed for id '%s'", request_id)
    raise NotFoundError("Approval request not found")


def list_approval_requests(
    context: RuntimeContext,
    status: Optional[ApprovalStatus] = None,
    request_type: Optional[ApprovalType] = None,
) -> List[data_manager.ApprovalRequestRow]:
    """Return requests, newest first, optionally filtered by status and type."""

    status_value = ApprovalStatus(status).value if status is not None else None
    type_value = ApprovalType(request_type).value if request_type is not None else None
    requests = [
        request
        for request in data_manager.iter_approval_requests(context.workbook)
        if (status_value is None or request.status == status_value)
        and (type_value is None or request.request_type == type_value)
    ]
    requests.sort(key=lambda request: request.created_at, reverse=True)
    return requests


def create_approval_request(
    context: RuntimeContext,
    request_type: ApprovalType,
    job_id: str,
    requested_by: str,
    payload: ApprovalPayload,
    metadata: Optional[Mapping[str, Any]] = None,
    *,
    timestamp: Optional[datetime] = None,
) -> str:
    """File a pending request; nothing else changes until it is approved.

    Payment payloads are checked against the bill's current remaining
    balance at submission time.

    Returns:
        str: Identifier of the new request.

    Raises:
        NotFoundError: If the job or the referenced bill does not exist.
        ValidationError: If the payload does not fit the request type or the
            payment amount is invalid.
    """

    try:
        kind = ApprovalType(request_type)
    except ValueError as exc:
        raise ValidationError(f"Unknown approval request type: {request_type}") from exc

    moment = core_logic._resolve_timestamp(timestamp)
    with core_logic.transaction(context, "create_approval_request"):
        jobs.get_job(context, job_id)
        _check_payload(context, kind, job_id, payload)
        record = data_manager.ApprovalRequestRow(
            request_id=core_logic.generate_id("AR", when=moment),
            request_type=kind.value,
            job_id=job_id,
            requested_by=requested_by,
            request_data=serialize_payload(payload),
            status=ApprovalStatus.PENDING.value,
            created_at=core_logic.timestamp_iso(moment),
            metadata=dict(metadata) if metadata else None,
        )
        data_manager.append_approval_request(context.workbook, record)

    log.info("Filed %s approval request '%s' for job '%s' by '%s'", kind.value, record.request_id, job_id, requested_by)
    return record.request_id


def _execute_request(
    context: RuntimeContext,
    request: data_manager.ApprovalRequestRow,
    *,
    decider_id: str,
    moment: datetime,
) -> Optional[str]:
    payload = deserialize_payload(ApprovalType(request.request_type), request.request_data)
    if isinstance(payload, SubTaskPayload):
        (subtask_id,) = jobs.add_subtasks_to_job(
            context,
            request.job_id,
            [payload.task],
            is_additional=True,
            approval_status=ApprovalStatus.APPROVED.value,
            approved_by=decider_id,
            timestamp=moment,
        )
        return subtask_id
    if isinstance(payload, StatusChangePayload):
        jobs.update_job_status(context, request.job_id, payload.new_status, changed_by=decider_id, timestamp=moment)
        return None
    payment = billing.apply_approved_payment(
        context,
        payload.bill_id,
        payload.payment_amount,
        approved_by=decider_id,
        request_id=request.request_id,
        payment_method=payload.payment_method,
        notes=payload.notes,
        cheque_details=payload.cheque_details,
        timestamp=moment,
    )
    return payment.payment_id


def decide_request(
    context: RuntimeContext,
    request_id: str,
    decider_id: str,
    decision: ApprovalDecision,
    reason: Optional[str] = None,
    *,
    timestamp: Optional[datetime] = None,
) -> DecisionResult:
    """Approve or reject a pending request.

    The decision stamp and, for approvals, the execution of the captured
    payload happen in one transaction. Any failure while executing leaves
    the request pending and propagates to the caller. Who may decide which
    request type is checked by the caller through :mod:`garage_erp.permissions`.

    Args:
        context (RuntimeContext): Runtime context providing workbook access.
        request_id (str): Request to decide.
        decider_id (str): Actor recorded as ``approved_by``.
        decision (ApprovalDecision): ``approve`` or ``reject``.
        reason (str | None): Stored as the rejection reason when supplied.

    Returns:
        DecisionResult: New status and the identifier of whatever the
            approval produced.

    Raises:
        NotFoundError: If the request, or an entity it references, is unknown.
        AlreadyProcessedError: If the request is no longer pending.
    """

    try:
        choice = ApprovalDecision(decision)
    except ValueError as exc:
        raise ValidationError(f"Unknown approval decision: {decision}") from exc

    moment = core_logic._resolve_timestamp(timestamp)
    new_status = ApprovalStatus.APPROVED if choice is ApprovalDecision.APPROVE else ApprovalStatus.REJECTED

    with core_logic.transaction(context, "decide_request"):
        request = get_approval_request(context, request_id)
        if request.status != ApprovalStatus.PENDING.value:
            log.error("Approval request '%s' already %s", request_id, request.status)
            raise AlreadyProcessedError("Request has already been processed")

        field_values: Dict[str, Any] = {
            "Status": new_status.value,
            "ApprovedBy": decider_id,
            "ApprovedAt": core_logic.timestamp_iso(moment),
        }
        if reason:
            field_values["RejectionReason"] = reason
        matched = data_manager.update_approval_request(
            context.workbook,
            request_id,
            field_values=field_values,
            expected_status=ApprovalStatus.PENDING.value,
        )
        if not matched:
            raise AlreadyProcessedError("Request has already been processed")

        reference_id = None
        if new_status is ApprovalStatus.APPROVED:
            reference_id = _execute_request(context, request, decider_id=decider_id, moment=moment)

        core_logic.record_audit_entry(
            context,
            action=f"{choice.value}_request",
            resource="approval_request",
            resource_id=request_id,
            user_id=decider_id,
            new_data={"status": new_status.value, "request_type": request.request_type, "reference_id": reference_id},
            metadata={"reason": reason} if reason else None,
            timestamp=moment,
        )

    log.info("Approval request '%s' %s by '%s'", request_id, new_status.value, decider_id)
    return DecisionResult(request_id=request_id, status=new_status.value, reference_id=reference_id)


def request_status_change(
    context: RuntimeContext,
    job_id: str,
    new_status: JobStatus,
    requested_by: str,
    *,
    timestamp: Optional[datetime] = None,
) -> str:
    """File a ``status_change`` request carrying the job's current status."""

    job = jobs.get_job(context, job_id)
    payload = StatusChangePayload(
        new_status=JobStatus(new_status),
        current_status=job.status,
        vehicle_no=job.vehicle_no,
    )
    return create_approval_request(
        context,
        ApprovalType.STATUS_CHANGE,
        job_id,
        requested_by,
        payload,
        metadata={
            "current_status": job.status,
            "new_status": payload.new_status.value,
            "vehicle_no": job.vehicle_no,
        },
        timestamp=timestamp,
    )


def request_credit_payment(
    context: RuntimeContext,
    bill_id: str,
    payment_amount: money.Amount,
    requested_by: str,
    *,
    payment_method: PaymentMethod = PaymentMethod.CASH,
    notes: Optional[str] = None,
    cheque_details: Optional[Mapping[str, Any]] = None,
    timestamp: Optional[datetime] = None,
) -> str:
    """File a ``credit_payment`` request with display metadata from the bill."""

    bill = billing.require_bill(context, bill_id)
    payload = PaymentPayload(
        bill_id=bill_id,
        payment_amount=money.round_money(payment_amount),
        payment_method=PaymentMethod(payment_method),
        notes=notes,
        cheque_details=cheque_details,
    )
    return create_approval_request(
        context,
        ApprovalType.CREDIT_PAYMENT,
        bill.job_id,
        requested_by,
        payload,
        metadata={
            "customer_name": bill.customer_name,
            "credit_amount": payload.payment_amount,
            "payment_method": payload.payment_method.value,
            "remaining_balance": billing.current_remaining_balance(bill),
            "bill_id": bill_id,
        },
        timestamp=timestamp,
    )


# ---------------------------------------------------------------------------
# Approval-aware routing
# ---------------------------------------------------------------------------


def add_subtask_with_approval(
    context: RuntimeContext,
    job_id: str,
    task: jobs.SubTaskInput,
    requested_by: str,
    user_role: str,
) -> RoutingResult:
    """Add a part or service directly, or file a request when the role needs approval.

    Raises:
        PermissionDeniedError: If the role may neither add nor request it.
    """

    kind = ApprovalType.PART if SubTaskType(task.task_type) is SubTaskType.PARTS else ApprovalType.SERVICE
    permissions = get_approval_permissions(user_role)

    if permissions.can_approve(kind):
        (subtask_id,) = jobs.add_subtasks_to_job(
            context,
            job_id,
            [task],
            approval_status=ApprovalStatus.APPROVED.value,
            approved_by=requested_by,
        )
        return RoutingResult(
            applied=True,
            requires_approval=False,
            message=f"{kind.value.capitalize()} added to job",
            reference_id=subtask_id,
        )
    if permissions.can_request(kind):
        request_id = create_approval_request(
            context,
            kind,
            job_id,
            requested_by,
            SubTaskPayload(task=task),
            metadata={
                "part_type": task.parts_type,
                "service_name": task.service_type,
                "warranty_period": task.warranty_period,
            },
        )
        return RoutingResult(
            applied=False,
            requires_approval=True,
            message=f"{kind.value.capitalize()} submitted for approval",
            request_id=request_id,
        )
    log.warning("Role '%s' may not add %s to job '%s'", user_role, kind.value, job_id)
    raise PermissionDeniedError(f"You do not have permission to add a {kind.value}")


def update_job_status_with_approval(
    context: RuntimeContext,
    job_id: str,
    new_status: JobStatus,
    user_id: str,
    user_role: str,
) -> RoutingResult:
    """Change a job's status directly, or file a request for staff.

    Raises:
        NotFoundError: If the job does not exist.
        PermissionDeniedError: If the role may neither change nor request it.
    """

    job = jobs.get_job(context, job_id)
    status = JobStatus(new_status)
    permissions = get_approval_permissions(user_role)

    if permissions.can_approve(ApprovalType.STATUS_CHANGE):
        jobs.update_job_status(context, job_id, status, changed_by=user_id)
        return RoutingResult(applied=True, requires_approval=False, message=f"Job status updated to {status.value}")
    if permissions.can_request(ApprovalType.STATUS_CHANGE):
        request_id = request_status_change(context, job_id, status, user_id)
        return RoutingResult(
            applied=False,
            requires_approval=True,
            message=f"Status change request submitted for approval ({job.status} -> {status.value})",
            request_id=request_id,
        )
    log.warning("Role '%s' may not change status of job '%s'", user_role, job_id)
    raise PermissionDeniedError("You do not have permission to change job status")


def process_credit_payment_with_approval(
    context: RuntimeContext,
    bill_id: str,
    payment_amount: money.Amount,
    user_id: str,
    user_role: str,
    *,
    payment_method: PaymentMethod = PaymentMethod.CASH,
    notes: Optional[str] = None,
    cheque_details: Optional[Mapping[str, Any]] = None,
) -> RoutingResult:
    """Record a credit payment directly, or file a request for staff.

    Direct payments go through :func:`billing.record_credit_payment` with all
    of its validation.

    Raises:
        NotFoundError: If the bill does not exist.
        PermissionDeniedError: If the role may neither record nor request it.
    """

    billing.require_bill(context, bill_id)
    permissions = get_approval_permissions(user_role)
    method = PaymentMethod(payment_method)

    if permissions.can_approve(ApprovalType.CREDIT_PAYMENT):
        result = billing.record_credit_payment(
            context,
            billing.PaymentCommand(
                bill_id=bill_id,
                payment_amount=payment_amount,
                payment_method=method,
                notes=notes,
                cheque_details=cheque_details,
                processed_by=user_id,
                processor_role=user_role,
            ),
        )
        return RoutingResult(
            applied=True,
            requires_approval=False,
            message=f"Credit payment processed successfully ({method.value}: {result.payment_amount})",
            reference_id=result.payment_id,
        )
    if permissions.can_request(ApprovalType.CREDIT_PAYMENT):
        request_id = request_credit_payment(
            context,
            bill_id,
            payment_amount,
            user_id,
            payment_method=method,
            notes=notes,
            cheque_details=cheque_details,
        )
        return RoutingResult(
            applied=False,
            requires_approval=True,
            message=f"Credit payment request submitted for approval ({method.value}: {money.round_money(payment_amount)})",
            request_id=request_id,
        )
    log.warning("Role '%s' may not process payments on bill '%s'", user_role, bill_id)
    raise PermissionDeniedError("You do not have permission to process credit payments")


__all__ = [
    "SubTaskPayload",
    "StatusChangePayload",
    "PaymentPayload",
    "ApprovalPayload",
    "PAYLOAD_TYPES",
    "DecisionResult",
    "RoutingResult",
    "serialize_payload",
    "deserialize_payload",
    "get_approval_request",
    "list_approval_requests",
    "create_approval_request",
    "decide_request",
    "request_status_change",
    "request_credit_payment",
    "add_subtask_with_approval",
    "update_job_status_with_approval",
    "process_credit_payment_with_approval",
]
