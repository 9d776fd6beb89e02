"""Billing and credit-payment ledger for Garage ERP.

The module covers three closely related concerns:

* the bill status state machine (``draft -> finalized -> partially_paid ->
  paid``) with version-checked writes;
* bill creation, drafting and finalization for a job;
* the credit-payment ledger: recording payments against a bill's remaining
  balance, payment history, and the immutable "updated bill" snapshots that
  capture a bill's state after each payment.

All amounts flow through :mod:`garage_erp.money` so balances are computed in
integer cents. Bank postings and snapshot generation run as post-commit tasks
whose failures are returned as warnings rather than raised.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any, Dict, FrozenSet, List, Mapping, Optional, Sequence, Tuple

from . import banking, core_logic, data_manager, jobs, log, money
from .constants import (
    ApprovalStatus,
    BankTransactionType,
    BillStatus,
    BillType,
    ClientType,
    PaymentMethod,
    PaymentType,
    SubTaskType,
    ValidationStatus,
)
from .core_logic import (
    ConcurrentModificationError,
    InvalidStatusTransition,
    NotFoundError,
    PostCommitTask,
    RuntimeContext,
    SideEffectWarning,
    ValidationError,
)


VALID_STATUS_TRANSITIONS: Mapping[BillStatus, FrozenSet[BillStatus]] = {
    BillStatus.DRAFT: frozenset({BillStatus.DRAFT, BillStatus.FINALIZED}),
    BillStatus.FINALIZED: frozenset({BillStatus.FINALIZED, BillStatus.PARTIALLY_PAID, BillStatus.PAID}),
    BillStatus.PARTIALLY_PAID: frozenset({BillStatus.PARTIALLY_PAID, BillStatus.PAID}),
    BillStatus.PAID: frozenset({BillStatus.PAID}),
}

PAYABLE_STATUSES: FrozenSet[str] = frozenset({BillStatus.FINALIZED.value, BillStatus.PARTIALLY_PAID.value})

CONCURRENT_MODIFICATION_MESSAGE = "Bill was modified by another process. Please refresh and try again."


@dataclass(frozen=True)
class BillCommand:
    """User intent for issuing a bill (finalized or draft) for a job."""

    job_id: str
    vehicle_no: str
    customer_name: str
    customer_phone: str
    total_amount: money.Amount
    commission: Optional[money.Amount] = None
    payment_type: PaymentType = PaymentType.CASH
    initial_payment: Optional[money.Amount] = None
    vehicle_type: str = ""
    driver_name: Optional[str] = None
    client_type: ClientType = ClientType.CUSTOMER
    services: Sequence[Mapping[str, Any]] = ()
    bank_account: Optional[str] = None
    cheque_details: Optional[Mapping[str, Any]] = None
    credit_details: Optional[Mapping[str, Any]] = None
    remarks: Optional[str] = None
    created_by: Optional[str] = None
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class BillCreation:
    """Outcome of :func:`create_bill` and :func:`create_draft_bill`."""

    bill_id: str
    is_existing: bool
    status: str
    warnings: Tuple[SideEffectWarning, ...] = ()


@dataclass(frozen=True)
class StatusChange:
    """Outcome of an accepted bill status transition."""

    bill_id: str
    previous_status: str
    new_status: str
    version: int


@dataclass(frozen=True)
class PaymentCommand:
    """User intent for recording a payment against a credit bill.

    ``expected_version`` is the bill version the caller read; when omitted
    the version loaded inside the transaction is used.
    """

    bill_id: str
    payment_amount: money.Amount
    payment_method: PaymentMethod = PaymentMethod.CASH
    notes: Optional[str] = None
    cheque_details: Optional[Mapping[str, Any]] = None
    processed_by: Optional[str] = None
    processor_role: Optional[str] = None
    payment_date: Optional[datetime] = None
    expected_version: Optional[int] = None
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class PaymentResult:
    """Outcome of :func:`record_credit_payment`."""

    success: bool
    new_remaining_balance: Decimal
    is_paid_in_full: bool
    payment_amount: Decimal
    payment_id: str
    updated_bill_id: Optional[str] = None
    warnings: Tuple[SideEffectWarning, ...] = ()


@dataclass(frozen=True)
class BalanceCheck:
    """Stored remaining balance compared with the balance implied by payments."""

    bill_id: str
    stored_balance: Decimal
    expected_balance: Decimal
    total_payments: Decimal
    is_consistent: bool


# ---------------------------------------------------------------------------
# Lookups
# ---------------------------------------------------------------------------


def _ensure_bills_cache(context: RuntimeContext) -> Dict[str, Any]:
    """Populate the bill cache bucket on demand.

    Returns:
        dict[str, Any]: Bucket containing ``all`` bills in sheet order, a
            ``by_id`` lookup and ``primary_by_job`` mapping each job to its
            primary (non-snapshot) bill.
    """

    bucket = core_logic.get_cache_bucket(context, "bills")
    if "all" not in bucket:
        all_bills = list(data_manager.iter_bills(context.workbook))
        bucket["all"] = all_bills
        bucket["by_id"] = {bill.bill_id: bill for bill in all_bills}
        bucket["primary_by_job"] = {
            bill.job_id: bill for bill in all_bills if bill.bill_type != BillType.UPDATED.value
        }
        log.debug("Populated bills cache with %d entries", len(all_bills))
    return bucket


def find_primary_bill(context: RuntimeContext, job_id: str) -> Optional[data_manager.BillRow]:
    """Return the primary bill issued for ``job_id``, ignoring snapshots."""

    return _ensure_bills_cache(context)["primary_by_job"].get(job_id)


def require_bill(context: RuntimeContext, bill_id: str, message: str = "Bill not found") -> data_manager.BillRow:
    bill = _ensure_bills_cache(context)["by_id"].get(bill_id)
    if bill is None:
        log.warning("Bill lookup failed for id '%s'", bill_id)
        raise NotFoundError(message)
    return bill


def get_bill_by_id(context: RuntimeContext, bill_id_or_job_id: str) -> Optional[data_manager.BillRow]:
    """Resolve a bill by its own identifier or by the job it was issued for.

    When no bill carries the identifier, it is treated as a job id and the
    most recently created primary bill of that job is returned. Snapshots are
    reachable through their own identifier only.

    Returns:
        data_manager.BillRow | None: The matching bill, or ``None``.
    """

    cache = _ensure_bills_cache(context)
    bill = cache["by_id"].get(bill_id_or_job_id)
    if bill is not None:
        return bill

    candidates = [
        candidate
        for candidate in cache["all"]
        if candidate.job_id == bill_id_or_job_id and candidate.bill_type != BillType.UPDATED.value
    ]
    if not candidates:
        log.debug("No bill found for id or job '%s'", bill_id_or_job_id)
        return None
    return max(candidates, key=lambda candidate: candidate.created_at)


def list_bills(context: RuntimeContext, *, include_snapshots: bool = True) -> List[data_manager.BillRow]:
    """Return bills, newest first."""

    bills = [
        bill
        for bill in _ensure_bills_cache(context)["all"]
        if include_snapshots or bill.bill_type != BillType.UPDATED.value
    ]
    return sorted(bills, key=lambda bill: bill.created_at, reverse=True)


def list_draft_bills(context: RuntimeContext) -> List[data_manager.BillRow]:
    return [bill for bill in list_bills(context) if bill.status == BillStatus.DRAFT.value]


def list_credit_bills(context: RuntimeContext) -> List[data_manager.BillRow]:
    """Return outstanding credit bills, one per job, most recently updated first.

    A bill is outstanding when it is a primary credit bill in ``finalized``
    or ``partially_paid`` status with a positive remaining balance.
    """

    latest: Dict[str, data_manager.BillRow] = {}
    for bill in _ensure_bills_cache(context)["all"]:
        if bill.bill_type == BillType.UPDATED.value:
            continue
        if bill.payment_type != PaymentType.CREDIT.value or bill.status not in PAYABLE_STATUSES:
            continue
        if bill.remaining_balance is None or bill.remaining_balance <= 0:
            continue
        current = latest.get(bill.job_id)
        if current is None or bill.updated_at > current.updated_at:
            latest[bill.job_id] = bill
    return sorted(latest.values(), key=lambda bill: bill.updated_at, reverse=True)


# ---------------------------------------------------------------------------
# Status state machine
# ---------------------------------------------------------------------------


def validate_status_transition(current_status: str, new_status: str) -> bool:
    """Return ``True`` when a bill may move from ``current_status`` to ``new_status``.

    Unknown statuses on either side are never valid.
    """

    try:
        current = BillStatus(current_status)
        target = BillStatus(new_status)
    except ValueError:
        return False
    return target in VALID_STATUS_TRANSITIONS[current]


def update_bill_status(
    context: RuntimeContext,
    bill_id: str,
    new_status: BillStatus,
    *,
    reason: Optional[str] = None,
    expected_version: Optional[int] = None,
    timestamp: Optional[datetime] = None,
) -> StatusChange:
    """Move a bill to ``new_status`` with an optimistic version check.

    The transition is checked against :data:`VALID_STATUS_TRANSITIONS`, a
    status-history entry is appended, ``version`` is incremented and
    ``finalized_at`` is stamped when the bill becomes ``finalized``. The write
    only applies when the stored version still equals ``expected_version``
    (or, when omitted, the version read inside the transaction).

    Args:
        context (RuntimeContext): Runtime context providing workbook access.
        bill_id (str): Bill to transition.
        new_status (BillStatus): Target status.
        reason (str | None): Text recorded in the status history. Defaults to
            a description of the transition.
        expected_version (int | None): Version the caller read.

    Returns:
        StatusChange: Previous and new status plus the new version.

    Raises:
        NotFoundError: If the bill does not exist.
        InvalidStatusTransition: If the transition is not allowed.
        ConcurrentModificationError: If the version check matched no row.
    """

    moment = core_logic._resolve_timestamp(timestamp)
    stamp = core_logic.timestamp_iso(moment)
    with core_logic.transaction(context, "update_bill_status"):
        bill = require_bill(context, bill_id)
        target = str(getattr(new_status, "value", new_status))
        if not validate_status_transition(bill.status, target):
            log.error("Rejected bill '%s' transition %s -> %s", bill_id, bill.status, target)
            raise InvalidStatusTransition(f"Invalid status transition from {bill.status} to {target}")

        version_read = bill.version if expected_version is None else expected_version
        entry = data_manager.StatusHistoryEntry(
            status=target,
            timestamp=stamp,
            reason=reason or f"Status changed from {bill.status} to {target}",
        )
        field_values: Dict[str, Any] = {
            "Status": target,
            "UpdatedAt": stamp,
            "StatusHistory": data_manager.serialize_status_history([*bill.status_history, entry]),
            "Version": version_read + 1,
        }
        if target == BillStatus.FINALIZED.value:
            field_values["FinalizedAt"] = stamp

        matched = data_manager.update_bill(
            context.workbook,
            bill_id,
            field_values=field_values,
            expected_version=version_read,
        )
        if not matched:
            log.error(
                "Version conflict on bill '%s': expected version %s, stored %s",
                bill_id,
                version_read,
                bill.version,
            )
            raise ConcurrentModificationError(CONCURRENT_MODIFICATION_MESSAGE)

    log.info("Updated bill '%s' status from %s to %s", bill_id, bill.status, target)
    return StatusChange(bill_id=bill_id, previous_status=bill.status, new_status=target, version=version_read + 1)


# ---------------------------------------------------------------------------
# Bill lifecycle
# ---------------------------------------------------------------------------


def _parse_amount(value: Optional[money.Amount]) -> Optional[Decimal]:
    if value is None:
        return None
    try:
        return money.to_decimal(value)
    except ValueError:
        return None


def validate_bill_data(command: BillCommand) -> List[str]:
    """Collect every validation error of a bill command.

    Returns:
        list[str]: Human-readable messages; empty when the command is valid.
    """

    errors: List[str] = []
    if not command.job_id.strip():
        errors.append("Job ID is required")
    if not command.vehicle_no.strip():
        errors.append("Vehicle number is required")
    if not command.customer_name.strip():
        errors.append("Customer name is required")
    if not command.customer_phone.strip():
        errors.append("Customer phone is required for billing")

    total = _parse_amount(command.total_amount)
    if total is None or total <= 0:
        errors.append("Total amount must be a positive number")

    commission = _parse_amount(command.commission)
    if command.commission is not None and (commission is None or commission < 0):
        errors.append("Commission must be a non-negative number")

    payment_type = str(getattr(command.payment_type, "value", command.payment_type))
    if payment_type not in {member.value for member in PaymentType}:
        errors.append(f"Unsupported payment type: {payment_type}")
    if payment_type == PaymentType.CREDIT.value and command.initial_payment is not None:
        initial = _parse_amount(command.initial_payment)
        if initial is None:
            errors.append("Initial payment must be a number")
        elif initial < 0:
            errors.append("Initial payment cannot be negative")
        elif total is not None and total > 0:
            final_amount = money.add_money(total, commission if commission and commission > 0 else 0)
            if money.round_money(initial) > final_amount:
                errors.append("Initial payment cannot exceed final amount")

    if payment_type == PaymentType.CHEQUE.value:
        cheque_number = str((command.cheque_details or {}).get("cheque_number") or "").strip()
        if not cheque_number:
            errors.append("Cheque number is required for cheque payments")

    return errors


def _require_valid_bill(command: BillCommand) -> None:
    errors = validate_bill_data(command)
    if errors:
        log.error("Bill validation failed for job '%s': %s", command.job_id, "; ".join(errors))
        raise ValidationError(f"Invalid bill data: {', '.join(errors)}", errors)


def _insert_bill(
    context: RuntimeContext,
    command: BillCommand,
    additional_services: Sequence[str],
    *,
    status: BillStatus,
    reason: str,
    moment: datetime,
) -> data_manager.BillRow:
    """Build and append a primary bill; must run inside a transaction."""

    jobs.get_job(context, command.job_id)
    stamp = core_logic.timestamp_iso(moment)

    if additional_services:
        jobs.add_subtasks_to_job(
            context,
            command.job_id,
            [
                jobs.SubTaskInput(task_type=SubTaskType.SERVICE, service_type=service, is_completed=True)
                for service in additional_services
            ],
            is_additional=True,
            approval_status=ApprovalStatus.APPROVED.value,
            approved_by=command.created_by or context.settings.default_actor_id,
            timestamp=moment,
        )

    amounts = money.calculate_financial_amounts(
        command.total_amount,
        command.commission,
        command.initial_payment,
    )
    record = data_manager.BillRow(
        bill_id=core_logic.generate_id("B", when=moment),
        job_id=command.job_id,
        vehicle_no=command.vehicle_no.strip(),
        customer_name=command.customer_name.strip(),
        customer_phone=command.customer_phone.strip(),
        total_amount=amounts.total_amount,
        commission=amounts.commission,
        final_amount=amounts.final_amount,
        payment_type=PaymentType(command.payment_type).value,
        status=status.value,
        version=1,
        created_at=stamp,
        updated_at=stamp,
        bill_type=BillType.ORIGINAL.value,
        vehicle_type=command.vehicle_type,
        driver_name=command.driver_name,
        client_type=ClientType(command.client_type).value,
        services=[dict(service) for service in command.services],
        bank_account=command.bank_account,
        initial_payment=amounts.initial_payment,
        remaining_balance=amounts.remaining_balance,
        is_paid_in_full=amounts.remaining_balance == 0,
        cheque_details=dict(command.cheque_details) if command.cheque_details else None,
        credit_details=dict(command.credit_details) if command.credit_details else None,
        remarks=command.remarks,
        status_history=[data_manager.StatusHistoryEntry(status=status.value, timestamp=stamp, reason=reason)],
        finalized_at=stamp if status is BillStatus.FINALIZED else None,
    )
    try:
        data_manager.append_bill(context.workbook, record)
    except data_manager.DuplicateKeyError as exc:
        log.error("Duplicate primary bill for job '%s'", command.job_id)
        raise ValidationError("A bill already exists for this job") from exc
    return record


def _bank_credit_task(
    context: RuntimeContext,
    account_id: str,
    amount: Decimal,
    description: str,
    *,
    bill_id: str,
    payment_id: Optional[str] = None,
    processed_by: Optional[str] = None,
) -> PostCommitTask:
    def action() -> Optional[str]:
        result = banking.update_bank_account_balance(
            context,
            account_id,
            amount,
            BankTransactionType.CREDIT,
            description,
            bill_id=bill_id,
            payment_id=payment_id,
            processed_by=processed_by,
        )
        return None if result.success else result.error

    return PostCommitTask(name="bank_credit", action=action)


def create_bill(
    context: RuntimeContext,
    command: BillCommand,
    additional_services: Optional[Sequence[str]] = None,
) -> BillCreation:
    """Issue a finalized bill for a job, or return the one that already exists.

    Additional services are appended to the job as completed, approved
    subtasks in the same transaction as the bill insert. For non-cash bills
    linked to a bank account, the final amount is credited to that account
    after commit.

    Returns:
        BillCreation: The bill identifier, whether it already existed, its
            status, and warnings from post-commit side effects.

    Raises:
        ValidationError: If the command fails :func:`validate_bill_data`.
        NotFoundError: If the job does not exist.
    """

    _require_valid_bill(command)
    moment = core_logic._resolve_timestamp(command.timestamp)

    with core_logic.transaction(context, "create_bill"):
        existing = find_primary_bill(context, command.job_id)
        if existing is not None:
            log.info("Bill already exists for job '%s', using existing bill '%s'", command.job_id, existing.bill_id)
            return BillCreation(bill_id=existing.bill_id, is_existing=True, status=existing.status)
        record = _insert_bill(
            context,
            command,
            additional_services or (),
            status=BillStatus.FINALIZED,
            reason="Bill created and finalized",
            moment=moment,
        )

    log.info(
        "Created bill '%s' for job '%s' (final=%s, remaining=%s)",
        record.bill_id,
        record.job_id,
        record.final_amount,
        record.remaining_balance,
    )

    tasks: List[PostCommitTask] = []
    if record.payment_type != PaymentType.CASH.value and record.bank_account:
        tasks.append(
            _bank_credit_task(
                context,
                record.bank_account,
                record.final_amount,
                f"Bill created for {record.vehicle_no} - {record.customer_name}",
                bill_id=record.bill_id,
                processed_by="system",
            )
        )
    warnings = core_logic.run_post_commit_tasks(tasks)
    return BillCreation(
        bill_id=record.bill_id,
        is_existing=False,
        status=record.status,
        warnings=tuple(warnings),
    )


def create_draft_bill(
    context: RuntimeContext,
    command: BillCommand,
    additional_services: Optional[Sequence[str]] = None,
) -> BillCreation:
    """Create a draft bill for a job, reusing an existing draft.

    Raises:
        ValidationError: If the command is invalid or the job already has a
            bill past the draft stage.
        NotFoundError: If the job does not exist.
    """

    _require_valid_bill(command)
    moment = core_logic._resolve_timestamp(command.timestamp)

    with core_logic.transaction(context, "create_draft_bill"):
        existing = find_primary_bill(context, command.job_id)
        if existing is not None:
            if existing.status == BillStatus.DRAFT.value:
                log.info("Draft bill already exists for job '%s': '%s'", command.job_id, existing.bill_id)
                return BillCreation(bill_id=existing.bill_id, is_existing=True, status=existing.status)
            log.error("Draft rejected: job '%s' already has a %s bill", command.job_id, existing.status)
            raise ValidationError(f"A {existing.status} bill already exists for this job")
        record = _insert_bill(
            context,
            command,
            additional_services or (),
            status=BillStatus.DRAFT,
            reason="Bill created as draft",
            moment=moment,
        )

    log.info("Created draft bill '%s' for job '%s'", record.bill_id, record.job_id)
    return BillCreation(bill_id=record.bill_id, is_existing=False, status=record.status)


def finalize_bill(context: RuntimeContext, bill_id: str, *, expected_version: Optional[int] = None) -> StatusChange:
    """Promote a draft bill to ``finalized``."""

    return update_bill_status(
        context,
        bill_id,
        BillStatus.FINALIZED,
        reason="Bill finalized from draft status",
        expected_version=expected_version,
    )


# ---------------------------------------------------------------------------
# Credit payment ledger
# ---------------------------------------------------------------------------


def _format_amount(value: Decimal) -> str:
    return f"{value.normalize():f}"


def current_remaining_balance(bill: data_manager.BillRow) -> Decimal:
    """Return the bill's outstanding balance.

    A blank balance means no payment has been applied yet, so the final
    amount is owed. An explicit zero is a real balance.
    """

    balance = bill.remaining_balance if bill.remaining_balance is not None else bill.final_amount
    return money.round_money(balance)


def validate_payment_amount(amount: money.Amount, current_balance: Decimal) -> Decimal:
    """Check ``0 < amount <= current_balance`` and return the rounded amount.

    Raises:
        ValidationError: If the amount is not a positive number or exceeds
            the balance.
    """

    try:
        value = money.to_decimal(amount)
    except ValueError as exc:
        raise ValidationError("Payment amount must be a positive number") from exc
    if not value.is_finite() or value <= 0:
        raise ValidationError("Payment amount must be a positive number")
    if value > current_balance:
        raise ValidationError(
            f"Payment amount ({_format_amount(value)}) cannot exceed remaining balance "
            f"({_format_amount(current_balance)})"
        )
    return money.round_money(value)


def ensure_payable(bill: data_manager.BillRow) -> None:
    """Raise ``ValidationError`` unless ``bill`` can take a credit payment."""

    if bill.bill_type == BillType.UPDATED.value:
        raise ValidationError("Cannot record payments against a bill snapshot")
    if bill.payment_type != PaymentType.CREDIT.value:
        log.error("Payment rejected: bill '%s' is a %s bill", bill.bill_id, bill.payment_type)
        raise ValidationError("Can only record payments for credit bills")
    if bill.status not in PAYABLE_STATUSES:
        log.error("Payment rejected: bill '%s' is %s", bill.bill_id, bill.status)
        raise ValidationError("Can only record payments for finalized or partially paid bills")


def _write_payment(
    context: RuntimeContext,
    bill: data_manager.BillRow,
    amount: Decimal,
    *,
    method: str,
    validation_status: str,
    moment: datetime,
    expected_version: int,
    notes: Optional[str] = None,
    cheque_details: Optional[Mapping[str, Any]] = None,
    processed_by: Optional[str] = None,
    payment_date: Optional[datetime] = None,
    approval_request_id: Optional[str] = None,
) -> data_manager.CreditPaymentRow:
    """Insert a payment row and apply it to the bill; runs inside a transaction.

    Raises:
        ValidationError: If the bill is not a credit bill.
        InvalidStatusTransition: If the bill status may not take a payment.
        ConcurrentModificationError: If the bill version changed.
    """

    stamp = core_logic.timestamp_iso(moment)
    previous_balance = current_remaining_balance(bill)
    new_balance = money.subtract_money(previous_balance, amount, floor_at_zero=True)
    new_status = BillStatus.PAID if new_balance == 0 else BillStatus.PARTIALLY_PAID
    if bill.payment_type != PaymentType.CREDIT.value:
        log.error("Payment rejected: bill '%s' is a %s bill", bill.bill_id, bill.payment_type)
        raise ValidationError("Can only record payments for credit bills")
    if not validate_status_transition(bill.status, new_status.value):
        log.error("Payment on bill '%s' would move it from %s to %s", bill.bill_id, bill.status, new_status.value)
        raise InvalidStatusTransition(f"Invalid status transition from {bill.status} to {new_status.value}")

    payment = data_manager.CreditPaymentRow(
        payment_id=core_logic.generate_id("P", when=moment),
        bill_id=bill.bill_id,
        job_id=bill.job_id,
        customer_name=bill.customer_name,
        vehicle_no=bill.vehicle_no,
        payment_amount=amount,
        payment_date=core_logic.timestamp_iso(payment_date or moment),
        payment_method=method,
        previous_balance=previous_balance,
        new_balance=new_balance,
        validation_status=validation_status,
        created_at=stamp,
        notes=notes,
        cheque_details=dict(cheque_details) if cheque_details else None,
        processed_by=processed_by,
        approval_request_id=approval_request_id,
    )
    data_manager.append_credit_payment(context.workbook, payment)

    entry = data_manager.StatusHistoryEntry(
        status=new_status.value,
        timestamp=stamp,
        reason=f"Payment of {_format_amount(amount)} recorded",
    )
    matched = data_manager.update_bill(
        context.workbook,
        bill.bill_id,
        field_values={
            "RemainingBalance": new_balance,
            "Status": new_status.value,
            "LastPaymentDate": stamp,
            "UpdatedAt": stamp,
            "IsPaidInFull": new_balance == 0,
            "StatusHistory": data_manager.serialize_status_history([*bill.status_history, entry]),
            "Version": expected_version + 1,
        },
        expected_version=expected_version,
    )
    if not matched:
        log.error("Version conflict recording payment on bill '%s' (expected version %s)", bill.bill_id, expected_version)
        raise ConcurrentModificationError(CONCURRENT_MODIFICATION_MESSAGE)
    return payment


def record_credit_payment(context: RuntimeContext, command: PaymentCommand) -> PaymentResult:
    """Record a payment against a credit bill's remaining balance.

    Inside one transaction the bill is loaded and checked (credit bill,
    payable status, ``0 < amount <= remaining``), an immutable payment row is
    inserted, the bill's balance and status are updated under a version
    check, and an audit entry is written. After commit, a non-cash payment is
    credited to the bill's bank account and an updated-bill snapshot is
    generated; failures of either become warnings on the result.

    Returns:
        PaymentResult: New balance, paid-in-full flag, rounded amount, payment
            and snapshot identifiers, and side-effect warnings.

    Raises:
        NotFoundError: If the bill does not exist.
        ValidationError: For non-credit bills, non-payable statuses, snapshot
            bills, or an invalid amount.
        ConcurrentModificationError: If the bill changed concurrently.
    """

    moment = core_logic._resolve_timestamp(command.timestamp)
    method = PaymentMethod(command.payment_method)

    with core_logic.transaction(context, "record_credit_payment"):
        bill = require_bill(context, command.bill_id)
        ensure_payable(bill)

        try:
            amount = validate_payment_amount(command.payment_amount, current_remaining_balance(bill))
        except ValidationError:
            log.error("Payment amount %s rejected for bill '%s'", command.payment_amount, bill.bill_id)
            raise

        payment = _write_payment(
            context,
            bill,
            amount,
            method=method.value,
            validation_status=(
                ValidationStatus.PENDING.value if method is PaymentMethod.CHEQUE else ValidationStatus.VERIFIED.value
            ),
            moment=moment,
            expected_version=bill.version if command.expected_version is None else command.expected_version,
            notes=command.notes,
            cheque_details=command.cheque_details,
            processed_by=command.processed_by,
            payment_date=command.payment_date,
        )
        core_logic.record_audit_entry(
            context,
            action="create_payment",
            resource="credit_payment",
            resource_id=payment.payment_id,
            user_id=command.processed_by,
            user_role=command.processor_role or "unknown",
            new_data={
                "bill_id": bill.bill_id,
                "payment_amount": amount,
                "payment_method": method.value,
                "new_balance": payment.new_balance,
            },
            metadata={"bill_vehicle_no": bill.vehicle_no, "customer_name": bill.customer_name},
            timestamp=moment,
        )

    log.info(
        "Recorded payment of %s for bill '%s'. New balance: %s",
        amount,
        bill.bill_id,
        payment.new_balance,
    )

    tasks: List[PostCommitTask] = []
    if method is not PaymentMethod.CASH and bill.bank_account:
        tasks.append(
            _bank_credit_task(
                context,
                bill.bank_account,
                amount,
                f"Payment received for bill {bill.bill_id} - {bill.vehicle_no}",
                bill_id=bill.bill_id,
                payment_id=payment.payment_id,
                processed_by=command.processed_by,
            )
        )

    snapshot_ids: List[str] = []

    def snapshot_action() -> Optional[str]:
        snapshot_ids.append(generate_updated_bill(context, bill.bill_id, payment))
        return None

    tasks.append(PostCommitTask(name="updated_bill_snapshot", action=snapshot_action))
    warnings = core_logic.run_post_commit_tasks(tasks)

    return PaymentResult(
        success=True,
        new_remaining_balance=payment.new_balance,
        is_paid_in_full=payment.new_balance == 0,
        payment_amount=amount,
        payment_id=payment.payment_id,
        updated_bill_id=snapshot_ids[0] if snapshot_ids else None,
        warnings=tuple(warnings),
    )


def apply_approved_payment(
    context: RuntimeContext,
    bill_id: str,
    amount: money.Amount,
    *,
    approved_by: str,
    request_id: str,
    payment_method: PaymentMethod = PaymentMethod.CASH,
    notes: Optional[str] = None,
    cheque_details: Optional[Mapping[str, Any]] = None,
    timestamp: Optional[datetime] = None,
) -> data_manager.CreditPaymentRow:
    """Apply a payment whose amount was validated when the request was filed.

    The payment is stored as ``verified`` and processed by the approver. The
    bill balance is recomputed in cents and clamped at zero, and the write is
    version-checked. Callers normally run this inside their own transaction.

    Raises:
        NotFoundError: If the bill no longer exists.
        InvalidStatusTransition: If the bill is no longer payable, for example
            a draft.
        ConcurrentModificationError: If the bill changed concurrently.
    """

    moment = core_logic._resolve_timestamp(timestamp)
    with core_logic.transaction(context, "apply_approved_payment"):
        bill = require_bill(context, bill_id)
        payment = _write_payment(
            context,
            bill,
            money.round_money(amount),
            method=PaymentMethod(payment_method).value,
            validation_status=ValidationStatus.VERIFIED.value,
            moment=moment,
            expected_version=bill.version,
            notes=notes,
            cheque_details=cheque_details,
            processed_by=approved_by,
            approval_request_id=request_id,
        )
    log.info(
        "Applied approved payment '%s' of %s to bill '%s' (balance %s)",
        payment.payment_id,
        payment.payment_amount,
        bill_id,
        payment.new_balance,
    )
    return payment


def generate_updated_bill(
    context: RuntimeContext,
    bill_id: str,
    payment: data_manager.CreditPaymentRow,
    *,
    timestamp: Optional[datetime] = None,
) -> str:
    """Insert an immutable snapshot of a bill as it stood after ``payment``.

    The snapshot copies the original bill, takes its balance and status from
    the payment's ``new_balance`` and carries a ``payment_summary`` with the
    full payment history up to and including ``payment``.

    Returns:
        str: Identifier of the snapshot bill.

    Raises:
        NotFoundError: If the original bill does not exist.
    """

    moment = core_logic._resolve_timestamp(timestamp)
    stamp = core_logic.timestamp_iso(moment)
    with core_logic.transaction(context, "generate_updated_bill"):
        original = require_bill(context, bill_id, "Original bill not found")
        history = [
            entry
            for entry in data_manager.iter_credit_payments(context.workbook)
            if entry.bill_id == bill_id and entry.created_at <= payment.created_at
        ]
        history.sort(key=lambda entry: entry.created_at)
        new_balance = payment.new_balance
        summary = {
            "total_amount": original.final_amount,
            "total_payments": money.subtract_money(original.final_amount, new_balance),
            "remaining_balance": new_balance,
            "payment_history": [
                {
                    "payment_id": entry.payment_id,
                    "amount": entry.payment_amount,
                    "date": entry.payment_date,
                    "method": entry.payment_method,
                    "new_balance": entry.new_balance,
                }
                for entry in history
            ],
            "last_payment": {
                "amount": payment.payment_amount,
                "date": payment.payment_date,
                "new_balance": new_balance,
            },
        }
        snapshot = replace(
            original,
            bill_id=core_logic.generate_id("BU", when=moment),
            bill_type=BillType.UPDATED.value,
            original_bill_id=bill_id,
            remaining_balance=new_balance,
            status=(BillStatus.PAID if new_balance == 0 else BillStatus.PARTIALLY_PAID).value,
            is_paid_in_full=new_balance == 0,
            payment_summary=summary,
            last_payment_date=payment.payment_date,
            generated_at=stamp,
            updated_at=stamp,
        )
        data_manager.append_bill(context.workbook, snapshot)

    log.info("Generated updated bill '%s' from '%s' after payment '%s'", snapshot.bill_id, bill_id, payment.payment_id)
    return snapshot.bill_id


def get_credit_payment_history(context: RuntimeContext, bill_id: str) -> List[data_manager.CreditPaymentRow]:
    """Return the payments recorded against ``bill_id``, newest first."""

    payments = [
        payment
        for payment in data_manager.iter_credit_payments(context.workbook)
        if payment.bill_id == bill_id
    ]
    payments.sort(key=lambda payment: payment.created_at, reverse=True)
    return payments


def _as_aware(moment: datetime) -> datetime:
    return moment if moment.tzinfo is not None else moment.replace(tzinfo=UTC)


def list_credit_payments(
    context: RuntimeContext,
    *,
    vehicle_no: Optional[str] = None,
    customer_name: Optional[str] = None,
    payment_method: Optional[PaymentMethod] = None,
    validation_status: Optional[ValidationStatus] = None,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    limit: int = 50,
    offset: int = 0,
) -> Tuple[List[data_manager.CreditPaymentRow], int]:
    """Filter and paginate the payment ledger.

    ``vehicle_no`` and ``customer_name`` match case-insensitive substrings.
    Results are sorted by payment date, newest first.

    Returns:
        tuple[list[CreditPaymentRow], int]: The requested page and the total
            number of matching payments.
    """

    method = PaymentMethod(payment_method).value if payment_method is not None else None
    status = ValidationStatus(validation_status).value if validation_status is not None else None
    lower = _as_aware(date_from) if date_from is not None else None
    upper = _as_aware(date_to) if date_to is not None else None

    matches = []
    for payment in data_manager.iter_credit_payments(context.workbook):
        if vehicle_no and vehicle_no.casefold() not in payment.vehicle_no.casefold():
            continue
        if customer_name and customer_name.casefold() not in payment.customer_name.casefold():
            continue
        if method is not None and payment.payment_method != method:
            continue
        if status is not None and payment.validation_status != status:
            continue
        if lower is not None or upper is not None:
            paid_at = _as_aware(datetime.fromisoformat(payment.payment_date))
            if lower is not None and paid_at < lower:
                continue
            if upper is not None and paid_at > upper:
                continue
        matches.append(payment)

    matches.sort(key=lambda payment: payment.payment_date, reverse=True)
    return matches[offset:offset + limit], len(matches)


def reconcile_bill_balance(context: RuntimeContext, bill_id: str) -> BalanceCheck:
    """Compare a bill's stored balance with the balance implied by its payments.

    The expected balance is ``final_amount - initial_payment - sum(payments)``
    clamped at zero.

    Raises:
        NotFoundError: If the bill does not exist.
    """

    bill = require_bill(context, bill_id)
    total_payments = money.add_money(
        *(payment.payment_amount for payment in get_credit_payment_history(context, bill_id))
    )
    expected = money.subtract_money(
        bill.final_amount,
        money.add_money(bill.initial_payment, total_payments),
        floor_at_zero=True,
    )
    stored = current_remaining_balance(bill)
    check = BalanceCheck(
        bill_id=bill_id,
        stored_balance=stored,
        expected_balance=expected,
        total_payments=total_payments,
        is_consistent=stored == expected,
    )
    if not check.is_consistent:
        log.warning("Bill '%s' balance drift: stored %s, expected %s", bill_id, stored, expected)
    return check


__all__ = [
    "VALID_STATUS_TRANSITIONS",
    "PAYABLE_STATUSES",
    "BillCommand",
    "BillCreation",
    "StatusChange",
    "PaymentCommand",
    "PaymentResult",
    "BalanceCheck",
    "find_primary_bill",
    "require_bill",
    "get_bill_by_id",
    "list_bills",
    "list_draft_bills",
    "list_credit_bills",
    "validate_status_transition",
    "update_bill_status",
    "validate_bill_data",
    "create_bill",
    "create_draft_bill",
    "finalize_bill",
    "current_remaining_balance",
    "validate_payment_amount",
    "record_credit_payment",
    "apply_approved_payment",
    "generate_updated_bill",
    "get_credit_payment_history",
    "list_credit_payments",
    "reconcile_bill_balance",
]
