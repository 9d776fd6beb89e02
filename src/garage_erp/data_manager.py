"""Data access layer for Garage ERP.

This module provides low-level helpers that read from and write to the
master workbook. Business logic belongs elsewhere.

The public API is designed around four responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Workbook lifecycle: opening, validating, and persisting the Excel file.
3. Sheet operations: loading structured records and appending, updating or
   deleting individual rows. Each worksheet plays the role of a document
   collection; nested fields are stored as JSON text in a single cell.
4. Transaction support: snapshotting every worksheet so a failed unit of
   work can be rolled back in memory.
"""


from __future__ import annotations

import configparser
import json
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from openpyxl.workbook import Workbook
import openpyxl

from . import log, money
from .constants import SheetName


CONFIG_FILE_NAME = "config.ini"
JOBS_SHEET = SheetName.JOBS.value
BILLS_SHEET = SheetName.BILLS.value
CREDIT_PAYMENTS_SHEET = SheetName.CREDIT_PAYMENTS.value
APPROVAL_REQUESTS_SHEET = SheetName.APPROVAL_REQUESTS.value
BANK_ACCOUNTS_SHEET = SheetName.BANK_ACCOUNTS.value
BANK_TRANSACTIONS_SHEET = SheetName.BANK_TRANSACTIONS.value
AUDIT_LOG_SHEET = SheetName.AUDIT_LOG.value

# Worksheet schema: column order matters, rows are serialized positionally.
SHEET_COLUMNS: Mapping[str, Sequence[str]] = {
    JOBS_SHEET: [
        "JobID",
        "VehicleNo",
        "CustomerName",
        "CustomerPhone",
        "DamageRemarks",
        "DamagePhotos",
        "Image",
        "SubTasks",
        "Status",
        "IsCompanyVehicle",
        "CompanyName",
        "Deleted",
        "LastStatusChangeBy",
        "LastStatusChangeAt",
        "CreatedAt",
        "UpdatedAt",
    ],
    BILLS_SHEET: [
        "BillID",
        "JobID",
        "BillType",
        "OriginalBillID",
        "VehicleNo",
        "VehicleType",
        "CustomerName",
        "CustomerPhone",
        "DriverName",
        "ClientType",
        "Services",
        "TotalAmount",
        "Commission",
        "FinalAmount",
        "BankAccount",
        "PaymentType",
        "Status",
        "InitialPayment",
        "RemainingBalance",
        "IsPaidInFull",
        "ChequeDetails",
        "CreditDetails",
        "Remarks",
        "Version",
        "StatusHistory",
        "PaymentSummary",
        "CreatedAt",
        "FinalizedAt",
        "LastPaymentDate",
        "UpdatedAt",
        "GeneratedAt",
    ],
    CREDIT_PAYMENTS_SHEET: [
        "PaymentID",
        "BillID",
        "JobID",
        "CustomerName",
        "VehicleNo",
        "PaymentAmount",
        "PaymentDate",
        "PaymentMethod",
        "Notes",
        "ChequeDetails",
        "PreviousBalance",
        "NewBalance",
        "ProcessedBy",
        "ValidationStatus",
        "ApprovalRequestID",
        "CreatedAt",
    ],
    APPROVAL_REQUESTS_SHEET: [
        "RequestID",
        "RequestType",
        "JobID",
        "RequestedBy",
        "RequestData",
        "Status",
        "ApprovedBy",
        "ApprovedAt",
        "RejectionReason",
        "Metadata",
        "CreatedAt",
    ],
    BANK_ACCOUNTS_SHEET: [
        "AccountID",
        "AccountName",
        "AccountNumber",
        "BankName",
        "AccountType",
        "CurrentBalance",
        "TotalBalance",
        "IsActive",
        "Description",
        "CreatedAt",
        "UpdatedAt",
    ],
    BANK_TRANSACTIONS_SHEET: [
        "TransactionID",
        "AccountID",
        "TransactionType",
        "Amount",
        "Description",
        "BillID",
        "PaymentID",
        "BalanceAfter",
        "Date",
        "ProcessedBy",
    ],
    AUDIT_LOG_SHEET: [
        "EntryID",
        "Timestamp",
        "UserID",
        "UserRole",
        "Action",
        "Resource",
        "ResourceID",
        "NewData",
        "Success",
        "ErrorMessage",
        "Metadata",
    ],
}

# Columns whose cell holds JSON text rather than a scalar.
JSON_COLUMNS = frozenset(
    {
        "DamagePhotos",
        "SubTasks",
        "Services",
        "ChequeDetails",
        "CreditDetails",
        "StatusHistory",
        "PaymentSummary",
        "RequestData",
        "Metadata",
        "NewData",
    }
)


class DuplicateKeyError(ValueError):
    """Raised when an insert would violate a uniqueness constraint."""


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    shop_name: str
    schema_version: str
    default_actor_id: str
    default_bank_account_id: Optional[str] = None


@dataclass(frozen=True)
class SubTaskRecord:
    """A part or service line item embedded in a job."""

    subtask_id: str
    task_type: str
    parts_type: Optional[str] = None
    service_type: Optional[str] = None
    parts_brand: Optional[str] = None
    is_completed: bool = False
    is_additional: bool = False
    warranty_period: Optional[int] = None
    approval_status: Optional[str] = None
    approved_by: Optional[str] = None
    approved_at: Optional[str] = None
    added_at: Optional[str] = None


@dataclass(frozen=True)
class StatusHistoryEntry:
    """One accepted bill status transition."""

    status: str
    timestamp: str
    reason: Optional[str] = None


@dataclass(frozen=True)
class JobRow:
    """In-memory view of a row from the ``Jobs`` sheet."""

    job_id: str
    vehicle_no: str
    status: str
    created_at: str
    updated_at: str
    customer_name: str = ""
    customer_phone: str = ""
    damage_remarks: str = ""
    damage_photos: List[str] = field(default_factory=list)
    image: str = ""
    sub_tasks: List[SubTaskRecord] = field(default_factory=list)
    is_company_vehicle: bool = False
    company_name: str = ""
    deleted: bool = False
    last_status_change_by: Optional[str] = None
    last_status_change_at: Optional[str] = None


@dataclass(frozen=True)
class BillRow:
    """In-memory view of a row from the ``Bills`` sheet."""

    bill_id: str
    job_id: str
    vehicle_no: str
    customer_name: str
    customer_phone: str
    total_amount: Decimal
    commission: Decimal
    final_amount: Decimal
    payment_type: str
    status: str
    version: int
    created_at: str
    updated_at: str
    bill_type: str = "original"
    original_bill_id: Optional[str] = None
    vehicle_type: str = ""
    driver_name: Optional[str] = None
    client_type: str = "Customer"
    services: List[Dict[str, Any]] = field(default_factory=list)
    bank_account: Optional[str] = None
    initial_payment: Decimal = Decimal("0.00")
    remaining_balance: Optional[Decimal] = None
    is_paid_in_full: bool = False
    cheque_details: Optional[Dict[str, Any]] = None
    credit_details: Optional[Dict[str, Any]] = None
    remarks: Optional[str] = None
    status_history: List[StatusHistoryEntry] = field(default_factory=list)
    payment_summary: Optional[Dict[str, Any]] = None
    finalized_at: Optional[str] = None
    last_payment_date: Optional[str] = None
    generated_at: Optional[str] = None


@dataclass(frozen=True)
class CreditPaymentRow:
    """In-memory view of a row from the ``CreditPayments`` sheet."""

    payment_id: str
    bill_id: str
    job_id: str
    customer_name: str
    vehicle_no: str
    payment_amount: Decimal
    payment_date: str
    payment_method: str
    previous_balance: Decimal
    new_balance: Decimal
    validation_status: str
    created_at: str
    notes: Optional[str] = None
    cheque_details: Optional[Dict[str, Any]] = None
    processed_by: Optional[str] = None
    approval_request_id: Optional[str] = None


@dataclass(frozen=True)
class ApprovalRequestRow:
    """In-memory view of a row from the ``ApprovalRequests`` sheet."""

    request_id: str
    request_type: str
    job_id: str
    requested_by: str
    request_data: Dict[str, Any]
    status: str
    created_at: str
    approved_by: Optional[str] = None
    approved_at: Optional[str] = None
    rejection_reason: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None


@dataclass(frozen=True)
class BankAccountRow:
    """In-memory view of a row from the ``BankAccounts`` sheet."""

    account_id: str
    account_name: str
    account_number: str
    bank_name: str
    account_type: str
    current_balance: Decimal
    total_balance: Decimal
    is_active: bool
    created_at: str
    updated_at: str
    description: Optional[str] = None


@dataclass(frozen=True)
class BankTransactionRow:
    """In-memory view of a row from the ``BankTransactions`` sheet."""

    transaction_id: str
    account_id: str
    transaction_type: str
    amount: Decimal
    description: str
    balance_after: Decimal
    date: str
    bill_id: Optional[str] = None
    payment_id: Optional[str] = None
    processed_by: Optional[str] = None


@dataclass(frozen=True)
class AuditLogRow:
    """In-memory view of a row from the ``AuditLog`` sheet."""

    entry_id: str
    timestamp: str
    user_id: str
    user_role: str
    action: str
    resource: str
    resource_id: str
    success: bool
    new_data: Optional[Dict[str, Any]] = None
    error_message: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None


@dataclass(frozen=True)
class WorkbookSnapshot:
    """Cell values of every worksheet captured at the start of a transaction."""

    sheets: Dict[str, List[tuple]]


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls how the data layer behaves.

    If the caller provides ``explicit_path`` the value is returned immediately
    without any verification. Otherwise the function walks up from the current
    working directory toward the filesystem root looking for a file named
    ``CONFIG_FILE_NAME``; the first match is considered authoritative.

    Args:
        explicit_path (Path | None): Optional path to use instead of performing
            the upward search.

    Returns:
        Path: The path provided by the caller or the discovered configuration
            file.

    Raises:
        FileNotFoundError: If the search exhausts all parent directories without
            finding ``CONFIG_FILE_NAME``.
    """

    if explicit_path:
        return explicit_path

    current = Path.cwd()
    for p in (current, *current.parents):
        candidate = p / CONFIG_FILE_NAME
        if candidate.exists():
            return candidate

    raise FileNotFoundError(
        f"Configuration file not found: {CONFIG_FILE_NAME}")


def read_config(config_path: Path) -> configparser.ConfigParser:
    """Load ``config.ini`` and return a populated ``ConfigParser`` instance.

    Validation of required entries happens in :func:`parse_settings`.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist after expansion and
            resolution.
    """

    config_path = config_path.expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path)
    return parser


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    Relative ``DataFile`` entries are expanded against ``base_path`` when
    provided, or against the current working directory as a fallback.
    ``DefaultBankAccount`` is optional; an empty value means no account.

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Directory used to anchor relative paths.

    Returns:
        ConfigSettings: Immutable settings container.

    Raises:
        KeyError: If one of the required sections or options is missing.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        shop_name = parser.get("System", "ShopName")
        schema_version = parser.get("System", "SchemaVersion")
        default_actor = parser.get("Defaults", "DefaultActor")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    default_bank_account = parser.get("Defaults", "DefaultBankAccount", fallback="").strip() or None

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_file_path = (base_path / data_file_path).resolve()

    return ConfigSettings(
        data_file=data_file_path,
        shop_name=shop_name,
        schema_version=schema_version,
        default_actor_id=default_actor,
        default_bank_account_id=default_bank_account,
    )


def open_workbook(data_file: Path) -> Workbook:
    """Open the master Excel workbook and verify every collection sheet exists.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist.
        KeyError: If the workbook lacks one of the expected worksheets.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    wb = openpyxl.load_workbook(data_file)
    missing = [name for name in SHEET_COLUMNS if name not in wb.sheetnames]
    if missing:
        raise KeyError(f"Workbook {data_file} is missing sheets: {', '.join(missing)}")
    return wb


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Persist the workbook to disk, creating parent folders on demand."""

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    workbook.save(dest)


def refresh_workbook(data_file: Path) -> Workbook:
    """Reload the workbook from disk, discarding any unsaved in-memory changes."""

    return open_workbook(data_file)


# ---------------------------------------------------------------------------
# Transactions
# ---------------------------------------------------------------------------


def snapshot_workbook(workbook: Workbook) -> WorkbookSnapshot:
    """Capture the values of every managed worksheet.

    The snapshot is the "begin" half of a unit of work: if anything inside the
    unit fails, :func:`restore_workbook` puts every cell back.
    """

    sheets: Dict[str, List[tuple]] = {}
    for name in SHEET_COLUMNS:
        sheet = workbook[name]
        sheets[name] = [tuple(row) for row in sheet.iter_rows(min_row=2, values_only=True)]
    return WorkbookSnapshot(sheets=sheets)


def restore_workbook(workbook: Workbook, snapshot: WorkbookSnapshot) -> None:
    """Overwrite data rows with the values captured in ``snapshot``.

    Every captured cell is assigned directly, empty ones included, and rows
    appended after the snapshot are deleted.
    """

    for name, rows in snapshot.sheets.items():
        sheet = workbook[name]
        width = len(SHEET_COLUMNS[name])
        for row_idx, values in enumerate(rows, start=2):
            for col_idx in range(1, width + 1):
                # Worksheet.cell(value=None) leaves the cell untouched.
                sheet.cell(row=row_idx, column=col_idx).value = (
                    values[col_idx - 1] if col_idx - 1 < len(values) else None
                )
        first_extra = len(rows) + 2
        if sheet.max_row >= first_extra:
            sheet.delete_rows(first_extra, sheet.max_row - first_extra + 1)
    log.debug("Restored workbook from snapshot (%d sheets)", len(snapshot.sheets))


# ---------------------------------------------------------------------------
# Generic row helpers
# ---------------------------------------------------------------------------


def _header_map(sheet) -> Dict[str, int]:
    return {cell.value: idx + 1 for idx, cell in enumerate(sheet[1])}


def _iter_raw_rows(workbook: Workbook, sheet_name: str) -> Iterable[tuple]:
    sheet = workbook[sheet_name]
    for raw in sheet.iter_rows(min_row=2, values_only=True):
        # skip fully empty rows
        if any(cell is not None for cell in raw):
            yield raw


def _as_mapping(sheet_name: str, raw_row: Sequence[object]) -> Dict[str, object]:
    columns = SHEET_COLUMNS[sheet_name]
    values = list(raw_row) + [None] * (len(columns) - len(raw_row))
    return dict(zip(columns, values))


def locate_row(workbook: Workbook, sheet_name: str, key_column: str, key_value: str) -> Optional[int]:
    """Find a row by matching a key value within the specified worksheet.

    Args:
        workbook (Workbook): Workbook providing access to ``sheet_name``.
        sheet_name (str): Name of the worksheet to search.
        key_column (str): Header title identifying the lookup column.
        key_value (str): Value to match within the key column.

    Returns:
        int | None: 1-based Excel row index when a match is found, otherwise
            ``None``.

    Raises:
        KeyError: If ``key_column`` is not present in the worksheet header.
    """

    sheet = workbook[sheet_name]
    header_map = _header_map(sheet)
    if key_column not in header_map:
        raise KeyError(f"Unknown column: {key_column}")

    key_col_index = header_map[key_column]

    for row_idx, row in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2):
        if row_idx > sheet.max_row:
            break
        cell_value = row[key_col_index - 1] if key_col_index - 1 < len(row) else None
        if cell_value is not None and cell_value == key_value:
            return row_idx

    return None


def serialize_cell(column: str, value: Any) -> Any:
    """Convert a Python value into what is stored in ``column``'s cell."""

    if column in JSON_COLUMNS:
        return _dump_json(value)
    if isinstance(value, Enum):
        return value.value
    return value


def update_row(
    workbook: Workbook,
    sheet_name: str,
    key_column: str,
    key_value: str,
    *,
    field_values: Mapping[str, Any],
    conditions: Optional[Mapping[str, Any]] = None,
) -> int:
    """Update selected columns of the row identified by ``key_value``.

    The write only happens when every ``conditions`` column currently holds
    the given value, which is how version-checked updates are expressed.

    Returns:
        int: ``1`` when a row matched and was written, ``0`` when no row
            matched the key or the conditions.

    Raises:
        KeyError: If a referenced column does not exist.
    """

    sheet = workbook[sheet_name]
    header_map = _header_map(sheet)
    for column in [*field_values, *(conditions or {})]:
        if column not in header_map:
            raise KeyError(f"Unknown {sheet_name} field: {column}")

    row_index = locate_row(workbook, sheet_name, key_column, key_value)
    if row_index is None:
        return 0

    for column, expected in (conditions or {}).items():
        current = sheet.cell(row=row_index, column=header_map[column]).value
        if current != expected:
            log.debug(
                "Conditional update on %s '%s' skipped: %s is %r, expected %r",
                sheet_name,
                key_value,
                column,
                current,
                expected,
            )
            return 0

    for column, value in field_values.items():
        sheet.cell(row=row_index, column=header_map[column]).value = serialize_cell(column, value)
    return 1


def delete_row(workbook: Workbook, sheet_name: str, key_column: str, key_value: str) -> int:
    """Remove the row identified by ``key_value``; returns the deleted count."""

    row_index = locate_row(workbook, sheet_name, key_column, key_value)
    if row_index is None:
        return 0
    workbook[sheet_name].delete_rows(row_index)
    return 1


# ---------------------------------------------------------------------------
# Iterators
# ---------------------------------------------------------------------------


def iter_jobs(workbook: Workbook) -> Iterable[JobRow]:
    """Stream job documents from the ``Jobs`` worksheet."""

    for raw in _iter_raw_rows(workbook, JOBS_SHEET):
        yield deserialize_job(raw)


def iter_bills(workbook: Workbook) -> Iterable[BillRow]:
    """Stream bill documents, primary bills and snapshots alike, in sheet order."""

    for raw in _iter_raw_rows(workbook, BILLS_SHEET):
        yield deserialize_bill(raw)


def iter_credit_payments(workbook: Workbook) -> Iterable[CreditPaymentRow]:
    for raw in _iter_raw_rows(workbook, CREDIT_PAYMENTS_SHEET):
        yield deserialize_credit_payment(raw)


def iter_approval_requests(workbook: Workbook) -> Iterable[ApprovalRequestRow]:
    for raw in _iter_raw_rows(workbook, APPROVAL_REQUESTS_SHEET):
        yield deserialize_approval_request(raw)


def iter_bank_accounts(workbook: Workbook) -> Iterable[BankAccountRow]:
    for raw in _iter_raw_rows(workbook, BANK_ACCOUNTS_SHEET):
        yield deserialize_bank_account(raw)


def iter_bank_transactions(workbook: Workbook) -> Iterable[BankTransactionRow]:
    for raw in _iter_raw_rows(workbook, BANK_TRANSACTIONS_SHEET):
        yield deserialize_bank_transaction(raw)


def iter_audit_log(workbook: Workbook) -> Iterable[AuditLogRow]:
    for raw in _iter_raw_rows(workbook, AUDIT_LOG_SHEET):
        yield deserialize_audit_entry(raw)


# ---------------------------------------------------------------------------
# Inserts
# ---------------------------------------------------------------------------


def append_job(workbook: Workbook, record: JobRow) -> None:
    """Append a job document to the ``Jobs`` worksheet."""

    workbook[JOBS_SHEET].append(serialize_job(record))


def append_bill(workbook: Workbook, record: BillRow) -> None:
    """Append a bill document, enforcing one primary bill per job.

    Snapshots (``BillType == "updated"``) are exempt from the constraint.

    Raises:
        DuplicateKeyError: If ``record`` is a primary bill and another primary
            bill already references the same job.
    """

    if record.bill_type != "updated":
        for existing in iter_bills(workbook):
            if existing.bill_type != "updated" and existing.job_id == record.job_id:
                raise DuplicateKeyError(
                    f"A primary bill already exists for job {record.job_id}: {existing.bill_id}"
                )
    workbook[BILLS_SHEET].append(serialize_bill(record))


def append_credit_payment(workbook: Workbook, record: CreditPaymentRow) -> None:
    workbook[CREDIT_PAYMENTS_SHEET].append(serialize_credit_payment(record))


def append_approval_request(workbook: Workbook, record: ApprovalRequestRow) -> None:
    workbook[APPROVAL_REQUESTS_SHEET].append(serialize_approval_request(record))


def append_bank_account(workbook: Workbook, record: BankAccountRow) -> None:
    """Append a bank account, enforcing unique account numbers.

    Raises:
        DuplicateKeyError: If the account number is already registered.
    """

    for existing in iter_bank_accounts(workbook):
        if existing.account_number == record.account_number:
            raise DuplicateKeyError(f"Account number already registered: {record.account_number}")
    workbook[BANK_ACCOUNTS_SHEET].append(serialize_bank_account(record))


def append_bank_transaction(workbook: Workbook, record: BankTransactionRow) -> None:
    workbook[BANK_TRANSACTIONS_SHEET].append(serialize_bank_transaction(record))


def append_audit_entry(workbook: Workbook, record: AuditLogRow) -> None:
    workbook[AUDIT_LOG_SHEET].append(serialize_audit_entry(record))


# ---------------------------------------------------------------------------
# Updates and deletes
# ---------------------------------------------------------------------------


def update_job(workbook: Workbook, job_id: str, *, field_values: Mapping[str, Any]) -> int:
    """Update selected columns of a job; returns the matched row count."""

    return update_row(workbook, JOBS_SHEET, "JobID", job_id, field_values=field_values)


def update_bill(
    workbook: Workbook,
    bill_id: str,
    *,
    field_values: Mapping[str, Any],
    expected_version: Optional[int] = None,
) -> int:
    """Update selected columns of a bill, optionally conditioned on its version.

    Returns ``0`` when the bill is missing or its stored ``Version`` differs
    from ``expected_version``.
    """

    conditions = {"Version": expected_version} if expected_version is not None else None
    return update_row(
        workbook,
        BILLS_SHEET,
        "BillID",
        bill_id,
        field_values=field_values,
        conditions=conditions,
    )


def update_approval_request(
    workbook: Workbook,
    request_id: str,
    *,
    field_values: Mapping[str, Any],
    expected_status: Optional[str] = None,
) -> int:
    conditions = {"Status": expected_status} if expected_status is not None else None
    return update_row(
        workbook,
        APPROVAL_REQUESTS_SHEET,
        "RequestID",
        request_id,
        field_values=field_values,
        conditions=conditions,
    )


def update_bank_account(workbook: Workbook, account_id: str, *, field_values: Mapping[str, Any]) -> int:
    return update_row(workbook, BANK_ACCOUNTS_SHEET, "AccountID", account_id, field_values=field_values)


def delete_job(workbook: Workbook, job_id: str) -> int:
    return delete_row(workbook, JOBS_SHEET, "JobID", job_id)


# ---------------------------------------------------------------------------
# Nested value helpers
# ---------------------------------------------------------------------------


def _json_default(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, Enum):
        return value.value
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def _dump_json(value: Any) -> Optional[str]:
    if value is None:
        return None
    return json.dumps(value, default=_json_default, sort_keys=True)


def _load_json(raw: object, default: Any) -> Any:
    if raw is None or raw == "":
        return default
    if not isinstance(raw, str):
        return raw
    return json.loads(raw)


def _text(raw: object) -> str:
    return str(raw) if raw is not None else ""


def _opt_text(raw: object) -> Optional[str]:
    return str(raw) if raw is not None else None


def _money(raw: object) -> Decimal:
    return money.round_money(raw) if raw is not None else Decimal("0.00")


def _opt_money(raw: object) -> Optional[Decimal]:
    return money.round_money(raw) if raw is not None else None


def serialize_subtask(record: SubTaskRecord) -> Dict[str, Any]:
    return {
        "subtask_id": record.subtask_id,
        "task_type": record.task_type,
        "parts_type": record.parts_type,
        "service_type": record.service_type,
        "parts_brand": record.parts_brand,
        "is_completed": record.is_completed,
        "is_additional": record.is_additional,
        "warranty_period": record.warranty_period,
        "approval_status": record.approval_status,
        "approved_by": record.approved_by,
        "approved_at": record.approved_at,
        "added_at": record.added_at,
    }


def deserialize_subtask(raw: Mapping[str, Any]) -> SubTaskRecord:
    warranty = raw.get("warranty_period")
    return SubTaskRecord(
        subtask_id=str(raw["subtask_id"]),
        task_type=str(raw["task_type"]),
        parts_type=raw.get("parts_type"),
        service_type=raw.get("service_type"),
        parts_brand=raw.get("parts_brand"),
        is_completed=bool(raw.get("is_completed", False)),
        is_additional=bool(raw.get("is_additional", False)),
        warranty_period=int(warranty) if warranty is not None else None,
        approval_status=raw.get("approval_status"),
        approved_by=raw.get("approved_by"),
        approved_at=raw.get("approved_at"),
        added_at=raw.get("added_at"),
    )


def serialize_status_history(entries: Iterable[StatusHistoryEntry]) -> List[Dict[str, Any]]:
    return [{"status": e.status, "timestamp": e.timestamp, "reason": e.reason} for e in entries]


# ---------------------------------------------------------------------------
# Serializers
# ---------------------------------------------------------------------------


def serialize_job(record: JobRow) -> list[object]:
    """Convert a job dataclass into the ``Jobs`` column ordering."""

    return [
        record.job_id,
        record.vehicle_no,
        record.customer_name,
        record.customer_phone,
        record.damage_remarks,
        _dump_json(list(record.damage_photos)),
        record.image,
        _dump_json([serialize_subtask(task) for task in record.sub_tasks]),
        record.status,
        record.is_company_vehicle,
        record.company_name,
        record.deleted,
        record.last_status_change_by,
        record.last_status_change_at,
        record.created_at,
        record.updated_at,
    ]


def serialize_bill(record: BillRow) -> list[object]:
    """Convert a bill dataclass into the ``Bills`` column ordering.

    Monetary fields remain :class:`~decimal.Decimal` instances; nested
    structures become JSON text.
    """

    return [
        record.bill_id,
        record.job_id,
        record.bill_type,
        record.original_bill_id,
        record.vehicle_no,
        record.vehicle_type,
        record.customer_name,
        record.customer_phone,
        record.driver_name,
        record.client_type,
        _dump_json(list(record.services)),
        record.total_amount,
        record.commission,
        record.final_amount,
        record.bank_account,
        record.payment_type,
        record.status,
        record.initial_payment,
        record.remaining_balance,
        record.is_paid_in_full,
        _dump_json(record.cheque_details),
        _dump_json(record.credit_details),
        record.remarks,
        record.version,
        _dump_json(serialize_status_history(record.status_history)),
        _dump_json(record.payment_summary),
        record.created_at,
        record.finalized_at,
        record.last_payment_date,
        record.updated_at,
        record.generated_at,
    ]


def serialize_credit_payment(record: CreditPaymentRow) -> list[object]:
    return [
        record.payment_id,
        record.bill_id,
        record.job_id,
        record.customer_name,
        record.vehicle_no,
        record.payment_amount,
        record.payment_date,
        record.payment_method,
        record.notes,
        _dump_json(record.cheque_details),
        record.previous_balance,
        record.new_balance,
        record.processed_by,
        record.validation_status,
        record.approval_request_id,
        record.created_at,
    ]


def serialize_approval_request(record: ApprovalRequestRow) -> list[object]:
    return [
        record.request_id,
        record.request_type,
        record.job_id,
        record.requested_by,
        _dump_json(record.request_data),
        record.status,
        record.approved_by,
        record.approved_at,
        record.rejection_reason,
        _dump_json(record.metadata),
        record.created_at,
    ]


def serialize_bank_account(record: BankAccountRow) -> list[object]:
    return [
        record.account_id,
        record.account_name,
        record.account_number,
        record.bank_name,
        record.account_type,
        record.current_balance,
        record.total_balance,
        record.is_active,
        record.description,
        record.created_at,
        record.updated_at,
    ]


def serialize_bank_transaction(record: BankTransactionRow) -> list[object]:
    return [
        record.transaction_id,
        record.account_id,
        record.transaction_type,
        record.amount,
        record.description,
        record.bill_id,
        record.payment_id,
        record.balance_after,
        record.date,
        record.processed_by,
    ]


def serialize_audit_entry(record: AuditLogRow) -> list[object]:
    return [
        record.entry_id,
        record.timestamp,
        record.user_id,
        record.user_role,
        record.action,
        record.resource,
        record.resource_id,
        _dump_json(record.new_data),
        record.success,
        record.error_message,
        _dump_json(record.metadata),
    ]


# ---------------------------------------------------------------------------
# Deserializers
# ---------------------------------------------------------------------------


def deserialize_job(raw_row: Sequence[object]) -> JobRow:
    """Convert a raw ``Jobs`` row into a :class:`JobRow`.

    Subtasks and damage photos are decoded from JSON; a blank cell yields an
    empty list so callers never see ``None`` collections.
    """

    row = _as_mapping(JOBS_SHEET, raw_row)
    return JobRow(
        job_id=_text(row["JobID"]),
        vehicle_no=_text(row["VehicleNo"]),
        status=_text(row["Status"]),
        created_at=_text(row["CreatedAt"]),
        updated_at=_text(row["UpdatedAt"]),
        customer_name=_text(row["CustomerName"]),
        customer_phone=_text(row["CustomerPhone"]),
        damage_remarks=_text(row["DamageRemarks"]),
        damage_photos=[str(url) for url in _load_json(row["DamagePhotos"], [])],
        image=_text(row["Image"]),
        sub_tasks=[deserialize_subtask(task) for task in _load_json(row["SubTasks"], [])],
        is_company_vehicle=bool(row["IsCompanyVehicle"]),
        company_name=_text(row["CompanyName"]),
        deleted=bool(row["Deleted"]),
        last_status_change_by=_opt_text(row["LastStatusChangeBy"]),
        last_status_change_at=_opt_text(row["LastStatusChangeAt"]),
    )


def deserialize_bill(raw_row: Sequence[object]) -> BillRow:
    """Convert a raw ``Bills`` row into a :class:`BillRow`.

    ``RemainingBalance`` keeps ``None`` when the cell is blank so the ledger
    can tell an unset balance apart from a real zero.
    """

    row = _as_mapping(BILLS_SHEET, raw_row)
    history = [
        StatusHistoryEntry(
            status=str(entry["status"]),
            timestamp=str(entry["timestamp"]),
            reason=entry.get("reason"),
        )
        for entry in _load_json(row["StatusHistory"], [])
    ]
    version_raw = row["Version"]
    return BillRow(
        bill_id=_text(row["BillID"]),
        job_id=_text(row["JobID"]),
        vehicle_no=_text(row["VehicleNo"]),
        customer_name=_text(row["CustomerName"]),
        customer_phone=_text(row["CustomerPhone"]),
        total_amount=_money(row["TotalAmount"]),
        commission=_money(row["Commission"]),
        final_amount=_money(row["FinalAmount"]),
        payment_type=_text(row["PaymentType"]) or "Cash",
        status=_text(row["Status"]) or "finalized",
        version=int(version_raw) if version_raw is not None else 0,
        created_at=_text(row["CreatedAt"]),
        updated_at=_text(row["UpdatedAt"]),
        bill_type=_text(row["BillType"]) or "original",
        original_bill_id=_opt_text(row["OriginalBillID"]),
        vehicle_type=_text(row["VehicleType"]),
        driver_name=_opt_text(row["DriverName"]),
        client_type=_text(row["ClientType"]) or "Customer",
        services=list(_load_json(row["Services"], [])),
        bank_account=_opt_text(row["BankAccount"]),
        initial_payment=_money(row["InitialPayment"]),
        remaining_balance=_opt_money(row["RemainingBalance"]),
        is_paid_in_full=bool(row["IsPaidInFull"]),
        cheque_details=_load_json(row["ChequeDetails"], None),
        credit_details=_load_json(row["CreditDetails"], None),
        remarks=_opt_text(row["Remarks"]),
        status_history=history,
        payment_summary=_load_json(row["PaymentSummary"], None),
        finalized_at=_opt_text(row["FinalizedAt"]),
        last_payment_date=_opt_text(row["LastPaymentDate"]),
        generated_at=_opt_text(row["GeneratedAt"]),
    )


def deserialize_credit_payment(raw_row: Sequence[object]) -> CreditPaymentRow:
    row = _as_mapping(CREDIT_PAYMENTS_SHEET, raw_row)
    return CreditPaymentRow(
        payment_id=_text(row["PaymentID"]),
        bill_id=_text(row["BillID"]),
        job_id=_text(row["JobID"]),
        customer_name=_text(row["CustomerName"]),
        vehicle_no=_text(row["VehicleNo"]),
        payment_amount=_money(row["PaymentAmount"]),
        payment_date=_text(row["PaymentDate"]),
        payment_method=_text(row["PaymentMethod"]),
        previous_balance=_money(row["PreviousBalance"]),
        new_balance=_money(row["NewBalance"]),
        validation_status=_text(row["ValidationStatus"]),
        created_at=_text(row["CreatedAt"]),
        notes=_opt_text(row["Notes"]),
        cheque_details=_load_json(row["ChequeDetails"], None),
        processed_by=_opt_text(row["ProcessedBy"]),
        approval_request_id=_opt_text(row["ApprovalRequestID"]),
    )


def deserialize_approval_request(raw_row: Sequence[object]) -> ApprovalRequestRow:
    row = _as_mapping(APPROVAL_REQUESTS_SHEET, raw_row)
    return ApprovalRequestRow(
        request_id=_text(row["RequestID"]),
        request_type=_text(row["RequestType"]),
        job_id=_text(row["JobID"]),
        requested_by=_text(row["RequestedBy"]),
        request_data=dict(_load_json(row["RequestData"], {})),
        status=_text(row["Status"]),
        created_at=_text(row["CreatedAt"]),
        approved_by=_opt_text(row["ApprovedBy"]),
        approved_at=_opt_text(row["ApprovedAt"]),
        rejection_reason=_opt_text(row["RejectionReason"]),
        metadata=_load_json(row["Metadata"], None),
    )


def deserialize_bank_account(raw_row: Sequence[object]) -> BankAccountRow:
    row = _as_mapping(BANK_ACCOUNTS_SHEET, raw_row)
    return BankAccountRow(
        account_id=_text(row["AccountID"]),
        account_name=_text(row["AccountName"]),
        account_number=_text(row["AccountNumber"]),
        bank_name=_text(row["BankName"]),
        account_type=_text(row["AccountType"]),
        current_balance=_money(row["CurrentBalance"]),
        total_balance=_money(row["TotalBalance"]),
        is_active=bool(row["IsActive"]),
        created_at=_text(row["CreatedAt"]),
        updated_at=_text(row["UpdatedAt"]),
        description=_opt_text(row["Description"]),
    )


def deserialize_bank_transaction(raw_row: Sequence[object]) -> BankTransactionRow:
    row = _as_mapping(BANK_TRANSACTIONS_SHEET, raw_row)
    return BankTransactionRow(
        transaction_id=_text(row["TransactionID"]),
        account_id=_text(row["AccountID"]),
        transaction_type=_text(row["TransactionType"]),
        amount=_money(row["Amount"]),
        description=_text(row["Description"]),
        balance_after=_money(row["BalanceAfter"]),
        date=_text(row["Date"]),
        bill_id=_opt_text(row["BillID"]),
        payment_id=_opt_text(row["PaymentID"]),
        processed_by=_opt_text(row["ProcessedBy"]),
    )


def deserialize_audit_entry(raw_row: Sequence[object]) -> AuditLogRow:
    row = _as_mapping(AUDIT_LOG_SHEET, raw_row)
    return AuditLogRow(
        entry_id=_text(row["EntryID"]),
        timestamp=_text(row["Timestamp"]),
        user_id=_text(row["UserID"]),
        user_role=_text(row["UserRole"]),
        action=_text(row["Action"]),
        resource=_text(row["Resource"]),
        resource_id=_text(row["ResourceID"]),
        success=bool(row["Success"]),
        new_data=_load_json(row["NewData"], None),
        error_message=_opt_text(row["ErrorMessage"]),
        metadata=_load_json(row["Metadata"], None),
    )
