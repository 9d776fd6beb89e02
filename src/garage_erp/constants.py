"""Enumerations shared across Garage ERP modules.

Centralises domain constants so that the data access layer (DAL), the
business modules and the CLI rely on a single source of truth for status
names, payment types and worksheet names.
"""

from __future__ import annotations

from enum import Enum


# Central schema version expected by all layers when validating workbooks.
EXPECTED_SCHEMA_VERSION = "1.0.0"


class JobStatus(str, Enum):
    """Columns of the job pipeline."""

    TODO = "todo"
    IN_PROGRESS = "inProgress"
    FINISHED = "finished"
    DELIVERED = "delivered"


# Statuses written by older releases; read as ``todo``.
LEGACY_JOB_STATUSES: tuple[str, ...] = ("pending", "onHold", "inspection", "partsPending")


class SubTaskType(str, Enum):
    """Kinds of line items a job can carry."""

    PARTS = "parts"
    SERVICE = "service"


class BillStatus(str, Enum):
    """Lifecycle states of a bill."""

    DRAFT = "draft"
    FINALIZED = "finalized"
    PARTIALLY_PAID = "partially_paid"
    PAID = "paid"


class BillType(str, Enum):
    """Distinguish primary bills from post-payment snapshots."""

    ORIGINAL = "original"
    UPDATED = "updated"


class PaymentType(str, Enum):
    """Enumerate how a bill is settled."""

    CASH = "Cash"
    CREDIT = "Credit"
    CHEQUE = "Cheque"
    UNSPECIFIED = "Unspecified"


class PaymentMethod(str, Enum):
    """Enumerate how an individual credit payment was made."""

    CASH = "Cash"
    CHEQUE = "Cheque"
    BANK_TRANSFER = "Bank Transfer"


class ValidationStatus(str, Enum):
    """Verification state of a recorded credit payment.

    No operation sets ``DISPUTED``; it is set by hand in the workbook when a
    bank rejects a cheque and is kept so such rows can still be filtered.
    """

    PENDING = "pending"
    VERIFIED = "verified"
    DISPUTED = "disputed"


class ClientType(str, Enum):
    CUSTOMER = "Customer"
    COMPANY = "Company"


class ApprovalType(str, Enum):
    """Kinds of mutation that can be deferred for approval."""

    PART = "part"
    SERVICE = "service"
    PAYMENT = "payment"
    STATUS_CHANGE = "status_change"
    CREDIT_PAYMENT = "credit_payment"


class ApprovalStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class ApprovalDecision(str, Enum):
    APPROVE = "approve"
    REJECT = "reject"


class BankTransactionType(str, Enum):
    """Direction of a bank ledger entry."""

    CREDIT = "credit"
    DEBIT = "debit"


class BankAccountType(str, Enum):
    CURRENT = "Current"
    SAVINGS = "Savings"
    BUSINESS = "Business"
    TAX = "Tax"


class SheetName(str, Enum):
    """Enumerate the workbook sheet names managed by the DAL."""

    JOBS = "Jobs"
    BILLS = "Bills"
    CREDIT_PAYMENTS = "CreditPayments"
    APPROVAL_REQUESTS = "ApprovalRequests"
    BANK_ACCOUNTS = "BankAccounts"
    BANK_TRANSACTIONS = "BankTransactions"
    AUDIT_LOG = "AuditLog"


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "LEGACY_JOB_STATUSES",
    "JobStatus",
    "SubTaskType",
    "BillStatus",
    "BillType",
    "PaymentType",
    "PaymentMethod",
    "ValidationStatus",
    "ClientType",
    "ApprovalType",
    "ApprovalStatus",
    "ApprovalDecision",
    "BankTransactionType",
    "BankAccountType",
    "SheetName",
]
