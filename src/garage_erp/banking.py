"""Bank account ledger for Garage ERP.

Bank accounts keep a running ``current_balance`` backed by an append-only
``BankTransactions`` sheet. Billing and payment operations post credits here
as post-commit side effects, so :func:`update_bank_account_balance` reports
failures through its return value instead of raising.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from . import core_logic, data_manager, log, money
from .constants import BankAccountType, BankTransactionType
from .core_logic import NotFoundError, RuntimeContext, ValidationError


@dataclass(frozen=True)
class BankAccountCommand:
    """User intent for registering a bank account."""

    account_name: str
    account_number: str
    bank_name: str
    account_type: BankAccountType = BankAccountType.CURRENT
    current_balance: Decimal = Decimal("0.00")
    total_balance: Decimal = Decimal("0.00")
    is_active: bool = True
    description: Optional[str] = None
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class BankUpdateResult:
    """Outcome of a balance update; ``error`` is set when ``success`` is false."""

    success: bool
    new_balance: Optional[Decimal] = None
    error: Optional[str] = None


# Columns an admin edit may touch, keyed by keyword name.
_EDITABLE_FIELDS: Dict[str, str] = {
    "account_name": "AccountName",
    "account_number": "AccountNumber",
    "bank_name": "BankName",
    "account_type": "AccountType",
    "current_balance": "CurrentBalance",
    "total_balance": "TotalBalance",
    "description": "Description",
    "is_active": "IsActive",
}


def _ensure_accounts_cache(context: RuntimeContext) -> Dict[str, Any]:
    bucket = core_logic.get_cache_bucket(context, "bank_accounts")
    if "all" not in bucket:
        accounts = list(data_manager.iter_bank_accounts(context.workbook))
        bucket["all"] = accounts
        bucket["by_id"] = {account.account_id: account for account in accounts}
        log.debug("Populated bank account cache with %d entries", len(accounts))
    return bucket


def get_bank_account(context: RuntimeContext, account_id: str) -> Optional[data_manager.BankAccountRow]:
    """Return the account with ``account_id`` or ``None``."""

    return _ensure_accounts_cache(context)["by_id"].get(account_id)


def list_bank_accounts(
    context: RuntimeContext, *, include_inactive: bool = False
) -> List[data_manager.BankAccountRow]:
    """Return bank accounts sorted by name, active ones only by default."""

    accounts = [
        account
        for account in _ensure_accounts_cache(context)["all"]
        if include_inactive or account.is_active
    ]
    return sorted(accounts, key=lambda account: account.account_name)


def create_bank_account(context: RuntimeContext, command: BankAccountCommand) -> str:
    """Register a new bank account and return its identifier.

    Raises:
        ValidationError: If a required field is blank, a balance is negative,
            or the account number is already registered.
    """

    errors = []
    if not command.account_name.strip():
        errors.append("Account name is required")
    if not command.account_number.strip():
        errors.append("Account number is required")
    if not command.bank_name.strip():
        errors.append("Bank name is required")
    current_balance = money.round_money(command.current_balance)
    total_balance = money.round_money(command.total_balance)
    if current_balance < 0 or total_balance < 0:
        errors.append("Balances must be zero or positive")
    if errors:
        log.error("Bank account validation failed: %s", "; ".join(errors))
        raise ValidationError(errors[0], errors)

    moment = core_logic._resolve_timestamp(command.timestamp)
    record = data_manager.BankAccountRow(
        account_id=core_logic.generate_id("BA", when=moment),
        account_name=command.account_name.strip(),
        account_number=command.account_number.strip(),
        bank_name=command.bank_name.strip(),
        account_type=BankAccountType(command.account_type).value,
        current_balance=current_balance,
        total_balance=total_balance,
        is_active=command.is_active,
        created_at=core_logic.timestamp_iso(moment),
        updated_at=core_logic.timestamp_iso(moment),
        description=command.description,
    )
    with core_logic.transaction(context, "create_bank_account"):
        try:
            data_manager.append_bank_account(context.workbook, record)
        except data_manager.DuplicateKeyError as exc:
            log.error("Duplicate bank account number '%s'", record.account_number)
            raise ValidationError("Account with this account number already exists") from exc
    log.info("Created bank account '%s' (%s)", record.account_id, record.account_name)
    return record.account_id


def update_bank_account_balance(
    context: RuntimeContext,
    account_id: str,
    amount: money.Amount,
    direction: BankTransactionType,
    description: str,
    *,
    bill_id: Optional[str] = None,
    payment_id: Optional[str] = None,
    processed_by: Optional[str] = None,
    timestamp: Optional[datetime] = None,
) -> BankUpdateResult:
    """Apply a credit or debit to an account and log the ledger entry.

    The balance write and the ``BankTransactions`` row share one transaction.
    Unknown or inactive accounts, non-positive amounts and debits that would
    overdraw the account fail without touching the workbook.

    Args:
        context (RuntimeContext): Runtime context providing workbook access.
        account_id (str): Account to update.
        amount (Amount): Positive magnitude of the movement.
        direction (BankTransactionType): ``credit`` adds, ``debit`` subtracts.
        description (str): Human-readable reason stored on the ledger row.
        bill_id (str | None): Bill that triggered the movement, if any.
        payment_id (str | None): Credit payment that triggered it, if any.
        processed_by (str | None): Actor recorded on the ledger row.

    Returns:
        BankUpdateResult: ``success`` with the new balance, or an ``error``.
    """

    try:
        value = money.round_money(amount)
    except ValueError as exc:
        return BankUpdateResult(success=False, error=str(exc))
    if value <= 0:
        return BankUpdateResult(success=False, error="Amount must be greater than zero")

    try:
        direction = BankTransactionType(direction)
    except ValueError:
        return BankUpdateResult(success=False, error=f"Unknown transaction type: {direction}")
    moment = core_logic._resolve_timestamp(timestamp)
    with core_logic.transaction(context, "update_bank_account_balance"):
        account = get_bank_account(context, account_id)
        if account is None:
            log.warning("Bank account lookup failed for id '%s'", account_id)
            return BankUpdateResult(success=False, error="Bank account not found")
        if not account.is_active:
            log.warning("Rejected %s on inactive bank account '%s'", direction.value, account_id)
            return BankUpdateResult(success=False, error="Bank account is inactive")

        if direction is BankTransactionType.CREDIT:
            new_balance = money.add_money(account.current_balance, value)
        else:
            new_balance = money.subtract_money(account.current_balance, value)
            if new_balance < 0:
                log.warning(
                    "Debit of %s would overdraw bank account '%s' (balance %s)",
                    value,
                    account_id,
                    account.current_balance,
                )
                return BankUpdateResult(success=False, error="Insufficient funds in bank account")

        data_manager.update_bank_account(
            context.workbook,
            account_id,
            field_values={
                "CurrentBalance": new_balance,
                "UpdatedAt": core_logic.timestamp_iso(moment),
            },
        )
        data_manager.append_bank_transaction(
            context.workbook,
            data_manager.BankTransactionRow(
                transaction_id=core_logic.generate_id("BT", when=moment),
                account_id=account_id,
                transaction_type=direction.value,
                amount=value,
                description=description,
                balance_after=new_balance,
                date=core_logic.timestamp_iso(moment),
                bill_id=bill_id,
                payment_id=payment_id,
                processed_by=processed_by,
            ),
        )

    log.info(
        "Posted %s of %s to bank account '%s' (balance now %s)",
        direction.value,
        value,
        account_id,
        new_balance,
    )
    return BankUpdateResult(success=True, new_balance=new_balance)


def get_bank_transaction_history(
    context: RuntimeContext,
    account_id: str,
    *,
    limit: int = 50,
    offset: int = 0,
) -> List[data_manager.BankTransactionRow]:
    """Return ledger entries for ``account_id``, newest first."""

    entries = [
        entry
        for entry in data_manager.iter_bank_transactions(context.workbook)
        if entry.account_id == account_id
    ]
    entries.sort(key=lambda entry: entry.date, reverse=True)
    return entries[offset:offset + limit]


def update_bank_account(
    context: RuntimeContext,
    account_id: str,
    *,
    admin_user_id: str,
    reason: Optional[str] = None,
    timestamp: Optional[datetime] = None,
    **updates: Any,
) -> None:
    """Apply an admin edit to an account.

    A change to ``current_balance`` is recorded as an adjustment entry in the
    ledger, and an audit entry captures the previous state. All writes share
    one transaction.

    Raises:
        NotFoundError: If the account does not exist.
        ValidationError: If ``updates`` names an unknown field or the new
            account number collides with another account.
    """

    unknown = sorted(set(updates) - set(_EDITABLE_FIELDS))
    if unknown:
        raise ValidationError(f"Unknown bank account field(s): {', '.join(unknown)}")

    moment = core_logic._resolve_timestamp(timestamp)
    with core_logic.transaction(context, "update_bank_account"):
        account = get_bank_account(context, account_id)
        if account is None:
            log.warning("Bank account lookup failed for id '%s'", account_id)
            raise NotFoundError("Bank account not found")

        new_number = updates.get("account_number")
        if new_number is not None and new_number != account.account_number:
            for other in _ensure_accounts_cache(context)["all"]:
                if other.account_id != account_id and other.account_number == new_number:
                    raise ValidationError("Account with this account number already exists")

        field_values: Dict[str, Any] = {"UpdatedAt": core_logic.timestamp_iso(moment)}
        for name, value in updates.items():
            if name in ("current_balance", "total_balance"):
                value = money.round_money(value)
            elif name == "account_type":
                value = BankAccountType(value).value
            field_values[_EDITABLE_FIELDS[name]] = value
        data_manager.update_bank_account(context.workbook, account_id, field_values=field_values)

        new_balance = field_values.get("CurrentBalance")
        if new_balance is not None and new_balance != account.current_balance:
            difference = money.subtract_money(new_balance, account.current_balance)
            direction = BankTransactionType.CREDIT if difference > 0 else BankTransactionType.DEBIT
            data_manager.append_bank_transaction(
                context.workbook,
                data_manager.BankTransactionRow(
                    transaction_id=core_logic.generate_id("BT", when=moment),
                    account_id=account_id,
                    transaction_type=direction.value,
                    amount=abs(difference),
                    description=reason or "Manual balance adjustment by admin",
                    balance_after=new_balance,
                    date=core_logic.timestamp_iso(moment),
                    processed_by=admin_user_id,
                ),
            )

        core_logic.record_audit_entry(
            context,
            action="update_bank_account",
            resource="bank_account",
            resource_id=account_id,
            user_id=admin_user_id,
            user_role="admin",
            new_data=dict(updates),
            metadata={
                "reason": reason,
                "previous_state": {
                    "account_name": account.account_name,
                    "account_number": account.account_number,
                    "bank_name": account.bank_name,
                    "account_type": account.account_type,
                    "current_balance": account.current_balance,
                    "total_balance": account.total_balance,
                    "description": account.description,
                    "is_active": account.is_active,
                },
            },
            timestamp=moment,
        )

    log.info("Updated bank account '%s' (%s)", account_id, ", ".join(sorted(updates)) or "no fields")


__all__ = [
    "BankAccountCommand",
    "BankUpdateResult",
    "get_bank_account",
    "list_bank_accounts",
    "create_bank_account",
    "update_bank_account_balance",
    "get_bank_transaction_history",
    "update_bank_account",
]
