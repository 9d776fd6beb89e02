"""Command-line entry points for the Garage ERP toolkit.

All orchestration in this module is limited to argparse wiring and translating
command-line arguments into the command objects consumed by the business
layer. Every command shares the same runtime context loading, error-to-exit
code mapping and "save only on success" rule.
"""

from __future__ import annotations

import argparse
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, MutableMapping, Optional, Sequence

from . import approvals, banking, billing, core_logic, jobs, log, money
from .constants import (
    ApprovalDecision,
    ApprovalStatus,
    ApprovalType,
    BankAccountType,
    ClientType,
    JobStatus,
    PaymentMethod,
    PaymentType,
    SubTaskType,
)
from .permissions import UserRole, get_approval_permissions


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed."""

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int]


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="garage-cli",
        description="Command-line tools for the Garage ERP workbook.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (defaults to ./config.ini).",
    )
    parser.add_argument(
        "--actor",
        default=None,
        help="User recorded on writes (defaults to DefaultActor from config.ini).",
    )
    parser.add_argument(
        "--role",
        choices=[member.value for member in UserRole],
        default=UserRole.ADMIN.value,
        help="Role of the acting user; staff changes are routed through approval.",
    )
    return parser


def configure_subcommands(
    parser: argparse.ArgumentParser,
) -> Mapping[str, CommandSpec]:
    """Wire all CLI sub-commands onto the supplied parser."""
    subparsers = parser.add_subparsers(dest="command", required=True, title="commands")
    write_specs = register_write_commands(subparsers)
    read_specs = register_read_commands(subparsers)
    return build_command_table([*write_specs.values(), *read_specs.values()])


def register_write_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare mutating CLI commands such as jobs, bills and payments."""
    specs = {
        "create-job": register_create_job_command(subparsers),
        "job-status": register_job_status_command(subparsers),
        "add-subtask": register_add_subtask_command(subparsers),
        "create-bill": register_create_bill_command(subparsers),
        "draft-bill": register_draft_bill_command(subparsers),
        "finalize-bill": register_finalize_bill_command(subparsers),
        "pay": register_pay_command(subparsers),
        "request": register_request_command(subparsers),
        "decide": register_decide_command(subparsers),
        "add-bank-account": register_add_bank_account_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare read-only CLI commands such as listings and histories."""
    specs = {
        "jobs": register_jobs_command(subparsers),
        "bill": register_bill_command(subparsers),
        "payments": register_payments_command(subparsers),
        "approvals": register_approvals_command(subparsers),
        "credit-bills": register_credit_bills_command(subparsers),
        "bank-history": register_bank_history_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


# ---------------------------------------------------------------------------
# Write command registrations
# ---------------------------------------------------------------------------


def register_create_job_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``create-job``."""
    name = "create-job"
    help_text = "Open a new job for a vehicle."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--vehicle-no", required=True)
        parser.add_argument("--customer-name", default="")
        parser.add_argument("--customer-phone", default="")
        parser.add_argument("--remarks", default="", help="Damage remarks.")
        parser.add_argument("--company-name", default=None, help="Marks the job as a company vehicle.")
        parser.add_argument("--part", dest="parts", action="append", default=[], help="Part to fit (repeatable).")
        parser.add_argument(
            "--service", dest="services", action="append", default=[], help="Service to perform (repeatable)."
        )
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_create_job)


def register_job_status_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``job-status``."""
    name = "job-status"
    help_text = "Move a job to another pipeline status."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--job-id", required=True)
        parser.add_argument("--status", choices=[member.value for member in JobStatus], required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_job_status)


def register_add_subtask_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-subtask``."""
    name = "add-subtask"
    help_text = "Add a part or service to a job."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        _add_subtask_arguments(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_subtask)


def register_create_bill_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``create-bill``."""
    name = "create-bill"
    help_text = "Issue a finalized bill for a job."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        _add_bill_arguments(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_create_bill)


def register_draft_bill_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``draft-bill``."""
    name = "draft-bill"
    help_text = "Create a draft bill for a job."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        _add_bill_arguments(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_draft_bill)


def register_finalize_bill_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``finalize-bill``."""
    name = "finalize-bill"
    help_text = "Promote a draft bill to finalized."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--bill-id", required=True)
        parser.add_argument("--expected-version", type=int, default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_finalize_bill)


def register_pay_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``pay``."""
    name = "pay"
    help_text = "Record a payment against a credit bill."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--bill-id", required=True)
        _add_payment_arguments(parser, required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_pay)


def register_request_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``request``."""
    name = "request"
    help_text = "File an approval request."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--type", dest="request_type", choices=[member.value for member in ApprovalType], required=True)
        parser.add_argument("--job-id", default=None, help="Required for part, service and status_change requests.")
        parser.add_argument("--status", choices=[member.value for member in JobStatus], default=None)
        parser.add_argument("--name", default=None, help="Part or service name.")
        parser.add_argument("--brand", default=None)
        parser.add_argument("--warranty", type=int, default=None, help="Warranty period in months.")
        parser.add_argument("--bill-id", default=None, help="Required for payment requests.")
        _add_payment_arguments(parser, required=False)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_request)


def register_decide_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``decide``."""
    name = "decide"
    help_text = "Approve or reject a pending approval request."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--request-id", required=True)
        parser.add_argument("--decision", choices=[member.value for member in ApprovalDecision], required=True)
        parser.add_argument("--reason", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_decide)


def register_add_bank_account_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-bank-account``."""
    name = "add-bank-account"
    help_text = "Register a bank account."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--account-name", required=True)
        parser.add_argument("--account-number", required=True)
        parser.add_argument("--bank-name", required=True)
        parser.add_argument(
            "--account-type",
            choices=[member.value for member in BankAccountType],
            default=BankAccountType.CURRENT.value,
        )
        parser.add_argument("--opening-balance", default="0")
        parser.add_argument("--description", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_bank_account)


# ---------------------------------------------------------------------------
# Read command registrations
# ---------------------------------------------------------------------------


def register_jobs_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``jobs``."""
    name = "jobs"
    help_text = "Display jobs grouped by pipeline status."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_jobs_report)


def register_bill_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``bill``."""
    name = "bill"
    help_text = "Display a bill by bill ID or job ID."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--id", dest="lookup_id", required=True, help="Bill ID or job ID.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_bill_report)


def register_payments_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``payments``."""
    name = "payments"
    help_text = "Display credit payments for a bill or across the ledger."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--bill-id", default=None)
        parser.add_argument("--vehicle-no", default=None)
        parser.add_argument("--customer-name", default=None)
        parser.add_argument("--limit", type=int, default=50)
        parser.add_argument("--offset", type=int, default=0)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_payments_report)


def register_approvals_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``approvals``."""
    name = "approvals"
    help_text = "Display approval requests."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--status", choices=[member.value for member in ApprovalStatus], default=None)
        parser.add_argument("--type", dest="request_type", choices=[member.value for member in ApprovalType], default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_approvals_report)


def register_credit_bills_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``credit-bills``."""
    name = "credit-bills"
    help_text = "Display credit bills with an outstanding balance."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_credit_bills_report)


def register_bank_history_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``bank-history``."""
    name = "bank-history"
    help_text = "Display the transaction history of a bank account."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--account-id", required=True)
        parser.add_argument("--limit", type=int, default=50)
        parser.add_argument("--offset", type=int, default=0)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_bank_history_report)


# ---------------------------------------------------------------------------
# Shared argument groups
# ---------------------------------------------------------------------------


def _add_subtask_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--job-id", required=True)
    parser.add_argument("--type", dest="task_type", choices=[member.value for member in SubTaskType], required=True)
    parser.add_argument("--name", required=True, help="Part or service name.")
    parser.add_argument("--brand", default=None)
    parser.add_argument("--warranty", type=int, default=None, help="Warranty period in months.")


def _add_bill_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--job-id", required=True)
    parser.add_argument("--vehicle-no", required=True)
    parser.add_argument("--customer-name", required=True)
    parser.add_argument("--customer-phone", required=True)
    parser.add_argument("--total-amount", required=True)
    parser.add_argument("--commission", default=None)
    parser.add_argument(
        "--payment-type",
        choices=[member.value for member in PaymentType],
        default=PaymentType.CASH.value,
    )
    parser.add_argument("--initial-payment", default=None)
    parser.add_argument("--bank-account", default=None)
    parser.add_argument("--vehicle-type", default="")
    parser.add_argument("--driver-name", default=None)
    parser.add_argument(
        "--client-type",
        choices=[member.value for member in ClientType],
        default=ClientType.CUSTOMER.value,
    )
    parser.add_argument(
        "--line",
        dest="lines",
        action="append",
        default=[],
        metavar="NAME=PRICE",
        help="Bill line item (repeatable).",
    )
    parser.add_argument(
        "--additional-service",
        dest="additional_services",
        action="append",
        default=[],
        help="Extra service to add to the job as completed (repeatable).",
    )
    parser.add_argument("--cheque-number", default=None)
    parser.add_argument("--remarks", default=None)


def _add_payment_arguments(parser: argparse.ArgumentParser, *, required: bool) -> None:
    parser.add_argument("--amount", required=required)
    parser.add_argument(
        "--method",
        choices=[member.value for member in PaymentMethod],
        default=PaymentMethod.CASH.value,
    )
    parser.add_argument("--notes", default=None)
    parser.add_argument("--cheque-number", default=None)


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------


def load_runtime_context(config_path: Optional[Path] = None) -> core_logic.RuntimeContext:
    """Resolve the runtime context for CLI operations and check its schema."""
    target = Path(config_path) if config_path is not None else Path.cwd() / "config.ini"
    context = core_logic.load_runtime_context(target)
    core_logic.ensure_schema_version(context)
    return context


def dispatch_command(
    context: core_logic.RuntimeContext,
    args: argparse.Namespace,
    command_table: Mapping[str, CommandSpec],
) -> int:
    """Dispatch the parsed arguments to the configured executor."""
    if not hasattr(args, "command") or args.command is None:
        raise KeyError("No command specified")
    spec = command_table.get(args.command)
    if spec is None:
        raise KeyError(f"Unknown command: {args.command}")
    return spec.execute(context, args)


def build_command_table(
    specs: Iterable[CommandSpec],
) -> MutableMapping[str, CommandSpec]:
    """Build an index of command specifications keyed by command name."""
    table: Dict[str, CommandSpec] = {}
    for spec in specs:
        if spec.name in table:
            raise ValueError(f"Duplicate command name: {spec.name}")
        table[spec.name] = spec
    return table


# ---------------------------------------------------------------------------
# Translators
# ---------------------------------------------------------------------------


def resolve_actor(context: core_logic.RuntimeContext, args: argparse.Namespace) -> str:
    return getattr(args, "actor", None) or context.settings.default_actor_id


def resolve_role(args: argparse.Namespace) -> str:
    return getattr(args, "role", None) or UserRole.ADMIN.value


def _cheque_details(args: argparse.Namespace) -> Optional[Dict[str, Any]]:
    number = getattr(args, "cheque_number", None)
    return {"cheque_number": number} if number else None


def parse_line_item(raw: str) -> Dict[str, Any]:
    """Split a ``NAME=PRICE`` argument into a bill line item."""
    name, separator, price = raw.partition("=")
    if not separator or not name.strip():
        raise core_logic.ValidationError(f"Invalid line item '{raw}', expected NAME=PRICE")
    return {"name": name.strip(), "price": money.round_money(price)}


def translate_subtask(args: argparse.Namespace) -> jobs.SubTaskInput:
    """Translate CLI args into a subtask input."""
    task_type = SubTaskType(args.task_type)
    return jobs.SubTaskInput(
        task_type=task_type,
        parts_type=args.name if task_type is SubTaskType.PARTS else None,
        service_type=args.name if task_type is SubTaskType.SERVICE else None,
        parts_brand=args.brand,
        warranty_period=args.warranty,
    )


def translate_create_job(args: argparse.Namespace) -> jobs.JobCommand:
    """Translate CLI args into a job command object."""
    sub_tasks = [jobs.SubTaskInput(task_type=SubTaskType.PARTS, parts_type=part) for part in args.parts]
    sub_tasks.extend(jobs.SubTaskInput(task_type=SubTaskType.SERVICE, service_type=service) for service in args.services)
    return jobs.JobCommand(
        vehicle_no=args.vehicle_no,
        customer_name=args.customer_name,
        customer_phone=args.customer_phone,
        damage_remarks=args.remarks,
        sub_tasks=sub_tasks,
        is_company_vehicle=bool(args.company_name),
        company_name=args.company_name or "",
    )


def translate_bill(args: argparse.Namespace, actor: str) -> billing.BillCommand:
    """Translate CLI args into a bill command object."""
    return billing.BillCommand(
        job_id=args.job_id,
        vehicle_no=args.vehicle_no,
        customer_name=args.customer_name,
        customer_phone=args.customer_phone,
        total_amount=args.total_amount,
        commission=args.commission,
        payment_type=PaymentType(args.payment_type),
        initial_payment=args.initial_payment,
        vehicle_type=args.vehicle_type,
        driver_name=args.driver_name,
        client_type=ClientType(args.client_type),
        services=[parse_line_item(raw) for raw in args.lines],
        bank_account=args.bank_account or None,
        cheque_details=_cheque_details(args),
        remarks=args.remarks,
        created_by=actor,
    )


def translate_request(
    context: core_logic.RuntimeContext, args: argparse.Namespace
) -> tuple[ApprovalType, str, approvals.ApprovalPayload]:
    """Translate CLI args into a request type, job identifier and payload."""
    request_type = ApprovalType(args.request_type)
    payload_type = approvals.PAYLOAD_TYPES[request_type]

    if payload_type is approvals.PaymentPayload:
        if not args.bill_id or args.amount is None:
            raise core_logic.ValidationError("Payment requests need --bill-id and --amount")
        bill = billing.require_bill(context, args.bill_id)
        payload: approvals.ApprovalPayload = approvals.PaymentPayload(
            bill_id=args.bill_id,
            payment_amount=money.to_decimal(args.amount),
            payment_method=PaymentMethod(args.method),
            notes=args.notes,
            cheque_details=_cheque_details(args),
        )
        return request_type, bill.job_id, payload

    if not args.job_id:
        raise core_logic.ValidationError(f"A '{request_type.value}' request needs --job-id")
    if payload_type is approvals.StatusChangePayload:
        if not args.status:
            raise core_logic.ValidationError("Status change requests need --status")
        job = jobs.get_job(context, args.job_id)
        payload = approvals.StatusChangePayload(
            new_status=JobStatus(args.status),
            current_status=job.status,
            vehicle_no=job.vehicle_no,
        )
        return request_type, args.job_id, payload

    if not args.name:
        raise core_logic.ValidationError(f"A '{request_type.value}' request needs --name")
    is_part = request_type is ApprovalType.PART
    payload = approvals.SubTaskPayload(
        task=jobs.SubTaskInput(
            task_type=SubTaskType.PARTS if is_part else SubTaskType.SERVICE,
            parts_type=args.name if is_part else None,
            service_type=None if is_part else args.name,
            parts_brand=args.brand,
            warranty_period=args.warranty,
        )
    )
    return request_type, args.job_id, payload


# ---------------------------------------------------------------------------
# Executors
# ---------------------------------------------------------------------------


def _print_warnings(warnings: Iterable[core_logic.SideEffectWarning]) -> None:
    for warning in warnings:
        print(f"Warning: {warning.task} failed: {warning.message}")


def _print_routing(result: approvals.RoutingResult) -> None:
    print(result.message)
    if result.request_id:
        print(f"Request ID: {result.request_id}")
    if result.reference_id:
        print(f"Reference ID: {result.reference_id}")


def run_create_job(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the create-job workflow in the BLL."""
    job_id = jobs.create_job(context, translate_create_job(args))
    print(f"Created job {job_id}")
    return 0


def run_job_status(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Change a job's status, or file a request when the role needs approval."""
    result = approvals.update_job_status_with_approval(
        context,
        args.job_id,
        JobStatus(args.status),
        resolve_actor(context, args),
        resolve_role(args),
    )
    _print_routing(result)
    return 0


def run_add_subtask(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    result = approvals.add_subtask_with_approval(
        context,
        args.job_id,
        translate_subtask(args),
        resolve_actor(context, args),
        resolve_role(args),
    )
    _print_routing(result)
    return 0


def run_create_bill(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the create-bill workflow via the BLL."""
    command = translate_bill(args, resolve_actor(context, args))
    result = billing.create_bill(context, command, args.additional_services)
    verb = "Existing" if result.is_existing else "Created"
    print(f"{verb} bill {result.bill_id} ({result.status})")
    _print_warnings(result.warnings)
    return 0


def run_draft_bill(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the draft-bill workflow via the BLL."""
    command = translate_bill(args, resolve_actor(context, args))
    result = billing.create_draft_bill(context, command, args.additional_services)
    verb = "Existing" if result.is_existing else "Created"
    print(f"{verb} draft bill {result.bill_id}")
    return 0


def run_finalize_bill(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    change = billing.finalize_bill(context, args.bill_id, expected_version=args.expected_version)
    print(f"Bill {change.bill_id}: {change.previous_status} -> {change.new_status} (version {change.version})")
    return 0


def run_pay(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Record a payment, or file a request when the role needs approval."""
    result = approvals.process_credit_payment_with_approval(
        context,
        args.bill_id,
        args.amount,
        resolve_actor(context, args),
        resolve_role(args),
        payment_method=PaymentMethod(args.method),
        notes=args.notes,
        cheque_details=_cheque_details(args),
    )
    _print_routing(result)
    return 0


def run_request(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """File an approval request after checking the role may submit it."""
    request_type, job_id, payload = translate_request(context, args)
    role = resolve_role(args)
    if not get_approval_permissions(role).can_request(request_type):
        raise core_logic.PermissionDeniedError(f"Role '{role}' cannot request {request_type.value} changes")
    request_id = approvals.create_approval_request(
        context, request_type, job_id, resolve_actor(context, args), payload
    )
    print(f"Filed request {request_id}")
    return 0


def run_decide(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Approve or reject a request after checking the role may decide it."""
    request = approvals.get_approval_request(context, args.request_id)
    role = resolve_role(args)
    if not get_approval_permissions(role).can_approve(ApprovalType(request.request_type)):
        raise core_logic.PermissionDeniedError(f"Role '{role}' cannot decide {request.request_type} requests")
    result = approvals.decide_request(
        context,
        args.request_id,
        resolve_actor(context, args),
        ApprovalDecision(args.decision),
        args.reason,
    )
    print(f"Request {result.request_id} {result.status}")
    if result.reference_id:
        print(f"Reference ID: {result.reference_id}")
    return 0


def run_add_bank_account(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    account_id = banking.create_bank_account(
        context,
        banking.BankAccountCommand(
            account_name=args.account_name,
            account_number=args.account_number,
            bank_name=args.bank_name,
            account_type=BankAccountType(args.account_type),
            current_balance=money.round_money(args.opening_balance),
            total_balance=money.round_money(args.opening_balance),
            description=args.description,
        ),
    )
    print(f"Created bank account {account_id}")
    return 0


def run_jobs_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print jobs grouped by status."""
    for status, entries in jobs.get_all_jobs_categorized_by_status(context).items():
        print(f"[{status}] {len(entries)}")
        for job in entries:
            print(f"  {job.job_id}  {job.vehicle_no}  {job.customer_name}  subtasks={len(job.sub_tasks)}")
    return 0


def run_bill_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    bill = billing.get_bill_by_id(context, args.lookup_id)
    if bill is None:
        raise core_logic.NotFoundError(f"No bill found for '{args.lookup_id}'")
    print(f"Bill {bill.bill_id} ({bill.bill_type}) for job {bill.job_id}")
    print(f"  Vehicle: {bill.vehicle_no}  Customer: {bill.customer_name} {bill.customer_phone}")
    print(f"  Total: {bill.total_amount}  Commission: {bill.commission}  Final: {bill.final_amount}")
    print(f"  Payment type: {bill.payment_type}  Status: {bill.status}  Version: {bill.version}")
    print(f"  Remaining balance: {billing.current_remaining_balance(bill)}")
    return 0


def _print_payments(payments: Sequence[Any]) -> None:
    for payment in payments:
        print(
            f"{payment.payment_id}  {payment.payment_date}  {payment.bill_id}  "
            f"{payment.payment_amount}  {payment.payment_method}  balance={payment.new_balance}  "
            f"[{payment.validation_status}]"
        )


def run_payments_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print payment history for a bill, or a filtered page of the ledger."""
    if args.bill_id:
        _print_payments(billing.get_credit_payment_history(context, args.bill_id))
        return 0
    page, total = billing.list_credit_payments(
        context,
        vehicle_no=args.vehicle_no,
        customer_name=args.customer_name,
        limit=args.limit,
        offset=args.offset,
    )
    _print_payments(page)
    print(f"Showing {len(page)} of {total} payments")
    return 0


def run_approvals_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    requests = approvals.list_approval_requests(
        context,
        status=ApprovalStatus(args.status) if args.status else None,
        request_type=ApprovalType(args.request_type) if args.request_type else None,
    )
    for request in requests:
        print(
            f"{request.request_id}  {request.request_type}  job={request.job_id}  "
            f"by={request.requested_by}  {request.status}"
        )
    return 0


def run_credit_bills_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    bills: List[Any] = billing.list_credit_bills(context)
    for bill in bills:
        print(f"{bill.bill_id}  {bill.vehicle_no}  {bill.customer_name}  {bill.status}  owed={bill.remaining_balance}")
    return 0


def run_bank_history_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    account = banking.get_bank_account(context, args.account_id)
    if account is None:
        raise core_logic.NotFoundError("Bank account not found")
    print(f"{account.account_name} ({account.bank_name}) balance={account.current_balance}")
    for entry in banking.get_bank_transaction_history(context, args.account_id, limit=args.limit, offset=args.offset):
        print(f"  {entry.date}  {entry.transaction_type}  {entry.amount}  after={entry.balance_after}  {entry.description}")
    return 0


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    if isinstance(error, core_logic.BusinessRuleViolation):
        log.error("%s", error)
        return 2
    if isinstance(error, FileNotFoundError):
        log.error("%s", error)
        return 3
    log.error("%s", error)
    return 1


def persist_workbook(context: core_logic.RuntimeContext) -> None:
    """Persist workbook changes after successful execution."""
    try:
        core_logic.persist_context(context)
    except PermissionError as error:
        raise RuntimeError(str(error)) from error


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point that orchestrates parsing and execution."""
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    try:
        context = load_runtime_context(getattr(args, "config", None))
        exit_code = dispatch_command(context, args, command_table)
        if exit_code == 0:
            persist_workbook(context)
        return exit_code
    except Exception as error:  # pragma: no cover
        return handle_cli_error(error)
