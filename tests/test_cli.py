"""Unit tests describing the CLI presentation layer contract."""

from __future__ import annotations

import argparse
from decimal import Decimal
from pathlib import Path
from typing import Iterable, Mapping

import pytest

from garage_erp import approvals, billing, cli, core_logic, data_manager, jobs
from garage_erp.constants import ApprovalType, ClientType, JobStatus, PaymentType, SubTaskType


WRITE_COMMANDS = {
    "create-job",
    "job-status",
    "add-subtask",
    "create-bill",
    "draft-bill",
    "finalize-bill",
    "pay",
    "request",
    "decide",
    "add-bank-account",
}

READ_COMMANDS = {
    "jobs",
    "bill",
    "payments",
    "approvals",
    "credit-bills",
    "bank-history",
}

# ---------------------------------------------------------------------------
# Parser construction
# ---------------------------------------------------------------------------


def test_build_parser_sets_program_metadata():
    """build_parser should set user-facing program metadata."""

    parser = cli.build_parser()
    assert isinstance(parser, argparse.ArgumentParser)
    assert parser.prog == "garage-cli"
    assert "Garage" in (parser.description or "")


def test_build_parser_defaults_to_admin_role():
    parser = cli.build_parser()
    cli.configure_subcommands(parser)

    args = parser.parse_args(["jobs"])

    assert args.role == "admin"
    assert args.actor is None
    assert args.config is None


def test_build_parser_rejects_unknown_role():
    parser = cli.build_parser()
    cli.configure_subcommands(parser)
    with pytest.raises(SystemExit):
        parser.parse_args(["--role", "owner", "jobs"])


def test_configure_subcommands_registers_every_command(cli_parser):
    """configure_subcommands should wire all mutating and reporting sub-commands."""

    command_table = cli.configure_subcommands(cli_parser)

    assert set(command_table) == WRITE_COMMANDS | READ_COMMANDS
    assert _registered_choices(cli_parser) == WRITE_COMMANDS | READ_COMMANDS


def test_register_write_commands_returns_command_specs(subparsers_action):
    """register_write_commands should return a mapping of CommandSpec objects."""

    specs = cli.register_write_commands(subparsers_action)
    assert set(specs) == WRITE_COMMANDS
    for spec in specs.values():
        assert isinstance(spec, cli.CommandSpec)
        assert spec.help_text
    assert set(subparsers_action.choices) == WRITE_COMMANDS


def test_register_read_commands_returns_command_specs(subparsers_action):
    """register_read_commands should return a mapping of CommandSpec objects."""

    specs = cli.register_read_commands(subparsers_action)
    assert set(specs) == READ_COMMANDS
    assert set(subparsers_action.choices) == READ_COMMANDS


# ---------------------------------------------------------------------------
# Command registrations
# ---------------------------------------------------------------------------


def _parse(register, argv):
    parser = argparse.ArgumentParser(prog="cli")
    subparsers = parser.add_subparsers(dest="command")
    spec = register(subparsers)
    spec.register(subparsers)
    return spec, parser.parse_args(argv)


def test_register_create_job_command_configures_arguments():
    spec, namespace = _parse(
        cli.register_create_job_command,
        ["create-job", "--vehicle-no", "ABC-123", "--part", "Brake pad", "--part", "Filter", "--service", "Wash"],
    )

    assert spec.name == "create-job"
    assert namespace.parts == ["Brake pad", "Filter"]
    assert namespace.services == ["Wash"]
    assert namespace.company_name is None


def test_register_create_bill_command_configures_arguments():
    spec, namespace = _parse(
        cli.register_create_bill_command,
        [
            "create-bill",
            "--job-id", "J1",
            "--vehicle-no", "ABC-123",
            "--customer-name", "Nimal",
            "--customer-phone", "0771234567",
            "--total-amount", "1000",
            "--payment-type", "Credit",
            "--initial-payment", "400",
            "--line", "Brake pad=600",
            "--additional-service", "Wash",
        ],
    )

    assert spec.execute is cli.run_create_bill
    assert namespace.payment_type == "Credit"
    assert namespace.lines == ["Brake pad=600"]
    assert namespace.additional_services == ["Wash"]
    assert namespace.client_type == "Customer"


def test_register_pay_command_requires_amount():
    with pytest.raises(SystemExit):
        _parse(cli.register_pay_command, ["pay", "--bill-id", "B1"])

    _, namespace = _parse(
        cli.register_pay_command, ["pay", "--bill-id", "B1", "--amount", "25", "--method", "Bank Transfer"]
    )
    assert (namespace.amount, namespace.method) == ("25", "Bank Transfer")


def test_register_request_command_configures_arguments():
    _, namespace = _parse(
        cli.register_request_command,
        ["request", "--type", "status_change", "--job-id", "J1", "--status", "finished"],
    )

    assert namespace.request_type == "status_change"
    assert namespace.amount is None


def test_register_decide_command_limits_decisions():
    with pytest.raises(SystemExit):
        _parse(cli.register_decide_command, ["decide", "--request-id", "AR1", "--decision", "maybe"])


def test_register_bank_history_command_defaults():
    _, namespace = _parse(cli.register_bank_history_command, ["bank-history", "--account-id", "BA1"])
    assert (namespace.limit, namespace.offset) == (50, 0)


# ---------------------------------------------------------------------------
# Runtime context helpers
# ---------------------------------------------------------------------------


def test_load_runtime_context_uses_provided_path(config_file, monkeypatch):
    """load_runtime_context should load settings from the specified config path."""

    sentinel_context = object()
    checked = []

    def fake_loader(path: Path | None) -> object:
        assert path == config_file
        return sentinel_context

    monkeypatch.setattr(core_logic, "load_runtime_context", fake_loader)
    monkeypatch.setattr(core_logic, "ensure_schema_version", checked.append)
    assert cli.load_runtime_context(config_file) is sentinel_context
    assert checked == [sentinel_context]


def test_load_runtime_context_supports_defaults(monkeypatch, tmp_path):
    """load_runtime_context should resolve config.ini from the working directory."""

    config_path = tmp_path / "config.ini"
    sentinel_context = object()

    def fake_loader(path: Path | None) -> object:
        assert path == config_path
        return sentinel_context

    monkeypatch.setattr(core_logic, "load_runtime_context", fake_loader)
    monkeypatch.setattr(core_logic, "ensure_schema_version", lambda _: None)
    monkeypatch.chdir(tmp_path)
    assert cli.load_runtime_context() is sentinel_context


# ---------------------------------------------------------------------------
# Dispatch helpers
# ---------------------------------------------------------------------------


def test_dispatch_command_invokes_executor(context):
    """dispatch_command should call the executor associated with the command."""

    called = {}

    def execute(ctx, args):
        called["context"] = ctx
        return 0

    spec = cli.CommandSpec("alpha", "A", lambda s: s.add_parser("alpha"), execute)
    result = cli.dispatch_command(context, argparse.Namespace(command="alpha"), {"alpha": spec})

    assert result == 0
    assert called["context"] is context


def test_dispatch_command_handles_unknown_commands(context):
    """dispatch_command should raise a clear error for unknown commands."""

    with pytest.raises(KeyError):
        cli.dispatch_command(context, argparse.Namespace(command="unknown"), {})
    with pytest.raises(KeyError):
        cli.dispatch_command(context, argparse.Namespace(), {})


def test_build_command_table_indexes_specs(command_spec_iterable):
    """build_command_table should index specs by their command names."""

    table = cli.build_command_table(command_spec_iterable)
    assert set(table) == {spec.name for spec in command_spec_iterable}


def test_build_command_table_detects_duplicate_commands():
    """build_command_table should guard against duplicate command names."""

    specs = [
        cli.CommandSpec("alpha", "A", lambda s: s.add_parser("alpha"), lambda c, a: 0),
        cli.CommandSpec("alpha", "Duplicate", lambda s: s.add_parser("alpha"), lambda c, a: 0),
    ]
    with pytest.raises(ValueError):
        cli.build_command_table(specs)


# ---------------------------------------------------------------------------
# Translation helpers
# ---------------------------------------------------------------------------


def test_resolve_actor_prefers_argument(context):
    assert cli.resolve_actor(context, argparse.Namespace(actor="U-7")) == "U-7"
    assert cli.resolve_actor(context, argparse.Namespace(actor=None)) == "U-SYSTEM"


def test_parse_line_item():
    assert cli.parse_line_item(" Brake pad = 600.5") == {"name": "Brake pad", "price": Decimal("600.50")}
    with pytest.raises(core_logic.ValidationError):
        cli.parse_line_item("no-price")


def test_translate_create_job_returns_job_command():
    args = argparse.Namespace(
        vehicle_no="ABC-123",
        customer_name="Nimal",
        customer_phone="",
        remarks="Dent",
        company_name="Lanka Logistics",
        parts=["Brake pad"],
        services=["Wash"],
    )

    command = cli.translate_create_job(args)

    assert isinstance(command, jobs.JobCommand)
    assert command.is_company_vehicle is True
    assert [task.task_type for task in command.sub_tasks] == [SubTaskType.PARTS, SubTaskType.SERVICE]
    assert command.sub_tasks[1].service_type == "Wash"


def test_translate_subtask_maps_name_by_type():
    args = argparse.Namespace(task_type="service", name="Wheel alignment", brand=None, warranty=3)

    task = cli.translate_subtask(args)

    assert task == jobs.SubTaskInput(task_type=SubTaskType.SERVICE, service_type="Wheel alignment", warranty_period=3)


def test_translate_bill_returns_bill_command():
    args = argparse.Namespace(
        job_id="J1",
        vehicle_no="ABC-123",
        customer_name="Nimal",
        customer_phone="0771234567",
        total_amount="1000",
        commission=None,
        payment_type="Cheque",
        initial_payment=None,
        vehicle_type="Car",
        driver_name=None,
        client_type="Company",
        lines=["Paint=1000"],
        bank_account="",
        cheque_number="000123",
        remarks=None,
    )

    command = cli.translate_bill(args, "U-1")

    assert isinstance(command, billing.BillCommand)
    assert command.payment_type is PaymentType.CHEQUE
    assert command.client_type is ClientType.COMPANY
    assert command.cheque_details == {"cheque_number": "000123"}
    assert command.bank_account is None
    assert command.created_by == "U-1"
    assert billing.validate_bill_data(command) == []


def test_translate_request_builds_payloads(runtime_context, make_credit_bill):
    bill = make_credit_bill()
    base = dict(job_id=None, status=None, name=None, brand=None, warranty=None, bill_id=None, amount=None,
                method="Cash", notes=None, cheque_number=None)

    payment = cli.translate_request(
        runtime_context, argparse.Namespace(**{**base, "request_type": "credit_payment", "bill_id": bill.bill_id, "amount": "50"})
    )
    status = cli.translate_request(
        runtime_context, argparse.Namespace(**{**base, "request_type": "status_change", "job_id": bill.job_id, "status": "finished"})
    )

    assert payment == (
        ApprovalType.CREDIT_PAYMENT,
        bill.job_id,
        approvals.PaymentPayload(bill_id=bill.bill_id, payment_amount=Decimal("50")),
    )
    assert status[2] == approvals.StatusChangePayload(JobStatus.FINISHED, "todo", "ABC-123")
    with pytest.raises(core_logic.ValidationError, match="needs --name"):
        cli.translate_request(runtime_context, argparse.Namespace(**{**base, "request_type": "part", "job_id": bill.job_id}))


# ---------------------------------------------------------------------------
# Command execution helpers
# ---------------------------------------------------------------------------


def test_run_create_job_invokes_bll(runtime_context, monkeypatch, capsys):
    """run_create_job should delegate to the business logic layer."""

    sentinel = jobs.JobCommand(vehicle_no="ABC-123")
    called = {}

    def fake_create_job(context, command):
        called["context"] = context
        called["command"] = command
        return "J-NEW"

    monkeypatch.setattr(cli, "translate_create_job", lambda args: sentinel)
    monkeypatch.setattr(cli.jobs, "create_job", fake_create_job)

    assert cli.run_create_job(runtime_context, argparse.Namespace()) == 0
    assert called == {"context": runtime_context, "command": sentinel}
    assert "Created job J-NEW" in capsys.readouterr().out


def test_run_pay_routes_through_approval(runtime_context, monkeypatch, capsys):
    called = {}

    def fake_process(context, bill_id, amount, user_id, user_role, **kwargs):
        called.update(bill_id=bill_id, amount=amount, user_id=user_id, user_role=user_role, **kwargs)
        return approvals.RoutingResult(False, True, "Credit payment request submitted", request_id="AR1")

    monkeypatch.setattr(cli.approvals, "process_credit_payment_with_approval", fake_process)
    args = argparse.Namespace(
        bill_id="B1", amount="25", method="Cash", notes=None, cheque_number=None, actor="U-STAFF", role="staff"
    )

    assert cli.run_pay(runtime_context, args) == 0
    assert (called["user_id"], called["user_role"]) == ("U-STAFF", "staff")
    assert "Request ID: AR1" in capsys.readouterr().out


def test_run_decide_checks_role(runtime_context, make_credit_bill):
    bill = make_credit_bill()
    request_id = approvals.request_credit_payment(runtime_context, bill.bill_id, "10", "U-STAFF")
    args = argparse.Namespace(request_id=request_id, decision="approve", reason=None, actor="U-M", role="manager")

    with pytest.raises(core_logic.PermissionDeniedError):
        cli.run_decide(runtime_context, args)

    assert approvals.get_approval_request(runtime_context, request_id).status == "pending"


def test_run_request_checks_role(runtime_context, make_job):
    job_id = make_job()
    args = argparse.Namespace(
        request_type="status_change", job_id=job_id, status="finished", name=None, brand=None, warranty=None,
        bill_id=None, amount=None, method="Cash", notes=None, cheque_number=None, actor="U-T", role="tax",
    )

    with pytest.raises(core_logic.PermissionDeniedError):
        cli.run_request(runtime_context, args)


def test_run_bill_report_raises_for_unknown_id(runtime_context):
    with pytest.raises(core_logic.NotFoundError):
        cli.run_bill_report(runtime_context, argparse.Namespace(lookup_id="nothing"))


def test_run_credit_bills_report_lists_outstanding(runtime_context, make_credit_bill, capsys):
    bill = make_credit_bill()

    assert cli.run_credit_bills_report(runtime_context, argparse.Namespace()) == 0
    assert f"{bill.bill_id}  ABC-123" in capsys.readouterr().out


# ---------------------------------------------------------------------------
# Error handling and persistence
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "error, expected",
    [
        (core_logic.BusinessRuleViolation("invalid"), 2),
        (core_logic.ConcurrentModificationError("stale"), 2),
        (core_logic.PermissionDeniedError("denied"), 2),
        (FileNotFoundError("missing"), 3),
        (ValueError("bad value"), 1),
    ],
)
def test_handle_cli_error_returns_exit_code(error: Exception, expected: int, caplog: pytest.LogCaptureFixture):
    """handle_cli_error should convert exceptions into exit codes."""

    caplog.set_level("ERROR")
    assert cli.handle_cli_error(error) == expected
    assert any(str(error) in record.getMessage() for record in caplog.records)


def test_persist_workbook_saves_changes(runtime_context, monkeypatch):
    """persist_workbook should request the data layer to save the workbook."""

    called = {}
    monkeypatch.setattr(cli.core_logic, "persist_context", lambda context: called.setdefault("context", context))
    cli.persist_workbook(runtime_context)
    assert called["context"] is runtime_context


def test_persist_workbook_handles_read_only_workbooks(runtime_context, monkeypatch):
    """persist_workbook should handle read-only workbook scenarios gracefully."""

    def fake_persist(_: core_logic.RuntimeContext) -> None:
        raise PermissionError("read-only")

    monkeypatch.setattr(cli.core_logic, "persist_context", fake_persist)
    with pytest.raises(RuntimeError, match="read-only"):
        cli.persist_workbook(runtime_context)


# ---------------------------------------------------------------------------
# Program entry point
# ---------------------------------------------------------------------------


def test_main_executes_specified_command(monkeypatch, context):
    """main should execute the command parsed from argv and persist."""

    parser = _stub_parser(command="jobs")
    command_table = {"jobs": cli.CommandSpec("jobs", "help", lambda _: parser, lambda *_: 0)}

    monkeypatch.setattr(cli, "build_parser", lambda: parser)
    monkeypatch.setattr(cli, "configure_subcommands", lambda _: command_table)
    monkeypatch.setattr(cli, "load_runtime_context", lambda path=None: context)

    called = {}

    def fake_dispatch(ctx, args: argparse.Namespace, table: Mapping[str, cli.CommandSpec]) -> int:
        called["args"] = args
        called["table"] = table
        return 0

    monkeypatch.setattr(cli, "dispatch_command", fake_dispatch)
    monkeypatch.setattr(cli, "persist_workbook", lambda ctx: called.setdefault("persisted", ctx))

    assert cli.main(["jobs"]) == 0
    assert called["persisted"] is context
    assert called["args"].command == "jobs"
    assert called["table"] is command_table


def test_main_does_not_persist_on_errors(monkeypatch, context):
    """main should surface business rule violations as non-zero exits."""

    parser = _stub_parser(command="pay")
    command_table = {"pay": cli.CommandSpec("pay", "help", lambda _: parser, lambda *_: 0)}

    monkeypatch.setattr(cli, "build_parser", lambda: parser)
    monkeypatch.setattr(cli, "configure_subcommands", lambda _: command_table)
    monkeypatch.setattr(cli, "load_runtime_context", lambda path=None: context)

    def fake_dispatch(*_: object) -> int:
        raise core_logic.ValidationError("invalid")

    monkeypatch.setattr(cli, "dispatch_command", fake_dispatch)
    monkeypatch.setattr(cli, "persist_workbook", lambda _: (_ for _ in ()).throw(AssertionError("should not persist")))

    assert cli.main(["pay"]) == 2


def test_main_reports_missing_config(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    assert cli.main(["jobs"]) == 3


def test_main_runs_against_real_workbook(config_factory, capsys):
    """A full CLI run should save its changes to the configured workbook."""

    bundle = config_factory()
    base = ["--config", str(bundle.config_path)]

    assert cli.main([*base, "create-job", "--vehicle-no", "CLI-001", "--part", "Brake pad"]) == 0
    (job,) = list(data_manager.iter_jobs(data_manager.open_workbook(bundle.workbook_path)))
    assert job.vehicle_no == "CLI-001"
    assert job.sub_tasks[0].parts_type == "Brake pad"
    assert f"Created job {job.job_id}" in capsys.readouterr().out

    assert cli.main([*base, "--role", "staff", "job-status", "--job-id", job.job_id, "--status", "finished"]) == 0
    (request,) = list(data_manager.iter_approval_requests(data_manager.open_workbook(bundle.workbook_path)))
    assert request.request_type == "status_change"

    assert cli.main([*base, "--role", "staff", "decide", "--request-id", request.request_id, "--decision", "approve"]) == 2
    assert cli.main([*base, "--actor", "U-ADMIN", "decide", "--request-id", request.request_id, "--decision", "approve"]) == 0
    (stored,) = list(data_manager.iter_jobs(data_manager.open_workbook(bundle.workbook_path)))
    assert stored.status == "finished"
    assert stored.last_status_change_by == "U-ADMIN"


def test_main_failed_command_leaves_workbook_unchanged(config_factory):
    bundle = config_factory()
    before = bundle.workbook_path.read_bytes()

    exit_code = cli.main(["--config", str(bundle.config_path), "create-job", "--vehicle-no", "AB"])

    assert exit_code == 2
    assert bundle.workbook_path.read_bytes() == before


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _stub_parser(command: str) -> argparse.ArgumentParser:
    """Create a stub parser that always returns the supplied command."""

    class _Stub(argparse.ArgumentParser):
        def parse_args(self, args: Iterable[str] | None = None, namespace: argparse.Namespace | None = None):  # type: ignore[override]
            return argparse.Namespace(command=command)

    return _Stub(prog="test")


def _registered_choices(parser: argparse.ArgumentParser) -> set[str]:
    """Return the set of registered sub-command names for assertion helpers."""

    actions = getattr(parser, "_subparsers", None)
    if not actions:
        return set()
    group_actions = actions._group_actions  # type: ignore[attr-defined]
    if not group_actions:
        return set()
    return set(group_actions[0].choices)  # type: ignore[index]
