"""Integration tests describing the end-to-end Garage ERP workflows.

These scenarios document how the data access layer, the business modules and
the CLI collaborate, including saving to and reloading from disk between
steps.
"""

from __future__ import annotations

import threading
from decimal import Decimal

import pytest

from garage_erp import approvals, banking, billing, cli, core_logic, data_manager, jobs
from garage_erp.constants import ApprovalDecision, BillStatus, JobStatus, PaymentMethod, PaymentType, SubTaskType


def _reload(context: core_logic.RuntimeContext) -> core_logic.RuntimeContext:
    """Persist and reopen the workbook the way separate CLI runs would."""

    core_logic.persist_context(context)
    return core_logic.refresh_context(context)


def test_credit_job_lifecycle_flow(runtime_context, clock):
    """Open a job, bill it on credit, settle it in two payments and deliver it."""

    context = runtime_context
    job_id = jobs.create_job(
        context,
        jobs.JobCommand(
            vehicle_no="ABC-123",
            sub_tasks=[jobs.SubTaskInput(task_type=SubTaskType.PARTS, parts_type="Brake pad")],
            timestamp=clock(),
        ),
    )
    jobs.update_job_status(context, job_id, JobStatus.IN_PROGRESS, timestamp=clock())
    jobs.update_job_status(context, job_id, JobStatus.FINISHED, timestamp=clock())

    creation = billing.create_bill(
        context,
        billing.BillCommand(
            job_id=job_id,
            vehicle_no="ABC-123",
            customer_name="Nimal Perera",
            customer_phone="0771234567",
            total_amount=Decimal("1000"),
            payment_type=PaymentType.CREDIT,
            initial_payment=Decimal("400"),
            services=[{"name": "Brake pad", "price": Decimal("1000")}],
            timestamp=clock(),
        ),
        additional_services=["Body wash"],
    )
    context = _reload(context)

    first = billing.record_credit_payment(
        context, billing.PaymentCommand(bill_id=creation.bill_id, payment_amount="250", timestamp=clock())
    )
    context = _reload(context)
    second = billing.record_credit_payment(
        context, billing.PaymentCommand(bill_id=creation.bill_id, payment_amount="350", timestamp=clock())
    )
    jobs.update_job_status(context, job_id, JobStatus.DELIVERED, timestamp=clock())
    context = _reload(context)

    bill = billing.require_bill(context, creation.bill_id)
    snapshots = [b for b in billing.list_bills(context) if b.original_bill_id == creation.bill_id]
    job = jobs.get_job(context, job_id)

    assert (first.new_remaining_balance, second.new_remaining_balance) == (Decimal("350.00"), Decimal("0.00"))
    assert bill.status == BillStatus.PAID.value
    assert bill.version == 3
    assert bill.services == [{"name": "Brake pad", "price": "1000"}]
    assert sorted(s.remaining_balance for s in snapshots) == [Decimal("0.00"), Decimal("350.00")]
    assert billing.reconcile_bill_balance(context, creation.bill_id).is_consistent is True
    assert job.status == JobStatus.DELIVERED.value
    assert [task.parts_type or task.service_type for task in job.sub_tasks] == ["Brake pad", "Body wash"]
    assert billing.list_credit_bills(context) == []


def test_staff_changes_wait_for_approval_flow(runtime_context, make_credit_bill):
    """Staff requests change nothing until an admin approves them."""

    bill = make_credit_bill()
    context = runtime_context

    subtask = approvals.add_subtask_with_approval(
        context,
        bill.job_id,
        jobs.SubTaskInput(task_type=SubTaskType.SERVICE, service_type="Polish"),
        "U-STAFF",
        "staff",
    )
    payment = approvals.process_credit_payment_with_approval(
        context, bill.bill_id, "200", "U-STAFF", "staff", payment_method=PaymentMethod.CASH
    )
    context = _reload(context)

    assert jobs.get_job(context, bill.job_id).sub_tasks == []
    assert billing.require_bill(context, bill.bill_id).remaining_balance == Decimal("600.00")
    assert len(approvals.list_approval_requests(context, status="pending")) == 2

    approvals.decide_request(context, subtask.request_id, "U-ADMIN", ApprovalDecision.APPROVE)
    approvals.decide_request(context, payment.request_id, "U-ADMIN", ApprovalDecision.APPROVE)
    context = _reload(context)

    (task,) = jobs.get_job(context, bill.job_id).sub_tasks
    assert task.service_type == "Polish"
    assert task.is_additional is True
    assert billing.require_bill(context, bill.bill_id).remaining_balance == Decimal("400.00")
    assert approvals.list_approval_requests(context, status="pending") == []
    assert {entry.action for entry in core_logic.list_audit_entries(context)} == {"approve_request"}


def test_stale_version_is_rejected_after_reload_flow(runtime_context, make_credit_bill, clock):
    """A caller holding an old version must refresh before writing."""

    bill = make_credit_bill()
    stale_version = bill.version
    billing.record_credit_payment(
        runtime_context, billing.PaymentCommand(bill_id=bill.bill_id, payment_amount="100", timestamp=clock())
    )
    context = _reload(runtime_context)

    with pytest.raises(core_logic.ConcurrentModificationError):
        billing.record_credit_payment(
            context,
            billing.PaymentCommand(
                bill_id=bill.bill_id, payment_amount="100", expected_version=stale_version, timestamp=clock()
            ),
        )

    assert len(billing.get_credit_payment_history(context, bill.bill_id)) == 1


def test_concurrent_payments_never_overdraw_balance_flow(runtime_context, make_credit_bill):
    """Two threads paying 400 against a 600 balance: exactly one succeeds."""

    bill = make_credit_bill()
    outcomes: list[object] = []
    barrier = threading.Barrier(2)

    def _pay():
        barrier.wait(timeout=5)
        try:
            outcomes.append(
                billing.record_credit_payment(
                    runtime_context, billing.PaymentCommand(bill_id=bill.bill_id, payment_amount="400")
                )
            )
        except core_logic.BusinessRuleViolation as exc:
            outcomes.append(exc)

    threads = [threading.Thread(target=_pay) for _ in range(2)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=10)

    successes = [o for o in outcomes if isinstance(o, billing.PaymentResult)]
    failures = [o for o in outcomes if isinstance(o, core_logic.ValidationError)]
    assert len(successes) == 1
    assert len(failures) == 1
    assert billing.require_bill(runtime_context, bill.bill_id).remaining_balance == Decimal("200.00")


def test_cli_credit_bill_with_bank_account_flow(config_factory, capsys):
    """Bill and payment postings land in the bank ledger across CLI runs."""

    bundle = config_factory()
    base = ["--config", str(bundle.config_path)]

    assert cli.main([*base, "add-bank-account", "--account-name", "Main", "--account-number", "001",
                     "--bank-name", "Commercial Bank", "--opening-balance", "50"]) == 0
    assert cli.main([*base, "create-job", "--vehicle-no", "CLI-777"]) == 0
    workbook = data_manager.open_workbook(bundle.workbook_path)
    (account,) = list(data_manager.iter_bank_accounts(workbook))
    (job,) = list(data_manager.iter_jobs(workbook))

    assert cli.main([*base, "create-bill", "--job-id", job.job_id, "--vehicle-no", "CLI-777",
                     "--customer-name", "Kamal", "--customer-phone", "0711111111", "--total-amount", "300",
                     "--payment-type", "Credit", "--initial-payment", "100",
                     "--bank-account", account.account_id]) == 0
    (bill,) = list(data_manager.iter_bills(data_manager.open_workbook(bundle.workbook_path)))
    assert cli.main([*base, "pay", "--bill-id", bill.bill_id, "--amount", "50", "--method", "Bank Transfer"]) == 0
    capsys.readouterr()

    assert cli.main([*base, "bank-history", "--account-id", account.account_id]) == 0
    output = capsys.readouterr().out

    context = cli.load_runtime_context(bundle.config_path)
    assert banking.get_bank_account(context, account.account_id).current_balance == Decimal("400.00")
    assert billing.require_bill(context, bill.bill_id).remaining_balance == Decimal("150.00")
    assert "balance=400.00" in output
    assert output.count("credit") == 2


def test_cli_draft_then_finalize_flow(config_factory, capsys):
    bundle = config_factory()
    base = ["--config", str(bundle.config_path)]

    assert cli.main([*base, "create-job", "--vehicle-no", "DRF-001"]) == 0
    (job,) = list(data_manager.iter_jobs(data_manager.open_workbook(bundle.workbook_path)))
    bill_args = ["--job-id", job.job_id, "--vehicle-no", "DRF-001", "--customer-name", "Sunil",
                 "--customer-phone", "0700000000", "--total-amount", "80", "--line", "Oil=80"]

    assert cli.main([*base, "draft-bill", *bill_args]) == 0
    (draft,) = list(data_manager.iter_bills(data_manager.open_workbook(bundle.workbook_path)))
    assert draft.status == "draft"
    assert cli.main([*base, "finalize-bill", "--bill-id", draft.bill_id, "--expected-version", "1"]) == 0
    assert cli.main([*base, "finalize-bill", "--bill-id", draft.bill_id, "--expected-version", "1"]) == 2
    capsys.readouterr()

    assert cli.main([*base, "bill", "--id", job.job_id]) == 0
    output = capsys.readouterr().out
    assert f"Bill {draft.bill_id} (original)" in output
    assert "Status: finalized  Version: 2" in output
