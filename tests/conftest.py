"""Shared pytest fixtures and utilities for Garage ERP tests."""

from __future__ import annotations

import argparse
import sys
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from pathlib import Path
from typing import Callable, Iterator
from unittest.mock import Mock

import pytest

# Ensure source packages are importable without installation.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"

if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from garage_erp import banking, billing, cli, constants, core_logic, data_manager, jobs  # noqa: E402
from garage_erp.setup_excel import create_master_workbook  # noqa: E402

DEFAULT_SCHEMA_VERSION = constants.EXPECTED_SCHEMA_VERSION
DEFAULT_ACTOR_ID = "U-SYSTEM"
_CONFIG_TEMPLATE = (
    "[System]\n"
    "DataFile = {data_file}\n"
    "ShopName = {shop_name}\n"
    "SchemaVersion = {schema_version}\n\n"
    "[Defaults]\n"
    "DefaultActor = {default_actor_id}\n"
    "DefaultBankAccount = {default_bank_account}\n"
)

BASE_MOMENT = datetime(2024, 3, 1, 9, 0, tzinfo=UTC)


@dataclass(frozen=True)
class ConfigBundle:
    """Container bundling together config metadata for tests."""

    directory: Path
    config_path: Path
    workbook_path: Path
    default_actor_id: str
    schema_version: str
    shop_name: str


@pytest.fixture(scope="session", autouse=True)
def _restore_sys_path() -> Iterator[None]:
    """Ensure sys.path modifications are undone after the test session."""

    original = sys.path.copy()
    try:
        yield
    finally:
        sys.path[:] = original


@pytest.fixture
def workbook_factory(tmp_path: Path) -> Callable[..., Path]:
    """Factory that creates an initialized master workbook in a temp folder."""

    def _create_workbook(
        *,
        subdir: str | None = None,
        default_bank_account_id: str | None = None,
        filename: str = "master_workbook.xlsx",
    ) -> Path:
        base_dir = tmp_path if subdir is None else tmp_path / subdir
        base_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = base_dir / filename
        create_master_workbook(
            workbook_path,
            shop_name="Test Garage",
            default_bank_account_id=default_bank_account_id,
            overwrite=True,
        )
        return workbook_path

    return _create_workbook


@pytest.fixture
def master_workbook_path(workbook_factory: Callable[..., Path]) -> Path:
    """Return a fresh master workbook ready for use in a test."""

    return workbook_factory(subdir=f"workbook_{uuid.uuid4().hex}")


@pytest.fixture
def config_factory(tmp_path: Path, workbook_factory: Callable[..., Path]) -> Callable[..., ConfigBundle]:
    """Provide a callable that creates config/workbook bundles on demand."""

    def _create_config(
        *,
        make_relative: bool = False,
        shop_name: str = "Test Garage",
        schema_version: str = DEFAULT_SCHEMA_VERSION,
        default_actor_id: str = DEFAULT_ACTOR_ID,
        default_bank_account: str = "",
    ) -> ConfigBundle:
        bundle_dir_name = f"bundle_{uuid.uuid4().hex}"
        bundle_dir = tmp_path / bundle_dir_name
        workbook_path = workbook_factory(
            subdir=bundle_dir_name,
            default_bank_account_id=default_bank_account or None,
        )
        data_file_entry = workbook_path.name if make_relative else str(workbook_path)
        config_path = bundle_dir / "config.ini"
        config_path.write_text(
            _CONFIG_TEMPLATE.format(
                data_file=data_file_entry,
                shop_name=shop_name,
                schema_version=schema_version,
                default_actor_id=default_actor_id,
                default_bank_account=default_bank_account,
            )
        )
        return ConfigBundle(
            directory=bundle_dir,
            config_path=config_path,
            workbook_path=workbook_path,
            default_actor_id=default_actor_id,
            schema_version=schema_version,
            shop_name=shop_name,
        )

    return _create_config


@pytest.fixture
def config_file(config_factory: Callable[..., ConfigBundle]) -> Path:
    """Convenience fixture returning only the config path."""

    return config_factory().config_path


@pytest.fixture
def runtime_context(config_file: Path) -> core_logic.RuntimeContext:
    """Load the runtime context for tests through the public API."""

    context = core_logic.load_runtime_context(config_file)
    core_logic.ensure_schema_version(context)
    return context


# ---------------------------------------------------------------------------
# Domain builders
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> Callable[[], datetime]:
    """Return a callable yielding strictly increasing timestamps."""

    state = {"tick": 0}

    def _next() -> datetime:
        state["tick"] += 1
        return BASE_MOMENT + timedelta(minutes=state["tick"])

    return _next


@pytest.fixture
def make_job(runtime_context: core_logic.RuntimeContext, clock) -> Callable[..., str]:
    """Create a job through the business layer and return its identifier."""

    def _make(vehicle_no: str = "ABC-123", **overrides) -> str:
        command = jobs.JobCommand(vehicle_no=vehicle_no, timestamp=overrides.pop("timestamp", clock()), **overrides)
        return jobs.create_job(runtime_context, command)

    return _make


@pytest.fixture
def bill_command(clock) -> Callable[..., billing.BillCommand]:
    """Build a valid credit bill command for ``job_id``."""

    def _build(job_id: str, **overrides) -> billing.BillCommand:
        values = dict(
            job_id=job_id,
            vehicle_no="ABC-123",
            customer_name="Nimal Perera",
            customer_phone="0771234567",
            total_amount=Decimal("1000"),
            commission=Decimal("0"),
            payment_type=constants.PaymentType.CREDIT,
            initial_payment=Decimal("400"),
            timestamp=clock(),
        )
        values.update(overrides)
        return billing.BillCommand(**values)

    return _build


@pytest.fixture
def make_credit_bill(
    runtime_context: core_logic.RuntimeContext,
    make_job,
    bill_command,
) -> Callable[..., data_manager.BillRow]:
    """Create a job plus a finalized credit bill and return the bill row."""

    def _make(vehicle_no: str = "ABC-123", **overrides) -> data_manager.BillRow:
        job_id = make_job(vehicle_no)
        result = billing.create_bill(runtime_context, bill_command(job_id, vehicle_no=vehicle_no, **overrides))
        return billing.require_bill(runtime_context, result.bill_id)

    return _make


@pytest.fixture
def make_bank_account(runtime_context: core_logic.RuntimeContext) -> Callable[..., str]:
    """Register a bank account and return its identifier."""

    def _make(account_number: str = "001-2345", balance: str = "0", **overrides) -> str:
        command = banking.BankAccountCommand(
            account_name=overrides.pop("account_name", "Main Account"),
            account_number=account_number,
            bank_name=overrides.pop("bank_name", "Commercial Bank"),
            current_balance=Decimal(balance),
            total_balance=Decimal(balance),
            **overrides,
        )
        return banking.create_bank_account(runtime_context, command)

    return _make


# ---------------------------------------------------------------------------
# CLI layer fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def cli_parser() -> argparse.ArgumentParser:
    """Return a fresh CLI parser instance for tests."""

    return argparse.ArgumentParser(prog="garage-cli", description="Garage CLI")


@pytest.fixture
def subparsers_action(
    cli_parser: argparse.ArgumentParser,
) -> argparse._SubParsersAction[argparse.ArgumentParser]:
    """Return the subparser action used to register commands."""

    return cli_parser.add_subparsers(dest="command")


@pytest.fixture
def command_spec_iterable() -> list[cli.CommandSpec]:
    """Provide a list of command specs for indexing tests."""

    def _make_spec(name: str) -> cli.CommandSpec:
        return cli.CommandSpec(
            name,
            f"{name} help",
            lambda subparsers: subparsers.add_parser(name),
            lambda *_: 0,
        )

    return [_make_spec("alpha"), _make_spec("beta"), _make_spec("gamma")]


# ---------------------------------------------------------------------------
# Mocked context fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings(tmp_path: Path) -> data_manager.ConfigSettings:
    """Provide default configuration settings for runtime context tests."""

    return data_manager.ConfigSettings(
        data_file=tmp_path / "master_workbook.xlsx",
        shop_name="Test Garage",
        schema_version=constants.EXPECTED_SCHEMA_VERSION,
        default_actor_id=DEFAULT_ACTOR_ID,
    )


@pytest.fixture
def workbook() -> Mock:
    """Return a mock workbook object for tests that never touch sheets."""

    return Mock(name="workbook")


@pytest.fixture
def context(settings: data_manager.ConfigSettings, workbook: Mock) -> core_logic.RuntimeContext:
    """Assemble a runtime context from injected settings and workbook mocks."""

    return core_logic.RuntimeContext(settings=settings, workbook=workbook)


@pytest.fixture
def set_fixed_datetime(monkeypatch: pytest.MonkeyPatch) -> Callable[[datetime], datetime]:
    """Patch ``core_logic.datetime`` to return a predetermined moment."""

    def _apply(moment: datetime) -> datetime:
        class _FixedDateTime:
            @staticmethod
            def now(tz=None):
                assert tz is UTC
                return moment

        monkeypatch.setattr(core_logic, "datetime", _FixedDateTime)
        return moment

    return _apply
