"""Utility for initializing the Garage ERP master workbook.

The module doubles as a script (``garage-setup``) and as a library used by
tests. Sheet headers come from :data:`garage_erp.data_manager.SHEET_COLUMNS`
so the bootstrap and the data layer can never disagree about column order.
"""

from __future__ import annotations

import argparse
import sys
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Mapping, Optional, Sequence

import openpyxl
from openpyxl.styles import Font

from . import data_manager, log, money
from .constants import BankAccountType

CONFIG_FILE = data_manager.CONFIG_FILE_NAME


@dataclass(frozen=True)
class SetupSettings:
    """Configuration values used during setup."""

    data_file: Path
    shop_name: str
    default_bank_account_id: Optional[str] = None


def load_settings(config_path: Path) -> SetupSettings:
    """Read ``config.ini`` and produce :class:`SetupSettings`.

    Relative paths inside the config file are resolved against the config
    file's directory.
    """

    config_path = config_path.expanduser().resolve()
    parser = data_manager.read_config(config_path)
    settings = data_manager.parse_settings(parser, base_path=config_path.parent)
    return SetupSettings(
        data_file=settings.data_file,
        shop_name=settings.shop_name,
        default_bank_account_id=settings.default_bank_account_id,
    )


def _default_account(account_id: str, shop_name: str) -> data_manager.BankAccountRow:
    stamp = datetime.now(timezone.utc).isoformat()
    return data_manager.BankAccountRow(
        account_id=account_id,
        account_name=f"{shop_name} Main Account",
        account_number=account_id,
        bank_name="Unspecified",
        account_type=BankAccountType.CURRENT.value,
        current_balance=money.ZERO,
        total_balance=money.ZERO,
        is_active=True,
        created_at=stamp,
        updated_at=stamp,
        description="Created by garage-setup",
    )


def create_master_workbook(
    destination: Path,
    *,
    shop_name: str = "Garage",
    default_bank_account_id: Optional[str] = None,
    sheet_columns: Mapping[str, Sequence[str]] = data_manager.SHEET_COLUMNS,
    overwrite: bool = False,
) -> Path:
    """Create an empty master workbook at ``destination``.

    Every collection sheet gets a bold header row. When
    ``default_bank_account_id`` is given, a zero-balance account with that
    identifier is seeded so billing can post to it right away.

    Raises:
        FileExistsError: If the target exists and ``overwrite`` is false.
    """

    destination = destination.expanduser().resolve()
    if destination.exists() and not overwrite:
        raise FileExistsError(f"Refusing to overwrite existing master workbook: {destination}")

    destination.parent.mkdir(parents=True, exist_ok=True)

    workbook = openpyxl.Workbook()

    # openpyxl always starts with a default sheet.
    if workbook.active and workbook.active.title == "Sheet":
        workbook.remove(workbook.active)

    bold_font = Font(bold=True)

    for sheet_name, columns in sheet_columns.items():
        worksheet = workbook.create_sheet(title=sheet_name)
        for column_index, column_name in enumerate(columns, start=1):
            cell = worksheet.cell(row=1, column=column_index)
            cell.value = column_name
            cell.font = bold_font

    if default_bank_account_id:
        data_manager.append_bank_account(workbook, _default_account(default_bank_account_id, shop_name))
        log.info("Seeded default bank account '%s'", default_bank_account_id)

    workbook.save(destination)
    log.info("Created master workbook '%s' with %d sheets", destination, len(sheet_columns))
    return destination


def run_from_config(config_path: Path, *, overwrite: bool = False) -> Path:
    settings = load_settings(config_path)
    return create_master_workbook(
        settings.data_file,
        shop_name=settings.shop_name,
        default_bank_account_id=settings.default_bank_account_id,
        overwrite=overwrite,
    )


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Initialize the Garage ERP data file")
    parser.add_argument(
        "--config",
        default=CONFIG_FILE,
        help="Path to configuration file (default: config.ini)",
    )
    parser.add_argument(
        "--force",
        action="store_true",
        help="Overwrite the target workbook if it already exists.",
    )
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point for the ``garage-setup`` script."""

    args = parse_args(argv)
    config_path = Path(args.config).expanduser().resolve()

    print("--- Garage ERP Setup ---")
    print(f"Using configuration: {config_path}")

    try:
        output_path = run_from_config(config_path, overwrite=args.force)
    except FileNotFoundError as exc:
        print(f"\n[ERROR] {exc}")
        return 1
    except KeyError as exc:
        print(f"\n[ERROR] {exc}")
        return 1
    except FileExistsError as exc:
        print(f"\n[ERROR] {exc}")
        print("Run with --force to overwrite the existing file if appropriate.")
        return 1
    except (PermissionError, OSError) as exc:
        print(f"\n[ERROR] Unable to write workbook: {exc}")
        return 1

    print(f"\n[SUCCESS] Created master workbook at '{output_path}'.")
    return 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
