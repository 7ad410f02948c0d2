"""
Snapshot loader.

Reads a YAML or JSON document holding already-parsed records for the CLI:
a reconciliation header, bank transactions, ledger entries, and the
suggestion history with match runs. Record lists are given inline or as the
path of a CSV table of the same columns, relative to the snapshot.
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from pathlib import Path
from typing import Any, Callable, Optional
import json
import logging

import pandas as pd
import yaml

from .models.reconciliation import PendingItem
from .models.suggestion import MatchRunRecord, Suggestion, SuggestionStatus
from .models.transaction import BankTransaction, GeneralLedgerEntry
from .utils.exceptions import ReconciliationError, SnapshotLoadError

logger = logging.getLogger(__name__)


@dataclass
class Snapshot:
    """Records loaded from a snapshot file."""

    reconciliation: dict = field(default_factory=dict)
    pending_items: list[PendingItem] = field(default_factory=list)
    bank_transactions: list[BankTransaction] = field(default_factory=list)
    gl_entries: list[GeneralLedgerEntry] = field(default_factory=list)
    suggestions: list[Suggestion] = field(default_factory=list)
    runs: list[MatchRunRecord] = field(default_factory=list)
    period: dict = field(default_factory=dict)
    skipped: list[str] = field(default_factory=list)
    source: Optional[Path] = None


def load_snapshot(path: Path) -> Snapshot:
    """
    Load a snapshot file.

    Rows that cannot be turned into records are skipped with a warning and
    listed in ``Snapshot.skipped``.

    Args:
        path: Path to a .yaml/.yml or .json file

    Returns:
        Snapshot with typed records

    Raises:
        SnapshotLoadError: If the file cannot be read or is not a mapping
    """
    logger.info(f"Loading snapshot: {path}")
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as e:
        raise SnapshotLoadError(f"Cannot read snapshot {path}: {e}") from e

    try:
        if path.suffix.lower() == ".json":
            document = json.loads(text)
        else:
            document = yaml.safe_load(text)
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        raise SnapshotLoadError(f"Invalid snapshot {path}: {e}") from e

    if document is None:
        document = {}
    if not isinstance(document, dict):
        raise SnapshotLoadError(f"Snapshot root must be a mapping: {path}")

    header = document.get("reconciliation") or {}
    if not isinstance(header, dict):
        raise SnapshotLoadError("'reconciliation' must be a mapping")

    header = dict(header)
    snapshot = Snapshot(source=path)
    snapshot.period = document.get("period") or {}
    base_dir = path.parent
    defaults = {
        "company_id": header.get("company_id"),
        "bank_account_number": header.get("bank_account_number"),
        "gl_account_number": header.get("gl_account_number", "521"),
    }

    snapshot.pending_items = _build_all(
        snapshot, "pending item", header.pop("pending_items", None), base_dir, _pending_item, defaults
    )
    snapshot.reconciliation = header
    snapshot.bank_transactions = _build_all(
        snapshot, "bank transaction", document.get("bank_transactions"), base_dir, _bank_transaction, defaults
    )
    snapshot.gl_entries = _build_all(
        snapshot, "ledger entry", document.get("gl_entries"), base_dir, _gl_entry, defaults
    )
    snapshot.suggestions = _build_all(
        snapshot, "suggestion", document.get("suggestions"), base_dir, _suggestion, defaults
    )
    snapshot.runs = _build_all(snapshot, "match run", document.get("runs"), base_dir, _run, defaults)

    logger.info(
        f"Snapshot loaded: {len(snapshot.bank_transactions)} bank transactions, "
        f"{len(snapshot.gl_entries)} ledger entries, {len(snapshot.suggestions)} suggestions, "
        f"{len(snapshot.skipped)} skipped row(s)"
    )
    return snapshot


def _build_all(
    snapshot: Snapshot,
    label: str,
    value: Any,
    base_dir: Path,
    builder: Callable[[dict, int, dict], Any],
    defaults: dict,
) -> list:
    rows = _rows(label, value, base_dir)
    records = []
    for idx, row in enumerate(rows):
        try:
            records.append(builder(row, idx, defaults))
        except (ReconciliationError, KeyError, TypeError, ValueError) as e:
            message = f"{label} #{idx}: {e}"
            logger.warning(f"Skipping {message}")
            snapshot.skipped.append(message)
    return records


def _rows(label: str, value: Any, base_dir: Path) -> list[dict]:
    if value is None:
        return []
    if isinstance(value, str):
        return _read_table(base_dir / value)
    if not isinstance(value, list) or not all(isinstance(row, dict) for row in value):
        raise SnapshotLoadError(f"{label} records must be a list of mappings or a CSV path")
    return value


def _read_table(file_path: Path) -> list[dict]:
    """Read a CSV table of records, dropping empty cells."""
    try:
        df = pd.read_csv(file_path, dtype=str)
    except Exception as e:
        logger.error(f"Failed to read CSV file: {e}")
        raise SnapshotLoadError(f"Failed to read CSV file {file_path}: {e}") from e

    rows = []
    for _, row in df.iterrows():
        rows.append({key: value for key, value in row.to_dict().items() if pd.notna(value)})
    return rows


def _required(row: dict, key: str, default: Any = None) -> str:
    value = row.get(key)
    if value is None or value == "":
        value = default
    if value is None:
        raise KeyError(key)
    return str(value)


def _parse_date(value: Any) -> Optional[date]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value).strip())


def _parse_datetime(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    return datetime.fromisoformat(str(value).strip())


def _parse_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "y")
    return bool(value)


def _parse_ids(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [part.strip() for part in value.replace(";", ",").split(",") if part.strip()]
    return [str(part) for part in value]


def _pending_item(row: dict, idx: int, defaults: dict) -> PendingItem:
    return PendingItem(
        item_type=str(row["item_type"]).strip().lower(),
        amount=row["amount"],
        transaction_date=_parse_date(row.get("transaction_date")),
        description=row.get("description", ""),
        reference=row.get("reference"),
        third_party=row.get("third_party"),
    )


def _bank_transaction(row: dict, idx: int, defaults: dict) -> BankTransaction:
    return BankTransaction(
        id=str(row.get("id") or f"BANK-{idx:05d}"),
        company_id=_required(row, "company_id", defaults["company_id"]),
        account_number=_required(row, "account_number", defaults["bank_account_number"]),
        transaction_date=_parse_date(row.get("transaction_date")),
        amount=row.get("amount"),
        description=row.get("description", ""),
        bank_reference=row.get("bank_reference") or row.get("reference"),
        third_party_name=row.get("third_party_name"),
        value_date=_parse_date(row.get("value_date")),
        is_reconciled=_parse_bool(row.get("is_reconciled", False)),
    )


def _gl_entry(row: dict, idx: int, defaults: dict) -> GeneralLedgerEntry:
    return GeneralLedgerEntry(
        id=str(row.get("id") or f"GL-{idx:05d}"),
        company_id=_required(row, "company_id", defaults["company_id"]),
        account_number=_required(row, "account_number", defaults["gl_account_number"]),
        entry_date=_parse_date(row.get("entry_date")),
        debit_amount=row.get("debit_amount", 0),
        credit_amount=row.get("credit_amount", 0),
        description=row.get("description", ""),
        reference=row.get("reference"),
        journal_code=row.get("journal_code"),
        third_party_name=row.get("third_party_name"),
        is_reconciled=_parse_bool(row.get("is_reconciled", False)),
    )


def _suggestion(row: dict, idx: int, defaults: dict) -> Suggestion:
    suggestion = Suggestion(
        company_id=_required(row, "company_id", defaults["company_id"]),
        reconciliation_id=_required(row, "reconciliation_id"),
        bank_transaction_ids=_parse_ids(row.get("bank_transaction_ids")),
        gl_entry_ids=_parse_ids(row.get("gl_entry_ids")),
        confidence_score=row["confidence_score"],
        matching_reason=row.get("matching_reason", ""),
        bank_total=row.get("bank_total", 0),
        book_total=row.get("book_total", 0),
        status=SuggestionStatus(str(row.get("status", "pending")).lower()),
        processed_by=row.get("processed_by"),
        processed_at=_parse_datetime(row.get("processed_at")),
        rejection_reason=row.get("rejection_reason"),
    )
    if row.get("id"):
        suggestion.id = str(row["id"])
    created_at = _parse_datetime(row.get("created_at"))
    if created_at is not None:
        suggestion.created_at = created_at
    return suggestion


def _run(row: dict, idx: int, defaults: dict) -> MatchRunRecord:
    return MatchRunRecord(
        reconciliation_id=_required(row, "reconciliation_id"),
        company_id=_required(row, "company_id", defaults["company_id"]),
        started_at=_parse_datetime(row["started_at"]),
        finished_at=_parse_datetime(row["finished_at"]),
        transactions_analyzed=int(row.get("transactions_analyzed", 0)),
        entries_analyzed=int(row.get("entries_analyzed", 0)),
        suggestions_generated=int(row.get("suggestions_generated", 0)),
        cancelled=_parse_bool(row.get("cancelled", False)),
    )


HEADER_REQUIRED = ("company_id", "bank_account_number", "period_start", "period_end", "statement_balance")
HEADER_OPTIONAL = (
    "id",
    "book_balance",
    "bank_name",
    "gl_account_number",
    "statement_reference",
    "notes",
    "reconciliation_date",
)


def header_arguments(header: dict) -> dict:
    """
    Turn a snapshot reconciliation header into ``create_reconciliation`` arguments.

    Raises:
        SnapshotLoadError: If a required field is missing or a date is invalid
    """
    missing = [key for key in HEADER_REQUIRED if header.get(key) in (None, "")]
    if missing:
        raise SnapshotLoadError(f"Reconciliation header is missing: {', '.join(missing)}")

    arguments = {key: header[key] for key in HEADER_REQUIRED + HEADER_OPTIONAL if key in header}
    for key in ("company_id", "bank_account_number", "gl_account_number", "id"):
        if key in arguments:
            arguments[key] = str(arguments[key])
    try:
        for key in ("period_start", "period_end", "reconciliation_date"):
            if key in arguments:
                arguments[key] = _parse_date(arguments[key])
    except ValueError as e:
        raise SnapshotLoadError(f"Invalid date in reconciliation header: {e}") from e
    return arguments
