"""In-memory persistence with optimistic versioning.

Callers never touch stored objects directly: reads return copies, and writes
go through a ``UnitOfWork`` that checks, at commit time and under the store
lock, that nothing it loaded has been changed by someone else.
"""

from copy import deepcopy
from typing import Callable, Iterable, Optional
import logging
import threading

from .models.reconciliation import Reconciliation
from .models.suggestion import MatchRunRecord, Suggestion, SuggestionStatus
from .models.transaction import BankTransaction, GeneralLedgerEntry
from .utils.exceptions import ConcurrencyConflict, NotFoundError, ValidationError

logger = logging.getLogger(__name__)

RECONCILIATION = "reconciliation"
BANK_TRANSACTION = "bank_transaction"
GL_ENTRY = "gl_entry"
SUGGESTION = "suggestion"

KINDS = (RECONCILIATION, BANK_TRANSACTION, GL_ENTRY, SUGGESTION)


class InMemoryStore:
    """Thread-safe in-memory storage for reconciliation data."""

    def __init__(self):
        self._lock = threading.RLock()
        self._tables: dict[str, dict[str, object]] = {kind: {} for kind in KINDS}
        self._runs: list[MatchRunRecord] = []
        # record id -> id of the PENDING suggestion referencing it
        self._pending_index: dict[str, str] = {}

    # Seeding of records owned by other subsystems

    def add_bank_transactions(self, transactions: Iterable[BankTransaction]) -> None:
        with self._lock:
            for txn in transactions:
                self._tables[BANK_TRANSACTION][txn.id] = deepcopy(txn)

    def add_gl_entries(self, entries: Iterable[GeneralLedgerEntry]) -> None:
        with self._lock:
            for entry in entries:
                self._tables[GL_ENTRY][entry.id] = deepcopy(entry)

    # Read-only queries; results are copies

    def get(self, kind: str, entity_id: str):
        with self._lock:
            entity = self._tables[kind].get(entity_id)
            return deepcopy(entity) if entity is not None else None

    def query(self, kind: str, predicate: Optional[Callable[[object], bool]] = None) -> list:
        with self._lock:
            return [
                deepcopy(entity)
                for entity in self._tables[kind].values()
                if predicate is None or predicate(entity)
            ]

    def reconciliations(self, predicate: Optional[Callable[[Reconciliation], bool]] = None) -> list[Reconciliation]:
        return self.query(RECONCILIATION, predicate)

    def bank_transactions(self, predicate: Optional[Callable[[BankTransaction], bool]] = None) -> list[BankTransaction]:
        return self.query(BANK_TRANSACTION, predicate)

    def gl_entries(self, predicate: Optional[Callable[[GeneralLedgerEntry], bool]] = None) -> list[GeneralLedgerEntry]:
        return self.query(GL_ENTRY, predicate)

    def suggestions(self, predicate: Optional[Callable[[Suggestion], bool]] = None) -> list[Suggestion]:
        return self.query(SUGGESTION, predicate)

    def runs(self, predicate: Optional[Callable[[MatchRunRecord], bool]] = None) -> list[MatchRunRecord]:
        with self._lock:
            return [deepcopy(r) for r in self._runs if predicate is None or predicate(r)]

    def pending_suggestion_for(self, record_id: str) -> Optional[str]:
        with self._lock:
            return self._pending_index.get(record_id)

    def unit_of_work(self) -> "UnitOfWork":
        return UnitOfWork(self)

    # Commit, called by UnitOfWork only

    def _commit(self, uow: "UnitOfWork") -> None:
        with self._lock:
            self._check_versions(uow)
            self._check_unique_keys(uow)
            pending_index = self._project_pending_index(uow)

            for (kind, entity_id), entity in uow._loaded.items():
                if (kind, entity_id) in uow._deleted:
                    continue
                if entity != uow._originals[(kind, entity_id)]:
                    entity.version += 1
                    self._tables[kind][entity_id] = deepcopy(entity)

            for (kind, entity_id), entity in uow._new.items():
                self._tables[kind][entity_id] = deepcopy(entity)

            for kind, entity_id in uow._deleted:
                self._tables[kind].pop(entity_id, None)

            self._runs.extend(deepcopy(r) for r in uow._runs)
            self._pending_index = pending_index

    def _check_versions(self, uow: "UnitOfWork") -> None:
        for (kind, entity_id), expected in uow._versions.items():
            current = self._tables[kind].get(entity_id)
            actual = current.version if current is not None else None
            if actual != expected:
                raise ConcurrencyConflict(
                    f"{kind} was modified concurrently",
                    entity_id=entity_id,
                    expected_version=expected,
                    actual_version=actual,
                )
        for kind, entity_id in uow._new:
            if entity_id in self._tables[kind]:
                raise ConcurrencyConflict(f"{kind} already exists", entity_id=entity_id)

    def _check_unique_keys(self, uow: "UnitOfWork") -> None:
        new_reconciliations = [
            entity for (kind, _), entity in uow._new.items() if kind == RECONCILIATION
        ]
        if not new_reconciliations:
            return
        deleted = {entity_id for kind, entity_id in uow._deleted if kind == RECONCILIATION}
        taken = {
            rec.key: rec.id
            for rec in self._tables[RECONCILIATION].values()
            if rec.id not in deleted
        }
        for rec in new_reconciliations:
            if rec.key in taken:
                raise ValidationError(
                    "A reconciliation already exists for this account and period",
                    entity_id=taken[rec.key],
                    invariant="unique-period",
                )
            taken[rec.key] = rec.id

    def _project_pending_index(self, uow: "UnitOfWork") -> dict[str, str]:
        """Pending index as it will be after the commit; two claims on a record conflict."""
        touched = {
            entity_id
            for (kind, entity_id) in list(uow._loaded) + list(uow._new) + list(uow._deleted)
            if kind == SUGGESTION
        }
        index = {
            record_id: suggestion_id
            for record_id, suggestion_id in self._pending_index.items()
            if suggestion_id not in touched
        }
        survivors = [
            entity
            for (kind, entity_id), entity in list(uow._loaded.items()) + list(uow._new.items())
            if kind == SUGGESTION and (kind, entity_id) not in uow._deleted
        ]
        for suggestion in survivors:
            if suggestion.status is not SuggestionStatus.PENDING:
                continue
            for record_id in suggestion.record_ids:
                holder = index.get(record_id)
                if holder is not None and holder != suggestion.id:
                    raise ConcurrencyConflict(
                        f"Record {record_id} is already referenced by pending suggestion {holder}",
                        entity_id=suggestion.id,
                    )
                index[record_id] = suggestion.id
        return index


class UnitOfWork:
    """
    A transaction over the store.

    Entities loaded through the unit of work are private copies; nothing is
    written until ``commit()``. Leaving the ``with`` block without committing,
    or because of an exception, discards every change.
    """

    def __init__(self, store: InMemoryStore):
        self.store = store
        self._loaded: dict[tuple[str, str], object] = {}
        self._originals: dict[tuple[str, str], object] = {}
        self._versions: dict[tuple[str, str], int] = {}
        self._new: dict[tuple[str, str], object] = {}
        self._deleted: set[tuple[str, str]] = set()
        self._runs: list[MatchRunRecord] = []
        self.committed = False

    def __enter__(self) -> "UnitOfWork":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if exc_type is not None and (self._loaded or self._new):
            logger.debug(f"Discarding unit of work after {exc_type.__name__}")

    def _load(self, kind: str, entity_id: str, required: bool = True):
        key = (kind, entity_id)
        if key in self._deleted:
            entity = None
        elif key in self._new:
            entity = self._new[key]
        elif key in self._loaded:
            entity = self._loaded[key]
        else:
            entity = self.store.get(kind, entity_id)
            if entity is not None:
                self._loaded[key] = entity
                self._originals[key] = deepcopy(entity)
                self._versions[key] = entity.version
        if entity is None and required:
            raise NotFoundError(f"{kind.replace('_', ' ').capitalize()} not found", entity_id=entity_id)
        return entity

    def _track(self, kind: str, entities: list) -> list:
        return [self._load(kind, entity.id) for entity in entities]

    def reconciliation(self, reconciliation_id: str) -> Reconciliation:
        return self._load(RECONCILIATION, reconciliation_id)

    def bank_transaction(self, transaction_id: str) -> BankTransaction:
        return self._load(BANK_TRANSACTION, transaction_id)

    def gl_entry(self, entry_id: str) -> GeneralLedgerEntry:
        return self._load(GL_ENTRY, entry_id)

    def suggestion(self, suggestion_id: str) -> Suggestion:
        return self._load(SUGGESTION, suggestion_id)

    def pending_suggestions(self, reconciliation_id: str) -> list[Suggestion]:
        """Load every PENDING suggestion of a reconciliation, new ones included."""
        stored = self.store.suggestions(
            lambda s: s.reconciliation_id == reconciliation_id and s.is_pending
        )
        stored = [s for s in stored if (SUGGESTION, s.id) not in self._deleted]
        loaded = [s for s in self._track(SUGGESTION, stored) if s.is_pending]
        loaded_ids = {s.id for s in loaded}
        loaded.extend(
            s
            for (kind, _), s in self._new.items()
            if kind == SUGGESTION
            and s.reconciliation_id == reconciliation_id
            and s.is_pending
            and s.id not in loaded_ids
        )
        return loaded

    def add(self, kind: str, entity) -> None:
        self._new[(kind, entity.id)] = entity

    def add_reconciliation(self, reconciliation: Reconciliation) -> Reconciliation:
        self.add(RECONCILIATION, reconciliation)
        return reconciliation

    def add_suggestion(self, suggestion: Suggestion) -> Suggestion:
        self.add(SUGGESTION, suggestion)
        return suggestion

    def add_run(self, run: MatchRunRecord) -> None:
        self._runs.append(run)

    def delete(self, kind: str, entity_id: str) -> None:
        key = (kind, entity_id)
        if key in self._new:
            del self._new[key]
            return
        self._load(kind, entity_id)
        self._deleted.add(key)

    def commit(self) -> None:
        """
        Write every change atomically.

        Raises:
            ConcurrencyConflict: If a loaded entity changed since it was read,
                or a record would be claimed by two pending suggestions
            ValidationError: If a new reconciliation duplicates an existing key
        """
        if self.committed:
            raise ValidationError("Unit of work already committed", invariant="single-commit")
        self.store._commit(self)
        self.committed = True
