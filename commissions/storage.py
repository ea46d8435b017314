import threading
from contextlib import contextmanager
from typing import Any, Hashable, Iterator, Optional
from uuid import UUID

from .errors import DuplicateKeyError

TABLES = ("entities", "referrals", "orders", "ledger_entries", "credits")


class InMemoryStorage:
    """
    Stand-in for the relational store.

    Rows are plain dicts keyed by id. Unique constraints live in ``unique``
    (one namespace per constraint name). Every write goes through
    ``transaction()``, which serialises writers and undoes the block's
    writes if it raises, so callers never observe a partial write.
    """

    def __init__(self):
        self._lock = threading.RLock()
        self._depth = 0
        self._undo: list[tuple] = []
        self.reset()

    def reset(self) -> None:
        with self._lock:
            self.tables: dict[str, dict[UUID, dict]] = {name: {} for name in TABLES}
            self.unique: dict[str, dict[Hashable, UUID]] = {}

    @contextmanager
    def transaction(self) -> Iterator["InMemoryStorage"]:
        with self._lock:
            outermost = self._depth == 0
            self._depth += 1
            try:
                yield self
            except BaseException:
                if outermost:
                    self._rollback()
                raise
            finally:
                self._depth -= 1
                if outermost:
                    self._undo = []

    def _remember_row(self, table: str, row_id: UUID) -> None:
        previous = self.tables[table].get(row_id)
        self._undo.append(("row", table, row_id, dict(previous) if previous is not None else None))

    def _rollback(self) -> None:
        for kind, namespace, key, previous in reversed(self._undo):
            if kind == "claim":
                self.unique[namespace].pop(key, None)
            elif previous is None:
                self.tables[namespace].pop(key, None)
            else:
                self.tables[namespace][key] = previous

    def insert(self, table: str, row: dict) -> dict:
        with self.transaction():
            self._remember_row(table, row["id"])
            self.tables[table][row["id"]] = row
            return row

    def insert_unique(self, table: str, constraint: str, key: Hashable, row: dict) -> dict:
        with self.transaction():
            self.claim(constraint, key, row["id"])
            return self.insert(table, row)

    def claim(self, constraint: str, key: Hashable, row_id: UUID) -> None:
        with self.transaction():
            index = self.unique.setdefault(constraint, {})
            if key in index:
                raise DuplicateKeyError(constraint, key)
            self._undo.append(("claim", constraint, key, None))
            index[key] = row_id

    def lookup(self, constraint: str, key: Hashable) -> Optional[UUID]:
        with self._lock:
            return self.unique.get(constraint, {}).get(key)

    def get(self, table: str, row_id: UUID) -> Optional[dict]:
        with self._lock:
            row = self.tables[table].get(row_id)
            return dict(row) if row is not None else None

    def update(self, table: str, row_id: UUID, **fields: Any) -> dict:
        with self.transaction():
            row = self.tables[table][row_id]
            self._remember_row(table, row_id)
            row.update(fields)
            return dict(row)

    def compare_and_set(self, table: str, row_id: UUID, field: str, expected: Any, new: Any, **fields: Any) -> bool:
        """Set ``field`` to ``new`` only if it currently equals ``expected``."""
        with self.transaction():
            row = self.tables[table].get(row_id)
            if row is None or row.get(field) != expected:
                return False
            self._remember_row(table, row_id)
            row[field] = new
            row.update(fields)
            return True

    def select(self, table: str, **criteria: Any) -> list[dict]:
        with self._lock:
            return [
                dict(row) for row in self.tables[table].values()
                if all(row.get(k) == v for k, v in criteria.items())
            ]
