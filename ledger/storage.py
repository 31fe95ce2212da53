import copy
import threading
from contextlib import contextmanager
from typing import Iterator, Optional


TABLES = ("users", "jars", "transactions", "settlements", "emergency_requests")


class InMemoryStorage:
    """
    Dict-backed store with integer surrogate keys.

    Every multi-row write goes through ``transaction()``. While a unit is
    open each write records the prior state of the row it touches; if the
    block raises, those entries are replayed in reverse, so readers never
    observe half of a unit and rollback costs only the rows the unit wrote.
    The lock is re-entrant so a unit may call helpers that open their own
    (nested) unit; only the outermost one owns the undo log.
    """

    def __init__(self):
        self.users: dict[int, dict] = {}
        self.jars: dict[int, dict] = {}
        self.transactions: dict[int, dict] = {}
        self.settlements: dict[int, dict] = {}
        self.emergency_requests: dict[int, dict] = {}
        self._sequences: dict[str, int] = {name: 0 for name in TABLES}
        self._lock = threading.RLock()
        self._undo: Optional[list[tuple[str, int, Optional[dict]]]] = None

    @contextmanager
    def transaction(self) -> Iterator["InMemoryStorage"]:
        with self._lock:
            if self._undo is not None:
                yield self
                return

            self._undo = []
            sequences = dict(self._sequences)
            try:
                yield self
            except BaseException:
                self._rollback(sequences)
                raise
            finally:
                self._undo = None

    def insert(self, table: str, row: dict) -> int:
        with self._lock:
            rows = self._table(table)
            self._sequences[table] += 1
            row_id = self._sequences[table]
            self._remember(table, row_id, None)
            rows[row_id] = {**row, "id": row_id}
            return row_id

    def get(self, table: str, row_id: int) -> Optional[dict]:
        with self._lock:
            row = self._table(table).get(row_id)
            return dict(row) if row else None

    def update(self, table: str, row_id: int, **fields) -> dict:
        with self._lock:
            row = self._table(table)[row_id]
            self._remember(table, row_id, row)
            row.update(fields)
            return dict(row)

    def delete_where(self, table: str, **where) -> int:
        with self._lock:
            rows = self._table(table)
            doomed = [rid for rid, row in rows.items() if _matches(row, where)]
            for rid in doomed:
                self._remember(table, rid, rows[rid])
                del rows[rid]
            return len(doomed)

    def select(self, table: str, **where) -> list[dict]:
        with self._lock:
            return [dict(row) for row in self._table(table).values() if _matches(row, where)]

    def find_one(self, table: str, **where) -> Optional[dict]:
        rows = self.select(table, **where)
        return rows[0] if rows else None

    def _table(self, name: str) -> dict[int, dict]:
        if name not in TABLES:
            raise KeyError(f"Unknown table {name}")
        return getattr(self, name)

    def _remember(self, table: str, row_id: int, previous: Optional[dict]) -> None:
        # None marks a row that did not exist before the unit
        if self._undo is not None:
            self._undo.append((table, row_id, copy.deepcopy(previous)))

    def _rollback(self, sequences: dict[str, int]) -> None:
        for table, row_id, previous in reversed(self._undo):
            rows = self._table(table)
            if previous is None:
                rows.pop(row_id, None)
            else:
                rows[row_id] = previous
        self._sequences = sequences


def _matches(row: dict, where: dict) -> bool:
    return all(row.get(k) == v for k, v in where.items())
