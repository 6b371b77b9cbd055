import copy
import uuid
from typing import Any, Dict, Iterable, List, Optional, Sequence

from workbook_tracker.core.errors import PersistenceError
from workbook_tracker.db.store import (
    GRADE_SHEETS,
    Order,
    RecordStore,
    Row,
    SHEET_KEY,
    utcnow_iso,
)


# Unique keys enforced on insert, mirroring the database constraints
UNIQUE_KEYS = {GRADE_SHEETS: SHEET_KEY}


def _matches(row: Row, eq: Dict[str, Any], in_: Dict[str, set], not_null: Iterable[str]) -> bool:
    for key, value in eq.items():
        if row.get(key) != value:
            return False
    for key, values in in_.items():
        if row.get(key) not in values:
            return False
    for key in not_null:
        if row.get(key) is None:
            return False
    return True


class MemoryStore(RecordStore):
    """
    In-process record store for local development and tests.

    Rows are deep-copied on the way in and out so callers never share
    list objects (marks, labels) with the stored copy.
    """

    def __init__(self, tables: Optional[Dict[str, List[Row]]] = None):
        self.tables: Dict[str, List[Row]] = {}
        for table, rows in (tables or {}).items():
            self.tables[table] = [self._stamp(dict(r)) for r in rows]

    def _rows(self, table: str) -> List[Row]:
        return self.tables.setdefault(table, [])

    @staticmethod
    def _stamp(row: Row) -> Row:
        now = utcnow_iso()
        row.setdefault("id", str(uuid.uuid4()))
        row.setdefault("created_at", now)
        row.setdefault("updated_at", now)
        return row

    def _check_unique(self, table: str, row: Row, ignore: Optional[Row] = None) -> None:
        key = UNIQUE_KEYS.get(table)
        if not key or any(row.get(k) is None for k in key):
            return
        for existing in self._rows(table):
            if existing is ignore:
                continue
            if all(existing.get(k) == row.get(k) for k in key):
                raise PersistenceError(
                    f"duplicate key value violates unique constraint on {table} ({', '.join(key)})"
                )

    async def select(
        self,
        table: str,
        eq: Optional[Dict[str, Any]] = None,
        in_: Optional[Dict[str, Iterable[Any]]] = None,
        not_null: Iterable[str] = (),
        order: Order = (),
        limit: Optional[int] = None,
    ) -> List[Row]:
        in_sets = {k: set(v) for k, v in (in_ or {}).items()}
        rows = [r for r in self._rows(table) if _matches(r, eq or {}, in_sets, list(not_null))]
        # Apply sort keys last-to-first so the first key wins
        for column, descending in reversed(list(order)):
            rows.sort(key=lambda r: (r.get(column) is None, r.get(column)), reverse=descending)
        if limit is not None:
            rows = rows[:limit]
        return copy.deepcopy(rows)

    async def insert(self, table: str, rows: List[Row]) -> List[Row]:
        staged = [self._stamp(copy.deepcopy(r)) for r in rows]
        for i, row in enumerate(staged):
            self._check_unique(table, row)
            # Within one batch as well
            for other in staged[:i]:
                key = UNIQUE_KEYS.get(table)
                if key and all(row.get(k) is not None and row.get(k) == other.get(k) for k in key):
                    raise PersistenceError(f"duplicate key in batch insert into {table}")
        self._rows(table).extend(staged)
        return copy.deepcopy(staged)

    async def update(self, table: str, record_id: str, values: Row) -> Row:
        for row in self._rows(table):
            if row.get("id") == record_id:
                candidate = {**row, **copy.deepcopy(values)}
                self._check_unique(table, candidate, ignore=row)
                row.update(copy.deepcopy(values))
                return copy.deepcopy(row)
        raise PersistenceError(f"{table} row {record_id} not found")

    async def upsert(self, table: str, rows: List[Row], on_conflict: Sequence[str]) -> List[Row]:
        result = []
        for incoming in rows:
            incoming = copy.deepcopy(incoming)
            existing = next(
                (r for r in self._rows(table) if all(r.get(k) == incoming.get(k) for k in on_conflict)),
                None,
            )
            if existing is not None:
                incoming.pop("id", None)
                existing.update(incoming)
                existing["updated_at"] = incoming.get("updated_at", utcnow_iso())
                result.append(copy.deepcopy(existing))
            else:
                row = self._stamp(incoming)
                self._rows(table).append(row)
                result.append(copy.deepcopy(row))
        return result

    async def delete(self, table: str, **eq: Any) -> int:
        rows = self._rows(table)
        keep = [r for r in rows if not _matches(r, eq, {}, ())]
        removed = len(rows) - len(keep)
        self.tables[table] = keep
        return removed
