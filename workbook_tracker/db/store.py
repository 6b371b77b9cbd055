"""
Record store contract used by every service.

The tracker never talks to a database directly; it reads and writes plain
row dicts through a ``RecordStore``. Every method raises ``PersistenceError``
when the backend rejects or cannot complete the request.
"""

from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

Row = Dict[str, Any]
# (column, descending)
Order = Sequence[Tuple[str, bool]]

WORKBOOKS = "workbooks"
GRADE_SHEETS = "grade_sheets"
CHAPTERS = "chapters"
PROFILES = "profiles"

SHEET_KEY = ("owner_id", "workbook_id")


def utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class RecordStore:
    async def select(
        self,
        table: str,
        eq: Optional[Dict[str, Any]] = None,
        in_: Optional[Dict[str, Iterable[Any]]] = None,
        not_null: Iterable[str] = (),
        order: Order = (),
        limit: Optional[int] = None,
    ) -> List[Row]:
        """Filtered read. ``eq`` values of None match NULL."""
        raise NotImplementedError

    async def get(self, table: str, record_id: str) -> Optional[Row]:
        rows = await self.select(table, eq={"id": record_id}, limit=1)
        return rows[0] if rows else None

    async def insert(self, table: str, rows: List[Row]) -> List[Row]:
        raise NotImplementedError

    async def update(self, table: str, record_id: str, values: Row) -> Row:
        raise NotImplementedError

    async def upsert(self, table: str, rows: List[Row], on_conflict: Sequence[str]) -> List[Row]:
        raise NotImplementedError

    async def delete(self, table: str, **eq: Any) -> int:
        """Delete rows matching every ``eq`` filter; returns the number removed."""
        raise NotImplementedError
