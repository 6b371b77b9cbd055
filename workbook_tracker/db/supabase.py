import logging
from typing import Any, Dict, Iterable, List, Optional, Sequence

from supabase import AsyncClient, acreate_client

from workbook_tracker.core.config import settings
from workbook_tracker.core.errors import PersistenceError
from workbook_tracker.db.store import Order, RecordStore, Row

logger = logging.getLogger(__name__)


class SupabaseStore(RecordStore):
    """Record store backed by the Supabase (PostgREST) async client."""

    def __init__(self, client: AsyncClient):
        self.client = client

    @classmethod
    async def connect(cls, url: str = "", key: str = "") -> "SupabaseStore":
        """
        Create and validate a Supabase client connection.

        Raises:
            RuntimeError: If connection validation fails
        """
        url = url or settings.SUPABASE_URL
        key = key or settings.SUPABASE_SERVICE_KEY
        try:
            # Use service role key for database operations to bypass RLS issues
            client = await acreate_client(url, key)

            # Validate connection by attempting a simple query
            await client.table("profiles").select("id").limit(1).execute()
            logger.info("Supabase connection validated successfully")
            return cls(client)

        except Exception as e:
            error_msg = f"Failed to connect to Supabase: {str(e)}"
            logger.error(error_msg)
            raise RuntimeError(error_msg)

    async def _run(self, description: str, query) -> List[Row]:
        try:
            response = await query.execute()
        except Exception as e:
            logger.error("Supabase %s failed: %s", description, e)
            raise PersistenceError(f"{description} failed: {str(e)}")
        return list(response.data or [])

    async def select(
        self,
        table: str,
        eq: Optional[Dict[str, Any]] = None,
        in_: Optional[Dict[str, Iterable[Any]]] = None,
        not_null: Iterable[str] = (),
        order: Order = (),
        limit: Optional[int] = None,
    ) -> List[Row]:
        query = self.client.table(table).select("*")
        for column, value in (eq or {}).items():
            query = query.is_(column, "null") if value is None else query.eq(column, value)
        for column, values in (in_ or {}).items():
            query = query.in_(column, list(values))
        for column in not_null:
            query = query.not_.is_(column, "null")
        for column, descending in order:
            query = query.order(column, desc=descending)
        if limit is not None:
            query = query.limit(limit)
        return await self._run(f"select {table}", query)

    async def insert(self, table: str, rows: List[Row]) -> List[Row]:
        if not rows:
            return []
        return await self._run(f"insert into {table}", self.client.table(table).insert(rows))

    async def update(self, table: str, record_id: str, values: Row) -> Row:
        data = await self._run(
            f"update {table}",
            self.client.table(table).update(values).eq("id", record_id),
        )
        if not data:
            raise PersistenceError(f"update {table} failed: row {record_id} not found")
        return data[0]

    async def upsert(self, table: str, rows: List[Row], on_conflict: Sequence[str]) -> List[Row]:
        if not rows:
            return []
        return await self._run(
            f"upsert into {table}",
            self.client.table(table).upsert(rows, on_conflict=",".join(on_conflict)),
        )

    async def delete(self, table: str, **eq: Any) -> int:
        query = self.client.table(table).delete()
        for column, value in eq.items():
            query = query.eq(column, value)
        return len(await self._run(f"delete from {table}", query))
