from typing import List, Optional

from workbook_tracker.db.models import Profile
from workbook_tracker.db.store import PROFILES, RecordStore


class OwnerDirectory:
    """Read-only view of the profiles table: who owns sheets, who is staff."""

    def __init__(self, store: RecordStore):
        self.store = store

    async def get_profile(self, user_id: str) -> Optional[Profile]:
        row = await self.store.get(PROFILES, user_id)
        return Profile(**row) if row else None

    async def list_students(self) -> List[Profile]:
        """Active, approved students ordered by name: the distribution candidates."""
        rows = await self.store.select(
            PROFILES,
            eq={"role": "student", "status": "active", "is_approved": True},
            order=[("name", False)],
        )
        return [Profile(**r) for r in rows]
