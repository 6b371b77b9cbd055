import logging
from fastapi import Depends, HTTPException, status, Query
from workbook_tracker.core.errors import PersistenceError
from workbook_tracker.db.models import Profile
from workbook_tracker.db.store import RecordStore
from workbook_tracker.services.directory import OwnerDirectory
from uuid import UUID

logger = logging.getLogger(__name__)

_store = None


async def get_store() -> RecordStore:
    """Process-wide record store, created on first use from settings."""
    global _store
    if _store is None:
        from workbook_tracker.core.config import settings

        if settings.STORE_BACKEND == "memory":
            from workbook_tracker.db.memory import MemoryStore

            _store = MemoryStore()
            logger.warning("Using the in-memory record store; data is lost on restart")
        else:
            from workbook_tracker.db.supabase import SupabaseStore

            _store = await SupabaseStore.connect()
    return _store


async def get_current_user(
    user_id: str = Query(..., description="User ID for authentication"),
    store: RecordStore = Depends(get_store),
) -> Profile:
    """
    Fetches the caller's profile by user ID.

    Args:
        user_id: User ID from query parameter

    Returns:
        Profile: id, name, role, status and approval flag

    Raises:
        HTTPException: 401 for a malformed ID, 404 if the profile is missing,
            502 if the profile could not be read
    """
    # Validate UUID format
    try:
        UUID(user_id)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid user ID format"
        )

    try:
        profile = await OwnerDirectory(store).get_profile(user_id)
    except PersistenceError as e:
        logger.error("Store error fetching profile: %s", e.detail)
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="Upstream error fetching profile"
        )

    if profile is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="User profile not found"
        )

    # Ensure required fields are present
    if not profile.role:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User profile incomplete. Role information missing."
        )

    return profile
