from fastapi import Depends, HTTPException, status, Path
from workbook_tracker.core import session_cache
from workbook_tracker.core.config import settings
from workbook_tracker.core.security import get_current_user, get_store
from workbook_tracker.db.models import Profile
from workbook_tracker.db.store import RecordStore
from workbook_tracker.services.chapters import ChapterPartition
from workbook_tracker.services.distribution import DistributionEngine
from workbook_tracker.services.editor import EditorSession
from workbook_tracker.services.grade_sheets import GradeSheetEditor
from workbook_tracker.services.autosave import AutoSavePersister
from workbook_tracker.services.workbooks import WorkbookService


def require_staff(user: Profile = Depends(get_current_user)) -> Profile:
    """Require teacher or admin role"""
    if not user.is_staff:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Access denied. Teacher or admin role required"
        )
    return user


def ensure_can_view(user: Profile, owner_id: str) -> None:
    """Owners see their own sheets; staff see everyone's."""
    if not user.is_staff and user.id != owner_id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Access denied"
        )


def get_sheet_editor(store: RecordStore = Depends(get_store)) -> GradeSheetEditor:
    """
    Editor for one request.

    Structural operations (create, expand, delete) write immediately, so a
    request-scoped editor is enough; debounced edits go through a session.
    """
    return GradeSheetEditor(store, AutoSavePersister(delay=settings.autosave_delay))


def get_chapter_partition(
    store: RecordStore = Depends(get_store),
    sheets: GradeSheetEditor = Depends(get_sheet_editor),
) -> ChapterPartition:
    return ChapterPartition(store, sheets, sheets.autosave)


def get_workbook_service(
    store: RecordStore = Depends(get_store),
    sheets: GradeSheetEditor = Depends(get_sheet_editor),
) -> WorkbookService:
    return WorkbookService(store, sheets)


def get_distribution_engine(store: RecordStore = Depends(get_store)) -> DistributionEngine:
    return DistributionEngine(store, max_workers=settings.DISTRIBUTION_WORKERS)


def get_editor_session(
    token: str = Path(..., description="Editor session token"),
    user: Profile = Depends(get_current_user),
) -> EditorSession:
    session = session_cache.get_session(token, ttl=settings.SESSION_TTL)
    if session is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Editor session not found or expired"
        )
    if session.viewer_id != user.id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Editor session belongs to another user"
        )
    return session
