import logging
from fastapi import APIRouter, Depends
from workbook_tracker.core import session_cache
from workbook_tracker.core.config import settings
from workbook_tracker.core.dependencies import ensure_can_view, get_current_user, get_editor_session
from workbook_tracker.core.errors import PermissionDenied, TrackerError, ValidationError
from workbook_tracker.core.security import get_store
from workbook_tracker.db.models import GradeSheet, Profile
from workbook_tracker.db.store import RecordStore
from workbook_tracker.schemas.chapters import ChapterResponse, ChapterTextUpdate
from workbook_tracker.schemas.sessions import (
    BulkMarkUpdate,
    MarkUpdate,
    MarkUpdateResponse,
    SessionOpen,
    SessionResponse,
    SheetViewResponse,
)
from workbook_tracker.schemas.sheets import SheetResponse
from workbook_tracker.services.autosave import IDLE
from workbook_tracker.services.editor import EditorSession
from workbook_tracker.services.grade_sheets import marks_key

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Editor Sessions"])


def session_state(token: str, session: EditorSession) -> SessionResponse:
    return SessionResponse(
        token=token,
        viewer_id=session.viewer_id,
        last_error=session.last_error,
        pending=[":".join(k) for k in session.autosave.pending_keys],
    )


async def close_expired() -> None:
    for session in session_cache.pop_expired():
        await session.close()


async def sheet_in_session(session: EditorSession, sheet_id: str, user: Profile) -> GradeSheet:
    """The session's copy of the sheet, loading it on first use."""
    sheet = session.sheets.sheets.get(sheet_id)
    if sheet is None:
        sheet, _, _ = await session.open_sheet(sheet_id)
    ensure_can_view(user, sheet.owner_id)
    return sheet


def mark_response(session: EditorSession, sheet: GradeSheet) -> MarkUpdateResponse:
    return MarkUpdateResponse(
        sheet_id=sheet.id,
        marks=list(sheet.marks),
        pending=session.autosave.state(marks_key(sheet.id)) != IDLE,
    )


# -------------------------
# SESSION LIFECYCLE
# -------------------------
@router.post("/", response_model=SessionResponse)
async def open_session(
    body: SessionOpen,
    user: Profile = Depends(get_current_user),
    store: RecordStore = Depends(get_store),
):
    """Start an editing session; optionally load a sheet into it right away."""
    await close_expired()
    session = EditorSession(store, user.id, autosave_delay=settings.autosave_delay)
    if body.sheet_id:
        sheet, _, _ = await session.open_sheet(body.sheet_id)
        ensure_can_view(user, sheet.owner_id)
    token = session_cache.create_session(session, ttl=settings.SESSION_TTL)
    logger.info("Opened editor session for %s", user.id)
    return session_state(token, session)


@router.get("/{token}", response_model=SessionResponse)
async def get_session_state(token: str, session: EditorSession = Depends(get_editor_session)):
    """Pending writes and the last failure message, if any."""
    return session_state(token, session)


@router.delete("/{token}")
async def close_session(token: str, session: EditorSession = Depends(get_editor_session)):
    """End the session. Writes that have not fired yet are cancelled."""
    session_cache.invalidate_session(token)
    await session.close()
    return {"message": "Editor session closed"}


@router.post("/{token}/flush", response_model=SessionResponse)
async def flush_session(token: str, session: EditorSession = Depends(get_editor_session)):
    """Write every pending edit now."""
    session.clear_error()
    await session.flush()
    return session_state(token, session)


# -------------------------
# SHEET VIEW + MARKS
# -------------------------
@router.get("/{token}/sheets/{sheet_id}", response_model=SheetViewResponse)
async def open_sheet(
    token: str,
    sheet_id: str,
    user: Profile = Depends(get_current_user),
    session: EditorSession = Depends(get_editor_session),
):
    try:
        sheet, chapters, chosen = await session.open_sheet(sheet_id)
    except TrackerError as e:
        session.record_error(e)
        raise
    ensure_can_view(user, sheet.owner_id)
    return SheetViewResponse(
        sheet=SheetResponse.from_sheet(sheet),
        chapters=[ChapterResponse.from_chapter(c, sheet, user.is_staff) for c in chapters],
        default_chapter_id=chosen.id if chosen else None,
    )


@router.put("/{token}/sheets/{sheet_id}/marks/{idx}", response_model=MarkUpdateResponse)
async def set_mark(
    token: str,
    sheet_id: str,
    idx: int,
    body: MarkUpdate,
    user: Profile = Depends(get_current_user),
    session: EditorSession = Depends(get_editor_session),
):
    """Set one mark. Applied at once; written after the autosave delay."""
    sheet = await sheet_in_session(session, sheet_id, user)
    try:
        session.sheets.set_mark(sheet_id, idx, body.mark)
    except TrackerError as e:
        session.record_error(e)
        raise
    return mark_response(session, sheet)


@router.post("/{token}/sheets/{sheet_id}/marks/{idx}/cycle", response_model=MarkUpdateResponse)
async def cycle_mark(
    token: str,
    sheet_id: str,
    idx: int,
    user: Profile = Depends(get_current_user),
    session: EditorSession = Depends(get_editor_session),
):
    """Advance one mark: unmarked, correct, incorrect, partial, then unmarked again."""
    sheet = await sheet_in_session(session, sheet_id, user)
    try:
        session.sheets.toggle_mark(sheet_id, idx)
    except TrackerError as e:
        session.record_error(e)
        raise
    return mark_response(session, sheet)


@router.put("/{token}/sheets/{sheet_id}/marks", response_model=MarkUpdateResponse)
async def bulk_set_marks(
    token: str,
    sheet_id: str,
    body: BulkMarkUpdate,
    user: Profile = Depends(get_current_user),
    session: EditorSession = Depends(get_editor_session),
):
    """Set a whole chapter, or an explicit inclusive range, to one mark."""
    sheet = await sheet_in_session(session, sheet_id, user)
    try:
        if body.chapter_id:
            await session.chapters.fetch(body.chapter_id)
            if session.chapters.get(body.chapter_id).grade_id != sheet_id:
                raise ValidationError("Chapter belongs to another sheet")
            session.chapters.mark_chapter(body.chapter_id, body.mark)
        elif body.lo is not None and body.hi is not None:
            session.sheets.bulk_set_marks(sheet_id, body.lo, body.hi, body.mark)
        else:
            raise ValidationError("Give either chapter_id or both lo and hi")
    except TrackerError as e:
        session.record_error(e)
        raise
    return mark_response(session, sheet)


# -------------------------
# CHAPTER TEXT
# -------------------------
@router.put("/{token}/chapters/{chapter_id}/text", response_model=ChapterResponse)
async def edit_chapter_text(
    token: str,
    chapter_id: str,
    body: ChapterTextUpdate,
    user: Profile = Depends(get_current_user),
    session: EditorSession = Depends(get_editor_session),
):
    """Edit a chapter's note and memos. Teacher-only fields need a staff caller."""
    if not user.is_staff and (body.teacher_memo is not None or body.next_homework is not None):
        raise PermissionDenied("Only staff can edit teacher memos")
    try:
        chapter = await session.chapters.fetch(chapter_id)
        sheet = await sheet_in_session(session, chapter.grade_id, user)
        chapter = session.chapters.edit_text(
            chapter_id,
            chapter_note=body.chapter_note,
            teacher_memo=body.teacher_memo,
            next_homework=body.next_homework,
        )
    except TrackerError as e:
        session.record_error(e)
        raise
    return ChapterResponse.from_chapter(chapter, sheet, user.is_staff)
