from fastapi import APIRouter, Depends, HTTPException, Query
from typing import Optional
from workbook_tracker.core.dependencies import (
    ensure_can_view,
    get_chapter_partition,
    get_current_user,
    get_sheet_editor,
    require_staff,
)
from workbook_tracker.core.security import get_store
from workbook_tracker.db.models import Profile
from workbook_tracker.db.store import RecordStore
from workbook_tracker.schemas.chapters import (
    ChapterCreate,
    ChapterListResponse,
    ChapterResponse,
    RecentChapterResponse,
)
from workbook_tracker.schemas.sessions import SheetViewResponse
from workbook_tracker.schemas.sheets import SheetCreate, SheetExpand, SheetResponse
from workbook_tracker.services.chapters import ChapterPartition, default_chapter, recent_chapter
from workbook_tracker.services.grade_sheets import GradeSheetEditor

router = APIRouter(tags=["Grade Sheets"])


def chapter_list(sheet, chapters, staff: bool) -> ChapterListResponse:
    chosen = default_chapter(chapters)
    return ChapterListResponse(
        chapters=[ChapterResponse.from_chapter(c, sheet, staff) for c in chapters],
        default_chapter_id=chosen.id if chosen else None,
    )


@router.get("/", response_model=list[SheetResponse])
async def list_sheets(
    owner_id: Optional[str] = Query(None, description="Owner whose sheets to list; defaults to the caller"),
    templates_only: bool = Query(False, description="Only sheets linked to a template workbook"),
    user: Profile = Depends(get_current_user),
    editor: GradeSheetEditor = Depends(get_sheet_editor),
):
    owner_id = owner_id or user.id
    ensure_can_view(user, owner_id)
    sheets = await editor.load_owner_sheets(owner_id, templates_only=templates_only)
    return [SheetResponse.from_sheet(s) for s in sheets]


@router.post("/", response_model=SheetViewResponse)
async def create_sheet(
    body: SheetCreate,
    user: Profile = Depends(require_staff),
    editor: GradeSheetEditor = Depends(get_sheet_editor),
):
    """Create a standalone sheet for an owner, sized to the given chapters."""
    sheet, chapters = await editor.create_sheet(body.owner_id, body.title, body.specs())
    chosen = default_chapter(chapters)
    return SheetViewResponse(
        sheet=SheetResponse.from_sheet(sheet),
        chapters=[ChapterResponse.from_chapter(c, sheet, True) for c in chapters],
        default_chapter_id=chosen.id if chosen else None,
    )


@router.get("/recent", response_model=RecentChapterResponse)
async def get_recent_chapter(
    owner_id: Optional[str] = Query(None, description="Owner to look up; defaults to the caller"),
    user: Profile = Depends(get_current_user),
    store: RecordStore = Depends(get_store),
):
    """The chapter most recently edited on the owner's most recently updated sheet."""
    owner_id = owner_id or user.id
    ensure_can_view(user, owner_id)
    found = await recent_chapter(store, owner_id)
    if found is None:
        raise HTTPException(status_code=404, detail="No recently edited chapter")
    sheet, chapter = found
    return RecentChapterResponse(
        sheet_id=sheet.id,
        sheet_title=sheet.title,
        chapter=ChapterResponse.from_chapter(chapter, sheet, user.is_staff),
    )


@router.get("/{sheet_id}", response_model=SheetViewResponse)
async def get_sheet(
    sheet_id: str,
    user: Profile = Depends(get_current_user),
    partition: ChapterPartition = Depends(get_chapter_partition),
):
    sheet = await partition.sheets.load(sheet_id)
    ensure_can_view(user, sheet.owner_id)
    chapters = await partition.load(sheet_id)
    listing = chapter_list(sheet, chapters, user.is_staff)
    return SheetViewResponse(
        sheet=SheetResponse.from_sheet(sheet),
        chapters=listing.chapters,
        default_chapter_id=listing.default_chapter_id,
    )


@router.delete("/{sheet_id}")
async def delete_sheet(
    sheet_id: str,
    user: Profile = Depends(require_staff),
    editor: GradeSheetEditor = Depends(get_sheet_editor),
):
    """Delete a sheet and its chapters."""
    await editor.delete_sheet(sheet_id)
    return {"message": "Grade sheet deleted successfully"}


@router.post("/{sheet_id}/expand", response_model=SheetResponse)
async def expand_sheet(
    sheet_id: str,
    body: SheetExpand,
    user: Profile = Depends(require_staff),
    editor: GradeSheetEditor = Depends(get_sheet_editor),
):
    """Grow the sheet to ``new_total`` problems; smaller totals change nothing."""
    await editor.load(sheet_id)
    await editor.expand(sheet_id, body.new_total)
    return SheetResponse.from_sheet(editor.get(sheet_id))


@router.get("/{sheet_id}/chapters", response_model=ChapterListResponse)
async def list_chapters(
    sheet_id: str,
    user: Profile = Depends(get_current_user),
    partition: ChapterPartition = Depends(get_chapter_partition),
):
    """Chapters ordered by range, plus the one to show first (last updated)."""
    sheet = await partition.sheets.load(sheet_id)
    ensure_can_view(user, sheet.owner_id)
    chapters = await partition.load(sheet_id)
    return chapter_list(sheet, chapters, user.is_staff)


@router.post("/{sheet_id}/chapters", response_model=ChapterResponse)
async def create_chapter(
    sheet_id: str,
    body: ChapterCreate,
    user: Profile = Depends(require_staff),
    partition: ChapterPartition = Depends(get_chapter_partition),
):
    """Append a chapter of ``count`` problems at the end of the sheet."""
    await partition.sheets.load(sheet_id)
    chapter = await partition.create_chapter(sheet_id, body.title, body.count)
    return ChapterResponse.from_chapter(chapter, partition.sheets.get(sheet_id), True)
