from fastapi import APIRouter, Depends, Query
from workbook_tracker.core.dependencies import (
    ensure_can_view,
    get_chapter_partition,
    get_current_user,
    require_staff,
)
from workbook_tracker.db.models import Profile
from workbook_tracker.schemas.chapters import (
    ChapterProblemsResponse,
    ChapterRename,
    ChapterResponse,
    ProblemItem,
)
from workbook_tracker.services.chapters import ChapterPartition, FilterMode, filter_view

router = APIRouter(tags=["Chapters"])


@router.patch("/{chapter_id}", response_model=ChapterResponse)
async def rename_chapter(
    chapter_id: str,
    body: ChapterRename,
    user: Profile = Depends(require_staff),
    partition: ChapterPartition = Depends(get_chapter_partition),
):
    """Rename a chapter; a blank title clears it."""
    chapter = await partition.rename_chapter(chapter_id, body.title)
    sheet = await partition.sheets.load(chapter.grade_id)
    return ChapterResponse.from_chapter(chapter, sheet, True)


@router.delete("/{chapter_id}")
async def delete_chapter(
    chapter_id: str,
    user: Profile = Depends(require_staff),
    partition: ChapterPartition = Depends(get_chapter_partition),
):
    await partition.delete_chapter(chapter_id)
    return {"message": "Chapter deleted successfully"}


@router.get("/{chapter_id}/problems", response_model=ChapterProblemsResponse)
async def list_chapter_problems(
    chapter_id: str,
    mode: FilterMode = Query(FilterMode.ALL, description="all, incorrect_only, blank_only or incorrect_or_blank"),
    user: Profile = Depends(get_current_user),
    partition: ChapterPartition = Depends(get_chapter_partition),
):
    """Problems in the chapter's range whose current mark passes the filter."""
    chapter = await partition.fetch(chapter_id)
    sheet = await partition.sheets.load(chapter.grade_id)
    ensure_can_view(user, sheet.owner_id)
    return ChapterProblemsResponse(
        chapter_id=chapter.id,
        mode=mode,
        problems=[
            ProblemItem(idx=i, label=sheet.label_of(i), mark=sheet.marks[i], symbol=sheet.marks[i].symbol)
            for i in filter_view(chapter, sheet, mode)
        ],
    )
