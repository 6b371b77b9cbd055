from pydantic import BaseModel, Field
from typing import List, Optional
from datetime import datetime

from workbook_tracker.db.models import Chapter, GradeSheet, Mark
from workbook_tracker.schemas.sheets import MarkSummary
from workbook_tracker.services.chapters import FilterMode, chapter_summary, effective_range


class ChapterCreate(BaseModel):
    title: Optional[str] = None
    count: int = Field(..., gt=0)


class ChapterRename(BaseModel):
    title: Optional[str] = None


class ChapterTextUpdate(BaseModel):
    chapter_note: Optional[str] = None
    teacher_memo: Optional[str] = None
    next_homework: Optional[str] = None


class ChapterResponse(BaseModel):
    id: str
    grade_id: str
    start_idx: int
    end_idx: int
    # Clamped, ordered range actually used for reads; None on an empty sheet
    effective_start: Optional[int] = None
    effective_end: Optional[int] = None
    chapter_title: Optional[str] = None
    label: str
    chapter_note: str = ""
    # Teacher-only; left out for students
    teacher_memo: Optional[str] = None
    next_homework: Optional[str] = None
    updated_at: Optional[datetime] = None
    summary: MarkSummary

    @classmethod
    def from_chapter(cls, chapter: Chapter, sheet: GradeSheet, staff: bool) -> "ChapterResponse":
        bounds = effective_range(chapter, sheet)
        return cls(
            id=chapter.id,
            grade_id=chapter.grade_id,
            start_idx=chapter.start_idx,
            end_idx=chapter.end_idx,
            effective_start=bounds[0] if bounds else None,
            effective_end=bounds[1] if bounds else None,
            chapter_title=chapter.chapter_title,
            label=chapter.display_label(),
            chapter_note=chapter.chapter_note,
            teacher_memo=chapter.teacher_memo if staff else None,
            next_homework=chapter.next_homework if staff else None,
            updated_at=chapter.updated_at,
            summary=MarkSummary.from_counts(chapter_summary(chapter, sheet)),
        )


class ChapterListResponse(BaseModel):
    chapters: List[ChapterResponse]
    default_chapter_id: Optional[str] = None


class ProblemItem(BaseModel):
    idx: int
    label: str
    mark: Mark
    symbol: str = ""


class ChapterProblemsResponse(BaseModel):
    chapter_id: str
    mode: FilterMode
    problems: List[ProblemItem]


class RecentChapterResponse(BaseModel):
    sheet_id: str
    sheet_title: str
    chapter: ChapterResponse
