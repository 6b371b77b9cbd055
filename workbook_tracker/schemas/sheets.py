from pydantic import BaseModel, Field
from typing import Dict, List, Optional
from datetime import datetime

from workbook_tracker.db.models import GradeSheet, Mark
from workbook_tracker.services.grade_sheets import tally


class ChapterSpec(BaseModel):
    title: Optional[str] = None
    count: int = Field(..., gt=0, description="Number of problems in the chapter")


class SheetCreate(BaseModel):
    owner_id: str
    title: str
    chapters: List[ChapterSpec] = []

    def specs(self):
        return [(c.title, c.count) for c in self.chapters]


class SheetExpand(BaseModel):
    new_total: int = Field(..., ge=0)


class MarkSummary(BaseModel):
    correct: int = 0
    incorrect: int = 0
    partial: int = 0
    unmarked: int = 0

    @classmethod
    def from_counts(cls, counts: Dict[Mark, int]) -> "MarkSummary":
        return cls(**{mark.name.lower(): n for mark, n in counts.items()})


class SheetResponse(BaseModel):
    id: str
    owner_id: str
    workbook_id: Optional[str] = None
    title: str
    problem_count: int
    marks: List[Mark]
    labels: List[str]
    last_edited_chapter_id: Optional[str] = None
    updated_at: Optional[datetime] = None
    summary: MarkSummary

    @classmethod
    def from_sheet(cls, sheet: GradeSheet) -> "SheetResponse":
        return cls(
            id=sheet.id,
            owner_id=sheet.owner_id,
            workbook_id=sheet.workbook_id,
            title=sheet.title,
            problem_count=sheet.problem_count,
            marks=list(sheet.marks),
            labels=list(sheet.labels),
            last_edited_chapter_id=sheet.last_edited_chapter_id,
            updated_at=sheet.updated_at,
            summary=MarkSummary.from_counts(tally(sheet)),
        )
