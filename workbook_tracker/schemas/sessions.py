from pydantic import BaseModel
from typing import List, Optional

from workbook_tracker.db.models import Mark
from workbook_tracker.schemas.chapters import ChapterResponse
from workbook_tracker.schemas.sheets import SheetResponse


class SessionOpen(BaseModel):
    sheet_id: Optional[str] = None


class SessionResponse(BaseModel):
    token: str
    viewer_id: str
    last_error: Optional[str] = None
    pending: List[str] = []


class SheetViewResponse(BaseModel):
    sheet: SheetResponse
    chapters: List[ChapterResponse]
    default_chapter_id: Optional[str] = None


class MarkUpdate(BaseModel):
    mark: Mark


class BulkMarkUpdate(BaseModel):
    mark: Mark
    # Either a chapter, or an explicit inclusive range
    chapter_id: Optional[str] = None
    lo: Optional[int] = None
    hi: Optional[int] = None


class MarkUpdateResponse(BaseModel):
    sheet_id: str
    marks: List[Mark]
    pending: bool
