"""
Chapter partition over a grade sheet.

Chapters are contiguous index ranges carrying a student-facing note and
teacher-only memos. Stored ranges are trusted for nothing: every read goes
through ``effective_range``, which orders and clamps them to the sheet.
"""

import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional, Tuple

from workbook_tracker.core.errors import NotFoundError, PersistenceError, ValidationError
from workbook_tracker.db.models import Chapter, GradeSheet, Mark
from workbook_tracker.db.store import CHAPTERS, GRADE_SHEETS, RecordStore
from workbook_tracker.services.autosave import IDLE, AutoSavePersister
from workbook_tracker.services.grade_sheets import (
    GradeSheetEditor,
    layout_chapter_rows,
    tally,
    validate_count,
)

logger = logging.getLogger(__name__)

TEXT_FIELDS = ("chapter_note", "teacher_memo", "next_homework")


class FilterMode(str, Enum):
    ALL = "all"
    INCORRECT_ONLY = "incorrect_only"
    BLANK_ONLY = "blank_only"
    INCORRECT_OR_BLANK = "incorrect_or_blank"


def chapter_key(chapter_id: str) -> Tuple[str, str]:
    return ("chapter", chapter_id)


def clamp(n: int, lo: int, hi: int) -> int:
    return max(lo, min(hi, n))


def effective_range(chapter: Chapter, sheet: GradeSheet) -> Optional[Tuple[int, int]]:
    """
    ``(lo, hi)`` with ``0 <= lo <= hi < problem_count``.

    Reversed or out-of-bounds stored indices are ordered and clamped.
    A sheet with no problems has no range and gives None.
    """
    if sheet.problem_count <= 0:
        return None
    last = sheet.problem_count - 1
    start = clamp(chapter.start_idx, 0, last)
    end = clamp(chapter.end_idx, 0, last)
    return min(start, end), max(start, end)


def matches_filter(mark: Mark, mode: FilterMode) -> bool:
    if mode == FilterMode.ALL:
        return True
    if mode == FilterMode.INCORRECT_ONLY:
        return mark == Mark.INCORRECT
    if mode == FilterMode.BLANK_ONLY:
        return mark == Mark.UNMARKED
    return mark in (Mark.INCORRECT, Mark.UNMARKED)


def filter_view(chapter: Chapter, sheet: GradeSheet, mode: FilterMode = FilterMode.ALL) -> List[int]:
    """Indices in the chapter's effective range whose current mark passes ``mode``."""
    bounds = effective_range(chapter, sheet)
    if bounds is None:
        return []
    lo, hi = bounds
    mode = FilterMode(mode)
    return [i for i in range(lo, hi + 1) if matches_filter(sheet.marks[i], mode)]


def sort_chapters(chapters: List[Chapter]) -> List[Chapter]:
    return sorted(chapters, key=lambda c: (c.start_idx, c.end_idx))


def default_chapter(chapters: List[Chapter]) -> Optional[Chapter]:
    """The most recently updated chapter; first in listing order on ties."""
    best = None
    for chapter in sort_chapters(chapters):
        if best is None or _stamp(chapter) > _stamp(best):
            best = chapter
    return best


def _stamp(chapter: Chapter) -> datetime:
    return chapter.updated_at or datetime.min.replace(tzinfo=timezone.utc)


def chapter_summary(chapter: Chapter, sheet: GradeSheet) -> Dict[Mark, int]:
    bounds = effective_range(chapter, sheet)
    if bounds is None:
        return {m: 0 for m in Mark}
    return tally(sheet, *bounds)


class ChapterPartition:
    def __init__(self, store: RecordStore, sheets: GradeSheetEditor, autosave: AutoSavePersister):
        self.store = store
        self.sheets = sheets
        self.autosave = autosave
        self.chapters: Dict[str, Chapter] = {}

    def _remember(self, chapter: Chapter) -> Chapter:
        current = self.chapters.get(chapter.id)
        if current is not None and self.autosave.state(chapter_key(chapter.id)) != IDLE:
            return current
        self.chapters[chapter.id] = chapter
        return chapter

    async def load(self, sheet_id: str) -> List[Chapter]:
        rows = await self.store.select(
            CHAPTERS,
            eq={"grade_id": sheet_id},
            order=[("start_idx", False), ("end_idx", False)],
        )
        return [self._remember(Chapter(**row)) for row in rows]

    def get(self, chapter_id: str) -> Chapter:
        chapter = self.chapters.get(chapter_id)
        if chapter is None:
            raise NotFoundError(f"Chapter {chapter_id} is not loaded")
        return chapter

    async def fetch(self, chapter_id: str) -> Chapter:
        if chapter_id in self.chapters:
            return self.chapters[chapter_id]
        row = await self.store.get(CHAPTERS, chapter_id)
        if row is None:
            raise NotFoundError(f"Chapter {chapter_id} not found")
        return self._remember(Chapter(**row))

    # -------------------------
    # STRUCTURE (immediate writes)
    # -------------------------
    async def create_chapter(self, sheet_id: str, title: Optional[str], count: int) -> Chapter:
        """
        Append a chapter of ``count`` problems at the tail of the sheet.

        The sheet is expanded first. If the chapter row cannot be inserted
        the expansion is undone, so the sheet never ends up grown without
        its chapter.
        """
        count = validate_count(count)
        sheet = self.sheets.get(sheet_id)
        previous = sheet.problem_count
        start = previous
        end = start + count - 1

        expanded = await self.sheets.expand(sheet_id, end + 1)
        row = layout_chapter_rows(sheet_id, [(title, count)], start=start)[0]
        try:
            inserted = await self.store.insert(CHAPTERS, [row])
        except PersistenceError:
            if expanded:
                try:
                    await self.sheets.revert_expand(sheet_id, previous)
                except PersistenceError as undo_error:
                    logger.error(
                        "Could not undo expansion of sheet %s after chapter insert failed: %s",
                        sheet_id, undo_error.detail,
                    )
            raise

        chapter = self._remember(Chapter(**inserted[0]))
        logger.info("Created chapter %s on sheet %s covering %d-%d", chapter.id, sheet_id, start, end)
        return chapter

    async def rename_chapter(self, chapter_id: str, new_title: Optional[str]) -> Chapter:
        chapter = await self.fetch(chapter_id)
        title = (new_title or "").strip() or None
        now = datetime.now(timezone.utc)
        await self.store.update(CHAPTERS, chapter_id, {"chapter_title": title, "updated_at": now.isoformat()})
        chapter.chapter_title = title
        chapter.updated_at = now
        return chapter

    async def delete_chapter(self, chapter_id: str) -> None:
        self.autosave.cancel(chapter_key(chapter_id))
        removed = await self.store.delete(CHAPTERS, id=chapter_id)
        self.chapters.pop(chapter_id, None)
        if not removed:
            raise NotFoundError(f"Chapter {chapter_id} not found")

    # -------------------------
    # TEXT EDITS (debounced)
    # -------------------------
    def edit_text(
        self,
        chapter_id: str,
        chapter_note: Optional[str] = None,
        teacher_memo: Optional[str] = None,
        next_homework: Optional[str] = None,
    ) -> Chapter:
        chapter = self.get(chapter_id)
        if chapter_note is not None:
            chapter.chapter_note = chapter_note
        if teacher_memo is not None:
            chapter.teacher_memo = teacher_memo
        if next_homework is not None:
            chapter.next_homework = next_homework

        async def write():
            await self._persist_text(chapter_id)

        self.autosave.schedule(chapter_key(chapter_id), write)
        return chapter

    async def _persist_text(self, chapter_id: str) -> None:
        chapter = self.chapters.get(chapter_id)
        if chapter is None:
            return
        now = datetime.now(timezone.utc)
        values = {field: getattr(chapter, field) for field in TEXT_FIELDS}
        # Legacy readers still look at "note"
        values["note"] = chapter.chapter_note
        values["updated_at"] = now.isoformat()
        await self.store.update(CHAPTERS, chapter_id, values)
        chapter.updated_at = now
        await self.store.update(GRADE_SHEETS, chapter.grade_id, {"last_edited_chapter_id": chapter_id})
        sheet = self.sheets.sheets.get(chapter.grade_id)
        if sheet is not None:
            sheet.last_edited_chapter_id = chapter_id

    # -------------------------
    # VIEWS
    # -------------------------
    def mark_chapter(self, chapter_id: str, mark) -> GradeSheet:
        """Set every problem in the chapter's effective range to ``mark``."""
        chapter = self.get(chapter_id)
        sheet = self.sheets.get(chapter.grade_id)
        bounds = effective_range(chapter, sheet)
        if bounds is None:
            raise ValidationError("The sheet has no problems to mark")
        return self.sheets.bulk_set_marks(sheet.id, bounds[0], bounds[1], mark)


async def recent_chapter(store: RecordStore, owner_id: str) -> Optional[Tuple[GradeSheet, Chapter]]:
    """
    The owner's most recently updated sheet and the chapter last edited on it.

    Falls back to the sheet's most recently updated chapter when the recorded
    one is gone.
    """
    rows = await store.select(GRADE_SHEETS, eq={"owner_id": owner_id}, order=[("updated_at", True)], limit=1)
    if not rows:
        return None
    sheet = GradeSheet(**rows[0])

    chapter_row = None
    if sheet.last_edited_chapter_id:
        found = await store.select(
            CHAPTERS, eq={"id": sheet.last_edited_chapter_id, "grade_id": sheet.id}, limit=1
        )
        chapter_row = found[0] if found else None
    if chapter_row is None:
        found = await store.select(CHAPTERS, eq={"grade_id": sheet.id}, order=[("updated_at", True)], limit=1)
        chapter_row = found[0] if found else None
    if chapter_row is None:
        return None
    return sheet, Chapter(**chapter_row)
