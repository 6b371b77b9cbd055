"""
Grade sheets and the marks editor.

A sheet holds one mark and one display label per problem. The editor keeps
loaded sheets in memory, applies edits optimistically and hands the write to
the autosave persister. ``len(marks) == len(labels) == problem_count`` holds
for every sheet the editor exposes.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple

from workbook_tracker.core.errors import NotFoundError, PersistenceError, ValidationError
from workbook_tracker.db.models import (
    Chapter,
    GradeSheet,
    Mark,
    cycle_mark,
    default_labels,
)
from workbook_tracker.db.store import CHAPTERS, GRADE_SHEETS, RecordStore
from workbook_tracker.services.autosave import IDLE, AutoSavePersister

logger = logging.getLogger(__name__)


def marks_key(sheet_id: str) -> Tuple[str, str]:
    return ("marks", sheet_id)


def coerce_mark(value: Any) -> Mark:
    try:
        return Mark.from_input(value)
    except ValueError as e:
        raise ValidationError(str(e))


def validate_count(count: Any) -> int:
    # bool is an int subclass; True is not a chapter size
    if isinstance(count, bool) or not isinstance(count, int) or count <= 0:
        raise ValidationError(f"Chapter problem count must be a positive integer, got {count!r}")
    return count


def layout_chapter_rows(grade_id: str, specs: Sequence[Tuple[Optional[str], int]], start: int = 0) -> List[dict]:
    """Chapter rows laid out back-to-back from ``start``, in the given order."""
    rows = []
    cursor = start
    for title, count in specs:
        rows.append({
            "grade_id": grade_id,
            "start_idx": cursor,
            "end_idx": cursor + count - 1,
            "chapter_title": (title or "").strip() or None,
            "chapter_note": "",
            "teacher_memo": "",
            "next_homework": "",
        })
        cursor += count
    return rows


def tally(sheet: GradeSheet, lo: int = 0, hi: Optional[int] = None) -> Dict[Mark, int]:
    """Count each mark in ``[lo, hi]`` (whole sheet by default)."""
    hi = sheet.problem_count - 1 if hi is None else hi
    counts = {m: 0 for m in Mark}
    for mark in sheet.marks[lo:hi + 1]:
        counts[mark] += 1
    return counts


class GradeSheetEditor:
    def __init__(self, store: RecordStore, autosave: AutoSavePersister):
        self.store = store
        self.autosave = autosave
        self.sheets: Dict[str, GradeSheet] = {}

    # -------------------------
    # LOADING
    # -------------------------
    def _remember(self, sheet: GradeSheet) -> GradeSheet:
        # An unsaved local edit is newer than what the store returned
        current = self.sheets.get(sheet.id)
        if current is not None and self.autosave.state(marks_key(sheet.id)) != IDLE:
            return current
        self.sheets[sheet.id] = sheet
        return sheet

    async def load(self, sheet_id: str) -> GradeSheet:
        row = await self.store.get(GRADE_SHEETS, sheet_id)
        if row is None:
            raise NotFoundError(f"Grade sheet {sheet_id} not found")
        return self._remember(GradeSheet(**row))

    async def load_owner_sheets(self, owner_id: str, templates_only: bool = False) -> List[GradeSheet]:
        rows = await self.store.select(
            GRADE_SHEETS,
            eq={"owner_id": owner_id},
            not_null=("workbook_id",) if templates_only else (),
            order=[("created_at", False)],
        )
        return [self._remember(GradeSheet(**row)) for row in rows]

    def get(self, sheet_id: str) -> GradeSheet:
        sheet = self.sheets.get(sheet_id)
        if sheet is None:
            raise NotFoundError(f"Grade sheet {sheet_id} is not loaded")
        return sheet

    # -------------------------
    # MARK EDITS (debounced)
    # -------------------------
    @staticmethod
    def _check_index(sheet: GradeSheet, idx: int) -> None:
        if isinstance(idx, bool) or not isinstance(idx, int) or not 0 <= idx < sheet.problem_count:
            raise ValidationError(
                f"Problem index {idx!r} is out of range for a sheet of {sheet.problem_count} problems"
            )

    def set_mark(self, sheet_id: str, idx: int, mark: Any) -> GradeSheet:
        sheet = self.get(sheet_id)
        mark = coerce_mark(mark)
        self._check_index(sheet, idx)
        sheet.marks[idx] = mark
        self._schedule_marks(sheet_id)
        return sheet

    def toggle_mark(self, sheet_id: str, idx: int) -> Mark:
        sheet = self.get(sheet_id)
        self._check_index(sheet, idx)
        nxt = cycle_mark(sheet.marks[idx])
        self.set_mark(sheet_id, idx, nxt)
        return nxt

    def bulk_set_marks(self, sheet_id: str, lo: int, hi: int, mark: Any) -> GradeSheet:
        sheet = self.get(sheet_id)
        mark = coerce_mark(mark)
        self._check_index(sheet, lo)
        self._check_index(sheet, hi)
        if lo > hi:
            raise ValidationError(f"Range start {lo} is after range end {hi}")
        for i in range(lo, hi + 1):
            sheet.marks[i] = mark
        self._schedule_marks(sheet_id)
        return sheet

    def _schedule_marks(self, sheet_id: str) -> None:
        async def write():
            await self._persist_marks(sheet_id)

        self.autosave.schedule(marks_key(sheet_id), write)

    async def _persist_marks(self, sheet_id: str) -> None:
        sheet = self.sheets.get(sheet_id)
        if sheet is None:
            return
        row = await self.store.get(GRADE_SHEETS, sheet_id)
        if row is None:
            raise PersistenceError(f"Grade sheet {sheet_id} no longer exists")
        self._adopt_growth(sheet, GradeSheet(**row))
        now = datetime.now(timezone.utc)
        # Shape goes with the marks so storage never holds mismatched lengths
        await self.store.update(GRADE_SHEETS, sheet_id, {**sheet.shape_payload(), "updated_at": now.isoformat()})
        sheet.updated_at = now

    @staticmethod
    def _adopt_growth(sheet: GradeSheet, stored: GradeSheet) -> None:
        # Sheets only grow; problems appended by another editor are kept
        if stored.problem_count <= sheet.problem_count:
            return
        sheet.marks.extend(stored.marks[sheet.problem_count:])
        sheet.labels.extend(stored.labels[sheet.problem_count:])
        sheet.problem_count = stored.problem_count

    # -------------------------
    # EXPANSION
    # -------------------------
    async def expand(self, sheet_id: str, new_total: int) -> bool:
        """
        Grow the sheet to ``new_total`` problems.

        Returns False (and changes nothing) when the sheet is already that
        large. On a failed write the sheet is cut back to its previous shape
        and the PersistenceError is re-raised.
        """
        sheet = self.get(sheet_id)
        if new_total <= sheet.problem_count:
            return False

        previous = sheet.problem_count
        sheet.marks.extend([Mark.UNMARKED] * (new_total - previous))
        sheet.labels.extend(default_labels(previous, new_total))
        sheet.problem_count = new_total

        now = datetime.now(timezone.utc)
        try:
            await self.store.update(GRADE_SHEETS, sheet_id, {**sheet.shape_payload(), "updated_at": now.isoformat()})
        except PersistenceError:
            self._truncate(sheet, previous)
            logger.warning("Expanding sheet %s to %d failed, kept %d problems", sheet_id, new_total, previous)
            raise
        sheet.updated_at = now
        logger.info("Expanded sheet %s from %d to %d problems", sheet_id, previous, new_total)
        return True

    @staticmethod
    def _truncate(sheet: GradeSheet, count: int) -> None:
        # Edits made to the surviving range while a write was in flight are kept
        del sheet.marks[count:]
        del sheet.labels[count:]
        sheet.problem_count = count

    async def revert_expand(self, sheet_id: str, previous_count: int) -> None:
        """Compensating write that undoes a successful ``expand``."""
        sheet = self.get(sheet_id)
        self._truncate(sheet, previous_count)
        await self.store.update(
            GRADE_SHEETS,
            sheet_id,
            {**sheet.shape_payload(), "updated_at": datetime.now(timezone.utc).isoformat()},
        )

    # -------------------------
    # CREATE / DELETE
    # -------------------------
    async def create_sheet(
        self,
        owner_id: str,
        title: str,
        chapters: Sequence[Tuple[Optional[str], int]],
        workbook_id: Optional[str] = None,
    ) -> Tuple[GradeSheet, List[Chapter]]:
        """
        Create a sheet sized to its chapters and lay the chapters out in order.

        If the chapters cannot be inserted the sheet is deleted again.
        """
        title = (title or "").strip()
        if not title:
            raise ValidationError("Workbook title is required")
        specs = [(t, validate_count(c)) for t, c in chapters]
        total = sum(c for _, c in specs)

        rows = await self.store.insert(GRADE_SHEETS, [{
            "owner_id": owner_id,
            "workbook_id": workbook_id,
            "title": title,
            "problem_count": total,
            "marks": [Mark.UNMARKED.value] * total,
            "labels": default_labels(0, total),
        }])
        sheet = self._remember(GradeSheet(**rows[0]))

        try:
            chapter_rows = await self.store.insert(CHAPTERS, layout_chapter_rows(sheet.id, specs))
        except PersistenceError:
            logger.warning("Chapters for new sheet %s failed, removing the sheet", sheet.id)
            try:
                await self.store.delete(GRADE_SHEETS, id=sheet.id)
            except PersistenceError as undo_error:
                logger.error("Could not remove sheet %s after its chapters failed: %s", sheet.id, undo_error.detail)
            self.sheets.pop(sheet.id, None)
            raise

        logger.info("Created sheet %s (%s) for owner %s with %d chapter(s)", sheet.id, title, owner_id, len(chapter_rows))
        return sheet, [Chapter(**r) for r in chapter_rows]

    async def delete_sheet(self, sheet_id: str) -> None:
        self.autosave.cancel(marks_key(sheet_id))
        # Children first, then the sheet
        await self.store.delete(CHAPTERS, grade_id=sheet_id)
        removed = await self.store.delete(GRADE_SHEETS, id=sheet_id)
        self.sheets.pop(sheet_id, None)
        if not removed:
            raise NotFoundError(f"Grade sheet {sheet_id} not found")
        logger.info("Deleted sheet %s", sheet_id)
