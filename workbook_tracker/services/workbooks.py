import logging
from typing import List, Optional, Sequence, Tuple

from workbook_tracker.core.errors import NotFoundError, PersistenceError, ValidationError
from workbook_tracker.db.models import Chapter, GradeSheet, Workbook
from workbook_tracker.db.store import WORKBOOKS, RecordStore
from workbook_tracker.services.grade_sheets import GradeSheetEditor, validate_count

logger = logging.getLogger(__name__)


class WorkbookService:
    """Template workbooks and their canonical (author-owned) sheets."""

    def __init__(self, store: RecordStore, sheets: GradeSheetEditor):
        self.store = store
        self.sheets = sheets

    async def create_template(
        self,
        author_id: str,
        title: str,
        chapters: Sequence[Tuple[Optional[str], int]] = (),
    ) -> Tuple[Workbook, GradeSheet, List[Chapter]]:
        """
        Create a workbook, the author's template sheet and its chapters.

        The chapter list may be empty; chapters can be appended later with
        ``ChapterPartition.create_chapter``. If the sheet cannot be created
        the workbook row is removed again.
        """
        title = (title or "").strip()
        if not title:
            raise ValidationError("Template title is required")
        specs = [(t, validate_count(c)) for t, c in chapters]
        total = sum(c for _, c in specs)

        rows = await self.store.insert(WORKBOOKS, [{
            "title": title,
            "total_problem_count": total,
            "author_id": author_id,
        }])
        workbook = Workbook(**rows[0])

        try:
            sheet, created = await self.sheets.create_sheet(author_id, title, specs, workbook_id=workbook.id)
        except PersistenceError:
            logger.warning("Template sheet for workbook %s failed, removing the workbook", workbook.id)
            try:
                await self.store.delete(WORKBOOKS, id=workbook.id)
            except PersistenceError as undo_error:
                logger.error(
                    "Could not remove workbook %s after its template sheet failed: %s",
                    workbook.id, undo_error.detail,
                )
            raise

        logger.info("Created template %s (%s) by %s", workbook.id, title, author_id)
        return workbook, sheet, created

    async def list_templates(self) -> List[Workbook]:
        rows = await self.store.select(WORKBOOKS, order=[("created_at", True)])
        return [Workbook(**r) for r in rows]

    async def get_template(self, workbook_id: str) -> Workbook:
        row = await self.store.get(WORKBOOKS, workbook_id)
        if row is None:
            raise NotFoundError(f"Workbook {workbook_id} not found")
        return Workbook(**row)
