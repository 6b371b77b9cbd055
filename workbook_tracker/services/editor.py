import logging
from typing import Hashable, List, Optional, Tuple

from workbook_tracker.core.errors import PersistenceError, TrackerError
from workbook_tracker.db.models import Chapter, GradeSheet
from workbook_tracker.db.store import RecordStore
from workbook_tracker.services.autosave import AutoSavePersister
from workbook_tracker.services.chapters import ChapterPartition, default_chapter
from workbook_tracker.services.grade_sheets import GradeSheetEditor

logger = logging.getLogger(__name__)


class EditorSession:
    """
    One viewer's editing context.

    Owns the autosave timers for everything the viewer edits, and keeps the
    last failure as a message the viewer can read back. Closing the session
    cancels every write that has not fired yet.
    """

    def __init__(self, store: RecordStore, viewer_id: str, autosave_delay: float = 0.7):
        self.viewer_id = viewer_id
        self.last_error: Optional[str] = None
        self.autosave = AutoSavePersister(delay=autosave_delay, on_error=self._autosave_failed)
        self.sheets = GradeSheetEditor(store, self.autosave)
        self.chapters = ChapterPartition(store, self.sheets, self.autosave)
        self.closed = False

    def _autosave_failed(self, key: Hashable, error: PersistenceError) -> None:
        kind = key[0] if isinstance(key, tuple) else key
        self.last_error = f"Saving {kind} failed: {error.detail}"

    def record_error(self, error: TrackerError) -> None:
        self.last_error = error.detail

    def clear_error(self) -> None:
        self.last_error = None

    async def open_sheet(self, sheet_id: str) -> Tuple[GradeSheet, List[Chapter], Optional[Chapter]]:
        """Load a sheet with its chapters and the chapter to show first."""
        sheet = await self.sheets.load(sheet_id)
        chapters = await self.chapters.load(sheet_id)
        return sheet, chapters, default_chapter(chapters)

    async def flush(self) -> None:
        await self.autosave.flush()

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        await self.autosave.close()
        logger.info("Closed editor session for %s", self.viewer_id)
